"""
async_assistant_loop.py
Fully-async REPL that delegates all heavy lifting to AssistantService.

Thread continuity:
- The thread for ASSISTANT_ID is cached (and persisted to the session
  cache) so the conversation resumes across restarts for up to 7 days
- Type 'new' to start a fresh thread, 'exit' to quit
"""

import asyncio
import os

from assistant import AssistantService
from assistant_config import get_assistant_config
from assistant_errors import AssistantServiceError, RunTimedOut, ThreadNotFound
from core_assistant import configure_logging
from session_manager import PersistentSessionCache

ASSISTANT_ID = os.getenv("ASSISTANT_ID")           # export beforehand


async def session(assistant_id: str) -> None:
    service = AssistantService(cache=PersistentSessionCache())
    record = await service.load_assistant(assistant_id)
    config = get_assistant_config()
    print(f"📚  {record.name or record.id} ({config['model']}, {record.file_count} files) – type 'exit' to quit\n")

    thread_id = None
    while True:
        user_input = input("You> ").strip()
        if not user_input or user_input.lower() == "exit":
            break
        if user_input.lower() == "new":
            thread_id = await service.start_new_thread(record.id)
            print(f"(new thread {thread_id})\n")
            continue

        try:
            reply = await service.converse(record.id, thread_id, user_input)
        except ThreadNotFound as exc:
            # Offer the surviving thread rather than switching silently.
            if exc.alternate_thread_id:
                print(f"\n⚠️  {exc.message}")
                if input("Resume it? [y/N] ").strip().lower() == "y":
                    thread_id = exc.alternate_thread_id
                    continue
            print(f"\n⚠️  {exc.user_message}\n")
            thread_id = None
            continue
        except RunTimedOut as exc:
            print(f"\n⏱️  {exc.user_message} ({exc.message})\n")
            continue
        except AssistantServiceError as exc:
            print(f"\n❌ {exc.user_message} {exc.message}\n")
            continue

        thread_id = reply.thread_id
        print(f"\nAssistant> {reply.message}\n")


if __name__ == "__main__":
    if not ASSISTANT_ID:
        raise SystemExit("Set ASSISTANT_ID before starting the REPL.")
    configure_logging()
    asyncio.run(session(ASSISTANT_ID))

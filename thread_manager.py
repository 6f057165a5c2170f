"""
thread_manager.py
Conversation continuity: which thread an assistant's next turn goes to,
and the message → run → poll → reply cycle for one turn.

Per assistant id the session holds either no thread or exactly one
cached ThreadHandle.  A cached handle is only trusted after a remote
retrieve succeeds (or right after creating it):

    resolve_thread_for_turn(A, explicit=None)
        cached & live   → touch, reuse
        cached & gone   → create, replace cache
        no cache        → create, cache

    resolve_thread_for_turn(A, explicit=T)
        T live                          → cache T for A, reuse
        T gone, other cached C live     → AlternateThreadAvailable(C)
        T gone, other cached C gone     → evict, ThreadNotFound
        T gone, nothing else cached     → ThreadNotFound

The alternate thread is surfaced to the caller and never swapped in
silently.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional

import openai

from assistant_config import MESSAGE_LIST_LIMIT
from assistant_errors import (
    AlternateThreadAvailable,
    AssistantNotFound,
    AssistantServiceError,
    MalformedResponse,
    RunCancelled,
    RunFailed,
    RunTimedOut,
    ThreadNotFound,
)
from core_assistant import (
    SYSTEM_CLOCK,
    Clock,
    as_transient,
    call_remote,
    get_client,
    is_gone_error,
    is_transient_error,
)
from run_poller import RunOutcome, RunPoller, RunStatus
from session_manager import SessionState

_logger = logging.getLogger(__name__)


@dataclass
class TurnReply:
    message: str
    thread_id: str
    run_id: str

    def to_dict(self) -> dict:
        return {"message": self.message, "threadId": self.thread_id, "runId": self.run_id}


def _message_text(message: Any) -> Optional[str]:
    """First text payload of a thread message, or None."""
    content = getattr(message, "content", None) or []
    if not content:
        return None
    block = content[0]
    text = getattr(block, "text", None)
    value = getattr(text, "value", None) if text is not None else None
    return value or None


class ThreadManager:
    def __init__(
        self,
        session: SessionState,
        *,
        client: Optional[Any] = None,
        clock: Optional[Clock] = None,
        poller: Optional[RunPoller] = None,
    ):
        self.session = session
        self._client = client
        self._clock = clock or SYSTEM_CLOCK
        self.poller = poller or RunPoller(client=client, clock=self._clock)

    @property
    def client(self) -> Any:
        return self._client or get_client()

    async def _call(self, fn, *args, label: str, **kwargs) -> Any:
        try:
            return await call_remote(fn, *args, label=label, clock=self._clock, **kwargs)
        except openai.APIError as exc:
            if is_transient_error(exc):
                raise as_transient(exc, label) from exc
            raise

    # ──────────────────────────────────────────────────────────────
    #  Liveness
    # ──────────────────────────────────────────────────────────────
    async def _thread_is_live(self, thread_id: str) -> bool:
        """True if the remote thread exists; False if it is confirmed gone."""
        try:
            await self._call(self.client.beta.threads.retrieve, thread_id, label="threads.retrieve")
        except openai.APIError as exc:
            if is_gone_error(exc):
                _logger.info("Thread %s is no longer valid: %s", thread_id, exc)
                return False
            raise AssistantServiceError(f"Could not validate thread {thread_id}: {exc}") from exc
        return True

    async def _create_thread(self, assistant_id: str) -> str:
        try:
            thread = await self._call(self.client.beta.threads.create, label="threads.create")
        except openai.APIError as exc:
            raise AssistantServiceError(f"Failed to create thread: {exc}") from exc
        self.session.save_thread(assistant_id, thread.id)
        return thread.id

    async def validate_thread(self, thread_id: str, assistant_id: Optional[str] = None) -> bool:
        live = await self._thread_is_live(thread_id)
        if live and assistant_id:
            cached = self.session.get_thread(assistant_id)
            if cached is not None and cached.thread_id == thread_id:
                self.session.touch_thread(assistant_id)
        return live

    async def start_new_thread(self, assistant_id: str) -> str:
        """Always open a fresh thread for *assistant_id*, replacing any cached one."""
        thread_id = await self._create_thread(assistant_id)
        _logger.info("Started new thread %s for assistant %s", thread_id, assistant_id)
        return thread_id

    # ──────────────────────────────────────────────────────────────
    #  Resolution
    # ──────────────────────────────────────────────────────────────
    async def resolve_thread_for_turn(self, assistant_id: str, explicit_thread_id: Optional[str] = None) -> str:
        if explicit_thread_id:
            return await self._resolve_explicit(assistant_id, explicit_thread_id)

        cached = self.session.get_thread(assistant_id)
        if cached is not None:
            _logger.info("Found existing thread %s for assistant %s, validating...", cached.thread_id, assistant_id)
            if await self._thread_is_live(cached.thread_id):
                self.session.touch_thread(assistant_id)
                return cached.thread_id
            thread_id = await self._create_thread(assistant_id)
            _logger.info("Created new thread %s to replace invalid thread %s", thread_id, cached.thread_id)
            return thread_id

        thread_id = await self._create_thread(assistant_id)
        _logger.info("Created new thread %s for assistant %s", thread_id, assistant_id)
        return thread_id

    async def _resolve_explicit(self, assistant_id: str, thread_id: str) -> str:
        if await self._thread_is_live(thread_id):
            cached = self.session.get_thread(assistant_id)
            if cached is None or cached.thread_id != thread_id:
                _logger.info("Adding thread %s to cache for assistant %s", thread_id, assistant_id)
                self.session.save_thread(assistant_id, thread_id)
            else:
                self.session.touch_thread(assistant_id)
            return thread_id

        cached = self.session.get_thread(assistant_id)
        if cached is not None and cached.thread_id != thread_id:
            if await self._thread_is_live(cached.thread_id):
                _logger.info("Found alternative valid thread %s for assistant %s", cached.thread_id, assistant_id)
                raise AlternateThreadAvailable(thread_id, cached.thread_id)
            _logger.info("Alternative thread %s is also invalid; clearing cache", cached.thread_id)
            self.session.evict_thread(assistant_id)

        raise ThreadNotFound(details={"requested_thread_id": thread_id})

    # ──────────────────────────────────────────────────────────────
    #  One turn
    # ──────────────────────────────────────────────────────────────
    async def converse(self, assistant_id: str, thread_id: Optional[str], prompt: str) -> TurnReply:
        """Post *prompt*, run the assistant and return its reply.

        Every exit is either a reply or a classified error; nothing is
        retried here.
        """
        thread_id = await self.resolve_thread_for_turn(assistant_id, thread_id)

        try:
            message = await self._call(
                self.client.beta.threads.messages.create,
                thread_id,
                role="user",
                content=prompt,
                label="messages.create",
            )
        except openai.APIError as exc:
            if is_gone_error(exc):
                self._evict_if_cached(assistant_id, thread_id)
                raise ThreadNotFound(details={"requested_thread_id": thread_id}) from exc
            raise AssistantServiceError(f"Failed to post message: {exc}") from exc
        _logger.info("Added message to thread %s, message ID: %s", thread_id, getattr(message, "id", "?"))

        submitted_at = self._clock.monotonic()
        try:
            run = await self._call(
                self.client.beta.threads.runs.create,
                thread_id,
                assistant_id=assistant_id,
                label="runs.create",
            )
        except openai.NotFoundError as exc:
            raise AssistantNotFound(
                f"Thread or assistant not found: {exc}",
                details={"assistant_id": assistant_id, "thread_id": thread_id},
            ) from exc
        except openai.APIError as exc:
            raise AssistantServiceError(f"Run creation failed: {exc}") from exc
        _logger.info("Started run %s on thread %s", run.id, thread_id)

        try:
            outcome = await self.poller.await_completion(thread_id, run.id, submitted_at=submitted_at)
        except openai.APIError as exc:
            raise AssistantServiceError(
                f"Could not retrieve status of run {run.id}: {exc}",
                details={"run_id": run.id, "thread_id": thread_id},
            ) from exc
        self._raise_for_outcome(outcome)

        text = await self._latest_reply(thread_id, run.id)
        self.session.touch_thread(assistant_id)
        _logger.info("Successfully retrieved response from thread %s", thread_id)
        return TurnReply(message=text, thread_id=thread_id, run_id=run.id)

    def _evict_if_cached(self, assistant_id: str, thread_id: str) -> None:
        cached = self.session.get_thread(assistant_id)
        if cached is not None and cached.thread_id == thread_id:
            self.session.evict_thread(assistant_id)

    @staticmethod
    def _raise_for_outcome(outcome: RunOutcome) -> None:
        if outcome.status == RunStatus.COMPLETED:
            return
        if outcome.status == RunStatus.FAILED:
            raise RunFailed(outcome.failure_reason or "Unknown error", run_id=outcome.run_id)
        if outcome.status == RunStatus.CANCELLED:
            raise RunCancelled(
                f"Assistant run {outcome.run_id} was cancelled", details={"run_id": outcome.run_id}
            )
        raise RunTimedOut(
            f"Assistant run {outcome.run_id} timed out ({outcome.remote_status})",
            details={"run_id": outcome.run_id},
        )

    async def _latest_reply(self, thread_id: str, run_id: str) -> str:
        try:
            page = await self._call(
                self.client.beta.threads.messages.list,
                thread_id,
                order="desc",
                limit=MESSAGE_LIST_LIMIT,
                label="messages.list",
            )
        except openai.APIError as exc:
            raise AssistantServiceError(f"Failed to list messages: {exc}") from exc

        replies = [m for m in (getattr(page, "data", None) or []) if getattr(m, "role", None) == "assistant"]
        if not replies:
            _logger.error("No assistant messages found in thread %s after run completed", thread_id)
            raise MalformedResponse("No response received from assistant", details={"thread_id": thread_id})

        # Newest first; prefer the message this run produced.
        latest = next((m for m in replies if getattr(m, "run_id", None) == run_id), replies[0])
        text = _message_text(latest)
        if not text:
            _logger.error("Malformed message content in thread %s: %r", thread_id, latest)
            raise MalformedResponse(
                "Invalid response format from assistant",
                details={"thread_id": thread_id, "message_id": getattr(latest, "id", None)},
            )
        return text

"""
assistant.py
Downstream facade used by the Streamlit UI (main.py) and the async REPL.
Exports:
    • AssistantService   – every operation the front ends call
    • run_sync           – drive a coroutine from synchronous UI code

Each operation returns a payload or raises an AssistantServiceError
subclass; mapping errors to UI messages is the caller's job.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, Awaitable, Dict, List, Optional, Sequence, Tuple, TypeVar

from assistant_errors import AssistantServiceError, ThreadNotFound, UploadError
from assistant_manager import AssistantDirectoryEntry, AssistantManager, AssistantRecord, DeleteResult
from core_assistant import SYSTEM_CLOCK, Clock
from run_poller import RunPoller
from session_manager import PersistentSessionCache, SessionState
from thread_manager import ThreadManager, TurnReply
from upload_cache import PathLike, UploadCache
from vector_store_manager import IngestResult, KnowledgeStoreManager
from zotero_client import DocumentReference, ZoteroClient, ZoteroError

_logger = logging.getLogger(__name__)

T = TypeVar("T")


def run_sync(coro: Awaitable[T]) -> T:
    """Run *coro* to completion from synchronous code (Streamlit callbacks)."""
    return asyncio.run(coro)


class AssistantService:
    """Wires the managers around one SessionState."""

    def __init__(
        self,
        session: Optional[SessionState] = None,
        *,
        client: Optional[Any] = None,
        clock: Optional[Clock] = None,
        cache: Optional[PersistentSessionCache] = None,
        zotero: Optional[ZoteroClient] = None,
    ):
        self.clock = clock or SYSTEM_CLOCK
        self.session = session or SessionState(clock=self.clock)
        self.cache = cache
        self.zotero = zotero
        if cache is not None:
            cache.load_into(self.session)

        self.uploads = UploadCache(self.session, client=client, clock=self.clock)
        self.stores = KnowledgeStoreManager(self.session, client=client, clock=self.clock)
        self.assistants = AssistantManager(self.session, stores=self.stores, client=client, clock=self.clock)
        self.threads = ThreadManager(
            self.session,
            client=client,
            clock=self.clock,
            poller=RunPoller(client=client, clock=self.clock),
        )

    def _persist(self) -> None:
        if self.cache is None:
            return
        try:
            self.cache.save(self.session)
        except OSError as exc:
            _logger.warning("Could not write session cache %s: %s", self.cache.path, exc)

    # ──────────────────────────────────────────────────────────────
    #  Documents
    # ──────────────────────────────────────────────────────────────
    async def ensure_uploaded(self, document_id: str, local_path: PathLike) -> str:
        return await self.uploads.ensure_uploaded(document_id, local_path)

    async def prepare_documents(self, documents: Sequence[DocumentReference]) -> Dict[str, str]:
        """Download (when needed) and upload each selected document.

        Returns document id → file id for every document that made it;
        failures are logged and skipped so one bad PDF does not block the
        rest.
        """
        if self.zotero is None:
            raise AssistantServiceError("No Zotero client configured")

        async def _download(doc: DocumentReference) -> Tuple[str, Optional[Path]]:
            try:
                path = await asyncio.to_thread(self.zotero.download_pdf, doc.item_key, doc.attachment_key)
            except ZoteroError as exc:
                _logger.error("Could not download %s (%s): %s", doc.item_key, doc.title, exc)
                return doc.document_id, None
            return doc.document_id, path

        pending = [doc for doc in documents if not self.session.get_file_id(doc.document_id)]
        downloads = await asyncio.gather(*(_download(doc) for doc in pending))
        ready = [(doc_id, path) for doc_id, path in downloads if path is not None]
        if ready:
            try:
                await self.uploads.ensure_uploaded_many(ready)
            except UploadError as exc:
                _logger.error("Some documents could not be uploaded: %s", exc)

        file_map: Dict[str, str] = {}
        for doc in documents:
            file_id = self.session.get_file_id(doc.document_id)
            if file_id:
                file_map[doc.document_id] = file_id
        return file_map

    async def ensure_store_and_ingest(self, file_ids: Sequence[str]) -> IngestResult:
        return await self.stores.ensure_store_and_ingest(file_ids)

    # ──────────────────────────────────────────────────────────────
    #  Assistants
    # ──────────────────────────────────────────────────────────────
    async def create_or_update_assistant(
        self, name: str, instructions: str, file_ids: Sequence[str]
    ) -> AssistantRecord:
        if not name or not instructions or not file_ids:
            raise AssistantServiceError("Name, instructions, and file IDs are required")
        record = await self.assistants.create_or_update(name, instructions, file_ids)
        self._persist()
        return record

    async def list_assistants(self) -> List[AssistantDirectoryEntry]:
        return await self.assistants.list_assistants()

    async def load_assistant(self, assistant_id: str) -> AssistantRecord:
        record = await self.assistants.load_assistant(assistant_id)
        self._persist()
        return record

    async def delete_assistant(self, assistant_id: str) -> DeleteResult:
        result = await self.assistants.delete_assistant(assistant_id)
        self._persist()
        return result

    # ──────────────────────────────────────────────────────────────
    #  Conversation
    # ──────────────────────────────────────────────────────────────
    async def resolve_thread_for_turn(self, assistant_id: str, explicit_thread_id: Optional[str] = None) -> str:
        try:
            return await self.threads.resolve_thread_for_turn(assistant_id, explicit_thread_id)
        finally:
            self._persist()

    async def converse(self, assistant_id: str, thread_id: Optional[str], prompt: str) -> TurnReply:
        if not prompt or not assistant_id:
            raise AssistantServiceError("Prompt and assistant ID are required")
        try:
            return await self.threads.converse(assistant_id, thread_id, prompt)
        finally:
            self._persist()

    async def validate_thread(self, thread_id: str, assistant_id: Optional[str] = None) -> Dict[str, Any]:
        if not thread_id:
            raise ThreadNotFound("Thread ID is required")
        try:
            valid = await self.threads.validate_thread(thread_id, assistant_id)
        except AssistantServiceError as exc:
            return {"valid": False, "error": exc.message}
        if not valid:
            return {"valid": False, "error": f"Thread not found or inaccessible: {thread_id}"}
        return {"valid": True, "threadId": thread_id}

    async def start_new_thread(self, assistant_id: str) -> str:
        thread_id = await self.threads.start_new_thread(assistant_id)
        self._persist()
        return thread_id

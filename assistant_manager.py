"""
assistant_manager.py
Create-or-update the session's remote assistant, bound to the session
vector store; list, load and delete remote assistants.

Current-assistant state machine (held in SessionState.assistant_id):

    none  ──create──►  bound
    bound ──update──►  bound
    bound ──retrieve says gone / delete──►  none

A cached assistant id is reused optimistically: it is retrieved first,
and only a confirmed NotFound sends the flow back to creation.
Transient failures surface instead of triggering a duplicate create.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

import openai

from assistant_config import (
    ASSISTANT_LIST_PAGE_SIZE,
    ASSISTANT_TOOLS,
    DEFAULT_MODEL,
    INSTRUCTIONS_PREVIEW_CHARS,
)
from assistant_errors import (
    AssistantCreateError,
    AssistantNotFound,
    AssistantServiceError,
    AssistantUpdateError,
    IngestFailed,
    TransientRemoteError,
)
from core_assistant import (
    SYSTEM_CLOCK,
    Clock,
    as_transient,
    call_remote,
    get_client,
    is_transient_error,
)
from session_manager import SessionState
from vector_store_manager import IngestResult, KnowledgeStoreManager

_logger = logging.getLogger(__name__)


# ──────────────────────────────────────────────────────────────────────
#  Records
# ──────────────────────────────────────────────────────────────────────
def _bound_store_ids(assistant: Any) -> List[str]:
    resources = getattr(assistant, "tool_resources", None)
    file_search = getattr(resources, "file_search", None) if resources is not None else None
    ids = getattr(file_search, "vector_store_ids", None) if file_search is not None else None
    return list(ids or [])


def _has_file_search(assistant: Any) -> bool:
    return any(getattr(tool, "type", None) == "file_search" for tool in (getattr(assistant, "tools", None) or []))


@dataclass
class AssistantRecord:
    id: str
    name: Optional[str]
    instructions: Optional[str]
    model: str
    vector_store_id: Optional[str] = None
    file_ids: List[str] = field(default_factory=list)
    created_at: Optional[int] = None
    file_counts: Dict[str, int] = field(default_factory=dict)
    ingest: Optional[IngestResult] = None

    @property
    def file_count(self) -> int:
        return self.file_counts.get("total", len(self.file_ids))

    @classmethod
    def from_remote(cls, assistant: Any, **extra: Any) -> "AssistantRecord":
        stores = _bound_store_ids(assistant)
        return cls(
            id=assistant.id,
            name=getattr(assistant, "name", None),
            instructions=getattr(assistant, "instructions", None),
            model=getattr(assistant, "model", DEFAULT_MODEL),
            vector_store_id=extra.pop("vector_store_id", None) or (stores[0] if stores else None),
            created_at=getattr(assistant, "created_at", None),
            **extra,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "instructions": self.instructions,
            "model": self.model,
            "vector_store_id": self.vector_store_id,
            "file_ids": list(self.file_ids),
            "file_count": self.file_count,
            "file_counts": dict(self.file_counts),
            "created_at": self.created_at,
        }


@dataclass(frozen=True)
class AssistantDirectoryEntry:
    id: str
    name: Optional[str]
    created_at: int
    model: str
    description: Optional[str]
    instructions: str

    @classmethod
    def from_remote(cls, assistant: Any) -> "AssistantDirectoryEntry":
        text = getattr(assistant, "instructions", None) or ""
        if len(text) > INSTRUCTIONS_PREVIEW_CHARS:
            text = text[:INSTRUCTIONS_PREVIEW_CHARS] + "..."
        return cls(
            id=assistant.id,
            name=getattr(assistant, "name", None),
            created_at=int(getattr(assistant, "created_at", 0) or 0),
            model=getattr(assistant, "model", ""),
            description=getattr(assistant, "description", None),
            instructions=text,
        )


@dataclass
class DeleteResult:
    assistant_id: str
    deleted: bool
    message: str
    warning: Optional[str] = None


# ──────────────────────────────────────────────────────────────────────
#  Manager
# ──────────────────────────────────────────────────────────────────────
class AssistantManager:
    def __init__(
        self,
        session: SessionState,
        *,
        stores: Optional[KnowledgeStoreManager] = None,
        client: Optional[Any] = None,
        clock: Optional[Clock] = None,
        model: str = DEFAULT_MODEL,
    ):
        self.session = session
        self._client = client
        self._clock = clock or SYSTEM_CLOCK
        self.stores = stores or KnowledgeStoreManager(session, client=client, clock=self._clock)
        self.model = model

    @property
    def client(self) -> Any:
        return self._client or get_client()

    async def _call(self, fn, *args, label: str, **kwargs) -> Any:
        return await call_remote(fn, *args, label=label, clock=self._clock, **kwargs)

    def _assistant_params(self, name: str, instructions: str, vector_store_id: str) -> Dict[str, Any]:
        return {
            "name": name,
            "instructions": instructions,
            "model": self.model,
            "tools": [dict(tool) for tool in ASSISTANT_TOOLS],
            "tool_resources": {"file_search": {"vector_store_ids": [vector_store_id]}},
        }

    async def _retrieve_current(self) -> Optional[Any]:
        """Retrieve the cached assistant; None (and cache cleared) if it is gone."""
        assistant_id = self.session.assistant_id
        if not assistant_id:
            return None
        try:
            assistant = await self._call(
                self.client.beta.assistants.retrieve, assistant_id, label="assistants.retrieve"
            )
        except openai.NotFoundError as exc:
            _logger.info("Cached assistant %s no longer exists, will create a new one: %s", assistant_id, exc)
            self.session.clear_assistant(assistant_id)
            self.session.evict_thread(assistant_id)
            return None
        except openai.APIError as exc:
            if is_transient_error(exc):
                raise as_transient(exc, "assistants.retrieve") from exc
            raise AssistantUpdateError(
                f"Could not verify assistant {assistant_id}: {exc}",
                details={"assistant_id": assistant_id},
            ) from exc
        _logger.info("Retrieved existing assistant %s", assistant_id)
        return assistant

    async def _ingest(self, file_ids: Sequence[str]) -> Tuple[str, Optional[IngestResult]]:
        """Ensure the store and ingest; ingestion problems only degrade the result."""
        store_id = await self.stores.ensure_store()
        if not file_ids:
            return store_id, None
        try:
            result = await self.stores.ingest(store_id, file_ids)
        except (IngestFailed, TransientRemoteError) as exc:
            _logger.error("Error adding files to vector store %s: %s", store_id, exc)
            return store_id, None
        return store_id, result

    # ──────────────────────────────────────────────────────────────
    #  create / update
    # ──────────────────────────────────────────────────────────────
    async def create_or_update(
        self,
        name: str,
        instructions: str,
        file_ids: Sequence[str],
    ) -> AssistantRecord:
        file_ids = list(dict.fromkeys(file_ids))
        _logger.info("Working with %d files: %s", len(file_ids), file_ids)

        assistant = await self._retrieve_current()
        if assistant is not None and not self.session.vector_store_id:
            # Keep the store the live assistant already searches.
            bound = _bound_store_ids(assistant)
            if bound:
                _logger.info("Adopting vector store %s from assistant %s", bound[0], assistant.id)
                self.session.set_vector_store(bound[0])

        try:
            store_id, ingest_result = await self._ingest(file_ids)
        except IngestFailed as exc:
            raise AssistantCreateError(f"Could not prepare vector store: {exc}") from exc

        params = self._assistant_params(name, instructions, store_id)

        if assistant is not None:
            try:
                assistant = await self._call(
                    self.client.beta.assistants.update, assistant.id, label="assistants.update", **params
                )
            except openai.APIError as exc:
                if is_transient_error(exc):
                    raise as_transient(exc, "assistants.update") from exc
                raise AssistantUpdateError(
                    f"Failed to update assistant {assistant.id}: {exc}",
                    details={"assistant_id": assistant.id},
                ) from exc
            _logger.info("Updated assistant %s with vector store %s", assistant.id, store_id)
        else:
            _logger.info("Creating new assistant with vector store %s", store_id)
            try:
                assistant = await self._call(
                    self.client.beta.assistants.create, label="assistants.create", **params
                )
            except openai.APIError as exc:
                if is_transient_error(exc):
                    raise as_transient(exc, "assistants.create") from exc
                raise AssistantCreateError(f"Failed to create assistant: {exc}") from exc
            self.session.set_assistant(assistant.id)
            _logger.info("Created new assistant %s with vector store %s", assistant.id, store_id)

        record = AssistantRecord.from_remote(
            assistant,
            vector_store_id=store_id,
            file_ids=sorted(self.session.ingested_file_ids),
            ingest=ingest_result,
        )
        await self._verify(record)
        return record

    async def _verify(self, record: AssistantRecord) -> None:
        """Best-effort: refresh file counts and the assistant; never raises."""
        try:
            if record.vector_store_id:
                record.file_counts = await self.stores.store_file_counts(record.vector_store_id)
            assistant = await self._call(
                self.client.beta.assistants.retrieve, record.id, label="assistants.retrieve"
            )
        except (openai.APIError, AssistantServiceError) as exc:
            _logger.error("Error verifying configuration of assistant %s: %s", record.id, exc)
            return
        record.name = getattr(assistant, "name", record.name)
        record.instructions = getattr(assistant, "instructions", record.instructions)
        record.model = getattr(assistant, "model", record.model)
        _logger.info("Assistant %s successfully configured", record.id)

    # ──────────────────────────────────────────────────────────────
    #  directory / load / delete
    # ──────────────────────────────────────────────────────────────
    async def list_assistants(self) -> List[AssistantDirectoryEntry]:
        """All remote assistants with file_search, newest first."""
        assistants: List[Any] = []
        after: Optional[str] = None
        while True:
            params: Dict[str, Any] = {"limit": ASSISTANT_LIST_PAGE_SIZE}
            if after:
                params["after"] = after
            try:
                page = await self._call(self.client.beta.assistants.list, label="assistants.list", **params)
            except openai.APIError as exc:
                if is_transient_error(exc):
                    raise as_transient(exc, "assistants.list") from exc
                raise AssistantServiceError(f"Failed to fetch assistants: {exc}") from exc
            data = list(getattr(page, "data", []) or [])
            assistants.extend(data)
            if len(data) < ASSISTANT_LIST_PAGE_SIZE:
                break
            after = data[-1].id

        entries = [AssistantDirectoryEntry.from_remote(a) for a in assistants if _has_file_search(a)]
        entries.sort(key=lambda e: e.created_at, reverse=True)
        _logger.info("Found %d assistants with file_search capability", len(entries))
        return entries

    async def load_assistant(self, assistant_id: str) -> AssistantRecord:
        """Adopt an existing remote assistant (and its store) as current."""
        try:
            assistant = await self._call(
                self.client.beta.assistants.retrieve, assistant_id, label="assistants.retrieve"
            )
        except openai.NotFoundError as exc:
            raise AssistantNotFound(
                f"Assistant not found: {exc}",
                details={"assistant_id": assistant_id},
            ) from exc
        except openai.APIError as exc:
            if is_transient_error(exc):
                raise as_transient(exc, "assistants.retrieve") from exc
            raise AssistantServiceError(
                f"Could not load assistant {assistant_id}: {exc}",
                details={"assistant_id": assistant_id},
            ) from exc

        self.session.set_assistant(assistant.id)
        record = AssistantRecord.from_remote(assistant)
        if record.vector_store_id:
            self.session.set_vector_store(record.vector_store_id)
            _logger.info("Associated vector store: %s", record.vector_store_id)
            try:
                record.file_counts = await self.stores.store_file_counts(record.vector_store_id)
            except AssistantServiceError as exc:
                _logger.error("Error retrieving vector store details: %s", exc)
        return record

    async def delete_assistant(self, assistant_id: str) -> DeleteResult:
        _logger.info("Attempting to delete assistant %s", assistant_id)
        try:
            response = await self._call(
                self.client.beta.assistants.delete, assistant_id, label="assistants.delete"
            )
        except openai.NotFoundError:
            self._forget(assistant_id)
            return DeleteResult(
                assistant_id=assistant_id,
                deleted=True,
                message="Assistant not found (may already be deleted)",
                warning="Assistant not found on OpenAI, but cache has been cleared",
            )
        except openai.APIError as exc:
            if is_transient_error(exc):
                raise as_transient(exc, "assistants.delete") from exc
            raise AssistantServiceError(
                f"Failed to delete assistant: {exc}", details={"assistant_id": assistant_id}
            ) from exc

        if not getattr(response, "deleted", False):
            raise AssistantServiceError(
                "Assistant deletion not confirmed by the API", details={"assistant_id": assistant_id}
            )
        self._forget(assistant_id)
        _logger.info("Successfully deleted assistant %s", assistant_id)
        return DeleteResult(assistant_id=assistant_id, deleted=True, message="Assistant deleted successfully")

    def _forget(self, assistant_id: str) -> None:
        if self.session.clear_assistant(assistant_id):
            _logger.info("Cleared assistant from application cache")
        if self.session.evict_thread(assistant_id) is not None:
            _logger.info("Removed associated thread for assistant %s from cache", assistant_id)

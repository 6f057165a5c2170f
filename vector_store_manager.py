"""
vector_store_manager.py
Session vector store: create once, batch-add files, poll ingestion.

ARCHITECTURE:

    ensure_store()  ──►  cached id? ──yes──► return it (no remote check)
                              │
                              no
                              ▼
                    vector_stores.create("Zotero Document Store <ts>")

    ingest(store, files)
        file_batches.create ──► poll every INGEST_POLL_INTERVAL
            in_progress  → keep polling (until INGEST_TIMEOUT)
            completed    → IngestResult(COMPLETED)
            failed/…     → IngestFailed(server message)
            ceiling hit  → IngestResult(TIMED_OUT), server keeps going

Reusing the cached store without a remote check is a known staleness
risk: a store deleted out of band is only noticed when the assistant
update or a run fails.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

import openai

from assistant_config import (
    INGEST_POLL_INTERVAL,
    INGEST_TIMEOUT,
    VECTOR_STORE_NAME_PREFIX,
)
from assistant_errors import IngestFailed
from core_assistant import (
    SYSTEM_CLOCK,
    Clock,
    as_transient,
    call_remote,
    get_client,
    is_transient_error,
)
from session_manager import SessionState

_logger = logging.getLogger(__name__)


class IngestStatus(str, Enum):
    COMPLETED = "completed"
    TIMED_OUT = "timed_out"
    SKIPPED = "skipped"


@dataclass
class IngestResult:
    vector_store_id: str
    status: IngestStatus
    file_ids: List[str] = field(default_factory=list)
    batch_id: Optional[str] = None
    file_counts: Dict[str, int] = field(default_factory=dict)
    elapsed: float = 0.0

    @property
    def completed(self) -> bool:
        return self.status == IngestStatus.COMPLETED


def file_counts_to_dict(counts: Any) -> Dict[str, int]:
    """Normalise an SDK FileCounts object (or dict) to plain ints."""
    if counts is None:
        return {}
    keys = ("total", "completed", "in_progress", "failed", "cancelled")
    if isinstance(counts, dict):
        return {k: int(counts.get(k) or 0) for k in keys}
    return {k: int(getattr(counts, k, 0) or 0) for k in keys}


def _batch_error_message(batch: Any) -> str:
    error = getattr(batch, "error", None) or getattr(batch, "last_error", None)
    message = getattr(error, "message", None) if error is not None else None
    if message:
        return str(message)
    status = getattr(batch, "status", "unknown")
    counts = file_counts_to_dict(getattr(batch, "file_counts", None))
    if counts.get("failed"):
        return f"batch {status}: {counts['failed']} of {counts.get('total', 0)} files failed"
    return f"batch {status}"


class KnowledgeStoreManager:
    def __init__(
        self,
        session: SessionState,
        *,
        client: Optional[Any] = None,
        clock: Optional[Clock] = None,
        poll_interval: float = INGEST_POLL_INTERVAL,
        timeout: float = INGEST_TIMEOUT,
    ):
        self.session = session
        self._client = client
        self._clock = clock or SYSTEM_CLOCK
        self.poll_interval = poll_interval
        self.timeout = timeout

    @property
    def client(self) -> Any:
        return self._client or get_client()

    async def _call(self, fn, *args, label: str, **kwargs) -> Any:
        try:
            return await call_remote(fn, *args, label=label, clock=self._clock, **kwargs)
        except openai.APIError as exc:
            if is_transient_error(exc):
                raise as_transient(exc, label) from exc
            raise IngestFailed(f"[{label}] {exc}", details={"operation": label}) from exc

    # ──────────────────────────────────────────────────────────────
    #  Store lifecycle
    # ──────────────────────────────────────────────────────────────
    async def ensure_store(self) -> str:
        if self.session.vector_store_id:
            _logger.info("Using existing vector store: %s", self.session.vector_store_id)
            return self.session.vector_store_id

        stamp = datetime.fromtimestamp(self._clock.time()).isoformat(timespec="seconds")
        name = f"{VECTOR_STORE_NAME_PREFIX} {stamp}"
        _logger.info("Creating new vector store for document search: %s", name)
        store = await self._call(self.client.vector_stores.create, name=name, label="vector_stores.create")
        self.session.set_vector_store(store.id)
        _logger.info("Created vector store: %s", store.id)
        return store.id

    async def store_file_counts(self, vector_store_id: str) -> Dict[str, int]:
        store = await self._call(
            self.client.vector_stores.retrieve, vector_store_id, label="vector_stores.retrieve"
        )
        counts = file_counts_to_dict(getattr(store, "file_counts", None))
        _logger.info(
            "Vector store %s status=%s total=%d completed=%d in_progress=%d failed=%d",
            vector_store_id,
            getattr(store, "status", "unknown"),
            counts.get("total", 0),
            counts.get("completed", 0),
            counts.get("in_progress", 0),
            counts.get("failed", 0),
        )
        return counts

    async def list_store_file_ids(self, vector_store_id: str) -> List[str]:
        """Every file id already attached to the store (paginated)."""
        file_ids: List[str] = []
        after: Optional[str] = None
        while True:
            params: Dict[str, Any] = {"limit": 100}
            if after:
                params["after"] = after
            page = await self._call(
                self.client.vector_stores.files.list,
                vector_store_id=vector_store_id,
                label="vector_stores.files.list",
                **params,
            )
            data = list(getattr(page, "data", []) or [])
            file_ids.extend(item.id for item in data)
            if not data or not getattr(page, "has_more", False):
                break
            after = data[-1].id
        return file_ids

    # ──────────────────────────────────────────────────────────────
    #  Ingestion
    # ──────────────────────────────────────────────────────────────
    async def ingest(
        self,
        vector_store_id: str,
        file_ids: Sequence[str],
        *,
        exclude_existing: bool = False,
    ) -> IngestResult:
        """Submit *file_ids* as one batch and poll it to a terminal state.

        Raises IngestFailed when the server reports a failed batch; the
        files are then not recorded as ingested.
        """
        wanted = list(dict.fromkeys(file_ids))
        if exclude_existing and wanted:
            existing = set(await self.list_store_file_ids(vector_store_id))
            skipped = [fid for fid in wanted if fid in existing]
            if skipped:
                _logger.info("Skipping %d files already in %s", len(skipped), vector_store_id)
                self.session.mark_ingested(skipped)
            wanted = [fid for fid in wanted if fid not in existing]

        if not wanted:
            return IngestResult(vector_store_id=vector_store_id, status=IngestStatus.SKIPPED)

        _logger.info("Adding %d files to vector store %s", len(wanted), vector_store_id)
        batch = await self._call(
            self.client.vector_stores.file_batches.create,
            vector_store_id=vector_store_id,
            file_ids=wanted,
            label="file_batches.create",
        )
        _logger.info("Created file batch %s with %d files", batch.id, len(wanted))

        start = self._clock.monotonic()
        status = getattr(batch, "status", "in_progress")
        while status == "in_progress":
            elapsed = self._clock.monotonic() - start
            if elapsed >= self.timeout:
                _logger.warning(
                    "File batch %s still processing after %.0fs; continuing without waiting",
                    batch.id, elapsed,
                )
                self.session.mark_ingested(wanted)
                return IngestResult(
                    vector_store_id=vector_store_id,
                    status=IngestStatus.TIMED_OUT,
                    file_ids=wanted,
                    batch_id=batch.id,
                    file_counts=file_counts_to_dict(getattr(batch, "file_counts", None)),
                    elapsed=elapsed,
                )
            await self._clock.sleep(self.poll_interval)
            batch = await self._call(
                self.client.vector_stores.file_batches.retrieve,
                batch.id,
                vector_store_id=vector_store_id,
                label="file_batches.retrieve",
            )
            status = batch.status
            _logger.debug("File batch %s status: %s", batch.id, status)

        elapsed = self._clock.monotonic() - start
        _logger.info("Final file batch status: %s", status)
        if status != "completed":
            message = _batch_error_message(batch)
            _logger.error("File batch %s processing failed: %s", batch.id, message)
            raise IngestFailed(
                f"File batch processing failed: {message}",
                details={"vector_store_id": vector_store_id, "batch_id": batch.id, "status": status},
            )

        self.session.mark_ingested(wanted)
        return IngestResult(
            vector_store_id=vector_store_id,
            status=IngestStatus.COMPLETED,
            file_ids=wanted,
            batch_id=batch.id,
            file_counts=file_counts_to_dict(getattr(batch, "file_counts", None)),
            elapsed=elapsed,
        )

    async def ensure_store_and_ingest(self, file_ids: Sequence[str], *, exclude_existing: bool = False) -> IngestResult:
        store_id = await self.ensure_store()
        return await self.ingest(store_id, file_ids, exclude_existing=exclude_existing)

"""
session_manager.py
Per-session cache of remote handles with an optional durable copy.

v1.1 – Durable cache:
- PersistentSessionCache writes the current assistant id and the
  per-assistant thread handles to a JSON file
- Entries older than SESSION_CACHE_MAX_AGE (7 days) are discarded unread

v1.0 – SessionState:
- document identity → uploaded file id
- the session vector store and the files ingested into it
- the current assistant id
- assistant id → thread handle (exactly one; saving replaces)

Liveness of a thread is never stored here – thread_manager.py checks it
on demand.  One SessionState serves one user (main.py keeps one per
Streamlit session in st.session_state).
"""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, Optional, Set

from assistant_config import SESSION_CACHE_MAX_AGE, SESSION_CACHE_PATH
from core_assistant import SYSTEM_CLOCK, Clock

_logger = logging.getLogger(__name__)


# ────────────────────────────────────────────────────────────────
# Thread Handle
# ────────────────────────────────────────────────────────────────

@dataclass
class ThreadHandle:
    thread_id: str
    created_at: float
    last_accessed: float

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ThreadHandle":
        return cls(
            thread_id=str(data["thread_id"]),
            created_at=float(data.get("created_at", 0.0)),
            last_accessed=float(data.get("last_accessed", data.get("created_at", 0.0))),
        )


# ────────────────────────────────────────────────────────────────
# Session State
# ────────────────────────────────────────────────────────────────

@dataclass
class SessionState:
    """In-memory cache of remote handles for one user session."""

    clock: Clock = field(default=SYSTEM_CLOCK, repr=False)
    file_ids: Dict[str, str] = field(default_factory=dict)
    vector_store_id: Optional[str] = None
    ingested_file_ids: Set[str] = field(default_factory=set)
    assistant_id: Optional[str] = None
    threads: Dict[str, ThreadHandle] = field(default_factory=dict)

    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False, compare=False)

    # -- uploaded files ------------------------------------------------

    def get_file_id(self, document_id: str) -> Optional[str]:
        return self.file_ids.get(document_id)

    def remember_file(self, document_id: str, file_id: str) -> None:
        with self._lock:
            self.file_ids[document_id] = file_id

    # -- vector store --------------------------------------------------

    def set_vector_store(self, vector_store_id: Optional[str]) -> None:
        with self._lock:
            if vector_store_id != self.vector_store_id:
                self.ingested_file_ids = set()
            self.vector_store_id = vector_store_id

    def mark_ingested(self, file_ids: Iterable[str]) -> None:
        with self._lock:
            self.ingested_file_ids.update(file_ids)

    # -- assistant -----------------------------------------------------

    def set_assistant(self, assistant_id: Optional[str]) -> None:
        with self._lock:
            self.assistant_id = assistant_id

    def clear_assistant(self, assistant_id: Optional[str] = None) -> bool:
        """Forget the current assistant (only if it matches *assistant_id*)."""
        with self._lock:
            if self.assistant_id is None:
                return False
            if assistant_id is not None and self.assistant_id != assistant_id:
                return False
            self.assistant_id = None
            return True

    # -- threads -------------------------------------------------------

    def get_thread(self, assistant_id: str) -> Optional[ThreadHandle]:
        return self.threads.get(assistant_id)

    def save_thread(self, assistant_id: str, thread_id: str) -> ThreadHandle:
        now = self.clock.time()
        handle = ThreadHandle(thread_id=thread_id, created_at=now, last_accessed=now)
        with self._lock:
            self.threads[assistant_id] = handle
        return handle

    def touch_thread(self, assistant_id: str) -> bool:
        with self._lock:
            handle = self.threads.get(assistant_id)
            if handle is None:
                return False
            handle.last_accessed = self.clock.time()
            return True

    def evict_thread(self, assistant_id: str) -> Optional[ThreadHandle]:
        with self._lock:
            return self.threads.pop(assistant_id, None)

    def reset(self) -> None:
        with self._lock:
            self.file_ids.clear()
            self.vector_store_id = None
            self.ingested_file_ids = set()
            self.assistant_id = None
            self.threads.clear()


# ────────────────────────────────────────────────────────────────
# Durable Cache
# ────────────────────────────────────────────────────────────────

class PersistentSessionCache:
    """JSON copy of the assistant id, its vector store and per-assistant thread handles.

    Layout::

        {
          "assistant": {"id": "asst_…", "vector_store_id": "vs_…",
                        "saved_at": 1700000000.0},
          "threads": {"asst_…": {"thread_id": "thread_…", "created_at": …,
                                 "last_accessed": …, "saved_at": …}}
        }

    Anything older than *max_age* seconds is dropped on load without
    being applied.
    """

    def __init__(
        self,
        path: Optional[Path] = None,
        *,
        max_age: float = SESSION_CACHE_MAX_AGE,
        clock: Optional[Clock] = None,
    ):
        self.path = Path(path or SESSION_CACHE_PATH)
        self.max_age = max_age
        self._clock = clock or SYSTEM_CLOCK

    def _is_fresh(self, entry: Dict[str, Any]) -> bool:
        try:
            saved_at = float(entry.get("saved_at", 0))
        except (TypeError, ValueError):
            return False
        return self._clock.time() - saved_at <= self.max_age

    def _read(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            with self.path.open("r", encoding="utf-8") as fh:
                data = json.load(fh)
        except (OSError, json.JSONDecodeError) as exc:
            _logger.warning("Ignoring unreadable session cache %s: %s", self.path, exc)
            return {}
        return data if isinstance(data, dict) else {}

    def load_into(self, state: SessionState) -> SessionState:
        """Apply fresh entries to *state*; stale ones are discarded."""
        data = self._read()

        assistant = data.get("assistant")
        if isinstance(assistant, dict) and assistant.get("id"):
            if self._is_fresh(assistant):
                state.set_assistant(str(assistant["id"]))
                if assistant.get("vector_store_id"):
                    state.set_vector_store(str(assistant["vector_store_id"]))
            else:
                _logger.info("Discarding stale cached assistant %s", assistant.get("id"))

        threads = data.get("threads")
        if isinstance(threads, dict):
            for assistant_id, entry in threads.items():
                if not isinstance(entry, dict) or not entry.get("thread_id"):
                    continue
                if not self._is_fresh(entry):
                    _logger.info("Discarding stale cached thread for assistant %s", assistant_id)
                    continue
                state.threads[assistant_id] = ThreadHandle.from_dict(entry)
        return state

    def save(self, state: SessionState) -> None:
        now = self._clock.time()
        payload: Dict[str, Any] = {"threads": {}}
        if state.assistant_id:
            payload["assistant"] = {
                "id": state.assistant_id,
                "vector_store_id": state.vector_store_id,
                "saved_at": now,
            }
        for assistant_id, handle in state.threads.items():
            entry = handle.to_dict()
            entry["saved_at"] = now
            payload["threads"][assistant_id] = entry

        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        with tmp.open("w", encoding="utf-8") as fh:
            json.dump(payload, fh, indent=2)
        tmp.replace(self.path)

    def clear(self) -> None:
        if self.path.exists():
            self.path.unlink()

"""
test_session_manager.py  –  In-memory session cache and the durable JSON
cache with its 7-day expiry.
"""

from __future__ import annotations

import json

from assistant_config import SESSION_CACHE_MAX_AGE
from session_manager import PersistentSessionCache, SessionState, ThreadHandle


class TestSessionState:
    def test_save_thread_replaces(self, session, clock):
        session.save_thread("asst_1", "thread_a")
        clock.advance(10)
        handle = session.save_thread("asst_1", "thread_b")
        assert session.get_thread("asst_1") is handle
        assert handle.thread_id == "thread_b"
        assert handle.created_at == clock.now
        assert len(session.threads) == 1

    def test_touch_updates_last_accessed(self, session, clock):
        handle = session.save_thread("asst_1", "thread_a")
        clock.advance(30)
        assert session.touch_thread("asst_1")
        assert handle.last_accessed == handle.created_at + 30
        assert not session.touch_thread("asst_missing")

    def test_evict(self, session):
        session.save_thread("asst_1", "thread_a")
        assert session.evict_thread("asst_1").thread_id == "thread_a"
        assert session.get_thread("asst_1") is None
        assert session.evict_thread("asst_1") is None

    def test_changing_store_resets_ingested(self, session):
        session.set_vector_store("vs_1")
        session.mark_ingested(["file-1"])
        session.set_vector_store("vs_1")
        assert session.ingested_file_ids == {"file-1"}
        session.set_vector_store("vs_2")
        assert session.ingested_file_ids == set()

    def test_clear_assistant_only_when_matching(self, session):
        session.set_assistant("asst_1")
        assert not session.clear_assistant("asst_other")
        assert session.assistant_id == "asst_1"
        assert session.clear_assistant("asst_1")
        assert session.assistant_id is None
        assert not session.clear_assistant()

    def test_reset(self, session):
        session.remember_file("doc1", "file-1")
        session.set_vector_store("vs_1")
        session.set_assistant("asst_1")
        session.save_thread("asst_1", "thread_a")
        session.reset()
        assert session.get_file_id("doc1") is None
        assert session.vector_store_id is None
        assert session.assistant_id is None
        assert session.threads == {}


class TestPersistentSessionCache:
    def _populated(self, clock) -> SessionState:
        state = SessionState(clock=clock)
        state.set_vector_store("vs_1")
        state.set_assistant("asst_1")
        state.save_thread("asst_1", "thread_a")
        return state

    def test_save_then_load(self, tmp_path, clock):
        cache = PersistentSessionCache(tmp_path / "cache.json", clock=clock)
        cache.save(self._populated(clock))

        restored = cache.load_into(SessionState(clock=clock))
        assert restored.assistant_id == "asst_1"
        assert restored.vector_store_id == "vs_1"
        assert restored.get_thread("asst_1").thread_id == "thread_a"

    def test_assistant_without_store(self, tmp_path, clock):
        state = SessionState(clock=clock)
        state.set_assistant("asst_1")
        cache = PersistentSessionCache(tmp_path / "cache.json", clock=clock)
        cache.save(state)

        restored = cache.load_into(SessionState(clock=clock))
        assert restored.assistant_id == "asst_1"
        assert restored.vector_store_id is None

    def test_stale_entries_are_discarded(self, tmp_path, clock):
        cache = PersistentSessionCache(tmp_path / "cache.json", clock=clock)
        cache.save(self._populated(clock))
        clock.advance(SESSION_CACHE_MAX_AGE + 1)

        restored = cache.load_into(SessionState(clock=clock))
        assert restored.assistant_id is None
        assert restored.vector_store_id is None
        assert restored.get_thread("asst_1") is None

    def test_fresh_within_max_age(self, tmp_path, clock):
        cache = PersistentSessionCache(tmp_path / "cache.json", clock=clock)
        cache.save(self._populated(clock))
        clock.advance(SESSION_CACHE_MAX_AGE - 1)

        assert cache.load_into(SessionState(clock=clock)).assistant_id == "asst_1"

    def test_missing_or_corrupt_file(self, tmp_path, clock):
        path = tmp_path / "cache.json"
        cache = PersistentSessionCache(path, clock=clock)
        assert cache.load_into(SessionState(clock=clock)).assistant_id is None

        path.write_text("{not json", encoding="utf-8")
        assert cache.load_into(SessionState(clock=clock)).threads == {}

    def test_file_layout(self, tmp_path, clock):
        path = tmp_path / "nested" / "cache.json"
        PersistentSessionCache(path, clock=clock).save(self._populated(clock))
        data = json.loads(path.read_text(encoding="utf-8"))
        assert data["assistant"] == {"id": "asst_1", "vector_store_id": "vs_1", "saved_at": clock.now}
        assert data["threads"]["asst_1"]["thread_id"] == "thread_a"
        assert not path.with_suffix(".json.tmp").exists()

    def test_clear(self, tmp_path, clock):
        path = tmp_path / "cache.json"
        cache = PersistentSessionCache(path, clock=clock)
        cache.save(self._populated(clock))
        cache.clear()
        assert not path.exists()


def test_thread_handle_from_dict_defaults():
    handle = ThreadHandle.from_dict({"thread_id": "thread_a", "created_at": 5})
    assert handle.last_accessed == 5.0

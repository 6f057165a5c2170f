"""
test_core_assistant.py  –  Remote-call wrapper, error classification,
client bootstrap and the classified error payloads.
"""

from __future__ import annotations

import asyncio
import logging

import openai
import pytest
from unittest.mock import MagicMock

import core_assistant
from assistant_errors import (
    AlternateThreadAvailable,
    AssistantNotFound,
    RunFailed,
    RunTimedOut,
    ThreadNotFound,
    TransientRemoteError,
)
from core_assistant import as_transient, call_remote, is_gone_error, is_transient_error
from conftest import bad_request, connection_error, not_found, rate_limited, server_error


# ─────────────────────────────────────────────────────────────────────
#  call_remote
# ─────────────────────────────────────────────────────────────────────

class TestCallRemote:
    def test_passes_arguments_through(self, clock):
        fn = MagicMock(return_value="ok")
        result = asyncio.run(call_remote(fn, "a", label="x", clock=clock, key="v"))
        assert result == "ok"
        fn.assert_called_once_with("a", key="v")
        assert clock.sleeps == []

    def test_rate_limit_backs_off_exponentially(self, clock):
        fn = MagicMock(side_effect=[rate_limited(), rate_limited(), "ok"])
        result = asyncio.run(call_remote(fn, label="x", clock=clock))
        assert result == "ok"
        assert clock.sleeps == [2.0, 4.0]

    def test_rate_limit_exhausted_reraises(self, clock):
        fn = MagicMock(side_effect=rate_limited())
        with pytest.raises(openai.RateLimitError):
            asyncio.run(call_remote(fn, label="x", clock=clock, rate_limit_retries=3))
        assert fn.call_count == 4
        assert clock.sleeps == [2.0, 4.0, 8.0]

    def test_other_errors_propagate_without_retry(self, clock):
        fn = MagicMock(side_effect=not_found())
        with pytest.raises(openai.NotFoundError):
            asyncio.run(call_remote(fn, label="x", clock=clock))
        assert fn.call_count == 1
        assert clock.sleeps == []


# ─────────────────────────────────────────────────────────────────────
#  Classification
# ─────────────────────────────────────────────────────────────────────

class TestClassification:
    @pytest.mark.parametrize("factory", [rate_limited, server_error, connection_error])
    def test_transient(self, factory):
        exc = factory()
        assert is_transient_error(exc)
        assert not is_gone_error(exc)

    @pytest.mark.parametrize("factory", [not_found, bad_request])
    def test_gone(self, factory):
        exc = factory()
        assert is_gone_error(exc)
        assert not is_transient_error(exc)

    def test_as_transient_carries_operation(self):
        err = as_transient(server_error("boom"), "runs.retrieve")
        assert isinstance(err, TransientRemoteError)
        assert err.kind == "transient"
        assert err.details == {"operation": "runs.retrieve"}
        assert "runs.retrieve" in err.message


# ─────────────────────────────────────────────────────────────────────
#  Client bootstrap
# ─────────────────────────────────────────────────────────────────────

class TestGetClient:
    def test_missing_key_raises(self, monkeypatch):
        core_assistant.reset_client()
        monkeypatch.setattr(openai, "api_key", None)
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)
        with pytest.raises(RuntimeError):
            core_assistant.get_client()

    def test_client_is_shared(self, monkeypatch):
        core_assistant.reset_client()
        monkeypatch.setattr(openai, "api_key", "sk-test")
        try:
            assert core_assistant.get_client() is core_assistant.get_client()
        finally:
            core_assistant.reset_client()


# ─────────────────────────────────────────────────────────────────────
#  Error payloads
# ─────────────────────────────────────────────────────────────────────

class TestErrorPayloads:
    def test_thread_not_found_is_session_expired(self):
        err = ThreadNotFound()
        assert err.kind == "session_expired"
        assert err.to_dict()["code"] == "thread_not_found"
        assert err.alternate_thread_id is None

    def test_alternate_thread_payload(self):
        err = AlternateThreadAvailable("thread_gone", "thread_live")
        assert isinstance(err, ThreadNotFound)
        payload = err.to_dict()
        assert payload["code"] == "thread_alternative_available"
        assert payload["alternate_thread_id"] == "thread_live"
        assert payload["details"] == {"requested_thread_id": "thread_gone"}

    def test_run_failed_keeps_reason(self):
        err = RunFailed("quota exceeded", run_id="run_1")
        assert err.reason == "quota exceeded"
        assert "quota exceeded" in err.message
        assert err.kind == "service_failure"

    def test_kinds(self):
        assert RunTimedOut("slow").kind == "timeout"
        assert AssistantNotFound("gone").kind == "session_expired"
        assert RunTimedOut("slow").user_message == "The request timed out."


# ─────────────────────────────────────────────────────────────────────
#  Logging setup
# ─────────────────────────────────────────────────────────────────────

class TestConfigureLogging:
    def test_repeat_calls_install_handlers_once(self, tmp_path):
        core_assistant.reset_logging()
        root = logging.getLogger()
        level = root.level
        before = len(root.handlers)
        try:
            first = core_assistant.configure_logging(log_dir=tmp_path)
            second = core_assistant.configure_logging(log_dir=tmp_path / "other")
            assert first == second
            assert first.parent == tmp_path
            assert len(root.handlers) == before + 2
        finally:
            core_assistant.reset_logging()
            root.setLevel(level)
        assert len(root.handlers) == before

    def test_reset_allows_reconfiguring(self, tmp_path):
        core_assistant.reset_logging()
        root = logging.getLogger()
        level = root.level
        try:
            first = core_assistant.configure_logging(log_dir=tmp_path / "a")
            core_assistant.reset_logging()
            second = core_assistant.configure_logging(log_dir=tmp_path / "b")
            assert first.parent != second.parent
        finally:
            core_assistant.reset_logging()
            root.setLevel(level)

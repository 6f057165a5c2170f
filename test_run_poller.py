"""
test_run_poller.py  –  Terminal-status mapping, the wall-clock ceiling and
best-effort cancellation.
"""

from __future__ import annotations

import asyncio
from types import SimpleNamespace

import pytest

from assistant_errors import TransientRemoteError
from run_poller import RunPoller, RunStatus
from conftest import FakeClock, connection_error, not_found, server_error


def _run(status: str, **extra):
    return SimpleNamespace(id="run_1", status=status, last_error=None, incomplete_details=None, **extra)


@pytest.fixture
def poller(client, clock):
    return RunPoller(client=client, clock=clock, poll_interval=1.0, timeout=3.0, status_retries=2)


class TestTerminalStatuses:
    def test_completed(self, poller, client):
        client.beta.threads.runs.retrieve.return_value = _run("completed")
        outcome = asyncio.run(poller.await_completion("thread_1", "run_1"))
        assert outcome.status == RunStatus.COMPLETED
        assert outcome.failure_reason is None
        client.beta.threads.runs.retrieve.assert_called_with("run_1", thread_id="thread_1")

    def test_failed_after_progress_carries_reason(self, poller, client):
        failed = _run("failed")
        failed.last_error = SimpleNamespace(code="rate_limit_exceeded", message="quota exceeded")
        client.beta.threads.runs.retrieve.side_effect = [
            _run("queued"), _run("in_progress"), _run("in_progress"), failed,
        ]
        poller.timeout = 60.0

        outcome = asyncio.run(poller.await_completion("thread_1", "run_1"))

        assert outcome.status == RunStatus.FAILED
        assert outcome.failure_reason == "quota exceeded"
        assert outcome.remote_status == "failed"
        client.beta.threads.runs.cancel.assert_not_called()

    @pytest.mark.parametrize("remote, expected", [
        ("cancelled", RunStatus.CANCELLED),
        ("expired", RunStatus.TIMED_OUT),
        ("requires_action", RunStatus.FAILED),
        ("incomplete", RunStatus.FAILED),
    ])
    def test_status_mapping(self, poller, client, remote, expected):
        client.beta.threads.runs.retrieve.return_value = _run(remote)
        outcome = asyncio.run(poller.await_completion("thread_1", "run_1"))
        assert outcome.status == expected
        client.beta.threads.runs.cancel.assert_not_called()

    def test_incomplete_reason(self, poller, client):
        run = _run("incomplete")
        run.incomplete_details = SimpleNamespace(reason="max_prompt_tokens")
        client.beta.threads.runs.retrieve.return_value = run
        outcome = asyncio.run(poller.await_completion("thread_1", "run_1"))
        assert outcome.failure_reason == "incomplete: max_prompt_tokens"

    def test_unknown_status_keeps_polling(self, poller, client):
        client.beta.threads.runs.retrieve.side_effect = [_run("paused"), _run("completed")]
        outcome = asyncio.run(poller.await_completion("thread_1", "run_1"))
        assert outcome.status == RunStatus.COMPLETED


class TestCeiling:
    def test_times_out_and_cancels(self, poller, client, clock):
        client.beta.threads.runs.retrieve.return_value = _run("in_progress")

        outcome = asyncio.run(poller.await_completion("thread_1", "run_1"))

        assert outcome.status == RunStatus.TIMED_OUT
        assert outcome.elapsed > 3.0
        client.beta.threads.runs.cancel.assert_called_once_with("run_1", thread_id="thread_1")

    def test_budget_counts_from_submission(self, poller, client, clock):
        client.beta.threads.runs.retrieve.return_value = _run("in_progress")
        submitted_at = clock.monotonic()
        clock.advance(3.0)

        outcome = asyncio.run(poller.await_completion("thread_1", "run_1", submitted_at=submitted_at))

        assert outcome.status == RunStatus.TIMED_OUT
        assert client.beta.threads.runs.retrieve.call_count == 1

    def test_cancel_failure_still_times_out(self, poller, client):
        client.beta.threads.runs.retrieve.return_value = _run("in_progress")
        client.beta.threads.runs.cancel.side_effect = not_found()
        outcome = asyncio.run(poller.await_completion("thread_1", "run_1"))
        assert outcome.status == RunStatus.TIMED_OUT


class TestStatusFetchErrors:
    def test_transient_error_retried(self, poller, client):
        client.beta.threads.runs.retrieve.side_effect = [connection_error(), _run("completed")]
        outcome = asyncio.run(poller.await_completion("thread_1", "run_1"))
        assert outcome.status == RunStatus.COMPLETED

    def test_transient_error_bounded(self, poller, client):
        client.beta.threads.runs.retrieve.side_effect = server_error()
        with pytest.raises(TransientRemoteError):
            asyncio.run(poller.await_completion("thread_1", "run_1"))
        assert client.beta.threads.runs.retrieve.call_count == 3


class _BlockingClock(FakeClock):
    async def sleep(self, seconds: float) -> None:
        await asyncio.Event().wait()


def test_cancelling_the_wait_cancels_the_run(client):
    poller = RunPoller(client=client, clock=_BlockingClock(), poll_interval=1.0, timeout=3.0)

    async def scenario():
        task = asyncio.create_task(poller.await_completion("thread_1", "run_1"))
        await asyncio.sleep(0)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    asyncio.run(scenario())
    client.beta.threads.runs.cancel.assert_called_once_with("run_1", thread_id="thread_1")

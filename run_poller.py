"""
run_poller.py
Drive a submitted run to a terminal state within a wall-clock budget.

The budget is measured from submission, not from each poll.  Past the
budget the run is cancelled (best effort) and TIMED_OUT is returned
rather than raised.  Cancelling the awaiting task also sends the
best-effort remote cancel before the CancelledError propagates.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

import openai

from assistant_config import RUN_POLL_INTERVAL, RUN_STATUS_RETRIES, RUN_TIMEOUT
from core_assistant import (
    SYSTEM_CLOCK,
    Clock,
    as_transient,
    call_remote,
    get_client,
    is_transient_error,
)

_logger = logging.getLogger(__name__)

IN_PROGRESS_STATUSES = frozenset({"queued", "in_progress", "cancelling"})


class RunStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    TIMED_OUT = "timed_out"


# Remote status → terminal status.  requires_action counts as a failure:
# assistants built here only use file_search and never submit tool outputs.
_TERMINAL = {
    "completed": RunStatus.COMPLETED,
    "failed": RunStatus.FAILED,
    "incomplete": RunStatus.FAILED,
    "requires_action": RunStatus.FAILED,
    "cancelled": RunStatus.CANCELLED,
    "expired": RunStatus.TIMED_OUT,
}


@dataclass
class RunOutcome:
    status: RunStatus
    thread_id: str
    run_id: str
    remote_status: str
    failure_reason: Optional[str] = None
    elapsed: float = 0.0


def _failure_reason(run: Any) -> Optional[str]:
    last_error = getattr(run, "last_error", None)
    if last_error is not None:
        message = getattr(last_error, "message", None)
        if message:
            return str(message)
    incomplete = getattr(run, "incomplete_details", None)
    if incomplete is not None:
        reason = getattr(incomplete, "reason", None)
        if reason:
            return f"incomplete: {reason}"
    status = getattr(run, "status", None)
    if status == "requires_action":
        return "run requires tool outputs, which this assistant does not provide"
    return None


class RunPoller:
    def __init__(
        self,
        *,
        client: Optional[Any] = None,
        clock: Optional[Clock] = None,
        poll_interval: float = RUN_POLL_INTERVAL,
        timeout: float = RUN_TIMEOUT,
        status_retries: int = RUN_STATUS_RETRIES,
    ):
        self._client = client
        self._clock = clock or SYSTEM_CLOCK
        self.poll_interval = poll_interval
        self.timeout = timeout
        self.status_retries = status_retries

    @property
    def client(self) -> Any:
        return self._client or get_client()

    async def _fetch_run(self, thread_id: str, run_id: str) -> Any:
        """Retrieve the run, retrying transient errors a bounded number of times."""
        attempt = 0
        while True:
            try:
                return await call_remote(
                    self.client.beta.threads.runs.retrieve,
                    run_id,
                    thread_id=thread_id,
                    label="runs.retrieve",
                    clock=self._clock,
                    rate_limit_retries=0,
                )
            except openai.APIError as exc:
                if not is_transient_error(exc):
                    raise
                attempt += 1
                if attempt > self.status_retries:
                    _logger.error("Error retrieving status of run %s: %s", run_id, exc)
                    raise as_transient(exc, "runs.retrieve") from exc
                _logger.warning(
                    "Transient error retrieving run %s (attempt %d/%d): %s",
                    run_id, attempt, self.status_retries, exc,
                )

    async def cancel(self, thread_id: str, run_id: str) -> bool:
        """Best-effort cancel; failures are logged, never raised."""
        try:
            await call_remote(
                self.client.beta.threads.runs.cancel,
                run_id,
                thread_id=thread_id,
                label="runs.cancel",
                clock=self._clock,
                rate_limit_retries=0,
            )
        except openai.APIError as exc:
            _logger.error("Error cancelling run %s: %s", run_id, exc)
            return False
        _logger.info("Cancelled run %s", run_id)
        return True

    async def await_completion(
        self,
        thread_id: str,
        run_id: str,
        *,
        submitted_at: Optional[float] = None,
    ) -> RunOutcome:
        """Poll until the run is terminal or the budget is spent.

        *submitted_at* is a value of the poller clock's ``monotonic()``;
        it defaults to now.
        """
        start = self._clock.monotonic() if submitted_at is None else submitted_at
        remote_status = "queued"
        try:
            while True:
                await self._clock.sleep(self.poll_interval)
                run = await self._fetch_run(thread_id, run_id)
                remote_status = getattr(run, "status", "unknown")
                elapsed = self._clock.monotonic() - start
                _logger.debug("Run %s status: %s (%.0fs)", run_id, remote_status, elapsed)

                terminal = _TERMINAL.get(remote_status)
                if terminal is not None:
                    reason = _failure_reason(run) if terminal != RunStatus.COMPLETED else None
                    if terminal == RunStatus.FAILED:
                        _logger.error("Run %s failed: %s", run_id, reason)
                    return RunOutcome(
                        status=terminal,
                        thread_id=thread_id,
                        run_id=run_id,
                        remote_status=remote_status,
                        failure_reason=reason,
                        elapsed=elapsed,
                    )

                if remote_status not in IN_PROGRESS_STATUSES:
                    _logger.warning("Run %s reported unknown status %r; still polling", run_id, remote_status)

                if elapsed > self.timeout:
                    _logger.error(
                        "Run %s timed out after %.0fs, status: %s", run_id, elapsed, remote_status
                    )
                    await self.cancel(thread_id, run_id)
                    return RunOutcome(
                        status=RunStatus.TIMED_OUT,
                        thread_id=thread_id,
                        run_id=run_id,
                        remote_status=remote_status,
                        failure_reason=f"no terminal status after {self.timeout:.0f}s",
                        elapsed=elapsed,
                    )
        except asyncio.CancelledError:
            _logger.warning("Polling of run %s cancelled; cancelling remote run", run_id)
            await asyncio.shield(self.cancel(thread_id, run_id))
            raise

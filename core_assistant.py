"""
core_assistant.py
Pure-python plumbing shared by every manager, the Streamlit UI (main.py) and
the async REPL.  NO Streamlit or console I/O; it just raises exceptions.

v1.2 – Injectable clock:
- Clock supplies wall time, monotonic time and a cancellable sleep so
  polling ceilings and cache expiry are deterministic under test

v1.1 – Remote call wrapper:
- call_remote() runs the synchronous SDK in a worker thread
  (asyncio.to_thread) so managers stay coroutines
- Exponential backoff on rate limits (3 retries: 2s/4s/8s)
- is_gone_error() / is_transient_error() classify SDK exceptions for the
  verify-or-recreate checks

v1.0 – Shared OpenAI client (lazy-init so main.py can set the API key first)
"""

from __future__ import annotations

import asyncio
import logging
import os
import threading
import time
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, List, Optional

import httpx
import openai
from openai import OpenAI

from assistant_config import (
    HTTP_TIMEOUT_SECONDS,
    LOG_DIR,
    RATE_LIMIT_BASE_DELAY,
    RATE_LIMIT_RETRIES,
)
from assistant_errors import TransientRemoteError

_logger = logging.getLogger(__name__)

# ──────────────────────────────────────────────────────────────────────
#  OpenAI Client – lazy-init so main.py can set the API key first
# ──────────────────────────────────────────────────────────────────────
_client: Optional[OpenAI] = None


def get_client() -> OpenAI:
    """Return a shared OpenAI client (created lazily).

    The client gets its own httpx transport with an explicit timeout so a
    hung request cannot outlive the run-polling ceiling by much.
    """
    global _client
    if _client is None:
        # Prefer explicit key from openai module (set by main.py),
        # then fall back to OPENAI_API_KEY env var.
        api_key = getattr(openai, "api_key", None) or os.environ.get("OPENAI_API_KEY")
        if not api_key:
            raise RuntimeError(
                "No OpenAI API key found. Set openai.api_key or the "
                "OPENAI_API_KEY environment variable before calling get_client()."
            )
        _client = OpenAI(
            api_key=api_key,
            http_client=httpx.Client(timeout=httpx.Timeout(HTTP_TIMEOUT_SECONDS)),
        )
    return _client


def reset_client() -> None:
    """Force re-creation of the client (e.g. after API key change)."""
    global _client
    _client = None


# ──────────────────────────────────────────────────────────────────────
#  Clock
# ──────────────────────────────────────────────────────────────────────
class Clock:
    """Wall time, monotonic time and a cancellable sleep.

    Tests substitute a fake whose sleep advances time without waiting.
    """

    def time(self) -> float:
        return time.time()

    def monotonic(self) -> float:
        return time.monotonic()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)


SYSTEM_CLOCK = Clock()


# ──────────────────────────────────────────────────────────────────────
#  Error classification
# ──────────────────────────────────────────────────────────────────────
_TRANSIENT_ERRORS = (
    openai.RateLimitError,
    openai.APIConnectionError,   # includes APITimeoutError
    openai.InternalServerError,
)

# A retrieve that answers 404 / 400 means the handle is gone for good.
_GONE_ERRORS = (
    openai.NotFoundError,
    openai.BadRequestError,
)


def is_transient_error(exc: BaseException) -> bool:
    return isinstance(exc, _TRANSIENT_ERRORS)


def is_gone_error(exc: BaseException) -> bool:
    return isinstance(exc, _GONE_ERRORS)


def as_transient(exc: BaseException, label: str) -> TransientRemoteError:
    return TransientRemoteError(
        f"[{label}] {type(exc).__name__}: {exc}",
        details={"operation": label},
    )


# ──────────────────────────────────────────────────────────────────────
#  Remote calls
# ──────────────────────────────────────────────────────────────────────
async def call_remote(
    fn: Callable[..., Any],
    *args: Any,
    label: str = "",
    clock: Optional[Clock] = None,
    rate_limit_retries: int = RATE_LIMIT_RETRIES,
    base_delay: float = RATE_LIMIT_BASE_DELAY,
    **kwargs: Any,
) -> Any:
    """Run a blocking SDK call in a worker thread.

    RateLimitError is retried with exponential backoff; everything else
    (and the last rate limit) propagates unchanged for the caller to
    classify.
    """
    clock = clock or SYSTEM_CLOCK
    attempt = 0
    while True:
        try:
            return await asyncio.to_thread(fn, *args, **kwargs)
        except openai.RateLimitError:
            attempt += 1
            if attempt > rate_limit_retries:
                raise
            delay = base_delay * (2 ** (attempt - 1))
            _logger.warning(
                "Rate limited [%s] (attempt %d/%d), backing off %.0fs",
                label, attempt, rate_limit_retries, delay,
            )
            await clock.sleep(delay)


# ──────────────────────────────────────────────────────────────────────
#  Logging – configured once per process
# ──────────────────────────────────────────────────────────────────────
_LOG_FORMAT = "[%(asctime)s] %(levelname)s %(name)s: %(message)s"

_log_lock = threading.Lock()
_log_path: Optional[Path] = None
_log_handlers: List[logging.Handler] = []


def configure_logging(level: int = logging.INFO, log_dir: Optional[Path] = None) -> Path:
    """Log to stderr and to a timestamped file, refreshing ``latest.log``.

    Streamlit re-runs main.py for every browser session, so only the first
    call installs handlers; later calls return the same log path.
    """
    global _log_path
    with _log_lock:
        if _log_path is not None:
            return _log_path

        log_dir = Path(log_dir or LOG_DIR)
        log_dir.mkdir(parents=True, exist_ok=True)
        stamp = datetime.now().isoformat(timespec="seconds").replace(":", "-")
        log_path = log_dir / f"app-{stamp}.log"

        root = logging.getLogger()
        root.setLevel(level)
        formatter = logging.Formatter(_LOG_FORMAT)
        for handler in (logging.StreamHandler(), logging.FileHandler(log_path, encoding="utf-8")):
            handler.setFormatter(formatter)
            root.addHandler(handler)
            _log_handlers.append(handler)

        latest = log_dir / "latest.log"
        try:
            if latest.is_symlink() or latest.exists():
                latest.unlink()
            latest.symlink_to(log_path)
        except OSError as exc:
            _logger.info("Could not link latest log: %s", exc)

        _log_path = log_path
        return log_path


def reset_logging() -> None:
    """Remove and close the handlers installed by configure_logging()."""
    global _log_path
    with _log_lock:
        root = logging.getLogger()
        while _log_handlers:
            handler = _log_handlers.pop()
            root.removeHandler(handler)
            handler.close()
        _log_path = None

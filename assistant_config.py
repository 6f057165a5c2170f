# assistant_config.py - Document Assistant Configuration
# ────────────────────────────────────────────────────────────────
# v1.2 – Durable session cache
# - SESSION_CACHE_PATH / SESSION_CACHE_MAX_AGE for the client-side
#   assistant + thread cache (stale entries discarded unread)
#
# v1.1 – Bounded polling
# - Hard ceilings on vector store ingestion and run polling
# - RUN_STATUS_RETRIES: transient status-fetch errors are retried a
#   bounded number of times before surfacing
#
# v1.0 – Assistants API (threads + runs + vector stores)
# - One vector store per session, one assistant per session,
#   one thread per assistant
# ────────────────────────────────────────────────────────────────

import os
from pathlib import Path
from typing import Any, Dict


def _env_str(key: str, default: str) -> str:
    if (value := os.getenv(key)):
        return value
    return default


def _env_float(key: str, default: float) -> float:
    if (value := os.getenv(key)):
        try:
            return float(value)
        except ValueError:
            pass
    return default


def _env_int(key: str, default: int) -> int:
    if (value := os.getenv(key)):
        try:
            return int(value)
        except ValueError:
            pass
    return default


_BASE_DIR = Path(__file__).resolve().parent

# ────────────────────────────────────────────────────────────────
# Model & Assistant Defaults
# ────────────────────────────────────────────────────────────────

DEFAULT_MODEL = _env_str("ASSISTANT_MODEL", "gpt-4o")

# Every assistant gets file_search bound to the session vector store.
ASSISTANT_TOOLS = [{"type": "file_search"}]

DEFAULT_ASSISTANT_NAME = "Research Assistant"
DEFAULT_INSTRUCTIONS = (
    "You are a research assistant. Answer questions using only the "
    "attached papers. Cite the paper title for every claim and say so "
    "plainly when the papers do not cover a question."
)

# Directory listing shows a short preview of each assistant's instructions.
INSTRUCTIONS_PREVIEW_CHARS = 100

# OpenAI caps assistants.list pages at 100.
ASSISTANT_LIST_PAGE_SIZE = 100

# ────────────────────────────────────────────────────────────────
# Files & Vector Store
# ────────────────────────────────────────────────────────────────

FILE_PURPOSE = "assistants"
VECTOR_STORE_NAME_PREFIX = _env_str("VECTOR_STORE_NAME_PREFIX", "Zotero Document Store")

INGEST_POLL_INTERVAL = _env_float("INGEST_POLL_INTERVAL", 2.0)   # seconds
INGEST_TIMEOUT = _env_float("INGEST_TIMEOUT", 300.0)             # 5 minutes

# ────────────────────────────────────────────────────────────────
# Runs
# ────────────────────────────────────────────────────────────────

RUN_POLL_INTERVAL = _env_float("RUN_POLL_INTERVAL", 1.0)         # seconds
RUN_TIMEOUT = _env_float("RUN_TIMEOUT", 120.0)                   # 2 minutes, from submission
RUN_STATUS_RETRIES = _env_int("RUN_STATUS_RETRIES", 2)

# Only the newest messages matter when picking the reply.
MESSAGE_LIST_LIMIT = 20

# Rate-limit backoff for remote calls (2s/4s/8s)
RATE_LIMIT_RETRIES = 3
RATE_LIMIT_BASE_DELAY = 2.0

# ────────────────────────────────────────────────────────────────
# Session Cache
# ────────────────────────────────────────────────────────────────

SESSION_CACHE_PATH = Path(_env_str("SESSION_CACHE_PATH", str(_BASE_DIR / ".cache" / "session_cache.json")))
SESSION_CACHE_MAX_AGE = _env_float("SESSION_CACHE_MAX_AGE", 7 * 24 * 60 * 60)  # 7 days

# ────────────────────────────────────────────────────────────────
# Zotero & Local Files
# ────────────────────────────────────────────────────────────────

ZOTERO_BASE_URL = _env_str("ZOTERO_BASE_URL", "https://api.zotero.org")
ZOTERO_API_VERSION = "3"
ZOTERO_PAGE_SIZE = 100

TEMP_DIR = Path(_env_str("TEMP_DIR", str(_BASE_DIR / "temp")))
LOG_DIR = Path(_env_str("LOG_DIR", str(_BASE_DIR / "logs")))

HTTP_TIMEOUT_SECONDS = _env_float("HTTP_TIMEOUT_SECONDS", 60.0)

# ────────────────────────────────────────────────────────────────
# Grouped view (debug pane / REPL banner)
# ────────────────────────────────────────────────────────────────

ASSISTANT_CONFIG: Dict[str, Any] = {
    "model": DEFAULT_MODEL,
    "tools": [tool["type"] for tool in ASSISTANT_TOOLS],
    "ingest_poll_interval": INGEST_POLL_INTERVAL,
    "ingest_timeout": INGEST_TIMEOUT,
    "run_poll_interval": RUN_POLL_INTERVAL,
    "run_timeout": RUN_TIMEOUT,
    "session_cache_max_age_days": SESSION_CACHE_MAX_AGE / 86_400,
    "api": "assistants",
}


def get_assistant_config() -> Dict[str, Any]:
    """Return a copy of the grouped configuration."""
    return dict(ASSISTANT_CONFIG)

"""
conftest.py  –  Shared fixtures: a fake clock, a MagicMock OpenAI client
and factories for the SDK exceptions the managers classify.
"""

from __future__ import annotations

import asyncio
from types import SimpleNamespace

import httpx
import openai
import pytest
from unittest.mock import MagicMock

from core_assistant import Clock
from session_manager import SessionState

_URL = "https://api.openai.com/v1/test"


class FakeClock(Clock):
    """Sleeping advances both clocks instantly."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start
        self.mono = 0.0
        self.sleeps = []

    def time(self) -> float:
        return self.now

    def monotonic(self) -> float:
        return self.mono

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.advance(seconds)
        await asyncio.sleep(0)

    def advance(self, seconds: float) -> None:
        self.now += seconds
        self.mono += seconds


def _status_error(cls, status: int, message: str):
    response = httpx.Response(status, request=httpx.Request("GET", _URL))
    return cls(message, response=response, body=None)


def not_found(message: str = "No such object") -> openai.NotFoundError:
    return _status_error(openai.NotFoundError, 404, message)


def bad_request(message: str = "Invalid request") -> openai.BadRequestError:
    return _status_error(openai.BadRequestError, 400, message)


def unauthorized(message: str = "Incorrect API key provided") -> openai.AuthenticationError:
    return _status_error(openai.AuthenticationError, 401, message)


def rate_limited(message: str = "Rate limit reached") -> openai.RateLimitError:
    return _status_error(openai.RateLimitError, 429, message)


def server_error(message: str = "Server error") -> openai.InternalServerError:
    return _status_error(openai.InternalServerError, 500, message)


def connection_error() -> openai.APIConnectionError:
    return openai.APIConnectionError(request=httpx.Request("GET", _URL))


def text_message(text: str, *, run_id: str = "run_1", role: str = "assistant", msg_id: str = "msg_1"):
    return SimpleNamespace(
        id=msg_id,
        role=role,
        run_id=run_id,
        content=[SimpleNamespace(type="text", text=SimpleNamespace(value=text))],
    )


def remote_assistant(
    assistant_id: str = "asst_1",
    *,
    vector_store_id: str = "vs_1",
    created_at: int = 1,
    instructions: str = "Answer from the papers.",
    tools=("file_search",),
):
    return SimpleNamespace(
        id=assistant_id,
        name="Research Assistant",
        instructions=instructions,
        model="gpt-4o",
        description=None,
        created_at=created_at,
        tools=[SimpleNamespace(type=t) for t in tools],
        tool_resources=SimpleNamespace(file_search=SimpleNamespace(vector_store_ids=[vector_store_id])),
    )


def file_counts(total: int = 0, completed: int = 0, failed: int = 0):
    return SimpleNamespace(total=total, completed=completed, in_progress=0, failed=failed, cancelled=0)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def session(clock) -> SessionState:
    return SessionState(clock=clock)


@pytest.fixture
def client() -> MagicMock:
    return MagicMock()

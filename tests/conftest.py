"""Shared test fixtures for the portfolio chat core."""

import json
import sys
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from llm.base import ChatProvider, GenerateResponse, Usage  # noqa: E402
from llm.registry import Pricing, ProviderDescriptor, ProviderRegistry  # noqa: E402


def sse(text: str) -> bytes:
    """One OpenAI-style SSE delta frame."""
    return f"data: {json.dumps({'choices': [{'delta': {'content': text}}]})}\n\n".encode()


DONE = b"data: [DONE]\n\n"


class FixedClock:
    """Deterministic clock; ``advance`` moves it forward."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class FakeProvider(ChatProvider):
    """Scripted provider.

    Each call pops the next outcome: an exception is raised, a
    GenerateResponse is returned (or streamed as one frame), an async
    iterator is streamed as raw chunks, and a list is streamed item by item
    where exception items are raised mid-stream.
    With nothing scripted every call answers ``"ok"``.
    """

    def __init__(self, provider_id: str, outcomes=None):
        self._id = provider_id
        self.outcomes = list(outcomes or [])
        self.calls = 0
        self.streams_closed = 0
        self.last_tools = None
        self.last_messages = None

    @property
    def provider_id(self) -> str:
        return self._id

    def _next(self, messages, tools):
        self.calls += 1
        self.last_messages = messages
        self.last_tools = tools
        if self.outcomes:
            return self.outcomes.pop(0)
        return GenerateResponse(content="ok", usage=Usage(10, 2, 12))

    async def complete(self, messages, tools=None):
        outcome = self._next(messages, tools)
        if isinstance(outcome, BaseException):
            raise outcome
        if isinstance(outcome, list):
            return GenerateResponse(content="".join(i for i in outcome if isinstance(i, str)))
        return outcome

    @asynccontextmanager
    async def open_stream(self, messages, tools=None):
        outcome = self._next(messages, tools)
        if isinstance(outcome, BaseException):
            raise outcome
        if isinstance(outcome, GenerateResponse):
            chunks = self._iterate([sse(outcome.content or ""), DONE])
        elif hasattr(outcome, "__anext__"):
            chunks = outcome
        else:
            chunks = self._iterate(outcome)
        try:
            yield chunks
        finally:
            self.streams_closed += 1

    @staticmethod
    async def _iterate(items):
        for item in items:
            if isinstance(item, BaseException):
                raise item
            yield sse(item) if isinstance(item, str) else item


def make_descriptor(provider_id: str = "p1", **overrides) -> ProviderDescriptor:
    fields = {
        "id": provider_id,
        "name": provider_id.upper(),
        "vendor": "openrouter",
        "model": f"model-{provider_id}",
        "endpoint": "https://openrouter.test/api/v1/chat/completions",
        "api_key": "sk-or-v1-test",
        "supports_tools": True,
        "supports_streaming": True,
        "pricing": Pricing(),
    }
    fields.update(overrides)
    return ProviderDescriptor(**fields)


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def descriptor_factory():
    return make_descriptor


@pytest.fixture
def registry():
    """Three providers, round-robin order p1, p2, p3."""
    return ProviderRegistry([make_descriptor("p1"), make_descriptor("p2"), make_descriptor("p3")])


@pytest.fixture
def fake_provider():
    """Factory for scripted providers: ``fake_provider("p1", [outcomes...])``."""
    return FakeProvider


@pytest.fixture
def sse_frame():
    return sse


@pytest.fixture
def history():
    """Conversation where the assistant stated prices and holdings."""
    return [
        {"role": "user", "content": "What is my portfolio worth?"},
        {
            "role": "assistant",
            "content": (
                "Here are your holdings:\n"
                "Apple Inc. (AAPL) - 100 shares\n"
                "Microsoft Corporation (MSFT) - 50 shares\n"
                "AAPL: $150.00\nMSFT: $400.00\n"
                "Your total portfolio value is $35,000.00"
            ),
        },
        {"role": "user", "content": "And how is AAPL doing today?"},
    ]

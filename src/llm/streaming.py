"""Streaming relay — decode incremental provider responses into text fragments.

Providers stream either Server-Sent Events (``data: {...}`` lines, optionally
terminated by ``data: [DONE]``) or newline-delimited JSON. Both are line
framed, so a single decoder handles them; only the JSON envelope differs and
``extract_fragment`` normalises that.
"""

import codecs
import json
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable

import structlog

from .base import GenerateResponse, MalformedResponseError, ProviderHTTPError, ToolCall, Usage

logger = structlog.get_logger()

DONE_MARKER = "[DONE]"

_FINISH_REASONS = {
    "stop": "stop",
    "end_turn": "stop",
    "length": "max_tokens",
    "max_tokens": "max_tokens",
    "tool_calls": "tool_calls",
    "tool_use": "tool_calls",
}


class FrameDecoder:
    """Turns arbitrary byte chunks into complete frame payloads.

    A frame is one line. Bytes after the last newline (including a split
    multi-byte UTF-8 sequence) are held until the next ``feed``.
    """

    def __init__(self):
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""

    def feed(self, chunk: bytes | str) -> list[str]:
        text = chunk if isinstance(chunk, str) else self._decoder.decode(chunk)
        self._buffer += text
        lines = self._buffer.split("\n")
        self._buffer = lines.pop()
        return self._payloads(lines)

    def flush(self) -> list[str]:
        """Drain whatever is left once the transport has closed."""
        self._buffer += self._decoder.decode(b"", final=True)
        remaining, self._buffer = self._buffer, ""
        return self._payloads([remaining])

    @staticmethod
    def _payloads(lines: list[str]) -> list[str]:
        payloads = []
        for raw in lines:
            line = raw.strip()
            # blank lines separate SSE events; ":" lines are keep-alive comments
            if not line or line.startswith(":"):
                continue
            if line.startswith("data:"):
                payloads.append(line[5:].strip())
            elif line.startswith(("event:", "id:", "retry:")):
                continue
            else:
                payloads.append(line)
        return payloads


def extract_fragment(payload: dict) -> str | None:
    """Pull the text delta out of a provider-specific envelope."""
    choices = payload.get("choices")
    if isinstance(choices, list) and choices:
        first = choices[0] or {}
        delta = first.get("delta") or {}
        if isinstance(delta, dict) and delta.get("content"):
            return delta["content"]
        if first.get("text"):
            return first["text"]
        return None

    delta = payload.get("delta")
    if isinstance(delta, dict) and delta.get("text"):
        return delta["text"]

    message = payload.get("message")
    if isinstance(message, dict) and isinstance(message.get("content"), str):
        return message["content"] or None

    for key in ("content", "token", "response"):
        value = payload.get(key)
        if isinstance(value, str) and value:
            return value
    return None


def extract_finish_reason(payload: dict) -> str | None:
    choices = payload.get("choices")
    if isinstance(choices, list) and choices:
        reason = (choices[0] or {}).get("finish_reason")
    else:
        delta = payload.get("delta")
        reason = delta.get("stop_reason") if isinstance(delta, dict) else None
    return _FINISH_REASONS.get(reason) if reason else None


def extract_tool_deltas(payload: dict) -> list[dict]:
    """Partial tool calls carried by an OpenAI-style ``delta.tool_calls``."""
    choices = payload.get("choices")
    if not isinstance(choices, list) or not choices:
        return []
    delta = (choices[0] or {}).get("delta")
    if not isinstance(delta, dict):
        return []
    deltas = delta.get("tool_calls")
    return [d for d in deltas if isinstance(d, dict)] if isinstance(deltas, list) else []


@dataclass
class StreamAccumulator:
    """Collects fragments and trailing metadata of one streamed call."""

    parts: list[str] = field(default_factory=list)
    usage: Usage | None = None
    finish_reason: str = "stop"
    done: bool = False
    # tool call index -> {"id", "name", "arguments"} with arguments concatenated
    tool_parts: dict[int, dict] = field(default_factory=dict)

    @property
    def content(self) -> str:
        return "".join(self.parts)

    def add_tool_delta(self, delta: dict) -> None:
        index = delta.get("index")
        if not isinstance(index, int):
            index = len(self.tool_parts)
        slot = self.tool_parts.setdefault(index, {"id": "", "name": "", "arguments": ""})
        if delta.get("id"):
            slot["id"] = delta["id"]
        fn = delta.get("function")
        if not isinstance(fn, dict):
            fn = {}
        if fn.get("name"):
            slot["name"] = fn["name"]
        if isinstance(fn.get("arguments"), str):
            slot["arguments"] += fn["arguments"]

    @property
    def tool_calls(self) -> list[ToolCall]:
        calls = []
        for index in sorted(self.tool_parts):
            slot = self.tool_parts[index]
            try:
                arguments = json.loads(slot["arguments"] or "{}")
            except json.JSONDecodeError:
                arguments = {"_raw": slot["arguments"]}
            calls.append(ToolCall(id=slot["id"], name=slot["name"], arguments=arguments))
        return calls

    def to_response(self) -> GenerateResponse:
        return GenerateResponse(
            content=self.content,
            tool_calls=self.tool_calls,
            usage=self.usage,
            finish_reason=self.finish_reason,
        )


class StreamingRelay:
    """Republishes provider fragments in arrival order while accumulating them."""

    async def fragments(
        self, chunks: AsyncIterator[bytes], accumulator: StreamAccumulator
    ) -> AsyncIterator[str]:
        """Yield each text fragment as soon as its frame is complete."""
        decoder = FrameDecoder()
        async for chunk in chunks:
            for frame in decoder.feed(chunk):
                fragment = self._consume(frame, accumulator)
                if fragment:
                    yield fragment
                if accumulator.done:
                    return
        # Clean close without a terminal marker: what we have is final
        for frame in decoder.flush():
            fragment = self._consume(frame, accumulator)
            if fragment:
                yield fragment
            if accumulator.done:
                return

    async def relay(
        self,
        chunks: AsyncIterator[bytes],
        on_token: Callable[[str], Any] | None = None,
    ) -> GenerateResponse:
        """Push-style helper: call ``on_token`` per fragment, return the full response."""
        accumulator = StreamAccumulator()
        async for fragment in self.fragments(chunks, accumulator):
            if on_token:
                on_token(fragment)
        return accumulator.to_response()

    @staticmethod
    def _consume(frame: str, accumulator: StreamAccumulator) -> str | None:
        if frame == DONE_MARKER:
            accumulator.done = True
            return None

        try:
            payload = json.loads(frame)
        except json.JSONDecodeError:
            logger.warning("relay.unparseable_frame", frame=frame[:200])
            return None
        if not isinstance(payload, dict):
            return None

        error = payload.get("error")
        if error:
            detail = error if isinstance(error, dict) else {"message": str(error)}
            code = detail.get("code")
            if isinstance(code, int):
                raise ProviderHTTPError(code, detail.get("message", ""))
            raise MalformedResponseError(f"Error frame in stream: {detail.get('message', detail)}")

        usage = Usage.from_payload(payload.get("usage") or payload.get("usage_metadata"))
        if usage:
            accumulator.usage = usage

        reason = extract_finish_reason(payload)
        if reason:
            accumulator.finish_reason = reason
        if payload.get("done") is True:
            accumulator.done = True
        for delta in extract_tool_deltas(payload):
            accumulator.add_tool_delta(delta)

        fragment = extract_fragment(payload)
        if fragment:
            accumulator.parts.append(fragment)
        return fragment


class TokenStream:
    """Consumer-driven channel of fragments with explicit close.

    Iterate with ``async for``; after exhaustion ``result`` holds the final
    value set by the producer. ``aclose()`` abandons the call: the producer
    stops, its transport is released and ``result`` stays ``None``.
    """

    def __init__(self, producer: Callable[[Callable[[Any], None]], AsyncIterator[str]]):
        self.result: Any = None
        self._closed = False
        self._agen = producer(self._set_result)

    def _set_result(self, value: Any) -> None:
        self.result = value

    @property
    def closed(self) -> bool:
        return self._closed

    def __aiter__(self):
        return self

    async def __anext__(self) -> str:
        if self._closed:
            raise StopAsyncIteration
        try:
            return await self._agen.__anext__()
        except StopAsyncIteration:
            self._closed = True
            raise

    async def aclose(self) -> None:
        if not self._closed:
            self._closed = True
        await self._agen.aclose()

    async def __aenter__(self) -> "TokenStream":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

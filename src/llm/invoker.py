"""Invoker — provider selection, health tracking and streaming with bounded retry."""

from dataclasses import dataclass, field
from typing import Any, Callable

import structlog

from observability import Metrics, metrics as default_metrics

from .base import (
    ChatProvider,
    GenerateResponse,
    NoProvidersAvailable,
    ProviderExhaustedError,
    StreamInterruptedError,
    ToolCall,
    ToolDefinition,
    Usage,
)
from .health import HealthTracker
from .registry import ProviderDescriptor
from .selector import ProviderSelector
from .streaming import StreamAccumulator, StreamingRelay, TokenStream

logger = structlog.get_logger()


@dataclass
class InvocationResult:
    content: str | None
    usage: Usage
    provider_used: str
    provider_id: str
    tool_calls: list[ToolCall] = field(default_factory=list)
    attempts: int = 1
    finish_reason: str = "stop"


class Invoker:
    """Calls one provider at a time, failing over on error.

    At most ``max_attempts`` external calls are made per invocation. Running
    out of ACTIVE providers is a hard stop (``NoProvidersAvailable``), not a
    retryable error.
    """

    def __init__(
        self,
        selector: ProviderSelector,
        health: HealthTracker,
        providers: dict[str, ChatProvider],
        relay: StreamingRelay | None = None,
        max_attempts: int = 3,
        metrics: Metrics | None = None,
    ):
        self.selector = selector
        self.health = health
        self.providers = providers
        self.relay = relay or StreamingRelay()
        self.max_attempts = max_attempts
        self.metrics = metrics or default_metrics

    async def invoke(
        self,
        messages: list[dict],
        tools: list[ToolDefinition] | None = None,
        max_attempts: int | None = None,
        on_token: Callable[[str], Any] | None = None,
    ) -> InvocationResult:
        """Run one completion.

        With ``on_token`` the response is streamed and every fragment is
        passed to the callback in arrival order; the return shape is the same
        either way.
        """
        if on_token is not None:
            async with self.stream(messages, tools=tools, max_attempts=max_attempts) as stream:
                async for fragment in stream:
                    on_token(fragment)
            return stream.result

        attempts_allowed = self.max_attempts if max_attempts is None else max_attempts
        last_error: Exception | None = None
        for attempt in range(1, attempts_allowed + 1):
            descriptor = self._select()
            provider = self.providers[descriptor.id]
            logger.info(
                "invoker.attempt", attempt=attempt, max_attempts=attempts_allowed, provider=descriptor.id
            )
            self.metrics.counter("provider.attempts")
            try:
                with self.metrics.timer("provider.call"):
                    response = await provider.complete(messages, self._tools_for(descriptor, tools))
            except Exception as e:
                last_error = e
                self._on_failure(descriptor, e, attempt)
                continue

            self.health.record_success(descriptor.id)
            return self._result(descriptor, response, messages, attempt)

        raise ProviderExhaustedError(attempts_allowed, last_error) from last_error

    def stream(
        self,
        messages: list[dict],
        tools: list[ToolDefinition] | None = None,
        max_attempts: int | None = None,
    ) -> TokenStream:
        """Pull-based variant of ``invoke``; the returned stream's ``result`` is an InvocationResult."""
        attempts_allowed = self.max_attempts if max_attempts is None else max_attempts

        def producer(set_result):
            return self._stream_attempts(messages, tools, attempts_allowed, set_result)

        return TokenStream(producer)

    async def _stream_attempts(self, messages, tools, attempts_allowed, set_result):
        last_error: Exception | None = None
        for attempt in range(1, attempts_allowed + 1):
            descriptor = self._select()
            provider = self.providers[descriptor.id]
            logger.info(
                "invoker.stream_attempt",
                attempt=attempt,
                max_attempts=attempts_allowed,
                provider=descriptor.id,
            )
            self.metrics.counter("provider.attempts")
            call_tools = self._tools_for(descriptor, tools)
            accumulator = StreamAccumulator()
            try:
                if descriptor.supports_streaming:
                    async with provider.open_stream(messages, call_tools) as chunks:
                        async for fragment in self.relay.fragments(chunks, accumulator):
                            yield fragment
                    response = accumulator.to_response()
                else:
                    response = await provider.complete(messages, call_tools)
                    if response.content:
                        accumulator.parts.append(response.content)
                        yield response.content
            except Exception as e:
                last_error = e
                self._on_failure(descriptor, e, attempt)
                # Failing over now would replay text the caller already rendered
                if accumulator.parts:
                    raise StreamInterruptedError(accumulator.content, e, descriptor.id) from e
                continue

            self.health.record_success(descriptor.id)
            set_result(self._result(descriptor, response, messages, attempt))
            return

        raise ProviderExhaustedError(attempts_allowed, last_error) from last_error

    def _select(self) -> ProviderDescriptor:
        descriptor = self.selector.select()
        if descriptor is None:
            logger.error("invoker.no_providers_available")
            raise NoProvidersAvailable()
        return descriptor

    @staticmethod
    def _tools_for(descriptor: ProviderDescriptor, tools):
        return tools if tools and descriptor.supports_tools else None

    def _on_failure(self, descriptor: ProviderDescriptor, error: Exception, attempt: int) -> None:
        kind = self.health.record_failure(descriptor.id, error)
        self.metrics.counter(f"provider.failures.{kind.value}")
        logger.warning(
            "invoker.attempt_failed",
            provider=descriptor.id,
            attempt=attempt,
            failure=kind.value,
            error=str(error)[:200],
        )

    @staticmethod
    def _result(
        descriptor: ProviderDescriptor,
        response: GenerateResponse,
        messages: list[dict],
        attempt: int,
    ) -> InvocationResult:
        usage = response.usage or Usage.estimate(messages, response.content or "")
        return InvocationResult(
            content=response.content,
            usage=usage,
            provider_used=descriptor.name,
            provider_id=descriptor.id,
            tool_calls=list(response.tool_calls),
            attempts=attempt,
            finish_reason=response.finish_reason,
        )

"""Base chat provider abstraction and error taxonomy."""

from abc import ABC, abstractmethod
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass, field
from typing import AsyncIterator


class ProviderError(Exception):
    """Base provider error."""

    def __init__(self, message: str, provider_id: str | None = None):
        super().__init__(message)
        self.provider_id = provider_id


class TransientProviderError(ProviderError):
    """Failure that may succeed on a later attempt."""


class ProviderTimeoutError(TransientProviderError):
    """Request timed out."""


class ProviderConnectionError(TransientProviderError):
    """Connection refused, reset or unresolvable host."""


class MalformedResponseError(TransientProviderError):
    """Provider answered 2xx but the body could not be used."""


class PermanentProviderError(ProviderError):
    """Failure that will not go away until the key or endpoint is fixed."""


class ProviderHTTPError(ProviderError):
    """Non-2xx response from a provider."""

    def __init__(self, status_code: int, body: str = "", provider_id: str | None = None):
        super().__init__(f"API error ({status_code}): {body[:300]}", provider_id=provider_id)
        self.status_code = status_code
        self.body = body


class NoProvidersAvailable(ProviderError):
    """Every configured provider is INACTIVE (maintenance condition)."""

    def __init__(self, message: str = "No providers available"):
        super().__init__(message)


class ProviderExhaustedError(ProviderError):
    """All attempts of an invocation failed."""

    def __init__(self, attempts: int, last_error: Exception):
        super().__init__(f"All {attempts} provider attempts failed: {last_error}")
        self.attempts = attempts
        self.last_error = last_error


class StreamInterruptedError(ProviderError):
    """A stream failed after fragments were already delivered to the caller."""

    def __init__(self, partial_content: str, last_error: Exception, provider_id: str | None = None):
        super().__init__(f"Stream interrupted: {last_error}", provider_id=provider_id)
        self.partial_content = partial_content
        self.last_error = last_error


@dataclass
class ToolDefinition:
    """Tool definition for function calling."""

    name: str
    description: str
    input_schema: dict  # JSON Schema

    def to_openai(self) -> dict:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.input_schema,
            },
        }


@dataclass
class ToolCall:
    """A tool call requested by the model."""

    id: str
    name: str
    arguments: dict


@dataclass
class Usage:
    """Token accounting for one call."""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    estimated: bool = False

    @classmethod
    def from_payload(cls, payload: dict | None) -> "Usage | None":
        """Build from an OpenAI/Anthropic/Gemini style usage block."""
        if not payload or not isinstance(payload, dict):
            return None
        prompt = payload.get("prompt_tokens", payload.get("input_tokens", 0)) or 0
        completion = payload.get("completion_tokens", payload.get("output_tokens", 0)) or 0
        total = payload.get("total_tokens") or prompt + completion
        return cls(prompt_tokens=int(prompt), completion_tokens=int(completion), total_tokens=int(total))

    @classmethod
    def estimate(cls, messages: list[dict], content: str) -> "Usage":
        """Rough ~4 chars/token estimate when the provider reports nothing."""
        prompt_chars = sum(len(str(m.get("content") or "")) for m in messages)
        prompt = -(-prompt_chars // 4)
        completion = -(-len(content or "") // 4)
        return cls(
            prompt_tokens=prompt,
            completion_tokens=completion,
            total_tokens=prompt + completion,
            estimated=True,
        )

    def to_dict(self) -> dict:
        return {
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
            "estimated": self.estimated,
        }


@dataclass
class GenerateResponse:
    """Uniform response shape for streamed and blocking calls."""

    content: str | None
    tool_calls: list[ToolCall] = field(default_factory=list)
    usage: Usage | None = None
    finish_reason: str = "stop"  # "stop" | "tool_calls" | "max_tokens"


class ChatProvider(ABC):
    """Opaque text-completion endpoint with a fixed request/response contract."""

    @property
    @abstractmethod
    def provider_id(self) -> str:
        """Registry id of the descriptor this provider serves."""
        ...

    @abstractmethod
    async def complete(
        self, messages: list[dict], tools: list[ToolDefinition] | None = None
    ) -> GenerateResponse:
        """Blocking completion.

        Raises:
            ProviderHTTPError: non-2xx status
            ProviderTimeoutError / ProviderConnectionError: transport failure
            MalformedResponseError: unusable 2xx body
        """
        ...

    @abstractmethod
    def open_stream(
        self, messages: list[dict], tools: list[ToolDefinition] | None = None
    ) -> AbstractAsyncContextManager[AsyncIterator[bytes]]:
        """Open an incremental response; yields raw transport chunks.

        The context manager owns the connection and must release it on exit,
        including when the consumer is cancelled.
        """
        ...

    async def aclose(self) -> None:
        """Release pooled connections."""
        return None

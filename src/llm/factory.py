"""Chat provider factory keyed by vendor."""

import httpx

from .base import ChatProvider, ProviderError
from .registry import ProviderDescriptor, ProviderRegistry

_OPENAI_COMPATIBLE = {"openrouter", "deepseek", "qwen", "openai", "custom"}


def create_provider(
    descriptor: ProviderDescriptor,
    client: httpx.AsyncClient | None = None,
    timeout: float = 120.0,
    max_tokens: int = 2000,
    temperature: float = 0.7,
) -> ChatProvider:
    """Create the provider adapter for one descriptor.

    Args:
        descriptor: Registry entry
        client: Shared httpx client (tests pass one with a MockTransport)
        timeout: Per-request timeout in seconds, used when no client is given
        max_tokens: Response token cap sent with every request
        temperature: Sampling temperature sent with every request

    Returns:
        ChatProvider instance
    """
    if descriptor.vendor in _OPENAI_COMPATIBLE:
        from .providers.openai_compat import OpenAICompatibleProvider

        return OpenAICompatibleProvider(
            descriptor,
            client=client,
            timeout=timeout,
            max_tokens=max_tokens,
            temperature=temperature,
        )
    raise ProviderError(
        f"Unknown vendor: {descriptor.vendor}. Use: {', '.join(sorted(_OPENAI_COMPATIBLE))}"
    )


def create_providers(
    registry: ProviderRegistry, client: httpx.AsyncClient | None = None, **kwargs
) -> dict[str, ChatProvider]:
    """One adapter per registry entry, sharing ``client`` when given."""
    return {d.id: create_provider(d, client=client, **kwargs) for d in registry}

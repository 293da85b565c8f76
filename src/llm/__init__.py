"""Multi-provider generation layer with health tracking and failover."""

from .base import (
    ChatProvider,
    GenerateResponse,
    MalformedResponseError,
    NoProvidersAvailable,
    PermanentProviderError,
    ProviderConnectionError,
    ProviderError,
    ProviderExhaustedError,
    ProviderHTTPError,
    ProviderTimeoutError,
    StreamInterruptedError,
    ToolCall,
    ToolDefinition,
    TransientProviderError,
    Usage,
)
from .factory import create_provider, create_providers
from .health import FailureKind, HealthState, HealthTracker, ProviderHealth, classify_failure
from .invoker import InvocationResult, Invoker
from .registry import Pricing, ProviderDescriptor, ProviderRegistry
from .selector import ProviderSelector
from .streaming import StreamingRelay, TokenStream

__all__ = [
    "ChatProvider",
    "GenerateResponse",
    "ToolCall",
    "ToolDefinition",
    "Usage",
    "ProviderError",
    "TransientProviderError",
    "ProviderTimeoutError",
    "ProviderConnectionError",
    "MalformedResponseError",
    "PermanentProviderError",
    "ProviderHTTPError",
    "NoProvidersAvailable",
    "ProviderExhaustedError",
    "StreamInterruptedError",
    "create_provider",
    "create_providers",
    "FailureKind",
    "HealthState",
    "HealthTracker",
    "ProviderHealth",
    "classify_failure",
    "InvocationResult",
    "Invoker",
    "Pricing",
    "ProviderDescriptor",
    "ProviderRegistry",
    "ProviderSelector",
    "StreamingRelay",
    "TokenStream",
]

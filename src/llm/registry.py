"""Provider registry — descriptors loaded once at process start."""

import re
from dataclasses import dataclass, field

import structlog

logger = structlog.get_logger()

VENDOR_ENDPOINTS = {
    "openrouter": "https://openrouter.ai/api/v1/chat/completions",
    "deepseek": "https://api.deepseek.com/v1/chat/completions",
    "qwen": "https://dashscope.aliyuncs.com/compatible-mode/v1/chat/completions",
    "openai": "https://api.openai.com/v1/chat/completions",
}

# Vendors whose chat endpoint accepts the `tools` parameter
_TOOL_CAPABLE_VENDORS = {"openrouter", "deepseek", "openai"}


@dataclass(frozen=True)
class Pricing:
    """USD per one million tokens."""

    input_per_million: float = 0.0
    output_per_million: float = 0.0

    @property
    def free(self) -> bool:
        return self.input_per_million == 0 and self.output_per_million == 0

    def cost(self, prompt_tokens: int, completion_tokens: int) -> float:
        return (
            prompt_tokens * self.input_per_million + completion_tokens * self.output_per_million
        ) / 1_000_000


@dataclass(frozen=True)
class ProviderDescriptor:
    """Identity, endpoint, credential, capabilities and pricing of one provider."""

    id: str
    name: str
    vendor: str
    model: str
    endpoint: str
    api_key: str = field(default="", repr=False)
    supports_tools: bool = False
    supports_streaming: bool = True
    pricing: Pricing = field(default_factory=Pricing)

    @property
    def free(self) -> bool:
        return self.pricing.free


def _slug(name: str) -> str:
    return re.sub(r"[^a-z0-9]", "-", name.lower())


class ProviderRegistry:
    """Ordered, immutable list of configured providers."""

    def __init__(self, descriptors: list[ProviderDescriptor]):
        ids = [d.id for d in descriptors]
        if len(ids) != len(set(ids)):
            raise ValueError(f"Duplicate provider ids in registry: {ids}")
        self._descriptors = tuple(descriptors)
        self._by_id = {d.id: d for d in descriptors}

    def __len__(self) -> int:
        return len(self._descriptors)

    def __iter__(self):
        return iter(self._descriptors)

    def __getitem__(self, index: int) -> ProviderDescriptor:
        return self._descriptors[index]

    def get(self, provider_id: str) -> ProviderDescriptor | None:
        return self._by_id.get(provider_id)

    @property
    def ids(self) -> list[str]:
        return [d.id for d in self._descriptors]

    @classmethod
    def from_config(cls, llm_config) -> "ProviderRegistry":
        """Build descriptors from an ``LLMConfig``.

        Vendors without a credential and disabled models are skipped. Order
        follows the config file, which is also the round-robin order.
        """
        descriptors: list[ProviderDescriptor] = []
        for vendor_cfg in llm_config.providers:
            if not vendor_cfg.enabled:
                continue
            endpoint = vendor_cfg.endpoint or VENDOR_ENDPOINTS.get(vendor_cfg.vendor)
            if not endpoint:
                logger.warning("registry.no_endpoint", vendor=vendor_cfg.vendor)
                continue

            for model_cfg in vendor_cfg.models:
                if not model_cfg.enabled:
                    continue
                api_key = model_cfg.api_key or vendor_cfg.api_key
                if not api_key:
                    logger.warning(
                        "registry.missing_api_key", vendor=vendor_cfg.vendor, model=model_cfg.name
                    )
                    continue
                supports_tools = model_cfg.supports_tools
                if supports_tools is None:
                    supports_tools = vendor_cfg.vendor in _TOOL_CAPABLE_VENDORS

                descriptors.append(
                    ProviderDescriptor(
                        id=f"{vendor_cfg.vendor}-{_slug(model_cfg.name)}",
                        name=model_cfg.display_name or model_cfg.name,
                        vendor=vendor_cfg.vendor,
                        model=model_cfg.name,
                        endpoint=endpoint,
                        api_key=api_key,
                        supports_tools=supports_tools,
                        supports_streaming=model_cfg.supports_streaming,
                        pricing=Pricing(
                            input_per_million=model_cfg.price.in_price,
                            output_per_million=model_cfg.price.out_price,
                        ),
                    )
                )

        if not descriptors:
            logger.warning("registry.empty")
        else:
            logger.info(
                "registry.loaded",
                count=len(descriptors),
                providers=[f"{d.name} ({d.vendor}{', free' if d.free else ''})" for d in descriptors],
            )
        return cls(descriptors)

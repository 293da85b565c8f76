"""Process-wide orchestration state, built once at startup."""

from dataclasses import dataclass, field
from typing import Optional

import httpx
import structlog

from cli.config import cache_ttls
from cli.config_models import AppConfig
from llm.base import ChatProvider
from llm.factory import create_providers
from llm.health import HealthTracker
from llm.invoker import Invoker
from llm.registry import ProviderRegistry
from llm.selector import ProviderSelector
from observability import Metrics
from portfolio.extractor import ConversationFactExtractor
from portfolio.reconciler import DataReconciler
from portfolio.session_cache import SessionCache
from portfolio.tickers import TickerNormalizer

from .fetchers import FactFetcher, FinancialDatasetsFetcher

logger = structlog.get_logger()


@dataclass
class OrchestrationContext:
    """Everything a turn needs that outlives the turn.

    Health state lives here for the lifetime of the process; passing the
    context around replaces module-level provider lists and health maps.
    """

    registry: ProviderRegistry
    health: HealthTracker
    selector: ProviderSelector
    invoker: Invoker
    session_cache: SessionCache
    extractor: ConversationFactExtractor
    reconciler: DataReconciler
    normalizer: TickerNormalizer = field(default_factory=TickerNormalizer)
    fetchers: list[FactFetcher] = field(default_factory=list)
    metrics: Metrics = field(default_factory=Metrics)
    config: Optional[AppConfig] = None
    _client: Optional[httpx.AsyncClient] = field(default=None, repr=False)
    _owns_client: bool = field(default=False, repr=False)

    @classmethod
    def build(
        cls,
        registry: ProviderRegistry,
        providers: dict[str, ChatProvider],
        fetchers: list[FactFetcher] | None = None,
        session_cache: SessionCache | None = None,
        max_attempts: int = 3,
        metrics: Metrics | None = None,
    ) -> "OrchestrationContext":
        """Wire components around an already-built registry and provider map."""
        metrics = metrics or Metrics()
        session_cache = session_cache or SessionCache()
        health = HealthTracker(registry.ids)
        selector = ProviderSelector(registry, health)
        return cls(
            registry=registry,
            health=health,
            selector=selector,
            invoker=Invoker(selector, health, providers, max_attempts=max_attempts, metrics=metrics),
            session_cache=session_cache,
            extractor=ConversationFactExtractor(clock=session_cache.now),
            reconciler=DataReconciler(session_cache),
            fetchers=list(fetchers or []),
            metrics=metrics,
        )

    @classmethod
    def from_config(
        cls, config: AppConfig, client: httpx.AsyncClient | None = None
    ) -> "OrchestrationContext":
        owns_client = client is None
        if client is None:
            client = httpx.AsyncClient(timeout=config.llm.timeout_seconds)

        registry = ProviderRegistry.from_config(config.llm)
        providers = create_providers(
            registry,
            client=client,
            timeout=config.llm.timeout_seconds,
            max_tokens=config.llm.max_tokens,
            temperature=config.llm.temperature,
        )

        fetchers: list[FactFetcher] = []
        fd = config.financial_data
        if fd.enabled and fd.api_key:
            fetchers.append(
                FinancialDatasetsFetcher(
                    api_key=fd.api_key,
                    base_url=fd.base_url,
                    max_subjects=fd.max_subjects,
                    client=client,
                    timeout=fd.timeout_seconds,
                    retry_config=config.retry,
                )
            )
        elif fd.enabled:
            logger.warning("context.fetcher_disabled", fetcher="financialdatasets", reason="no api key")

        context = cls.build(
            registry,
            providers,
            fetchers=fetchers,
            session_cache=SessionCache(ttls=cache_ttls(config.cache)),
            max_attempts=config.llm.max_attempts,
        )
        context.config = config
        context._client = client
        context._owns_client = owns_client
        logger.info("context.ready", providers=len(registry), fetchers=[f.name for f in fetchers])
        return context

    async def aclose(self):
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

"""Per-turn orchestration over the provider layer and the consistency core."""

from .context import OrchestrationContext
from .fetchers import FactFetcher, FinancialDatasetsFetcher, gather_facts
from .pipeline import (
    InMemorySessionPersistence,
    OrchestrationPipeline,
    SessionPersistence,
    TurnRequest,
    TurnResult,
    compute_portfolio_total,
)
from .portfolio import PortfolioHolding, PortfolioRecord, PortfolioResolution, PortfolioResolver

__all__ = [
    "OrchestrationContext",
    "FactFetcher",
    "FinancialDatasetsFetcher",
    "gather_facts",
    "InMemorySessionPersistence",
    "OrchestrationPipeline",
    "SessionPersistence",
    "TurnRequest",
    "TurnResult",
    "compute_portfolio_total",
    "PortfolioHolding",
    "PortfolioRecord",
    "PortfolioResolution",
    "PortfolioResolver",
]

"""Conversational data consistency — facts, session cache, extraction and reconciliation."""

from .extractor import (
    ConversationFactExtractor,
    FactRecognizer,
    HoldingRecognizer,
    MetricRecognizer,
    PriceRecognizer,
    Recognition,
    TotalValueRecognizer,
)
from .models import (
    EPSILON,
    PORTFOLIO_SUBJECT,
    Fact,
    FactKey,
    FactKind,
    Provenance,
    ReconciledFact,
    ReconcileSource,
    ReconciliationResult,
    SessionState,
    metric_subject,
)
from .reconciler import DataReconciler
from .session_cache import DEFAULT_TTLS, RefreshNeeds, SessionCache
from .store import SessionStore
from .tickers import TickerNormalizer

__all__ = [
    "ConversationFactExtractor",
    "FactRecognizer",
    "HoldingRecognizer",
    "MetricRecognizer",
    "PriceRecognizer",
    "Recognition",
    "TotalValueRecognizer",
    "EPSILON",
    "PORTFOLIO_SUBJECT",
    "Fact",
    "FactKey",
    "FactKind",
    "Provenance",
    "ReconciledFact",
    "ReconcileSource",
    "ReconciliationResult",
    "SessionState",
    "metric_subject",
    "DataReconciler",
    "DEFAULT_TTLS",
    "RefreshNeeds",
    "SessionCache",
    "SessionStore",
    "TickerNormalizer",
]

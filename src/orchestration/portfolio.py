"""Resolve which stored portfolio a turn is about."""

import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Protocol

import structlog

from portfolio.models import Fact, FactKind, Provenance
from portfolio.tickers import TickerNormalizer

logger = structlog.get_logger()


@dataclass
class PortfolioHolding:
    ticker: str
    shares: float
    company_name: Optional[str] = None


@dataclass
class PortfolioRecord:
    id: str
    name: str
    holdings: list[PortfolioHolding] = field(default_factory=list)
    total_value: Optional[float] = None
    uploaded_at: Optional[datetime] = None

    @property
    def tickers(self) -> list[str]:
        return [h.ticker for h in self.holdings]

    def holding_facts(self, observed_at: datetime) -> list[Fact]:
        """Declared positions as facts; stored portfolios count as external data."""
        return [
            Fact(
                subject_key=h.ticker,
                kind=FactKind.HOLDING,
                value=float(h.shares),
                observed_at=observed_at,
                provenance=Provenance.API,
                attributes={
                    "origin": "portfolio",
                    "portfolio_id": self.id,
                    **({"company_name": h.company_name} if h.company_name else {}),
                },
            )
            for h in self.holdings
            if h.shares and h.shares > 0
        ]


class PortfolioSource(Protocol):
    """Lists a user's portfolios. Storage lives outside this package."""

    def list_portfolios(self, user_id: str) -> list[PortfolioRecord]: ...


@dataclass
class PortfolioResolution:
    resolved: bool
    portfolio: Optional[PortfolioRecord] = None
    needs_clarification: bool = False
    candidates: list[PortfolioRecord] = field(default_factory=list)
    reason: str = ""

    def clarification_prompt(self) -> str:
        names = ", ".join(c.name or f"#{c.id}" for c in self.candidates)
        return f"Clarify which portfolio: {names}" if names else ""


class PortfolioResolver:
    """Explicit id, then a name mentioned in the message, then the only portfolio.

    More than one plausible portfolio is never guessed at: the resolution asks
    for clarification and lists the candidates.
    """

    def __init__(self, source: PortfolioSource, normalizer: TickerNormalizer | None = None):
        self.source = source
        self.normalizer = normalizer or TickerNormalizer()

    def resolve(
        self, user_id: Optional[str], portfolio_id: Optional[str] = None, message: str = ""
    ) -> PortfolioResolution:
        if user_id is None:
            return PortfolioResolution(resolved=False, reason="No user")

        portfolios = [self._normalize(p) for p in self.source.list_portfolios(user_id)]
        if not portfolios:
            return PortfolioResolution(resolved=False, reason="User has no portfolios")

        if portfolio_id is not None:
            for p in portfolios:
                if str(p.id) == str(portfolio_id):
                    return PortfolioResolution(resolved=True, portfolio=p, reason="Explicit id")
            logger.warning("portfolio.id_not_found", user_id=user_id, portfolio_id=portfolio_id)
            return PortfolioResolution(
                resolved=False,
                candidates=portfolios,
                reason=f"No portfolio with id {portfolio_id}",
            )

        named = self._match_names(portfolios, message)
        if len(named) == 1:
            return PortfolioResolution(resolved=True, portfolio=named[0], reason="Named in message")
        if len(named) > 1:
            return self._ambiguous(named, "Several portfolios named in message")

        if len(portfolios) == 1:
            return PortfolioResolution(resolved=True, portfolio=portfolios[0], reason="Only portfolio")
        return self._ambiguous(portfolios, f"User has {len(portfolios)} portfolios")

    @staticmethod
    def _match_names(portfolios: list[PortfolioRecord], message: str) -> list[PortfolioRecord]:
        if not message:
            return []
        return [
            p
            for p in portfolios
            if p.name and re.search(rf"(?<!\w){re.escape(p.name)}(?!\w)", message, re.IGNORECASE)
        ]

    @staticmethod
    def _ambiguous(candidates: list[PortfolioRecord], reason: str) -> PortfolioResolution:
        logger.info("portfolio.ambiguous", candidates=[c.id for c in candidates])
        return PortfolioResolution(
            resolved=False, needs_clarification=True, candidates=candidates, reason=reason
        )

    def _normalize(self, record: PortfolioRecord) -> PortfolioRecord:
        holdings = []
        for h in record.holdings:
            ticker = self.normalizer.normalize(h.ticker) or self.normalizer.normalize(h.company_name)
            if ticker:
                holdings.append(PortfolioHolding(ticker, h.shares, h.company_name))
        return PortfolioRecord(record.id, record.name, holdings, record.total_value, record.uploaded_at)

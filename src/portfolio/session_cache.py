"""Session cache — timestamped facts per conversation with type-specific TTLs."""

from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Callable, Iterable

import structlog

from .models import (
    PORTFOLIO_SUBJECT,
    Fact,
    FactKind,
    Provenance,
    ReconciliationResult,
    SessionState,
    utcnow,
)

logger = structlog.get_logger()

# Prices and totals move within minutes; declared holdings rarely change
DEFAULT_TTLS = {
    FactKind.PRICE: timedelta(minutes=5),
    FactKind.TOTAL_VALUE: timedelta(minutes=5),
    FactKind.METRIC: timedelta(minutes=60),
    FactKind.HOLDING: timedelta(hours=24),
}


@dataclass
class RefreshNeeds:
    stale: list[str] = field(default_factory=list)
    fresh: list[str] = field(default_factory=list)

    @property
    def needs_refresh(self) -> bool:
        return bool(self.stale)

    @property
    def all_fresh(self) -> bool:
        return not self.stale


class SessionCache:
    """Staleness policy plus read/write helpers over a SessionState."""

    def __init__(
        self,
        ttls: dict[FactKind, timedelta] | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.ttls = {**DEFAULT_TTLS, **(ttls or {})}
        self._clock = clock or utcnow

    def now(self) -> datetime:
        return self._clock()

    def new_state(self) -> SessionState:
        return SessionState.new(self.now())

    def ttl(self, kind: FactKind) -> timedelta:
        return self.ttls.get(kind, self.ttls[FactKind.PRICE])

    def age(self, fact: Fact, now: datetime | None = None) -> timedelta:
        return (now or self.now()) - fact.observed_at

    def is_stale(self, fact: Fact | None, now: datetime | None = None) -> bool:
        if fact is None:
            return True
        return self.age(fact, now) > self.ttl(fact.kind)

    def get_refresh_needs(
        self,
        state: SessionState,
        subject_keys: Iterable[str],
        kind: FactKind = FactKind.PRICE,
    ) -> RefreshNeeds:
        """Partition subjects into ``stale`` (missing or past TTL) and ``fresh``."""
        now = self.now()
        needs = RefreshNeeds()
        seen = set()
        for subject in subject_keys:
            if subject in seen:
                continue
            seen.add(subject)
            if self.is_stale(state.get(subject, kind), now):
                needs.stale.append(subject)
            else:
                needs.fresh.append(subject)
        return needs

    def lookup(
        self,
        state: SessionState,
        subject_keys: Iterable[str] | None = None,
        kinds: Iterable[FactKind] | None = None,
    ) -> list[Fact]:
        """Cached facts as CACHE-provenance copies; origin kept in attributes."""
        wanted = set(subject_keys) if subject_keys is not None else None
        facts = []
        for kind in kinds or FactKind:
            for subject, fact in state.of_kind(kind).items():
                # metric subjects are "TICKER:METRIC"
                ticker = subject.split(":", 1)[0]
                if wanted is not None and ticker not in wanted and subject != PORTFOLIO_SUBJECT:
                    continue
                origin = fact.attributes.get("origin", fact.provenance.value)
                facts.append(
                    replace(
                        fact,
                        provenance=Provenance.CACHE,
                        attributes={**fact.attributes, "origin": origin},
                    )
                )
        return facts

    def update(self, state: SessionState, facts: Iterable[Fact]) -> SessionState:
        """Store facts, remembering the value they replace."""
        now = self.now()
        for fact in facts:
            bucket = state.of_kind(fact.kind)
            previous = bucket.get(fact.subject_key)
            attributes = dict(fact.attributes)
            if previous is not None and not previous.matches(fact):
                attributes["previous_value"] = previous.value
            bucket[fact.subject_key] = replace(fact, attributes=attributes)
        state.metadata.last_updated = now
        return state

    def apply(self, state: SessionState, result: ReconciliationResult) -> SessionState:
        """Fold a reconciliation's merged facts back into the session."""
        facts = []
        for reconciled in result.merged.values():
            attributes = {**reconciled.fact.attributes, "source": reconciled.source.value}
            if reconciled.change_percent is not None:
                attributes["change_percent"] = round(reconciled.change_percent, 2)
            facts.append(replace(reconciled.fact, attributes=attributes))
        self.update(state, facts)
        logger.debug("session_cache.applied", **self.summary(state))
        return state

    def summary(self, state: SessionState) -> dict:
        now = self.now()
        stale_prices = [s for s, f in state.prices.items() if self.is_stale(f, now)]
        total = state.get(PORTFOLIO_SUBJECT, FactKind.TOTAL_VALUE)
        return {
            "prices": len(state.prices),
            "holdings": len(state.holdings),
            "metrics": len(state.of_kind(FactKind.METRIC)),
            "portfolio_value": total.value if total else None,
            "stale_prices": stale_prices,
            "last_updated": state.metadata.last_updated.isoformat(),
        }

    def format_for_prompt(self, state: SessionState) -> str:
        """Render known data with age and staleness for the system prompt."""
        if state is None or state.is_empty():
            return ""

        now = self.now()
        lines = ["## Session State (Known Data)", f"**Last Updated**: {state.metadata.last_updated:%Y-%m-%d %H:%M UTC}", ""]

        if state.prices:
            lines.append("### Stock Prices (Cached)")
            for ticker, fact in sorted(state.prices.items()):
                minutes = int(self.age(fact, now).total_seconds() // 60)
                flag = "STALE" if self.is_stale(fact, now) else "FRESH"
                origin = fact.attributes.get("origin", fact.provenance.value)
                lines.append(f"**{ticker}**: ${fact.value:,.2f} ({minutes}min ago, {flag}) [source: {origin}]")
            lines.append("")

        if state.holdings:
            lines.append("### Portfolio Holdings (Cached)")
            lines.append("**CRITICAL: These are the known holdings. DO NOT change these values.**")
            for ticker, fact in sorted(state.holdings.items()):
                minutes = int(self.age(fact, now).total_seconds() // 60)
                company = fact.attributes.get("company_name")
                shares = f"{fact.value:,.0f}" if float(fact.value).is_integer() else f"{fact.value:,}"
                label = f"**{ticker}**: {shares} shares"
                if company:
                    label += f" ({company})"
                lines.append(f"{label} [{fact.provenance.value}, {minutes}min ago]")
            lines.append("")

        metrics = state.of_kind(FactKind.METRIC)
        if metrics:
            lines.append("### Fundamentals (Cached)")
            for subject, fact in sorted(metrics.items()):
                lines.append(f"**{subject}**: {fact.value:g}")
            lines.append("")

        total = state.get(PORTFOLIO_SUBJECT, FactKind.TOTAL_VALUE)
        if total:
            minutes = int(self.age(total, now).total_seconds() // 60)
            lines.append("### Portfolio Total Value (Cached)")
            lines.append(f"**Total**: ${total.value:,.2f} (calculated {minutes}min ago)")
            based_on = total.attributes.get("calculated_from") or []
            lines.append(f"Based on: {', '.join(based_on) or 'N/A'}")
            lines.append("")

        return "\n".join(lines)

"""Per-turn orchestration: facts in, reconciled context and a streamed answer out."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Iterable, Optional, Protocol

import structlog

from llm.base import ToolDefinition, Usage
from portfolio.models import (
    PORTFOLIO_SUBJECT,
    Fact,
    FactKind,
    Provenance,
    ReconciliationResult,
    SessionState,
)

from .context import OrchestrationContext
from .fetchers import gather_facts
from .portfolio import PortfolioResolution, PortfolioResolver
from .prompts import build_messages, format_facts_for_prompt

logger = structlog.get_logger()


@dataclass
class TurnRequest:
    message: str
    history: list[dict] = field(default_factory=list)
    session_id: str = "default"
    portfolio_id: Optional[str] = None
    user_id: Optional[str] = None


@dataclass
class TurnResult:
    content: Optional[str]
    provider_used: str
    usage: Usage
    facts_used: ReconciliationResult
    session_state: SessionState
    portfolio: Optional[PortfolioResolution] = None
    provider_id: str = ""
    attempts: int = 1


class SessionPersistence(Protocol):
    def load_session_state(self, session_id: str) -> Optional[SessionState]: ...

    def save_session_state(self, session_id: str, state: SessionState) -> None: ...


class InMemorySessionPersistence:
    """Session states held in a dict; lost on exit."""

    def __init__(self):
        self._states: dict[str, SessionState] = {}

    def load_session_state(self, session_id: str) -> Optional[SessionState]:
        return self._states.get(session_id)

    def save_session_state(self, session_id: str, state: SessionState) -> None:
        self._states[session_id] = state


def _best_values(kind: FactKind, *sources: Iterable[Fact]) -> dict[str, float]:
    """Subject -> value, earlier sources taking precedence."""
    best: dict[str, float] = {}
    for facts in sources:
        for fact in facts:
            if fact.kind == kind:
                best.setdefault(fact.subject_key, fact.value)
    return best


def compute_portfolio_total(
    fresh: list[Fact], cache: list[Fact], conversation: list[Fact], observed_at: datetime
) -> Optional[Fact]:
    """Price x shares over known holdings, or None unless every holding is priced."""
    holdings = _best_values(FactKind.HOLDING, fresh, cache, conversation)
    if not holdings:
        return None
    prices = _best_values(FactKind.PRICE, fresh, cache, conversation)
    if any(ticker not in prices for ticker in holdings):
        return None
    total = sum(prices[t] * shares for t, shares in holdings.items())
    return Fact(
        subject_key=PORTFOLIO_SUBJECT,
        kind=FactKind.TOTAL_VALUE,
        value=round(total, 2),
        observed_at=observed_at,
        provenance=Provenance.COMPUTED,
        attributes={"calculated_from": sorted(holdings)},
    )


class OrchestrationPipeline:
    """Runs one user turn end to end.

    Turns of the same session must not run concurrently; the session state
    is read at the start of a turn and written back at the end.
    """

    def __init__(
        self,
        context: OrchestrationContext,
        persistence: SessionPersistence | None = None,
        portfolio_resolver: PortfolioResolver | None = None,
        tools: list[ToolDefinition] | None = None,
    ):
        self.context = context
        self.persistence = persistence or InMemorySessionPersistence()
        self.portfolio_resolver = portfolio_resolver
        self.tools = tools

    async def run_turn(
        self, request: TurnRequest, on_token: Callable[[str], Any] | None = None
    ) -> TurnResult:
        ctx = self.context
        cache = ctx.session_cache
        ctx.metrics.counter("turns")

        with ctx.metrics.timer("turn"):
            state = self.persistence.load_session_state(request.session_id) or cache.new_state()
            try:
                now = cache.now()
                conversation = ctx.extractor.extract(request.history)
                resolution = self._resolve_portfolio(request)
                declared = resolution.portfolio.holding_facts(now) if resolution and resolution.portfolio else []

                subjects = self._subjects(request.message, conversation, declared, state)
                needs = cache.get_refresh_needs(state, subjects)
                cache_facts = cache.lookup(state, subjects)
                fresh: list[Fact] = []
                if needs.needs_refresh:
                    fresh = await gather_facts(ctx.fetchers, needs.stale, ctx.metrics)
                fresh.extend(declared)

                total = compute_portfolio_total(fresh, cache_facts, conversation, now)
                if total is not None:
                    fresh.append(total)

                result = ctx.reconciler.reconcile(conversation, cache_facts, fresh, now)
                cache.apply(state, result)

                holdings = {s: rf.value for s, rf in result.of_kind(FactKind.HOLDING).items()}
                messages = build_messages(
                    request.message,
                    request.history,
                    known_data=cache.format_for_prompt(state),
                    facts_text=format_facts_for_prompt(result, holdings),
                    clarification=resolution.clarification_prompt()
                    if resolution and resolution.needs_clarification
                    else "",
                )
                invocation = await ctx.invoker.invoke(messages, tools=self.tools, on_token=on_token)
            finally:
                self.persistence.save_session_state(request.session_id, state)

        logger.info(
            "pipeline.turn_complete",
            session_id=request.session_id,
            provider=invocation.provider_id,
            attempts=invocation.attempts,
            subjects=len(subjects),
            fetched=len(needs.stale),
            **result.summary(),
        )
        return TurnResult(
            content=invocation.content,
            provider_used=invocation.provider_used,
            usage=invocation.usage,
            facts_used=result,
            session_state=state,
            portfolio=resolution,
            provider_id=invocation.provider_id,
            attempts=invocation.attempts,
        )

    def _resolve_portfolio(self, request: TurnRequest) -> Optional[PortfolioResolution]:
        if self.portfolio_resolver is None or request.user_id is None:
            return None
        return self.portfolio_resolver.resolve(request.user_id, request.portfolio_id, request.message)

    def _subjects(
        self,
        message: str,
        conversation: list[Fact],
        declared: list[Fact],
        state: SessionState,
    ) -> list[str]:
        """Tickers this turn may touch, in first-seen order."""
        found = list(self.context.normalizer.find_in_text(message))
        found += [f.subject_key for f in declared]
        found += [f.subject_key for f in conversation if f.kind in (FactKind.PRICE, FactKind.HOLDING)]
        found += list(state.holdings)
        return [s for s in dict.fromkeys(found) if s != PORTFOLIO_SUBJECT and ":" not in s]

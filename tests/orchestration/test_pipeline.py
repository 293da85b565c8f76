"""End-to-end turns through OrchestrationPipeline with scripted providers and fetchers."""

from datetime import datetime

import pytest

from llm.base import ProviderExhaustedError, ProviderTimeoutError
from observability import Metrics
from orchestration.context import OrchestrationContext
from orchestration.pipeline import (
    InMemorySessionPersistence,
    OrchestrationPipeline,
    TurnRequest,
    compute_portfolio_total,
)
from orchestration.portfolio import PortfolioHolding, PortfolioRecord, PortfolioResolver
from portfolio.models import PORTFOLIO_SUBJECT, Fact, FactKind, Provenance, ReconcileSource
from portfolio.session_cache import SessionCache


class PriceFetcher:
    name = "prices"

    def __init__(self, prices, clock, error=None):
        self.prices = prices
        self.clock = clock
        self.error = error
        self.calls = []

    async def fetch(self, subject_keys):
        self.calls.append(list(subject_keys))
        if self.error:
            raise self.error
        return [
            Fact(t, FactKind.PRICE, self.prices[t], self.clock.now, Provenance.API)
            for t in subject_keys
            if t in self.prices
        ] or None


class PortfolioList:
    def __init__(self, portfolios):
        self.portfolios = portfolios

    def list_portfolios(self, user_id):
        return list(self.portfolios)


@pytest.fixture
def providers(registry, fake_provider):
    return {pid: fake_provider(pid) for pid in registry.ids}


def _pipeline(registry, providers, clock, fetcher, **kwargs):
    context = OrchestrationContext.build(
        registry,
        providers,
        fetchers=[fetcher],
        session_cache=SessionCache(clock=clock),
        metrics=Metrics(),
    )
    return OrchestrationPipeline(context, persistence=InMemorySessionPersistence(), **kwargs)


def _system(provider):
    return provider.last_messages[0]["content"]


class TestTurn:
    @pytest.mark.asyncio
    async def test_price_change_reaches_prompt(self, registry, providers, clock, history):
        fetcher = PriceFetcher({"AAPL": 155.0, "MSFT": 400.0}, clock)
        pipeline = _pipeline(registry, providers, clock, fetcher)

        result = await pipeline.run_turn(TurnRequest("And how is AAPL doing today?", history, session_id="s1"))

        assert result.content == "ok"
        assert result.provider_id == "p1"
        assert fetcher.calls == [["AAPL", "MSFT"]]

        facts = result.facts_used
        assert facts.subject_keys("changed", FactKind.PRICE) == {"AAPL"}
        assert facts.get("MSFT").source == ReconcileSource.CONFIRMED
        total = facts.get(PORTFOLIO_SUBJECT, FactKind.TOTAL_VALUE)
        assert total.value == 35500.0
        assert total.previous_value == 35000.0

        system = _system(providers["p1"])
        assert "AAPL: $150.00 -> $155.00 (+3.33%)" in system
        assert "AAPL: $155.00 x 100 shares = $15,500.00" in system
        assert "PORTFOLIO TOTAL: $35,500.00 (previously $35,000.00)" in system
        assert providers["p1"].last_messages[-1] == {"role": "user", "content": "And how is AAPL doing today?"}

        saved = pipeline.persistence.load_session_state("s1")
        assert saved.prices["AAPL"].value == 155.0
        assert saved.holdings["MSFT"].value == 50
        assert pipeline.context.metrics.get("turns") == 1

    @pytest.mark.asyncio
    async def test_fresh_cache_skips_fetch(self, registry, providers, clock, history):
        fetcher = PriceFetcher({"AAPL": 155.0, "MSFT": 400.0}, clock)
        pipeline = _pipeline(registry, providers, clock, fetcher)
        request = TurnRequest("And how is AAPL doing today?", history, session_id="s1")

        await pipeline.run_turn(request)
        clock.advance(minutes=2)
        result = await pipeline.run_turn(request)

        assert len(fetcher.calls) == 1
        # cached fetch outranks the older figure still in the conversation
        aapl = result.facts_used.get("AAPL")
        assert aapl.value == 155.0
        assert aapl.source == ReconcileSource.CACHE
        assert not aapl.stale

        clock.advance(minutes=10)
        await pipeline.run_turn(request)
        assert len(fetcher.calls) == 2

    @pytest.mark.asyncio
    async def test_sessions_do_not_share_state(self, registry, providers, clock, history):
        fetcher = PriceFetcher({"AAPL": 155.0, "MSFT": 400.0}, clock)
        pipeline = _pipeline(registry, providers, clock, fetcher)

        await pipeline.run_turn(TurnRequest("And AAPL?", history, session_id="a"))
        await pipeline.run_turn(TurnRequest("And AAPL?", history, session_id="b"))

        assert len(fetcher.calls) == 2

    @pytest.mark.asyncio
    async def test_streaming_tokens(self, registry, fake_provider, clock):
        providers = {"p1": fake_provider("p1", [["Hel", "lo"]]), "p2": fake_provider("p2"), "p3": fake_provider("p3")}
        pipeline = _pipeline(registry, providers, clock, PriceFetcher({}, clock))
        tokens = []

        result = await pipeline.run_turn(TurnRequest("hi"), on_token=tokens.append)

        assert tokens == ["Hel", "lo"]
        assert result.content == "Hello"

    @pytest.mark.asyncio
    async def test_provider_failover(self, registry, fake_provider, clock):
        providers = {
            "p1": fake_provider("p1", [ProviderTimeoutError("slow")]),
            "p2": fake_provider("p2"),
            "p3": fake_provider("p3"),
        }
        pipeline = _pipeline(registry, providers, clock, PriceFetcher({}, clock))

        result = await pipeline.run_turn(TurnRequest("hi"))

        assert result.provider_id == "p2"
        assert result.attempts == 2

    @pytest.mark.asyncio
    async def test_state_saved_when_providers_exhausted(self, registry, fake_provider, clock, history):
        providers = {pid: fake_provider(pid, [ProviderTimeoutError("slow")]) for pid in registry.ids}
        fetcher = PriceFetcher({"AAPL": 155.0}, clock)
        pipeline = _pipeline(registry, providers, clock, fetcher)

        with pytest.raises(ProviderExhaustedError):
            await pipeline.run_turn(TurnRequest("And AAPL?", history, session_id="s1"))

        assert pipeline.persistence.load_session_state("s1").prices["AAPL"].value == 155.0

    @pytest.mark.asyncio
    async def test_fetcher_failure_falls_back_to_conversation(self, registry, providers, clock, history):
        fetcher = PriceFetcher({}, clock, error=RuntimeError("api down"))
        pipeline = _pipeline(registry, providers, clock, fetcher)

        result = await pipeline.run_turn(TurnRequest("And AAPL?", history))

        aapl = result.facts_used.get("AAPL")
        assert aapl.value == 150.0
        assert aapl.source == ReconcileSource.CONVERSATION
        assert pipeline.context.metrics.get("fetch_failures") == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("created_at", [datetime(2025, 1, 15, 11, 58), "yesterday"])
    async def test_loose_turn_timestamps(self, registry, providers, clock, created_at):
        pipeline = _pipeline(registry, providers, clock, PriceFetcher({}, clock))
        history = [{"role": "assistant", "content": "AAPL: $150", "created_at": created_at}]

        result = await pipeline.run_turn(TurnRequest("And AAPL?", history, session_id="s1"))

        aapl = result.facts_used.get("AAPL")
        assert aapl.value == 150.0
        assert aapl.fact.observed_at.tzinfo is not None
        assert not aapl.stale


class TestPortfolioResolution:
    @pytest.mark.asyncio
    async def test_declared_holdings_are_fetched_and_totalled(self, registry, providers, clock):
        resolver = PortfolioResolver(PortfolioList([PortfolioRecord("1", "Main", [PortfolioHolding("NVDA", 10)])]))
        fetcher = PriceFetcher({"NVDA": 900.0}, clock)
        pipeline = _pipeline(registry, providers, clock, fetcher, portfolio_resolver=resolver)

        result = await pipeline.run_turn(TurnRequest("how am I doing?", user_id="u1"))

        assert fetcher.calls == [["NVDA"]]
        assert result.portfolio.resolved
        total = result.facts_used.get(PORTFOLIO_SUBJECT, FactKind.TOTAL_VALUE)
        assert total.value == 9000.0
        assert total.fact.provenance == Provenance.COMPUTED

    @pytest.mark.asyncio
    async def test_ambiguous_portfolio_asks(self, registry, providers, clock):
        resolver = PortfolioResolver(
            PortfolioList([PortfolioRecord("1", "Retirement"), PortfolioRecord("2", "Trading")])
        )
        pipeline = _pipeline(registry, providers, clock, PriceFetcher({}, clock), portfolio_resolver=resolver)

        result = await pipeline.run_turn(TurnRequest("how am I doing?", user_id="u1"))

        assert result.portfolio.needs_clarification
        assert "Clarify which portfolio: Retirement, Trading" in _system(providers["p1"])


class TestComputePortfolioTotal:
    def test_fresh_prices_preferred(self, clock):
        fresh = [Fact("AAPL", FactKind.PRICE, 160.0, clock.now, Provenance.API)]
        conversation = [
            Fact("AAPL", FactKind.PRICE, 150.0, clock.now, Provenance.CONVERSATION),
            Fact("AAPL", FactKind.HOLDING, 10, clock.now, Provenance.CONVERSATION),
        ]
        total = compute_portfolio_total(fresh, [], conversation, clock.now)
        assert total.value == 1600.0
        assert total.attributes["calculated_from"] == ["AAPL"]

    def test_unpriced_holding_means_no_total(self, clock):
        conversation = [
            Fact("AAPL", FactKind.PRICE, 150.0, clock.now, Provenance.CONVERSATION),
            Fact("AAPL", FactKind.HOLDING, 10, clock.now, Provenance.CONVERSATION),
            Fact("MSFT", FactKind.HOLDING, 5, clock.now, Provenance.CONVERSATION),
        ]
        assert compute_portfolio_total([], [], conversation, clock.now) is None

    def test_no_holdings(self, clock):
        prices = [Fact("AAPL", FactKind.PRICE, 150.0, clock.now, Provenance.API)]
        assert compute_portfolio_total(prices, [], [], clock.now) is None

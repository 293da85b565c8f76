"""Tests for SessionCache TTL policy, lookup and updates."""

from datetime import timedelta

import pytest

from portfolio.models import (
    PORTFOLIO_SUBJECT,
    Fact,
    FactKind,
    Provenance,
    ReconciledFact,
    ReconcileSource,
    ReconciliationResult,
    SessionState,
)
from portfolio.session_cache import DEFAULT_TTLS, SessionCache


def _fact(subject, value, observed_at, kind=FactKind.PRICE, provenance=Provenance.API, **attributes):
    return Fact(subject, kind, value, observed_at, provenance, attributes=attributes)


@pytest.fixture
def cache(clock):
    return SessionCache(clock=clock)


class TestStaleness:
    def test_default_ttls(self):
        assert DEFAULT_TTLS[FactKind.PRICE] == timedelta(minutes=5)
        assert DEFAULT_TTLS[FactKind.TOTAL_VALUE] == timedelta(minutes=5)
        assert DEFAULT_TTLS[FactKind.METRIC] == timedelta(minutes=60)
        assert DEFAULT_TTLS[FactKind.HOLDING] == timedelta(hours=24)

    def test_missing_fact_is_stale(self, cache):
        assert cache.is_stale(None)

    def test_price_boundary(self, cache, clock):
        fact = _fact("AAPL", 150, clock.now - timedelta(minutes=5))
        assert not cache.is_stale(fact)
        fact = _fact("AAPL", 150, clock.now - timedelta(minutes=5, seconds=1))
        assert cache.is_stale(fact)

    def test_holdings_live_longer_than_prices(self, cache, clock):
        observed = clock.now - timedelta(hours=2)
        assert cache.is_stale(_fact("AAPL", 150, observed))
        assert not cache.is_stale(_fact("AAPL", 100, observed, kind=FactKind.HOLDING))

    def test_configured_ttl_override(self, clock):
        cache = SessionCache(ttls={FactKind.PRICE: timedelta(seconds=30)}, clock=clock)
        assert cache.is_stale(_fact("AAPL", 1, clock.now - timedelta(seconds=31)))
        assert cache.ttl(FactKind.HOLDING) == timedelta(hours=24)


class TestRefreshNeeds:
    def test_staleness_gating(self, cache, clock):
        """Fresh subjects are not refetched; stale and unknown ones are."""
        state = cache.new_state()
        cache.update(
            state,
            [
                _fact("AAPL", 150, clock.now - timedelta(minutes=2)),
                _fact("MSFT", 400, clock.now - timedelta(minutes=10)),
            ],
        )
        needs = cache.get_refresh_needs(state, ["AAPL", "MSFT", "TSLA", "AAPL"])
        assert needs.fresh == ["AAPL"]
        assert needs.stale == ["MSFT", "TSLA"]
        assert needs.needs_refresh
        assert not needs.all_fresh

    def test_all_fresh(self, cache, clock):
        state = cache.new_state()
        cache.update(state, [_fact("AAPL", 150, clock.now)])
        needs = cache.get_refresh_needs(state, ["AAPL"])
        assert needs.all_fresh
        assert not needs.needs_refresh

    def test_kind_specific(self, cache, clock):
        state = cache.new_state()
        cache.update(state, [_fact("AAPL", 100, clock.now - timedelta(hours=1), kind=FactKind.HOLDING)])
        assert cache.get_refresh_needs(state, ["AAPL"], kind=FactKind.HOLDING).all_fresh
        assert cache.get_refresh_needs(state, ["AAPL"]).stale == ["AAPL"]


class TestLookupAndUpdate:
    def test_lookup_marks_cache_provenance(self, cache, clock):
        state = cache.new_state()
        cache.update(state, [_fact("AAPL", 150, clock.now, provenance=Provenance.CONVERSATION)])
        (fact,) = cache.lookup(state, ["AAPL"])
        assert fact.provenance == Provenance.CACHE
        assert fact.attributes["origin"] == "conversation"
        # stored fact untouched
        assert state.prices["AAPL"].provenance == Provenance.CONVERSATION

    def test_lookup_filters_subjects_and_keeps_portfolio(self, cache, clock):
        state = cache.new_state()
        cache.update(
            state,
            [
                _fact("AAPL", 150, clock.now),
                _fact("MSFT", 400, clock.now),
                _fact("AAPL:PE", 30, clock.now, kind=FactKind.METRIC),
                _fact(PORTFOLIO_SUBJECT, 35000, clock.now, kind=FactKind.TOTAL_VALUE),
            ],
        )
        subjects = {f.subject_key for f in cache.lookup(state, ["AAPL"])}
        assert subjects == {"AAPL", "AAPL:PE", PORTFOLIO_SUBJECT}

    def test_update_records_previous_value(self, cache, clock):
        state = cache.new_state()
        cache.update(state, [_fact("AAPL", 150, clock.now)])
        clock.advance(minutes=1)
        cache.update(state, [_fact("AAPL", 155, clock.now)])
        assert state.prices["AAPL"].value == 155
        assert state.prices["AAPL"].attributes["previous_value"] == 150
        assert state.metadata.last_updated == clock.now

    def test_apply_folds_reconciliation(self, cache, clock):
        state = cache.new_state()
        fact = _fact("AAPL", 155, clock.now)
        result = ReconciliationResult()
        result.merged[fact.key] = ReconciledFact(
            fact=fact, source=ReconcileSource.UPDATED, previous_value=150, change=5, change_percent=10 / 3
        )
        cache.apply(state, result)
        stored = state.prices["AAPL"]
        assert stored.attributes["source"] == "updated"
        assert stored.attributes["change_percent"] == 3.33


class TestFormatting:
    def test_empty_state_renders_nothing(self, cache):
        assert cache.format_for_prompt(SessionState.new()) == ""

    def test_prompt_sections(self, cache, clock):
        state = cache.new_state()
        cache.update(
            state,
            [
                _fact("AAPL", 150, clock.now - timedelta(minutes=10)),
                _fact("AAPL", 100, clock.now, kind=FactKind.HOLDING, company_name="Apple Inc."),
                _fact(PORTFOLIO_SUBJECT, 15000, clock.now, kind=FactKind.TOTAL_VALUE, calculated_from=["AAPL"]),
            ],
        )
        text = cache.format_for_prompt(state)
        assert "**AAPL**: $150.00 (10min ago, STALE)" in text
        assert "**AAPL**: 100 shares (Apple Inc.)" in text
        assert "**Total**: $15,000.00" in text
        assert "Based on: AAPL" in text

    def test_summary(self, cache, clock):
        state = cache.new_state()
        cache.update(state, [_fact("AAPL", 150, clock.now - timedelta(minutes=6))])
        summary = cache.summary(state)
        assert summary["prices"] == 1
        assert summary["stale_prices"] == ["AAPL"]
        assert summary["portfolio_value"] is None

"""Tests for round-robin provider selection."""

from collections import Counter

from llm.base import ProviderHTTPError
from llm.health import HealthTracker
from llm.selector import ProviderSelector


def _selector(registry):
    health = HealthTracker(registry.ids)
    return ProviderSelector(registry, health), health


class TestProviderSelector:
    def test_round_robin_order(self, registry):
        selector, _ = _selector(registry)
        picks = [selector.select().id for _ in range(6)]
        assert picks == ["p1", "p2", "p3", "p1", "p2", "p3"]

    def test_round_robin_fairness(self, registry):
        """Over k*N selections each ACTIVE provider is picked exactly k times."""
        selector, _ = _selector(registry)
        counts = Counter(selector.select().id for _ in range(3 * 10))
        assert counts == {"p1": 10, "p2": 10, "p3": 10}

    def test_skips_inactive(self, registry):
        selector, health = _selector(registry)
        health.record_failure("p2", ProviderHTTPError(401, ""))
        picks = [selector.select().id for _ in range(4)]
        assert picks == ["p1", "p3", "p1", "p3"]

    def test_fairness_among_remaining_active(self, registry):
        selector, health = _selector(registry)
        health.record_failure("p1", ProviderHTTPError(403, ""))
        counts = Counter(selector.select().id for _ in range(2 * 5))
        assert counts == {"p2": 5, "p3": 5}

    def test_none_when_all_inactive(self, registry):
        selector, health = _selector(registry)
        for pid in registry.ids:
            health.record_failure(pid, ProviderHTTPError(503, ""))
        assert selector.select() is None

    def test_continues_after_last_returned(self, registry):
        selector, health = _selector(registry)
        assert selector.select().id == "p1"
        health.record_failure("p2", ProviderHTTPError(401, ""))
        assert selector.select().id == "p3"
        assert selector.select().id == "p1"

"""Merge conversation, cache and freshly fetched facts into one authoritative set."""

from dataclasses import replace
from datetime import datetime
from typing import Iterable

import structlog

from .models import (
    EPSILON,
    Fact,
    FactKey,
    ReconcileSource,
    ReconciledFact,
    ReconciliationResult,
)
from .session_cache import SessionCache

logger = structlog.get_logger()

# Bookkeeping written by SessionCache; never carried from one fact to the next
_TRANSIENT_ATTRIBUTES = ("previous_value", "source", "change_percent")


def _index(facts: Iterable[Fact] | None) -> dict[FactKey, Fact]:
    """Key facts by subject+kind. Earlier entries win on duplicates."""
    indexed: dict[FactKey, Fact] = {}
    for fact in facts or ():
        indexed.setdefault(fact.key, fact)
    return indexed


def _ordered_keys(*indexes: dict[FactKey, Fact]) -> list[FactKey]:
    """Union of keys, first index first, each key once."""
    keys: dict[FactKey, None] = {}
    for index in indexes:
        for key in index:
            keys.setdefault(key)
    return list(keys)


def _clean(attributes: dict) -> dict:
    return {k: v for k, v in attributes.items() if k not in _TRANSIENT_ATTRIBUTES}


class DataReconciler:
    """Resolves each subject+kind to exactly one fact.

    The prior fact comes from the session cache when it has one, otherwise
    from the conversation. Against a fresh fact the outcome is:

    - values differ beyond epsilon: ``changed``, fresh value wins and the prior
      value and signed percentage delta are recorded;
    - values agree: ``preserved`` as ``confirmed``, prior value and provenance
      kept, observation time refreshed;
    - no fresh fact: ``preserved`` from the prior source, flagged stale when
      it is past its TTL;
    - no prior fact: ``fresh`` from the API.
    """

    def __init__(self, session_cache: SessionCache | None = None, epsilon: float = EPSILON):
        self.session_cache = session_cache or SessionCache()
        self.epsilon = epsilon

    def reconcile(
        self,
        conversation_facts: Iterable[Fact] | None,
        cache_facts: Iterable[Fact] | None,
        fresh_facts: Iterable[Fact] | None,
        now: datetime | None = None,
    ) -> ReconciliationResult:
        now = now or self.session_cache.now()
        conversation = _index(conversation_facts)
        cache = _index(cache_facts)
        fresh = _index(fresh_facts)

        result = ReconciliationResult()
        for key in _ordered_keys(cache, conversation, fresh):
            prior = cache.get(key) or conversation.get(key)
            spoken = conversation.get(key)
            latest = fresh.get(key)

            if prior is not None and latest is not None:
                if prior.matches(latest, self.epsilon):
                    result.merged[key] = self._confirmed(prior, spoken, latest)
                else:
                    result.merged[key] = self._changed(prior, latest)
                    result.changed.add(key)
                    continue
                result.preserved.add(key)
            elif prior is not None:
                source = ReconcileSource.CACHE if key in cache else ReconcileSource.CONVERSATION
                result.merged[key] = ReconciledFact(
                    fact=prior,
                    source=source,
                    stale=self.session_cache.is_stale(prior, now),
                )
                result.preserved.add(key)
            else:
                result.merged[key] = ReconciledFact(fact=latest, source=ReconcileSource.API)
                result.fresh.add(key)

        logger.info("reconcile.summary", **result.summary())
        if result.changed:
            logger.info(
                "reconcile.changes_detected",
                subjects=sorted(f"{k.subject_key}/{k.kind.value}" for k in result.changed),
            )
        return result

    @staticmethod
    def _changed(prior: Fact, latest: Fact) -> ReconciledFact:
        change = latest.value - prior.value
        percent = (change / prior.value * 100) if prior.value else None
        fact = replace(latest, attributes={**_clean(prior.attributes), **_clean(latest.attributes)})
        return ReconciledFact(
            fact=fact,
            source=ReconcileSource.UPDATED,
            previous_value=prior.value,
            change=change,
            change_percent=percent,
        )

    @staticmethod
    def _confirmed(prior: Fact, spoken: Fact | None, latest: Fact) -> ReconciledFact:
        # The turn that first stated the value survives a cache round-trip
        turn_index = prior.turn_index if prior.turn_index is not None else (spoken.turn_index if spoken else None)
        fact = replace(
            prior,
            observed_at=latest.observed_at,
            turn_index=turn_index,
            attributes={**_clean(latest.attributes), **_clean(prior.attributes)},
        )
        return ReconciledFact(fact=fact, source=ReconcileSource.CONFIRMED)

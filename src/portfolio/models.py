"""Data models for facts, session state and reconciliation results."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import NamedTuple

# Values closer than this are the same fact (currency units for prices)
EPSILON = 0.01

# Subject key used for whole-portfolio facts such as the total value
PORTFOLIO_SUBJECT = "PORTFOLIO"


class FactKind(str, Enum):
    PRICE = "price"
    HOLDING = "holding"
    TOTAL_VALUE = "total_value"
    METRIC = "metric"


class Provenance(str, Enum):
    CONVERSATION = "conversation"
    CACHE = "cache"
    API = "api"
    COMPUTED = "computed"


class ReconcileSource(str, Enum):
    """How a merged fact was arrived at."""

    UPDATED = "updated"  # fresh value differs from what we knew
    CONFIRMED = "confirmed"  # fresh value agrees with what we knew
    CONVERSATION = "conversation"  # only the conversation knew it
    CACHE = "cache"  # only the session cache knew it
    API = "api"  # first time we see it


class FactKey(NamedTuple):
    subject_key: str
    kind: FactKind


def metric_subject(ticker: str, metric: str) -> str:
    """Subject key for a per-ticker metric, e.g. ``AAPL:PE``."""
    return f"{ticker.upper()}:{metric.upper()}"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_dt(value) -> datetime | None:
    """ISO string or datetime to an aware datetime; naive values are taken as UTC."""
    if value is None:
        return None
    parsed = value if isinstance(value, datetime) else datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class Fact:
    """One timestamped, sourced piece of financial data."""

    subject_key: str
    kind: FactKind
    value: float
    observed_at: datetime
    provenance: Provenance
    turn_index: int | None = None
    attributes: dict = field(default_factory=dict)

    @property
    def key(self) -> FactKey:
        return FactKey(self.subject_key, self.kind)

    def matches(self, other: "Fact", epsilon: float = EPSILON) -> bool:
        """Numeric equality within ``epsilon``; float noise at the boundary counts as equal."""
        return abs(self.value - other.value) <= epsilon + 1e-9

    def to_dict(self) -> dict:
        return {
            "subject_key": self.subject_key,
            "kind": self.kind.value,
            "value": self.value,
            "observed_at": self.observed_at.isoformat(),
            "provenance": self.provenance.value,
            "turn_index": self.turn_index,
            "attributes": dict(self.attributes),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Fact":
        return cls(
            subject_key=data["subject_key"],
            kind=FactKind(data["kind"]),
            value=float(data["value"]),
            observed_at=_parse_dt(data["observed_at"]),
            provenance=Provenance(data.get("provenance", Provenance.CACHE.value)),
            turn_index=data.get("turn_index"),
            attributes=dict(data.get("attributes") or {}),
        )


@dataclass
class SessionMetadata:
    created_at: datetime = field(default_factory=utcnow)
    last_updated: datetime = field(default_factory=utcnow)
    version: int = 1


@dataclass
class SessionState:
    """Per-conversation facts keyed by kind, then subject."""

    facts: dict[FactKind, dict[str, Fact]] = field(
        default_factory=lambda: {kind: {} for kind in FactKind}
    )
    metadata: SessionMetadata = field(default_factory=SessionMetadata)

    @classmethod
    def new(cls, now: datetime | None = None) -> "SessionState":
        now = now or utcnow()
        return cls(metadata=SessionMetadata(created_at=now, last_updated=now))

    def get(self, subject_key: str, kind: FactKind) -> Fact | None:
        return self.facts.get(kind, {}).get(subject_key)

    def of_kind(self, kind: FactKind) -> dict[str, Fact]:
        return self.facts.setdefault(kind, {})

    def all_facts(self) -> list[Fact]:
        return [fact for kind in FactKind for fact in self.facts.get(kind, {}).values()]

    @property
    def prices(self) -> dict[str, Fact]:
        return self.of_kind(FactKind.PRICE)

    @property
    def holdings(self) -> dict[str, Fact]:
        return self.of_kind(FactKind.HOLDING)

    def is_empty(self) -> bool:
        return not any(self.facts.get(kind) for kind in FactKind)

    def to_dict(self) -> dict:
        return {
            "facts": {
                kind.value: {subject: f.to_dict() for subject, f in self.facts.get(kind, {}).items()}
                for kind in FactKind
            },
            "metadata": {
                "created_at": self.metadata.created_at.isoformat(),
                "last_updated": self.metadata.last_updated.isoformat(),
                "version": self.metadata.version,
            },
        }

    @classmethod
    def from_dict(cls, data: dict | None) -> "SessionState":
        if not data:
            return cls.new()
        state = cls()
        for kind_value, by_subject in (data.get("facts") or {}).items():
            try:
                kind = FactKind(kind_value)
            except ValueError:
                continue
            state.facts[kind] = {
                subject: Fact.from_dict(raw) for subject, raw in (by_subject or {}).items()
            }
        meta = data.get("metadata") or {}
        state.metadata = SessionMetadata(
            created_at=_parse_dt(meta.get("created_at")) or utcnow(),
            last_updated=_parse_dt(meta.get("last_updated")) or utcnow(),
            version=meta.get("version", 1),
        )
        return state


@dataclass
class ReconciledFact:
    """A merged fact plus its change annotations."""

    fact: Fact
    source: ReconcileSource
    previous_value: float | None = None
    change: float | None = None
    change_percent: float | None = None
    stale: bool = False

    @property
    def value(self) -> float:
        return self.fact.value

    @property
    def turn_index(self) -> int | None:
        return self.fact.turn_index


@dataclass
class ReconciliationResult:
    merged: dict[FactKey, ReconciledFact] = field(default_factory=dict)
    changed: set[FactKey] = field(default_factory=set)
    preserved: set[FactKey] = field(default_factory=set)
    fresh: set[FactKey] = field(default_factory=set)

    def get(self, subject_key: str, kind: FactKind = FactKind.PRICE) -> ReconciledFact | None:
        return self.merged.get(FactKey(subject_key, kind))

    def of_kind(self, kind: FactKind) -> dict[str, ReconciledFact]:
        return {key.subject_key: rf for key, rf in self.merged.items() if key.kind == kind}

    def subject_keys(self, group: str, kind: FactKind | None = None) -> set[str]:
        """Project ``changed``/``preserved``/``fresh`` onto plain subject keys."""
        keys: set[FactKey] = getattr(self, group)
        return {k.subject_key for k in keys if kind is None or k.kind == kind}

    @property
    def has_updates(self) -> bool:
        return bool(self.changed)

    def summary(self) -> dict:
        return {
            "merged": len(self.merged),
            "changed": len(self.changed),
            "preserved": len(self.preserved),
            "fresh": len(self.fresh),
        }

"""Per-provider health state machine driven by call outcomes."""

import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Callable

import structlog

from .base import (
    MalformedResponseError,
    PermanentProviderError,
    ProviderConnectionError,
    ProviderHTTPError,
    ProviderTimeoutError,
)

logger = structlog.get_logger()

PERMANENT_STATUS_CODES = frozenset({401, 403, 404, 503})

# Body fragments that mean the account is refusing all requests
_QUOTA_MARKERS = ("quota", "insufficient_quota", "credit balance", "billing")


class HealthState(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class FailureKind(str, Enum):
    PERMANENT = "permanent"
    TRANSIENT = "transient"


@dataclass
class ProviderHealth:
    state: HealthState = HealthState.ACTIVE
    consecutive_failures: int = 0
    last_failure_at: datetime | None = None
    last_success_at: datetime | None = None
    last_error: str | None = None

    @property
    def active(self) -> bool:
        return self.state == HealthState.ACTIVE


def classify_failure(error: Exception) -> FailureKind:
    """Map a provider call error to PERMANENT or TRANSIENT."""
    if isinstance(error, PermanentProviderError):
        return FailureKind.PERMANENT
    if isinstance(error, ProviderHTTPError):
        if error.status_code in PERMANENT_STATUS_CODES:
            return FailureKind.PERMANENT
        body = (error.body or "").lower()
        if any(marker in body for marker in _QUOTA_MARKERS):
            return FailureKind.PERMANENT
        return FailureKind.TRANSIENT
    if isinstance(error, (ProviderTimeoutError, ProviderConnectionError, MalformedResponseError)):
        return FailureKind.TRANSIENT
    return FailureKind.TRANSIENT


class HealthTracker:
    """Owns one ProviderHealth per provider for the process lifetime.

    Each record has its own lock so concurrent conversations only serialise
    on the provider they touch.
    """

    def __init__(self, provider_ids: list[str], clock: Callable[[], datetime] | None = None):
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._records = {pid: ProviderHealth() for pid in provider_ids}
        self._locks = {pid: threading.Lock() for pid in provider_ids}

    def get(self, provider_id: str) -> ProviderHealth:
        """Return a snapshot copy of a provider's health."""
        with self._locks[provider_id]:
            record = self._records[provider_id]
            return ProviderHealth(**vars(record))

    def is_active(self, provider_id: str) -> bool:
        with self._locks[provider_id]:
            return self._records[provider_id].state == HealthState.ACTIVE

    def record_success(self, provider_id: str) -> None:
        with self._locks[provider_id]:
            record = self._records[provider_id]
            recovered = record.state == HealthState.INACTIVE
            record.consecutive_failures = 0
            record.last_success_at = self._clock()
            record.state = HealthState.ACTIVE
        if recovered:
            logger.info("health.provider_recovered", provider=provider_id)

    def record_failure(self, provider_id: str, error: Exception) -> FailureKind:
        """Classify and apply a failed attempt. Returns the classification."""
        kind = classify_failure(error)
        with self._locks[provider_id]:
            record = self._records[provider_id]
            record.consecutive_failures += 1
            record.last_failure_at = self._clock()
            record.last_error = str(error)[:300]
            if kind == FailureKind.PERMANENT:
                record.state = HealthState.INACTIVE
            failures = record.consecutive_failures

        if kind == FailureKind.PERMANENT:
            logger.warning("health.provider_disabled", provider=provider_id, error=str(error)[:200])
        else:
            logger.info("health.transient_failure", provider=provider_id, failures=failures)
        return kind

    def has_available_providers(self) -> bool:
        return any(self.is_active(pid) for pid in self._records)

    def report(self) -> dict[str, ProviderHealth]:
        return {pid: self.get(pid) for pid in self._records}

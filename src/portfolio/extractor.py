"""Pattern-based fact extraction from prior conversation turns.

Turns are scanned oldest to newest and only the first mention of each
subject+kind is kept: what the assistant said first is what the user has been
relying on, so a later restatement never silently replaces it.
"""

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable

import structlog

from .models import (
    PORTFOLIO_SUBJECT,
    Fact,
    FactKey,
    FactKind,
    Provenance,
    _parse_dt,
    metric_subject,
    utcnow,
)
from .tickers import is_plausible_ticker

logger = structlog.get_logger()

_NUMBER = r"(\d[\d,]*(?:\.\d+)?)"
_WORD = r"(?:[A-Z][\w.'\-]*|&)"
_COMPANY = rf"({_WORD}(?:[ \t]+{_WORD})*)"


def _to_number(raw: str) -> float | None:
    try:
        return float(raw.replace(",", ""))
    except (AttributeError, ValueError):
        return None


@dataclass
class Recognition:
    """One raw match: subject, value and where in the text it was found."""

    subject_key: str
    value: float
    position: int = 0
    attributes: dict = field(default_factory=dict)


class FactRecognizer(ABC):
    """Finds facts of a single kind in free text."""

    kind: FactKind

    @abstractmethod
    def recognize(self, text: str) -> list[Recognition]:
        """Return matches in order of appearance. No match is not an error."""
        ...


class PriceRecognizer(FactRecognizer):
    """``AAPL: $150``, ``AAPL at $150``, ``Apple (AAPL) - 100 shares * $150``."""

    kind = FactKind.PRICE

    _TICKER_PRICE = re.compile(
        r"\b([A-Z]{1,5})\b\s*(?::|=|-|–|\bat\b|\bis\b)?\s*\$\s?" + _NUMBER
    )
    # Skip spans that talk about a total, value or cost before reaching the "$"
    _PAREN_PRICE = re.compile(
        r"\(([A-Z]{1,5})\)(?:(?!(?i:total|value|worth|cost))[^$\n])*?\$\s?" + _NUMBER
    )

    def recognize(self, text: str) -> list[Recognition]:
        found = []
        for pattern in (self._TICKER_PRICE, self._PAREN_PRICE):
            for match in pattern.finditer(text):
                ticker, value = match.group(1), _to_number(match.group(2))
                if is_plausible_ticker(ticker) and value and value > 0:
                    found.append(Recognition(ticker, value, match.start()))
        return sorted(found, key=lambda r: r.position)


class HoldingRecognizer(FactRecognizer):
    """``Apple Inc. (AAPL) - 100 shares``, ``100 shares of AAPL``, ``AAPL: 100 shares``."""

    kind = FactKind.HOLDING

    _NAMED = re.compile(_COMPANY + r"\s*\(([A-Z]{1,5})\)\s*[:\-–]?\s*" + _NUMBER + r"\s+shares\b")
    _SHARES_OF = re.compile(
        _NUMBER + r"\s+shares\s+of\s+(?:" + _COMPANY + r"\s*\(([A-Z]{1,5})\)|\$?([A-Z]{1,5})\b)"
    )
    _TICKER_SHARES = re.compile(r"\b([A-Z]{1,5})\b\s*[:\-–]\s*" + _NUMBER + r"\s+shares\b")

    def recognize(self, text: str) -> list[Recognition]:
        found = []
        for match in self._NAMED.finditer(text):
            self._add(found, match.group(2), match.group(3), match.start(), match.group(1))
        for match in self._SHARES_OF.finditer(text):
            ticker = match.group(3) or match.group(4)
            self._add(found, ticker, match.group(1), match.start(), match.group(2))
        for match in self._TICKER_SHARES.finditer(text):
            self._add(found, match.group(1), match.group(2), match.start(), None)
        return sorted(found, key=lambda r: r.position)

    @staticmethod
    def _add(found: list, ticker: str, raw_shares: str, position: int, company: str | None):
        shares = _to_number(raw_shares)
        if not ticker or not is_plausible_ticker(ticker) or not shares or shares <= 0:
            return
        attributes = {"company_name": company.strip()} if company else {}
        found.append(Recognition(ticker, shares, position, attributes))


class TotalValueRecognizer(FactRecognizer):
    """``portfolio is worth $76,471.75``, ``Total value: $76,471.75``."""

    kind = FactKind.TOTAL_VALUE

    _TOTAL = re.compile(
        r"\b(?:total\s+portfolio\s+value|portfolio\s+total(?:\s+value)?|portfolio\s+value"
        r"|total\s+value|portfolio|total)\b"
        r"(?:\s+(?:is|was|of|now|worth|at|comes\s+to|stands\s+at))*"
        r"\s*[:=]?\s*(?:approximately\s+|about\s+|~)?\$\s?" + _NUMBER,
        re.IGNORECASE,
    )

    def recognize(self, text: str) -> list[Recognition]:
        for match in self._TOTAL.finditer(text):
            value = _to_number(match.group(1))
            if value and value > 0:
                return [Recognition(PORTFOLIO_SUBJECT, value, match.start())]
        return []


class MetricRecognizer(FactRecognizer):
    """``AAPL P/E ratio of 33.8``, ``MSFT's Beta: 0.9``."""

    kind = FactKind.METRIC

    _METRIC = re.compile(
        r"\b([A-Z]{1,5})(?:'s)?\s+(?i:(P/E|PE|RSI|Beta|EPS|Dividend\s+Yield))"
        r"(?:\s+ratio)?(?:\s+(?:is|of|at))*\s*[:=]?\s*(-?\d[\d,]*(?:\.\d+)?)"
    )

    def recognize(self, text: str) -> list[Recognition]:
        found = []
        for match in self._METRIC.finditer(text):
            ticker = match.group(1)
            value = _to_number(match.group(3).lstrip("-"))
            if not is_plausible_ticker(ticker) or value is None:
                continue
            if match.group(3).startswith("-"):
                value = -value
            name = re.sub(r"[^A-Z]+", "_", match.group(2).upper().replace("/", "")).strip("_")
            found.append(Recognition(metric_subject(ticker, name), value, match.start(), {"metric": name}))
        return found


def default_recognizers() -> list[FactRecognizer]:
    return [PriceRecognizer(), HoldingRecognizer(), TotalValueRecognizer(), MetricRecognizer()]


def _turn_time(value, fallback: datetime) -> datetime:
    """When the turn was written; unreadable timestamps fall back to extraction time."""
    try:
        return _parse_dt(value) or fallback
    except (TypeError, ValueError):
        logger.debug("extractor.bad_timestamp", created_at=str(value)[:40])
        return fallback


def _message_text(content) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "\n".join(
            part.get("text", "") for part in content if isinstance(part, dict) and part.get("type") == "text"
        )
    return ""


class ConversationFactExtractor:
    """Runs every recognizer over user and assistant turns, first mention wins."""

    def __init__(
        self,
        recognizers: list[FactRecognizer] | None = None,
        clock: Callable[[], datetime] | None = None,
        roles: tuple[str, ...] = ("user", "assistant"),
    ):
        self.recognizers = recognizers if recognizers is not None else default_recognizers()
        self._clock = clock or utcnow
        self.roles = roles

    def extract(self, history: list[dict] | None) -> list[Fact]:
        """Return facts in first-mention order, one per subject+kind."""
        if not history:
            return []

        now = self._clock()
        found: dict[FactKey, Fact] = {}
        analyzed = 0
        for turn_index, message in enumerate(history):
            if message.get("role") not in self.roles:
                continue
            text = _message_text(message.get("content"))
            if not text:
                continue
            analyzed += 1
            observed_at = _turn_time(message.get("created_at"), now)

            for recognizer in self.recognizers:
                for match in recognizer.recognize(text):
                    key = FactKey(match.subject_key, recognizer.kind)
                    if key in found:
                        continue
                    found[key] = Fact(
                        subject_key=match.subject_key,
                        kind=recognizer.kind,
                        value=match.value,
                        observed_at=observed_at,
                        provenance=Provenance.CONVERSATION,
                        turn_index=turn_index,
                        attributes=dict(match.attributes),
                    )

        facts = list(found.values())
        logger.info(
            "extractor.summary",
            messages_analyzed=analyzed,
            prices=sum(1 for f in facts if f.kind == FactKind.PRICE),
            holdings=sum(1 for f in facts if f.kind == FactKind.HOLDING),
            metrics=sum(1 for f in facts if f.kind == FactKind.METRIC),
            has_total=any(f.kind == FactKind.TOTAL_VALUE for f in facts),
        )
        return facts

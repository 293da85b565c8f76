"""External fact fetchers and the concurrent fan-out that runs them."""

import asyncio
from datetime import datetime
from typing import Callable, Optional, Protocol, runtime_checkable

import httpx
import structlog

from cli.retry import http_retry, retry_from_config
from observability import Metrics
from observability import metrics as default_metrics
from portfolio.models import Fact, FactKind, Provenance, metric_subject, utcnow

logger = structlog.get_logger()

# Only transport failures are retried; HTTP status errors are final
_RETRYABLE = (httpx.ConnectError, httpx.TimeoutException)

# financial-metrics snapshot field -> metric name used in subject keys
METRIC_FIELDS = {
    "price_to_earnings_ratio": "PE",
    "price_to_book_ratio": "PB",
    "earnings_per_share": "EPS",
    "dividend_yield": "DIVIDEND_YIELD",
    "market_cap": "MARKET_CAP",
}


@runtime_checkable
class FactFetcher(Protocol):
    """Anything that turns subject keys into freshly observed facts."""

    name: str

    async def fetch(self, subject_keys: list[str]) -> Optional[list[Fact]]: ...


async def gather_facts(
    fetchers: list[FactFetcher],
    subject_keys: list[str],
    collector: Metrics | None = None,
) -> list[Fact]:
    """Run every fetcher concurrently and pool what succeeded.

    A failing fetcher is logged as ``fetch.partial_failure`` and contributes
    nothing; the turn carries on with the rest.
    """
    if not fetchers or not subject_keys:
        return []
    collector = collector or default_metrics

    with collector.timer("fetch_latency"):
        results = await asyncio.gather(
            *(f.fetch(list(subject_keys)) for f in fetchers), return_exceptions=True
        )

    facts: list[Fact] = []
    for fetcher, result in zip(fetchers, results):
        name = getattr(fetcher, "name", type(fetcher).__name__)
        if isinstance(result, BaseException):
            if isinstance(result, asyncio.CancelledError):
                raise result
            collector.counter("fetch_failures")
            logger.warning("fetch.partial_failure", fetcher=name, error=str(result))
            continue
        facts.extend(result or [])

    logger.info("fetch.complete", subjects=len(subject_keys), facts=len(facts))
    return facts


class FinancialDatasetsFetcher:
    """Price and metric snapshots from financialdatasets.ai."""

    name = "financialdatasets"

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.financialdatasets.ai",
        max_subjects: int = 3,
        include_metrics: bool = True,
        client: httpx.AsyncClient | None = None,
        timeout: float = 10.0,
        clock: Callable[[], datetime] | None = None,
        retry_config=None,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.max_subjects = max_subjects
        self.include_metrics = include_metrics
        self._client = client
        self._owns_client = client is None
        self.timeout = timeout
        self._clock = clock or utcnow
        if retry_config is not None:
            self._get = retry_from_config(retry_config, _RETRYABLE)(self._request)

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def aclose(self):
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    async def fetch(self, subject_keys: list[str]) -> Optional[list[Fact]]:
        tickers = [s for s in dict.fromkeys(subject_keys) if ":" not in s and s.isalpha()]
        if len(tickers) > self.max_subjects:
            logger.debug("fetch.subjects_capped", requested=len(tickers), cap=self.max_subjects)
            tickers = tickers[: self.max_subjects]
        if not tickers:
            return None

        per_ticker = await asyncio.gather(*(self._fetch_ticker(t) for t in tickers))
        facts = [fact for batch in per_ticker for fact in batch]
        return facts or None

    async def _fetch_ticker(self, ticker: str) -> list[Fact]:
        """Price first; metrics are optional and only fetched once a price exists."""
        try:
            data = await self._get("/prices/snapshot", ticker)
            snapshot = data.get("snapshot") or {}
            price = snapshot.get("price")
            price = None if price is None else float(price)
        except (httpx.HTTPStatusError, httpx.RequestError, AttributeError, TypeError, ValueError) as e:
            logger.warning("fetch.ticker_failed", fetcher=self.name, ticker=ticker, error=str(e))
            return []
        if price is None:
            return []

        now = self._clock()
        facts = [
            Fact(
                subject_key=ticker,
                kind=FactKind.PRICE,
                value=price,
                observed_at=now,
                provenance=Provenance.API,
                attributes={
                    k: snapshot[k] for k in ("day_change", "day_change_percent", "time") if k in snapshot
                },
            )
        ]

        if self.include_metrics:
            try:
                metrics_data = await self._get("/financial-metrics/snapshot", ticker)
                metrics_snapshot = metrics_data.get("snapshot") or {}
                values = {name: metrics_snapshot.get(field) for field, name in METRIC_FIELDS.items()}
            except (httpx.HTTPStatusError, httpx.RequestError, AttributeError, TypeError, ValueError) as e:
                logger.debug("fetch.metrics_unavailable", ticker=ticker, error=str(e))
            else:
                for name, value in values.items():
                    # bool is an int subclass but never a metric
                    if isinstance(value, (int, float)) and not isinstance(value, bool):
                        facts.append(
                            Fact(
                                subject_key=metric_subject(ticker, name),
                                kind=FactKind.METRIC,
                                value=float(value),
                                observed_at=now,
                                provenance=Provenance.API,
                                attributes={"metric": name},
                            )
                        )
        return facts

    @http_retry(exceptions=_RETRYABLE)
    async def _get(self, path: str, ticker: str) -> dict:
        return await self._request(path, ticker)

    async def _request(self, path: str, ticker: str) -> dict:
        response = await self.client.get(
            f"{self.base_url}{path}",
            params={"ticker": ticker},
            headers={"X-API-KEY": self.api_key},
            timeout=self.timeout,
        )
        response.raise_for_status()
        return response.json()

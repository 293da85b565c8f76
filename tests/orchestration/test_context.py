"""Tests for building the orchestration context from configuration."""

from datetime import timedelta

import httpx
import pytest

from cli.config_models import AppConfig
from orchestration.context import OrchestrationContext
from orchestration.fetchers import FinancialDatasetsFetcher
from portfolio.models import FactKind


def _config(**overrides):
    data = {
        "llm": {
            "max_attempts": 2,
            "providers": [
                {"vendor": "openrouter", "api_key": "sk-or-v1-abc", "models": [{"name": "a/free"}, {"name": "b"}]},
                {"vendor": "qwen", "models": [{"name": "qwen-plus"}]},
            ],
        },
        "cache": {"price_ttl": 120},
        "financial_data": {"api_key": "fd-key"},
    }
    data.update(overrides)
    return AppConfig.from_dict(data)


@pytest.fixture
def client():
    return httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(200, json={})))


class TestFromConfig:
    @pytest.mark.asyncio
    async def test_wires_components(self, client):
        context = OrchestrationContext.from_config(_config(), client=client)

        # qwen has no key and is skipped
        assert context.registry.ids == ["openrouter-a-free", "openrouter-b"]
        assert context.health.has_available_providers()
        assert context.invoker.max_attempts == 2
        assert context.session_cache.ttl(FactKind.PRICE) == timedelta(seconds=120)
        (fetcher,) = context.fetchers
        assert isinstance(fetcher, FinancialDatasetsFetcher)
        assert fetcher.client is client

        await context.aclose()
        assert not client.is_closed

    @pytest.mark.asyncio
    async def test_fetcher_needs_key(self, client):
        context = OrchestrationContext.from_config(_config(financial_data={"api_key": None}), client=client)
        assert context.fetchers == []

    @pytest.mark.asyncio
    async def test_owned_client_closed(self):
        context = OrchestrationContext.from_config(_config(financial_data={"enabled": False}))
        owned = context._client
        await context.aclose()
        assert owned.is_closed

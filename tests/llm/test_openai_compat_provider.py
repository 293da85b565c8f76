"""Tests for the OpenAI-compatible HTTP provider using httpx.MockTransport."""

import json

import httpx
import pytest

from llm.base import (
    MalformedResponseError,
    ProviderConnectionError,
    ProviderHTTPError,
    ProviderTimeoutError,
    ToolDefinition,
)
from llm.factory import create_provider, create_providers
from llm.providers.openai_compat import OpenAICompatibleProvider
from llm.registry import ProviderRegistry
from llm.streaming import StreamingRelay

MESSAGES = [{"role": "user", "content": "hi"}]


def _client(handler):
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def _completion(content="Hello", usage=None, tool_calls=None, finish_reason="stop"):
    message = {"role": "assistant", "content": content}
    if tool_calls:
        message["tool_calls"] = tool_calls
    return {
        "choices": [{"message": message, "finish_reason": finish_reason}],
        "usage": usage or {"prompt_tokens": 5, "completion_tokens": 2, "total_tokens": 7},
    }


class TestComplete:
    @pytest.mark.asyncio
    async def test_request_shape(self, descriptor_factory):
        seen = {}

        def handler(request: httpx.Request):
            seen["headers"] = request.headers
            seen["body"] = json.loads(request.content)
            seen["url"] = str(request.url)
            return httpx.Response(200, json=_completion())

        descriptor = descriptor_factory("p1")
        provider = OpenAICompatibleProvider(descriptor, client=_client(handler))
        response = await provider.complete(MESSAGES)

        assert response.content == "Hello"
        assert response.usage.total_tokens == 7
        assert seen["url"] == descriptor.endpoint
        assert seen["headers"]["authorization"] == "Bearer sk-or-v1-test"
        assert seen["headers"]["x-title"] == "Portfolio AI Chat"
        assert "http-referer" in seen["headers"]
        assert seen["body"]["model"] == "model-p1"
        assert seen["body"]["max_tokens"] == 2000
        assert seen["body"]["temperature"] == 0.7
        assert "stream" not in seen["body"]

    @pytest.mark.asyncio
    async def test_non_openrouter_has_no_attribution_headers(self, descriptor_factory):
        seen = {}

        def handler(request):
            seen["headers"] = request.headers
            return httpx.Response(200, json=_completion())

        provider = OpenAICompatibleProvider(descriptor_factory("d", vendor="deepseek"), client=_client(handler))
        await provider.complete(MESSAGES)
        assert "x-title" not in seen["headers"]

    @pytest.mark.asyncio
    async def test_tools_and_tool_calls(self, descriptor_factory):
        seen = {}

        def handler(request):
            seen["body"] = json.loads(request.content)
            return httpx.Response(
                200,
                json=_completion(
                    content=None,
                    finish_reason="tool_calls",
                    tool_calls=[
                        {"id": "call_1", "function": {"name": "get_price", "arguments": '{"ticker": "AAPL"}'}}
                    ],
                ),
            )

        provider = OpenAICompatibleProvider(descriptor_factory("p1"), client=_client(handler))
        tool = ToolDefinition("get_price", "Latest price", {"type": "object", "properties": {}})
        response = await provider.complete(MESSAGES, tools=[tool])

        assert seen["body"]["tools"][0]["function"]["name"] == "get_price"
        assert seen["body"]["tool_choice"] == "auto"
        assert response.finish_reason == "tool_calls"
        assert response.tool_calls[0].arguments == {"ticker": "AAPL"}

    @pytest.mark.asyncio
    async def test_http_error_carries_status(self, descriptor_factory):
        provider = OpenAICompatibleProvider(
            descriptor_factory("p1"),
            client=_client(lambda r: httpx.Response(401, text='{"error": "invalid key"}')),
        )
        with pytest.raises(ProviderHTTPError) as exc_info:
            await provider.complete(MESSAGES)
        assert exc_info.value.status_code == 401
        assert "invalid key" in exc_info.value.body

    @pytest.mark.asyncio
    async def test_missing_choices_is_malformed(self, descriptor_factory):
        provider = OpenAICompatibleProvider(
            descriptor_factory("p1"), client=_client(lambda r: httpx.Response(200, json={"choices": []}))
        )
        with pytest.raises(MalformedResponseError):
            await provider.complete(MESSAGES)

    @pytest.mark.asyncio
    async def test_timeout_translated(self, descriptor_factory):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        provider = OpenAICompatibleProvider(descriptor_factory("p1"), client=_client(handler))
        with pytest.raises(ProviderTimeoutError):
            await provider.complete(MESSAGES)

    @pytest.mark.asyncio
    async def test_connection_error_translated(self, descriptor_factory):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        provider = OpenAICompatibleProvider(descriptor_factory("p1"), client=_client(handler))
        with pytest.raises(ProviderConnectionError):
            await provider.complete(MESSAGES)


class TestOpenStream:
    @pytest.mark.asyncio
    async def test_streams_sse_body(self, descriptor_factory, sse_frame):
        seen = {}
        body = sse_frame("Hel") + sse_frame("lo") + b"data: [DONE]\n\n"

        def handler(request):
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, content=body, headers={"content-type": "text/event-stream"})

        provider = OpenAICompatibleProvider(descriptor_factory("p1"), client=_client(handler))
        async with provider.open_stream(MESSAGES) as chunks:
            response = await StreamingRelay().relay(chunks)

        assert response.content == "Hello"
        assert seen["body"]["stream"] is True
        assert seen["body"]["stream_options"] == {"include_usage": True}

    @pytest.mark.asyncio
    async def test_error_status_raised_on_open(self, descriptor_factory):
        provider = OpenAICompatibleProvider(
            descriptor_factory("p1"), client=_client(lambda r: httpx.Response(503, text="down"))
        )
        with pytest.raises(ProviderHTTPError) as exc_info:
            async with provider.open_stream(MESSAGES):
                pass
        assert exc_info.value.status_code == 503
        assert exc_info.value.body == "down"


class TestFactory:
    def test_create_provider_for_known_vendors(self, descriptor_factory):
        for vendor in ("openrouter", "deepseek", "qwen", "openai", "custom"):
            provider = create_provider(descriptor_factory("x", vendor=vendor), client=_client(lambda r: None))
            assert isinstance(provider, OpenAICompatibleProvider)

    def test_unknown_vendor_rejected(self, descriptor_factory):
        from llm.base import ProviderError

        with pytest.raises(ProviderError):
            create_provider(descriptor_factory("x", vendor="mystery"))

    def test_create_providers_keyed_by_id(self, registry):
        providers = create_providers(registry, client=_client(lambda r: None))
        assert set(providers) == {"p1", "p2", "p3"}
        assert providers["p2"].provider_id == "p2"

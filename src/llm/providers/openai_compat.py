"""OpenAI-compatible chat completions over HTTP (OpenRouter, DeepSeek, Qwen, OpenAI)."""

import json
from contextlib import asynccontextmanager

import httpx

from ..base import (
    ChatProvider,
    GenerateResponse,
    MalformedResponseError,
    ProviderConnectionError,
    ProviderHTTPError,
    ProviderTimeoutError,
    ToolCall,
    ToolDefinition,
    Usage,
)
from ..registry import ProviderDescriptor

_FINISH = {"tool_calls": "tool_calls", "length": "max_tokens"}

OPENROUTER_REFERER = "https://github.com/portfolio-chat/portfolio-chat"
OPENROUTER_TITLE = "Portfolio AI Chat"


def _translate_transport_error(e: httpx.HTTPError, provider_id: str) -> Exception:
    if isinstance(e, httpx.TimeoutException):
        return ProviderTimeoutError(f"Request timeout: {e}", provider_id=provider_id)
    if isinstance(e, httpx.RequestError):
        return ProviderConnectionError(f"Connection failed: {e}", provider_id=provider_id)
    return ProviderConnectionError(str(e), provider_id=provider_id)


class OpenAICompatibleProvider(ChatProvider):
    """Speaks the ``/chat/completions`` dialect shared by most hosted vendors."""

    def __init__(
        self,
        descriptor: ProviderDescriptor,
        client: httpx.AsyncClient | None = None,
        timeout: float = 120.0,
        max_tokens: int = 2000,
        temperature: float = 0.7,
    ):
        self.descriptor = descriptor
        self.max_tokens = max_tokens
        self.temperature = temperature
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(timeout=timeout)

    @property
    def provider_id(self) -> str:
        return self.descriptor.id

    def build_headers(self) -> dict:
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.descriptor.api_key}",
        }
        if self.descriptor.vendor == "openrouter":
            headers["HTTP-Referer"] = OPENROUTER_REFERER
            headers["X-Title"] = OPENROUTER_TITLE
        return headers

    def build_body(
        self, messages: list[dict], tools: list[ToolDefinition] | None, stream: bool
    ) -> dict:
        body = {
            "model": self.descriptor.model,
            "messages": messages,
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
        }
        if stream:
            body["stream"] = True
            body["stream_options"] = {"include_usage": True}
        if tools:
            body["tools"] = [t.to_openai() for t in tools]
            body["tool_choice"] = "auto"
        return body

    async def complete(
        self, messages: list[dict], tools: list[ToolDefinition] | None = None
    ) -> GenerateResponse:
        body = self.build_body(messages, tools, stream=False)
        try:
            response = await self.client.post(
                self.descriptor.endpoint, headers=self.build_headers(), json=body
            )
        except httpx.HTTPError as e:
            raise _translate_transport_error(e, self.provider_id) from e

        if response.status_code >= 400:
            raise ProviderHTTPError(response.status_code, response.text, provider_id=self.provider_id)

        try:
            data = response.json()
            choice = data["choices"][0]
            message = choice["message"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise MalformedResponseError(
                "Invalid API response - no choices returned", provider_id=self.provider_id
            ) from e

        tool_calls = []
        for tc in message.get("tool_calls") or []:
            fn = tc.get("function", {})
            try:
                arguments = json.loads(fn.get("arguments") or "{}")
            except json.JSONDecodeError:
                arguments = {"_raw": fn.get("arguments")}
            tool_calls.append(ToolCall(id=tc.get("id", ""), name=fn.get("name", ""), arguments=arguments))

        return GenerateResponse(
            content=message.get("content"),
            tool_calls=tool_calls,
            usage=Usage.from_payload(data.get("usage")),
            finish_reason=_FINISH.get(choice.get("finish_reason"), "stop"),
        )

    @asynccontextmanager
    async def open_stream(self, messages: list[dict], tools: list[ToolDefinition] | None = None):
        body = self.build_body(messages, tools, stream=True)
        request = self.client.build_request(
            "POST", self.descriptor.endpoint, headers=self.build_headers(), json=body
        )
        try:
            response = await self.client.send(request, stream=True)
        except httpx.HTTPError as e:
            raise _translate_transport_error(e, self.provider_id) from e

        try:
            if response.status_code >= 400:
                await response.aread()
                raise ProviderHTTPError(
                    response.status_code, response.text, provider_id=self.provider_id
                )
            yield self._chunks(response)
        finally:
            await response.aclose()

    async def _chunks(self, response: httpx.Response):
        try:
            async for chunk in response.aiter_bytes():
                yield chunk
        except httpx.HTTPError as e:
            raise _translate_transport_error(e, self.provider_id) from e

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()

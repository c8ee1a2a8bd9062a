from __future__ import annotations

from typing import Any, AsyncIterator

import anthropic
from anthropic import AsyncAnthropic

from relayrag.core.config import get_settings
from relayrag.core.errors import (
    ProviderConfigError,
    RelayError,
    VendorAuthError,
    VendorError,
    VendorTimeoutError,
)
from relayrag.domain.events import (
    CompletionRequest,
    CompletionResult,
    DoneEvent,
    StreamEvent,
    TokenEvent,
    TokenUsage,
)
from relayrag.providers.llm.base import (
    VendorAdapter,
    conversation_turns,
    estimate_usage,
    merge_system_prompt,
)
from relayrag.providers.llm.catalog import Vendor


class AnthropicProvider(VendorAdapter):
    vendor = Vendor.ANTHROPIC

    def __init__(self, client: AsyncAnthropic | None = None, *, stream_timeout_s: float | None = None) -> None:
        settings = get_settings()
        super().__init__(stream_timeout_s=stream_timeout_s or settings.vendor_stream_timeout_s)
        if client is None and settings.anthropic_api_key:
            client = AsyncAnthropic(api_key=settings.anthropic_api_key)
        self._client = client

    def _require_client(self) -> AsyncAnthropic:
        if self._client is None:
            raise ProviderConfigError("Anthropic config missing: set ANTHROPIC_API_KEY in .env.")
        return self._client

    def _request_kwargs(self, request: CompletionRequest) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "model": request.model,
            "max_tokens": request.max_tokens,
            "temperature": request.temperature,
            "messages": [{"role": turn.role, "content": turn.content} for turn in conversation_turns(request)],
        }
        system = merge_system_prompt(request)
        if system:
            kwargs["system"] = system
        return kwargs

    def _map_exception(self, exc: Exception) -> RelayError:
        if isinstance(exc, RelayError):
            return exc
        if isinstance(exc, (anthropic.AuthenticationError, anthropic.PermissionDeniedError)):
            return VendorAuthError("anthropic auth failed", vendor=self.vendor.value, status_code=exc.status_code)
        if isinstance(exc, anthropic.APITimeoutError):
            return VendorTimeoutError("anthropic request timed out", vendor=self.vendor.value)
        if isinstance(exc, anthropic.APIStatusError):
            return VendorError("anthropic request failed", vendor=self.vendor.value, status_code=exc.status_code)
        return VendorError("anthropic request failed", vendor=self.vendor.value)

    async def _stream(self, request: CompletionRequest) -> AsyncIterator[StreamEvent]:
        client = self._require_client()
        parts: list[str] = []
        input_tokens = 0
        output_tokens = 0
        async with client.messages.stream(**self._request_kwargs(request)) as stream:
            async for event in stream:
                event_type = getattr(event, "type", None)
                if event_type == "message_start":
                    usage = getattr(event.message, "usage", None)
                    input_tokens = getattr(usage, "input_tokens", 0) or 0
                elif event_type == "content_block_delta":
                    text = getattr(event.delta, "text", None)
                    if text:
                        parts.append(text)
                        yield TokenEvent(text)
                elif event_type == "message_delta":
                    usage = getattr(event, "usage", None)
                    output_tokens = getattr(usage, "output_tokens", 0) or 0

        if input_tokens or output_tokens:
            yield DoneEvent(TokenUsage(input_tokens=input_tokens, output_tokens=output_tokens))
        else:
            yield DoneEvent(estimate_usage(request, "".join(parts)))

    async def _create(self, request: CompletionRequest) -> CompletionResult:
        client = self._require_client()
        response = await client.messages.create(**self._request_kwargs(request))
        content = "".join(
            getattr(block, "text", "") for block in response.content if getattr(block, "type", None) == "text"
        )
        usage = getattr(response, "usage", None)
        if usage is None:
            token_usage = estimate_usage(request, content)
        else:
            token_usage = TokenUsage(input_tokens=usage.input_tokens, output_tokens=usage.output_tokens)
        return CompletionResult(content=content, usage=token_usage, model=getattr(response, "model", request.model))

from __future__ import annotations

from typing import Any, AsyncIterator

import openai
from openai import AsyncOpenAI

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


class OpenAIProvider(VendorAdapter):
    vendor = Vendor.OPENAI

    def __init__(self, client: AsyncOpenAI | None = None, *, stream_timeout_s: float | None = None) -> None:
        settings = get_settings()
        super().__init__(stream_timeout_s=stream_timeout_s or settings.vendor_stream_timeout_s)
        if client is None and settings.openai_api_key:
            client = AsyncOpenAI(api_key=settings.openai_api_key, base_url=settings.openai_base_url)
        self._client = client

    def _require_client(self) -> AsyncOpenAI:
        if self._client is None:
            raise ProviderConfigError("OpenAI config missing: set OPENAI_API_KEY in .env.")
        return self._client

    def _wire_messages(self, request: CompletionRequest) -> list[dict[str, str]]:
        # OpenAI takes the system instruction as a leading message.
        messages: list[dict[str, str]] = []
        system = merge_system_prompt(request)
        if system:
            messages.append({"role": "system", "content": system})
        messages.extend({"role": turn.role, "content": turn.content} for turn in conversation_turns(request))
        return messages

    def _request_kwargs(self, request: CompletionRequest) -> dict[str, Any]:
        return {
            "model": request.model,
            "messages": self._wire_messages(request),
            "max_tokens": request.max_tokens,
            "temperature": request.temperature,
        }

    def _map_exception(self, exc: Exception) -> RelayError:
        if isinstance(exc, RelayError):
            return exc
        if isinstance(exc, (openai.AuthenticationError, openai.PermissionDeniedError)):
            return VendorAuthError("openai auth failed", vendor=self.vendor.value, status_code=exc.status_code)
        if isinstance(exc, openai.APITimeoutError):
            return VendorTimeoutError("openai request timed out", vendor=self.vendor.value)
        if isinstance(exc, openai.APIStatusError):
            return VendorError("openai request failed", vendor=self.vendor.value, status_code=exc.status_code)
        return VendorError("openai request failed", vendor=self.vendor.value)

    async def _stream(self, request: CompletionRequest) -> AsyncIterator[StreamEvent]:
        client = self._require_client()
        parts: list[str] = []
        usage = None
        stream = await client.chat.completions.create(
            **self._request_kwargs(request),
            stream=True,
            # Ask for a trailing usage chunk so counts are exact when available.
            stream_options={"include_usage": True},
        )
        try:
            async for chunk in stream:
                if getattr(chunk, "usage", None) is not None:
                    usage = chunk.usage
                if not chunk.choices:
                    continue
                text = chunk.choices[0].delta.content
                if text:
                    parts.append(text)
                    yield TokenEvent(text)
        finally:
            await stream.close()

        if usage is not None and usage.prompt_tokens:
            yield DoneEvent(TokenUsage(input_tokens=usage.prompt_tokens, output_tokens=usage.completion_tokens or 0))
        else:
            yield DoneEvent(estimate_usage(request, "".join(parts)))

    async def _create(self, request: CompletionRequest) -> CompletionResult:
        client = self._require_client()
        response = await client.chat.completions.create(**self._request_kwargs(request))
        content = (response.choices[0].message.content or "") if response.choices else ""
        usage = response.usage
        if usage is None or not usage.prompt_tokens:
            token_usage = estimate_usage(request, content)
        else:
            token_usage = TokenUsage(input_tokens=usage.prompt_tokens, output_tokens=usage.completion_tokens or 0)
        return CompletionResult(content=content, usage=token_usage, model=response.model or request.model)

from __future__ import annotations

import asyncio
from types import SimpleNamespace

import pytest

from relayrag.core.config import get_settings
from relayrag.core.errors import ProviderConfigError
from relayrag.domain.events import (
    ChatTurn,
    CompletionRequest,
    DoneEvent,
    ErrorEvent,
    TokenEvent,
    TokenUsage,
)
from relayrag.providers.llm.anthropic_provider import AnthropicProvider
from relayrag.providers.llm.base import VendorAdapter
from relayrag.providers.llm.catalog import Vendor, get_model_max_tokens, parse_vendor
from relayrag.providers.llm.factory import ProviderRegistry, build_provider_registry
from relayrag.providers.llm.fake import FakeLLMProvider
from relayrag.providers.llm.gemini_vertex import GeminiVertexProvider, build_chat_history
from relayrag.providers.llm.openai_provider import OpenAIProvider


def _request(vendor: str, model: str = "test-model") -> CompletionRequest:
    return CompletionRequest(
        vendor=vendor,
        model=model,
        messages=(
            ChatTurn(role="user", content="Hi"),
            ChatTurn(role="assistant", content="Hello, how can I help?"),
            ChatTurn(role="user", content="Say hello"),
        ),
        system_prompt="You are helpful.",
        max_tokens=256,
        temperature=0.2,
    )


async def _collect(provider, request: CompletionRequest) -> list:
    return [event async for event in provider.stream_completion(request)]


class _FakeAnthropicStream:
    def __init__(self, events: list) -> None:
        self._events = events

    async def __aenter__(self) -> "_FakeAnthropicStream":
        return self

    async def __aexit__(self, *exc_info) -> bool:
        return False

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for event in self._events:
            yield event


class _FakeAnthropicMessages:
    def __init__(self, events: list, error: Exception | None = None) -> None:
        self._events = events
        self._error = error
        self.kwargs: list[dict] = []

    def stream(self, **kwargs) -> _FakeAnthropicStream:
        self.kwargs.append(kwargs)
        if self._error is not None:
            raise self._error
        return _FakeAnthropicStream(self._events)


def _anthropic_events() -> list:
    return [
        SimpleNamespace(type="message_start", message=SimpleNamespace(usage=SimpleNamespace(input_tokens=12))),
        SimpleNamespace(type="content_block_delta", delta=SimpleNamespace(text="Hel")),
        SimpleNamespace(type="content_block_delta", delta=SimpleNamespace(text="lo")),
        SimpleNamespace(type="message_delta", usage=SimpleNamespace(output_tokens=2)),
        SimpleNamespace(type="message_stop"),
    ]


@pytest.mark.asyncio
async def test_anthropic_stream_maps_events_and_usage() -> None:
    messages = _FakeAnthropicMessages(_anthropic_events())
    provider = AnthropicProvider(SimpleNamespace(messages=messages))

    events = await _collect(provider, _request("anthropic"))

    assert events == [
        TokenEvent("Hel"),
        TokenEvent("lo"),
        DoneEvent(TokenUsage(input_tokens=12, output_tokens=2)),
    ]
    sent = messages.kwargs[0]
    assert sent["system"] == "You are helpful."
    assert [item["role"] for item in sent["messages"]] == ["user", "assistant", "user"]
    assert sent["max_tokens"] == 256


@pytest.mark.asyncio
async def test_anthropic_failure_becomes_single_safe_error() -> None:
    messages = _FakeAnthropicMessages([], error=RuntimeError("upstream secret detail"))
    provider = AnthropicProvider(SimpleNamespace(messages=messages))

    events = await _collect(provider, _request("anthropic"))

    assert len(events) == 1
    assert isinstance(events[0], ErrorEvent)
    assert events[0].code == "VENDOR_ERROR"
    assert "secret" not in events[0].message


@pytest.mark.asyncio
async def test_anthropic_without_key_reports_config_error() -> None:
    provider = AnthropicProvider()

    events = await _collect(provider, _request("anthropic"))

    assert len(events) == 1
    assert events[0].code == "PROVIDER_CONFIG_ERROR"


class _FakeOpenAIStream:
    def __init__(self, chunks: list) -> None:
        self._chunks = chunks
        self.closed = False

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for chunk in self._chunks:
            yield chunk

    async def close(self) -> None:
        self.closed = True


class _FakeOpenAICompletions:
    def __init__(self, stream: _FakeOpenAIStream) -> None:
        self.stream = stream
        self.kwargs: list[dict] = []

    async def create(self, **kwargs) -> _FakeOpenAIStream:
        self.kwargs.append(kwargs)
        return self.stream


def _openai_chunk(text: str | None = None, usage=None) -> SimpleNamespace:
    choices = [] if text is None else [SimpleNamespace(delta=SimpleNamespace(content=text))]
    return SimpleNamespace(choices=choices, usage=usage)


@pytest.mark.asyncio
async def test_openai_stream_uses_trailing_usage_chunk() -> None:
    stream = _FakeOpenAIStream(
        [
            _openai_chunk("Hel"),
            _openai_chunk("lo"),
            _openai_chunk(usage=SimpleNamespace(prompt_tokens=12, completion_tokens=2)),
        ]
    )
    completions = _FakeOpenAICompletions(stream)
    provider = OpenAIProvider(SimpleNamespace(chat=SimpleNamespace(completions=completions)))

    events = await _collect(provider, _request("openai"))

    assert events == [
        TokenEvent("Hel"),
        TokenEvent("lo"),
        DoneEvent(TokenUsage(input_tokens=12, output_tokens=2)),
    ]
    assert stream.closed is True
    sent = completions.kwargs[0]
    assert sent["stream"] is True
    assert sent["messages"][0] == {"role": "system", "content": "You are helpful."}


@pytest.mark.asyncio
async def test_openai_stream_estimates_when_usage_missing() -> None:
    stream = _FakeOpenAIStream([_openai_chunk("Hello")])
    provider = OpenAIProvider(SimpleNamespace(chat=SimpleNamespace(completions=_FakeOpenAICompletions(stream))))

    events = await _collect(provider, _request("openai"))

    assert isinstance(events[-1], DoneEvent)
    assert events[-1].usage.estimated is True
    assert events[-1].usage.output_tokens > 0


class _FakeVertexClient:
    def __init__(self, responses: list) -> None:
        self._responses = responses
        self.calls: list[dict] = []

    async def stream_chat(self, **kwargs):
        self.calls.append(kwargs)
        for response in self._responses:
            yield response


@pytest.mark.asyncio
async def test_gemini_stream_maps_usage_metadata() -> None:
    client = _FakeVertexClient(
        [
            SimpleNamespace(text="Hel", usage_metadata=None),
            SimpleNamespace(
                text="lo",
                usage_metadata=SimpleNamespace(prompt_token_count=12, candidates_token_count=2),
            ),
        ]
    )
    provider = GeminiVertexProvider(client)

    events = await _collect(provider, _request("google"))

    assert events == [
        TokenEvent("Hel"),
        TokenEvent("lo"),
        DoneEvent(TokenUsage(input_tokens=12, output_tokens=2)),
    ]
    call = client.calls[0]
    assert call["system_instruction"] == "You are helpful."
    assert call["message"] == "Say hello"
    assert call["history"] == [
        {"role": "user", "text": "Hi"},
        {"role": "model", "text": "Hello, how can I help?"},
    ]


@pytest.mark.asyncio
async def test_gemini_missing_config_reports_config_error(monkeypatch) -> None:
    # Force missing config and clear cached settings for deterministic behavior.
    monkeypatch.delenv("GOOGLE_CLOUD_PROJECT", raising=False)
    monkeypatch.setenv("GOOGLE_CLOUD_LOCATION", "")
    get_settings.cache_clear()

    provider = GeminiVertexProvider()
    events = await _collect(provider, _request("google"))

    assert len(events) == 1
    assert events[0].code == "PROVIDER_CONFIG_ERROR"


def test_build_chat_history_folds_consecutive_user_turns() -> None:
    history, message = build_chat_history(
        [
            ChatTurn(role="user", content="first"),
            ChatTurn(role="user", content="second"),
            ChatTurn(role="assistant", content="reply"),
            ChatTurn(role="user", content="third"),
        ]
    )

    assert history == [
        {"role": "user", "text": "first\n\nsecond"},
        {"role": "model", "text": "reply"},
    ]
    assert message == "third"


@pytest.mark.asyncio
async def test_fake_provider_streams_then_completes() -> None:
    provider = FakeLLMProvider(tokens=["Hel", "lo"], usage=TokenUsage(input_tokens=12, output_tokens=2))

    events = await _collect(provider, _request("fake"))
    result = await provider.create_completion(_request("fake"))

    assert events[-1] == DoneEvent(TokenUsage(input_tokens=12, output_tokens=2))
    assert result.content == "Hello"
    assert result.usage.total == 14


@pytest.mark.asyncio
async def test_stream_emits_error_after_partial_output() -> None:
    provider = FakeLLMProvider(tokens=["a", "b", "c"], fail_after=2)

    events = await _collect(provider, _request("fake"))

    assert events[:2] == [TokenEvent("a"), TokenEvent("b")]
    assert isinstance(events[2], ErrorEvent)
    assert len(events) == 3


class _StallingProvider(VendorAdapter):
    vendor = Vendor.FAKE

    def __init__(self) -> None:
        super().__init__(stream_timeout_s=0.05)
        self.closed = False

    async def _stream(self, request: CompletionRequest):
        try:
            yield TokenEvent("partial")
            # Vendor goes silent without closing the connection.
            await asyncio.sleep(30)
            yield TokenEvent("never")
        finally:
            self.closed = True


@pytest.mark.asyncio
async def test_stalled_vendor_stream_times_out() -> None:
    provider = _StallingProvider()

    events = await asyncio.wait_for(_collect(provider, _request("fake")), timeout=5)

    assert events[0] == TokenEvent("partial")
    assert len(events) == 2
    assert isinstance(events[1], ErrorEvent)
    assert events[1].code == "VENDOR_TIMEOUT"
    assert provider.closed is True


def test_registry_rejects_unregistered_vendor() -> None:
    registry = ProviderRegistry({Vendor.FAKE: FakeLLMProvider()})

    assert registry.get("fake") is registry.get(Vendor.FAKE)
    with pytest.raises(ProviderConfigError):
        registry.get("openai")
    with pytest.raises(ProviderConfigError):
        registry.get("unknown-vendor")


def test_production_registry_excludes_fake_vendor() -> None:
    registry = build_provider_registry()

    assert Vendor.FAKE not in registry.vendors()
    with pytest.raises(ProviderConfigError):
        registry.get("fake")


def test_fake_vendor_registered_when_enabled(monkeypatch) -> None:
    monkeypatch.setenv("ENABLE_FAKE_VENDOR", "true")
    get_settings.cache_clear()

    registry = build_provider_registry()

    assert isinstance(registry.get("fake"), FakeLLMProvider)


def test_catalog_helpers() -> None:
    assert parse_vendor(" Anthropic ") == Vendor.ANTHROPIC
    assert get_model_max_tokens("gpt-4-turbo") == 4096
    assert get_model_max_tokens("unknown-model") == 4096

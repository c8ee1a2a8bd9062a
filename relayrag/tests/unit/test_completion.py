from __future__ import annotations

import pytest

from relayrag.core.errors import QuotaExceededError
from relayrag.domain.events import ChatTurn, DoneEvent, ErrorEvent, TokenEvent, TokenUsage
from relayrag.providers.llm.catalog import Vendor
from relayrag.providers.llm.factory import ProviderRegistry
from relayrag.providers.llm.fake import FakeLLMProvider
from relayrag.services.completion import (
    ESCALATION_NOTICE,
    CompletionOrchestrator,
    ConversationInput,
    EscalationNotice,
)
from relayrag.services.escalation.events import RecipientContext
from relayrag.services.quota import QuotaIdentity, QuotaScope, QuotaService
from relayrag.services.telemetry import counters_snapshot
from relayrag.tests.utils.fakes import FakeQuotaStore, InMemoryConversationStore, RecordingNotifier


IDENTITY = QuotaIdentity(profile_id="p1", group_id="g1", company_id="c1")


def _conversation(message: str = "How do I reset my password?") -> ConversationInput:
    return ConversationInput(
        identity=IDENTITY,
        recipient=RecipientContext(profile_id="p1", session_id="s1", session_type="general"),
        session_id="s1",
        session_type="general",
        message=message,
        vendor=Vendor.FAKE,
        model="fake-model",
        max_tokens=1024,
        temperature=0.7,
        history_limit=20,
    )


def _orchestrator(provider, quota_store=None, store=None, notifier=None, **kwargs) -> CompletionOrchestrator:
    return CompletionOrchestrator(
        registry=ProviderRegistry({Vendor.FAKE: provider}),
        quota=QuotaService(quota_store or FakeQuotaStore()),
        store=store or InMemoryConversationStore(),
        notifier=notifier,
        **kwargs,
    )


@pytest.mark.asyncio
async def test_stream_relays_tokens_and_records_usage_once() -> None:
    provider = FakeLLMProvider(tokens=["Hel", "lo"], usage=TokenUsage(input_tokens=12, output_tokens=2))
    quota_store = FakeQuotaStore()
    store = InMemoryConversationStore()
    orchestrator = _orchestrator(provider, quota_store, store)

    prepared = await orchestrator.prepare(_conversation())
    events = [event async for event in orchestrator.stream(prepared)]

    assert events == [
        TokenEvent("Hel"),
        TokenEvent("lo"),
        DoneEvent(TokenUsage(input_tokens=12, output_tokens=2)),
    ]
    assert "".join(event.text for event in events if isinstance(event, TokenEvent)) == "Hello"
    assert len(quota_store.records) == 1
    record = quota_store.records[0]
    assert (record.input_tokens, record.output_tokens) == (12, 2)
    assert record.usage_source == "exact"
    assert record.session_id == "s1"
    assert store.user_messages == [("s1", "How do I reset my password?")]
    assert store.assistant_messages[0][1] == "Hello"


@pytest.mark.asyncio
async def test_prepare_builds_request_from_history() -> None:
    provider = FakeLLMProvider(tokens=["ok"])
    store = InMemoryConversationStore(
        history={
            "s1": [
                ChatTurn(role="user", content="Earlier question"),
                ChatTurn(role="assistant", content="Earlier answer"),
            ]
        }
    )
    orchestrator = _orchestrator(provider, store=store)

    prepared = await orchestrator.prepare(_conversation("Follow-up question"))

    assert [turn.role for turn in prepared.request.messages] == ["user", "assistant", "user"]
    assert prepared.request.messages[-1].content == "Follow-up question"
    assert prepared.request.system_prompt
    assert provider.calls == []


@pytest.mark.asyncio
async def test_denied_turn_never_reaches_vendor() -> None:
    provider = FakeLLMProvider(tokens=["never"])
    quota_store = FakeQuotaStore(
        limits={(QuotaScope.INDIVIDUAL, "p1"): 10000},
        usage={(QuotaScope.INDIVIDUAL, "p1"): 9999},
    )
    store = InMemoryConversationStore()
    orchestrator = _orchestrator(provider, quota_store, store)

    with pytest.raises(QuotaExceededError) as exc_info:
        await orchestrator.prepare(_conversation())

    assert exc_info.value.scope == "individual"
    assert exc_info.value.limit == 10000
    assert exc_info.value.used == 9999
    assert provider.calls == []
    assert store.user_messages == []
    assert quota_store.records == []
    assert counters_snapshot()["quota_denied_total"] == 1


@pytest.mark.asyncio
async def test_vendor_failure_emits_single_error_and_records_nothing() -> None:
    provider = FakeLLMProvider(tokens=["a", "b"], fail_after=1)
    quota_store = FakeQuotaStore()
    store = InMemoryConversationStore()
    orchestrator = _orchestrator(provider, quota_store, store)

    prepared = await orchestrator.prepare(_conversation())
    events = [event async for event in orchestrator.stream(prepared)]

    assert events[0] == TokenEvent("a")
    terminal = [event for event in events if isinstance(event, (DoneEvent, ErrorEvent))]
    assert len(terminal) == 1
    assert isinstance(terminal[0], ErrorEvent)
    assert "fake vendor" not in terminal[0].message
    assert quota_store.records == []
    assert store.assistant_messages == []


@pytest.mark.asyncio
async def test_escalation_notice_precedes_tokens() -> None:
    provider = FakeLLMProvider(tokens=["Sorry", "!"], usage=TokenUsage(input_tokens=5, output_tokens=2))
    store = InMemoryConversationStore()
    notifier = RecordingNotifier()
    orchestrator = _orchestrator(provider, store=store, notifier=notifier)

    prepared = await orchestrator.prepare(_conversation("this feature is broken"))
    events = [event async for event in orchestrator.stream(prepared)]

    assert events[0] == EscalationNotice(trigger="bug_report", message=ESCALATION_NOTICE)
    assert isinstance(events[-1], DoneEvent)
    assert len(notifier.dispatched) == 1
    dispatched = notifier.dispatched[0]
    assert dispatched.trigger_category == "bug_report"
    assert dispatched.matched_keywords == ("broken",)
    assert dispatched.log_id == "log-1"


@pytest.mark.asyncio
async def test_abandoned_stream_records_nothing_by_default() -> None:
    provider = FakeLLMProvider(tokens=[f"t{idx} " for idx in range(50)], delay_s=0.001)
    quota_store = FakeQuotaStore()
    orchestrator = _orchestrator(provider, quota_store)

    prepared = await orchestrator.prepare(_conversation())
    stream = orchestrator.stream(prepared)
    first = await stream.__anext__()
    await stream.aclose()

    assert first == TokenEvent("t0 ")
    assert quota_store.records == []
    assert counters_snapshot()["completion_abandoned_total"] == 1


@pytest.mark.asyncio
async def test_abandoned_stream_is_not_billed_even_with_partial_usage_enabled() -> None:
    provider = FakeLLMProvider(tokens=[f"t{idx} " for idx in range(50)], delay_s=0.001)
    quota_store = FakeQuotaStore()
    orchestrator = _orchestrator(provider, quota_store, record_partial_usage=True)

    prepared = await orchestrator.prepare(_conversation())
    stream = orchestrator.stream(prepared)
    await stream.__anext__()
    await stream.aclose()

    assert quota_store.records == []
    assert counters_snapshot()["completion_abandoned_total"] == 1


@pytest.mark.asyncio
async def test_vendor_disconnect_after_output_records_estimate_when_enabled() -> None:
    provider = FakeLLMProvider(tokens=["a", "b", "c"], fail_after=2)
    quota_store = FakeQuotaStore()
    store = InMemoryConversationStore()
    orchestrator = _orchestrator(provider, quota_store, store, record_partial_usage=True)

    prepared = await orchestrator.prepare(_conversation())
    events = [event async for event in orchestrator.stream(prepared)]

    assert events[:2] == [TokenEvent("a"), TokenEvent("b")]
    assert isinstance(events[-1], ErrorEvent)
    assert len(quota_store.records) == 1
    record = quota_store.records[0]
    assert record.usage_source == "estimated"
    assert record.output_tokens >= 1
    assert store.assistant_messages == []


@pytest.mark.asyncio
async def test_vendor_failure_before_output_records_nothing_when_enabled() -> None:
    provider = FakeLLMProvider(tokens=["a", "b"], fail_after=0)
    quota_store = FakeQuotaStore()
    orchestrator = _orchestrator(provider, quota_store, record_partial_usage=True)

    prepared = await orchestrator.prepare(_conversation())
    events = [event async for event in orchestrator.stream(prepared)]

    assert len(events) == 1
    assert isinstance(events[0], ErrorEvent)
    assert quota_store.records == []

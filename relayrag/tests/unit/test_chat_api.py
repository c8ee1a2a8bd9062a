from __future__ import annotations

import json

import pytest
from httpx import ASGITransport, AsyncClient

from relayrag.apps.api import deps
from relayrag.apps.api.main import create_app
from relayrag.apps.api.routes import chat as chat_module
from relayrag.domain.events import TokenUsage
from relayrag.ingestion.embeddings import HashEmbeddingClient
from relayrag.providers.llm.catalog import Vendor
from relayrag.providers.llm.factory import ProviderRegistry
from relayrag.providers.llm.fake import FakeLLMProvider
from relayrag.services.completion import CompletionOrchestrator
from relayrag.services.quota import QuotaScope, QuotaService
from relayrag.services.retrieval import RetrievalEngine
from relayrag.tests.utils.fakes import (
    FakeQuotaStore,
    InMemoryConversationStore,
    InMemoryVectorStore,
    RecordingNotifier,
)


class FakeDbSession:
    # Accepts the writes a new chat session makes; everything else stays in memory.
    def __init__(self) -> None:
        self.added: list = []
        self.rollbacks = 0

    def add(self, instance) -> None:
        self.added.append(instance)

    async def flush(self) -> None:
        return None

    async def commit(self) -> None:
        return None

    async def rollback(self) -> None:
        self.rollbacks += 1


def _parse_sse(body: str) -> list[tuple[str, dict]]:
    events: list[tuple[str, dict]] = []
    current = "message"
    for line in body.splitlines():
        if line.startswith("event:"):
            current = line.split(":", 1)[1].strip()
        elif line.startswith("data:"):
            events.append((current, json.loads(line.removeprefix("data: ").strip())))
    return events


def _build_app(monkeypatch, *, quota_store: FakeQuotaStore | None = None):
    provider = FakeLLMProvider(tokens=["Hel", "lo"], usage=TokenUsage(input_tokens=12, output_tokens=2))
    registry = ProviderRegistry({Vendor.FAKE: provider})
    notifier = RecordingNotifier()
    store = InMemoryConversationStore()
    db = FakeDbSession()
    quota_store = quota_store or FakeQuotaStore()

    def build_orchestrator(_db, registry, notifier, retrieval) -> CompletionOrchestrator:
        return CompletionOrchestrator(
            registry=registry,
            quota=QuotaService(quota_store),
            store=store,
            retrieval=retrieval,
            notifier=notifier,
        )

    monkeypatch.setattr(chat_module, "_orchestrator", build_orchestrator)

    app = create_app(registry=registry, notifier=notifier)
    # ASGITransport skips lifespan, so install the shared state directly.
    app.state.provider_registry = registry
    app.state.escalation_notifier = notifier

    async def override_db():
        yield db

    app.dependency_overrides[deps.get_db] = override_db
    app.dependency_overrides[deps.get_principal] = lambda: deps.Principal(
        profile_id="p1", role="trainee", group_id="g1", company_id="c1", name="Trainee One"
    )
    app.dependency_overrides[deps.get_retrieval_engine] = lambda: RetrievalEngine(
        InMemoryVectorStore(), HashEmbeddingClient()
    )
    return app, provider, store, quota_store, db, notifier


@pytest.mark.asyncio
async def test_chat_send_streams_tokens_then_done(monkeypatch) -> None:
    app, provider, store, quota_store, _db, _notifier = _build_app(monkeypatch)

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.post(
            "/chat/send",
            json={"message": "Explain embeddings", "provider": "fake", "modelId": "fake-echo"},
        )

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    assert response.headers["X-Session-Id"]
    assert response.headers["X-Quota-Scope"] == "individual"
    events = _parse_sse(response.text)
    assert events == [
        ("token", {"token": "Hel"}),
        ("token", {"token": "lo"}),
        ("done", {"usage": {"inputTokens": 12, "outputTokens": 2}}),
    ]
    assert len(provider.calls) == 1
    assert len(quota_store.records) == 1
    assert store.assistant_messages[0][1] == "Hello"


@pytest.mark.asyncio
async def test_qa_ask_emits_escalation_before_answer(monkeypatch) -> None:
    monkeypatch.setenv("QA_VENDOR", "fake")
    monkeypatch.setenv("QA_MODEL", "fake-echo")
    app, _provider, _store, _quota_store, _db, notifier = _build_app(monkeypatch)

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.post("/qa/ask", json={"message": "The page is broken, please check"})

    events = _parse_sse(response.text)
    assert events[0][0] == "escalation"
    assert events[0][1]["trigger"] == "bug_report"
    assert events[-1][0] == "done"
    assert notifier.dispatched[0].recipient.session_type == "qa"


@pytest.mark.asyncio
async def test_chat_send_quota_denied_returns_429(monkeypatch) -> None:
    quota_store = FakeQuotaStore(
        limits={(QuotaScope.INDIVIDUAL, "p1"): 10000},
        usage={(QuotaScope.INDIVIDUAL, "p1"): 9999},
    )
    app, provider, store, _quota_store, db, _notifier = _build_app(monkeypatch, quota_store=quota_store)

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.post("/chat/send", json={"message": "Explain embeddings", "provider": "fake"})

    assert response.status_code == 429
    body = response.json()
    assert body["error"]["code"] == "QUOTA_EXCEEDED"
    assert body["error"]["details"]["scope"] == "individual"
    assert int(response.headers["Retry-After"]) > 0
    assert provider.calls == []
    assert store.user_messages == []
    assert db.rollbacks == 1


@pytest.mark.asyncio
async def test_chat_send_rejects_blank_message(monkeypatch) -> None:
    app, provider, *_rest = _build_app(monkeypatch)

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.post("/chat/send", json={"message": "  <|im_start|>  ", "provider": "fake"})

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "VALIDATION_ERROR"
    assert provider.calls == []


@pytest.mark.asyncio
async def test_unknown_vendor_is_rejected(monkeypatch) -> None:
    app, *_rest = _build_app(monkeypatch)

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.post("/chat/send", json={"message": "hi", "provider": "mystery"})

    assert response.status_code == 400


@pytest.mark.asyncio
async def test_health_lists_registered_vendors(monkeypatch) -> None:
    app, *_rest = _build_app(monkeypatch)

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok", "vendors": ["fake"]}
    assert response.headers["X-Request-Id"]

from __future__ import annotations

from types import SimpleNamespace

from arq import Retry
import pytest

from relayrag.core.config import get_settings
from relayrag.core.errors import EmbeddingError
from relayrag.ingestion.embeddings import hash_embedding
from relayrag.services import embedding_jobs
from relayrag.services.embedding_jobs import EmbeddingJobPayload, enqueue_embedding_job, process_embedding_job
from relayrag.services.knowledge_base import KNOWLEDGE_BASE_SOURCE, entry_text, reindex_knowledge_base
from relayrag.services.retrieval import RetrievalEngine
from relayrag.tests.utils.fakes import InMemoryVectorStore


def _failing_outcome():
    calls: list[EmbeddingJobPayload] = []

    async def execute(payload: EmbeddingJobPayload) -> dict:
        calls.append(payload)
        return {"processed": 0, "indexed": 1, "errors": ["embedding failed at chunk 1 of 3"]}

    return calls, execute


@pytest.mark.asyncio
async def test_partial_failure_requests_retry_until_last_attempt(monkeypatch) -> None:
    _calls, execute = _failing_outcome()
    monkeypatch.setattr(embedding_jobs, "_execute", execute)
    payload = EmbeddingJobPayload(source_id="c1", text="hello")

    with pytest.raises(Retry):
        await process_embedding_job(payload, job_id="j1", attempt=1, max_retries=3)
    outcome = await process_embedding_job(payload, job_id="j1", attempt=3, max_retries=3)

    assert outcome["errors"] == ["embedding failed at chunk 1 of 3"]


@pytest.mark.asyncio
async def test_invalid_job_is_not_retried(monkeypatch) -> None:
    async def execute(payload: EmbeddingJobPayload) -> dict:
        raise ValueError("content job requires source_id and text")

    monkeypatch.setattr(embedding_jobs, "_execute", execute)

    outcome = await process_embedding_job(EmbeddingJobPayload(), job_id="j2", attempt=1, max_retries=3)

    assert outcome == {"processed": 0, "indexed": 0, "errors": ["content job requires source_id and text"]}


@pytest.mark.asyncio
async def test_inline_mode_runs_retries_without_redis(monkeypatch) -> None:
    monkeypatch.setenv("EMBEDDING_EXECUTION_MODE", "inline")
    monkeypatch.setenv("EMBEDDING_MAX_RETRIES", "3")
    get_settings.cache_clear()
    calls, execute = _failing_outcome()
    monkeypatch.setattr(embedding_jobs, "_execute", execute)

    async def no_redis():
        raise AssertionError("inline mode must not touch Redis")

    monkeypatch.setattr(embedding_jobs, "get_redis_pool", no_redis)
    payload = EmbeddingJobPayload(source_id="c1", text="hello", request_id="req-1")

    job_id = await enqueue_embedding_job(payload)

    assert job_id == "req-1"
    assert len(calls) == 3


class SelectiveEmbedder:
    # Refuses any text that mentions the poisoned marker.
    async def embed(self, text: str) -> list[float]:
        if "poisoned" in text:
            raise EmbeddingError("embedding vendor rejected input")
        return hash_embedding(text)


@pytest.mark.asyncio
async def test_reindex_continues_past_failing_entry(monkeypatch) -> None:
    entries = [
        SimpleNamespace(id="kb1", title="Passwords", content="Reset from settings.", company_id=None),
        SimpleNamespace(id="kb2", title="Broken", content="This entry is poisoned.", company_id="c1"),
        SimpleNamespace(id="kb3", title="Billing", content="Invoices are monthly.", company_id="c1"),
    ]

    async def list_active_entries(session, *, company_id=None):
        return entries

    monkeypatch.setattr(embedding_jobs.kb_repo, "list_active_entries", list_active_entries)
    store = InMemoryVectorStore()
    engine = RetrievalEngine(store, SelectiveEmbedder(), embed_delay_ms=0)

    report = await reindex_knowledge_base(object(), engine)

    assert report.processed == 2
    assert len(report.errors) == 1
    assert report.errors[0].startswith("kb2:")
    indexed = {(record.source_type, record.source_id) for record in store.records}
    assert indexed == {(KNOWLEDGE_BASE_SOURCE, "kb1"), (KNOWLEDGE_BASE_SOURCE, "kb3")}
    assert store.records[0].text == entry_text(entries[0])
    assert store.records[0].metadata == {"title": "Passwords"}

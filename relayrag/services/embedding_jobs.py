from __future__ import annotations

import asyncio
import logging
from typing import Any, Literal
from uuid import uuid4

from arq import Retry, create_pool
from arq.connections import RedisSettings
from pydantic import BaseModel, Field

from relayrag.core.config import get_settings
from relayrag.ingestion.embeddings import get_embedding_client
from relayrag.persistence.db import SessionLocal
from relayrag.persistence.repos import knowledge_base as kb_repo
from relayrag.providers.retrieval.local_pgvector import PgVectorStore
from relayrag.services.knowledge_base import KNOWLEDGE_BASE_SOURCE, index_entry, reindex_knowledge_base
from relayrag.services.retrieval import IndexResult, RetrievalEngine


logger = logging.getLogger(__name__)

_redis_pool = None
_redis_pool_loop = None
_redis_lock = asyncio.Lock()


class EmbeddingJobPayload(BaseModel):
    # Shared schema for API-to-worker handoff.
    job_kind: Literal["content", "knowledge_base_entry", "knowledge_base_all"] = "content"
    source_type: str = KNOWLEDGE_BASE_SOURCE
    source_id: str | None = None
    text: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    company_id: str | None = None
    request_id: str = Field(default_factory=lambda: uuid4().hex)


async def get_redis_pool():
    # Cache the Redis pool to avoid reconnecting on every enqueue.
    global _redis_pool, _redis_pool_loop
    current_loop = asyncio.get_running_loop()
    if _redis_pool is not None and _redis_pool_loop == current_loop:
        return _redis_pool
    if _redis_pool is not None and _redis_pool_loop != current_loop:
        # Drop loop-bound pools to avoid cross-loop errors in tests.
        _redis_pool = None
    async with _redis_lock:
        if _redis_pool is None:
            settings = get_settings()
            _redis_pool = await create_pool(
                RedisSettings.from_dsn(settings.redis_url),
                default_queue_name=settings.embedding_queue_name,
            )
            _redis_pool_loop = current_loop
    return _redis_pool


async def enqueue_embedding_job(payload: EmbeddingJobPayload) -> str:
    settings = get_settings()
    job_id = payload.request_id
    if settings.embedding_execution_mode.lower() == "inline":
        await _run_inline_job(payload, job_id=job_id, max_retries=settings.embedding_max_retries)
        return job_id

    redis = await get_redis_pool()
    job = await redis.enqueue_job(
        "generate_embeddings",
        payload.model_dump(),
        _job_id=job_id,
        _queue_name=settings.embedding_queue_name,
    )
    # arq returns None for a duplicate job id; keep tracing with the same id.
    return job.job_id if job else job_id


async def _execute(payload: EmbeddingJobPayload) -> dict[str, Any]:
    async with SessionLocal() as session:
        engine = RetrievalEngine(PgVectorStore(session), get_embedding_client())
        if payload.job_kind == "knowledge_base_all":
            report = await reindex_knowledge_base(session, engine, company_id=payload.company_id)
            return report.to_dict()
        if payload.job_kind == "knowledge_base_entry":
            entry = await kb_repo.get_entry(session, payload.source_id or "")
            if entry is None:
                raise ValueError(f"knowledge base entry not found: {payload.source_id}")
            result = await index_entry(engine, entry)
        else:
            if not payload.source_id or payload.text is None:
                raise ValueError("content job requires source_id and text")
            result = await engine.index(
                payload.source_type,
                payload.source_id,
                payload.text,
                payload.metadata,
                company_id=payload.company_id,
            )
        return _result_payload(result)


def _result_payload(result: IndexResult) -> dict[str, Any]:
    if result.success:
        return {"processed": 1, "indexed": result.indexed, "errors": []}
    return {"processed": 0, "indexed": result.indexed, "errors": [str(result.error)]}


async def process_embedding_job(
    payload: EmbeddingJobPayload,
    *,
    job_id: str,
    attempt: int,
    max_retries: int,
) -> dict[str, Any]:
    # Worker and inline mode share this execution path.
    try:
        outcome = await _execute(payload)
    except ValueError as exc:
        logger.error("embedding_job_invalid job_id=%s detail=%s", job_id, exc)
        return {"processed": 0, "indexed": 0, "errors": [str(exc)]}
    # Partial embedding failures are usually vendor hiccups; retry the whole source.
    if payload.job_kind != "knowledge_base_all" and outcome["errors"] and attempt < max_retries:
        logger.warning("embedding_job_retry job_id=%s attempt=%s", job_id, attempt)
        raise Retry(defer=attempt * 2)
    logger.info(
        "embedding_job_finished job_id=%s kind=%s processed=%s errors=%s",
        job_id,
        payload.job_kind,
        outcome["processed"],
        len(outcome["errors"]),
    )
    return outcome


async def _run_inline_job(payload: EmbeddingJobPayload, *, job_id: str, max_retries: int) -> None:
    # Inline mode mimics worker retries without requiring Redis.
    attempt = 1
    while True:
        try:
            await process_embedding_job(payload, job_id=job_id, attempt=attempt, max_retries=max_retries)
            return
        except Retry:
            attempt += 1
            continue


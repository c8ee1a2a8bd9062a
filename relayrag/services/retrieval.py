from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from relayrag.core.config import get_settings
from relayrag.core.errors import ChunkIndexPartialFailure, RelayError, RetrievalError, RetrievalUnavailableError
from relayrag.ingestion.chunking import split_into_chunks
from relayrag.ingestion.embeddings import EmbeddingClient
from relayrag.providers.retrieval.base import ChunkRecord, RetrievedSnippet, VectorStore
from relayrag.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IndexResult:
    success: bool
    indexed: int
    error: RelayError | None = None


class RetrievalEngine:
    """Chunk, embed, store and search content for prompt augmentation.

    Indexing writes each source as one new generation: prior chunks for the
    (source_type, source_id) pair are replaced in a single store call once
    embedding stops. Search never raises; failures degrade to no context.
    """

    def __init__(
        self,
        store: VectorStore,
        embedder: EmbeddingClient,
        *,
        chunk_size: int | None = None,
        chunk_overlap: int | None = None,
        embed_delay_ms: int | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        settings = get_settings()
        self._store = store
        self._embedder = embedder
        self._chunk_size = chunk_size or settings.chunk_max_size
        self._chunk_overlap = settings.chunk_overlap if chunk_overlap is None else chunk_overlap
        self._embed_delay_ms = settings.embedding_delay_ms if embed_delay_ms is None else embed_delay_ms
        # Injectable so tests can observe pacing without waiting.
        self._sleep = sleep

    async def index(
        self,
        source_type: str,
        source_id: str,
        text: str,
        metadata: dict[str, Any] | None = None,
        *,
        company_id: str | None = None,
    ) -> IndexResult:
        chunks = split_into_chunks(text, max_chunk_size=self._chunk_size, overlap=self._chunk_overlap)
        records: list[ChunkRecord] = []
        failure: ChunkIndexPartialFailure | None = None
        for idx, chunk in enumerate(chunks):
            if idx > 0 and self._embed_delay_ms > 0:
                # Fixed pacing between embedding calls to respect vendor rate limits.
                await self._sleep(self._embed_delay_ms / 1000.0)
            try:
                embedding = await self._embedder.embed(chunk)
            except RelayError as exc:
                logger.warning(
                    "chunk_embed_failed source_type=%s source_id=%s chunk=%s total=%s",
                    source_type,
                    source_id,
                    idx,
                    len(chunks),
                )
                failure = ChunkIndexPartialFailure(
                    f"embedding failed at chunk {idx} of {len(chunks)}", indexed=idx
                )
                failure.__cause__ = exc
                break
            records.append(
                ChunkRecord(
                    source_type=source_type,
                    source_id=source_id,
                    text=chunk,
                    chunk_index=idx,
                    embedding=embedding,
                    metadata=dict(metadata or {}),
                    company_id=company_id,
                )
            )

        try:
            await self._store.replace_chunks(source_type, source_id, records)
        except RetrievalError as exc:
            logger.error("chunk_store_failed source_type=%s source_id=%s", source_type, source_id)
            increment_counter("index_failures_total")
            return IndexResult(success=False, indexed=0, error=exc)

        if failure is not None:
            increment_counter("index_failures_total")
            return IndexResult(success=False, indexed=len(records), error=failure)
        logger.info("source_indexed source_type=%s source_id=%s chunks=%s", source_type, source_id, len(records))
        return IndexResult(success=True, indexed=len(records))

    async def search_strict(
        self,
        query: str,
        *,
        threshold: float | None = None,
        top_k: int | None = None,
        source_type: str | None = None,
        company_id: str | None = None,
    ) -> list[RetrievedSnippet]:
        settings = get_settings()
        threshold = settings.retrieval_threshold if threshold is None else threshold
        top_k = top_k or settings.retrieval_top_k
        if not query.strip():
            return []
        try:
            embedding = await self._embedder.embed(query)
            snippets = await self._store.search(
                embedding,
                threshold=threshold,
                top_k=top_k,
                source_type=source_type,
                company_id=company_id,
            )
        except RelayError as exc:
            raise RetrievalUnavailableError(f"retrieval failed: {type(exc).__name__}") from exc
        ranked = sorted(
            (snippet for snippet in snippets if snippet.score >= threshold),
            key=lambda snippet: snippet.score,
            reverse=True,
        )
        return ranked[:top_k]

    async def search(
        self,
        query: str,
        *,
        threshold: float | None = None,
        top_k: int | None = None,
        source_type: str | None = None,
        company_id: str | None = None,
    ) -> list[RetrievedSnippet]:
        try:
            return await self.search_strict(
                query,
                threshold=threshold,
                top_k=top_k,
                source_type=source_type,
                company_id=company_id,
            )
        except RetrievalUnavailableError as exc:
            # Retrieval is an optional enhancement; completion proceeds without context.
            logger.warning("retrieval_unavailable detail=%s cause=%r", exc, exc.__cause__)
            increment_counter("retrieval_unavailable_total")
            return []


def format_context(snippets: list[RetrievedSnippet]) -> str:
    # Number snippets so the model can cite them in its answer.
    lines = []
    for idx, snippet in enumerate(snippets, start=1):
        title = snippet.metadata.get("title") or snippet.source_type
        lines.append(f"[{idx}] ({title}) {snippet.text}")
    return "\n\n".join(lines)

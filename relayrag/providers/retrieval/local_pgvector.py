from __future__ import annotations

from uuid import uuid4

from sqlalchemy import delete, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from relayrag.core.config import EMBED_DIM
from relayrag.core.errors import RetrievalError
from relayrag.domain.models import ContentEmbedding
from relayrag.providers.retrieval.base import ChunkRecord, RetrievedSnippet


class PgVectorStore:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def replace_chunks(self, source_type: str, source_id: str, chunks: list[ChunkRecord]) -> None:
        # Delete and insert in one transaction so readers never see mixed generations.
        try:
            await self._session.execute(
                delete(ContentEmbedding).where(
                    ContentEmbedding.source_type == source_type,
                    ContentEmbedding.source_id == source_id,
                )
            )
            self._session.add_all(
                [
                    ContentEmbedding(
                        id=uuid4().hex,
                        source_type=chunk.source_type,
                        source_id=chunk.source_id,
                        company_id=chunk.company_id,
                        content_chunk=chunk.text,
                        chunk_index=chunk.chunk_index,
                        embedding=chunk.embedding,
                        metadata_=chunk.metadata,
                    )
                    for chunk in chunks
                ]
            )
            await self._session.commit()
        except SQLAlchemyError as exc:
            await self._session.rollback()
            raise RetrievalError("pgvector chunk replace failed") from exc

    async def search(
        self,
        embedding: list[float],
        *,
        threshold: float,
        top_k: int,
        source_type: str | None = None,
        company_id: str | None = None,
    ) -> list[RetrievedSnippet]:
        if len(embedding) != EMBED_DIM:
            # Retrieval must fail fast if the embedding dimension doesn't match the schema.
            raise RetrievalError("query embedding dimension mismatch")

        # Use cosine distance from pgvector; lower is more similar.
        distance_expr = ContentEmbedding.embedding.cosine_distance(embedding)
        stmt = select(ContentEmbedding, distance_expr.label("distance")).where(
            distance_expr <= 1.0 - threshold
        )
        if source_type:
            stmt = stmt.where(ContentEmbedding.source_type == source_type)
        if company_id:
            # Shared content has no company and is visible to every tenant.
            stmt = stmt.where(
                or_(ContentEmbedding.company_id.is_(None), ContentEmbedding.company_id == company_id)
            )
        # Secondary ordering keeps tie-breaking deterministic.
        stmt = stmt.order_by(distance_expr.asc(), ContentEmbedding.id.asc()).limit(max(1, int(top_k)))

        try:
            # Savepoint: a failed query must not abort the request transaction shared with quota and history.
            async with self._session.begin_nested():
                result = await self._session.execute(stmt)
                rows = result.all()
        except SQLAlchemyError as exc:
            raise RetrievalError("pgvector query failed") from exc

        snippets: list[RetrievedSnippet] = []
        for row, distance in rows:
            # Convert cosine distance to similarity and clamp to [0, 1].
            score = max(0.0, min(1.0, 1.0 - float(distance)))
            snippets.append(
                RetrievedSnippet(
                    chunk_id=row.id,
                    source_type=row.source_type,
                    source_id=row.source_id,
                    text=row.content_chunk,
                    chunk_index=row.chunk_index,
                    score=score,
                    metadata=row.metadata_ or {},
                )
            )
        return snippets

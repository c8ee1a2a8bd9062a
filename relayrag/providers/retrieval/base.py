from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol


@dataclass(frozen=True)
class ChunkRecord:
    source_type: str
    source_id: str
    text: str
    chunk_index: int
    embedding: list[float]
    metadata: dict[str, Any] = field(default_factory=dict)
    company_id: str | None = None


@dataclass(frozen=True)
class RetrievedSnippet:
    # Produced per query and never persisted.
    chunk_id: str
    source_type: str
    source_id: str
    text: str
    chunk_index: int
    score: float
    metadata: dict[str, Any] = field(default_factory=dict)


class VectorStore(Protocol):
    async def replace_chunks(self, source_type: str, source_id: str, chunks: list[ChunkRecord]) -> None:
        ...

    async def search(
        self,
        embedding: list[float],
        *,
        threshold: float,
        top_k: int,
        source_type: str | None = None,
        company_id: str | None = None,
    ) -> list[RetrievedSnippet]:
        ...

from __future__ import annotations

from dataclasses import dataclass, field
import logging

from sqlalchemy.ext.asyncio import AsyncSession

from relayrag.domain.models import KnowledgeBaseEntry
from relayrag.persistence.repos import knowledge_base as kb_repo
from relayrag.services.retrieval import IndexResult, RetrievalEngine


logger = logging.getLogger(__name__)

KNOWLEDGE_BASE_SOURCE = "knowledge_base"


@dataclass
class ReindexReport:
    processed: int = 0
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {"processed": self.processed, "errors": list(self.errors)}


def entry_text(entry: KnowledgeBaseEntry) -> str:
    # Title leads the text so the first chunk carries the topic.
    return f"{entry.title}\n\n{entry.content}"


async def index_entry(engine: RetrievalEngine, entry: KnowledgeBaseEntry) -> IndexResult:
    return await engine.index(
        KNOWLEDGE_BASE_SOURCE,
        entry.id,
        entry_text(entry),
        {"title": entry.title},
        company_id=entry.company_id,
    )


async def reindex_knowledge_base(
    session: AsyncSession,
    engine: RetrievalEngine,
    *,
    company_id: str | None = None,
) -> ReindexReport:
    """Re-embed every active entry; one failing entry never stops the rest."""
    report = ReindexReport()
    entries = await kb_repo.list_active_entries(session, company_id=company_id)
    for entry in entries:
        result = await index_entry(engine, entry)
        if result.success:
            report.processed += 1
        else:
            report.errors.append(f"{entry.id}: {result.error}")
    logger.info("knowledge_base_reindexed processed=%s errors=%s", report.processed, len(report.errors))
    return report

from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from relayrag.domain.models import KnowledgeBaseEntry


async def get_entry(session: AsyncSession, entry_id: str) -> KnowledgeBaseEntry | None:
    result = await session.execute(select(KnowledgeBaseEntry).where(KnowledgeBaseEntry.id == entry_id))
    return result.scalar_one_or_none()


async def list_active_entries(session: AsyncSession, *, company_id: str | None = None) -> list[KnowledgeBaseEntry]:
    stmt = select(KnowledgeBaseEntry).where(KnowledgeBaseEntry.is_active.is_(True))
    if company_id:
        stmt = stmt.where(KnowledgeBaseEntry.company_id == company_id)
    result = await session.execute(stmt.order_by(KnowledgeBaseEntry.id.asc()))
    return list(result.scalars().all())

from __future__ import annotations

from datetime import date

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from relayrag.domain.models import TokenUsageRecord


_SCOPE_COLUMNS = {
    "individual": TokenUsageRecord.profile_id,
    "team": TokenUsageRecord.group_id,
    "organization": TokenUsageRecord.company_id,
}


async def sum_daily_tokens(session: AsyncSession, scope: str, scope_id: str, day: date) -> int:
    # Counters are aggregates over today's date key; nothing is ever reset.
    column = _SCOPE_COLUMNS[scope]
    result = await session.execute(
        select(
            func.coalesce(
                func.sum(TokenUsageRecord.input_tokens + TokenUsageRecord.output_tokens),
                0,
            )
        ).where(column == scope_id, TokenUsageRecord.usage_date == day)
    )
    return int(result.scalar_one() or 0)


async def add_usage(session: AsyncSession, record: TokenUsageRecord) -> TokenUsageRecord:
    session.add(record)
    await session.commit()
    return record


async def list_usage(
    session: AsyncSession,
    *,
    start: date,
    end: date,
    company_id: str | None = None,
    profile_id: str | None = None,
) -> list[TokenUsageRecord]:
    stmt = select(TokenUsageRecord).where(
        TokenUsageRecord.usage_date >= start,
        TokenUsageRecord.usage_date <= end,
    )
    if company_id:
        stmt = stmt.where(TokenUsageRecord.company_id == company_id)
    if profile_id:
        stmt = stmt.where(TokenUsageRecord.profile_id == profile_id)
    result = await session.execute(stmt.order_by(TokenUsageRecord.created_at.asc()))
    return list(result.scalars().all())

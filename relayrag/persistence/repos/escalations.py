from __future__ import annotations

from typing import Any
from uuid import uuid4

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from relayrag.domain.models import EscalationConfig, EscalationLog


async def list_active_configs(
    session: AsyncSession,
    *,
    company_id: str | None,
    group_id: str | None,
) -> list[EscalationConfig]:
    company_filter = EscalationConfig.company_id.is_(None)
    if company_id:
        company_filter = or_(company_filter, EscalationConfig.company_id == company_id)
    group_filter = EscalationConfig.group_id.is_(None)
    if group_id:
        group_filter = or_(group_filter, EscalationConfig.group_id == group_id)
    result = await session.execute(
        select(EscalationConfig)
        .where(EscalationConfig.is_active.is_(True), company_filter, group_filter)
        .order_by(EscalationConfig.priority.desc(), EscalationConfig.id.asc())
    )
    return list(result.scalars().all())


async def create_log(
    session: AsyncSession,
    *,
    session_id: str,
    profile_id: str,
    trigger: str,
    matched_keywords: list[str],
    original_message: str,
) -> EscalationLog:
    log = EscalationLog(
        id=uuid4().hex,
        session_id=session_id,
        profile_id=profile_id,
        trigger=trigger,
        trigger_details={"matched_keywords": matched_keywords, "original_message": original_message},
        channels_notified=[],
        notification_results={},
    )
    session.add(log)
    return log


async def record_results(
    session: AsyncSession,
    log_id: str,
    *,
    config_id: str | None,
    channels: list[str],
    results: dict[str, Any],
) -> None:
    await session.execute(
        update(EscalationLog)
        .where(EscalationLog.id == log_id)
        .values(config_id=config_id, channels_notified=channels, notification_results=results)
    )
    await session.commit()


async def list_logs(
    session: AsyncSession,
    *,
    resolved: bool | None = None,
    limit: int = 50,
) -> list[EscalationLog]:
    stmt = select(EscalationLog)
    if resolved is not None:
        stmt = stmt.where(EscalationLog.is_resolved.is_(resolved))
    result = await session.execute(stmt.order_by(EscalationLog.created_at.desc()).limit(limit))
    return list(result.scalars().all())

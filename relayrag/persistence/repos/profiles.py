from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from relayrag.domain.models import Company, Group, Profile


async def get_profile(session: AsyncSession, profile_id: str) -> Profile | None:
    result = await session.execute(select(Profile).where(Profile.id == profile_id))
    return result.scalar_one_or_none()


async def get_daily_limit(session: AsyncSession, scope: str, scope_id: str) -> int | None:
    model = {"individual": Profile, "team": Group, "organization": Company}[scope]
    result = await session.execute(select(model.daily_token_limit).where(model.id == scope_id))
    return result.scalar_one_or_none()

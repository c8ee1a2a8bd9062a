from __future__ import annotations

from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from relayrag.core.errors import SessionNotFoundError, SessionOwnershipError
from relayrag.domain.models import ChatSession


async def get_session(session: AsyncSession, session_id: str) -> ChatSession | None:
    result = await session.execute(select(ChatSession).where(ChatSession.id == session_id))
    return result.scalar_one_or_none()


async def get_owned_session(session: AsyncSession, session_id: str, profile_id: str) -> ChatSession:
    existing = await get_session(session, session_id)
    if existing is None:
        raise SessionNotFoundError("chat session not found")
    # Sessions are private to the profile that created them.
    if existing.profile_id != profile_id:
        raise SessionOwnershipError("chat session belongs to another profile")
    return existing


async def create_session(
    session: AsyncSession,
    *,
    profile_id: str,
    session_type: str,
    title: str | None = None,
    context: str | None = None,
) -> ChatSession:
    chat_session = ChatSession(
        id=uuid4().hex,
        profile_id=profile_id,
        session_type=session_type,
        title=title,
        context=context,
        status="active",
    )
    session.add(chat_session)
    await session.flush()
    return chat_session


async def touch_session(session: AsyncSession, session_id: str) -> None:
    await session.execute(
        update(ChatSession)
        .where(ChatSession.id == session_id)
        .values(last_message_at=datetime.now(timezone.utc))
    )


async def mark_escalated(session: AsyncSession, session_id: str, reason: str) -> None:
    await session.execute(
        update(ChatSession)
        .where(ChatSession.id == session_id)
        .values(status="escalated", escalated_at=datetime.now(timezone.utc), escalation_reason=reason)
    )

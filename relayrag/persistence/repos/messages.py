from __future__ import annotations

from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from relayrag.domain.models import ChatMessage


async def add_message(
    session: AsyncSession,
    session_id: str,
    role: str,
    content: str,
    *,
    model: str | None = None,
    input_tokens: int | None = None,
    output_tokens: int | None = None,
) -> ChatMessage:
    message = ChatMessage(
        id=uuid4().hex,
        session_id=session_id,
        role=role,
        content=content,
        model=model,
        input_tokens=input_tokens,
        output_tokens=output_tokens,
    )
    session.add(message)
    return message


async def list_recent_messages(session: AsyncSession, session_id: str, limit: int) -> list[ChatMessage]:
    # Take the newest window, then return it oldest-first for prompting.
    result = await session.execute(
        select(ChatMessage)
        .where(ChatMessage.session_id == session_id)
        .order_by(ChatMessage.created_at.desc(), ChatMessage.id.desc())
        .limit(limit)
    )
    return list(reversed(result.scalars().all()))

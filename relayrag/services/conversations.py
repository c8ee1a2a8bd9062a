from __future__ import annotations

import logging
from typing import Protocol

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from relayrag.core.errors import DatabaseError
from relayrag.domain.events import ChatTurn, TokenUsage
from relayrag.persistence.repos import messages as messages_repo
from relayrag.persistence.repos import sessions as sessions_repo
from relayrag.services.escalation.detector import Matched
from relayrag.services.escalation.events import EscalationEvent, RecipientContext
from relayrag.services.escalation.service import open_escalation


logger = logging.getLogger(__name__)


class ConversationStore(Protocol):
    async def recent_turns(self, session_id: str, limit: int) -> list[ChatTurn]:
        ...

    async def add_user_message(self, session_id: str, content: str) -> None:
        ...

    async def add_assistant_message(
        self,
        session_id: str,
        content: str,
        *,
        model: str,
        usage: TokenUsage,
    ) -> None:
        ...

    async def open_escalation(
        self,
        match: Matched,
        *,
        message: str,
        recipient: RecipientContext,
    ) -> EscalationEvent:
        ...


class SqlConversationStore:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def recent_turns(self, session_id: str, limit: int) -> list[ChatTurn]:
        messages = await messages_repo.list_recent_messages(self._session, session_id, limit)
        return [
            ChatTurn(role=message.role, content=message.content)
            for message in messages
            if message.role in ("user", "assistant", "system")
        ]

    async def add_user_message(self, session_id: str, content: str) -> None:
        # Persist the inbound turn before streaming so history is durable.
        try:
            await messages_repo.add_message(self._session, session_id, "user", content)
            await sessions_repo.touch_session(self._session, session_id)
            await self._session.commit()
        except SQLAlchemyError as exc:
            await self._session.rollback()
            raise DatabaseError("user message insert failed") from exc

    async def add_assistant_message(
        self,
        session_id: str,
        content: str,
        *,
        model: str,
        usage: TokenUsage,
    ) -> None:
        try:
            await messages_repo.add_message(
                self._session,
                session_id,
                "assistant",
                content,
                model=model,
                input_tokens=usage.input_tokens,
                output_tokens=usage.output_tokens,
            )
            await sessions_repo.touch_session(self._session, session_id)
            await self._session.commit()
        except SQLAlchemyError as exc:
            await self._session.rollback()
            raise DatabaseError("assistant message insert failed") from exc

    async def open_escalation(
        self,
        match: Matched,
        *,
        message: str,
        recipient: RecipientContext,
    ) -> EscalationEvent:
        try:
            return await open_escalation(self._session, match, message=message, recipient=recipient)
        except SQLAlchemyError as exc:
            await self._session.rollback()
            raise DatabaseError("escalation log insert failed") from exc

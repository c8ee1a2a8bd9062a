from __future__ import annotations

import logging
from typing import AsyncGenerator, Literal

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from relayrag.apps.api.deps import (
    Principal,
    get_db,
    get_notifier,
    get_principal,
    get_registry,
    get_retrieval_engine,
)
from relayrag.apps.api.errors import to_http_exception
from relayrag.apps.api.sse import SSE_HEADERS, encode_event
from relayrag.core.config import get_settings
from relayrag.core.errors import (
    DatabaseError,
    ProviderConfigError,
    QuotaExceededError,
    SessionNotFoundError,
    SessionOwnershipError,
)
from relayrag.domain.models import ChatSession
from relayrag.persistence.repos import sessions as sessions_repo
from relayrag.providers.llm.catalog import DEFAULT_MODELS, Vendor, parse_vendor
from relayrag.providers.llm.factory import ProviderRegistry
from relayrag.services.completion import CompletionOrchestrator, ConversationInput
from relayrag.services.conversations import SqlConversationStore
from relayrag.services.escalation.events import RecipientContext
from relayrag.services.escalation.notifier import EscalationNotifier
from relayrag.services.quota import Denied, QuotaScope, QuotaService, SqlQuotaStore, build_quota_exception, quota_headers
from relayrag.services.retrieval import RetrievalEngine
from relayrag.services.validation import sanitize_user_input, session_title


logger = logging.getLogger(__name__)

router = APIRouter(tags=["chat"])


class ChatSendRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    session_id: str | None = Field(default=None, alias="sessionId")
    message: str
    vendor: str | None = Field(default=None, alias="provider")
    model: str | None = Field(default=None, alias="modelId")
    session_type: Literal["learning", "general"] = Field(default="learning", alias="sessionType")
    # Optional learning context (curriculum, chapter) merged into the system prompt.
    context: str | None = None


class QaAskRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    session_id: str | None = Field(default=None, alias="sessionId")
    message: str


def _validation_error(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_400_BAD_REQUEST,
        detail={"code": "VALIDATION_ERROR", "message": message},
    )


def _clean_message(raw: str, max_length: int) -> str:
    message = sanitize_user_input(raw)
    if not message:
        raise _validation_error("Message must not be empty")
    if len(message) > max_length:
        raise _validation_error(f"Message is too long (max {max_length:,} characters)")
    return message


def _default_model(vendor: Vendor) -> str:
    settings = get_settings()
    configured = {
        Vendor.ANTHROPIC: settings.anthropic_model,
        Vendor.OPENAI: settings.openai_model,
        Vendor.GOOGLE: settings.gemini_model,
    }
    return configured.get(vendor) or DEFAULT_MODELS[vendor]


async def _resolve_session(
    db: AsyncSession,
    principal: Principal,
    *,
    session_id: str | None,
    session_type: str,
    message: str,
    context: str | None,
) -> ChatSession:
    if session_id:
        try:
            return await sessions_repo.get_owned_session(db, session_id, principal.profile_id)
        except (SessionNotFoundError, SessionOwnershipError) as exc:
            raise to_http_exception(exc) from exc
    # Flushed but uncommitted: a denied turn rolls the new session back.
    return await sessions_repo.create_session(
        db,
        profile_id=principal.profile_id,
        session_type=session_type,
        title=session_title(message),
        context=context,
    )


def _orchestrator(
    db: AsyncSession,
    registry: ProviderRegistry,
    notifier: EscalationNotifier,
    retrieval: RetrievalEngine,
) -> CompletionOrchestrator:
    return CompletionOrchestrator(
        registry=registry,
        quota=QuotaService(SqlQuotaStore(db)),
        store=SqlConversationStore(db),
        retrieval=retrieval,
        notifier=notifier,
    )


async def _stream_turn(
    http_request: Request,
    db: AsyncSession,
    orchestrator: CompletionOrchestrator,
    conversation: ConversationInput,
) -> StreamingResponse:
    try:
        prepared = await orchestrator.prepare(conversation)
    except QuotaExceededError as exc:
        # Nothing from a denied turn is kept, including a freshly created session.
        await db.rollback()
        denied = Denied(scope=QuotaScope(exc.scope), limit=exc.limit, used=exc.used)
        raise build_quota_exception(denied) from exc
    except (ProviderConfigError, DatabaseError) as exc:
        await db.rollback()
        raise to_http_exception(exc) from exc

    async def event_stream() -> AsyncGenerator[str, None]:
        events = orchestrator.stream(prepared)
        try:
            async for event in events:
                if await http_request.is_disconnected():
                    # Stop relaying immediately; the orchestrator cancels the vendor stream.
                    break
                yield encode_event(event)
        finally:
            await events.aclose()

    headers = dict(SSE_HEADERS)
    headers.update(quota_headers(prepared.decision))
    headers["X-Session-Id"] = conversation.session_id
    return StreamingResponse(event_stream(), headers=headers, media_type="text/event-stream")


def _recipient(principal: Principal, session_id: str, session_type: str) -> RecipientContext:
    return RecipientContext(
        profile_id=principal.profile_id,
        session_id=session_id,
        session_type=session_type,
        user_name=principal.name,
        user_email=principal.email,
        company_id=principal.company_id,
        group_id=principal.group_id,
    )


@router.post("/chat/send")
async def chat_send(
    payload: ChatSendRequest,
    http_request: Request,
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
    registry: ProviderRegistry = Depends(get_registry),
    notifier: EscalationNotifier = Depends(get_notifier),
    retrieval: RetrievalEngine = Depends(get_retrieval_engine),
) -> StreamingResponse:
    settings = get_settings()
    message = _clean_message(payload.message, settings.chat_max_message_length)
    try:
        vendor = parse_vendor(payload.vendor or settings.default_vendor)
    except ProviderConfigError as exc:
        raise _validation_error(str(exc)) from exc
    chat_session = await _resolve_session(
        db,
        principal,
        session_id=payload.session_id,
        session_type=payload.session_type,
        message=message,
        context=payload.context,
    )
    conversation = ConversationInput(
        identity=principal.quota_identity,
        recipient=_recipient(principal, chat_session.id, chat_session.session_type),
        session_id=chat_session.id,
        session_type=chat_session.session_type,
        message=message,
        vendor=vendor,
        model=payload.model or _default_model(vendor),
        max_tokens=settings.default_max_tokens,
        temperature=settings.default_temperature,
        history_limit=settings.chat_history_limit,
        session_context=chat_session.context,
    )
    orchestrator = _orchestrator(db, registry, notifier, retrieval)
    return await _stream_turn(http_request, db, orchestrator, conversation)


@router.post("/qa/ask")
async def qa_ask(
    payload: QaAskRequest,
    http_request: Request,
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
    registry: ProviderRegistry = Depends(get_registry),
    notifier: EscalationNotifier = Depends(get_notifier),
    retrieval: RetrievalEngine = Depends(get_retrieval_engine),
) -> StreamingResponse:
    settings = get_settings()
    message = _clean_message(payload.message, settings.qa_max_message_length)
    chat_session = await _resolve_session(
        db,
        principal,
        session_id=payload.session_id,
        session_type="qa",
        message=message,
        context=None,
    )
    conversation = ConversationInput(
        identity=principal.quota_identity,
        recipient=_recipient(principal, chat_session.id, "qa"),
        session_id=chat_session.id,
        session_type="qa",
        message=message,
        vendor=parse_vendor(settings.qa_vendor),
        model=settings.qa_model,
        max_tokens=settings.qa_max_tokens,
        temperature=settings.qa_temperature,
        history_limit=settings.qa_history_limit,
    )
    orchestrator = _orchestrator(db, registry, notifier, retrieval)
    return await _stream_turn(http_request, db, orchestrator, conversation)

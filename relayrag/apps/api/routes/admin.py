from __future__ import annotations

from datetime import date, datetime, timezone
import logging
from typing import Any, Literal

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from relayrag.apps.api.deps import Principal, get_db, get_registry, get_retrieval_engine, require_admin
from relayrag.apps.api.errors import to_http_exception
from relayrag.core.config import get_settings
from relayrag.core.errors import RelayError, RetrievalUnavailableError
from relayrag.domain.events import ChatTurn
from relayrag.persistence.repos import escalations as escalations_repo
from relayrag.persistence.repos import messages as messages_repo
from relayrag.persistence.repos import sessions as sessions_repo
from relayrag.providers.llm.factory import ProviderRegistry
from relayrag.services.embedding_jobs import EmbeddingJobPayload, enqueue_embedding_job
from relayrag.services.retrieval import RetrievalEngine
from relayrag.services.summaries import summarize_session
from relayrag.services.usage_dashboard import Period, load_usage_summary


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"])

# Upper bound on messages sent to the summarizer.
_SUMMARY_MESSAGE_LIMIT = 100


class EmbeddingJobRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type: Literal["knowledge_base", "knowledge_base_entry", "content"] = "knowledge_base"
    source_type: str | None = Field(default=None, alias="sourceType")
    source_id: str | None = Field(default=None, alias="sourceId")
    text: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    company_id: str | None = Field(default=None, alias="companyId")


class RetrievalSearchRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    query: str
    threshold: float | None = Field(default=None, ge=0.0, le=1.0)
    top_k: int | None = Field(default=None, alias="topK", ge=1, le=50)
    source_type: str | None = Field(default=None, alias="sourceType")
    company_id: str | None = Field(default=None, alias="companyId")


def _scoped_company(principal: Principal, requested: str | None) -> str | None:
    # Group admins only ever see their own organization.
    if principal.role == "group_admin":
        return principal.company_id
    return requested


@router.post("/embeddings", status_code=status.HTTP_202_ACCEPTED)
async def generate_embeddings(
    payload: EmbeddingJobRequest,
    principal: Principal = Depends(require_admin),
) -> dict:
    kind = {
        "knowledge_base": "knowledge_base_all",
        "knowledge_base_entry": "knowledge_base_entry",
        "content": "content",
    }[payload.type]
    if kind != "knowledge_base_all" and not payload.source_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "VALIDATION_ERROR", "message": "sourceId is required"},
        )
    if kind == "content" and (not payload.source_type or payload.text is None):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "VALIDATION_ERROR", "message": "sourceType and text are required"},
        )
    job = EmbeddingJobPayload(
        job_kind=kind,
        source_type=payload.source_type or "knowledge_base",
        source_id=payload.source_id,
        text=payload.text,
        metadata=payload.metadata,
        company_id=_scoped_company(principal, payload.company_id),
    )
    job_id = await enqueue_embedding_job(job)
    logger.info("embedding_job_enqueued job_id=%s kind=%s profile_id=%s", job_id, kind, principal.profile_id)
    return {"job_id": job_id, "mode": get_settings().embedding_execution_mode}


@router.get("/token-usage")
async def token_usage(
    period: Period = Query(default="daily"),
    day: date | None = Query(default=None, alias="date"),
    company_id: str | None = Query(default=None, alias="companyId"),
    profile_id: str | None = Query(default=None, alias="profileId"),
    principal: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    summary = await load_usage_summary(
        db,
        period=period,
        day=day or datetime.now(timezone.utc).date(),
        company_id=_scoped_company(principal, company_id),
        profile_id=profile_id,
    )
    return summary.to_dict()


@router.get("/escalations")
async def list_escalations(
    resolved: bool | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    principal: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    logs = await escalations_repo.list_logs(db, resolved=resolved, limit=limit)
    return {
        "items": [
            {
                "id": log.id,
                "sessionId": log.session_id,
                "profileId": log.profile_id,
                "trigger": log.trigger,
                "triggerDetails": log.trigger_details,
                "channelsNotified": list(log.channels_notified or []),
                "notificationResults": log.notification_results,
                "isResolved": log.is_resolved,
                "createdAt": log.created_at.isoformat() if log.created_at else None,
            }
            for log in logs
        ]
    }


@router.post("/sessions/{session_id}/summary")
async def session_summary(
    session_id: str,
    principal: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    registry: ProviderRegistry = Depends(get_registry),
) -> dict:
    settings = get_settings()
    chat_session = await sessions_repo.get_session(db, session_id)
    if chat_session is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"code": "SESSION_NOT_FOUND", "message": "Session not found."},
        )
    messages = await messages_repo.list_recent_messages(db, session_id, _SUMMARY_MESSAGE_LIMIT)
    turns = [ChatTurn(role=message.role, content=message.content) for message in messages]
    if not turns:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "VALIDATION_ERROR", "message": "Session has no messages"},
        )
    try:
        provider = registry.get(settings.qa_vendor)
        summary, result = await summarize_session(provider, turns, model=settings.qa_model)
    except RelayError as exc:
        raise to_http_exception(exc) from exc
    return {
        "sessionId": session_id,
        "summary": summary.model_dump(),
        "usage": result.usage.to_payload(),
    }


@router.post("/retrieval/search")
async def retrieval_search(
    payload: RetrievalSearchRequest,
    principal: Principal = Depends(require_admin),
    retrieval: RetrievalEngine = Depends(get_retrieval_engine),
) -> dict:
    try:
        # Strict search so operators see failures instead of an empty list.
        snippets = await retrieval.search_strict(
            payload.query,
            threshold=payload.threshold,
            top_k=payload.top_k,
            source_type=payload.source_type,
            company_id=_scoped_company(principal, payload.company_id),
        )
    except RetrievalUnavailableError as exc:
        raise to_http_exception(exc) from exc
    return {
        "items": [
            {
                "chunkId": snippet.chunk_id,
                "sourceType": snippet.source_type,
                "sourceId": snippet.source_id,
                "chunkIndex": snippet.chunk_index,
                "score": snippet.score,
                "text": snippet.text,
                "metadata": snippet.metadata,
            }
            for snippet in snippets
        ]
    }

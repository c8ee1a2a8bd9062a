from __future__ import annotations

from typing import AsyncGenerator

from fastapi import Depends, Header, HTTPException, Request, status
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from relayrag.ingestion.embeddings import get_embedding_client
from relayrag.persistence.db import get_session
from relayrag.persistence.repos import profiles as profiles_repo
from relayrag.providers.llm.factory import ProviderRegistry
from relayrag.providers.retrieval.local_pgvector import PgVectorStore
from relayrag.services.escalation.notifier import EscalationNotifier
from relayrag.services.quota import QuotaIdentity
from relayrag.services.retrieval import RetrievalEngine


_ADMIN_ROLES = {"super_admin", "group_admin"}


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; context manager ensures close on success/error.
    async with get_session() as session:
        yield session


class Principal(BaseModel):
    # Identity resolved from the profile the upstream auth gateway vouched for.
    profile_id: str
    role: str
    group_id: str | None = None
    company_id: str | None = None
    name: str | None = None
    email: str | None = None

    @property
    def quota_identity(self) -> QuotaIdentity:
        return QuotaIdentity(profile_id=self.profile_id, group_id=self.group_id, company_id=self.company_id)


def _auth_error(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": "AUTH_UNAUTHORIZED", "message": message},
    )


async def get_principal(
    x_profile_id: str | None = Header(default=None, alias="X-Profile-Id"),
    db: AsyncSession = Depends(get_db),
) -> Principal:
    # Authentication itself happens upstream; only the resolved profile id reaches us.
    if not x_profile_id:
        raise _auth_error("Missing X-Profile-Id header")
    profile = await profiles_repo.get_profile(db, x_profile_id)
    if profile is None:
        raise _auth_error("Unknown profile")
    return Principal(
        profile_id=profile.id,
        role=profile.role,
        group_id=profile.group_id,
        company_id=profile.company_id,
        name=profile.name,
        email=profile.email,
    )


async def require_admin(principal: Principal = Depends(get_principal)) -> Principal:
    if principal.role not in _ADMIN_ROLES:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"code": "AUTH_FORBIDDEN", "message": "Administrator role required"},
        )
    return principal


def get_registry(request: Request) -> ProviderRegistry:
    # Built once at startup and shared by every request.
    return request.app.state.provider_registry


def get_notifier(request: Request) -> EscalationNotifier:
    return request.app.state.escalation_notifier


def get_retrieval_engine(db: AsyncSession = Depends(get_db)) -> RetrievalEngine:
    return RetrievalEngine(PgVectorStore(db), get_embedding_client())

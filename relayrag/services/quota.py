from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from enum import Enum
import logging
from typing import Callable, Protocol, Union
from uuid import uuid4

from fastapi import HTTPException, status
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from relayrag.core.config import get_settings
from relayrag.core.errors import DatabaseError
from relayrag.domain.events import TokenUsage
from relayrag.domain.models import TokenUsageRecord
from relayrag.persistence.repos import profiles as profiles_repo
from relayrag.persistence.repos import usage as usage_repo
from relayrag.services.costs.metering import calculate_cost, estimate_tokens


logger = logging.getLogger(__name__)


class QuotaScope(str, Enum):
    INDIVIDUAL = "individual"
    TEAM = "team"
    ORGANIZATION = "organization"


@dataclass(frozen=True)
class QuotaIdentity:
    profile_id: str
    group_id: str | None = None
    company_id: str | None = None

    def scopes(self) -> list[tuple[QuotaScope, str]]:
        # Evaluation order is fixed: individual, then team, then organization.
        pairs = [
            (QuotaScope.INDIVIDUAL, self.profile_id),
            (QuotaScope.TEAM, self.group_id),
            (QuotaScope.ORGANIZATION, self.company_id),
        ]
        return [(scope, scope_id) for scope, scope_id in pairs if scope_id]


@dataclass(frozen=True)
class ScopeSnapshot:
    scope: QuotaScope
    limit: int
    used: int

    @property
    def remaining(self) -> int:
        return max(self.limit - self.used, 0)


@dataclass(frozen=True)
class Admitted:
    scopes: tuple[ScopeSnapshot, ...]


@dataclass(frozen=True)
class Denied:
    scope: QuotaScope
    limit: int
    used: int


QuotaDecision = Union[Admitted, Denied]


class QuotaStore(Protocol):
    async def get_daily_limit(self, scope: QuotaScope, scope_id: str) -> int | None:
        ...

    async def get_daily_usage(self, scope: QuotaScope, scope_id: str, day: date) -> int:
        ...

    async def insert_usage(self, record: TokenUsageRecord) -> None:
        ...


class SqlQuotaStore:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get_daily_limit(self, scope: QuotaScope, scope_id: str) -> int | None:
        try:
            return await profiles_repo.get_daily_limit(self._session, scope.value, scope_id)
        except SQLAlchemyError as exc:
            raise DatabaseError(f"{scope.value} quota limit lookup failed") from exc

    async def get_daily_usage(self, scope: QuotaScope, scope_id: str, day: date) -> int:
        try:
            return await usage_repo.sum_daily_tokens(self._session, scope.value, scope_id, day)
        except SQLAlchemyError as exc:
            raise DatabaseError(f"{scope.value} quota usage lookup failed") from exc

    async def insert_usage(self, record: TokenUsageRecord) -> None:
        try:
            await usage_repo.add_usage(self._session, record)
        except SQLAlchemyError as exc:
            await self._session.rollback()
            raise DatabaseError("token usage insert failed") from exc


class QuotaService:
    """Hierarchical daily token budgets.

    Admission and recording are separate calls and not atomic: concurrent
    requests near a limit can both be admitted. Limits are soft operational
    guards, so no reservation is taken at admission time.
    """

    def __init__(
        self,
        store: QuotaStore,
        *,
        time_provider: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        # Allow time injection for deterministic rollover tests.
        self._time_provider = time_provider or _utc_now

    def _default_limit(self, scope: QuotaScope) -> int:
        settings = get_settings()
        if scope == QuotaScope.INDIVIDUAL:
            return settings.default_user_daily_token_limit
        return settings.default_daily_token_limit

    async def snapshot(self, scope: QuotaScope, scope_id: str) -> ScopeSnapshot:
        today = _usage_date(self._time_provider())
        limit = await self._store.get_daily_limit(scope, scope_id)
        if limit is None:
            limit = self._default_limit(scope)
        used = await self._store.get_daily_usage(scope, scope_id, today)
        return ScopeSnapshot(scope=scope, limit=int(limit), used=int(used))

    async def check_and_admit(self, identity: QuotaIdentity, estimated_cost: int) -> QuotaDecision:
        snapshots: list[ScopeSnapshot] = []
        for scope, scope_id in identity.scopes():
            snap = await self.snapshot(scope, scope_id)
            # Deny when the remaining budget cannot strictly cover the estimate.
            if snap.limit - snap.used <= estimated_cost:
                logger.info(
                    "quota_denied scope=%s scope_id=%s limit=%s used=%s estimated=%s",
                    scope.value,
                    scope_id,
                    snap.limit,
                    snap.used,
                    estimated_cost,
                )
                return Denied(scope=scope, limit=snap.limit, used=snap.used)
            snapshots.append(snap)
        return Admitted(scopes=tuple(snapshots))

    async def record(
        self,
        identity: QuotaIdentity,
        usage: TokenUsage,
        *,
        vendor: str,
        model: str,
        session_id: str | None = None,
    ) -> TokenUsageRecord:
        # Ledger rows are keyed by the UTC calendar date at record time.
        record = TokenUsageRecord(
            id=uuid4().hex,
            profile_id=identity.profile_id,
            group_id=identity.group_id,
            company_id=identity.company_id,
            session_id=session_id,
            vendor=vendor,
            model=model,
            input_tokens=usage.input_tokens,
            output_tokens=usage.output_tokens,
            estimated_cost=calculate_cost(model, usage.input_tokens, usage.output_tokens),
            usage_source="estimated" if usage.estimated else "exact",
            usage_date=_usage_date(self._time_provider()),
        )
        await self._store.insert_usage(record)
        logger.info(
            "usage_recorded profile_id=%s model=%s input=%s output=%s source=%s",
            identity.profile_id,
            model,
            usage.input_tokens,
            usage.output_tokens,
            record.usage_source,
        )
        return record


def _utc_now() -> datetime:
    # Use UTC for daily boundaries to keep quotas consistent across regions.
    return datetime.now(timezone.utc)


def _usage_date(now: datetime) -> date:
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return now.astimezone(timezone.utc).date()


def seconds_until_reset(now: datetime | None = None) -> int:
    now = (now or _utc_now()).astimezone(timezone.utc)
    tomorrow = datetime.combine(now.date() + timedelta(days=1), datetime.min.time(), tzinfo=timezone.utc)
    return max(1, int((tomorrow - now).total_seconds()))


def quota_headers(decision: QuotaDecision) -> dict[str, str]:
    # Render quota headers for responses with consistent casing.
    if isinstance(decision, Denied):
        return {
            "X-Quota-Scope": decision.scope.value,
            "X-Quota-Day-Limit": str(decision.limit),
            "X-Quota-Day-Used": str(decision.used),
            "X-Quota-Day-Remaining": str(max(decision.limit - decision.used, 0)),
        }
    if not decision.scopes:
        return {}
    # Report the tightest scope so clients see the binding constraint.
    tightest = min(decision.scopes, key=lambda snap: snap.remaining)
    return {
        "X-Quota-Scope": tightest.scope.value,
        "X-Quota-Day-Limit": str(tightest.limit),
        "X-Quota-Day-Used": str(tightest.used),
        "X-Quota-Day-Remaining": str(tightest.remaining),
    }


def build_quota_exception(denied: Denied, *, now: datetime | None = None) -> HTTPException:
    # Distinct rate-limit signal issued before any generation cost is incurred.
    detail = {
        "code": "QUOTA_EXCEEDED",
        "message": "Daily token limit reached. Please try again later.",
        "scope": denied.scope.value,
        "limit": denied.limit,
        "used": min(denied.used, denied.limit),
    }
    headers = quota_headers(denied)
    headers["Retry-After"] = str(seconds_until_reset(now))
    return HTTPException(status_code=status.HTTP_429_TOO_MANY_REQUESTS, detail=detail, headers=headers)


def estimate_request_cost(*texts: str | None) -> int:
    # Admission estimate covers the prompt; output is unknown until the stream ends.
    return estimate_tokens("\n".join(text for text in texts if text))

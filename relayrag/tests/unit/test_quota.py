from __future__ import annotations

from datetime import date, datetime, timezone
from decimal import Decimal

import pytest

from relayrag.domain.events import TokenUsage
from relayrag.services.quota import (
    Admitted,
    Denied,
    QuotaIdentity,
    QuotaScope,
    QuotaService,
    ScopeSnapshot,
    build_quota_exception,
    quota_headers,
    seconds_until_reset,
)
from relayrag.tests.utils.fakes import FakeQuotaStore


IDENTITY = QuotaIdentity(profile_id="p1", group_id="g1", company_id="c1")
FIXED_NOW = datetime(2026, 2, 7, 12, 0, tzinfo=timezone.utc)


def _service(store: FakeQuotaStore) -> QuotaService:
    return QuotaService(store, time_provider=lambda: FIXED_NOW)


@pytest.mark.asyncio
async def test_individual_limit_denies_before_other_scopes() -> None:
    store = FakeQuotaStore(
        limits={(QuotaScope.INDIVIDUAL, "p1"): 10000},
        usage={(QuotaScope.INDIVIDUAL, "p1"): 9999},
    )

    decision = await _service(store).check_and_admit(IDENTITY, 5)

    assert decision == Denied(scope=QuotaScope.INDIVIDUAL, limit=10000, used=9999)
    # Team and organization are never consulted once individual denies.
    assert [call[0] for call in store.usage_calls] == [QuotaScope.INDIVIDUAL]


@pytest.mark.asyncio
async def test_team_scope_checked_after_individual_passes() -> None:
    store = FakeQuotaStore(
        limits={(QuotaScope.TEAM, "g1"): 500},
        usage={(QuotaScope.TEAM, "g1"): 499},
    )

    decision = await _service(store).check_and_admit(IDENTITY, 10)

    assert decision == Denied(scope=QuotaScope.TEAM, limit=500, used=499)
    assert [call[0] for call in store.usage_calls] == [QuotaScope.INDIVIDUAL, QuotaScope.TEAM]


@pytest.mark.asyncio
async def test_admission_uses_default_limits_and_today() -> None:
    store = FakeQuotaStore()

    decision = await _service(store).check_and_admit(IDENTITY, 10)

    assert isinstance(decision, Admitted)
    assert [snap.scope for snap in decision.scopes] == [
        QuotaScope.INDIVIDUAL,
        QuotaScope.TEAM,
        QuotaScope.ORGANIZATION,
    ]
    assert decision.scopes[0].limit == 10000
    assert decision.scopes[1].limit == 100000
    assert {call[2] for call in store.usage_calls} == {date(2026, 2, 7)}


@pytest.mark.asyncio
async def test_exact_fit_is_denied() -> None:
    store = FakeQuotaStore(
        limits={(QuotaScope.INDIVIDUAL, "p1"): 100},
        usage={(QuotaScope.INDIVIDUAL, "p1"): 90},
    )
    service = _service(store)

    assert isinstance(await service.check_and_admit(IDENTITY, 10), Denied)
    assert isinstance(await service.check_and_admit(IDENTITY, 9), Admitted)


@pytest.mark.asyncio
async def test_profile_without_group_skips_team_scope() -> None:
    store = FakeQuotaStore()
    identity = QuotaIdentity(profile_id="p2", company_id="c1")

    decision = await _service(store).check_and_admit(identity, 1)

    assert [snap.scope for snap in decision.scopes] == [QuotaScope.INDIVIDUAL, QuotaScope.ORGANIZATION]


@pytest.mark.asyncio
async def test_record_writes_ledger_row_with_cost_and_source() -> None:
    store = FakeQuotaStore()

    record = await _service(store).record(
        IDENTITY,
        TokenUsage(input_tokens=1000, output_tokens=1000, estimated=True),
        vendor="openai",
        model="gpt-4o",
        session_id="s1",
    )

    assert store.records == [record]
    assert record.usage_date == date(2026, 2, 7)
    assert record.usage_source == "estimated"
    assert record.estimated_cost == Decimal("0.012500")
    assert (record.group_id, record.company_id) == ("g1", "c1")


def test_quota_headers_report_tightest_scope() -> None:
    decision = Admitted(
        scopes=(
            ScopeSnapshot(scope=QuotaScope.INDIVIDUAL, limit=10000, used=100),
            ScopeSnapshot(scope=QuotaScope.TEAM, limit=1000, used=990),
        )
    )

    headers = quota_headers(decision)

    assert headers["X-Quota-Scope"] == "team"
    assert headers["X-Quota-Day-Remaining"] == "10"


def test_quota_exception_carries_retry_after() -> None:
    now = datetime(2026, 2, 7, 23, 59, 30, tzinfo=timezone.utc)
    denied = Denied(scope=QuotaScope.ORGANIZATION, limit=100, used=120)

    exc = build_quota_exception(denied, now=now)

    assert exc.status_code == 429
    assert exc.detail["code"] == "QUOTA_EXCEEDED"
    assert exc.detail["used"] == 100
    assert exc.headers["Retry-After"] == "30"
    assert exc.headers["X-Quota-Day-Remaining"] == "0"
    assert seconds_until_reset(now) == 30

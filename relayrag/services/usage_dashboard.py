from __future__ import annotations

import calendar
from dataclasses import dataclass, field
from datetime import date, timedelta
from decimal import Decimal
from typing import Any, Iterable, Literal

from sqlalchemy.ext.asyncio import AsyncSession

from relayrag.domain.models import TokenUsageRecord
from relayrag.persistence.repos import usage as usage_repo


Period = Literal["daily", "weekly", "monthly"]


@dataclass
class ModelUsage:
    input_tokens: int = 0
    output_tokens: int = 0
    cost: Decimal = Decimal("0")
    count: int = 0


@dataclass
class UsageSummary:
    period: Period
    start_date: date
    end_date: date
    total_input_tokens: int = 0
    total_output_tokens: int = 0
    total_cost: Decimal = Decimal("0")
    session_count: int = 0
    # Rows whose counts came from the heuristic estimator.
    estimated_rows: int = 0
    by_model: dict[str, ModelUsage] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "period": self.period,
            "startDate": self.start_date.isoformat(),
            "endDate": self.end_date.isoformat(),
            "totalInputTokens": self.total_input_tokens,
            "totalOutputTokens": self.total_output_tokens,
            "totalCost": float(self.total_cost),
            "sessionCount": self.session_count,
            "estimatedRows": self.estimated_rows,
            "byModel": {
                model: {
                    "inputTokens": usage.input_tokens,
                    "outputTokens": usage.output_tokens,
                    "cost": float(usage.cost),
                    "count": usage.count,
                }
                for model, usage in self.by_model.items()
            },
        }


def period_bounds(period: Period, day: date) -> tuple[date, date]:
    # Weeks start on Sunday; months are calendar months.
    if period == "daily":
        return day, day
    if period == "weekly":
        start = day - timedelta(days=(day.weekday() + 1) % 7)
        return start, start + timedelta(days=6)
    if period == "monthly":
        last_day = calendar.monthrange(day.year, day.month)[1]
        return day.replace(day=1), day.replace(day=last_day)
    raise ValueError(f"unknown period: {period}")


def summarize_usage(rows: Iterable[TokenUsageRecord], period: Period, day: date) -> UsageSummary:
    start, end = period_bounds(period, day)
    summary = UsageSummary(period=period, start_date=start, end_date=end)
    sessions: set[str] = set()
    for row in rows:
        if not start <= row.usage_date <= end:
            continue
        input_tokens = int(row.input_tokens or 0)
        output_tokens = int(row.output_tokens or 0)
        cost = Decimal(row.estimated_cost or 0)
        summary.total_input_tokens += input_tokens
        summary.total_output_tokens += output_tokens
        summary.total_cost += cost
        if row.session_id:
            sessions.add(row.session_id)
        if row.usage_source == "estimated":
            summary.estimated_rows += 1
        bucket = summary.by_model.setdefault(row.model or "unknown", ModelUsage())
        bucket.input_tokens += input_tokens
        bucket.output_tokens += output_tokens
        bucket.cost += cost
        bucket.count += 1
    summary.session_count = len(sessions)
    return summary


async def load_usage_summary(
    session: AsyncSession,
    *,
    period: Period,
    day: date,
    company_id: str | None = None,
    profile_id: str | None = None,
) -> UsageSummary:
    start, end = period_bounds(period, day)
    rows = await usage_repo.list_usage(
        session, start=start, end=end, company_id=company_id, profile_id=profile_id
    )
    return summarize_usage(rows, period, day)

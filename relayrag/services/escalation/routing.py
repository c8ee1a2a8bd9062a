from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable

from sqlalchemy.ext.asyncio import AsyncSession

from relayrag.core.config import get_settings
from relayrag.domain.models import EscalationConfig
from relayrag.persistence.repos import escalations as escalations_repo

_ALLOWED_CHANNELS = ("email", "teams", "webhook")


@dataclass(frozen=True)
class EscalationRoute:
    # Return config provenance so log rows record which config was applied.
    config_id: str | None
    channels: tuple[str, ...]
    email_recipients: tuple[str, ...] = ()
    email_cc: tuple[str, ...] = ()
    teams_webhook_url: str | None = None
    webhook_url: str | None = None
    source: str = "config"


def _normalize_channels(raw: Iterable[str] | None) -> tuple[str, ...]:
    normalized: list[str] = []
    for item in raw or ():
        cleaned = (item or "").strip().lower()
        if cleaned in _ALLOWED_CHANNELS and cleaned not in normalized:
            normalized.append(cleaned)
    return tuple(normalized)


def _subscribed(config: EscalationConfig, trigger: str) -> bool:
    # An empty trigger set subscribes the config to every category.
    triggers = [item.strip().lower() for item in (config.triggers or []) if item and item.strip()]
    return not triggers or trigger.lower() in triggers


def _specificity(config: EscalationConfig, company_id: str | None, group_id: str | None) -> int:
    if group_id and config.group_id == group_id:
        return 2
    if company_id and config.company_id == company_id:
        return 1
    return 0


def _applies(config: EscalationConfig, company_id: str | None, group_id: str | None) -> bool:
    if config.company_id and config.company_id != company_id:
        return False
    if config.group_id and config.group_id != group_id:
        return False
    return True


def global_route() -> EscalationRoute:
    # Fallback when no active config matches the requester.
    settings = get_settings()
    channels = list(_normalize_channels(settings.escalation_default_channels.split(",")))
    if settings.escalation_notify_url and "webhook" not in channels:
        channels.append("webhook")
    return EscalationRoute(
        config_id=None,
        channels=tuple(channels),
        email_recipients=(settings.escalation_admin_email,) if settings.escalation_admin_email else (),
        teams_webhook_url=settings.teams_default_webhook_url,
        webhook_url=settings.escalation_notify_url,
        source="global",
    )


def select_route(
    configs: Iterable[EscalationConfig],
    *,
    trigger: str,
    company_id: str | None,
    group_id: str | None,
) -> EscalationRoute:
    """Pick the most specific, highest-priority active config for a trigger."""
    settings = get_settings()
    candidates = [
        config
        for config in configs
        if config.is_active and _applies(config, company_id, group_id) and _subscribed(config, trigger)
    ]
    if not candidates:
        return global_route()
    candidates.sort(
        key=lambda config: (_specificity(config, company_id, group_id), config.priority or 0),
        reverse=True,
    )
    chosen = candidates[0]
    recipients = tuple(chosen.email_recipients or ())
    if not recipients and settings.escalation_admin_email:
        recipients = (settings.escalation_admin_email,)
    return EscalationRoute(
        config_id=chosen.id,
        channels=_normalize_channels(chosen.channels) or _normalize_channels(["email"]),
        email_recipients=recipients,
        email_cc=tuple(chosen.email_cc or ()),
        teams_webhook_url=chosen.teams_webhook_url or settings.teams_default_webhook_url,
        webhook_url=chosen.webhook_url,
    )


async def resolve_route(
    session: AsyncSession,
    *,
    trigger: str,
    company_id: str | None,
    group_id: str | None,
) -> EscalationRoute:
    configs = await escalations_repo.list_active_configs(session, company_id=company_id, group_id=group_id)
    return select_route(configs, trigger=trigger, company_id=company_id, group_id=group_id)

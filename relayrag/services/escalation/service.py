from __future__ import annotations

import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from relayrag.persistence.repos import escalations as escalations_repo
from relayrag.persistence.repos import sessions as sessions_repo
from relayrag.services.escalation.detector import Matched
from relayrag.services.escalation.events import EscalationEvent, RecipientContext
from relayrag.services.escalation.notifier import DeliveryOutcome, EscalationNotifier
from relayrag.services.escalation.routing import EscalationRoute, resolve_route


logger = logging.getLogger(__name__)


async def open_escalation(
    session: AsyncSession,
    match: Matched,
    *,
    message: str,
    recipient: RecipientContext,
) -> EscalationEvent:
    """Persist the escalation log and flag the conversation as escalated."""
    log = await escalations_repo.create_log(
        session,
        session_id=recipient.session_id,
        profile_id=recipient.profile_id,
        trigger=match.category,
        matched_keywords=list(match.keywords),
        original_message=message,
    )
    await sessions_repo.mark_escalated(
        session,
        recipient.session_id,
        f"Keywords detected: {', '.join(match.keywords)}",
    )
    await session.commit()
    logger.info(
        "escalation_opened session_id=%s trigger=%s keywords=%s",
        recipient.session_id,
        match.category,
        ",".join(match.keywords),
    )
    return EscalationEvent(
        trigger_category=match.category,
        matched_keywords=match.keywords,
        originating_message=message,
        recipient=recipient,
        log_id=log.id,
    )


def build_db_notifier(session_factory: async_sessionmaker[AsyncSession], **kwargs) -> EscalationNotifier:
    # Background deliveries outlive the request, so they open their own sessions.
    async def resolver(event: EscalationEvent) -> EscalationRoute:
        async with session_factory() as session:
            return await resolve_route(
                session,
                trigger=event.trigger_category,
                company_id=event.recipient.company_id,
                group_id=event.recipient.group_id,
            )

    async def recorder(
        event: EscalationEvent,
        route: EscalationRoute,
        outcomes: dict[str, DeliveryOutcome],
    ) -> None:
        if event.log_id is None:
            return
        try:
            async with session_factory() as session:
                await escalations_repo.record_results(
                    session,
                    event.log_id,
                    config_id=route.config_id,
                    channels=list(route.channels),
                    results={channel: outcome.to_dict() for channel, outcome in outcomes.items()},
                )
        except SQLAlchemyError:
            logger.exception("escalation_results_write_failed log_id=%s", event.log_id)

    return EscalationNotifier(route_resolver=resolver, result_recorder=recorder, **kwargs)

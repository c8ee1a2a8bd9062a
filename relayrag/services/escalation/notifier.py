from __future__ import annotations

import asyncio
from dataclasses import asdict, dataclass
import hashlib
import hmac
import json
import logging
from typing import Any, Awaitable, Callable

import httpx

from relayrag.core.config import get_settings
from relayrag.core.errors import EscalationDeliveryFailure
from relayrag.services.escalation.detector import TRIGGER_LABELS
from relayrag.services.escalation.events import EscalationEvent
from relayrag.services.escalation.routing import EscalationRoute, global_route
from relayrag.services.escalation.teams import build_escalation_card
from relayrag.services.telemetry import increment_counter, record_external_call


logger = logging.getLogger(__name__)

RouteResolver = Callable[[EscalationEvent], Awaitable[EscalationRoute]]
ResultRecorder = Callable[[EscalationEvent, EscalationRoute, dict[str, "DeliveryOutcome"]], Awaitable[None]]
SendCall = Callable[[httpx.AsyncClient], Awaitable[httpx.Response]]


@dataclass(frozen=True)
class DeliveryPolicy:
    max_attempts: int = 3
    backoff_base_s: float = 1.0

    def delay_after(self, attempt: int) -> float:
        # 1s after the first attempt, 2s after the second, doubling from there.
        return self.backoff_base_s * (2 ** (attempt - 1))


@dataclass(frozen=True)
class DeliveryOutcome:
    success: bool
    attempts: int
    status_code: int | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {key: value for key, value in asdict(self).items() if value is not None}


def default_delivery_policy() -> DeliveryPolicy:
    settings = get_settings()
    return DeliveryPolicy(
        max_attempts=max(1, settings.escalation_max_attempts),
        backoff_base_s=settings.escalation_backoff_base_s,
    )


def _signature(secret: str, payload: bytes) -> str:
    # HMAC SHA256 lets receivers verify escalation payloads.
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


async def deliver_with_retry(
    send: SendCall,
    client: httpx.AsyncClient,
    *,
    channel: str,
    policy: DeliveryPolicy,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> DeliveryOutcome:
    """Deliver one channel payload with bounded retries.

    2xx succeeds. 4xx is terminal because retries cannot fix a client or
    config error. 5xx and transport failures are retried after a
    ``2 ** (attempt - 1)`` second pause. Nothing is persisted for replay.
    """
    last_status: int | None = None
    last_error: str | None = None
    for attempt in range(1, policy.max_attempts + 1):
        try:
            response = await send(client)
        except httpx.HTTPError as exc:
            last_status = None
            last_error = type(exc).__name__
            logger.warning("escalation_delivery_transport_error channel=%s attempt=%s error=%s", channel, attempt, exc)
        else:
            last_status = response.status_code
            if 200 <= response.status_code < 300:
                record_external_call(integration=f"escalation.{channel}", success=True)
                return DeliveryOutcome(success=True, attempts=attempt, status_code=response.status_code)
            if 400 <= response.status_code < 500:
                logger.error(
                    "escalation_delivery_rejected channel=%s attempt=%s status=%s",
                    channel,
                    attempt,
                    response.status_code,
                )
                record_external_call(integration=f"escalation.{channel}", success=False)
                return DeliveryOutcome(
                    success=False,
                    attempts=attempt,
                    status_code=response.status_code,
                    error=f"http_{response.status_code}",
                )
            last_error = f"http_{response.status_code}"
            logger.warning(
                "escalation_delivery_server_error channel=%s attempt=%s status=%s",
                channel,
                attempt,
                response.status_code,
            )
        if attempt < policy.max_attempts:
            await sleep(policy.delay_after(attempt))

    failure = EscalationDeliveryFailure(f"{channel} delivery failed after {policy.max_attempts} attempts")
    logger.error("escalation_delivery_exhausted channel=%s error=%s detail=%s", channel, last_error, failure)
    increment_counter("escalation_delivery_failures_total")
    record_external_call(integration=f"escalation.{channel}", success=False)
    return DeliveryOutcome(success=False, attempts=policy.max_attempts, status_code=last_status, error=last_error)


class EscalationNotifier:
    """Fan an escalation out to its configured channels off the request path.

    ``dispatch`` schedules delivery as a detached task with its own error
    boundary; callers never await it and it never blocks a completion stream.
    """

    def __init__(
        self,
        *,
        policy: DeliveryPolicy | None = None,
        route_resolver: RouteResolver | None = None,
        result_recorder: ResultRecorder | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._settings = get_settings()
        self._policy = policy or default_delivery_policy()
        self._route_resolver = route_resolver
        self._result_recorder = result_recorder
        # Injectable transport keeps tests off the network.
        self._transport = transport
        self._sleep = sleep
        self._tasks: set[asyncio.Task] = set()

    def _channel_sends(self, event: EscalationEvent, route: EscalationRoute) -> dict[str, SendCall | None]:
        sends: dict[str, SendCall | None] = {}
        for channel in route.channels:
            if channel == "email":
                sends[channel] = self._email_send(event, route)
            elif channel == "teams":
                sends[channel] = self._teams_send(event, route)
            elif channel == "webhook":
                sends[channel] = self._webhook_send(event, route)
        return sends

    def _email_send(self, event: EscalationEvent, route: EscalationRoute) -> SendCall | None:
        if not self._settings.resend_api_key or not route.email_recipients:
            return None
        label = TRIGGER_LABELS.get(event.trigger_category, event.trigger_category)
        recipient = event.recipient
        user = recipient.user_name or recipient.profile_id
        lines = [
            f"User: {user} ({recipient.user_email or '-'})",
            f"Trigger: {label}",
            f"Matched keywords: {', '.join(event.matched_keywords) or '-'}",
            f"Message: {event.originating_message}",
            f"Session: {recipient.session_id}",
            f"Dashboard: {self._dashboard_url()}",
        ]
        payload = {
            "from": self._settings.escalation_email_sender,
            "to": list(route.email_recipients),
            "cc": list(route.email_cc),
            "subject": f"[Escalation] {label} - {user}",
            "text": "\n".join(lines),
        }
        headers = {"Authorization": f"Bearer {self._settings.resend_api_key}"}
        url = self._settings.resend_api_url

        async def send(client: httpx.AsyncClient) -> httpx.Response:
            return await client.post(url, json=payload, headers=headers)

        return send

    def _teams_send(self, event: EscalationEvent, route: EscalationRoute) -> SendCall | None:
        url = route.teams_webhook_url
        if not url:
            return None
        card = build_escalation_card(event, dashboard_url=self._dashboard_url())

        async def send(client: httpx.AsyncClient) -> httpx.Response:
            return await client.post(url, json=card)

        return send

    def _webhook_send(self, event: EscalationEvent, route: EscalationRoute) -> SendCall | None:
        url = route.webhook_url
        if not url:
            return None
        body = json.dumps(event.to_payload(), separators=(",", ":"), ensure_ascii=False).encode("utf-8")
        headers = {"Content-Type": "application/json", "X-Escalation-Trigger": event.trigger_category}
        if self._settings.escalation_webhook_secret:
            headers["X-Escalation-Signature"] = _signature(self._settings.escalation_webhook_secret, body)
        if self._settings.internal_api_secret:
            headers["X-Internal-Secret"] = self._settings.internal_api_secret

        async def send(client: httpx.AsyncClient) -> httpx.Response:
            return await client.post(url, content=body, headers=headers)

        return send

    def _dashboard_url(self) -> str:
        return f"{self._settings.dashboard_url.rstrip('/')}/admin/escalation"

    async def deliver(self, event: EscalationEvent, route: EscalationRoute) -> dict[str, DeliveryOutcome]:
        outcomes: dict[str, DeliveryOutcome] = {}
        sends = self._channel_sends(event, route)
        async with httpx.AsyncClient(timeout=self._settings.escalation_timeout_s, transport=self._transport) as client:
            for channel, send in sends.items():
                if send is None:
                    logger.warning("escalation_channel_unconfigured channel=%s", channel)
                    outcomes[channel] = DeliveryOutcome(success=False, attempts=0, error="not_configured")
                    continue
                outcomes[channel] = await deliver_with_retry(
                    send,
                    client,
                    channel=channel,
                    policy=self._policy,
                    sleep=self._sleep,
                )
        return outcomes

    async def _run(self, event: EscalationEvent) -> dict[str, DeliveryOutcome]:
        if self._route_resolver is not None:
            route = await self._route_resolver(event)
        else:
            route = global_route()
        outcomes = await self.deliver(event, route)
        logger.info(
            "escalation_delivered trigger=%s session_id=%s results=%s",
            event.trigger_category,
            event.recipient.session_id,
            {channel: outcome.success for channel, outcome in outcomes.items()},
        )
        if self._result_recorder is not None:
            await self._result_recorder(event, route, outcomes)
        return outcomes

    async def _guarded_run(self, event: EscalationEvent) -> dict[str, DeliveryOutcome]:
        try:
            return await self._run(event)
        except asyncio.CancelledError:
            raise
        except Exception:  # noqa: BLE001 - escalation is best-effort and never surfaces to users
            logger.exception("escalation_dispatch_failed session_id=%s", event.recipient.session_id)
            increment_counter("escalation_dispatch_failures_total")
            return {}

    def dispatch(self, event: EscalationEvent) -> asyncio.Task:
        task = asyncio.create_task(self._guarded_run(event))
        # Hold a strong reference until completion so the task is not collected mid-flight.
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def drain(self) -> None:
        # Used on shutdown and in tests to wait for in-flight deliveries.
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

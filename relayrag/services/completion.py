from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
from typing import AsyncIterator, Union

from relayrag.agent.graph import run_graph
from relayrag.agent.prompts import build_turns
from relayrag.core.config import get_settings
from relayrag.core.errors import DatabaseError, QuotaExceededError
from relayrag.domain.events import (
    CompletionRequest,
    DoneEvent,
    ErrorEvent,
    StreamEvent,
    TokenEvent,
)
from relayrag.domain.state import ConversationState
from relayrag.providers.llm.base import LLMProvider, error_event, estimate_usage
from relayrag.providers.llm.catalog import Vendor, get_model_max_tokens
from relayrag.providers.llm.factory import ProviderRegistry
from relayrag.services.conversations import ConversationStore
from relayrag.services.escalation.detector import EscalationDetector, Matched
from relayrag.services.escalation.events import EscalationEvent, RecipientContext
from relayrag.services.escalation.notifier import EscalationNotifier
from relayrag.services.quota import Admitted, Denied, QuotaIdentity, QuotaService
from relayrag.services.retrieval import RetrievalEngine
from relayrag.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

ESCALATION_NOTICE = "This question has been forwarded to an administrator. We will follow up shortly."

_END = object()


@dataclass(frozen=True)
class ConversationInput:
    identity: QuotaIdentity
    recipient: RecipientContext
    session_id: str
    session_type: str
    message: str
    vendor: Vendor
    model: str
    max_tokens: int
    temperature: float
    history_limit: int
    session_context: str | None = None


@dataclass(frozen=True)
class PreparedCompletion:
    conversation: ConversationInput
    request: CompletionRequest
    decision: Admitted


@dataclass(frozen=True)
class EscalationNotice:
    trigger: str
    message: str = ESCALATION_NOTICE


OrchestratorEvent = Union[TokenEvent, DoneEvent, ErrorEvent, EscalationNotice]


class CompletionOrchestrator:
    """Run one conversation turn from context building to recorded usage.

    ``prepare`` builds context and admits the turn against quota before any
    vendor call. ``stream`` then relays vendor events through a bounded
    queue, runs escalation off the request path, and records usage only on
    a ``Done`` event.
    """

    def __init__(
        self,
        *,
        registry: ProviderRegistry,
        quota: QuotaService,
        store: ConversationStore,
        retrieval: RetrievalEngine | None = None,
        notifier: EscalationNotifier | None = None,
        detector: EscalationDetector | None = None,
        queue_size: int | None = None,
        record_partial_usage: bool | None = None,
    ) -> None:
        settings = get_settings()
        self._registry = registry
        self._quota = quota
        self._store = store
        self._retrieval = retrieval
        self._notifier = notifier
        self._detector = detector or EscalationDetector()
        self._queue_size = queue_size or settings.stream_queue_size
        self._record_partial_usage = (
            settings.record_partial_usage_on_disconnect if record_partial_usage is None else record_partial_usage
        )

    async def prepare(self, conversation: ConversationInput) -> PreparedCompletion:
        # Resolve the vendor first so configuration errors surface before any write.
        self._registry.get(conversation.vendor)
        state: ConversationState = {
            "session_id": conversation.session_id,
            "session_type": conversation.session_type,
            "session_context": conversation.session_context,
            "company_id": conversation.identity.company_id,
            "user_message": conversation.message,
            "history": [],
            "retrieved": [],
            "system_prompt": None,
            "estimated_cost": 0,
            "quota_decision": None,
            "timings_ms": {},
        }
        final_state = await run_graph(
            store=self._store,
            quota=self._quota,
            identity=conversation.identity,
            state=state,
            history_limit=conversation.history_limit,
            retrieval=self._retrieval,
        )
        decision = final_state["quota_decision"]
        if isinstance(decision, Denied):
            increment_counter("quota_denied_total")
            raise QuotaExceededError(decision.scope.value, decision.limit, decision.used)

        await self._store.add_user_message(conversation.session_id, conversation.message)
        request = CompletionRequest(
            vendor=conversation.vendor.value,
            model=conversation.model,
            messages=build_turns(final_state["history"], conversation.message),
            system_prompt=final_state["system_prompt"],
            # Clamp to the model's output ceiling so vendors do not reject the request.
            max_tokens=min(conversation.max_tokens, get_model_max_tokens(conversation.model)),
            temperature=conversation.temperature,
        )
        logger.info(
            "turn_admitted session_id=%s vendor=%s model=%s estimated=%s retrieved=%s timings=%s",
            conversation.session_id,
            request.vendor,
            request.model,
            final_state["estimated_cost"],
            len(final_state["retrieved"]),
            final_state["timings_ms"],
        )
        return PreparedCompletion(conversation=conversation, request=request, decision=decision)

    async def _escalate(self, conversation: ConversationInput) -> EscalationNotice | None:
        match = self._detector.detect(conversation.message)
        if not isinstance(match, Matched):
            return None
        try:
            event = await self._store.open_escalation(
                match,
                message=conversation.message,
                recipient=conversation.recipient,
            )
        except DatabaseError:
            # Delivery still proceeds; only the audit row is missing.
            logger.exception("escalation_persist_failed session_id=%s", conversation.session_id)
            event = EscalationEvent(
                trigger_category=match.category,
                matched_keywords=match.keywords,
                originating_message=conversation.message,
                recipient=conversation.recipient,
            )
        increment_counter(f"escalations_total.{match.category}")
        if self._notifier is not None:
            self._notifier.dispatch(event)
        return EscalationNotice(trigger=match.category)

    async def _produce(
        self,
        provider: LLMProvider,
        request: CompletionRequest,
        queue: asyncio.Queue,
    ) -> None:
        try:
            async for event in provider.stream_completion(request):
                await queue.put(event)
                if isinstance(event, (DoneEvent, ErrorEvent)):
                    return
        except Exception as exc:  # noqa: BLE001 - adapters should not raise, but keep one terminal event
            logger.exception("vendor_stream_unexpected vendor=%s", request.vendor)
            await queue.put(error_event(exc))
            return
        await queue.put(_END)

    async def stream(self, prepared: PreparedCompletion) -> AsyncIterator[OrchestratorEvent]:
        conversation = prepared.conversation
        request = prepared.request
        notice = await self._escalate(conversation)
        if notice is not None:
            yield notice

        provider = self._registry.get(request.vendor)
        # Bounded buffer applies backpressure to the vendor when the client reads slowly.
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._queue_size)
        producer = asyncio.create_task(self._produce(provider, request, queue))
        parts: list[str] = []
        terminal: StreamEvent | None = None
        try:
            while True:
                event = await queue.get()
                if event is _END:
                    terminal = error_event(RuntimeError("vendor stream ended without completion"))
                    if self._record_partial_usage and parts:
                        await self._record_partial(conversation, request, parts)
                    yield terminal
                    return
                if isinstance(event, TokenEvent):
                    parts.append(event.text)
                    yield event
                    continue
                terminal = event
                if isinstance(event, DoneEvent):
                    await self._complete(conversation, request, "".join(parts), event)
                else:
                    increment_counter("completion_failures_total")
                    logger.warning(
                        "turn_failed session_id=%s vendor=%s code=%s emitted_tokens=%s",
                        conversation.session_id,
                        request.vendor,
                        event.code,
                        len(parts),
                    )
                    if self._record_partial_usage and parts:
                        await self._record_partial(conversation, request, parts)
                yield event
                return
        finally:
            if not producer.done():
                # Consumer stopped early: stop reading from the vendor and release the connection.
                producer.cancel()
                try:
                    await producer
                except asyncio.CancelledError:
                    pass
            if terminal is None:
                await self._abandoned(conversation, request, parts)

    async def _complete(
        self,
        conversation: ConversationInput,
        request: CompletionRequest,
        content: str,
        done: DoneEvent,
    ) -> None:
        # Usage and the assistant turn are written before Done reaches the client.
        try:
            await self._store.add_assistant_message(
                conversation.session_id,
                content,
                model=request.model,
                usage=done.usage,
            )
        except DatabaseError:
            logger.exception("assistant_persist_failed session_id=%s", conversation.session_id)
        try:
            await self._quota.record(
                conversation.identity,
                done.usage,
                vendor=request.vendor,
                model=request.model,
                session_id=conversation.session_id,
            )
        except DatabaseError:
            logger.exception("usage_record_failed session_id=%s", conversation.session_id)

    async def _abandoned(
        self,
        conversation: ConversationInput,
        request: CompletionRequest,
        parts: list[str],
    ) -> None:
        # Client went away before a terminal event; nothing is billed.
        logger.info(
            "turn_abandoned session_id=%s vendor=%s emitted_tokens=%s",
            conversation.session_id,
            request.vendor,
            len(parts),
        )
        increment_counter("completion_abandoned_total")

    async def _record_partial(
        self,
        conversation: ConversationInput,
        request: CompletionRequest,
        parts: list[str],
    ) -> None:
        # Vendor dropped mid-stream after producing output: bill an estimate of what was sent.
        usage = estimate_usage(request, "".join(parts))
        try:
            await self._quota.record(
                conversation.identity,
                usage,
                vendor=request.vendor,
                model=request.model,
                session_id=conversation.session_id,
            )
        except DatabaseError:
            logger.exception("partial_usage_record_failed session_id=%s", conversation.session_id)

from __future__ import annotations

import asyncio
import logging
import time
from typing import AsyncIterator, Protocol

from relayrag.core.errors import (
    MalformedVendorOutputError,
    ProviderConfigError,
    RelayError,
    VendorAuthError,
    VendorError,
    VendorTimeoutError,
)
from relayrag.domain.events import (
    ChatTurn,
    CompletionRequest,
    CompletionResult,
    DoneEvent,
    ErrorEvent,
    StreamEvent,
    TokenEvent,
    TokenUsage,
)
from relayrag.providers.llm.catalog import Vendor
from relayrag.services.costs.metering import estimate_tokens
from relayrag.services.resilience import retry_async
from relayrag.services.telemetry import increment_counter, record_external_call


logger = logging.getLogger(__name__)

# Client-facing messages never carry vendor-internal error text.
_SAFE_MESSAGES: dict[type[RelayError], tuple[str, str]] = {
    ProviderConfigError: ("PROVIDER_CONFIG_ERROR", "The AI service is not configured."),
    MalformedVendorOutputError: ("GENERATION_FAILED", "The AI response could not be processed."),
    VendorAuthError: ("VENDOR_AUTH_ERROR", "The AI service rejected our credentials."),
    VendorTimeoutError: ("VENDOR_TIMEOUT", "The AI service timed out. Please try again."),
    VendorError: ("VENDOR_ERROR", "The AI service failed to respond. Please try again."),
}


class LLMProvider(Protocol):
    vendor: Vendor

    def stream_completion(self, request: CompletionRequest) -> AsyncIterator[StreamEvent]:
        ...

    async def create_completion(self, request: CompletionRequest) -> CompletionResult:
        ...


def merge_system_prompt(request: CompletionRequest) -> str | None:
    # Vendors expose a single system slot; fold the explicit prompt and system turns into it.
    parts: list[str] = []
    if request.system_prompt:
        parts.append(request.system_prompt)
    parts.extend(turn.content for turn in request.messages if turn.role == "system" and turn.content)
    return "\n\n".join(parts) if parts else None


def conversation_turns(request: CompletionRequest) -> list[ChatTurn]:
    return [turn for turn in request.messages if turn.role != "system"]


def estimate_usage(request: CompletionRequest, output_text: str) -> TokenUsage:
    input_parts = [request.system_prompt or ""] + [turn.content for turn in request.messages]
    return TokenUsage(
        input_tokens=estimate_tokens("\n".join(part for part in input_parts if part)),
        output_tokens=estimate_tokens(output_text),
        estimated=True,
    )


def error_event(exc: Exception) -> ErrorEvent:
    for error_type, (code, message) in _SAFE_MESSAGES.items():
        if isinstance(exc, error_type):
            return ErrorEvent(message=message, code=code, error=exc)
    return ErrorEvent(message=_SAFE_MESSAGES[VendorError][1], code="VENDOR_ERROR", error=exc)


class VendorAdapter:
    """Shared stream boundary for vendor adapters.

    Subclasses implement ``_stream`` as an async generator and may raise
    freely; ``stream_completion`` converts any failure into a single terminal
    ``ErrorEvent`` and guarantees exactly one terminal event per request.
    """

    vendor: Vendor

    def __init__(self, *, stream_timeout_s: float = 120.0) -> None:
        self._stream_timeout_s = max(0.01, float(stream_timeout_s))

    def _stream(self, request: CompletionRequest) -> AsyncIterator[StreamEvent]:
        raise NotImplementedError

    def _map_exception(self, exc: Exception) -> RelayError:
        # Vendor SDKs override this to classify their own exception types.
        if isinstance(exc, RelayError):
            return exc
        return VendorError(f"{self.vendor.value} request failed", vendor=self.vendor.value)

    async def stream_completion(self, request: CompletionRequest) -> AsyncIterator[StreamEvent]:
        started = time.monotonic()
        deadline = started + self._stream_timeout_s
        logger.info("vendor_stream_start vendor=%s model=%s", self.vendor.value, request.model)
        stream = self._stream(request)
        try:
            while True:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise VendorTimeoutError("vendor stream timed out", vendor=self.vendor.value)
                # Bound each wait so a stalled vendor cannot hold the stream open past the deadline.
                try:
                    async with asyncio.timeout(remaining):
                        event = await anext(stream)
                except StopAsyncIteration:
                    break
                except TimeoutError as exc:
                    raise VendorTimeoutError("vendor stream timed out", vendor=self.vendor.value) from exc
                yield event
                if isinstance(event, (DoneEvent, ErrorEvent)):
                    record_external_call(
                        integration=f"llm.{self.vendor.value}",
                        success=isinstance(event, DoneEvent),
                        latency_ms=(time.monotonic() - started) * 1000.0,
                    )
                    return
            # A vendor stream that ends without usage is a protocol failure.
            raise VendorError("vendor stream ended without completion", vendor=self.vendor.value)
        except Exception as exc:  # noqa: BLE001 - boundary converts every failure into one event
            mapped = self._map_exception(exc)
            logger.warning(
                "vendor_stream_error vendor=%s model=%s error=%s detail=%s",
                self.vendor.value,
                request.model,
                type(mapped).__name__,
                exc,
            )
            increment_counter(f"vendor_errors_total.{self.vendor.value}")
            record_external_call(
                integration=f"llm.{self.vendor.value}",
                success=False,
                latency_ms=(time.monotonic() - started) * 1000.0,
            )
            yield error_event(mapped)
        finally:
            # Release the vendor connection when the consumer stops early.
            await stream.aclose()

    async def _complete_once(self, request: CompletionRequest) -> CompletionResult:
        parts: list[str] = []
        terminal: DoneEvent | ErrorEvent | None = None
        # Drain fully; the boundary guarantees the terminal event is last.
        async for event in self.stream_completion(request):
            if isinstance(event, TokenEvent):
                parts.append(event.text)
            else:
                terminal = event
        if isinstance(terminal, DoneEvent):
            return CompletionResult(content="".join(parts), usage=terminal.usage, model=request.model)
        if isinstance(terminal, ErrorEvent) and terminal.error is not None:
            raise terminal.error
        raise VendorError("vendor stream ended without completion", vendor=self.vendor.value)

    async def _create(self, request: CompletionRequest) -> CompletionResult:
        # Adapters with a native non-streaming endpoint override this.
        return await self._complete_once(request)

    async def create_completion(self, request: CompletionRequest) -> CompletionResult:
        async def attempt() -> CompletionResult:
            try:
                return await self._create(request)
            except Exception as exc:
                mapped = self._map_exception(exc)
                if mapped is exc:
                    raise
                raise mapped from exc

        # Non-streaming calls may be retried on transport failures; streams never are.
        return await retry_async(attempt)

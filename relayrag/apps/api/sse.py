from __future__ import annotations

import json

from relayrag.domain.events import DoneEvent, ErrorEvent, TokenEvent
from relayrag.services.completion import EscalationNotice, OrchestratorEvent


SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Content-Type": "text/event-stream",
    "Connection": "keep-alive",
}


def format_sse(event: str, payload: dict) -> str:
    # One compact JSON line per event keeps the framing parseable by line.
    data = json.dumps(payload, ensure_ascii=False, separators=(",", ":"))
    return f"event: {event}\ndata: {data}\n\n"


def encode_event(event: OrchestratorEvent) -> str:
    if isinstance(event, TokenEvent):
        return format_sse("token", {"token": event.text})
    if isinstance(event, DoneEvent):
        return format_sse("done", {"usage": event.usage.to_payload()})
    if isinstance(event, ErrorEvent):
        return format_sse("error", {"message": event.message})
    if isinstance(event, EscalationNotice):
        return format_sse("escalation", {"trigger": event.trigger, "message": event.message})
    raise TypeError(f"unsupported stream event: {type(event).__name__}")

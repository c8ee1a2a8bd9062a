from __future__ import annotations

# Re-export escalation helpers for centralized imports.

from relayrag.services.escalation.detector import (
    DEFAULT_TRIGGERS,
    DetectionResult,
    EscalationDetector,
    EscalationTrigger,
    Matched,
    NoMatch,
    detect_escalation,
)
from relayrag.services.escalation.events import EscalationEvent, RecipientContext
from relayrag.services.escalation.notifier import (
    DeliveryOutcome,
    DeliveryPolicy,
    EscalationNotifier,
    deliver_with_retry,
)
from relayrag.services.escalation.routing import EscalationRoute, resolve_route, select_route

__all__ = [
    "DEFAULT_TRIGGERS",
    "DeliveryOutcome",
    "DeliveryPolicy",
    "DetectionResult",
    "EscalationDetector",
    "EscalationEvent",
    "EscalationNotifier",
    "EscalationRoute",
    "EscalationTrigger",
    "Matched",
    "NoMatch",
    "RecipientContext",
    "deliver_with_retry",
    "detect_escalation",
    "resolve_route",
    "select_route",
]

from __future__ import annotations

from typing import Any

from relayrag.services.escalation.detector import TRIGGER_LABELS
from relayrag.services.escalation.events import EscalationEvent


TEAMS_COLORS = {
    "error": "FF0000",
    "warning": "FFA500",
    "success": "00FF00",
    "info": "0078D4",
    "urgent": "FF00FF",
}


def build_escalation_card(event: EscalationEvent, *, dashboard_url: str | None = None) -> dict[str, Any]:
    """Render an escalation as a Teams connector MessageCard."""
    recipient = event.recipient
    label = TRIGGER_LABELS.get(event.trigger_category, event.trigger_category)
    user = recipient.user_name or recipient.profile_id
    if recipient.user_email:
        user = f"{user} ({recipient.user_email})"
    facts = [
        {"name": "User", "value": user},
        {"name": "Trigger", "value": label},
        {"name": "Session type", "value": recipient.session_type},
    ]
    if event.matched_keywords:
        facts.append({"name": "Matched keywords", "value": ", ".join(event.matched_keywords)})

    card: dict[str, Any] = {
        "@type": "MessageCard",
        "@context": "https://schema.org/extensions",
        "summary": f"Escalation: {label}",
        "themeColor": TEAMS_COLORS["urgent"],
        "title": "Escalation notice",
        "text": event.originating_message,
        "sections": [
            {"activitySubtitle": f"Trigger: {label}", "facts": facts, "markdown": True},
        ],
    }
    if dashboard_url:
        card["potentialAction"] = [
            {
                "@type": "OpenUri",
                "name": "Open admin dashboard",
                "targets": [{"os": "default", "uri": dashboard_url}],
            }
        ]
    return card

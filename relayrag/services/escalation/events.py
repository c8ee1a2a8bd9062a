from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class RecipientContext:
    profile_id: str
    session_id: str
    session_type: str = "qa"
    user_name: str | None = None
    user_email: str | None = None
    company_id: str | None = None
    group_id: str | None = None


@dataclass(frozen=True)
class EscalationEvent:
    # Created once per detection; retries reuse this instance.
    trigger_category: str
    matched_keywords: tuple[str, ...]
    originating_message: str
    recipient: RecipientContext
    log_id: str | None = None

    def to_payload(self) -> dict[str, Any]:
        return {
            "trigger": self.trigger_category,
            "keywords": list(self.matched_keywords),
            "message": self.originating_message,
            "sessionId": self.recipient.session_id,
            "sessionType": self.recipient.session_type,
            "profileId": self.recipient.profile_id,
            "userName": self.recipient.user_name,
            "userEmail": self.recipient.user_email,
            "companyId": self.recipient.company_id,
            "groupId": self.recipient.group_id,
            "logId": self.log_id,
        }

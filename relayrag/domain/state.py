from __future__ import annotations

from typing import Any, Optional, TypedDict

from relayrag.domain.events import ChatTurn
from relayrag.providers.retrieval.base import RetrievedSnippet


class ConversationState(TypedDict):
    session_id: str
    session_type: str
    session_context: Optional[str]
    company_id: Optional[str]
    user_message: str
    history: list[ChatTurn]
    retrieved: list[RetrievedSnippet]
    system_prompt: Optional[str]
    estimated_cost: int
    # Admitted or Denied once the quota node has run.
    quota_decision: Optional[Any]
    timings_ms: dict[str, float]

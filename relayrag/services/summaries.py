from __future__ import annotations

import logging

from pydantic import BaseModel, Field

from relayrag.core.config import get_settings
from relayrag.domain.events import ChatTurn, CompletionRequest, CompletionResult
from relayrag.providers.llm.base import LLMProvider
from relayrag.providers.llm.structured import parse_vendor_model


logger = logging.getLogger(__name__)

SUMMARY_SYSTEM_PROMPT = (
    "You summarize support and training conversations for administrators. "
    "Respond with a single JSON object and nothing else, using the keys "
    '"summary" (string, at most three sentences), "topics" (array of short strings), '
    'and "needs_follow_up" (boolean).'
)


class SessionSummary(BaseModel):
    summary: str
    topics: list[str] = Field(default_factory=list)
    needs_follow_up: bool = False


def _transcript(turns: list[ChatTurn]) -> str:
    return "\n".join(f"{turn.role}: {turn.content}" for turn in turns if turn.role != "system")


async def summarize_session(
    provider: LLMProvider,
    turns: list[ChatTurn],
    *,
    model: str,
) -> tuple[SessionSummary, CompletionResult]:
    """Summarize a conversation with one non-streaming completion.

    Malformed vendor JSON raises ``MalformedVendorOutputError``; it is never retried.
    """
    settings = get_settings()
    request = CompletionRequest(
        vendor=provider.vendor.value,
        model=model,
        messages=(ChatTurn(role="user", content=_transcript(turns)),),
        system_prompt=SUMMARY_SYSTEM_PROMPT,
        max_tokens=min(1024, settings.default_max_tokens),
        temperature=0.2,
    )
    result = await provider.create_completion(request)
    summary = parse_vendor_model(result.content, SessionSummary)
    logger.info("session_summarized model=%s topics=%s", model, len(summary.topics))
    return summary, result

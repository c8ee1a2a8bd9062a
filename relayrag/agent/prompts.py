from __future__ import annotations

from relayrag.domain.events import ChatTurn
from relayrag.providers.retrieval.base import RetrievedSnippet
from relayrag.services.retrieval import format_context


LEARNING_SYSTEM_PROMPT = (
    "You are the learning assistant of an AI training platform. "
    "Support trainees in their studies and answer their questions carefully.\n\n"
    "Guidelines:\n"
    "- Explain training topics clearly and with concrete examples.\n"
    "- Include practical advice when answering technical questions.\n"
    "- If you do not know something, say so instead of guessing.\n"
    "- Adjust the level of detail to the trainee's understanding."
)

QA_SYSTEM_PROMPT = (
    "You are the QA assistant of an AI training platform. "
    "Answer user questions politely.\n\n"
    "In scope:\n"
    "- How to use the platform.\n"
    "- General questions about curricula and training content.\n"
    "- Basic usage of AI assistants such as ChatGPT, Claude and Gemini.\n\n"
    "Out of scope:\n"
    "- Bug or malfunction reports: these are escalated to an administrator.\n"
    "- Account or billing problems: direct the user to support.\n"
    "- Security concerns: these are escalated to an administrator.\n\n"
    "If you do not know the answer, say so honestly and point technical problems to an administrator."
)

_CONTEXT_LABEL = "Current learning context:"
_RETRIEVED_LABEL = "Reference material (cite by number when you use it):"


def base_prompt(session_type: str) -> str:
    if session_type == "qa":
        return QA_SYSTEM_PROMPT
    return LEARNING_SYSTEM_PROMPT


def build_system_prompt(
    session_type: str,
    session_context: str | None,
    retrieved: list[RetrievedSnippet],
) -> str:
    prompt = base_prompt(session_type)
    if session_context:
        prompt += f"\n\n{_CONTEXT_LABEL}\n{session_context.strip()}"
    if retrieved:
        prompt += f"\n\n{_RETRIEVED_LABEL}\n{format_context(retrieved)}"
    return prompt


def build_turns(history: list[ChatTurn], user_message: str) -> tuple[ChatTurn, ...]:
    turns = [turn for turn in history if turn.content]
    turns.append(ChatTurn(role="user", content=user_message))
    return tuple(turns)

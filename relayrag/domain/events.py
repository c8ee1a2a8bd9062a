from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal, Union


Role = Literal["user", "assistant", "system"]


@dataclass(frozen=True)
class ChatTurn:
    role: Role
    content: str


@dataclass(frozen=True)
class TokenUsage:
    input_tokens: int
    output_tokens: int
    # True when any part came from the heuristic estimator instead of the vendor.
    estimated: bool = False

    def __post_init__(self) -> None:
        if self.input_tokens < 0 or self.output_tokens < 0:
            raise ValueError("token counts must be non-negative")

    @property
    def total(self) -> int:
        return self.input_tokens + self.output_tokens

    def to_payload(self) -> dict[str, int]:
        return {"inputTokens": self.input_tokens, "outputTokens": self.output_tokens}


@dataclass(frozen=True)
class CompletionRequest:
    vendor: str
    model: str
    messages: tuple[ChatTurn, ...]
    system_prompt: str | None = None
    max_tokens: int = 4096
    temperature: float = 0.7


@dataclass(frozen=True)
class CompletionResult:
    content: str
    usage: TokenUsage
    model: str


@dataclass(frozen=True)
class TokenEvent:
    text: str


@dataclass(frozen=True)
class DoneEvent:
    usage: TokenUsage


@dataclass(frozen=True)
class ErrorEvent:
    # Safe, user-facing message; vendor detail stays in logs.
    message: str
    code: str = "VENDOR_ERROR"
    error: Exception | None = field(default=None, compare=False, repr=False)


StreamEvent = Union[TokenEvent, DoneEvent, ErrorEvent]

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal


@dataclass(frozen=True)
class ModelRate:
    # USD per one million tokens, split by direction.
    input_per_million: Decimal
    output_per_million: Decimal


# Published list prices; keep in sync with vendor pricing pages.
MODEL_RATES: dict[str, ModelRate] = {
    "claude-opus-4-20250514": ModelRate(Decimal("15"), Decimal("75")),
    "claude-sonnet-4-20250514": ModelRate(Decimal("3"), Decimal("15")),
    "claude-3-5-haiku-20241022": ModelRate(Decimal("1"), Decimal("5")),
    "gpt-4o": ModelRate(Decimal("2.5"), Decimal("10")),
    "gpt-4o-mini": ModelRate(Decimal("0.15"), Decimal("0.6")),
    "gpt-4-turbo": ModelRate(Decimal("10"), Decimal("30")),
    "gemini-2.0-flash": ModelRate(Decimal("0.1"), Decimal("0.4")),
    "gemini-1.5-pro": ModelRate(Decimal("1.25"), Decimal("5")),
    "gemini-1.5-flash": ModelRate(Decimal("0.075"), Decimal("0.3")),
}

# Conservative fallback so unknown models are never billed at zero.
DEFAULT_RATE = ModelRate(Decimal("5"), Decimal("15"))


def rate_for_model(model: str) -> ModelRate:
    return MODEL_RATES.get(model, DEFAULT_RATE)

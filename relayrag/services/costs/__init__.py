from __future__ import annotations

# Re-export cost helpers for centralized imports.

from relayrag.services.costs.metering import calculate_cost, estimate_tokens
from relayrag.services.costs.pricing import DEFAULT_RATE, MODEL_RATES, ModelRate, rate_for_model

__all__ = [
    "DEFAULT_RATE",
    "MODEL_RATES",
    "ModelRate",
    "calculate_cost",
    "estimate_tokens",
    "rate_for_model",
]

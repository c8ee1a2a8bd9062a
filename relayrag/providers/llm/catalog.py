from __future__ import annotations

from enum import Enum

from relayrag.core.errors import ProviderConfigError


class Vendor(str, Enum):
    ANTHROPIC = "anthropic"
    OPENAI = "openai"
    GOOGLE = "google"
    # Deterministic offline vendor for local development and tests.
    FAKE = "fake"


DEFAULT_MODELS: dict[Vendor, str] = {
    Vendor.ANTHROPIC: "claude-sonnet-4-20250514",
    Vendor.OPENAI: "gpt-4o",
    Vendor.GOOGLE: "gemini-2.0-flash",
    Vendor.FAKE: "fake-echo",
}

# Output-token ceilings per model; requests are clamped to these.
MODEL_MAX_TOKENS: dict[str, int] = {
    "claude-opus-4-20250514": 32768,
    "claude-sonnet-4-20250514": 64000,
    "claude-3-5-haiku-20241022": 8192,
    "gpt-4o": 16384,
    "gpt-4o-mini": 16384,
    "gpt-4-turbo": 4096,
    "gemini-2.0-flash": 8192,
    "gemini-1.5-pro": 8192,
    "gemini-1.5-flash": 8192,
}

FALLBACK_MAX_TOKENS = 4096


def parse_vendor(name: str | Vendor) -> Vendor:
    if isinstance(name, Vendor):
        return name
    try:
        return Vendor(name.strip().lower())
    except ValueError as exc:
        raise ProviderConfigError(f"Unsupported AI vendor: {name}") from exc


def get_model_max_tokens(model: str) -> int:
    return MODEL_MAX_TOKENS.get(model, FALLBACK_MAX_TOKENS)

from __future__ import annotations

import pytest

from relayrag.core.config import get_settings
from relayrag.services.telemetry import reset_telemetry


_ISOLATED_ENV = (
    "ANTHROPIC_API_KEY",
    "OPENAI_API_KEY",
    "RESEND_API_KEY",
    "ESCALATION_NOTIFY_URL",
    "ESCALATION_WEBHOOK_SECRET",
    "ESCALATION_ADMIN_EMAIL",
    "INTERNAL_API_SECRET",
    "TEAMS_DEFAULT_WEBHOOK_URL",
    "RECORD_PARTIAL_USAGE_ON_DISCONNECT",
    "ENABLE_FAKE_VENDOR",
)


@pytest.fixture(autouse=True)
def isolated_settings(monkeypatch) -> None:
    # Unit tests never reach vendors; offline embeddings and a clean settings cache per test.
    for key in _ISOLATED_ENV:
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("EMBEDDING_PROVIDER", "hash")
    monkeypatch.setenv("EMBEDDING_DELAY_MS", "0")
    get_settings.cache_clear()
    reset_telemetry()
    yield
    get_settings.cache_clear()

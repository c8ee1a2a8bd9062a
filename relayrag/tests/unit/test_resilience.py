from __future__ import annotations

import pytest

from relayrag.core.errors import VendorAuthError, VendorError
from relayrag.services.resilience import RetryPolicy, retry_async
from relayrag.services.telemetry import counters_snapshot


FAST_POLICY = RetryPolicy(timeout_ms=100, max_attempts=3, backoff_ms=1)


@pytest.mark.asyncio
async def test_retry_async_retries_transient() -> None:
    calls = {"count": 0}

    async def flaky() -> str:
        calls["count"] += 1
        if calls["count"] < 2:
            raise TimeoutError("timeout")
        return "ok"

    result = await retry_async(flaky, policy=FAST_POLICY)

    assert result == "ok"
    assert calls["count"] == 2
    assert counters_snapshot()["vendor_retries_total"] == 1


@pytest.mark.asyncio
async def test_retry_async_retries_vendor_server_errors() -> None:
    calls = {"count": 0}

    async def failing() -> str:
        calls["count"] += 1
        raise VendorError("upstream 503", vendor="openai", status_code=503)

    with pytest.raises(VendorError):
        await retry_async(failing, policy=FAST_POLICY)
    assert calls["count"] == 3


@pytest.mark.asyncio
async def test_retry_async_does_not_retry_auth_or_client_errors() -> None:
    calls = {"count": 0}

    async def rejected() -> str:
        calls["count"] += 1
        raise VendorAuthError("bad key", vendor="anthropic", status_code=401)

    with pytest.raises(VendorAuthError):
        await retry_async(rejected, policy=FAST_POLICY)
    assert calls["count"] == 1

    async def bad_request() -> str:
        calls["count"] += 1
        raise VendorError("bad request", vendor="anthropic", status_code=400)

    with pytest.raises(VendorError):
        await retry_async(bad_request, policy=FAST_POLICY)
    assert calls["count"] == 2


@pytest.mark.asyncio
async def test_retry_async_custom_predicate() -> None:
    calls = {"count": 0}

    async def flaky() -> str:
        calls["count"] += 1
        raise ValueError("not transient by default")

    with pytest.raises(ValueError):
        await retry_async(flaky, policy=FAST_POLICY, retryable=lambda exc: isinstance(exc, ValueError))
    assert calls["count"] == 3

from __future__ import annotations

import time
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Deque


@dataclass(frozen=True)
class RequestSample:
    ts: float
    path: str
    status_code: int
    latency_ms: float


@dataclass(frozen=True)
class ExternalCallSample:
    ts: float
    integration: str
    latency_ms: float
    success: bool


_request_samples: Deque[RequestSample] = deque(maxlen=20000)
_external_samples: Deque[ExternalCallSample] = deque(maxlen=10000)
_counters: dict[str, int] = defaultdict(int)


def record_request(*, path: str, status_code: int, latency_ms: float) -> None:
    # Track request latency and status for the health endpoint.
    _request_samples.append(
        RequestSample(ts=time.time(), path=path, status_code=status_code, latency_ms=latency_ms)
    )


def record_external_call(*, integration: str, success: bool, latency_ms: float = 0.0) -> None:
    # Capture vendor, embedding and webhook call outcomes.
    _external_samples.append(
        ExternalCallSample(
            ts=time.time(),
            integration=integration,
            latency_ms=latency_ms,
            success=success,
        )
    )


def increment_counter(name: str, value: int = 1) -> None:
    _counters[name] += value


def counters_snapshot() -> dict[str, int]:
    return dict(_counters)


def external_call_summary(window_s: int = 300) -> dict[str, dict[str, int]]:
    # Success/failure counts per integration over the recent window.
    cutoff = time.time() - window_s
    summary: dict[str, dict[str, int]] = {}
    for sample in _external_samples:
        if sample.ts < cutoff:
            continue
        bucket = summary.setdefault(sample.integration, {"success": 0, "failure": 0})
        bucket["success" if sample.success else "failure"] += 1
    return summary


def error_rate(window_s: int = 300) -> float | None:
    cutoff = time.time() - window_s
    samples = [sample for sample in _request_samples if sample.ts >= cutoff]
    if not samples:
        return None
    failures = sum(1 for sample in samples if sample.status_code >= 500)
    return failures / len(samples)


def reset_telemetry() -> None:
    # Clear in-memory state for isolated tests.
    _request_samples.clear()
    _external_samples.clear()
    _counters.clear()

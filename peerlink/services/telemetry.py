from __future__ import annotations

import math
import time
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Any, Deque


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
    _request_samples.append(
        RequestSample(ts=time.time(), path=path, status_code=status_code, latency_ms=latency_ms)
    )


def record_external_call(*, integration: str, latency_ms: float, success: bool) -> None:
    # Capture verification endpoint latency and outcomes.
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


def external_call_stats(integration: str, window_s: int = 300) -> dict[str, float | int | None]:
    cutoff = time.time() - window_s
    samples = [s for s in _external_samples if s.ts >= cutoff and s.integration == integration]
    if not samples:
        return {"count": 0, "failures": 0, "avg_latency_ms": None}
    failures = sum(1 for s in samples if not s.success)
    avg = sum(s.latency_ms for s in samples) / len(samples)
    return {"count": len(samples), "failures": failures, "avg_latency_ms": round(avg, 2)}


def request_stats(window_s: int = 300) -> dict[str, Any]:
    # Volume, 5xx rate and p95 latency over the window, plus counts per status family.
    cutoff = time.time() - window_s
    samples = [s for s in _request_samples if s.ts >= cutoff]
    if not samples:
        return {
            "count": 0,
            "errors": 0,
            "availability": None,
            "p95_latency_ms": None,
            "by_status": {},
        }
    by_status: dict[str, int] = defaultdict(int)
    for sample in samples:
        by_status[f"{sample.status_code // 100}xx"] += 1
    errors = sum(1 for s in samples if s.status_code >= 500)
    latencies = sorted(s.latency_ms for s in samples)
    p95 = latencies[max(0, math.ceil(0.95 * len(latencies)) - 1)]
    return {
        "count": len(samples),
        "errors": errors,
        "availability": round((len(samples) - errors) / len(samples) * 100.0, 2),
        "p95_latency_ms": round(p95, 2),
        "by_status": dict(by_status),
    }


def reset_telemetry() -> None:
    _request_samples.clear()
    _external_samples.clear()
    _counters.clear()

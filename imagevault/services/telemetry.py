from __future__ import annotations

import math
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
    operation: str
    latency_ms: float
    success: bool


_request_samples: Deque[RequestSample] = deque(maxlen=20000)
_external_samples: Deque[ExternalCallSample] = deque(maxlen=10000)
_counters: dict[str, int] = defaultdict(int)


def record_request(*, path: str, status_code: int, latency_ms: float) -> None:
    # Track request latency and status for the health summary.
    _request_samples.append(
        RequestSample(ts=time.time(), path=path, status_code=status_code, latency_ms=latency_ms)
    )


def record_external_call(
    *, integration: str, latency_ms: float, success: bool, operation: str = "call"
) -> None:
    # Capture storage provider latency and outcomes per operation.
    _external_samples.append(
        ExternalCallSample(
            ts=time.time(),
            integration=integration,
            operation=operation,
            latency_ms=latency_ms,
            success=success,
        )
    )


def increment_counter(name: str, value: int = 1) -> None:
    # Store counters for uploads, denials and capacity alerts.
    _counters[name] += value


def _p95(latencies: list[float]) -> float:
    latencies.sort()
    idx = max(0, math.ceil(0.95 * len(latencies)) - 1)
    return latencies[idx]


def availability(window_s: int) -> float | None:
    # Percentage of non-5xx requests over the window.
    cutoff = time.time() - window_s
    samples = [sample for sample in _request_samples if sample.ts >= cutoff]
    if not samples:
        return None
    failures = sum(1 for sample in samples if sample.status_code >= 500)
    return ((len(samples) - failures) / len(samples)) * 100.0


def p95_latency(window_s: int, *, path_prefix: str | None = None) -> float | None:
    cutoff = time.time() - window_s
    latencies = [
        sample.latency_ms
        for sample in _request_samples
        if sample.ts >= cutoff and (not path_prefix or sample.path.startswith(path_prefix))
    ]
    if not latencies:
        return None
    return _p95(latencies)


def external_latency_by_integration(window_s: int) -> dict[str, dict[str, float | int | None]]:
    # Aggregate provider latency and failure counts in the window.
    cutoff = time.time() - window_s
    by_integration: dict[str, list[ExternalCallSample]] = defaultdict(list)
    for sample in _external_samples:
        if sample.ts < cutoff:
            continue
        by_integration[sample.integration].append(sample)
    result: dict[str, dict[str, float | int | None]] = {}
    for integration, samples in by_integration.items():
        latencies = [sample.latency_ms for sample in samples]
        result[integration] = {
            "p95": _p95(latencies),
            "max": max(latencies),
            "calls": len(samples),
            "failures": sum(1 for sample in samples if not sample.success),
        }
    return result


def counters_snapshot() -> dict[str, int]:
    # Return a copy of all counters for metrics reporting.
    return dict(_counters)


def reset() -> None:
    # Tests share the process; clear in-memory samples between them.
    _request_samples.clear()
    _external_samples.clear()
    _counters.clear()

from __future__ import annotations

import math
import threading
import time
from collections import Counter, deque
from dataclasses import dataclass
from typing import Deque, Iterable


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


# Guarded so callers on worker threads can record safely.
_lock = threading.Lock()
_request_samples: Deque[RequestSample] = deque(maxlen=20000)
_external_samples: Deque[ExternalCallSample] = deque(maxlen=10000)
_counters: Counter[str] = Counter()


def record_request(*, path: str, status_code: int, latency_ms: float) -> None:
    sample = RequestSample(ts=time.time(), path=path, status_code=status_code, latency_ms=latency_ms)
    with _lock:
        _request_samples.append(sample)


def record_external_call(*, integration: str, latency_ms: float, success: bool) -> None:
    # integration names read "<family>.<backend>", e.g. storage.s3 or tenant.postgrest.
    sample = ExternalCallSample(ts=time.time(), integration=integration, latency_ms=latency_ms, success=success)
    with _lock:
        _external_samples.append(sample)


def increment_counter(name: str, value: int = 1) -> None:
    with _lock:
        _counters[name] += value


def _since(samples: Iterable, window_s: int) -> list:
    cutoff = time.time() - window_s
    with _lock:
        return [sample for sample in samples if sample.ts >= cutoff]


def _percentile(values: list[float], fraction: float) -> float | None:
    if not values:
        return None
    ordered = sorted(values)
    return ordered[max(0, math.ceil(fraction * len(ordered)) - 1)]


def availability(window_s: int) -> float | None:
    """Share of non-5xx responses in the window, as a percentage."""
    samples = _since(_request_samples, window_s)
    if not samples:
        return None
    healthy = sum(1 for sample in samples if sample.status_code < 500)
    return healthy / len(samples) * 100.0


def p95_latency(window_s: int, *, path_prefix: str | None = None) -> float | None:
    samples = _since(_request_samples, window_s)
    return _percentile(
        [sample.latency_ms for sample in samples if not path_prefix or sample.path.startswith(path_prefix)],
        0.95,
    )


def external_latency_by_integration(window_s: int) -> dict[str, dict[str, float | int | None]]:
    grouped: dict[str, list[ExternalCallSample]] = {}
    for sample in _since(_external_samples, window_s):
        grouped.setdefault(sample.integration, []).append(sample)
    summary: dict[str, dict[str, float | int | None]] = {}
    for integration, samples in sorted(grouped.items()):
        latencies = [sample.latency_ms for sample in samples]
        summary[integration] = {
            "calls": len(samples),
            "failures": sum(1 for sample in samples if not sample.success),
            "p95": _percentile(latencies, 0.95),
            "max": max(latencies),
        }
    return summary


def counters_snapshot() -> dict[str, int]:
    with _lock:
        return dict(sorted(_counters.items()))


def reset_telemetry() -> None:
    with _lock:
        _request_samples.clear()
        _external_samples.clear()
        _counters.clear()

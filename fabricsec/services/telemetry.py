from __future__ import annotations

import math
import time
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Deque


@dataclass(frozen=True)
class QuerySample:
    ts: float
    status: str
    error_code: str | None
    latency_ms: float
    row_count: int
    truncated: bool


@dataclass(frozen=True)
class RequestSample:
    ts: float
    path: str
    status_code: int
    latency_ms: float


_query_samples: Deque[QuerySample] = deque(maxlen=10000)
_request_samples: Deque[RequestSample] = deque(maxlen=20000)
_counters: dict[str, int] = defaultdict(int)


def increment_counter(name: str, value: int = 1) -> None:
    _counters[name] += value


def record_query_execution(
    *,
    status: str,
    error_code: str | None,
    latency_ms: float,
    row_count: int = 0,
    truncated: bool = False,
) -> None:
    # One sample per gateway attempt, whatever its outcome.
    _query_samples.append(
        QuerySample(
            ts=time.time(),
            status=status,
            error_code=error_code,
            latency_ms=latency_ms,
            row_count=row_count,
            truncated=truncated,
        )
    )
    increment_counter(f"query.status.{status.lower()}")
    if error_code:
        increment_counter(f"query.error.{error_code.lower()}")
    if truncated:
        increment_counter("query.truncated")


def record_request(*, path: str, status_code: int, latency_ms: float) -> None:
    _request_samples.append(
        RequestSample(ts=time.time(), path=path, status_code=status_code, latency_ms=latency_ms)
    )


def _window_queries(window_s: int) -> list[QuerySample]:
    cutoff = time.time() - window_s
    return [sample for sample in _query_samples if sample.ts >= cutoff]


def p95_query_latency(window_s: int) -> float | None:
    samples = _window_queries(window_s)
    if not samples:
        return None
    latencies = sorted(sample.latency_ms for sample in samples)
    idx = max(0, math.ceil(0.95 * len(latencies)) - 1)
    return latencies[idx]


def query_outcomes(window_s: int) -> dict[str, int]:
    # Status histogram for the window; feeds the health endpoint.
    outcomes: dict[str, int] = defaultdict(int)
    for sample in _window_queries(window_s):
        outcomes[sample.status] += 1
    return dict(outcomes)


def counters_snapshot() -> dict[str, int]:
    return dict(_counters)


def reset_telemetry() -> None:
    _query_samples.clear()
    _request_samples.clear()
    _counters.clear()

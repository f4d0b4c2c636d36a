from __future__ import annotations

import math
import time
from collections import Counter, deque
from dataclasses import dataclass
from typing import Deque, Iterable


# In-process only: each API or worker process reports its own numbers on /v1/ops/metrics.


@dataclass(frozen=True)
class ExternalCallSample:
    ts: float
    integration: str
    latency_ms: float
    success: bool


_external_samples: Deque[ExternalCallSample] = deque(maxlen=10000)
_counters: Counter[str] = Counter()
_gauges: dict[str, float] = {}


def record_external_call(*, integration: str, latency_ms: float, success: bool) -> None:
    _external_samples.append(ExternalCallSample(time.time(), integration, latency_ms, success))


def increment_counter(name: str, value: int = 1) -> None:
    # Dotted suffixes label a counter, e.g. remediation_transition_total.quarantined.
    _counters[name] += value


def set_gauge(name: str, value: float) -> None:
    _gauges[name] = value


def _percentile(ordered: list[float], fraction: float) -> float:
    return ordered[max(0, math.ceil(fraction * len(ordered)) - 1)]


def _summarize(samples: Iterable[ExternalCallSample]) -> dict[str, float | None]:
    samples = list(samples)
    latencies = sorted(sample.latency_ms for sample in samples)
    failed = sum(1 for sample in samples if not sample.success)
    return {
        "calls": float(len(samples)),
        "p50": _percentile(latencies, 0.5),
        "p95": _percentile(latencies, 0.95),
        "max": latencies[-1],
        "error_rate": failed / len(samples),
    }


def external_latency_by_integration(window_s: int) -> dict[str, dict[str, float | None]]:
    """Latency percentiles and error rate per mailbox integration over the last `window_s` seconds."""
    cutoff = time.time() - window_s
    recent: dict[str, list[ExternalCallSample]] = {}
    for sample in _external_samples:
        if sample.ts >= cutoff:
            recent.setdefault(sample.integration, []).append(sample)
    return {integration: _summarize(samples) for integration, samples in sorted(recent.items())}


def counters_snapshot() -> dict[str, int]:
    return dict(_counters)


def gauges_snapshot() -> dict[str, float]:
    return dict(_gauges)


def reset_telemetry() -> None:
    _external_samples.clear()
    _counters.clear()
    _gauges.clear()

"""
In-process metrics for the /metrics endpoint.

Counters (jobs.created, cache.hit, sora.error, ...), gauges for point-in-time
values such as the reconciler's pending backlog, and duration samples kept
in a bounded window and summarised as percentiles.
"""

import time
from collections import defaultdict, deque
from contextlib import asynccontextmanager
from typing import Any, Deque, Dict, Sequence

from sora_studio.utils.logger import get_logger

logger = get_logger("metrics")

MAX_SAMPLES = 500

_counters: Dict[str, int] = defaultdict(int)
_gauges: Dict[str, float] = {}
_samples: Dict[str, Deque[float]] = defaultdict(lambda: deque(maxlen=MAX_SAMPLES))


def inc(name: str, value: int = 1) -> None:
    _counters[name] += value


def set_gauge(name: str, value: float) -> None:
    _gauges[name] = value


def observe(name: str, value: float) -> None:
    """Record one sample, e.g. a duration in milliseconds"""
    _samples[name].append(value)


@asynccontextmanager
async def track_duration(service: str, operation: str = "call"):
    """
    Time a block as ``<service>.<operation>.duration_ms`` and count its
    outcome as ``.success`` or ``.error``.

        async with track_duration("reconciler", "tick"):
            ...
    """
    name = f"{service}.{operation}"
    start = time.monotonic()
    outcome = "error"
    try:
        yield
        outcome = "success"
    finally:
        duration_ms = (time.monotonic() - start) * 1000
        observe(f"{name}.duration_ms", duration_ms)
        inc(f"{name}.{outcome}")
        log = logger.debug if outcome == "success" else logger.warning
        log(f"metrics.{name}", extra={"service": service, "duration_ms": round(duration_ms, 1), "status": outcome})


def _percentile(ordered: Sequence[float], fraction: float) -> float:
    return ordered[min(int(len(ordered) * fraction), len(ordered) - 1)]


def get_snapshot() -> Dict[str, Any]:
    histograms = {}
    for name, samples in _samples.items():
        if not samples:
            continue
        ordered = sorted(samples)
        histograms[name] = {
            "count": len(ordered),
            "p50": round(_percentile(ordered, 0.5), 1),
            "p95": round(_percentile(ordered, 0.95), 1),
            "max": round(ordered[-1], 1),
        }
    return {"counters": dict(_counters), "gauges": dict(_gauges), "histograms": histograms}


def reset() -> None:
    """Clear everything; tests call this between cases"""
    _counters.clear()
    _gauges.clear()
    _samples.clear()

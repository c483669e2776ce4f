"""In-process metrics for the execution engine.

Counters, labeled counters and latency histograms held in a process-global
singleton and exported as plain dicts on ``/metrics``:

  Counters:
    runs_total[status]              Terminal runs by status
    run_retries_total               Retry attempts scheduled
    lock_contention_total           Jobs requeued because the installation was locked
    scheduler_enqueued_total        Scheduled jobs enqueued
    scheduler_skipped_total[reason] Due slots skipped (unhealthy, ...)
    queue_full_total                Enqueues rejected with QueueFull
    adapter_calls_total[provider]   Provider operations invoked
    adapter_errors_total[kind]      Normalized adapter failures
    health_checks_total[status]     Health probe outcomes

  Histograms (milliseconds):
    adapter_latency_ms              One adapter invoke
    run_duration_ms                 Full attempt wall-clock time
    health_probe_ms                 One health probe
"""

from __future__ import annotations

import asyncio
import math
import time
from collections import defaultdict
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator

_LATENCY_BUCKETS_MS: tuple[float, ...] = (
    10, 50, 100, 250, 500, 1_000, 2_500, 5_000,
    10_000, 30_000, 60_000, 300_000, float("inf"),
)

HISTOGRAMS = ("adapter_latency_ms", "run_duration_ms", "health_probe_ms")


@dataclass
class Histogram:
    """Fixed-bucket latency histogram with running stats."""

    name: str
    _buckets: list[int] = field(default_factory=lambda: [0] * len(_LATENCY_BUCKETS_MS))
    _count: int = 0
    _sum_ms: float = 0.0
    _max_ms: float = 0.0

    def record(self, value_ms: float) -> None:
        self._count += 1
        self._sum_ms += value_ms
        self._max_ms = max(self._max_ms, value_ms)
        for i, bound in enumerate(_LATENCY_BUCKETS_MS):
            if value_ms <= bound:
                self._buckets[i] += 1
                break

    @property
    def count(self) -> int:
        return self._count

    def percentile(self, p: float) -> float:
        """Bucket-interpolated percentile estimate."""
        if self._count == 0:
            return 0.0
        target = math.ceil(p / 100 * self._count)
        cumulative = 0
        prev_bound = 0.0
        for i, bound in enumerate(_LATENCY_BUCKETS_MS):
            cumulative += self._buckets[i]
            if cumulative >= target:
                in_bucket = self._buckets[i]
                frac = (target - (cumulative - in_bucket)) / in_bucket
                upper = self._max_ms if math.isinf(bound) else bound
                return prev_bound + frac * (upper - prev_bound)
            prev_bound = bound
        return self._max_ms

    def to_dict(self) -> dict[str, Any]:
        return {
            "count": self._count,
            "mean_ms": round(self._sum_ms / self._count, 2) if self._count else 0.0,
            "max_ms": round(self._max_ms, 2),
            "p50_ms": round(self.percentile(50), 2),
            "p95_ms": round(self.percentile(95), 2),
        }

    def reset(self) -> None:
        self._buckets = [0] * len(_LATENCY_BUCKETS_MS)
        self._count = 0
        self._sum_ms = 0.0
        self._max_ms = 0.0


class MetricsCollector:
    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._counters: dict[str, int] = defaultdict(int)
        self._labeled: dict[str, dict[str, int]] = defaultdict(lambda: defaultdict(int))
        self._histograms = {name: Histogram(name) for name in HISTOGRAMS}
        self._started_at = time.monotonic()

    async def inc(self, name: str, value: int = 1) -> None:
        async with self._lock:
            self._counters[name] += value

    async def inc_labeled(self, name: str, label: str, value: int = 1) -> None:
        async with self._lock:
            self._labeled[name][label] += value

    async def record(self, histogram: str, value_ms: float) -> None:
        async with self._lock:
            if histogram in self._histograms:
                self._histograms[histogram].record(value_ms)

    @asynccontextmanager
    async def timer(self, histogram: str) -> AsyncIterator[None]:
        t0 = time.monotonic()
        try:
            yield
        finally:
            await self.record(histogram, (time.monotonic() - t0) * 1000)

    # ------------------------------------------------------------------
    # Semantic helpers
    # ------------------------------------------------------------------

    async def run_finished(self, status: str, duration_ms: float | None) -> None:
        await self.inc_labeled("runs_total", status)
        if duration_ms is not None:
            await self.record("run_duration_ms", duration_ms)

    async def run_retried(self) -> None:
        await self.inc("run_retries_total")

    async def lock_contended(self) -> None:
        await self.inc("lock_contention_total")

    async def scheduler_enqueued(self) -> None:
        await self.inc("scheduler_enqueued_total")

    async def scheduler_skipped(self, reason: str) -> None:
        await self.inc_labeled("scheduler_skipped_total", reason)

    async def queue_full(self) -> None:
        await self.inc("queue_full_total")

    async def adapter_called(self, provider: str, elapsed_ms: float, error_kind: str | None) -> None:
        await self.inc_labeled("adapter_calls_total", provider)
        await self.record("adapter_latency_ms", elapsed_ms)
        if error_kind:
            await self.inc_labeled("adapter_errors_total", error_kind)

    async def health_checked(self, status: str, elapsed_ms: float) -> None:
        await self.inc_labeled("health_checks_total", status)
        await self.record("health_probe_ms", elapsed_ms)

    # ------------------------------------------------------------------
    # Snapshot / export
    # ------------------------------------------------------------------

    async def snapshot(self) -> dict[str, Any]:
        async with self._lock:
            return {
                "uptime_seconds": round(time.monotonic() - self._started_at, 1),
                "counters": dict(self._counters),
                "labeled_counters": {k: dict(v) for k, v in self._labeled.items()},
                "histograms": {k: v.to_dict() for k, v in self._histograms.items()},
            }

    def reset_all(self) -> None:
        """Reset all metrics (tests)."""
        self._counters.clear()
        self._labeled.clear()
        for h in self._histograms.values():
            h.reset()


_collector: MetricsCollector | None = None


def get_metrics() -> MetricsCollector:
    """Return (or lazily create) the process-global MetricsCollector."""
    global _collector
    if _collector is None:
        _collector = MetricsCollector()
    return _collector

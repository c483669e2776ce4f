"""Metrics instrumentation tests.

These tests run entirely in-process (no database, no providers).
They verify:
  1. Histogram bucket placement and percentile estimates
  2. Counter increment semantics (plain + labeled)
  3. The semantic helpers the engine, scheduler and health monitor call
  4. reset_all() properly zeros state
"""

from __future__ import annotations

import asyncio

import pytest

from metricshub.observability.metrics import (
    HISTOGRAMS,
    Histogram,
    MetricsCollector,
    _LATENCY_BUCKETS_MS,
    get_metrics,
)


@pytest.fixture()
def mc() -> MetricsCollector:
    """Fresh MetricsCollector for each test (avoids global state bleed)."""
    return MetricsCollector()


# ---------------------------------------------------------------------------
# Histogram
# ---------------------------------------------------------------------------


class TestHistogram:
    def test_count_increases(self):
        h = Histogram("test")
        assert h.count == 0
        h.record(50)
        h.record(100)
        assert h.count == 2

    def test_bucket_placement(self):
        h = Histogram("test")
        h.record(5)
        assert h._buckets[0] == 1
        h.record(1000)
        assert h._buckets[list(_LATENCY_BUCKETS_MS).index(1000)] == 1

    def test_above_max_bucket_goes_to_inf(self):
        h = Histogram("test")
        h.record(10_000_000)
        assert h._buckets[_LATENCY_BUCKETS_MS.index(float("inf"))] == 1
        assert h.percentile(99) == 10_000_000

    def test_percentile_zero_count(self):
        assert Histogram("test").percentile(95) == 0.0

    def test_p95_across_many_samples(self):
        h = Histogram("test")
        for i in range(1, 101):
            h.record(float(i))
        # Allow a wide tolerance for bucket interpolation
        assert 80 <= h.percentile(95) <= 100

    def test_to_dict(self):
        h = Histogram("test")
        h.record(100)
        h.record(200)
        d = h.to_dict()
        assert d["count"] == 2
        assert d["mean_ms"] == 150.0
        assert d["max_ms"] == 200.0

    def test_reset_zeroes_all(self):
        h = Histogram("test")
        h.record(100)
        h.reset()
        assert h.count == 0
        assert all(b == 0 for b in h._buckets)


# ---------------------------------------------------------------------------
# MetricsCollector
# ---------------------------------------------------------------------------


class TestMetricsCollector:
    async def test_inc_plain_and_labeled(self, mc):
        await mc.inc("foo")
        await mc.inc("foo")
        await mc.inc_labeled("errors", "transient")
        snap = await mc.snapshot()
        assert snap["counters"]["foo"] == 2
        assert snap["labeled_counters"]["errors"] == {"transient": 1}

    async def test_every_histogram_exported(self, mc):
        snap = await mc.snapshot()
        assert set(snap["histograms"]) == set(HISTOGRAMS)

    async def test_unknown_histogram_name_ignored(self, mc):
        await mc.record("nonexistent_histogram", 100)
        assert "nonexistent_histogram" not in (await mc.snapshot())["histograms"]

    async def test_timer_records(self, mc):
        async with mc.timer("adapter_latency_ms"):
            await asyncio.sleep(0.01)
        snap = await mc.snapshot()
        assert snap["histograms"]["adapter_latency_ms"]["count"] == 1
        assert snap["histograms"]["adapter_latency_ms"]["max_ms"] >= 10

    async def test_concurrent_increments_are_not_lost(self, mc):
        await asyncio.gather(*(mc.inc("hits") for _ in range(200)))
        assert (await mc.snapshot())["counters"]["hits"] == 200

    async def test_reset_clears_everything(self, mc):
        await mc.run_finished("success", 120)
        mc.reset_all()
        snap = await mc.snapshot()
        assert snap["counters"] == {}
        assert snap["labeled_counters"] == {}
        assert snap["histograms"]["run_duration_ms"]["count"] == 0


class TestSemanticHelpers:
    async def test_run_outcomes(self, mc):
        await mc.run_finished("success", 1500)
        await mc.run_finished("error", None)
        await mc.run_retried()
        snap = await mc.snapshot()
        assert snap["labeled_counters"]["runs_total"] == {"success": 1, "error": 1}
        assert snap["counters"]["run_retries_total"] == 1
        assert snap["histograms"]["run_duration_ms"]["count"] == 1

    async def test_scheduler_and_queue(self, mc):
        await mc.scheduler_enqueued()
        await mc.scheduler_skipped("unhealthy")
        await mc.queue_full()
        await mc.lock_contended()
        snap = await mc.snapshot()
        assert snap["counters"]["scheduler_enqueued_total"] == 1
        assert snap["labeled_counters"]["scheduler_skipped_total"] == {"unhealthy": 1}
        assert snap["counters"]["queue_full_total"] == 1
        assert snap["counters"]["lock_contention_total"] == 1

    async def test_adapter_calls(self, mc):
        await mc.adapter_called("google_ads", 80, None)
        await mc.adapter_called("google_ads", 300, "quota_exceeded")
        snap = await mc.snapshot()
        assert snap["labeled_counters"]["adapter_calls_total"] == {"google_ads": 2}
        assert snap["labeled_counters"]["adapter_errors_total"] == {"quota_exceeded": 1}
        assert snap["histograms"]["adapter_latency_ms"]["count"] == 2

    async def test_health_checks(self, mc):
        await mc.health_checked("degraded", 42)
        snap = await mc.snapshot()
        assert snap["labeled_counters"]["health_checks_total"] == {"degraded": 1}


class TestGlobalCollector:
    def test_singleton(self):
        assert get_metrics() is get_metrics()

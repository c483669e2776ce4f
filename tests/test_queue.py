"""Tests for the job queue backends (in-memory and database)."""

from __future__ import annotations

import uuid

import pytest

from metricshub.core.errors import QueueFull
from metricshub.db.models import JobType, TriggerSource
from metricshub.jobs.queue import InMemoryJobQueue, Priority, priority_for
from metricshub.jobs.sql_queue import SqlJobQueue

EXEC = JobType.EXECUTE_INTEGRATION


@pytest.fixture(params=["memory", "sql"])
def queue(request, clock):
    if request.param == "memory":
        return InMemoryJobQueue(max_depth=3, lease_seconds=60, clock=clock)
    session_factory = request.getfixturevalue("session_factory")
    return SqlJobQueue(session_factory, max_depth=3, lease_seconds=60, clock=clock)


class TestPriority:
    def test_manual_runs_first(self):
        assert priority_for(EXEC, TriggerSource.MANUAL) == Priority.HIGH
        assert priority_for(EXEC, TriggerSource.USER) == Priority.HIGH

    def test_scheduled_runs_normal(self):
        assert priority_for(EXEC, TriggerSource.SCHEDULE) == Priority.NORMAL

    def test_health_checks_last(self):
        assert priority_for(JobType.HEALTH_CHECK, TriggerSource.MANUAL) == Priority.LOW


class TestOrdering:
    async def test_fifo_within_priority(self, queue):
        inst = uuid.uuid4()
        first = await queue.enqueue(EXEC, inst, TriggerSource.SCHEDULE)
        second = await queue.enqueue(EXEC, inst, TriggerSource.SCHEDULE)
        assert (await queue.dequeue("w")).job_id == first
        assert (await queue.dequeue("w")).job_id == second

    async def test_higher_priority_jumps_ahead(self, queue):
        inst = uuid.uuid4()
        await queue.enqueue(EXEC, inst, TriggerSource.SCHEDULE)
        manual = await queue.enqueue(EXEC, inst, TriggerSource.MANUAL)
        assert (await queue.dequeue("w")).job_id == manual

    async def test_job_round_trips_metadata(self, queue):
        inst, run_id = uuid.uuid4(), uuid.uuid4()
        await queue.enqueue(
            EXEC, inst, TriggerSource.MANUAL, {"operation": "campaigns.list"},
            attempt=2, run_id=run_id, user_id="u-7",
        )
        job = await queue.dequeue("w")
        assert job.installation_id == inst
        assert job.trigger_source == TriggerSource.MANUAL
        assert job.config == {"operation": "campaigns.list"}
        assert job.attempt == 2
        assert job.run_id == run_id
        assert job.user_id == "u-7"
        assert job.deliveries == 1


class TestDelayAndLease:
    async def test_delayed_job_invisible_until_due(self, queue, clock):
        await queue.enqueue(EXEC, uuid.uuid4(), TriggerSource.SCHEDULE, delay=30)
        assert await queue.dequeue("w") is None
        clock.advance(seconds=30)
        assert await queue.dequeue("w") is not None

    async def test_leased_job_not_handed_out_twice(self, queue):
        await queue.enqueue(EXEC, uuid.uuid4(), TriggerSource.SCHEDULE)
        assert await queue.dequeue("a") is not None
        assert await queue.dequeue("b") is None

    async def test_unacked_job_redelivered_after_lease(self, queue, clock):
        job_id = await queue.enqueue(EXEC, uuid.uuid4(), TriggerSource.SCHEDULE)
        await queue.dequeue("a")
        clock.advance(seconds=61)
        again = await queue.dequeue("b")
        assert again.job_id == job_id
        assert again.deliveries == 2

    async def test_ack_removes_job(self, queue, clock):
        job_id = await queue.enqueue(EXEC, uuid.uuid4(), TriggerSource.SCHEDULE)
        await queue.dequeue("a")
        await queue.ack(job_id)
        clock.advance(seconds=120)
        assert await queue.dequeue("a") is None
        assert await queue.depth() == 0

    async def test_extend_lease(self, queue, clock):
        job_id = await queue.enqueue(EXEC, uuid.uuid4(), TriggerSource.SCHEDULE)
        await queue.dequeue("a")
        assert await queue.extend_lease(job_id, 300)
        clock.advance(seconds=120)
        assert await queue.dequeue("b") is None
        assert not await queue.extend_lease("missing", 10)


class TestBackpressure:
    async def test_rejects_new_work_at_max_depth(self, queue):
        inst = uuid.uuid4()
        for _ in range(3):
            await queue.enqueue(EXEC, inst, TriggerSource.SCHEDULE)
        with pytest.raises(QueueFull) as exc:
            await queue.enqueue(EXEC, inst, TriggerSource.SCHEDULE)
        assert exc.value.max_depth == 3

    async def test_requeue_bypasses_depth_limit(self, queue):
        inst = uuid.uuid4()
        for _ in range(3):
            await queue.enqueue(EXEC, inst, TriggerSource.SCHEDULE)
        await queue.enqueue(EXEC, inst, TriggerSource.SCHEDULE, delay=30, requeue=True)
        assert await queue.depth() == 4

    async def test_in_flight_jobs_count_toward_depth(self, queue):
        inst = uuid.uuid4()
        for _ in range(3):
            await queue.enqueue(EXEC, inst, TriggerSource.SCHEDULE)
        await queue.dequeue("w")
        with pytest.raises(QueueFull):
            await queue.enqueue(EXEC, inst, TriggerSource.SCHEDULE)


class TestInMemoryMetrics:
    async def test_counts(self, clock):
        queue = InMemoryJobQueue(max_depth=1, clock=clock)
        job_id = await queue.enqueue(EXEC, uuid.uuid4(), TriggerSource.SCHEDULE)
        with pytest.raises(QueueFull):
            await queue.enqueue(EXEC, uuid.uuid4(), TriggerSource.SCHEDULE)
        await queue.dequeue("w")
        await queue.ack(job_id)
        assert queue.metrics == {
            "depth": 0,
            "max_depth": 1,
            "total_enqueued": 1,
            "total_acked": 1,
            "redeliveries": 0,
            "rejected": 1,
        }

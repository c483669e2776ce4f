"""Job queue contract and in-memory backend.

Architecture:
    Scheduler / manual trigger → enqueue() → JobQueue → dequeue() → worker pool

Semantics shared by every backend:
    - FIFO within a priority level (lower number = higher priority)
    - Delayed enqueue: a job is invisible until its ``available_at``
    - Visibility lease: a dequeued job that is not acked before its lease
      expires becomes visible again (at-least-once delivery)
    - Backpressure: new work is rejected with QueueFull at ``max_depth``.
      Requeues of already-admitted work (retries, lock contention) are exempt.

The queue knows nothing about installations or credentials; it moves
opaque job descriptors.
"""

from __future__ import annotations

import asyncio
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from enum import IntEnum
from typing import Any, Callable

import structlog

from metricshub.core.errors import QueueFull
from metricshub.db.models import JobType, TriggerSource, utcnow

logger = structlog.get_logger()

DEFAULT_MAX_DEPTH = 1000
DEFAULT_LEASE_SECONDS = 600


class Priority(IntEnum):
    """Job priority levels (lower number = higher priority)."""
    HIGH = 0    # Manual and user triggers
    NORMAL = 1  # Scheduled runs and retries
    LOW = 2     # Health checks


def priority_for(job_type: JobType, trigger_source: TriggerSource) -> Priority:
    if job_type == JobType.HEALTH_CHECK:
        return Priority.LOW
    if trigger_source in (TriggerSource.MANUAL, TriggerSource.USER):
        return Priority.HIGH
    return Priority.NORMAL


@dataclass
class Job:
    """A unit of work handed from the queue to a worker."""

    job_id: str
    job_type: JobType
    installation_id: uuid.UUID
    trigger_source: TriggerSource
    config: dict[str, Any] = field(default_factory=dict)
    attempt: int = 0
    run_id: uuid.UUID | None = None
    user_id: str | None = None
    priority: int = Priority.NORMAL
    enqueued_at: datetime = field(default_factory=utcnow)
    available_at: datetime = field(default_factory=utcnow)
    sequence: int = 0
    deliveries: int = 0
    lease_owner: str | None = None
    lease_expires_at: datetime | None = None

    def is_visible(self, now: datetime) -> bool:
        if self.available_at > now:
            return False
        return self.lease_expires_at is None or self.lease_expires_at <= now


class JobQueue(ABC):
    """Durable ordered handoff between producers and the execution engine."""

    max_depth: int
    lease_seconds: int

    @abstractmethod
    async def enqueue(
        self,
        job_type: JobType,
        installation_id: uuid.UUID,
        trigger_source: TriggerSource,
        config: dict[str, Any] | None = None,
        *,
        delay: float = 0.0,
        attempt: int = 0,
        run_id: uuid.UUID | None = None,
        user_id: str | None = None,
        priority: int | None = None,
        requeue: bool = False,
    ) -> str:
        """Add a job and return its id.

        Raises:
            QueueFull: the queue is at max depth and ``requeue`` is False.
        """

    @abstractmethod
    async def dequeue(self, worker_id: str = "", lease_seconds: int | None = None) -> Job | None:
        """Lease the next visible job, or return None."""

    @abstractmethod
    async def ack(self, job_id: str) -> None:
        """Remove a leased job permanently."""

    @abstractmethod
    async def extend_lease(self, job_id: str, seconds: int) -> bool:
        """Push the lease deadline out; False if the job is gone."""

    @abstractmethod
    async def depth(self) -> int:
        """Number of jobs held (visible, delayed and leased)."""


class InMemoryJobQueue(JobQueue):
    """Process-local queue backend for tests and single-process development."""

    def __init__(
        self,
        max_depth: int = DEFAULT_MAX_DEPTH,
        lease_seconds: int = DEFAULT_LEASE_SECONDS,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.max_depth = max_depth
        self.lease_seconds = lease_seconds
        self._clock = clock
        self._jobs: dict[str, Job] = {}
        self._sequence = 0
        self._lock = asyncio.Lock()

        self._total_enqueued = 0
        self._total_acked = 0
        self._redeliveries = 0
        self._rejected = 0

    async def enqueue(
        self,
        job_type: JobType,
        installation_id: uuid.UUID,
        trigger_source: TriggerSource,
        config: dict[str, Any] | None = None,
        *,
        delay: float = 0.0,
        attempt: int = 0,
        run_id: uuid.UUID | None = None,
        user_id: str | None = None,
        priority: int | None = None,
        requeue: bool = False,
    ) -> str:
        async with self._lock:
            depth = len(self._jobs)
            if not requeue and depth >= self.max_depth:
                self._rejected += 1
                logger.warning("job_queue_full", depth=depth, max_depth=self.max_depth)
                raise QueueFull(depth, self.max_depth)

            now = self._clock()
            self._sequence += 1
            job = Job(
                job_id=str(uuid.uuid4()),
                job_type=job_type,
                installation_id=installation_id,
                trigger_source=trigger_source,
                config=dict(config or {}),
                attempt=attempt,
                run_id=run_id,
                user_id=user_id,
                priority=priority if priority is not None else priority_for(job_type, trigger_source),
                enqueued_at=now,
                available_at=now + timedelta(seconds=max(delay, 0.0)),
                sequence=self._sequence,
            )
            self._jobs[job.job_id] = job
            self._total_enqueued += 1

        logger.debug(
            "job_enqueued",
            job_id=job.job_id,
            job_type=job_type.value,
            installation_id=str(installation_id),
            delay_s=delay,
            attempt=attempt,
        )
        return job.job_id

    async def dequeue(self, worker_id: str = "", lease_seconds: int | None = None) -> Job | None:
        async with self._lock:
            now = self._clock()
            visible = [j for j in self._jobs.values() if j.is_visible(now)]
            if not visible:
                return None
            job = min(visible, key=lambda j: (j.priority, j.sequence))
            if job.lease_expires_at is not None:
                self._redeliveries += 1
                logger.info("job_lease_expired", job_id=job.job_id, deliveries=job.deliveries)
            job.deliveries += 1
            job.lease_owner = worker_id or None
            job.lease_expires_at = now + timedelta(seconds=lease_seconds or self.lease_seconds)
            return replace(job)

    async def ack(self, job_id: str) -> None:
        async with self._lock:
            if self._jobs.pop(job_id, None) is not None:
                self._total_acked += 1

    async def extend_lease(self, job_id: str, seconds: int) -> bool:
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return False
            job.lease_expires_at = self._clock() + timedelta(seconds=seconds)
            return True

    async def depth(self) -> int:
        return len(self._jobs)

    def pending(self) -> list[Job]:
        """Snapshot of held jobs in delivery order (ignores visibility)."""
        return sorted(self._jobs.values(), key=lambda j: (j.priority, j.sequence))

    @property
    def metrics(self) -> dict[str, Any]:
        return {
            "depth": len(self._jobs),
            "max_depth": self.max_depth,
            "total_enqueued": self._total_enqueued,
            "total_acked": self._total_acked,
            "redeliveries": self._redeliveries,
            "rejected": self._rejected,
        }

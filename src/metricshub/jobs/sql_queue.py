"""Database-backed durable job queue.

Rows in ``queued_jobs`` are claimed with a conditional UPDATE on the lease
columns, so concurrent workers (in any number of processes) never hold the
same lease. On PostgreSQL the candidate scan also uses SKIP LOCKED.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta
from typing import Any, Callable

import structlog
from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from metricshub.core.errors import QueueFull
from metricshub.db.models import JobType, QueuedJob, TriggerSource, utcnow
from metricshub.db.session import db_session
from metricshub.jobs.queue import (
    DEFAULT_LEASE_SECONDS,
    DEFAULT_MAX_DEPTH,
    Job,
    JobQueue,
    priority_for,
)

logger = structlog.get_logger()

_CLAIM_BATCH = 5


def _to_job(row: QueuedJob) -> Job:
    return Job(
        job_id=row.job_id,
        job_type=JobType(row.job_type),
        installation_id=row.installation_id,
        trigger_source=TriggerSource(row.trigger_source),
        config=dict(row.config or {}),
        attempt=row.attempt,
        run_id=row.run_id,
        user_id=row.user_id,
        priority=row.priority,
        enqueued_at=row.enqueued_at,
        available_at=row.available_at,
        sequence=row.seq,
        deliveries=row.deliveries,
        lease_owner=row.lease_owner,
        lease_expires_at=row.leased_until,
    )


class SqlJobQueue(JobQueue):
    """Queue stored in the application database."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        max_depth: int = DEFAULT_MAX_DEPTH,
        lease_seconds: int = DEFAULT_LEASE_SECONDS,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._sessions = session_factory
        self.max_depth = max_depth
        self.lease_seconds = lease_seconds
        self._clock = clock

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
        now = self._clock()
        job_id = str(uuid.uuid4())
        async with db_session(self._sessions) as db:
            if not requeue:
                depth = await db.scalar(select(func.count()).select_from(QueuedJob))
                if depth >= self.max_depth:
                    logger.warning("job_queue_full", depth=depth, max_depth=self.max_depth)
                    raise QueueFull(depth, self.max_depth)

            db.add(
                QueuedJob(
                    job_id=job_id,
                    job_type=job_type.value,
                    installation_id=installation_id,
                    trigger_source=trigger_source.value,
                    priority=int(priority if priority is not None else priority_for(job_type, trigger_source)),
                    config=dict(config or {}),
                    attempt=attempt,
                    run_id=run_id,
                    user_id=user_id,
                    enqueued_at=now,
                    available_at=now + timedelta(seconds=max(delay, 0.0)),
                )
            )

        logger.debug(
            "job_enqueued",
            job_id=job_id,
            job_type=job_type.value,
            installation_id=str(installation_id),
            delay_s=delay,
            attempt=attempt,
        )
        return job_id

    async def dequeue(self, worker_id: str = "", lease_seconds: int | None = None) -> Job | None:
        now = self._clock()
        lease_until = now + timedelta(seconds=lease_seconds or self.lease_seconds)
        visible = (
            QueuedJob.available_at <= now,
            or_(QueuedJob.leased_until.is_(None), QueuedJob.leased_until <= now),
        )

        async with db_session(self._sessions) as db:
            candidates = (
                await db.execute(
                    select(QueuedJob.seq)
                    .where(*visible)
                    .order_by(QueuedJob.priority, QueuedJob.seq)
                    .limit(_CLAIM_BATCH)
                    .with_for_update(skip_locked=True)
                )
            ).scalars().all()

            for seq in candidates:
                claimed = await db.execute(
                    update(QueuedJob)
                    .where(QueuedJob.seq == seq, *visible)
                    .values(
                        leased_until=lease_until,
                        lease_owner=worker_id or None,
                        deliveries=QueuedJob.deliveries + 1,
                    )
                )
                if claimed.rowcount != 1:
                    continue
                row = await db.get(QueuedJob, seq, populate_existing=True)
                if row.deliveries > 1:
                    logger.info("job_lease_expired", job_id=row.job_id, deliveries=row.deliveries)
                return _to_job(row)
        return None

    async def ack(self, job_id: str) -> None:
        async with db_session(self._sessions) as db:
            await db.execute(delete(QueuedJob).where(QueuedJob.job_id == job_id))

    async def extend_lease(self, job_id: str, seconds: int) -> bool:
        async with db_session(self._sessions) as db:
            result = await db.execute(
                update(QueuedJob)
                .where(QueuedJob.job_id == job_id)
                .values(leased_until=self._clock() + timedelta(seconds=seconds))
            )
            return result.rowcount == 1

    async def depth(self) -> int:
        async with db_session(self._sessions) as db:
            return await db.scalar(select(func.count()).select_from(QueuedJob))

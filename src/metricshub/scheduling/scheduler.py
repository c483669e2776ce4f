"""Scheduler: turns due installation slots into queued jobs.

Each tick scans installations whose ``next_run_at <= now`` (ordered by
``next_run_at`` then id), claims the slot by advancing ``next_run_at`` to the
next slot strictly after ``now`` and only then enqueues. The next slot is
therefore persisted before the run executes, a stalled loop skips forward
instead of bursting a backlog, and two ticks at the same instant enqueue a
slot once.

The tick itself is driven by APScheduler's ``AsyncIOScheduler``, which also
drives the periodic health sweep.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Callable

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from metricshub.config import settings
from metricshub.core.errors import QueueFull
from metricshub.db.models import Installation, JobType, TriggerSource, utcnow
from metricshub.installations.registry import InstallationRegistry, schedule_from_row
from metricshub.jobs.queue import JobQueue
from metricshub.observability.metrics import get_metrics
from metricshub.scheduling.schedule import compute_next_run

if TYPE_CHECKING:
    from metricshub.health.monitor import HealthMonitor

logger = structlog.get_logger()

_MISFIRE_GRACE_TIME_S = 30


@dataclass
class TickResult:
    enqueued: list[str] = field(default_factory=list)
    skipped: int = 0
    lost_claims: int = 0
    queue_full: bool = False


class Scheduler:
    def __init__(
        self,
        registry: InstallationRegistry,
        queue: JobQueue,
        health_monitor: HealthMonitor | None = None,
        tick_seconds: int | None = None,
        batch_size: int | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._registry = registry
        self._queue = queue
        self._health = health_monitor
        self._tick_seconds = tick_seconds or settings.scheduler_tick_seconds
        self._batch_size = batch_size or settings.scheduler_batch_size
        self._clock = clock
        self._tick_lock = asyncio.Lock()
        self.scheduler = AsyncIOScheduler(
            job_defaults={
                "coalesce": True,
                "max_instances": 1,
                "misfire_grace_time": _MISFIRE_GRACE_TIME_S,
            }
        )
        self._running = False

    # ═══════════════════════════════════════════════════════════════════════
    # Tick
    # ═══════════════════════════════════════════════════════════════════════

    async def tick(self, now: datetime | None = None) -> TickResult:
        """Scan due installations and enqueue at most one job per due slot."""
        async with self._tick_lock:
            now = now or self._clock()
            result = TickResult()
            due = await self._registry.list_due(now, limit=self._batch_size)
            for installation in due:
                try:
                    await self._process_due(installation, now, result)
                except QueueFull:
                    # Leave the rest due; they are picked up next tick
                    result.queue_full = True
                    break
            if due:
                logger.info(
                    "scheduler_tick",
                    due=len(due),
                    enqueued=len(result.enqueued),
                    skipped=result.skipped,
                    queue_full=result.queue_full,
                )
            return result

    async def _process_due(self, installation: Installation, now: datetime, result: TickResult) -> None:
        slot = installation.next_run_at
        schedule = schedule_from_row(installation.schedule)
        next_run = compute_next_run(schedule, now, anchor=slot) if schedule else None

        if not await self._registry.claim_slot(installation.id, slot, next_run):
            result.lost_claims += 1
            return

        if self._registry.is_unhealthy(installation):
            result.skipped += 1
            await get_metrics().scheduler_skipped("unhealthy")
            logger.warning(
                "scheduled_run_skipped",
                installation_id=str(installation.id),
                tenant_id=installation.tenant_id,
                slot=slot.isoformat(),
                next_run_at=next_run.isoformat() if next_run else None,
                reason="unhealthy",
            )
            return

        try:
            job_id = await self._queue.enqueue(
                JobType.EXECUTE_INTEGRATION,
                installation.id,
                TriggerSource.SCHEDULE,
                {"scheduled_for": slot.isoformat()},
            )
        except QueueFull:
            await self._registry.revert_claim(installation.id, next_run, slot)
            await get_metrics().queue_full()
            logger.warning("scheduler_queue_full", installation_id=str(installation.id))
            raise

        await self._registry.set_last_job(installation.id, job_id)
        result.enqueued.append(job_id)
        await get_metrics().scheduler_enqueued()
        logger.info(
            "scheduled_run_enqueued",
            installation_id=str(installation.id),
            job_id=job_id,
            slot=slot.isoformat(),
            next_run_at=next_run.isoformat() if next_run else None,
        )

    # ═══════════════════════════════════════════════════════════════════════
    # Loop
    # ═══════════════════════════════════════════════════════════════════════

    async def _run_tick(self) -> None:
        try:
            await self.tick()
        except Exception as e:
            logger.error("scheduler_tick_failed", error=str(e), exc_info=True)

    async def _run_health_sweep(self) -> None:
        try:
            await self._health.sweep()
        except Exception as e:
            logger.error("health_sweep_failed", error=str(e), exc_info=True)

    def start(self, *, health_interval_s: int | None = None) -> None:
        if self._running:
            return
        self.scheduler.add_job(
            self._run_tick,
            IntervalTrigger(seconds=self._tick_seconds),
            id="scheduler_tick",
            name="Scheduler tick",
            replace_existing=True,
            next_run_time=utcnow(),
        )
        if self._health is not None:
            self.scheduler.add_job(
                self._run_health_sweep,
                IntervalTrigger(seconds=health_interval_s or settings.health_check_interval_s),
                id="health_sweep",
                name="Health sweep",
                replace_existing=True,
            )
        self.scheduler.start()
        self._running = True
        logger.info("scheduler_started", tick_seconds=self._tick_seconds, health=self._health is not None)

    def stop(self) -> None:
        if self._running:
            self.scheduler.shutdown(wait=False)
            self._running = False
            logger.info("scheduler_stopped")

    @property
    def running(self) -> bool:
        return self._running

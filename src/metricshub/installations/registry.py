"""Installation registry: durable installed-application state.

Owns the installations table and its schedule row. The scheduler, engine and
health monitor go through here for every installation read or write, so the
counter and slot-claim rules live in one place:

  - counters move only on terminal run transitions (``record_outcome``)
  - a due slot is claimed with a compare-and-set on ``next_run_at``
  - uninstall removes schedule, secrets, runs, health rows and queued jobs
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Callable

import structlog
from sqlalchemy import and_, delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from metricshub.core.errors import (
    AlreadyInstalled,
    ApplicationNotFound,
    InstallationNotFound,
    ScheduleConfigInvalid,
)
from metricshub.db.models import (
    Application,
    AutomationSchedule,
    ExecutionRun,
    HealthStatus,
    Installation,
    InstallationStatus,
    IntegrationHealth,
    QueuedJob,
    RunStatus,
    Secret,
    TriggerType,
    utcnow,
)
from metricshub.db.session import db_session
from metricshub.scheduling.schedule import (
    DEFAULT_FREQUENCY,
    ExecutionWindow,
    Schedule,
    compute_next_run,
)

logger = structlog.get_logger()


def is_scheduled(application: Application) -> bool:
    return application.trigger_type == TriggerType.SCHEDULE and application.is_executable


def schedule_from_row(row: AutomationSchedule | None) -> Schedule | None:
    """Rebuild the schedule value object from its persisted row."""
    if row is None or not row.is_active:
        return None
    return Schedule(
        timezone=row.timezone,
        interval_seconds=row.interval_seconds,
        cron_expression=row.cron_expression,
        window=ExecutionWindow(
            start_date=row.start_date,
            end_date=row.end_date,
            start_time=row.window_start,
            end_time=row.window_end,
        ),
    )


def _apply_schedule(row: AutomationSchedule, schedule: Schedule) -> None:
    row.cron_expression = schedule.cron_expression
    row.interval_seconds = schedule.interval_seconds
    row.timezone = schedule.timezone
    row.start_date = schedule.window.start_date
    row.end_date = schedule.window.end_date
    row.window_start = schedule.window.start_time
    row.window_end = schedule.window.end_time
    row.is_active = True


class InstallationRegistry:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._sessions = session_factory
        self._clock = clock

    # ═══════════════════════════════════════════════════════════════════════
    # Lifecycle
    # ═══════════════════════════════════════════════════════════════════════

    async def install(
        self,
        tenant_id: str,
        application_id: uuid.UUID,
        *,
        config: dict[str, Any] | None = None,
        frequency: str | None = None,
        timezone: str = "UTC",
        window: ExecutionWindow | None = None,
        name: str | None = None,
        created_by: str | None = None,
    ) -> Installation:
        """Install an application for a tenant.

        Raises:
            ApplicationNotFound: unknown or inactive application.
            AlreadyInstalled: the tenant already has this application.
            ScheduleConfigInvalid: frequency, timezone or window rejected.
        """
        now = self._clock()
        async with db_session(self._sessions) as db:
            app = await db.get(Application, application_id)
            if app is None or not app.is_active:
                raise ApplicationNotFound(application_id)

            existing = await db.scalar(
                select(Installation.id).where(
                    and_(Installation.tenant_id == tenant_id, Installation.application_id == application_id)
                )
            )
            if existing is not None:
                raise AlreadyInstalled(tenant_id, application_id)

            schedule: Schedule | None = None
            if is_scheduled(app):
                frequency = frequency or app.default_config.get("frequency") or DEFAULT_FREQUENCY
                if app.supported_frequencies and frequency not in app.supported_frequencies:
                    raise ScheduleConfigInvalid(
                        f"Frequency '{frequency}' not offered by {app.slug}; "
                        f"choose one of {', '.join(app.supported_frequencies)}"
                    )
                schedule = Schedule.from_frequency(frequency, timezone, window)

            installation = Installation(
                tenant_id=tenant_id,
                application_id=app.id,
                name=name or app.name,
                status=InstallationStatus.INSTALLING,
                config=dict(config or {}),
                frequency=frequency if schedule else None,
                timezone=timezone or "UTC",
                created_by=created_by,
            )
            db.add(installation)
            await db.flush()

            if schedule is not None:
                next_run = compute_next_run(schedule, now)
                row = AutomationSchedule(installation_id=installation.id, next_run_at=next_run)
                _apply_schedule(row, schedule)
                db.add(row)
                installation.next_run_at = next_run

            installation.status = InstallationStatus.ACTIVE
            installation_id = installation.id

        logger.info(
            "application_installed",
            tenant_id=tenant_id,
            installation_id=str(installation_id),
            application=app.slug,
            frequency=frequency if schedule else None,
        )
        return await self.get(installation_id)

    async def get(self, installation_id: uuid.UUID) -> Installation:
        async with db_session(self._sessions) as db:
            installation = await db.get(Installation, installation_id, populate_existing=True)
            if installation is None:
                raise InstallationNotFound(installation_id)
            return installation

    async def list_for_tenant(self, tenant_id: str) -> list[Installation]:
        async with db_session(self._sessions) as db:
            result = await db.execute(
                select(Installation)
                .where(Installation.tenant_id == tenant_id)
                .order_by(Installation.created_at, Installation.id)
            )
            return list(result.scalars().unique())

    async def update_settings(
        self,
        installation_id: uuid.UUID,
        *,
        config: dict[str, Any] | None = None,
        is_enabled: bool | None = None,
        frequency: str | None = None,
        timezone: str | None = None,
        window: ExecutionWindow | None = None,
        name: str | None = None,
    ) -> Installation:
        """Apply tenant-facing settings; schedule changes are re-validated."""
        now = self._clock()
        async with db_session(self._sessions) as db:
            installation = await db.get(Installation, installation_id, with_for_update=True)
            if installation is None:
                raise InstallationNotFound(installation_id)
            app = installation.application

            if config is not None:
                installation.config = dict(config)
            if name is not None:
                installation.name = name

            reschedule = False
            row: AutomationSchedule | None = None
            if is_scheduled(app):
                row = await db.scalar(
                    select(AutomationSchedule).where(AutomationSchedule.installation_id == installation.id)
                )
            if is_scheduled(app) and (frequency is not None or timezone is not None or window is not None):
                current = schedule_from_row(row)
                new_frequency = frequency or installation.frequency or DEFAULT_FREQUENCY
                if frequency and app.supported_frequencies and frequency not in app.supported_frequencies:
                    raise ScheduleConfigInvalid(
                        f"Frequency '{frequency}' not offered by {app.slug}"
                    )
                schedule = Schedule.from_frequency(
                    new_frequency,
                    timezone or installation.timezone,
                    window if window is not None else (current.window if current else None),
                )
                if row is None:
                    row = AutomationSchedule(installation_id=installation.id)
                    db.add(row)
                _apply_schedule(row, schedule)
                installation.frequency = new_frequency
                installation.timezone = schedule.timezone
                reschedule = True

            if is_enabled is not None and is_enabled != installation.is_enabled:
                installation.is_enabled = is_enabled
                if is_enabled:
                    reschedule = True
                    if installation.status in (InstallationStatus.ERROR, InstallationStatus.INACTIVE):
                        installation.status = InstallationStatus.ACTIVE
                        installation.status_reason = None

            if reschedule and is_scheduled(app):
                schedule = schedule_from_row(row)
                next_run = compute_next_run(schedule, now) if schedule else None
                installation.next_run_at = next_run
                if row is not None:
                    row.next_run_at = next_run

        logger.info(
            "installation_settings_updated",
            installation_id=str(installation_id),
            is_enabled=is_enabled,
            frequency=frequency,
            rescheduled=reschedule,
        )
        return await self.get(installation_id)

    async def uninstall(self, installation_id: uuid.UUID) -> None:
        async with db_session(self._sessions) as db:
            installation = await db.get(Installation, installation_id)
            if installation is None:
                raise InstallationNotFound(installation_id)
            tenant_id = installation.tenant_id

            await db.execute(delete(QueuedJob).where(QueuedJob.installation_id == installation_id))
            for model in (Secret, AutomationSchedule, ExecutionRun, IntegrationHealth):
                await db.execute(delete(model).where(model.installation_id == installation_id))
            await db.execute(delete(Installation).where(Installation.id == installation_id))

        logger.info("application_uninstalled", tenant_id=tenant_id, installation_id=str(installation_id))

    # ═══════════════════════════════════════════════════════════════════════
    # Scheduling
    # ═══════════════════════════════════════════════════════════════════════

    async def list_due(self, now: datetime, limit: int = 200) -> list[Installation]:
        """Enabled, active, scheduled installations whose slot has arrived."""
        async with db_session(self._sessions) as db:
            result = await db.execute(
                select(Installation)
                .join(Installation.application)
                .where(
                    Application.trigger_type == TriggerType.SCHEDULE,
                    Installation.is_enabled.is_(True),
                    Installation.status == InstallationStatus.ACTIVE,
                    Installation.next_run_at.is_not(None),
                    Installation.next_run_at <= now,
                )
                .order_by(Installation.next_run_at, Installation.id)
                .limit(limit)
            )
            return list(result.scalars().unique())

    async def claim_slot(
        self,
        installation_id: uuid.UUID,
        expected: datetime,
        next_run_at: datetime | None,
    ) -> bool:
        """Advance ``next_run_at`` only if it still equals *expected*."""
        async with db_session(self._sessions) as db:
            result = await db.execute(
                update(Installation)
                .where(Installation.id == installation_id, Installation.next_run_at == expected)
                .values(next_run_at=next_run_at)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                return False
            await db.execute(
                update(AutomationSchedule)
                .where(AutomationSchedule.installation_id == installation_id)
                .values(next_run_at=next_run_at, last_run_at=expected)
                .execution_options(synchronize_session=False)
            )
            return True

    async def revert_claim(
        self,
        installation_id: uuid.UUID,
        claimed: datetime | None,
        previous: datetime,
    ) -> None:
        async with db_session(self._sessions) as db:
            claimed_clause = (
                Installation.next_run_at.is_(None) if claimed is None else Installation.next_run_at == claimed
            )
            await db.execute(
                update(Installation)
                .where(Installation.id == installation_id, claimed_clause)
                .values(next_run_at=previous)
                .execution_options(synchronize_session=False)
            )
            await db.execute(
                update(AutomationSchedule)
                .where(AutomationSchedule.installation_id == installation_id)
                .values(next_run_at=previous)
                .execution_options(synchronize_session=False)
            )

    async def set_last_job(self, installation_id: uuid.UUID, job_id: str) -> None:
        async with db_session(self._sessions) as db:
            await db.execute(
                update(AutomationSchedule)
                .where(AutomationSchedule.installation_id == installation_id)
                .values(last_job_id=job_id)
                .execution_options(synchronize_session=False)
            )

    # ═══════════════════════════════════════════════════════════════════════
    # Run outcomes
    # ═══════════════════════════════════════════════════════════════════════

    async def record_outcome(
        self,
        installation_id: uuid.UUID,
        status: RunStatus,
        *,
        completed_at: datetime,
        error_message: str | None = None,
    ) -> None:
        """Terminal-run bookkeeping. Cancelled runs move no counter."""
        values: dict[str, Any] = {"last_run_at": completed_at}
        if status == RunStatus.SUCCESS:
            values.update(
                run_count=Installation.run_count + 1,
                success_count=Installation.success_count + 1,
                last_error_message=None,
            )
        elif status == RunStatus.ERROR:
            values.update(
                run_count=Installation.run_count + 1,
                error_count=Installation.error_count + 1,
                last_error_message=error_message,
            )
        elif status == RunStatus.CANCELLED:
            pass
        else:
            raise ValueError(f"record_outcome needs a terminal status, got {status.value}")

        async with db_session(self._sessions) as db:
            await db.execute(
                update(Installation)
                .where(Installation.id == installation_id)
                .values(**values)
                .execution_options(synchronize_session=False)
            )

    async def disable_for_credentials(self, installation_id: uuid.UUID, reason: str) -> None:
        """Stop scheduling until the tenant reconnects."""
        async with db_session(self._sessions) as db:
            await db.execute(
                update(Installation)
                .where(Installation.id == installation_id)
                .values(status=InstallationStatus.ERROR, is_enabled=False, status_reason=reason)
                .execution_options(synchronize_session=False)
            )
        logger.warning("installation_disabled", installation_id=str(installation_id), reason=reason)

    # ═══════════════════════════════════════════════════════════════════════
    # Health
    # ═══════════════════════════════════════════════════════════════════════

    async def list_for_health_check(self) -> list[Installation]:
        async with db_session(self._sessions) as db:
            result = await db.execute(
                select(Installation)
                .join(Installation.application)
                .where(
                    Installation.status == InstallationStatus.ACTIVE,
                    Application.provider_key.is_not(None),
                )
                .order_by(Installation.id)
            )
            return list(result.scalars().unique())

    async def record_health(self, record: IntegrationHealth) -> None:
        async with db_session(self._sessions) as db:
            db.add(record)
            await db.execute(
                update(Installation)
                .where(Installation.id == record.installation_id)
                .values(health_status=record.status, health_checked_at=record.checked_at)
                .execution_options(synchronize_session=False)
            )

    async def latest_health(self, installation_id: uuid.UUID) -> IntegrationHealth | None:
        async with db_session(self._sessions) as db:
            return await db.scalar(
                select(IntegrationHealth)
                .where(IntegrationHealth.installation_id == installation_id)
                .order_by(IntegrationHealth.checked_at.desc())
                .limit(1)
            )

    async def runs_started_since(self, installation_id: uuid.UUID, since: datetime) -> int:
        async with db_session(self._sessions) as db:
            count = await db.scalar(
                select(func.count(ExecutionRun.id)).where(
                    ExecutionRun.installation_id == installation_id,
                    ExecutionRun.started_at >= since,
                )
            )
            return int(count or 0)

    @staticmethod
    def is_unhealthy(installation: Installation) -> bool:
        return installation.health_status == HealthStatus.UNHEALTHY

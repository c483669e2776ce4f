"""ExecutionRun persistence.

A run is one logical job. Each attempt is appended to ``attempts`` and bumps
``attempt``; between attempts the run sits in ``retrying``. Once
``completed_at`` is set the row is never written again.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Callable

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from metricshub.core.errors import RunNotFound
from metricshub.db.models import ExecutionRun, RunStatus, TriggerSource, utcnow
from metricshub.db.session import db_session

_TERMINAL = (RunStatus.SUCCESS, RunStatus.ERROR, RunStatus.CANCELLED)


class RunRepository:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._sessions = session_factory
        self._clock = clock

    async def create(
        self,
        *,
        installation_id: uuid.UUID,
        tenant_id: str,
        job_id: str,
        triggered_by: TriggerSource,
        operation: str | None,
        params: dict[str, Any],
        user_id: str | None = None,
    ) -> ExecutionRun:
        """Insert a run already in its first attempt."""
        now = self._clock()
        run = ExecutionRun(
            id=uuid.uuid4(),
            installation_id=installation_id,
            tenant_id=tenant_id,
            job_id=job_id,
            status=RunStatus.RUNNING,
            triggered_by=triggered_by,
            triggered_by_user=user_id,
            operation=operation,
            params=params,
            attempt=1,
            attempts=[{"attempt": 1, "started_at": now.isoformat()}],
            logs=[],
            cancel_requested=False,
            started_at=now,
        )
        run.logs = [self._log_entry(run, "info", "Attempt 1 started")]
        async with db_session(self._sessions) as db:
            db.add(run)
        return run

    async def get(self, run_id: uuid.UUID) -> ExecutionRun | None:
        async with db_session(self._sessions) as db:
            return await db.get(ExecutionRun, run_id, populate_existing=True)

    async def list_recent(self, installation_id: uuid.UUID, limit: int = 20) -> list[ExecutionRun]:
        async with db_session(self._sessions) as db:
            result = await db.execute(
                select(ExecutionRun)
                .where(ExecutionRun.installation_id == installation_id)
                .order_by(ExecutionRun.started_at.desc(), ExecutionRun.id)
                .limit(limit)
            )
            return list(result.scalars())

    async def count_in_status(self, installation_id: uuid.UUID, status: RunStatus) -> int:
        async with db_session(self._sessions) as db:
            count = await db.scalar(
                select(func.count(ExecutionRun.id)).where(
                    ExecutionRun.installation_id == installation_id,
                    ExecutionRun.status == status,
                )
            )
            return int(count or 0)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def start_attempt(self, run_id: uuid.UUID, job_id: str) -> ExecutionRun | None:
        """Move a non-terminal run into ``running`` for its next attempt.

        Returns None if the run is gone or terminal. A run with a pending
        cancel is returned untouched so the caller can finish it.
        """
        now = self._clock()
        async with db_session(self._sessions) as db:
            run = await db.get(ExecutionRun, run_id, with_for_update=True, populate_existing=True)
            if run is None or run.status in _TERMINAL:
                return None
            if run.cancel_requested:
                return run
            run.attempt += 1
            run.status = RunStatus.RUNNING
            run.job_id = job_id
            run.next_attempt_at = None
            run.attempts = [*run.attempts, {"attempt": run.attempt, "started_at": now.isoformat()}]
            run.logs = [*run.logs, self._log_entry(run, "info", f"Attempt {run.attempt} started")]
            return run

    async def append_log(
        self,
        run_id: uuid.UUID,
        message: str,
        level: str = "info",
        data: dict[str, Any] | None = None,
    ) -> None:
        async with db_session(self._sessions) as db:
            run = await db.get(ExecutionRun, run_id, with_for_update=True)
            if run is None or run.completed_at is not None:
                return
            run.logs = [*run.logs, self._log_entry(run, level, message, data)]

    async def mark_retrying(
        self,
        run_id: uuid.UUID,
        *,
        next_attempt_at: datetime,
        error_message: str,
        error_kind: str,
        error_code: str | None,
    ) -> None:
        async with db_session(self._sessions) as db:
            run = await db.get(ExecutionRun, run_id, with_for_update=True)
            if run is None or run.completed_at is not None:
                return
            run.status = RunStatus.RETRYING
            run.next_attempt_at = next_attempt_at
            run.attempts = self._close_attempt(run, "retrying", error_kind, error_code, error_message)
            run.logs = [
                *run.logs,
                self._log_entry(
                    run, "warning", f"Attempt {run.attempt} failed, retrying",
                    {"error_kind": error_kind, "error_code": error_code, "next_attempt_at": next_attempt_at.isoformat()},
                ),
            ]

    async def finish(
        self,
        run_id: uuid.UUID,
        status: RunStatus,
        *,
        results: dict[str, Any] | None = None,
        error_message: str | None = None,
        error_kind: str | None = None,
        error_code: str | None = None,
    ) -> ExecutionRun | None:
        """Terminal transition. Returns None if the run was already terminal."""
        now = self._clock()
        async with db_session(self._sessions) as db:
            run = await db.get(ExecutionRun, run_id, with_for_update=True, populate_existing=True)
            if run is None or run.completed_at is not None:
                return None
            run.status = status
            run.results = results
            run.error_message = error_message
            run.error_kind = error_kind
            run.error_code = error_code
            run.next_attempt_at = None
            run.completed_at = now
            run.duration_ms = max(0, int((now - run.started_at).total_seconds() * 1000))
            if run.attempts and "finished_at" not in run.attempts[-1]:
                run.attempts = self._close_attempt(run, status.value, error_kind, error_code, error_message)
            level = "info" if status == RunStatus.SUCCESS else "error" if status == RunStatus.ERROR else "warning"
            run.logs = [*run.logs, self._log_entry(run, level, f"Run finished: {status.value}", {"error": error_message})]
            return run

    async def request_cancel(self, run_id: uuid.UUID) -> ExecutionRun:
        async with db_session(self._sessions) as db:
            run = await db.get(ExecutionRun, run_id, with_for_update=True, populate_existing=True)
            if run is None:
                raise RunNotFound(run_id)
            if run.completed_at is None:
                run.cancel_requested = True
            return run

    async def is_cancel_requested(self, run_id: uuid.UUID) -> bool:
        async with db_session(self._sessions) as db:
            flag = await db.scalar(select(ExecutionRun.cancel_requested).where(ExecutionRun.id == run_id))
            return bool(flag)

    async def find_by_job(self, job_id: str) -> uuid.UUID | None:
        """Run last touched by *job_id*; a redelivered job resumes it."""
        async with db_session(self._sessions) as db:
            return await db.scalar(select(ExecutionRun.id).where(ExecutionRun.job_id == job_id).limit(1))

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _log_entry(
        self,
        run: ExecutionRun,
        level: str,
        message: str,
        data: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        return {
            "sequence": len(run.logs or []) + 1,
            "at": self._clock().isoformat(),
            "level": level,
            "message": message,
            "data": data or {},
        }

    def _close_attempt(
        self,
        run: ExecutionRun,
        outcome: str,
        error_kind: str | None,
        error_code: str | None,
        error_message: str | None,
    ) -> list[dict[str, Any]]:
        attempts = [dict(a) for a in run.attempts]
        if not attempts:
            return attempts
        attempts[-1].update(
            finished_at=self._clock().isoformat(),
            outcome=outcome,
            error_kind=error_kind,
            error_code=error_code,
            error_message=error_message,
        )
        return attempts

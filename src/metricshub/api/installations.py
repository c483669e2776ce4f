"""Installation HTTP endpoints consumed by the dashboard."""

from __future__ import annotations

import uuid
from datetime import date, datetime, time
from typing import TYPE_CHECKING, Any

from fastapi import APIRouter, Query, Request, Response, status
from pydantic import BaseModel, ConfigDict, Field

from metricshub.db.models import ExecutionRun, Installation, IntegrationHealth
from metricshub.scheduling.schedule import ExecutionWindow

if TYPE_CHECKING:
    from metricshub.app import Services

router = APIRouter(prefix="/installations", tags=["installations"])


def _services(request: Request) -> Services:
    return request.app.state.services


# ═══════════════════════════════════════════════════════════════════════════════
# SCHEMAS
# ═══════════════════════════════════════════════════════════════════════════════

class WindowIn(BaseModel):
    start_date: date | None = None
    end_date: date | None = None
    window_start: time | None = None
    window_end: time | None = None

    def to_window(self) -> ExecutionWindow:
        return ExecutionWindow(
            start_date=self.start_date,
            end_date=self.end_date,
            start_time=self.window_start,
            end_time=self.window_end,
        )


class InstallRequest(BaseModel):
    tenant_id: str = Field(min_length=1, max_length=64)
    application_id: uuid.UUID
    name: str | None = None
    config: dict[str, Any] = Field(default_factory=dict)
    frequency: str | None = None
    timezone: str = "UTC"
    window: WindowIn | None = None
    created_by: str | None = None


class SettingsUpdate(BaseModel):
    name: str | None = None
    config: dict[str, Any] | None = None
    is_enabled: bool | None = None
    frequency: str | None = None
    timezone: str | None = None
    window: WindowIn | None = None


class TriggerRequest(BaseModel):
    user_id: str | None = None
    config: dict[str, Any] = Field(default_factory=dict)


class InstallationOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    tenant_id: str
    application_id: uuid.UUID
    application_slug: str
    name: str | None
    status: str
    status_reason: str | None
    is_enabled: bool
    config: dict[str, Any]
    frequency: str | None
    timezone: str
    next_run_at: datetime | None
    last_run_at: datetime | None
    run_count: int
    success_count: int
    error_count: int
    last_error_message: str | None
    health_status: str
    health_checked_at: datetime | None

    @classmethod
    def from_model(cls, inst: Installation) -> InstallationOut:
        return cls(
            id=inst.id,
            tenant_id=inst.tenant_id,
            application_id=inst.application_id,
            application_slug=inst.application.slug,
            name=inst.name,
            status=inst.status.value,
            status_reason=inst.status_reason,
            is_enabled=inst.is_enabled,
            config=inst.config or {},
            frequency=inst.frequency,
            timezone=inst.timezone,
            next_run_at=inst.next_run_at,
            last_run_at=inst.last_run_at,
            run_count=inst.run_count,
            success_count=inst.success_count,
            error_count=inst.error_count,
            last_error_message=inst.last_error_message,
            health_status=inst.health_status.value,
            health_checked_at=inst.health_checked_at,
        )


class RunOut(BaseModel):
    id: uuid.UUID
    installation_id: uuid.UUID
    status: str
    triggered_by: str
    operation: str | None
    attempt: int
    started_at: datetime
    completed_at: datetime | None
    duration_ms: int | None
    next_attempt_at: datetime | None
    cancel_requested: bool
    error_message: str | None
    error_kind: str | None
    results: dict[str, Any] | None
    attempts: list[dict[str, Any]]
    logs: list[dict[str, Any]]

    @classmethod
    def from_model(cls, run: ExecutionRun) -> RunOut:
        return cls(
            id=run.id,
            installation_id=run.installation_id,
            status=run.status.value,
            triggered_by=run.triggered_by.value,
            operation=run.operation,
            attempt=run.attempt,
            started_at=run.started_at,
            completed_at=run.completed_at,
            duration_ms=run.duration_ms,
            next_attempt_at=run.next_attempt_at,
            cancel_requested=run.cancel_requested,
            error_message=run.error_message,
            error_kind=run.error_kind,
            results=run.results,
            attempts=run.attempts or [],
            logs=run.logs or [],
        )


class HealthOut(BaseModel):
    installation_id: uuid.UUID
    status: str
    api_status: str | None = None
    api_response_code: int | None = None
    api_error_message: str | None = None
    response_time_ms: int | None = None
    credentials_valid: bool | None = None
    credentials_expire_at: datetime | None = None
    daily_api_calls: int = 0
    daily_quota_limit: int | None = None
    checked_at: datetime | None = None

    @classmethod
    def from_model(cls, installation_id: uuid.UUID, health: IntegrationHealth | None) -> HealthOut:
        if health is None:
            return cls(installation_id=installation_id, status="unknown")
        return cls(
            installation_id=installation_id,
            status=health.status.value,
            api_status=health.api_status.value if health.api_status else None,
            api_response_code=health.api_response_code,
            api_error_message=health.api_error_message,
            response_time_ms=health.response_time_ms,
            credentials_valid=health.credentials_valid,
            credentials_expire_at=health.credentials_expire_at,
            daily_api_calls=health.daily_api_calls,
            daily_quota_limit=health.daily_quota_limit,
            checked_at=health.checked_at,
        )


# ═══════════════════════════════════════════════════════════════════════════════
# ROUTES
# ═══════════════════════════════════════════════════════════════════════════════

@router.post("", status_code=status.HTTP_201_CREATED, response_model=InstallationOut)
async def install(body: InstallRequest, request: Request) -> InstallationOut:
    inst = await _services(request).registry.install(
        body.tenant_id,
        body.application_id,
        config=body.config,
        frequency=body.frequency,
        timezone=body.timezone,
        window=body.window.to_window() if body.window else None,
        name=body.name,
        created_by=body.created_by,
    )
    return InstallationOut.from_model(inst)


@router.get("", response_model=list[InstallationOut])
async def list_installations(request: Request, tenant_id: str = Query(min_length=1)) -> list[InstallationOut]:
    return [InstallationOut.from_model(i) for i in await _services(request).registry.list_for_tenant(tenant_id)]


@router.get("/{installation_id}", response_model=InstallationOut)
async def get_installation(installation_id: uuid.UUID, request: Request) -> InstallationOut:
    return InstallationOut.from_model(await _services(request).registry.get(installation_id))


@router.patch("/{installation_id}", response_model=InstallationOut)
async def update_installation(installation_id: uuid.UUID, body: SettingsUpdate, request: Request) -> InstallationOut:
    inst = await _services(request).registry.update_settings(
        installation_id,
        config=body.config,
        is_enabled=body.is_enabled,
        frequency=body.frequency,
        timezone=body.timezone,
        window=body.window.to_window() if body.window else None,
        name=body.name,
    )
    return InstallationOut.from_model(inst)


@router.delete("/{installation_id}", status_code=status.HTTP_204_NO_CONTENT)
async def uninstall(installation_id: uuid.UUID, request: Request) -> Response:
    await _services(request).registry.uninstall(installation_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{installation_id}/trigger", status_code=status.HTTP_202_ACCEPTED)
async def trigger(installation_id: uuid.UUID, request: Request, body: TriggerRequest | None = None) -> dict[str, str]:
    body = body or TriggerRequest()
    job_id = await _services(request).engine.trigger(installation_id, user_id=body.user_id, config=body.config)
    return {"installation_id": str(installation_id), "job_id": job_id, "status": "queued"}


@router.get("/{installation_id}/health", response_model=HealthOut)
async def get_health(installation_id: uuid.UUID, request: Request) -> HealthOut:
    services = _services(request)
    await services.registry.get(installation_id)
    return HealthOut.from_model(installation_id, await services.registry.latest_health(installation_id))


@router.get("/{installation_id}/runs", response_model=list[RunOut])
async def list_runs(
    installation_id: uuid.UUID,
    request: Request,
    limit: int = Query(20, ge=1, le=100),
) -> list[RunOut]:
    services = _services(request)
    await services.registry.get(installation_id)
    return [RunOut.from_model(r) for r in await services.runs.list_recent(installation_id, limit)]


@router.post("/{installation_id}/runs/{run_id}/cancel", response_model=RunOut)
async def cancel_run(installation_id: uuid.UUID, run_id: uuid.UUID, request: Request) -> RunOut:
    return RunOut.from_model(await _services(request).engine.cancel_run(installation_id, run_id))

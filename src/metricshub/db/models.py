"""MetricsHub database models: installed applications and their execution state.

Design principles:
- Every tenant-owned row carries tenant_id for isolation
- JSON columns (JSONB on PostgreSQL) for provider-specific config and results
- Timestamps are timezone-aware and always read back as UTC
- Child rows (secrets, schedule, runs, health) cascade with their installation
"""

from __future__ import annotations

import json
import uuid
from datetime import date, datetime, time, timezone
from enum import Enum
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Time,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB as _JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy.types import TypeDecorator


class JSONB(TypeDecorator):
    """JSON column (JSONB on PostgreSQL) that handles UUID, datetime, and Enum serialization."""

    impl = JSON
    cache_ok = True

    def load_dialect_impl(self, dialect: Any) -> Any:
        if dialect.name == "postgresql":
            return dialect.type_descriptor(_JSONB())
        return dialect.type_descriptor(JSON())

    def process_bind_param(self, value: Any, dialect: Any) -> Any:
        """Convert Python objects to JSON-serializable format before storing."""
        if value is None:
            return None
        return json.loads(json.dumps(value, default=self._json_default))

    @staticmethod
    def _json_default(obj: Any) -> Any:
        """JSON serializer for objects not serializable by default."""
        if isinstance(obj, uuid.UUID):
            return str(obj)
        if isinstance(obj, (datetime, date, time)):
            return obj.isoformat()
        if isinstance(obj, Enum):
            return obj.value
        raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


class UTCDateTime(TypeDecorator):
    """Timezone-aware timestamp that is stored and returned in UTC.

    SQLite drops tzinfo on the way back; naive values read from the
    database are taken to be UTC.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError("naive datetime bound to a UTC column")
        return value.astimezone(timezone.utc)

    def process_result_value(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Base class with common utilities."""

    type_annotation_map = {
        dict[str, Any]: JSONB,
        list[str]: JSONB,
        list[dict[str, Any]]: JSONB,
        datetime: UTCDateTime,
        uuid.UUID: Uuid,
    }

    def to_dict(self) -> dict[str, Any]:
        """Convert model to dict for serialization."""
        return {
            c.name: getattr(self, c.name)
            for c in self.__table__.columns
        }


def _enum(enum_cls: type[Enum]) -> SQLEnum:
    return SQLEnum(enum_cls, values_callable=lambda x: [e.value for e in x])


# ═══════════════════════════════════════════════════════════════════════════════
# ENUMS
# ═══════════════════════════════════════════════════════════════════════════════

class ExecutionType(str, Enum):
    """Where an application does its work."""
    UI_ONLY = "ui_only"    # Dashboard panel, never executed
    BACKEND = "backend"    # Server-side integration
    BOTH = "both"


class TriggerType(str, Enum):
    SCHEDULE = "schedule"
    WEBHOOK = "webhook"
    MANUAL = "manual"
    EVENT = "event"


class InstallationStatus(str, Enum):
    """Installation lifecycle."""
    PENDING = "pending"          # Created, not yet provisioned
    INSTALLING = "installing"    # Provisioning in progress
    ACTIVE = "active"            # Working
    INACTIVE = "inactive"        # Turned off by the tenant
    ERROR = "error"              # Credential problem, needs reconnect


class RunStatus(str, Enum):
    """Execution run states."""
    RUNNING = "running"          # Attempt in flight, lock held
    RETRYING = "retrying"        # Waiting for a backoff retry, lock released
    SUCCESS = "success"
    ERROR = "error"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (RunStatus.SUCCESS, RunStatus.ERROR, RunStatus.CANCELLED)


class TriggerSource(str, Enum):
    MANUAL = "manual"
    SCHEDULE = "schedule"
    WEBHOOK = "webhook"
    USER = "user"


class JobType(str, Enum):
    EXECUTE_INTEGRATION = "execute_integration"
    RUN_AUTOMATION = "run_automation"
    HEALTH_CHECK = "health_check"


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"
    UNKNOWN = "unknown"


class ApiStatus(str, Enum):
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    RATE_LIMITED = "rate_limited"
    UNAUTHORIZED = "unauthorized"
    ERROR = "error"


# ═══════════════════════════════════════════════════════════════════════════════
# CATALOG
# ═══════════════════════════════════════════════════════════════════════════════

class Application(Base):
    """Catalog entry. Immutable once published; new behavior gets a new version."""

    __tablename__ = "applications"
    __table_args__ = (
        UniqueConstraint("slug", "version", name="uq_applications_slug_version"),
        {"comment": "Installable applications catalog"},
    )

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    slug: Mapped[str] = mapped_column(String(100), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    version: Mapped[str] = mapped_column(String(20), nullable=False, default="1.0.0")

    execution_type: Mapped[ExecutionType] = mapped_column(
        _enum(ExecutionType), default=ExecutionType.BACKEND, nullable=False
    )
    trigger_type: Mapped[TriggerType] = mapped_column(
        _enum(TriggerType), default=TriggerType.SCHEDULE, nullable=False
    )

    # Adapter dispatch
    provider_key: Mapped[str | None] = mapped_column(
        String(50), nullable=True,
        comment="google_ads|google_analytics|google_sheets|gmail|..."
    )
    operation: Mapped[str | None] = mapped_column(
        String(100), nullable=True,
        comment="Default adapter operation, e.g. campaigns.list"
    )
    default_config: Mapped[dict[str, Any]] = mapped_column(default=dict)
    required_secrets: Mapped[list[str]] = mapped_column(default=list)
    supported_frequencies: Mapped[list[str]] = mapped_column(default=list)

    # Limits
    timeout_seconds: Mapped[int] = mapped_column(Integer, default=300, nullable=False)
    memory_limit: Mapped[str | None] = mapped_column(String(20), nullable=True)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    created_at: Mapped[datetime] = mapped_column(default=utcnow, server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        default=utcnow, server_default=func.now(), onupdate=utcnow
    )

    @property
    def is_executable(self) -> bool:
        return self.execution_type in (ExecutionType.BACKEND, ExecutionType.BOTH)


# ═══════════════════════════════════════════════════════════════════════════════
# INSTALLATIONS
# ═══════════════════════════════════════════════════════════════════════════════

class Installation(Base):
    """A tenant's configured instance of an application."""

    __tablename__ = "installations"
    __table_args__ = (
        UniqueConstraint("tenant_id", "application_id", name="uq_installations_tenant_app"),
        Index("ix_installations_tenant", "tenant_id", "status"),
        Index("ix_installations_next_run", "next_run_at", "id"),
        {"comment": "Installed applications per tenant"},
    )

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    application_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("applications.id", ondelete="RESTRICT"), nullable=False
    )
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)

    status: Mapped[InstallationStatus] = mapped_column(
        _enum(InstallationStatus), default=InstallationStatus.PENDING, nullable=False
    )
    status_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_enabled: Mapped[bool] = mapped_column(
        Boolean, default=True, nullable=False,
        comment="Scheduling armed/disarmed, independent of status"
    )
    config: Mapped[dict[str, Any]] = mapped_column(default=dict)

    # Schedule source
    frequency: Mapped[str | None] = mapped_column(String(100), nullable=True)
    timezone: Mapped[str] = mapped_column(String(64), default="UTC", nullable=False)
    next_run_at: Mapped[datetime | None] = mapped_column(nullable=True)
    last_run_at: Mapped[datetime | None] = mapped_column(nullable=True)

    # Counters, only touched on terminal run transitions
    run_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    success_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    error_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Latest health signal, written by the health monitor
    health_status: Mapped[HealthStatus] = mapped_column(
        _enum(HealthStatus), default=HealthStatus.UNKNOWN, nullable=False
    )
    health_checked_at: Mapped[datetime | None] = mapped_column(nullable=True)

    # Per-installation execution lease
    lock_owner: Mapped[str | None] = mapped_column(String(64), nullable=True)
    lock_expires_at: Mapped[datetime | None] = mapped_column(nullable=True)

    created_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=utcnow, server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        default=utcnow, server_default=func.now(), onupdate=utcnow
    )

    application: Mapped[Application] = relationship(lazy="joined", innerjoin=True)
    schedule: Mapped[AutomationSchedule | None] = relationship(
        lazy="selectin", uselist=False, viewonly=True
    )


class Secret(Base):
    """Encrypted credential value, tenant scoped and optionally installation scoped."""

    __tablename__ = "secrets"
    __table_args__ = (
        UniqueConstraint("tenant_id", "installation_id", "key", name="uq_secrets_scope_key"),
        Index("ix_secrets_tenant_key", "tenant_id", "key"),
        {"comment": "Encrypted tokens and API keys"},
    )

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    installation_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("installations.id", ondelete="CASCADE"), nullable=True
    )
    key: Mapped[str] = mapped_column(String(255), nullable=False)

    # iv:tag:salt:ciphertext (hex)
    encrypted_value: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    last_used_at: Mapped[datetime | None] = mapped_column(nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=utcnow, server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        default=utcnow, server_default=func.now(), onupdate=utcnow
    )


class AutomationSchedule(Base):
    """Normalized schedule owned by a scheduled installation."""

    __tablename__ = "automation_schedules"
    __table_args__ = (
        {"comment": "One schedule per scheduled installation"},
    )

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    installation_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("installations.id", ondelete="CASCADE"), nullable=False, unique=True
    )

    # Either a five-field cron expression or an interval
    cron_expression: Mapped[str | None] = mapped_column(String(100), nullable=True)
    interval_seconds: Mapped[int | None] = mapped_column(Integer, nullable=True)
    timezone: Mapped[str] = mapped_column(String(64), default="UTC", nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    # Optional active window, evaluated in `timezone`
    start_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    end_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    window_start: Mapped[time | None] = mapped_column(Time, nullable=True)
    window_end: Mapped[time | None] = mapped_column(Time, nullable=True)

    next_run_at: Mapped[datetime | None] = mapped_column(nullable=True)
    last_run_at: Mapped[datetime | None] = mapped_column(nullable=True)
    last_job_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    created_at: Mapped[datetime] = mapped_column(default=utcnow, server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        default=utcnow, server_default=func.now(), onupdate=utcnow
    )


# ═══════════════════════════════════════════════════════════════════════════════
# EXECUTION
# ═══════════════════════════════════════════════════════════════════════════════

class ExecutionRun(Base):
    """One logical execution of an installation, with every attempt recorded."""

    __tablename__ = "execution_runs"
    __table_args__ = (
        Index("ix_execution_runs_installation_status", "installation_id", "status"),
        Index("ix_execution_runs_installation_started", "installation_id", "started_at"),
        {"comment": "Execution history"},
    )

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    installation_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("installations.id", ondelete="CASCADE"), nullable=False
    )
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    job_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    status: Mapped[RunStatus] = mapped_column(
        _enum(RunStatus), default=RunStatus.RUNNING, nullable=False
    )
    triggered_by: Mapped[TriggerSource] = mapped_column(
        _enum(TriggerSource), default=TriggerSource.SCHEDULE, nullable=False
    )
    triggered_by_user: Mapped[str | None] = mapped_column(String(64), nullable=True)

    operation: Mapped[str | None] = mapped_column(String(100), nullable=True)
    params: Mapped[dict[str, Any]] = mapped_column(default=dict)

    attempt: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    attempts: Mapped[list[dict[str, Any]]] = mapped_column(default=list)
    next_attempt_at: Mapped[datetime | None] = mapped_column(nullable=True)
    cancel_requested: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    results: Mapped[dict[str, Any] | None] = mapped_column(nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_kind: Mapped[str | None] = mapped_column(String(30), nullable=True)
    error_code: Mapped[str | None] = mapped_column(String(50), nullable=True)

    started_at: Mapped[datetime] = mapped_column(nullable=False, default=utcnow)
    completed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    duration_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)

    # Ordered entries: {sequence, at, level, message, data}
    logs: Mapped[list[dict[str, Any]]] = mapped_column(default=list)


class IntegrationHealth(Base):
    """Point-in-time probe result for one installation."""

    __tablename__ = "integration_health"
    __table_args__ = (
        Index("ix_integration_health_installation_checked", "installation_id", "checked_at"),
        {"comment": "Health monitor probe history"},
    )

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    installation_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("installations.id", ondelete="CASCADE"), nullable=False
    )

    status: Mapped[HealthStatus] = mapped_column(
        _enum(HealthStatus), default=HealthStatus.UNKNOWN, nullable=False
    )
    response_time_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)

    api_status: Mapped[ApiStatus | None] = mapped_column(_enum(ApiStatus), nullable=True)
    api_response_code: Mapped[int | None] = mapped_column(Integer, nullable=True)
    api_error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    credentials_valid: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    credentials_expire_at: Mapped[datetime | None] = mapped_column(nullable=True)

    daily_api_calls: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    daily_quota_limit: Mapped[int | None] = mapped_column(Integer, nullable=True)

    details: Mapped[dict[str, Any]] = mapped_column(default=dict)
    checked_at: Mapped[datetime] = mapped_column(nullable=False, default=utcnow)


# ═══════════════════════════════════════════════════════════════════════════════
# JOB QUEUE
# ═══════════════════════════════════════════════════════════════════════════════

class QueuedJob(Base):
    """Durable job queue row. Deleted on ack."""

    __tablename__ = "queued_jobs"
    __table_args__ = (
        Index("ix_queued_jobs_ready", "priority", "seq"),
        Index("ix_queued_jobs_available", "available_at"),
        {"comment": "Database-backed job queue"},
    )

    seq: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[str] = mapped_column(String(36), nullable=False, unique=True)

    job_type: Mapped[str] = mapped_column(String(50), nullable=False)
    installation_id: Mapped[uuid.UUID] = mapped_column(nullable=False)
    trigger_source: Mapped[str] = mapped_column(String(20), nullable=False)
    priority: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    config: Mapped[dict[str, Any]] = mapped_column(default=dict)
    attempt: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    run_id: Mapped[uuid.UUID | None] = mapped_column(nullable=True)
    user_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    enqueued_at: Mapped[datetime] = mapped_column(nullable=False)
    available_at: Mapped[datetime] = mapped_column(nullable=False)
    leased_until: Mapped[datetime | None] = mapped_column(nullable=True)
    lease_owner: Mapped[str | None] = mapped_column(String(64), nullable=True)
    deliveries: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

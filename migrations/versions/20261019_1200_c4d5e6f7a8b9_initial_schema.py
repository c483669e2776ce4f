"""Initial schema: applications, installations, secrets, schedules, runs, health, job queue.

Revision ID: c4d5e6f7a8b9
Revises:
Create Date: 2026-10-19 12:00:00.000000+00:00
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# Revision identifiers
revision: str = "c4d5e6f7a8b9"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

_ENUMS = {
    "executiontype": ("ui_only", "backend", "both"),
    "triggertype": ("schedule", "webhook", "manual", "event"),
    "installationstatus": ("pending", "installing", "active", "inactive", "error"),
    "runstatus": ("running", "retrying", "success", "error", "cancelled"),
    "triggersource": ("manual", "schedule", "webhook", "user"),
    "healthstatus": ("healthy", "degraded", "unhealthy", "unknown"),
    "apistatus": ("connected", "disconnected", "rate_limited", "unauthorized", "error"),
}


def _enum(name: str) -> postgresql.ENUM:
    return postgresql.ENUM(*_ENUMS[name], name=name, create_type=False)


def upgrade() -> None:
    # Create custom enums
    for name, values in _ENUMS.items():
        quoted = ", ".join(f"'{v}'" for v in values)
        op.execute(f"CREATE TYPE {name} AS ENUM ({quoted})")

    # Applications catalog
    op.create_table(
        "applications",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("slug", sa.String(100), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("version", sa.String(20), nullable=False, server_default="1.0.0"),
        sa.Column("execution_type", _enum("executiontype"), nullable=False, server_default="backend"),
        sa.Column("trigger_type", _enum("triggertype"), nullable=False, server_default="schedule"),
        sa.Column("provider_key", sa.String(50), nullable=True),
        sa.Column("operation", sa.String(100), nullable=True),
        sa.Column("default_config", postgresql.JSONB(), server_default="{}"),
        sa.Column("required_secrets", postgresql.JSONB(), server_default="[]"),
        sa.Column("supported_frequencies", postgresql.JSONB(), server_default="[]"),
        sa.Column("timeout_seconds", sa.Integer(), nullable=False, server_default="300"),
        sa.Column("memory_limit", sa.String(20), nullable=True),
        sa.Column("is_active", sa.Boolean(), server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("slug", "version", name="uq_applications_slug_version"),
        comment="Installable applications catalog",
    )

    # Installations
    op.create_table(
        "installations",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column("application_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("applications.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("name", sa.String(255), nullable=True),
        sa.Column("status", _enum("installationstatus"), nullable=False, server_default="pending"),
        sa.Column("status_reason", sa.Text(), nullable=True),
        sa.Column("is_enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("config", postgresql.JSONB(), server_default="{}"),
        sa.Column("frequency", sa.String(100), nullable=True),
        sa.Column("timezone", sa.String(64), nullable=False, server_default="UTC"),
        sa.Column("next_run_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_run_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("run_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("success_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("error_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_error_message", sa.Text(), nullable=True),
        sa.Column("health_status", _enum("healthstatus"), nullable=False, server_default="unknown"),
        sa.Column("health_checked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("lock_owner", sa.String(64), nullable=True),
        sa.Column("lock_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_by", sa.String(64), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("tenant_id", "application_id", name="uq_installations_tenant_app"),
        comment="Installed applications per tenant",
    )
    op.create_index("ix_installations_tenant", "installations", ["tenant_id", "status"])
    op.create_index("ix_installations_next_run", "installations", ["next_run_at", "id"])

    # Secrets
    op.create_table(
        "secrets",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column("installation_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("installations.id", ondelete="CASCADE"), nullable=True),
        sa.Column("key", sa.String(255), nullable=False),
        sa.Column("encrypted_value", sa.Text(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("last_used_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("tenant_id", "installation_id", "key", name="uq_secrets_scope_key"),
        comment="Encrypted tokens and API keys",
    )
    op.create_index("ix_secrets_tenant_key", "secrets", ["tenant_id", "key"])

    # Schedules
    op.create_table(
        "automation_schedules",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("installation_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("installations.id", ondelete="CASCADE"), nullable=False, unique=True),
        sa.Column("cron_expression", sa.String(100), nullable=True),
        sa.Column("interval_seconds", sa.Integer(), nullable=True),
        sa.Column("timezone", sa.String(64), nullable=False, server_default="UTC"),
        sa.Column("is_active", sa.Boolean(), server_default=sa.true()),
        sa.Column("start_date", sa.Date(), nullable=True),
        sa.Column("end_date", sa.Date(), nullable=True),
        sa.Column("window_start", sa.Time(), nullable=True),
        sa.Column("window_end", sa.Time(), nullable=True),
        sa.Column("next_run_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_run_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_job_id", sa.String(64), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        comment="One schedule per scheduled installation",
    )

    # Execution runs
    op.create_table(
        "execution_runs",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("installation_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("installations.id", ondelete="CASCADE"), nullable=False),
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column("job_id", sa.String(64), nullable=True),
        sa.Column("status", _enum("runstatus"), nullable=False, server_default="running"),
        sa.Column("triggered_by", _enum("triggersource"), nullable=False, server_default="schedule"),
        sa.Column("triggered_by_user", sa.String(64), nullable=True),
        sa.Column("operation", sa.String(100), nullable=True),
        sa.Column("params", postgresql.JSONB(), server_default="{}"),
        sa.Column("attempt", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("attempts", postgresql.JSONB(), server_default="[]"),
        sa.Column("next_attempt_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancel_requested", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("results", postgresql.JSONB(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("error_kind", sa.String(30), nullable=True),
        sa.Column("error_code", sa.String(50), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("duration_ms", sa.Integer(), nullable=True),
        sa.Column("logs", postgresql.JSONB(), server_default="[]"),
        comment="Execution history",
    )
    op.create_index("ix_execution_runs_installation_status", "execution_runs", ["installation_id", "status"])
    op.create_index("ix_execution_runs_installation_started", "execution_runs", ["installation_id", "started_at"])

    # Health probes
    op.create_table(
        "integration_health",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("installation_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("installations.id", ondelete="CASCADE"), nullable=False),
        sa.Column("status", _enum("healthstatus"), nullable=False, server_default="unknown"),
        sa.Column("response_time_ms", sa.Integer(), nullable=True),
        sa.Column("api_status", _enum("apistatus"), nullable=True),
        sa.Column("api_response_code", sa.Integer(), nullable=True),
        sa.Column("api_error_message", sa.Text(), nullable=True),
        sa.Column("credentials_valid", sa.Boolean(), nullable=True),
        sa.Column("credentials_expire_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("daily_api_calls", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("daily_quota_limit", sa.Integer(), nullable=True),
        sa.Column("details", postgresql.JSONB(), server_default="{}"),
        sa.Column("checked_at", sa.DateTime(timezone=True), nullable=False),
        comment="Health monitor probe history",
    )
    op.create_index("ix_integration_health_installation_checked", "integration_health", ["installation_id", "checked_at"])

    # Job queue
    op.create_table(
        "queued_jobs",
        sa.Column("seq", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("job_id", sa.String(36), nullable=False, unique=True),
        sa.Column("job_type", sa.String(50), nullable=False),
        sa.Column("installation_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("trigger_source", sa.String(20), nullable=False),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("config", postgresql.JSONB(), server_default="{}"),
        sa.Column("attempt", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("run_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("user_id", sa.String(64), nullable=True),
        sa.Column("enqueued_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("available_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("leased_until", sa.DateTime(timezone=True), nullable=True),
        sa.Column("lease_owner", sa.String(64), nullable=True),
        sa.Column("deliveries", sa.Integer(), nullable=False, server_default="0"),
        comment="Database-backed job queue",
    )
    op.create_index("ix_queued_jobs_ready", "queued_jobs", ["priority", "seq"])
    op.create_index("ix_queued_jobs_available", "queued_jobs", ["available_at"])


def downgrade() -> None:
    op.drop_table("queued_jobs")
    op.drop_table("integration_health")
    op.drop_table("execution_runs")
    op.drop_table("automation_schedules")
    op.drop_table("secrets")
    op.drop_table("installations")
    op.drop_table("applications")

    for name in reversed(list(_ENUMS)):
        op.execute(f"DROP TYPE IF EXISTS {name}")

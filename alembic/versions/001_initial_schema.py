"""Initial schema - tenants, rate_limit_windows, rate_limit_events, usage_events.

Revision ID: 001
Revises:
Create Date: 2026-10-19

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

JSON = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")


def upgrade() -> None:
    op.create_table(
        "tenants",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("domain_url", sa.String(255), unique=True, nullable=False),
        sa.Column("domain_name", sa.String(255), nullable=True),
        sa.Column("api_key", sa.String(128), unique=True, nullable=False),
        sa.Column("api_secret_hash", sa.String(255), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("verification_status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("verification_method", sa.String(20), nullable=False, server_default="api"),
        sa.Column("verification_token", sa.String(128), nullable=True),
        sa.Column("verification_requested_at", sa.DateTime(), nullable=True),
        sa.Column("verification_attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_verification_attempt", sa.DateTime(), nullable=True),
        sa.Column("last_successful_verification", sa.DateTime(), nullable=True),
        sa.Column("security_level", sa.String(20), nullable=False, server_default="medium"),
        sa.Column("require_https", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("allowed_endpoints", JSON, nullable=False),
        sa.Column("blocked_endpoints", JSON, nullable=False),
        sa.Column("allowed_ips", JSON, nullable=False),
        sa.Column("blocked_ips", JSON, nullable=False),
        sa.Column("rate_limit_per_minute", sa.Integer(), nullable=True),
        sa.Column("rate_limit_per_hour", sa.Integer(), nullable=True),
        sa.Column("max_daily_requests", sa.Integer(), nullable=True),
        sa.Column("max_monthly_requests", sa.Integer(), nullable=True),
        sa.Column("webhook_url", sa.String(500), nullable=True),
        sa.Column("webhook_secret", sa.String(128), nullable=True),
        sa.Column("webhook_events", JSON, nullable=False),
        sa.Column("webhook_failures", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("webhook_last_sent", sa.DateTime(), nullable=True),
        sa.Column("suspended_at", sa.DateTime(), nullable=True),
        sa.Column("suspended_reason", sa.Text(), nullable=True),
        sa.Column("suspended_by", sa.String(100), nullable=True),
        sa.Column("last_error_at", sa.DateTime(), nullable=True),
        sa.Column("last_error_message", sa.Text(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_tenants_status", "tenants", ["status"])

    op.create_table(
        "rate_limit_windows",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("identifier", sa.String(255), nullable=False),
        sa.Column("identifier_type", sa.String(20), nullable=False),
        sa.Column("endpoint", sa.String(255), nullable=False),
        sa.Column("time_window", sa.String(20), nullable=False),
        sa.Column("window_start", sa.DateTime(), nullable=False),
        sa.Column("reset_at", sa.DateTime(), nullable=False),
        sa.Column("request_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("limit_amount", sa.Integer(), nullable=False),
        sa.Column("blocked_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("status", sa.String(20), nullable=False, server_default="active"),
        sa.Column("violation_level", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("first_request_at", sa.DateTime(), nullable=True),
        sa.Column("last_request_at", sa.DateTime(), nullable=True),
        sa.Column("last_blocked_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )
    op.create_unique_constraint(
        "uq_rate_limit_windows_key",
        "rate_limit_windows",
        ["identifier", "identifier_type", "endpoint", "time_window"],
    )
    op.create_index("ix_rate_limit_windows_reset_at", "rate_limit_windows", ["reset_at"])

    op.create_table(
        "rate_limit_events",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column(
            "rate_limit_id",
            sa.BigInteger(),
            sa.ForeignKey("rate_limit_windows.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("event_type", sa.String(20), nullable=False),
        sa.Column("identifier", sa.String(255), nullable=False),
        sa.Column("endpoint", sa.String(255), nullable=False),
        sa.Column("details", JSON, nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index(
        "ix_rate_limit_events_lookup",
        "rate_limit_events",
        ["identifier", "event_type", "created_at"],
    )

    op.create_table(
        "usage_events",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("tenant_id", sa.BigInteger(), nullable=False),
        sa.Column("endpoint", sa.String(255), nullable=False),
        sa.Column("timestamp", sa.DateTime(), nullable=False),
        sa.Column("outcome", sa.String(32), nullable=False),
        sa.Column("latency_ms", sa.Float(), nullable=False, server_default="0"),
        sa.Column("metadata", JSON, nullable=False),
    )
    op.create_index("ix_usage_events_tenant_ts", "usage_events", ["tenant_id", "timestamp"])


def downgrade() -> None:
    op.drop_table("usage_events")
    op.drop_table("rate_limit_events")
    op.drop_table("rate_limit_windows")
    op.drop_index("ix_tenants_status", table_name="tenants")
    op.drop_table("tenants")

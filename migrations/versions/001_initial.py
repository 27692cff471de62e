"""Initial migration - create subscriptions, usage_records, and export_jobs tables.

Revision ID: 001_initial
Revises:
Create Date: 2026-10-19

"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision: str = "001_initial"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
    ]


def upgrade() -> None:
    # Create subscriptions table
    op.create_table(
        "subscriptions",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("live_key", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("tier_id", sa.String(32), nullable=False),
        sa.Column("provider_customer_id", sa.String(255), nullable=True),
        sa.Column("provider_subscription_id", sa.String(255), nullable=True),
        sa.Column(
            "status",
            sa.Enum(
                "none",
                "active",
                "past_due",
                "canceled",
                name="subscriptionstatus",
            ),
            nullable=False,
        ),
        sa.Column(
            "cadence",
            sa.Enum("monthly", "annual", name="billingcadence"),
            nullable=False,
        ),
        sa.Column("current_period_start", sa.DateTime(timezone=True), nullable=True),
        sa.Column("current_period_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("provider_updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("provider_event_id", sa.String(255), nullable=True),
        sa.Column("canceled_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id", name="pk_subscriptions"),
        sa.UniqueConstraint("live_key", name="uq_subscriptions_live_key"),
        sa.UniqueConstraint(
            "provider_subscription_id",
            name="uq_subscriptions_provider_subscription_id",
        ),
    )
    op.create_index("ix_subscriptions_user_id", "subscriptions", ["user_id"])
    op.create_index(
        "ix_subscriptions_provider_customer_id",
        "subscriptions",
        ["provider_customer_id"],
    )
    op.create_index("ix_subscriptions_status", "subscriptions", ["status"])

    # Create usage_records table
    op.create_table(
        "usage_records",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("action_kind", sa.String(50), nullable=False),
        sa.Column("period_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("period_end", sa.DateTime(timezone=True), nullable=False),
        sa.Column("count", sa.Integer(), nullable=False, server_default="0"),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id", name="pk_usage_records"),
        sa.UniqueConstraint(
            "user_id",
            "action_kind",
            "period_start",
            name="uq_usage_records_user_id",
        ),
    )
    op.create_index(
        "ix_usage_records_user_action",
        "usage_records",
        ["user_id", "action_kind"],
    )

    # Create export_jobs table
    op.create_table(
        "export_jobs",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("subject_user_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column(
            "export_type",
            sa.Enum(
                "client_data",
                "session_data",
                "billing_data",
                "full_export",
                "audit_logs",
                "custom",
                name="exporttype",
            ),
            nullable=False,
        ),
        sa.Column(
            "format",
            sa.Enum("json", "csv", "xml", "pdf", "encrypted_zip", name="exportformat"),
            nullable=False,
        ),
        sa.Column("filters", postgresql.JSONB(), nullable=False),
        sa.Column("custom_fields", postgresql.JSONB(), nullable=True),
        sa.Column(
            "status",
            sa.Enum("queued", "processing", "completed", "failed", name="exportstatus"),
            nullable=False,
        ),
        sa.Column("requested_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("claimed_by", sa.String(255), nullable=True),
        sa.Column("result_location", sa.Text(), nullable=True),
        sa.Column("result_size", sa.BigInteger(), nullable=True),
        sa.Column("error_reason", sa.Text(), nullable=True),
        sa.Column("download_count", sa.Integer(), nullable=False, server_default="0"),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id", name="pk_export_jobs"),
    )
    op.create_index(
        "ix_export_jobs_user_requested",
        "export_jobs",
        ["user_id", "requested_at"],
    )
    op.create_index("ix_export_jobs_subject_user_id", "export_jobs", ["subject_user_id"])
    op.create_index("ix_export_jobs_status", "export_jobs", ["status"])


def downgrade() -> None:
    op.drop_index("ix_export_jobs_status", table_name="export_jobs")
    op.drop_index("ix_export_jobs_subject_user_id", table_name="export_jobs")
    op.drop_index("ix_export_jobs_user_requested", table_name="export_jobs")
    op.drop_table("export_jobs")

    op.drop_index("ix_usage_records_user_action", table_name="usage_records")
    op.drop_table("usage_records")

    op.drop_index("ix_subscriptions_status", table_name="subscriptions")
    op.drop_index("ix_subscriptions_provider_customer_id", table_name="subscriptions")
    op.drop_index("ix_subscriptions_user_id", table_name="subscriptions")
    op.drop_table("subscriptions")

    sa.Enum(name="exportstatus").drop(op.get_bind(), checkfirst=True)
    sa.Enum(name="exportformat").drop(op.get_bind(), checkfirst=True)
    sa.Enum(name="exporttype").drop(op.get_bind(), checkfirst=True)
    sa.Enum(name="billingcadence").drop(op.get_bind(), checkfirst=True)
    sa.Enum(name="subscriptionstatus").drop(op.get_bind(), checkfirst=True)

"""Create the quota ledger tables.

Creates ``quota_records`` (one row per tenant and resource type) and the
append-only ``usage_log``.

Revision ID: 001
Revises: None
Create Date: 2026-10-19 00:00:00.000000+00:00

"""

from __future__ import annotations

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

_JsonType = postgresql.JSONB().with_variant(sa.JSON(), "sqlite")


def upgrade() -> None:
    # ------------------------------------------------------------------
    # quota_records
    # ------------------------------------------------------------------
    op.create_table(
        "quota_records",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column("resource_type", sa.String(128), nullable=False),
        sa.Column("quota_limit", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("current_usage", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("warning_threshold", sa.Float(), nullable=False, server_default="80"),
        sa.Column("enforcement_enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("last_checked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_warning_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("metadata", _JsonType, nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("tenant_id", "resource_type", name="uq_quota_records_tenant_resource"),
        sa.CheckConstraint("quota_limit >= 0", name="ck_quota_records_limit_non_negative"),
        sa.CheckConstraint("current_usage >= 0", name="ck_quota_records_usage_non_negative"),
    )
    op.create_index("ix_quota_records_tenant", "quota_records", ["tenant_id"])

    # ------------------------------------------------------------------
    # usage_log
    # ------------------------------------------------------------------
    op.create_table(
        "usage_log",
        sa.Column("sequence", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column("resource_type", sa.String(128), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("action", sa.String(16), nullable=False),
        sa.Column("source", sa.String(128), nullable=False, server_default="system"),
        sa.Column("context", _JsonType, nullable=False),
        sa.Column("usage_before", sa.Integer(), nullable=False),
        sa.Column("usage_after", sa.Integer(), nullable=False),
        sa.Column("recorded_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint(
            "action IN ('increment', 'decrement', 'set')",
            name="ck_usage_log_action",
        ),
    )
    op.create_index(
        "ix_usage_log_tenant_resource_time",
        "usage_log",
        ["tenant_id", "resource_type", "recorded_at"],
    )


def downgrade() -> None:
    op.drop_index("ix_usage_log_tenant_resource_time")
    op.drop_table("usage_log")
    op.drop_index("ix_quota_records_tenant")
    op.drop_table("quota_records")

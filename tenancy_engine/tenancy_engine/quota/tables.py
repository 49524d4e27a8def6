"""SQLAlchemy 2.0 ORM table definitions for the persisted quota ledger.

All tables use the ``Mapped`` / ``mapped_column`` declaration style.  The
``Base`` declarative base is exported so hosts can include these tables in
their own migrations.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    Float,
    Index,
    Integer,
    String,
    TypeDecorator,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# Cross-dialect JSON type: JSONB on PostgreSQL, plain JSON (TEXT) on SQLite.
_JsonType = JSONB().with_variant(JSON(), "sqlite")


def _utcnow() -> datetime:
    """Return the current UTC timestamp (timezone-aware)."""
    return datetime.now(UTC)


class UTCDateTime(TypeDecorator):
    """Timezone-aware ``DateTime`` that always round-trips as UTC.

    SQLite has no timezone support and hands back naive values; those are
    re-tagged as UTC.  Aware values are normalised to UTC before binding.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):  # type: ignore[override]
        if value is not None and value.tzinfo is not None:
            return value.astimezone(UTC)
        return value

    def process_result_value(self, value, dialect):  # type: ignore[override]
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value


# ---------------------------------------------------------------------------
# Declarative base
# ---------------------------------------------------------------------------


class Base(DeclarativeBase):
    """Shared declarative base for quota ledger tables."""


# ---------------------------------------------------------------------------
# Quota records
# ---------------------------------------------------------------------------


class QuotaRecordTable(Base):
    """Current usage versus limit for one ``(tenant_id, resource_type)``."""

    __tablename__ = "quota_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    resource_type: Mapped[str] = mapped_column(String(128), nullable=False)
    limit: Mapped[int] = mapped_column("quota_limit", Integer, nullable=False, default=0)
    current_usage: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    warning_threshold: Mapped[float] = mapped_column(Float, nullable=False, default=80.0)
    enforcement_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    last_checked_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    last_warning_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    metadata_json: Mapped[dict[str, Any]] = mapped_column("metadata", _JsonType, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("tenant_id", "resource_type", name="uq_quota_records_tenant_resource"),
        CheckConstraint("quota_limit >= 0", name="ck_quota_records_limit_non_negative"),
        CheckConstraint("current_usage >= 0", name="ck_quota_records_usage_non_negative"),
        Index("ix_quota_records_tenant", "tenant_id"),
    )


# ---------------------------------------------------------------------------
# Usage log
# ---------------------------------------------------------------------------


class UsageLogTable(Base):
    """Append-only audit trail of quota mutations.

    ``sequence`` is the authoritative application order.
    """

    __tablename__ = "usage_log"

    sequence: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    resource_type: Mapped[str] = mapped_column(String(128), nullable=False)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    action: Mapped[str] = mapped_column(String(16), nullable=False)
    source: Mapped[str] = mapped_column(String(128), nullable=False, default="system")
    context: Mapped[dict[str, Any]] = mapped_column(_JsonType, nullable=False, default=dict)
    usage_before: Mapped[int] = mapped_column(Integer, nullable=False)
    usage_after: Mapped[int] = mapped_column(Integer, nullable=False)
    recorded_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint(
            "action IN ('increment', 'decrement', 'set')",
            name="ck_usage_log_action",
        ),
        Index("ix_usage_log_tenant_resource_time", "tenant_id", "resource_type", "recorded_at"),
    )

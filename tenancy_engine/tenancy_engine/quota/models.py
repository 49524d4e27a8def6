"""Quota ledger data models.

A :class:`QuotaRecord` is the cached current state of one
``(tenant_id, resource_type)`` pair.  The append-only stream of
:class:`UsageLogEntry` rows is the source of truth: replaying it from zero
with :func:`replay_usage` reproduces ``current_usage`` exactly, including
the clamping at zero applied by decrements and sets.

Status is never stored.  It is a pure function of ``current_usage``,
``limit`` and ``warning_threshold`` (see :func:`classify_usage`) and is
re-evaluated on every read, so a record moves back to ``ok`` as soon as
usage drops.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


def _utcnow() -> datetime:
    """Return the current UTC timestamp (timezone-aware)."""
    return datetime.now(UTC)


class QuotaStatus(str, Enum):
    """Classification of a quota record, ordered from best to worst."""

    OK = "ok"
    WARNING = "warning"
    EXCEEDED = "exceeded"

    @property
    def severity(self) -> int:
        return _STATUS_SEVERITY[self]


_STATUS_SEVERITY: dict[QuotaStatus, int] = {
    QuotaStatus.OK: 0,
    QuotaStatus.WARNING: 1,
    QuotaStatus.EXCEEDED: 2,
}


class UsageAction(str, Enum):
    """Kind of mutation recorded in the usage log."""

    INCREMENT = "increment"
    DECREMENT = "decrement"
    SET = "set"


class RecommendationPriority(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


def usage_percentage(current_usage: int, limit: int) -> float:
    """Return usage as a percentage of *limit*, or 0.0 when unlimited."""
    if limit <= 0:
        return 0.0
    return round(current_usage / limit * 100, 2)


def classify_usage(current_usage: int, limit: int, warning_threshold: float) -> QuotaStatus:
    """Classify usage against a limit.

    A limit of zero means "unlimited" and always classifies as ``ok``.
    """
    if limit <= 0:
        return QuotaStatus.OK
    if current_usage >= limit:
        return QuotaStatus.EXCEEDED
    if usage_percentage(current_usage, limit) >= warning_threshold:
        return QuotaStatus.WARNING
    return QuotaStatus.OK


class QuotaRecord(BaseModel):
    """Current usage versus limit for one tenant resource."""

    model_config = ConfigDict(validate_assignment=True)

    tenant_id: str = Field(..., min_length=1)
    resource_type: str = Field(..., min_length=1)
    limit: int = Field(default=0, ge=0, description="0 means unlimited.")
    current_usage: int = Field(default=0, ge=0)
    warning_threshold: float = Field(default=80.0, ge=0.0, le=100.0)
    enforcement_enabled: bool = True
    last_checked_at: datetime | None = None
    last_warning_at: datetime | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @property
    def key(self) -> tuple[str, str]:
        return (self.tenant_id, self.resource_type)

    @property
    def usage_percentage(self) -> float:
        return usage_percentage(self.current_usage, self.limit)

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.current_usage)

    @property
    def status(self) -> QuotaStatus:
        return classify_usage(self.current_usage, self.limit, self.warning_threshold)

    def is_exceeded(self) -> bool:
        return self.status is QuotaStatus.EXCEEDED

    def apply(self, action: UsageAction, amount: int, now: datetime) -> QuotaStatus:
        """Apply one mutation in place and return the status held before it.

        ``last_warning_at`` is stamped whenever the status gets worse.
        """
        previous = self.status
        self.current_usage = apply_action(self.current_usage, action, amount)
        self.last_checked_at = now
        self.updated_at = now
        status = self.status
        if status is not QuotaStatus.OK and status.severity > previous.severity:
            self.last_warning_at = now
        return previous


class UsageLogEntry(BaseModel):
    """Immutable audit record of one quota mutation.

    ``sequence`` is assigned by the store and totally orders entries in the
    order they were applied; ``recorded_at`` alone is not sufficient since
    two entries may share a timestamp.
    """

    model_config = ConfigDict(frozen=True)

    sequence: int = Field(..., ge=1)
    tenant_id: str
    resource_type: str
    amount: int
    action: UsageAction
    source: str = "system"
    context: dict[str, Any] = Field(default_factory=dict)
    usage_before: int = Field(..., ge=0)
    usage_after: int = Field(..., ge=0)
    recorded_at: datetime = Field(default_factory=_utcnow)


def apply_action(usage: int, action: UsageAction, amount: int) -> int:
    """Return the usage that results from applying *action* to *usage*."""
    if action is UsageAction.INCREMENT:
        return usage + amount
    if action is UsageAction.DECREMENT:
        return max(0, usage - amount)
    return max(0, amount)


def replay_usage(entries: Iterable[UsageLogEntry]) -> int:
    """Recompute current usage by replaying *entries* in order from zero."""
    usage = 0
    for entry in entries:
        usage = apply_action(usage, entry.action, entry.amount)
    return usage


# ---------------------------------------------------------------------------
# Read models
# ---------------------------------------------------------------------------


class QuotaCheck(BaseModel):
    """Answer to "may this tenant consume *requested* more units?"."""

    tenant_id: str
    resource_type: str
    requested: int
    allowed: bool
    current_usage: int
    limit: int
    remaining: int
    status: QuotaStatus
    enforcement_enabled: bool


class QuotaSummary(BaseModel):
    """Per-tenant roll-up of every quota record's status."""

    tenant_id: str
    overall_status: QuotaStatus = QuotaStatus.OK
    total_quotas: int = 0
    exceeded: list[str] = Field(default_factory=list)
    warning: list[str] = Field(default_factory=list)
    ok: list[str] = Field(default_factory=list)
    critical_resources: list[str] = Field(default_factory=list)


class QuotaRecommendation(BaseModel):
    """Suggested limit increase for a resource under sustained pressure."""

    resource: str
    current_limit: int
    suggested_limit: int
    current_usage: int
    usage_percentage: float
    reason: str
    priority: RecommendationPriority


class UsageSummary(BaseModel):
    """Aggregation of one resource's usage log over a date range.

    ``net_change`` is increments minus decrements as requested; sets are
    not counted in it.  ``effective_change`` is the actual change in usage
    after clamping and sets.
    """

    tenant_id: str
    resource_type: str
    start: datetime
    end: datetime
    total_increments: int = 0
    total_decrements: int = 0
    net_change: int = 0
    effective_change: int = 0
    action_counts: dict[str, int] = Field(
        default_factory=lambda: {action.value: 0 for action in UsageAction},
    )
    source_breakdown: dict[str, int] = Field(default_factory=dict)
    daily_usage: dict[str, int] = Field(default_factory=dict)

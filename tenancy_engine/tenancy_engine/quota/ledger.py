"""Quota ledger: per-tenant resource usage against limits.

Each mutation (increment, decrement, set) hands the store one atomic
unit: the read-modify-write of ``current_usage``, the record save and the
usage log append.  The store serialises these per
``(tenant_id, resource_type)`` (a process lock in memory, a row lock in a
database), so any number of ledgers may share one store, the log order is
the order in which mutations were applied and replaying it reproduces the
stored usage.

Exceeding a limit is never an error: increments are always applied and
the resulting status is reported on the returned record.  Callers that
want to refuse work beforehand use :meth:`QuotaLedger.check`.
"""

from __future__ import annotations

import logging
import math
import threading
from collections import Counter
from collections.abc import Callable, Iterable
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

from tenancy_engine.cache import KeyValueCache, TTLCache, tenant_cache_key
from tenancy_engine.config import DEFAULT_QUOTA_LIMITS
from tenancy_engine.errors import ValidationError, require_identifier
from tenancy_engine.quota.events import QuotaEvent, QuotaEventBus, QuotaEventType
from tenancy_engine.quota.models import (
    QuotaCheck,
    QuotaRecommendation,
    QuotaRecord,
    QuotaStatus,
    QuotaSummary,
    RecommendationPriority,
    UsageAction,
    UsageSummary,
    replay_usage,
    usage_percentage,
)
from tenancy_engine.quota.store import InMemoryQuotaStore, QuotaStore

if TYPE_CHECKING:
    from tenancy_engine.config import Settings

logger = logging.getLogger(__name__)

# Usage percentage at or above which a resource is reported as critical.
CRITICAL_USAGE_PERCENTAGE = 95.0

# Recommendation heuristic constants.
LIMIT_GROWTH_FACTOR = 1.5
PEAK_HEADROOM_FACTOR = 1.25
SUSTAINED_PRESSURE_HITS = 2
DEFAULT_LOOKBACK_DAYS = 30

# Resources cleared by ``reset_usage`` when no explicit list is given.
MONTHLY_RESOURCE_PREFIX = "monthly_"


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _as_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC; convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def _require_amount(amount: int) -> int:
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise ValidationError(
            f"amount must be an integer, got {amount!r}",
            context={"field": "amount"},
        )
    if amount < 0:
        raise ValidationError(
            f"amount must be >= 0, got {amount}",
            context={"field": "amount", "amount": amount},
        )
    return amount


class QuotaLedger:
    """Tracks usage per ``(tenant_id, resource_type)`` against limits.

    Parameters
    ----------
    store:
        Persistence backend.  Defaults to an :class:`InMemoryQuotaStore`.
    default_limits:
        Limit used when a resource is first touched without an explicit
        one, and by :meth:`apply_default_quotas`.  Unknown resources
        default to ``0`` (unlimited).
    default_warning_threshold:
        Warning threshold percentage for newly created records.
    event_bus:
        Receives a :class:`QuotaEvent` whenever a mutation changes a
        record's status.
    cache:
        Cache for :meth:`summary` results.  Defaults to a
        :class:`TTLCache` with ``summary_cache_ttl``.
    clock:
        Wall-clock source for record and log timestamps.
    """

    def __init__(
        self,
        store: QuotaStore | None = None,
        *,
        default_limits: dict[str, int] | None = None,
        default_warning_threshold: float = 80.0,
        event_bus: QuotaEventBus | None = None,
        cache: KeyValueCache | None = None,
        summary_cache_ttl: float = 60.0,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store if store is not None else InMemoryQuotaStore()
        self._default_limits = dict(DEFAULT_QUOTA_LIMITS if default_limits is None else default_limits)
        self._default_warning_threshold = default_warning_threshold
        self._event_bus = event_bus
        self._cache = (
            cache
            if cache is not None
            else TTLCache(default_ttl=summary_cache_ttl, enabled=summary_cache_ttl > 0)
        )
        self._summary_ttl = summary_cache_ttl
        self._clock = clock

        self._summary_generations: dict[str, int] = {}
        self._summary_generations_guard = threading.Lock()

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        store: QuotaStore | None = None,
        event_bus: QuotaEventBus | None = None,
    ) -> QuotaLedger:
        """Build a ledger from application settings.

        ``settings.ledger_database_url`` selects a :class:`SQLQuotaStore`;
        without it the ledger keeps its state in memory.
        """
        if store is None and settings.ledger_database_url:
            from tenancy_engine.quota.sql_store import SQLQuotaStore

            store = SQLQuotaStore.from_url(settings.ledger_database_url)
        return cls(
            store,
            default_limits=settings.default_quota_limits,
            default_warning_threshold=settings.default_warning_threshold,
            event_bus=event_bus,
            summary_cache_ttl=settings.summary_cache_ttl,
        )

    @property
    def store(self) -> QuotaStore:
        return self._store

    @property
    def default_limits(self) -> dict[str, int]:
        return dict(self._default_limits)

    def default_limit(self, resource_type: str) -> int:
        return self._default_limits.get(resource_type, 0)

    # ------------------------------------------------------------------
    # Records
    # ------------------------------------------------------------------

    def get(self, tenant_id: str, resource_type: str) -> QuotaRecord | None:
        tenant_id, resource_type = self._validate_key(tenant_id, resource_type)
        return self._store.get_record(tenant_id, resource_type)

    def records(self, tenant_id: str) -> list[QuotaRecord]:
        """Return every quota record for *tenant_id*, ordered by resource."""
        tenant_id = require_identifier(tenant_id, "tenant_id")
        return self._store.list_records(tenant_id)

    def get_or_create(
        self,
        tenant_id: str,
        resource_type: str,
        limit: int | None = None,
        *,
        warning_threshold: float | None = None,
        enforcement_enabled: bool | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> QuotaRecord:
        """Upsert the record for ``(tenant_id, resource_type)``.

        A new record takes *limit*, or the configured default for the
        resource, or ``0``.  On an existing record only the arguments that
        were given are updated; ``current_usage`` is never reset.
        """
        tenant_id, resource_type = self._validate_key(tenant_id, resource_type)
        if limit is not None:
            _require_amount(limit)
        if warning_threshold is not None and not 0.0 <= warning_threshold <= 100.0:
            raise ValidationError(
                f"warning_threshold must be between 0 and 100, got {warning_threshold}",
                context={"field": "warning_threshold"},
            )

        now = self._clock()
        default = QuotaRecord(
            tenant_id=tenant_id,
            resource_type=resource_type,
            limit=self.default_limit(resource_type) if limit is None else limit,
            warning_threshold=self._default_warning_threshold if warning_threshold is None else warning_threshold,
            enforcement_enabled=True if enforcement_enabled is None else enforcement_enabled,
            metadata=dict(metadata or {}),
            created_at=now,
            updated_at=now,
        )
        changes: dict[str, Any] = {"updated_at": now}
        if limit is not None:
            changes["limit"] = limit
        if warning_threshold is not None:
            changes["warning_threshold"] = warning_threshold
        if enforcement_enabled is not None:
            changes["enforcement_enabled"] = enforcement_enabled
        if metadata is not None:
            changes["metadata"] = dict(metadata)

        saved, created = self._store.configure_record(default, changes)
        if created:
            logger.info(
                "Created quota %s for tenant %s (limit=%d)",
                resource_type,
                tenant_id,
                saved.limit,
                extra={"tenant_id": tenant_id, "resource_type": resource_type},
            )

        self._forget_summary(tenant_id)
        return saved

    def apply_default_quotas(self, tenant_id: str) -> list[QuotaRecord]:
        """Create a record for every configured default limit the tenant lacks.

        Existing records keep their limits.  Returns all default-resource
        records, ordered by resource.
        """
        tenant_id = require_identifier(tenant_id, "tenant_id")
        records = []
        for resource_type in sorted(self._default_limits):
            record, created = self._store.configure_record(self._new_record(tenant_id, resource_type), {})
            records.append(record)
            if created:
                self._forget_summary(tenant_id)
        logger.info(
            "Applied %d default quotas for tenant %s",
            len(records),
            tenant_id,
            extra={"tenant_id": tenant_id},
        )
        return records

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def increment(
        self,
        tenant_id: str,
        resource_type: str,
        amount: int = 1,
        source: str = "system",
        context: dict[str, Any] | None = None,
    ) -> QuotaRecord:
        """Add *amount* to current usage.  Always applied, even over the limit."""
        return self._mutate(tenant_id, resource_type, UsageAction.INCREMENT, _require_amount(amount), source, context)

    def decrement(
        self,
        tenant_id: str,
        resource_type: str,
        amount: int = 1,
        source: str = "system",
        context: dict[str, Any] | None = None,
    ) -> QuotaRecord:
        """Subtract *amount* from current usage, clamping at zero.

        The log entry keeps the requested *amount*; the clamped result is
        in its ``usage_after``.
        """
        return self._mutate(tenant_id, resource_type, UsageAction.DECREMENT, _require_amount(amount), source, context)

    def set_usage(
        self,
        tenant_id: str,
        resource_type: str,
        amount: int,
        source: str = "system",
        context: dict[str, Any] | None = None,
    ) -> QuotaRecord:
        """Overwrite current usage with *amount* (negative values clamp to 0).

        The previous value is recorded as ``context["old_usage"]``.
        """
        if isinstance(amount, bool) or not isinstance(amount, int):
            raise ValidationError(f"amount must be an integer, got {amount!r}", context={"field": "amount"})
        return self._mutate(tenant_id, resource_type, UsageAction.SET, amount, source, context)

    def reset_usage(
        self,
        tenant_id: str,
        resource_types: Iterable[str] | None = None,
        source: str = "reset",
    ) -> list[QuotaRecord]:
        """Set usage to zero for *resource_types*.

        Without an explicit list, every ``monthly_*`` resource the tenant
        has a record for is reset.
        """
        tenant_id = require_identifier(tenant_id, "tenant_id")
        if resource_types is None:
            targets = [
                r.resource_type
                for r in self._store.list_records(tenant_id)
                if r.resource_type.startswith(MONTHLY_RESOURCE_PREFIX)
            ]
        else:
            targets = list(resource_types)

        reset = [self.set_usage(tenant_id, rt, 0, source=source, context={"reason": "reset"}) for rt in targets]
        logger.info(
            "Reset usage of %d resources for tenant %s",
            len(reset),
            tenant_id,
            extra={"tenant_id": tenant_id},
        )
        return reset

    def _mutate(
        self,
        tenant_id: str,
        resource_type: str,
        action: UsageAction,
        amount: int,
        source: str,
        context: dict[str, Any] | None,
    ) -> QuotaRecord:
        tenant_id, resource_type = self._validate_key(tenant_id, resource_type)
        now = self._clock()
        saved, entry, previous_status = self._store.apply_mutation(
            self._new_record(tenant_id, resource_type, now),
            action=action,
            amount=amount,
            source=source,
            context=dict(context or {}),
            now=now,
        )
        status = saved.status

        self._forget_summary(tenant_id)
        logger.debug(
            "%s %s by %d for tenant %s: %d -> %d (%s)",
            action.value,
            resource_type,
            amount,
            tenant_id,
            entry.usage_before,
            entry.usage_after,
            status.value,
            extra={
                "tenant_id": tenant_id,
                "resource_type": resource_type,
                "action": action.value,
                "source": source,
            },
        )
        self._notify_transition(saved, previous_status)
        return saved

    # ------------------------------------------------------------------
    # Read models
    # ------------------------------------------------------------------

    def check(self, tenant_id: str, resource_type: str, amount: int = 1) -> QuotaCheck:
        """Report whether consuming *amount* more units would stay within the limit.

        Read-only.  A resource without a record is evaluated against its
        default limit.
        """
        tenant_id, resource_type = self._validate_key(tenant_id, resource_type)
        _require_amount(amount)

        record = self._store.get_record(tenant_id, resource_type) or self._new_record(tenant_id, resource_type)
        allowed = (
            not record.enforcement_enabled
            or record.limit == 0
            or record.current_usage + amount <= record.limit
        )
        return QuotaCheck(
            tenant_id=tenant_id,
            resource_type=resource_type,
            requested=amount,
            allowed=allowed,
            current_usage=record.current_usage,
            limit=record.limit,
            remaining=record.remaining,
            status=record.status,
            enforcement_enabled=record.enforcement_enabled,
        )

    def summary(self, tenant_id: str) -> QuotaSummary:
        """Roll up every quota of *tenant_id* by status.

        ``overall_status`` is the worst per-resource status.  Resources at or
        above 95% of their limit are also listed as critical.
        """
        tenant_id = require_identifier(tenant_id, "tenant_id")
        key = self._summary_key(tenant_id)
        cached = self._cache.get(key)
        if cached is not None:
            return cached.model_copy(deep=True)

        # A mutation that lands while the records are read bumps the
        # generation; the result is then returned but not cached.
        with self._summary_generations_guard:
            generation = self._summary_generations.get(tenant_id, 0)

        summary = QuotaSummary(tenant_id=tenant_id)
        for record in self._store.list_records(tenant_id):
            status = record.status
            summary.total_quotas += 1
            if status is QuotaStatus.EXCEEDED:
                summary.exceeded.append(record.resource_type)
            elif status is QuotaStatus.WARNING:
                summary.warning.append(record.resource_type)
            else:
                summary.ok.append(record.resource_type)

            if status is QuotaStatus.EXCEEDED or record.usage_percentage >= CRITICAL_USAGE_PERCENTAGE:
                summary.critical_resources.append(record.resource_type)
            if status.severity > summary.overall_status.severity:
                summary.overall_status = status

        with self._summary_generations_guard:
            if self._summary_generations.get(tenant_id, 0) == generation:
                self._cache.put(key, summary.model_copy(deep=True), self._summary_ttl)
        return summary

    def recommendations(
        self,
        tenant_id: str,
        *,
        lookback_days: int = DEFAULT_LOOKBACK_DAYS,
    ) -> list[QuotaRecommendation]:
        """Suggest limit increases for resources under sustained pressure.

        A resource qualifies when it is currently at or above its warning
        threshold, or when the usage log shows the threshold was reached at
        least twice within *lookback_days*.  The suggestion is the largest
        of 150% of the limit, 125% of the peak usage seen and the current
        usage.  Unlimited resources are skipped.
        """
        tenant_id = require_identifier(tenant_id, "tenant_id")
        since = self._clock() - timedelta(days=lookback_days)

        recommendations: list[QuotaRecommendation] = []
        for record in self._store.list_records(tenant_id):
            if record.limit <= 0:
                continue

            entries = self._store.iter_log(tenant_id, record.resource_type, start=since)
            pressured = [
                e for e in entries if usage_percentage(e.usage_after, record.limit) >= record.warning_threshold
            ]
            status = record.status
            if status is QuotaStatus.OK and len(pressured) < SUSTAINED_PRESSURE_HITS:
                continue

            peak = max([record.current_usage, *(e.usage_after for e in entries)])
            suggested = max(
                math.ceil(record.limit * LIMIT_GROWTH_FACTOR),
                math.ceil(peak * PEAK_HEADROOM_FACTOR),
                record.current_usage,
            )

            if status is QuotaStatus.EXCEEDED:
                priority = RecommendationPriority.HIGH
                reason = f"Usage has exceeded the limit ({record.current_usage}/{record.limit})"
            elif record.usage_percentage >= CRITICAL_USAGE_PERCENTAGE:
                priority = RecommendationPriority.MEDIUM
                reason = f"Usage is at {record.usage_percentage}% of the limit"
            elif status is QuotaStatus.WARNING:
                priority = RecommendationPriority.LOW
                reason = f"Usage is at {record.usage_percentage}% of the limit"
            else:
                priority = RecommendationPriority.LOW
                reason = (
                    f"Warning threshold reached {len(pressured)} times in the last {lookback_days} days"
                )

            recommendations.append(
                QuotaRecommendation(
                    resource=record.resource_type,
                    current_limit=record.limit,
                    suggested_limit=suggested,
                    current_usage=record.current_usage,
                    usage_percentage=record.usage_percentage,
                    reason=reason,
                    priority=priority,
                )
            )

        order = {RecommendationPriority.HIGH: 0, RecommendationPriority.MEDIUM: 1, RecommendationPriority.LOW: 2}
        recommendations.sort(key=lambda r: (order[r.priority], r.resource))
        return recommendations

    def usage_summary(
        self,
        tenant_id: str,
        resource_type: str,
        start: datetime,
        end: datetime,
    ) -> UsageSummary:
        """Aggregate the usage log of one resource between *start* and *end* (inclusive).

        Naive datetimes are taken to be UTC.  ``daily_usage`` and
        ``source_breakdown`` sum the logged amounts of every action.
        """
        tenant_id, resource_type = self._validate_key(tenant_id, resource_type)
        start, end = _as_utc(start), _as_utc(end)
        if start > end:
            raise ValidationError(
                "start must not be after end",
                context={"start": start.isoformat(), "end": end.isoformat()},
            )

        summary = UsageSummary(tenant_id=tenant_id, resource_type=resource_type, start=start, end=end)
        sources: Counter[str] = Counter()
        daily: Counter[str] = Counter()
        for entry in self._store.iter_log(tenant_id, resource_type, start=start, end=end):
            summary.action_counts[entry.action.value] += 1
            if entry.action is UsageAction.INCREMENT:
                summary.total_increments += entry.amount
            elif entry.action is UsageAction.DECREMENT:
                summary.total_decrements += entry.amount
            summary.effective_change += entry.usage_after - entry.usage_before
            sources[entry.source] += entry.amount
            daily[_as_utc(entry.recorded_at).date().isoformat()] += entry.amount

        summary.net_change = summary.total_increments - summary.total_decrements
        summary.source_breakdown = dict(sources)
        summary.daily_usage = dict(sorted(daily.items()))
        return summary

    def replay(self, tenant_id: str, resource_type: str) -> int:
        """Recompute current usage from the full usage log."""
        tenant_id, resource_type = self._validate_key(tenant_id, resource_type)
        return replay_usage(self._store.iter_log(tenant_id, resource_type))

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    @staticmethod
    def _validate_key(tenant_id: str, resource_type: str) -> tuple[str, str]:
        return require_identifier(tenant_id, "tenant_id"), require_identifier(resource_type, "resource_type")

    def _new_record(self, tenant_id: str, resource_type: str, now: datetime | None = None) -> QuotaRecord:
        now = self._clock() if now is None else now
        return QuotaRecord(
            tenant_id=tenant_id,
            resource_type=resource_type,
            limit=self.default_limit(resource_type),
            warning_threshold=self._default_warning_threshold,
            created_at=now,
            updated_at=now,
        )

    def _summary_key(self, tenant_id: str) -> str:
        return tenant_cache_key(tenant_id, "quota", "summary")

    def _forget_summary(self, tenant_id: str) -> None:
        with self._summary_generations_guard:
            self._summary_generations[tenant_id] = self._summary_generations.get(tenant_id, 0) + 1
        self._cache.forget(self._summary_key(tenant_id))

    def _notify_transition(self, record: QuotaRecord, previous: QuotaStatus) -> None:
        status = record.status
        event_type = QuotaEventType.for_transition(previous, status)
        if event_type is None:
            return

        log = logger.warning if status is QuotaStatus.EXCEEDED else logger.info
        log(
            "Quota %s for tenant %s is now %s (%d/%d, %.2f%%)",
            record.resource_type,
            record.tenant_id,
            status.value,
            record.current_usage,
            record.limit,
            record.usage_percentage,
            extra={"tenant_id": record.tenant_id, "resource_type": record.resource_type},
        )
        if self._event_bus is None:
            return
        self._event_bus.emit(
            QuotaEvent(
                event_type=event_type,
                tenant_id=record.tenant_id,
                resource_type=record.resource_type,
                previous_status=previous,
                status=status,
                current_usage=record.current_usage,
                limit=record.limit,
                usage_percentage=record.usage_percentage,
            )
        )

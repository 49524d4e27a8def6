"""Persistence protocol for quota records and the usage log.

The ledger owns the business rules; a store persists what it is given and
owns atomicity.  Every store must:

* return *copies* of records so callers cannot mutate stored state,
* assign strictly increasing ``sequence`` numbers to log entries,
* return log entries ordered by ``sequence``,
* run :meth:`QuotaStore.apply_mutation` and
  :meth:`QuotaStore.configure_record` as one atomic read-modify-write per
  key, even when several ledgers share the store.
"""

from __future__ import annotations

import itertools
import threading
from datetime import datetime
from typing import Any, NamedTuple, Protocol, runtime_checkable

from tenancy_engine.quota.models import QuotaRecord, QuotaStatus, UsageAction, UsageLogEntry


class MutationResult(NamedTuple):
    """Outcome of :meth:`QuotaStore.apply_mutation`."""

    record: QuotaRecord
    entry: UsageLogEntry
    previous_status: QuotaStatus


def mutation_log_context(action: UsageAction, context: dict[str, Any], usage_before: int) -> dict[str, Any]:
    """Return the context stored on the log entry for one mutation."""
    log_context = dict(context)
    if action is UsageAction.SET:
        log_context["old_usage"] = usage_before
    return log_context


@runtime_checkable
class QuotaStore(Protocol):
    """Storage backend for :class:`~tenancy_engine.quota.ledger.QuotaLedger`."""

    def get_record(self, tenant_id: str, resource_type: str) -> QuotaRecord | None: ...

    def save_record(self, record: QuotaRecord) -> QuotaRecord: ...

    def list_records(self, tenant_id: str) -> list[QuotaRecord]: ...

    def configure_record(self, default: QuotaRecord, changes: dict[str, Any]) -> tuple[QuotaRecord, bool]:
        """Insert *default* if its key has no record, else apply *changes* to it.

        Returns ``(record, created)``.  Usage is never touched.
        """
        ...

    def apply_mutation(
        self,
        default: QuotaRecord,
        *,
        action: UsageAction,
        amount: int,
        source: str,
        context: dict[str, Any],
        now: datetime,
    ) -> MutationResult:
        """Apply one mutation to the stored record (or *default*) and log it.

        The read of ``current_usage``, the record write and the log append
        form one unit; no concurrent writer can interleave.
        """
        ...

    def append_log(
        self,
        *,
        tenant_id: str,
        resource_type: str,
        amount: int,
        action: UsageAction,
        source: str,
        context: dict[str, Any],
        usage_before: int,
        usage_after: int,
        recorded_at: datetime,
    ) -> UsageLogEntry: ...

    def iter_log(
        self,
        tenant_id: str,
        resource_type: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[UsageLogEntry]:
        """Return matching log entries ordered by ``sequence``.

        ``start`` and ``end`` are both inclusive.
        """
        ...


class InMemoryQuotaStore:
    """Process-local store backed by a dict and an append-only list.

    Suitable for tests and single-process deployments.  All access is
    serialised by one lock, which also makes every mutation atomic.
    """

    def __init__(self) -> None:
        self._records: dict[tuple[str, str], QuotaRecord] = {}
        self._log: list[UsageLogEntry] = []
        self._sequence = itertools.count(1)
        self._lock = threading.Lock()

    def get_record(self, tenant_id: str, resource_type: str) -> QuotaRecord | None:
        with self._lock:
            record = self._records.get((tenant_id, resource_type))
            return record.model_copy(deep=True) if record is not None else None

    def save_record(self, record: QuotaRecord) -> QuotaRecord:
        stored = record.model_copy(deep=True)
        with self._lock:
            self._records[stored.key] = stored
        return stored.model_copy(deep=True)

    def list_records(self, tenant_id: str) -> list[QuotaRecord]:
        with self._lock:
            records = [r for key, r in self._records.items() if key[0] == tenant_id]
            return sorted(
                (r.model_copy(deep=True) for r in records),
                key=lambda r: r.resource_type,
            )

    def configure_record(self, default: QuotaRecord, changes: dict[str, Any]) -> tuple[QuotaRecord, bool]:
        with self._lock:
            existing = self._records.get(default.key)
            if existing is None:
                record = default.model_copy(deep=True)
                self._records[record.key] = record
                return record.model_copy(deep=True), True

            record = existing.model_copy(deep=True)
            for field, value in changes.items():
                setattr(record, field, value)
            self._records[record.key] = record
            return record.model_copy(deep=True), False

    def apply_mutation(
        self,
        default: QuotaRecord,
        *,
        action: UsageAction,
        amount: int,
        source: str,
        context: dict[str, Any],
        now: datetime,
    ) -> MutationResult:
        with self._lock:
            existing = self._records.get(default.key)
            record = (existing if existing is not None else default).model_copy(deep=True)
            usage_before = record.current_usage
            previous_status = record.apply(action, amount, now)
            self._records[record.key] = record
            entry = self._append_locked(
                tenant_id=record.tenant_id,
                resource_type=record.resource_type,
                amount=amount,
                action=action,
                source=source,
                context=mutation_log_context(action, context, usage_before),
                usage_before=usage_before,
                usage_after=record.current_usage,
                recorded_at=now,
            )
            return MutationResult(record.model_copy(deep=True), entry, previous_status)

    def append_log(
        self,
        *,
        tenant_id: str,
        resource_type: str,
        amount: int,
        action: UsageAction,
        source: str,
        context: dict[str, Any],
        usage_before: int,
        usage_after: int,
        recorded_at: datetime,
    ) -> UsageLogEntry:
        with self._lock:
            return self._append_locked(
                tenant_id=tenant_id,
                resource_type=resource_type,
                amount=amount,
                action=action,
                source=source,
                context=context,
                usage_before=usage_before,
                usage_after=usage_after,
                recorded_at=recorded_at,
            )

    def _append_locked(self, **fields: Any) -> UsageLogEntry:
        fields["context"] = dict(fields["context"])
        entry = UsageLogEntry(sequence=next(self._sequence), **fields)
        self._log.append(entry)
        return entry

    def iter_log(
        self,
        tenant_id: str,
        resource_type: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[UsageLogEntry]:
        with self._lock:
            entries = list(self._log)
        return [
            e
            for e in entries
            if e.tenant_id == tenant_id
            and (resource_type is None or e.resource_type == resource_type)
            and (start is None or e.recorded_at >= start)
            and (end is None or e.recorded_at <= end)
        ]

"""Tests for the quota stores (in-memory and SQLAlchemy)."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta, timezone
from pathlib import Path

import pytest
from sqlalchemy import inspect
from sqlalchemy.exc import IntegrityError

from tenancy_engine.quota.models import QuotaRecord, QuotaStatus, UsageAction
from tenancy_engine.quota.sql_store import SQLQuotaStore, create_ledger_engine, upgrade_ledger_schema
from tenancy_engine.quota.store import InMemoryQuotaStore, QuotaStore
from tenancy_engine.quota.tables import QuotaRecordTable

T0 = datetime(2025, 3, 10, 9, 0, tzinfo=UTC)


def _append(store, resource_type: str = "users", *, at: datetime = T0, amount: int = 1, tenant_id: str = "acme"):
    return store.append_log(
        tenant_id=tenant_id,
        resource_type=resource_type,
        amount=amount,
        action=UsageAction.INCREMENT,
        source="test",
        context={"n": amount},
        usage_before=0,
        usage_after=amount,
        recorded_at=at,
    )


# ---------------------------------------------------------------------------
# Shared contract
# ---------------------------------------------------------------------------


class TestStoreContract:
    """Behaviour every QuotaStore must share (runs for both backends)."""

    def test_satisfies_protocol(self, quota_store) -> None:
        assert isinstance(quota_store, QuotaStore)

    def test_save_and_get_round_trip(self, quota_store) -> None:
        record = QuotaRecord(
            tenant_id="acme",
            resource_type="users",
            limit=10,
            current_usage=4,
            metadata={"plan": "pro"},
            last_warning_at=T0,
        )
        quota_store.save_record(record)

        loaded = quota_store.get_record("acme", "users")

        assert loaded == record
        assert loaded.last_warning_at.tzinfo is not None

    def test_save_overwrites_by_natural_key(self, quota_store) -> None:
        quota_store.save_record(QuotaRecord(tenant_id="acme", resource_type="users", limit=10))
        quota_store.save_record(QuotaRecord(tenant_id="acme", resource_type="users", limit=20))
        assert [r.limit for r in quota_store.list_records("acme")] == [20]

    def test_returned_records_are_copies(self, quota_store) -> None:
        quota_store.save_record(QuotaRecord(tenant_id="acme", resource_type="users", limit=10))
        loaded = quota_store.get_record("acme", "users")
        loaded.current_usage = 99
        assert quota_store.get_record("acme", "users").current_usage == 0

    def test_list_records_scoped_and_sorted(self, quota_store) -> None:
        for resource in ("webhooks", "users", "cron_jobs"):
            quota_store.save_record(QuotaRecord(tenant_id="acme", resource_type=resource))
        quota_store.save_record(QuotaRecord(tenant_id="other", resource_type="users"))

        assert [r.resource_type for r in quota_store.list_records("acme")] == ["cron_jobs", "users", "webhooks"]

    def test_sequences_strictly_increase(self, quota_store) -> None:
        entries = [_append(quota_store, amount=n) for n in range(1, 6)]
        sequences = [e.sequence for e in entries]
        assert sequences == sorted(sequences)
        assert len(set(sequences)) == 5

    def test_iter_log_filters(self, quota_store) -> None:
        _append(quota_store, "users", at=T0)
        _append(quota_store, "users", at=T0 + timedelta(days=1))
        _append(quota_store, "webhooks", at=T0 + timedelta(days=1))
        _append(quota_store, "users", at=T0 + timedelta(days=2))
        _append(quota_store, "users", tenant_id="other")

        assert len(quota_store.iter_log("acme")) == 4
        assert len(quota_store.iter_log("acme", "users")) == 3
        in_range = quota_store.iter_log("acme", "users", start=T0 + timedelta(days=1), end=T0 + timedelta(days=2))
        assert [e.recorded_at for e in in_range] == [T0 + timedelta(days=1), T0 + timedelta(days=2)]

    def test_apply_mutation_creates_from_default(self, quota_store) -> None:
        default = QuotaRecord(tenant_id="acme", resource_type="users", limit=10, created_at=T0, updated_at=T0)

        record, entry, previous = quota_store.apply_mutation(
            default,
            action=UsageAction.INCREMENT,
            amount=3,
            source="api",
            context={"request": "r1"},
            now=T0,
        )

        assert record.current_usage == 3
        assert record.last_checked_at == T0
        assert previous is QuotaStatus.OK
        assert (entry.usage_before, entry.usage_after) == (0, 3)
        assert entry.context == {"request": "r1"}
        assert quota_store.get_record("acme", "users") == record
        assert quota_store.iter_log("acme", "users") == [entry]

    def test_apply_mutation_reads_stored_usage(self, quota_store) -> None:
        quota_store.save_record(QuotaRecord(tenant_id="acme", resource_type="users", limit=10, current_usage=8))
        default = QuotaRecord(tenant_id="acme", resource_type="users", limit=99)

        record, entry, previous = quota_store.apply_mutation(
            default,
            action=UsageAction.SET,
            amount=2,
            source="sync",
            context={},
            now=T0,
        )

        assert record.limit == 10
        assert record.current_usage == 2
        assert previous is QuotaStatus.WARNING
        assert entry.context == {"old_usage": 8}

    def test_configure_record_inserts_then_updates(self, quota_store) -> None:
        default = QuotaRecord(tenant_id="acme", resource_type="users", limit=10)

        first, created = quota_store.configure_record(default, {"limit": 50})
        assert created is True
        assert first.limit == 10

        quota_store.apply_mutation(default, action=UsageAction.INCREMENT, amount=4, source="api", context={}, now=T0)
        second, created = quota_store.configure_record(default, {"limit": 50})

        assert created is False
        assert second.limit == 50
        assert second.current_usage == 4


# ---------------------------------------------------------------------------
# SQLQuotaStore specifics
# ---------------------------------------------------------------------------


class TestSQLQuotaStore:
    def test_create_tables_is_idempotent(self) -> None:
        store = SQLQuotaStore.from_url("sqlite://")
        try:
            store.create_tables()
            names = set(inspect(store.engine).get_table_names())
            assert {"quota_records", "usage_log"} <= names
        finally:
            store.dispose()

    def test_natural_key_is_unique(self) -> None:
        store = SQLQuotaStore.from_url("sqlite://")
        try:
            with pytest.raises(IntegrityError), store._session() as session:
                session.add(QuotaRecordTable(tenant_id="acme", resource_type="users"))
                session.add(QuotaRecordTable(tenant_id="acme", resource_type="users"))
        finally:
            store.dispose()

    def test_persists_across_instances(self, tmp_path: Path) -> None:
        url = f"sqlite:///{tmp_path / 'ledger.db'}"
        first = SQLQuotaStore.from_url(url)
        first.save_record(QuotaRecord(tenant_id="acme", resource_type="users", limit=10, current_usage=2))
        _append(first)
        first.dispose()

        second = SQLQuotaStore.from_url(url)
        try:
            assert second.get_record("acme", "users").current_usage == 2
            assert len(second.iter_log("acme")) == 1
        finally:
            second.dispose()

    def test_non_utc_timestamps_normalised(self) -> None:
        store = SQLQuotaStore.from_url("sqlite://")
        try:
            local = datetime(2025, 3, 10, 11, 0, tzinfo=timezone(timedelta(hours=2)))
            entry = _append(store, at=local)
            assert entry.recorded_at == T0
            assert store.iter_log("acme", start=T0, end=T0) == [entry]
        finally:
            store.dispose()


class TestLedgerMigrations:
    def test_upgrade_creates_schema(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("TENANCY_LEDGER_DATABASE_URL", raising=False)
        url = f"sqlite:///{tmp_path / 'migrated.db'}"

        upgrade_ledger_schema(url)

        store = SQLQuotaStore(create_ledger_engine(url))
        try:
            names = set(inspect(store.engine).get_table_names())
            assert {"quota_records", "usage_log", "alembic_version"} <= names
            store.save_record(QuotaRecord(tenant_id="acme", resource_type="users", limit=10))
            _append(store)
            assert store.get_record("acme", "users").limit == 10
            assert [e.sequence for e in store.iter_log("acme")] == [1]
        finally:
            store.dispose()

    def test_upgrade_is_repeatable(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("TENANCY_LEDGER_DATABASE_URL", raising=False)
        url = f"sqlite:///{tmp_path / 'migrated.db'}"
        upgrade_ledger_schema(url)
        upgrade_ledger_schema(url)

        engine = create_ledger_engine(url)
        try:
            columns = {c["name"] for c in inspect(engine).get_columns("quota_records")}
            assert {"quota_limit", "metadata", "warning_threshold"} <= columns
        finally:
            engine.dispose()


class TestInMemoryQuotaStore:
    def test_starts_empty(self) -> None:
        store = InMemoryQuotaStore()
        assert store.list_records("acme") == []
        assert store.iter_log("acme") == []

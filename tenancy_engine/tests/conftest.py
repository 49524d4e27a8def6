"""Shared fixtures for tenancy engine tests.

Provides a fake connection factory with failure switches, manual clocks for
the pool (monotonic seconds) and the ledger (UTC datetimes), and quota
ledgers over both the in-memory and the SQLAlchemy store so ledger tests
run against each backend.
"""

from __future__ import annotations

import itertools
import threading
from collections.abc import Iterator
from datetime import UTC, datetime, timedelta

import pytest

from tenancy_engine.pool.manager import PoolSettings, TenantConnectionPool
from tenancy_engine.quota.ledger import QuotaLedger
from tenancy_engine.quota.sql_store import SQLQuotaStore
from tenancy_engine.quota.store import InMemoryQuotaStore

# ------------------------------------------------------------------ #
# Fake connections
# ------------------------------------------------------------------ #


class FakeConnection:
    """Stand-in for a driver connection."""

    _ids = itertools.count(1)

    def __init__(self, tenant_id: str) -> None:
        self.id = next(self._ids)
        self.tenant_id = tenant_id
        self.closed = False
        self.alive = True

    def __repr__(self) -> str:
        return f"FakeConnection({self.tenant_id!r}, id={self.id})"


class FakeConnectionFactory:
    """Records every open/close/probe and can be told to misbehave."""

    def __init__(self) -> None:
        self.opened: list[FakeConnection] = []
        self.closed: list[FakeConnection] = []
        self.probes = 0
        self.open_error: Exception | None = None
        self.close_error: Exception | None = None
        self.probe_error: Exception | None = None
        self.open_gate: threading.Event | None = None
        self.open_started = threading.Event()
        self.close_event = threading.Event()
        self._lock = threading.Lock()

    def open(self, tenant_id: str) -> FakeConnection:
        self.open_started.set()
        if self.open_gate is not None:
            self.open_gate.wait(5.0)
        if self.open_error is not None:
            raise self.open_error
        connection = FakeConnection(tenant_id)
        with self._lock:
            self.opened.append(connection)
        return connection

    def close(self, connection: FakeConnection) -> None:
        connection.closed = True
        with self._lock:
            self.closed.append(connection)
        self.close_event.set()
        if self.close_error is not None:
            raise self.close_error

    def probe(self, connection: FakeConnection) -> bool:
        self.probes += 1
        if self.probe_error is not None:
            raise self.probe_error
        return connection.alive and not connection.closed

    def opened_for(self, tenant_id: str) -> list[FakeConnection]:
        return [c for c in self.opened if c.tenant_id == tenant_id]


# ------------------------------------------------------------------ #
# Clocks
# ------------------------------------------------------------------ #


class ManualClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class ManualDateTimeClock:
    """UTC wall clock that only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2025, 3, 10, 9, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


# ------------------------------------------------------------------ #
# Pool fixtures
# ------------------------------------------------------------------ #


@pytest.fixture()
def factory() -> FakeConnectionFactory:
    return FakeConnectionFactory()


@pytest.fixture()
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture()
def make_pool(factory: FakeConnectionFactory, clock: ManualClock) -> Iterator:
    """Return a builder for pools over the fake factory; closes them all afterwards."""
    pools: list[TenantConnectionPool] = []

    def _make(**settings: object) -> TenantConnectionPool:
        pool = TenantConnectionPool(factory, PoolSettings(**settings), clock=clock)
        pools.append(pool)
        return pool

    yield _make

    for pool in pools:
        pool.close()


@pytest.fixture()
def pool(make_pool) -> TenantConnectionPool:
    return make_pool(max_pool_size=3, max_idle_time=300.0, connection_timeout=1.0)


# ------------------------------------------------------------------ #
# Ledger fixtures
# ------------------------------------------------------------------ #


@pytest.fixture()
def wall_clock() -> ManualDateTimeClock:
    return ManualDateTimeClock()


@pytest.fixture(params=["memory", "sql"])
def quota_store(request: pytest.FixtureRequest) -> Iterator:
    """Each ledger test runs once per store backend."""
    if request.param == "memory":
        yield InMemoryQuotaStore()
        return
    store = SQLQuotaStore.from_url("sqlite://")
    yield store
    store.dispose()


@pytest.fixture()
def ledger(quota_store, wall_clock: ManualDateTimeClock) -> QuotaLedger:
    return QuotaLedger(quota_store, clock=wall_clock)

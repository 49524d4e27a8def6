"""Bounded per-tenant connection pool with LRU eviction and idle expiry.

The pool keeps at most one live connection per tenant and at most
``max_pool_size`` connections overall.  Pooling here is about reusing a
server-side session across *sequential* calls for the same tenant: two
concurrent ``acquire()`` calls for one tenant return the same connection
object, and callers sharing a tenant must coordinate statement-level
concurrency themselves.

Acquisition order of operations:

1. Pooling disabled -> open a fresh connection, no bookkeeping.
2. Existing entry that passes the liveness probe -> reuse it.
   An entry failing the probe is dropped silently and we fall through.
3. Sweep entries idle for longer than ``max_idle_time``.
4. At capacity -> evict the least-recently-used entry.  A slot whose
   connection is still opening counts towards capacity.
5. Reserve the slot, open a new connection outside the pool lock (bounded
   by ``connection_timeout``) and insert it.  Concurrent callers for the
   same tenant wait for that open and share its connection.

INVARIANT: an entry is in ``_entries`` iff the pool has not closed its
connection.  Close failures are logged and the entry is removed anyway.
"""

from __future__ import annotations

import logging
import random
import threading
import time
from collections.abc import Callable, Iterator
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any, TypeVar

from pydantic import BaseModel, Field

from tenancy_engine.errors import (
    ConnectionTimeoutError,
    TenancyError,
    TenantConnectionError,
    require_identifier,
)
from tenancy_engine.pool.entry import PoolEntry
from tenancy_engine.pool.factory import ConnectionFactory, SQLAlchemyConnectionFactory
from tenancy_engine.pool.health import (
    CAPACITY_WARNING_RATIO,
    STALE_WARNING_RATIO,
    HealthStatus,
    PoolHealthReport,
    PoolStatistics,
)

if TYPE_CHECKING:
    from tenancy_engine.config import Settings

logger = logging.getLogger(__name__)

T = TypeVar("T")


class PoolSettings(BaseModel):
    """Tuneable parameters for :class:`TenantConnectionPool`."""

    max_pool_size: int = Field(default=50, ge=1, description="Maximum number of pooled connections.")
    max_idle_time: float = Field(
        default=300.0,
        gt=0.0,
        description="Seconds an entry may sit unused before the sweep closes it.",
    )
    connection_timeout: float = Field(
        default=10.0,
        gt=0.0,
        description="Upper bound in seconds on opening a single connection.",
    )
    pooling_enabled: bool = Field(
        default=True,
        description="When disabled every acquire() opens a fresh, unpooled connection.",
    )


class TenantConnectionPool:
    """Thread-safe pool of tenant-scoped connections.

    Parameters
    ----------
    factory:
        Opens, closes and probes connections (see :class:`ConnectionFactory`).
    settings:
        Pool limits.  Defaults to :class:`PoolSettings` defaults.
    clock:
        Monotonic time source in seconds.  Injected by tests.
    rng:
        Random source used to pick the health-check sample.
    """

    def __init__(
        self,
        factory: ConnectionFactory,
        settings: PoolSettings | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        rng: random.Random | None = None,
    ) -> None:
        self._factory = factory
        self._settings = settings or PoolSettings()
        self._clock = clock
        self._rng = rng or random.Random()  # noqa: S311
        self._entries: dict[str, PoolEntry] = {}
        self._opening: dict[str, Future[Any]] = {}
        self._lock = threading.RLock()
        self._slot_freed = threading.Condition(self._lock)
        self._executor = ThreadPoolExecutor(
            max_workers=self._settings.max_pool_size,
            thread_name_prefix="tenant-connect",
        )
        self._closed = False

        # Lifetime counters
        self._created = 0
        self._evicted = 0
        self._expired = 0
        self._invalidated = 0

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        factory: ConnectionFactory | None = None,
    ) -> TenantConnectionPool:
        """Build a pool from application settings.

        Without an explicit *factory* a :class:`SQLAlchemyConnectionFactory`
        is built from ``settings.connection_template()``.
        """
        if factory is None:
            factory = SQLAlchemyConnectionFactory(settings.connection_template())
        return cls(factory, settings.pool_settings())

    @property
    def settings(self) -> PoolSettings:
        return self._settings

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, tenant_id: object) -> bool:
        with self._lock:
            return tenant_id in self._entries

    def __enter__(self) -> TenantConnectionPool:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Acquisition
    # ------------------------------------------------------------------

    def acquire(self, tenant_id: str) -> Any:
        """Return a live connection for *tenant_id*, creating one if needed.

        Raises
        ------
        ValidationError
            *tenant_id* is empty.
        ConfigurationError
            The factory has no template to build the connection from.
        TenantConnectionError
            The connection could not be opened.
        ConnectionTimeoutError
            Opening took longer than ``connection_timeout``.
        """
        tenant_id = require_identifier(tenant_id, "tenant_id")

        if not self._settings.pooling_enabled:
            return self._open(tenant_id)

        pending, owner = self._reserve(tenant_id)
        if isinstance(pending, PoolEntry):
            return pending.connection
        if not owner:
            # Another caller is opening this tenant's connection; share it.
            connection = pending.result()
            with self._lock:
                entry = self._entries.get(tenant_id)
                if entry is not None and entry.connection is connection:
                    entry.touch(self._clock())
            return connection

        try:
            connection = self._open(tenant_id)
        except BaseException as exc:
            with self._lock:
                self._opening.pop(tenant_id, None)
                self._slot_freed.notify_all()
            pending.set_exception(exc)
            raise

        with self._lock:
            self._opening.pop(tenant_id, None)
            now = self._clock()
            self._entries[tenant_id] = PoolEntry(
                tenant_id=tenant_id,
                connection=connection,
                created_at=now,
                last_accessed_at=now,
            )
            self._created += 1
            self._slot_freed.notify_all()
            logger.debug(
                "New pooled connection for tenant %s (pool=%d/%d)",
                tenant_id,
                len(self._entries),
                self._settings.max_pool_size,
            )
        pending.set_result(connection)
        return connection

    def _reserve(self, tenant_id: str) -> tuple[PoolEntry | Future[Any], bool]:
        """Find a live entry, join an open in flight, or reserve a slot.

        Returns ``(entry, False)`` for a reusable entry, ``(future, False)``
        when another caller is already opening this tenant's connection and
        ``(future, True)`` when the caller must open it.  A reserved slot
        counts towards ``max_pool_size`` until the open finishes.
        """
        with self._lock:
            while True:
                entry = self._entries.get(tenant_id)
                if entry is not None:
                    if self._is_alive(entry):
                        entry.touch(self._clock())
                        return entry, False
                    self._discard_invalid(entry)

                pending = self._opening.get(tenant_id)
                if pending is not None:
                    return pending, False

                self._sweep_expired_locked()
                if len(self._entries) + len(self._opening) < self._settings.max_pool_size:
                    pending = self._opening[tenant_id] = Future()
                    return pending, True
                if self._entries:
                    self._evict_lru_locked()
                else:
                    # Every slot is an open in flight.
                    self._slot_freed.wait()

    def release(self, tenant_id: str) -> None:
        """Mark *tenant_id*'s connection as just used.  Does not close it."""
        with self._lock:
            entry = self._entries.get(tenant_id)
            if entry is None:
                return
            entry.last_accessed_at = self._clock()
        logger.debug("Connection released for tenant %s", tenant_id)

    @contextmanager
    def tenant_connection(self, tenant_id: str) -> Iterator[Any]:
        """Scoped acquisition: acquire on entry, release on every exit path.

        With pooling disabled the single-shot connection is closed on exit
        instead, since nothing else owns it.
        """
        connection = self.acquire(tenant_id)
        try:
            yield connection
        finally:
            if self._settings.pooling_enabled:
                self.release(tenant_id)
            else:
                self._safe_close(tenant_id, connection, reason="single-shot")

    def run_in_tenant_context(self, tenant_id: str, fn: Callable[[Any], T]) -> T:
        """Call ``fn(connection)`` with *tenant_id*'s connection and return its result.

        The connection is released even when *fn* raises; the exception
        propagates unchanged.
        """
        with self.tenant_connection(tenant_id) as connection:
            return fn(connection)

    # ------------------------------------------------------------------
    # Removal
    # ------------------------------------------------------------------

    def remove(self, tenant_id: str) -> bool:
        """Close and evict *tenant_id*'s entry.  Returns ``True`` if one existed."""
        with self._lock:
            entry = self._entries.pop(tenant_id, None)
            if entry is None:
                return False
            self._safe_close(tenant_id, entry.connection, reason="removed")
        logger.info("Connection removed from pool for tenant %s", tenant_id)
        return True

    def clear(self) -> int:
        """Close and evict every entry.  Returns the number closed."""
        with self._lock:
            entries = list(self._entries.values())
            self._entries.clear()
            for entry in entries:
                self._safe_close(entry.tenant_id, entry.connection, reason="cleared")
        logger.info("Connection pool cleared (%d connections closed)", len(entries))
        return len(entries)

    def sweep_expired(self) -> int:
        """Close entries idle for longer than ``max_idle_time``.

        Also runs at the start of every pool-growing ``acquire()``; periodic
        external callers may invoke it directly.
        """
        with self._lock:
            return self._sweep_expired_locked()

    def close(self) -> None:
        """Shut the pool down: close every connection and stop the connect workers."""
        if self._closed:
            return
        self._closed = True
        self.clear()
        self._executor.shutdown(wait=False, cancel_futures=True)

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def statistics(self) -> PoolStatistics:
        """Return a snapshot of pool occupancy and lifetime counters."""
        with self._lock:
            now = self._clock()
            return PoolStatistics(
                pool_size=len(self._entries),
                max_pool_size=self._settings.max_pool_size,
                pooling_enabled=self._settings.pooling_enabled,
                tenants=list(self._entries),
                usage_counts={t: e.use_count for t, e in self._entries.items()},
                idle_seconds={t: round(e.idle_seconds(now), 3) for t, e in self._entries.items()},
                connections_created=self._created,
                connections_evicted=self._evicted,
                connections_expired=self._expired,
                connections_invalidated=self._invalidated,
            )

    def health_check(self) -> PoolHealthReport:
        """Assess pool health without changing pool membership.

        * ``warning`` when more than 90% of ``max_pool_size`` is in use.
        * ``warning`` when any entry has been idle for over 80% of
          ``max_idle_time``.
        * ``error`` when a randomly sampled entry fails its liveness probe.
          The failing entry is reported, not removed.
        """
        with self._lock:
            report = PoolHealthReport(statistics=self.statistics())
            size = len(self._entries)
            max_size = self._settings.max_pool_size

            if size > max_size * CAPACITY_WARNING_RATIO:
                report.add_issue(
                    f"Connection pool is near capacity ({size}/{max_size})",
                    HealthStatus.WARNING,
                )

            now = self._clock()
            stale_after = self._settings.max_idle_time * STALE_WARNING_RATIO
            stale = [e.tenant_id for e in self._entries.values() if e.idle_seconds(now) > stale_after]
            if stale:
                report.add_issue(
                    f"{len(stale)} connections are becoming stale",
                    HealthStatus.WARNING,
                )

            if self._entries:
                sample = self._rng.choice(list(self._entries.values()))
                if not self._is_alive(sample):
                    report.add_issue(
                        f"Invalid connection detected in pool (tenant {sample.tenant_id})",
                        HealthStatus.ERROR,
                    )

        return report

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _open(self, tenant_id: str) -> Any:
        """Open a connection through the factory, bounded by ``connection_timeout``."""
        timeout = self._settings.connection_timeout
        future = self._executor.submit(self._factory.open, tenant_id)
        try:
            return future.result(timeout=timeout)
        except FutureTimeoutError:
            # The worker may still succeed later; make sure that connection
            # does not leak.
            future.add_done_callback(self._discard_late_connection)
            raise ConnectionTimeoutError(
                f"Opening a connection for tenant {tenant_id} exceeded {timeout:.1f}s",
                context={"tenant_id": tenant_id, "timeout_seconds": timeout},
            ) from None
        except TenancyError:
            raise
        except Exception as exc:
            raise TenantConnectionError(
                f"Failed to open connection for tenant {tenant_id}: {exc}",
                context={"tenant_id": tenant_id},
            ) from exc

    def _discard_late_connection(self, future: Future[Any]) -> None:
        if future.cancelled() or future.exception() is not None:
            return
        self._safe_close("<timed-out>", future.result(), reason="late")

    def _is_alive(self, entry: PoolEntry) -> bool:
        try:
            return bool(self._factory.probe(entry.connection))
        except Exception:
            logger.debug("Probe raised for tenant %s", entry.tenant_id, exc_info=True)
            return False

    def _discard_invalid(self, entry: PoolEntry) -> None:
        """Drop an entry whose connection failed the liveness probe.  Lock held."""
        self._entries.pop(entry.tenant_id, None)
        self._invalidated += 1
        self._safe_close(entry.tenant_id, entry.connection, reason="invalid")
        logger.warning("Invalid connection removed for tenant %s", entry.tenant_id)

    def _sweep_expired_locked(self) -> int:
        now = self._clock()
        max_idle = self._settings.max_idle_time
        expired = [e for e in self._entries.values() if now - e.last_accessed_at > max_idle]
        for entry in expired:
            del self._entries[entry.tenant_id]
            self._safe_close(entry.tenant_id, entry.connection, reason="expired")
            logger.debug("Expired connection removed for tenant %s", entry.tenant_id)
        self._expired += len(expired)
        return len(expired)

    def _evict_lru_locked(self) -> None:
        if not self._entries:
            return
        victim = min(self._entries.values(), key=lambda e: e.last_accessed_at)
        del self._entries[victim.tenant_id]
        self._evicted += 1
        self._safe_close(victim.tenant_id, victim.connection, reason="lru")
        logger.info("Evicted LRU connection for tenant %s", victim.tenant_id)

    def _safe_close(self, tenant_id: str, connection: Any, *, reason: str) -> None:
        """Close *connection*, logging rather than raising on failure."""
        try:
            self._factory.close(connection)
        except Exception:
            logger.warning(
                "Error closing connection for tenant %s (%s); dropped from pool anyway",
                tenant_id,
                reason,
                exc_info=True,
            )

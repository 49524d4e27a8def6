"""Tenant-isolated key/value cache with TTL expiry.

Keys built by :func:`tenant_cache_key` are namespaced per tenant, so two
tenants never read each other's entries and one tenant's entries can be
dropped wholesale with :meth:`TTLCache.forget_prefix`.

Design notes:
    * In-process dict guarded by a threading lock.
    * Each entry stores a monotonic expiry timestamp; expired entries are
      evicted lazily on access, there is no background sweep.
    * At capacity, expired entries go first, then the oldest 10%.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

from tenancy_engine.errors import require_identifier

logger = logging.getLogger(__name__)

_KEY_SEPARATOR = ":"


def tenant_cache_key(tenant_id: str, *parts: str) -> str:
    """Return a cache key scoped to *tenant_id*.

    >>> tenant_cache_key("acme", "quota", "summary")
    'tenant:acme:quota:summary'
    """
    tenant_id = require_identifier(tenant_id, "tenant_id")
    return _KEY_SEPARATOR.join(("tenant", tenant_id, *parts))


@runtime_checkable
class KeyValueCache(Protocol):
    """Minimal cache interface the ledger depends on."""

    def get(self, key: str) -> Any | None: ...

    def put(self, key: str, value: Any, ttl: float | None = None) -> None: ...

    def forget(self, key: str) -> bool: ...


@dataclass(slots=True)
class _CacheEntry:
    value: Any
    expires_at: float
    created_at: float


class TTLCache:
    """In-process cache with per-entry TTL.

    Parameters
    ----------
    default_ttl:
        Lifetime in seconds used when :meth:`put` is given no ``ttl``.
    max_entries:
        Upper bound on stored entries.
    enabled:
        If ``False``, all operations are no-ops.
    clock:
        Monotonic time source.  Injected by tests.
    """

    def __init__(
        self,
        *,
        default_ttl: float = 60.0,
        max_entries: int = 10_000,
        enabled: bool = True,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._store: dict[str, _CacheEntry] = {}
        self._lock = threading.Lock()
        self._default_ttl = default_ttl
        self._max_entries = max_entries
        self._enabled = enabled
        self._clock = clock

        # Stats
        self._hits = 0
        self._misses = 0

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def get(self, key: str) -> Any | None:
        """Return the cached value, or ``None`` on miss or expiry."""
        if not self._enabled:
            return None

        with self._lock:
            entry = self._store.get(key)
            if entry is None:
                self._misses += 1
                return None

            if self._clock() >= entry.expires_at:
                del self._store[key]
                self._misses += 1
                logger.debug("Cache expired: key=%s", key)
                return None

            self._hits += 1
            return entry.value

    def put(self, key: str, value: Any, ttl: float | None = None) -> None:
        if not self._enabled:
            return

        ttl = self._default_ttl if ttl is None else ttl
        now = self._clock()
        with self._lock:
            if len(self._store) >= self._max_entries and key not in self._store:
                self._evict_locked(now)
            self._store[key] = _CacheEntry(value=value, expires_at=now + ttl, created_at=now)

    def forget(self, key: str) -> bool:
        """Remove a single entry.  Returns ``True`` if found."""
        with self._lock:
            return self._store.pop(key, None) is not None

    def forget_prefix(self, prefix: str) -> int:
        """Remove every entry whose key starts with *prefix*."""
        with self._lock:
            keys = [k for k in self._store if k.startswith(prefix)]
            for k in keys:
                del self._store[k]
        if keys:
            logger.debug("Forgot %d cache entries under %s", len(keys), prefix)
        return len(keys)

    def forget_tenant(self, tenant_id: str) -> int:
        """Remove every entry cached for *tenant_id*."""
        return self.forget_prefix(tenant_cache_key(tenant_id) + _KEY_SEPARATOR)

    def clear(self) -> int:
        with self._lock:
            count = len(self._store)
            self._store.clear()
            self._hits = 0
            self._misses = 0
        logger.info("Cache cleared: removed %d entries", count)
        return count

    @property
    def stats(self) -> dict[str, Any]:
        """Return cache hit/miss statistics."""
        with self._lock:
            total = self._hits + self._misses
            return {
                "entries": len(self._store),
                "hits": self._hits,
                "misses": self._misses,
                "hit_rate": round(self._hits / total, 4) if total > 0 else 0.0,
                "max_entries": self._max_entries,
                "enabled": self._enabled,
            }

    @property
    def size(self) -> int:
        """Number of entries currently stored (including expired)."""
        return len(self._store)

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _evict_locked(self, now: float) -> None:
        expired = [k for k, v in self._store.items() if now >= v.expires_at]
        for k in expired:
            del self._store[k]

        if len(self._store) < self._max_entries:
            return

        evict_count = max(1, self._max_entries // 10)
        oldest = sorted(self._store, key=lambda k: self._store[k].created_at)[:evict_count]
        for k in oldest:
            del self._store[k]
        logger.debug("Evicted %d expired + %d oldest entries", len(expired), len(oldest))

"""Bookkeeping record for one pooled tenant connection."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass(slots=True)
class PoolEntry:
    """A live connection owned by the pool, plus usage metadata.

    Timestamps are readings of the pool's monotonic clock, not wall-clock
    time, so they are only comparable with each other.
    """

    tenant_id: str
    connection: Any
    created_at: float
    last_accessed_at: float
    use_count: int = 1

    def touch(self, now: float) -> None:
        """Record an acquisition: bump the use count and access time."""
        self.use_count += 1
        self.last_accessed_at = now

    def idle_seconds(self, now: float) -> float:
        return max(0.0, now - self.last_accessed_at)

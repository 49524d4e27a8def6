"""Read-only health and statistics reports for the connection pool.

Degraded states are additive: each problem found appends a human-readable
line to ``issues`` and raises ``status`` to the worst level seen, so that
monitoring can render partial health without handling exceptions.
"""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, Field

# Fraction of ``max_pool_size`` above which the pool is reported near capacity.
CAPACITY_WARNING_RATIO = 0.9

# Fraction of ``max_idle_time`` after which an entry is reported as stale.
STALE_WARNING_RATIO = 0.8


class HealthStatus(str, Enum):
    """Overall pool health, ordered from best to worst."""

    HEALTHY = "healthy"
    WARNING = "warning"
    ERROR = "error"

    @property
    def severity(self) -> int:
        return _SEVERITY[self]


_SEVERITY: dict[HealthStatus, int] = {
    HealthStatus.HEALTHY: 0,
    HealthStatus.WARNING: 1,
    HealthStatus.ERROR: 2,
}


class PoolStatistics(BaseModel):
    """Point-in-time snapshot of pool occupancy and lifetime counters."""

    pool_size: int = Field(..., ge=0)
    max_pool_size: int = Field(..., ge=1)
    pooling_enabled: bool
    tenants: list[str] = Field(default_factory=list)
    usage_counts: dict[str, int] = Field(default_factory=dict)
    idle_seconds: dict[str, float] = Field(default_factory=dict)
    connections_created: int = 0
    connections_evicted: int = 0
    connections_expired: int = 0
    connections_invalidated: int = 0

    @property
    def utilisation(self) -> float:
        """Occupied fraction of the pool, in ``[0, 1]``."""
        return self.pool_size / self.max_pool_size


class PoolHealthReport(BaseModel):
    """Result of :meth:`TenantConnectionPool.health_check`."""

    status: HealthStatus = HealthStatus.HEALTHY
    issues: list[str] = Field(default_factory=list)
    statistics: PoolStatistics

    def add_issue(self, message: str, status: HealthStatus) -> None:
        """Record *message* and escalate ``status`` if *status* is worse."""
        self.issues.append(message)
        if status.severity > self.status.severity:
            self.status = status

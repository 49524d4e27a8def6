"""Per-tenant database connection pooling.

A :class:`TenantConnectionPool` hands out one live connection per tenant,
bounded by ``max_pool_size``, evicting the least-recently-used entry when
full and closing entries idle for longer than ``max_idle_time``.
"""

from tenancy_engine.pool.entry import PoolEntry
from tenancy_engine.pool.factory import (
    ConnectionFactory,
    ConnectionTemplate,
    SQLAlchemyConnectionFactory,
)
from tenancy_engine.pool.health import HealthStatus, PoolHealthReport, PoolStatistics
from tenancy_engine.pool.manager import PoolSettings, TenantConnectionPool

__all__ = [
    "ConnectionFactory",
    "ConnectionTemplate",
    "HealthStatus",
    "PoolEntry",
    "PoolHealthReport",
    "PoolSettings",
    "PoolStatistics",
    "SQLAlchemyConnectionFactory",
    "TenantConnectionPool",
]

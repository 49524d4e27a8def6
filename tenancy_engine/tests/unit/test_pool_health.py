"""Tests for pool health checks and statistics."""

from __future__ import annotations

from tenancy_engine.pool.health import HealthStatus, PoolHealthReport, PoolStatistics

# ---------------------------------------------------------------------------
# Report model
# ---------------------------------------------------------------------------


def _stats(**overrides) -> PoolStatistics:
    data = {"pool_size": 0, "max_pool_size": 10, "pooling_enabled": True}
    data.update(overrides)
    return PoolStatistics(**data)


class TestPoolHealthReport:
    def test_starts_healthy(self) -> None:
        report = PoolHealthReport(statistics=_stats())
        assert report.status is HealthStatus.HEALTHY
        assert report.issues == []

    def test_escalates_to_worst_status(self) -> None:
        report = PoolHealthReport(statistics=_stats())
        report.add_issue("stale", HealthStatus.WARNING)
        report.add_issue("broken", HealthStatus.ERROR)
        report.add_issue("stale again", HealthStatus.WARNING)
        assert report.status is HealthStatus.ERROR
        assert report.issues == ["stale", "broken", "stale again"]

    def test_utilisation(self) -> None:
        assert _stats(pool_size=5).utilisation == 0.5

    def test_serialises_status_value(self) -> None:
        report = PoolHealthReport(statistics=_stats())
        assert report.model_dump(mode="json")["status"] == "healthy"


# ---------------------------------------------------------------------------
# health_check()
# ---------------------------------------------------------------------------


class TestHealthCheck:
    """Verify the three degraded conditions and that the check is read-only."""

    def test_empty_pool_is_healthy(self, pool) -> None:
        report = pool.health_check()
        assert report.status is HealthStatus.HEALTHY
        assert report.issues == []
        assert report.statistics.pool_size == 0

    def test_near_capacity_warns(self, make_pool) -> None:
        pool = make_pool(max_pool_size=10)
        for i in range(10):
            pool.acquire(f"t{i}")

        report = pool.health_check()

        assert report.status is HealthStatus.WARNING
        assert "Connection pool is near capacity (10/10)" in report.issues

    def test_ninety_percent_is_not_near_capacity(self, make_pool) -> None:
        pool = make_pool(max_pool_size=10)
        for i in range(9):
            pool.acquire(f"t{i}")
        assert pool.health_check().status is HealthStatus.HEALTHY

    def test_stale_connections_warn(self, make_pool, clock) -> None:
        pool = make_pool(max_idle_time=100.0)
        pool.acquire("A")
        pool.acquire("B")
        clock.advance(81)

        report = pool.health_check()

        assert report.status is HealthStatus.WARNING
        assert "2 connections are becoming stale" in report.issues

    def test_stale_threshold_is_strict(self, make_pool, clock) -> None:
        pool = make_pool(max_idle_time=100.0)
        pool.acquire("A")
        clock.advance(80)
        assert pool.health_check().issues == []

    def test_invalid_sample_is_error(self, pool) -> None:
        conn = pool.acquire("acme")
        conn.alive = False

        report = pool.health_check()

        assert report.status is HealthStatus.ERROR
        assert report.issues == ["Invalid connection detected in pool (tenant acme)"]

    def test_health_check_does_not_mutate_pool(self, pool, factory, clock) -> None:
        conn = pool.acquire("acme")
        conn.alive = False
        clock.advance(10_000)

        pool.health_check()

        assert "acme" in pool
        assert conn.closed is False
        assert factory.closed == []

    def test_statistics_snapshot(self, pool, clock) -> None:
        pool.acquire("a")
        pool.acquire("a")
        clock.advance(12.5)
        pool.acquire("b")

        stats = pool.statistics()

        assert stats.pool_size == 2
        assert stats.max_pool_size == 3
        assert stats.tenants == ["a", "b"]
        assert stats.usage_counts == {"a": 2, "b": 1}
        assert stats.idle_seconds == {"a": 12.5, "b": 0.0}
        assert stats.connections_created == 2

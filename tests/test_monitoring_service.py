"""Tests for metrics, performance stats, health and alerting."""

import asyncio
import logging
from datetime import datetime, timedelta, timezone

import pytest

from tests.conftest import FakeClock
from vector_indexer.server.services.vector.circuit_breaker import CircuitBreaker
from vector_indexer.server.services.vector.exceptions import ProviderError
from vector_indexer.server.services.vector.models import (
    AlertCondition,
    AlertSeverity,
    CircuitBreakerConfig,
    HealthStatus,
    OperationType,
)
from vector_indexer.server.services.vector.monitoring_service import MonitoringService


class WallClock:
    """Manually advanced UTC clock."""

    def __init__(self) -> None:
        self.now = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


async def _search(monitoring: MonitoringService, duration: float = 10.0, success: bool = True) -> None:
    await monitoring.record_search_metric(
        query_length=5, results_count=1, duration=duration, success=success, search_limit=10
    )


class TestPerformanceStats:
    @pytest.mark.asyncio
    async def test_running_stats(self):
        monitoring = MonitoringService()

        await _search(monitoring, 10.0)
        await _search(monitoring, 30.0)
        await _search(monitoring, 20.0, success=False)

        stats = monitoring.get_performance_stats("search")
        assert stats.total_operations == 3
        assert stats.successful_operations == 2
        assert stats.failed_operations == 1
        assert stats.average_duration == pytest.approx(20.0)
        assert stats.min_duration == 10.0
        assert stats.max_duration == 30.0
        assert stats.error_rate == pytest.approx(1 / 3)
        assert stats.operations_per_minute == 3

    @pytest.mark.asyncio
    async def test_operations_per_minute_window(self):
        wall = WallClock()
        monitoring = MonitoringService(now=wall)

        await _search(monitoring)
        wall.advance(seconds=90)
        await _search(monitoring)

        assert monitoring.get_performance_stats("search").operations_per_minute == 1

    @pytest.mark.asyncio
    async def test_stats_per_operation_type(self):
        monitoring = MonitoringService()
        await _search(monitoring)
        await monitoring.record_database_metric(OperationType.INSERT, 1, 5.0, True, entity_type="ticket")

        all_stats = monitoring.get_performance_stats()

        assert set(all_stats) == {"search", "insert"}
        assert monitoring.get_performance_stats("embedding").total_operations == 0

    @pytest.mark.asyncio
    async def test_stats_are_copies(self):
        monitoring = MonitoringService()
        await _search(monitoring)

        monitoring.get_performance_stats("search").total_operations = 100

        assert monitoring.get_performance_stats("search").total_operations == 1


class TestRetention:
    @pytest.mark.asyncio
    async def test_old_metrics_are_pruned(self):
        wall = WallClock()
        monitoring = MonitoringService(retention_period=60000, now=wall)

        await _search(monitoring)
        wall.advance(minutes=2)
        await _search(monitoring)

        assert len(monitoring.get_metrics()) == 1
        # running stats are not rewound by pruning
        assert monitoring.get_performance_stats("search").total_operations == 2

    @pytest.mark.asyncio
    async def test_get_metrics_filters(self):
        wall = WallClock()
        monitoring = MonitoringService(now=wall)
        await monitoring.record_database_metric(OperationType.INSERT, 1, 5.0, True, entity_type="ticket")
        wall.advance(seconds=10)
        await monitoring.record_database_metric(OperationType.INSERT, 1, 5.0, True, entity_type="epic")
        await _search(monitoring)

        assert len(monitoring.get_metrics(operation_type="insert")) == 2
        assert len(monitoring.get_metrics(entity_type="epic")) == 1
        assert len(monitoring.get_metrics(start_time=wall.now)) == 2
        assert len(monitoring.get_metrics(end_time=wall.now - timedelta(seconds=5))) == 1

    @pytest.mark.asyncio
    async def test_clear_metrics(self):
        monitoring = MonitoringService()
        await _search(monitoring)

        monitoring.clear_metrics()

        assert monitoring.get_metrics() == []
        assert monitoring.get_performance_stats() == {}


class TestAlerts:
    def test_default_conditions(self):
        monitoring = MonitoringService()

        ids = {c.id: c.severity for c in monitoring.alert_conditions}

        assert ids == {"high-error-rate": AlertSeverity.HIGH, "slow-response-time": AlertSeverity.MEDIUM}

    @pytest.mark.asyncio
    async def test_error_rate_alert_logged(self, caplog):
        monitoring = MonitoringService(error_rate_threshold=0.1)

        with caplog.at_level(logging.WARNING):
            await _search(monitoring, success=False)

        alerts = [r for r in caplog.records if r.getMessage() == "vector_alert_triggered"]
        assert [r.alert_id for r in alerts] == ["high-error-rate"]
        assert alerts[0].levelno == logging.WARNING

    @pytest.mark.asyncio
    async def test_critical_alert_and_removal(self, caplog):
        monitoring = MonitoringService()
        monitoring.add_alert_condition(AlertCondition(
            id="any-op",
            name="Any operation",
            condition=lambda stats: stats.total_operations > 0,
            severity=AlertSeverity.CRITICAL,
        ))

        with caplog.at_level(logging.WARNING):
            await _search(monitoring)
        critical = [r for r in caplog.records if getattr(r, "alert_id", None) == "any-op"]
        assert critical[0].levelno == logging.CRITICAL

        caplog.clear()
        monitoring.remove_alert_condition("any-op")
        with caplog.at_level(logging.WARNING):
            await _search(monitoring)
        assert not [r for r in caplog.records if getattr(r, "alert_id", None) == "any-op"]

    @pytest.mark.asyncio
    async def test_failing_condition_does_not_raise(self, caplog):
        monitoring = MonitoringService()

        def broken(stats):
            raise ZeroDivisionError("boom")

        monitoring.add_alert_condition(AlertCondition(id="broken", name="Broken", condition=broken))

        with caplog.at_level(logging.ERROR):
            await _search(monitoring)

        assert any(r.getMessage() == "alert_condition_failed" for r in caplog.records)
        assert monitoring.get_performance_stats("search").total_operations == 1


class TestHealth:
    @pytest.mark.asyncio
    async def test_healthy_when_idle(self):
        health = MonitoringService().get_service_health_metrics()

        assert health.status == HealthStatus.HEALTHY
        assert health.service == "vector"
        assert health.total_operations == 0
        assert health.memory_usage > 0

    @pytest.mark.asyncio
    async def test_unhealthy_on_error_rate(self):
        monitoring = MonitoringService(error_rate_threshold=0.1)
        for success in (True, False):
            await _search(monitoring, success=success)

        assert monitoring.get_service_health_metrics().status == HealthStatus.UNHEALTHY

    @pytest.mark.asyncio
    async def test_degraded_on_slow_responses(self):
        monitoring = MonitoringService(response_time_threshold=100)
        await _search(monitoring, duration=500.0)

        assert monitoring.get_service_health_metrics().status == HealthStatus.DEGRADED

    @pytest.mark.asyncio
    async def test_degraded_when_a_circuit_is_open(self):
        breaker = CircuitBreaker(clock=FakeClock())

        async def fail():
            raise ProviderError("down", "openai", status_code=503)

        with pytest.raises(ProviderError):
            await breaker.execute("openai", fail, CircuitBreakerConfig(failure_threshold=1))

        health = MonitoringService(circuit_breaker=breaker).get_service_health_metrics()

        assert health.status == HealthStatus.DEGRADED
        assert health.circuit_breaker_stats["openai"].failure_count == 1

    def test_uptime(self):
        clock = FakeClock(now=50.0)
        monitoring = MonitoringService(monotonic=clock)

        clock.advance(12.5)

        assert monitoring.get_service_health_metrics().uptime == pytest.approx(12.5)


class TestVectorStoreStats:
    @pytest.mark.asyncio
    async def test_counts_successful_inserts(self):
        monitoring = MonitoringService()
        await monitoring.record_database_metric(
            OperationType.INSERT, 1, 5.0, True, entity_type="ticket", workspace_id="w1"
        )
        await monitoring.record_database_metric(
            OperationType.INSERT, 1, 5.0, True, entity_type="epic", workspace_id="w1"
        )
        await monitoring.record_database_metric(
            OperationType.INSERT, 0, 5.0, False, entity_type="ticket", workspace_id="w1"
        )
        await monitoring.record_database_metric(
            OperationType.DELETE, 1, 5.0, True, entity_type="ticket", workspace_id="w1"
        )

        stats = monitoring.get_vector_store_stats()

        assert stats.total_documents == 2
        assert stats.documents_by_entity_type == {"ticket": 1, "epic": 1}
        assert stats.documents_by_workspace == {"w1": 2}
        assert stats.last_index_update is not None

    @pytest.mark.asyncio
    async def test_reindexed_entity_counts_once(self):
        monitoring = MonitoringService()
        for _ in range(3):
            await monitoring.record_database_metric(
                OperationType.INSERT, 1, 5.0, True,
                entity_type="ticket", entity_id="42", workspace_id="w1",
            )
        await monitoring.record_database_metric(
            OperationType.INSERT, 1, 5.0, True,
            entity_type="ticket", entity_id="42", workspace_id="w2",
        )

        stats = monitoring.get_vector_store_stats()

        assert stats.total_documents == 2
        assert stats.documents_by_entity_type == {"ticket": 2}
        assert stats.documents_by_workspace == {"w1": 1, "w2": 1}

    @pytest.mark.asyncio
    async def test_deleted_entity_is_not_counted(self):
        monitoring = MonitoringService()
        for entity_id in ("42", "7"):
            await monitoring.record_database_metric(
                OperationType.INSERT, 1, 5.0, True,
                entity_type="ticket", entity_id=entity_id, workspace_id="w1",
            )
        await monitoring.record_database_metric(
            OperationType.DELETE, 1, 5.0, True,
            entity_type="ticket", entity_id="42", workspace_id="w1",
        )

        stats = monitoring.get_vector_store_stats()

        assert stats.total_documents == 1
        assert stats.documents_by_workspace == {"w1": 1}


class TestPeriodicCollection:
    @pytest.mark.asyncio
    async def test_start_and_stop(self):
        monitoring = MonitoringService(metrics_interval=10)

        monitoring.start_periodic_collection()
        await asyncio.sleep(0.05)
        await monitoring.stop_periodic_collection()

        assert monitoring._collection_task is None

    @pytest.mark.asyncio
    async def test_stop_without_start(self):
        await MonitoringService().stop_periodic_collection()

"""In-process metrics, performance statistics and alerting for vector operations.

Metrics live in a time-bounded window pruned on every write. Running
``PerformanceStats`` are kept per operation type and evaluated against
registered alert conditions after each update; alerts are emitted as log
records and never raise into the caller.
"""

import asyncio
import logging
import resource
import time
from datetime import datetime, timedelta
from typing import Callable, Optional

from .circuit_breaker import CircuitBreaker
from .models import (
    AlertCondition,
    AlertSeverity,
    CircuitState,
    DatabaseMetric,
    EmbeddingMetric,
    HealthStatus,
    OperationType,
    PerformanceStats,
    SearchMetric,
    ServiceHealthMetrics,
    VectorOperationMetric,
    VectorStoreStats,
    utc_now,
)

logger = logging.getLogger(__name__)


class MonitoringService:
    """Collects vector operation metrics and derives health.

    Example:
        >>> monitoring = MonitoringService(retention_period=3600000)
        >>> await monitoring.record_search_metric(12, 3, 45.0, True, 10, 0.7)
        >>> monitoring.get_performance_stats("search").total_operations
        1
    """

    def __init__(
        self,
        retention_period: int = 3600000,
        metrics_interval: int = 60000,
        error_rate_threshold: float = 0.1,
        response_time_threshold: float = 5000,
        circuit_breaker: Optional[CircuitBreaker] = None,
        now: Callable[[], datetime] = utc_now,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize monitoring.

        Args:
            retention_period: How long raw metrics are kept (ms)
            metrics_interval: Periodic collection interval (ms)
            error_rate_threshold: Error rate above which health is unhealthy
            response_time_threshold: Average duration (ms) above which health is degraded
            circuit_breaker: Breaker whose stats are reported in health
            now: Wall clock for metric timestamps
            monotonic: Monotonic clock for uptime
        """
        self.retention_period = retention_period
        self.metrics_interval = metrics_interval
        self.error_rate_threshold = error_rate_threshold
        self.response_time_threshold = response_time_threshold
        self.circuit_breaker = circuit_breaker
        self._now = now
        self._monotonic = monotonic
        self._started_at = monotonic()

        self._metrics: list[VectorOperationMetric] = []
        self._performance_stats: dict[str, PerformanceStats] = {}
        self._alert_conditions: list[AlertCondition] = []
        self._collection_task: Optional[asyncio.Task] = None

        self._initialize_default_alerts()

    def _initialize_default_alerts(self) -> None:
        self.add_alert_condition(AlertCondition(
            id="high-error-rate",
            name="High Error Rate",
            description=f"Error rate exceeds {self.error_rate_threshold:.0%}",
            condition=lambda stats: stats.error_rate > self.error_rate_threshold,
            severity=AlertSeverity.HIGH,
        ))
        self.add_alert_condition(AlertCondition(
            id="slow-response-time",
            name="Slow Response Time",
            description=f"Average response time exceeds {self.response_time_threshold}ms",
            condition=lambda stats: stats.average_duration > self.response_time_threshold,
            severity=AlertSeverity.MEDIUM,
        ))

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    async def record_metric(self, metric: VectorOperationMetric) -> None:
        """Store a metric, update running stats and evaluate alerts."""
        self._metrics.append(metric)
        stats = self._update_performance_stats(metric)
        self._check_alert_conditions(metric.operation_type.value, stats)

        logger.debug(
            "vector_metric_recorded",
            extra={
                "operation_type": metric.operation_type.value,
                "entity_type": metric.entity_type,
                "duration_ms": round(metric.duration, 2),
                "success": metric.success,
                "error_type": metric.error_type,
            },
        )

        self._cleanup_old_metrics()

    async def record_embedding_metric(
        self,
        provider: str,
        model: str,
        text_length: int,
        duration: float,
        success: bool,
        embedding_dimensions: Optional[int] = None,
        attempts: int = 1,
        circuit_breaker_state: Optional[CircuitState] = None,
        error_type: Optional[str] = None,
        error_message: Optional[str] = None,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
        workspace_id: Optional[str] = None,
    ) -> None:
        await self.record_metric(EmbeddingMetric(
            provider=provider,
            model=model,
            text_length=text_length,
            duration=duration,
            success=success,
            embedding_dimensions=embedding_dimensions,
            attempts=attempts,
            circuit_breaker_state=circuit_breaker_state,
            error_type=error_type,
            error_message=error_message,
            entity_type=entity_type,
            entity_id=entity_id,
            workspace_id=workspace_id,
            timestamp=self._now(),
        ))

    async def record_search_metric(
        self,
        query_length: int,
        results_count: int,
        duration: float,
        success: bool,
        search_limit: int,
        similarity_threshold: Optional[float] = None,
        error_type: Optional[str] = None,
        error_message: Optional[str] = None,
        workspace_id: Optional[str] = None,
    ) -> None:
        await self.record_metric(SearchMetric(
            query_length=query_length,
            results_count=results_count,
            duration=duration,
            success=success,
            search_limit=search_limit,
            similarity_threshold=similarity_threshold,
            error_type=error_type,
            error_message=error_message,
            workspace_id=workspace_id,
            timestamp=self._now(),
        ))

    async def record_database_metric(
        self,
        operation_type: OperationType,
        records_affected: int,
        duration: float,
        success: bool,
        batch_size: Optional[int] = None,
        error_type: Optional[str] = None,
        error_message: Optional[str] = None,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
        workspace_id: Optional[str] = None,
    ) -> None:
        await self.record_metric(DatabaseMetric(
            operation_type=operation_type,
            records_affected=records_affected,
            duration=duration,
            success=success,
            batch_size=batch_size,
            error_type=error_type,
            error_message=error_message,
            entity_type=entity_type,
            entity_id=entity_id,
            workspace_id=workspace_id,
            timestamp=self._now(),
        ))

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------

    def _update_performance_stats(self, metric: VectorOperationMetric) -> PerformanceStats:
        key = metric.operation_type.value
        stats = self._performance_stats.get(key)
        if stats is None:
            stats = PerformanceStats(min_duration=metric.duration, max_duration=metric.duration)
            self._performance_stats[key] = stats

        stats.total_operations += 1
        if metric.success:
            stats.successful_operations += 1
        else:
            stats.failed_operations += 1

        # Incremental mean
        stats.average_duration += (metric.duration - stats.average_duration) / stats.total_operations
        stats.min_duration = min(stats.min_duration, metric.duration)
        stats.max_duration = max(stats.max_duration, metric.duration)
        stats.error_rate = stats.failed_operations / stats.total_operations

        now = self._now()
        one_minute_ago = now - timedelta(minutes=1)
        stats.operations_per_minute = sum(
            1 for m in self._metrics
            if m.operation_type == metric.operation_type and m.timestamp >= one_minute_ago
        )
        stats.last_updated = now
        return stats

    def _check_alert_conditions(self, operation_type: str, stats: PerformanceStats) -> None:
        for condition in self._alert_conditions:
            if not condition.enabled:
                continue
            try:
                triggered = condition.condition(stats)
            except Exception as e:
                logger.error(
                    "alert_condition_failed",
                    extra={"condition_id": condition.id, "error": str(e)},
                )
                continue

            if not triggered:
                continue

            level = logging.CRITICAL if condition.severity == AlertSeverity.CRITICAL else logging.WARNING
            logger.log(
                level,
                "vector_alert_triggered",
                extra={
                    "alert_id": condition.id,
                    "alert_name": condition.name,
                    "description": condition.description,
                    "severity": condition.severity.value,
                    "operation_type": operation_type,
                    "error_rate": stats.error_rate,
                    "average_duration": stats.average_duration,
                    "total_operations": stats.total_operations,
                },
            )

    def _cleanup_old_metrics(self) -> None:
        cutoff = self._now() - timedelta(milliseconds=self.retention_period)
        if self._metrics and self._metrics[0].timestamp < cutoff:
            self._metrics = [m for m in self._metrics if m.timestamp >= cutoff]

    def get_performance_stats(self, operation_type: Optional[str] = None):
        """Stats for one operation type, or a dict of all of them."""
        if operation_type is not None:
            stats = self._performance_stats.get(operation_type)
            return stats.model_copy() if stats else PerformanceStats()
        return {key: stats.model_copy() for key, stats in self._performance_stats.items()}

    def _overall_stats(self) -> PerformanceStats:
        overall = PerformanceStats()
        total_duration = 0.0
        for stats in self._performance_stats.values():
            overall.total_operations += stats.total_operations
            overall.successful_operations += stats.successful_operations
            overall.failed_operations += stats.failed_operations
            total_duration += stats.average_duration * stats.total_operations
        if overall.total_operations:
            overall.error_rate = overall.failed_operations / overall.total_operations
            overall.average_duration = total_duration / overall.total_operations
        return overall

    def get_service_health_metrics(self) -> ServiceHealthMetrics:
        """Derive overall health from aggregate error rate and average duration."""
        overall = self._overall_stats()
        breaker_stats = self.circuit_breaker.get_all_stats() if self.circuit_breaker else {}

        if overall.error_rate > self.error_rate_threshold:
            status = HealthStatus.UNHEALTHY
        elif overall.average_duration > self.response_time_threshold:
            status = HealthStatus.DEGRADED
        elif any(s.state == CircuitState.OPEN for s in breaker_stats.values()):
            status = HealthStatus.DEGRADED
        else:
            status = HealthStatus.HEALTHY

        # ru_maxrss is reported in KiB on Linux
        memory_mb = resource.getrusage(resource.RUSAGE_SELF).ru_maxrss / 1024

        return ServiceHealthMetrics(
            status=status,
            uptime=self._monotonic() - self._started_at,
            memory_usage=round(memory_mb, 2),
            circuit_breaker_stats=breaker_stats,
            total_operations=overall.total_operations,
            error_rate=overall.error_rate,
            average_duration=overall.average_duration,
            last_health_check=self._now(),
        )

    def get_vector_store_stats(self) -> VectorStoreStats:
        """Document counts derived from insert and delete metrics in the window.

        Re-indexing an entity replaces its document, so each
        ``(entity_type, entity_id, workspace_id)`` counts once; a later
        successful delete of the same entity removes it again. Inserts that
        carry no entity id cannot be matched and each count as a document.
        """
        documents: dict[tuple, VectorOperationMetric] = {}
        stats = VectorStoreStats()
        for index, metric in enumerate(self._metrics):
            if not metric.success:
                continue
            if metric.entity_id is not None:
                key = (metric.entity_type, metric.entity_id, metric.workspace_id)
            else:
                key = ("unkeyed", index)
            if metric.operation_type == OperationType.INSERT:
                documents[key] = metric
                stats.last_index_update = metric.timestamp
            elif metric.operation_type == OperationType.DELETE and metric.entity_id is not None:
                documents.pop(key, None)

        for metric in documents.values():
            if metric.entity_type:
                by_type = stats.documents_by_entity_type
                by_type[metric.entity_type] = by_type.get(metric.entity_type, 0) + 1
                stats.total_documents += 1
            if metric.workspace_id:
                by_ws = stats.documents_by_workspace
                by_ws[metric.workspace_id] = by_ws.get(metric.workspace_id, 0) + 1
        return stats

    # ------------------------------------------------------------------
    # Alerts and raw metrics
    # ------------------------------------------------------------------

    def add_alert_condition(self, condition: AlertCondition) -> None:
        self._alert_conditions.append(condition)

    def remove_alert_condition(self, condition_id: str) -> None:
        self._alert_conditions = [c for c in self._alert_conditions if c.id != condition_id]

    @property
    def alert_conditions(self) -> list[AlertCondition]:
        return list(self._alert_conditions)

    def get_metrics(
        self,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
        operation_type: Optional[str] = None,
        entity_type: Optional[str] = None,
    ) -> list[VectorOperationMetric]:
        metrics = list(self._metrics)
        if start_time:
            metrics = [m for m in metrics if m.timestamp >= start_time]
        if end_time:
            metrics = [m for m in metrics if m.timestamp <= end_time]
        if operation_type:
            metrics = [m for m in metrics if m.operation_type.value == operation_type]
        if entity_type:
            metrics = [m for m in metrics if m.entity_type == entity_type]
        return metrics

    def clear_metrics(self) -> None:
        self._metrics = []
        self._performance_stats.clear()

    # ------------------------------------------------------------------
    # Periodic collection
    # ------------------------------------------------------------------

    async def collect_periodic_metrics(self) -> None:
        health = self.get_service_health_metrics()
        store = self.get_vector_store_stats()
        logger.info(
            "periodic_health_metrics_collected",
            extra={
                "status": health.status.value,
                "memory_usage_mb": health.memory_usage,
                "uptime_s": round(health.uptime, 1),
                "total_documents": store.total_documents,
                "total_operations": health.total_operations,
            },
        )

    async def _collection_loop(self) -> None:
        while True:
            await asyncio.sleep(self.metrics_interval / 1000)
            try:
                await self.collect_periodic_metrics()
            except Exception as e:
                logger.error("periodic_metrics_collection_failed", extra={"error": str(e)})

    def start_periodic_collection(self) -> None:
        if self._collection_task is None or self._collection_task.done():
            self._collection_task = asyncio.get_running_loop().create_task(self._collection_loop())
            logger.info("metrics_collection_started", extra={"interval_ms": self.metrics_interval})

    async def stop_periodic_collection(self) -> None:
        if self._collection_task is None:
            return
        self._collection_task.cancel()
        try:
            await self._collection_task
        except asyncio.CancelledError:
            pass
        self._collection_task = None
        logger.info("metrics_collection_stopped")

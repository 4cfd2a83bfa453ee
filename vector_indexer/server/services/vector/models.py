"""Pydantic models shared by the vector indexing services.

Covers inbound change events, resilience configuration and results,
dependency relations, and the monitoring metric/stat shapes.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Generic, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

T = TypeVar("T")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# Business table -> singular document type
TABLE_DOCUMENT_TYPES: dict[str, str] = {
    "projects": "project",
    "tickets": "ticket",
    "epics": "epic",
    "tasks": "task",
    "sprints": "sprint",
}

SUPPORTED_TABLES = tuple(TABLE_DOCUMENT_TYPES)


class EventType(str, Enum):
    """Kind of change reported for a business entity."""
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class EntityType(str, Enum):
    PROJECT = "PROJECT"
    TICKET = "TICKET"
    EPIC = "EPIC"
    TASK = "TASK"
    SPRINT = "SPRINT"
    LABEL = "LABEL"


_TABLE_ENTITY_TYPES: dict[str, EntityType] = {
    "projects": EntityType.PROJECT,
    "tickets": EntityType.TICKET,
    "epics": EntityType.EPIC,
    "tasks": EntityType.TASK,
    "sprints": EntityType.SPRINT,
    "labels": EntityType.LABEL,
}


class EntityChangeEvent(BaseModel):
    """A create/update/delete notification for one business entity."""
    event_type: EventType
    source_table: str
    source_id: str
    workspace_id: str
    project_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=utc_now)
    entity_type: Optional[EntityType] = None
    metadata: Optional[dict[str, Any]] = None
    changes: Optional[dict[str, Any]] = None

    @field_validator("source_id", "project_id", mode="before")
    @classmethod
    def _coerce_id(cls, value: Any) -> Any:
        if isinstance(value, int):
            return str(value)
        return value

    @model_validator(mode="after")
    def _default_entity_type(self) -> "EntityChangeEvent":
        if self.entity_type is None:
            self.entity_type = _TABLE_ENTITY_TYPES.get(self.source_table)
        return self


class DependencyType(str, Enum):
    TICKET_DEPENDENCY = "TICKET_DEPENDENCY"
    TASK_DEPENDENCY = "TASK_DEPENDENCY"


class DependencyChangeEvent(BaseModel):
    """Notification that an edge between two entities was added or removed."""
    event_type: EventType
    workspace_id: str
    dependent_entity_id: str
    depends_on_entity_id: str
    dependency_type: DependencyType = DependencyType.TICKET_DEPENDENCY
    timestamp: datetime = Field(default_factory=utc_now)

    @field_validator("dependent_entity_id", "depends_on_entity_id", mode="before")
    @classmethod
    def _coerce_id(cls, value: Any) -> Any:
        if isinstance(value, int):
            return str(value)
        return value

    @property
    def source_table(self) -> str:
        if self.dependency_type == DependencyType.TASK_DEPENDENCY:
            return "tasks"
        return "tickets"


# =============================================================================
# Dependency graph
# =============================================================================


class RelationType(str, Enum):
    DEPENDS_ON = "depends_on"
    BLOCKS = "blocks"
    RELATES_TO = "relates_to"
    PARENT_CHILD = "parent_child"
    EPIC_TICKET = "epic_ticket"
    SPRINT_TICKET = "sprint_ticket"


class DependencyRelation(BaseModel):
    """Directed edge source -> related, derived on demand from business tables."""
    source_table: str
    source_id: str
    related_table: str
    related_id: str
    relation_type: RelationType
    workspace_id: str
    project_id: Optional[str] = None


class EntityDependencies(BaseModel):
    entity_table: str
    entity_id: str
    dependencies: list[DependencyRelation] = Field(default_factory=list)
    dependents: list[DependencyRelation] = Field(default_factory=list)


class AffectedEntity(BaseModel):
    table: str
    id: str
    project_id: Optional[str] = None


# =============================================================================
# Resilience
# =============================================================================


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half-open"


class CircuitBreakerStats(BaseModel):
    """Per-key breaker state. Times are clock seconds."""
    state: CircuitState = CircuitState.CLOSED
    failure_count: int = 0
    success_count: int = 0
    last_failure_time: Optional[float] = None
    next_attempt_time: Optional[float] = None


class CircuitBreakerConfig(BaseModel):
    failure_threshold: int = 5
    reset_timeout: int = 60000  # ms
    monitoring_period: int = 60000  # ms


class RetryConfig(BaseModel):
    max_retries: int = 3
    base_delay: int = 1000  # ms
    max_delay: int = 30000  # ms
    backoff_multiplier: float = 2
    jitter: bool = True


class ErrorHandlingConfig(BaseModel):
    retry: RetryConfig = Field(default_factory=RetryConfig)
    circuit_breaker: CircuitBreakerConfig = Field(default_factory=CircuitBreakerConfig)
    timeout: int = 30000  # ms


class ApiCallResult(BaseModel, Generic[T]):
    """Outcome envelope of a retried call; total_duration is in ms."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    success: bool
    data: Optional[T] = None
    error: Optional[BaseException] = None
    attempts: int = 0
    total_duration: float = 0.0


# =============================================================================
# Monitoring
# =============================================================================


class OperationType(str, Enum):
    EMBEDDING = "embedding"
    SEARCH = "search"
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"
    BATCH = "batch"


class VectorOperationMetric(BaseModel):
    """One observed operation. Durations are in ms."""
    operation_type: OperationType
    entity_type: Optional[str] = None
    entity_id: Optional[str] = None
    workspace_id: Optional[str] = None
    duration: float
    success: bool
    error_type: Optional[str] = None
    error_message: Optional[str] = None
    timestamp: datetime = Field(default_factory=utc_now)
    metadata: dict[str, Any] = Field(default_factory=dict)


class EmbeddingMetric(VectorOperationMetric):
    operation_type: OperationType = OperationType.EMBEDDING
    provider: str
    model: str
    text_length: int
    embedding_dimensions: Optional[int] = None
    attempts: int = 1
    circuit_breaker_state: Optional[CircuitState] = None


class SearchMetric(VectorOperationMetric):
    operation_type: OperationType = OperationType.SEARCH
    query_length: int
    results_count: int
    similarity_threshold: Optional[float] = None
    search_limit: int


class DatabaseMetric(VectorOperationMetric):
    records_affected: int
    batch_size: Optional[int] = None


class PerformanceStats(BaseModel):
    total_operations: int = 0
    successful_operations: int = 0
    failed_operations: int = 0
    average_duration: float = 0.0
    min_duration: float = 0.0
    max_duration: float = 0.0
    operations_per_minute: int = 0
    error_rate: float = 0.0
    last_updated: datetime = Field(default_factory=utc_now)


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


class ServiceHealthMetrics(BaseModel):
    service: str = "vector"
    status: HealthStatus
    uptime: float
    memory_usage: float
    circuit_breaker_stats: dict[str, CircuitBreakerStats] = Field(default_factory=dict)
    total_operations: int = 0
    error_rate: float = 0.0
    average_duration: float = 0.0
    last_health_check: datetime = Field(default_factory=utc_now)


class VectorStoreStats(BaseModel):
    """Document counts derived from successful insert metrics."""
    total_documents: int = 0
    documents_by_entity_type: dict[str, int] = Field(default_factory=dict)
    documents_by_workspace: dict[str, int] = Field(default_factory=dict)
    last_index_update: Optional[datetime] = None


class AlertSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class AlertCondition(BaseModel):
    """A predicate over PerformanceStats that emits an alert log when true."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    id: str
    name: str
    description: str = ""
    condition: Callable[[PerformanceStats], bool]
    severity: AlertSeverity = AlertSeverity.MEDIUM
    enabled: bool = True

"""
Domain models for health checks, notifications and SLA evaluation.

These models represent the core business concepts and are framework-agnostic.
They use Pydantic for validation; anything that crosses a component boundary
(results, events, notifications, SLA snapshots) is defined here.
"""

import uuid
from datetime import UTC, datetime, timedelta
from enum import Enum, IntEnum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class MonitoringStatus(str, Enum):
    """
    Ordered classification of a check outcome.

    Ordering comes from an explicit rank table rather than declaration order,
    so a new status can be slotted in between two existing ones without
    renumbering anything. Unknown is the unranked default.
    """

    UNKNOWN = "unknown"
    HEALTHY = "healthy"
    WARNING = "warning"
    UNHEALTHY = "unhealthy"
    CRITICAL = "critical"
    ERROR = "error"

    @property
    def rank(self) -> int:
        return _STATUS_RANK[self]

    @property
    def is_successful(self) -> bool:
        return self is MonitoringStatus.HEALTHY

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, MonitoringStatus):
            return NotImplemented
        return self.rank < other.rank

    def __le__(self, other: object) -> bool:
        if not isinstance(other, MonitoringStatus):
            return NotImplemented
        return self.rank <= other.rank

    def __gt__(self, other: object) -> bool:
        if not isinstance(other, MonitoringStatus):
            return NotImplemented
        return self.rank > other.rank

    def __ge__(self, other: object) -> bool:
        if not isinstance(other, MonitoringStatus):
            return NotImplemented
        return self.rank >= other.rank


_STATUS_RANK: dict[MonitoringStatus, int] = {
    MonitoringStatus.UNKNOWN: 0,
    MonitoringStatus.HEALTHY: 10,
    MonitoringStatus.WARNING: 20,
    MonitoringStatus.UNHEALTHY: 30,
    MonitoringStatus.CRITICAL: 40,
    MonitoringStatus.ERROR: 50,
}


class NotificationSeverity(IntEnum):
    """Notification severity, compared by ordinal (Info < Warning < Critical)."""

    INFO = 0
    WARNING = 1
    CRITICAL = 2

    @classmethod
    def parse(cls, value: Any) -> "NotificationSeverity":
        """Accept a member, its ordinal or its (case-insensitive) name."""
        if isinstance(value, cls):
            return value
        if isinstance(value, bool) or not isinstance(value, int | str):
            raise ValueError(f"Unknown notification severity: {value!r}")
        if isinstance(value, str) and not value.strip().isdigit():
            try:
                return cls[value.strip().upper()]
            except KeyError:
                raise ValueError(f"Unknown notification severity: {value!r}") from None
        return cls(int(value))

    @classmethod
    def from_status(cls, status: MonitoringStatus) -> "NotificationSeverity":
        if status >= MonitoringStatus.CRITICAL:
            return cls.CRITICAL
        if status >= MonitoringStatus.WARNING:
            return cls.WARNING
        return cls.INFO


class CheckResult(BaseModel):
    """Outcome of a single check execution."""

    model_config = ConfigDict(frozen=True)

    check_name: str
    status: MonitoringStatus = MonitoringStatus.UNKNOWN
    message: str = ""
    details: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    duration_ms: float = Field(default=0.0, ge=0.0)


# Name used at the component boundary
MonitoringResult = CheckResult


class MonitoringEvent(CheckResult):
    """A check result enriched with event identity, for real-time consumers."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    job_id: str = ""
    type: str = "check_result"
    severity: NotificationSeverity = NotificationSeverity.INFO
    metadata: dict[str, str] = Field(default_factory=dict)

    @classmethod
    def from_result(cls, result: CheckResult, job_id: str) -> "MonitoringEvent":
        return cls(
            job_id=job_id,
            check_name=result.check_name,
            status=result.status,
            message=result.message,
            details=result.details,
            timestamp=result.timestamp,
            duration_ms=result.duration_ms,
            severity=NotificationSeverity.from_status(result.status),
        )

    def to_notification(self, source: str = "healthwatch") -> "NotificationMessage":
        """Render the event as a notification for the router."""
        return NotificationMessage(
            subject=f"{self.check_name}: {self.status.value}",
            body=self.message,
            severity=self.severity,
            category="health",
            source=source,
            timestamp=self.timestamp,
            metadata={
                "job_id": self.job_id,
                "event_id": self.id,
                "duration_ms": f"{self.duration_ms:.0f}",
                **self.metadata,
            },
        )


class NotificationMessage(BaseModel):
    """Normalized notification handed to the router."""

    model_config = ConfigDict(frozen=True)

    subject: str
    body: str = ""
    severity: NotificationSeverity = NotificationSeverity.INFO
    category: str = ""
    source: str = "healthwatch"
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    metadata: dict[str, str] | None = None

    @field_validator("severity", mode="before")
    @classmethod
    def _parse_severity(cls, v: Any) -> NotificationSeverity:
        return NotificationSeverity.parse(v)


class MonitoringSummary(BaseModel):
    """High level view derived from the per-check counters."""

    total_checks: int = 0
    healthy_checks: int = 0
    unhealthy_checks: int = 0
    warning_checks: int = 0
    critical_checks: int = 0
    error_checks: int = 0
    unknown_checks: int = 0
    success_rate: float = 0.0
    jobs_started: int = 0
    jobs_completed: int = 0
    jobs_failed: int = 0
    jobs_cancelled: int = 0
    last_heartbeat: datetime | None = None
    uptime_seconds: float = 0.0


# ---------------------------------------------------------------------------
# Check definitions
# ---------------------------------------------------------------------------


class _CheckDefinitionBase(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str = Field(min_length=1)
    timeout_seconds: float = Field(gt=0.0, description="Effective timeout, already resolved")
    enabled: bool = True


class HttpCheckDefinition(_CheckDefinitionBase):
    """One HTTP probe."""

    kind: Literal["http"] = "http"
    url: str
    method: str = "GET"
    expected_status_codes: frozenset[int] = frozenset({200})
    headers: dict[str, str] = Field(default_factory=dict)


class DatabaseConnectionCheckDefinition(_CheckDefinitionBase):
    """Open-and-validate probe for one database connection."""

    kind: Literal["db_connection"] = "db_connection"
    connection_name: str
    provider: str
    connection_string: str = Field(repr=False)
    environment: str = ""
    tags: tuple[str, ...] = ()


class DatabaseQueryCheckDefinition(_CheckDefinitionBase):
    """One parameterized query run against a database connection."""

    kind: Literal["db_query"] = "db_query"
    connection_name: str
    query_name: str
    provider: str
    connection_string: str = Field(repr=False)
    sql: str = Field(repr=False)
    parameters: dict[str, Any] = Field(default_factory=dict, repr=False)
    result_type: Literal["scalar", "nonquery", "table"] = "scalar"
    expected_value: str | None = None
    comparison_operator: str | None = None
    warning_threshold: float | None = None
    critical_threshold: float | None = None
    environment: str = ""
    tags: tuple[str, ...] = ()


CheckDefinition = Annotated[
    HttpCheckDefinition | DatabaseConnectionCheckDefinition | DatabaseQueryCheckDefinition,
    Field(discriminator="kind"),
]


# ---------------------------------------------------------------------------
# SLA
# ---------------------------------------------------------------------------


class SlaState(str, Enum):
    COMPLIANT = "compliant"
    WARNING = "warning"
    VIOLATION = "violation"


class SlaViolationType(str, Enum):
    AVAILABILITY = "availability"
    SUCCESS_RATE = "success_rate"
    RESPONSE_TIME = "response_time"
    OTHER = "other"


class SlaEventType(str, Enum):
    COMPLIANCE = "compliance"
    WARNING = "warning"
    VIOLATION = "violation"
    RECOVERY = "recovery"


class SlaMetrics(BaseModel):
    """Computed SLA snapshot for one period."""

    model_config = ConfigDict(frozen=True)

    availability: float = Field(ge=0.0, le=100.0)
    success_rate: float = Field(ge=0.0, le=100.0)
    error_rate: float = Field(ge=0.0, le=100.0)
    average_response_time_ms: float = Field(default=0.0, ge=0.0)
    p95_response_time_ms: float = Field(default=0.0, ge=0.0)
    p99_response_time_ms: float = Field(default=0.0, ge=0.0)
    total_requests: int = Field(default=0, ge=0)
    successful_requests: int = Field(default=0, ge=0)
    failed_requests: int = Field(default=0, ge=0)
    period: timedelta
    start_time: datetime
    end_time: datetime


class SlaViolation(BaseModel):
    """A detected breach; open until a later evaluation is compliant."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    service_name: str
    sla_type: SlaViolationType
    violation_time: datetime
    resolved_time: datetime | None = None
    actual_value: float
    expected_value: float
    severity: NotificationSeverity = NotificationSeverity.CRITICAL
    description: str = ""

    @property
    def is_resolved(self) -> bool:
        return self.resolved_time is not None

    @property
    def duration(self) -> timedelta | None:
        if self.resolved_time is None:
            return None
        return self.resolved_time - self.violation_time

    @model_validator(mode="after")
    def resolved_after_violation(self) -> "SlaViolation":
        if self.resolved_time is not None and self.resolved_time < self.violation_time:
            raise ValueError("resolved_time must not be earlier than violation_time")
        return self

    def resolve(self, when: datetime) -> None:
        """Close the violation at ``when``."""
        if when < self.violation_time:
            raise ValueError("resolved_time must not be earlier than violation_time")
        self.resolved_time = when


class SlaEvent(BaseModel):
    """One SLA state transition, kept in the evaluator's bounded event log."""

    model_config = ConfigDict(frozen=True)

    service_name: str
    event_type: SlaEventType
    timestamp: datetime
    details: str = ""
    metrics: SlaMetrics | None = None
    severity: NotificationSeverity = NotificationSeverity.INFO


class SlaStatus(BaseModel):
    """Latest evaluation outcome for one service."""

    service_name: str
    state: SlaState
    is_compliant: bool
    compliance_percentage: float
    metrics: SlaMetrics
    open_violation: SlaViolation | None = None
    evaluated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class SlaReport(BaseModel):
    """Compliance report over a date range."""

    start_date: datetime
    end_date: datetime
    generated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    overall_metrics: SlaMetrics
    service_metrics: dict[str, SlaMetrics] = Field(default_factory=dict)
    violations: list[SlaViolation] = Field(default_factory=list)
    compliance_score: float = 0.0
    summary: str = ""

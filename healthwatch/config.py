"""
Configuration management with environment variable support and validation.

Design principles:
- Environment-specific configs (dev, staging, prod)
- Validation at startup (fail fast): duplicate names, bad URLs, inverted
  thresholds and dangling references never reach the orchestrator
- Type safety with Pydantic
- Secure defaults (connection strings are SecretStr and never logged)

Scalar settings come from environment variables. The check, channel and SLA
catalogues are structured, so they are read from the JSON document named by
HEALTHWATCH_CONFIG_FILE when it is set.
"""

import os
from datetime import timedelta
from functools import lru_cache
from pathlib import Path
from typing import Any, Literal, cast
from urllib.parse import urlparse

from dotenv import load_dotenv
from pydantic import BaseModel, Field, SecretStr, field_validator, model_validator

from healthwatch.domain.models import NotificationSeverity

# Load environment variables from .env file
load_dotenv()

COMPARISON_OPERATORS: dict[str, str] = {
    "equals": "equals",
    "eq": "equals",
    "notequals": "notequals",
    "ne": "notequals",
    "greaterthan": "greaterthan",
    "gt": "greaterthan",
    "greaterthanorequal": "greaterthanorequal",
    "gte": "greaterthanorequal",
    "lessthan": "lessthan",
    "lt": "lessthan",
    "lessthanorequal": "lessthanorequal",
    "lte": "lessthanorequal",
}


def _ensure_unique(names: list[str], what: str) -> None:
    seen: set[str] = set()
    for name in names:
        key = name.strip().lower()
        if key in seen:
            raise ValueError(f"Duplicate {what} name: {name!r}")
        seen.add(key)


def _validate_http_url(url: str) -> str:
    parsed = urlparse(url)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValueError(f"Invalid URL: {url!r}")
    return url


class MonitoringConfig(BaseModel):
    """Core scheduling configuration."""

    enabled: bool = Field(default=True, description="Run monitoring passes")
    job_name: str = Field(default="monitoring-job", min_length=1)
    check_interval_seconds: float = Field(
        default=60.0, gt=0.0, description="Interval between monitoring passes"
    )
    sample_retention: int = Field(
        default=1000, gt=0, description="Duration samples kept per check for rolling windows"
    )


class HttpEndpointConfig(BaseModel):
    """One monitored HTTP endpoint."""

    name: str = Field(..., min_length=1, max_length=100)
    url: str
    method: str = "GET"
    timeout_seconds: float | None = Field(default=None, gt=0.0, le=300.0)
    expected_status_codes: list[int] = Field(default_factory=lambda: [200], min_length=1)
    headers: dict[str, str] = Field(default_factory=dict)
    enabled: bool = True

    @field_validator("name")
    @classmethod
    def name_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Endpoint name is required")
        return v

    @field_validator("url")
    @classmethod
    def url_must_be_http(cls, v: str) -> str:
        return _validate_http_url(v)

    @field_validator("method")
    @classmethod
    def normalize_method(cls, v: str) -> str:
        return v.strip().upper()

    @field_validator("expected_status_codes")
    @classmethod
    def status_codes_in_range(cls, v: list[int]) -> list[int]:
        for code in v:
            if not 100 <= code <= 599:
                raise ValueError(f"Invalid HTTP status code: {code}")
        return v


class HttpMonitoringConfig(BaseModel):
    """HTTP check executor configuration."""

    default_timeout_seconds: float = Field(default=30.0, gt=0.0, le=300.0)
    max_concurrent_checks: int = Field(default=10, gt=0)
    endpoints: list[HttpEndpointConfig] = Field(default_factory=list)

    @model_validator(mode="after")
    def unique_endpoint_names(self) -> "HttpMonitoringConfig":
        _ensure_unique([e.name for e in self.endpoints], "endpoint")
        return self


class DatabaseQueryConfig(BaseModel):
    """A monitoring query, run against each connection that selects it."""

    name: str = Field(..., min_length=1)
    sql: str = Field(..., min_length=1)
    description: str = ""
    type: str = Field(default="health", description="Free-form query category")
    result_type: Literal["scalar", "nonquery", "table"] = "scalar"
    expected_value: str | None = None
    comparison_operator: str | None = None
    warning_threshold: float | None = None
    critical_threshold: float | None = None
    timeout_seconds: float | None = Field(default=None, gt=0.0)
    enabled: bool = True
    parameters: dict[str, Any] = Field(default_factory=dict)

    @field_validator("result_type", mode="before")
    @classmethod
    def lower_result_type(cls, v: Any) -> Any:
        return v.strip().lower() if isinstance(v, str) else v

    @field_validator("comparison_operator")
    @classmethod
    def known_operator(cls, v: str | None) -> str | None:
        if v is None:
            return None
        key = v.strip().lower()
        if key not in COMPARISON_OPERATORS:
            raise ValueError(f"Unknown comparison operator: {v!r}")
        return COMPARISON_OPERATORS[key]

    @model_validator(mode="after")
    def thresholds_are_ordered(self) -> "DatabaseQueryConfig":
        if (
            self.warning_threshold is not None
            and self.critical_threshold is not None
            and self.warning_threshold > self.critical_threshold
        ):
            raise ValueError(
                f"Query {self.name!r}: warning_threshold must not exceed critical_threshold"
            )
        if self.comparison_operator is not None and self.expected_value is None:
            raise ValueError(f"Query {self.name!r}: comparison_operator requires expected_value")
        if self.expected_value is not None and self.comparison_operator is None:
            self.comparison_operator = "equals"
        return self


class DatabaseConnectionConfig(BaseModel):
    """A monitored database connection."""

    name: str = Field(..., min_length=1)
    provider: str = Field(default="postgresql", description="SQLAlchemy dialect name")
    connection_string: SecretStr
    connection_timeout_seconds: float | None = Field(default=None, gt=0.0)
    command_timeout_seconds: float | None = Field(default=None, gt=0.0)
    enabled: bool = True
    tags: list[str] = Field(default_factory=list)
    environment: str = ""
    query_names: list[str] = Field(
        default_factory=list, description="Queries to run; empty means every enabled query"
    )

    @field_validator("connection_string")
    @classmethod
    def connection_string_required(cls, v: SecretStr) -> SecretStr:
        if not v.get_secret_value().strip():
            raise ValueError("connection_string is required")
        return v


class DatabaseMonitoringConfig(BaseModel):
    """Database check executor configuration."""

    enabled: bool = True
    default_connection_timeout_seconds: float = Field(default=30.0, gt=0.0)
    default_command_timeout_seconds: float = Field(default=30.0, gt=0.0)
    max_concurrent_connections: int = Field(default=10, gt=0)
    connections: list[DatabaseConnectionConfig] = Field(default_factory=list)
    queries: list[DatabaseQueryConfig] = Field(default_factory=list)

    @model_validator(mode="after")
    def references_resolve(self) -> "DatabaseMonitoringConfig":
        _ensure_unique([c.name for c in self.connections], "connection")
        _ensure_unique([q.name for q in self.queries], "query")
        known = {q.name.lower() for q in self.queries}
        for connection in self.connections:
            for query_name in connection.query_names:
                if query_name.lower() not in known:
                    raise ValueError(
                        f"Connection {connection.name!r} references unknown query {query_name!r}"
                    )
        return self


class RateLimitConfig(BaseModel):
    """Per-channel delivery limits."""

    max_per_minute: int = Field(default=10, gt=0)
    max_per_hour: int = Field(default=100, gt=0)
    burst_allowance: int = Field(default=5, gt=0)


class NotificationChannelConfig(BaseModel):
    """A notification destination and its filter."""

    name: str = Field(..., min_length=1)
    type: Literal["email", "slack", "teams", "webhook"]
    enabled: bool = True
    target: str = Field(default="", description="Slack channel, mailbox label, etc.")
    webhook_url: str | None = None
    recipients: list[str] = Field(default_factory=list)
    min_severity: NotificationSeverity = NotificationSeverity.INFO
    business_hours_only: bool = False
    categories: list[str] = Field(default_factory=list)
    headers: dict[str, str] = Field(default_factory=dict)
    rate_limit: RateLimitConfig | None = None

    @field_validator("type", mode="before")
    @classmethod
    def lower_type(cls, v: Any) -> Any:
        return v.strip().lower() if isinstance(v, str) else v

    @field_validator("min_severity", mode="before")
    @classmethod
    def parse_severity(cls, v: Any) -> NotificationSeverity:
        return NotificationSeverity.parse(v)

    @field_validator("webhook_url")
    @classmethod
    def webhook_url_must_be_http(cls, v: str | None) -> str | None:
        return _validate_http_url(v) if v else v

    @model_validator(mode="after")
    def transport_target_present(self) -> "NotificationChannelConfig":
        if self.type in {"slack", "teams", "webhook"} and not self.webhook_url:
            raise ValueError(f"Channel {self.name!r}: webhook_url is required for {self.type}")
        if self.type == "email" and not self.recipients:
            raise ValueError(f"Channel {self.name!r}: at least one recipient is required")
        return self


class NotificationConfig(BaseModel):
    """Notification router configuration."""

    enabled: bool = True
    delivery_timeout_seconds: float = Field(default=10.0, gt=0.0)
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    channels: list[NotificationChannelConfig] = Field(default_factory=list)

    @model_validator(mode="after")
    def unique_channel_names(self) -> "NotificationConfig":
        _ensure_unique([c.name for c in self.channels], "channel")
        return self


class SlaDefinition(BaseModel):
    """Per-service SLA targets."""

    service_name: str = Field(..., min_length=1)
    description: str = ""
    availability_target: float = Field(default=99.9, gt=0.0, le=100.0)
    success_rate_target: float = Field(default=99.5, gt=0.0, le=100.0)
    response_time_target_ms: float = Field(default=1000.0, gt=0.0, description="P95 target")
    measurement_period: timedelta = Field(default=timedelta(days=30))
    check_names: list[str] = Field(
        default_factory=list, description="Checks that make up the service; empty means all"
    )
    is_active: bool = True

    @field_validator("measurement_period")
    @classmethod
    def period_positive(cls, v: timedelta) -> timedelta:
        if v <= timedelta(0):
            raise ValueError("measurement_period must be positive")
        return v


class SlaConfig(BaseModel):
    """SLA evaluator configuration."""

    enabled: bool = True
    evaluation_interval_seconds: float = Field(default=300.0, gt=0.0)
    downtime_weight: float = Field(
        default=0.1,
        ge=0.0,
        le=1.0,
        description="Fraction of the failure ratio counted as downtime",
    )
    warning_margin: float = Field(
        default=0.1,
        ge=0.0,
        description="Percentage points above a target that still count as at risk",
    )
    response_time_warning_ratio: float = Field(default=0.8, gt=0.0, le=1.0)
    event_retention: timedelta = Field(
        default=timedelta(hours=24), description="How long SLA transition events are kept"
    )
    definitions: list[SlaDefinition] = Field(default_factory=list)

    @field_validator("event_retention")
    @classmethod
    def retention_positive(cls, v: timedelta) -> timedelta:
        if v <= timedelta(0):
            raise ValueError("event_retention must be positive")
        return v

    @model_validator(mode="after")
    def unique_services(self) -> "SlaConfig":
        _ensure_unique([d.service_name for d in self.definitions], "SLA service")
        return self


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO", description="Logging level"
    )
    format: Literal["json", "console"] = Field(default="json", description="Logging format")


class AppConfig(BaseModel):
    """Main application configuration combining all subsystems."""

    # Environment
    environment: Literal["development", "staging", "production"] = Field(
        default="development", description="Environment"
    )
    debug: bool = Field(default=False, description="Enable debug mode")

    # Component configs
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)
    http: HttpMonitoringConfig = Field(default_factory=HttpMonitoringConfig)
    database: DatabaseMonitoringConfig = Field(default_factory=DatabaseMonitoringConfig)
    notifications: NotificationConfig = Field(default_factory=NotificationConfig)
    sla: SlaConfig = Field(default_factory=SlaConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @model_validator(mode="after")
    def debug_only_in_dev(self) -> "AppConfig":
        """Ensure debug mode is only allowed in development environment."""
        if self.debug and self.environment != "development":
            raise ValueError("debug mode is only allowed in development environment")
        return self

    def configured_check_names(self) -> list[str]:
        """Names of every HTTP, connection and query check the config defines."""
        names = [e.name for e in self.http.endpoints]
        for connection in self.database.connections:
            names.append(connection_check_name(connection.name))
            names.extend(
                query_check_name(connection.name, q.name)
                for q in self.database.queries
                if not connection.query_names
                or q.name.lower() in {n.lower() for n in connection.query_names}
            )
        return names

    @model_validator(mode="after")
    def check_names_unique_across_kinds(self) -> "AppConfig":
        """HTTP and database checks share one metric namespace."""
        _ensure_unique(self.configured_check_names(), "check")
        return self

    @model_validator(mode="after")
    def sla_checks_exist(self) -> "AppConfig":
        """Every SLA check name must match a configured check once sanitized."""
        from healthwatch.services.metrics_aggregator import sanitize_metric_name

        known = {sanitize_metric_name(n) for n in self.configured_check_names()}
        for definition in self.sla.definitions:
            for name in definition.check_names:
                try:
                    key = sanitize_metric_name(name)
                except ValueError as e:
                    raise ValueError(
                        f"SLA {definition.service_name!r} has an invalid check name: {e}"
                    ) from e
                if key not in known:
                    raise ValueError(
                        f"SLA {definition.service_name!r} references unknown check {name!r}"
                    )
        return self


def connection_check_name(connection_name: str) -> str:
    return f"{connection_name}_connection"


def query_check_name(connection_name: str, query_name: str) -> str:
    return f"{connection_name}_{query_name}"


def load_config_from_env() -> AppConfig:
    """Load configuration from environment variables with validation."""

    def _env_to_literal(val: str) -> Literal["development", "staging", "production"]:
        v = val.strip().lower()
        if v in {"dev", "development"}:
            return "development"
        if v in {"stage", "staging"}:
            return "staging"
        return "production"

    def _level_to_literal(val: str) -> Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]:
        v = val.strip().upper()
        return cast(
            Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
            v if v in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"} else "INFO",
        )

    def _parse_bool(val: str | None, default: bool) -> bool:
        if val is None:
            return default
        return val.strip().lower() in {"1", "true", "yes", "on"}

    # Structured catalogue (checks, channels, SLAs) from the config file
    document: dict[str, Any] = {}
    config_file = os.getenv("HEALTHWATCH_CONFIG_FILE")
    if config_file:
        document = AppConfig.model_validate_json(Path(config_file).read_text()).model_dump()

    def _section(name: str, overrides: dict[str, tuple[str, Any]]) -> dict[str, Any]:
        # Environment variables win over the file; unset variables leave it alone
        section = dict(document.get(name, {}))
        for key, (env_name, parse) in overrides.items():
            raw = os.getenv(env_name)
            if raw is not None and raw.strip():
                section[key] = parse(raw)
        return section

    def _flag(raw: str) -> bool:
        return _parse_bool(raw, False)

    # Detect environment
    environment = _env_to_literal(os.getenv("ENVIRONMENT", "development"))
    debug = environment == "development"

    monitoring = _section(
        "monitoring",
        {
            "enabled": ("MONITORING_ENABLED", _flag),
            "check_interval_seconds": ("CHECK_INTERVAL_SECONDS", float),
        },
    )
    http = _section(
        "http",
        {
            "default_timeout_seconds": ("HTTP_DEFAULT_TIMEOUT_SECONDS", float),
            "max_concurrent_checks": ("HTTP_MAX_CONCURRENT_CHECKS", int),
        },
    )
    database = _section(
        "database",
        {
            "enabled": ("DATABASE_MONITORING_ENABLED", _flag),
            "max_concurrent_connections": ("DATABASE_MAX_CONCURRENT_CONNECTIONS", int),
        },
    )
    notifications = _section("notifications", {"enabled": ("NOTIFICATIONS_ENABLED", _flag)})
    sla = _section(
        "sla",
        {
            "enabled": ("SLA_MONITORING_ENABLED", _flag),
            "evaluation_interval_seconds": ("SLA_EVALUATION_INTERVAL_SECONDS", float),
        },
    )

    # Logging config
    logging_config = LoggingConfig(
        level=_level_to_literal(os.getenv("LOG_LEVEL", "INFO")),
        format="console" if debug else "json",
    )

    # Application config
    return AppConfig(
        environment=environment,
        debug=debug,
        monitoring=MonitoringConfig.model_validate(monitoring),
        http=HttpMonitoringConfig.model_validate(http),
        database=DatabaseMonitoringConfig.model_validate(database),
        notifications=NotificationConfig.model_validate(notifications),
        sla=SlaConfig.model_validate(sla),
        logging=logging_config,
    )


@lru_cache
def get_config() -> AppConfig:
    """Get cached application configuration."""
    return load_config_from_env()

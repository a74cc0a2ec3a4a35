"""
Database check executor.

Two probe modes against an injected DatabaseClient:

- connection test: open, run a trivial statement, report server identity
- query check: run one parameterized statement and classify its result
  against an expected value and/or warning/critical thresholds

Connection strings, SQL text and parameter values never appear in results
or logs; driver error messages are scrubbed before they are surfaced.
"""

import re
import time
from collections.abc import Mapping
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any, Protocol

import structlog
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.exc import StatementError
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from healthwatch.domain.models import (
    CheckResult,
    DatabaseConnectionCheckDefinition,
    DatabaseQueryCheckDefinition,
    MonitoringStatus,
)
from healthwatch.errors import CheckCancelledError
from healthwatch.services.cancellation import CancellationToken

logger = structlog.get_logger(__name__)

MAX_ERROR_LENGTH = 500

_URL_CREDENTIALS = re.compile(r"(?P<scheme>[a-zA-Z][\w+.-]*://)(?P<userinfo>[^/@\s]+)@")
_KEYWORD_SECRETS = re.compile(
    r"(?P<key>\b(?:password|pwd|passwd|secret|token)\s*=\s*)(?P<value>[^;\s&]+)",
    re.IGNORECASE,
)


class ConnectionInfo(BaseModel):
    """What a successful connection test reports about the server."""

    server_version: str = ""
    database_name: str = ""


class DatabaseClient(Protocol):
    """
    Database transport used by the executor.

    Implementations must let asyncio cancellation interrupt an in-flight
    statement; the executor relies on that to enforce timeouts.
    """

    async def test_connection(
        self, provider: str, connection_string: str, timeout: float
    ) -> ConnectionInfo: ...

    async def execute(
        self,
        provider: str,
        connection_string: str,
        sql: str,
        parameters: Mapping[str, Any],
        result_type: str,
        timeout: float,
    ) -> Any: ...


class SqlAlchemyDatabaseClient:
    """
    DatabaseClient backed by SQLAlchemy's asyncio engine.

    ``connection_string`` is a SQLAlchemy URL with an async driver, e.g.
    ``postgresql+asyncpg://...``. One engine (and pool) is kept per URL.
    """

    def __init__(self, pool_size: int = 5) -> None:
        self.pool_size = pool_size
        self._engines: dict[str, AsyncEngine] = {}

    def _engine(self, connection_string: str, timeout: float) -> AsyncEngine:
        engine = self._engines.get(connection_string)
        if engine is None:
            options: dict[str, Any] = {"pool_pre_ping": True}
            if not connection_string.startswith("sqlite"):
                options.update(pool_size=self.pool_size, pool_timeout=timeout)
            engine = create_async_engine(connection_string, **options)
            self._engines[connection_string] = engine
        return engine

    async def test_connection(
        self, provider: str, connection_string: str, timeout: float
    ) -> ConnectionInfo:
        engine = self._engine(connection_string, timeout)
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
            version_info = conn.dialect.server_version_info or ()
        return ConnectionInfo(
            server_version=".".join(str(part) for part in version_info),
            database_name=engine.url.database or "",
        )

    async def execute(
        self,
        provider: str,
        connection_string: str,
        sql: str,
        parameters: Mapping[str, Any],
        result_type: str,
        timeout: float,
    ) -> Any:
        engine = self._engine(connection_string, timeout)
        statement = text(sql)
        if result_type == "nonquery":
            async with engine.begin() as conn:
                result = await conn.execute(statement, dict(parameters))
                return result.rowcount
        async with engine.connect() as conn:
            result = await conn.execute(statement, dict(parameters))
            if result_type == "table":
                return [dict(row._mapping) for row in result]
            return result.scalar()

    async def aclose(self) -> None:
        engines, self._engines = self._engines, {}
        for engine in engines.values():
            await engine.dispose()


def sanitize_error_message(message: str, secrets: tuple[str, ...] = ()) -> str:
    """Strip credentials from a driver error before it leaves the executor."""
    for secret in secrets:
        if secret:
            message = message.replace(secret, "***")
    message = _URL_CREDENTIALS.sub(r"\g<scheme>***@", message)
    message = _KEYWORD_SECRETS.sub(r"\g<key>***", message)
    if len(message) > MAX_ERROR_LENGTH:
        message = message[: MAX_ERROR_LENGTH - 3] + "..."
    return message


def _error_text(error: Exception) -> str:
    # SQLAlchemy renders the statement and its parameters into str(); the
    # driver's own error does not
    if isinstance(error, StatementError) and error.orig is not None:
        return str(error.orig)
    return str(error)


def _as_float(value: Any) -> float | None:
    if isinstance(value, bool):
        return float(value)
    if isinstance(value, int | float | Decimal):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


def compare_values(actual: Any, expected: str, operator: str) -> bool:
    """
    Evaluate ``actual <operator> expected``.

    Both sides are compared numerically when both parse as numbers, otherwise
    equality operators fall back to a case-sensitive string comparison and
    ordering operators are false.
    """
    left = _as_float(actual)
    right = _as_float(expected)
    numeric = left is not None and right is not None

    if operator in {"equals", "notequals"}:
        if numeric:
            equal = left == right
        elif isinstance(actual, bool):
            equal = str(actual).lower() == expected.strip().lower()
        else:
            equal = str(actual) == expected
        return equal if operator == "equals" else not equal

    if not numeric:
        return False
    match operator:
        case "greaterthan":
            return left > right  # type: ignore[operator]
        case "greaterthanorequal":
            return left >= right  # type: ignore[operator]
        case "lessthan":
            return left < right  # type: ignore[operator]
        case "lessthanorequal":
            return left <= right  # type: ignore[operator]
    raise ValueError(f"Unknown comparison operator: {operator!r}")


def classify_scalar(value: Any, query: DatabaseQueryCheckDefinition) -> MonitoringStatus:
    """
    Classify a scalar query result.

    A null result is healthy only when nothing was expected. A failed
    expected-value comparison is Unhealthy. Thresholds are inclusive, and
    non-numeric values skip them.
    """
    if value is None:
        return MonitoringStatus.HEALTHY if query.expected_value is None else MonitoringStatus.UNHEALTHY

    if query.expected_value is not None:
        if not compare_values(value, query.expected_value, query.comparison_operator or "equals"):
            return MonitoringStatus.UNHEALTHY

    numeric = _as_float(value)
    if numeric is not None:
        if query.critical_threshold is not None and numeric >= query.critical_threshold:
            return MonitoringStatus.CRITICAL
        if query.warning_threshold is not None and numeric >= query.warning_threshold:
            return MonitoringStatus.WARNING
    return MonitoringStatus.HEALTHY


_RESULT_MESSAGES = {
    MonitoringStatus.HEALTHY: "Query successful: {value}",
    MonitoringStatus.UNHEALTHY: "Query result outside expected range: {value}",
    MonitoringStatus.WARNING: "Query result at or above warning threshold: {value}",
    MonitoringStatus.CRITICAL: "Query result at or above critical threshold: {value}",
}


class DatabaseCheckExecutor:
    """Runs connection tests and monitoring queries."""

    def __init__(self, client: DatabaseClient) -> None:
        self.client = client
        self.logger = logger.bind(component="database_check")

    async def test_connection(
        self,
        definition: DatabaseConnectionCheckDefinition,
        cancellation: CancellationToken | None = None,
    ) -> CheckResult:
        token = cancellation or CancellationToken()
        log = self.logger.bind(check=definition.name, connection=definition.connection_name)
        started = time.perf_counter()
        base_details: dict[str, Any] = {
            "provider": definition.provider,
            "environment": definition.environment,
            "tags": list(definition.tags),
            "connection_timeout_seconds": definition.timeout_seconds,
        }

        def _result(status: MonitoringStatus, message: str, **details: Any) -> CheckResult:
            return CheckResult(
                check_name=definition.name,
                status=status,
                message=message,
                details={**base_details, **details},
                timestamp=datetime.now(UTC),
                duration_ms=(time.perf_counter() - started) * 1000,
            )

        try:
            info = await token.run(
                self.client.test_connection(
                    definition.provider, definition.connection_string, definition.timeout_seconds
                ),
                timeout=definition.timeout_seconds,
            )
        except CheckCancelledError:
            log.warning("db_connection_test_cancelled")
            return _result(MonitoringStatus.ERROR, "Connection test was cancelled")
        except TimeoutError:
            log.warning("db_connection_test_timed_out", timeout_seconds=definition.timeout_seconds)
            reason = f"timed out after {definition.timeout_seconds:g}s"
            return _result(
                MonitoringStatus.ERROR, f"Connection failed: {reason}", error=reason, type="TimeoutError"
            )
        except Exception as e:
            reason = sanitize_error_message(_error_text(e), (definition.connection_string,))
            log.error("db_connection_test_failed", error=reason, error_type=type(e).__name__)
            return _result(
                MonitoringStatus.ERROR, f"Connection failed: {reason}", error=reason, type=type(e).__name__
            )

        log.debug("db_connection_test_succeeded")
        return _result(
            MonitoringStatus.HEALTHY,
            "Connection successful",
            server_version=info.server_version,
            database_name=info.database_name,
        )

    async def execute_query(
        self,
        definition: DatabaseQueryCheckDefinition,
        cancellation: CancellationToken | None = None,
    ) -> CheckResult:
        token = cancellation or CancellationToken()
        log = self.logger.bind(
            check=definition.name,
            connection=definition.connection_name,
            query=definition.query_name,
        )
        started = time.perf_counter()
        base_details: dict[str, Any] = {
            "connection": definition.connection_name,
            "query": definition.query_name,
            "provider": definition.provider,
            "environment": definition.environment,
            "tags": list(definition.tags),
            "result_type": definition.result_type,
            "timeout_seconds": definition.timeout_seconds,
            "parameter_count": len(definition.parameters),
        }

        def _result(status: MonitoringStatus, message: str, **details: Any) -> CheckResult:
            return CheckResult(
                check_name=definition.name,
                status=status,
                message=message,
                details={**base_details, **details},
                timestamp=datetime.now(UTC),
                duration_ms=(time.perf_counter() - started) * 1000,
            )

        try:
            value = await token.run(
                self.client.execute(
                    definition.provider,
                    definition.connection_string,
                    definition.sql,
                    definition.parameters,
                    definition.result_type,
                    definition.timeout_seconds,
                ),
                timeout=definition.timeout_seconds,
            )
        except CheckCancelledError:
            log.warning("db_query_cancelled")
            return _result(MonitoringStatus.ERROR, "Query execution was cancelled")
        except TimeoutError:
            log.warning("db_query_timed_out", timeout_seconds=definition.timeout_seconds)
            reason = f"timed out after {definition.timeout_seconds:g}s"
            return _result(
                MonitoringStatus.ERROR,
                f"Query execution failed: {reason}",
                error=reason,
                type="TimeoutError",
            )
        except Exception as e:
            reason = sanitize_error_message(_error_text(e), (definition.connection_string,))
            log.error("db_query_failed", error=reason, error_type=type(e).__name__)
            return _result(
                MonitoringStatus.ERROR,
                f"Query execution failed: {reason}",
                error=reason,
                type=type(e).__name__,
            )

        if definition.result_type == "table":
            rows = value or []
            observed: Any = len(rows)
            extra: dict[str, Any] = {"row_count": len(rows)}
        else:
            observed = value
            extra = {"value": value}

        status = classify_scalar(observed, definition)
        message = _RESULT_MESSAGES[status].format(
            value="null" if observed is None else observed
        )
        log.debug("db_query_completed", status=status.value)
        return _result(
            status,
            message,
            expected_value=definition.expected_value,
            comparison_operator=definition.comparison_operator,
            warning_threshold=definition.warning_threshold,
            critical_threshold=definition.critical_threshold,
            **extra,
        )

"""
Monitoring orchestration: one full sweep over every enabled check.

Key patterns demonstrated:
- Structured concurrency with asyncio.TaskGroup, bounded by per-pool semaphores
- Per-check error boundaries: a failing check becomes an Error result and
  never aborts its siblings
- Cancellation treated distinctly from failure: counted once, announced with
  a dedicated event, and re-raised so the scheduler observes it
"""

import asyncio
import time
from collections.abc import Sequence
from datetime import UTC, datetime
from typing import Any, Protocol

import structlog

from healthwatch.config import AppConfig, connection_check_name, query_check_name
from healthwatch.domain.models import (
    CheckDefinition,
    CheckResult,
    DatabaseConnectionCheckDefinition,
    DatabaseQueryCheckDefinition,
    HttpCheckDefinition,
    MonitoringEvent,
    MonitoringStatus,
    NotificationSeverity,
)
from healthwatch.errors import JobCancelledError
from healthwatch.services.cancellation import CancellationToken, TriggerContext
from healthwatch.services.database_check import DatabaseCheckExecutor
from healthwatch.services.http_check import HttpCheckExecutor
from healthwatch.services.metrics_aggregator import MetricsAggregator
from healthwatch.services.notification_router import NotificationRouter

logger = structlog.get_logger(__name__)

JOB_CHECK_NAME = "monitoring_job"


class EventPublisher(Protocol):
    """Sink for produced events, e.g. a real-time push transport."""

    async def publish(self, event: MonitoringEvent) -> None: ...


def build_check_definitions(config: AppConfig) -> list[CheckDefinition]:
    """
    Flatten configuration into check definitions with resolved timeouts.

    Timeout precedence: check override, then connection default, then the
    global default. Disabled checks are kept (with ``enabled=False``) so that
    listings can show them; the orchestrator skips them.
    """
    definitions: list[CheckDefinition] = []

    for endpoint in config.http.endpoints:
        definitions.append(
            HttpCheckDefinition(
                name=endpoint.name,
                url=endpoint.url,
                method=endpoint.method,
                expected_status_codes=frozenset(endpoint.expected_status_codes),
                headers=endpoint.headers,
                timeout_seconds=endpoint.timeout_seconds or config.http.default_timeout_seconds,
                enabled=endpoint.enabled,
            )
        )

    database = config.database
    if not database.enabled:
        return definitions

    for connection in database.connections:
        connection_string = connection.connection_string.get_secret_value()
        definitions.append(
            DatabaseConnectionCheckDefinition(
                name=connection_check_name(connection.name),
                connection_name=connection.name,
                provider=connection.provider,
                connection_string=connection_string,
                environment=connection.environment,
                tags=tuple(connection.tags),
                timeout_seconds=(
                    connection.connection_timeout_seconds
                    or database.default_connection_timeout_seconds
                ),
                enabled=connection.enabled,
            )
        )

        selected = {n.lower() for n in connection.query_names}
        for query in database.queries:
            if selected and query.name.lower() not in selected:
                continue
            definitions.append(
                DatabaseQueryCheckDefinition(
                    name=query_check_name(connection.name, query.name),
                    connection_name=connection.name,
                    query_name=query.name,
                    provider=connection.provider,
                    connection_string=connection_string,
                    sql=query.sql,
                    parameters=query.parameters,
                    result_type=query.result_type,
                    expected_value=query.expected_value,
                    comparison_operator=query.comparison_operator,
                    warning_threshold=query.warning_threshold,
                    critical_threshold=query.critical_threshold,
                    environment=connection.environment,
                    tags=tuple(connection.tags),
                    timeout_seconds=(
                        query.timeout_seconds
                        or connection.command_timeout_seconds
                        or database.default_command_timeout_seconds
                    ),
                    enabled=connection.enabled and query.enabled,
                )
            )

    return definitions


class MonitoringOrchestrator:
    """
    Runs all enabled checks for one trigger and feeds the results onward.

    Results go to the metrics aggregator first, then to the event publishers
    and the notification router. Single-flight per trigger is the scheduler's
    responsibility.
    """

    def __init__(
        self,
        definitions: Sequence[CheckDefinition],
        http_executor: HttpCheckExecutor,
        db_executor: DatabaseCheckExecutor,
        metrics: MetricsAggregator,
        router: NotificationRouter | None = None,
        publishers: Sequence[EventPublisher] = (),
        max_concurrent_http: int = 10,
        max_concurrent_db: int = 10,
        source: str = "healthwatch",
    ) -> None:
        if max_concurrent_http <= 0 or max_concurrent_db <= 0:
            raise ValueError("Concurrency limits must be positive")
        self.definitions = list(definitions)
        self.http_executor = http_executor
        self.db_executor = db_executor
        self.metrics = metrics
        self.router = router
        self.publishers = list(publishers)
        self.max_concurrent_http = max_concurrent_http
        self.max_concurrent_db = max_concurrent_db
        self.source = source
        self.logger = logger.bind(component="orchestrator")

    def add_publisher(self, publisher: EventPublisher) -> None:
        """Add an event sink. Validates it implements the protocol."""
        if not hasattr(publisher, "publish"):
            raise TypeError(f"Publisher {publisher} must implement EventPublisher protocol")
        self.publishers.append(publisher)
        self.logger.info("publisher_added", publisher_type=type(publisher).__name__)

    @property
    def enabled_definitions(self) -> list[CheckDefinition]:
        return [d for d in self.definitions if d.enabled]

    def configured_checks(self) -> list[dict[str, Any]]:
        """Describe configured checks without connection strings, SQL or header values."""
        described: list[dict[str, Any]] = []
        for d in self.definitions:
            entry: dict[str, Any] = {
                "name": d.name,
                "kind": d.kind,
                "enabled": d.enabled,
                "timeout_seconds": d.timeout_seconds,
            }
            if isinstance(d, HttpCheckDefinition):
                entry.update(
                    url=d.url,
                    method=d.method,
                    expected_status_codes=sorted(d.expected_status_codes),
                    header_names=sorted(d.headers),
                )
            elif isinstance(d, DatabaseQueryCheckDefinition):
                entry.update(connection=d.connection_name, query=d.query_name, provider=d.provider)
            else:
                entry.update(connection=d.connection_name, provider=d.provider)
            described.append(entry)
        return described

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def execute(self, context: TriggerContext) -> list[CheckResult]:
        """
        Run every enabled check once.

        Individual check failures are returned as Error results. Only
        cancellation (JobCancelledError) and orchestration defects propagate.
        """
        log = self.logger.bind(job_id=context.job_id, job_name=context.job_name)
        definitions = self.enabled_definitions
        results: list[CheckResult] = []
        started = time.perf_counter()

        self.metrics.record_job_start()
        log.info("monitoring_job_started", checks=len(definitions))

        try:
            results = await self._run_checks(definitions, context.cancellation)

            if context.cancellation.is_cancelled:
                for result in results:
                    self._record(result, log)
                raise JobCancelledError(context.job_id, results)

            for result in results:
                self._record(result, log)
                await self._publish(result, context, log)

            self.metrics.record_job_success()
            log.info(
                "monitoring_job_completed",
                total=len(results),
                healthy=sum(1 for r in results if r.status is MonitoringStatus.HEALTHY),
                unhealthy=sum(1 for r in results if r.status is MonitoringStatus.UNHEALTHY),
                errors=sum(1 for r in results if r.status is MonitoringStatus.ERROR),
                duration_seconds=round(time.perf_counter() - started, 3),
            )
            return results

        except asyncio.CancelledError as e:
            self.metrics.record_job_cancellation()
            log.warning("monitoring_job_cancelled", results=len(results))
            await self._emit_job_event(
                context,
                "job_cancelled",
                "Job was cancelled",
                NotificationSeverity.WARNING,
                {},
                log,
            )
            if isinstance(e, JobCancelledError):
                raise
            raise JobCancelledError(context.job_id, results) from e

        except Exception as e:
            self.metrics.record_job_failure()
            log.exception("monitoring_job_failed", error=str(e))
            await self._emit_job_event(
                context,
                "job_failed",
                "Job execution failed",
                NotificationSeverity.CRITICAL,
                {"error": str(e), "error_type": type(e).__name__},
                log,
            )
            raise

    async def execute_check(
        self, name: str, context: TriggerContext | None = None
    ) -> CheckResult | None:
        """Run one enabled check by (case-insensitive) name; None if there is no such check."""
        definition = next(
            (d for d in self.enabled_definitions if d.name.lower() == name.lower()), None
        )
        if definition is None:
            self.logger.warning("check_not_found", check=name)
            return None

        context = context or TriggerContext(job_name=f"manual-check-{definition.name}")
        log = self.logger.bind(job_id=context.job_id, job_name=context.job_name)
        http_pool = asyncio.Semaphore(1)
        db_pool = asyncio.Semaphore(1)
        result = await self._run_one(definition, context.cancellation, http_pool, db_pool)
        self._record(result, log)
        await self._publish(result, context, log)
        return result

    async def _run_checks(
        self, definitions: Sequence[CheckDefinition], cancellation: CancellationToken
    ) -> list[CheckResult]:
        http_pool = asyncio.Semaphore(self.max_concurrent_http)
        db_pool = asyncio.Semaphore(self.max_concurrent_db)

        # Structured concurrency - all checks managed together
        async with asyncio.TaskGroup() as task_group:
            tasks = [
                task_group.create_task(
                    self._run_one(d, cancellation, http_pool, db_pool), name=d.name
                )
                for d in definitions
            ]
        return [task.result() for task in tasks]

    async def _run_one(
        self,
        definition: CheckDefinition,
        cancellation: CancellationToken,
        http_pool: asyncio.Semaphore,
        db_pool: asyncio.Semaphore,
    ) -> CheckResult:
        started = time.perf_counter()
        pool = http_pool if isinstance(definition, HttpCheckDefinition) else db_pool
        try:
            async with pool:
                if cancellation.is_cancelled:
                    return self._error_result(definition, "Check was cancelled", started)
                return await self._dispatch(definition, cancellation)
        except Exception as e:
            self.logger.exception("check_execution_failed", check=definition.name, error=str(e))
            return self._error_result(
                definition,
                f"Unexpected error: {type(e).__name__}",
                started,
                {"error": str(e), "type": type(e).__name__},
            )

    async def _dispatch(
        self, definition: CheckDefinition, cancellation: CancellationToken
    ) -> CheckResult:
        if isinstance(definition, HttpCheckDefinition):
            return await self.http_executor.check(definition, cancellation)
        if isinstance(definition, DatabaseConnectionCheckDefinition):
            return await self.db_executor.test_connection(definition, cancellation)
        if isinstance(definition, DatabaseQueryCheckDefinition):
            return await self.db_executor.execute_query(definition, cancellation)
        raise TypeError(f"Unsupported check definition: {type(definition).__name__}")

    @staticmethod
    def _error_result(
        definition: CheckDefinition,
        message: str,
        started: float,
        details: dict[str, Any] | None = None,
    ) -> CheckResult:
        return CheckResult(
            check_name=definition.name,
            status=MonitoringStatus.ERROR,
            message=message,
            details=details or {},
            timestamp=datetime.now(UTC),
            duration_ms=(time.perf_counter() - started) * 1000,
        )

    # ------------------------------------------------------------------
    # Result processing
    # ------------------------------------------------------------------

    def _record(self, result: CheckResult, log: Any) -> None:
        try:
            self.metrics.record_check_result(result.check_name, result.status, result.duration_ms)
        except ValueError as e:
            log.error("check_result_not_recorded", check=result.check_name, error=str(e))

    async def _publish(self, result: CheckResult, context: TriggerContext, log: Any) -> None:
        event = MonitoringEvent.from_result(result, context.job_id)
        await self._send_event(event, log)

    async def _send_event(self, event: MonitoringEvent, log: Any) -> None:
        for publisher in self.publishers:
            try:
                await publisher.publish(event)
            except Exception as e:
                log.error(
                    "event_publish_failed",
                    check=event.check_name,
                    publisher=type(publisher).__name__,
                    error=str(e),
                )
        if self.router is not None:
            try:
                await self.router.send_notification(event.to_notification(self.source))
            except Exception as e:
                log.error("notification_publish_failed", check=event.check_name, error=str(e))

    async def _emit_job_event(
        self,
        context: TriggerContext,
        event_type: str,
        message: str,
        severity: NotificationSeverity,
        details: dict[str, Any],
        log: Any,
    ) -> None:
        event = MonitoringEvent(
            check_name=JOB_CHECK_NAME,
            status=MonitoringStatus.ERROR,
            message=message,
            details={"job_name": context.job_name, **details},
            job_id=context.job_id,
            type=event_type,
            severity=severity,
            metadata={"job_name": context.job_name, "fire_time": context.fire_time.isoformat()},
        )
        await self._send_event(event, log)

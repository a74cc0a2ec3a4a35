"""
Composition root: wires configuration, transports and engine components.

This is the production entry point that combines:
- HTTP and database check executors over real transports (httpx, SQLAlchemy)
- The orchestrator, metrics aggregator and notification router
- The SLA evaluator running alongside continuous monitoring
"""

import asyncio
import time
from collections.abc import AsyncIterator, Sequence
from types import TracebackType

import httpx
import structlog

from healthwatch.config import AppConfig, get_config
from healthwatch.domain.models import CheckResult
from healthwatch.errors import JobCancelledError
from healthwatch.services.cancellation import TriggerContext
from healthwatch.services.database_check import (
    DatabaseCheckExecutor,
    DatabaseClient,
    SqlAlchemyDatabaseClient,
)
from healthwatch.services.http_check import HttpCheckExecutor
from healthwatch.services.metrics_aggregator import MetricsAggregator
from healthwatch.services.notification_router import EmailSender, NotificationRouter
from healthwatch.services.orchestrator import (
    EventPublisher,
    MonitoringOrchestrator,
    build_check_definitions,
)
from healthwatch.services.rate_limiter import SlidingWindowRateLimiter
from healthwatch.services.sla_evaluator import SlaEvaluator

logger = structlog.get_logger(__name__)


class MonitoringService:
    """
    Owns one engine instance and its transports.

    Transports passed in are borrowed; transports created here are closed by
    ``aclose()``.
    """

    def __init__(
        self,
        config: AppConfig | None = None,
        http_client: httpx.AsyncClient | None = None,
        db_client: DatabaseClient | None = None,
        email_sender: EmailSender | None = None,
        publishers: Sequence[EventPublisher] = (),
    ) -> None:
        self.config = config or get_config()
        self.logger = logger.bind(component="monitoring_service")

        self._owns_http_client = http_client is None
        self.http_client = http_client or httpx.AsyncClient()
        self._owned_db_client = SqlAlchemyDatabaseClient() if db_client is None else None
        self.db_client: DatabaseClient = db_client or self._owned_db_client  # type: ignore[assignment]

        self.metrics = MetricsAggregator(sample_retention=self.config.monitoring.sample_retention)
        self.rate_limiter = SlidingWindowRateLimiter(self.config.notifications.rate_limit)
        self.router = NotificationRouter(
            self.config.notifications,
            self.http_client,
            rate_limiter=self.rate_limiter,
            email_sender=email_sender,
        )
        self.orchestrator = MonitoringOrchestrator(
            build_check_definitions(self.config),
            HttpCheckExecutor(self.http_client),
            DatabaseCheckExecutor(self.db_client),
            self.metrics,
            router=self.router,
            publishers=publishers,
            max_concurrent_http=self.config.http.max_concurrent_checks,
            max_concurrent_db=self.config.database.max_concurrent_connections,
        )
        self.sla_evaluator = SlaEvaluator(self.config.sla, self.metrics, self.router)

        self._is_running = False
        self._current: TriggerContext | None = None
        self.logger.info(
            "monitoring_service_initialized",
            checks=len(self.orchestrator.enabled_definitions),
            channels=len(self.config.notifications.channels),
            sla_definitions=len(self.sla_evaluator.definitions),
        )

    async def __aenter__(self) -> "MonitoringService":
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.aclose()

    async def run_once(self, context: TriggerContext | None = None) -> list[CheckResult]:
        """Execute a single monitoring pass."""
        context = context or TriggerContext(job_name=self.config.monitoring.job_name)
        self._current = context
        try:
            return await self.orchestrator.execute(context)
        finally:
            self._current = None

    async def run_continuous(self) -> AsyncIterator[list[CheckResult]]:
        """
        Run passes every ``check_interval_seconds`` and yield their results.

        The SLA evaluator runs alongside when enabled. ``stop()`` cancels the
        pass in flight and ends the iteration.
        """
        interval = self.config.monitoring.check_interval_seconds
        self.logger.info("continuous_monitoring_starting", interval=interval)
        self._is_running = True
        sla_stop = asyncio.Event()
        sla_task = (
            asyncio.create_task(self.sla_evaluator.run(sla_stop), name="sla-evaluator")
            if self.config.sla.enabled and self.sla_evaluator.definitions
            else None
        )

        try:
            while self._is_running:
                pass_start = time.perf_counter()
                self.metrics.record_heartbeat()

                try:
                    results = await self.run_once()
                except JobCancelledError:
                    if not self._is_running:
                        break
                    raise
                except Exception as e:
                    self.logger.exception("monitoring_pass_failed", error=str(e))
                    await asyncio.sleep(min(60.0, interval * 2))
                    continue

                yield results

                elapsed = time.perf_counter() - pass_start
                sleep_time = max(0.0, interval - elapsed)
                if sleep_time > 0:
                    await asyncio.sleep(sleep_time)
                else:
                    self.logger.warning(
                        "monitoring_pass_slower_than_interval",
                        elapsed_seconds=round(elapsed, 3),
                        interval_seconds=interval,
                    )

        except asyncio.CancelledError:
            self.logger.info("continuous_monitoring_cancelled")
            raise
        finally:
            self._is_running = False
            sla_stop.set()
            if sla_task is not None:
                await asyncio.gather(sla_task, return_exceptions=True)

    async def stop(self) -> None:
        """Gracefully stop continuous monitoring."""
        self.logger.info("stopping_monitoring_service")
        self._is_running = False
        if self._current is not None:
            self._current.cancellation.cancel()

    async def aclose(self) -> None:
        if self._owns_http_client:
            await self.http_client.aclose()
        if self._owned_db_client is not None:
            await self._owned_db_client.aclose()

"""
SLA evaluation over rolling windows.

Each active SlaDefinition is periodically recomputed from the metrics
aggregator and moved between three states:

    compliant <-> warning <-> violation

Entering violation opens an SlaViolation and sends a Critical notification;
leaving it closes the violation and sends a recovery notification.
Every transition is also appended to an event log that keeps the last
``event_retention`` (24 hours by default).

Availability is estimated rather than measured: the failure ratio over the
window, scaled by ``downtime_weight``, is counted as downtime.
"""

import asyncio
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

import structlog

from healthwatch.config import SlaConfig, SlaDefinition
from healthwatch.domain.models import (
    NotificationMessage,
    NotificationSeverity,
    SlaEvent,
    SlaEventType,
    SlaMetrics,
    SlaReport,
    SlaState,
    SlaStatus,
    SlaViolation,
    SlaViolationType,
)
from healthwatch.services.metrics_aggregator import MetricsAggregator
from healthwatch.services.notification_router import NotificationRouter

logger = structlog.get_logger(__name__)

SOURCE = "healthwatch.sla"


def is_compliant(metrics: SlaMetrics, definition: SlaDefinition) -> bool:
    """Every target must hold; a single breach is non-compliance."""
    return (
        metrics.availability >= definition.availability_target
        and metrics.success_rate >= definition.success_rate_target
        and metrics.p95_response_time_ms <= definition.response_time_target_ms
    )


def compliance_percentage(metrics: SlaMetrics, definition: SlaDefinition) -> float:
    """Mean of the three per-target scores, each capped at 100."""
    availability = min(100.0, metrics.availability / definition.availability_target * 100)
    success = min(100.0, metrics.success_rate / definition.success_rate_target * 100)
    response = min(
        100.0, definition.response_time_target_ms / max(1.0, metrics.p95_response_time_ms) * 100
    )
    return round((availability + success + response) / 3, 2)


def violation_type(metrics: SlaMetrics, definition: SlaDefinition) -> SlaViolationType:
    if metrics.availability < definition.availability_target:
        return SlaViolationType.AVAILABILITY
    if metrics.success_rate < definition.success_rate_target:
        return SlaViolationType.SUCCESS_RATE
    if metrics.p95_response_time_ms > definition.response_time_target_ms:
        return SlaViolationType.RESPONSE_TIME
    return SlaViolationType.OTHER


def violation_severity(metrics: SlaMetrics, definition: SlaDefinition) -> NotificationSeverity:
    availability_gap = definition.availability_target - metrics.availability
    success_gap = definition.success_rate_target - metrics.success_rate
    if availability_gap > 1 or success_gap > 5:
        return NotificationSeverity.CRITICAL
    if availability_gap > 0.1 or success_gap > 1:
        return NotificationSeverity.WARNING
    return NotificationSeverity.INFO


def describe_breaches(metrics: SlaMetrics, definition: SlaDefinition) -> str:
    breaches = []
    if metrics.availability < definition.availability_target:
        breaches.append(
            f"Availability {metrics.availability:.2f}% below target "
            f"{definition.availability_target:.2f}%"
        )
    if metrics.success_rate < definition.success_rate_target:
        breaches.append(
            f"Success rate {metrics.success_rate:.2f}% below target "
            f"{definition.success_rate_target:.2f}%"
        )
    if metrics.p95_response_time_ms > definition.response_time_target_ms:
        breaches.append(
            f"Response time {metrics.p95_response_time_ms:.0f}ms above target "
            f"{definition.response_time_target_ms:.0f}ms"
        )
    return "; ".join(breaches)


def _actual_and_expected(
    metrics: SlaMetrics, definition: SlaDefinition, kind: SlaViolationType
) -> tuple[float, float]:
    match kind:
        case SlaViolationType.AVAILABILITY:
            return metrics.availability, definition.availability_target
        case SlaViolationType.SUCCESS_RATE:
            return metrics.success_rate, definition.success_rate_target
        case SlaViolationType.RESPONSE_TIME:
            return metrics.p95_response_time_ms, definition.response_time_target_ms
    return 0.0, 0.0


class SlaEvaluator:
    """Tracks per-service SLA state and the violations it opens and closes."""

    def __init__(
        self,
        config: SlaConfig,
        metrics: MetricsAggregator,
        router: NotificationRouter | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.config = config
        self.metrics = metrics
        self.router = router
        self._clock = clock or (lambda: datetime.now(UTC))
        self.logger = logger.bind(component="sla_evaluator")

        self._states: dict[str, SlaState] = {}
        self._open: dict[str, SlaViolation] = {}
        self._violations: list[SlaViolation] = []
        self._latest: dict[str, SlaStatus] = {}
        self._events: list[SlaEvent] = []

    @property
    def definitions(self) -> list[SlaDefinition]:
        return [d for d in self.config.definitions if d.is_active]

    def _definition(self, service_name: str) -> SlaDefinition:
        for definition in self.config.definitions:
            if definition.service_name == service_name:
                return definition
        raise KeyError(f"SLA definition not found for service: {service_name}")

    # ------------------------------------------------------------------
    # Metrics
    # ------------------------------------------------------------------

    def calculate_sla_metrics(
        self,
        period: timedelta,
        check_names: list[str] | None = None,
        end: datetime | None = None,
    ) -> SlaMetrics:
        """
        SLA snapshot for the window of length ``period`` ending at ``end`` (now).

        With no observations the service is treated as fully available.
        """
        if period <= timedelta(0):
            raise ValueError("period must be positive")
        end = end or self._clock()
        stats = self.metrics.window_stats(period, check_names or None, end=end)

        failure_ratio = stats.failed / stats.total if stats.total else 0.0
        period_seconds = period.total_seconds()
        downtime_seconds = period_seconds * failure_ratio * self.config.downtime_weight
        availability = max(0.0, (period_seconds - downtime_seconds) / period_seconds * 100)

        return SlaMetrics(
            availability=round(availability, 4),
            success_rate=round(stats.successful / stats.total * 100, 4) if stats.total else 100.0,
            error_rate=round(stats.failed / stats.total * 100, 4) if stats.total else 0.0,
            average_response_time_ms=round(stats.average_ms, 2),
            p95_response_time_ms=stats.p95_ms,
            p99_response_time_ms=stats.p99_ms,
            total_requests=stats.total,
            successful_requests=stats.successful,
            failed_requests=stats.failed,
            period=period,
            start_time=stats.start,
            end_time=stats.end,
        )

    def classify(self, metrics: SlaMetrics, definition: SlaDefinition) -> SlaState:
        if not is_compliant(metrics, definition):
            return SlaState.VIOLATION

        margin = self.config.warning_margin
        at_risk = (
            metrics.availability < min(100.0, definition.availability_target + margin)
            or metrics.success_rate < min(100.0, definition.success_rate_target + margin)
            or metrics.p95_response_time_ms
            >= definition.response_time_target_ms * self.config.response_time_warning_ratio
        )
        return SlaState.WARNING if at_risk else SlaState.COMPLIANT

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    async def evaluate(self) -> list[SlaStatus]:
        """Recompute every active SLA and apply state transitions."""
        statuses = []
        for definition in self.definitions:
            try:
                statuses.append(await self.evaluate_service(definition))
            except Exception as e:
                self.logger.exception(
                    "sla_service_evaluation_failed", service=definition.service_name, error=str(e)
                )
        self.logger.info(
            "sla_evaluation_completed",
            services=len(statuses),
            violations=sum(1 for s in statuses if s.state is SlaState.VIOLATION),
        )
        return statuses

    async def evaluate_service(self, definition: SlaDefinition) -> SlaStatus:
        now = self._clock()
        service = definition.service_name
        metrics = self.calculate_sla_metrics(
            definition.measurement_period, definition.check_names, end=now
        )
        state = self.classify(metrics, definition)
        previous = self._states.get(service, SlaState.COMPLIANT)
        self._states[service] = state
        log = self.logger.bind(service=service, state=state.value, previous=previous.value)

        if state is SlaState.VIOLATION and previous is not SlaState.VIOLATION:
            kind = violation_type(metrics, definition)
            actual, expected = _actual_and_expected(metrics, definition, kind)
            violation = SlaViolation(
                service_name=service,
                sla_type=kind,
                violation_time=now,
                actual_value=actual,
                expected_value=expected,
                severity=violation_severity(metrics, definition),
                description=describe_breaches(metrics, definition),
            )
            self._open[service] = violation
            self._violations.append(violation)
            log.warning("sla_violation_opened", violation_type=kind.value, actual=actual)
            await self._notify(
                f"SLA Violation: {service}",
                violation.description,
                NotificationSeverity.CRITICAL,
                service,
                SlaEventType.VIOLATION,
                now,
                metrics,
                {"violation_type": kind.value, "violation_id": violation.id},
            )

        elif previous is SlaState.VIOLATION and state is not SlaState.VIOLATION:
            violation = self._open.pop(service, None)
            if violation is not None:
                violation.resolve(now)
            log.info("sla_violation_resolved")
            await self._notify(
                f"SLA Recovery: {service}",
                f"{service} is meeting its SLA targets again",
                NotificationSeverity.INFO,
                service,
                SlaEventType.RECOVERY,
                now,
                metrics,
                {"violation_id": violation.id} if violation else {},
            )

        elif state is SlaState.WARNING and previous is SlaState.COMPLIANT:
            log.info("sla_at_risk")
            await self._notify(
                f"SLA Warning: {service}",
                f"{service} is within {self.config.warning_margin:g} points of its SLA targets",
                NotificationSeverity.WARNING,
                service,
                SlaEventType.WARNING,
                now,
                metrics,
                {},
            )

        elif state is SlaState.COMPLIANT and previous is SlaState.WARNING:
            log.info("sla_back_in_compliance")
            self._record_event(
                service,
                SlaEventType.COMPLIANCE,
                now,
                f"{service} is clear of its SLA warning margins",
                metrics,
                NotificationSeverity.INFO,
            )

        status = SlaStatus(
            service_name=service,
            state=state,
            is_compliant=state is not SlaState.VIOLATION,
            compliance_percentage=compliance_percentage(metrics, definition),
            metrics=metrics,
            open_violation=self._open.get(service),
            evaluated_at=now,
        )
        self._latest[service] = status
        return status

    async def _notify(
        self,
        subject: str,
        body: str,
        severity: NotificationSeverity,
        service: str,
        event_type: SlaEventType,
        when: datetime,
        metrics: SlaMetrics,
        extra: dict[str, str],
    ) -> None:
        self._record_event(service, event_type, when, body, metrics, severity)
        if self.router is None:
            return
        message = NotificationMessage(
            subject=subject,
            body=body,
            severity=severity,
            category="sla",
            source=SOURCE,
            timestamp=when,
            metadata={
                "service_name": service,
                "event_type": event_type.value,
                "timestamp": when.isoformat(),
                **extra,
            },
        )
        try:
            await self.router.send_notification(message)
        except Exception as e:
            self.logger.error("sla_notification_failed", service=service, error=str(e))

    def _record_event(
        self,
        service: str,
        event_type: SlaEventType,
        when: datetime,
        details: str,
        metrics: SlaMetrics,
        severity: NotificationSeverity,
    ) -> None:
        self._events.append(
            SlaEvent(
                service_name=service,
                event_type=event_type,
                timestamp=when,
                details=details,
                metrics=metrics,
                severity=severity,
            )
        )
        cutoff = when - self.config.event_retention
        self._events = [e for e in self._events if e.timestamp >= cutoff]

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_sla_status(self, service_name: str) -> SlaStatus:
        """
        Latest status for ``service_name``.

        Services not yet evaluated get a fresh snapshot without any state
        transition. Raises KeyError for unknown services.
        """
        definition = self._definition(service_name)
        if service_name in self._latest:
            return self._latest[service_name]
        metrics = self.calculate_sla_metrics(definition.measurement_period, definition.check_names)
        state = self.classify(metrics, definition)
        return SlaStatus(
            service_name=service_name,
            state=state,
            is_compliant=state is not SlaState.VIOLATION,
            compliance_percentage=compliance_percentage(metrics, definition),
            metrics=metrics,
            open_violation=self._open.get(service_name),
        )

    def violations(self, include_resolved: bool = True) -> list[SlaViolation]:
        if include_resolved:
            return list(self._violations)
        return [v for v in self._violations if not v.is_resolved]

    def get_events(
        self, since: datetime | None = None, service_name: str | None = None
    ) -> list[SlaEvent]:
        """Retained transition events, oldest first."""
        return [
            e
            for e in self._events
            if (since is None or e.timestamp >= since)
            and (service_name is None or e.service_name == service_name)
        ]

    def get_sla_trends(
        self, period: timedelta, interval: timedelta, check_names: list[str] | None = None
    ) -> list[SlaMetrics]:
        """
        SLA metrics for consecutive ``interval`` slices of the last ``period``.

        Slices run oldest first; the final one is clipped to end now.
        """
        if period <= timedelta(0) or interval <= timedelta(0):
            raise ValueError("period and interval must be positive")
        end = self._clock()
        current = end - period
        trends = []
        while current < end:
            slice_end = min(current + interval, end)
            trends.append(self.calculate_sla_metrics(slice_end - current, check_names, end=slice_end))
            current = slice_end
        return trends

    def generate_report(self, start: datetime, end: datetime) -> SlaReport:
        if end <= start:
            raise ValueError("end must be after start")
        period = end - start
        overall = self.calculate_sla_metrics(period, end=end)

        service_metrics: dict[str, SlaMetrics] = {}
        scores = []
        for definition in self.definitions:
            metrics = self.calculate_sla_metrics(period, definition.check_names, end=end)
            service_metrics[definition.service_name] = metrics
            scores.append(compliance_percentage(metrics, definition))

        in_range = [
            v
            for v in self._violations
            if v.violation_time <= end and (v.resolved_time is None or v.resolved_time >= start)
        ]
        report = SlaReport(
            start_date=start,
            end_date=end,
            generated_at=self._clock(),
            overall_metrics=overall,
            service_metrics=service_metrics,
            violations=in_range,
            compliance_score=round(sum(scores) / len(scores), 2) if scores else 100.0,
            summary=(
                f"Overall availability: {overall.availability:.2f}%, "
                f"Success rate: {overall.success_rate:.2f}%, "
                f"Average response time: {overall.average_response_time_ms:.0f}ms"
            ),
        )
        self.logger.info("sla_report_generated", start=start.isoformat(), end=end.isoformat())
        return report

    async def run(self, stop_event: asyncio.Event) -> None:
        """Evaluate every ``evaluation_interval_seconds`` until ``stop_event`` is set."""
        interval = self.config.evaluation_interval_seconds
        self.logger.info("sla_monitoring_started", interval_seconds=interval)
        try:
            while not stop_event.is_set():
                try:
                    await self.evaluate()
                except Exception as e:
                    self.logger.exception("sla_evaluation_failed", error=str(e))
                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=interval)
                except TimeoutError:
                    pass
        except asyncio.CancelledError:
            self.logger.info("sla_monitoring_cancelled")
            raise
        finally:
            self.logger.info("sla_monitoring_stopped")

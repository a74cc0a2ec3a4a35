"""
Engine services.

This package contains the check executors, the orchestrator, the metrics
aggregator, the notification router and the SLA evaluator.
"""

from .cancellation import CancellationToken, TriggerContext
from .database_check import DatabaseCheckExecutor, DatabaseClient, SqlAlchemyDatabaseClient
from .http_check import HttpCheckExecutor
from .metrics_aggregator import MetricsAggregator, sanitize_metric_name
from .notification_router import NotificationRouter
from .orchestrator import EventPublisher, MonitoringOrchestrator, build_check_definitions
from .rate_limiter import RateLimiter, SlidingWindowRateLimiter
from .sla_evaluator import SlaEvaluator

__all__ = [
    "CancellationToken",
    "TriggerContext",
    "DatabaseCheckExecutor",
    "DatabaseClient",
    "SqlAlchemyDatabaseClient",
    "HttpCheckExecutor",
    "MetricsAggregator",
    "sanitize_metric_name",
    "NotificationRouter",
    "EventPublisher",
    "MonitoringOrchestrator",
    "build_check_definitions",
    "RateLimiter",
    "SlidingWindowRateLimiter",
    "SlaEvaluator",
]

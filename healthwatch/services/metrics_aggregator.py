"""
Concurrency-safe metrics aggregation for monitoring passes.

Key patterns demonstrated:
- Per-bucket locking: each check owns its lock; the registry lock only
  guards bucket creation.
- One source of truth: the detailed counters, the summary view and the
  rolling windows all read the same per-check buckets.
- Bounded history: each bucket keeps a fixed-size sample log for windowed
  percentiles.
"""

import math
import re
import threading
from collections import deque
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta

import structlog
from pydantic import BaseModel, ConfigDict, Field

from healthwatch.domain.models import MonitoringStatus, MonitoringSummary

logger = structlog.get_logger(__name__)

JOB_COUNTERS = ("job.started", "job.completed", "job.failed", "job.cancelled")
HEARTBEAT_COUNTER = "worker.heartbeat"

_INVALID_METRIC_CHARS = re.compile(r"[^a-z0-9_-]")


def sanitize_metric_name(name: str) -> str:
    """
    Normalize a check name into a stable metric key.

    Lower-cases, then drops everything outside ``[a-z0-9_-]``. The result is
    deterministic, so the same name always lands in the same bucket.

    Raises:
        ValueError: if the name is empty, blank, or sanitizes to nothing.
    """
    if not name or not name.strip():
        raise ValueError("Check name cannot be null or empty")
    key = _INVALID_METRIC_CHARS.sub("", name.lower())
    if not key:
        raise ValueError(f"Check name {name!r} contains no valid metric characters")
    return key


def _percentile(sorted_values: list[float], pct: float) -> float:
    """Nearest-rank percentile of an ascending list."""
    if not sorted_values:
        return 0.0
    rank = max(1, math.ceil(pct / 100.0 * len(sorted_values)))
    return sorted_values[rank - 1]


@dataclass(frozen=True)
class _Sample:
    at: datetime
    status: MonitoringStatus
    duration_ms: float


@dataclass
class _CheckBucket:
    """Counters for a single check key, guarded by its own lock."""

    key: str
    sample_retention: int
    lock: threading.Lock = field(default_factory=threading.Lock)
    status_counts: dict[MonitoringStatus, int] = field(default_factory=dict)
    total: int = 0
    duration_sum: float = 0.0
    samples: deque[_Sample] = field(init=False)

    def __post_init__(self) -> None:
        self.samples = deque(maxlen=self.sample_retention)


class WindowStats(BaseModel):
    """Check outcomes over a rolling window."""

    model_config = ConfigDict(frozen=True)

    start: datetime
    end: datetime
    total: int = Field(default=0, ge=0)
    successful: int = Field(default=0, ge=0)
    failed: int = Field(default=0, ge=0)
    average_ms: float = 0.0
    p95_ms: float = 0.0
    p99_ms: float = 0.0


class MetricsAggregator:
    """
    Process-lifetime counters keyed by sanitized check name and status.

    Safe to call from any number of coroutines or threads.
    """

    def __init__(
        self,
        sample_retention: int = 1000,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        if sample_retention <= 0:
            raise ValueError("sample_retention must be positive")
        self.sample_retention = sample_retention
        self._clock = clock or (lambda: datetime.now(UTC))
        self.logger = logger.bind(component="metrics_aggregator")

        self._registry_lock = threading.Lock()
        self._buckets: dict[str, _CheckBucket] = {}
        self._counter_lock = threading.Lock()
        self._counters: dict[str, int] = self._initial_counters()
        self._last_heartbeat: datetime | None = None
        self._started_at = self._clock()

    @staticmethod
    def _initial_counters() -> dict[str, int]:
        return dict.fromkeys((HEARTBEAT_COUNTER, *JOB_COUNTERS), 0)

    def _increment(self, name: str) -> None:
        with self._counter_lock:
            self._counters[name] = self._counters.get(name, 0) + 1

    def _bucket(self, key: str) -> _CheckBucket:
        bucket = self._buckets.get(key)
        if bucket is not None:
            return bucket
        with self._registry_lock:
            return self._buckets.setdefault(key, _CheckBucket(key, self.sample_retention))

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    def record_heartbeat(self) -> None:
        with self._counter_lock:
            self._counters[HEARTBEAT_COUNTER] += 1
            self._last_heartbeat = self._clock()

    def record_job_start(self) -> None:
        self._increment("job.started")
        self.logger.debug("job_start_recorded")

    def record_job_success(self) -> None:
        self._increment("job.completed")
        self.logger.debug("job_success_recorded")

    def record_job_failure(self) -> None:
        self._increment("job.failed")
        self.logger.debug("job_failure_recorded")

    def record_job_cancellation(self) -> None:
        self._increment("job.cancelled")
        self.logger.debug("job_cancellation_recorded")

    def record_check_result(
        self, check_name: str, status: MonitoringStatus, duration_ms: float
    ) -> None:
        """Count one outcome for ``check_name`` and fold its duration into the average."""
        key = sanitize_metric_name(check_name)
        duration_ms = max(0.0, float(duration_ms))
        bucket = self._bucket(key)
        with bucket.lock:
            bucket.status_counts[status] = bucket.status_counts.get(status, 0) + 1
            bucket.total += 1
            bucket.duration_sum += duration_ms
            bucket.samples.append(_Sample(self._clock(), status, duration_ms))

    def reset(self) -> None:
        """Zero all state. Idempotent; discards history."""
        with self._registry_lock, self._counter_lock:
            self._buckets = {}
            self._counters = self._initial_counters()
            self._last_heartbeat = None
            self._started_at = self._clock()
        self.logger.info("metrics_reset")

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------

    def _snapshot_buckets(self) -> list[_CheckBucket]:
        with self._registry_lock:
            return list(self._buckets.values())

    def get_metrics(self) -> dict[str, float]:
        """Flat metric name to value mapping, for exposition by an external endpoint."""
        with self._counter_lock:
            metrics: dict[str, float] = {k: float(v) for k, v in self._counters.items()}

        for bucket in self._snapshot_buckets():
            prefix = f"check.{bucket.key}"
            with bucket.lock:
                for status, count in bucket.status_counts.items():
                    metrics[f"{prefix}.{status.value}"] = float(count)
                metrics[f"{prefix}.total"] = float(bucket.total)
                metrics[f"{prefix}.duration.avg"] = (
                    bucket.duration_sum / bucket.total if bucket.total else 0.0
                )
                metrics[f"{prefix}.duration.count"] = float(bucket.total)
        return metrics

    def get_summary(self) -> MonitoringSummary:
        """Totals and success rate, computed from the per-check buckets."""
        per_status: dict[MonitoringStatus, int] = dict.fromkeys(MonitoringStatus, 0)
        for bucket in self._snapshot_buckets():
            with bucket.lock:
                for status, count in bucket.status_counts.items():
                    per_status[status] += count

        total = sum(per_status.values())
        healthy = per_status[MonitoringStatus.HEALTHY]
        with self._counter_lock:
            counters = dict(self._counters)
            last_heartbeat = self._last_heartbeat
            started_at = self._started_at

        return MonitoringSummary(
            total_checks=total,
            healthy_checks=healthy,
            unhealthy_checks=per_status[MonitoringStatus.UNHEALTHY],
            warning_checks=per_status[MonitoringStatus.WARNING],
            critical_checks=per_status[MonitoringStatus.CRITICAL],
            error_checks=per_status[MonitoringStatus.ERROR],
            unknown_checks=per_status[MonitoringStatus.UNKNOWN],
            success_rate=round(healthy / total * 100, 2) if total else 0.0,
            jobs_started=counters["job.started"],
            jobs_completed=counters["job.completed"],
            jobs_failed=counters["job.failed"],
            jobs_cancelled=counters["job.cancelled"],
            last_heartbeat=last_heartbeat,
            uptime_seconds=max(0.0, (self._clock() - started_at).total_seconds()),
        )

    def window_stats(
        self,
        period: timedelta,
        check_names: Iterable[str] | None = None,
        end: datetime | None = None,
    ) -> WindowStats:
        """
        Outcomes recorded within ``period`` ending at ``end``.

        Args:
            period: How far back to look.
            check_names: Restrict to these checks; None means every check.
            end: Window end, defaults to now.
        """
        end = end or self._clock()
        start = end - period

        if check_names is None:
            buckets = self._snapshot_buckets()
        else:
            keys = {sanitize_metric_name(n) for n in check_names}
            with self._registry_lock:
                buckets = [self._buckets[k] for k in keys if k in self._buckets]

        durations: list[float] = []
        successful = 0
        for bucket in buckets:
            with bucket.lock:
                recent = [s for s in bucket.samples if start <= s.at <= end]
            durations.extend(s.duration_ms for s in recent)
            successful += sum(1 for s in recent if s.status.is_successful)

        durations.sort()
        total = len(durations)
        return WindowStats(
            start=start,
            end=end,
            total=total,
            successful=successful,
            failed=total - successful,
            average_ms=sum(durations) / total if total else 0.0,
            p95_ms=_percentile(durations, 95),
            p99_ms=_percentile(durations, 99),
        )

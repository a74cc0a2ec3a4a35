"""
Notification rate limiting.

A token bucket bounds bursts; sliding one-minute and one-hour logs enforce
the per-minute and hourly caps. State is per key (one key per channel) with
its own lock, so channels never contend with each other.
"""

import threading
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Protocol

import structlog

from healthwatch.config import RateLimitConfig

logger = structlog.get_logger(__name__)

MINUTE_SECONDS = 60.0
HOUR_SECONDS = 3600.0


class RateLimiter(Protocol):
    """Decides whether one more delivery is allowed for ``key``."""

    def try_acquire(self, key: str, policy: RateLimitConfig | None = None) -> bool: ...


@dataclass
class _KeyState:
    tokens: float
    last_refill: float
    minute_log: deque[float] = field(default_factory=deque)
    hour_log: deque[float] = field(default_factory=deque)
    lock: threading.Lock = field(default_factory=threading.Lock)


class SlidingWindowRateLimiter:
    """Token bucket plus minute and hour sliding windows, keyed per channel."""

    def __init__(
        self,
        default_policy: RateLimitConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.default_policy = default_policy or RateLimitConfig()
        self._clock = clock
        self._registry_lock = threading.Lock()
        self._states: dict[str, _KeyState] = {}

    def _state(self, key: str, policy: RateLimitConfig, now: float) -> _KeyState:
        with self._registry_lock:
            state = self._states.get(key)
            if state is None:
                state = _KeyState(tokens=float(policy.burst_allowance), last_refill=now)
                self._states[key] = state
            return state

    def try_acquire(self, key: str, policy: RateLimitConfig | None = None) -> bool:
        policy = policy or self.default_policy
        now = self._clock()
        state = self._state(key, policy, now)
        refill_per_second = policy.max_per_minute / 60.0

        with state.lock:
            elapsed = max(0.0, now - state.last_refill)
            state.tokens = min(
                float(policy.burst_allowance), state.tokens + elapsed * refill_per_second
            )
            state.last_refill = now

            while state.minute_log and state.minute_log[0] <= now - MINUTE_SECONDS:
                state.minute_log.popleft()
            while state.hour_log and state.hour_log[0] <= now - HOUR_SECONDS:
                state.hour_log.popleft()

            if len(state.hour_log) >= policy.max_per_hour:
                logger.debug("rate_limit_hourly_cap_reached", key=key)
                return False
            if len(state.minute_log) >= policy.max_per_minute:
                logger.debug("rate_limit_minute_cap_reached", key=key)
                return False
            if state.tokens < 1.0:
                logger.debug("rate_limit_bucket_empty", key=key)
                return False

            state.tokens -= 1.0
            state.minute_log.append(now)
            state.hour_log.append(now)
            return True

    def reset(self, key: str | None = None) -> None:
        with self._registry_lock:
            if key is None:
                self._states.clear()
            else:
                self._states.pop(key, None)

"""Shared fakes and fixtures for the engine tests."""

import asyncio
from collections.abc import Mapping
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest

from healthwatch.domain.models import MonitoringEvent, NotificationMessage
from healthwatch.services.database_check import ConnectionInfo


class FakeClock:
    """Settable wall clock for code that takes a ``clock`` callable."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


class FakeMonotonic:
    """Settable monotonic clock in seconds."""

    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeDatabaseClient:
    """DatabaseClient double; optionally slow or failing."""

    def __init__(
        self,
        value: Any = None,
        error: Exception | None = None,
        delay: float = 0.0,
        info: ConnectionInfo | None = None,
    ) -> None:
        self.value = value
        self.error = error
        self.delay = delay
        self.info = info or ConnectionInfo(server_version="15.4", database_name="orders")
        self.calls: list[dict[str, Any]] = []
        self.completed = 0

    async def test_connection(
        self, provider: str, connection_string: str, timeout: float
    ) -> ConnectionInfo:
        self.calls.append({"op": "connect", "provider": provider, "timeout": timeout})
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        self.completed += 1
        return self.info

    async def execute(
        self,
        provider: str,
        connection_string: str,
        sql: str,
        parameters: Mapping[str, Any],
        result_type: str,
        timeout: float,
    ) -> Any:
        self.calls.append(
            {
                "op": "execute",
                "sql": sql,
                "parameters": dict(parameters),
                "result_type": result_type,
                "timeout": timeout,
            }
        )
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        self.completed += 1
        return self.value


class RecordingRouter:
    """Stands in for NotificationRouter and keeps every message."""

    def __init__(self, fail: bool = False) -> None:
        self.messages: list[NotificationMessage] = []
        self.fail = fail

    async def send_notification(self, message: NotificationMessage) -> list[str]:
        self.messages.append(message)
        if self.fail:
            raise RuntimeError("router down")
        return ["recording"]


class RecordingPublisher:
    def __init__(self, fail_first: bool = False) -> None:
        self.events: list[MonitoringEvent] = []
        self.fail_first = fail_first

    async def publish(self, event: MonitoringEvent) -> None:
        self.events.append(event)
        if self.fail_first and len(self.events) == 1:
            raise ConnectionError("push transport unavailable")


class RecordingEmailSender:
    def __init__(self) -> None:
        self.sent: list[tuple[list[str], str, str]] = []

    async def send(self, recipients: list[str], subject: str, html_body: str) -> None:
        self.sent.append((recipients, subject, html_body))


@pytest.fixture
def clock() -> FakeClock:
    # A Monday, inside business hours
    return FakeClock(datetime(2024, 6, 3, 10, 30, tzinfo=UTC))


@pytest.fixture
def monotonic() -> FakeMonotonic:
    return FakeMonotonic()


@pytest.fixture
def fake_db_client() -> type[FakeDatabaseClient]:
    return FakeDatabaseClient


@pytest.fixture
def recording_router() -> RecordingRouter:
    return RecordingRouter()


@pytest.fixture
def recording_publisher() -> RecordingPublisher:
    return RecordingPublisher()


@pytest.fixture
def email_sender() -> RecordingEmailSender:
    return RecordingEmailSender()


@pytest.fixture
def flaky_publisher() -> RecordingPublisher:
    return RecordingPublisher(fail_first=True)


@pytest.fixture
def failing_router() -> RecordingRouter:
    return RecordingRouter(fail=True)

"""
Tests for notification routing.

Covers:
- Channel filters: minimum severity, business hours, categories, enabled
- Per-type payload formatting (email, Slack, Teams, webhook)
- Failure isolation between channels and rate limiting
- Channel self-test
"""

from __future__ import annotations

import json
from collections.abc import AsyncIterator, Callable
from datetime import UTC, datetime
from typing import Any

import httpx
import pytest

from healthwatch.config import NotificationChannelConfig, NotificationConfig, RateLimitConfig
from healthwatch.domain.models import NotificationMessage, NotificationSeverity
from healthwatch.services.notification_router import (
    NotificationRouter,
    format_email,
    format_slack,
    format_teams,
    format_webhook,
    is_business_hours,
    should_send_to_channel,
)


def _webhook(name: str, url: str, **overrides: Any) -> NotificationChannelConfig:
    return NotificationChannelConfig(name=name, type="webhook", webhook_url=url, **overrides)


def _message(severity: NotificationSeverity = NotificationSeverity.CRITICAL, **overrides: Any) -> NotificationMessage:
    values: dict[str, Any] = {
        "subject": "api: critical",
        "body": "HTTP 503 Service Unavailable",
        "severity": severity,
        "category": "health",
        "timestamp": datetime(2024, 6, 3, 10, 30, tzinfo=UTC),
        "metadata": {"job_id": "job-1"},
    }
    values.update(overrides)
    return NotificationMessage(**values)


class _Recorder:
    """MockTransport handler that records requests and fails chosen hosts."""

    def __init__(self, failing_hosts: set[str] | None = None) -> None:
        self.requests: list[httpx.Request] = []
        self.failing_hosts = failing_hosts or set()

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.host in self.failing_hosts:
            return httpx.Response(500)
        return httpx.Response(200)

    def payloads(self) -> list[dict[str, Any]]:
        return [json.loads(r.content) for r in self.requests]


@pytest.fixture
def recorder() -> _Recorder:
    return _Recorder()


@pytest.fixture
async def http_client(recorder: _Recorder) -> AsyncIterator[httpx.AsyncClient]:
    async with httpx.AsyncClient(transport=httpx.MockTransport(recorder)) as client:
        yield client


@pytest.fixture
def make_router(http_client, clock, email_sender) -> Callable[..., NotificationRouter]:  # type: ignore[no-untyped-def]
    def factory(channels: list[NotificationChannelConfig], **config: Any) -> NotificationRouter:
        return NotificationRouter(
            NotificationConfig(channels=channels, **config),
            http_client,
            email_sender=email_sender,
            clock=clock,
        )

    return factory


class TestFilters:
    @pytest.mark.parametrize(
        "when,expected",
        [
            (datetime(2024, 6, 3, 9, 0), True),  # Monday opening
            (datetime(2024, 6, 3, 16, 59), True),
            (datetime(2024, 6, 3, 17, 0), False),
            (datetime(2024, 6, 3, 8, 59), False),
            (datetime(2024, 6, 8, 12, 0), False),  # Saturday
        ],
    )
    def test_business_hours(self, when: datetime, expected: bool) -> None:
        assert is_business_hours(when) is expected

    def test_below_min_severity_is_filtered(self) -> None:
        channel = _webhook("h", "https://hooks.example.test/h", min_severity="warning")
        now = datetime(2024, 6, 3, 10, 0)

        assert not should_send_to_channel(_message(NotificationSeverity.INFO), channel, now)
        assert should_send_to_channel(_message(NotificationSeverity.WARNING), channel, now)
        assert should_send_to_channel(_message(NotificationSeverity.CRITICAL), channel, now)

    def test_business_hours_only_channel(self) -> None:
        channel = _webhook("h", "https://hooks.example.test/h", business_hours_only=True)

        assert should_send_to_channel(_message(), channel, datetime(2024, 6, 3, 10, 0))
        assert not should_send_to_channel(_message(), channel, datetime(2024, 6, 9, 10, 0))

    def test_category_filter(self) -> None:
        channel = _webhook("h", "https://hooks.example.test/h", categories=["sla"])
        now = datetime(2024, 6, 3, 10, 0)

        assert not should_send_to_channel(_message(category="health"), channel, now)
        assert should_send_to_channel(_message(category="sla"), channel, now)


class TestFormatters:
    def test_email_escapes_html_and_lists_metadata(self) -> None:
        channel = NotificationChannelConfig(name="mail", type="email", recipients=["ops@example.test"])
        payload = format_email(
            _message(body="<script>alert(1)</script>", metadata={"region": "eu-west"}), channel
        )

        assert payload["subject"] == "[CRITICAL] api: critical"
        assert payload["recipients"] == ["ops@example.test"]
        assert payload["is_html"] is True
        assert "&lt;script&gt;" in payload["body"]
        assert "<script>" not in payload["body"]
        assert "Additional Information" in payload["body"]
        assert "eu-west" in payload["body"]

    def test_slack_payload(self) -> None:
        channel = NotificationChannelConfig(
            name="slack", type="slack", webhook_url="https://hooks.slack.test/x", target="#ops"
        )
        payload = format_slack(_message(NotificationSeverity.WARNING), channel)

        assert payload["channel"] == "#ops"
        assert payload["username"] == "healthwatch"
        assert payload["icon_emoji"] == ":warning:"
        attachment = payload["attachments"][0]
        assert attachment["color"] == "warning"
        assert attachment["title"] == "api: critical"
        assert attachment["fields"] == [{"title": "job_id", "value": "job-1", "short": True}]
        assert attachment["ts"] == int(datetime(2024, 6, 3, 10, 30, tzinfo=UTC).timestamp())

    @pytest.mark.parametrize(
        "severity,color",
        [
            (NotificationSeverity.CRITICAL, "Attention"),
            (NotificationSeverity.WARNING, "Warning"),
            (NotificationSeverity.INFO, "Good"),
        ],
    )
    def test_teams_card_color(self, severity: NotificationSeverity, color: str) -> None:
        card = format_teams(_message(severity))["attachments"][0]["content"]

        assert card["type"] == "AdaptiveCard"
        assert card["version"] == "1.3"
        assert card["body"][0]["color"] == color

    def test_webhook_payload(self) -> None:
        payload = format_webhook(_message())

        assert payload == {
            "subject": "api: critical",
            "body": "HTTP 503 Service Unavailable",
            "severity": "critical",
            "category": "health",
            "source": "healthwatch",
            "timestamp": "2024-06-03T10:30:00+00:00",
            "metadata": {"job_id": "job-1"},
        }


class TestRouting:
    async def test_routes_to_matching_channels_only(self, make_router, recorder, email_sender) -> None:  # type: ignore[no-untyped-def]
        router = make_router(
            [
                _webhook("critical-hook", "https://critical.example.test/h", min_severity="critical"),
                _webhook("all-hook", "https://all.example.test/h"),
                _webhook("off-hook", "https://off.example.test/h", enabled=False),
                NotificationChannelConfig(
                    name="mail", type="email", recipients=["ops@example.test"]
                ),
            ]
        )

        delivered = await router.send_notification(_message(NotificationSeverity.WARNING))

        assert sorted(delivered) == ["all-hook", "mail"]
        assert [r.url.host for r in recorder.requests] == ["all.example.test"]
        assert email_sender.sent[0][1] == "[WARNING] api: critical"

    async def test_webhook_headers_are_sent(self, make_router, recorder) -> None:  # type: ignore[no-untyped-def]
        router = make_router(
            [_webhook("hook", "https://hook.example.test/h", headers={"X-Api-Key": "k-123"})]
        )

        await router.send_notification(_message())

        assert recorder.requests[0].headers["X-Api-Key"] == "k-123"
        assert recorder.payloads()[0]["severity"] == "critical"

    async def test_slack_and_teams_are_posted(self, make_router, recorder) -> None:  # type: ignore[no-untyped-def]
        router = make_router(
            [
                NotificationChannelConfig(
                    name="slack", type="slack", webhook_url="https://slack.example.test/x"
                ),
                NotificationChannelConfig(
                    name="teams", type="teams", webhook_url="https://teams.example.test/x"
                ),
            ]
        )

        delivered = await router.send_notification(_message())

        assert sorted(delivered) == ["slack", "teams"]
        by_host = {r.url.host: json.loads(r.content) for r in recorder.requests}
        assert by_host["slack.example.test"]["username"] == "healthwatch"
        assert by_host["teams.example.test"]["type"] == "message"

    async def test_failing_channel_does_not_affect_others(self, http_client, clock, email_sender, recorder) -> None:  # type: ignore[no-untyped-def]
        recorder.failing_hosts.add("broken.example.test")
        router = NotificationRouter(
            NotificationConfig(
                channels=[
                    _webhook("broken", "https://broken.example.test/h"),
                    _webhook("healthy", "https://healthy.example.test/h"),
                ]
            ),
            http_client,
            email_sender=email_sender,
            clock=clock,
        )

        delivered = await router.send_notification(_message())

        assert delivered == ["healthy"]
        assert len(recorder.requests) == 2

    async def test_disabled_router_sends_nothing(self, make_router, recorder) -> None:  # type: ignore[no-untyped-def]
        router = make_router([_webhook("hook", "https://hook.example.test/h")], enabled=False)

        assert await router.send_notification(_message()) == []
        assert recorder.requests == []

    async def test_outside_business_hours(self, make_router, recorder, clock) -> None:  # type: ignore[no-untyped-def]
        clock.now = datetime(2024, 6, 8, 11, 0, tzinfo=UTC)  # Saturday
        router = make_router(
            [_webhook("hook", "https://hook.example.test/h", business_hours_only=True)]
        )

        assert await router.send_notification(_message()) == []

    async def test_rate_limited_channel_is_skipped(self, make_router, recorder) -> None:  # type: ignore[no-untyped-def]
        router = make_router(
            [
                _webhook(
                    "hook",
                    "https://hook.example.test/h",
                    rate_limit=RateLimitConfig(max_per_minute=1, burst_allowance=1),
                )
            ]
        )

        first = await router.send_notification(_message())
        second = await router.send_notification(_message())

        assert first == ["hook"]
        assert second == []
        assert len(recorder.requests) == 1

    async def test_limiter_error_only_fails_its_channel(self, http_client, clock, email_sender, recorder) -> None:  # type: ignore[no-untyped-def]
        class _BrokenForOneKey:
            def try_acquire(self, key: str, policy: RateLimitConfig | None = None) -> bool:
                if key == "broken":
                    raise RuntimeError("limiter store unavailable")
                return True

        router = NotificationRouter(
            NotificationConfig(
                channels=[
                    _webhook("broken", "https://broken.example.test/h"),
                    _webhook("healthy", "https://healthy.example.test/h"),
                ]
            ),
            http_client,
            rate_limiter=_BrokenForOneKey(),
            email_sender=email_sender,
            clock=clock,
        )

        delivered = await router.send_notification(_message())

        assert delivered == ["healthy"]
        assert [r.url.host for r in recorder.requests] == ["healthy.example.test"]


class TestChannelSelfTest:
    async def test_success(self, make_router, recorder) -> None:  # type: ignore[no-untyped-def]
        channel = _webhook("hook", "https://hook.example.test/h", min_severity="critical")
        router = make_router([channel])

        assert await router.test_channel(channel) is True
        payload = recorder.payloads()[0]
        # Bypasses the severity filter
        assert payload["severity"] == "info"
        assert payload["subject"] == "Test Notification"
        assert payload["category"] == "test"
        assert payload["source"] == "healthwatch.test"

    async def test_failure_returns_false(self, make_router, recorder) -> None:  # type: ignore[no-untyped-def]
        recorder.failing_hosts.add("hook.example.test")
        channel = _webhook("hook", "https://hook.example.test/h")

        assert await make_router([channel]).test_channel(channel) is False

"""
Notification routing: filter a message per channel and fan it out.

Each channel type has a pure payload formatter. Deliveries run concurrently
and fail independently: one channel's error is logged and never affects the
others. The router does not retry; retries belong to the transport.
"""

import asyncio
import html
from collections.abc import Callable
from datetime import datetime
from typing import Any, Protocol

import httpx
import structlog

from healthwatch.config import NotificationChannelConfig, NotificationConfig
from healthwatch.domain.models import NotificationMessage, NotificationSeverity
from healthwatch.services.rate_limiter import RateLimiter, SlidingWindowRateLimiter

logger = structlog.get_logger(__name__)

BOT_NAME = "healthwatch"

BUSINESS_DAYS = range(0, 5)  # Monday..Friday
BUSINESS_HOURS = range(9, 17)  # 09:00 up to, not including, 17:00

_SLACK_EMOJI = {
    NotificationSeverity.CRITICAL: ":rotating_light:",
    NotificationSeverity.WARNING: ":warning:",
    NotificationSeverity.INFO: ":information_source:",
}
_SLACK_COLOR = {
    NotificationSeverity.CRITICAL: "danger",
    NotificationSeverity.WARNING: "warning",
    NotificationSeverity.INFO: "good",
}
_TEAMS_COLOR = {
    NotificationSeverity.CRITICAL: "Attention",
    NotificationSeverity.WARNING: "Warning",
    NotificationSeverity.INFO: "Good",
}


class EmailSender(Protocol):
    """Mail transport used for email channels."""

    async def send(self, recipients: list[str], subject: str, html_body: str) -> None: ...


class LoggingEmailSender:
    """Development transport: records the email instead of sending it."""

    def __init__(self) -> None:
        self.logger = logger.bind(component="email_sender")

    async def send(self, recipients: list[str], subject: str, html_body: str) -> None:
        self.logger.info("email_notification_sent", recipients=recipients, subject=subject)


def _local_now() -> datetime:
    return datetime.now().astimezone()


def is_business_hours(now: datetime) -> bool:
    """Mon-Fri, 09:00 to 17:00, in whatever timezone ``now`` carries."""
    return now.weekday() in BUSINESS_DAYS and now.hour in BUSINESS_HOURS


def should_send_to_channel(
    message: NotificationMessage, channel: NotificationChannelConfig, now: datetime
) -> bool:
    if message.severity < channel.min_severity:
        return False
    if channel.business_hours_only and not is_business_hours(now):
        return False
    if channel.categories and message.category not in channel.categories:
        return False
    return True


# ---------------------------------------------------------------------------
# Payload formatters
# ---------------------------------------------------------------------------


def format_email(message: NotificationMessage, channel: NotificationChannelConfig) -> dict[str, Any]:
    lines = [
        f"<h2>{html.escape(message.subject)}</h2>",
        f"<p><strong>Severity:</strong> {message.severity.name.title()}</p>",
        f"<p><strong>Source:</strong> {html.escape(message.source)}</p>",
        f"<p><strong>Time:</strong> {message.timestamp:%Y-%m-%d %H:%M:%S} UTC</p>",
        "<p><strong>Description:</strong></p>",
        f"<p>{html.escape(message.body)}</p>",
    ]
    if message.metadata:
        lines.append("<h3>Additional Information:</h3>")
        lines.append("<ul>")
        lines.extend(
            f"<li><strong>{html.escape(k)}:</strong> {html.escape(v)}</li>"
            for k, v in message.metadata.items()
        )
        lines.append("</ul>")
    return {
        "recipients": list(channel.recipients),
        "subject": f"[{message.severity.name}] {message.subject}",
        "body": "\n".join(lines),
        "is_html": True,
    }


def format_slack(message: NotificationMessage, channel: NotificationChannelConfig) -> dict[str, Any]:
    return {
        "channel": channel.target,
        "text": message.body,
        "username": BOT_NAME,
        "icon_emoji": _SLACK_EMOJI[message.severity],
        "attachments": [
            {
                "color": _SLACK_COLOR[message.severity],
                "title": message.subject,
                "text": message.body,
                "fields": [
                    {"title": k, "value": v, "short": True}
                    for k, v in (message.metadata or {}).items()
                ],
                "ts": int(message.timestamp.timestamp()),
            }
        ],
    }


def format_teams(message: NotificationMessage) -> dict[str, Any]:
    return {
        "type": "message",
        "attachments": [
            {
                "contentType": "application/vnd.microsoft.card.adaptive",
                "content": {
                    "type": "AdaptiveCard",
                    "version": "1.3",
                    "body": [
                        {
                            "type": "TextBlock",
                            "text": message.subject,
                            "weight": "Bolder",
                            "size": "Medium",
                            "color": _TEAMS_COLOR[message.severity],
                        },
                        {"type": "TextBlock", "text": message.body, "wrap": True},
                        {
                            "type": "FactSet",
                            "facts": [
                                {"title": k, "value": v}
                                for k, v in (message.metadata or {}).items()
                            ],
                        },
                    ],
                },
            }
        ],
    }


def format_webhook(message: NotificationMessage) -> dict[str, Any]:
    return {
        "subject": message.subject,
        "body": message.body,
        "severity": message.severity.name.lower(),
        "category": message.category,
        "source": message.source,
        "timestamp": message.timestamp.isoformat(),
        "metadata": message.metadata,
    }


class NotificationRouter:
    """
    Fans notifications out to configured channels.

    Collaborators are injected: the HTTP client for Slack/Teams/webhooks, the
    email transport, the rate limiter and the clock used for business hours.
    """

    def __init__(
        self,
        config: NotificationConfig,
        http_client: httpx.AsyncClient,
        rate_limiter: RateLimiter | None = None,
        email_sender: EmailSender | None = None,
        clock: Callable[[], datetime] = _local_now,
    ) -> None:
        self.config = config
        self.http_client = http_client
        self.rate_limiter = rate_limiter or SlidingWindowRateLimiter(config.rate_limit)
        self.email_sender = email_sender or LoggingEmailSender()
        self._clock = clock
        self.logger = logger.bind(component="notification_router")

    @property
    def channels(self) -> list[NotificationChannelConfig]:
        return self.config.channels

    async def send_notification(self, message: NotificationMessage) -> list[str]:
        """
        Deliver ``message`` to every enabled channel whose filter accepts it.

        Returns:
            Names of the channels the message was delivered to.
        """
        if not self.config.enabled:
            self.logger.debug("notifications_disabled", subject=message.subject)
            return []

        now = self._clock()
        targets = [
            c for c in self.config.channels if c.enabled and should_send_to_channel(message, c, now)
        ]
        if not targets:
            self.logger.debug("no_matching_channels", subject=message.subject)
            return []

        async with asyncio.TaskGroup() as task_group:
            tasks = {
                channel.name: task_group.create_task(self._deliver(message, channel))
                for channel in targets
            }

        delivered = [name for name, task in tasks.items() if task.result()]
        self.logger.info(
            "notification_routed",
            subject=message.subject,
            severity=message.severity.name,
            delivered=len(delivered),
            matched=len(targets),
        )
        return delivered

    async def _deliver(self, message: NotificationMessage, channel: NotificationChannelConfig) -> bool:
        try:
            if not self.rate_limiter.try_acquire(channel.name, channel.rate_limit):
                self.logger.warning("notification_rate_limited", channel=channel.name)
                return False
            await self.send_to_channel(message, channel)
        except Exception as e:
            self.logger.error(
                "notification_delivery_failed",
                channel=channel.name,
                channel_type=channel.type,
                error=str(e),
            )
            return False
        return True

    async def send_to_channel(
        self, message: NotificationMessage, channel: NotificationChannelConfig
    ) -> None:
        """Format and send to one channel, bypassing filters. Raises on failure."""
        match channel.type:
            case "email":
                payload = format_email(message, channel)
                await self.email_sender.send(payload["recipients"], payload["subject"], payload["body"])
            case "slack":
                await self._post(channel, format_slack(message, channel))
            case "teams":
                await self._post(channel, format_teams(message))
            case "webhook":
                await self._post(channel, format_webhook(message), headers=channel.headers)
            case _:
                raise ValueError(f"Unknown notification channel type: {channel.type!r}")
        self.logger.debug("notification_sent", channel=channel.name, channel_type=channel.type)

    async def _post(
        self,
        channel: NotificationChannelConfig,
        payload: dict[str, Any],
        headers: dict[str, str] | None = None,
    ) -> None:
        if not channel.webhook_url:
            raise ValueError(f"Channel {channel.name!r} has no webhook_url")
        response = await self.http_client.post(
            channel.webhook_url,
            json=payload,
            headers=headers or None,
            timeout=self.config.delivery_timeout_seconds,
        )
        response.raise_for_status()

    async def test_channel(self, channel: NotificationChannelConfig) -> bool:
        """Send a synthetic Info message straight to ``channel``; True if it went out."""
        message = NotificationMessage(
            subject="Test Notification",
            body=f"This is a test notification from {BOT_NAME}",
            severity=NotificationSeverity.INFO,
            category="test",
            source=f"{BOT_NAME}.test",
        )
        try:
            await self.send_to_channel(message, channel)
        except Exception as e:
            self.logger.error("notification_channel_test_failed", channel=channel.name, error=str(e))
            return False
        return True

"""
HTTP check executor.

Performs one probe through an injected ``httpx.AsyncClient`` and maps the
response, or the exception, onto a CheckResult. Never raises for transport
problems; only asyncio cancellation of the calling task propagates.
"""

import time
from datetime import UTC, datetime
from typing import Any

import httpx
import structlog

from healthwatch.domain.models import CheckResult, HttpCheckDefinition, MonitoringStatus
from healthwatch.errors import CheckCancelledError
from healthwatch.services.cancellation import CancellationToken

logger = structlog.get_logger(__name__)


class HttpCheckExecutor:
    """Runs HTTP checks against a shared client."""

    def __init__(self, client: httpx.AsyncClient) -> None:
        self.client = client
        self.logger = logger.bind(component="http_check")

    async def check(
        self,
        definition: HttpCheckDefinition,
        cancellation: CancellationToken | None = None,
    ) -> CheckResult:
        """
        Probe ``definition.url`` and classify the outcome.

        Healthy when the status code is one of the expected codes, Unhealthy
        when some other response came back, Error when no response did.
        """
        token = cancellation or CancellationToken()
        log = self.logger.bind(check=definition.name, url=definition.url)
        started = time.perf_counter()

        def _result(status: MonitoringStatus, message: str, details: dict[str, Any]) -> CheckResult:
            return CheckResult(
                check_name=definition.name,
                status=status,
                message=message,
                details={"url": definition.url, "method": definition.method, **details},
                timestamp=datetime.now(UTC),
                duration_ms=(time.perf_counter() - started) * 1000,
            )

        try:
            log.debug("http_check_started")
            response = await token.run(
                self.client.request(
                    definition.method,
                    definition.url,
                    headers=definition.headers or None,
                    timeout=definition.timeout_seconds,
                ),
                timeout=definition.timeout_seconds,
            )
        except CheckCancelledError:
            log.warning("http_check_cancelled")
            return _result(
                MonitoringStatus.ERROR, "Check was cancelled", {"error": "Operation was cancelled"}
            )
        except (TimeoutError, httpx.TimeoutException):
            log.warning("http_check_timed_out", timeout_seconds=definition.timeout_seconds)
            return _result(
                MonitoringStatus.ERROR,
                "Request timed out",
                {"error": "Request timed out", "timeout_ms": definition.timeout_seconds * 1000},
            )
        except httpx.HTTPError as e:
            log.error("http_check_request_failed", error=str(e))
            return _result(
                MonitoringStatus.ERROR,
                "HTTP request failed",
                {"error": str(e), "type": type(e).__name__},
            )
        except Exception as e:
            log.exception("http_check_unexpected_error", error=str(e))
            return _result(
                MonitoringStatus.ERROR,
                "Unexpected error occurred",
                {"error": str(e), "type": type(e).__name__},
            )

        is_success = response.status_code in definition.expected_status_codes
        status = MonitoringStatus.HEALTHY if is_success else MonitoringStatus.UNHEALTHY
        result = _result(
            status,
            f"HTTP {response.status_code} {response.reason_phrase}".rstrip(),
            {
                "status_code": response.status_code,
                "reason": response.reason_phrase,
                "expected_status_codes": sorted(definition.expected_status_codes),
                "header_names": sorted(definition.headers),
                "is_success": is_success,
            },
        )
        log.debug("http_check_completed", status=status.value, duration_ms=round(result.duration_ms))
        return result

"""Exceptions raised across component boundaries."""

import asyncio
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from healthwatch.domain.models import CheckResult


class CheckCancelledError(Exception):
    """A check's cancellation token fired before its I/O completed."""


class JobCancelledError(asyncio.CancelledError):
    """
    Raised by the orchestrator when a pass is cancelled.

    Subclasses CancelledError so schedulers that only know about asyncio
    cancellation still observe it; carries whatever results were produced.
    """

    def __init__(self, job_id: str, results: "list[CheckResult] | None" = None) -> None:
        super().__init__(f"Monitoring job {job_id} was cancelled")
        self.job_id = job_id
        self.results = results or []

"""
Cooperative cancellation for monitoring passes.

The scheduler hands the orchestrator a TriggerContext whose token it may
cancel at any time. Executors run their I/O through ``CancellationToken.run``
so a timeout or a cancel request aborts the underlying request or statement
instead of leaving it running in the background.
"""

import asyncio
import inspect
import uuid
from collections.abc import Awaitable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TypeVar

from healthwatch.errors import CheckCancelledError

T = TypeVar("T")


class CancellationToken:
    """One-shot cancellation signal shared by every check in a pass."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise CheckCancelledError("Check was cancelled")

    async def run(self, awaitable: Awaitable[T], timeout: float | None = None) -> T:
        """
        Await ``awaitable`` unless the token fires or ``timeout`` elapses first.

        On either, the inner task is cancelled and reaped before raising, so
        the caller never leaks an in-flight operation.

        Raises:
            CheckCancelledError: the token fired.
            TimeoutError: the timeout elapsed.
        """
        if self.is_cancelled:
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            raise CheckCancelledError("Check was cancelled")

        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait(
                {task, waiter}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
            )
        except asyncio.CancelledError:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
            raise
        finally:
            waiter.cancel()

        if task in done:
            return task.result()

        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        if self.is_cancelled:
            raise CheckCancelledError("Check was cancelled")
        raise TimeoutError(f"Operation timed out after {timeout}s")


@dataclass
class TriggerContext:
    """What the scheduler passes to one orchestrator invocation."""

    job_name: str
    cancellation: CancellationToken = field(default_factory=CancellationToken)
    fire_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    job_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])

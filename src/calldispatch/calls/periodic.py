"""
Periodic background task with an explicit, cancelable handle.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable

from calldispatch.shared.logging import get_logger

logger = get_logger(__name__)

# Returns True when the task has nothing left to do
TickCallback = Callable[[], Awaitable[bool]]


class PeriodicTask:
    """Runs ``callback`` every ``interval_seconds`` until stopped or done."""

    def __init__(
        self,
        name: str,
        callback: TickCallback,
        interval_seconds: float,
        run_immediately: bool = False,
    ) -> None:
        self._name = name
        self._callback = callback
        self._interval = interval_seconds
        self._run_immediately = run_immediately
        self._running = False
        self._task: asyncio.Task[None] | None = None

    @property
    def name(self) -> str:
        return self._name

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start the background loop."""
        if self.running:
            logger.warning("Periodic task already running", extra={"task": self._name})
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop(), name=self._name)
        logger.info("Periodic task started", extra={"task": self._name})

    async def stop(self) -> None:
        """Stop the background loop and wait for it to exit."""
        self._running = False
        task, self._task = self._task, None
        if task is None:
            return
        if task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        logger.info("Periodic task stopped", extra={"task": self._name})

    async def wait(self) -> None:
        """Wait until the loop exits on its own."""
        if self._task is not None:
            await asyncio.shield(self._task)

    async def _run_loop(self) -> None:
        if not self._run_immediately:
            await asyncio.sleep(self._interval)
        while self._running:
            try:
                if await self._callback():
                    logger.info("Periodic task finished", extra={"task": self._name})
                    self._running = False
                    return
            except Exception:
                logger.exception("Periodic task iteration failed", extra={"task": self._name})
            await asyncio.sleep(self._interval)

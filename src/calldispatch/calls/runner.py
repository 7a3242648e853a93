"""
Batch runner: owns the background orchestrator task and the watchdog task of
each executing batch.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from datetime import datetime
from uuid import UUID

from calldispatch.calls.dispatcher import DispatchConfig, DispatchOrchestrator, DispatchSummary, Sleep
from calldispatch.calls.enums import BatchStatus, CallStatus
from calldispatch.calls.periodic import PeriodicTask
from calldispatch.calls.repository import CallRepository
from calldispatch.calls.watchdog import StuckCallWatchdog, WatchdogConfig
from calldispatch.lifecycle.service import CallLifecycle
from calldispatch.shared.database import DatabaseManager
from calldispatch.shared.exceptions import BatchNotFoundError, ValidationError
from calldispatch.shared.logging import get_logger
from calldispatch.telephony.interface import ProviderGateway

logger = get_logger(__name__)


class BatchRunner:
    """Starts and supervises batch execution."""

    def __init__(
        self,
        db: DatabaseManager,
        lifecycle: CallLifecycle,
        gateway: ProviderGateway,
        dispatch_config: DispatchConfig | None = None,
        watchdog_config: WatchdogConfig | None = None,
        clock: Callable[[], datetime] | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._db = db
        self._gateway = gateway
        self._orchestrator = DispatchOrchestrator(
            db, lifecycle, gateway, dispatch_config, sleep=sleep
        )
        self._watchdog = StuckCallWatchdog(db, lifecycle, gateway, watchdog_config, clock=clock)
        self._dispatch_tasks: dict[UUID, asyncio.Task[DispatchSummary]] = {}
        self._watchdogs: dict[UUID, PeriodicTask] = {}

    @property
    def watchdog(self) -> StuckCallWatchdog:
        return self._watchdog

    def is_dispatching(self, batch_id: UUID) -> bool:
        task = self._dispatch_tasks.get(batch_id)
        return task is not None and not task.done()

    async def start(self, batch_id: UUID) -> None:
        """Start dispatching a batch in the background.

        Raises:
            ConfigurationMissingError: If the provider is not configured.
            BatchNotFoundError: If the batch does not exist.
            ValidationError: If the batch is completed or already dispatching.
        """
        self._gateway.ensure_configured()

        async with self._db.session() as session:
            batch = await CallRepository(session).get_batch(batch_id)
            if batch is None:
                raise BatchNotFoundError(batch_id)
            if batch.status == BatchStatus.COMPLETED:
                raise ValidationError(f"Batch {batch_id} is already completed")

        if self.is_dispatching(batch_id):
            raise ValidationError(f"Batch {batch_id} is already dispatching")

        task = asyncio.create_task(self._orchestrator.run(batch_id), name=f"dispatch-{batch_id}")
        self._dispatch_tasks[batch_id] = task
        task.add_done_callback(lambda t: self._on_dispatch_done(batch_id, t))

        self._start_watchdog(batch_id)
        logger.info("Batch execution started", extra={"batch_id": str(batch_id)})

    async def resume(self) -> list[UUID]:
        """Restart watchdogs for batches left dispatching by a previous process.

        Their orchestrator is gone, so queued calls are eligible too.

        Returns:
            IDs of the batches now watched.
        """
        async with self._db.session() as session:
            batch_ids = await CallRepository(session).list_batch_ids(BatchStatus.DISPATCHING)

        for batch_id in batch_ids:
            self._start_watchdog(batch_id)
        if batch_ids:
            logger.info(
                "Resumed watchdogs for dispatching batches",
                extra={"batch_ids": [str(b) for b in batch_ids]},
            )
        return batch_ids

    async def wait(self, batch_id: UUID) -> DispatchSummary | None:
        """Wait for the orchestrator of a batch to finish."""
        task = self._dispatch_tasks.get(batch_id)
        if task is None:
            return None
        return await asyncio.shield(task)

    async def stop_watchdog(self, batch_id: UUID) -> None:
        handle = self._watchdogs.pop(batch_id, None)
        if handle is not None:
            await handle.stop()

    async def shutdown(self) -> None:
        """Cancel every background task."""
        for task in list(self._dispatch_tasks.values()):
            task.cancel()
        if self._dispatch_tasks:
            await asyncio.gather(*self._dispatch_tasks.values(), return_exceptions=True)
        self._dispatch_tasks.clear()
        for batch_id in list(self._watchdogs):
            await self.stop_watchdog(batch_id)
        logger.info("Batch runner stopped")

    def _start_watchdog(self, batch_id: UUID) -> None:
        existing = self._watchdogs.get(batch_id)
        if existing is not None and existing.running:
            return

        async def tick() -> bool:
            done = await self._watchdog.sweep_until_complete(batch_id, self._eligible(batch_id))
            if done:
                self._watchdogs.pop(batch_id, None)
            return done

        handle = PeriodicTask(
            name=f"watchdog-{batch_id}",
            callback=tick,
            interval_seconds=self._watchdog.config.interval_seconds,
        )
        self._watchdogs[batch_id] = handle
        handle.start()

    def _eligible(self, batch_id: UUID) -> tuple[CallStatus, ...]:
        """Statuses the watchdog may resolve right now.

        Queued calls are still waiting for their turn while the orchestrator
        runs, so they only become eligible once it has exited.
        """
        statuses = tuple(self._watchdog.config.statuses)
        if self.is_dispatching(batch_id):
            return tuple(s for s in statuses if s != CallStatus.QUEUED)
        return statuses

    def _on_dispatch_done(self, batch_id: UUID, task: asyncio.Task[DispatchSummary]) -> None:
        if task.cancelled():
            logger.info("Batch dispatch cancelled", extra={"batch_id": str(batch_id)})
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "Batch dispatch aborted",
                extra={"batch_id": str(batch_id), "error": str(exc)},
                exc_info=exc,
            )

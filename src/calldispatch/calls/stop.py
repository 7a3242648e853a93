"""
Emergency stop and single-call cancel.

Provider hang-ups are fire-and-forget: local state moves to canceled
immediately and never waits for the provider.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from uuid import UUID

import anyio
from sqlalchemy.exc import SQLAlchemyError

from calldispatch.calls.enums import NON_TERMINAL_STATUSES
from calldispatch.calls.repository import CallRepository
from calldispatch.lifecycle.events import CallCommand
from calldispatch.lifecycle.service import CallLifecycle, LifecycleOutcome
from calldispatch.shared.database import DatabaseManager
from calldispatch.shared.exceptions import AppError, BatchNotFoundError, CallNotFoundError
from calldispatch.shared.logging import get_logger
from calldispatch.telephony.interface import ProviderGateway

logger = get_logger(__name__)

STOP_MESSAGE = "Stopped by user"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class StopResult:
    """Outcome of an emergency stop."""

    batch_id: UUID
    canceled_calls: int
    provider_cancels: int
    batch_completed: bool


class BatchStopService:
    """Cancels calls locally and at the provider."""

    def __init__(
        self,
        db: DatabaseManager,
        lifecycle: CallLifecycle,
        gateway: ProviderGateway,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._db = db
        self._lifecycle = lifecycle
        self._gateway = gateway
        self._clock = clock or _utcnow
        self._background: set[asyncio.Task[None]] = set()

    async def stop_batch(self, batch_id: UUID) -> StopResult:
        """Stop every open call of a batch.

        Args:
            batch_id: Batch UUID.

        Returns:
            StopResult with the number of calls canceled by this request.

        Raises:
            BatchNotFoundError: If the batch does not exist.
        """
        async with self._db.session() as session:
            repo = CallRepository(session)
            if await repo.get_batch(batch_id) is None:
                raise BatchNotFoundError(batch_id)
            await repo.mark_batch_stopped(batch_id, self._clock())
            open_calls = [
                (call.id, call.external_call_id)
                for call in await repo.list_calls(batch_id, NON_TERMINAL_STATUSES)
            ]

        external_ids = [ext for _, ext in open_calls if ext]
        if external_ids:
            self._spawn_provider_cancels(external_ids)

        canceled = 0
        completed = False
        for call_id, _ in open_calls:
            try:
                outcome = await self._lifecycle.apply(call_id, CallCommand.cancel(STOP_MESSAGE))
            except SQLAlchemyError:
                logger.exception(
                    "Could not cancel call; left for the watchdog",
                    extra={"call_id": str(call_id)},
                )
                continue
            if outcome.applied:
                canceled += 1
            # The last cancel usually completes the batch in its own transaction
            completed = completed or outcome.batch_completed

        if not completed:
            completed = await self._lifecycle.check_batch_completion(batch_id)
        if not completed:
            await self._lifecycle.publish_batch(batch_id)

        logger.info(
            "Batch stopped",
            extra={
                "batch_id": str(batch_id),
                "canceled_calls": canceled,
                "provider_cancels": len(external_ids),
            },
        )
        return StopResult(
            batch_id=batch_id,
            canceled_calls=canceled,
            provider_cancels=len(external_ids),
            batch_completed=completed,
        )

    async def cancel_call(self, call_id: UUID) -> LifecycleOutcome:
        """Cancel one call.

        Raises:
            CallNotFoundError: If the call does not exist.
        """
        async with self._db.session() as session:
            call = await CallRepository(session).get_call(call_id)
            if call is None:
                raise CallNotFoundError(call_id)
            external_call_id = call.external_call_id
            was_open = not call.status.is_terminal

        if was_open and external_call_id:
            self._spawn_provider_cancels([external_call_id])
        return await self._lifecycle.apply(call_id, CallCommand.cancel("Canceled by user"))

    async def drain(self) -> None:
        """Wait for in-flight provider cancels."""
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)

    def _spawn_provider_cancels(self, external_ids: list[str]) -> None:
        task = asyncio.create_task(self._cancel_all(external_ids))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _cancel_all(self, external_ids: list[str]) -> None:
        async with anyio.create_task_group() as tg:
            for external_call_id in external_ids:
                tg.start_soon(self._cancel_one, external_call_id)

    async def _cancel_one(self, external_call_id: str) -> None:
        try:
            await self._gateway.cancel_call(external_call_id)
        except AppError as e:
            logger.warning(
                "Provider cancel failed",
                extra={"external_call_id": external_call_id, "error": e.message},
            )
        except Exception:
            logger.exception(
                "Unexpected error canceling call at provider",
                extra={"external_call_id": external_call_id},
            )

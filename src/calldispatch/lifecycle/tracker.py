"""
Batch aggregate tracker.

Sole writer of the batch counters and of the batch completion transition.
"""

from datetime import datetime, timezone
from uuid import UUID

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from calldispatch.calls.enums import BatchStatus
from calldispatch.calls.models import Batch
from calldispatch.calls.repository import CallRepository
from calldispatch.lifecycle.state_machine import CounterDelta
from calldispatch.shared.logging import get_logger

logger = get_logger(__name__)


class BatchTracker:
    """Maintains batch counters and detects batch completion."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session
        self._calls = CallRepository(session)

    async def apply_counter_delta(self, batch_id: UUID, delta: CounterDelta) -> None:
        """Atomically add ``delta`` to the batch counters.

        Args:
            batch_id: Batch UUID.
            delta: Success/failure increments of one terminal transition.
        """
        if delta.is_zero:
            return
        stmt = (
            update(Batch)
            .where(Batch.id == batch_id)
            .values(
                successful_calls=Batch.successful_calls + delta.success,
                failed_calls=Batch.failed_calls + delta.failure,
            )
            .execution_options(synchronize_session=False)
        )
        await self._session.execute(stmt)

    async def check_completion(self, batch_id: UUID, now: datetime | None = None) -> bool:
        """Complete the batch if no call is left in a non-terminal state.

        Safe to call redundantly from any path; only one caller observes True.

        Returns:
            True if this invocation moved the batch to completed.
        """
        open_calls = await self._calls.count_open_calls(batch_id)
        if open_calls > 0:
            return False

        stmt = (
            update(Batch)
            .where(Batch.id == batch_id, Batch.status != BatchStatus.COMPLETED)
            .values(
                status=BatchStatus.COMPLETED,
                completed_at=now or datetime.now(timezone.utc),
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        completed = result.rowcount == 1
        if completed:
            logger.info("Batch completed", extra={"batch_id": str(batch_id)})
        return completed

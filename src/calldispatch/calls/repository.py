"""
Repository for call and batch database operations.

All status writes are conditional on the expected prior status; callers read
``rowcount`` to learn whether they won the race.
"""

from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import case, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from calldispatch.calls.enums import NON_TERMINAL_STATUSES, BatchStatus, CallStatus
from calldispatch.calls.models import Batch, Call


@dataclass(frozen=True)
class NewCall:
    """Input row for a call created with its batch."""

    phone_number: str
    driver_name: str | None = None
    reg_no: str | None = None
    message: str | None = None


class CallRepository:
    """Repository for call and batch rows."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize repository with database session.

        Args:
            session: Async database session.
        """
        self._session = session

    # Batches

    async def create_batch(self, name: str, calls: Sequence[NewCall]) -> Batch:
        """Create a batch together with its queued calls.

        Args:
            name: Display name of the batch.
            calls: Call rows in dispatch order.

        Returns:
            Created Batch instance.
        """
        batch = Batch(name=name, total_calls=len(calls), status=BatchStatus.CREATED)
        self._session.add(batch)
        await self._session.flush()
        for position, item in enumerate(calls):
            self._session.add(
                Call(
                    batch_id=batch.id,
                    position=position,
                    status=CallStatus.QUEUED,
                    phone_number=item.phone_number,
                    driver_name=item.driver_name,
                    reg_no=item.reg_no,
                    message=item.message,
                )
            )
        await self._session.flush()
        return batch

    async def get_batch(self, batch_id: UUID) -> Batch | None:
        stmt = select(Batch).where(Batch.id == batch_id)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def refresh_batch(self, batch_id: UUID) -> Batch | None:
        """Re-read a batch, bypassing the identity map."""
        stmt = select(Batch).where(Batch.id == batch_id).execution_options(populate_existing=True)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_batch_ids(self, status: BatchStatus) -> list[UUID]:
        stmt = select(Batch.id).where(Batch.status == status).order_by(Batch.created_at)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def mark_batch_dispatching(self, batch_id: UUID) -> bool:
        """Move a created batch to dispatching."""
        stmt = (
            update(Batch)
            .where(Batch.id == batch_id, Batch.status == BatchStatus.CREATED)
            .values(status=BatchStatus.DISPATCHING)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount == 1

    async def mark_batch_stopped(self, batch_id: UUID, stopped_at: datetime) -> bool:
        stmt = (
            update(Batch)
            .where(Batch.id == batch_id, Batch.stopped_at.is_(None))
            .values(stopped_at=stopped_at)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount == 1

    # Calls

    async def get_call(self, call_id: UUID) -> Call | None:
        """Get a call by internal ID, always reading current column values."""
        stmt = select(Call).where(Call.id == call_id).execution_options(populate_existing=True)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_external_id(self, external_call_id: str) -> Call | None:
        """Get a call by the provider's call identifier."""
        stmt = select(Call).where(Call.external_call_id == external_call_id)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def find_latest_open_by_reg_no(self, reg_no: str) -> Call | None:
        """Most recently created non-terminal call for a registration number."""
        stmt = (
            select(Call)
            .where(Call.reg_no == reg_no, Call.status.in_(NON_TERMINAL_STATUSES))
            .order_by(Call.created_at.desc(), Call.position.desc())
            .limit(1)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_calls(
        self,
        batch_id: UUID,
        statuses: Sequence[CallStatus] | None = None,
    ) -> Sequence[Call]:
        """List calls of a batch in dispatch order.

        Args:
            batch_id: Batch UUID.
            statuses: Optional status filter.

        Returns:
            Calls ordered by creation time, then position.
        """
        stmt = select(Call).where(Call.batch_id == batch_id)
        if statuses is not None:
            stmt = stmt.where(Call.status.in_(list(statuses)))
        stmt = stmt.order_by(Call.created_at, Call.position)
        result = await self._session.execute(stmt)
        return result.scalars().all()

    async def list_stale_calls(
        self,
        batch_id: UUID,
        statuses: Sequence[CallStatus],
        cutoff: datetime,
    ) -> Sequence[Call]:
        """Calls in ``statuses`` whose start (or creation) time is before ``cutoff``."""
        reference = func.coalesce(Call.started_at, Call.created_at)
        stmt = (
            select(Call)
            .where(
                Call.batch_id == batch_id,
                Call.status.in_(list(statuses)),
                reference < cutoff,
            )
            .order_by(Call.created_at, Call.position)
        )
        result = await self._session.execute(stmt)
        return result.scalars().all()

    async def count_open_calls(self, batch_id: UUID) -> int:
        stmt = select(func.count(Call.id)).where(
            Call.batch_id == batch_id,
            Call.status.in_(NON_TERMINAL_STATUSES),
        )
        result = await self._session.execute(stmt)
        return int(result.scalar_one())

    async def compare_and_set(
        self,
        call_id: UUID,
        expected_status: CallStatus,
        values: dict[str, Any],
        live_transcript_chunk: str | None = None,
    ) -> bool:
        """Update a call only if it is still in ``expected_status``.

        Args:
            call_id: Call UUID.
            expected_status: Status the caller based its decision on.
            values: Plain column values to write.
            live_transcript_chunk: Text appended to ``live_transcript``.

        Returns:
            True if the row was updated, False if another writer got there first.
        """
        values = dict(values)
        for column in ("final_transcript", "summary", "recording_url"):
            if values.get(column) is not None:
                values[column] = func.coalesce(getattr(Call, column), values[column])
        if live_transcript_chunk:
            values["live_transcript"] = case(
                (Call.live_transcript.is_(None), live_transcript_chunk),
                else_=Call.live_transcript + " " + live_transcript_chunk,
            )
        stmt = (
            update(Call)
            .where(Call.id == call_id, Call.status == expected_status)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount == 1

    async def set_external_call_id(self, call_id: UUID, external_call_id: str) -> bool:
        """Record the provider id once; never overwrites an existing one."""
        stmt = (
            update(Call)
            .where(Call.id == call_id, Call.external_call_id.is_(None))
            .values(external_call_id=external_call_id)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount == 1

    async def merge_details(
        self,
        call_id: UUID,
        transcript: str | None = None,
        recording_url: str | None = None,
        duration_seconds: int | None = None,
        summary: str | None = None,
    ) -> bool:
        """Fill empty detail columns from provider data without touching status."""
        values: dict[str, Any] = {}
        if transcript:
            values["final_transcript"] = func.coalesce(Call.final_transcript, transcript)
        if recording_url:
            values["recording_url"] = func.coalesce(Call.recording_url, recording_url)
        if duration_seconds is not None:
            values["duration_seconds"] = func.coalesce(Call.duration_seconds, duration_seconds)
        if summary:
            values["summary"] = func.coalesce(Call.summary, summary)
        if not values:
            return False
        stmt = (
            update(Call)
            .where(Call.id == call_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount == 1

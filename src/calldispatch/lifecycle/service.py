"""
Call lifecycle service.

Applies state machine transitions to stored calls. Every status write is a
compare-and-set on the status the decision was based on; the batch counter
delta and the completion check run in the same database transaction.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any
from uuid import UUID

from calldispatch.calls.enums import CallStatus
from calldispatch.calls.feed import ChangeFeed, RowChange
from calldispatch.calls.repository import CallRepository
from calldispatch.lifecycle.events import CallCommand, LifecycleInput
from calldispatch.lifecycle.state_machine import CallSnapshot, Transition, transition
from calldispatch.lifecycle.tracker import BatchTracker
from calldispatch.shared.database import DatabaseManager
from calldispatch.shared.exceptions import CallNotFoundError
from calldispatch.shared.logging import get_logger

logger = get_logger(__name__)

SKIP_CONTENTION = "contention"

_COLUMNS = (
    "started_at",
    "completed_at",
    "duration_seconds",
    "external_call_id",
    "final_transcript",
    "summary",
    "recording_url",
    "error_message",
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class LifecycleOutcome:
    """What happened when an event or command was applied to a call."""

    call_id: UUID
    applied: bool
    status: CallStatus
    previous_status: CallStatus
    reason: str | None = None
    batch_completed: bool = False

    @property
    def skipped(self) -> bool:
        return not self.applied


def _column_values(t: Transition) -> dict[str, Any]:
    values: dict[str, Any] = {"status": t.new_status}
    for column in _COLUMNS:
        value = getattr(t, column)
        if value is not None:
            values[column] = value
    return values


def _describe(event: LifecycleInput) -> str:
    if isinstance(event, CallCommand):
        return f"command:{event.kind.value}"
    return f"event:{event.kind.value if event.kind else event.raw_event_type}"


class CallLifecycle:
    """Single writer of call status and batch counters."""

    def __init__(
        self,
        db: DatabaseManager,
        feed: ChangeFeed | None = None,
        max_cas_retries: int = 3,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._db = db
        self._feed = feed
        self._max_cas_retries = max_cas_retries
        self._clock = clock or _utcnow

    async def apply(self, call_id: UUID, event: LifecycleInput) -> LifecycleOutcome:
        """Apply an event or command to a call.

        Args:
            call_id: Internal call UUID.
            event: Canonical provider event or local command.

        Returns:
            LifecycleOutcome; skipped outcomes carry the reason.

        Raises:
            CallNotFoundError: If the call does not exist.
        """
        last_status: CallStatus | None = None
        for attempt in range(1, self._max_cas_retries + 1):
            changes: list[RowChange] = []
            async with self._db.session() as session:
                repo = CallRepository(session)
                call = await repo.get_call(call_id)
                if call is None:
                    raise CallNotFoundError(call_id)

                now = self._clock()
                snapshot = CallSnapshot.from_call(call)
                last_status = snapshot.status
                result = transition(snapshot, event, now)

                if result.skipped:
                    logger.debug(
                        "Call transition skipped",
                        extra={
                            "call_id": str(call_id),
                            "status": snapshot.status.value,
                            "input": _describe(event),
                            "reason": result.reason,
                        },
                    )
                    return LifecycleOutcome(
                        call_id=call_id,
                        applied=False,
                        status=snapshot.status,
                        previous_status=snapshot.status,
                        reason=result.reason,
                    )

                won = await repo.compare_and_set(
                    call_id,
                    result.from_status,
                    _column_values(result),
                    live_transcript_chunk=result.live_transcript_chunk,
                )
                if not won:
                    logger.info(
                        "Call status changed concurrently; retrying",
                        extra={"call_id": str(call_id), "attempt": attempt},
                    )
                    continue

                tracker = BatchTracker(session)
                await tracker.apply_counter_delta(call.batch_id, result.counter_delta)
                batch_completed = False
                if result.requires_batch_completion_check:
                    batch_completed = await tracker.check_completion(call.batch_id, now)

                if self._feed is not None:
                    fresh = await repo.get_call(call_id)
                    if fresh is not None:
                        changes.append(RowChange("calls", call.batch_id, fresh.to_dict()))
                    if not result.counter_delta.is_zero or batch_completed:
                        batch = await repo.refresh_batch(call.batch_id)
                        if batch is not None:
                            changes.append(RowChange("batches", call.batch_id, batch.to_dict()))

            if self._feed is not None:
                self._feed.publish_all(changes)

            logger.info(
                "Call transition applied",
                extra={
                    "call_id": str(call_id),
                    "from_status": result.from_status.value,
                    "to_status": result.new_status.value,
                    "input": _describe(event),
                    "batch_completed": batch_completed,
                },
            )
            return LifecycleOutcome(
                call_id=call_id,
                applied=True,
                status=result.new_status,
                previous_status=result.from_status,
                batch_completed=batch_completed,
            )

        logger.warning(
            "Call transition abandoned after repeated contention",
            extra={"call_id": str(call_id), "input": _describe(event)},
        )
        status = last_status or CallStatus.QUEUED
        return LifecycleOutcome(
            call_id=call_id,
            applied=False,
            status=status,
            previous_status=status,
            reason=SKIP_CONTENTION,
        )

    async def check_batch_completion(self, batch_id: UUID) -> bool:
        """Run the completion check in its own transaction and publish the batch row."""
        changes: list[RowChange] = []
        async with self._db.session() as session:
            completed = await BatchTracker(session).check_completion(batch_id, self._clock())
            if completed and self._feed is not None:
                batch = await CallRepository(session).refresh_batch(batch_id)
                if batch is not None:
                    changes.append(RowChange("batches", batch_id, batch.to_dict()))
        if self._feed is not None:
            self._feed.publish_all(changes)
        return completed

    async def publish_batch(self, batch_id: UUID) -> None:
        """Publish the current batch row to the change feed."""
        if self._feed is None:
            return
        async with self._db.session() as session:
            batch = await CallRepository(session).refresh_batch(batch_id)
        if batch is not None:
            self._feed.publish(RowChange("batches", batch_id, batch.to_dict()))

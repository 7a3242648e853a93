"""Tests for the call lifecycle service and the batch tracker."""

import asyncio
from uuid import uuid4

import pytest

from calldispatch.calls.enums import BatchStatus, CallStatus
from calldispatch.calls.feed import ChangeFeed
from calldispatch.calls.repository import CallRepository
from calldispatch.lifecycle.events import CallCommand, CanonicalEvent, EventKind
from calldispatch.lifecycle.service import CallLifecycle
from calldispatch.lifecycle.state_machine import CounterDelta
from calldispatch.lifecycle.tracker import BatchTracker
from calldispatch.shared.database import DatabaseManager
from calldispatch.shared.exceptions import CallNotFoundError

from conftest import BatchFactory, FakeClock, load_batch, load_call


def completed(transcript: str | None = "Agent: hello") -> CanonicalEvent:
    return CanonicalEvent(kind=EventKind.COMPLETED, external_call_id="sv-1", transcript=transcript)


class TestCallLifecycle:
    @pytest.mark.asyncio
    async def test_completion_updates_call_and_counters(
        self, db: DatabaseManager, lifecycle: CallLifecycle, make_batch: BatchFactory
    ) -> None:
        batch_id, (first, second) = await make_batch(2)

        outcome = await lifecycle.apply(first, completed())

        assert outcome.applied
        assert outcome.status == CallStatus.COMPLETED
        assert outcome.previous_status == CallStatus.QUEUED
        assert not outcome.batch_completed

        call = await load_call(db, first)
        assert call.status == CallStatus.COMPLETED
        assert call.completed_at is not None
        assert call.started_at is not None
        assert call.final_transcript == "Agent: hello"
        assert call.external_call_id == "sv-1"

        batch = await load_batch(db, batch_id)
        assert batch.successful_calls == 1
        assert batch.failed_calls == 0
        assert batch.status == BatchStatus.CREATED

    @pytest.mark.asyncio
    async def test_duplicate_completion_counts_once(
        self, db: DatabaseManager, lifecycle: CallLifecycle, make_batch: BatchFactory
    ) -> None:
        batch_id, (call_id,) = await make_batch(1)

        first = await lifecycle.apply(call_id, completed())
        second = await lifecycle.apply(call_id, completed("Agent: different"))

        assert first.applied
        assert first.batch_completed
        assert second.skipped
        assert second.reason == "already_terminal"

        batch = await load_batch(db, batch_id)
        assert batch.successful_calls == 1
        assert batch.failed_calls == 0
        assert batch.status == BatchStatus.COMPLETED
        assert (await load_call(db, call_id)).final_transcript == "Agent: hello"

    @pytest.mark.asyncio
    async def test_concurrent_terminal_writers_count_once(
        self, db: DatabaseManager, lifecycle: CallLifecycle, make_batch: BatchFactory
    ) -> None:
        batch_id, (call_id, other) = await make_batch(2)

        outcomes = await asyncio.gather(
            lifecycle.apply(call_id, completed()),
            lifecycle.apply(call_id, CallCommand.time_out("late")),
            lifecycle.apply(call_id, CallCommand.cancel()),
        )

        assert sum(1 for o in outcomes if o.applied) == 1
        batch = await load_batch(db, batch_id)
        assert batch.successful_calls + batch.failed_calls == 1

    @pytest.mark.asyncio
    async def test_transcript_chunks_accumulate(
        self, db: DatabaseManager, lifecycle: CallLifecycle, make_batch: BatchFactory
    ) -> None:
        _, (call_id,) = await make_batch(1)

        for text in ("Hello", "driver", "Ravi"):
            await lifecycle.apply(
                call_id,
                CanonicalEvent(kind=EventKind.TRANSCRIPT_CHUNK, transcript=text),
            )

        call = await load_call(db, call_id)
        assert call.status == CallStatus.ACTIVE
        assert call.live_transcript == "Hello driver Ravi"

    @pytest.mark.asyncio
    async def test_regression_is_skipped(
        self, db: DatabaseManager, lifecycle: CallLifecycle, make_batch: BatchFactory
    ) -> None:
        _, (call_id,) = await make_batch(1)
        await lifecycle.apply(call_id, CallCommand.mark_active("sv-5"))

        outcome = await lifecycle.apply(call_id, CanonicalEvent(kind=EventKind.RINGING))

        assert outcome.skipped
        assert outcome.reason == "illegal_transition"
        assert (await load_call(db, call_id)).status == CallStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_unknown_call_raises(self, lifecycle: CallLifecycle) -> None:
        with pytest.raises(CallNotFoundError):
            await lifecycle.apply(uuid4(), completed())

    @pytest.mark.asyncio
    async def test_uses_injected_clock(
        self, db: DatabaseManager, clock: FakeClock, make_batch: BatchFactory
    ) -> None:
        _, (call_id,) = await make_batch(1)
        lifecycle = CallLifecycle(db, clock=clock)

        await lifecycle.apply(call_id, CallCommand.claim())
        clock.advance(30)
        await lifecycle.apply(call_id, CanonicalEvent(kind=EventKind.COMPLETED))

        assert (await load_call(db, call_id)).duration_seconds == 30

    @pytest.mark.asyncio
    async def test_publishes_rows_after_commit(
        self, db: DatabaseManager, clock: FakeClock, make_batch: BatchFactory
    ) -> None:
        batch_id, (call_id,) = await make_batch(1)
        feed = ChangeFeed()
        lifecycle = CallLifecycle(db, feed=feed, clock=clock)

        async with feed.subscribe(batch_id) as queue:
            await lifecycle.apply(call_id, completed())
            changes = [queue.get_nowait() for _ in range(queue.qsize())]

        tables = [c.table for c in changes]
        assert tables[0] == "calls"
        assert changes[0].row["status"] == "completed"
        assert "batches" in tables
        assert changes[-1].row["status"] == "completed"


class TestBatchTracker:
    @pytest.mark.asyncio
    async def test_counter_delta_is_atomic_increment(
        self, db: DatabaseManager, make_batch: BatchFactory
    ) -> None:
        batch_id, _ = await make_batch(3)

        async with db.session() as session:
            tracker = BatchTracker(session)
            await tracker.apply_counter_delta(batch_id, CounterDelta(success=1))
            await tracker.apply_counter_delta(batch_id, CounterDelta(failure=1))
            await tracker.apply_counter_delta(batch_id, CounterDelta())

        batch = await load_batch(db, batch_id)
        assert batch.successful_calls == 1
        assert batch.failed_calls == 1

    @pytest.mark.asyncio
    async def test_completion_requires_all_calls_terminal(
        self, db: DatabaseManager, lifecycle: CallLifecycle, make_batch: BatchFactory
    ) -> None:
        batch_id, (first, second) = await make_batch(2)
        await lifecycle.apply(first, completed())

        async with db.session() as session:
            assert await BatchTracker(session).check_completion(batch_id) is False

        await lifecycle.apply(second, CallCommand.fail("busy"))

        batch = await load_batch(db, batch_id)
        assert batch.status == BatchStatus.COMPLETED
        assert batch.completed_at is not None
        assert batch.successful_calls + batch.failed_calls == batch.total_calls

    @pytest.mark.asyncio
    async def test_completion_check_is_idempotent(
        self, db: DatabaseManager, lifecycle: CallLifecycle, make_batch: BatchFactory
    ) -> None:
        batch_id, (call_id,) = await make_batch(1)
        await lifecycle.apply(call_id, CallCommand.fail("boom"))

        results = []
        for _ in range(3):
            async with db.session() as session:
                results.append(await BatchTracker(session).check_completion(batch_id))

        assert results == [False, False, False]
        assert (await load_batch(db, batch_id)).status == BatchStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_open_call_count(self, db: DatabaseManager, make_batch: BatchFactory) -> None:
        batch_id, _ = await make_batch(4)

        async with db.session() as session:
            assert await CallRepository(session).count_open_calls(batch_id) == 4

"""
Call state machine.

Pure decision logic: given a snapshot of a call and an event or command, return
the ``Transition`` to persist. Nothing here touches the database; the lifecycle
service applies the result with a compare-and-set on ``from_status``.

    queued -> ringing -> active -> completed
       |         |         |  \\-> failed
       |         |         \\----> canceled
       \\---------+--> active | failed | completed | canceled

Terminal states are sticky.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from calldispatch.calls.enums import CallStatus
from calldispatch.lifecycle.events import (
    CallCommand,
    CanonicalEvent,
    CommandKind,
    EventKind,
    LifecycleInput,
)
from calldispatch.shared.exceptions import IllegalTransitionError
from calldispatch.shared.logging import get_logger

logger = get_logger(__name__)

SKIP_ALREADY_TERMINAL = "already_terminal"
SKIP_NO_CHANGE = "no_change"
SKIP_ILLEGAL_TRANSITION = "illegal_transition"
SKIP_UNRECOGNIZED_EVENT = "unrecognized_event"
SKIP_NOT_QUEUED = "not_queued"

# Position on the forward path; terminal states are handled separately.
_RANK: dict[CallStatus, int] = {
    CallStatus.QUEUED: 0,
    CallStatus.RINGING: 1,
    CallStatus.ACTIVE: 2,
}


@dataclass(frozen=True)
class CallSnapshot:
    """The fields of a call the state machine reads."""

    status: CallStatus
    started_at: datetime | None = None
    external_call_id: str | None = None
    live_transcript: str | None = None
    final_transcript: str | None = None
    summary: str | None = None
    recording_url: str | None = None
    duration_seconds: int | None = None

    @classmethod
    def from_call(cls, call: Any) -> CallSnapshot:
        return cls(
            status=CallStatus(call.status),
            started_at=call.started_at,
            external_call_id=call.external_call_id,
            live_transcript=call.live_transcript,
            final_transcript=call.final_transcript,
            summary=call.summary,
            recording_url=call.recording_url,
            duration_seconds=call.duration_seconds,
        )


@dataclass(frozen=True)
class CounterDelta:
    """Contribution of one transition to the batch counters."""

    success: int = 0
    failure: int = 0

    @property
    def is_zero(self) -> bool:
        return self.success == 0 and self.failure == 0


@dataclass(frozen=True)
class Transition:
    """Result of feeding one event or command to the state machine.

    Field updates are None when the column must be left untouched.
    """

    from_status: CallStatus
    new_status: CallStatus
    skipped: bool = False
    reason: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    duration_seconds: int | None = None
    external_call_id: str | None = None
    live_transcript_chunk: str | None = None
    final_transcript: str | None = None
    summary: str | None = None
    recording_url: str | None = None
    error_message: str | None = None
    counter_delta: CounterDelta = field(default_factory=CounterDelta)

    @property
    def requires_batch_completion_check(self) -> bool:
        return not self.skipped and self.new_status.is_terminal

    @classmethod
    def skip(cls, status: CallStatus, reason: str) -> Transition:
        return cls(from_status=status, new_status=status, skipped=True, reason=reason)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _duration(snapshot: CallSnapshot, reported: int | None, now: datetime) -> int | None:
    if reported is not None:
        return max(0, int(reported))
    if snapshot.duration_seconds is not None:
        return snapshot.duration_seconds
    if snapshot.started_at is None:
        return None
    return max(0, int((now - _as_utc(snapshot.started_at)).total_seconds()))


def _started_at(snapshot: CallSnapshot, now: datetime) -> datetime | None:
    if snapshot.status == CallStatus.QUEUED and snapshot.started_at is None:
        return now
    return None


def _advance(snapshot: CallSnapshot, target: CallStatus) -> None:
    """Raise if ``target`` would move a non-terminal call backwards."""
    if _RANK[target] < _RANK[snapshot.status]:
        raise IllegalTransitionError(snapshot.status, target)


def _forward(
    snapshot: CallSnapshot,
    target: CallStatus,
    now: datetime,
    external_call_id: str | None = None,
    chunk: str | None = None,
) -> Transition:
    _advance(snapshot, target)
    new_external = None
    if external_call_id and snapshot.external_call_id is None:
        new_external = external_call_id
    if target == snapshot.status and chunk is None and new_external is None:
        return Transition.skip(snapshot.status, SKIP_NO_CHANGE)
    return Transition(
        from_status=snapshot.status,
        new_status=target,
        started_at=_started_at(snapshot, now),
        external_call_id=new_external,
        live_transcript_chunk=chunk,
    )


def _terminal(
    snapshot: CallSnapshot,
    target: CallStatus,
    now: datetime,
    *,
    transcript: str | None = None,
    recording_url: str | None = None,
    summary: str | None = None,
    duration: int | None = None,
    error_message: str | None = None,
    external_call_id: str | None = None,
) -> Transition:
    final_transcript = None
    if snapshot.final_transcript is None:
        final_transcript = transcript or snapshot.live_transcript or None
    new_external = None
    if external_call_id and snapshot.external_call_id is None:
        new_external = external_call_id
    if target == CallStatus.COMPLETED:
        delta = CounterDelta(success=1)
    else:
        delta = CounterDelta(failure=1)
    return Transition(
        from_status=snapshot.status,
        new_status=target,
        started_at=_started_at(snapshot, now),
        completed_at=now,
        duration_seconds=_duration(snapshot, duration, now),
        external_call_id=new_external,
        final_transcript=final_transcript,
        summary=summary if snapshot.summary is None else None,
        recording_url=recording_url if snapshot.recording_url is None else None,
        error_message=error_message if target != CallStatus.COMPLETED else None,
        counter_delta=delta,
    )


def _apply_event(snapshot: CallSnapshot, event: CanonicalEvent, now: datetime) -> Transition:
    if event.kind is None:
        return Transition.skip(snapshot.status, SKIP_UNRECOGNIZED_EVENT)

    if event.kind == EventKind.RINGING:
        return _forward(snapshot, CallStatus.RINGING, now, event.external_call_id)

    if event.kind == EventKind.ACTIVE:
        return _forward(snapshot, CallStatus.ACTIVE, now, event.external_call_id)

    if event.kind == EventKind.TRANSCRIPT_CHUNK:
        chunk = (event.transcript or "").strip() or None
        return _forward(snapshot, CallStatus.ACTIVE, now, event.external_call_id, chunk)

    if event.kind == EventKind.COMPLETED:
        return _terminal(
            snapshot,
            CallStatus.COMPLETED,
            now,
            transcript=event.transcript,
            recording_url=event.recording_url,
            summary=event.summary,
            duration=event.duration_seconds,
            external_call_id=event.external_call_id,
        )

    reason = event.error_message or f"Provider reported {event.status_hint or 'failure'}"
    return _terminal(
        snapshot,
        CallStatus.FAILED,
        now,
        transcript=event.transcript,
        recording_url=event.recording_url,
        summary=event.summary,
        duration=event.duration_seconds,
        error_message=reason,
        external_call_id=event.external_call_id,
    )


def _apply_command(snapshot: CallSnapshot, command: CallCommand, now: datetime) -> Transition:
    if command.kind == CommandKind.CLAIM:
        # Only a queued call can be claimed for dispatch
        if snapshot.status != CallStatus.QUEUED:
            return Transition.skip(snapshot.status, SKIP_NOT_QUEUED)
        return _forward(snapshot, CallStatus.RINGING, now)

    if command.kind == CommandKind.MARK_ACTIVE:
        return _forward(snapshot, CallStatus.ACTIVE, now, command.external_call_id)

    if command.kind == CommandKind.CANCEL:
        return _terminal(
            snapshot,
            CallStatus.CANCELED,
            now,
            error_message=command.message or "Canceled",
        )

    default = "Call timed out" if command.kind == CommandKind.TIME_OUT else "Call failed"
    return _terminal(
        snapshot,
        CallStatus.FAILED,
        now,
        error_message=command.message or default,
    )


def transition(
    snapshot: CallSnapshot,
    event: LifecycleInput,
    now: datetime | None = None,
) -> Transition:
    """Compute the transition for ``event`` applied to ``snapshot``.

    Never raises for ordering problems: terminal calls and regressions come
    back as skipped transitions with a reason.
    """
    now = now or datetime.now(timezone.utc)

    if snapshot.status.is_terminal:
        return Transition.skip(snapshot.status, SKIP_ALREADY_TERMINAL)

    try:
        if isinstance(event, CallCommand):
            return _apply_command(snapshot, event, now)
        return _apply_event(snapshot, event, now)
    except IllegalTransitionError as exc:
        logger.info(
            "Ignoring out-of-order call event",
            extra={
                "current_status": exc.current_status.value,
                "target_status": exc.target_status.value,
            },
        )
        return Transition.skip(snapshot.status, SKIP_ILLEGAL_TRANSITION)

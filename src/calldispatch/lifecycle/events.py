"""
Canonical events and local commands that drive the call state machine.

Inbound provider payloads are normalized into ``CanonicalEvent``; decisions
taken by this service (trigger outcome, timeout, cancel) are ``CallCommand``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any
from uuid import UUID


class EventKind(str, Enum):
    """Closed set of provider event kinds."""

    RINGING = "ringing"
    ACTIVE = "active"
    TRANSCRIPT_CHUNK = "transcript_chunk"
    COMPLETED = "completed"
    FAILED = "failed"


class CommandKind(str, Enum):
    """Locally originated lifecycle commands."""

    CLAIM = "claim"
    MARK_ACTIVE = "mark_active"
    FAIL = "fail"
    TIME_OUT = "time_out"
    CANCEL = "cancel"


@dataclass(frozen=True)
class CanonicalEvent:
    """Provider event in the internal shape.

    ``kind`` is None when the provider sent an event type this service does not
    act on; such events are acknowledged and ignored.
    """

    kind: EventKind | None
    external_call_id: str | None = None
    internal_call_id: UUID | None = None
    status_hint: str | None = None
    transcript: str | None = None
    recording_url: str | None = None
    duration_seconds: int | None = None
    reg_no: str | None = None
    summary: str | None = None
    batch_id: str | None = None
    error_message: str | None = None
    raw_event_type: str | None = None
    raw_payload: dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @property
    def is_terminal(self) -> bool:
        return self.kind in (EventKind.COMPLETED, EventKind.FAILED)

    def identifiers(self) -> dict[str, Any]:
        """Identity fields, for logging and error reporting."""
        return {
            "internal_call_id": str(self.internal_call_id) if self.internal_call_id else None,
            "external_call_id": self.external_call_id,
            "reg_no": self.reg_no,
        }


@dataclass(frozen=True)
class CallCommand:
    """A lifecycle command issued by the orchestrator, watchdog or stop service."""

    kind: CommandKind
    message: str | None = None
    external_call_id: str | None = None

    @classmethod
    def claim(cls) -> CallCommand:
        return cls(kind=CommandKind.CLAIM)

    @classmethod
    def mark_active(cls, external_call_id: str) -> CallCommand:
        return cls(kind=CommandKind.MARK_ACTIVE, external_call_id=external_call_id)

    @classmethod
    def fail(cls, message: str) -> CallCommand:
        return cls(kind=CommandKind.FAIL, message=message)

    @classmethod
    def time_out(cls, message: str) -> CallCommand:
        return cls(kind=CommandKind.TIME_OUT, message=message)

    @classmethod
    def cancel(cls, message: str = "Canceled by user") -> CallCommand:
        return cls(kind=CommandKind.CANCEL, message=message)


LifecycleInput = CanonicalEvent | CallCommand

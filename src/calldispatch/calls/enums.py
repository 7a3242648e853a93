"""
Status enums for calls and batches.

Kept free of SQLAlchemy imports so configuration and the pure state machine
can use them without mapping the ORM.
"""

from enum import Enum


class CallStatus(str, Enum):
    """Lifecycle status of a single outbound call."""

    QUEUED = "queued"
    RINGING = "ringing"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELED = "canceled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


class BatchStatus(str, Enum):
    """Aggregate status of a batch."""

    CREATED = "created"
    DISPATCHING = "dispatching"
    COMPLETED = "completed"


TERMINAL_STATUSES: frozenset[CallStatus] = frozenset(
    {CallStatus.COMPLETED, CallStatus.FAILED, CallStatus.CANCELED}
)
NON_TERMINAL_STATUSES: tuple[CallStatus, ...] = (
    CallStatus.QUEUED,
    CallStatus.RINGING,
    CallStatus.ACTIVE,
)

"""
Call lifecycle: canonical events, the call state machine and the batch tracker.
"""

from calldispatch.lifecycle.events import (
    CallCommand,
    CanonicalEvent,
    CommandKind,
    EventKind,
)

__all__ = ["CallCommand", "CanonicalEvent", "CommandKind", "EventKind"]

"""
Provider webhook normalizer.

Turns the provider's unstable webhook shapes into ``CanonicalEvent``. Field
lookups are ordered alias tables; the first non-empty match wins. Adding a new
alias means adding a path here, nowhere else.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any
from uuid import UUID

from calldispatch.calls.enums import CallStatus
from calldispatch.calls.models import Call
from calldispatch.calls.repository import CallRepository
from calldispatch.lifecycle.events import CanonicalEvent, EventKind
from calldispatch.shared.exceptions import UnknownCallIdentityError
from calldispatch.telephony.subverse_adapter import as_seconds, as_text

Path = tuple[str, ...]

NODE_OUTPUT: Path = ("data", "node", "output")
VOICE_AGENT_NODE = "voiceagentnode"
WORKFLOW_NODE_EXECUTION = "workflow.node_execution"

EVENT_TYPE_PATHS: tuple[Path, ...] = (("event",), ("eventType",), ("event_type",), ("type",))
EXTERNAL_ID_PATHS: tuple[Path, ...] = (
    NODE_OUTPUT + ("call_id",),
    ("callId",),
    ("callSid",),
    ("call_id",),
)
INTERNAL_ID_PATHS: tuple[Path, ...] = (("metadata", "call_id"),)
REG_NO_PATHS: tuple[Path, ...] = (
    NODE_OUTPUT + ("customer_details", "regNo"),
    ("metadata", "reg_no"),
)
BATCH_ID_PATHS: tuple[Path, ...] = (("metadata", "dataset_id"), ("metadata", "batch_id"))
STATUS_PATHS: tuple[Path, ...] = (NODE_OUTPUT + ("call_status",), ("status",), ("call_status",))
TRANSCRIPT_PATHS: tuple[Path, ...] = (
    NODE_OUTPUT + ("transcript",),
    ("refinedTranscript",),
    ("refined_transcript",),
    ("transcript",),
)
CHUNK_PATHS: tuple[Path, ...] = (("chunk",), ("segment",), ("transcript",))
RECORDING_PATHS: tuple[Path, ...] = (
    NODE_OUTPUT + ("call_recording_url",),
    ("recordingUrl",),
    ("recording_url",),
)
DURATION_PATHS: tuple[Path, ...] = (NODE_OUTPUT + ("call_duration",), ("duration",), ("call_duration",))
SUMMARY_PATHS: tuple[Path, ...] = (
    NODE_OUTPUT + ("analysis",),
    NODE_OUTPUT + ("summary",),
    ("data", "analysis"),
)
ERROR_PATHS: tuple[Path, ...] = (
    ("error_message",),
    ("errorMessage",),
    ("error",),
    ("reason",),
    NODE_OUTPUT + ("error",),
)

EVENT_KINDS: dict[str, EventKind] = {
    "call.ringing": EventKind.RINGING,
    "call.initiated": EventKind.RINGING,
    "call.in_progress": EventKind.ACTIVE,
    "call.in-progress": EventKind.ACTIVE,
    "call.connected": EventKind.ACTIVE,
    "call.answered": EventKind.ACTIVE,
    "call.transcript": EventKind.TRANSCRIPT_CHUNK,
    "call.partial_transcript": EventKind.TRANSCRIPT_CHUNK,
    "call.segment": EventKind.TRANSCRIPT_CHUNK,
}

# Terminal event types; the outcome comes from the status hint
TERMINAL_EVENT_TYPES: frozenset[str] = frozenset(
    {
        "call.completed",
        "call.ended",
        "call_finished",
        "call.finished",
        "call.failed",
        "call.canceled",
        "call.cancelled",
        "call.no_answer",
        "call.busy",
    }
)

PROVIDER_STATUS_MAP: dict[str, CallStatus] = {
    "ringing": CallStatus.RINGING,
    "initiated": CallStatus.RINGING,
    "in_progress": CallStatus.ACTIVE,
    "in-progress": CallStatus.ACTIVE,
    "active": CallStatus.ACTIVE,
    "connected": CallStatus.ACTIVE,
    "answered": CallStatus.ACTIVE,
    "completed": CallStatus.COMPLETED,
    "ended": CallStatus.COMPLETED,
    "call_finished": CallStatus.COMPLETED,
    "finished": CallStatus.COMPLETED,
    "failed": CallStatus.FAILED,
    "no_answer": CallStatus.FAILED,
    "no-answer": CallStatus.FAILED,
    "busy": CallStatus.FAILED,
    "canceled": CallStatus.FAILED,
    "cancelled": CallStatus.FAILED,
}

_STATUS_KINDS: dict[CallStatus, EventKind] = {
    CallStatus.RINGING: EventKind.RINGING,
    CallStatus.ACTIVE: EventKind.ACTIVE,
    CallStatus.COMPLETED: EventKind.COMPLETED,
    CallStatus.FAILED: EventKind.FAILED,
}


def map_provider_status(raw: str | None) -> CallStatus | None:
    """Map a provider status string to a call status (case-insensitive).

    A provider-side cancel is a failure; ``canceled`` as a call status is
    reserved for user-initiated stops.
    """
    if not raw:
        return None
    return PROVIDER_STATUS_MAP.get(str(raw).strip().lower())


def _dig(payload: Mapping[str, Any], path: Path) -> Any:
    current: Any = payload
    for key in path:
        if not isinstance(current, Mapping):
            return None
        current = current.get(key)
    return current


def first_match(payload: Mapping[str, Any], paths: tuple[Path, ...]) -> Any:
    """Value of the first path that resolves to a non-empty value."""
    for path in paths:
        value = _dig(payload, path)
        if value not in (None, "", {}, []):
            return value
    return None


def parse_uuid(value: Any) -> UUID | None:
    if value is None:
        return None
    try:
        return UUID(str(value))
    except ValueError:
        return None


def _text(payload: Mapping[str, Any], paths: tuple[Path, ...]) -> str | None:
    return as_text(first_match(payload, paths))


def _is_voice_agent_node(payload: Mapping[str, Any]) -> bool:
    node_type = _dig(payload, ("data", "node", "type"))
    return isinstance(node_type, str) and node_type.lower() == VOICE_AGENT_NODE


def classify(event_type: str | None, status_hint: str | None, payload: Mapping[str, Any]) -> EventKind | None:
    """Map an event type (and status hint) to an event kind."""
    mapped = map_provider_status(status_hint)

    if not event_type:
        return _STATUS_KINDS.get(mapped) if mapped else None

    if event_type in EVENT_KINDS:
        return EVENT_KINDS[event_type]

    terminal = event_type in TERMINAL_EVENT_TYPES or (
        event_type == WORKFLOW_NODE_EXECUTION and _is_voice_agent_node(payload)
    )
    if not terminal:
        return None

    if mapped == CallStatus.COMPLETED:
        return EventKind.COMPLETED
    if mapped == CallStatus.FAILED:
        return EventKind.FAILED
    if any(word in event_type for word in ("failed", "cancel", "no_answer", "busy")):
        return EventKind.FAILED
    return EventKind.COMPLETED


def normalize_event(payload: Mapping[str, Any]) -> CanonicalEvent | None:
    """Normalize a raw webhook payload.

    Returns:
        CanonicalEvent, or None when the payload carries no usable identifier.
        Unrecognized event types yield an event with ``kind=None``.
    """
    if not isinstance(payload, Mapping):
        return None

    external_id = first_match(payload, EXTERNAL_ID_PATHS)
    internal_id = parse_uuid(first_match(payload, INTERNAL_ID_PATHS))
    reg_no = first_match(payload, REG_NO_PATHS)
    if external_id is None and internal_id is None and reg_no is None:
        return None

    raw_type = first_match(payload, EVENT_TYPE_PATHS)
    event_type = str(raw_type).strip().lower() if raw_type else None
    status_raw = first_match(payload, STATUS_PATHS)
    status_hint = str(status_raw).strip().lower() if status_raw is not None else None
    kind = classify(event_type, status_hint, payload)

    transcript_paths = CHUNK_PATHS if kind == EventKind.TRANSCRIPT_CHUNK else TRANSCRIPT_PATHS
    error_message = None
    if kind == EventKind.FAILED:
        error_message = _text(payload, ERROR_PATHS)

    return CanonicalEvent(
        kind=kind,
        external_call_id=str(external_id) if external_id is not None else None,
        internal_call_id=internal_id,
        status_hint=status_hint,
        transcript=_text(payload, transcript_paths),
        recording_url=_text(payload, RECORDING_PATHS),
        duration_seconds=as_seconds(first_match(payload, DURATION_PATHS)),
        reg_no=str(reg_no) if reg_no is not None else None,
        summary=_text(payload, SUMMARY_PATHS),
        batch_id=_text(payload, BATCH_ID_PATHS),
        error_message=error_message,
        raw_event_type=event_type,
        raw_payload=dict(payload),
    )


async def resolve_call(repository: CallRepository, event: CanonicalEvent) -> Call:
    """Find the call an event refers to.

    Order: internal id from metadata, then the provider id (also tried as an
    internal id when it is UUID-shaped), then the most recently created
    non-terminal call with the event's registration number.

    Raises:
        UnknownCallIdentityError: If nothing matches.
    """
    if event.internal_call_id is not None:
        call = await repository.get_call(event.internal_call_id)
        if call is not None:
            return call

    if event.external_call_id:
        call = await repository.get_by_external_id(event.external_call_id)
        if call is not None:
            return call
        as_internal = parse_uuid(event.external_call_id)
        if as_internal is not None:
            call = await repository.get_call(as_internal)
            if call is not None:
                return call

    if event.reg_no:
        call = await repository.find_latest_open_by_reg_no(event.reg_no)
        if call is not None:
            return call

    raise UnknownCallIdentityError(event.identifiers())

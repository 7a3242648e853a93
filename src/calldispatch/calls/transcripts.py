"""
Manual transcript fetch.

Operator-triggered pull of transcript and recording from the provider, for
calls whose completion callback was lost or arrived without a transcript.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal
from uuid import UUID

from calldispatch.calls.enums import CallStatus
from calldispatch.calls.repository import CallRepository
from calldispatch.lifecycle.events import CanonicalEvent, EventKind
from calldispatch.lifecycle.service import CallLifecycle
from calldispatch.shared.database import DatabaseManager
from calldispatch.shared.exceptions import CallNotFoundError
from calldispatch.shared.logging import get_logger
from calldispatch.telephony.interface import ProviderGateway
from calldispatch.telephony.webhooks.normalizer import map_provider_status

logger = get_logger(__name__)

NOT_AVAILABLE = "Transcript not yet available"

TranscriptSource = Literal["store", "provider"]


@dataclass(frozen=True)
class TranscriptResult:
    """Transcript lookup result."""

    call_id: UUID
    available: bool
    status: CallStatus
    transcript: str | None = None
    recording_url: str | None = None
    duration_seconds: int | None = None
    summary: str | None = None
    source: TranscriptSource | None = None
    message: str | None = None


class TranscriptService:
    """Returns stored transcripts and pulls missing ones from the provider."""

    def __init__(
        self,
        db: DatabaseManager,
        lifecycle: CallLifecycle,
        gateway: ProviderGateway,
    ) -> None:
        self._db = db
        self._lifecycle = lifecycle
        self._gateway = gateway

    async def fetch(self, call_id: UUID) -> TranscriptResult:
        """Fetch the transcript of a call.

        Raises:
            CallNotFoundError: If the call does not exist.
            ProviderUnavailableError: If the provider cannot be reached.
        """
        async with self._db.session() as session:
            call = await CallRepository(session).get_call(call_id)
            if call is None:
                raise CallNotFoundError(call_id)
            if call.final_transcript:
                return TranscriptResult(
                    call_id=call.id,
                    available=True,
                    status=call.status,
                    transcript=call.final_transcript,
                    recording_url=call.recording_url,
                    duration_seconds=call.duration_seconds,
                    summary=call.summary,
                    source="store",
                )
            external_call_id = call.external_call_id
            status = call.status

        if not external_call_id:
            return TranscriptResult(
                call_id=call_id, available=False, status=status, message=NOT_AVAILABLE
            )

        details = await self._gateway.fetch_call_details(external_call_id)

        provider_status = map_provider_status(details.status)
        if not status.is_terminal and provider_status in (CallStatus.COMPLETED, CallStatus.FAILED):
            kind = EventKind.COMPLETED if provider_status == CallStatus.COMPLETED else EventKind.FAILED
            outcome = await self._lifecycle.apply(
                call_id,
                CanonicalEvent(
                    kind=kind,
                    external_call_id=external_call_id,
                    status_hint=details.status,
                    transcript=details.transcript,
                    recording_url=details.recording_url,
                    duration_seconds=details.duration_seconds,
                    summary=details.summary,
                    raw_event_type="details.manual_fetch",
                ),
            )
            status = outcome.status

        # Mid-call details are partial; only the recording URL is kept before the call ends
        async with self._db.session() as session:
            await CallRepository(session).merge_details(
                call_id,
                transcript=details.transcript if status.is_terminal else None,
                recording_url=details.recording_url,
                duration_seconds=details.duration_seconds if status.is_terminal else None,
                summary=details.summary if status.is_terminal else None,
            )

        async with self._db.session() as session:
            call = await CallRepository(session).get_call(call_id)
            if call is None:
                raise CallNotFoundError(call_id)

        logger.info(
            "Transcript fetched from provider",
            extra={"call_id": str(call_id), "available": bool(call.final_transcript)},
        )
        return TranscriptResult(
            call_id=call.id,
            available=bool(call.final_transcript),
            status=call.status,
            transcript=call.final_transcript,
            recording_url=call.recording_url,
            duration_seconds=call.duration_seconds,
            summary=call.summary,
            source="provider",
            message=None if call.final_transcript else NOT_AVAILABLE,
        )

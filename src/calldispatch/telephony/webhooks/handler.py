"""
Webhook event handler for provider callbacks.

Normalizes the payload, resolves the call, and hands the canonical event to the
call lifecycle. Duplicate, late and unknown events are acknowledged, never
rejected, so the provider stops retrying them.
"""

from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass
from typing import Any
from uuid import UUID

from calldispatch.calls.enums import CallStatus
from calldispatch.calls.repository import CallRepository
from calldispatch.lifecycle.events import CanonicalEvent, EventKind
from calldispatch.lifecycle.service import CallLifecycle
from calldispatch.shared.database import DatabaseManager
from calldispatch.shared.exceptions import (
    ConfigurationMissingError,
    ProviderUnavailableError,
    UnknownCallIdentityError,
)
from calldispatch.shared.logging import get_logger, log_with_context
from calldispatch.telephony.interface import ProviderGateway
from calldispatch.telephony.webhooks.normalizer import normalize_event, resolve_call

logger = get_logger(__name__)

SKIP_NO_IDENTIFIER = "no_identifier"
SKIP_UNRECOGNIZED = "unrecognized_event"
SKIP_UNKNOWN_CALL = "unknown_call"


@dataclass(frozen=True)
class WebhookAck:
    """Acknowledgement returned to the provider."""

    success: bool = True
    skipped: bool = False
    reason: str | None = None
    status: str | None = None
    call_id: UUID | None = None

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"success": self.success}
        if self.skipped:
            body["skipped"] = True
        if self.reason:
            body["reason"] = self.reason
        if self.status:
            body["status"] = self.status
        return body


@dataclass(frozen=True)
class _ResolvedCall:
    id: UUID
    status: CallStatus
    external_call_id: str | None


class WebhookHandler:
    """Processes provider webhook payloads."""

    def __init__(
        self,
        db: DatabaseManager,
        lifecycle: CallLifecycle,
        gateway: ProviderGateway | None = None,
        fetch_details_on_completion: bool = True,
    ) -> None:
        """Initialize webhook handler.

        Args:
            db: Database manager.
            lifecycle: Call lifecycle service applying the events.
            gateway: Provider gateway, used to fetch details for completions
                that arrive without a transcript.
            fetch_details_on_completion: Enable the details fallback.
        """
        self._db = db
        self._lifecycle = lifecycle
        self._gateway = gateway
        self._fetch_details = fetch_details_on_completion

    async def handle(self, payload: dict[str, Any]) -> WebhookAck:
        """Handle one webhook payload.

        Raises only for unexpected store failures.
        """
        event = normalize_event(payload)
        if event is None:
            logger.info("Webhook without call identifier acknowledged")
            return WebhookAck(skipped=True, reason=SKIP_NO_IDENTIFIER)

        log_with_context(
            logger,
            logging.INFO,
            "Webhook event received",
            event_type=event.raw_event_type,
            kind=event.kind.value if event.kind else None,
            **event.identifiers(),
        )

        if event.kind is None:
            return WebhookAck(skipped=True, reason=SKIP_UNRECOGNIZED)

        try:
            call = await self._resolve(event)
        except UnknownCallIdentityError as e:
            logger.warning("Webhook for unknown call dropped", extra={"identifiers": e.identifiers})
            return WebhookAck(skipped=True, reason=SKIP_UNKNOWN_CALL)

        if event.external_call_id == str(call.id):
            event = dataclasses.replace(event, external_call_id=None)

        if (
            event.kind == EventKind.COMPLETED
            and not event.transcript
            and not call.status.is_terminal
        ):
            event = await self._with_provider_details(event, call.external_call_id)

        outcome = await self._lifecycle.apply(call.id, event)
        return WebhookAck(
            skipped=outcome.skipped,
            reason=outcome.reason,
            status=outcome.status.value,
            call_id=call.id,
        )

    async def _resolve(self, event: CanonicalEvent) -> _ResolvedCall:
        async with self._db.session() as session:
            repo = CallRepository(session)
            call = await resolve_call(repo, event)
            external_id = call.external_call_id
            if external_id is None and event.external_call_id and event.external_call_id != str(call.id):
                if await repo.set_external_call_id(call.id, event.external_call_id):
                    external_id = event.external_call_id
                    logger.info(
                        "Provider call id recorded from webhook",
                        extra={"call_id": str(call.id), "external_call_id": external_id},
                    )
            return _ResolvedCall(id=call.id, status=call.status, external_call_id=external_id)

    async def _with_provider_details(
        self,
        event: CanonicalEvent,
        external_call_id: str | None,
    ) -> CanonicalEvent:
        """Fill transcript, recording and summary from the provider, best effort."""
        external_call_id = external_call_id or event.external_call_id
        if not self._fetch_details or self._gateway is None or not external_call_id:
            return event
        try:
            details = await self._gateway.fetch_call_details(external_call_id)
        except (ProviderUnavailableError, ConfigurationMissingError) as e:
            logger.warning(
                "Call details fallback failed",
                extra={"external_call_id": external_call_id, "error": e.message},
            )
            return event
        return dataclasses.replace(
            event,
            transcript=event.transcript or details.transcript,
            recording_url=event.recording_url or details.recording_url,
            summary=event.summary or details.summary,
            duration_seconds=(
                event.duration_seconds
                if event.duration_seconds is not None
                else details.duration_seconds
            ),
        )

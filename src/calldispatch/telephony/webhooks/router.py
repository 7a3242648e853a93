"""
FastAPI router for provider webhook endpoints.

The provider delivers at least once and retries on non-2xx; everything this
service can decide about (invalid, unknown, duplicate) is answered with 200.
"""

from __future__ import annotations

from typing import Annotated, Any

from fastapi import APIRouter, Depends, Request

from calldispatch.runtime import Runtime, get_runtime
from calldispatch.shared.logging import get_logger
from calldispatch.telephony.webhooks.handler import WebhookAck

logger = get_logger(__name__)

router = APIRouter(prefix="/webhooks/provider", tags=["webhooks"])

SKIP_INVALID_PAYLOAD = "invalid_payload"


@router.post("")
@router.post("/events")
async def receive_provider_event(
    request: Request,
    runtime: Annotated[Runtime, Depends(get_runtime)],
) -> dict[str, Any]:
    """Receive a provider call event."""
    try:
        payload = await request.json()
    except ValueError:
        logger.warning("Webhook body is not valid JSON")
        return WebhookAck(skipped=True, reason=SKIP_INVALID_PAYLOAD).to_dict()

    if not isinstance(payload, dict):
        logger.warning("Webhook body is not a JSON object", extra={"type": type(payload).__name__})
        return WebhookAck(skipped=True, reason=SKIP_INVALID_PAYLOAD).to_dict()

    ack = await runtime.webhooks.handle(payload)
    return ack.to_dict()

"""
Subverse voice provider adapter.

REST endpoints:
- POST /api/call/trigger          place a call (``x-api-key`` auth)
- PUT  /api/direct-call/cancel    hang up a call
- GET  /api/call/details/{id}     status, transcript and recording
"""

from __future__ import annotations

import json
from typing import Any

import httpx

from calldispatch.shared.exceptions import (
    ConfigurationMissingError,
    ProviderUnavailableError,
)
from calldispatch.shared.logging import get_logger
from calldispatch.telephony.config import ProviderConfig, get_provider_config
from calldispatch.telephony.interface import (
    CallDetails,
    ProviderGateway,
    TriggerRequest,
    TriggerResponse,
)

logger = get_logger(__name__)

TRIGGER_PATH = "/api/call/trigger"
CANCEL_PATH = "/api/direct-call/cancel"
DETAILS_PATH = "/api/call/details/{call_id}"

# Field aliases seen across provider API versions, in priority order
TRANSCRIPT_KEYS = ("refinedTranscript", "refined_transcript", "transcript")
RECORDING_KEYS = ("recordingUrl", "recording_url", "call_recording_url")
DURATION_KEYS = ("duration", "call_duration")
STATUS_KEYS = ("status", "call_status")
SUMMARY_KEYS = ("analysis", "summary", "call_analysis")
TRIGGER_ID_KEYS = ("callSid", "call_id", "callId", "id")


def first_present(data: dict[str, Any], keys: tuple[str, ...]) -> Any:
    """Return the first non-empty value among ``keys``."""
    for key in keys:
        value = data.get(key)
        if value not in (None, ""):
            return value
    return None


def as_text(value: Any) -> str | None:
    """Render a provider value (string or structured analysis) as text."""
    if value is None:
        return None
    if isinstance(value, str):
        return value.strip() or None
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False) if value else None
    return str(value)


def as_seconds(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return max(0, int(float(value)))
    except (TypeError, ValueError):
        return None


def _is_retryable(status_code: int) -> bool:
    return status_code == 429 or status_code >= 500


class SubverseAdapter(ProviderGateway):
    """Subverse provider gateway over ``httpx.AsyncClient``."""

    def __init__(
        self,
        config: ProviderConfig | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._config = config or get_provider_config()
        self._http_client = http_client
        self._owns_client = http_client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                timeout=httpx.Timeout(self._config.timeout_seconds)
            )
        return self._http_client

    async def aclose(self) -> None:
        if self._owns_client and self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

    def ensure_configured(self) -> None:
        if not self._config.api_key:
            raise ConfigurationMissingError("PROVIDER_API_KEY")

    def _headers(self) -> dict[str, str]:
        return {"Content-Type": "application/json", "x-api-key": self._config.api_key}

    async def _request(
        self,
        method: str,
        path: str,
        payload: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        self.ensure_configured()
        client = self._get_client()
        url = self._config.endpoint(path)
        try:
            response = await client.request(method, url, json=payload, headers=self._headers())
        except httpx.HTTPError as e:
            logger.warning(
                "HTTP error calling voice provider",
                extra={"method": method, "path": path, "error": str(e)},
            )
            raise ProviderUnavailableError(f"HTTP error: {e!s}", retryable=True) from e

        if response.status_code >= 400:
            try:
                error_data = response.json() if response.content else {}
            except ValueError:
                error_data = {"body": response.text}
            if not isinstance(error_data, dict):
                error_data = {"body": error_data}
            logger.error(
                "Voice provider request failed",
                extra={"method": method, "path": path, "status_code": response.status_code},
            )
            raise ProviderUnavailableError(
                f"Provider API error: {response.status_code}",
                status_code=response.status_code,
                retryable=_is_retryable(response.status_code),
                provider_response=error_data,
            )

        if not response.content:
            return {}
        try:
            data = response.json()
        except ValueError as e:
            raise ProviderUnavailableError(
                "Provider returned a non-JSON body",
                status_code=response.status_code,
                retryable=False,
            ) from e
        return data if isinstance(data, dict) else {"data": data}

    async def trigger_call(self, request: TriggerRequest) -> TriggerResponse:
        payload = {
            "phoneNumber": request.phone_number,
            "agentName": self._config.agent_name,
            "metadata": {
                "call_id": str(request.call_id),
                "dataset_id": str(request.batch_id),
                "driver_name": request.driver_name,
                "reg_no": request.reg_no,
                "message": request.message,
                **request.metadata,
            },
        }

        logger.info(
            "Triggering provider call",
            extra={"call_id": str(request.call_id), "batch_id": str(request.batch_id)},
        )
        data = await self._request("POST", TRIGGER_PATH, payload)

        body = data.get("data") if isinstance(data.get("data"), dict) else data
        external_id = first_present(body, TRIGGER_ID_KEYS)
        if external_id is None:
            raise ProviderUnavailableError(
                "Provider response carries no call identifier",
                retryable=False,
                provider_response=data,
            )
        return TriggerResponse(external_call_id=str(external_id), raw_response=data)

    async def cancel_call(self, external_call_id: str) -> bool:
        await self._request("PUT", CANCEL_PATH, {"callId": external_call_id})
        logger.info("Provider call canceled", extra={"external_call_id": external_call_id})
        return True

    async def fetch_call_details(self, external_call_id: str) -> CallDetails:
        data = await self._request("GET", DETAILS_PATH.format(call_id=external_call_id))
        body = data.get("data") if isinstance(data.get("data"), dict) else data
        status = first_present(body, STATUS_KEYS)
        return CallDetails(
            external_call_id=external_call_id,
            status=str(status) if status is not None else None,
            transcript=as_text(first_present(body, TRANSCRIPT_KEYS)),
            recording_url=as_text(first_present(body, RECORDING_KEYS)),
            duration_seconds=as_seconds(first_present(body, DURATION_KEYS)),
            summary=as_text(first_present(body, SUMMARY_KEYS)),
            raw_response=data,
        )

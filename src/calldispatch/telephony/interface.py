"""
Voice provider gateway interface definition.

The gateway is a thin adapter: it triggers, cancels and inspects calls at the
provider and never mutates call state itself.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any
from uuid import UUID


@dataclass(frozen=True)
class TriggerRequest:
    """Request to place one outbound call."""

    phone_number: str
    call_id: UUID
    batch_id: UUID
    driver_name: str | None = None
    reg_no: str | None = None
    message: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class TriggerResponse:
    """Provider acknowledgement of a trigger."""

    external_call_id: str
    raw_response: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class CallDetails:
    """Call details as reported by the provider on demand.

    ``status`` is the provider's raw status string; map it with
    ``calldispatch.telephony.webhooks.normalizer.map_provider_status``.
    """

    external_call_id: str
    status: str | None = None
    transcript: str | None = None
    recording_url: str | None = None
    duration_seconds: int | None = None
    summary: str | None = None
    raw_response: dict[str, Any] = field(default_factory=dict)


class ProviderGateway(ABC):
    """Abstract interface for voice-call providers."""

    @abstractmethod
    def ensure_configured(self) -> None:
        """Raise ConfigurationMissingError if required settings are absent."""
        ...

    @abstractmethod
    async def trigger_call(self, request: TriggerRequest) -> TriggerResponse:
        """Place an outbound call.

        Raises:
            ConfigurationMissingError: If the provider is not configured.
            ProviderUnavailableError: On network failure or a non-2xx answer.
        """
        ...

    @abstractmethod
    async def cancel_call(self, external_call_id: str) -> bool:
        """Ask the provider to hang up. Returns True if the provider accepted."""
        ...

    @abstractmethod
    async def fetch_call_details(self, external_call_id: str) -> CallDetails:
        """Fetch status, transcript and recording for a call."""
        ...

    async def aclose(self) -> None:
        """Release network resources."""
        return None

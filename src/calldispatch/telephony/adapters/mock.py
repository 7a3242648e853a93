"""
Mock voice provider for local development and tests.

Never talks to the network. Records every request and can be primed with
failures and call details.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from calldispatch.shared.exceptions import (
    ConfigurationMissingError,
    ProviderUnavailableError,
)
from calldispatch.telephony.interface import (
    CallDetails,
    ProviderGateway,
    TriggerRequest,
    TriggerResponse,
)


@dataclass
class MockProviderGateway(ProviderGateway):
    """In-memory provider gateway."""

    configured: bool = True
    triggered: list[TriggerRequest] = field(default_factory=list)
    canceled: list[str] = field(default_factory=list)
    details_requests: list[str] = field(default_factory=list)
    details: dict[str, CallDetails] = field(default_factory=dict)
    _trigger_failures: list[ProviderUnavailableError] = field(default_factory=list)
    _failing_numbers: dict[str, ProviderUnavailableError] = field(default_factory=dict)
    _cancel_error: Exception | None = None
    _details_error: Exception | None = None
    _counter: int = 0

    def configure_failure(
        self,
        error: ProviderUnavailableError | None = None,
        *,
        phone_number: str | None = None,
        times: int = 1,
    ) -> None:
        """Make upcoming triggers fail.

        Args:
            error: Error to raise; defaults to a non-retryable 400.
            phone_number: Fail every trigger for this number instead of the next ``times``.
            times: Number of consecutive trigger attempts to fail.
        """
        error = error or ProviderUnavailableError(
            "Provider API error: 400", status_code=400, retryable=False
        )
        if phone_number is not None:
            self._failing_numbers[phone_number] = error
            return
        self._trigger_failures.extend([error] * times)

    def configure_cancel_error(self, error: Exception | None) -> None:
        self._cancel_error = error

    def configure_details_error(self, error: Exception | None) -> None:
        self._details_error = error

    def set_details(self, details: CallDetails) -> None:
        self.details[details.external_call_id] = details

    def ensure_configured(self) -> None:
        if not self.configured:
            raise ConfigurationMissingError("PROVIDER_API_KEY")

    async def trigger_call(self, request: TriggerRequest) -> TriggerResponse:
        self.ensure_configured()
        self.triggered.append(request)
        if request.phone_number in self._failing_numbers:
            raise self._failing_numbers[request.phone_number]
        if self._trigger_failures:
            raise self._trigger_failures.pop(0)
        self._counter += 1
        external_id = f"MOCK_CALL_{self._counter:06d}"
        return TriggerResponse(
            external_call_id=external_id,
            raw_response={"mock": True, "callSid": external_id},
        )

    async def cancel_call(self, external_call_id: str) -> bool:
        self.canceled.append(external_call_id)
        if self._cancel_error is not None:
            raise self._cancel_error
        return True

    async def fetch_call_details(self, external_call_id: str) -> CallDetails:
        self.details_requests.append(external_call_id)
        if self._details_error is not None:
            raise self._details_error
        return self.details.get(external_call_id, CallDetails(external_call_id=external_call_id))

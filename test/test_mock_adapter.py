"""Tests for the mock provider gateway and the gateway factory."""

from uuid import uuid4

import pytest

from calldispatch.shared.exceptions import ConfigurationMissingError, ProviderUnavailableError
from calldispatch.telephony.adapters.mock import MockProviderGateway
from calldispatch.telephony.config import ProviderConfig, ProviderType
from calldispatch.telephony.factory import _mask, create_provider_gateway
from calldispatch.telephony.interface import CallDetails, TriggerRequest
from calldispatch.telephony.subverse_adapter import SubverseAdapter


@pytest.fixture
def mock_gateway() -> MockProviderGateway:
    return MockProviderGateway()


def _request(phone_number: str = "+919000000001") -> TriggerRequest:
    return TriggerRequest(phone_number=phone_number, call_id=uuid4(), batch_id=uuid4())


class TestMockProviderGateway:
    @pytest.mark.asyncio
    async def test_trigger_assigns_sequential_ids(self, mock_gateway: MockProviderGateway) -> None:
        first = await mock_gateway.trigger_call(_request())
        second = await mock_gateway.trigger_call(_request())

        assert first.external_call_id == "MOCK_CALL_000001"
        assert second.external_call_id == "MOCK_CALL_000002"
        assert first.raw_response["mock"] is True
        assert len(mock_gateway.triggered) == 2

    @pytest.mark.asyncio
    async def test_configured_failures_are_consumed(self, mock_gateway: MockProviderGateway) -> None:
        mock_gateway.configure_failure(times=2)

        for _ in range(2):
            with pytest.raises(ProviderUnavailableError) as exc_info:
                await mock_gateway.trigger_call(_request())
            assert exc_info.value.status_code == 400
            assert exc_info.value.retryable is False

        response = await mock_gateway.trigger_call(_request())
        assert response.external_call_id == "MOCK_CALL_000001"

    @pytest.mark.asyncio
    async def test_failure_by_phone_number(self, mock_gateway: MockProviderGateway) -> None:
        mock_gateway.configure_failure(phone_number="+910000000000")

        with pytest.raises(ProviderUnavailableError):
            await mock_gateway.trigger_call(_request("+910000000000"))
        with pytest.raises(ProviderUnavailableError):
            await mock_gateway.trigger_call(_request("+910000000000"))
        assert (await mock_gateway.trigger_call(_request())).external_call_id == "MOCK_CALL_000001"

    @pytest.mark.asyncio
    async def test_unconfigured_gateway(self, mock_gateway: MockProviderGateway) -> None:
        mock_gateway.configured = False

        with pytest.raises(ConfigurationMissingError) as exc_info:
            await mock_gateway.trigger_call(_request())

        assert exc_info.value.setting == "PROVIDER_API_KEY"
        assert mock_gateway.triggered == []

    @pytest.mark.asyncio
    async def test_cancel_and_details(self, mock_gateway: MockProviderGateway) -> None:
        mock_gateway.set_details(CallDetails(external_call_id="x", status="completed"))

        assert await mock_gateway.cancel_call("x") is True
        assert (await mock_gateway.fetch_call_details("x")).status == "completed"
        assert (await mock_gateway.fetch_call_details("y")).status is None
        assert mock_gateway.canceled == ["x"]
        assert mock_gateway.details_requests == ["x", "y"]

    @pytest.mark.asyncio
    async def test_cancel_error_is_recorded_then_raised(
        self, mock_gateway: MockProviderGateway
    ) -> None:
        mock_gateway.configure_cancel_error(ProviderUnavailableError("down"))

        with pytest.raises(ProviderUnavailableError):
            await mock_gateway.cancel_call("x")

        assert mock_gateway.canceled == ["x"]


class TestFactory:
    def test_creates_subverse_adapter(self) -> None:
        gateway = create_provider_gateway(
            ProviderConfig(provider_type=ProviderType.SUBVERSE, api_key="sk_live_abcdef")
        )

        assert isinstance(gateway, SubverseAdapter)

    def test_creates_mock_gateway(self) -> None:
        gateway = create_provider_gateway(ProviderConfig(provider_type=ProviderType.MOCK))

        assert isinstance(gateway, MockProviderGateway)

    def test_mask(self) -> None:
        assert _mask("") == ""
        assert _mask("abc") == "***"
        assert _mask("sk_live_abcdef") == "sk_l***"

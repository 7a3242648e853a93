"""Tests for the Subverse provider adapter.

The provider is faked at the transport level with ``httpx.MockTransport``.
"""

import json
from collections.abc import Callable
from uuid import uuid4

import httpx
import pytest

from calldispatch.shared.exceptions import ConfigurationMissingError, ProviderUnavailableError
from calldispatch.telephony.config import ProviderConfig, ProviderType
from calldispatch.telephony.interface import TriggerRequest
from calldispatch.telephony.subverse_adapter import SubverseAdapter, as_seconds, as_text

Handler = Callable[[httpx.Request], httpx.Response]


@pytest.fixture
def provider_config() -> ProviderConfig:
    return ProviderConfig(
        provider_type=ProviderType.SUBVERSE,
        api_key="sk_test_123",
        base_url="https://provider.test/",
        agent_name="dock_agent",
        timeout_seconds=5,
    )


@pytest.fixture
def trigger_request() -> TriggerRequest:
    return TriggerRequest(
        phone_number="+919000000001",
        call_id=uuid4(),
        batch_id=uuid4(),
        driver_name="Ravi",
        reg_no="KA01-0001",
        message="Please report to dock 4",
    )


def _adapter(config: ProviderConfig, handler: Handler) -> SubverseAdapter:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return SubverseAdapter(config=config, http_client=client)


class TestTriggerCall:
    @pytest.mark.asyncio
    async def test_trigger_success(
        self, provider_config: ProviderConfig, trigger_request: TriggerRequest
    ) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"data": {"callSid": "sv-123"}})

        adapter = _adapter(provider_config, handler)
        response = await adapter.trigger_call(trigger_request)

        assert response.external_call_id == "sv-123"
        assert response.raw_response == {"data": {"callSid": "sv-123"}}

        request = seen[0]
        assert request.method == "POST"
        assert str(request.url) == "https://provider.test/api/call/trigger"
        assert request.headers["x-api-key"] == "sk_test_123"
        body = json.loads(request.content)
        assert body["phoneNumber"] == "+919000000001"
        assert body["agentName"] == "dock_agent"
        assert body["metadata"]["call_id"] == str(trigger_request.call_id)
        assert body["metadata"]["dataset_id"] == str(trigger_request.batch_id)
        assert body["metadata"]["reg_no"] == "KA01-0001"
        assert body["metadata"]["driver_name"] == "Ravi"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "body",
        [{"call_id": "sv-1"}, {"callId": "sv-1"}, {"id": "sv-1"}, {"data": {"call_id": "sv-1"}}],
    )
    async def test_call_id_aliases(
        self, provider_config: ProviderConfig, trigger_request: TriggerRequest, body: dict
    ) -> None:
        adapter = _adapter(provider_config, lambda _: httpx.Response(200, json=body))

        response = await adapter.trigger_call(trigger_request)

        assert response.external_call_id == "sv-1"

    @pytest.mark.asyncio
    async def test_missing_call_id_is_not_retryable(
        self, provider_config: ProviderConfig, trigger_request: TriggerRequest
    ) -> None:
        adapter = _adapter(provider_config, lambda _: httpx.Response(200, json={"ok": True}))

        with pytest.raises(ProviderUnavailableError) as exc_info:
            await adapter.trigger_call(trigger_request)

        assert exc_info.value.retryable is False

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("status_code", "retryable"), [(400, False), (401, False), (429, True), (500, True), (503, True)]
    )
    async def test_http_errors(
        self,
        provider_config: ProviderConfig,
        trigger_request: TriggerRequest,
        status_code: int,
        retryable: bool,
    ) -> None:
        adapter = _adapter(
            provider_config,
            lambda _: httpx.Response(status_code, json={"message": "nope"}),
        )

        with pytest.raises(ProviderUnavailableError) as exc_info:
            await adapter.trigger_call(trigger_request)

        error = exc_info.value
        assert error.status_code == status_code
        assert error.retryable is retryable
        assert error.message == f"Provider API error: {status_code}"
        assert error.provider_response == {"message": "nope"}

    @pytest.mark.asyncio
    async def test_network_error_is_retryable(
        self, provider_config: ProviderConfig, trigger_request: TriggerRequest
    ) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        adapter = _adapter(provider_config, handler)

        with pytest.raises(ProviderUnavailableError) as exc_info:
            await adapter.trigger_call(trigger_request)

        assert exc_info.value.retryable is True
        assert exc_info.value.status_code is None

    @pytest.mark.asyncio
    async def test_non_json_body(
        self, provider_config: ProviderConfig, trigger_request: TriggerRequest
    ) -> None:
        adapter = _adapter(provider_config, lambda _: httpx.Response(200, text="<html>"))

        with pytest.raises(ProviderUnavailableError) as exc_info:
            await adapter.trigger_call(trigger_request)

        assert exc_info.value.retryable is False

    @pytest.mark.asyncio
    async def test_missing_api_key(self, trigger_request: TriggerRequest) -> None:
        config = ProviderConfig(api_key="", base_url="https://provider.test")

        def handler(request: httpx.Request) -> httpx.Response:
            raise AssertionError("no request expected")

        adapter = _adapter(config, handler)

        with pytest.raises(ConfigurationMissingError):
            await adapter.trigger_call(trigger_request)
        with pytest.raises(ConfigurationMissingError):
            adapter.ensure_configured()


class TestCancelAndDetails:
    @pytest.mark.asyncio
    async def test_cancel(self, provider_config: ProviderConfig) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"success": True})

        adapter = _adapter(provider_config, handler)

        assert await adapter.cancel_call("sv-9") is True
        assert seen[0].method == "PUT"
        assert seen[0].url.path == "/api/direct-call/cancel"
        assert json.loads(seen[0].content) == {"callId": "sv-9"}

    @pytest.mark.asyncio
    async def test_cancel_failure_raises(self, provider_config: ProviderConfig) -> None:
        adapter = _adapter(provider_config, lambda _: httpx.Response(404))

        with pytest.raises(ProviderUnavailableError):
            await adapter.cancel_call("sv-9")

    @pytest.mark.asyncio
    async def test_details(self, provider_config: ProviderConfig) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/api/call/details/sv-7"
            return httpx.Response(
                200,
                json={
                    "data": {
                        "call_status": "completed",
                        "refinedTranscript": "Agent: clean",
                        "transcript": "Agent: raw",
                        "call_recording_url": "https://rec/7.mp3",
                        "call_duration": "61.8",
                        "analysis": {"intent": "confirmed"},
                    }
                },
            )

        adapter = _adapter(provider_config, handler)
        details = await adapter.fetch_call_details("sv-7")

        assert details.external_call_id == "sv-7"
        assert details.status == "completed"
        assert details.transcript == "Agent: clean"
        assert details.recording_url == "https://rec/7.mp3"
        assert details.duration_seconds == 61
        assert details.summary == '{"intent": "confirmed"}'

    @pytest.mark.asyncio
    async def test_details_with_empty_body(self, provider_config: ProviderConfig) -> None:
        adapter = _adapter(provider_config, lambda _: httpx.Response(200))

        details = await adapter.fetch_call_details("sv-7")

        assert details.status is None
        assert details.transcript is None


class TestValueHelpers:
    def test_as_text(self) -> None:
        assert as_text(None) is None
        assert as_text("  hi ") == "hi"
        assert as_text("   ") is None
        assert as_text({}) is None
        assert as_text(["a"]) == '["a"]'
        assert as_text(12) == "12"

    def test_as_seconds(self) -> None:
        assert as_seconds(None) is None
        assert as_seconds(True) is None
        assert as_seconds("abc") is None
        assert as_seconds("12.9") == 12
        assert as_seconds(-4) == 0

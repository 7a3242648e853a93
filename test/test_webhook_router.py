"""Tests for the provider webhook endpoint."""

from unittest.mock import AsyncMock

import pytest
from fastapi import status
from httpx import ASGITransport, AsyncClient
from sqlalchemy.exc import OperationalError

from calldispatch.calls.enums import CallStatus
from calldispatch.lifecycle.events import CallCommand
from calldispatch.main import create_app
from calldispatch.runtime import Runtime

from conftest import BatchFactory, load_batch, load_call


class TestWebhookEndpoint:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("path", ["/webhooks/provider", "/webhooks/provider/events"])
    async def test_completion_is_applied(
        self,
        client: AsyncClient,
        runtime: Runtime,
        make_batch: BatchFactory,
        path: str,
    ) -> None:
        batch_id, (call_id,) = await make_batch(1)
        await runtime.lifecycle.apply(call_id, CallCommand.claim())
        await runtime.lifecycle.apply(call_id, CallCommand.mark_active("sv-1"))

        response = await client.post(
            path,
            json={"event": "call.completed", "callId": "sv-1", "transcript": "Agent: done"},
        )

        assert response.status_code == status.HTTP_200_OK
        assert response.json() == {"success": True, "status": "completed"}
        assert (await load_call(runtime.db, call_id)).status == CallStatus.COMPLETED
        assert (await load_batch(runtime.db, batch_id)).successful_calls == 1

    @pytest.mark.asyncio
    async def test_duplicate_is_acknowledged(
        self, client: AsyncClient, runtime: Runtime, make_batch: BatchFactory
    ) -> None:
        _, (call_id,) = await make_batch(1)
        await runtime.lifecycle.apply(call_id, CallCommand.mark_active("sv-1"))
        payload = {"event": "call.failed", "callId": "sv-1", "status": "busy"}

        await client.post("/webhooks/provider", json=payload)
        response = await client.post("/webhooks/provider", json=payload)

        assert response.status_code == status.HTTP_200_OK
        assert response.json() == {
            "success": True,
            "skipped": True,
            "reason": "already_terminal",
            "status": "failed",
        }

    @pytest.mark.asyncio
    async def test_second_provider_id_does_not_replace_the_first(
        self, client: AsyncClient, runtime: Runtime, make_batch: BatchFactory
    ) -> None:
        _, (call_id, other_id) = await make_batch(2)
        await runtime.lifecycle.apply(call_id, CallCommand.claim())
        await runtime.lifecycle.apply(other_id, CallCommand.mark_active("sv-2"))
        metadata = {"call_id": str(call_id)}

        await client.post(
            "/webhooks/provider",
            json={"event": "call.ringing", "callId": "sv-1", "metadata": metadata},
        )
        response = await client.post(
            "/webhooks/provider",
            json={"event": "call.in_progress", "callSid": "sv-2", "metadata": metadata},
        )

        assert response.status_code == status.HTTP_200_OK
        call = await load_call(runtime.db, call_id)
        assert call.status == CallStatus.ACTIVE
        assert call.external_call_id == "sv-1"
        assert (await load_call(runtime.db, other_id)).external_call_id == "sv-2"

    @pytest.mark.asyncio
    async def test_unknown_call_is_acknowledged(self, client: AsyncClient) -> None:
        response = await client.post(
            "/webhooks/provider", json={"event": "call.completed", "callId": "ghost"}
        )

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["reason"] == "unknown_call"

    @pytest.mark.asyncio
    async def test_invalid_json_is_acknowledged(self, client: AsyncClient) -> None:
        response = await client.post(
            "/webhooks/provider",
            content=b"not json",
            headers={"Content-Type": "application/json"},
        )

        assert response.status_code == status.HTTP_200_OK
        assert response.json() == {"success": True, "skipped": True, "reason": "invalid_payload"}

    @pytest.mark.asyncio
    async def test_non_object_body_is_acknowledged(self, client: AsyncClient) -> None:
        response = await client.post("/webhooks/provider", json=[1, 2, 3])

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["reason"] == "invalid_payload"

    @pytest.mark.asyncio
    async def test_store_failure_returns_server_error(
        self, runtime: Runtime, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        handle = AsyncMock(
            side_effect=OperationalError("UPDATE calls", {}, Exception("database is locked"))
        )
        monkeypatch.setattr(runtime.webhooks, "handle", handle)
        transport = ASGITransport(app=create_app(runtime), raise_app_exceptions=False)

        async with AsyncClient(transport=transport, base_url="http://test") as ac:
            response = await ac.post(
                "/webhooks/provider", json={"event": "call.completed", "callId": "sv-1"}
            )

        assert response.status_code == status.HTTP_500_INTERNAL_SERVER_ERROR
        handle.assert_awaited_once()

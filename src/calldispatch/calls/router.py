"""
Batch and call API router.
"""

import asyncio
from collections.abc import Sequence
from typing import Annotated
from uuid import UUID

import anyio
from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect, status
from fastapi.encoders import jsonable_encoder

from calldispatch.calls.feed import RowChange
from calldispatch.calls.models import Batch, Call
from calldispatch.calls.repository import CallRepository, NewCall
from calldispatch.calls.schemas import (
    BatchCreate,
    BatchResponse,
    CallResponse,
    CancelCallResponse,
    DispatchAccepted,
    StopResponse,
    TranscriptResponse,
)
from calldispatch.runtime import Runtime, get_runtime
from calldispatch.shared.exceptions import BatchNotFoundError
from calldispatch.shared.logging import get_logger

logger = get_logger(__name__)

router = APIRouter(prefix="/api", tags=["batches"])

RuntimeDep = Annotated[Runtime, Depends(get_runtime)]


def _batch_response(batch: Batch, calls: Sequence[Call]) -> BatchResponse:
    return BatchResponse(
        id=batch.id,
        name=batch.name,
        status=batch.status,
        total_calls=batch.total_calls,
        successful_calls=batch.successful_calls,
        failed_calls=batch.failed_calls,
        created_at=batch.created_at,
        completed_at=batch.completed_at,
        stopped_at=batch.stopped_at,
        calls=[CallResponse.model_validate(call) for call in calls],
    )


async def _load_batch(runtime: Runtime, batch_id: UUID) -> BatchResponse:
    async with runtime.db.session() as session:
        repo = CallRepository(session)
        batch = await repo.refresh_batch(batch_id)
        if batch is None:
            raise BatchNotFoundError(batch_id)
        calls = await repo.list_calls(batch_id)
        return _batch_response(batch, calls)


@router.post("/batches", response_model=BatchResponse, status_code=status.HTTP_201_CREATED)
async def create_batch(data: BatchCreate, runtime: RuntimeDep) -> BatchResponse:
    """Create a batch with its queued calls."""
    rows = [
        NewCall(
            phone_number=item.phone_number,
            driver_name=item.driver_name,
            reg_no=item.reg_no,
            message=item.message,
        )
        for item in data.calls
    ]
    async with runtime.db.session() as session:
        batch = await CallRepository(session).create_batch(data.name, rows)
        batch_id = batch.id

    logger.info("Batch created", extra={"batch_id": str(batch_id), "total_calls": len(rows)})
    return await _load_batch(runtime, batch_id)


@router.get("/batches/{batch_id}", response_model=BatchResponse)
async def get_batch(batch_id: UUID, runtime: RuntimeDep) -> BatchResponse:
    """Get a batch with its calls."""
    return await _load_batch(runtime, batch_id)


@router.post(
    "/batches/{batch_id}/dispatch",
    response_model=DispatchAccepted,
    status_code=status.HTTP_202_ACCEPTED,
    responses={
        400: {"description": "Batch already completed or dispatching"},
        404: {"description": "Batch not found"},
        503: {"description": "Provider not configured"},
    },
)
async def dispatch_batch(batch_id: UUID, runtime: RuntimeDep) -> DispatchAccepted:
    """Start the orchestrator and the watchdog for a batch."""
    await runtime.runner.start(batch_id)
    return DispatchAccepted(batch_id=batch_id)


@router.post("/batches/{batch_id}/stop", response_model=StopResponse)
async def stop_batch(batch_id: UUID, runtime: RuntimeDep) -> StopResponse:
    """Emergency stop: cancel every open call of the batch."""
    result = await runtime.stopper.stop_batch(batch_id)
    return StopResponse(
        batch_id=result.batch_id,
        canceled_calls=result.canceled_calls,
        provider_cancels=result.provider_cancels,
        batch_completed=result.batch_completed,
    )


@router.post("/calls/{call_id}/cancel", response_model=CancelCallResponse)
async def cancel_call(call_id: UUID, runtime: RuntimeDep) -> CancelCallResponse:
    """Cancel a single call."""
    outcome = await runtime.stopper.cancel_call(call_id)
    return CancelCallResponse(
        call_id=call_id,
        status=outcome.status,
        skipped=outcome.skipped,
        reason=outcome.reason,
    )


@router.post(
    "/calls/{call_id}/transcript",
    response_model=TranscriptResponse,
    responses={
        404: {"description": "Call not found"},
        502: {"description": "Provider unavailable"},
    },
)
async def fetch_transcript(call_id: UUID, runtime: RuntimeDep) -> TranscriptResponse:
    """Return the stored transcript or pull it from the provider."""
    result = await runtime.transcripts.fetch(call_id)
    return TranscriptResponse(
        call_id=result.call_id,
        available=result.available,
        status=result.status,
        transcript=result.transcript,
        recording_url=result.recording_url,
        duration_seconds=result.duration_seconds,
        summary=result.summary,
        source=result.source,
        message=result.message,
    )


async def _forward_changes(websocket: WebSocket, queue: asyncio.Queue[RowChange]) -> None:
    while True:
        change = await queue.get()
        await websocket.send_json(jsonable_encoder(change.to_message()))


async def _wait_for_disconnect(websocket: WebSocket) -> None:
    while True:
        message = await websocket.receive()
        if message["type"] == "websocket.disconnect":
            return


@router.websocket("/batches/{batch_id}/changes")
async def batch_changes(websocket: WebSocket, batch_id: UUID) -> None:
    """Stream row changes of one batch: a snapshot first, then every update."""
    runtime: Runtime = websocket.app.state.runtime
    await websocket.accept()

    async with runtime.feed.subscribe(batch_id) as queue:
        async with runtime.db.session() as session:
            repo = CallRepository(session)
            batch = await repo.refresh_batch(batch_id)
            if batch is None:
                await websocket.close(code=4404, reason="batch not found")
                return
            snapshot = [RowChange("batches", batch_id, batch.to_dict())]
            snapshot.extend(
                RowChange("calls", batch_id, call.to_dict())
                for call in await repo.list_calls(batch_id)
            )

        try:
            for change in snapshot:
                await websocket.send_json(jsonable_encoder(change.to_message()))
            async with anyio.create_task_group() as tg:
                tg.start_soon(_forward_changes, websocket, queue)
                await _wait_for_disconnect(websocket)
                tg.cancel_scope.cancel()
        except WebSocketDisconnect:
            pass
        logger.info("Change feed client disconnected", extra={"batch_id": str(batch_id)})

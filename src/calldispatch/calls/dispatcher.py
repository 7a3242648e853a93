"""
Dispatch orchestrator: paced, sequential provider triggers for one batch.

Each call is claimed with a conditional queued -> ringing update before the
provider is contacted, so a call is never triggered twice and a call stopped by
the user is never triggered at all.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError

from calldispatch.calls.enums import CallStatus
from calldispatch.calls.repository import CallRepository
from calldispatch.config import Settings
from calldispatch.lifecycle.events import CallCommand
from calldispatch.lifecycle.service import CallLifecycle
from calldispatch.shared.database import DatabaseManager
from calldispatch.shared.exceptions import (
    AppError,
    BatchNotFoundError,
    ConfigurationMissingError,
    ProviderUnavailableError,
)
from calldispatch.shared.logging import get_logger
from calldispatch.telephony.interface import ProviderGateway, TriggerRequest, TriggerResponse

logger = get_logger(__name__)

Sleep = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class DispatchConfig:
    """Configuration for the dispatch orchestrator."""

    inter_call_delay_seconds: float = 2.0
    trigger_max_attempts: int = 2
    retry_base_delay_seconds: float = 1.0

    @classmethod
    def from_settings(cls, settings: Settings) -> DispatchConfig:
        return cls(
            inter_call_delay_seconds=settings.dispatch_inter_call_delay_seconds,
            trigger_max_attempts=settings.trigger_max_attempts,
            retry_base_delay_seconds=settings.trigger_retry_base_delay_seconds,
        )


@dataclass
class DispatchSummary:
    """Counts for one orchestrator run."""

    batch_id: UUID
    queued: int = 0
    triggered: int = 0
    failed: int = 0
    skipped: int = 0


@dataclass(frozen=True)
class _QueuedCall:
    id: UUID
    phone_number: str
    driver_name: str | None
    reg_no: str | None
    message: str | None


class DispatchOrchestrator:
    """Triggers the queued calls of a batch one after another."""

    def __init__(
        self,
        db: DatabaseManager,
        lifecycle: CallLifecycle,
        gateway: ProviderGateway,
        config: DispatchConfig | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._db = db
        self._lifecycle = lifecycle
        self._gateway = gateway
        self._config = config or DispatchConfig()
        self._sleep = sleep

    async def run(self, batch_id: UUID) -> DispatchSummary:
        """Dispatch every queued call of a batch.

        Args:
            batch_id: Batch UUID.

        Returns:
            DispatchSummary with per-outcome counts.

        Raises:
            BatchNotFoundError: If the batch does not exist.
            ConfigurationMissingError: If the provider is not configured; the
                call being dispatched is marked failed first.
        """
        async with self._db.session() as session:
            repo = CallRepository(session)
            if await repo.get_batch(batch_id) is None:
                raise BatchNotFoundError(batch_id)
            await repo.mark_batch_dispatching(batch_id)
            queued = [
                _QueuedCall(
                    id=call.id,
                    phone_number=call.phone_number,
                    driver_name=call.driver_name,
                    reg_no=call.reg_no,
                    message=call.message,
                )
                for call in await repo.list_calls(batch_id, [CallStatus.QUEUED])
            ]
        await self._lifecycle.publish_batch(batch_id)

        summary = DispatchSummary(batch_id=batch_id, queued=len(queued))
        logger.info(
            "Batch dispatch started",
            extra={"batch_id": str(batch_id), "queued_calls": len(queued)},
        )

        triggered_any = False
        try:
            for item in queued:
                claim = await self._lifecycle.apply(item.id, CallCommand.claim())
                if not claim.applied:
                    summary.skipped += 1
                    logger.info(
                        "Call no longer queued; not dispatched",
                        extra={"call_id": str(item.id), "status": claim.status.value},
                    )
                    continue

                if triggered_any:
                    await self._sleep(self._config.inter_call_delay_seconds)
                triggered_any = True

                if await self._dispatch_one(batch_id, item):
                    summary.triggered += 1
                else:
                    summary.failed += 1
        finally:
            try:
                await self._lifecycle.check_batch_completion(batch_id)
            except SQLAlchemyError:
                logger.exception(
                    "Batch completion check failed after dispatch",
                    extra={"batch_id": str(batch_id)},
                )

        logger.info(
            "Batch dispatch finished",
            extra={
                "batch_id": str(batch_id),
                "triggered": summary.triggered,
                "failed": summary.failed,
                "skipped": summary.skipped,
            },
        )
        return summary

    async def _dispatch_one(self, batch_id: UUID, item: _QueuedCall) -> bool:
        request = TriggerRequest(
            phone_number=item.phone_number,
            call_id=item.id,
            batch_id=batch_id,
            driver_name=item.driver_name,
            reg_no=item.reg_no,
            message=item.message,
        )
        try:
            response = await self._trigger(request)
        except ConfigurationMissingError as e:
            await self._fail(item.id, e.message)
            raise
        except ProviderUnavailableError as e:
            await self._fail(item.id, e.message)
            return False
        except Exception as e:
            logger.exception("Unexpected error triggering call", extra={"call_id": str(item.id)})
            await self._fail(item.id, f"Unexpected error: {e!s}")
            return False

        outcome = await self._lifecycle.apply(
            item.id, CallCommand.mark_active(response.external_call_id)
        )
        if outcome.applied:
            return True

        if outcome.status.is_terminal:
            await self._record_external_id(item.id, response.external_call_id)
        if outcome.status == CallStatus.CANCELED:
            logger.info(
                "Call canceled while trigger was in flight; canceling at provider",
                extra={"call_id": str(item.id), "external_call_id": response.external_call_id},
            )
            await self._cancel_at_provider(response.external_call_id)
        return True

    async def _trigger(self, request: TriggerRequest) -> TriggerResponse:
        """Trigger with exponential backoff for retryable provider errors."""
        attempts = self._config.trigger_max_attempts
        for attempt in range(1, attempts + 1):
            try:
                return await self._gateway.trigger_call(request)
            except ProviderUnavailableError as e:
                if not e.retryable or attempt >= attempts:
                    logger.warning(
                        "Provider trigger failed",
                        extra={
                            "call_id": str(request.call_id),
                            "attempt": attempt,
                            "status_code": e.status_code,
                            "error": e.message,
                        },
                    )
                    raise
                delay = self._config.retry_base_delay_seconds * (2 ** (attempt - 1))
                logger.info(
                    "Retrying provider trigger",
                    extra={
                        "call_id": str(request.call_id),
                        "attempt": attempt,
                        "delay_seconds": delay,
                    },
                )
                await self._sleep(delay)
        raise AssertionError("unreachable")

    async def _fail(self, call_id: UUID, message: str) -> None:
        try:
            await self._lifecycle.apply(call_id, CallCommand.fail(message))
        except SQLAlchemyError:
            logger.exception(
                "Could not mark call failed; left for the watchdog",
                extra={"call_id": str(call_id)},
            )

    async def _record_external_id(self, call_id: UUID, external_call_id: str) -> None:
        try:
            async with self._db.session() as session:
                await CallRepository(session).set_external_call_id(call_id, external_call_id)
        except SQLAlchemyError:
            logger.exception(
                "Could not record provider call id",
                extra={"call_id": str(call_id), "external_call_id": external_call_id},
            )

    async def _cancel_at_provider(self, external_call_id: str) -> None:
        try:
            await self._gateway.cancel_call(external_call_id)
        except AppError as e:
            logger.warning(
                "Provider cancel failed",
                extra={"external_call_id": external_call_id, "error": e.message},
            )
        except Exception:
            logger.exception(
                "Unexpected error canceling call at provider",
                extra={"external_call_id": external_call_id},
            )

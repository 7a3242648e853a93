"""
Stuck-call watchdog.

Force-resolves calls that never received a final status from the provider so
every batch reaches completion even when callbacks are lost.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError

from calldispatch.calls.enums import NON_TERMINAL_STATUSES, BatchStatus, CallStatus
from calldispatch.calls.repository import CallRepository
from calldispatch.config import Settings
from calldispatch.lifecycle.events import CallCommand, CanonicalEvent, EventKind
from calldispatch.lifecycle.service import CallLifecycle
from calldispatch.shared.database import DatabaseManager
from calldispatch.shared.exceptions import AppError
from calldispatch.shared.logging import get_logger
from calldispatch.telephony.interface import ProviderGateway
from calldispatch.telephony.webhooks.normalizer import map_provider_status

logger = get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class WatchdogConfig:
    """Configuration for the stuck-call watchdog."""

    interval_seconds: float = 60
    deadline_seconds: float = 300
    statuses: Sequence[CallStatus] = field(default=NON_TERMINAL_STATUSES)
    reconcile_with_provider: bool = True

    @classmethod
    def from_settings(cls, settings: Settings) -> WatchdogConfig:
        return cls(
            interval_seconds=settings.watchdog_interval_seconds,
            deadline_seconds=settings.watchdog_deadline_seconds,
            statuses=settings.watchdog_status_list,
            reconcile_with_provider=settings.watchdog_reconcile_with_provider,
        )


@dataclass
class SweepResult:
    """Outcome of one watchdog sweep."""

    batch_id: UUID
    examined: int = 0
    timed_out: int = 0
    reconciled: int = 0
    batch_completed: bool = False


class StuckCallWatchdog:
    """Times out calls stuck in a non-terminal status past the deadline."""

    def __init__(
        self,
        db: DatabaseManager,
        lifecycle: CallLifecycle,
        gateway: ProviderGateway,
        config: WatchdogConfig | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._db = db
        self._lifecycle = lifecycle
        self._gateway = gateway
        self._config = config or WatchdogConfig()
        self._clock = clock or _utcnow

    @property
    def config(self) -> WatchdogConfig:
        return self._config

    async def sweep(
        self,
        batch_id: UUID,
        statuses: Sequence[CallStatus] | None = None,
    ) -> SweepResult:
        """Resolve every stuck call of a batch, then check batch completion.

        Args:
            batch_id: Batch UUID.
            statuses: Eligible statuses for this sweep; defaults to the
                configured set.

        Returns:
            SweepResult; ``batch_completed`` reflects the batch status after
            the sweep, whoever completed it.
        """
        eligible = self._config.statuses if statuses is None else statuses
        cutoff = self._clock() - timedelta(seconds=self._config.deadline_seconds)
        stale: list[tuple[UUID, str | None]] = []
        if eligible:
            async with self._db.session() as session:
                stale = [
                    (call.id, call.external_call_id)
                    for call in await CallRepository(session).list_stale_calls(
                        batch_id, eligible, cutoff
                    )
                ]

        result = SweepResult(batch_id=batch_id, examined=len(stale))
        if stale:
            logger.info(
                "Watchdog found stuck calls",
                extra={"batch_id": str(batch_id), "count": len(stale)},
            )

        for call_id, external_call_id in stale:
            try:
                if (
                    self._config.reconcile_with_provider
                    and external_call_id
                    and await self._reconcile(call_id, external_call_id)
                ):
                    result.reconciled += 1
                    continue

                if external_call_id:
                    await self._cancel_at_provider(external_call_id)

                message = (
                    f"No final status from provider within {int(self._config.deadline_seconds)}s"
                )
                outcome = await self._lifecycle.apply(call_id, CallCommand.time_out(message))
                if outcome.applied:
                    result.timed_out += 1
                    logger.warning(
                        "Stuck call timed out",
                        extra={"call_id": str(call_id), "previous_status": outcome.previous_status.value},
                    )
            except SQLAlchemyError:
                logger.exception(
                    "Watchdog could not resolve call; retrying next sweep",
                    extra={"call_id": str(call_id)},
                )

        await self._lifecycle.check_batch_completion(batch_id)
        async with self._db.session() as session:
            batch = await CallRepository(session).refresh_batch(batch_id)
            result.batch_completed = batch is None or batch.status == BatchStatus.COMPLETED
        return result

    async def sweep_until_complete(
        self,
        batch_id: UUID,
        statuses: Sequence[CallStatus] | None = None,
    ) -> bool:
        """Periodic tick: sweep and report whether the batch is done."""
        result = await self.sweep(batch_id, statuses)
        return result.batch_completed

    async def _reconcile(self, call_id: UUID, external_call_id: str) -> bool:
        """Apply a terminal provider status instead of timing the call out."""
        try:
            details = await self._gateway.fetch_call_details(external_call_id)
        except AppError as e:
            logger.warning(
                "Watchdog reconciliation failed",
                extra={"call_id": str(call_id), "error": e.message},
            )
            return False
        except Exception:
            logger.exception(
                "Unexpected error fetching call details",
                extra={"call_id": str(call_id), "external_call_id": external_call_id},
            )
            return False

        status = map_provider_status(details.status)
        if status == CallStatus.COMPLETED:
            kind = EventKind.COMPLETED
        elif status == CallStatus.FAILED:
            kind = EventKind.FAILED
        else:
            return False

        event = CanonicalEvent(
            kind=kind,
            external_call_id=external_call_id,
            status_hint=details.status,
            transcript=details.transcript,
            recording_url=details.recording_url,
            duration_seconds=details.duration_seconds,
            summary=details.summary,
            raw_event_type="details.reconcile",
        )
        outcome = await self._lifecycle.apply(call_id, event)
        logger.info(
            "Watchdog reconciled call with provider",
            extra={"call_id": str(call_id), "status": outcome.status.value},
        )
        return outcome.status.is_terminal

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

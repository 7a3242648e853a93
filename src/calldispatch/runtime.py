"""
Application runtime: the service graph shared by HTTP routes and background
tasks.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from fastapi import Request

from calldispatch.calls.dispatcher import DispatchConfig, Sleep
from calldispatch.calls.feed import ChangeFeed
from calldispatch.calls.runner import BatchRunner
from calldispatch.calls.stop import BatchStopService
from calldispatch.calls.transcripts import TranscriptService
from calldispatch.calls.watchdog import WatchdogConfig
from calldispatch.config import Settings
from calldispatch.lifecycle.service import CallLifecycle
from calldispatch.shared.database import DatabaseManager
from calldispatch.telephony.interface import ProviderGateway
from calldispatch.telephony.webhooks.handler import WebhookHandler


@dataclass
class Runtime:
    """Wired services for one application instance."""

    settings: Settings
    db: DatabaseManager
    gateway: ProviderGateway
    feed: ChangeFeed
    lifecycle: CallLifecycle
    runner: BatchRunner
    stopper: BatchStopService
    transcripts: TranscriptService
    webhooks: WebhookHandler

    @classmethod
    def build(
        cls,
        settings: Settings,
        db: DatabaseManager,
        gateway: ProviderGateway,
        clock: Callable[[], datetime] | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> Runtime:
        feed = ChangeFeed()
        lifecycle = CallLifecycle(
            db,
            feed=feed,
            max_cas_retries=settings.lifecycle_max_cas_retries,
            clock=clock,
        )
        return cls(
            settings=settings,
            db=db,
            gateway=gateway,
            feed=feed,
            lifecycle=lifecycle,
            runner=BatchRunner(
                db,
                lifecycle,
                gateway,
                dispatch_config=DispatchConfig.from_settings(settings),
                watchdog_config=WatchdogConfig.from_settings(settings),
                clock=clock,
                sleep=sleep,
            ),
            stopper=BatchStopService(db, lifecycle, gateway, clock=clock),
            transcripts=TranscriptService(db, lifecycle, gateway),
            webhooks=WebhookHandler(
                db,
                lifecycle,
                gateway,
                fetch_details_on_completion=settings.webhook_fetch_details_on_completion,
            ),
        )

    async def shutdown(self) -> None:
        await self.runner.shutdown()
        await self.stopper.drain()
        await self.gateway.aclose()
        await self.db.close()


def get_runtime(request: Request) -> Runtime:
    """FastAPI dependency returning the application runtime."""
    return request.app.state.runtime

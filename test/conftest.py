"""
Pytest configuration and shared fixtures.

Every test gets its own file-backed SQLite database (aiosqlite), a mock
provider gateway, a controllable clock and a sleep that returns immediately.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, Awaitable, Callable
from datetime import datetime, timedelta, timezone
from pathlib import Path
from uuid import UUID

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from calldispatch.calls.enums import CallStatus
from calldispatch.calls.models import Batch, Call
from calldispatch.calls.repository import CallRepository, NewCall
from calldispatch.config import Settings
from calldispatch.lifecycle.service import CallLifecycle
from calldispatch.main import create_app
from calldispatch.runtime import Runtime
from calldispatch.shared.database import DatabaseManager
from calldispatch.telephony.adapters.mock import MockProviderGateway


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime.now(timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


class RecordingSleep:
    """Sleep replacement that records the requested delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sleeper() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'calls.db'}",
        dispatch_inter_call_delay_seconds=2.0,
        trigger_max_attempts=2,
        trigger_retry_base_delay_seconds=1.0,
        watchdog_interval_seconds=60,
        watchdog_deadline_seconds=300,
    )


@pytest_asyncio.fixture
async def db(settings: Settings) -> AsyncGenerator[DatabaseManager, None]:
    manager = DatabaseManager(settings.database_url, echo=False)
    await manager.create_all()
    yield manager
    await manager.close()


@pytest.fixture
def gateway() -> MockProviderGateway:
    return MockProviderGateway()


@pytest.fixture
def lifecycle(db: DatabaseManager, clock: FakeClock) -> CallLifecycle:
    return CallLifecycle(db, clock=clock)


@pytest_asyncio.fixture
async def runtime(
    settings: Settings,
    db: DatabaseManager,
    gateway: MockProviderGateway,
    clock: FakeClock,
    sleeper: RecordingSleep,
) -> AsyncGenerator[Runtime, None]:
    rt = Runtime.build(settings, db, gateway, clock=clock, sleep=sleeper)
    yield rt
    await rt.runner.shutdown()
    await rt.stopper.drain()


@pytest_asyncio.fixture
async def client(runtime: Runtime) -> AsyncGenerator[AsyncClient, None]:
    app = create_app(runtime)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


BatchFactory = Callable[..., Awaitable[tuple[UUID, list[UUID]]]]


@pytest.fixture
def make_batch(db: DatabaseManager) -> BatchFactory:
    """Create a batch of queued calls; returns (batch_id, call_ids in order)."""

    async def _make(count: int = 2, reg_prefix: str = "KA01") -> tuple[UUID, list[UUID]]:
        rows = [
            NewCall(
                phone_number=f"+9190000000{i:02d}",
                driver_name=f"Driver {i}",
                reg_no=f"{reg_prefix}-{i:04d}",
                message="Please report to dock 4",
            )
            for i in range(count)
        ]
        async with db.session() as session:
            repo = CallRepository(session)
            batch = await repo.create_batch("morning shift", rows)
            calls = await repo.list_calls(batch.id)
            return batch.id, [c.id for c in calls]

    return _make


async def load_call(db: DatabaseManager, call_id: UUID) -> Call:
    async with db.session() as session:
        call = await CallRepository(session).get_call(call_id)
        assert call is not None
        return call


async def load_batch(db: DatabaseManager, batch_id: UUID) -> Batch:
    async with db.session() as session:
        batch = await CallRepository(session).refresh_batch(batch_id)
        assert batch is not None
        return batch


async def set_status(
    db: DatabaseManager,
    call_id: UUID,
    status: CallStatus,
    external_call_id: str | None = None,
) -> None:
    """Force a call into a status for test setup (bypasses the lifecycle)."""
    async with db.session() as session:
        call = await CallRepository(session).get_call(call_id)
        assert call is not None
        values: dict[str, object] = {"status": status}
        if external_call_id is not None:
            values["external_call_id"] = external_call_id
        await CallRepository(session).compare_and_set(call_id, call.status, values)

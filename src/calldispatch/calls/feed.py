"""
In-process change feed for call and batch rows.

Services publish a row snapshot after their transaction commits; subscribers
(the client sync layer) receive every change for the batch they subscribed to.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal
from uuid import UUID

from calldispatch.shared.logging import get_logger

logger = get_logger(__name__)

RowTable = Literal["calls", "batches"]


@dataclass(frozen=True)
class RowChange:
    """A row-update event for one batch."""

    table: RowTable
    batch_id: UUID
    row: dict[str, Any]
    emitted_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_message(self) -> dict[str, Any]:
        return {
            "table": self.table,
            "batch_id": str(self.batch_id),
            "row": self.row,
            "emitted_at": self.emitted_at.isoformat(),
        }


class ChangeFeed:
    """Fan-out of row changes keyed by batch id."""

    def __init__(self, max_queue_size: int = 1000) -> None:
        self._max_queue_size = max_queue_size
        self._subscribers: dict[UUID, set[asyncio.Queue[RowChange]]] = {}

    def publish(self, change: RowChange) -> int:
        """Deliver a change to every subscriber of its batch.

        Returns:
            Number of subscribers the change was queued for.
        """
        queues = self._subscribers.get(change.batch_id, set())
        delivered = 0
        for queue in queues:
            try:
                queue.put_nowait(change)
                delivered += 1
            except asyncio.QueueFull:
                logger.warning(
                    "Change feed subscriber queue full; dropping change",
                    extra={"batch_id": str(change.batch_id), "table": change.table},
                )
        return delivered

    def publish_all(self, changes: list[RowChange]) -> None:
        for change in changes:
            self.publish(change)

    @asynccontextmanager
    async def subscribe(self, batch_id: UUID) -> AsyncIterator[asyncio.Queue[RowChange]]:
        """Subscribe to changes of one batch for the lifetime of the context."""
        queue: asyncio.Queue[RowChange] = asyncio.Queue(maxsize=self._max_queue_size)
        self._subscribers.setdefault(batch_id, set()).add(queue)
        logger.info("Change feed subscriber added", extra={"batch_id": str(batch_id)})
        try:
            yield queue
        finally:
            subscribers = self._subscribers.get(batch_id)
            if subscribers is not None:
                subscribers.discard(queue)
                if not subscribers:
                    del self._subscribers[batch_id]
            logger.info("Change feed subscriber removed", extra={"batch_id": str(batch_id)})

    def subscriber_count(self, batch_id: UUID) -> int:
        return len(self._subscribers.get(batch_id, set()))

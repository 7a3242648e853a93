"""Tests for structured logging and the change feed."""

import json
import logging
from uuid import uuid4

import pytest

from calldispatch.calls.feed import ChangeFeed, RowChange
from calldispatch.shared.logging import StructuredFormatter, correlation_id_var, log_with_context


class _Capture(logging.Handler):
    def __init__(self) -> None:
        super().__init__()
        self.records: list[logging.LogRecord] = []

    def emit(self, record: logging.LogRecord) -> None:
        self.records.append(record)


class TestStructuredFormatter:
    def test_extra_fields_and_correlation_id(self) -> None:
        record = logging.LogRecord("calldispatch.test", logging.INFO, "", 0, "hello", (), None)
        record.call_id = "c-1"
        token = correlation_id_var.set("req-1")
        try:
            data = json.loads(StructuredFormatter().format(record))
        finally:
            correlation_id_var.reset(token)

        assert data["message"] == "hello"
        assert data["level"] == "INFO"
        assert data["call_id"] == "c-1"
        assert data["correlation_id"] == "req-1"

    def test_log_with_context(self) -> None:
        logger = logging.getLogger("calldispatch.test.context")
        capture = _Capture()
        logger.addHandler(capture)
        logger.setLevel(logging.INFO)
        try:
            log_with_context(logger, logging.INFO, "Webhook event received", kind="completed")
        finally:
            logger.removeHandler(capture)

        data = json.loads(StructuredFormatter().format(capture.records[0]))
        assert data["kind"] == "completed"
        assert "extra_data" not in data


class TestChangeFeed:
    @pytest.mark.asyncio
    async def test_delivers_only_to_subscribers_of_the_batch(self) -> None:
        feed = ChangeFeed()
        batch_id, other = uuid4(), uuid4()

        async with feed.subscribe(batch_id) as queue:
            assert feed.subscriber_count(batch_id) == 1
            delivered = feed.publish(RowChange("calls", batch_id, {"status": "ringing"}))
            feed.publish(RowChange("calls", other, {"status": "active"}))

            assert delivered == 1
            assert queue.qsize() == 1
            message = queue.get_nowait().to_message()
            assert message["table"] == "calls"
            assert message["batch_id"] == str(batch_id)
            assert message["row"] == {"status": "ringing"}

        assert feed.subscriber_count(batch_id) == 0
        assert feed.publish(RowChange("calls", batch_id, {})) == 0

    @pytest.mark.asyncio
    async def test_full_queue_drops_changes(self) -> None:
        feed = ChangeFeed(max_queue_size=1)
        batch_id = uuid4()

        async with feed.subscribe(batch_id) as queue:
            feed.publish_all([RowChange("calls", batch_id, {"n": i}) for i in range(3)])

            assert queue.qsize() == 1
            assert queue.get_nowait().row == {"n": 0}

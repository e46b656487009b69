from __future__ import annotations

import logging
from typing import Iterator, List

import pytest

from routerfleet.logger import get_logger


class _Collector(logging.Handler):
    def __init__(self) -> None:
        super().__init__(level=logging.DEBUG)
        self.records: List[logging.LogRecord] = []

    def emit(self, record: logging.LogRecord) -> None:
        self.records.append(record)


@pytest.fixture
def records() -> Iterator[List[logging.LogRecord]]:
    collector = _Collector()
    target = logging.getLogger("routerfleet")
    previous_level = target.level
    target.addHandler(collector)
    target.setLevel(logging.DEBUG)
    yield collector.records
    target.removeHandler(collector)
    target.setLevel(previous_level)


@pytest.mark.asyncio
async def test_operation_fields_may_reuse_argument_names(records: List[logging.LogRecord]) -> None:
    logger = get_logger("services.tests")

    async with logger.operation("dispatch", "Dispatching", name="dns_record.create", message="m") as op:
        op.step("aggregate", "Collected", name="inner", step_count=1)
        op.step_warning("aggregate", "Degraded", name="inner")

    assert [record.event for record in records] == [
        "operation.start",
        "operation.step",
        "operation.step",
        "operation.complete",
    ]
    start, step, _, complete = records
    assert start.fields["name"] == "dns_record.create"
    assert start.fields["message"] == "m"
    assert start.fields["operation"] == "dispatch"
    assert step.fields["step"] == "aggregate"
    assert step.fields["name"] == "inner"
    assert complete.levelno == logging.WARNING
    assert complete.fields["steps"] == 2
    assert complete.fields["warnings"] == 1


@pytest.mark.asyncio
async def test_failed_operation_logs_error_and_reraises(records: List[logging.LogRecord]) -> None:
    logger = get_logger("services.tests")

    with pytest.raises(RuntimeError):
        async with logger.operation("node.create", "Creating node", node_name="alpha"):
            raise RuntimeError("boom")

    failure = records[-1]
    assert failure.event == "operation.error"
    assert failure.levelno == logging.ERROR
    assert failure.fields["error_type"] == "RuntimeError"
    assert failure.exc_info is not None


def test_plain_events_accept_any_field_name_and_mask_credentials(records: List[logging.LogRecord]) -> None:
    logger = get_logger("services.tests").bind(node_id="node-alpha")

    with logger.context(request_id="req-1"):
        logger.info("node.create", "Created", event="kept", name="alpha", password="hunter2")

    [record] = records
    assert record.event == "node.create"
    assert record.category == "services.tests"
    assert record.fields == {
        "request_id": "req-1",
        "node_id": "node-alpha",
        "event": "kept",
        "name": "alpha",
        "password": "***",
    }

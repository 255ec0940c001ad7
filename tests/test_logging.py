from __future__ import annotations

import io
import json
import logging
import sys
from uuid import uuid4

import pytest
from loguru import logger

from rewards_api.core.logging import configure_logging, log_context
from rewards_api.db.session import run_in_transaction
from rewards_api.models import SyncOperationType
from rewards_api.services.sync import InMemoryCrmClient, SyncDispatcher
from rewards_api.workers import SyncOutboxWorker


@pytest.fixture
def log_stream():
    stream = io.StringIO()
    configure_logging(service_name="rewards-api", environment="development", version="test", stream=stream)
    try:
        yield stream
    finally:
        logger.remove()
        logger.add(sys.stderr)


def _lines(stream: io.StringIO) -> list[dict]:
    return [json.loads(line) for line in stream.getvalue().splitlines() if line]


def test_context_fields_are_grouped_apart_from_call_fields(log_stream) -> None:
    entry_id = uuid4()
    with log_context(worker_id="worker-7", entry_id=entry_id, account_id=None):
        logger.info("Sync entry processed", attempts=2)
    logger.info("Outside any context")

    inside, outside = _lines(log_stream)
    assert inside["message"] == "Sync entry processed"
    assert inside["context"] == {"worker_id": "worker-7", "entry_id": str(entry_id)}
    assert inside["fields"] == {"attempts": 2}
    assert inside["service"] == "rewards-api"
    assert inside["level"] == "info"
    assert "context" not in outside


def test_nested_context_extends_and_overrides(log_stream) -> None:
    with log_context(worker_id="outer", operation="account_sync"):
        with log_context(worker_id="inner", resource_id="acct-1"):
            logger.warning("Nested")
        logger.warning("Back outside")

    nested, restored = _lines(log_stream)
    assert nested["context"] == {"worker_id": "inner", "operation": "account_sync", "resource_id": "acct-1"}
    assert restored["context"] == {"worker_id": "outer", "operation": "account_sync"}


def test_stdlib_records_are_forwarded(log_stream) -> None:
    logging.getLogger("rewards.vendor").warning("pool size %s reached", 5)

    (line,) = _lines(log_stream)
    assert line["message"] == "pool size 5 reached"
    assert line["logger"] == "rewards.vendor"
    assert line["level"] == "warning"


def test_level_filters_lower_records() -> None:
    stream = io.StringIO()
    configure_logging(service_name="rewards-api", environment="production", version="test", level="warning", stream=stream)
    try:
        logger.info("Too chatty")
        logger.error("Worth keeping")
    finally:
        logger.remove()
        logger.add(sys.stderr)

    assert [line["message"] for line in _lines(stream)] == ["Worth keeping"]


@pytest.mark.asyncio
async def test_worker_logs_carry_entry_context(log_stream, outbox, session_factory, sync_store) -> None:
    entry_id = await outbox.enqueue(SyncOperationType.BENEFIT_TICKET, "res-9", {"name": "Spa"})
    crm = InMemoryCrmClient()
    crm.fail_next()
    dispatcher = SyncDispatcher(crm, outbox, session_factory, timeout_seconds=2, store=sync_store)
    worker = SyncOutboxWorker(outbox, dispatcher, worker_id="worker-log", lease_seconds=30, store=sync_store)

    await worker.run_once()

    lines = _lines(log_stream)
    retry = next(line for line in lines if line["message"] == "Sync attempt failed; retry scheduled")
    assert retry["context"]["worker_id"] == "worker-log"
    assert retry["context"]["entry_id"] == str(entry_id)
    assert retry["context"]["operation"] == "benefit_ticket"
    assert retry["context"]["resource_id"] == "res-9"

    batch = next(line for line in lines if line["message"] == "Sync outbox batch processed")
    assert batch["context"] == {"worker_id": "worker-log"}
    assert batch["fields"]["retry"] == 1


@pytest.mark.asyncio
async def test_unit_of_work_label_is_attached(log_stream, session_factory) -> None:
    async def _work(session) -> None:
        logger.info("Inside the unit")

    await run_in_transaction(session_factory, _work, label="catalog.restock")

    (line,) = [line for line in _lines(log_stream) if line["message"] == "Inside the unit"]
    assert line["context"] == {"unit_of_work": "catalog.restock"}

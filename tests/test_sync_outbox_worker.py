from __future__ import annotations

import asyncio
import json
from datetime import timedelta

import httpx
import pytest
from sqlalchemy import update

from rewards_api.core.time import utcnow
from rewards_api.models import SyncOperationType, SyncQueueEntry
from rewards_api.services.ledger import account_snapshot
from rewards_api.db.session import TransientStoreError
from rewards_api.services.sync import HttpCrmClient, InMemoryCrmClient, SyncDispatcher
from rewards_api.workers import ExpirySweepWorker, SyncOutboxWorker
from rewards_api.workers.sync_outbox import MAX_BATCH_SIZE


class FakeCrm:
    """Minimal CRM that can commit a write and still answer with an error."""

    def __init__(self) -> None:
        self.contacts: list[dict] = []
        self.tickets: list[dict] = []
        self.lose_next_response = False
        self.reject_writes = False
        self.requests: list[tuple[str, str]] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        self.requests.append((request.method, path))
        if request.method == "GET" and path == "/contacts":
            phone = request.url.params.get("phone")
            return httpx.Response(200, json={"data": [c for c in self.contacts if c["phone"] == phone]})
        if request.method == "GET" and path == "/tickets":
            key = request.url.params.get("external_key")
            return httpx.Response(200, json={"data": [t for t in self.tickets if t["external_key"] == key]})

        if self.reject_writes:
            return httpx.Response(422, json={"error": "invalid"})
        body = json.loads(request.content or b"{}")
        if request.method == "POST" and path == "/contacts":
            record = {"id": f"c{len(self.contacts) + 1}", **body}
            self.contacts.append(record)
        elif request.method == "POST" and path == "/tickets":
            record = {"id": f"t{len(self.tickets) + 1}", **body}
            self.tickets.append(record)
        elif request.method == "PATCH" and path.startswith("/contacts/"):
            record = next(c for c in self.contacts if c["id"] == path.rsplit("/", 1)[-1])
            record.update(body)
        elif request.method == "PATCH" and path.startswith("/tickets/"):
            record = next(t for t in self.tickets if t["id"] == path.rsplit("/", 1)[-1])
            record.update(body)
        else:
            return httpx.Response(404)

        if self.lose_next_response:
            self.lose_next_response = False
            return httpx.Response(503)
        return httpx.Response(200, json={"id": record["id"]})


@pytest.fixture
def fake_crm() -> FakeCrm:
    return FakeCrm()


def _worker(fake_crm, outbox, session_factory, sync_store) -> SyncOutboxWorker:
    client = HttpCrmClient(
        "https://crm.test",
        token="secret",
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(fake_crm.handler)),
    )
    dispatcher = SyncDispatcher(client, outbox, session_factory, timeout_seconds=2, store=sync_store)
    return SyncOutboxWorker(outbox, dispatcher, worker_id="worker-test", batch_size=10, lease_seconds=30, store=sync_store)


async def _make_due(session_factory, entry_id) -> None:
    async with session_factory() as session:
        await session.execute(
            update(SyncQueueEntry)
            .where(SyncQueueEntry.id == entry_id)
            .values(next_retry_at=utcnow() - timedelta(seconds=1))
        )
        await session.commit()


@pytest.mark.asyncio
async def test_replay_after_lost_response_does_not_duplicate_contact(
    operations, fake_crm, outbox, session_factory, sync_store
) -> None:
    account = await operations.create_account("5555000001", "Replay Member")
    await operations.effects.drain()
    entry_id = await outbox.enqueue(SyncOperationType.ACCOUNT_SYNC, str(account.id), account_snapshot(account))

    worker = _worker(fake_crm, outbox, session_factory, sync_store)
    fake_crm.lose_next_response = True

    summary = await worker.run_once()
    assert summary == {"claimed": 1, "succeeded": 0, "retry": 1, "terminal": 0, "skipped": 0}
    assert len(fake_crm.contacts) == 1

    await _make_due(session_factory, entry_id)
    summary = await worker.run_once()
    assert summary["succeeded"] == 1
    assert len(fake_crm.contacts) == 1
    assert ("PATCH", "/contacts/c1") in fake_crm.requests

    stored = await outbox.get(entry_id)
    assert stored.completed_at is not None
    assert stored.remote_id == "c1"
    assert (await operations.get_account(account.id)).crm_remote_id == "c1"
    assert sync_store.snapshot().operations["account_sync"]["succeeded"] == 1


@pytest.mark.asyncio
async def test_contact_lookup_matches_country_prefixed_phone(fake_crm, outbox, session_factory, sync_store) -> None:
    fake_crm.contacts.append({"id": "legacy-7", "phone": "+525555000002"})
    entry_id = await outbox.enqueue(
        SyncOperationType.ACCOUNT_SYNC,
        "acct-legacy",
        {"phone": "5555000002", "display_name": "Legacy"},
    )

    summary = await _worker(fake_crm, outbox, session_factory, sync_store).run_once()
    assert summary["succeeded"] == 1
    assert len(fake_crm.contacts) == 1
    assert fake_crm.contacts[0]["display_name"] == "Legacy"
    assert (await outbox.get(entry_id)).remote_id == "legacy-7"


@pytest.mark.asyncio
async def test_ticket_replay_is_idempotent_and_status_waits_for_ticket(
    fake_crm, outbox, session_factory, sync_store
) -> None:
    worker = _worker(fake_crm, outbox, session_factory, sync_store)
    status_id = await outbox.enqueue(SyncOperationType.STATUS_UPDATE, "red-1", {"status": "delivered"})

    summary = await worker.run_once()
    assert summary["retry"] == 1
    assert fake_crm.tickets == []

    ticket_id = await outbox.enqueue(SyncOperationType.REDEMPTION_TICKET, "red-1", {"item_name": "Mug"})
    fake_crm.tickets.append({"id": "t-existing", "external_key": "red-1", "kind": "redemption"})
    await worker.run_once()
    assert len(fake_crm.tickets) == 1
    assert (await outbox.get(ticket_id)).remote_id == "t-existing"

    await _make_due(session_factory, status_id)
    summary = await worker.run_once()
    assert summary["succeeded"] == 1
    assert fake_crm.tickets[0]["status"] == "delivered"


@pytest.mark.asyncio
async def test_rejected_request_goes_terminal_immediately(fake_crm, outbox, session_factory, sync_store) -> None:
    fake_crm.reject_writes = True
    entry_id = await outbox.enqueue(SyncOperationType.BENEFIT_TICKET, "benefit-1", {"name": "Spa"})

    summary = await _worker(fake_crm, outbox, session_factory, sync_store).run_once()
    assert summary == {"claimed": 1, "succeeded": 0, "retry": 0, "terminal": 1, "skipped": 0}

    stored = await outbox.get(entry_id)
    assert stored.is_terminal
    assert stored.attempt_count == 1
    assert "422" in stored.last_error


@pytest.mark.asyncio
async def test_retries_exhaust_into_terminal(fake_crm, outbox, session_factory, sync_store) -> None:
    entry_id = await outbox.enqueue(SyncOperationType.STATUS_UPDATE, "missing", {"status": "used"})
    worker = _worker(fake_crm, outbox, session_factory, sync_store)

    outcomes = []
    for _ in range(outbox.max_attempts):
        await _make_due(session_factory, entry_id)
        outcomes.append(await worker.run_once())

    assert [summary["retry"] for summary in outcomes] == [1, 1, 0]
    assert outcomes[-1]["terminal"] == 1
    assert (await outbox.get(entry_id)).is_terminal

    await _make_due(session_factory, entry_id)
    assert (await worker.run_once())["claimed"] == 0


@pytest.mark.asyncio
async def test_batch_size_is_capped(outbox) -> None:
    worker = SyncOutboxWorker(outbox, dispatcher=None, worker_id="cap", batch_size=500)
    assert worker._batch_size == MAX_BATCH_SIZE


@pytest.mark.asyncio
async def test_worker_start_and_stop(fake_crm, outbox, session_factory, sync_store) -> None:
    worker = _worker(fake_crm, outbox, session_factory, sync_store)
    worker.interval_seconds = 1
    worker.start()
    assert worker.is_running
    await worker.stop()
    assert not worker.is_running


@pytest.mark.asyncio
async def test_expiry_sweep_worker_runs_operations(operations) -> None:
    worker = ExpirySweepWorker(operations, interval_seconds=60)
    summary = await worker.run_once()
    assert summary == {"referrals": 0, "benefits": 0}


class ScriptedTicketCrm(InMemoryCrmClient):
    """In-memory CRM whose ticket calls can be slowed down or made to blow up."""

    def __init__(self, *, delay: float = 0.0, explode_on: set[str] | None = None, before_call=None) -> None:
        super().__init__()
        self.delay = delay
        self.explode_on = explode_on or set()
        self.before_call = before_call

    async def create_ticket(self, resource_id, details):
        if self.before_call is not None:
            await self.before_call(resource_id)
        if self.delay:
            await asyncio.sleep(self.delay)
        if resource_id in self.explode_on:
            self.calls.append(("create_ticket", resource_id))
            raise RuntimeError("connection pool exhausted")
        return await super().create_ticket(resource_id, details)


def _ticket_worker(crm, outbox, session_factory, sync_store, *, worker_id: str, lease_seconds: int = 30):
    dispatcher = SyncDispatcher(crm, outbox, session_factory, timeout_seconds=5, store=sync_store)
    return SyncOutboxWorker(
        outbox,
        dispatcher,
        worker_id=worker_id,
        batch_size=10,
        lease_seconds=lease_seconds,
        store=sync_store,
    )


@pytest.mark.asyncio
async def test_entry_taken_by_another_worker_mid_batch_is_skipped(outbox, session_factory, sync_store) -> None:
    first = await outbox.enqueue(SyncOperationType.BENEFIT_TICKET, "res-0", {"name": "Spa"})
    second = await outbox.enqueue(SyncOperationType.BENEFIT_TICKET, "res-1", {"name": "Spa"})

    async def steal_the_other(resource_id: str) -> None:
        # Another worker claims the remaining entry while this call is in flight.
        other = second if resource_id == "res-0" else first
        async with session_factory() as session:
            await session.execute(
                update(SyncQueueEntry)
                .where(SyncQueueEntry.id == other, SyncQueueEntry.completed_at.is_(None))
                .values(claimed_by="worker-b", claimed_until=utcnow() + timedelta(seconds=60))
            )
            await session.commit()

    crm = ScriptedTicketCrm(before_call=steal_the_other)
    worker = _ticket_worker(crm, outbox, session_factory, sync_store, worker_id="worker-a")

    summary = await worker.run_once()

    assert summary == {"claimed": 2, "succeeded": 1, "retry": 0, "terminal": 0, "skipped": 1}
    assert len(crm.calls) == 1
    stolen = [entry for entry in (await outbox.get(first), await outbox.get(second)) if entry.completed_at is None]
    assert len(stolen) == 1
    assert stolen[0].claimed_by == "worker-b"
    assert stolen[0].attempt_count == 0


@pytest.mark.asyncio
async def test_slow_crm_with_short_lease_sends_each_entry_once(outbox, session_factory, sync_store) -> None:
    await outbox.enqueue(SyncOperationType.BENEFIT_TICKET, "res-0", {"name": "Spa"})
    await outbox.enqueue(SyncOperationType.BENEFIT_TICKET, "res-1", {"name": "Spa"})

    crm = ScriptedTicketCrm(delay=1.2)
    worker_a = _ticket_worker(crm, outbox, session_factory, sync_store, worker_id="worker-a", lease_seconds=1)
    worker_b = _ticket_worker(crm, outbox, session_factory, sync_store, worker_id="worker-b", lease_seconds=1)

    async def late_run():
        await asyncio.sleep(1.5)
        return await worker_b.run_once()

    summary_a, summary_b = await asyncio.gather(worker_a.run_once(), late_run())

    assert sorted(resource_id for _, resource_id in crm.calls) == ["res-0", "res-1"]
    assert summary_a["succeeded"] + summary_b["succeeded"] == 2
    assert await outbox.list_pending() == []


@pytest.mark.asyncio
async def test_unexpected_crm_exception_is_recorded_and_batch_continues(outbox, session_factory, sync_store) -> None:
    broken = await outbox.enqueue(SyncOperationType.BENEFIT_TICKET, "res-0", {"name": "Spa"})
    healthy = await outbox.enqueue(SyncOperationType.BENEFIT_TICKET, "res-1", {"name": "Spa"})

    crm = ScriptedTicketCrm(explode_on={"res-0"})
    summary = await _ticket_worker(crm, outbox, session_factory, sync_store, worker_id="worker-a").run_once()

    assert summary == {"claimed": 2, "succeeded": 1, "retry": 1, "terminal": 0, "skipped": 0}
    failed = await outbox.get(broken)
    assert failed.attempt_count == 1
    assert not failed.is_terminal
    assert failed.claimed_by is None
    assert "RuntimeError" in failed.last_error
    assert (await outbox.get(healthy)).completed_at is not None


@pytest.mark.asyncio
async def test_store_error_while_recording_success_does_not_abort_batch(
    outbox, session_factory, sync_store, monkeypatch
) -> None:
    first = await outbox.enqueue(SyncOperationType.BENEFIT_TICKET, "res-0", {"name": "Spa"})
    second = await outbox.enqueue(SyncOperationType.BENEFIT_TICKET, "res-1", {"name": "Spa"})

    original = outbox.mark_succeeded
    failures = {"left": 1}

    async def flaky_mark_succeeded(entry_id, worker_id, **kwargs):
        if failures["left"]:
            failures["left"] -= 1
            raise TransientStoreError("sync_outbox.succeeded failed after 3 attempts")
        return await original(entry_id, worker_id, **kwargs)

    monkeypatch.setattr(outbox, "mark_succeeded", flaky_mark_succeeded)
    crm = ScriptedTicketCrm()
    summary = await _ticket_worker(crm, outbox, session_factory, sync_store, worker_id="worker-a").run_once()

    assert summary == {"claimed": 2, "succeeded": 1, "retry": 0, "terminal": 0, "skipped": 1}
    entries = [await outbox.get(first), await outbox.get(second)]
    assert sum(1 for entry in entries if entry.completed_at is not None) == 1
    unrecorded = next(entry for entry in entries if entry.completed_at is None)
    assert unrecorded.claimed_by == "worker-a"
    assert not unrecorded.is_terminal

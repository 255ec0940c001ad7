from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from rewards_api.core.time import ensure_utc, utcnow
from rewards_api.db.session import TransientStoreError
from rewards_api.models import SyncOperationType
from rewards_api.services.sync import SyncDispatcher, compute_backoff


def test_backoff_doubles_until_cap() -> None:
    delays = [compute_backoff(attempt, base_seconds=30, cap_seconds=600) for attempt in range(1, 10)]
    assert delays[0] == timedelta(seconds=30)
    assert delays[1] == timedelta(seconds=60)
    assert delays[2] == timedelta(seconds=120)
    assert all(earlier <= later for earlier, later in zip(delays, delays[1:]))
    assert max(delays) == timedelta(seconds=600)
    assert compute_backoff(500, base_seconds=30, cap_seconds=600) == timedelta(seconds=600)


@pytest.mark.asyncio
async def test_failed_attempts_back_off_then_go_terminal(outbox) -> None:
    now = utcnow()
    entry_id = await outbox.enqueue(SyncOperationType.ACCOUNT_SYNC, "acct-1", {"phone": "5554000001"}, now=now)

    retry_times = []
    current = now
    for expected_attempt in (1, 2):
        claimed = await outbox.claim_due("worker-a", limit=10, lease_seconds=30, now=current)
        assert [entry.id for entry in claimed] == [entry_id]
        outcome = await outbox.mark_failed(entry_id, "worker-a", "CRM down", now=current)
        assert outcome.attempt_count == expected_attempt
        assert not outcome.is_terminal
        retry_times.append(outcome.next_retry_at - current)
        assert await outbox.claim_due("worker-a", limit=10, lease_seconds=30, now=current) == []
        current = outcome.next_retry_at

    assert retry_times == [timedelta(seconds=60), timedelta(seconds=120)]

    await outbox.claim_due("worker-a", limit=10, lease_seconds=30, now=current)
    outcome = await outbox.mark_failed(entry_id, "worker-a", "CRM still down", now=current)
    assert outcome.is_terminal
    assert outcome.next_retry_at is None

    stored = await outbox.get(entry_id)
    assert stored.is_terminal
    assert stored.attempt_count == 3
    assert stored.last_error == "CRM still down"
    assert [entry.id for entry in await outbox.list_terminal()] == [entry_id]
    assert await outbox.claim_due("worker-a", limit=10, lease_seconds=30, now=current + timedelta(days=1)) == []


@pytest.mark.asyncio
async def test_leases_keep_entries_exclusive(outbox) -> None:
    now = utcnow()
    entry_id = await outbox.enqueue(SyncOperationType.REDEMPTION_TICKET, "r-1", {"item_name": "Mug"}, now=now)

    assert len(await outbox.claim_due("worker-a", limit=5, lease_seconds=60, now=now)) == 1
    assert await outbox.claim_due("worker-b", limit=5, lease_seconds=60, now=now + timedelta(seconds=30)) == []

    stolen = await outbox.claim_due("worker-b", limit=5, lease_seconds=60, now=now + timedelta(seconds=61))
    assert [entry.id for entry in stolen] == [entry_id]

    assert not await outbox.mark_succeeded(entry_id, "worker-a", remote_id="late")
    assert await outbox.mark_failed(entry_id, "worker-a", "late failure") is None
    assert await outbox.mark_succeeded(entry_id, "worker-b", remote_id="ticket-9")

    stored = await outbox.get(entry_id)
    assert stored.completed_at is not None
    assert stored.remote_id == "ticket-9"
    assert await outbox.list_pending() == []


@pytest.mark.asyncio
async def test_permanent_failure_and_operator_requeue(outbox) -> None:
    now = utcnow()
    entry_id = await outbox.enqueue(SyncOperationType.STATUS_UPDATE, "r-2", {"status": "delivered"}, now=now)
    assert not await outbox.requeue(entry_id)

    await outbox.claim_due("worker-a", limit=5, lease_seconds=60, now=now)
    outcome = await outbox.mark_failed(entry_id, "worker-a", "rejected", permanent=True, now=now)
    assert outcome.is_terminal
    assert outcome.attempt_count == 1

    assert await outbox.requeue(entry_id)
    stored = await outbox.get(entry_id)
    assert not stored.is_terminal
    assert stored.attempt_count == 0
    assert [entry.id for entry in await outbox.claim_due("worker-a", limit=5, lease_seconds=60)] == [entry_id]


@pytest.mark.asyncio
async def test_direct_sync_success_skips_outbox(operations, crm_client, sync_store, outbox) -> None:
    account = await operations.create_account("5554000011", "Direct Sync")
    await operations.effects.drain()

    assert crm_client.calls == [("sync_account", str(account.id))]
    assert await outbox.list_pending() == []
    assert sync_store.snapshot().outcomes.get("direct") == 1


@pytest.mark.asyncio
async def test_crm_failure_enqueues_for_retry(operations, crm_client, sync_store, outbox) -> None:
    crm_client.fail_next()
    account = await operations.create_account("5554000021", "Queued Sync")
    await operations.effects.drain()

    pending = await outbox.list_pending()
    assert len(pending) == 1
    entry = pending[0]
    assert entry.operation_type == SyncOperationType.ACCOUNT_SYNC
    assert entry.resource_id == str(account.id)
    assert entry.payload_json["phone"] == "5554000021"
    assert entry.attempt_count == 0
    assert sync_store.snapshot().outcomes.get("enqueued") == 1


@pytest.mark.asyncio
async def test_crm_rejection_is_stored_terminal(operations, crm_client, outbox) -> None:
    crm_client.fail_next(rejected=True)
    await operations.create_account("5554000031", "Rejected Sync")
    await operations.effects.drain()

    assert await outbox.list_pending() == []
    terminal = await outbox.list_terminal()
    assert len(terminal) == 1
    assert terminal[0].attempt_count == 1
    assert terminal[0].last_error == "injected failure"


@pytest.mark.asyncio
async def test_enqueue_failure_is_swallowed(session_factory, crm_client, sync_store) -> None:
    class BrokenOutbox:
        async def enqueue(self, *args, **kwargs):
            raise TransientStoreError("database unavailable")

    dispatcher = SyncDispatcher(crm_client, BrokenOutbox(), session_factory, timeout_seconds=1, store=sync_store)
    crm_client.fail_next()

    attempt = await dispatcher.sync_or_enqueue(SyncOperationType.ACCOUNT_SYNC, "acct-x", {"phone": "5554000041"})
    assert not attempt.delivered
    assert attempt.queue_id is None
    assert sync_store.snapshot().outcomes.get("enqueue_failed") == 1


@pytest.mark.asyncio
async def test_slow_crm_call_counts_as_retryable(session_factory, outbox, sync_store) -> None:
    class SlowCrm:
        async def sync_account(self, resource_id, snapshot):
            await asyncio.sleep(5)
            return "never"

    dispatcher = SyncDispatcher(SlowCrm(), outbox, session_factory, timeout_seconds=0.05, store=sync_store)
    attempt = await dispatcher.sync_or_enqueue(SyncOperationType.ACCOUNT_SYNC, "acct-slow", {"phone": "5554000051"})
    assert not attempt.delivered
    assert "timed out" in attempt.error

    stored = await outbox.get(attempt.queue_id)
    assert not stored.is_terminal
    assert ensure_utc(stored.next_retry_at) <= utcnow()

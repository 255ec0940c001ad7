from __future__ import annotations

import pytest
from sqlalchemy import func, select

from rewards_api.models import Account, AccountTier, LedgerEntry, LedgerEntryType
from rewards_api.services.errors import (
    AccountInactive,
    AccountNotFound,
    ConceptRequired,
    InsufficientFunds,
    InvalidAmount,
    InvalidName,
    InvalidPhone,
    PhoneAlreadyRegistered,
)
from rewards_api.services.ledger import LedgerService
from rewards_api.services.validation import coerce_points, normalize_phone


def test_normalize_phone_strips_formatting_and_country_prefix() -> None:
    assert normalize_phone("(555) 000-1234") == "5550001234"
    assert normalize_phone("+52 555 000 1234") == "5550001234"
    with pytest.raises(InvalidPhone):
        normalize_phone("12345")


def test_coerce_points_rejects_zero_fractions_and_bools() -> None:
    assert coerce_points("40") == 40
    assert coerce_points(-5.0) == -5
    for raw in (0, 1.5, "abc", True, None):
        with pytest.raises(InvalidAmount):
            coerce_points(raw)


@pytest.mark.asyncio
async def test_grant_points_updates_balance_and_ledger(operations, session_factory) -> None:
    account = await operations.create_account("555-000-0001", "Ana Torres")

    result = await operations.grant_points("5550000001", 100, "Welcome bonus")
    assert result.new_balance == 100
    assert result.delta == 100

    result = await operations.grant_points("5550000001", -40, "Correction")
    assert result.new_balance == 60

    entries = await operations.list_history(account.id)
    assert [entry.delta for entry in entries] == [-40, 100]
    assert {entry.entry_type for entry in entries} == {LedgerEntryType.GRANT, LedgerEntryType.ADJUSTMENT}

    audit = await operations.audit_balance(account.id)
    assert audit.stored_balance == 60
    assert audit.ledger_sum == 60
    assert audit.entry_count == 2
    assert audit.consistent


@pytest.mark.asyncio
async def test_debit_below_zero_is_rejected_without_entry(operations, session_factory) -> None:
    account = await operations.create_account("5550000002", "Luis Perez")
    await operations.grant_points("5550000002", 10, "Seed")

    with pytest.raises(InsufficientFunds):
        await operations.grant_points("5550000002", -30, "Too much")

    async with session_factory() as session:
        balance = await session.scalar(select(Account.points_balance).where(Account.id == account.id))
        count = await session.scalar(select(func.count(LedgerEntry.id)).where(LedgerEntry.account_id == account.id))
    assert balance == 10
    assert count == 1


@pytest.mark.asyncio
async def test_grant_validation_runs_before_lookup(operations) -> None:
    with pytest.raises(InvalidAmount):
        await operations.grant_points("5550000003", 0, "Nothing")
    with pytest.raises(ConceptRequired):
        await operations.grant_points("5550000003", 10, "   ")
    with pytest.raises(AccountNotFound):
        await operations.grant_points("5550000003", 10, "Unknown member")


@pytest.mark.asyncio
async def test_inactive_account_cannot_receive_points(operations) -> None:
    account = await operations.create_account("5550000004", "Inactive Member")
    await operations.deactivate_account(account.id)

    with pytest.raises(AccountInactive):
        await operations.grant_points("5550000004", 10, "Should fail")


@pytest.mark.asyncio
async def test_create_account_validates_input(operations) -> None:
    await operations.create_account("5550000005", "Maria Lopez")

    with pytest.raises(PhoneAlreadyRegistered):
        await operations.create_account("+52 555 000 0005", "Maria Again")
    with pytest.raises(InvalidName):
        await operations.create_account("5550000006", "Al")


@pytest.mark.asyncio
async def test_apply_delta_rejects_zero(session_factory, member_factory) -> None:
    account = await member_factory()
    async with session_factory() as session:
        with pytest.raises(InvalidAmount):
            await LedgerService(session).apply_delta(account.id, 0, "noop")


@pytest.mark.asyncio
async def test_tier_change_notifies_and_syncs_only_when_changed(
    operations, push_backend, crm_client
) -> None:
    account = await operations.create_account("5550000007", "Tier Member")
    await operations.effects.drain()
    baseline_calls = len(crm_client.calls)

    await operations.change_tier(account.id, AccountTier.STANDARD)
    await operations.effects.drain()
    assert len(crm_client.calls) == baseline_calls
    assert not [msg for msg in push_backend.sent_messages if msg["metadata"]["event_type"] == "tier_changed"]

    updated = await operations.change_tier(account.id, AccountTier.VIP)
    await operations.effects.drain()
    assert updated.tier == AccountTier.VIP
    assert len(crm_client.calls) == baseline_calls + 1
    tier_pushes = [msg for msg in push_backend.sent_messages if msg["metadata"]["event_type"] == "tier_changed"]
    assert len(tier_pushes) == 1
    assert "vip" in tier_pushes[0]["body"]


@pytest.mark.asyncio
async def test_grant_pushes_member_and_records_crm_reference(
    operations, push_backend, crm_client
) -> None:
    account = await operations.create_account("5550000008", "Pushed Member")
    await operations.grant_points("5550000008", 25, "Visit")
    await operations.effects.drain()

    pushes = [msg for msg in push_backend.sent_messages if msg["metadata"]["event_type"] == "points_received"]
    assert len(pushes) == 1
    assert pushes[0]["recipient"] == "5550000008"
    assert "25 points" in pushes[0]["body"]

    contact = crm_client.contacts["phone:5550000008"]
    assert contact["points_balance"] == 25

    refreshed = await operations.get_account(account.id)
    assert refreshed.crm_remote_id == contact["id"]
    assert refreshed.crm_synced_at is not None

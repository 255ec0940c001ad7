from __future__ import annotations

import asyncio
from datetime import timedelta
from uuid import uuid4

import pytest
from sqlalchemy import select

from rewards_api.core.time import utcnow
from rewards_api.models import BenefitStatus, ClaimedBenefit, GiftBenefitType, LedgerEntry, LedgerEntryType
from rewards_api.services.errors import (
    AccountInactive,
    AccountNotFound,
    AlreadyClaimed,
    BenefitNotFound,
    BenefitUnavailable,
    GiftExhausted,
    GiftExpired,
    GiftNotFound,
    InvalidBenefitDefinition,
    InvalidGiftDefinition,
    WrongRecipient,
)
from rewards_api.services.gifts import GIFT_CODE_ALPHABET, GIFT_CODE_LENGTH, GiftLinkDefinition


def _points_gift(points: int = 50, **kwargs) -> GiftLinkDefinition:
    return GiftLinkDefinition(benefit_type=GiftBenefitType.POINTS, points_amount=points, **kwargs)


@pytest.mark.asyncio
async def test_single_use_points_gift_creates_account_on_claim(operations, session_factory) -> None:
    link = await operations.create_gift_link(_points_gift(75))
    assert len(link.code) == GIFT_CODE_LENGTH
    assert set(link.code) <= set(GIFT_CODE_ALPHABET)
    assert link.claim_capacity == 1

    result = await operations.claim_gift(link.code.lower(), "555-200-0001")
    assert result.is_new_account
    assert result.benefit.points == 75
    assert result.new_balance == 75
    assert result.claim_count == 1

    account = await operations.get_account(result.account_id)
    assert account.display_name == "Member 0001"
    assert account.points_balance == 75

    async with session_factory() as session:
        entry = await session.scalar(select(LedgerEntry).where(LedgerEntry.account_id == result.account_id))
    assert entry.entry_type == LedgerEntryType.GIFT
    assert entry.gift_link_id == link.id

    with pytest.raises(GiftExhausted):
        await operations.claim_gift(link.code, "5552000002")

    view = await operations.get_gift(link.code)
    assert view.availability == "exhausted"


@pytest.mark.asyncio
async def test_promo_campaign_stops_at_capacity(operations) -> None:
    link = await operations.create_gift_link(_points_gift(10, is_campaign=True, max_claims=2, code="promo"))
    assert link.code == "PROMO"

    first = await operations.claim_gift("PROMO", "5552000011")
    second = await operations.claim_gift("PROMO", "5552000012")
    assert (first.claim_count, second.claim_count) == (1, 2)

    with pytest.raises(GiftExhausted):
        await operations.claim_gift("PROMO", "5552000013")

    claims = await operations.list_link_claims(link.id)
    assert len(claims) == 2


@pytest.mark.asyncio
async def test_concurrent_claims_never_exceed_capacity(operations, session_factory) -> None:
    link = await operations.create_gift_link(_points_gift(5, is_campaign=True, max_claims=2))

    outcomes = await asyncio.gather(
        *(operations.claim_gift(link.code, f"55520001{index:02d}") for index in range(5)),
        return_exceptions=True,
    )
    successes = [outcome for outcome in outcomes if not isinstance(outcome, Exception)]
    failures = [outcome for outcome in outcomes if isinstance(outcome, Exception)]
    assert len(successes) == 2
    assert all(isinstance(failure, GiftExhausted) for failure in failures)

    view = await operations.get_gift(link.code)
    assert view.link.claim_count == 2
    assert view.availability == "exhausted"


@pytest.mark.asyncio
async def test_same_phone_racing_on_campaign_claims_once(operations) -> None:
    link = await operations.create_gift_link(_points_gift(20, is_campaign=True, max_claims=10))

    outcomes = await asyncio.gather(
        operations.claim_gift(link.code, "5552000021"),
        operations.claim_gift(link.code, "5552000021"),
        return_exceptions=True,
    )
    successes = [outcome for outcome in outcomes if not isinstance(outcome, Exception)]
    failures = [outcome for outcome in outcomes if isinstance(outcome, Exception)]
    assert len(successes) == 1
    assert len(failures) == 1
    assert isinstance(failures[0], AlreadyClaimed)

    account = await operations.get_account_by_phone("5552000021")
    assert account.points_balance == 20


@pytest.mark.asyncio
async def test_exclusive_gift_rejects_other_recipients(operations) -> None:
    link = await operations.create_gift_link(_points_gift(30, recipient_phone="+52 555 200 0031"))
    assert link.recipient_phone == "5552000031"

    with pytest.raises(WrongRecipient):
        await operations.claim_gift(link.code, "5552000032")

    result = await operations.claim_gift(link.code, "5552000031")
    assert result.new_balance == 30


@pytest.mark.asyncio
async def test_expired_and_deactivated_links_cannot_be_claimed(operations) -> None:
    lapsed = await operations.create_gift_link(_points_gift(15))
    await operations.update_gift_link(lapsed.id, expires_at=utcnow() - timedelta(minutes=1))
    with pytest.raises(GiftExpired):
        await operations.claim_gift(lapsed.code, "5552000041")

    revoked = await operations.create_gift_link(_points_gift(15))
    await operations.expire_gift_link(revoked.id)
    with pytest.raises(GiftExpired):
        await operations.claim_gift(revoked.code, "5552000041")
    assert (await operations.get_gift(revoked.code)).availability == "expired"

    with pytest.raises(GiftNotFound):
        await operations.claim_gift("NOPE1234", "5552000041")


@pytest.mark.asyncio
async def test_gift_definitions_are_validated(operations) -> None:
    with pytest.raises(InvalidGiftDefinition):
        await operations.create_gift_link(GiftLinkDefinition(benefit_type=GiftBenefitType.SERVICE))

    single = await operations.create_gift_link(_points_gift(5))
    with pytest.raises(InvalidGiftDefinition):
        await operations.update_gift_link(single.id, max_claims=5)


@pytest.mark.asyncio
async def test_view_counter_increments(operations) -> None:
    link = await operations.create_gift_link(_points_gift(5, message="Thanks for visiting", theme_color="#ff8800"))

    await operations.record_view(link.code)
    view = await operations.record_view(link.code)
    assert view.link.view_count == 2
    assert view.availability == "available"

    with pytest.raises(GiftNotFound):
        await operations.record_view("MISSING1")


@pytest.mark.asyncio
async def test_service_gift_benefit_lifecycle(operations, crm_client, push_backend, member_factory) -> None:
    admin = await member_factory(is_admin=True)
    link = await operations.create_gift_link(
        GiftLinkDefinition(
            benefit_type=GiftBenefitType.SERVICE,
            service_name="Free haircut",
            service_description="Any stylist",
            benefit_valid_days=30,
        )
    )

    result = await operations.claim_gift(link.code, "5552000051", display_name="Carla Ruiz")
    assert result.new_balance is None
    assert result.benefit.name == "Free haircut"
    assert result.benefit.expires_at is not None
    await operations.effects.drain()

    benefit_id = str(result.benefit.benefit_id)
    assert crm_client.tickets[benefit_id]["kind"] == "benefit"
    events = {(msg["recipient"], msg["metadata"]["event_type"]) for msg in push_backend.sent_messages}
    assert ("5552000051", "benefit_claimed") in events
    assert (admin.phone, "new_benefit") in events

    benefits = await operations.list_account_benefits(result.account_id)
    assert [benefit.status for benefit in benefits] == [BenefitStatus.ACTIVE]

    used = await operations.mark_benefit_used(result.benefit.benefit_id, admin_account_id=admin.id, notes="Done")
    assert used.status == BenefitStatus.USED
    assert used.used_by_account_id == admin.id
    await operations.effects.drain()
    assert crm_client.tickets[benefit_id]["status"] == "used"

    with pytest.raises(BenefitUnavailable):
        await operations.mark_benefit_used(result.benefit.benefit_id)


@pytest.mark.asyncio
async def test_lapsed_benefits_expire_in_sweep(operations, session_factory) -> None:
    link = await operations.create_gift_link(
        GiftLinkDefinition(benefit_type=GiftBenefitType.SERVICE, service_name="Spa day", benefit_valid_days=7)
    )
    result = await operations.claim_gift(link.code, "5552000061")

    summary = await operations.expire_lapsed(now=utcnow() + timedelta(days=8))
    assert summary["benefits"] == 1

    async with session_factory() as session:
        status = await session.scalar(
            select(ClaimedBenefit.status).where(ClaimedBenefit.id == result.benefit.benefit_id)
        )
    assert status == BenefitStatus.EXPIRED

    with pytest.raises(BenefitUnavailable):
        await operations.mark_benefit_used(result.benefit.benefit_id)


@pytest.mark.asyncio
async def test_assigned_benefit_lifecycle(operations, crm_client, push_backend, member_factory) -> None:
    admin = await member_factory(is_admin=True)
    member = await operations.create_account("5552000071", "Partner Member")

    benefit = await operations.assign_benefit(
        member.id,
        "  Monthly detailing ",
        description="Partner perk",
        admin_account_id=admin.id,
    )
    assert benefit.name == "Monthly detailing"
    assert benefit.gift_link_id is None
    assert benefit.status == BenefitStatus.ACTIVE
    assert benefit.expires_at is None
    assert benefit.assigned_by_account_id == admin.id

    await operations.effects.drain()
    assert crm_client.tickets[str(benefit.id)]["name"] == "Monthly detailing"
    events = {(msg["recipient"], msg["metadata"]["event_type"]) for msg in push_backend.sent_messages}
    assert ("5552000071", "benefit_assigned") in events

    assert await operations.list_benefit_history(member.id) == []
    used = await operations.mark_benefit_used(benefit.id, admin_account_id=admin.id)
    assert used.used_at is not None

    history = await operations.list_benefit_history(member.id)
    assert [entry.id for entry in history] == [benefit.id]

    with pytest.raises(BenefitUnavailable):
        await operations.delete_benefit(benefit.id)


@pytest.mark.asyncio
async def test_assigned_benefits_are_validated(operations, member_factory) -> None:
    member = await operations.create_account("5552000081", "Partner Member")
    inactive = await member_factory(is_active=False)

    with pytest.raises(InvalidBenefitDefinition):
        await operations.assign_benefit(member.id, "   ")
    with pytest.raises(InvalidBenefitDefinition):
        await operations.assign_benefit(member.id, "Car wash", valid_days=0)
    with pytest.raises(AccountNotFound):
        await operations.assign_benefit(uuid4(), "Car wash")
    with pytest.raises(AccountInactive):
        await operations.assign_benefit(inactive.id, "Car wash")

    expiring = await operations.assign_benefit(member.id, "Car wash", valid_days=10)
    assert expiring.expires_at is not None


@pytest.mark.asyncio
async def test_delete_only_removes_unused_assigned_benefits(operations) -> None:
    member = await operations.create_account("5552000091", "Partner Member")
    assigned = await operations.assign_benefit(member.id, "Oil change")
    await operations.delete_benefit(assigned.id)
    assert await operations.list_account_benefits(member.id) == []

    with pytest.raises(BenefitNotFound):
        await operations.delete_benefit(assigned.id)

    link = await operations.create_gift_link(
        GiftLinkDefinition(benefit_type=GiftBenefitType.SERVICE, service_name="Spa day")
    )
    claimed = await operations.claim_gift(link.code, "5552000091")
    with pytest.raises(BenefitUnavailable):
        await operations.delete_benefit(claimed.benefit.benefit_id)

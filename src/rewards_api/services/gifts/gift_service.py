"""Gift links: creation, capacity-guarded claims and claimed benefits."""

from __future__ import annotations

import secrets
import string
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Literal
from uuid import UUID

from loguru import logger
from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from rewards_api.core.time import ensure_utc, utcnow
from rewards_api.models.account import Account, LedgerEntryType
from rewards_api.models.gifts import (
    BenefitStatus,
    ClaimedBenefit,
    GiftBenefitType,
    GiftClaim,
    GiftLink,
)
from rewards_api.services.errors import (
    AccountInactive,
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
from rewards_api.services.ledger import LedgerService
from rewards_api.services.program_config import ProgramConfig

GIFT_CODE_ALPHABET = string.ascii_uppercase + string.digits
GIFT_CODE_LENGTH = 8

GiftAvailability = Literal["available", "expired", "exhausted"]


@dataclass
class GiftLinkDefinition:
    """Admin input for a new gift link; omitted values come from program config."""

    benefit_type: GiftBenefitType
    points_amount: int | None = None
    service_name: str | None = None
    service_description: str | None = None
    benefit_valid_days: int | None = None
    recipient_phone: str | None = None
    message: str | None = None
    theme_color: str | None = None
    expires_in_days: int | None = None
    is_campaign: bool = False
    max_claims: int | None = None
    code: str | None = None


@dataclass
class GiftBenefit:
    """What a claim handed to the account."""

    benefit_type: GiftBenefitType
    points: int | None = None
    benefit_id: UUID | None = None
    name: str | None = None
    expires_at: datetime | None = None


@dataclass
class ClaimResult:
    """Outcome of a successful gift claim."""

    account_id: UUID
    is_new_account: bool
    benefit: GiftBenefit
    gift_link_id: UUID
    claim_count: int
    new_balance: int | None = None


def gift_availability(link: GiftLink, *, now: datetime | None = None) -> GiftAvailability:
    current = now or utcnow()
    if not link.is_active or ensure_utc(link.expires_at) <= current:
        return "expired"
    if int(link.claim_count or 0) >= link.claim_capacity:
        return "exhausted"
    return "available"


def benefit_ticket_details(benefit: ClaimedBenefit, account: Account) -> dict[str, Any]:
    expires_at = ensure_utc(benefit.expires_at)
    return {
        "benefit_id": str(benefit.id),
        "account_id": str(account.id),
        "phone": account.phone,
        "name": benefit.name,
        "expires_at": expires_at.isoformat() if expires_at else None,
    }


def normalize_gift_code(code: str) -> str:
    return str(code or "").strip().upper()


class GiftService:
    """Single-use and campaign gift links with race-free claim accounting."""

    def __init__(self, db_session: AsyncSession, *, ledger: LedgerService | None = None) -> None:
        self._db = db_session
        self._ledger = ledger or LedgerService(db_session)

    async def get_link_by_code(self, code: str, *, for_update: bool = False) -> GiftLink | None:
        stmt = select(GiftLink).where(GiftLink.code == normalize_gift_code(code))
        if for_update:
            stmt = stmt.with_for_update()
        result = await self._db.execute(stmt.execution_options(populate_existing=True))
        return result.scalar_one_or_none()

    async def get_link(self, link_id: UUID, *, for_update: bool = False) -> GiftLink | None:
        stmt = select(GiftLink).where(GiftLink.id == link_id)
        if for_update:
            stmt = stmt.with_for_update()
        result = await self._db.execute(stmt.execution_options(populate_existing=True))
        return result.scalar_one_or_none()

    async def create_gift_link(
        self,
        definition: GiftLinkDefinition,
        config: ProgramConfig,
        *,
        created_by_account_id: UUID | None = None,
    ) -> GiftLink:
        if definition.benefit_type == GiftBenefitType.POINTS:
            points = definition.points_amount or config.gift_default_points
            if points <= 0:
                raise InvalidGiftDefinition("Gifted points must be positive.")
        else:
            points = None
            if not (definition.service_name or "").strip():
                raise InvalidGiftDefinition("Service gifts need a service name.")

        if definition.is_campaign:
            max_claims = definition.max_claims or config.campaign_default_max_claims
            if max_claims < 1:
                raise InvalidGiftDefinition("Campaigns need at least one claim.")
        else:
            max_claims = 1

        expires_in = definition.expires_in_days or config.gift_link_expiry_days
        code = normalize_gift_code(definition.code) if definition.code else await self._generate_unique_code()

        link = GiftLink(
            code=code,
            benefit_type=definition.benefit_type,
            points_amount=points,
            service_name=(definition.service_name or "").strip() or None,
            service_description=definition.service_description,
            benefit_valid_days=definition.benefit_valid_days
            if definition.benefit_valid_days is not None
            else config.benefit_valid_days,
            recipient_phone=definition.recipient_phone,
            message=definition.message,
            theme_color=definition.theme_color,
            expires_at=utcnow() + timedelta(days=expires_in),
            is_campaign=definition.is_campaign,
            max_claims=max_claims,
            claim_count=0,
            created_by_account_id=created_by_account_id,
            created_at=utcnow(),
        )
        self._db.add(link)
        await self._db.flush()
        logger.info(
            "Created gift link",
            gift_link_id=str(link.id),
            benefit_type=link.benefit_type.value,
            campaign=link.is_campaign,
            max_claims=max_claims,
        )
        return link

    async def record_view(self, code: str) -> GiftLink:
        stmt = (
            update(GiftLink)
            .where(GiftLink.code == normalize_gift_code(code))
            .values(view_count=GiftLink.view_count + 1)
            .execution_options(synchronize_session=False)
        )
        result = await self._db.execute(stmt)
        if result.rowcount != 1:
            raise GiftNotFound()
        return await self.get_link_by_code(code)

    async def claim_gift(
        self,
        code: str,
        phone: str,
        *,
        display_name: str | None = None,
    ) -> ClaimResult:
        """Claim a gift for ``phone``, creating the account on first contact.

        The capacity check is repeated as a conditional increment of
        ``claim_count`` so two claims racing for the last slot cannot both win.
        """

        link = await self.get_link_by_code(code, for_update=True)
        if link is None:
            raise GiftNotFound()

        now = utcnow()
        if not link.is_active or ensure_utc(link.expires_at) <= now:
            raise GiftExpired()
        capacity = link.claim_capacity
        if int(link.claim_count or 0) >= capacity:
            raise GiftExhausted()
        if link.recipient_phone and link.recipient_phone != phone:
            raise WrongRecipient()

        account = await self._ledger.get_account_by_phone(phone, for_update=True)
        is_new_account = account is None
        if account is None:
            account = await self._ledger.create_account(
                phone=phone,
                display_name=(display_name or "").strip() or f"Member {phone[-4:]}",
            )
        elif not account.is_active:
            raise AccountInactive()
        else:
            previous = await self._db.scalar(
                select(GiftClaim.id).where(
                    GiftClaim.gift_link_id == link.id,
                    GiftClaim.account_id == account.id,
                )
            )
            if previous is not None:
                raise AlreadyClaimed()

        stmt = (
            update(GiftLink)
            .where(
                GiftLink.id == link.id,
                GiftLink.is_active.is_(True),
                GiftLink.claim_count < capacity,
            )
            .values(claim_count=GiftLink.claim_count + 1)
            .execution_options(synchronize_session=False)
        )
        result = await self._db.execute(stmt)
        if result.rowcount != 1:
            raise GiftExhausted()

        new_balance: int | None = None
        benefit_record: ClaimedBenefit | None = None
        if link.benefit_type == GiftBenefitType.POINTS:
            points = int(link.points_amount or 0)
            new_balance = await self._ledger.apply_delta(
                account.id,
                points,
                f"Gift {link.code}",
                entry_type=LedgerEntryType.GIFT,
                gift_link_id=link.id,
            )
            benefit = GiftBenefit(benefit_type=GiftBenefitType.POINTS, points=points)
        else:
            expires_at = None
            if link.benefit_valid_days:
                expires_at = now + timedelta(days=int(link.benefit_valid_days))
            benefit_record = ClaimedBenefit(
                account_id=account.id,
                gift_link_id=link.id,
                name=link.service_name or "Gift",
                description=link.service_description,
                status=BenefitStatus.ACTIVE,
                expires_at=expires_at,
                created_at=now,
            )
            self._db.add(benefit_record)
            await self._db.flush()
            benefit = GiftBenefit(
                benefit_type=GiftBenefitType.SERVICE,
                benefit_id=benefit_record.id,
                name=benefit_record.name,
                expires_at=expires_at,
            )

        claim = GiftClaim(
            gift_link_id=link.id,
            account_id=account.id,
            benefit_id=benefit_record.id if benefit_record else None,
            points_awarded=benefit.points,
            created_account=is_new_account,
            created_at=now,
        )
        self._db.add(claim)
        await self._db.flush()

        claim_count = int(
            await self._db.scalar(select(GiftLink.claim_count).where(GiftLink.id == link.id)) or 0
        )
        logger.info(
            "Gift claimed",
            gift_link_id=str(link.id),
            account_id=str(account.id),
            new_account=is_new_account,
            claim_count=claim_count,
        )
        return ClaimResult(
            account_id=account.id,
            is_new_account=is_new_account,
            benefit=benefit,
            gift_link_id=link.id,
            claim_count=claim_count,
            new_balance=new_balance,
        )

    async def expire_gift_link(self, link_id: UUID) -> GiftLink:
        link = await self.get_link(link_id, for_update=True)
        if link is None:
            raise GiftNotFound()
        link.is_active = False
        await self._db.flush()
        logger.info("Expired gift link", gift_link_id=str(link_id))
        return link

    async def update_gift_link(
        self,
        link_id: UUID,
        *,
        message: str | None = None,
        theme_color: str | None = None,
        expires_at: datetime | None = None,
        max_claims: int | None = None,
    ) -> GiftLink:
        link = await self.get_link(link_id, for_update=True)
        if link is None:
            raise GiftNotFound()
        if max_claims is not None:
            if not link.is_campaign:
                raise InvalidGiftDefinition("Only campaigns accept more than one claim.")
            if max_claims < max(1, int(link.claim_count or 0)):
                raise InvalidGiftDefinition("Capacity cannot drop below the claims already made.")
            link.max_claims = max_claims
        if message is not None:
            link.message = message
        if theme_color is not None:
            link.theme_color = theme_color
        if expires_at is not None:
            link.expires_at = expires_at
        await self._db.flush()
        return link

    async def list_links(self, *, limit: int = 100) -> list[GiftLink]:
        stmt = select(GiftLink).order_by(GiftLink.created_at.desc()).limit(limit)
        result = await self._db.execute(stmt)
        return list(result.scalars().all())

    async def list_link_claims(self, link_id: UUID) -> list[GiftClaim]:
        stmt = (
            select(GiftClaim)
            .where(GiftClaim.gift_link_id == link_id)
            .order_by(GiftClaim.created_at.asc())
        )
        result = await self._db.execute(stmt)
        return list(result.scalars().all())

    async def list_account_benefits(self, account_id: UUID) -> list[ClaimedBenefit]:
        stmt = (
            select(ClaimedBenefit)
            .where(ClaimedBenefit.account_id == account_id)
            .order_by(ClaimedBenefit.created_at.desc())
        )
        result = await self._db.execute(stmt)
        return list(result.scalars().all())

    async def get_benefit(self, benefit_id: UUID) -> ClaimedBenefit | None:
        stmt = select(ClaimedBenefit).where(ClaimedBenefit.id == benefit_id)
        result = await self._db.execute(stmt.execution_options(populate_existing=True))
        return result.scalar_one_or_none()

    async def assign_benefit(
        self,
        account_id: UUID,
        name: str,
        *,
        description: str | None = None,
        valid_days: int | None = None,
        admin_account_id: UUID | None = None,
    ) -> ClaimedBenefit:
        """Give a member a service benefit directly, without a gift link."""

        cleaned = (name or "").strip()
        if not cleaned:
            raise InvalidBenefitDefinition()
        if valid_days is not None and valid_days <= 0:
            raise InvalidBenefitDefinition("Validity must be at least one day.")

        account = await self._ledger.require_account(account_id)

        now = utcnow()
        benefit = ClaimedBenefit(
            account_id=account.id,
            gift_link_id=None,
            name=cleaned,
            description=description,
            status=BenefitStatus.ACTIVE,
            expires_at=now + timedelta(days=valid_days) if valid_days else None,
            assigned_by_account_id=admin_account_id,
            created_at=now,
        )
        self._db.add(benefit)
        await self._db.flush()
        logger.info("Assigned benefit", benefit_id=str(benefit.id), account_id=str(account.id))
        return benefit

    async def delete_benefit(self, benefit_id: UUID) -> ClaimedBenefit:
        """Remove an assigned benefit that has not been used yet.

        Benefits that came from a gift link stay for the claim record.
        """

        benefit = await self.get_benefit(benefit_id)
        if benefit is None:
            raise BenefitNotFound()
        if benefit.gift_link_id is not None or benefit.status != BenefitStatus.ACTIVE:
            raise BenefitUnavailable("Only unused assigned benefits can be deleted.")
        await self._db.delete(benefit)
        await self._db.flush()
        logger.info("Deleted assigned benefit", benefit_id=str(benefit_id))
        return benefit

    async def list_benefit_history(self, account_id: UUID, *, limit: int = 50) -> list[ClaimedBenefit]:
        stmt = (
            select(ClaimedBenefit)
            .where(
                ClaimedBenefit.account_id == account_id,
                ClaimedBenefit.status == BenefitStatus.USED,
            )
            .order_by(ClaimedBenefit.used_at.desc())
            .limit(limit)
        )
        result = await self._db.execute(stmt)
        return list(result.scalars().all())

    async def mark_benefit_used(
        self,
        benefit_id: UUID,
        *,
        admin_account_id: UUID | None = None,
        notes: str | None = None,
    ) -> ClaimedBenefit:
        """Consume an active, unexpired benefit exactly once."""

        now = utcnow()
        stmt = (
            update(ClaimedBenefit)
            .where(
                ClaimedBenefit.id == benefit_id,
                ClaimedBenefit.status == BenefitStatus.ACTIVE,
                or_(ClaimedBenefit.expires_at.is_(None), ClaimedBenefit.expires_at > now),
            )
            .values(
                status=BenefitStatus.USED,
                used_at=now,
                used_by_account_id=admin_account_id,
                notes=notes,
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._db.execute(stmt)
        if result.rowcount != 1:
            if await self.get_benefit(benefit_id) is None:
                raise BenefitNotFound()
            raise BenefitUnavailable()

        benefit = await self.get_benefit(benefit_id)
        logger.info("Benefit marked as used", benefit_id=str(benefit_id))
        return benefit

    async def expire_lapsed_benefits(self, *, now: datetime | None = None) -> int:
        current = now or utcnow()
        stmt = (
            update(ClaimedBenefit)
            .where(
                ClaimedBenefit.status == BenefitStatus.ACTIVE,
                ClaimedBenefit.expires_at.is_not(None),
                ClaimedBenefit.expires_at <= current,
            )
            .values(status=BenefitStatus.EXPIRED)
            .execution_options(synchronize_session=False)
        )
        result = await self._db.execute(stmt)
        return int(result.rowcount or 0)

    async def _generate_unique_code(self) -> str:
        while True:
            candidate = "".join(secrets.choice(GIFT_CODE_ALPHABET) for _ in range(GIFT_CODE_LENGTH))
            exists = await self._db.scalar(select(GiftLink.id).where(GiftLink.code == candidate))
            if exists is None:
                return candidate

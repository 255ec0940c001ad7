"""Referral codes, applications and one-time activation awards."""

from __future__ import annotations

import secrets
import string
from dataclasses import dataclass
from datetime import datetime, timedelta
from uuid import UUID

from loguru import logger
from sqlalchemy import case, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from rewards_api.core.time import ensure_utc, utcnow
from rewards_api.models.account import LedgerEntryType
from rewards_api.models.referral import ReferralCode, ReferralRelationship, ReferralStatus
from rewards_api.services.errors import (
    InvalidReferralCode,
    ReferralAlreadyUsed,
    ReferralLimitReached,
    ReferralNotFound,
    ReferralNotPending,
    ReferralProgramInactive,
)
from rewards_api.services.ledger import LedgerService
from rewards_api.services.program_config import ProgramConfig

REFERRAL_CODE_ALPHABET = string.ascii_uppercase + string.digits
REFERRAL_CODE_LENGTH = 8


@dataclass
class ReferralApplication:
    """Result of attaching a referred account to a referrer."""

    relationship_id: UUID
    referrer_id: UUID
    points_awarded: int
    activation_deadline: datetime


@dataclass
class ReferralActivation:
    relationship_id: UUID
    referrer_id: UUID
    referred_id: UUID
    referrer_points: int
    referred_points: int
    referrer_awarded: bool
    referred_awarded: bool
    referred_balance: int


@dataclass
class ReferralStats:
    code: str | None
    total: int
    pending: int
    active: int
    expired: int
    cancelled: int
    points_earned: int


def normalize_referral_code(code: str) -> str:
    return str(code or "").strip().upper()


def _month_start(moment: datetime) -> datetime:
    return moment.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


class ReferralService:
    """Tracks referrals from code application through activation or expiry."""

    def __init__(self, db_session: AsyncSession, *, ledger: LedgerService | None = None) -> None:
        self._db = db_session
        self._ledger = ledger or LedgerService(db_session)

    async def get_code_for_account(self, account_id: UUID) -> ReferralCode | None:
        result = await self._db.execute(select(ReferralCode).where(ReferralCode.account_id == account_id))
        return result.scalar_one_or_none()

    async def get_or_create_code(self, account_id: UUID) -> ReferralCode:
        existing = await self.get_code_for_account(account_id)
        if existing is not None:
            return existing

        await self._ledger.require_account(account_id)
        code = ReferralCode(account_id=account_id, code=await self._generate_unique_code(), is_active=True)
        self._db.add(code)
        await self._db.flush()
        logger.info("Issued referral code", account_id=str(account_id))
        return code

    async def apply_referral_code(
        self,
        account_id: UUID,
        code: str,
        config: ProgramConfig,
    ) -> ReferralApplication:
        """Attach ``account_id`` to the owner of ``code``.

        Points are credited on activation; the application only records the
        amounts promised and the deadline for a qualifying event.
        """

        if not config.referrals_enabled:
            raise ReferralProgramInactive()

        referred = await self._ledger.require_account(account_id, for_update=True)

        result = await self._db.execute(
            select(ReferralCode).where(
                ReferralCode.code == normalize_referral_code(code),
                ReferralCode.is_active.is_(True),
            )
        )
        referral_code = result.scalar_one_or_none()
        if referral_code is None or referral_code.account_id == referred.id:
            raise InvalidReferralCode()

        referrer = await self._ledger.get_account(referral_code.account_id, for_update=True)
        if referrer is None or not referrer.is_active:
            raise InvalidReferralCode()

        already = await self._db.scalar(
            select(ReferralRelationship.id).where(ReferralRelationship.referred_id == referred.id)
        )
        if already is not None:
            raise ReferralAlreadyUsed()

        now = utcnow()
        if config.referral_total_limit > 0:
            total = await self._db.scalar(
                select(func.count(ReferralRelationship.id)).where(
                    ReferralRelationship.referrer_id == referrer.id
                )
            )
            if int(total or 0) >= config.referral_total_limit:
                raise ReferralLimitReached()
        if config.referral_monthly_limit > 0:
            this_month = await self._db.scalar(
                select(func.count(ReferralRelationship.id)).where(
                    ReferralRelationship.referrer_id == referrer.id,
                    ReferralRelationship.created_at >= _month_start(now),
                )
            )
            if int(this_month or 0) >= config.referral_monthly_limit:
                raise ReferralLimitReached("The referrer reached this month's referral limit.")

        deadline = now + timedelta(days=config.referral_activation_days)
        relationship = ReferralRelationship(
            referrer_id=referrer.id,
            referred_id=referred.id,
            code=referral_code.code,
            status=ReferralStatus.PENDING,
            referrer_points=config.referrer_points,
            referred_points=config.referred_points,
            activation_deadline=deadline,
            created_at=now,
        )
        self._db.add(relationship)
        await self._db.flush()
        logger.info(
            "Referral code applied",
            referral_id=str(relationship.id),
            referrer_id=str(referrer.id),
            referred_id=str(referred.id),
        )
        return ReferralApplication(
            relationship_id=relationship.id,
            referrer_id=referrer.id,
            points_awarded=config.referred_points,
            activation_deadline=deadline,
        )

    async def activate_referral(
        self,
        referred_account_id: UUID,
        *,
        now: datetime | None = None,
    ) -> ReferralActivation | None:
        """Activate the pending referral of ``referred_account_id`` if any.

        Returns ``None`` when there is nothing to activate. A relationship past
        its deadline is expired instead of activated.
        """

        current = now or utcnow()
        result = await self._db.execute(
            select(ReferralRelationship)
            .where(
                ReferralRelationship.referred_id == referred_account_id,
                ReferralRelationship.status == ReferralStatus.PENDING,
            )
            .execution_options(populate_existing=True)
        )
        relationship = result.scalar_one_or_none()
        if relationship is None:
            return None

        if ensure_utc(relationship.activation_deadline) <= current:
            await self._transition(relationship.id, ReferralStatus.EXPIRED, current)
            logger.info("Referral expired before activation", referral_id=str(relationship.id))
            return None

        if not await self._transition(relationship.id, ReferralStatus.ACTIVE, current):
            return None
        return await self._award(relationship)

    async def activate_referral_manually(self, relationship_id: UUID) -> ReferralActivation:
        """Admin override: activate a pending referral regardless of its deadline."""

        relationship = await self.get_relationship(relationship_id)
        if relationship is None:
            raise ReferralNotFound()
        if relationship.status != ReferralStatus.PENDING:
            raise ReferralNotPending()
        if not await self._transition(relationship.id, ReferralStatus.ACTIVE, utcnow()):
            raise ReferralNotPending()
        logger.info("Referral activated manually", referral_id=str(relationship.id))
        return await self._award(relationship)

    async def cancel_referral(self, relationship_id: UUID) -> ReferralRelationship:
        """Cancel a pending referral; no points are awarded for it afterwards."""

        relationship = await self.get_relationship(relationship_id)
        if relationship is None:
            raise ReferralNotFound()
        if relationship.status != ReferralStatus.PENDING:
            raise ReferralNotPending()
        if not await self._transition(relationship.id, ReferralStatus.CANCELLED, utcnow()):
            raise ReferralNotPending()
        logger.info("Referral cancelled", referral_id=str(relationship.id))
        return await self.get_relationship(relationship.id)

    async def get_relationship(self, relationship_id: UUID) -> ReferralRelationship | None:
        result = await self._db.execute(
            select(ReferralRelationship)
            .options(
                selectinload(ReferralRelationship.referrer),
                selectinload(ReferralRelationship.referred),
            )
            .where(ReferralRelationship.id == relationship_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def list_referrals_for_referrer(self, account_id: UUID, *, limit: int = 100) -> list[ReferralRelationship]:
        stmt = (
            select(ReferralRelationship)
            .options(selectinload(ReferralRelationship.referred))
            .where(ReferralRelationship.referrer_id == account_id)
            .order_by(ReferralRelationship.created_at.desc())
            .limit(limit)
        )
        result = await self._db.execute(stmt)
        return list(result.scalars().all())

    async def list_all_referrals(
        self,
        *,
        status: ReferralStatus | None = None,
        limit: int = 200,
    ) -> list[ReferralRelationship]:
        stmt = select(ReferralRelationship).options(
            selectinload(ReferralRelationship.referrer),
            selectinload(ReferralRelationship.referred),
        )
        if status is not None:
            stmt = stmt.where(ReferralRelationship.status == status)
        stmt = stmt.order_by(ReferralRelationship.created_at.desc()).limit(limit)
        result = await self._db.execute(stmt)
        return list(result.scalars().all())

    async def lookup_code(self, code: str) -> ReferralCode:
        """Resolve an active code to its owner for display before sign-up."""

        result = await self._db.execute(
            select(ReferralCode)
            .options(selectinload(ReferralCode.account))
            .where(
                ReferralCode.code == normalize_referral_code(code),
                ReferralCode.is_active.is_(True),
            )
        )
        referral_code = result.scalar_one_or_none()
        if referral_code is None or not referral_code.account.is_active:
            raise InvalidReferralCode()
        return referral_code

    async def _award(self, relationship: ReferralRelationship) -> ReferralActivation:
        """Credit both sides of a freshly activated relationship.

        A side configured with zero points gets no ledger entry; the
        relationship stays active either way.
        """

        referred_points = int(relationship.referred_points)
        referrer_points = int(relationship.referrer_points)

        referred_awarded = referred_points > 0
        if referred_awarded:
            referred_balance = await self._ledger.apply_delta(
                relationship.referred_id,
                referred_points,
                "Referral welcome bonus",
                entry_type=LedgerEntryType.REFERRAL_BONUS,
                referral_id=relationship.id,
            )
        else:
            referred = await self._ledger.get_account(relationship.referred_id)
            referred_balance = int(referred.points_balance or 0)

        referrer_awarded = False
        if referrer_points > 0:
            referrer = await self._ledger.get_account(relationship.referrer_id, for_update=True)
            referrer_awarded = bool(referrer and referrer.is_active)
            if referrer_awarded:
                await self._ledger.apply_delta(
                    relationship.referrer_id,
                    referrer_points,
                    "Referral bonus",
                    entry_type=LedgerEntryType.REFERRAL_BONUS,
                    referral_id=relationship.id,
                )
            else:
                logger.warning(
                    "Skipped referrer bonus for inactive account",
                    referral_id=str(relationship.id),
                )

        logger.info(
            "Referral activated",
            referral_id=str(relationship.id),
            referrer_awarded=referrer_awarded,
            referred_awarded=referred_awarded,
        )
        return ReferralActivation(
            relationship_id=relationship.id,
            referrer_id=relationship.referrer_id,
            referred_id=relationship.referred_id,
            referrer_points=referrer_points,
            referred_points=referred_points,
            referrer_awarded=referrer_awarded,
            referred_awarded=referred_awarded,
            referred_balance=referred_balance,
        )

    async def expire_lapsed_referrals(self, *, now: datetime | None = None) -> int:
        current = now or utcnow()
        stmt = (
            update(ReferralRelationship)
            .where(
                ReferralRelationship.status == ReferralStatus.PENDING,
                ReferralRelationship.activation_deadline <= current,
            )
            .values(status=ReferralStatus.EXPIRED, expired_at=current)
            .execution_options(synchronize_session=False)
        )
        result = await self._db.execute(stmt)
        expired = int(result.rowcount or 0)
        if expired:
            logger.info("Expired lapsed referrals", count=expired)
        return expired

    async def referral_stats(self, account_id: UUID) -> ReferralStats:
        code = await self.get_code_for_account(account_id)
        stmt = select(
            func.count(ReferralRelationship.id),
            func.coalesce(
                func.sum(case((ReferralRelationship.status == ReferralStatus.PENDING, 1), else_=0)), 0
            ),
            func.coalesce(
                func.sum(case((ReferralRelationship.status == ReferralStatus.ACTIVE, 1), else_=0)), 0
            ),
            func.coalesce(
                func.sum(case((ReferralRelationship.status == ReferralStatus.EXPIRED, 1), else_=0)), 0
            ),
            func.coalesce(
                func.sum(case((ReferralRelationship.status == ReferralStatus.CANCELLED, 1), else_=0)), 0
            ),
            func.coalesce(
                func.sum(
                    case(
                        (
                            ReferralRelationship.status == ReferralStatus.ACTIVE,
                            ReferralRelationship.referrer_points,
                        ),
                        else_=0,
                    )
                ),
                0,
            ),
        ).where(ReferralRelationship.referrer_id == account_id)
        total, pending, active, expired, cancelled, points = (await self._db.execute(stmt)).one()
        return ReferralStats(
            code=code.code if code else None,
            total=int(total or 0),
            pending=int(pending or 0),
            active=int(active or 0),
            expired=int(expired or 0),
            cancelled=int(cancelled or 0),
            points_earned=int(points or 0),
        )

    async def _transition(self, relationship_id: UUID, status: ReferralStatus, now: datetime) -> bool:
        values: dict[str, object] = {"status": status}
        if status == ReferralStatus.ACTIVE:
            values["activated_at"] = now
        elif status == ReferralStatus.CANCELLED:
            values["cancelled_at"] = now
        else:
            values["expired_at"] = now
        stmt = (
            update(ReferralRelationship)
            .where(
                ReferralRelationship.id == relationship_id,
                ReferralRelationship.status == ReferralStatus.PENDING,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await self._db.execute(stmt)
        return result.rowcount == 1

    async def _generate_unique_code(self) -> str:
        while True:
            candidate = "".join(
                secrets.choice(REFERRAL_CODE_ALPHABET) for _ in range(REFERRAL_CODE_LENGTH)
            )
            exists = await self._db.scalar(select(ReferralCode.id).where(ReferralCode.code == candidate))
            if exists is None:
                return candidate

"""Account balances and their append-only ledger."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Type
from uuid import UUID

from loguru import logger
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from rewards_api.core.time import utcnow
from rewards_api.models.account import Account, AccountTier, LedgerEntry, LedgerEntryType
from rewards_api.services.errors import (
    AccountInactive,
    AccountNotFound,
    InsufficientFunds,
    InvalidAmount,
    PhoneAlreadyRegistered,
)


@dataclass
class BalanceAudit:
    """Stored balance next to the sum of its ledger deltas."""

    account_id: UUID
    stored_balance: int
    ledger_sum: int
    entry_count: int

    @property
    def consistent(self) -> bool:
        return self.stored_balance == self.ledger_sum


def account_snapshot(account: Account) -> dict[str, Any]:
    """Payload sent to the CRM when an account changes."""

    return {
        "account_id": str(account.id),
        "phone": account.phone,
        "display_name": account.display_name,
        "points_balance": int(account.points_balance or 0),
        "tier": account.tier.value if account.tier else AccountTier.STANDARD.value,
    }


class LedgerService:
    """Mutates balances only through ledger-producing operations."""

    def __init__(self, db_session: AsyncSession) -> None:
        self._db = db_session

    async def get_account(self, account_id: UUID, *, for_update: bool = False) -> Account | None:
        stmt = select(Account).where(Account.id == account_id)
        if for_update:
            stmt = stmt.with_for_update()
        result = await self._db.execute(stmt.execution_options(populate_existing=True))
        return result.scalar_one_or_none()

    async def get_account_by_phone(self, phone: str, *, for_update: bool = False) -> Account | None:
        stmt = select(Account).where(Account.phone == phone)
        if for_update:
            stmt = stmt.with_for_update()
        result = await self._db.execute(stmt.execution_options(populate_existing=True))
        return result.scalar_one_or_none()

    async def require_account(self, account_id: UUID, *, for_update: bool = False) -> Account:
        account = await self.get_account(account_id, for_update=for_update)
        if account is None:
            raise AccountNotFound()
        if not account.is_active:
            raise AccountInactive()
        return account

    async def create_account(
        self,
        *,
        phone: str,
        display_name: str,
        tier: AccountTier = AccountTier.STANDARD,
        is_admin: bool = False,
    ) -> Account:
        """Insert a zero-balance account; ``phone`` must already be normalized."""

        existing = await self._db.scalar(select(Account.id).where(Account.phone == phone))
        if existing is not None:
            raise PhoneAlreadyRegistered()

        account = Account(
            phone=phone,
            display_name=display_name,
            tier=tier,
            is_admin=is_admin,
            points_balance=0,
        )
        self._db.add(account)
        await self._db.flush()
        logger.info("Created loyalty account", account_id=str(account.id), tier=tier.value)
        return account

    async def apply_delta(
        self,
        account_id: UUID,
        delta: int,
        concept: str,
        *,
        entry_type: LedgerEntryType = LedgerEntryType.ADJUSTMENT,
        redemption_id: UUID | None = None,
        gift_link_id: UUID | None = None,
        referral_id: UUID | None = None,
        created_by_account_id: UUID | None = None,
        insufficient_error: Type[InsufficientFunds] = InsufficientFunds,
    ) -> int:
        """Apply ``delta`` and append its ledger entry; returns the new balance.

        The balance check and the write are one conditional UPDATE, so two
        concurrent debits can never both pass against the same balance.
        """

        if delta == 0:
            raise InvalidAmount()

        stmt = (
            update(Account)
            .where(
                Account.id == account_id,
                Account.is_active.is_(True),
                Account.points_balance + delta >= 0,
            )
            .values(points_balance=Account.points_balance + delta)
            .execution_options(synchronize_session=False)
        )
        result = await self._db.execute(stmt)
        if result.rowcount != 1:
            is_active = await self._db.scalar(select(Account.is_active).where(Account.id == account_id))
            if is_active is None:
                raise AccountNotFound()
            if not is_active:
                raise AccountInactive()
            logger.info(
                "Rejected ledger delta below zero",
                account_id=str(account_id),
                delta=delta,
            )
            raise insufficient_error()

        entry = LedgerEntry(
            account_id=account_id,
            entry_type=entry_type,
            delta=delta,
            concept=concept,
            redemption_id=redemption_id,
            gift_link_id=gift_link_id,
            referral_id=referral_id,
            created_by_account_id=created_by_account_id,
            created_at=utcnow(),
        )
        self._db.add(entry)
        await self._db.flush()

        account = await self.get_account(account_id)
        new_balance = int(account.points_balance)
        logger.info(
            "Recorded ledger entry",
            account_id=str(account_id),
            delta=delta,
            entry_type=entry_type.value,
            balance=new_balance,
        )
        return new_balance

    async def change_tier(self, account_id: UUID, tier: AccountTier) -> Account:
        account = await self.require_account(account_id, for_update=True)
        account.tier = tier
        await self._db.flush()
        return account

    async def set_admin(self, account_id: UUID, is_admin: bool) -> Account:
        account = await self.require_account(account_id, for_update=True)
        account.is_admin = is_admin
        await self._db.flush()
        return account

    async def deactivate_account(self, account_id: UUID) -> Account:
        account = await self.get_account(account_id, for_update=True)
        if account is None:
            raise AccountNotFound()
        account.is_active = False
        await self._db.flush()
        logger.info("Deactivated loyalty account", account_id=str(account_id))
        return account

    async def list_history(self, account_id: UUID, *, limit: int = 50) -> list[LedgerEntry]:
        stmt = (
            select(LedgerEntry)
            .where(LedgerEntry.account_id == account_id)
            .order_by(LedgerEntry.created_at.desc(), LedgerEntry.id.desc())
            .limit(limit)
        )
        result = await self._db.execute(stmt)
        return list(result.scalars().all())

    async def audit_balance(self, account_id: UUID) -> BalanceAudit:
        account = await self.get_account(account_id)
        if account is None:
            raise AccountNotFound()
        stmt = select(
            func.coalesce(func.sum(LedgerEntry.delta), 0),
            func.count(LedgerEntry.id),
        ).where(LedgerEntry.account_id == account_id)
        ledger_sum, entry_count = (await self._db.execute(stmt)).one()
        return BalanceAudit(
            account_id=account_id,
            stored_balance=int(account.points_balance or 0),
            ledger_sum=int(ledger_sum or 0),
            entry_count=int(entry_count or 0),
        )

    async def list_admins(self) -> list[Account]:
        stmt = select(Account).where(Account.is_admin.is_(True), Account.is_active.is_(True))
        result = await self._db.execute(stmt)
        return list(result.scalars().all())

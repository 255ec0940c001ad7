"""Catalog management and point redemptions."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any
from uuid import UUID, uuid4

from loguru import logger
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from rewards_api.core.time import utcnow
from rewards_api.models.account import LedgerEntryType
from rewards_api.models.catalog import (
    OPEN_REDEMPTION_STATUSES,
    TERMINAL_REDEMPTION_STATUSES,
    ItemKind,
    RedeemableItem,
    Redemption,
    RedemptionStatus,
)
from rewards_api.services.errors import (
    InsufficientPoints,
    InvalidAmount,
    InvalidStatusTransition,
    ItemNotFound,
    ItemUnavailable,
    OutOfStock,
    RedemptionNotFound,
)
from rewards_api.services.ledger import LedgerService


@dataclass
class RedemptionResult:
    """Outcome of a successful redemption."""

    redemption_id: UUID
    account_id: UUID
    new_balance: int
    points_spent: int
    item_name: str
    status: RedemptionStatus


@dataclass
class RedemptionTransition:
    """Outcome of moving a redemption to a terminal status."""

    redemption_id: UUID
    account_id: UUID
    item_name: str
    status: RedemptionStatus
    changed: bool


def redemption_ticket_details(result: RedemptionResult) -> dict[str, Any]:
    return {
        "redemption_id": str(result.redemption_id),
        "account_id": str(result.account_id),
        "item_name": result.item_name,
        "points_spent": result.points_spent,
        "status": result.status.value,
    }


class RedemptionService:
    """Executes redemptions as one atomic unit with the ledger debit."""

    def __init__(self, db_session: AsyncSession, *, ledger: LedgerService | None = None) -> None:
        self._db = db_session
        self._ledger = ledger or LedgerService(db_session)

    async def get_item(self, item_id: UUID, *, for_update: bool = False) -> RedeemableItem | None:
        stmt = select(RedeemableItem).where(RedeemableItem.id == item_id)
        if for_update:
            stmt = stmt.with_for_update()
        result = await self._db.execute(stmt.execution_options(populate_existing=True))
        return result.scalar_one_or_none()

    async def list_active_items(self) -> list[RedeemableItem]:
        stmt = (
            select(RedeemableItem)
            .where(RedeemableItem.is_active.is_(True))
            .order_by(RedeemableItem.points_required.asc())
        )
        result = await self._db.execute(stmt)
        return list(result.scalars().all())

    async def create_item(
        self,
        *,
        name: str,
        points_required: int,
        kind: ItemKind = ItemKind.PHYSICAL,
        stock: int | None = None,
        description: str | None = None,
        is_active: bool = True,
    ) -> RedeemableItem:
        if points_required <= 0:
            raise InvalidAmount("Items must cost at least one point.")
        if kind == ItemKind.PHYSICAL:
            stock = int(stock or 0)
            if stock < 0:
                raise InvalidAmount("Stock cannot be negative.")
        else:
            stock = None

        item = RedeemableItem(
            name=name,
            description=description,
            kind=kind,
            points_required=points_required,
            stock=stock,
            is_active=is_active,
        )
        self._db.add(item)
        await self._db.flush()
        logger.info("Created catalog item", item_id=str(item.id), kind=kind.value)
        return item

    async def update_item(
        self,
        item_id: UUID,
        *,
        name: str | None = None,
        description: str | None = None,
        points_required: int | None = None,
        is_active: bool | None = None,
    ) -> RedeemableItem:
        """Edit catalog fields; existing redemptions keep their price snapshot."""

        item = await self.get_item(item_id, for_update=True)
        if item is None:
            raise ItemNotFound()
        if points_required is not None:
            if points_required <= 0:
                raise InvalidAmount("Items must cost at least one point.")
            item.points_required = points_required
        if name is not None:
            item.name = name
        if description is not None:
            item.description = description
        if is_active is not None:
            item.is_active = is_active
        await self._db.flush()
        return item

    async def restock_item(self, item_id: UUID, quantity: int) -> RedeemableItem:
        if quantity <= 0:
            raise InvalidAmount("Restock quantity must be positive.")
        item = await self.get_item(item_id, for_update=True)
        if item is None:
            raise ItemNotFound()
        if not item.is_physical:
            raise ItemUnavailable("Services do not track stock.")
        stmt = (
            update(RedeemableItem)
            .where(RedeemableItem.id == item_id)
            .values(stock=RedeemableItem.stock + quantity)
            .execution_options(synchronize_session=False)
        )
        await self._db.execute(stmt)
        refreshed = await self.get_item(item_id)
        logger.info("Restocked catalog item", item_id=str(item_id), stock=refreshed.stock)
        return refreshed

    async def redeem(self, account_id: UUID, item_id: UUID) -> RedemptionResult:
        """Debit the account, take one unit of stock and record the redemption."""

        account = await self._ledger.require_account(account_id, for_update=True)
        item = await self.get_item(item_id, for_update=True)
        if item is None:
            raise ItemNotFound()
        if not item.is_active:
            raise ItemUnavailable()
        if int(account.points_balance or 0) < int(item.points_required):
            raise InsufficientPoints()
        if item.is_physical and int(item.stock or 0) <= 0:
            raise OutOfStock()

        points_spent = int(item.points_required)
        status = RedemptionStatus.PENDING_DELIVERY if item.is_physical else RedemptionStatus.IN_QUEUE
        redemption = Redemption(
            id=uuid4(),
            account_id=account.id,
            item_id=item.id,
            item_name=item.name,
            points_spent=points_spent,
            status=status,
            created_at=utcnow(),
        )
        self._db.add(redemption)
        await self._db.flush()

        new_balance = await self._ledger.apply_delta(
            account.id,
            -points_spent,
            f"Redemption: {item.name}",
            entry_type=LedgerEntryType.REDEMPTION,
            redemption_id=redemption.id,
            insufficient_error=InsufficientPoints,
        )

        if item.is_physical:
            stmt = (
                update(RedeemableItem)
                .where(RedeemableItem.id == item.id, RedeemableItem.stock > 0)
                .values(stock=RedeemableItem.stock - 1)
                .execution_options(synchronize_session=False)
            )
            result = await self._db.execute(stmt)
            if result.rowcount != 1:
                raise OutOfStock()

        logger.info(
            "Registered redemption",
            redemption_id=str(redemption.id),
            account_id=str(account.id),
            item_id=str(item.id),
            points=points_spent,
        )
        return RedemptionResult(
            redemption_id=redemption.id,
            account_id=account.id,
            new_balance=new_balance,
            points_spent=points_spent,
            item_name=item.name,
            status=status,
        )

    async def get_redemption(self, redemption_id: UUID, *, for_update: bool = False) -> Redemption | None:
        stmt = select(Redemption).where(Redemption.id == redemption_id)
        if for_update:
            stmt = stmt.with_for_update()
        result = await self._db.execute(stmt.execution_options(populate_existing=True))
        return result.scalar_one_or_none()

    async def advance_redemption(self, redemption_id: UUID, status: RedemptionStatus) -> RedemptionTransition:
        """Move an open redemption to ``delivered`` or ``completed``.

        Repeating the current terminal status is a no-op; every other move
        (backwards, or between terminal statuses) is rejected.
        """

        if status not in TERMINAL_REDEMPTION_STATUSES:
            raise InvalidStatusTransition()

        redemption = await self.get_redemption(redemption_id, for_update=True)
        if redemption is None:
            raise RedemptionNotFound()

        if redemption.status == status:
            return RedemptionTransition(
                redemption_id=redemption.id,
                account_id=redemption.account_id,
                item_name=redemption.item_name,
                status=status,
                changed=False,
            )
        if redemption.status not in OPEN_REDEMPTION_STATUSES:
            raise InvalidStatusTransition()

        stmt = (
            update(Redemption)
            .where(
                Redemption.id == redemption_id,
                Redemption.status.in_(list(OPEN_REDEMPTION_STATUSES)),
            )
            .values(status=status, delivered_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        result = await self._db.execute(stmt)
        if result.rowcount != 1:
            raise InvalidStatusTransition()

        logger.info(
            "Redemption status advanced",
            redemption_id=str(redemption_id),
            status=status.value,
        )
        return RedemptionTransition(
            redemption_id=redemption.id,
            account_id=redemption.account_id,
            item_name=redemption.item_name,
            status=status,
            changed=True,
        )

    async def list_member_redemptions(self, account_id: UUID, *, limit: int = 50) -> list[Redemption]:
        stmt = (
            select(Redemption)
            .where(Redemption.account_id == account_id)
            .order_by(Redemption.created_at.desc())
            .limit(limit)
        )
        result = await self._db.execute(stmt)
        return list(result.scalars().all())

    async def list_pending_deliveries(self, *, limit: int = 100) -> list[Redemption]:
        stmt = (
            select(Redemption)
            .where(Redemption.status.in_(list(OPEN_REDEMPTION_STATUSES)))
            .order_by(Redemption.created_at.asc())
            .limit(limit)
        )
        result = await self._db.execute(stmt)
        return list(result.scalars().all())


"""Redeemable catalog and redemption records."""

from __future__ import annotations

from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Enum as SqlEnum,
    ForeignKey,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from rewards_api.db.base import Base


class ItemKind(str, Enum):
    """Physical goods carry stock; services do not."""

    PHYSICAL = "physical"
    SERVICE = "service"


class RedemptionStatus(str, Enum):
    """Lifecycle of a redemption."""

    PENDING_DELIVERY = "pending_delivery"
    IN_QUEUE = "in_queue"
    DELIVERED = "delivered"
    COMPLETED = "completed"


OPEN_REDEMPTION_STATUSES = frozenset({RedemptionStatus.PENDING_DELIVERY, RedemptionStatus.IN_QUEUE})
TERMINAL_REDEMPTION_STATUSES = frozenset({RedemptionStatus.DELIVERED, RedemptionStatus.COMPLETED})


class RedeemableItem(Base):
    """Catalog entry that members can exchange points for."""

    __tablename__ = "redeemable_items"
    __table_args__ = (
        CheckConstraint("points_required > 0", name="ck_redeemable_items_points_positive"),
        CheckConstraint("stock IS NULL OR stock >= 0", name="ck_redeemable_items_stock_non_negative"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    kind = Column(
        SqlEnum(
            ItemKind,
            name="redeemable_item_kind",
            values_callable=lambda enum: [member.value for member in enum],
        ),
        nullable=False,
        default=ItemKind.PHYSICAL,
    )
    points_required = Column(Integer, nullable=False)
    stock = Column(Integer, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True, server_default="true")
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    redemptions = relationship("Redemption", back_populates="item")

    @property
    def is_physical(self) -> bool:
        return self.kind == ItemKind.PHYSICAL


class Redemption(Base):
    """Points exchanged for a catalog item; ``points_spent`` is a price snapshot."""

    __tablename__ = "redemptions"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    account_id = Column(UUID(as_uuid=True), ForeignKey("accounts.id"), nullable=False, index=True)
    item_id = Column(UUID(as_uuid=True), ForeignKey("redeemable_items.id"), nullable=False)
    item_name = Column(String, nullable=False)
    points_spent = Column(Integer, nullable=False)
    status = Column(
        SqlEnum(
            RedemptionStatus,
            name="redemption_status",
            values_callable=lambda enum: [member.value for member in enum],
        ),
        nullable=False,
    )
    delivered_at = Column(DateTime(timezone=True), nullable=True)
    crm_remote_id = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    account = relationship("Account", back_populates="redemptions")
    item = relationship("RedeemableItem", back_populates="redemptions")

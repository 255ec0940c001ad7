"""Loyalty accounts and their append-only points ledger."""

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
    func,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from rewards_api.db.base import Base


class AccountTier(str, Enum):
    """Membership levels."""

    STANDARD = "standard"
    VIP = "vip"


class LedgerEntryType(str, Enum):
    """Causes of a balance change."""

    GRANT = "grant"
    REDEMPTION = "redemption"
    GIFT = "gift"
    REFERRAL_BONUS = "referral_bonus"
    ADJUSTMENT = "adjustment"


class Account(Base):
    """Loyalty member identified by phone number."""

    __tablename__ = "accounts"
    __table_args__ = (
        CheckConstraint("points_balance >= 0", name="ck_accounts_points_balance_non_negative"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    phone = Column(String(20), nullable=False, unique=True, index=True)
    display_name = Column(String, nullable=False)
    points_balance = Column(Integer, nullable=False, default=0, server_default="0")
    tier = Column(
        SqlEnum(
            AccountTier,
            name="account_tier",
            values_callable=lambda enum: [member.value for member in enum],
        ),
        nullable=False,
        default=AccountTier.STANDARD,
        server_default=AccountTier.STANDARD.value,
    )
    is_admin = Column(Boolean, nullable=False, default=False, server_default="false")
    is_active = Column(Boolean, nullable=False, default=True, server_default="true")
    crm_remote_id = Column(String, nullable=True)
    crm_synced_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    ledger_entries = relationship(
        "LedgerEntry",
        back_populates="account",
        foreign_keys="LedgerEntry.account_id",
        order_by="LedgerEntry.created_at",
    )
    redemptions = relationship("Redemption", back_populates="account")
    benefits = relationship(
        "ClaimedBenefit",
        back_populates="account",
        foreign_keys="ClaimedBenefit.account_id",
    )


class LedgerEntry(Base):
    """Immutable record of one signed balance change."""

    __tablename__ = "ledger_entries"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    account_id = Column(UUID(as_uuid=True), ForeignKey("accounts.id"), nullable=False, index=True)
    entry_type = Column(
        SqlEnum(
            LedgerEntryType,
            name="ledger_entry_type",
            values_callable=lambda enum: [member.value for member in enum],
        ),
        nullable=False,
    )
    delta = Column(Integer, nullable=False)
    concept = Column(String, nullable=False)
    redemption_id = Column(UUID(as_uuid=True), ForeignKey("redemptions.id"), nullable=True)
    gift_link_id = Column(UUID(as_uuid=True), ForeignKey("gift_links.id"), nullable=True)
    referral_id = Column(UUID(as_uuid=True), ForeignKey("referral_relationships.id"), nullable=True)
    created_by_account_id = Column(UUID(as_uuid=True), ForeignKey("accounts.id"), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    account = relationship("Account", back_populates="ledger_entries", foreign_keys=[account_id])

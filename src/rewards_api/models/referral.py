"""Referral codes and referrer/referred relationships."""

from __future__ import annotations

from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    Boolean,
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


class ReferralStatus(str, Enum):
    """Relationships leave pending exactly once: activated, expired or cancelled."""

    PENDING = "pending"
    ACTIVE = "active"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class ReferralCode(Base):
    """Shareable code owned by one referring account."""

    __tablename__ = "referral_codes"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    account_id = Column(UUID(as_uuid=True), ForeignKey("accounts.id"), nullable=False, unique=True)
    code = Column(String(16), nullable=False, unique=True, index=True)
    is_active = Column(Boolean, nullable=False, default=True, server_default="true")
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    account = relationship("Account")


class ReferralRelationship(Base):
    """Links a referred account to its referrer until activation or expiry."""

    __tablename__ = "referral_relationships"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    referrer_id = Column(UUID(as_uuid=True), ForeignKey("accounts.id"), nullable=False, index=True)
    referred_id = Column(UUID(as_uuid=True), ForeignKey("accounts.id"), nullable=False, unique=True)
    code = Column(String(16), nullable=False)
    status = Column(
        SqlEnum(
            ReferralStatus,
            name="referral_status",
            values_callable=lambda enum: [member.value for member in enum],
        ),
        nullable=False,
        default=ReferralStatus.PENDING,
        server_default=ReferralStatus.PENDING.value,
    )
    referrer_points = Column(Integer, nullable=False)
    referred_points = Column(Integer, nullable=False)
    activation_deadline = Column(DateTime(timezone=True), nullable=False)
    activated_at = Column(DateTime(timezone=True), nullable=True)
    expired_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    referrer = relationship("Account", foreign_keys=[referrer_id])
    referred = relationship("Account", foreign_keys=[referred_id])

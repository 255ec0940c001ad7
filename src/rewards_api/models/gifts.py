"""Gift links, their claims and the service benefits they grant."""

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
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from rewards_api.db.base import Base


class GiftBenefitType(str, Enum):
    """What a gift link hands out."""

    POINTS = "points"
    SERVICE = "service"


class BenefitStatus(str, Enum):
    """Lifecycle of a claimed service benefit."""

    ACTIVE = "active"
    USED = "used"
    EXPIRED = "expired"


class GiftLink(Base):
    """Shareable claim object, single use unless flagged as a campaign."""

    __tablename__ = "gift_links"
    __table_args__ = (
        CheckConstraint("claim_count >= 0", name="ck_gift_links_claim_count_non_negative"),
        CheckConstraint("max_claims >= 1", name="ck_gift_links_max_claims_positive"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    code = Column(String(32), nullable=False, unique=True, index=True)
    benefit_type = Column(
        SqlEnum(
            GiftBenefitType,
            name="gift_benefit_type",
            values_callable=lambda enum: [member.value for member in enum],
        ),
        nullable=False,
    )
    points_amount = Column(Integer, nullable=True)
    service_name = Column(String, nullable=True)
    service_description = Column(Text, nullable=True)
    benefit_valid_days = Column(Integer, nullable=True)
    recipient_phone = Column(String(20), nullable=True)
    message = Column(Text, nullable=True)
    theme_color = Column(String(16), nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    is_campaign = Column(Boolean, nullable=False, default=False, server_default="false")
    max_claims = Column(Integer, nullable=False, default=1, server_default="1")
    claim_count = Column(Integer, nullable=False, default=0, server_default="0")
    view_count = Column(Integer, nullable=False, default=0, server_default="0")
    is_active = Column(Boolean, nullable=False, default=True, server_default="true")
    created_by_account_id = Column(UUID(as_uuid=True), ForeignKey("accounts.id"), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    claims = relationship("GiftClaim", back_populates="gift_link")

    @property
    def claim_capacity(self) -> int:
        return int(self.max_claims or 1) if self.is_campaign else 1


class GiftClaim(Base):
    """One account's claim of one gift link."""

    __tablename__ = "gift_claims"
    __table_args__ = (
        UniqueConstraint("gift_link_id", "account_id", name="uq_gift_claims_link_account"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    gift_link_id = Column(UUID(as_uuid=True), ForeignKey("gift_links.id"), nullable=False, index=True)
    account_id = Column(UUID(as_uuid=True), ForeignKey("accounts.id"), nullable=False)
    benefit_id = Column(UUID(as_uuid=True), ForeignKey("claimed_benefits.id"), nullable=True)
    points_awarded = Column(Integer, nullable=True)
    created_account = Column(Boolean, nullable=False, default=False, server_default="false")
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    gift_link = relationship("GiftLink", back_populates="claims")
    account = relationship("Account")


class ClaimedBenefit(Base):
    """Service benefit owned by an account, consumed once by an admin."""

    __tablename__ = "claimed_benefits"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    account_id = Column(UUID(as_uuid=True), ForeignKey("accounts.id"), nullable=False, index=True)
    gift_link_id = Column(UUID(as_uuid=True), ForeignKey("gift_links.id"), nullable=True)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    status = Column(
        SqlEnum(
            BenefitStatus,
            name="claimed_benefit_status",
            values_callable=lambda enum: [member.value for member in enum],
        ),
        nullable=False,
        default=BenefitStatus.ACTIVE,
        server_default=BenefitStatus.ACTIVE.value,
    )
    expires_at = Column(DateTime(timezone=True), nullable=True)
    used_at = Column(DateTime(timezone=True), nullable=True)
    used_by_account_id = Column(UUID(as_uuid=True), ForeignKey("accounts.id"), nullable=True)
    assigned_by_account_id = Column(UUID(as_uuid=True), ForeignKey("accounts.id"), nullable=True)
    notes = Column(Text, nullable=True)
    crm_remote_id = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    account = relationship("Account", back_populates="benefits", foreign_keys=[account_id])

"""Durable outbox of pending CRM propagation work."""

from __future__ import annotations

from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Enum as SqlEnum,
    Index,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.dialects.postgresql import UUID

from rewards_api.db.base import Base


class SyncOperationType(str, Enum):
    """Remote operations the outbox knows how to replay."""

    ACCOUNT_SYNC = "account_sync"
    BENEFIT_TICKET = "benefit_ticket"
    REDEMPTION_TICKET = "redemption_ticket"
    STATUS_UPDATE = "status_update"


class SyncQueueEntry(Base):
    """One retryable unit of CRM work, leased by at most one worker at a time."""

    __tablename__ = "sync_queue"
    __table_args__ = (
        Index("ix_sync_queue_due", "is_terminal", "completed_at", "next_retry_at"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    operation_type = Column(
        SqlEnum(
            SyncOperationType,
            name="sync_operation_type",
            values_callable=lambda enum: [member.value for member in enum],
        ),
        nullable=False,
    )
    resource_id = Column(String, nullable=False, index=True)
    payload_json = Column("payload", JSON, nullable=False, default=dict)
    source = Column(String, nullable=False, default="app", server_default="app")
    source_context = Column(JSON, nullable=True)
    attempt_count = Column(Integer, nullable=False, default=0, server_default="0")
    next_retry_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    claimed_by = Column(String, nullable=True)
    claimed_until = Column(DateTime(timezone=True), nullable=True)
    is_terminal = Column(Boolean, nullable=False, default=False, server_default="false")
    last_error = Column(Text, nullable=True)
    remote_id = Column(String, nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

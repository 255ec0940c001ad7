"""Cancelled referrals and admin-assigned service benefits."""

from __future__ import annotations

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision: str = "20261018_02"
down_revision: Union[str, None] = "20261018_01"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.execute("ALTER TYPE referral_status ADD VALUE IF NOT EXISTS 'cancelled'")
    op.add_column(
        "referral_relationships",
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.add_column(
        "claimed_benefits",
        sa.Column(
            "assigned_by_account_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("accounts.id"),
            nullable=True,
        ),
    )


def downgrade() -> None:
    op.drop_column("claimed_benefits", "assigned_by_account_id")
    op.drop_column("referral_relationships", "cancelled_at")
    # Postgres enum value removal is not supported without recreating the type.

"""Loyalty ledger, catalog, gifts, referrals and sync outbox.

Revision ID: 20261018_01
Revises:
Create Date: 2026-10-18
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = "20261018_01"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _uuid() -> postgresql.UUID:
    return postgresql.UUID(as_uuid=True)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    ]


def upgrade() -> None:
    account_tier = sa.Enum("standard", "vip", name="account_tier")
    ledger_entry_type = sa.Enum(
        "grant", "redemption", "gift", "referral_bonus", "adjustment", name="ledger_entry_type"
    )
    item_kind = sa.Enum("physical", "service", name="redeemable_item_kind")
    redemption_status = sa.Enum(
        "pending_delivery", "in_queue", "delivered", "completed", name="redemption_status"
    )
    gift_benefit_type = sa.Enum("points", "service", name="gift_benefit_type")
    benefit_status = sa.Enum("active", "used", "expired", name="claimed_benefit_status")
    referral_status = sa.Enum("pending", "active", "expired", name="referral_status")
    sync_operation_type = sa.Enum(
        "account_sync", "benefit_ticket", "redemption_ticket", "status_update", name="sync_operation_type"
    )

    op.create_table(
        "accounts",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("phone", sa.String(length=20), nullable=False),
        sa.Column("display_name", sa.String(), nullable=False),
        sa.Column("points_balance", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("tier", account_tier, nullable=False, server_default="standard"),
        sa.Column("is_admin", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("crm_remote_id", sa.String(), nullable=True),
        sa.Column("crm_synced_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.CheckConstraint("points_balance >= 0", name="ck_accounts_points_balance_non_negative"),
    )
    op.create_index("ix_accounts_phone", "accounts", ["phone"], unique=True)

    op.create_table(
        "redeemable_items",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("kind", item_kind, nullable=False),
        sa.Column("points_required", sa.Integer(), nullable=False),
        sa.Column("stock", sa.Integer(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        *_timestamps(),
        sa.CheckConstraint("points_required > 0", name="ck_redeemable_items_points_positive"),
        sa.CheckConstraint("stock IS NULL OR stock >= 0", name="ck_redeemable_items_stock_non_negative"),
    )

    op.create_table(
        "redemptions",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("account_id", _uuid(), sa.ForeignKey("accounts.id"), nullable=False),
        sa.Column("item_id", _uuid(), sa.ForeignKey("redeemable_items.id"), nullable=False),
        sa.Column("item_name", sa.String(), nullable=False),
        sa.Column("points_spent", sa.Integer(), nullable=False),
        sa.Column("status", redemption_status, nullable=False),
        sa.Column("delivered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("crm_remote_id", sa.String(), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_redemptions_account_id", "redemptions", ["account_id"])

    op.create_table(
        "gift_links",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("code", sa.String(length=32), nullable=False),
        sa.Column("benefit_type", gift_benefit_type, nullable=False),
        sa.Column("points_amount", sa.Integer(), nullable=True),
        sa.Column("service_name", sa.String(), nullable=True),
        sa.Column("service_description", sa.Text(), nullable=True),
        sa.Column("benefit_valid_days", sa.Integer(), nullable=True),
        sa.Column("recipient_phone", sa.String(length=20), nullable=True),
        sa.Column("message", sa.Text(), nullable=True),
        sa.Column("theme_color", sa.String(length=16), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("is_campaign", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("max_claims", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("claim_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("view_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("created_by_account_id", _uuid(), sa.ForeignKey("accounts.id"), nullable=True),
        *_timestamps(),
        sa.CheckConstraint("claim_count >= 0", name="ck_gift_links_claim_count_non_negative"),
        sa.CheckConstraint("max_claims >= 1", name="ck_gift_links_max_claims_positive"),
    )
    op.create_index("ix_gift_links_code", "gift_links", ["code"], unique=True)

    op.create_table(
        "claimed_benefits",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("account_id", _uuid(), sa.ForeignKey("accounts.id"), nullable=False),
        sa.Column("gift_link_id", _uuid(), sa.ForeignKey("gift_links.id"), nullable=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("status", benefit_status, nullable=False, server_default="active"),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("used_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("used_by_account_id", _uuid(), sa.ForeignKey("accounts.id"), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("crm_remote_id", sa.String(), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_claimed_benefits_account_id", "claimed_benefits", ["account_id"])

    op.create_table(
        "gift_claims",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("gift_link_id", _uuid(), sa.ForeignKey("gift_links.id"), nullable=False),
        sa.Column("account_id", _uuid(), sa.ForeignKey("accounts.id"), nullable=False),
        sa.Column("benefit_id", _uuid(), sa.ForeignKey("claimed_benefits.id"), nullable=True),
        sa.Column("points_awarded", sa.Integer(), nullable=True),
        sa.Column("created_account", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("gift_link_id", "account_id", name="uq_gift_claims_link_account"),
    )
    op.create_index("ix_gift_claims_gift_link_id", "gift_claims", ["gift_link_id"])

    op.create_table(
        "referral_codes",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("account_id", _uuid(), sa.ForeignKey("accounts.id"), nullable=False, unique=True),
        sa.Column("code", sa.String(length=16), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_referral_codes_code", "referral_codes", ["code"], unique=True)

    op.create_table(
        "referral_relationships",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("referrer_id", _uuid(), sa.ForeignKey("accounts.id"), nullable=False),
        sa.Column("referred_id", _uuid(), sa.ForeignKey("accounts.id"), nullable=False, unique=True),
        sa.Column("code", sa.String(length=16), nullable=False),
        sa.Column("status", referral_status, nullable=False, server_default="pending"),
        sa.Column("referrer_points", sa.Integer(), nullable=False),
        sa.Column("referred_points", sa.Integer(), nullable=False),
        sa.Column("activation_deadline", sa.DateTime(timezone=True), nullable=False),
        sa.Column("activated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("expired_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_referral_relationships_referrer_id", "referral_relationships", ["referrer_id"])

    op.create_table(
        "ledger_entries",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("account_id", _uuid(), sa.ForeignKey("accounts.id"), nullable=False),
        sa.Column("entry_type", ledger_entry_type, nullable=False),
        sa.Column("delta", sa.Integer(), nullable=False),
        sa.Column("concept", sa.String(), nullable=False),
        sa.Column("redemption_id", _uuid(), sa.ForeignKey("redemptions.id"), nullable=True),
        sa.Column("gift_link_id", _uuid(), sa.ForeignKey("gift_links.id"), nullable=True),
        sa.Column("referral_id", _uuid(), sa.ForeignKey("referral_relationships.id"), nullable=True),
        sa.Column("created_by_account_id", _uuid(), sa.ForeignKey("accounts.id"), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_ledger_entries_account_id", "ledger_entries", ["account_id"])

    op.create_table(
        "sync_queue",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("operation_type", sync_operation_type, nullable=False),
        sa.Column("resource_id", sa.String(), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("source", sa.String(), nullable=False, server_default="app"),
        sa.Column("source_context", sa.JSON(), nullable=True),
        sa.Column("attempt_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("next_retry_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("claimed_by", sa.String(), nullable=True),
        sa.Column("claimed_until", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_terminal", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("remote_id", sa.String(), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_sync_queue_resource_id", "sync_queue", ["resource_id"])
    op.create_index("ix_sync_queue_due", "sync_queue", ["is_terminal", "completed_at", "next_retry_at"])

    op.create_table(
        "program_settings",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("key", sa.String(), nullable=False, unique=True),
        sa.Column("value", sa.JSON(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )


def downgrade() -> None:
    op.drop_table("program_settings")
    op.drop_index("ix_sync_queue_due", table_name="sync_queue")
    op.drop_index("ix_sync_queue_resource_id", table_name="sync_queue")
    op.drop_table("sync_queue")
    op.drop_index("ix_ledger_entries_account_id", table_name="ledger_entries")
    op.drop_table("ledger_entries")
    op.drop_index("ix_referral_relationships_referrer_id", table_name="referral_relationships")
    op.drop_table("referral_relationships")
    op.drop_index("ix_referral_codes_code", table_name="referral_codes")
    op.drop_table("referral_codes")
    op.drop_index("ix_gift_claims_gift_link_id", table_name="gift_claims")
    op.drop_table("gift_claims")
    op.drop_index("ix_claimed_benefits_account_id", table_name="claimed_benefits")
    op.drop_table("claimed_benefits")
    op.drop_index("ix_gift_links_code", table_name="gift_links")
    op.drop_table("gift_links")
    op.drop_index("ix_redemptions_account_id", table_name="redemptions")
    op.drop_table("redemptions")
    op.drop_table("redeemable_items")
    op.drop_index("ix_accounts_phone", table_name="accounts")
    op.drop_table("accounts")

    bind = op.get_bind()
    for enum_name in (
        "sync_operation_type",
        "referral_status",
        "claimed_benefit_status",
        "gift_benefit_type",
        "redemption_status",
        "redeemable_item_kind",
        "ledger_entry_type",
        "account_tier",
    ):
        sa.Enum(name=enum_name).drop(bind, checkfirst=True)

"""Public loyalty operations.

Each operation validates its input, resolves program configuration, runs its
state changes as one unit of work and only then schedules side effects (CRM
propagation and pushes) on background tasks. Nothing here talks to the CRM or
the push backend while a transaction is open.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from uuid import UUID

from loguru import logger
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from rewards_api.core.settings import settings
from rewards_api.db.session import SessionFactory, run_in_transaction
from rewards_api.models.account import Account, AccountTier, LedgerEntry, LedgerEntryType
from rewards_api.models.catalog import ItemKind, RedeemableItem, Redemption, RedemptionStatus
from rewards_api.models.gifts import ClaimedBenefit, GiftClaim, GiftLink
from rewards_api.models.referral import ReferralCode, ReferralRelationship, ReferralStatus
from rewards_api.models.sync_queue import SyncOperationType
from rewards_api.services.errors import AccountNotFound, GiftNotFound
from rewards_api.services.gifts import (
    ClaimResult,
    GiftLinkDefinition,
    GiftService,
    benefit_ticket_details,
    gift_availability,
    normalize_gift_code,
)
from rewards_api.services.ledger import BalanceAudit, LedgerService, account_snapshot
from rewards_api.services.notifications import (
    ALL_ADMINS,
    NotificationDispatcher,
    NotificationEventType,
)
from rewards_api.services.program_config import (
    ConfigCache,
    ProgramConfig,
    build_program_config_cache,
    save_program_settings,
)
from rewards_api.services.redemptions import (
    RedemptionResult,
    RedemptionService,
    RedemptionTransition,
    redemption_ticket_details,
)
from rewards_api.services.referrals import (
    ReferralActivation,
    ReferralApplication,
    ReferralService,
    ReferralStats,
)
from rewards_api.services.side_effects import BackgroundEffects
from rewards_api.services.sync import SyncDispatcher, SyncOutbox, build_crm_client
from rewards_api.services.validation import (
    coerce_points,
    normalize_phone,
    require_concept,
    validate_display_name,
)


@dataclass
class GrantResult:
    account_id: UUID
    new_balance: int
    delta: int


@dataclass
class GiftView:
    link: GiftLink
    availability: str


@dataclass
class _Effects:
    """Side effects collected inside a unit of work, fired after commit."""

    account_syncs: dict[str, dict[str, Any]] = field(default_factory=dict)
    activation: ReferralActivation | None = None


class LoyaltyOperations:
    """Entry point shared by the HTTP layer, workers and tests."""

    def __init__(
        self,
        session_factory: SessionFactory,
        *,
        sync: SyncDispatcher,
        notifications: NotificationDispatcher,
        effects: BackgroundEffects,
        config_cache: ConfigCache[ProgramConfig],
    ) -> None:
        self._session_factory = session_factory
        self.sync = sync
        self.notifications = notifications
        self.effects = effects
        self.config_cache = config_cache

    @classmethod
    def from_settings(cls, session_factory: SessionFactory) -> "LoyaltyOperations":
        effects = BackgroundEffects()
        outbox = SyncOutbox(session_factory)
        return cls(
            session_factory,
            sync=SyncDispatcher(build_crm_client(), outbox, session_factory),
            notifications=NotificationDispatcher(session_factory, effects),
            effects=effects,
            config_cache=build_program_config_cache(
                session_factory,
                ttl_seconds=settings.program_config_ttl_seconds,
            ),
        )

    async def _run(self, label: str, work, **kwargs):
        return await run_in_transaction(self._session_factory, work, label=label, **kwargs)

    # Accounts and ledger

    async def create_account(
        self,
        phone: str,
        display_name: str,
        *,
        tier: AccountTier = AccountTier.STANDARD,
        is_admin: bool = False,
    ) -> Account:
        normalized = normalize_phone(phone)
        name = validate_display_name(display_name)

        async def _work(session: AsyncSession) -> tuple[Account, dict[str, Any]]:
            account = await LedgerService(session).create_account(
                phone=normalized,
                display_name=name,
                tier=tier,
                is_admin=is_admin,
            )
            return account, account_snapshot(account)

        account, snapshot = await self._run("create_account", _work)
        self._sync_account(str(account.id), snapshot)
        return account

    async def get_account(self, account_id: UUID) -> Account:
        async with self._session_factory() as session:
            account = await LedgerService(session).get_account(account_id)
        if account is None:
            raise AccountNotFound()
        return account

    async def get_account_by_phone(self, phone: str) -> Account:
        normalized = normalize_phone(phone)
        async with self._session_factory() as session:
            account = await LedgerService(session).get_account_by_phone(normalized)
        if account is None:
            raise AccountNotFound()
        return account

    async def grant_points(
        self,
        phone: str,
        delta: object,
        concept: str,
        *,
        admin_account_id: UUID | None = None,
    ) -> GrantResult:
        """Add (or with a negative delta, remove) points for the member at ``phone``.

        A positive grant is a qualifying event for a pending referral.
        """

        points = coerce_points(delta)
        reason = require_concept(concept)
        normalized = normalize_phone(phone)

        async def _work(session: AsyncSession) -> tuple[GrantResult, _Effects]:
            ledger = LedgerService(session)
            account = await ledger.get_account_by_phone(normalized, for_update=True)
            if account is None:
                raise AccountNotFound()
            new_balance = await ledger.apply_delta(
                account.id,
                points,
                reason,
                entry_type=LedgerEntryType.GRANT if points > 0 else LedgerEntryType.ADJUSTMENT,
                created_by_account_id=admin_account_id,
            )
            pending = _Effects()
            if points > 0:
                pending.activation = await ReferralService(session, ledger=ledger).activate_referral(account.id)
                if pending.activation is not None:
                    new_balance = pending.activation.referred_balance
            await self._collect_snapshots(ledger, pending, account.id)
            return GrantResult(account_id=account.id, new_balance=new_balance, delta=points), pending

        result, pending = await self._run("grant_points", _work)
        self.notifications.notify(
            NotificationEventType.POINTS_RECEIVED,
            result.account_id,
            {"delta": result.delta, "new_balance": result.new_balance, "concept": reason},
        )
        self._fire(pending)
        return result

    async def change_tier(self, account_id: UUID, tier: AccountTier) -> Account:
        async def _work(session: AsyncSession) -> tuple[Account, dict[str, Any], bool]:
            ledger = LedgerService(session)
            before = await ledger.require_account(account_id, for_update=True)
            changed = before.tier != tier
            account = await ledger.change_tier(account_id, tier)
            return account, account_snapshot(account), changed

        account, snapshot, changed = await self._run("change_tier", _work)
        if changed:
            self.notifications.notify(NotificationEventType.TIER_CHANGED, account.id, {"tier": tier.value})
            self._sync_account(str(account.id), snapshot)
        return account

    async def set_admin(self, account_id: UUID, is_admin: bool) -> Account:
        return await self._run(
            "set_admin",
            lambda session: LedgerService(session).set_admin(account_id, is_admin),
        )

    async def deactivate_account(self, account_id: UUID) -> Account:
        return await self._run(
            "deactivate_account",
            lambda session: LedgerService(session).deactivate_account(account_id),
        )

    async def list_history(self, account_id: UUID, *, limit: int = 50) -> list[LedgerEntry]:
        async with self._session_factory() as session:
            ledger = LedgerService(session)
            if await ledger.get_account(account_id) is None:
                raise AccountNotFound()
            return await ledger.list_history(account_id, limit=limit)

    async def audit_balance(self, account_id: UUID) -> BalanceAudit:
        async with self._session_factory() as session:
            return await LedgerService(session).audit_balance(account_id)

    # Catalog and redemptions

    async def create_item(
        self,
        *,
        name: str,
        points_required: int,
        kind: ItemKind = ItemKind.PHYSICAL,
        stock: int | None = None,
        description: str | None = None,
    ) -> RedeemableItem:
        return await self._run(
            "create_item",
            lambda session: RedemptionService(session).create_item(
                name=name,
                points_required=points_required,
                kind=kind,
                stock=stock,
                description=description,
            ),
        )

    async def update_item(self, item_id: UUID, **changes: Any) -> RedeemableItem:
        return await self._run(
            "update_item",
            lambda session: RedemptionService(session).update_item(item_id, **changes),
        )

    async def restock_item(self, item_id: UUID, quantity: int) -> RedeemableItem:
        return await self._run(
            "restock_item",
            lambda session: RedemptionService(session).restock_item(item_id, quantity),
        )

    async def list_items(self) -> list[RedeemableItem]:
        async with self._session_factory() as session:
            return await RedemptionService(session).list_active_items()

    async def redeem(self, account_id: UUID, item_id: UUID) -> RedemptionResult:
        async def _work(session: AsyncSession) -> tuple[RedemptionResult, dict[str, Any], str]:
            ledger = LedgerService(session)
            result = await RedemptionService(session, ledger=ledger).redeem(account_id, item_id)
            account = await ledger.get_account(account_id)
            return result, account_snapshot(account), account.display_name

        result, snapshot, display_name = await self._run("redeem", _work)
        self._spawn_sync(
            SyncOperationType.REDEMPTION_TICKET,
            str(result.redemption_id),
            redemption_ticket_details(result),
        )
        self._sync_account(str(account_id), snapshot)
        self.notifications.notify(
            NotificationEventType.REDEMPTION_REGISTERED,
            account_id,
            {"item_name": result.item_name, "redemption_id": str(result.redemption_id)},
        )
        self.notifications.notify(
            NotificationEventType.NEW_REDEMPTION,
            ALL_ADMINS,
            {
                "item_name": result.item_name,
                "points_spent": result.points_spent,
                "display_name": display_name,
                "redemption_id": str(result.redemption_id),
            },
        )
        return result

    async def advance_redemption(self, redemption_id: UUID, status: RedemptionStatus) -> RedemptionTransition:
        async def _work(session: AsyncSession) -> tuple[RedemptionTransition, _Effects]:
            ledger = LedgerService(session)
            transition = await RedemptionService(session, ledger=ledger).advance_redemption(redemption_id, status)
            pending = _Effects()
            if transition.changed:
                pending.activation = await ReferralService(session, ledger=ledger).activate_referral(
                    transition.account_id
                )
                if pending.activation is not None:
                    await self._collect_snapshots(ledger, pending, transition.account_id)
            return transition, pending

        transition, pending = await self._run("advance_redemption", _work)
        if transition.changed:
            event = (
                NotificationEventType.REDEMPTION_DELIVERED
                if transition.status == RedemptionStatus.DELIVERED
                else NotificationEventType.REDEMPTION_READY
            )
            self.notifications.notify(
                event,
                transition.account_id,
                {"item_name": transition.item_name, "redemption_id": str(transition.redemption_id)},
            )
            self._spawn_sync(
                SyncOperationType.STATUS_UPDATE,
                str(transition.redemption_id),
                {"status": transition.status.value},
            )
            self._fire(pending)
        return transition

    async def list_member_redemptions(self, account_id: UUID, *, limit: int = 50) -> list[Redemption]:
        async with self._session_factory() as session:
            return await RedemptionService(session).list_member_redemptions(account_id, limit=limit)

    async def list_pending_deliveries(self, *, limit: int = 100) -> list[Redemption]:
        async with self._session_factory() as session:
            return await RedemptionService(session).list_pending_deliveries(limit=limit)

    # Gifts

    async def create_gift_link(
        self,
        definition: GiftLinkDefinition,
        *,
        created_by_account_id: UUID | None = None,
    ) -> GiftLink:
        if definition.recipient_phone:
            definition.recipient_phone = normalize_phone(definition.recipient_phone)
        config = await self.config_cache.get()
        return await self._run(
            "create_gift_link",
            lambda session: GiftService(session).create_gift_link(
                definition,
                config,
                created_by_account_id=created_by_account_id,
            ),
        )

    async def get_gift(self, code: str) -> GiftView:
        async with self._session_factory() as session:
            link = await GiftService(session).get_link_by_code(code)
        if link is None:
            raise GiftNotFound()
        return GiftView(link=link, availability=gift_availability(link))

    async def record_view(self, code: str) -> GiftView:
        link = await self._run("record_gift_view", lambda session: GiftService(session).record_view(code))
        return GiftView(link=link, availability=gift_availability(link))

    async def expire_gift_link(self, link_id: UUID) -> GiftLink:
        return await self._run("expire_gift_link", lambda session: GiftService(session).expire_gift_link(link_id))

    async def update_gift_link(self, link_id: UUID, **changes: Any) -> GiftLink:
        return await self._run(
            "update_gift_link",
            lambda session: GiftService(session).update_gift_link(link_id, **changes),
        )

    async def list_gift_links(self, *, limit: int = 100) -> list[GiftLink]:
        async with self._session_factory() as session:
            return await GiftService(session).list_links(limit=limit)

    async def list_link_claims(self, link_id: UUID) -> list[GiftClaim]:
        async with self._session_factory() as session:
            return await GiftService(session).list_link_claims(link_id)

    async def claim_gift(self, code: str, phone: str, *, display_name: str | None = None) -> ClaimResult:
        """Claim the gift behind ``code`` for ``phone``.

        Two first-time claimers with the same phone can race on the account
        insert; the loser is retried and then sees the existing account.
        """

        normalized_code = normalize_gift_code(code)
        if not normalized_code:
            raise GiftNotFound()
        normalized_phone = normalize_phone(phone)

        async def _work(session: AsyncSession) -> tuple[ClaimResult, dict[str, Any], dict[str, Any] | None]:
            ledger = LedgerService(session)
            gifts = GiftService(session, ledger=ledger)
            result = await gifts.claim_gift(normalized_code, normalized_phone, display_name=display_name)
            account = await ledger.get_account(result.account_id)
            ticket = None
            if result.benefit.benefit_id is not None:
                benefit = await gifts.get_benefit(result.benefit.benefit_id)
                ticket = benefit_ticket_details(benefit, account)
            return result, account_snapshot(account), ticket

        result, snapshot, ticket = await self._run("claim_gift", _work, retry_on=(IntegrityError,))
        self._sync_account(str(result.account_id), snapshot)
        if ticket is not None:
            self._spawn_sync(SyncOperationType.BENEFIT_TICKET, ticket["benefit_id"], ticket)
        data = {
            "points": result.benefit.points,
            "benefit_name": result.benefit.name,
            "new_account": result.is_new_account,
        }
        self.notifications.notify(NotificationEventType.BENEFIT_CLAIMED, result.account_id, data)
        self.notifications.notify(NotificationEventType.NEW_BENEFIT, ALL_ADMINS, data)
        return result

    async def list_account_benefits(self, account_id: UUID) -> list[ClaimedBenefit]:
        async with self._session_factory() as session:
            return await GiftService(session).list_account_benefits(account_id)

    async def assign_benefit(
        self,
        account_id: UUID,
        name: str,
        *,
        description: str | None = None,
        valid_days: int | None = None,
        admin_account_id: UUID | None = None,
    ) -> ClaimedBenefit:
        async def _work(session: AsyncSession) -> tuple[ClaimedBenefit, dict[str, Any]]:
            ledger = LedgerService(session)
            benefit = await GiftService(session, ledger=ledger).assign_benefit(
                account_id,
                name,
                description=description,
                valid_days=valid_days,
                admin_account_id=admin_account_id,
            )
            account = await ledger.get_account(account_id)
            return benefit, benefit_ticket_details(benefit, account)

        benefit, ticket = await self._run("assign_benefit", _work)
        self._spawn_sync(SyncOperationType.BENEFIT_TICKET, ticket["benefit_id"], ticket)
        self.notifications.notify(
            NotificationEventType.BENEFIT_ASSIGNED,
            benefit.account_id,
            {"benefit_name": benefit.name, "benefit_id": str(benefit.id)},
        )
        return benefit

    async def delete_benefit(self, benefit_id: UUID) -> None:
        await self._run("delete_benefit", lambda session: GiftService(session).delete_benefit(benefit_id))

    async def list_benefit_history(self, account_id: UUID, *, limit: int = 50) -> list[ClaimedBenefit]:
        async with self._session_factory() as session:
            if await LedgerService(session).get_account(account_id) is None:
                raise AccountNotFound()
            return await GiftService(session).list_benefit_history(account_id, limit=limit)

    async def mark_benefit_used(
        self,
        benefit_id: UUID,
        *,
        admin_account_id: UUID | None = None,
        notes: str | None = None,
    ) -> ClaimedBenefit:
        benefit = await self._run(
            "mark_benefit_used",
            lambda session: GiftService(session).mark_benefit_used(
                benefit_id,
                admin_account_id=admin_account_id,
                notes=notes,
            ),
        )
        self.notifications.notify(
            NotificationEventType.BENEFIT_USED,
            benefit.account_id,
            {"benefit_name": benefit.name, "benefit_id": str(benefit.id)},
        )
        self._spawn_sync(SyncOperationType.STATUS_UPDATE, str(benefit.id), {"status": "used"})
        return benefit

    # Referrals

    async def get_or_create_referral_code(self, account_id: UUID) -> str:
        code = await self._run(
            "referral_code",
            lambda session: ReferralService(session).get_or_create_code(account_id),
        )
        return code.code

    async def apply_referral_code(self, account_id: UUID, code: str) -> ReferralApplication:
        config = await self.config_cache.get()
        return await self._run(
            "apply_referral_code",
            lambda session: ReferralService(session).apply_referral_code(account_id, code, config),
        )

    async def activate_referral(self, referred_account_id: UUID) -> ReferralActivation | None:
        async def _work(session: AsyncSession) -> _Effects:
            ledger = LedgerService(session)
            pending = _Effects()
            pending.activation = await ReferralService(session, ledger=ledger).activate_referral(referred_account_id)
            if pending.activation is not None:
                await self._collect_snapshots(ledger, pending, referred_account_id)
            return pending

        pending = await self._run("activate_referral", _work)
        self._fire(pending)
        return pending.activation

    async def referral_stats(self, account_id: UUID) -> ReferralStats:
        async with self._session_factory() as session:
            return await ReferralService(session).referral_stats(account_id)

    async def lookup_referral_code(self, code: str) -> ReferralCode:
        async with self._session_factory() as session:
            return await ReferralService(session).lookup_code(code)

    async def activate_referral_manually(self, relationship_id: UUID) -> ReferralActivation:
        async def _work(session: AsyncSession) -> _Effects:
            ledger = LedgerService(session)
            pending = _Effects()
            pending.activation = await ReferralService(session, ledger=ledger).activate_referral_manually(
                relationship_id
            )
            await self._collect_snapshots(ledger, pending, pending.activation.referred_id)
            return pending

        pending = await self._run("activate_referral_manually", _work)
        self._fire(pending)
        return pending.activation

    async def cancel_referral(self, relationship_id: UUID) -> ReferralRelationship:
        return await self._run(
            "cancel_referral",
            lambda session: ReferralService(session).cancel_referral(relationship_id),
        )

    async def list_my_referrals(self, account_id: UUID) -> list[ReferralRelationship]:
        async with self._session_factory() as session:
            if await LedgerService(session).get_account(account_id) is None:
                raise AccountNotFound()
            return await ReferralService(session).list_referrals_for_referrer(account_id)

    async def list_all_referrals(
        self,
        *,
        status: ReferralStatus | None = None,
        limit: int = 200,
    ) -> list[ReferralRelationship]:
        async with self._session_factory() as session:
            return await ReferralService(session).list_all_referrals(status=status, limit=limit)

    # Program configuration

    async def get_program_config(self) -> ProgramConfig:
        return await self.config_cache.get()

    async def update_program_config(self, changes: dict[str, Any]) -> ProgramConfig:
        """Persist setting overrides and drop the cached config after commit."""

        config = await self._run(
            "update_program_config",
            lambda session: save_program_settings(session, changes),
        )
        self.config_cache.invalidate()
        return config

    # Sweeps

    async def expire_lapsed(self, *, now: datetime | None = None) -> dict[str, int]:
        async def _work(session: AsyncSession) -> dict[str, int]:
            return {
                "referrals": await ReferralService(session).expire_lapsed_referrals(now=now),
                "benefits": await GiftService(session).expire_lapsed_benefits(now=now),
            }

        return await self._run("expire_lapsed", _work)

    # Post-commit helpers

    async def _collect_snapshots(self, ledger: LedgerService, pending: _Effects, account_id: UUID) -> None:
        account_ids = [account_id]
        if pending.activation is not None:
            account_ids = [pending.activation.referred_id]
            if pending.activation.referrer_awarded:
                account_ids.append(pending.activation.referrer_id)
            if account_id not in account_ids:
                account_ids.append(account_id)
        for target in account_ids:
            account = await ledger.get_account(target)
            if account is not None:
                pending.account_syncs[str(target)] = account_snapshot(account)

    def _fire(self, pending: _Effects) -> None:
        for resource_id, snapshot in pending.account_syncs.items():
            self._sync_account(resource_id, snapshot)
        activation = pending.activation
        if activation is None:
            return
        if activation.referred_awarded:
            self.notifications.notify(
                NotificationEventType.REFERRAL_ACTIVATED,
                activation.referred_id,
                {"points": activation.referred_points},
            )
        if activation.referrer_awarded:
            self.notifications.notify(
                NotificationEventType.REFERRAL_ACTIVATED,
                activation.referrer_id,
                {"points": activation.referrer_points},
            )

    def _sync_account(self, resource_id: str, snapshot: dict[str, Any]) -> None:
        self._spawn_sync(SyncOperationType.ACCOUNT_SYNC, resource_id, snapshot)

    def _spawn_sync(self, operation_type: SyncOperationType, resource_id: str, payload: dict[str, Any]) -> None:
        logger.debug("Scheduling CRM sync", operation=operation_type.value, resource_id=resource_id)
        self.effects.spawn(
            self.sync.sync_or_enqueue(operation_type, resource_id, payload),
            label=f"sync:{operation_type.value}",
        )


__all__ = ["GiftView", "GrantResult", "LoyaltyOperations"]

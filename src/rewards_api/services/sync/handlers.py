"""Map outbox operation types onto CRM calls and local bookkeeping."""

from __future__ import annotations

from typing import Any, Mapping
from uuid import UUID

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from rewards_api.core.time import utcnow
from rewards_api.models.account import Account
from rewards_api.models.catalog import Redemption
from rewards_api.models.gifts import ClaimedBenefit
from rewards_api.models.sync_queue import SyncOperationType
from rewards_api.services.sync.crm_client import CrmClient, CrmRejectedError


async def perform_sync(
    client: CrmClient,
    operation_type: SyncOperationType,
    resource_id: str,
    payload: Mapping[str, Any],
) -> str | None:
    if operation_type == SyncOperationType.ACCOUNT_SYNC:
        return await client.sync_account(resource_id, payload)
    if operation_type == SyncOperationType.BENEFIT_TICKET:
        return await client.create_ticket(resource_id, {"kind": "benefit", **dict(payload)})
    if operation_type == SyncOperationType.REDEMPTION_TICKET:
        return await client.create_ticket(resource_id, {"kind": "redemption", **dict(payload)})
    if operation_type == SyncOperationType.STATUS_UPDATE:
        status = payload.get("status")
        if not status:
            raise CrmRejectedError("Status update payload has no status")
        return await client.update_status(resource_id, str(status))
    raise CrmRejectedError(f"Unsupported sync operation {operation_type}")


async def record_remote_reference(
    session: AsyncSession,
    operation_type: SyncOperationType,
    resource_id: str,
    remote_id: str | None,
) -> None:
    """Store the CRM id on the local row the operation was about."""

    if not remote_id:
        return
    try:
        local_id = UUID(str(resource_id))
    except ValueError:
        return

    if operation_type == SyncOperationType.ACCOUNT_SYNC:
        stmt = update(Account).where(Account.id == local_id).values(crm_remote_id=remote_id, crm_synced_at=utcnow())
    elif operation_type == SyncOperationType.BENEFIT_TICKET:
        stmt = update(ClaimedBenefit).where(ClaimedBenefit.id == local_id).values(crm_remote_id=remote_id)
    elif operation_type == SyncOperationType.REDEMPTION_TICKET:
        stmt = update(Redemption).where(Redemption.id == local_id).values(crm_remote_id=remote_id)
    else:
        return
    await session.execute(stmt.execution_options(synchronize_session=False))


__all__ = ["perform_sync", "record_remote_reference"]

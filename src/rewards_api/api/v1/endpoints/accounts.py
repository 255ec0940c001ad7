"""Member accounts, point grants and ledger history."""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field

from rewards_api.api.dependencies.operations import get_operations
from rewards_api.api.dependencies.security import require_admin_api_key
from rewards_api.models.account import Account, AccountTier, LedgerEntry
from rewards_api.models.gifts import ClaimedBenefit
from rewards_api.services.loyalty import LoyaltyOperations

router = APIRouter(prefix="/accounts", tags=["Accounts"])


class AccountCreateRequest(BaseModel):
    phone: str = Field(..., description="Member phone; non-digits are ignored")
    displayName: str = Field(..., description="Name shown to staff, at least 3 characters")
    tier: AccountTier = AccountTier.STANDARD
    isAdmin: bool = False


class AccountResponse(BaseModel):
    id: UUID
    phone: str
    displayName: str
    pointsBalance: int
    tier: AccountTier
    isAdmin: bool
    isActive: bool
    crmRemoteId: Optional[str]

    @classmethod
    def from_model(cls, account: Account) -> "AccountResponse":
        return cls(
            id=account.id,
            phone=account.phone,
            displayName=account.display_name,
            pointsBalance=int(account.points_balance or 0),
            tier=account.tier,
            isAdmin=bool(account.is_admin),
            isActive=bool(account.is_active),
            crmRemoteId=account.crm_remote_id,
        )


class GrantPointsRequest(BaseModel):
    phone: str
    points: int = Field(..., description="Signed, non-zero amount")
    concept: str = Field(..., description="Reason recorded in the ledger")
    adminAccountId: Optional[UUID] = None


class GrantPointsResponse(BaseModel):
    accountId: UUID
    newBalance: int


class LedgerEntryResponse(BaseModel):
    id: UUID
    entryType: str
    delta: int
    concept: str
    createdAt: datetime


class BalanceAuditResponse(BaseModel):
    accountId: UUID
    storedBalance: int
    ledgerSum: int
    entryCount: int
    consistent: bool


class TierChangeRequest(BaseModel):
    tier: AccountTier


class AdminFlagRequest(BaseModel):
    isAdmin: bool


class AssignBenefitRequest(BaseModel):
    name: str = Field(..., description="Service the member can redeem")
    description: Optional[str] = None
    validDays: Optional[int] = Field(None, description="Days until the benefit lapses; omit for no expiry")
    adminAccountId: Optional[UUID] = None


class BenefitResponse(BaseModel):
    id: UUID
    name: str
    description: Optional[str]
    status: str
    source: str
    expiresAt: Optional[datetime]
    usedAt: Optional[datetime]

    @classmethod
    def from_model(cls, benefit: ClaimedBenefit) -> "BenefitResponse":
        return cls(
            id=benefit.id,
            name=benefit.name,
            description=benefit.description,
            status=benefit.status.value,
            source="gift" if benefit.gift_link_id else "assigned",
            expiresAt=benefit.expires_at,
            usedAt=benefit.used_at,
        )


def _entry_response(entry: LedgerEntry) -> LedgerEntryResponse:
    return LedgerEntryResponse(
        id=entry.id,
        entryType=entry.entry_type.value,
        delta=entry.delta,
        concept=entry.concept,
        createdAt=entry.created_at,
    )


@router.post(
    "",
    response_model=AccountResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_admin_api_key)],
)
async def create_account(
    payload: AccountCreateRequest,
    operations: LoyaltyOperations = Depends(get_operations),
) -> AccountResponse:
    account = await operations.create_account(
        payload.phone,
        payload.displayName,
        tier=payload.tier,
        is_admin=payload.isAdmin,
    )
    return AccountResponse.from_model(account)


@router.post(
    "/points",
    response_model=GrantPointsResponse,
    dependencies=[Depends(require_admin_api_key)],
)
async def grant_points(
    payload: GrantPointsRequest,
    operations: LoyaltyOperations = Depends(get_operations),
) -> GrantPointsResponse:
    result = await operations.grant_points(
        payload.phone,
        payload.points,
        payload.concept,
        admin_account_id=payload.adminAccountId,
    )
    return GrantPointsResponse(accountId=result.account_id, newBalance=result.new_balance)


@router.get("/by-phone/{phone}", response_model=AccountResponse)
async def get_account_by_phone(
    phone: str,
    operations: LoyaltyOperations = Depends(get_operations),
) -> AccountResponse:
    return AccountResponse.from_model(await operations.get_account_by_phone(phone))


@router.get("/{account_id}", response_model=AccountResponse)
async def get_account(
    account_id: UUID,
    operations: LoyaltyOperations = Depends(get_operations),
) -> AccountResponse:
    return AccountResponse.from_model(await operations.get_account(account_id))


@router.get("/{account_id}/history", response_model=List[LedgerEntryResponse])
async def list_history(
    account_id: UUID,
    limit: int = Query(50, ge=1, le=200),
    operations: LoyaltyOperations = Depends(get_operations),
) -> List[LedgerEntryResponse]:
    entries = await operations.list_history(account_id, limit=limit)
    return [_entry_response(entry) for entry in entries]


@router.get(
    "/{account_id}/audit",
    response_model=BalanceAuditResponse,
    dependencies=[Depends(require_admin_api_key)],
)
async def audit_balance(
    account_id: UUID,
    operations: LoyaltyOperations = Depends(get_operations),
) -> BalanceAuditResponse:
    audit = await operations.audit_balance(account_id)
    return BalanceAuditResponse(
        accountId=audit.account_id,
        storedBalance=audit.stored_balance,
        ledgerSum=audit.ledger_sum,
        entryCount=audit.entry_count,
        consistent=audit.consistent,
    )


@router.patch(
    "/{account_id}/tier",
    response_model=AccountResponse,
    dependencies=[Depends(require_admin_api_key)],
)
async def change_tier(
    account_id: UUID,
    payload: TierChangeRequest,
    operations: LoyaltyOperations = Depends(get_operations),
) -> AccountResponse:
    return AccountResponse.from_model(await operations.change_tier(account_id, payload.tier))


@router.put(
    "/{account_id}/admin",
    response_model=AccountResponse,
    dependencies=[Depends(require_admin_api_key)],
)
async def set_admin(
    account_id: UUID,
    payload: AdminFlagRequest,
    operations: LoyaltyOperations = Depends(get_operations),
) -> AccountResponse:
    return AccountResponse.from_model(await operations.set_admin(account_id, payload.isAdmin))


@router.post(
    "/{account_id}/deactivate",
    response_model=AccountResponse,
    dependencies=[Depends(require_admin_api_key)],
)
async def deactivate_account(
    account_id: UUID,
    operations: LoyaltyOperations = Depends(get_operations),
) -> AccountResponse:
    return AccountResponse.from_model(await operations.deactivate_account(account_id))


@router.get("/{account_id}/benefits", response_model=List[BenefitResponse])
async def list_benefits(
    account_id: UUID,
    operations: LoyaltyOperations = Depends(get_operations),
) -> List[BenefitResponse]:
    benefits = await operations.list_account_benefits(account_id)
    return [BenefitResponse.from_model(benefit) for benefit in benefits]


@router.post(
    "/{account_id}/benefits",
    response_model=BenefitResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_admin_api_key)],
)
async def assign_benefit(
    account_id: UUID,
    payload: AssignBenefitRequest,
    operations: LoyaltyOperations = Depends(get_operations),
) -> BenefitResponse:
    benefit = await operations.assign_benefit(
        account_id,
        payload.name,
        description=payload.description,
        valid_days=payload.validDays,
        admin_account_id=payload.adminAccountId,
    )
    return BenefitResponse.from_model(benefit)


@router.get("/{account_id}/benefits/history", response_model=List[BenefitResponse])
async def list_benefit_history(
    account_id: UUID,
    limit: int = Query(50, ge=1, le=200),
    operations: LoyaltyOperations = Depends(get_operations),
) -> List[BenefitResponse]:
    benefits = await operations.list_benefit_history(account_id, limit=limit)
    return [BenefitResponse.from_model(benefit) for benefit in benefits]

"""Referral codes and referral statistics."""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from rewards_api.api.dependencies.operations import get_operations
from rewards_api.api.dependencies.security import require_admin_api_key
from rewards_api.models.referral import ReferralRelationship, ReferralStatus
from rewards_api.services.loyalty import LoyaltyOperations

router = APIRouter(prefix="/referrals", tags=["Referrals"])


class ReferralCodeResponse(BaseModel):
    accountId: UUID
    code: str


class ApplyReferralRequest(BaseModel):
    accountId: UUID
    code: str = Field(..., min_length=1)


class ApplyReferralResponse(BaseModel):
    referralId: UUID
    pointsAwarded: int = Field(..., description="Points credited to the referred member on activation")
    activationDeadline: datetime


class ReferralCodeLookupResponse(BaseModel):
    code: str
    referrerName: str


class ReferralMemberSummary(BaseModel):
    id: UUID
    displayName: str
    phone: str


class ReferralResponse(BaseModel):
    id: UUID
    code: str
    status: ReferralStatus
    referrerId: UUID
    referredId: UUID
    referrerPoints: int
    referredPoints: int
    activationDeadline: datetime
    activatedAt: Optional[datetime]
    createdAt: datetime
    referrer: Optional[ReferralMemberSummary] = None
    referred: Optional[ReferralMemberSummary] = None

    @classmethod
    def from_model(cls, relationship: ReferralRelationship, *, include_referrer: bool = False) -> "ReferralResponse":
        return cls(
            id=relationship.id,
            code=relationship.code,
            status=relationship.status,
            referrerId=relationship.referrer_id,
            referredId=relationship.referred_id,
            referrerPoints=relationship.referrer_points,
            referredPoints=relationship.referred_points,
            activationDeadline=relationship.activation_deadline,
            activatedAt=relationship.activated_at,
            createdAt=relationship.created_at,
            referrer=_member_summary(relationship.referrer) if include_referrer else None,
            referred=_member_summary(relationship.referred),
        )


class ReferralActivationResponse(BaseModel):
    referralId: UUID
    referrerAwarded: bool
    referredAwarded: bool
    referredBalance: int


def _member_summary(account) -> ReferralMemberSummary:
    return ReferralMemberSummary(id=account.id, displayName=account.display_name, phone=account.phone)


class ReferralStatsResponse(BaseModel):
    accountId: UUID
    code: Optional[str]
    total: int
    pending: int
    active: int
    expired: int
    cancelled: int
    pointsEarned: int


@router.post("/accounts/{account_id}/code", response_model=ReferralCodeResponse)
async def get_or_create_code(
    account_id: UUID,
    operations: LoyaltyOperations = Depends(get_operations),
) -> ReferralCodeResponse:
    code = await operations.get_or_create_referral_code(account_id)
    return ReferralCodeResponse(accountId=account_id, code=code)


@router.post("/apply", response_model=ApplyReferralResponse)
async def apply_referral_code(
    payload: ApplyReferralRequest,
    operations: LoyaltyOperations = Depends(get_operations),
) -> ApplyReferralResponse:
    application = await operations.apply_referral_code(payload.accountId, payload.code)
    return ApplyReferralResponse(
        referralId=application.relationship_id,
        pointsAwarded=application.points_awarded,
        activationDeadline=application.activation_deadline,
    )


@router.get("/accounts/{account_id}/stats", response_model=ReferralStatsResponse)
async def referral_stats(
    account_id: UUID,
    operations: LoyaltyOperations = Depends(get_operations),
) -> ReferralStatsResponse:
    stats = await operations.referral_stats(account_id)
    return ReferralStatsResponse(
        accountId=account_id,
        code=stats.code,
        total=stats.total,
        pending=stats.pending,
        active=stats.active,
        expired=stats.expired,
        cancelled=stats.cancelled,
        pointsEarned=stats.points_earned,
    )


@router.get("/codes/{code}", response_model=ReferralCodeLookupResponse)
async def lookup_referral_code(
    code: str,
    operations: LoyaltyOperations = Depends(get_operations),
) -> ReferralCodeLookupResponse:
    referral_code = await operations.lookup_referral_code(code)
    return ReferralCodeLookupResponse(code=referral_code.code, referrerName=referral_code.account.display_name)


@router.get("/accounts/{account_id}/referrals", response_model=List[ReferralResponse])
async def list_my_referrals(
    account_id: UUID,
    operations: LoyaltyOperations = Depends(get_operations),
) -> List[ReferralResponse]:
    referrals = await operations.list_my_referrals(account_id)
    return [ReferralResponse.from_model(relationship) for relationship in referrals]


@router.get(
    "",
    response_model=List[ReferralResponse],
    dependencies=[Depends(require_admin_api_key)],
)
async def list_all_referrals(
    status: Optional[ReferralStatus] = Query(None),
    limit: int = Query(200, ge=1, le=500),
    operations: LoyaltyOperations = Depends(get_operations),
) -> List[ReferralResponse]:
    referrals = await operations.list_all_referrals(status=status, limit=limit)
    return [ReferralResponse.from_model(relationship, include_referrer=True) for relationship in referrals]


@router.post(
    "/{referral_id}/cancel",
    response_model=ReferralResponse,
    dependencies=[Depends(require_admin_api_key)],
)
async def cancel_referral(
    referral_id: UUID,
    operations: LoyaltyOperations = Depends(get_operations),
) -> ReferralResponse:
    relationship = await operations.cancel_referral(referral_id)
    return ReferralResponse.from_model(relationship)


@router.post(
    "/{referral_id}/activate",
    response_model=ReferralActivationResponse,
    dependencies=[Depends(require_admin_api_key)],
)
async def activate_referral(
    referral_id: UUID,
    operations: LoyaltyOperations = Depends(get_operations),
) -> ReferralActivationResponse:
    activation = await operations.activate_referral_manually(referral_id)
    return ReferralActivationResponse(
        referralId=activation.relationship_id,
        referrerAwarded=activation.referrer_awarded,
        referredAwarded=activation.referred_awarded,
        referredBalance=activation.referred_balance,
    )

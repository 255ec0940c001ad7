"""Gift links, claims and claimed benefits."""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field

from rewards_api.api.dependencies.operations import get_operations
from rewards_api.api.dependencies.security import require_admin_api_key
from rewards_api.api.v1.endpoints.accounts import BenefitResponse
from rewards_api.models.gifts import GiftBenefitType, GiftClaim, GiftLink
from rewards_api.services.gifts import GiftLinkDefinition, gift_availability
from rewards_api.services.loyalty import LoyaltyOperations

router = APIRouter(prefix="/gifts", tags=["Gifts"])


class GiftCreateRequest(BaseModel):
    benefitType: GiftBenefitType
    pointsAmount: Optional[int] = Field(None, gt=0)
    serviceName: Optional[str] = None
    serviceDescription: Optional[str] = None
    benefitValidDays: Optional[int] = Field(None, ge=0)
    recipientPhone: Optional[str] = None
    message: Optional[str] = None
    themeColor: Optional[str] = None
    expiresInDays: Optional[int] = Field(None, gt=0)
    isCampaign: bool = False
    maxClaims: Optional[int] = Field(None, gt=0)
    code: Optional[str] = Field(None, min_length=4, max_length=32)
    createdByAccountId: Optional[UUID] = None


class GiftUpdateRequest(BaseModel):
    message: Optional[str] = None
    themeColor: Optional[str] = None
    expiresAt: Optional[datetime] = None
    maxClaims: Optional[int] = Field(None, gt=0)


class GiftResponse(BaseModel):
    id: UUID
    code: str
    benefitType: GiftBenefitType
    pointsAmount: Optional[int]
    serviceName: Optional[str]
    message: Optional[str]
    themeColor: Optional[str]
    expiresAt: datetime
    isCampaign: bool
    maxClaims: int
    claimCount: int
    viewCount: int
    availability: str
    exclusive: bool

    @classmethod
    def from_model(cls, link: GiftLink, availability: str | None = None) -> "GiftResponse":
        return cls(
            id=link.id,
            code=link.code,
            benefitType=link.benefit_type,
            pointsAmount=link.points_amount,
            serviceName=link.service_name,
            message=link.message,
            themeColor=link.theme_color,
            expiresAt=link.expires_at,
            isCampaign=bool(link.is_campaign),
            maxClaims=link.claim_capacity,
            claimCount=int(link.claim_count or 0),
            viewCount=int(link.view_count or 0),
            availability=availability or gift_availability(link),
            exclusive=bool(link.recipient_phone),
        )


class ClaimRequest(BaseModel):
    phone: str
    displayName: Optional[str] = None


class ClaimedBenefitPayload(BaseModel):
    type: GiftBenefitType
    points: Optional[int]
    benefitId: Optional[UUID]
    name: Optional[str]
    expiresAt: Optional[datetime]


class ClaimResponse(BaseModel):
    accountId: UUID
    isNewAccount: bool
    benefit: ClaimedBenefitPayload
    newBalance: Optional[int]


class GiftClaimResponse(BaseModel):
    id: UUID
    accountId: UUID
    pointsAwarded: Optional[int]
    benefitId: Optional[UUID]
    createdAccount: bool
    createdAt: datetime

    @classmethod
    def from_model(cls, claim: GiftClaim) -> "GiftClaimResponse":
        return cls(
            id=claim.id,
            accountId=claim.account_id,
            pointsAwarded=claim.points_awarded,
            benefitId=claim.benefit_id,
            createdAccount=bool(claim.created_account),
            createdAt=claim.created_at,
        )


class UseBenefitRequest(BaseModel):
    adminAccountId: Optional[UUID] = None
    notes: Optional[str] = None


@router.post(
    "",
    response_model=GiftResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_admin_api_key)],
)
async def create_gift_link(
    payload: GiftCreateRequest,
    operations: LoyaltyOperations = Depends(get_operations),
) -> GiftResponse:
    definition = GiftLinkDefinition(
        benefit_type=payload.benefitType,
        points_amount=payload.pointsAmount,
        service_name=payload.serviceName,
        service_description=payload.serviceDescription,
        benefit_valid_days=payload.benefitValidDays,
        recipient_phone=payload.recipientPhone,
        message=payload.message,
        theme_color=payload.themeColor,
        expires_in_days=payload.expiresInDays,
        is_campaign=payload.isCampaign,
        max_claims=payload.maxClaims,
        code=payload.code,
    )
    link = await operations.create_gift_link(definition, created_by_account_id=payload.createdByAccountId)
    return GiftResponse.from_model(link)


@router.get("", response_model=List[GiftResponse], dependencies=[Depends(require_admin_api_key)])
async def list_gift_links(operations: LoyaltyOperations = Depends(get_operations)) -> List[GiftResponse]:
    return [GiftResponse.from_model(link) for link in await operations.list_gift_links()]


@router.get("/{code}", response_model=GiftResponse)
async def get_gift(code: str, operations: LoyaltyOperations = Depends(get_operations)) -> GiftResponse:
    view = await operations.get_gift(code)
    return GiftResponse.from_model(view.link, view.availability)


@router.post("/{code}/view", response_model=GiftResponse)
async def record_view(code: str, operations: LoyaltyOperations = Depends(get_operations)) -> GiftResponse:
    view = await operations.record_view(code)
    return GiftResponse.from_model(view.link, view.availability)


@router.post("/{code}/claim", response_model=ClaimResponse)
async def claim_gift(
    code: str,
    payload: ClaimRequest,
    operations: LoyaltyOperations = Depends(get_operations),
) -> ClaimResponse:
    result = await operations.claim_gift(code, payload.phone, display_name=payload.displayName)
    return ClaimResponse(
        accountId=result.account_id,
        isNewAccount=result.is_new_account,
        benefit=ClaimedBenefitPayload(
            type=result.benefit.benefit_type,
            points=result.benefit.points,
            benefitId=result.benefit.benefit_id,
            name=result.benefit.name,
            expiresAt=result.benefit.expires_at,
        ),
        newBalance=result.new_balance,
    )


@router.patch(
    "/links/{link_id}",
    response_model=GiftResponse,
    dependencies=[Depends(require_admin_api_key)],
)
async def update_gift_link(
    link_id: UUID,
    payload: GiftUpdateRequest,
    operations: LoyaltyOperations = Depends(get_operations),
) -> GiftResponse:
    link = await operations.update_gift_link(
        link_id,
        message=payload.message,
        theme_color=payload.themeColor,
        expires_at=payload.expiresAt,
        max_claims=payload.maxClaims,
    )
    return GiftResponse.from_model(link)


@router.post(
    "/links/{link_id}/expire",
    response_model=GiftResponse,
    dependencies=[Depends(require_admin_api_key)],
)
async def expire_gift_link(
    link_id: UUID,
    operations: LoyaltyOperations = Depends(get_operations),
) -> GiftResponse:
    return GiftResponse.from_model(await operations.expire_gift_link(link_id))


@router.get(
    "/links/{link_id}/claims",
    response_model=List[GiftClaimResponse],
    dependencies=[Depends(require_admin_api_key)],
)
async def list_link_claims(
    link_id: UUID,
    operations: LoyaltyOperations = Depends(get_operations),
) -> List[GiftClaimResponse]:
    return [GiftClaimResponse.from_model(claim) for claim in await operations.list_link_claims(link_id)]


@router.post(
    "/benefits/{benefit_id}/use",
    response_model=BenefitResponse,
    dependencies=[Depends(require_admin_api_key)],
)
async def mark_benefit_used(
    benefit_id: UUID,
    payload: UseBenefitRequest,
    operations: LoyaltyOperations = Depends(get_operations),
) -> BenefitResponse:
    benefit = await operations.mark_benefit_used(
        benefit_id,
        admin_account_id=payload.adminAccountId,
        notes=payload.notes,
    )
    return BenefitResponse.from_model(benefit)


@router.delete(
    "/benefits/{benefit_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    dependencies=[Depends(require_admin_api_key)],
)
async def delete_benefit(
    benefit_id: UUID,
    operations: LoyaltyOperations = Depends(get_operations),
) -> None:
    await operations.delete_benefit(benefit_id)

"""Reward catalog and redemptions."""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field

from rewards_api.api.dependencies.operations import get_operations
from rewards_api.api.dependencies.security import require_admin_api_key
from rewards_api.models.catalog import ItemKind, RedeemableItem, Redemption, RedemptionStatus
from rewards_api.services.loyalty import LoyaltyOperations

router = APIRouter(prefix="/catalog", tags=["Catalog"])


class ItemCreateRequest(BaseModel):
    name: str = Field(..., min_length=1)
    pointsRequired: int = Field(..., gt=0)
    kind: ItemKind = ItemKind.PHYSICAL
    stock: Optional[int] = Field(None, ge=0, description="Units on hand; ignored for services")
    description: Optional[str] = None


class ItemUpdateRequest(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    pointsRequired: Optional[int] = Field(None, gt=0)
    isActive: Optional[bool] = None


class RestockRequest(BaseModel):
    quantity: int = Field(..., gt=0)


class ItemResponse(BaseModel):
    id: UUID
    name: str
    description: Optional[str]
    kind: ItemKind
    pointsRequired: int
    stock: Optional[int]
    isActive: bool

    @classmethod
    def from_model(cls, item: RedeemableItem) -> "ItemResponse":
        return cls(
            id=item.id,
            name=item.name,
            description=item.description,
            kind=item.kind,
            pointsRequired=item.points_required,
            stock=item.stock,
            isActive=bool(item.is_active),
        )


class RedeemRequest(BaseModel):
    accountId: UUID
    itemId: UUID


class RedeemResponse(BaseModel):
    redemptionId: UUID
    newBalance: int
    pointsSpent: int
    status: RedemptionStatus


class AdvanceRequest(BaseModel):
    status: RedemptionStatus


class AdvanceResponse(BaseModel):
    redemptionId: UUID
    status: RedemptionStatus
    changed: bool


class RedemptionResponse(BaseModel):
    id: UUID
    accountId: UUID
    itemName: str
    pointsSpent: int
    status: RedemptionStatus
    deliveredAt: Optional[datetime]
    createdAt: datetime

    @classmethod
    def from_model(cls, redemption: Redemption) -> "RedemptionResponse":
        return cls(
            id=redemption.id,
            accountId=redemption.account_id,
            itemName=redemption.item_name,
            pointsSpent=redemption.points_spent,
            status=redemption.status,
            deliveredAt=redemption.delivered_at,
            createdAt=redemption.created_at,
        )


@router.get("/items", response_model=List[ItemResponse])
async def list_items(operations: LoyaltyOperations = Depends(get_operations)) -> List[ItemResponse]:
    return [ItemResponse.from_model(item) for item in await operations.list_items()]


@router.post(
    "/items",
    response_model=ItemResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_admin_api_key)],
)
async def create_item(
    payload: ItemCreateRequest,
    operations: LoyaltyOperations = Depends(get_operations),
) -> ItemResponse:
    item = await operations.create_item(
        name=payload.name,
        points_required=payload.pointsRequired,
        kind=payload.kind,
        stock=payload.stock,
        description=payload.description,
    )
    return ItemResponse.from_model(item)


@router.patch(
    "/items/{item_id}",
    response_model=ItemResponse,
    dependencies=[Depends(require_admin_api_key)],
)
async def update_item(
    item_id: UUID,
    payload: ItemUpdateRequest,
    operations: LoyaltyOperations = Depends(get_operations),
) -> ItemResponse:
    item = await operations.update_item(
        item_id,
        name=payload.name,
        description=payload.description,
        points_required=payload.pointsRequired,
        is_active=payload.isActive,
    )
    return ItemResponse.from_model(item)


@router.post(
    "/items/{item_id}/restock",
    response_model=ItemResponse,
    dependencies=[Depends(require_admin_api_key)],
)
async def restock_item(
    item_id: UUID,
    payload: RestockRequest,
    operations: LoyaltyOperations = Depends(get_operations),
) -> ItemResponse:
    return ItemResponse.from_model(await operations.restock_item(item_id, payload.quantity))


@router.post("/redemptions", response_model=RedeemResponse, status_code=status.HTTP_201_CREATED)
async def redeem(
    payload: RedeemRequest,
    operations: LoyaltyOperations = Depends(get_operations),
) -> RedeemResponse:
    result = await operations.redeem(payload.accountId, payload.itemId)
    return RedeemResponse(
        redemptionId=result.redemption_id,
        newBalance=result.new_balance,
        pointsSpent=result.points_spent,
        status=result.status,
    )


@router.get(
    "/redemptions/pending",
    response_model=List[RedemptionResponse],
    dependencies=[Depends(require_admin_api_key)],
)
async def list_pending_deliveries(
    limit: int = Query(100, ge=1, le=500),
    operations: LoyaltyOperations = Depends(get_operations),
) -> List[RedemptionResponse]:
    redemptions = await operations.list_pending_deliveries(limit=limit)
    return [RedemptionResponse.from_model(redemption) for redemption in redemptions]


@router.get("/redemptions/member/{account_id}", response_model=List[RedemptionResponse])
async def list_member_redemptions(
    account_id: UUID,
    limit: int = Query(50, ge=1, le=200),
    operations: LoyaltyOperations = Depends(get_operations),
) -> List[RedemptionResponse]:
    redemptions = await operations.list_member_redemptions(account_id, limit=limit)
    return [RedemptionResponse.from_model(redemption) for redemption in redemptions]


@router.post(
    "/redemptions/{redemption_id}/status",
    response_model=AdvanceResponse,
    dependencies=[Depends(require_admin_api_key)],
)
async def advance_redemption(
    redemption_id: UUID,
    payload: AdvanceRequest,
    operations: LoyaltyOperations = Depends(get_operations),
) -> AdvanceResponse:
    transition = await operations.advance_redemption(redemption_id, payload.status)
    return AdvanceResponse(
        redemptionId=transition.redemption_id,
        status=transition.status,
        changed=transition.changed,
    )

"""Program configuration: referral switch, bonuses, limits and gift defaults."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from rewards_api.api.dependencies.operations import get_operations
from rewards_api.api.dependencies.security import require_admin_api_key
from rewards_api.services.loyalty import LoyaltyOperations
from rewards_api.services.program_config import ProgramConfig

router = APIRouter(prefix="/program", tags=["Program"])


class ProgramConfigResponse(BaseModel):
    referralsEnabled: bool
    referrerPoints: int
    referredPoints: int
    referralActivationDays: int
    referralMonthlyLimit: int
    referralTotalLimit: int
    giftDefaultPoints: int
    giftLinkExpiryDays: int
    campaignDefaultMaxClaims: int
    benefitValidDays: int

    @classmethod
    def from_config(cls, config: ProgramConfig) -> "ProgramConfigResponse":
        return cls(
            referralsEnabled=config.referrals_enabled,
            referrerPoints=config.referrer_points,
            referredPoints=config.referred_points,
            referralActivationDays=config.referral_activation_days,
            referralMonthlyLimit=config.referral_monthly_limit,
            referralTotalLimit=config.referral_total_limit,
            giftDefaultPoints=config.gift_default_points,
            giftLinkExpiryDays=config.gift_link_expiry_days,
            campaignDefaultMaxClaims=config.campaign_default_max_claims,
            benefitValidDays=config.benefit_valid_days,
        )


class ProgramConfigUpdate(BaseModel):
    """Partial update; omitted fields keep their stored value."""

    referralsEnabled: Optional[bool] = None
    referrerPoints: Optional[int] = Field(None, description="0 disables the referrer bonus")
    referredPoints: Optional[int] = Field(None, description="0 disables the welcome bonus")
    referralActivationDays: Optional[int] = None
    referralMonthlyLimit: Optional[int] = Field(None, description="0 means unlimited")
    referralTotalLimit: Optional[int] = Field(None, description="0 means unlimited")
    giftDefaultPoints: Optional[int] = None
    giftLinkExpiryDays: Optional[int] = None
    campaignDefaultMaxClaims: Optional[int] = None
    benefitValidDays: Optional[int] = None

    def changes(self) -> dict[str, object]:
        return {
            _SETTING_KEYS[name]: value
            for name, value in self.model_dump(exclude_none=True).items()
        }


_SETTING_KEYS = {
    "referralsEnabled": "referrals_enabled",
    "referrerPoints": "referrer_points",
    "referredPoints": "referred_points",
    "referralActivationDays": "referral_activation_days",
    "referralMonthlyLimit": "referral_monthly_limit",
    "referralTotalLimit": "referral_total_limit",
    "giftDefaultPoints": "gift_default_points",
    "giftLinkExpiryDays": "gift_link_expiry_days",
    "campaignDefaultMaxClaims": "campaign_default_max_claims",
    "benefitValidDays": "benefit_valid_days",
}


@router.get("/config", response_model=ProgramConfigResponse)
async def get_program_config(
    operations: LoyaltyOperations = Depends(get_operations),
) -> ProgramConfigResponse:
    return ProgramConfigResponse.from_config(await operations.get_program_config())


@router.put(
    "/config",
    response_model=ProgramConfigResponse,
    dependencies=[Depends(require_admin_api_key)],
)
async def update_program_config(
    payload: ProgramConfigUpdate,
    operations: LoyaltyOperations = Depends(get_operations),
) -> ProgramConfigResponse:
    config = await operations.update_program_config(payload.changes())
    return ProgramConfigResponse.from_config(config)

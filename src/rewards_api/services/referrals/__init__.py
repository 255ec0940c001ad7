"""Referral program."""

from .referral_service import (
    ReferralActivation,
    ReferralApplication,
    ReferralService,
    ReferralStats,
    normalize_referral_code,
)

__all__ = [
    "ReferralActivation",
    "ReferralApplication",
    "ReferralService",
    "ReferralStats",
    "normalize_referral_code",
]

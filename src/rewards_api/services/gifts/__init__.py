"""Gift links and claimed benefits."""

from .gift_service import (
    GIFT_CODE_ALPHABET,
    GIFT_CODE_LENGTH,
    ClaimResult,
    GiftBenefit,
    GiftLinkDefinition,
    GiftService,
    benefit_ticket_details,
    gift_availability,
    normalize_gift_code,
)

__all__ = [
    "GIFT_CODE_ALPHABET",
    "GIFT_CODE_LENGTH",
    "ClaimResult",
    "GiftBenefit",
    "GiftLinkDefinition",
    "GiftService",
    "benefit_ticket_details",
    "gift_availability",
    "normalize_gift_code",
]

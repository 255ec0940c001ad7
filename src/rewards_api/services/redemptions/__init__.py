"""Redemption engine."""

from .redemption_service import (
    RedemptionResult,
    RedemptionService,
    RedemptionTransition,
    redemption_ticket_details,
)

__all__ = [
    "RedemptionResult",
    "RedemptionService",
    "RedemptionTransition",
    "redemption_ticket_details",
]

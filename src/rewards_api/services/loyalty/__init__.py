"""Transactional loyalty operations with post-commit side effects."""

from .operations import GiftView, GrantResult, LoyaltyOperations

__all__ = ["GiftView", "GrantResult", "LoyaltyOperations"]

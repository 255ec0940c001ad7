"""Error taxonomy shared by the ledger, redemption, gift and referral services.

``ValidationError`` subclasses are raised before a transaction opens.
``BusinessRuleError`` subclasses are raised inside a transaction, which then
rolls back. Both carry a stable ``code`` that the HTTP layer forwards verbatim.
"""

from __future__ import annotations


class LoyaltyError(Exception):
    """Base class for user-actionable loyalty failures."""

    code = "loyalty_error"
    status_code = 400
    default_message = "The loyalty operation could not be completed."

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.default_message)
        self.message = message or self.default_message


class ValidationError(LoyaltyError):
    code = "validation_error"
    status_code = 422


class BusinessRuleError(LoyaltyError):
    code = "business_rule"
    status_code = 409


# Validation


class InvalidAmount(ValidationError):
    code = "invalid_amount"
    default_message = "Points must be a non-zero whole number."


class ConceptRequired(ValidationError):
    code = "concept_required"
    default_message = "A concept is required for manual point changes."


class InvalidPhone(ValidationError):
    code = "invalid_phone"
    default_message = "Phone numbers must have 10 digits."


class InvalidName(ValidationError):
    code = "invalid_name"
    default_message = "Names need at least 3 characters."


class InvalidGiftDefinition(ValidationError):
    code = "invalid_gift"
    default_message = "The gift link definition is incomplete."


class InvalidBenefitDefinition(ValidationError):
    code = "invalid_benefit"
    default_message = "Assigned benefits need a name."


class InvalidProgramSetting(ValidationError):
    code = "invalid_setting"
    default_message = "That program setting value is not allowed."


# Lookups


class AccountNotFound(BusinessRuleError):
    code = "account_not_found"
    status_code = 404
    default_message = "Account not found."


class ItemNotFound(BusinessRuleError):
    code = "item_not_found"
    status_code = 404
    default_message = "Item not found."


class RedemptionNotFound(BusinessRuleError):
    code = "redemption_not_found"
    status_code = 404
    default_message = "Redemption not found."


class BenefitNotFound(BusinessRuleError):
    code = "benefit_not_found"
    status_code = 404
    default_message = "Benefit not found."


# Ledger and redemption


class InsufficientFunds(BusinessRuleError):
    code = "insufficient_funds"
    default_message = "The account does not have enough points for this change."


class InsufficientPoints(InsufficientFunds):
    code = "insufficient_points"
    default_message = "Not enough points for this reward."


class OutOfStock(BusinessRuleError):
    code = "out_of_stock"
    default_message = "This reward is out of stock."


class ItemUnavailable(BusinessRuleError):
    code = "item_unavailable"
    default_message = "This reward is not available."


class InvalidStatusTransition(BusinessRuleError):
    code = "invalid_status_transition"
    default_message = "The redemption cannot move to that status."


class PhoneAlreadyRegistered(BusinessRuleError):
    code = "phone_already_registered"
    default_message = "That phone number is already registered."


class AccountInactive(BusinessRuleError):
    code = "account_inactive"
    default_message = "This account is not active."


# Gifts


class GiftNotFound(BusinessRuleError):
    code = "gift_not_found"
    status_code = 404
    default_message = "Gift link not found."


class GiftExpired(BusinessRuleError):
    code = "gift_expired"
    status_code = 410
    default_message = "This gift link has expired."


class GiftExhausted(BusinessRuleError):
    code = "gift_exhausted"
    status_code = 410
    default_message = "This gift link has no claims left."


class AlreadyClaimed(GiftExhausted):
    code = "gift_already_claimed"
    status_code = 409
    default_message = "You already claimed this gift."


class WrongRecipient(BusinessRuleError):
    code = "wrong_recipient"
    status_code = 403
    default_message = "This gift was sent to a different phone number."


class BenefitUnavailable(BusinessRuleError):
    code = "benefit_unavailable"
    default_message = "This benefit was already used or has expired."


# Referrals


class InvalidReferralCode(BusinessRuleError):
    code = "invalid_code"
    status_code = 404
    default_message = "Referral code is not valid."


class ReferralAlreadyUsed(BusinessRuleError):
    code = "already_used"
    default_message = "This account already used a referral code."


class ReferralLimitReached(BusinessRuleError):
    code = "limit_reached"
    default_message = "The referrer reached the referral limit."


class ReferralProgramInactive(BusinessRuleError):
    code = "program_inactive"
    default_message = "The referral program is currently paused."


class ReferralNotFound(BusinessRuleError):
    code = "referral_not_found"
    status_code = 404
    default_message = "Referral not found."


class ReferralNotPending(BusinessRuleError):
    code = "referral_not_pending"
    default_message = "Only pending referrals can be changed."


__all__ = [
    "AccountInactive",
    "AccountNotFound",
    "AlreadyClaimed",
    "BenefitNotFound",
    "BenefitUnavailable",
    "BusinessRuleError",
    "ConceptRequired",
    "GiftExhausted",
    "GiftExpired",
    "GiftNotFound",
    "InsufficientFunds",
    "InsufficientPoints",
    "InvalidAmount",
    "InvalidBenefitDefinition",
    "InvalidGiftDefinition",
    "InvalidName",
    "InvalidPhone",
    "InvalidProgramSetting",
    "InvalidReferralCode",
    "InvalidStatusTransition",
    "ItemNotFound",
    "ItemUnavailable",
    "LoyaltyError",
    "OutOfStock",
    "PhoneAlreadyRegistered",
    "RedemptionNotFound",
    "ReferralAlreadyUsed",
    "ReferralLimitReached",
    "ReferralNotFound",
    "ReferralNotPending",
    "ReferralProgramInactive",
    "ValidationError",
    "WrongRecipient",
]

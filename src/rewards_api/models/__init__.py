"""SQLAlchemy models package."""

from .account import Account, AccountTier, LedgerEntry, LedgerEntryType  # noqa: F401
from .catalog import (  # noqa: F401
    ItemKind,
    RedeemableItem,
    Redemption,
    RedemptionStatus,
)
from .gifts import (  # noqa: F401
    BenefitStatus,
    ClaimedBenefit,
    GiftBenefitType,
    GiftClaim,
    GiftLink,
)
from .program import ProgramSetting  # noqa: F401
from .referral import ReferralCode, ReferralRelationship, ReferralStatus  # noqa: F401
from .sync_queue import SyncOperationType, SyncQueueEntry  # noqa: F401

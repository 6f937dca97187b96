"""
Crown Loyalty: receipt-based loyalty ledger

This package provides:
- Receipt validation (duplicate fingerprint, merchant, date window, amount, daily cap)
- An account ledger whose balance writes are compare-and-set with retry
- Tiered reward issuance against a guarded debit
- Exactly-once reward redemption: issued → redeemed
"""

from .errors import (
    LoyaltyError,
    InsufficientFundsError,
    LedgerConflictError,
    UnknownTierError,
    InvalidRewardRequestError,
    ExtractionError,
    StorageError,
)
from .ledger import LedgerService
from .models import (
    Account,
    Receipt,
    Reward,
    RewardTier,
    ReasonCode,
    MerchantMatch,
    RedemptionStatus,
    ExtractionResult,
)
from .receipts import ReceiptService, ReceiptValidator
from .redemption import RedemptionService, REWARD_CATALOG
from .service import LoyaltyServices

__all__ = [
    "LoyaltyError",
    "InsufficientFundsError",
    "LedgerConflictError",
    "UnknownTierError",
    "InvalidRewardRequestError",
    "ExtractionError",
    "StorageError",
    "LedgerService",
    "Account",
    "Receipt",
    "Reward",
    "RewardTier",
    "ReasonCode",
    "MerchantMatch",
    "RedemptionStatus",
    "ExtractionResult",
    "ReceiptService",
    "ReceiptValidator",
    "RedemptionService",
    "REWARD_CATALOG",
    "LoyaltyServices",
]

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


class ReasonCode(str, Enum):
    DUPLICATE_RECEIPT = "DUPLICATE_RECEIPT"
    MERCHANT_NOT_BURGER_KING = "MERCHANT_NOT_BURGER_KING"
    RECEIPT_TOO_OLD = "RECEIPT_TOO_OLD"
    RECEIPT_IN_FUTURE = "RECEIPT_IN_FUTURE"
    DATE_NOT_DETECTED = "DATE_NOT_DETECTED"
    INVALID_AMOUNT = "INVALID_AMOUNT"
    DAILY_LIMIT_REACHED = "DAILY_LIMIT_REACHED"

    @property
    def blocking(self) -> bool:
        return self is not ReasonCode.INVALID_AMOUNT


class MerchantMatch(str, Enum):
    CONFIRMED = "CONFIRMED"
    MISMATCH = "MISMATCH"
    UNKNOWN = "UNKNOWN"


class RewardTier(str, Enum):
    FREE_DRINK = "FREE_DRINK"
    FREE_SIDE = "FREE_SIDE"
    FREE_SUNDAE = "FREE_SUNDAE"
    FREE_MEAL = "FREE_MEAL"
    CUSTOM = "CUSTOM"


class RedemptionStatus(str, Enum):
    VALID = "VALID"
    ALREADY_REDEEMED = "ALREADY_REDEEMED"
    NOT_FOUND = "NOT_FOUND"


# Persisted records

class Account(CamelModel):
    user_id: str
    points: int = Field(default=0, ge=0)
    version: int = 0


class Receipt(CamelModel):
    id: str
    user_id: str
    image_fingerprint: str
    amount: Decimal
    points_earned: int = Field(ge=0)
    merchant_name: Optional[str] = None
    transaction_date: Optional[datetime] = None
    raw_date_text: Optional[str] = None
    blob_url: Optional[str] = None
    created_at: datetime


class Reward(CamelModel):
    id: str
    user_id: str
    name: str
    points_cost: int = Field(ge=0)
    tier: Optional[RewardTier] = None
    redeemed: bool = False
    created_at: datetime
    redeemed_at: Optional[datetime] = None

    def can_redeem(self) -> bool:
        return not self.redeemed


class TierConfig(BaseModel):
    """Name and cost a redemption request resolves to; ``tier`` is None for custom rewards."""

    model_config = ConfigDict(frozen=True)

    name: str
    points_cost: int = Field(gt=0)
    tier: Optional[RewardTier] = None


# Extraction and validation

class ExtractionResult(BaseModel):
    """Best-effort fields read off a receipt image. Every field may be absent."""

    amount: Optional[Decimal] = None
    merchant_name: Optional[str] = None
    merchant_match: MerchantMatch = MerchantMatch.UNKNOWN
    transaction_date: Optional[datetime] = None
    raw_date_text: Optional[str] = None


class ValidationReason(CamelModel):
    code: ReasonCode
    message: str


class ValidationOutcome(BaseModel):
    fingerprint: str
    reasons: list[ValidationReason] = Field(default_factory=list)
    amount: Optional[Decimal] = None
    points_earned: int = 0
    extraction: ExtractionResult = Field(default_factory=ExtractionResult)

    @property
    def blocking_reasons(self) -> list[ValidationReason]:
        return [r for r in self.reasons if r.code.blocking]

    @property
    def warnings(self) -> list[ValidationReason]:
        return [r for r in self.reasons if not r.code.blocking]

    @property
    def accepted(self) -> bool:
        return not self.blocking_reasons


class SubmissionResult(BaseModel):
    outcome: ValidationOutcome
    receipt: Optional[Receipt] = None
    account: Optional[Account] = None

    @property
    def accepted(self) -> bool:
        return self.receipt is not None


class IssuedReward(BaseModel):
    reward: Reward
    account: Account
    qr_payload: str


class RedemptionResult(BaseModel):
    status: RedemptionStatus
    reward: Optional[Reward] = None


# HTTP request/response bodies

class UploadReceiptRequest(CamelModel):
    file_base64: str = Field(..., min_length=1)
    file_name: Optional[str] = None
    content_type: Optional[str] = None


class RedeemRewardRequest(CamelModel):
    tier: Optional[str] = None
    reward_name: Optional[str] = None
    points_cost: Optional[int] = None

    model_config = ConfigDict(json_schema_extra={
        "examples": [
            {"tier": "FREE_SUNDAE"},
            {"rewardName": "Free Sundae", "pointsCost": 100},
        ]
    })


class ValidateRewardRequest(CamelModel):
    reward_id: Optional[str] = None


class BalanceResponse(CamelModel):
    user_id: str
    points: int


class RewardSummary(CamelModel):
    id: str
    name: str
    points_cost: int
    redeemed: bool
    created_at: datetime
    redeemed_at: Optional[datetime] = None
    tier: Optional[RewardTier] = None


class RewardHistoryResponse(CamelModel):
    rewards: list[RewardSummary]


class UploadReceiptResponse(CamelModel):
    user_id: str
    amount: float
    points_earned: int
    new_balance: int
    receipt_id: str
    receipt_blob_url: Optional[str] = None
    transaction_date: Optional[datetime] = None
    raw_date_text: Optional[str] = None
    merchant_name: Optional[str] = None
    warnings: list[ValidationReason] = Field(default_factory=list)


class RedeemRewardResponse(CamelModel):
    reward_id: str
    reward_name: str
    points_cost: int
    new_balance: int
    qr_payload: str
    tier: Optional[RewardTier] = None

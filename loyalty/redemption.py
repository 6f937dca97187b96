from datetime import datetime, timezone
from typing import Optional
from uuid import uuid4

from .config import Settings, get_settings
from .errors import InvalidRewardRequestError, StorageError, UnknownTierError
from .ledger import LedgerService
from .models import IssuedReward, RedemptionResult, RedemptionStatus, Reward, RewardTier, TierConfig
from .observability import get_logger
from .storage import InMemoryRewardRepository, RewardRepository

logger = get_logger(__name__)


REWARD_CATALOG: dict[RewardTier, TierConfig] = {
    RewardTier.FREE_DRINK: TierConfig(name="Free drink", points_cost=10, tier=RewardTier.FREE_DRINK),
    RewardTier.FREE_SIDE: TierConfig(name="Free side", points_cost=25, tier=RewardTier.FREE_SIDE),
    RewardTier.FREE_SUNDAE: TierConfig(name="Free sundae", points_cost=40, tier=RewardTier.FREE_SUNDAE),
    RewardTier.FREE_MEAL: TierConfig(name="Free meal", points_cost=80, tier=RewardTier.FREE_MEAL),
}


def resolve_tier(
    tier: Optional[str],
    reward_name: Optional[str] = None,
    points_cost: Optional[int] = None,
    settings: Optional[Settings] = None,
) -> TierConfig:
    """Resolve a redemption request to a catalog entry, or to a custom reward when no tier is named."""
    settings = settings or get_settings()
    if tier and tier.upper() != RewardTier.CUSTOM.value:
        try:
            return REWARD_CATALOG[RewardTier(tier.upper())]
        except (ValueError, KeyError):
            raise UnknownTierError(f"Unknown reward tier: {tier}")

    cost = settings.custom_reward_cost if points_cost is None else points_cost
    if isinstance(cost, bool) or not isinstance(cost, int) or cost <= 0:
        raise InvalidRewardRequestError(f"pointsCost must be a positive integer, got {points_cost!r}")
    return TierConfig(name=reward_name or settings.custom_reward_name, points_cost=cost)


class RedemptionService:
    """Issues reward tokens against a ledger debit and redeems each token once.

    A reward is ``redeemed=False`` when issued and moves to ``redeemed=True``
    exactly once; there is no other state.
    """

    def __init__(
        self,
        ledger: LedgerService,
        rewards: Optional[RewardRepository] = None,
        settings: Optional[Settings] = None,
    ):
        self.ledger = ledger
        self.rewards = rewards or InMemoryRewardRepository()
        self.settings = settings or get_settings()

    def qr_payload(self, reward_id: str) -> str:
        return f"{self.settings.qr_prefix}{reward_id}"

    def issue_reward(self, user_id: str, config: TierConfig) -> IssuedReward:
        account = self.ledger.guarded_debit(user_id, config.points_cost)

        reward = Reward(
            id=str(uuid4()),
            user_id=user_id,
            name=config.name,
            points_cost=config.points_cost,
            tier=config.tier,
            redeemed=False,
            created_at=datetime.now(timezone.utc),
        )
        try:
            self.rewards.insert(reward)
        except StorageError:
            logger.error("Could not store reward for user %s, refunding %d points", user_id, config.points_cost)
            self.ledger.credit(user_id, config.points_cost)
            raise

        logger.info("Issued reward %s (%s, %d points) to user %s", reward.id, reward.name, reward.points_cost, user_id)
        return IssuedReward(reward=reward, account=account, qr_payload=self.qr_payload(reward.id))

    def redeem_reward(self, reward_id: str) -> RedemptionResult:
        reward, transitioned = self.rewards.mark_redeemed(reward_id, datetime.now(timezone.utc))
        if reward is None:
            return RedemptionResult(status=RedemptionStatus.NOT_FOUND)
        if not transitioned:
            logger.warning("Reward %s presented again after redemption at %s", reward_id, reward.redeemed_at)
            return RedemptionResult(status=RedemptionStatus.ALREADY_REDEEMED, reward=reward)

        logger.info("Redeemed reward %s for user %s", reward_id, reward.user_id)
        return RedemptionResult(status=RedemptionStatus.VALID, reward=reward)

    def get_reward(self, reward_id: str) -> Optional[Reward]:
        return self.rewards.get(reward_id)

    def list_rewards(self, user_id: str) -> list[Reward]:
        return self.rewards.list_for_user(user_id)

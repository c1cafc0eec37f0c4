from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID
from pydantic import BaseModel, Field, ConfigDict

from ledger.models import EntryKind, LedgerEntry


class ConfigurationStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class ActivationBonus(BaseModel):
    enabled: bool = True
    required_deliveries: int = 3
    referrer_points: int = 20
    referee_points: int = 10


class PerDeliveryReward(BaseModel):
    enabled: bool = True
    referrer_points: int = 8
    max_deliveries_per_referee: int = 150


class MilestoneReward(BaseModel):
    delivery_count: int
    points: int
    description: str = ""


class Milestones(BaseModel):
    enabled: bool = True
    rewards: list[MilestoneReward] = Field(default_factory=lambda: [
        MilestoneReward(delivery_count=10, points=25, description="10 Deliveries Milestone"),
        MilestoneReward(delivery_count=25, points=50, description="25 Deliveries Milestone"),
        MilestoneReward(delivery_count=50, points=75, description="50 Deliveries Milestone"),
        MilestoneReward(delivery_count=100, points=150, description="100 Deliveries Milestone"),
    ])


class RankReward(BaseModel):
    rank: int
    points: int
    description: str = ""


class LeaderboardRewards(BaseModel):
    enabled: bool = True
    rewards: list[RankReward] = Field(default_factory=lambda: [
        RankReward(rank=1, points=300, description="1st Place - Monthly Top Referrer"),
        RankReward(rank=2, points=150, description="2nd Place - Monthly Runner Up"),
        RankReward(rank=3, points=75, description="3rd Place - Monthly Third Place"),
    ])


class ProfitabilityControls(BaseModel):
    max_points_per_referee: int = 300
    monthly_referral_budget: int = 1500
    max_referral_budget_percentage: float = 25


class RedemptionSettings(BaseModel):
    minimum_points_for_cashout: int = 50
    cashout_fee: int = 0
    max_cashouts_per_month: int = 2
    allow_free_deliveries: bool = True
    points_per_free_delivery: int = 20


class TimeLimits(BaseModel):
    referral_code_expiry_days: int = 30
    points_expiry_days: int = 365
    activation_bonus_expiry_days: int = 90


class RewardRules(BaseModel):
    """The rule groups of a configuration, without identity or status."""

    activation_bonus: ActivationBonus = Field(default_factory=ActivationBonus)
    per_delivery_reward: PerDeliveryReward = Field(default_factory=PerDeliveryReward)
    milestones: Milestones = Field(default_factory=Milestones)
    leaderboard_rewards: LeaderboardRewards = Field(default_factory=LeaderboardRewards)
    profitability_controls: ProfitabilityControls = Field(default_factory=ProfitabilityControls)
    redemption_settings: RedemptionSettings = Field(default_factory=RedemptionSettings)
    time_limits: TimeLimits = Field(default_factory=TimeLimits)


class CreateConfigurationRequest(RewardRules):
    name: str
    description: str = ""
    scope: str = "default"
    status: ConfigurationStatus = ConfigurationStatus.INACTIVE
    created_by: Optional[str] = None

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "name": "Autumn referral push",
            "description": "Higher activation bonus for new drivers",
            "activation_bonus": {"required_deliveries": 3, "referrer_points": 15, "referee_points": 5},
            "status": "active",
        }
    })


class RewardConfiguration(RewardRules):
    id: UUID
    lineage_id: UUID
    version: int = 1
    scope: str = "default"
    name: str
    description: str = ""
    status: ConfigurationStatus
    created_at: datetime
    created_by: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)

    def is_active(self) -> bool:
        return self.status == ConfigurationStatus.ACTIVE

    def milestone_for(self, delivery_count: int) -> Optional[MilestoneReward]:
        if not self.milestones.enabled:
            return None
        for milestone in self.milestones.rewards:
            if milestone.delivery_count == delivery_count:
                return milestone
        return None

    def reward_for_rank(self, rank: int) -> Optional[RankReward]:
        if not self.leaderboard_rewards.enabled:
            return None
        for reward in self.leaderboard_rewards.rewards:
            if reward.rank == rank:
                return reward
        return None


class UpdateStatusRequest(BaseModel):
    status: ConfigurationStatus
    changed_by: Optional[str] = None


class ReviseConfigurationRequest(BaseModel):
    """Partial rule changes; omitted groups are carried over from the base version."""

    name: Optional[str] = None
    description: Optional[str] = None
    activation_bonus: Optional[ActivationBonus] = None
    per_delivery_reward: Optional[PerDeliveryReward] = None
    milestones: Optional[Milestones] = None
    leaderboard_rewards: Optional[LeaderboardRewards] = None
    profitability_controls: Optional[ProfitabilityControls] = None
    redemption_settings: Optional[RedemptionSettings] = None
    time_limits: Optional[TimeLimits] = None
    created_by: Optional[str] = None


class ConfigurationStatusChange(BaseModel):
    configuration_id: UUID
    from_status: Optional[ConfigurationStatus] = None
    to_status: ConfigurationStatus
    changed_by: Optional[str] = None
    changed_at: datetime
    reason: str = ""


class ProfitabilityAnalysis(BaseModel):
    configuration_id: UUID
    period: str
    total_revenue: float
    company_share: float
    referral_costs: float
    net_profit: float
    points_awarded: int
    budget_usage: float
    monthly_budget: int
    max_budget: float
    per_referee_limit: int
    within_budget_percentage: bool


class EvaluationStatus(str, Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    UNKNOWN_REFEREE = "unknown_referee"
    IGNORED = "ignored"


class SkippedAward(BaseModel):
    kind: EntryKind
    driver_ids: list[str]
    amount: int
    reason: str
    detail: str = ""


class EvaluationOutcome(BaseModel):
    event_key: str
    status: EvaluationStatus
    reason: Optional[str] = None
    referral_id: Optional[UUID] = None
    referral_status: Optional[str] = None
    deliveries_completed: Optional[int] = None
    entries: list[LedgerEntry] = Field(default_factory=list)
    skipped: list[SkippedAward] = Field(default_factory=list)

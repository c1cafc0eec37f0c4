from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID
from pydantic import BaseModel, Field, ConfigDict


class CodeStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class ReferralStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    ACTIVATED = "activated"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class ReferralCode(BaseModel):
    code: str
    driver_id: str
    driver_name: Optional[str] = None
    status: CodeStatus = CodeStatus.ACTIVE
    total_uses: int = 0
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)

    def is_active(self) -> bool:
        return self.status == CodeStatus.ACTIVE


class ReferralProgress(BaseModel):
    deliveries_completed: int = 0


class Referral(BaseModel):
    id: UUID
    referrer_id: str
    referee_id: str
    code: str
    status: ReferralStatus = ReferralStatus.PENDING
    progress: ReferralProgress = Field(default_factory=ReferralProgress)
    configuration_id: Optional[UUID] = None
    created_at: datetime
    activated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)

    def is_activated(self) -> bool:
        return self.status in (ReferralStatus.ACTIVATED, ReferralStatus.COMPLETED)

    def can_cancel(self) -> bool:
        return self.status == ReferralStatus.PENDING

    def completion_percentage(self, required_deliveries: int) -> int:
        if self.is_activated() or required_deliveries <= 0:
            return 100
        return round(min(self.progress.deliveries_completed / required_deliveries, 1) * 100)


class ReferralRedeemed(BaseModel):
    referee_id: str
    code: str
    referrer_id: Optional[str] = Field(default=None, description="Defaults to the code owner")

    @property
    def idempotency_key(self) -> str:
        return f"referral_redeemed:{self.referee_id}:{self.code}"


class DeliveryCompleted(BaseModel):
    referee_id: str
    delivery_id: str

    @property
    def idempotency_key(self) -> str:
        return f"delivery_completed:{self.referee_id}:{self.delivery_id}"


class GenerateCodeRequest(BaseModel):
    driver_name: Optional[str] = None


class UseCodeRequest(BaseModel):
    referee_id: str


class CodeValidation(BaseModel):
    code: str
    valid: bool
    status: Optional[CodeStatus] = None
    driver_id: Optional[str] = None
    total_uses: int = 0
    reason: Optional[str] = None


class CodeUsage(BaseModel):
    code: str
    driver_id: str
    status: CodeStatus
    total_uses: int
    referrals: list[Referral]


class DriverReferralStats(BaseModel):
    driver_id: str
    total_referrals: int
    active_referrals: int
    pending_referrals: int
    activated_referrals: int
    completed_referrals: int
    total_points_earned: int
    available_points: int
    referrals_as_referrer: list[Referral]
    referred_by: Optional[Referral] = None


class ReferralStatistics(BaseModel):
    total_referrals: int
    pending_referrals: int
    in_progress_referrals: int
    activated_referrals: int
    completed_referrals: int
    cancelled_referrals: int
    total_points_awarded: int
    total_points_redeemed: int
    active_referrers: int
    total_drivers_with_points: int
    completion_rate: float


class ActivityItem(BaseModel):
    type: str
    driver_id: str
    description: str
    amount: Optional[int] = None
    referral_id: Optional[UUID] = None
    occurred_at: datetime


class ReferralListResponse(BaseModel):
    referrals: list[Referral]
    total_count: int
    page: int
    limit: int

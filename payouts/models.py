from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID
from pydantic import BaseModel, Field, ConfigDict

from ledger.models import LedgerEntry


class RedemptionMethod(str, Enum):
    CASHOUT = "cashout"
    FREE_DELIVERY = "free_delivery"


class RedemptionStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    REJECTED = "rejected"


class RedemptionRequestIn(BaseModel):
    amount: int = Field(..., description="Points to redeem")
    method: RedemptionMethod = RedemptionMethod.CASHOUT
    description: Optional[str] = None
    idempotency_key: Optional[str] = Field(default=None, description="Client key; a repeat returns the stored request")

    model_config = ConfigDict(json_schema_extra={
        "example": {"amount": 60, "method": "cashout", "description": "Monthly cash-out"}
    })


class RedemptionRequest(BaseModel):
    id: UUID
    driver_id: str
    amount: int
    method: RedemptionMethod
    status: RedemptionStatus = RedemptionStatus.PENDING
    fee: int = 0
    points_debited: int = 0
    free_deliveries: int = 0
    reason: Optional[str] = None
    detail: Optional[str] = None
    description: Optional[str] = None
    idempotency_key: Optional[str] = None
    ledger_entry_id: Optional[UUID] = None
    configuration_id: Optional[UUID] = None
    requested_at: datetime
    processed_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)

    def is_completed(self) -> bool:
        return self.status == RedemptionStatus.COMPLETED


class RedemptionResponse(BaseModel):
    request: RedemptionRequest
    ledger_entry: Optional[LedgerEntry] = None
    available_points: int
    message: str


class LeaderboardEntry(BaseModel):
    period: str
    driver_id: str
    rank: int
    total_points: int
    total_referrals: int
    monthly_reward: int = 0
    configuration_id: Optional[UUID] = None
    reached_total_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True, frozen=True)


class LeaderboardResponse(BaseModel):
    period: str
    closed: bool
    entries: list[LeaderboardEntry]
    awards: list[LedgerEntry] = Field(default_factory=list)

from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID
from pydantic import BaseModel, Field, ConfigDict


class EntryKind(str, Enum):
    ACTIVATION = "activation"
    PER_DELIVERY = "per_delivery"
    MILESTONE = "milestone"
    LEADERBOARD = "leaderboard"
    REDEMPTION = "redemption"
    ADJUSTMENT = "adjustment"


REFERRAL_KINDS = (EntryKind.ACTIVATION, EntryKind.PER_DELIVERY, EntryKind.MILESTONE)
AWARD_KINDS = REFERRAL_KINDS + (EntryKind.LEADERBOARD,)


class NewLedgerEntry(BaseModel):
    idempotency_key: str = Field(..., description="Unique key to prevent duplicates")
    driver_id: str
    amount: int
    kind: EntryKind
    description: str
    referral_id: Optional[UUID] = None
    configuration_id: Optional[UUID] = None
    metadata: dict = Field(default_factory=dict)

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "idempotency_key": "activation:7b0c...:referrer",
            "driver_id": "driver-a",
            "amount": 15,
            "kind": "activation",
            "description": "Activation bonus for referring driver-b",
        }
    })


class LedgerEntry(BaseModel):
    id: UUID
    driver_id: str
    amount: int
    kind: EntryKind
    description: str
    referral_id: Optional[UUID] = None
    configuration_id: Optional[UUID] = None
    idempotency_key: str
    created_at: datetime
    metadata: dict = Field(default_factory=dict)

    model_config = ConfigDict(from_attributes=True, frozen=True)


class PointsBalance(BaseModel):
    driver_id: str
    lifetime_total: int = 0
    redeemed_points: int = 0
    available_points: int = 0
    total_entries: int = 0
    last_transaction_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class LedgerHistoryResponse(BaseModel):
    driver_id: str
    entries: list[LedgerEntry]
    total_count: int
    balance: PointsBalance

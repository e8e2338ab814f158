from datetime import datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, Field, ConfigDict


class CreditType(str, Enum):
    EARNED = "earned"
    USED = "used"
    EXPIRED = "expired"
    REFUNDED = "refunded"


class CreditSource(str, Enum):
    INVITE_REWARD = "invite_reward"
    MILESTONE_REWARD = "milestone_reward"
    ACTIVITY_REWARD = "activity_reward"
    PURCHASE = "purchase"
    ADMIN_GRANT = "admin_grant"
    SYSTEM_REFUND = "system_refund"


# Sources that count towards an inviter's "rewards earned" figure
REWARD_SOURCES = (
    CreditSource.INVITE_REWARD,
    CreditSource.MILESTONE_REWARD,
    CreditSource.ACTIVITY_REWARD,
)


class CreditRecord(BaseModel):
    id: str
    user_id: str
    amount: int
    type: CreditType
    source: CreditSource
    source_id: str
    description: str = ""
    expires_at: Optional[datetime] = None
    created_at: datetime
    used_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class CreditUsage(BaseModel):
    id: str
    user_id: str
    amount: int
    purpose: str
    metadata: Optional[dict] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class UserCreditBalance(BaseModel):
    user_id: str
    total_earned: int = 0
    total_used: int = 0
    total_expired: int = 0
    available_credits: int = 0
    expiring_credits: int = 0
    last_updated: datetime

    model_config = ConfigDict(from_attributes=True)


class SourceTotal(BaseModel):
    source: CreditSource
    amount: int


class CreditStats(BaseModel):
    user_id: str
    total_earned: int
    total_used: int
    total_expired: int
    average_daily: float
    top_sources: list[SourceTotal] = Field(default_factory=list)


class DebitRequest(BaseModel):
    amount: int = Field(..., gt=0, description="Credits to consume")
    purpose: str = Field(..., min_length=1)
    metadata: Optional[dict] = None

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "amount": 3,
            "purpose": "ai_card_generation",
            "metadata": {"card_id": "c-1024"}
        }
    })


class CreditHistoryResponse(BaseModel):
    user_id: str
    records: list[CreditRecord]
    balance: UserCreditBalance

from datetime import datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, Field, ConfigDict

from ledger.models import CreditSource


class RewardType(str, Enum):
    AI_CREDITS = "ai_credits"
    BADGE = "badge"
    TITLE = "title"


class ApprovalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class RewardApproval(BaseModel):
    id: str
    user_id: str
    reward_type: RewardType
    reward_amount: int
    description: str = ""
    status: ApprovalStatus = ApprovalStatus.PENDING
    source: CreditSource = CreditSource.ADMIN_GRANT
    rule_id: Optional[str] = None
    source_id: Optional[str] = None
    admin_id: Optional[str] = None
    admin_notes: Optional[str] = None
    created_at: datetime
    approved_at: Optional[datetime] = None
    rejected_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)

    def is_terminal(self) -> bool:
        return self.status in (ApprovalStatus.APPROVED, ApprovalStatus.REJECTED)


class ApproveRequest(BaseModel):
    admin_id: str = Field(..., min_length=1)
    notes: Optional[str] = None


class RejectRequest(BaseModel):
    admin_id: str = Field(..., min_length=1)
    reason: str = Field(..., min_length=1, description="Reason shown to the user")

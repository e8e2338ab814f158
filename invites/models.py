from datetime import datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, Field, ConfigDict

from infra.advisory import AdvisoryOutcome
from infra.errors import ErrorKind, message_for


class InviteEventType(str, Enum):
    CODE_GENERATED = "code_generated"
    REGISTRATION = "registration"
    ACTIVATION = "activation"
    REWARD_GRANTED = "reward_granted"


class InviteCode(BaseModel):
    id: str
    code: str
    inviter_id: str
    created_at: datetime
    expires_at: datetime
    is_active: bool = True
    usage_count: int = 0
    max_usage: int = 100

    model_config = ConfigDict(from_attributes=True)

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at


class InviteRegistration(BaseModel):
    id: str
    invite_code_id: str
    inviter_id: str
    invitee_id: str
    registered_at: datetime
    is_activated: bool = False
    activated_at: Optional[datetime] = None
    rewards_claimed: bool = False

    model_config = ConfigDict(from_attributes=True)


class InviteStats(BaseModel):
    user_id: str
    total_invites: int = 0
    successful_registrations: int = 0
    active_invitees: int = 0
    total_rewards_earned: int = 0
    last_updated: datetime

    model_config = ConfigDict(from_attributes=True)


class RegistrationMetadata(BaseModel):
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    device_fingerprint: Optional[str] = None


class CodeValidation(BaseModel):
    is_valid: bool
    code: Optional[InviteCode] = None
    error_kind: Optional[ErrorKind] = None
    error: Optional[str] = None

    @classmethod
    def ok(cls, code: InviteCode) -> "CodeValidation":
        return cls(is_valid=True, code=code)

    @classmethod
    def fail(cls, kind: ErrorKind) -> "CodeValidation":
        return cls(is_valid=False, error_kind=kind, error=message_for(kind))


class RegistrationResult(BaseModel):
    success: bool
    registration: Optional[InviteRegistration] = None
    error_kind: Optional[ErrorKind] = None
    error: Optional[str] = None
    risk_score: Optional[float] = None
    advisories: list[AdvisoryOutcome] = Field(default_factory=list)

    @classmethod
    def fail(cls, kind: ErrorKind) -> "RegistrationResult":
        return cls(success=False, error_kind=kind, error=message_for(kind))

    @property
    def advisory_failures(self) -> list[AdvisoryOutcome]:
        return [a for a in self.advisories if not a.ok]


class ActivationResult(BaseModel):
    activated: bool
    registration: Optional[InviteRegistration] = None
    advisories: list[AdvisoryOutcome] = Field(default_factory=list)

    def __bool__(self) -> bool:
        return self.activated


class GenerateCodeRequest(BaseModel):
    inviter_id: str = Field(..., min_length=1)


class RegisterRequest(BaseModel):
    code: str = Field(..., description="Invite code shared by the inviter")
    invitee_id: str = Field(..., min_length=1)
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    device_fingerprint: Optional[str] = None

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "code": "K7Q2M9XD",
            "invitee_id": "user-456",
            "ip_address": "203.0.113.7",
            "user_agent": "Mozilla/5.0 (Macintosh; Intel Mac OS X 14_5)",
        }
    })

    def metadata(self) -> RegistrationMetadata:
        return RegistrationMetadata(
            ip_address=self.ip_address,
            user_agent=self.user_agent,
            device_fingerprint=self.device_fingerprint,
        )

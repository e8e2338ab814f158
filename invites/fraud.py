"""
Persistent abuse records: suspicious activity, per-user risk level and bans.

`abuse.assess` only scores a single registration. `FraudMonitor` keeps what
those scores said about a user so later rewards can be held back.
"""

from datetime import datetime, timedelta
from enum import Enum
from typing import Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict
from sqlalchemy import insert, or_, select, update

from infra.clock import Clock, utcnow
from infra.logging_config import get_logger
from infra.schema import suspicious_activities, user_bans, user_risk_profiles
from infra.store import Store, to_row

from .abuse import RiskAssessment, RiskLevel
from .models import RegistrationMetadata

_LEVEL_ORDER = {RiskLevel.LOW: 0, RiskLevel.MEDIUM: 1, RiskLevel.HIGH: 2}


class SuspiciousActivityType(str, Enum):
    IP_FREQUENCY = "ip_frequency"
    DEVICE_REUSE = "device_reuse"
    SELF_INVITATION = "self_invitation"
    BATCH_REGISTRATION = "batch_registration"
    PATTERN_ANOMALY = "pattern_anomaly"


class SuspiciousActivity(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    ip_address: Optional[str] = None
    activity_type: SuspiciousActivityType
    description: str = ""
    severity: RiskLevel
    payload: Optional[dict] = None
    created_at: datetime


class UserBan(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    reason: str
    expires_at: Optional[datetime] = None
    is_active: bool = True
    created_at: datetime


class BanRequest(BaseModel):
    reason: str
    duration_minutes: Optional[int] = None

    model_config = ConfigDict(
        json_schema_extra={"example": {"reason": "Registration farm", "duration_minutes": 1440}}
    )


def activity_type_for(assessment: RiskAssessment) -> SuspiciousActivityType:
    reasons = " ".join(assessment.reasons)
    if "same IP" in reasons:
        return SuspiciousActivityType.IP_FREQUENCY
    if "previous registration" in reasons:
        return SuspiciousActivityType.BATCH_REGISTRATION
    if "fingerprint" in reasons:
        return SuspiciousActivityType.DEVICE_REUSE
    return SuspiciousActivityType.PATTERN_ANOMALY


class FraudMonitor:
    def __init__(self, store: Store, clock: Clock = utcnow, logger=None):
        self.store = store
        self.clock = clock
        self.logger = logger or get_logger(__name__)

    def record_suspicious_activity(
        self,
        user_id: str,
        activity_type: SuspiciousActivityType,
        severity: RiskLevel,
        description: str = "",
        ip_address: Optional[str] = None,
        payload: Optional[dict] = None,
    ) -> SuspiciousActivity:
        activity = SuspiciousActivity(
            id=str(uuid4()),
            user_id=user_id,
            ip_address=ip_address,
            activity_type=activity_type,
            description=description,
            severity=severity,
            payload=payload,
            created_at=self.clock(),
        )
        self.store.execute(insert(suspicious_activities).values(**to_row(activity)))
        self.logger.warning(
            "suspicious_activity_recorded",
            user_id=user_id,
            activity_type=activity_type.value,
            severity=severity.value,
        )
        return activity

    def activities(self, user_id: str, limit: int = 50) -> list[SuspiciousActivity]:
        rows = self.store.query(
            select(suspicious_activities)
            .where(suspicious_activities.c.user_id == user_id)
            .order_by(suspicious_activities.c.created_at.desc())
            .limit(limit)
        )
        return [SuspiciousActivity.model_validate(row) for row in rows]

    def flag_registration(
        self,
        inviter_id: str,
        invitee_id: str,
        assessment: RiskAssessment,
        metadata: Optional[RegistrationMetadata] = None,
    ) -> SuspiciousActivity:
        """Record a risky registration against the inviter and raise their risk level."""
        activity = self.record_suspicious_activity(
            inviter_id,
            activity_type_for(assessment),
            assessment.level,
            description="; ".join(assessment.reasons),
            ip_address=metadata.ip_address if metadata else None,
            payload={"invitee_id": invitee_id, "score": assessment.score},
        )
        self.raise_risk_level(inviter_id, assessment.level, f"registration risk {assessment.score}")
        return activity

    def risk_level(self, user_id: str) -> RiskLevel:
        rows = self.store.query(
            select(user_risk_profiles.c.risk_level).where(user_risk_profiles.c.user_id == user_id)
        )
        return RiskLevel(rows[0]["risk_level"]) if rows else RiskLevel.LOW

    def update_risk_level(self, user_id: str, level: RiskLevel, reason: str) -> None:
        values = {"risk_level": level.value, "reason": reason, "updated_at": self.clock()}

        def upsert(conn: Store) -> None:
            result = conn.execute(
                update(user_risk_profiles).where(user_risk_profiles.c.user_id == user_id).values(**values)
            )
            if result.affected_rows == 0:
                conn.execute(insert(user_risk_profiles).values(user_id=user_id, **values))

        self.store.transaction(upsert)
        self.logger.info("risk_level_updated", user_id=user_id, risk_level=level.value, reason=reason)

    def raise_risk_level(self, user_id: str, level: RiskLevel, reason: str) -> RiskLevel:
        # Never lowers an existing level
        current = self.risk_level(user_id)
        if _LEVEL_ORDER[level] <= _LEVEL_ORDER[current]:
            return current
        self.update_risk_level(user_id, level, reason)
        return level

    def ban(self, user_id: str, reason: str, duration: Optional[timedelta] = None) -> UserBan:
        now = self.clock()
        user_ban = UserBan(
            id=str(uuid4()),
            user_id=user_id,
            reason=reason,
            expires_at=now + duration if duration else None,
            is_active=True,
            created_at=now,
        )
        self.store.execute(insert(user_bans).values(**to_row(user_ban)))
        self.update_risk_level(user_id, RiskLevel.HIGH, f"banned: {reason}")
        self.logger.warning(
            "user_banned",
            user_id=user_id,
            reason=reason,
            expires_at=user_ban.expires_at.isoformat() if user_ban.expires_at else None,
        )
        return user_ban

    def lift_ban(self, user_id: str) -> int:
        result = self.store.execute(
            update(user_bans)
            .where(user_bans.c.user_id == user_id, user_bans.c.is_active.is_(True))
            .values(is_active=False)
        )
        if result.affected_rows:
            self.logger.info("user_ban_lifted", user_id=user_id)
        return result.affected_rows

    def is_banned(self, user_id: str) -> bool:
        rows = self.store.query(
            select(user_bans.c.id)
            .where(
                user_bans.c.user_id == user_id,
                user_bans.c.is_active.is_(True),
                or_(user_bans.c.expires_at.is_(None), user_bans.c.expires_at > self.clock()),
            )
            .limit(1)
        )
        return bool(rows)

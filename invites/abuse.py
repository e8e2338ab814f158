"""
Registration risk scoring.

`score` is a pure function of `RiskFactors`; it never blocks anything.
The reward dispatcher decides what a given score means.
"""

import re
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field
from sqlalchemy import func, select

from infra.schema import invite_registrations
from infra.store import Store

from .events import InviteEventLog
from .models import RegistrationMetadata

BOT_USER_AGENT = re.compile(
    r"bot|crawl|spider|slurp|headless|phantomjs|selenium|puppeteer|playwright"
    r"|curl|wget|python-requests|httpx|aiohttp|okhttp|go-http-client|java/|libwww",
    re.IGNORECASE,
)

MIN_FINGERPRINT_LENGTH = 16
MIN_FINGERPRINT_SYMBOLS = 8


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class RiskFactors(BaseModel):
    same_ip_registrations_24h: int = 0
    seconds_since_last_registration: Optional[float] = None
    device_fingerprint: Optional[str] = None
    user_agent: Optional[str] = None


class RiskAssessment(BaseModel):
    score: float
    level: RiskLevel
    reasons: list[str] = Field(default_factory=list)


def is_low_entropy_fingerprint(fingerprint: Optional[str]) -> bool:
    if not fingerprint:
        return True
    fingerprint = fingerprint.strip()
    return len(fingerprint) < MIN_FINGERPRINT_LENGTH or len(set(fingerprint)) < MIN_FINGERPRINT_SYMBOLS


def is_bot_user_agent(user_agent: Optional[str]) -> bool:
    if not user_agent or not user_agent.strip():
        return True
    return BOT_USER_AGENT.search(user_agent) is not None


def _signals(factors: RiskFactors) -> list[tuple[float, str]]:
    signals = []

    ip_count = factors.same_ip_registrations_24h
    if ip_count > 5:
        signals.append((0.4, f"{ip_count} registrations from the same IP in 24h"))
    elif ip_count > 3:
        signals.append((0.2, f"{ip_count} registrations from the same IP in 24h"))

    gap = factors.seconds_since_last_registration
    if gap is not None:
        if gap < 60:
            signals.append((0.3, f"previous registration {int(gap)}s ago"))
        elif gap < 300:
            signals.append((0.1, f"previous registration {int(gap)}s ago"))

    if is_low_entropy_fingerprint(factors.device_fingerprint):
        signals.append((0.2, "missing or low-entropy device fingerprint"))

    if is_bot_user_agent(factors.user_agent):
        signals.append((0.1, "missing or automated user agent"))

    return signals


def level_for(value: float) -> RiskLevel:
    if value >= 0.6:
        return RiskLevel.HIGH
    if value >= 0.3:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


def assess(factors: RiskFactors) -> RiskAssessment:
    signals = _signals(factors)
    value = round(min(sum(weight for weight, _ in signals), 1.0), 4)
    return RiskAssessment(score=value, level=level_for(value), reasons=[reason for _, reason in signals])


def score(factors: RiskFactors) -> float:
    return assess(factors).score


class RiskFactorCollector:
    """Gathers `RiskFactors` for a registration about to be bound."""

    def __init__(self, store: Store, events: InviteEventLog):
        self.store = store
        self.events = events

    def collect(self, inviter_id: str, metadata: RegistrationMetadata, now: datetime) -> RiskFactors:
        same_ip = 0
        if metadata.ip_address:
            same_ip = self.events.count_from_ip(metadata.ip_address, since=now - timedelta(hours=24))

        rows = self.store.query(
            select(func.max(invite_registrations.c.registered_at).label("last_at")).where(
                invite_registrations.c.inviter_id == inviter_id
            )
        )
        last_at = rows[0]["last_at"] if rows else None
        gap = (now - last_at).total_seconds() if last_at is not None else None

        return RiskFactors(
            same_ip_registrations_24h=same_ip,
            seconds_since_last_registration=gap,
            device_fingerprint=metadata.device_fingerprint,
            user_agent=metadata.user_agent,
        )

"""
Invite Codes and Registrations

Issues invite codes, binds invitees to inviters exactly once, keeps the
per-inviter counters, scores registrations for abuse and keeps the
resulting risk records.
"""

from .models import (
    InviteCode,
    InviteRegistration,
    InviteStats,
    CodeValidation,
    RegistrationMetadata,
    RegistrationResult,
    ActivationResult,
)
from .registry import InviteCodeRegistry
from .registration import RegistrationService
from .stats import StatsAggregator
from .events import InviteEventLog
from .fraud import FraudMonitor

__all__ = [
    "InviteCode",
    "InviteRegistration",
    "InviteStats",
    "CodeValidation",
    "RegistrationMetadata",
    "RegistrationResult",
    "ActivationResult",
    "InviteCodeRegistry",
    "RegistrationService",
    "StatsAggregator",
    "InviteEventLog",
    "FraudMonitor",
]

"""
Reward Rules Package

Provides rule representation and evaluation, the reward dispatcher that
turns decisions into credits, and the manual approval queue.
"""

from .models import RewardType, ApprovalStatus, RewardApproval
from .rule_engine import (
    RuleEngine,
    RewardRule,
    RewardEvent,
    RewardEventType,
    RuleConditions,
    RuleActions,
    ThrottleState,
    DispatchDecision,
    DispatchStatus,
    RewardRoute,
    create_default_rules,
)
from .approvals import ApprovalService
from .rewards import RewardDispatcher, RewardGrant, REGISTRATION_MILESTONES
from .repository import RuleRepository

__all__ = [
    "RewardType",
    "ApprovalStatus",
    "RewardApproval",
    "RuleEngine",
    "RewardRule",
    "RewardEvent",
    "RewardEventType",
    "RuleConditions",
    "RuleActions",
    "ThrottleState",
    "DispatchDecision",
    "DispatchStatus",
    "RewardRoute",
    "create_default_rules",
    "ApprovalService",
    "RewardDispatcher",
    "RewardGrant",
    "REGISTRATION_MILESTONES",
    "RuleRepository",
]

import threading
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Optional

from infra.clock import Clock, utcnow

from .models import RewardType


class RewardEventType(str, Enum):
    REGISTRATION = "registration"
    ACTIVATION = "activation"
    MILESTONE = "milestone"


class DispatchStatus(str, Enum):
    DISPATCH = "dispatch"
    DEFERRED = "deferred"
    THROTTLED = "throttled"


class RewardRoute(str, Enum):
    CREDIT = "credit"
    APPROVAL = "approval"


@dataclass
class RewardEvent:
    type: RewardEventType
    user_id: str
    category: str = ""
    priority: str = "normal"
    title: str = ""
    message: str = ""
    source_id: str = ""
    reward_amount: Optional[int] = None
    risk_score: Optional[float] = None
    flagged: bool = False
    payload: dict = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=utcnow)

    def __post_init__(self):
        if not self.category:
            self.category = self.type.value

    @property
    def text(self) -> str:
        return f"{self.title} {self.message}".lower()


@dataclass
class RuleConditions:
    categories: Optional[list[str]] = None
    priorities: Optional[list[str]] = None
    keywords: Optional[list[str]] = None
    predicate: Optional[Callable[[RewardEvent], bool]] = None

    def matches(self, event: RewardEvent) -> bool:
        if self.categories and event.category not in self.categories:
            return False
        if self.priorities and event.priority not in self.priorities:
            return False
        if self.keywords and not any(k.lower() in event.text for k in self.keywords):
            return False
        if self.predicate is not None and not self.predicate(event):
            return False
        return True

    def to_dict(self) -> dict:
        return {"categories": self.categories, "priorities": self.priorities, "keywords": self.keywords}

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "RuleConditions":
        data = data or {}
        return cls(
            categories=data.get("categories"),
            priorities=data.get("priorities"),
            keywords=data.get("keywords"),
        )


@dataclass
class RuleActions:
    throttle: Optional[timedelta] = None
    delay: Optional[timedelta] = None
    transform: Optional[Callable[[RewardEvent], RewardEvent]] = None
    requires_approval: bool = False

    def to_dict(self) -> dict:
        return {
            "throttle_seconds": self.throttle.total_seconds() if self.throttle else None,
            "delay_seconds": self.delay.total_seconds() if self.delay else None,
            "requires_approval": self.requires_approval,
        }

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "RuleActions":
        data = data or {}
        throttle = data.get("throttle_seconds")
        delay = data.get("delay_seconds")
        return cls(
            throttle=timedelta(seconds=throttle) if throttle else None,
            delay=timedelta(seconds=delay) if delay else None,
            requires_approval=bool(data.get("requires_approval", False)),
        )


@dataclass
class RewardRule:
    id: str
    name: str
    event_type: RewardEventType
    reward_type: RewardType
    reward_amount: int
    conditions: RuleConditions = field(default_factory=RuleConditions)
    actions: RuleActions = field(default_factory=RuleActions)
    description: str = ""
    priority: int = 0
    is_active: bool = True

    def matches(self, event: RewardEvent) -> bool:
        if not self.is_active or event.type != self.event_type:
            return False
        return self.conditions.matches(event)

    def to_dict(self) -> dict:
        return {
            "id": self.id, "name": self.name, "description": self.description,
            "event_type": self.event_type.value, "reward_type": self.reward_type.value,
            "reward_amount": self.reward_amount, "priority": self.priority, "is_active": self.is_active,
            "conditions": self.conditions.to_dict(), "actions": self.actions.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "RewardRule":
        return cls(
            id=data["id"], name=data["name"], description=data.get("description") or "",
            event_type=RewardEventType(data["event_type"]), reward_type=RewardType(data["reward_type"]),
            reward_amount=int(data.get("reward_amount") or 0), priority=int(data.get("priority") or 0),
            is_active=bool(data.get("is_active", True)),
            conditions=RuleConditions.from_dict(data.get("conditions")),
            actions=RuleActions.from_dict(data.get("actions")),
        )


@dataclass
class DispatchDecision:
    rule: RewardRule
    event: RewardEvent
    status: DispatchStatus
    route: RewardRoute
    not_before: Optional[datetime] = None

    @property
    def amount(self) -> int:
        if self.event.reward_amount is not None:
            return self.event.reward_amount
        return self.rule.reward_amount


class ThrottleState:
    """Last-fired timestamps per (rule id, category)."""

    def __init__(self):
        self._last_fired: dict[tuple[str, str], datetime] = {}
        self._lock = threading.Lock()

    def allow(self, key: tuple[str, str], window: timedelta, now: datetime) -> bool:
        with self._lock:
            last = self._last_fired.get(key)
            if last is not None and now - last < window:
                return False
            self._last_fired[key] = now
            return True


class RuleEngine:
    def __init__(
        self,
        rules: Optional[list[RewardRule]] = None,
        approval_threshold: int = 50,
        review_threshold: float = 0.5,
        throttle: Optional[ThrottleState] = None,
        clock: Clock = utcnow,
    ):
        self.rules: dict[str, RewardRule] = {}
        self.approval_threshold = approval_threshold
        self.review_threshold = review_threshold
        self.throttle = throttle or ThrottleState()
        self.clock = clock
        for rule in rules or []:
            self.add_rule(rule)

    def add_rule(self, rule: RewardRule) -> None:
        self.rules[rule.id] = rule

    def remove_rule(self, rule_id: str) -> None:
        self.rules.pop(rule_id, None)

    def get_rule(self, rule_id: str) -> Optional[RewardRule]:
        return self.rules.get(rule_id)

    def list_rules(self, event_type: Optional[RewardEventType] = None) -> list[RewardRule]:
        rules = list(self.rules.values())
        if event_type:
            rules = [r for r in rules if r.event_type == event_type]
        rules.sort(key=lambda r: r.priority, reverse=True)
        return rules

    def evaluate(self, event: RewardEvent) -> list[DispatchDecision]:
        now = self.clock()
        decisions = []
        for rule in self.list_rules(event.type):
            if not rule.matches(event):
                continue

            actions = rule.actions
            if actions.throttle and not self.throttle.allow((rule.id, event.category), actions.throttle, now):
                decisions.append(DispatchDecision(rule, event, DispatchStatus.THROTTLED, self._route(rule, event)))
                continue

            processed = actions.transform(replace(event)) if actions.transform else event
            route = self._route(rule, processed)
            if actions.delay:
                decisions.append(
                    DispatchDecision(rule, processed, DispatchStatus.DEFERRED, route, not_before=now + actions.delay)
                )
            else:
                decisions.append(DispatchDecision(rule, processed, DispatchStatus.DISPATCH, route))
        return decisions

    def _route(self, rule: RewardRule, event: RewardEvent) -> RewardRoute:
        if rule.actions.requires_approval or event.flagged:
            return RewardRoute.APPROVAL
        if event.risk_score is not None and event.risk_score >= self.review_threshold:
            return RewardRoute.APPROVAL
        amount = event.reward_amount if event.reward_amount is not None else rule.reward_amount
        if rule.reward_type == RewardType.AI_CREDITS and amount >= self.approval_threshold:
            return RewardRoute.APPROVAL
        return RewardRoute.CREDIT


def create_default_rules() -> list[RewardRule]:
    return [
        RewardRule(
            id="rule-registration-reward", name="Invitee Registration Reward",
            event_type=RewardEventType.REGISTRATION, reward_type=RewardType.AI_CREDITS,
            reward_amount=10, description="Credits for each invitee who registers", priority=10,
        ),
        RewardRule(
            id="rule-activation-reward", name="Invitee Activation Reward",
            event_type=RewardEventType.ACTIVATION, reward_type=RewardType.AI_CREDITS,
            reward_amount=5, description="Credits when an invitee becomes active", priority=10,
        ),
        RewardRule(
            id="rule-registration-milestone", name="Registration Milestone",
            event_type=RewardEventType.MILESTONE, reward_type=RewardType.AI_CREDITS,
            reward_amount=0, description="Milestone bonus, amount carried by the event", priority=5,
        ),
    ]

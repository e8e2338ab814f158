"""
Unit Tests for the Reward Rule Engine

Tests cover:
1. Rule ordering
2. Condition matching
3. Throttle, delay and transform actions
4. Routing to credit or approval
5. Dict round trips for stored rules
"""

import threading
from dataclasses import replace
from datetime import timedelta

from rules.models import RewardType
from rules.rule_engine import (
    DispatchStatus,
    RewardEvent,
    RewardEventType,
    RewardRoute,
    RewardRule,
    RuleActions,
    RuleConditions,
    RuleEngine,
    create_default_rules,
)


def rule(rule_id: str, priority: int = 0, amount: int = 10, **kwargs) -> RewardRule:
    return RewardRule(
        id=rule_id,
        name=rule_id,
        event_type=kwargs.pop("event_type", RewardEventType.REGISTRATION),
        reward_type=kwargs.pop("reward_type", RewardType.AI_CREDITS),
        reward_amount=amount,
        priority=priority,
        **kwargs,
    )


def registration_event(**kwargs) -> RewardEvent:
    return RewardEvent(type=RewardEventType.REGISTRATION, user_id="inviter-001", **kwargs)


class TestRuleOrdering:
    """Tests for rule evaluation order."""

    def test_rules_sorted_by_priority_descending(self, clock):
        engine = RuleEngine([rule("low", 1), rule("high", 9), rule("mid", 5)], clock=clock)

        assert [r.id for r in engine.list_rules()] == ["high", "mid", "low"]

    def test_ties_keep_insertion_order(self, clock):
        engine = RuleEngine([rule("first", 3), rule("second", 3), rule("third", 3)], clock=clock)

        decisions = engine.evaluate(registration_event())

        assert [d.rule.id for d in decisions] == ["first", "second", "third"]

    def test_remove_rule(self, clock):
        engine = RuleEngine([rule("a"), rule("b")], clock=clock)
        engine.remove_rule("a")

        assert engine.get_rule("a") is None
        assert [r.id for r in engine.list_rules()] == ["b"]


class TestConditions:
    """Tests for rule conditions."""

    def test_rule_only_matches_its_event_type(self, clock):
        engine = RuleEngine([rule("activation", event_type=RewardEventType.ACTIVATION)], clock=clock)

        assert engine.evaluate(registration_event()) == []

    def test_inactive_rule_never_matches(self, clock):
        engine = RuleEngine([rule("off", is_active=False)], clock=clock)

        assert engine.evaluate(registration_event()) == []

    def test_category_and_priority(self):
        conditions = RuleConditions(categories=["vip"], priorities=["high"])

        assert conditions.matches(registration_event(category="vip", priority="high"))
        assert not conditions.matches(registration_event(category="vip", priority="normal"))
        assert not conditions.matches(registration_event(category="registration", priority="high"))

    def test_keywords_are_case_insensitive(self):
        conditions = RuleConditions(keywords=["Campaign"])

        assert conditions.matches(registration_event(title="Spring CAMPAIGN signup"))
        assert not conditions.matches(registration_event(title="Organic signup"))

    def test_predicate(self):
        conditions = RuleConditions(predicate=lambda e: e.payload.get("country") == "DE")

        assert conditions.matches(registration_event(payload={"country": "DE"}))
        assert not conditions.matches(registration_event(payload={"country": "FR"}))

    def test_category_defaults_to_event_type(self):
        assert registration_event().category == "registration"


class TestActions:
    """Tests for throttle, delay and transform."""

    def test_throttle_suppresses_repeats_within_window(self, clock):
        engine = RuleEngine([rule("t", actions=RuleActions(throttle=timedelta(minutes=10)))], clock=clock)

        assert engine.evaluate(registration_event())[0].status == DispatchStatus.DISPATCH
        clock.advance(minutes=5)
        assert engine.evaluate(registration_event())[0].status == DispatchStatus.THROTTLED
        clock.advance(minutes=5)
        assert engine.evaluate(registration_event())[0].status == DispatchStatus.DISPATCH

    def test_throttle_is_per_category(self, clock):
        engine = RuleEngine([rule("t", actions=RuleActions(throttle=timedelta(hours=1)))], clock=clock)

        engine.evaluate(registration_event(category="a"))
        decision = engine.evaluate(registration_event(category="b"))[0]

        assert decision.status == DispatchStatus.DISPATCH

    def test_delay_defers_with_not_before(self, clock):
        engine = RuleEngine([rule("d", actions=RuleActions(delay=timedelta(hours=2)))], clock=clock)

        decision = engine.evaluate(registration_event())[0]

        assert decision.status == DispatchStatus.DEFERRED
        assert decision.not_before == clock() + timedelta(hours=2)

    def test_throttle_admits_one_of_many_threads(self, clock):
        """Test concurrent evaluations inside one window let exactly one decision through."""
        engine = RuleEngine([rule("t", actions=RuleActions(throttle=timedelta(hours=1)))], clock=clock)
        barrier = threading.Barrier(8)
        statuses = []

        def evaluate():
            barrier.wait()
            statuses.append(engine.evaluate(registration_event())[0].status)

        threads = [threading.Thread(target=evaluate) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert statuses.count(DispatchStatus.DISPATCH) == 1
        assert statuses.count(DispatchStatus.THROTTLED) == 7

    def test_transform_rewrites_event_copy(self, clock):
        def double(event):
            return replace(event, reward_amount=20, title="Doubled")

        engine = RuleEngine([rule("x", actions=RuleActions(transform=double))], clock=clock)
        original = registration_event()

        decision = engine.evaluate(original)[0]

        assert decision.amount == 20
        assert decision.event.title == "Doubled"
        assert original.reward_amount is None


class TestRouting:
    """Tests for the credit / approval route."""

    def test_small_credit_rewards_are_credited(self, clock):
        engine = RuleEngine([rule("r", amount=10)], approval_threshold=50, clock=clock)

        assert engine.evaluate(registration_event())[0].route == RewardRoute.CREDIT

    def test_amount_at_threshold_needs_approval(self, clock):
        engine = RuleEngine([rule("r", amount=50)], approval_threshold=50, clock=clock)

        assert engine.evaluate(registration_event())[0].route == RewardRoute.APPROVAL

    def test_event_amount_overrides_rule_amount(self, clock):
        engine = RuleEngine([rule("r", amount=0)], approval_threshold=50, clock=clock)

        decision = engine.evaluate(registration_event(reward_amount=100))[0]

        assert decision.amount == 100
        assert decision.route == RewardRoute.APPROVAL

    def test_risky_event_needs_approval(self, clock):
        engine = RuleEngine([rule("r")], review_threshold=0.5, clock=clock)

        assert engine.evaluate(registration_event(risk_score=0.5))[0].route == RewardRoute.APPROVAL
        assert engine.evaluate(registration_event(risk_score=0.4))[0].route == RewardRoute.CREDIT

    def test_rule_can_require_approval(self, clock):
        engine = RuleEngine([rule("r", actions=RuleActions(requires_approval=True))], clock=clock)

        assert engine.evaluate(registration_event())[0].route == RewardRoute.APPROVAL

    def test_flagged_event_needs_approval(self, clock):
        engine = RuleEngine([rule("r")], clock=clock)

        assert engine.evaluate(registration_event(flagged=True))[0].route == RewardRoute.APPROVAL

    def test_large_badge_is_not_held_by_credit_threshold(self, clock):
        engine = RuleEngine([rule("b", amount=500, reward_type=RewardType.BADGE)], approval_threshold=50, clock=clock)

        assert engine.evaluate(registration_event())[0].route == RewardRoute.CREDIT


class TestSerialisation:
    """Tests for the stored rule shape."""

    def test_rule_dict_round_trip(self):
        original = rule(
            "stored",
            priority=7,
            conditions=RuleConditions(categories=["vip"], keywords=["launch"]),
            actions=RuleActions(throttle=timedelta(minutes=30), requires_approval=True),
        )

        restored = RewardRule.from_dict(original.to_dict())

        assert restored.to_dict() == original.to_dict()
        assert restored.actions.throttle == timedelta(minutes=30)

    def test_default_rules(self):
        defaults = {r.event_type: r for r in create_default_rules()}

        assert defaults[RewardEventType.REGISTRATION].reward_amount == 10
        assert defaults[RewardEventType.ACTIVATION].reward_amount == 5
        assert RewardEventType.MILESTONE in defaults

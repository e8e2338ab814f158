"""
Unit Tests for Stored Reward Rules
"""

from datetime import timedelta

from rules.models import RewardType
from rules.repository import RuleRepository
from rules.rule_engine import RewardEventType, RewardRule, RuleActions, RuleConditions, RuleEngine


def campaign_rule(**overrides) -> RewardRule:
    values = dict(
        id="rule-spring-campaign",
        name="Spring campaign",
        event_type=RewardEventType.REGISTRATION,
        reward_type=RewardType.AI_CREDITS,
        reward_amount=20,
        priority=20,
        conditions=RuleConditions(keywords=["spring"]),
        actions=RuleActions(throttle=timedelta(minutes=15)),
    )
    values.update(overrides)
    return RewardRule(**values)


class TestRuleRepository:
    """Tests for saving and loading rules."""

    def test_save_and_get(self, store, clock):
        repository = RuleRepository(store, clock=clock)
        repository.save(campaign_rule())

        loaded = repository.get("rule-spring-campaign")

        assert loaded.to_dict() == campaign_rule().to_dict()

    def test_save_updates_existing_rule(self, store, clock):
        repository = RuleRepository(store, clock=clock)
        repository.save(campaign_rule())
        repository.save(campaign_rule(reward_amount=30))

        assert repository.get("rule-spring-campaign").reward_amount == 30
        assert len(repository.list_active()) == 1

    def test_deactivate_hides_rule(self, store, clock):
        repository = RuleRepository(store, clock=clock)
        repository.save(campaign_rule())

        assert repository.deactivate("rule-spring-campaign") is True
        assert repository.list_active() == []
        assert repository.deactivate("unknown") is False

    def test_load_into_engine(self, store, clock):
        repository = RuleRepository(store, clock=clock)
        repository.save(campaign_rule())
        repository.save(campaign_rule(id="rule-low", priority=1, conditions=RuleConditions()))
        engine = RuleEngine(clock=clock)

        assert repository.load_into(engine) == 2
        assert [r.id for r in engine.list_rules()] == ["rule-spring-campaign", "rule-low"]

from typing import Optional

from sqlalchemy import insert, select, update

from infra.clock import Clock, utcnow
from infra.logging_config import get_logger
from infra.schema import reward_rules
from infra.store import Store

from .rule_engine import RewardRule, RuleEngine


class RuleRepository:
    """Persists rules in `reward_rules`.

    Conditions and actions go through `to_dict`/`from_dict`; custom
    predicates and transforms only exist in code and are not stored.
    """

    def __init__(self, store: Store, clock: Clock = utcnow, logger=None):
        self.store = store
        self.clock = clock
        self.logger = logger or get_logger(__name__)

    def save(self, rule: RewardRule) -> RewardRule:
        now = self.clock()
        row = rule.to_dict()
        rule_id = row.pop("id")

        def upsert(conn: Store) -> None:
            result = conn.execute(
                update(reward_rules).where(reward_rules.c.id == rule_id).values(updated_at=now, **row)
            )
            if result.affected_rows == 0:
                conn.execute(insert(reward_rules).values(id=rule_id, created_at=now, updated_at=now, **row))

        self.store.transaction(upsert)
        self.logger.info("reward_rule_saved", rule_id=rule_id, event_type=row["event_type"])
        return rule

    def get(self, rule_id: str) -> Optional[RewardRule]:
        rows = self.store.query(select(reward_rules).where(reward_rules.c.id == rule_id))
        return RewardRule.from_dict(rows[0]) if rows else None

    def list_active(self) -> list[RewardRule]:
        rows = self.store.query(
            select(reward_rules)
            .where(reward_rules.c.is_active.is_(True))
            .order_by(reward_rules.c.priority.desc(), reward_rules.c.created_at.asc())
        )
        return [RewardRule.from_dict(row) for row in rows]

    def deactivate(self, rule_id: str) -> bool:
        result = self.store.execute(
            update(reward_rules)
            .where(reward_rules.c.id == rule_id)
            .values(is_active=False, updated_at=self.clock())
        )
        return result.affected_rows > 0

    def load_into(self, engine: RuleEngine) -> int:
        rules = self.list_active()
        for rule in rules:
            engine.add_rule(rule)
        return len(rules)

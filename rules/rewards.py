from dataclasses import dataclass, replace
from datetime import datetime
from typing import Optional, Union
from uuid import uuid4

from sqlalchemy import func, insert, select, update
from sqlalchemy.exc import IntegrityError

from infra.advisory import run_advisory
from infra.clock import Clock, utcnow
from infra.logging_config import get_logger
from infra.schema import deferred_rewards, invite_registrations, milestone_rewards
from infra.store import Store
from invites.abuse import RiskLevel
from invites.events import InviteEventLog
from invites.fraud import FraudMonitor
from invites.models import InviteEventType, InviteRegistration
from ledger.models import CreditRecord, CreditSource
from ledger.service import CreditLedger

from .approvals import ApprovalService
from .models import RewardApproval, RewardType
from .rule_engine import (
    DispatchDecision,
    DispatchStatus,
    RewardEvent,
    RewardEventType,
    RewardRoute,
    RuleEngine,
)

REGISTRATION_MILESTONES = (5, 10, 25, 50, 100)

_SOURCES = {
    RewardEventType.REGISTRATION: CreditSource.INVITE_REWARD,
    RewardEventType.ACTIVATION: CreditSource.INVITE_REWARD,
    RewardEventType.MILESTONE: CreditSource.MILESTONE_REWARD,
}


def milestone_bonus(milestone: int) -> int:
    return milestone * 2


@dataclass
class RewardGrant:
    """What a decision pays out, flattened so it can wait in `deferred_rewards`."""

    rule_id: str
    user_id: str
    reward_type: RewardType
    amount: int
    route: RewardRoute
    source: CreditSource
    source_id: str
    description: str = ""

    @classmethod
    def from_decision(cls, decision: DispatchDecision) -> "RewardGrant":
        rule, event = decision.rule, decision.event
        return cls(
            rule_id=rule.id,
            user_id=event.user_id,
            reward_type=rule.reward_type,
            amount=decision.amount,
            route=decision.route,
            source=_SOURCES[event.type],
            source_id=event.source_id,
            description=event.title or rule.name,
        )

    @classmethod
    def from_row(cls, row: dict) -> "RewardGrant":
        return cls(
            rule_id=row["rule_id"],
            user_id=row["user_id"],
            reward_type=RewardType(row["reward_type"]),
            amount=row["amount"],
            route=RewardRoute(row["route"]),
            source=CreditSource(row["source"]),
            source_id=row["source_id"],
            description=row["description"],
        )

    @property
    def is_empty(self) -> bool:
        return self.amount <= 0 and self.reward_type == RewardType.AI_CREDITS


Written = Optional[Union[CreditRecord, RewardApproval]]


class RewardDispatcher:
    """Turns rule engine decisions into ledger credits or pending approvals.

    Deferred decisions are stored in `deferred_rewards` and paid by
    `release_due` once the clock passes their `not_before`. Each milestone is
    claimed in `milestone_rewards` in the same transaction as its payout.
    """

    def __init__(
        self,
        store: Store,
        engine: RuleEngine,
        ledger: CreditLedger,
        approvals: ApprovalService,
        events: Optional[InviteEventLog] = None,
        fraud: Optional[FraudMonitor] = None,
        block_threshold: float = 0.8,
        clock: Clock = utcnow,
        logger=None,
    ):
        self.store = store
        self.engine = engine
        self.ledger = ledger
        self.approvals = approvals
        self.events = events
        self.fraud = fraud
        self.block_threshold = block_threshold
        self.clock = clock
        self.logger = logger or get_logger(__name__)

    def process(self, event: RewardEvent) -> list[DispatchDecision]:
        event = self._screen(event)
        if event is None:
            return []

        decisions = self.engine.evaluate(event)
        for decision in decisions:
            if decision.status == DispatchStatus.DISPATCH:
                self._apply(RewardGrant.from_decision(decision))
            elif decision.status == DispatchStatus.DEFERRED:
                self._defer(self.store, decision)
            else:
                self.logger.info("reward_throttled", rule_id=decision.rule.id, category=event.category)
        return decisions

    def _screen(self, event: RewardEvent) -> Optional[RewardEvent]:
        """Drop events for blocked scores or banned users; flag high-risk users for review."""
        if event.risk_score is not None and event.risk_score >= self.block_threshold:
            self.logger.warning(
                "reward_blocked",
                user_id=event.user_id,
                event_type=event.type.value,
                risk_score=event.risk_score,
            )
            return None
        if self.fraud is None:
            return event
        if self.fraud.is_banned(event.user_id):
            self.logger.warning("reward_blocked_banned_user", user_id=event.user_id, event_type=event.type.value)
            return None
        if self.fraud.risk_level(event.user_id) == RiskLevel.HIGH:
            return replace(event, flagged=True)
        return event

    def _apply(self, grant: RewardGrant) -> bool:
        if grant.is_empty:
            self.logger.debug("reward_skipped_zero_amount", rule_id=grant.rule_id, user_id=grant.user_id)
            return False
        written = self.store.transaction(lambda conn: self._write(conn, grant))
        self._granted(grant, written)
        return True

    def _write(self, conn: Store, grant: RewardGrant) -> Written:
        if grant.route == RewardRoute.APPROVAL:
            return self.approvals.file(
                conn,
                grant.user_id,
                grant.reward_type,
                grant.amount,
                description=grant.description,
                source=grant.source,
                rule_id=grant.rule_id,
                source_id=grant.source_id,
            )
        if grant.reward_type == RewardType.AI_CREDITS:
            return self.ledger.record_earned(
                conn, grant.user_id, grant.amount, grant.source, grant.source_id, description=grant.description
            )
        return None

    def _granted(self, grant: RewardGrant, written: Written) -> None:
        if isinstance(written, RewardApproval):
            self.approvals.log_requested(written)
            return

        if isinstance(written, CreditRecord):
            self.ledger.refresh_balance(grant.user_id)
        self.logger.info(
            "reward_granted",
            rule_id=grant.rule_id,
            user_id=grant.user_id,
            reward_type=grant.reward_type.value,
            amount=grant.amount,
        )
        if self.events is not None:
            run_advisory(
                "event_log",
                lambda: self.events.record(
                    InviteEventType.REWARD_GRANTED,
                    inviter_id=grant.user_id,
                    payload={"rule_id": grant.rule_id, "reward_type": grant.reward_type.value, "amount": grant.amount},
                ),
                self.logger,
                rule_id=grant.rule_id,
                user_id=grant.user_id,
            )

    def _defer(self, conn: Store, decision: DispatchDecision) -> Optional[str]:
        grant = RewardGrant.from_decision(decision)
        if grant.is_empty:
            return None
        deferred_id = str(uuid4())
        conn.execute(
            insert(deferred_rewards).values(
                id=deferred_id,
                rule_id=grant.rule_id,
                user_id=grant.user_id,
                reward_type=grant.reward_type.value,
                amount=grant.amount,
                route=grant.route.value,
                source=grant.source.value,
                source_id=grant.source_id,
                description=grant.description,
                status="pending",
                not_before=decision.not_before,
                created_at=self.clock(),
            )
        )
        self.logger.info(
            "reward_deferred",
            deferred_id=deferred_id,
            rule_id=grant.rule_id,
            user_id=grant.user_id,
            not_before=decision.not_before.isoformat(),
        )
        return deferred_id

    def pending_deferred(self, user_id: Optional[str] = None) -> list[dict]:
        statement = select(deferred_rewards).where(deferred_rewards.c.status == "pending")
        if user_id is not None:
            statement = statement.where(deferred_rewards.c.user_id == user_id)
        return self.store.query(statement.order_by(deferred_rewards.c.not_before.asc()))

    def release_due(self) -> list[RewardGrant]:
        now = self.clock()
        rows = self.store.query(
            select(deferred_rewards)
            .where(deferred_rewards.c.status == "pending", deferred_rewards.c.not_before <= now)
            .order_by(deferred_rewards.c.not_before.asc())
        )

        released = []
        for row in rows:
            grant = RewardGrant.from_row(row)
            if self.fraud is not None and self.fraud.is_banned(grant.user_id):
                self._close_deferred(self.store, row["id"], "cancelled", now)
                self.logger.warning("deferred_reward_cancelled", deferred_id=row["id"], user_id=grant.user_id)
                continue

            def release(conn: Store, deferred_id: str = row["id"], grant: RewardGrant = grant):
                if not self._close_deferred(conn, deferred_id, "released", now):
                    return False, None
                return True, self._write(conn, grant)

            claimed, written = self.store.transaction(release)
            if not claimed:
                # Another worker released it first
                continue
            self._granted(grant, written)
            released.append(grant)
        return released

    def _close_deferred(self, conn: Store, deferred_id: str, status: str, now: datetime) -> bool:
        result = conn.execute(
            update(deferred_rewards)
            .where(deferred_rewards.c.id == deferred_id, deferred_rewards.c.status == "pending")
            .values(status=status, released_at=now)
        )
        return result.affected_rows == 1

    def on_registration(self, registration: InviteRegistration, risk_score: Optional[float] = None) -> bool:
        decisions = self.process(
            RewardEvent(
                type=RewardEventType.REGISTRATION,
                user_id=registration.inviter_id,
                title="Invitee registered",
                source_id=registration.id,
                risk_score=risk_score,
                payload={"invitee_id": registration.invitee_id},
            )
        )
        if risk_score is None or risk_score < self.block_threshold:
            self.check_milestones(registration.inviter_id)
        return any(d.status == DispatchStatus.DISPATCH for d in decisions)

    def on_activation(self, registration: InviteRegistration) -> bool:
        decisions = self.process(
            RewardEvent(
                type=RewardEventType.ACTIVATION,
                user_id=registration.inviter_id,
                title="Invitee activated",
                source_id=f"{registration.id}:activation",
                payload={"invitee_id": registration.invitee_id},
            )
        )
        return any(d.status == DispatchStatus.DISPATCH for d in decisions)

    def check_milestones(self, inviter_id: str) -> list[int]:
        """Pay every registration milestone the inviter has reached and not yet claimed.

        Returns the milestones paid out by this call. Deferred milestones are
        claimed but only paid by `release_due`.
        """
        rows = self.store.query(
            select(func.count().label("count"))
            .select_from(invite_registrations)
            .where(invite_registrations.c.inviter_id == inviter_id)
        )
        registrations = int(rows[0]["count"])

        reached = []
        for milestone in REGISTRATION_MILESTONES:
            if registrations < milestone:
                break
            if self._milestone_claimed(inviter_id, milestone):
                continue
            if self._reward_milestone(inviter_id, milestone):
                reached.append(milestone)
                self.logger.info("milestone_reached", user_id=inviter_id, milestone=milestone)
        return reached

    def _reward_milestone(self, inviter_id: str, milestone: int) -> bool:
        source_id = f"milestone:{inviter_id}:{milestone}"
        event = self._screen(
            RewardEvent(
                type=RewardEventType.MILESTONE,
                user_id=inviter_id,
                title=f"Reached {milestone} registrations",
                source_id=source_id,
                reward_amount=milestone_bonus(milestone),
                payload={"milestone": milestone},
            )
        )
        if event is None:
            return False

        decisions = [
            d for d in self.engine.evaluate(event)
            if d.status != DispatchStatus.THROTTLED and not RewardGrant.from_decision(d).is_empty
        ]
        if not decisions:
            self.logger.info("milestone_not_paid", user_id=inviter_id, milestone=milestone)
            return False

        def claim_and_pay(conn: Store) -> list[tuple[RewardGrant, Written]]:
            conn.execute(
                insert(milestone_rewards).values(
                    id=str(uuid4()),
                    user_id=inviter_id,
                    milestone_type=RewardEventType.REGISTRATION.value,
                    milestone=milestone,
                    source_id=source_id,
                    created_at=self.clock(),
                )
            )
            paid = []
            for decision in decisions:
                if decision.status == DispatchStatus.DEFERRED:
                    self._defer(conn, decision)
                else:
                    grant = RewardGrant.from_decision(decision)
                    paid.append((grant, self._write(conn, grant)))
            return paid

        try:
            paid = self.store.transaction(claim_and_pay)
        except IntegrityError:
            # A concurrent check claimed this milestone first
            self.logger.info("milestone_already_rewarded", user_id=inviter_id, milestone=milestone)
            return False

        for grant, written in paid:
            self._granted(grant, written)
        return bool(paid)

    def _milestone_claimed(self, user_id: str, milestone: int) -> bool:
        rows = self.store.query(
            select(milestone_rewards.c.id).where(
                milestone_rewards.c.user_id == user_id,
                milestone_rewards.c.milestone_type == RewardEventType.REGISTRATION.value,
                milestone_rewards.c.milestone == milestone,
            ).limit(1)
        )
        return bool(rows)

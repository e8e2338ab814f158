from typing import Optional
from uuid import uuid4

from sqlalchemy import insert, select, update

from infra.advisory import run_advisory
from infra.clock import Clock, utcnow
from infra.errors import ApprovalNotFoundError, InvalidStateTransitionError
from infra.logging_config import get_logger
from infra.schema import reward_approvals
from infra.store import Store, to_row
from invites.events import InviteEventLog
from invites.models import InviteEventType
from ledger.models import CreditSource
from ledger.service import CreditLedger

from .models import ApprovalStatus, RewardApproval, RewardType


class ApprovalService:
    """Manual review queue for rewards that should not be credited automatically.

    `approve` flips the row and writes the credit in the same transaction, so
    an approved credit reward always has exactly one earned row behind it.
    """

    def __init__(
        self,
        store: Store,
        ledger: CreditLedger,
        events: Optional[InviteEventLog] = None,
        clock: Clock = utcnow,
        logger=None,
    ):
        self.store = store
        self.ledger = ledger
        self.events = events
        self.clock = clock
        self.logger = logger or get_logger(__name__)

    def request(
        self,
        user_id: str,
        reward_type: RewardType,
        reward_amount: int,
        description: str = "",
        source: CreditSource = CreditSource.ADMIN_GRANT,
        rule_id: Optional[str] = None,
        source_id: Optional[str] = None,
    ) -> RewardApproval:
        approval = self.store.transaction(
            lambda conn: self.file(conn, user_id, reward_type, reward_amount, description, source, rule_id, source_id)
        )
        self.log_requested(approval)
        return approval

    def file(
        self,
        conn: Store,
        user_id: str,
        reward_type: RewardType,
        reward_amount: int,
        description: str = "",
        source: CreditSource = CreditSource.ADMIN_GRANT,
        rule_id: Optional[str] = None,
        source_id: Optional[str] = None,
    ) -> RewardApproval:
        """Insert a pending approval on an open connection; logging is left to the caller."""
        approval = RewardApproval(
            id=str(uuid4()),
            user_id=user_id,
            reward_type=reward_type,
            reward_amount=reward_amount,
            description=description,
            source=source,
            rule_id=rule_id,
            source_id=source_id,
            created_at=self.clock(),
        )
        conn.execute(insert(reward_approvals).values(**to_row(approval)))
        return approval

    def log_requested(self, approval: RewardApproval) -> None:
        self.logger.info(
            "reward_approval_requested",
            approval_id=approval.id,
            user_id=approval.user_id,
            reward_type=approval.reward_type.value,
            amount=approval.reward_amount,
            rule_id=approval.rule_id,
        )

    def get(self, approval_id: str) -> RewardApproval:
        rows = self.store.query(select(reward_approvals).where(reward_approvals.c.id == approval_id))
        if not rows:
            raise ApprovalNotFoundError(approval_id)
        return RewardApproval.model_validate(rows[0])

    def pending(self, limit: int = 100) -> list[RewardApproval]:
        rows = self.store.query(
            select(reward_approvals)
            .where(reward_approvals.c.status == ApprovalStatus.PENDING.value)
            .order_by(reward_approvals.c.created_at.asc())
            .limit(limit)
        )
        return [RewardApproval.model_validate(row) for row in rows]

    def approve(self, approval_id: str, admin_id: str, notes: Optional[str] = None) -> RewardApproval:
        approved = self.store.transaction(lambda conn: self._approve(conn, approval_id, admin_id, notes))

        self.logger.info(
            "reward_approved",
            approval_id=approval_id,
            admin_id=admin_id,
            user_id=approved.user_id,
            amount=approved.reward_amount,
        )
        if approved.reward_type == RewardType.AI_CREDITS:
            self.ledger.refresh_balance(approved.user_id)
        if self.events is not None:
            self._log_granted(approved)
        return approved

    def _approve(self, conn: Store, approval_id: str, admin_id: str, notes: Optional[str]) -> RewardApproval:
        rows = conn.query(
            select(reward_approvals).where(reward_approvals.c.id == approval_id).with_for_update()
        )
        if not rows:
            raise ApprovalNotFoundError(approval_id)

        approval = RewardApproval.model_validate(rows[0])
        if approval.is_terminal():
            raise InvalidStateTransitionError(
                f"Cannot approve reward {approval_id} in status {approval.status.value}"
            )

        now = self.clock()
        result = conn.execute(
            update(reward_approvals)
            .where(
                reward_approvals.c.id == approval_id,
                reward_approvals.c.status == ApprovalStatus.PENDING.value,
            )
            .values(status=ApprovalStatus.APPROVED.value, admin_id=admin_id, admin_notes=notes, approved_at=now)
        )
        if result.affected_rows != 1:
            raise InvalidStateTransitionError(f"Reward {approval_id} is no longer pending")

        if approval.reward_type == RewardType.AI_CREDITS:
            self.ledger.record_earned(
                conn,
                approval.user_id,
                approval.reward_amount,
                approval.source,
                approval.source_id or approval.id,
                description=approval.description,
            )

        return approval.model_copy(
            update={
                "status": ApprovalStatus.APPROVED,
                "admin_id": admin_id,
                "admin_notes": notes,
                "approved_at": now,
            }
        )

    def reject(self, approval_id: str, admin_id: str, reason: str) -> RewardApproval:
        now = self.clock()
        result = self.store.execute(
            update(reward_approvals)
            .where(
                reward_approvals.c.id == approval_id,
                reward_approvals.c.status == ApprovalStatus.PENDING.value,
            )
            .values(status=ApprovalStatus.REJECTED.value, admin_id=admin_id, admin_notes=reason, rejected_at=now)
        )
        if result.affected_rows == 0:
            current = self.get(approval_id)
            raise InvalidStateTransitionError(
                f"Cannot reject reward {approval_id} in status {current.status.value}"
            )

        self.logger.info("reward_rejected", approval_id=approval_id, admin_id=admin_id, reason=reason)
        return self.get(approval_id)

    def _log_granted(self, approval: RewardApproval) -> None:
        run_advisory(
            "event_log",
            lambda: self.events.record(
                InviteEventType.REWARD_GRANTED,
                inviter_id=approval.user_id,
                payload={
                    "approval_id": approval.id,
                    "reward_type": approval.reward_type.value,
                    "amount": approval.reward_amount,
                    "source_id": approval.source_id,
                },
            ),
            self.logger,
            approval_id=approval.id,
        )

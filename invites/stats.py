from sqlalchemy import func, insert, select, update

from infra.advisory import AdvisoryOutcome, run_advisory
from infra.clock import Clock, utcnow
from infra.logging_config import get_logger
from infra.schema import credit_records, invite_codes, invite_registrations, invite_stats
from infra.store import Store, to_row
from ledger.models import REWARD_SOURCES
from ledger.service import earned_total_expr

from .models import InviteStats


class StatsAggregator:
    """Keeps the per-inviter counters in `invite_stats` in step with the source tables.

    The counters are a cache: `refresh` never raises and callers carry on
    whatever it reports.
    """

    def __init__(self, store: Store, clock: Clock = utcnow, logger=None):
        self.store = store
        self.clock = clock
        self.logger = logger or get_logger(__name__)

    def get(self, user_id: str) -> InviteStats:
        rows = self.store.query(select(invite_stats).where(invite_stats.c.user_id == user_id))
        if rows:
            return InviteStats.model_validate(rows[0])
        return self.recompute(user_id)

    def refresh(self, user_id: str) -> AdvisoryOutcome:
        return run_advisory("stats_refresh", lambda: self.recompute(user_id), self.logger, user_id=user_id)

    def recompute(self, user_id: str) -> InviteStats:
        stats = InviteStats(
            user_id=user_id,
            total_invites=self._scalar(
                select(func.count()).select_from(invite_codes).where(invite_codes.c.inviter_id == user_id)
            ),
            successful_registrations=self._scalar(
                select(func.count())
                .select_from(invite_registrations)
                .where(invite_registrations.c.inviter_id == user_id)
            ),
            active_invitees=self._scalar(
                select(func.count())
                .select_from(invite_registrations)
                .where(
                    invite_registrations.c.inviter_id == user_id,
                    invite_registrations.c.is_activated.is_(True),
                )
            ),
            total_rewards_earned=self._scalar(
                select(earned_total_expr()).where(
                    credit_records.c.user_id == user_id,
                    credit_records.c.source.in_([s.value for s in REWARD_SOURCES]),
                )
            ),
            last_updated=self.clock(),
        )

        row = to_row(stats)
        del row["user_id"]

        def upsert(conn: Store) -> None:
            result = conn.execute(update(invite_stats).where(invite_stats.c.user_id == user_id).values(**row))
            if result.affected_rows == 0:
                conn.execute(insert(invite_stats).values(user_id=user_id, **row))

        self.store.transaction(upsert)
        return stats

    def _scalar(self, statement) -> int:
        rows = self.store.query(statement)
        if not rows:
            return 0
        return int(next(iter(rows[0].values())) or 0)

from datetime import datetime, timedelta
from typing import Optional
from uuid import uuid4

from sqlalchemy import and_, case, desc, func, insert, select, update

from infra.advisory import AdvisoryOutcome, run_advisory
from infra.clock import Clock, utcnow
from infra.logging_config import get_logger
from infra.schema import credit_records, credit_usage, user_credit_balances
from infra.settings import Settings, get_settings
from infra.store import Store, to_row

from .models import (
    CreditType,
    CreditSource,
    CreditRecord,
    CreditUsage,
    UserCreditBalance,
    CreditStats,
    SourceTotal,
)


def _spendable(user_id: str, now: datetime):
    return and_(
        credit_records.c.user_id == user_id,
        credit_records.c.type == CreditType.EARNED.value,
        credit_records.c.used_at.is_(None),
        credit_records.c.expires_at > now,
    )


def _sum(expr):
    return func.coalesce(func.sum(expr), 0)


# Every credited unit shows up exactly once: still unused on its earned row,
# or on the negative used/expired row that consumed it.
_EARNED_TOTAL = case(
    (
        and_(credit_records.c.type == CreditType.EARNED.value, credit_records.c.used_at.is_(None)),
        credit_records.c.amount,
    ),
    (
        credit_records.c.type.in_([CreditType.USED.value, CreditType.EXPIRED.value]),
        -credit_records.c.amount,
    ),
    else_=0,
)


def earned_total_expr():
    return _sum(_EARNED_TOTAL)


class CreditLedger:
    def __init__(
        self,
        store: Store,
        settings: Optional[Settings] = None,
        clock: Clock = utcnow,
        logger=None,
    ):
        self.store = store
        self.settings = settings or get_settings()
        self.clock = clock
        self.logger = logger or get_logger(__name__)

    def credit(
        self,
        user_id: str,
        amount: int,
        source: CreditSource,
        source_id: str,
        description: str = "",
        expires_at: Optional[datetime] = None,
    ) -> CreditRecord:
        record = self.store.transaction(
            lambda conn: self.record_earned(conn, user_id, amount, source, source_id, description, expires_at)
        )
        self.logger.info(
            "credits_added",
            user_id=user_id,
            amount=amount,
            source=record.source.value,
            expires_at=record.expires_at.isoformat(),
        )
        self.refresh_balance(user_id)
        return record

    def record_earned(
        self,
        conn: Store,
        user_id: str,
        amount: int,
        source: CreditSource,
        source_id: str,
        description: str = "",
        expires_at: Optional[datetime] = None,
    ) -> CreditRecord:
        """Insert an earned row on an open connection.

        Used directly by callers that must pair the credit with their own
        writes in one transaction (reward approval). The balance cache is
        left to the caller.
        """
        if amount <= 0:
            raise ValueError("Amount must be positive")

        now = self.clock()
        record = CreditRecord(
            id=str(uuid4()),
            user_id=user_id,
            amount=amount,
            type=CreditType.EARNED,
            source=source,
            source_id=source_id,
            description=description,
            expires_at=expires_at or now + timedelta(days=self.settings.credit_validity_days),
            created_at=now,
        )
        conn.execute(insert(credit_records).values(**to_row(record)))
        return record

    def debit(self, user_id: str, amount: int, purpose: str, metadata: Optional[dict] = None) -> bool:
        if amount <= 0:
            raise ValueError("Amount must be positive")

        consumed = self.store.transaction(lambda conn: self._consume(conn, user_id, amount, purpose, metadata))
        if not consumed:
            return False

        self.logger.info("credits_used", user_id=user_id, amount=amount, purpose=purpose)
        self.refresh_balance(user_id)
        return True

    def _consume(self, conn: Store, user_id: str, amount: int, purpose: str, metadata: Optional[dict]) -> bool:
        now = self.clock()
        rows = conn.query(
            select(credit_records)
            .where(_spendable(user_id, now))
            .order_by(credit_records.c.expires_at.asc(), credit_records.c.created_at.asc())
            .with_for_update()
        )
        credits = [CreditRecord.model_validate(row) for row in rows]

        available = sum(c.amount for c in credits)
        if available < amount:
            self.logger.warning("insufficient_credits", user_id=user_id, requested=amount, available=available)
            return False

        remaining = amount
        for credit in credits:
            if remaining <= 0:
                break

            use_amount = min(remaining, credit.amount)
            mirror = CreditRecord(
                id=str(uuid4()),
                user_id=user_id,
                amount=-use_amount,
                type=CreditType.USED,
                source=credit.source,
                source_id=credit.source_id,
                description=f"Used for {purpose}",
                created_at=now,
                used_at=now,
            )
            conn.execute(insert(credit_records).values(**to_row(mirror)))

            if use_amount == credit.amount:
                conn.execute(
                    update(credit_records).where(credit_records.c.id == credit.id).values(used_at=now)
                )
            else:
                conn.execute(
                    update(credit_records)
                    .where(credit_records.c.id == credit.id)
                    .values(amount=credit_records.c.amount - use_amount)
                )

            remaining -= use_amount

        usage = CreditUsage(
            id=str(uuid4()),
            user_id=user_id,
            amount=amount,
            purpose=purpose,
            metadata=metadata,
            created_at=now,
        )
        conn.execute(insert(credit_usage).values(**to_row(usage)))
        return True

    def sweep_expired(self) -> int:
        now = self.clock()
        rows = self.store.query(
            select(credit_records).where(
                credit_records.c.type == CreditType.EARNED.value,
                credit_records.c.used_at.is_(None),
                credit_records.c.expires_at <= now,
            )
        )

        expired_count = 0
        touched_users: set[str] = set()
        for row in rows:
            record = CreditRecord.model_validate(row)
            if self.store.transaction(lambda conn: self._expire(conn, record.id, now)):
                expired_count += 1
                touched_users.add(record.user_id)

        for user_id in sorted(touched_users):
            self.refresh_balance(user_id)

        self.logger.info("credits_expired", expired_count=expired_count, users=len(touched_users))
        return expired_count

    def _expire(self, conn: Store, record_id: str, now: datetime) -> bool:
        rows = conn.query(
            select(credit_records)
            .where(credit_records.c.id == record_id, credit_records.c.used_at.is_(None))
            .with_for_update()
        )
        if not rows:
            # Consumed or swept by someone else since the scan
            return False

        record = CreditRecord.model_validate(rows[0])
        conn.execute(update(credit_records).where(credit_records.c.id == record.id).values(used_at=now))
        mirror = CreditRecord(
            id=str(uuid4()),
            user_id=record.user_id,
            amount=-record.amount,
            type=CreditType.EXPIRED,
            source=record.source,
            source_id=record.source_id,
            description=f"Expired: {record.description}",
            created_at=now,
        )
        conn.execute(insert(credit_records).values(**to_row(mirror)))
        return True

    def balance(self, user_id: str) -> UserCreditBalance:
        rows = self.store.query(
            select(user_credit_balances).where(user_credit_balances.c.user_id == user_id)
        )
        if rows:
            return UserCreditBalance.model_validate(rows[0])
        return self.rebuild_balance(user_id)

    def available_credits(self, user_id: str) -> int:
        now = self.clock()
        rows = self.store.query(
            select(_sum(credit_records.c.amount).label("available")).where(_spendable(user_id, now))
        )
        return int(rows[0]["available"])

    def compute_balance(self, user_id: str) -> UserCreditBalance:
        now = self.clock()
        window_end = now + timedelta(days=self.settings.expiring_window_days)
        c = credit_records.c
        unused_earned = and_(c.type == CreditType.EARNED.value, c.used_at.is_(None))

        rows = self.store.query(
            select(
                earned_total_expr().label("total_earned"),
                _sum(case((c.type == CreditType.USED.value, -c.amount), else_=0)).label("total_used"),
                _sum(case((c.type == CreditType.EXPIRED.value, -c.amount), else_=0)).label("total_expired"),
                _sum(case((and_(unused_earned, c.expires_at > now), c.amount), else_=0)).label("available"),
                _sum(
                    case((and_(unused_earned, c.expires_at > now, c.expires_at <= window_end), c.amount), else_=0)
                ).label("expiring"),
            ).where(c.user_id == user_id)
        )
        totals = rows[0]
        return UserCreditBalance(
            user_id=user_id,
            total_earned=int(totals["total_earned"]),
            total_used=int(totals["total_used"]),
            total_expired=int(totals["total_expired"]),
            available_credits=int(totals["available"]),
            expiring_credits=int(totals["expiring"]),
            last_updated=now,
        )

    def rebuild_balance(self, user_id: str) -> UserCreditBalance:
        balance = self.compute_balance(user_id)
        row = to_row(balance)
        del row["user_id"]

        def upsert(conn: Store) -> None:
            result = conn.execute(
                update(user_credit_balances)
                .where(user_credit_balances.c.user_id == user_id)
                .values(**row)
            )
            if result.affected_rows == 0:
                conn.execute(insert(user_credit_balances).values(user_id=user_id, **row))

        self.store.transaction(upsert)
        return balance

    def refresh_balance(self, user_id: str) -> AdvisoryOutcome:
        return run_advisory("balance_refresh", lambda: self.rebuild_balance(user_id), self.logger, user_id=user_id)

    def history(self, user_id: str, limit: int = 50) -> list[CreditRecord]:
        rows = self.store.query(
            select(credit_records)
            .where(credit_records.c.user_id == user_id)
            .order_by(credit_records.c.created_at.desc())
            .limit(limit)
        )
        return [CreditRecord.model_validate(row) for row in rows]

    def usage_history(self, user_id: str, limit: int = 50) -> list[CreditUsage]:
        rows = self.store.query(
            select(credit_usage)
            .where(credit_usage.c.user_id == user_id)
            .order_by(credit_usage.c.created_at.desc())
            .limit(limit)
        )
        return [CreditUsage.model_validate(row) for row in rows]

    def expiring(self, user_id: str, days: int = 30) -> list[CreditRecord]:
        now = self.clock()
        rows = self.store.query(
            select(credit_records)
            .where(_spendable(user_id, now), credit_records.c.expires_at <= now + timedelta(days=days))
            .order_by(credit_records.c.expires_at.asc())
        )
        return [CreditRecord.model_validate(row) for row in rows]

    def stats(self, user_id: str) -> CreditStats:
        balance = self.compute_balance(user_id)
        c = credit_records.c

        first = self.store.query(
            select(func.min(c.created_at).label("first_at")).where(
                c.user_id == user_id, c.type == CreditType.EARNED.value
            )
        )
        average_daily = 0.0
        first_at = first[0]["first_at"] if first else None
        if first_at is not None:
            days = max(1, (balance.last_updated - first_at).days)
            average_daily = round(balance.total_earned / days, 2)

        by_source = self.store.query(
            select(c.source, earned_total_expr().label("amount"))
            .where(c.user_id == user_id)
            .group_by(c.source)
            .order_by(desc("amount"))
            .limit(5)
        )
        top_sources = [
            SourceTotal(source=row["source"], amount=int(row["amount"]))
            for row in by_source
            if int(row["amount"]) > 0
        ]

        return CreditStats(
            user_id=user_id,
            total_earned=balance.total_earned,
            total_used=balance.total_used,
            total_expired=balance.total_expired,
            average_daily=average_daily,
            top_sources=top_sources,
        )

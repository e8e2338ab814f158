from datetime import datetime, timedelta, timezone

import pytest

from infra.settings import Settings
from infra.store import create_store
from invites.abuse import RiskFactorCollector
from invites.events import InviteEventLog
from invites.fraud import FraudMonitor
from invites.registration import RegistrationService
from invites.registry import InviteCodeRegistry
from invites.stats import StatsAggregator
from ledger.service import CreditLedger
from rules.approvals import ApprovalService
from rules.rewards import RewardDispatcher
from rules.rule_engine import RuleEngine, create_default_rules


class FakeClock:
    """Callable clock the tests move by hand."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FakeClock(datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def settings():
    return Settings(database_url="sqlite://", log_level="WARNING")


@pytest.fixture
def store():
    store = create_store("sqlite://")
    yield store
    store.engine.dispose()


@pytest.fixture
def events(store, clock):
    return InviteEventLog(store, clock=clock)


@pytest.fixture
def fraud(store, clock):
    return FraudMonitor(store, clock=clock)


@pytest.fixture
def stats(store, clock):
    return StatsAggregator(store, clock=clock)


@pytest.fixture
def ledger(store, settings, clock):
    return CreditLedger(store, settings=settings, clock=clock)


@pytest.fixture
def registry(store, settings, stats, clock):
    return InviteCodeRegistry(store, settings=settings, stats=stats, clock=clock)


@pytest.fixture
def engine(settings, clock):
    return RuleEngine(
        create_default_rules(),
        approval_threshold=settings.approval_threshold,
        review_threshold=settings.risk_review_threshold,
        clock=clock,
    )


@pytest.fixture
def approvals(store, ledger, events, clock):
    return ApprovalService(store, ledger, events=events, clock=clock)


@pytest.fixture
def dispatcher(store, engine, ledger, approvals, events, fraud, settings, clock):
    return RewardDispatcher(
        store,
        engine,
        ledger,
        approvals,
        events=events,
        fraud=fraud,
        block_threshold=settings.risk_block_threshold,
        clock=clock,
    )


@pytest.fixture
def registrations(store, registry, stats, dispatcher, events, fraud, settings, clock):
    return RegistrationService(
        store,
        registry,
        stats=stats,
        rewards=dispatcher,
        events=events,
        risk=RiskFactorCollector(store, events),
        fraud=fraud,
        review_threshold=settings.risk_review_threshold,
        clock=clock,
    )

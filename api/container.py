from dataclasses import dataclass
from typing import Optional

from infra.clock import Clock, utcnow
from infra.settings import Settings, get_settings
from infra.store import Store, create_store
from invites.abuse import RiskFactorCollector
from invites.events import InviteEventLog
from invites.fraud import FraudMonitor
from invites.registration import RegistrationService
from invites.registry import InviteCodeRegistry
from invites.stats import StatsAggregator
from ledger.service import CreditLedger
from rules.approvals import ApprovalService
from rules.repository import RuleRepository
from rules.rewards import RewardDispatcher
from rules.rule_engine import RuleEngine, create_default_rules


@dataclass
class ReferralServices:
    store: Store
    settings: Settings
    registry: InviteCodeRegistry
    registrations: RegistrationService
    stats: StatsAggregator
    events: InviteEventLog
    fraud: FraudMonitor
    ledger: CreditLedger
    engine: RuleEngine
    approvals: ApprovalService
    rewards: RewardDispatcher
    rules: RuleRepository


def build_services(
    store: Optional[Store] = None,
    settings: Optional[Settings] = None,
    clock: Clock = utcnow,
) -> ReferralServices:
    settings = settings or get_settings()
    store = store or create_store(settings.database_url)

    events = InviteEventLog(store, clock=clock)
    fraud = FraudMonitor(store, clock=clock)
    stats = StatsAggregator(store, clock=clock)
    ledger = CreditLedger(store, settings=settings, clock=clock)
    registry = InviteCodeRegistry(store, settings=settings, stats=stats, clock=clock)

    engine = RuleEngine(
        create_default_rules(),
        approval_threshold=settings.approval_threshold,
        review_threshold=settings.risk_review_threshold,
        clock=clock,
    )
    rules = RuleRepository(store, clock=clock)
    # Stored rules override the defaults by id
    rules.load_into(engine)

    approvals = ApprovalService(store, ledger, events=events, clock=clock)
    rewards = RewardDispatcher(
        store,
        engine,
        ledger,
        approvals,
        events=events,
        fraud=fraud,
        block_threshold=settings.risk_block_threshold,
        clock=clock,
    )
    registrations = RegistrationService(
        store,
        registry,
        stats=stats,
        rewards=rewards,
        events=events,
        risk=RiskFactorCollector(store, events),
        fraud=fraud,
        review_threshold=settings.risk_review_threshold,
        clock=clock,
    )

    return ReferralServices(
        store=store,
        settings=settings,
        registry=registry,
        registrations=registrations,
        stats=stats,
        events=events,
        fraud=fraud,
        ledger=ledger,
        engine=engine,
        approvals=approvals,
        rewards=rewards,
        rules=rules,
    )

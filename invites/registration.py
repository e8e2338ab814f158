from typing import Optional, Protocol
from uuid import uuid4

from sqlalchemy import insert, select, update
from sqlalchemy.exc import IntegrityError

from infra.advisory import AdvisoryOutcome, run_advisory
from infra.clock import Clock, utcnow
from infra.errors import ErrorKind
from infra.logging_config import get_logger
from infra.schema import invite_codes, invite_registrations
from infra.store import Store, to_row

from . import abuse
from .abuse import RiskAssessment, RiskFactorCollector, RiskLevel
from .events import InviteEventLog
from .fraud import FraudMonitor, SuspiciousActivityType
from .models import (
    ActivationResult,
    InviteCode,
    InviteEventType,
    InviteRegistration,
    RegistrationMetadata,
    RegistrationResult,
)
from .registry import InviteCodeRegistry
from .stats import StatsAggregator


class RewardHook(Protocol):
    def on_registration(self, registration: InviteRegistration, risk_score: Optional[float] = None) -> bool: ...

    def on_activation(self, registration: InviteRegistration) -> bool: ...


class _CodeUnavailable(Exception):
    """The guarded usage increment matched no row."""


class RegistrationService:
    """Binds an invitee to an inviter exactly once.

    Validation, guards, the registration insert and the usage increment make
    up the primary outcome and either all land or none do. Event logging,
    rewards and stats run afterwards and only ever show up as advisories.
    """

    def __init__(
        self,
        store: Store,
        registry: InviteCodeRegistry,
        stats: Optional[StatsAggregator] = None,
        rewards: Optional[RewardHook] = None,
        events: Optional[InviteEventLog] = None,
        risk: Optional[RiskFactorCollector] = None,
        fraud: Optional[FraudMonitor] = None,
        review_threshold: float = 0.5,
        clock: Clock = utcnow,
        logger=None,
    ):
        self.store = store
        self.registry = registry
        self.stats = stats
        self.rewards = rewards
        self.events = events
        self.risk = risk
        self.fraud = fraud
        self.review_threshold = review_threshold
        self.clock = clock
        self.logger = logger or get_logger(__name__)

    def register(
        self,
        code: str,
        invitee_id: str,
        metadata: Optional[RegistrationMetadata] = None,
    ) -> RegistrationResult:
        validation = self.registry.validate(code)
        if not validation.is_valid:
            return self._reject(validation.error_kind, invitee_id)

        invite = validation.code
        if invite.inviter_id == invitee_id:
            if self.fraud is not None:
                run_advisory(
                    "risk_record",
                    lambda: self.fraud.record_suspicious_activity(
                        invitee_id,
                        SuspiciousActivityType.SELF_INVITATION,
                        RiskLevel.MEDIUM,
                        description=f"tried to register with own code {invite.code}",
                        ip_address=metadata.ip_address if metadata else None,
                    ),
                    self.logger,
                    invitee_id=invitee_id,
                )
            return self._reject(ErrorKind.SELF_INVITE_ATTEMPT, invitee_id)

        if self.find_registration(invitee_id) is not None:
            return self._reject(ErrorKind.ALREADY_REGISTERED, invitee_id)

        assessment = None
        if metadata is not None and self.risk is not None:
            outcome = run_advisory(
                "risk_assessment",
                lambda: abuse.assess(self.risk.collect(invite.inviter_id, metadata, self.clock())),
                self.logger,
                invitee_id=invitee_id,
            )
            if outcome.ok:
                assessment = outcome.value
                if assessment.reasons:
                    self.logger.info(
                        "registration_risk_signals",
                        inviter_id=invite.inviter_id,
                        invitee_id=invitee_id,
                        score=assessment.score,
                        reasons=assessment.reasons,
                    )

        risk_score = assessment.score if assessment is not None else None

        try:
            registration = self.store.transaction(lambda conn: self._bind(conn, invite, invitee_id))
        except IntegrityError:
            # A concurrent register() for the same invitee committed first
            return self._reject(ErrorKind.ALREADY_REGISTERED, invitee_id)
        except _CodeUnavailable:
            recheck = self.registry.validate(invite.code)
            kind = recheck.error_kind if not recheck.is_valid else ErrorKind.USAGE_LIMIT_EXCEEDED
            return self._reject(kind, invitee_id)

        self.logger.info(
            "invite_registration_bound",
            inviter_id=registration.inviter_id,
            invitee_id=invitee_id,
            registration_id=registration.id,
        )

        advisories = self._after_registration(registration, metadata, assessment)
        if any(a.name == "rewards" and a.ok and a.value for a in advisories):
            registration = registration.model_copy(update={"rewards_claimed": True})

        return RegistrationResult(
            success=True,
            registration=registration,
            risk_score=risk_score,
            advisories=advisories,
        )

    def _bind(self, conn: Store, invite: InviteCode, invitee_id: str) -> InviteRegistration:
        now = self.clock()
        registration = InviteRegistration(
            id=str(uuid4()),
            invite_code_id=invite.id,
            inviter_id=invite.inviter_id,
            invitee_id=invitee_id,
            registered_at=now,
            is_activated=False,
            rewards_claimed=False,
        )
        conn.execute(insert(invite_registrations).values(**to_row(registration)))

        result = conn.execute(
            update(invite_codes)
            .where(
                invite_codes.c.id == invite.id,
                invite_codes.c.is_active.is_(True),
                invite_codes.c.expires_at >= now,
                invite_codes.c.usage_count < invite_codes.c.max_usage,
            )
            .values(usage_count=invite_codes.c.usage_count + 1)
        )
        if result.affected_rows != 1:
            raise _CodeUnavailable(invite.id)
        return registration

    def _after_registration(
        self,
        registration: InviteRegistration,
        metadata: Optional[RegistrationMetadata],
        assessment: Optional[RiskAssessment],
    ) -> list[AdvisoryOutcome]:
        advisories = []
        risk_score = assessment.score if assessment is not None else None
        context = {"inviter_id": registration.inviter_id, "invitee_id": registration.invitee_id}

        if self.events is not None:
            advisories.append(run_advisory(
                "event_log",
                lambda: self.events.record(
                    InviteEventType.REGISTRATION,
                    inviter_id=registration.inviter_id,
                    invitee_id=registration.invitee_id,
                    invite_code_id=registration.invite_code_id,
                    metadata=metadata,
                    risk_score=risk_score,
                ),
                self.logger,
                **context,
            ))

        if self.fraud is not None and risk_score is not None and risk_score >= self.review_threshold:
            advisories.append(run_advisory(
                "risk_record",
                lambda: self.fraud.flag_registration(
                    registration.inviter_id, registration.invitee_id, assessment, metadata
                ),
                self.logger,
                **context,
            ))

        if self.rewards is not None:
            advisories.append(run_advisory(
                "rewards",
                lambda: self._dispatch_registration_rewards(registration, risk_score),
                self.logger,
                **context,
            ))

        if self.stats is not None:
            advisories.append(self.stats.refresh(registration.inviter_id))

        return advisories

    def _dispatch_registration_rewards(self, registration: InviteRegistration, risk_score: Optional[float]) -> bool:
        dispatched = self.rewards.on_registration(registration, risk_score)
        if dispatched:
            self.store.execute(
                update(invite_registrations)
                .where(invite_registrations.c.id == registration.id)
                .values(rewards_claimed=True)
            )
        return dispatched

    def activate(self, user_id: str) -> ActivationResult:
        rows = self.store.query(
            select(invite_registrations)
            .where(
                invite_registrations.c.invitee_id == user_id,
                invite_registrations.c.is_activated.is_(False),
            )
            .order_by(invite_registrations.c.registered_at.asc())
            .limit(1)
        )
        if not rows:
            self.logger.debug("invite_activation_skipped", user_id=user_id)
            return ActivationResult(activated=False)

        registration = InviteRegistration.model_validate(rows[0])
        now = self.clock()
        result = self.store.execute(
            update(invite_registrations)
            .where(
                invite_registrations.c.id == registration.id,
                invite_registrations.c.is_activated.is_(False),
            )
            .values(is_activated=True, activated_at=now)
        )
        if result.affected_rows == 0:
            # Another activation signal got there first
            return ActivationResult(activated=False)

        registration = registration.model_copy(update={"is_activated": True, "activated_at": now})
        self.logger.info(
            "invitee_activated",
            inviter_id=registration.inviter_id,
            invitee_id=user_id,
            registration_id=registration.id,
        )

        advisories = []
        context = {"inviter_id": registration.inviter_id, "invitee_id": user_id}
        if self.events is not None:
            advisories.append(run_advisory(
                "event_log",
                lambda: self.events.record(
                    InviteEventType.ACTIVATION,
                    inviter_id=registration.inviter_id,
                    invitee_id=user_id,
                    invite_code_id=registration.invite_code_id,
                ),
                self.logger,
                **context,
            ))
        if self.rewards is not None:
            advisories.append(run_advisory(
                "rewards", lambda: self.rewards.on_activation(registration), self.logger, **context
            ))
        if self.stats is not None:
            advisories.append(self.stats.refresh(registration.inviter_id))

        return ActivationResult(activated=True, registration=registration, advisories=advisories)

    def find_registration(self, invitee_id: str) -> Optional[InviteRegistration]:
        rows = self.store.query(
            select(invite_registrations).where(invite_registrations.c.invitee_id == invitee_id)
        )
        return InviteRegistration.model_validate(rows[0]) if rows else None

    def list_invitees(self, inviter_id: str) -> list[InviteRegistration]:
        rows = self.store.query(
            select(invite_registrations)
            .where(invite_registrations.c.inviter_id == inviter_id)
            .order_by(invite_registrations.c.registered_at.desc())
        )
        return [InviteRegistration.model_validate(row) for row in rows]

    def _reject(self, kind: ErrorKind, invitee_id: str) -> RegistrationResult:
        self.logger.info("invite_registration_rejected", invitee_id=invitee_id, error_kind=kind.value)
        return RegistrationResult.fail(kind)

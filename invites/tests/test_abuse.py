"""
Unit Tests for Registration Risk Scoring
"""

import pytest

from invites import abuse
from invites.abuse import RiskFactorCollector, RiskFactors, RiskLevel
from invites.models import InviteEventType, RegistrationMetadata


BROWSER_UA = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 Chrome/126.0 Safari/537.36"
GOOD_FINGERPRINT = "9f2c4e7a1b3d5f60"


def clean(**overrides) -> RiskFactors:
    values = {"device_fingerprint": GOOD_FINGERPRINT, "user_agent": BROWSER_UA}
    values.update(overrides)
    return RiskFactors(**values)


class TestScore:
    """Tests for the pure scoring function."""

    def test_clean_factors_score_zero(self):
        assert abuse.score(clean()) == 0.0

    @pytest.mark.parametrize("count,expected", [(3, 0.0), (4, 0.2), (5, 0.2), (6, 0.4), (40, 0.4)])
    def test_same_ip_weights(self, count, expected):
        assert abuse.score(clean(same_ip_registrations_24h=count)) == expected

    @pytest.mark.parametrize("gap,expected", [(5, 0.3), (59, 0.3), (60, 0.1), (299, 0.1), (300, 0.0)])
    def test_registration_gap_weights(self, gap, expected):
        assert abuse.score(clean(seconds_since_last_registration=gap)) == expected

    def test_missing_fingerprint_and_agent(self):
        """Test absent request metadata counts as risky."""
        assert abuse.score(RiskFactors()) == 0.3

    @pytest.mark.parametrize("fingerprint", ["short", "aaaaaaaaaaaaaaaaaaaa", "abababababababab"])
    def test_low_entropy_fingerprints(self, fingerprint):
        assert abuse.is_low_entropy_fingerprint(fingerprint) is True

    @pytest.mark.parametrize("agent", ["python-requests/2.31", "curl/8.4.0", "Googlebot/2.1", "HeadlessChrome/120"])
    def test_bot_user_agents(self, agent):
        assert abuse.is_bot_user_agent(agent) is True

    def test_browser_user_agent(self):
        assert abuse.is_bot_user_agent(BROWSER_UA) is False

    def test_score_is_clamped(self):
        """Test every signal at once still scores 1.0."""
        factors = RiskFactors(same_ip_registrations_24h=20, seconds_since_last_registration=1)
        assessment = abuse.assess(factors)

        assert assessment.score == 1.0
        assert assessment.level == RiskLevel.HIGH
        assert len(assessment.reasons) == 4

    def test_levels(self):
        assert abuse.level_for(0.0) == RiskLevel.LOW
        assert abuse.level_for(0.3) == RiskLevel.MEDIUM
        assert abuse.level_for(0.6) == RiskLevel.HIGH


class TestRiskFactorCollector:
    """Tests for gathering factors from the store."""

    def test_collect_counts_same_ip_registrations(self, store, events, clock):
        """Test only registrations from the same IP in the last 24h count."""
        for _ in range(3):
            events.record(InviteEventType.REGISTRATION, metadata=RegistrationMetadata(ip_address="10.0.0.1"))
        events.record(InviteEventType.ACTIVATION, metadata=RegistrationMetadata(ip_address="10.0.0.1"))
        events.record(InviteEventType.REGISTRATION, metadata=RegistrationMetadata(ip_address="10.0.0.2"))

        collector = RiskFactorCollector(store, events)
        factors = collector.collect("inviter-001", RegistrationMetadata(ip_address="10.0.0.1"), clock())

        assert factors.same_ip_registrations_24h == 3
        assert factors.seconds_since_last_registration is None

    def test_collect_ignores_old_events(self, store, events, clock):
        """Test registrations older than a day drop out of the IP count."""
        events.record(InviteEventType.REGISTRATION, metadata=RegistrationMetadata(ip_address="10.0.0.1"))
        clock.advance(hours=25)

        collector = RiskFactorCollector(store, events)
        factors = collector.collect("inviter-001", RegistrationMetadata(ip_address="10.0.0.1"), clock())

        assert factors.same_ip_registrations_24h == 0

    def test_collect_measures_gap_since_last_registration(self, store, events, registry, registrations, clock):
        """Test the gap is measured from the inviter's latest registration."""
        invite = registry.generate("inviter-001")
        registrations.register(invite.code, "invitee-001")
        clock.advance(seconds=42)

        collector = RiskFactorCollector(store, events)
        factors = collector.collect("inviter-001", RegistrationMetadata(), clock())

        assert factors.seconds_since_last_registration == 42

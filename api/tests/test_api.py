"""
HTTP Tests for the Referral Core API
"""

from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from api.container import build_services
from api.index import create_app, status_for
from infra.errors import ErrorKind
from ledger.models import CreditSource
from rules.models import RewardType
from rules.rule_engine import RewardRule


INVITER_ID = "inviter-001"
INVITEE_ID = "invitee-001"


@pytest.fixture
def services(store, settings, clock):
    return build_services(store, settings, clock)


@pytest.fixture
def client(services):
    return TestClient(create_app(services))


def create_code(client) -> dict:
    response = client.post("/invite-codes", json={"inviter_id": INVITER_ID})
    assert response.status_code == 201
    return response.json()


class TestStatusMapping:
    """Error kinds map onto HTTP status codes."""

    @pytest.mark.parametrize(
        "kind,expected",
        [
            (ErrorKind.INVALID_FORMAT, 400),
            (ErrorKind.NOT_FOUND, 400),
            (ErrorKind.EXPIRED, 400),
            (ErrorKind.INACTIVE, 400),
            (ErrorKind.USAGE_LIMIT_EXCEEDED, 400),
            (ErrorKind.SELF_INVITE_ATTEMPT, 400),
            (ErrorKind.ALREADY_REGISTERED, 409),
            (ErrorKind.INSUFFICIENT_CREDITS, 429),
            (ErrorKind.APPROVAL_NOT_FOUND, 404),
            (ErrorKind.CODE_GENERATION_EXHAUSTED, 503),
        ],
    )
    def test_status_for(self, kind, expected):
        assert status_for(kind) == expected


class TestInviteEndpoints:
    """Tests for invite code routes."""

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_generate_and_validate(self, client):
        code = create_code(client)

        response = client.get(f"/invite-codes/{code['code']}/validate")

        assert response.status_code == 200
        body = response.json()
        assert body["is_valid"] is True
        assert body["code"]["inviter_id"] == INVITER_ID

    def test_validate_unknown_code(self, client):
        response = client.get("/invite-codes/ZZZZ9999/validate")

        assert response.status_code == 400
        assert response.json()["detail"] == {"error_kind": "NotFound", "error": "Invite code not found"}

    def test_deactivate(self, client):
        code = create_code(client)

        first = client.delete(f"/invite-codes/{code['id']}", params={"owner_id": INVITER_ID})
        second = client.delete(f"/invite-codes/{code['id']}", params={"owner_id": INVITER_ID})

        assert first.json()["deactivated"] is True
        assert second.json()["deactivated"] is False
        assert client.get(f"/invite-codes/{code['code']}/validate").json()["detail"]["error_kind"] == "Inactive"

    def test_generation_exhausted_is_503(self, client, services, monkeypatch):
        code = create_code(client)
        monkeypatch.setattr(services.registry, "_draw_code", lambda: code["code"])

        response = client.post("/invite-codes", json={"inviter_id": "inviter-002"})

        assert response.status_code == 503
        assert response.json()["detail"]["error_kind"] == "CodeGenerationExhausted"


class TestRegistrationEndpoints:
    """Tests for registration routes."""

    def test_register_and_activate(self, client):
        code = create_code(client)

        response = client.post("/registrations", json={"code": code["code"], "invitee_id": INVITEE_ID})
        assert response.status_code == 201
        assert response.json()["registration"]["inviter_id"] == INVITER_ID

        response = client.post(f"/registrations/{INVITEE_ID}/activate")
        assert response.status_code == 200
        assert response.json()["activated"] is True

        balance = client.get(f"/users/{INVITER_ID}/balance").json()
        assert balance["available_credits"] == 15

    def test_duplicate_registration_is_409(self, client):
        code = create_code(client)
        client.post("/registrations", json={"code": code["code"], "invitee_id": INVITEE_ID})

        response = client.post("/registrations", json={"code": code["code"], "invitee_id": INVITEE_ID})

        assert response.status_code == 409
        assert response.json()["detail"]["error"] == "User has already been invited"

    def test_self_invite_is_400(self, client):
        code = create_code(client)

        response = client.post("/registrations", json={"code": code["code"], "invitee_id": INVITER_ID})

        assert response.status_code == 400
        assert response.json()["detail"]["error_kind"] == "SelfInviteAttempt"


class TestCreditEndpoints:
    """Tests for balance, debit and sweep routes."""

    def test_debit_scenario(self, client, services, clock):
        """Test 100 + 50 credited and 120 debited leaves 30."""
        ledger = services.ledger
        ledger.credit("user-9", 100, CreditSource.PURCHASE, "order-1", expires_at=clock() + timedelta(days=10))
        ledger.credit("user-9", 50, CreditSource.PURCHASE, "order-2", expires_at=clock() + timedelta(days=20))

        response = client.post("/users/user-9/debit", json={"amount": 120, "purpose": "ai_card_generation"})

        assert response.status_code == 200
        assert response.json()["available_credits"] == 30

    def test_insufficient_credits_is_429(self, client):
        response = client.post("/users/user-9/debit", json={"amount": 5, "purpose": "ai_card_generation"})

        assert response.status_code == 429
        assert response.json()["detail"]["error_kind"] == "InsufficientCredits"

    def test_debit_rejects_non_positive_amount(self, client):
        response = client.post("/users/user-9/debit", json={"amount": 0, "purpose": "noop"})
        assert response.status_code == 422

    def test_credits_history(self, client, services):
        services.ledger.credit("user-9", 7, CreditSource.ADMIN_GRANT, "grant-1")

        body = client.get("/users/user-9/credits").json()

        assert body["balance"]["available_credits"] == 7
        assert [r["amount"] for r in body["records"]] == [7]

    def test_sweep(self, client, services, clock):
        services.ledger.credit("user-9", 7, CreditSource.ADMIN_GRANT, "grant-1", expires_at=clock() + timedelta(days=1))
        clock.advance(days=2)

        assert client.post("/credits/sweep").json() == {"expired": 1}
        assert client.post("/credits/sweep").json() == {"expired": 0}


class TestApprovalEndpoints:
    """Tests for the approval queue routes."""

    def test_approve_flow(self, client, services):
        approval = services.approvals.request(INVITER_ID, RewardType.AI_CREDITS, 80)

        pending = client.get("/approvals/pending").json()
        assert [a["id"] for a in pending] == [approval.id]

        response = client.post(f"/approvals/{approval.id}/approve", json={"admin_id": "admin-1"})
        assert response.status_code == 200
        assert response.json()["status"] == "approved"
        assert client.get(f"/users/{INVITER_ID}/balance").json()["available_credits"] == 80

        again = client.post(f"/approvals/{approval.id}/approve", json={"admin_id": "admin-1"})
        assert again.status_code == 409

    def test_reject_flow(self, client, services):
        approval = services.approvals.request(INVITER_ID, RewardType.AI_CREDITS, 80)

        response = client.post(
            f"/approvals/{approval.id}/reject", json={"admin_id": "admin-1", "reason": "duplicate account"}
        )

        assert response.status_code == 200
        assert response.json()["status"] == "rejected"

    def test_missing_approval_is_404(self, client):
        response = client.post("/approvals/missing/approve", json={"admin_id": "admin-1"})

        assert response.status_code == 404
        assert response.json()["detail"]["error_kind"] == "ApprovalNotFound"


class TestRewardEndpoints:
    """Tests for releasing deferred rewards."""

    def test_stored_delay_rule_pays_on_release(self, client, services, clock):
        """Test a stored rule with a delay pays only once the release route runs after the delay."""
        rule = services.engine.get_rule("rule-registration-reward")
        services.rules.save(RewardRule.from_dict({**rule.to_dict(), "actions": {"delay_seconds": 60}}))
        services.rules.load_into(services.engine)
        code = create_code(client)

        response = client.post("/registrations", json={"code": code["code"], "invitee_id": INVITEE_ID})
        assert response.json()["registration"]["rewards_claimed"] is False
        assert client.post("/rewards/release").json() == {"released": 0}

        clock.advance(seconds=60)
        assert client.post("/rewards/release").json() == {"released": 1}
        assert client.post("/rewards/release").json() == {"released": 0}
        assert client.get(f"/users/{INVITER_ID}/balance").json()["available_credits"] == 10


class TestRiskEndpoints:
    """Tests for risk profile and ban routes."""

    def test_ban_blocks_rewards(self, client):
        response = client.post(f"/users/{INVITER_ID}/ban", json={"reason": "registration farm"})
        assert response.status_code == 201
        assert response.json()["expires_at"] is None

        code = create_code(client)
        client.post("/registrations", json={"code": code["code"], "invitee_id": INVITEE_ID})

        risk = client.get(f"/users/{INVITER_ID}/risk").json()
        assert risk["banned"] is True
        assert risk["risk_level"] == "high"
        assert client.get(f"/users/{INVITER_ID}/balance").json()["available_credits"] == 0

    def test_self_invite_shows_in_risk_profile(self, client):
        code = create_code(client)
        client.post("/registrations", json={"code": code["code"], "invitee_id": INVITER_ID})

        risk = client.get(f"/users/{INVITER_ID}/risk").json()

        assert risk["banned"] is False
        assert [a["activity_type"] for a in risk["activities"]] == ["self_invitation"]

"""
tests/test_api_routes.py — FastAPI Route Integration Tests
============================================================
Integration tests for the invitation, points, team and admin routes using
the FastAPI TestClient against the in-memory SQLite engine.

These tests verify:
- Auth guards (401 without/with a bad token, 403 for non-admins)
- Domain errors mapped to their HTTP status with an ``error`` name
- The main referral flow end to end over HTTP
"""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from conftest import make_token
from tally.api.deps import get_collaborators, get_config, get_engine
from tally.services import ledger_service


@pytest.fixture
def client(db_engine, collab, cfg, accounts):
    """TestClient with the store, collaborators and config overridden."""
    from tally.api.main import app

    app.dependency_overrides[get_engine] = lambda: db_engine
    app.dependency_overrides[get_collaborators] = lambda: collab
    app.dependency_overrides[get_config] = lambda: cfg
    yield TestClient(app, raise_server_exceptions=False)
    app.dependency_overrides.clear()


@pytest.fixture
def trainer_token():
    return make_token("trainer-1", "TRAINER")


@pytest.fixture
def client_token():
    return make_token("client-1", "CLIENT")


def _auth(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


def _invite(client, token, emails=("new@example.com",), **extra) -> dict:
    resp = client.post(
        "/api/invitations", json={"emails": list(emails), **extra}, headers=_auth(token),
    )
    assert resp.status_code == 201, resp.text
    return resp.json()


# ===========================================================================
# Health & auth guards
# ===========================================================================
class TestHealthEndpoint:
    def test_health_returns_ok(self, client):
        resp = client.get("/api/health")
        assert resp.status_code == 200
        assert resp.json() == {"status": "ok"}


class TestAuthGuards:
    ADMIN_GET_ENDPOINTS = [
        "/api/admin/audit",
        "/api/admin/leaderboard",
    ]

    ADMIN_POST_ENDPOINTS = [
        "/api/admin/sweeps/retention",
        "/api/admin/sweeps/expiry",
        "/api/admin/sweeps/reconcile",
    ]

    @pytest.mark.parametrize("endpoint", ADMIN_GET_ENDPOINTS)
    def test_get_rejects_no_auth(self, client, endpoint):
        assert client.get(endpoint).status_code == 401

    @pytest.mark.parametrize("endpoint", ADMIN_GET_ENDPOINTS)
    def test_get_rejects_invalid_token(self, client, endpoint):
        resp = client.get(endpoint, headers={"Authorization": "Bearer invalid"})
        assert resp.status_code == 401

    @pytest.mark.parametrize("endpoint", ADMIN_POST_ENDPOINTS)
    def test_post_rejects_non_admin(self, client, trainer_token, endpoint):
        assert client.post(endpoint, headers=_auth(trainer_token)).status_code == 403

    def test_user_endpoints_require_token(self, client):
        assert client.get("/api/points/balance").status_code == 401
        assert client.post("/api/invitations", json={"emails": ["a@example.com"]}).status_code == 401


# ===========================================================================
# Invitations
# ===========================================================================
class TestInvitationRoutes:
    def test_trainer_creates_invitations(self, client, trainer_token, mailer):
        body = _invite(client, trainer_token, emails=[
            "new@example.com", "NEW@example.com", "client-1@example.com", "nope",
        ])

        assert body["summary"] == {
            "created": 1,
            "skipped_already_invited": 1,
            "skipped_already_registered": 1,
            "invalid": 1,
        }
        assert body["created"][0]["status"] == "PENDING"
        assert len(mailer.sent) == 1

    def test_client_cannot_invite(self, client, client_token):
        resp = client.post(
            "/api/invitations", json={"emails": ["a@example.com"]}, headers=_auth(client_token),
        )
        assert resp.status_code == 403
        assert resp.json()["error"] == "PermissionDenied"

    def test_schema_validation(self, client, trainer_token):
        resp = client.post(
            "/api/invitations",
            json={"emails": ["a@example.com"], "ttl_days": 0},
            headers=_auth(trainer_token),
        )
        assert resp.status_code == 422

    def test_bad_role_is_a_validation_error(self, client, trainer_token):
        resp = client.post(
            "/api/invitations",
            json={"emails": ["a@example.com"], "role": "ADMIN"},
            headers=_auth(trainer_token),
        )
        assert resp.status_code == 422
        assert resp.json()["error"] == "ValidationError"

    def test_accept_by_code_rewards_sender(self, client, db_engine, trainer_token):
        inv = _invite(client, trainer_token)["created"][0]
        newbie = make_token("newbie", "CLIENT")

        resp = client.post(f"/api/invitations/accept/{inv['code']}", headers=_auth(newbie))
        assert resp.status_code == 200
        data = resp.json()
        assert data["invitation"]["status"] == "ACCEPTED"
        assert data["already_accepted"] is False

        again = client.post(f"/api/invitations/{inv['id']}/accept", headers=_auth(newbie))
        assert again.status_code == 200
        assert again.json()["already_accepted"] is True

        balance = client.get("/api/points/balance", headers=_auth(trainer_token)).json()
        assert balance == {"account_id": "trainer-1", "balance": 10}
        assert ledger_service.balance_of(db_engine, "trainer-1") == 10

    def test_accept_revoked_is_conflict(self, client, trainer_token):
        inv = _invite(client, trainer_token)["created"][0]
        assert client.post(
            f"/api/invitations/{inv['id']}/revoke", headers=_auth(trainer_token),
        ).json()["status"] == "REVOKED"

        resp = client.post(
            f"/api/invitations/{inv['id']}/accept", headers=_auth(make_token("newbie")),
        )
        assert resp.status_code == 409
        assert resp.json()["error"] == "InvalidState"

    def test_accept_by_another_registered_account_is_forbidden(self, client, trainer_token, client_token):
        inv = _invite(client, trainer_token, emails=["alice@example.com"])["created"][0]

        resp = client.post(f"/api/invitations/accept/{inv['code']}", headers=_auth(client_token))
        assert resp.status_code == 403
        assert resp.json()["error"] == "PermissionDenied"

        balance = client.get("/api/points/balance", headers=_auth(trainer_token)).json()
        assert balance["balance"] == 0

    def test_unknown_status_filter_is_a_validation_error(self, client, trainer_token):
        resp = client.get("/api/invitations?status=bogus", headers=_auth(trainer_token))
        assert resp.status_code == 422
        assert resp.json()["error"] == "ValidationError"

    def test_unknown_code_is_404(self, client):
        resp = client.post("/api/invitations/accept/missing", headers=_auth(make_token("x")))
        assert resp.status_code == 404

    def test_only_parties_can_read_an_invitation(self, client, trainer_token, admin_token):
        inv = _invite(client, trainer_token)["created"][0]
        url = f"/api/invitations/{inv['id']}"

        assert client.get(url, headers=_auth(trainer_token)).status_code == 200
        assert client.get(url, headers=_auth(admin_token)).status_code == 200
        assert client.get(url, headers=_auth(make_token("stranger"))).status_code == 403

    def test_extend_and_resend(self, client, trainer_token, mailer):
        inv = _invite(client, trainer_token)["created"][0]

        extended = client.post(
            f"/api/invitations/{inv['id']}/extend", json={"days": 30}, headers=_auth(trainer_token),
        )
        assert extended.status_code == 200
        assert extended.json()["expires_at"] > inv["expires_at"]

        resent = client.post(f"/api/invitations/{inv['id']}/resend", headers=_auth(trainer_token))
        assert resent.status_code == 200
        assert len(mailer.sent) == 2

        other = client.post(
            f"/api/invitations/{inv['id']}/extend", headers=_auth(make_token("trainer-2", "TRAINER")),
        )
        assert other.status_code == 403

    def test_list_and_stats(self, client, trainer_token):
        _invite(client, trainer_token, emails=["a@example.com", "b@example.com"])

        listed = client.get("/api/invitations?status=pending", headers=_auth(trainer_token))
        assert listed.status_code == 200
        assert {i["email"] for i in listed.json()["invitations"]} == {"a@example.com", "b@example.com"}

        stats = client.get("/api/invitations/stats", headers=_auth(trainer_token)).json()
        assert stats["total"] == 2
        assert stats["by_status"]["PENDING"] == 2


# ===========================================================================
# Points & achievements
# ===========================================================================
class TestPointsRoutes:
    def test_users_only_read_their_own_ledger(self, client, client_token, admin_token):
        resp = client.get("/api/points/balance?account_id=trainer-1", headers=_auth(client_token))
        assert resp.status_code == 403

        resp = client.get("/api/points/balance?account_id=trainer-1", headers=_auth(admin_token))
        assert resp.status_code == 200
        assert resp.json()["balance"] == 0

    def test_entries_and_achievements(self, client, db_engine, trainer_token):
        ledger_service.append(db_engine, "trainer-1", "MANUAL_ADJUSTMENT", 7, "welcome")

        entries = client.get("/api/points/entries", headers=_auth(trainer_token)).json()
        assert [(e["point_type"], e["points"]) for e in entries["entries"]] == [
            ("MANUAL_ADJUSTMENT", 7),
        ]

        achievements = client.get("/api/achievements", headers=_auth(trainer_token)).json()
        assert achievements["unlocked"] == []
        assert {p["achievement_type"] for p in achievements["progress"]} >= {"ROOKIE_RECRUITER"}


# ===========================================================================
# Teams
# ===========================================================================
class TestTeamRoutes:
    def _create(self, client, token, max_members=2) -> dict:
        resp = client.post(
            "/api/teams", json={"name": "Crew", "max_members": max_members}, headers=_auth(token),
        )
        assert resp.status_code == 201, resp.text
        return resp.json()

    def test_only_trainers_create_teams(self, client, client_token):
        resp = client.post(
            "/api/teams", json={"name": "Crew", "max_members": 3}, headers=_auth(client_token),
        )
        assert resp.status_code == 403

    def test_capacity_is_enforced_over_http(self, client, trainer_token):
        team = self._create(client, trainer_token, max_members=2)
        url = f"/api/teams/{team['id']}/members"

        assert client.post(url, json={"user_id": "u1"}, headers=_auth(trainer_token)).status_code == 201
        full = client.post(url, json={"user_id": "u2"}, headers=_auth(trainer_token))
        assert full.status_code == 409
        assert full.json()["error"] == "CapacityExceeded"

        detail = client.get(f"/api/teams/{team['id']}", headers=_auth(trainer_token)).json()
        assert detail["member_count"] == 2
        assert {m["user_id"] for m in detail["members"]} == {"trainer-1", "u1"}

    def test_non_owner_cannot_add(self, client, trainer_token):
        team = self._create(client, trainer_token)
        resp = client.post(
            f"/api/teams/{team['id']}/members",
            json={"user_id": "u1"},
            headers=_auth(make_token("trainer-2", "TRAINER")),
        )
        assert resp.status_code == 403

    def test_leave_and_resize(self, client, trainer_token):
        team = self._create(client, trainer_token, max_members=3)
        client.post(f"/api/teams/{team['id']}/members", json={"user_id": "u1"},
                    headers=_auth(trainer_token))

        assert client.post(
            f"/api/teams/{team['id']}/leave", headers=_auth(make_token("u1")),
        ).status_code == 200
        owner_leave = client.post(f"/api/teams/{team['id']}/leave", headers=_auth(trainer_token))
        assert owner_leave.status_code == 409

        resized = client.patch(
            f"/api/teams/{team['id']}", json={"max_members": 5}, headers=_auth(trainer_token),
        )
        assert resized.json()["max_members"] == 5

    def test_application_flow(self, client, trainer_token):
        team = self._create(client, trainer_token, max_members=3)
        applicant = make_token("u1")

        applied = client.post(
            f"/api/teams/{team['id']}/applications", json={"message": "hi"}, headers=_auth(applicant),
        )
        assert applied.status_code == 201
        app_id = applied.json()["id"]

        assert client.post(
            f"/api/teams/applications/{app_id}/approve", headers=_auth(applicant),
        ).status_code == 403
        approved = client.post(
            f"/api/teams/applications/{app_id}/approve", headers=_auth(trainer_token),
        )
        assert approved.json()["status"] == "APPROVED"


# ===========================================================================
# Admin
# ===========================================================================
class TestAdminRoutes:
    def test_adjust_and_audit(self, client, admin_token):
        resp = client.post(
            "/api/admin/points/adjust",
            json={"account_id": "trainer-1", "points": 40, "reason": "launch bonus"},
            headers=_auth(admin_token),
        )
        assert resp.status_code == 201
        assert resp.json()["balance"] == 40

        board = client.get("/api/admin/leaderboard", headers=_auth(admin_token)).json()
        assert board["leaderboard"][0] == {"rank": 1, "account_id": "trainer-1", "balance": 40}

        audit = client.get("/api/admin/audit", headers=_auth(admin_token)).json()
        assert audit["total"] == 1
        assert audit["entries"][0]["action_type"] == "MANUAL_ADJUSTMENT"

    def test_correct_entry(self, client, admin_token):
        entry_id = client.post(
            "/api/admin/points/adjust",
            json={"account_id": "trainer-1", "points": 40, "reason": "launch bonus"},
            headers=_auth(admin_token),
        ).json()["entry_id"]

        resp = client.post(
            "/api/admin/points/correct",
            json={"entry_id": entry_id, "reason": "duplicate"},
            headers=_auth(admin_token),
        )
        assert resp.status_code == 201
        again = client.post(
            "/api/admin/points/correct",
            json={"entry_id": entry_id, "reason": "duplicate"},
            headers=_auth(admin_token),
        )
        assert again.status_code == 409

    @pytest.mark.parametrize("sweep,key", [
        ("retention", "awarded"),
        ("expiry", "expired"),
        ("reconcile", "rewards_reissued"),
    ])
    def test_sweeps_run_and_are_audited(self, client, admin_token, sweep, key):
        resp = client.post(f"/api/admin/sweeps/{sweep}", headers=_auth(admin_token))
        assert resp.status_code == 200
        assert key in resp.json()

        audit = client.get("/api/admin/audit", headers=_auth(admin_token)).json()
        assert audit["entries"][0]["action_type"] == "SWEEP"
        assert audit["entries"][0]["target_table"] == sweep

    def test_verification_without_invitation(self, client, admin_token):
        resp = client.post("/api/admin/verifications/coach-x", headers=_auth(admin_token))
        assert resp.json() == {"trainer_id": "coach-x", "awarded": False, "entry_id": None}

    def test_delete_invitation(self, client, admin_token, trainer_token):
        inv = _invite(client, trainer_token)["created"][0]
        resp = client.delete(
            f"/api/admin/invitations/{inv['id']}?reason=typo", headers=_auth(admin_token),
        )
        assert resp.status_code == 200
        assert client.get(
            f"/api/invitations/{inv['id']}", headers=_auth(admin_token),
        ).status_code == 404

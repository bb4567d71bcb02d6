"""
tests/test_reconciliation.py — Side-Effect Reconciliation Tests
================================================================
Simulates a crash between the acceptance commit and its best-effort side
effects, then checks that reconciliation repairs the gap exactly once.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime, timedelta

from sqlalchemy import update
from sqlalchemy.orm import Session

from tally.database.models import Invitation, PointType, Team
from tally.services import (
    invitation_service,
    ledger_service,
    reconciliation_service,
    team_service,
)

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


def _accepted_without_side_effects(engine, sender_id="trainer-1", role="CLIENT",
                                   receiver_id=None) -> str:
    """An ACCEPTED row whose post-commit work never ran."""
    inv_id = str(uuid.uuid4())
    with Session(engine) as session:
        session.add(Invitation(
            id=inv_id,
            code=uuid.uuid4().hex,
            email=f"{inv_id}@example.com",
            role=role,
            scope="platform",
            sender_id=sender_id,
            receiver_id=receiver_id or f"acct-{inv_id[:8]}",
            status="ACCEPTED",
            created_at=NOW,
            updated_at=NOW,
            expires_at=NOW + timedelta(days=7),
            accepted_at=NOW,
        ))
        session.commit()
    return inv_id


class TestAcceptanceRewards:
    def test_missing_reward_is_reissued_once(self, db_engine, accounts, collab, cfg):
        client_inv = _accepted_without_side_effects(db_engine)
        trainer_inv = _accepted_without_side_effects(db_engine, role="TRAINER")

        first = reconciliation_service.reissue_acceptance_rewards(db_engine, collab, cfg)
        second = reconciliation_service.reissue_acceptance_rewards(db_engine, collab, cfg)

        assert first == {"reissued": 2, "failed": 0}
        assert second == {"reissued": 0, "failed": 0}
        entries = {
            (e.point_type, e.source_id): e.points
            for e in ledger_service.list_entries(db_engine, "trainer-1")
        }
        assert entries == {
            (PointType.CLIENT_ACCEPTED.value, client_inv): 10,
            (PointType.TRAINER_ACCEPTED.value, trainer_inv): 25,
        }

    def test_paid_invitations_are_left_alone(self, db_engine, accounts, collab, cfg):
        inv = invitation_service.create_invitation(
            db_engine, collab, cfg, sender_id="trainer-1",
            email="new@example.com", role="CLIENT", now=NOW,
        ).invitation
        invitation_service.accept_invitation(
            db_engine, collab, cfg, invitation_id=inv.id, account_id="newbie",
            now=NOW + timedelta(hours=1),
        )

        assert reconciliation_service.reissue_acceptance_rewards(db_engine, collab, cfg)["reissued"] == 0
        assert ledger_service.balance_of(db_engine, "trainer-1") == 10

    def test_client_senders_are_never_paid(self, db_engine, accounts, collab, cfg):
        _accepted_without_side_effects(db_engine, sender_id="client-1")
        assert reconciliation_service.reissue_acceptance_rewards(db_engine, collab, cfg)["reissued"] == 0
        assert ledger_service.balance_of(db_engine, "client-1") == 0


class TestPendingMemberships:
    def test_left_behind_seats_are_activated(self, db_engine, accounts, collab, cfg):
        team = team_service.create_team(db_engine, owner_id="trainer-1", name="Crew", max_members=4)
        inv = invitation_service.create_invitation(
            db_engine, collab, cfg, sender_id="trainer-1",
            email="new@example.com", role="CLIENT", now=NOW,
        ).invitation
        team_service.add_pending_member(db_engine, team.id, inv.id, "trainer-1")
        # accepted, but the process died before seats were transferred
        with Session(db_engine) as session:
            session.execute(
                update(Invitation).where(Invitation.id == inv.id)
                .values(status="ACCEPTED", receiver_id="newbie", accepted_at=NOW)
            )
            session.commit()

        first = reconciliation_service.transfer_pending_memberships(db_engine)
        second = reconciliation_service.transfer_pending_memberships(db_engine)

        assert first == {"activated": 1, "failed": 0}
        assert second == {"activated": 0, "failed": 0}
        assert team_service.get_team(db_engine, team.id).member_count == 2


class TestAchievements:
    def test_missing_unlocks_are_applied(self, db_engine, accounts):
        for _ in range(5):
            _accepted_without_side_effects(db_engine)

        first = reconciliation_service.reevaluate_achievements(db_engine)
        second = reconciliation_service.reevaluate_achievements(db_engine)

        assert first == {"senders": 1, "unlocked": 1, "failed": 0}
        assert second["unlocked"] == 0


class TestTeamCounts:
    def test_drift_is_corrected(self, db_engine):
        team = team_service.create_team(db_engine, owner_id="trainer-1", name="Crew", max_members=10)
        team_service.add_member(db_engine, team.id, "u1")
        with Session(db_engine) as session:
            session.execute(update(Team).where(Team.id == team.id).values(member_count=7))
            session.commit()

        result = reconciliation_service.reconcile_team_counts(db_engine)

        assert result["checked"] == 1
        assert result["corrected"] == 1
        assert result["corrections"] == [
            {"team_id": team.id, "stored": 7, "actual": 2, "diff": -5},
        ]
        assert team_service.get_team(db_engine, team.id).member_count == 2

    def test_consistent_teams_untouched(self, db_engine):
        team_service.create_team(db_engine, owner_id="trainer-1", name="Crew", max_members=10)
        result = reconciliation_service.reconcile_team_counts(db_engine)
        assert result == {"checked": 1, "corrected": 0, "corrections": []}


class TestReconcile:
    def test_combined_summary(self, db_engine, accounts, collab, cfg):
        for _ in range(5):
            _accepted_without_side_effects(db_engine)

        summary = reconciliation_service.reconcile(db_engine, collab, cfg)

        assert summary["rewards_reissued"] == 5
        assert summary["achievements_unlocked"] == 1
        assert summary["memberships_activated"] == 0
        assert summary["failed"] == 0
        assert "timestamp" in summary
        assert ledger_service.balance_of(db_engine, "trainer-1") == 5 * 10 + 50

        again = reconciliation_service.reconcile(db_engine, collab, cfg)
        assert again["rewards_reissued"] == 0
        assert again["achievements_unlocked"] == 0

"""
tests/test_admin_service.py — Admin Mutation & Audit Log Tests
===============================================================
Every admin write lands in admin_log with before/after snapshots, and the
ledger stays append-only: corrections offset, never edit.
"""

from __future__ import annotations

from datetime import UTC, datetime

import pytest
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from tally.database.models import Invitation, PointsLedgerEntry, PointType, TeamMembership
from tally.errors import InvalidState, NotFound, ValidationError
from tally.services import admin_service, invitation_service, ledger_service, team_service

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


class TestAdjustPoints:
    def test_manual_adjustment_is_logged(self, db_engine):
        entry_id = admin_service.adjust_points(
            db_engine, actor_id="admin-1", account_id="trainer-1",
            points=30, reason="event prize",
        )

        assert ledger_service.balance_of(db_engine, "trainer-1") == 30
        total, rows = admin_service.list_audit_log(db_engine)
        assert total == 1
        log = rows[0]
        assert log["action_type"] == "MANUAL_ADJUSTMENT"
        assert log["target_id"] == str(entry_id)
        assert log["after_snapshot"]["points"] == 30
        assert log["reason"] == "event prize"

    def test_penalty_must_be_negative(self, db_engine):
        with pytest.raises(ValidationError):
            admin_service.adjust_points(
                db_engine, actor_id="admin-1", account_id="trainer-1",
                points=10, reason="spam", penalty=True,
            )
        admin_service.adjust_points(
            db_engine, actor_id="admin-1", account_id="trainer-1",
            points=-10, reason="spam", penalty=True,
        )
        entries = ledger_service.list_entries(db_engine, "trainer-1")
        assert [(e.point_type, e.points) for e in entries] == [(PointType.PENALTY.value, -10)]

    def test_reason_required(self, db_engine):
        with pytest.raises(ValidationError):
            admin_service.adjust_points(
                db_engine, actor_id="admin-1", account_id="trainer-1", points=5, reason="  ",
            )
        assert admin_service.list_audit_log(db_engine)[0] == 0


class TestCorrectEntry:
    def test_correction_offsets_original(self, db_engine):
        original = ledger_service.append(
            db_engine, "trainer-1", PointType.CLIENT_ACCEPTED, 10, "accepted", "inv-1",
        )

        correction = admin_service.correct_entry(
            db_engine, actor_id="admin-1", entry_id=original, reason="fraudulent signup",
        )

        assert ledger_service.balance_of(db_engine, "trainer-1") == 0
        with Session(db_engine) as session:
            row = session.get(PointsLedgerEntry, correction)
            assert (row.point_type, row.points, row.source_id) == ("CORRECTION", -10, str(original))
            # the original is still there
            assert session.get(PointsLedgerEntry, original).points == 10

    def test_cannot_correct_twice(self, db_engine):
        original = ledger_service.append(db_engine, "trainer-1", PointType.MANUAL_ADJUSTMENT, 5, "x")
        admin_service.correct_entry(db_engine, actor_id="admin-1", entry_id=original, reason="oops")
        with pytest.raises(InvalidState):
            admin_service.correct_entry(db_engine, actor_id="admin-1", entry_id=original, reason="again")

    def test_cannot_correct_a_correction(self, db_engine):
        original = ledger_service.append(db_engine, "trainer-1", PointType.MANUAL_ADJUSTMENT, 5, "x")
        correction = admin_service.correct_entry(
            db_engine, actor_id="admin-1", entry_id=original, reason="oops",
        )
        with pytest.raises(InvalidState):
            admin_service.correct_entry(db_engine, actor_id="admin-1", entry_id=correction, reason="undo")

    def test_unknown_entry(self, db_engine):
        with pytest.raises(NotFound):
            admin_service.correct_entry(db_engine, actor_id="admin-1", entry_id=999, reason="x")


class TestDeleteInvitation:
    def test_delete_pending_and_its_seats(self, db_engine, accounts, collab, cfg):
        team = team_service.create_team(db_engine, owner_id="trainer-1", name="Crew", max_members=4)
        inv = invitation_service.create_invitation(
            db_engine, collab, cfg, sender_id="trainer-1",
            email="new@example.com", role="CLIENT", now=NOW,
        ).invitation
        team_service.add_pending_member(db_engine, team.id, inv.id, "trainer-1")

        admin_service.delete_invitation(
            db_engine, actor_id="admin-1", invitation_id=inv.id, reason="typo",
        )

        with Session(db_engine) as session:
            assert session.get(Invitation, inv.id) is None
            seats = session.scalar(
                select(func.count()).select_from(TeamMembership)
                .where(TeamMembership.invitation_id == inv.id)
            )
        assert seats == 0
        _, rows = admin_service.list_audit_log(db_engine)
        assert rows[0]["action_type"] == "DELETE"
        assert rows[0]["before_snapshot"]["email"] == "new@example.com"

    def test_accepted_invitation_is_kept(self, db_engine, accounts, collab, cfg):
        inv = invitation_service.create_invitation(
            db_engine, collab, cfg, sender_id="trainer-1",
            email="new@example.com", role="CLIENT", now=NOW,
        ).invitation
        invitation_service.accept_invitation(
            db_engine, collab, cfg, invitation_id=inv.id, account_id="newbie", now=NOW,
        )
        with pytest.raises(InvalidState):
            admin_service.delete_invitation(db_engine, actor_id="admin-1", invitation_id=inv.id)

    def test_unknown_invitation(self, db_engine):
        with pytest.raises(NotFound):
            admin_service.delete_invitation(db_engine, actor_id="admin-1", invitation_id="nope")


class TestAuditLog:
    def test_sweeps_are_logged_and_paged(self, db_engine):
        for i in range(3):
            admin_service.log_sweep(
                db_engine, actor_id="admin-1", sweep="expiry", summary={"expired": i},
            )
        admin_service.log_sweep(
            db_engine, actor_id="admin-2", sweep="retention", summary={"awarded": 0},
        )

        total, rows = admin_service.list_audit_log(db_engine, page=1, page_size=2)
        assert total == 4
        assert len(rows) == 2
        assert rows[0]["actor_id"] == "admin-2"

        total, rows = admin_service.list_audit_log(db_engine, actor_id="admin-1")
        assert total == 3
        assert [r["after_snapshot"]["expired"] for r in rows] == [2, 1, 0]
        assert all(r["target_table"] == "expiry" for r in rows)

"""
tests/test_achievements.py — Achievement Table & Unlocking Tests
=================================================================
Pure threshold checks against InviteStats, then the persisting service:
every achievement unlocks at most once per account and pays exactly one
ACHIEVEMENT_UNLOCK entry, no matter how often evaluation runs.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime, timedelta

from sqlalchemy import select
from sqlalchemy.orm import Session

from tally.database.models import (
    Achievement,
    AchievementType,
    Invitation,
    InvitationStatus,
    PointsLedgerEntry,
    PointType,
)
from tally.engine.achievements import (
    ACHIEVEMENT_TABLE,
    InviteStats,
    Metric,
    check_thresholds,
    metric_value,
    progress,
)
from tally.services import achievement_service, ledger_service

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


def _seed_accepted(engine, sender_id: str, count: int, role: str = "CLIENT",
                   status: str = InvitationStatus.ACCEPTED) -> None:
    """Insert *count* invitations from *sender_id* directly."""
    with Session(engine) as session:
        for _ in range(count):
            inv_id = str(uuid.uuid4())
            session.add(Invitation(
                id=inv_id,
                code=uuid.uuid4().hex,
                email=f"{inv_id}@example.com",
                role=role,
                scope="platform",
                sender_id=sender_id,
                receiver_id=f"acct-{inv_id[:8]}" if status == InvitationStatus.ACCEPTED else None,
                status=str(status),
                created_at=NOW,
                updated_at=NOW,
                expires_at=NOW + timedelta(days=7),
                accepted_at=NOW if status == InvitationStatus.ACCEPTED else None,
            ))
        session.commit()


def _unlock_entries(engine, account_id: str) -> list[PointsLedgerEntry]:
    with Session(engine) as session:
        return list(session.scalars(
            select(PointsLedgerEntry).where(
                PointsLedgerEntry.account_id == account_id,
                PointsLedgerEntry.point_type == PointType.ACHIEVEMENT_UNLOCK.value,
            )
        ).all())


# ---------------------------------------------------------------------------
# Pure table
# ---------------------------------------------------------------------------
class TestThresholds:
    def test_nothing_due_below_first_threshold(self):
        assert check_thresholds(InviteStats(client_accepted=4), []) == []

    def test_exact_threshold_unlocks(self):
        due = check_thresholds(InviteStats(client_accepted=5), [])
        assert [r.achievement_type for r in due] == [AchievementType.ROOKIE_RECRUITER]

    def test_total_counts_both_roles(self):
        stats = InviteStats(trainer_accepted=10, client_accepted=5)
        due = {r.achievement_type for r in check_thresholds(stats, [])}
        assert due == {
            AchievementType.ROOKIE_RECRUITER,
            AchievementType.TALENT_SCOUT,
            AchievementType.TRAINER_MAGNET,
        }

    def test_already_unlocked_rows_are_skipped(self):
        stats = InviteStats(client_accepted=25)
        due = check_thresholds(stats, [AchievementType.ROOKIE_RECRUITER, "TALENT_SCOUT"])
        assert [r.achievement_type for r in due] == [AchievementType.CLIENT_CONNECTOR]

    def test_many_rows_can_unlock_at_once(self):
        stats = InviteStats(trainer_accepted=50, client_accepted=50)
        due = {r.achievement_type for r in check_thresholds(stats, [])}
        assert due == set(AchievementType)

    def test_metric_handlers(self):
        stats = InviteStats(trainer_accepted=2, client_accepted=3)
        assert metric_value(Metric.TOTAL_ACCEPTED, stats) == 5
        assert metric_value(Metric.TRAINER_ACCEPTED, stats) == 2
        assert metric_value(Metric.CLIENT_ACCEPTED, stats) == 3

    def test_table_amounts(self):
        amounts = {r.achievement_type: (r.threshold, r.points) for r in ACHIEVEMENT_TABLE}
        assert amounts[AchievementType.ROOKIE_RECRUITER] == (5, 50)
        assert amounts[AchievementType.GROWTH_CHAMPION] == (100, 1000)
        assert amounts[AchievementType.CLIENT_CONNECTOR] == (25, 300)

    def test_progress_snapshot(self):
        rows = progress(InviteStats(trainer_accepted=3), [AchievementType.TRAINER_MAGNET])
        by_type = {p.achievement_type: p for p in rows}
        assert len(rows) == len(ACHIEVEMENT_TABLE)
        assert by_type[AchievementType.TRAINER_MAGNET].unlocked
        assert by_type[AchievementType.TRAINER_MAGNET].current == 3
        assert not by_type[AchievementType.ROOKIE_RECRUITER].unlocked


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------
class TestEvaluate:
    def test_unlock_writes_row_and_ledger_entry(self, db_engine):
        _seed_accepted(db_engine, "trainer-1", 5)

        unlocked = achievement_service.evaluate(db_engine, "trainer-1")

        assert unlocked == [AchievementType.ROOKIE_RECRUITER]
        entries = _unlock_entries(db_engine, "trainer-1")
        assert [(e.points, e.source_id) for e in entries] == [(50, "ROOKIE_RECRUITER")]
        assert ledger_service.balance_of(db_engine, "trainer-1") == 50

    def test_repeated_evaluation_is_idempotent(self, db_engine):
        _seed_accepted(db_engine, "trainer-1", 15)

        first = achievement_service.evaluate(db_engine, "trainer-1")
        second = achievement_service.evaluate(db_engine, "trainer-1")
        third = achievement_service.evaluate(db_engine, "trainer-1")

        assert set(first) == {AchievementType.ROOKIE_RECRUITER, AchievementType.TALENT_SCOUT}
        assert second == third == []
        assert len(_unlock_entries(db_engine, "trainer-1")) == 2
        assert ledger_service.balance_of(db_engine, "trainer-1") == 200

    def test_only_accepted_invitations_count(self, db_engine):
        _seed_accepted(db_engine, "trainer-1", 4)
        _seed_accepted(db_engine, "trainer-1", 3, status=InvitationStatus.PENDING)
        _seed_accepted(db_engine, "trainer-1", 3, status=InvitationStatus.REVOKED)

        assert achievement_service.evaluate(db_engine, "trainer-1") == []

    def test_role_specific_rows(self, db_engine):
        _seed_accepted(db_engine, "trainer-1", 10, role="TRAINER")

        unlocked = set(achievement_service.evaluate(db_engine, "trainer-1"))

        assert unlocked == {AchievementType.ROOKIE_RECRUITER, AchievementType.TRAINER_MAGNET}

    def test_pre_existing_row_is_not_paid_again(self, db_engine):
        """A row unlocked by a concurrent evaluation wins; no second entry."""
        _seed_accepted(db_engine, "trainer-1", 5)
        with Session(db_engine) as session:
            session.add(Achievement(
                account_id="trainer-1",
                achievement_type=AchievementType.ROOKIE_RECRUITER.value,
                points_awarded=50,
                unlocked_at=NOW,
            ))
            session.commit()

        assert achievement_service.evaluate(db_engine, "trainer-1") == []
        assert _unlock_entries(db_engine, "trainer-1") == []

    def test_accounts_are_independent(self, db_engine):
        _seed_accepted(db_engine, "trainer-1", 5)
        _seed_accepted(db_engine, "trainer-2", 5)

        assert achievement_service.evaluate(db_engine, "trainer-1") == [AchievementType.ROOKIE_RECRUITER]
        assert achievement_service.evaluate(db_engine, "trainer-2") == [AchievementType.ROOKIE_RECRUITER]

    def test_list_and_progress(self, db_engine):
        _seed_accepted(db_engine, "trainer-1", 6)
        achievement_service.evaluate(db_engine, "trainer-1")

        held = achievement_service.list_achievements(db_engine, "trainer-1")
        assert [a.achievement_type for a in held] == ["ROOKIE_RECRUITER"]

        snapshot = {p.achievement_type: p for p in achievement_service.get_progress(db_engine, "trainer-1")}
        assert snapshot[AchievementType.ROOKIE_RECRUITER].unlocked
        assert snapshot[AchievementType.TALENT_SCOUT].current == 6
        assert not snapshot[AchievementType.TALENT_SCOUT].unlocked

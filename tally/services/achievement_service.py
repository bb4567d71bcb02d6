"""
tally.services.achievement_service — Achievement Unlocking
===========================================================

Persisting half of the achievement engine:

    1. Aggregate the account's ACCEPTED invitations by invited role.
    2. Ask :func:`tally.engine.achievements.check_thresholds` which rows are due.
    3. For each due row, insert the ``achievements`` row under a SAVEPOINT.
       The primary key ``(account_id, achievement_type)`` makes a concurrent
       evaluation lose with ``IntegrityError``, which is ignored.
    4. Only when the insert succeeded, append the ACHIEVEMENT_UNLOCK ledger
       entry keyed by the achievement type, in the same transaction.

Safe to run redundantly (after every acceptance, from reconciliation, by
hand): every unlock is guarded twice, by the achievements PK and by the
ledger's idempotency index.
"""

from __future__ import annotations

import logging

from sqlalchemy import Engine, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from tally.constants import utcnow
from tally.database.engine import get_session
from tally.database.models import (
    Achievement,
    AchievementType,
    Invitation,
    InvitationRole,
    InvitationStatus,
    PointType,
)
from tally.engine.achievements import (
    AchievementProgress,
    InviteStats,
    check_thresholds,
    progress,
)
from tally.services.ledger_service import append_entry

logger = logging.getLogger(__name__)


def invite_stats(session: Session, account_id: str) -> InviteStats:
    """Count ACCEPTED invitations sent by *account_id*, grouped by role."""
    rows = session.execute(
        select(Invitation.role, func.count().label("cnt"))
        .where(
            Invitation.sender_id == account_id,
            Invitation.status == InvitationStatus.ACCEPTED.value,
        )
        .group_by(Invitation.role)
    ).all()
    counts = {row.role: row.cnt for row in rows}
    return InviteStats(
        trainer_accepted=counts.get(InvitationRole.TRAINER.value, 0),
        client_accepted=counts.get(InvitationRole.CLIENT.value, 0),
    )


def unlocked_types(session: Session, account_id: str) -> set[str]:
    rows = session.scalars(
        select(Achievement.achievement_type).where(Achievement.account_id == account_id)
    ).all()
    return set(rows)


def evaluate_in_session(session: Session, account_id: str) -> list[AchievementType]:
    """Unlock every due achievement inside the caller's transaction."""
    stats = invite_stats(session, account_id)
    due = check_thresholds(stats, unlocked_types(session, account_id))
    newly_unlocked: list[AchievementType] = []

    for rule in due:
        try:
            with session.begin_nested():   # SAVEPOINT
                session.add(Achievement(
                    account_id=account_id,
                    achievement_type=rule.achievement_type.value,
                    points_awarded=rule.points,
                    unlocked_at=utcnow(),
                ))
                session.flush()
        except IntegrityError:
            # A concurrent evaluation unlocked it first.
            logger.info(
                "Achievement %s for %s already unlocked concurrently",
                rule.achievement_type, account_id,
            )
            continue

        append_entry(
            session,
            account_id=account_id,
            point_type=PointType.ACHIEVEMENT_UNLOCK,
            points=rule.points,
            description=f"Achievement unlocked: {rule.title}",
            source_id=rule.achievement_type.value,
        )
        newly_unlocked.append(rule.achievement_type)
        logger.info(
            "Achievement unlocked: %s for %s (+%d)",
            rule.achievement_type, account_id, rule.points,
        )

    return newly_unlocked


def evaluate(engine: Engine, account_id: str) -> list[AchievementType]:
    """Re-evaluate *account_id* against the threshold table.

    Returns the achievement types unlocked by this call (possibly empty).
    """
    with get_session(engine) as session:
        return evaluate_in_session(session, account_id)


def list_achievements(engine: Engine, account_id: str) -> list[Achievement]:
    with get_session(engine) as session:
        rows = list(session.scalars(
            select(Achievement)
            .where(Achievement.account_id == account_id)
            .order_by(Achievement.unlocked_at)
        ).all())
        for row in rows:
            session.expunge(row)
        return rows


def get_progress(engine: Engine, account_id: str) -> list[AchievementProgress]:
    """Current value vs. threshold for every row of the table."""
    with get_session(engine) as session:
        stats = invite_stats(session, account_id)
        return progress(stats, unlocked_types(session, account_id))

"""
tally.services.reconciliation_service — Side-Effect Reconciliation
===================================================================

Weekly job that repairs what the best-effort boundary may have dropped.
Acceptance commits first and pays afterwards, so a crash or store blip in
between leaves an ACCEPTED invitation without its reward.  Every repair
here goes through the same idempotent writers as the live path, so running
it any number of times is safe.

How it works:
    1. Acceptance rewards — every ACCEPTED invitation sent by a trainer
       without its CLIENT_ACCEPTED / TRAINER_ACCEPTED entry is paid.
    2. Pending team seats — PENDING membership rows whose platform
       invitation was accepted are activated for the new account.
    3. Achievements — every sender with accepted invitations is
       re-evaluated against the threshold table.
    4. Team counters — ``member_count`` is compared against the number of
       ACTIVE membership rows; drift is corrected and logged.
"""

from __future__ import annotations

import logging

from sqlalchemy import Engine, func, select, update

from tally.config import TallyConfig
from tally.constants import utcnow
from tally.database.engine import get_session
from tally.database.models import (
    PLATFORM_SCOPE,
    Invitation,
    InvitationStatus,
    MembershipStatus,
    PointType,
    Team,
    TeamMembership,
)
from tally.engine.invitations import acceptance_point_type
from tally.services import achievement_service, invitation_service, team_service
from tally.services.collaborators import Collaborators
from tally.services.ledger_service import keyed_sources

logger = logging.getLogger(__name__)


def reissue_acceptance_rewards(engine: Engine, collab: Collaborators, cfg: TallyConfig) -> dict:
    """Pay every accepted invitation whose reward is missing."""
    with get_session(engine) as session:
        paid = (
            keyed_sources(session, PointType.CLIENT_ACCEPTED)
            | keyed_sources(session, PointType.TRAINER_ACCEPTED)
        )
        accepted = list(session.scalars(
            select(Invitation).where(Invitation.status == InvitationStatus.ACCEPTED.value)
        ).all())
        for invitation in accepted:
            session.expunge(invitation)

    trainer_cache: dict[str, bool] = {}
    reissued = failed = 0
    for invitation in accepted:
        if (invitation.sender_id, invitation.id) in paid:
            continue
        is_trainer = trainer_cache.get(invitation.sender_id)
        if is_trainer is None:
            sender = collab.accounts.get(invitation.sender_id)
            is_trainer = trainer_cache[invitation.sender_id] = bool(sender and sender.is_trainer)
        if not is_trainer:
            continue
        try:
            entry_id = invitation_service.award_acceptance_reward(engine, collab, cfg, invitation)
        except Exception:
            failed += 1
            logger.exception("Reconciliation: reward for invitation %s failed", invitation.id)
            continue
        if entry_id is not None:
            reissued += 1
            logger.warning(
                "Reconciliation: re-issued missing %s for invitation %s (sender %s)",
                acceptance_point_type(invitation.role), invitation.id, invitation.sender_id,
            )

    return {"reissued": reissued, "failed": failed}


def transfer_pending_memberships(engine: Engine) -> dict:
    """Activate PENDING seats left behind by accepted platform invitations."""
    with get_session(engine) as session:
        rows = session.execute(
            select(Invitation.id, Invitation.receiver_id)
            .join(TeamMembership, TeamMembership.invitation_id == Invitation.id)
            .where(
                Invitation.status == InvitationStatus.ACCEPTED.value,
                Invitation.scope == PLATFORM_SCOPE,
                Invitation.receiver_id.isnot(None),
                TeamMembership.status == MembershipStatus.PENDING.value,
            )
            .distinct()
        ).all()

    activated = failed = 0
    for row in rows:
        try:
            with get_session(engine) as session:
                moved = team_service.activate_pending_memberships(session, row.id, row.receiver_id)
        except Exception:
            failed += 1
            logger.exception("Reconciliation: pending seats for invitation %s failed", row.id)
            continue
        if moved["activated"]:
            activated += moved["activated"]
            logger.warning(
                "Reconciliation: activated %d pending seat(s) for invitation %s",
                moved["activated"], row.id,
            )

    return {"activated": activated, "failed": failed}


def reevaluate_achievements(engine: Engine) -> dict:
    with get_session(engine) as session:
        senders = session.scalars(
            select(Invitation.sender_id)
            .where(Invitation.status == InvitationStatus.ACCEPTED.value)
            .distinct()
        ).all()

    unlocked = failed = 0
    for sender_id in senders:
        try:
            newly = achievement_service.evaluate(engine, sender_id)
        except Exception:
            failed += 1
            logger.exception("Reconciliation: achievement evaluation for %s failed", sender_id)
            continue
        if newly:
            unlocked += len(newly)
            logger.warning(
                "Reconciliation: unlocked missing achievements for %s: %s",
                sender_id, [str(t) for t in newly],
            )

    return {"senders": len(senders), "unlocked": unlocked, "failed": failed}


def reconcile_team_counts(engine: Engine) -> dict:
    """Compare ``member_count`` with ACTIVE membership rows and fix drift."""
    corrections: list[dict] = []

    with get_session(engine) as session:
        actual_by_team = dict(session.execute(
            select(TeamMembership.team_id, func.count().label("actual"))
            .where(TeamMembership.status == MembershipStatus.ACTIVE.value)
            .group_by(TeamMembership.team_id)
        ).all())
        teams = session.execute(select(Team.id, Team.member_count)).all()

        for team in teams:
            actual = int(actual_by_team.get(team.id, 0))
            if team.member_count == actual:
                continue
            corrections.append({
                "team_id": team.id,
                "stored": team.member_count,
                "actual": actual,
                "diff": actual - team.member_count,
            })
            session.execute(
                update(Team)
                .where(Team.id == team.id)
                .values(member_count=actual)
                .execution_options(synchronize_session=False)
            )

    if corrections:
        logger.warning(
            "Team count reconciliation: corrected %d/%d teams: %s",
            len(corrections), len(teams), corrections,
        )
    else:
        logger.info("Team count reconciliation: all %d teams match", len(teams))

    return {"checked": len(teams), "corrected": len(corrections), "corrections": corrections}


def reconcile(engine: Engine, collab: Collaborators, cfg: TallyConfig) -> dict:
    """Run every repair step and return one combined summary."""
    rewards = reissue_acceptance_rewards(engine, collab, cfg)
    seats = transfer_pending_memberships(engine)
    achievements = reevaluate_achievements(engine)
    teams = reconcile_team_counts(engine)

    summary = {
        "rewards_reissued": rewards["reissued"],
        "memberships_activated": seats["activated"],
        "achievements_unlocked": achievements["unlocked"],
        "teams_checked": teams["checked"],
        "teams_corrected": teams["corrected"],
        "failed": rewards["failed"] + seats["failed"] + achievements["failed"],
        "timestamp": utcnow().isoformat(),
    }
    logger.info("Reconciliation complete: %s", summary)
    return summary

"""
tally.services.bonus_service — Retention & Verification Bonuses
================================================================

Delayed rewards for referring trainers.

**Retention bonus** — run periodically by the worker.  Candidates are
ACCEPTED invitations whose ``accepted_at`` falls in a rolling window ending
``retention_delay_days`` ago and ``retention_window_hours`` wide (defaults:
``[now-30d-24h, now-30d]``).  The window only bounds the query; a candidate
seen by two overlapping runs is paid once because the bonus is keyed by the
invitation id.

Per candidate, in this order:
    1. skip if BONUS_RETENTION already exists for the invitation
    2. skip if the sender is not a TRAINER
    3. skip if the recipient's account is not ACTIVE
    4. skip if the recipient logged nothing since ``now - activity_lookback_days``
    5. otherwise append BONUS_RETENTION for the sender

Each candidate runs in its own transaction.  One failing candidate is
logged and counted; the sweep moves on.

**Trainer verification bonus** — triggered when a trainer is verified.
Pays the trainer who invited them, once per invitation.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from sqlalchemy import Engine, select

from tally.config import TallyConfig
from tally.constants import utcnow
from tally.database.engine import get_session
from tally.database.models import Invitation, InvitationRole, InvitationStatus, PointType
from tally.services.collaborators import Collaborators
from tally.services.ledger_service import append_entry, has_entry

logger = logging.getLogger(__name__)

AWARDED = "awarded"
SKIPPED = "skipped"


def retention_window(cfg: TallyConfig, now: datetime) -> tuple[datetime, datetime]:
    """``(lower, upper)`` bounds on ``accepted_at`` for a sweep at *now*."""
    upper = now - timedelta(days=cfg.retention_delay_days)
    lower = upper - timedelta(hours=cfg.retention_window_hours)
    return lower, upper


def _award_retention(
    engine: Engine,
    collab: Collaborators,
    cfg: TallyConfig,
    invitation_id: str,
    sender_id: str,
    receiver_id: str | None,
    now: datetime,
) -> str:
    with get_session(engine) as session:
        if has_entry(session, sender_id, PointType.BONUS_RETENTION, invitation_id):
            return SKIPPED

    sender = collab.accounts.get(sender_id)
    if sender is None or not sender.is_trainer:
        logger.debug("Retention: %s skipped — sender is not a trainer", invitation_id)
        return SKIPPED

    recipient = collab.accounts.get(receiver_id) if receiver_id else None
    if recipient is None or not recipient.is_active:
        logger.debug("Retention: %s skipped — recipient not active", invitation_id)
        return SKIPPED

    since = now - timedelta(days=cfg.activity_lookback_days)
    if not collab.activity.has_recent_activity(recipient.id, since):
        logger.debug("Retention: %s skipped — no activity since %s", invitation_id, since)
        return SKIPPED

    with get_session(engine) as session:
        entry_id = append_entry(
            session,
            account_id=sender_id,
            point_type=PointType.BONUS_RETENTION,
            points=cfg.points_for(PointType.BONUS_RETENTION),
            description=(
                f"Retention bonus: referred member active after "
                f"{cfg.retention_delay_days} days"
            ),
            source_id=invitation_id,
        )
    return AWARDED if entry_id is not None else SKIPPED


def run_retention_sweep(
    engine: Engine,
    collab: Collaborators,
    cfg: TallyConfig,
    now: datetime | None = None,
) -> dict:
    """Scan the retention window and pay every eligible sender once.

    Returns ``{"candidates", "awarded", "skipped", "failed", "ran_at"}``.
    """
    now = now or utcnow()
    lower, upper = retention_window(cfg, now)

    with get_session(engine) as session:
        candidates = session.execute(
            select(Invitation.id, Invitation.sender_id, Invitation.receiver_id)
            .where(
                Invitation.status == InvitationStatus.ACCEPTED.value,
                Invitation.accepted_at >= lower,
                Invitation.accepted_at <= upper,
            )
            .order_by(Invitation.accepted_at)
        ).all()

    awarded = skipped = failed = 0
    for row in candidates:
        try:
            outcome = _award_retention(
                engine, collab, cfg, row.id, row.sender_id, row.receiver_id, now,
            )
        except Exception:
            failed += 1
            logger.exception("Retention bonus failed for invitation %s", row.id)
            continue
        if outcome == AWARDED:
            awarded += 1
        else:
            skipped += 1

    summary = {
        "candidates": len(candidates),
        "awarded": awarded,
        "skipped": skipped,
        "failed": failed,
        "ran_at": now.isoformat(),
    }
    logger.info(
        "Retention sweep complete — %d candidates, %d awarded, %d skipped, %d failed "
        "(window %s → %s)",
        len(candidates), awarded, skipped, failed, lower.isoformat(), upper.isoformat(),
    )
    return summary


def award_trainer_verification_bonus(
    engine: Engine,
    collab: Collaborators,
    cfg: TallyConfig,
    trainer_id: str,
) -> int | None:
    """Pay the inviter of a newly verified trainer.

    Returns the ledger entry id, or ``None`` when *trainer_id* is not a
    verified trainer, there is no qualifying invitation, the inviter is not a
    trainer, or the bonus was already paid.
    """
    trainer = collab.accounts.get(trainer_id)
    if trainer is None or not trainer.is_trainer or not trainer.trainer_verified:
        logger.info("Verification bonus: %s is not a verified trainer", trainer_id)
        return None

    with get_session(engine) as session:
        row = session.execute(
            select(Invitation.id, Invitation.sender_id)
            .where(
                Invitation.receiver_id == trainer_id,
                Invitation.status == InvitationStatus.ACCEPTED.value,
                Invitation.role == InvitationRole.TRAINER.value,
            )
            .order_by(Invitation.accepted_at)
            .limit(1)
        ).first()

    if row is None:
        logger.info("Verification bonus: no accepted trainer invitation for %s", trainer_id)
        return None

    sender = collab.accounts.get(row.sender_id)
    if sender is None or not sender.is_trainer:
        logger.info("Verification bonus: inviter %s of %s is not a trainer", row.sender_id, trainer_id)
        return None

    with get_session(engine) as session:
        return append_entry(
            session,
            account_id=row.sender_id,
            point_type=PointType.BONUS_TRAINER_VERIFICATION,
            points=cfg.points_for(PointType.BONUS_TRAINER_VERIFICATION),
            description=f"Referred trainer {trainer_id} was verified",
            source_id=row.id,
        )

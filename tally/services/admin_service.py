"""
tally.services.admin_service — Audit-Logged Admin Mutations
============================================================

Every admin write follows the same pattern:
  1. Begin transaction
  2. Read "before" snapshot
  3. Apply change
  4. Write admin_log with before/after snapshots
  5. Commit

The points ledger stays append-only even for admins: a wrong entry is never
edited or deleted, it is offset by a CORRECTION entry pointing at it.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from sqlalchemy import Engine, delete, func, select
from sqlalchemy.orm import Session

from tally.database.engine import get_session
from tally.database.models import (
    AdminActionType,
    AdminLog,
    Invitation,
    InvitationStatus,
    MembershipStatus,
    PointsLedgerEntry,
    PointType,
    TeamMembership,
)
from tally.errors import InvalidState, NotFound, ValidationError
from tally.services.ledger_service import append_entry

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Generic audit helpers
# ---------------------------------------------------------------------------
def _row_to_dict(obj: Any) -> dict | None:
    """Convert a SQLAlchemy model instance to a JSON-serializable dict."""
    if obj is None:
        return None
    result = {}
    for col in obj.__table__.columns:
        val = getattr(obj, col.key, None)
        if isinstance(val, datetime):
            val = val.isoformat()
        result[col.name] = val
    return result


def _log_admin_action(
    session: Session,
    *,
    actor_id: str,
    action_type: str,
    target_table: str,
    target_id: str | None,
    before: dict | None,
    after: dict | None,
    reason: str | None = None,
) -> None:
    """Insert a row into admin_log within the current transaction."""
    session.add(AdminLog(
        actor_id=actor_id,
        action_type=action_type,
        target_table=target_table,
        target_id=target_id,
        before_snapshot=before,
        after_snapshot=after,
        reason=reason,
    ))


def _require_reason(reason: str) -> str:
    reason = (reason or "").strip()
    if not reason:
        raise ValidationError("A reason is required for admin changes")
    return reason


# ---------------------------------------------------------------------------
# Points
# ---------------------------------------------------------------------------
def adjust_points(
    engine: Engine,
    *,
    actor_id: str,
    account_id: str,
    points: int,
    reason: str,
    penalty: bool = False,
) -> int:
    """Append a MANUAL_ADJUSTMENT (any sign) or a PENALTY (negative only)."""
    reason = _require_reason(reason)
    point_type = PointType.PENALTY if penalty else PointType.MANUAL_ADJUSTMENT
    if penalty and points >= 0:
        raise ValidationError("A penalty must be a negative amount")

    with get_session(engine) as session:
        entry_id = append_entry(
            session,
            account_id=account_id,
            point_type=point_type,
            points=points,
            description=reason,
        )
        entry = session.get(PointsLedgerEntry, entry_id)
        _log_admin_action(
            session,
            actor_id=actor_id,
            action_type=AdminActionType.PENALTY if penalty else AdminActionType.MANUAL_ADJUSTMENT,
            target_table="points_ledger",
            target_id=str(entry_id),
            before=None,
            after=_row_to_dict(entry),
            reason=reason,
        )

    logger.info("Admin %s: %s %+d for %s (%s)", actor_id, point_type, points, account_id, reason)
    return entry_id


def correct_entry(
    engine: Engine,
    *,
    actor_id: str,
    entry_id: int,
    reason: str,
) -> int:
    """Offset ledger entry *entry_id* with an equal and opposite CORRECTION."""
    reason = _require_reason(reason)

    with get_session(engine) as session:
        original = session.get(PointsLedgerEntry, entry_id)
        if original is None:
            raise NotFound(f"Ledger entry {entry_id} not found")
        if original.point_type == PointType.CORRECTION:
            raise InvalidState("Corrections cannot themselves be corrected")
        already = session.scalar(
            select(PointsLedgerEntry.id).where(
                PointsLedgerEntry.point_type == PointType.CORRECTION.value,
                PointsLedgerEntry.source_id == str(entry_id),
            )
        )
        if already is not None:
            raise InvalidState(f"Ledger entry {entry_id} was already corrected")

        correction_id = append_entry(
            session,
            account_id=original.account_id,
            point_type=PointType.CORRECTION,
            points=-original.points,
            description=f"Correction of entry {entry_id}: {reason}",
            source_id=str(entry_id),
        )
        if correction_id is None:
            # A concurrent correction won the keyed insert.
            raise InvalidState(f"Ledger entry {entry_id} was already corrected")
        _log_admin_action(
            session,
            actor_id=actor_id,
            action_type=AdminActionType.CORRECTION,
            target_table="points_ledger",
            target_id=str(entry_id),
            before=_row_to_dict(original),
            after=_row_to_dict(session.get(PointsLedgerEntry, correction_id)),
            reason=reason,
        )
        account_id, offset = original.account_id, -original.points

    logger.warning(
        "Admin %s corrected ledger entry %d for %s (%+d): %s",
        actor_id, entry_id, account_id, offset, reason,
    )
    return correction_id


# ---------------------------------------------------------------------------
# Invitations
# ---------------------------------------------------------------------------
def delete_invitation(
    engine: Engine,
    *,
    actor_id: str,
    invitation_id: str,
    reason: str | None = None,
) -> None:
    """Hard-delete a non-ACCEPTED invitation and its pending team seats.

    ACCEPTED invitations are the source of paid rewards and are kept.
    """
    with get_session(engine) as session:
        invitation = session.get(Invitation, invitation_id)
        if invitation is None:
            raise NotFound(f"Invitation {invitation_id} not found")
        if invitation.status == InvitationStatus.ACCEPTED:
            raise InvalidState("Accepted invitations cannot be deleted")

        _log_admin_action(
            session,
            actor_id=actor_id,
            action_type=AdminActionType.DELETE,
            target_table="invitations",
            target_id=invitation_id,
            before=_row_to_dict(invitation),
            after=None,
            reason=reason,
        )
        session.execute(
            delete(TeamMembership).where(
                TeamMembership.invitation_id == invitation_id,
                TeamMembership.status == MembershipStatus.PENDING.value,
            )
        )
        session.delete(invitation)

    logger.info("Admin %s deleted invitation %s", actor_id, invitation_id)


# ---------------------------------------------------------------------------
# Sweeps & audit trail
# ---------------------------------------------------------------------------
def log_sweep(engine: Engine, *, actor_id: str, sweep: str, summary: dict) -> None:
    """Record an admin-triggered sweep and its summary."""
    with get_session(engine) as session:
        _log_admin_action(
            session,
            actor_id=actor_id,
            action_type=AdminActionType.SWEEP,
            target_table=sweep,
            target_id=None,
            before=None,
            after=summary,
        )


def list_audit_log(
    engine: Engine,
    *,
    page: int = 1,
    page_size: int = 50,
    actor_id: str | None = None,
) -> tuple[int, list[dict]]:
    """Newest-first page of admin_log rows as dicts."""
    with get_session(engine) as session:
        count_q = select(func.count()).select_from(AdminLog)
        q = select(AdminLog)
        if actor_id is not None:
            count_q = count_q.where(AdminLog.actor_id == actor_id)
            q = q.where(AdminLog.actor_id == actor_id)
        total = session.scalar(count_q) or 0
        rows = session.scalars(
            q.order_by(AdminLog.timestamp.desc(), AdminLog.id.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        ).all()
        return total, [_row_to_dict(row) for row in rows]

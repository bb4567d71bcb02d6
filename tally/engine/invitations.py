"""
tally.engine.invitations — Invitation State Machine (pure)
===========================================================

Transition table, email normalization and expiry checks for a single
invitation.  This module is pure calculation — no database I/O; the
persisting side lives in :mod:`tally.services.invitation_service`, which
turns every transition here into a conditional ``UPDATE ... WHERE status=``.

    PENDING ──accept──▶ ACCEPTED   (terminal)
       │ ──revoke──▶ REVOKED       (terminal)
       │ ──expire──▶ EXPIRED       (terminal, lazy or by sweep)
       └ ──extend──▶ PENDING       (new expires_at)

``resend`` is the one action that re-opens REVOKED/EXPIRED rows; it is
modelled as an action rather than a state edge because it always lands on
PENDING.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum

from tally.constants import EMAIL_REGEX, MAX_EMAIL_LENGTH, as_utc
from tally.database.models import (
    PLATFORM_SCOPE,
    InvitationRole,
    InvitationStatus,
    PointType,
)
from tally.errors import ValidationError


class InvitationAction(StrEnum):
    ACCEPT = "accept"
    REVOKE = "revoke"
    EXPIRE = "expire"
    EXTEND = "extend"
    RESEND = "resend"


# (current status, action) → resulting status
TRANSITIONS: dict[tuple[InvitationStatus, InvitationAction], InvitationStatus] = {
    (InvitationStatus.PENDING, InvitationAction.ACCEPT): InvitationStatus.ACCEPTED,
    (InvitationStatus.PENDING, InvitationAction.REVOKE): InvitationStatus.REVOKED,
    (InvitationStatus.PENDING, InvitationAction.EXPIRE): InvitationStatus.EXPIRED,
    (InvitationStatus.PENDING, InvitationAction.EXTEND): InvitationStatus.PENDING,
    (InvitationStatus.EXPIRED, InvitationAction.EXTEND): InvitationStatus.PENDING,
    (InvitationStatus.REVOKED, InvitationAction.EXTEND): InvitationStatus.PENDING,
    (InvitationStatus.PENDING, InvitationAction.RESEND): InvitationStatus.PENDING,
    (InvitationStatus.EXPIRED, InvitationAction.RESEND): InvitationStatus.PENDING,
    (InvitationStatus.REVOKED, InvitationAction.RESEND): InvitationStatus.PENDING,
}

# Reward issued to a TRAINER sender, keyed by the invitation's declared role
ACCEPTANCE_POINT_TYPE: dict[InvitationRole, PointType] = {
    InvitationRole.CLIENT: PointType.CLIENT_ACCEPTED,
    InvitationRole.TRAINER: PointType.TRAINER_ACCEPTED,
}


@dataclass(frozen=True, slots=True)
class Transition:
    """Outcome of :func:`next_status`."""

    allowed: bool
    target: InvitationStatus | None = None


def next_status(current: str, action: InvitationAction) -> Transition:
    """Look up the status *action* moves an invitation in *current* to."""
    target = TRANSITIONS.get((InvitationStatus(current), action))
    if target is None:
        return Transition(allowed=False)
    return Transition(allowed=True, target=target)


# ---------------------------------------------------------------------------
# Input normalization
# ---------------------------------------------------------------------------
def normalize_email(raw: str) -> str:
    """Trim and lowercase *raw*; raise ``ValidationError`` if malformed."""
    email = (raw or "").strip().lower()
    if not email or len(email) > MAX_EMAIL_LENGTH or not EMAIL_REGEX.match(email):
        raise ValidationError(f"Invalid email address: {raw!r}")
    return email


def parse_role(raw: str) -> InvitationRole:
    try:
        return InvitationRole(str(raw).strip().upper())
    except ValueError:
        raise ValidationError(f"Invalid invitation role: {raw!r}") from None


def parse_status(raw: str) -> InvitationStatus:
    try:
        return InvitationStatus(str(raw).strip().upper())
    except ValueError:
        raise ValidationError(f"Invalid invitation status: {raw!r}") from None


def validate_ttl(days: int) -> int:
    if not isinstance(days, int) or isinstance(days, bool) or days <= 0:
        raise ValidationError(f"Invitation TTL must be a positive number of days, got {days!r}")
    return days


def scope_for(team_id: str | None) -> str:
    """Uniqueness scope for an invitation: platform-wide or per team."""
    return PLATFORM_SCOPE if team_id is None else f"team:{team_id}"


# ---------------------------------------------------------------------------
# Expiry
# ---------------------------------------------------------------------------
def is_expired(expires_at: datetime, now: datetime) -> bool:
    """``now > expires_at`` — the instant of expiry itself is still valid."""
    return as_utc(now) > as_utc(expires_at)


def effective_status(status: str, expires_at: datetime, now: datetime) -> InvitationStatus:
    """Status as a reader should see it: stale PENDING rows read as EXPIRED."""
    current = InvitationStatus(status)
    if current == InvitationStatus.PENDING and is_expired(expires_at, now):
        return InvitationStatus.EXPIRED
    return current


def acceptance_point_type(role: str) -> PointType:
    return ACCEPTANCE_POINT_TYPE[InvitationRole(role)]

"""
tally.services.team_service — Team Membership & Capacity Guard
===============================================================

``teams.member_count`` is the number of ACTIVE membership rows and is only
ever moved by one atomic statement, issued in the same transaction as the
membership write it accounts for:

    UPDATE teams SET member_count = member_count + 1
     WHERE id = :id AND member_count < max_members

Zero affected rows means the team is full (or gone); the caller raises and
the whole transaction, membership write included, rolls back.  Two racing
joins for the last seat therefore produce exactly one winner, and the
counter can never exceed ``max_members``.

Membership rows move ACTIVE → LEFT (voluntary) or ACTIVE → KICKED (removed
by the owner or an admin).  A returning member reactivates their old row.
PENDING rows represent team invitations sent to people who have no account
yet; they carry ``invitation_id`` instead of ``user_id`` and do not count
toward ``member_count`` until activated.

The ``*_in_session`` helpers run inside the caller's transaction so an
invitation acceptance can commit the invitation and the membership
atomically.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime

from sqlalchemy import Engine, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from tally.constants import MAX_TEAM_SIZE, MIN_TEAM_SIZE, TEAM_NAME_REGEX, utcnow
from tally.database.engine import get_session
from tally.database.models import (
    PLATFORM_SCOPE,
    ApplicationStatus,
    Invitation,
    InvitationStatus,
    MembershipStatus,
    Team,
    TeamApplication,
    TeamMembership,
)
from tally.errors import (
    AlreadyMember,
    CapacityExceeded,
    InvalidState,
    NotAMember,
    NotFound,
    PermissionDenied,
    ValidationError,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------
def _validate_name(name: str) -> str:
    name = (name or "").strip()
    if not TEAM_NAME_REGEX.match(name):
        raise ValidationError(
            "Team name must be 3-50 characters of letters, digits, spaces, '-' or '_'"
        )
    return name


def _validate_max_members(max_members: int) -> int:
    if (
        not isinstance(max_members, int)
        or isinstance(max_members, bool)
        or not MIN_TEAM_SIZE <= max_members <= MAX_TEAM_SIZE
    ):
        raise ValidationError(
            f"max_members must be between {MIN_TEAM_SIZE} and {MAX_TEAM_SIZE}"
        )
    return max_members


def _require_team(session: Session, team_id: str) -> Team:
    team = session.get(Team, team_id)
    if team is None:
        raise NotFound(f"Team {team_id} not found")
    return team


def _require_manager(team: Team, actor_id: str, is_admin: bool) -> None:
    if not is_admin and team.owner_id != actor_id:
        raise PermissionDenied("Only the team owner can manage members")


# ---------------------------------------------------------------------------
# Counter movement — the only writers of member_count
# ---------------------------------------------------------------------------
def _reserve_seat(session: Session, team_id: str) -> None:
    """Atomically take one seat or raise ``CapacityExceeded``/``NotFound``."""
    result = session.execute(
        update(Team)
        .where(Team.id == team_id, Team.member_count < Team.max_members)
        .values(member_count=Team.member_count + 1)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        if session.scalar(select(Team.id).where(Team.id == team_id)) is None:
            raise NotFound(f"Team {team_id} not found")
        raise CapacityExceeded(f"Team {team_id} is full")


def _release_seat(session: Session, team_id: str) -> None:
    session.execute(
        update(Team)
        .where(Team.id == team_id, Team.member_count > 0)
        .values(member_count=Team.member_count - 1)
        .execution_options(synchronize_session=False)
    )


def _activate_row(
    session: Session,
    membership_id: int,
    user_id: str,
    now: datetime,
    invited_by: str | None = None,
) -> None:
    """Flip a non-ACTIVE row to ACTIVE; ``AlreadyMember`` if it already was."""
    values = {
        "status": MembershipStatus.ACTIVE.value,
        "user_id": user_id,
        "joined_at": now,
        "left_at": None,
    }
    if invited_by is not None:
        values["invited_by"] = invited_by
    result = session.execute(
        update(TeamMembership)
        .where(
            TeamMembership.id == membership_id,
            TeamMembership.status != MembershipStatus.ACTIVE.value,
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        raise AlreadyMember(f"{user_id} is already a member")


def _membership_for(session: Session, team_id: str, user_id: str) -> TeamMembership | None:
    return session.scalar(
        select(TeamMembership).where(
            TeamMembership.team_id == team_id,
            TeamMembership.user_id == user_id,
        )
    )


# ---------------------------------------------------------------------------
# Teams
# ---------------------------------------------------------------------------
def create_team(
    engine: Engine,
    *,
    owner_id: str,
    name: str,
    max_members: int,
) -> Team:
    """Create a team with its owner as the first ACTIVE member."""
    name = _validate_name(name)
    max_members = _validate_max_members(max_members)
    now = utcnow()

    with get_session(engine) as session:
        team = Team(
            id=str(uuid.uuid4()),
            name=name,
            owner_id=owner_id,
            max_members=max_members,
            member_count=1,
            created_at=now,
        )
        session.add(team)
        session.flush()
        session.add(TeamMembership(
            team_id=team.id,
            user_id=owner_id,
            status=MembershipStatus.ACTIVE.value,
            invited_by=None,
            joined_at=now,
        ))
        session.flush()
        session.expunge(team)

    logger.info("Team created: %s (%s) owner=%s max=%d", team.id, name, owner_id, max_members)
    return team


def get_team(engine: Engine, team_id: str) -> Team:
    with get_session(engine) as session:
        team = _require_team(session, team_id)
        session.expunge(team)
        return team


def list_members(
    engine: Engine,
    team_id: str,
    *,
    include_inactive: bool = False,
) -> list[TeamMembership]:
    """ACTIVE members (and PENDING invitee rows) of a team, oldest first."""
    with get_session(engine) as session:
        _require_team(session, team_id)
        q = select(TeamMembership).where(TeamMembership.team_id == team_id)
        if not include_inactive:
            q = q.where(TeamMembership.status.in_([
                MembershipStatus.ACTIVE.value, MembershipStatus.PENDING.value,
            ]))
        rows = list(session.scalars(q.order_by(TeamMembership.id)).all())
        for row in rows:
            session.expunge(row)
        return rows


def update_max_members(
    engine: Engine,
    team_id: str,
    actor_id: str,
    max_members: int,
    *,
    is_admin: bool = False,
) -> Team:
    """Change capacity; refused when it would drop below ``member_count``."""
    max_members = _validate_max_members(max_members)
    with get_session(engine) as session:
        team = _require_team(session, team_id)
        _require_manager(team, actor_id, is_admin)
        result = session.execute(
            update(Team)
            .where(Team.id == team_id, Team.member_count <= max_members)
            .values(max_members=max_members)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise InvalidState(
                f"max_members {max_members} is below the current member count"
            )
        session.refresh(team)
        session.expunge(team)
    logger.info("Team %s capacity set to %d by %s", team_id, max_members, actor_id)
    return team


# ---------------------------------------------------------------------------
# Joining
# ---------------------------------------------------------------------------
def add_member_in_session(
    session: Session,
    team_id: str,
    user_id: str,
    *,
    invited_by: str | None = None,
    now: datetime | None = None,
) -> None:
    """Add *user_id* as an ACTIVE member inside the caller's transaction."""
    now = now or utcnow()
    _require_team(session, team_id)
    existing = _membership_for(session, team_id, user_id)
    if existing is not None and existing.status == MembershipStatus.ACTIVE:
        raise AlreadyMember(f"{user_id} is already a member of team {team_id}")

    _reserve_seat(session, team_id)

    if existing is not None:
        _activate_row(session, existing.id, user_id, now, invited_by)
    else:
        try:
            with session.begin_nested():
                session.add(TeamMembership(
                    team_id=team_id,
                    user_id=user_id,
                    status=MembershipStatus.ACTIVE.value,
                    invited_by=invited_by,
                    joined_at=now,
                ))
                session.flush()
        except IntegrityError:
            # Concurrent first join for the same user won the unique index.
            raise AlreadyMember(f"{user_id} is already a member of team {team_id}") from None

    logger.info("Team %s: %s joined (invited_by=%s)", team_id, user_id, invited_by)


def add_member(
    engine: Engine,
    team_id: str,
    user_id: str,
    invited_by: str | None = None,
) -> TeamMembership:
    with get_session(engine) as session:
        add_member_in_session(session, team_id, user_id, invited_by=invited_by)
        membership = _membership_for(session, team_id, user_id)
        session.refresh(membership)
        session.expunge(membership)
        return membership


def add_pending_member(
    engine: Engine,
    team_id: str,
    invitation_id: str,
    actor_id: str,
    *,
    is_admin: bool = False,
) -> TeamMembership:
    """Reserve a PENDING row for someone invited to the platform.

    The row is tied to a PENDING platform invitation.  It does not count
    toward ``member_count``; the seat is taken when the invitee signs up and
    accepts (see :func:`activate_pending_memberships`).
    """
    with get_session(engine) as session:
        team = _require_team(session, team_id)
        _require_manager(team, actor_id, is_admin)
        invitation = session.get(Invitation, invitation_id)
        if invitation is None:
            raise NotFound(f"Invitation {invitation_id} not found")
        if (
            invitation.scope != PLATFORM_SCOPE
            or invitation.status != InvitationStatus.PENDING
        ):
            raise InvalidState("Pending seats require a PENDING platform invitation")
        row = TeamMembership(
            team_id=team_id,
            user_id=None,
            invitation_id=invitation_id,
            status=MembershipStatus.PENDING.value,
            invited_by=actor_id,
        )
        try:
            with session.begin_nested():
                session.add(row)
                session.flush()
        except IntegrityError:
            raise InvalidState(
                f"Invitation {invitation_id} already has a pending seat on team {team_id}"
            ) from None
        session.expunge(row)

    logger.info("Team %s: pending member for invitation %s", team_id, invitation_id)
    return row


def activate_pending_memberships(
    session: Session,
    invitation_id: str,
    user_id: str,
    *,
    now: datetime | None = None,
) -> dict[str, int]:
    """Turn the PENDING rows created for *invitation_id* into memberships.

    Each row is handled under its own SAVEPOINT: a full team or an existing
    membership skips that team and moves on to the next.
    """
    now = now or utcnow()
    pending = session.scalars(
        select(TeamMembership).where(
            TeamMembership.invitation_id == invitation_id,
            TeamMembership.status == MembershipStatus.PENDING.value,
        )
    ).all()

    activated = skipped = 0
    for row in pending:
        existing = _membership_for(session, row.team_id, user_id)
        if existing is not None and existing.status == MembershipStatus.ACTIVE:
            session.delete(row)
            session.flush()
            skipped += 1
            continue
        try:
            with session.begin_nested():
                _reserve_seat(session, row.team_id)
                if existing is not None:
                    # Returning member: reuse their old row, drop the placeholder.
                    session.delete(row)
                    session.flush()
                    _activate_row(session, existing.id, user_id, now, row.invited_by)
                else:
                    _activate_row(session, row.id, user_id, now)
        except (CapacityExceeded, AlreadyMember, NotFound) as exc:
            skipped += 1
            logger.warning(
                "Pending membership on team %s for %s not activated: %s",
                row.team_id, user_id, exc.message,
            )
            continue
        activated += 1
        logger.info("Team %s: pending membership activated for %s", row.team_id, user_id)

    return {"activated": activated, "skipped": skipped}


# ---------------------------------------------------------------------------
# Leaving
# ---------------------------------------------------------------------------
def _deactivate(
    session: Session,
    team: Team,
    user_id: str,
    status: MembershipStatus,
) -> None:
    if team.owner_id == user_id:
        raise InvalidState("The team owner cannot leave or be removed")
    result = session.execute(
        update(TeamMembership)
        .where(
            TeamMembership.team_id == team.id,
            TeamMembership.user_id == user_id,
            TeamMembership.status == MembershipStatus.ACTIVE.value,
        )
        .values(status=status.value, left_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        raise NotAMember(f"{user_id} is not an active member of team {team.id}")
    _release_seat(session, team.id)


def remove_member(
    engine: Engine,
    team_id: str,
    user_id: str,
    actor_id: str,
    *,
    is_admin: bool = False,
) -> None:
    """Kick *user_id*.  Only the owner or an admin may do this."""
    with get_session(engine) as session:
        team = _require_team(session, team_id)
        _require_manager(team, actor_id, is_admin)
        _deactivate(session, team, user_id, MembershipStatus.KICKED)
    logger.info("Team %s: %s removed by %s", team_id, user_id, actor_id)


def leave_team(engine: Engine, team_id: str, user_id: str) -> None:
    with get_session(engine) as session:
        team = _require_team(session, team_id)
        _deactivate(session, team, user_id, MembershipStatus.LEFT)
    logger.info("Team %s: %s left", team_id, user_id)


# ---------------------------------------------------------------------------
# Applications
# ---------------------------------------------------------------------------
def apply_to_team(
    engine: Engine,
    team_id: str,
    user_id: str,
    message: str | None = None,
) -> TeamApplication:
    with get_session(engine) as session:
        _require_team(session, team_id)
        existing = _membership_for(session, team_id, user_id)
        if existing is not None and existing.status == MembershipStatus.ACTIVE:
            raise AlreadyMember(f"{user_id} is already a member of team {team_id}")

        application = TeamApplication(
            id=str(uuid.uuid4()),
            team_id=team_id,
            user_id=user_id,
            status=ApplicationStatus.PENDING.value,
            message=(message or "").strip() or None,
            applied_at=utcnow(),
        )
        try:
            with session.begin_nested():
                session.add(application)
                session.flush()
        except IntegrityError:
            raise InvalidState(
                f"{user_id} already has a pending application to team {team_id}"
            ) from None
        session.expunge(application)

    logger.info("Team %s: application %s from %s", team_id, application.id, user_id)
    return application


def _review(
    session: Session,
    application_id: str,
    reviewer_id: str,
    is_admin: bool,
    status: ApplicationStatus,
    reason: str | None = None,
) -> TeamApplication:
    application = session.get(TeamApplication, application_id)
    if application is None:
        raise NotFound(f"Application {application_id} not found")
    team = _require_team(session, application.team_id)
    _require_manager(team, reviewer_id, is_admin)

    result = session.execute(
        update(TeamApplication)
        .where(
            TeamApplication.id == application_id,
            TeamApplication.status == ApplicationStatus.PENDING.value,
        )
        .values(
            status=status.value,
            reviewed_at=utcnow(),
            reviewed_by=reviewer_id,
            rejection_reason=reason,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        raise InvalidState(f"Application {application_id} was already reviewed")
    session.refresh(application)
    return application


def approve_application(
    engine: Engine,
    application_id: str,
    reviewer_id: str,
    *,
    is_admin: bool = False,
) -> TeamApplication:
    """Approve and add the applicant; a full team rolls the approval back."""
    with get_session(engine) as session:
        application = _review(
            session, application_id, reviewer_id, is_admin, ApplicationStatus.APPROVED,
        )
        add_member_in_session(
            session, application.team_id, application.user_id, invited_by=reviewer_id,
        )
        session.expunge(application)
    logger.info("Application %s approved by %s", application_id, reviewer_id)
    return application


def reject_application(
    engine: Engine,
    application_id: str,
    reviewer_id: str,
    reason: str | None = None,
    *,
    is_admin: bool = False,
) -> TeamApplication:
    with get_session(engine) as session:
        application = _review(
            session, application_id, reviewer_id, is_admin,
            ApplicationStatus.REJECTED, (reason or "").strip() or None,
        )
        session.expunge(application)
    logger.info("Application %s rejected by %s", application_id, reviewer_id)
    return application


# ---------------------------------------------------------------------------
# Read helpers used by reconciliation
# ---------------------------------------------------------------------------
def active_member_count(session: Session, team_id: str) -> int:
    return int(session.scalar(
        select(func.count()).select_from(TeamMembership).where(
            TeamMembership.team_id == team_id,
            TeamMembership.status == MembershipStatus.ACTIVE.value,
        )
    ) or 0)

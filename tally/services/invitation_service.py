"""
tally.services.invitation_service — Invitation Lifecycle
=========================================================

Persisting side of :mod:`tally.engine.invitations`.  Every transition is a
conditional ``UPDATE invitations ... WHERE status = <observed>`` so that two
racing callers can never both move the same row; the loser sees zero
affected rows and reloads.

Acceptance pipeline::

    1. Load the row; reject unknown ids, terminal states and foreign accepts.
    2. Expired?  Flip to EXPIRED in its own transaction, then raise.
    3. UPDATE ... SET status='ACCEPTED' WHERE status='PENDING'.
    4. Team-scoped: take a seat through the capacity guard, same transaction.
    5. COMMIT — the acceptance is now durable.
    6. Best-effort, each step isolated:
         a. acceptance reward for a TRAINER sender (keyed by invitation id)
         b. pending team seats transferred to the new account
         c. achievement re-evaluation for the sender

Nothing in step 6 can fail or undo the acceptance; failures there are
logged with ``logger.exception`` and left for reconciliation to repair.
Invitation email is likewise sent only after the creating transaction
commits.
"""

from __future__ import annotations

import logging
import secrets
import uuid
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import StrEnum

from sqlalchemy import Engine, and_, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from tally.config import TallyConfig
from tally.constants import MAX_BULK_INVITATIONS, as_utc, utcnow
from tally.database.engine import get_session
from tally.database.models import (
    PLATFORM_SCOPE,
    AchievementType,
    Invitation,
    InvitationStatus,
    MembershipStatus,
    Team,
    TeamMembership,
)
from tally.engine.invitations import (
    InvitationAction,
    acceptance_point_type,
    effective_status,
    is_expired,
    next_status,
    normalize_email,
    parse_role,
    parse_status,
    scope_for,
    validate_ttl,
)
from tally.errors import (
    InvalidState,
    InvitationExpired,
    NotFound,
    PermissionDenied,
    ValidationError,
)
from tally.services import achievement_service, ledger_service, team_service
from tally.services.collaborators import AccountInfo, Collaborators
from tally.services.email_service import invitation_email, send_best_effort

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------
class CreateStatus(StrEnum):
    CREATED = "CREATED"
    SKIPPED_ALREADY_INVITED = "SKIPPED_ALREADY_INVITED"
    SKIPPED_ALREADY_REGISTERED = "SKIPPED_ALREADY_REGISTERED"
    INVALID = "INVALID"


@dataclass(frozen=True, slots=True)
class CreateOutcome:
    email: str
    status: CreateStatus
    invitation: Invitation | None = None
    error: str | None = None


@dataclass(slots=True)
class BulkCreateResult:
    """Per-email outcomes of a bulk invitation request."""

    created: list[Invitation] = field(default_factory=list)
    skipped_already_invited: list[str] = field(default_factory=list)
    skipped_already_registered: list[str] = field(default_factory=list)
    invalid: list[str] = field(default_factory=list)

    def record(self, outcome: CreateOutcome) -> None:
        if outcome.status == CreateStatus.CREATED:
            self.created.append(outcome.invitation)
        elif outcome.status == CreateStatus.SKIPPED_ALREADY_INVITED:
            self.skipped_already_invited.append(outcome.email)
        elif outcome.status == CreateStatus.SKIPPED_ALREADY_REGISTERED:
            self.skipped_already_registered.append(outcome.email)
        else:
            self.invalid.append(outcome.email)

    def summary(self) -> dict[str, int]:
        return {
            "created": len(self.created),
            "skipped_already_invited": len(self.skipped_already_invited),
            "skipped_already_registered": len(self.skipped_already_registered),
            "invalid": len(self.invalid),
        }


@dataclass(slots=True)
class AcceptResult:
    invitation: Invitation
    already_accepted: bool = False
    reward_entry_id: int | None = None
    achievements_unlocked: list[AchievementType] = field(default_factory=list)
    memberships_activated: int = 0


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
def _new_code() -> str:
    return secrets.token_urlsafe(24)


def _default_ttl(cfg: TallyConfig, team_id: str | None) -> int:
    return cfg.team_invitation_ttl_days if team_id else cfg.invitation_ttl_days


def _require_invitation(session: Session, invitation_id: str) -> Invitation:
    invitation = session.get(Invitation, invitation_id)
    if invitation is None:
        raise NotFound(f"Invitation {invitation_id} not found")
    return invitation


def _require_sender(invitation: Invitation, actor_id: str, is_admin: bool) -> None:
    if not is_admin and invitation.sender_id != actor_id:
        raise PermissionDenied("Only the sender or an admin can change this invitation")


def _present(invitation: Invitation, now: datetime) -> Invitation:
    """Show a stale PENDING row as EXPIRED.  *invitation* must be detached."""
    invitation.status = effective_status(invitation.status, invitation.expires_at, now).value
    return invitation


def _expire_stale_pending(
    session: Session,
    email: str,
    scope: str,
    now: datetime,
    exclude_id: str | None = None,
) -> int:
    """Flip PENDING rows for *(email, scope)* whose deadline has passed."""
    q = (
        update(Invitation)
        .where(
            Invitation.email == email,
            Invitation.scope == scope,
            Invitation.status == InvitationStatus.PENDING.value,
            Invitation.expires_at < now,
        )
        .values(status=InvitationStatus.EXPIRED.value, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    if exclude_id is not None:
        q = q.where(Invitation.id != exclude_id)
    return session.execute(q).rowcount


def _is_active_member(session: Session, team_id: str, user_id: str) -> bool:
    return session.scalar(
        select(TeamMembership.id).where(
            TeamMembership.team_id == team_id,
            TeamMembership.user_id == user_id,
            TeamMembership.status == MembershipStatus.ACTIVE.value,
        )
    ) is not None


def _send_invitation_email(
    collab: Collaborators,
    cfg: TallyConfig,
    invitation: Invitation,
    team_name: str | None = None,
) -> bool:
    subject, text = invitation_email(
        cfg,
        code=invitation.code,
        role=invitation.role,
        expires_at=as_utc(invitation.expires_at),
        message=invitation.message,
        team_name=team_name,
    )
    return send_best_effort(collab.email, invitation.email, subject, text)


# ---------------------------------------------------------------------------
# Create
# ---------------------------------------------------------------------------
def create_invitation(
    engine: Engine,
    collab: Collaborators,
    cfg: TallyConfig,
    *,
    sender_id: str,
    email: str,
    role: str,
    message: str | None = None,
    ttl_days: int | None = None,
    team_id: str | None = None,
    is_admin: bool = False,
    now: datetime | None = None,
) -> CreateOutcome:
    """Create one PENDING invitation, or report why it was skipped.

    Raises ``ValidationError`` for a malformed email, role or TTL, and
    ``NotFound``/``PermissionDenied`` for a team the sender does not own.
    """
    email = normalize_email(email)
    invited_role = parse_role(role)
    ttl = validate_ttl(ttl_days if ttl_days is not None else _default_ttl(cfg, team_id))
    scope = scope_for(team_id)
    now = now or utcnow()
    account = collab.accounts.find_by_email(email)
    team_name: str | None = None

    with get_session(engine) as session:
        if team_id is not None:
            team = session.get(Team, team_id)
            if team is None:
                raise NotFound(f"Team {team_id} not found")
            if not is_admin and team.owner_id != sender_id:
                raise PermissionDenied("Only the team owner can invite to this team")
            team_name = team.name
            if account is not None and _is_active_member(session, team_id, account.id):
                return CreateOutcome(email, CreateStatus.SKIPPED_ALREADY_REGISTERED)
        elif account is not None:
            return CreateOutcome(email, CreateStatus.SKIPPED_ALREADY_REGISTERED)

        _expire_stale_pending(session, email, scope, now)

        invitation = Invitation(
            id=str(uuid.uuid4()),
            code=_new_code(),
            email=email,
            role=invited_role.value,
            scope=scope,
            team_id=team_id,
            sender_id=sender_id,
            message=(message or "").strip() or None,
            status=InvitationStatus.PENDING.value,
            created_at=now,
            updated_at=now,
            expires_at=now + timedelta(days=ttl),
        )
        try:
            with session.begin_nested():
                session.add(invitation)
                session.flush()
        except IntegrityError:
            # An unexpired PENDING invitation already holds (email, scope).
            logger.info("Invitation to %s (%s) skipped — already invited", email, scope)
            return CreateOutcome(email, CreateStatus.SKIPPED_ALREADY_INVITED)
        session.expunge(invitation)

    logger.info(
        "Invitation created: %s → %s as %s (%s, expires %s)",
        sender_id, email, invited_role, scope, invitation.expires_at.isoformat(),
    )
    _send_invitation_email(collab, cfg, invitation, team_name)
    return CreateOutcome(email, CreateStatus.CREATED, invitation=invitation)


def create_invitations(
    engine: Engine,
    collab: Collaborators,
    cfg: TallyConfig,
    *,
    sender_id: str,
    emails: list[str],
    role: str,
    message: str | None = None,
    ttl_days: int | None = None,
    team_id: str | None = None,
    is_admin: bool = False,
    now: datetime | None = None,
) -> BulkCreateResult:
    """Invite many addresses; every email gets its own outcome."""
    if not emails:
        raise ValidationError("At least one email is required")
    if len(emails) > MAX_BULK_INVITATIONS:
        raise ValidationError(f"At most {MAX_BULK_INVITATIONS} emails per request")
    parse_role(role)

    result = BulkCreateResult()
    seen: set[str] = set()
    for raw in emails:
        try:
            email = normalize_email(raw)
        except ValidationError as exc:
            result.record(CreateOutcome(str(raw), CreateStatus.INVALID, error=exc.message))
            continue
        if email in seen:
            result.record(CreateOutcome(email, CreateStatus.SKIPPED_ALREADY_INVITED))
            continue
        seen.add(email)
        result.record(create_invitation(
            engine, collab, cfg,
            sender_id=sender_id,
            email=email,
            role=role,
            message=message,
            ttl_days=ttl_days,
            team_id=team_id,
            is_admin=is_admin,
            now=now,
        ))

    logger.info("Bulk invitations from %s: %s", sender_id, result.summary())
    return result


# ---------------------------------------------------------------------------
# Accept
# ---------------------------------------------------------------------------
def _mark_expired(engine: Engine, invitation_id: str, now: datetime) -> None:
    with get_session(engine) as session:
        session.execute(
            update(Invitation)
            .where(
                Invitation.id == invitation_id,
                Invitation.status == InvitationStatus.PENDING.value,
            )
            .values(status=InvitationStatus.EXPIRED.value, updated_at=now)
            .execution_options(synchronize_session=False)
        )
    logger.info("Invitation %s expired at acceptance time", invitation_id)


def _require_invited_account(invitation: Invitation, acceptor: AccountInfo | None) -> None:
    if acceptor is not None and acceptor.email.strip().lower() != invitation.email:
        raise PermissionDenied("This invitation was sent to a different email address")


def _already_accepted(invitation: Invitation, account_id: str) -> bool:
    if invitation.receiver_id == account_id:
        return True
    raise InvalidState(f"Invitation {invitation.id} was accepted by another account")


def accept_invitation(
    engine: Engine,
    collab: Collaborators,
    cfg: TallyConfig,
    *,
    invitation_id: str,
    account_id: str,
    now: datetime | None = None,
) -> AcceptResult:
    """Accept *invitation_id* on behalf of *account_id*.

    A registered account may only accept an invitation sent to its own
    email (``PermissionDenied`` otherwise).  A repeated accept by the same
    account returns ``already_accepted=True`` and changes nothing.  Raises
    ``NotFound``, ``InvalidState``, ``InvitationExpired`` and, for team
    invitations, ``CapacityExceeded`` or ``AlreadyMember``.
    """
    now = now or utcnow()
    expired = False
    acceptor = collab.accounts.get(account_id)

    with get_session(engine) as session:
        invitation = _require_invitation(session, invitation_id)
        _require_invited_account(invitation, acceptor)
        status = InvitationStatus(invitation.status)

        if status == InvitationStatus.ACCEPTED:
            _already_accepted(invitation, account_id)
            session.expunge(invitation)
            return AcceptResult(invitation=invitation, already_accepted=True)
        if not next_status(status, InvitationAction.ACCEPT).allowed:
            raise InvalidState(f"Invitation {invitation_id} is {status}")

        if is_expired(invitation.expires_at, now):
            expired = True
        else:
            result = session.execute(
                update(Invitation)
                .where(
                    Invitation.id == invitation_id,
                    Invitation.status == InvitationStatus.PENDING.value,
                )
                .values(
                    status=InvitationStatus.ACCEPTED.value,
                    accepted_at=now,
                    receiver_id=account_id,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            session.refresh(invitation)
            if result.rowcount == 0:
                # Lost the race: someone else moved the row first.
                if invitation.status != InvitationStatus.ACCEPTED:
                    raise InvalidState(f"Invitation {invitation_id} is {invitation.status}")
                _already_accepted(invitation, account_id)
                session.expunge(invitation)
                return AcceptResult(invitation=invitation, already_accepted=True)

            if invitation.team_id is not None:
                team_service.add_member_in_session(
                    session, invitation.team_id, account_id,
                    invited_by=invitation.sender_id, now=now,
                )
            session.expunge(invitation)

    if expired:
        _mark_expired(engine, invitation_id, now)
        raise InvitationExpired(f"Invitation {invitation_id} has expired")

    logger.info(
        "Invitation %s accepted by %s (sender=%s, role=%s, scope=%s)",
        invitation.id, account_id, invitation.sender_id, invitation.role, invitation.scope,
    )
    return _after_acceptance(engine, collab, cfg, invitation, account_id, now)


def accept_by_code(
    engine: Engine,
    collab: Collaborators,
    cfg: TallyConfig,
    *,
    code: str,
    account_id: str,
    now: datetime | None = None,
) -> AcceptResult:
    """Resolve an acceptance token to its invitation and accept it."""
    with get_session(engine) as session:
        invitation_id = session.scalar(
            select(Invitation.id).where(Invitation.code == (code or "").strip())
        )
    if invitation_id is None:
        raise NotFound("Unknown invitation code")
    return accept_invitation(
        engine, collab, cfg, invitation_id=invitation_id, account_id=account_id, now=now,
    )


# ---------------------------------------------------------------------------
# Post-commit side effects — best effort, never raise
# ---------------------------------------------------------------------------
def award_acceptance_reward(
    engine: Engine,
    collab: Collaborators,
    cfg: TallyConfig,
    invitation: Invitation,
) -> int | None:
    """Pay the sender for an accepted invitation if the sender is a trainer.

    Keyed by invitation id, so calling this again (retry, reconciliation)
    never pays twice.  The amount follows the invitation's declared role.
    """
    sender = collab.accounts.get(invitation.sender_id)
    if sender is None or not sender.is_trainer:
        logger.info(
            "No acceptance reward for invitation %s — sender %s is not a trainer",
            invitation.id, invitation.sender_id,
        )
        return None
    point_type = acceptance_point_type(invitation.role)
    return ledger_service.append(
        engine,
        invitation.sender_id,
        point_type,
        cfg.points_for(point_type),
        f"Invitation accepted: {invitation.email} ({invitation.role.lower()})",
        source_id=invitation.id,
    )


def _after_acceptance(
    engine: Engine,
    collab: Collaborators,
    cfg: TallyConfig,
    invitation: Invitation,
    account_id: str,
    now: datetime,
) -> AcceptResult:
    result = AcceptResult(invitation=invitation)

    try:
        result.reward_entry_id = award_acceptance_reward(engine, collab, cfg, invitation)
    except Exception:
        logger.exception("Acceptance reward failed for invitation %s", invitation.id)

    if invitation.scope == PLATFORM_SCOPE:
        try:
            with get_session(engine) as session:
                moved = team_service.activate_pending_memberships(
                    session, invitation.id, account_id, now=now,
                )
            result.memberships_activated = moved["activated"]
        except Exception:
            logger.exception("Pending team seats not transferred for invitation %s", invitation.id)

    try:
        result.achievements_unlocked = achievement_service.evaluate(engine, invitation.sender_id)
    except Exception:
        logger.exception("Achievement evaluation failed for %s", invitation.sender_id)

    return result


# ---------------------------------------------------------------------------
# Revoke / extend / resend
# ---------------------------------------------------------------------------
def revoke_invitation(
    engine: Engine,
    *,
    invitation_id: str,
    actor_id: str,
    is_admin: bool = False,
    now: datetime | None = None,
) -> Invitation:
    """PENDING → REVOKED."""
    now = now or utcnow()
    with get_session(engine) as session:
        invitation = _require_invitation(session, invitation_id)
        _require_sender(invitation, actor_id, is_admin)
        if not next_status(invitation.status, InvitationAction.REVOKE).allowed:
            raise InvalidState(f"Invitation {invitation_id} is {invitation.status}")

        result = session.execute(
            update(Invitation)
            .where(
                Invitation.id == invitation_id,
                Invitation.status == InvitationStatus.PENDING.value,
            )
            .values(status=InvitationStatus.REVOKED.value, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        session.refresh(invitation)
        if result.rowcount == 0:
            raise InvalidState(f"Invitation {invitation_id} is {invitation.status}")
        session.expunge(invitation)

    logger.info("Invitation %s revoked by %s", invitation_id, actor_id)
    return invitation


def _reopen(
    session: Session,
    invitation: Invitation,
    action: InvitationAction,
    ttl: int,
    now: datetime,
) -> None:
    """Move a non-ACCEPTED row back to PENDING with a fresh deadline."""
    observed = invitation.status
    if not next_status(observed, action).allowed:
        raise InvalidState(f"Invitation {invitation.id} is {observed}")

    _expire_stale_pending(session, invitation.email, invitation.scope, now, exclude_id=invitation.id)
    try:
        with session.begin_nested():
            result = session.execute(
                update(Invitation)
                .where(Invitation.id == invitation.id, Invitation.status == observed)
                .values(
                    status=InvitationStatus.PENDING.value,
                    expires_at=now + timedelta(days=ttl),
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
    except IntegrityError:
        raise InvalidState(
            f"Another pending invitation exists for {invitation.email} ({invitation.scope})"
        ) from None
    session.refresh(invitation)
    if result.rowcount == 0:
        raise InvalidState(f"Invitation {invitation.id} is {invitation.status}")


def extend_invitation(
    engine: Engine,
    cfg: TallyConfig,
    *,
    invitation_id: str,
    actor_id: str,
    days: int | None = None,
    is_admin: bool = False,
    now: datetime | None = None,
) -> Invitation:
    """Push the deadline to ``now + days``; re-opens REVOKED/EXPIRED rows."""
    now = now or utcnow()
    with get_session(engine) as session:
        invitation = _require_invitation(session, invitation_id)
        _require_sender(invitation, actor_id, is_admin)
        ttl = validate_ttl(days if days is not None else _default_ttl(cfg, invitation.team_id))
        _reopen(session, invitation, InvitationAction.EXTEND, ttl, now)
        session.expunge(invitation)

    logger.info(
        "Invitation %s extended by %s to %s",
        invitation_id, actor_id, as_utc(invitation.expires_at).isoformat(),
    )
    return invitation


def resend_invitation(
    engine: Engine,
    collab: Collaborators,
    cfg: TallyConfig,
    *,
    invitation_id: str,
    actor_id: str,
    days: int | None = None,
    is_admin: bool = False,
    now: datetime | None = None,
) -> Invitation:
    """Re-open with a fresh deadline and send the email again."""
    now = now or utcnow()
    team_name: str | None = None
    with get_session(engine) as session:
        invitation = _require_invitation(session, invitation_id)
        _require_sender(invitation, actor_id, is_admin)
        ttl = validate_ttl(days if days is not None else _default_ttl(cfg, invitation.team_id))
        _reopen(session, invitation, InvitationAction.RESEND, ttl, now)
        if invitation.team_id is not None:
            team = session.get(Team, invitation.team_id)
            team_name = team.name if team else None
        session.expunge(invitation)

    logger.info("Invitation %s resent by %s", invitation_id, actor_id)
    _send_invitation_email(collab, cfg, invitation, team_name)
    return invitation


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------
def get_invitation(engine: Engine, invitation_id: str, now: datetime | None = None) -> Invitation:
    now = now or utcnow()
    with get_session(engine) as session:
        invitation = _require_invitation(session, invitation_id)
        session.expunge(invitation)
    return _present(invitation, now)


def list_invitations(
    engine: Engine,
    *,
    sender_id: str,
    status: str | None = None,
    limit: int = 100,
    offset: int = 0,
    now: datetime | None = None,
) -> list[Invitation]:
    """Newest-first invitations sent by *sender_id*, optionally by status.

    The status filter uses the presented status, so stale PENDING rows are
    listed under EXPIRED.
    """
    now = now or utcnow()
    with get_session(engine) as session:
        q = select(Invitation).where(Invitation.sender_id == sender_id)
        if status is not None:
            wanted = parse_status(status)
            if wanted == InvitationStatus.PENDING:
                q = q.where(
                    Invitation.status == InvitationStatus.PENDING.value,
                    Invitation.expires_at >= now,
                )
            elif wanted == InvitationStatus.EXPIRED:
                q = q.where(or_(
                    Invitation.status == InvitationStatus.EXPIRED.value,
                    and_(
                        Invitation.status == InvitationStatus.PENDING.value,
                        Invitation.expires_at < now,
                    ),
                ))
            else:
                q = q.where(Invitation.status == wanted.value)
        q = q.order_by(Invitation.created_at.desc(), Invitation.id).limit(limit).offset(offset)
        rows = list(session.scalars(q).all())
        for row in rows:
            session.expunge(row)
    return [_present(row, now) for row in rows]


def sender_stats(engine: Engine, sender_id: str, now: datetime | None = None) -> dict:
    """Counts by presented status, plus accepted counts by invited role."""
    now = now or utcnow()
    with get_session(engine) as session:
        rows = session.execute(
            select(Invitation.status, Invitation.role, Invitation.expires_at)
            .where(Invitation.sender_id == sender_id)
        ).all()

    by_status: Counter[str] = Counter({s.value: 0 for s in InvitationStatus})
    accepted_by_role: Counter[str] = Counter()
    for row in rows:
        presented = effective_status(row.status, row.expires_at, now)
        by_status[presented.value] += 1
        if presented == InvitationStatus.ACCEPTED:
            accepted_by_role[row.role] += 1

    return {
        "total": len(rows),
        "by_status": dict(by_status),
        "accepted_by_role": dict(accepted_by_role),
    }


# ---------------------------------------------------------------------------
# Expiry sweep
# ---------------------------------------------------------------------------
def expire_stale_invitations(engine: Engine, now: datetime | None = None) -> int:
    """Flip every PENDING row past its deadline to EXPIRED.

    Optional: reads already present stale rows as EXPIRED and acceptance
    refuses them; the sweep just makes the stored state match.
    """
    now = now or utcnow()
    with get_session(engine) as session:
        count = session.execute(
            update(Invitation)
            .where(
                Invitation.status == InvitationStatus.PENDING.value,
                Invitation.expires_at < now,
            )
            .values(status=InvitationStatus.EXPIRED.value, updated_at=now)
            .execution_options(synchronize_session=False)
        ).rowcount
    if count:
        logger.info("Expiry sweep: %d invitation(s) expired", count)
    return count

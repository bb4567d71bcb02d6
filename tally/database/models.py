"""
tally.database.models — SQLAlchemy 2.0 Data Models
===================================================

Tables:
- invitations        — Platform and team invitations (one lifecycle each)
- points_ledger      — Append-only point transactions with idempotency keys
- achievements       — One row per (account, achievement type), ever
- teams              — Team header with the maintained member counter
- team_memberships   — Membership rows; ACTIVE rows are what member_count counts
- team_applications  — User-initiated requests to join a team
- admin_log          — Append-only audit trail for admin mutations

Collaborator-owned (read-only from the engine's point of view):
- accounts           — Account directory (role, status, verification)
- activity_entries   — Workout-log timestamps used for retention checks
"""

from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------
class Base(DeclarativeBase):
    """Shared base for all Tally ORM models."""


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------
class InvitationStatus(enum.StrEnum):
    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"
    REVOKED = "REVOKED"
    EXPIRED = "EXPIRED"


class InvitationRole(enum.StrEnum):
    """Role the invited person is expected to take on."""
    CLIENT = "CLIENT"
    TRAINER = "TRAINER"


class PointType(enum.StrEnum):
    """Every kind of entry the points ledger accepts."""
    CLIENT_ACCEPTED = "CLIENT_ACCEPTED"
    TRAINER_ACCEPTED = "TRAINER_ACCEPTED"
    ACHIEVEMENT_UNLOCK = "ACHIEVEMENT_UNLOCK"
    BONUS_RETENTION = "BONUS_RETENTION"
    BONUS_TRAINER_VERIFICATION = "BONUS_TRAINER_VERIFICATION"
    MANUAL_ADJUSTMENT = "MANUAL_ADJUSTMENT"
    PENALTY = "PENALTY"
    CORRECTION = "CORRECTION"


# Entry types that may exist at most once per (account, type, source_id).
# A CORRECTION is keyed by the id of the entry it offsets.
KEYED_POINT_TYPES: frozenset[str] = frozenset({
    PointType.CLIENT_ACCEPTED,
    PointType.TRAINER_ACCEPTED,
    PointType.ACHIEVEMENT_UNLOCK,
    PointType.BONUS_RETENTION,
    PointType.BONUS_TRAINER_VERIFICATION,
    PointType.CORRECTION,
})


class AchievementType(enum.StrEnum):
    ROOKIE_RECRUITER = "ROOKIE_RECRUITER"
    TALENT_SCOUT = "TALENT_SCOUT"
    COMMUNITY_BUILDER = "COMMUNITY_BUILDER"
    GROWTH_CHAMPION = "GROWTH_CHAMPION"
    TRAINER_MAGNET = "TRAINER_MAGNET"
    CLIENT_CONNECTOR = "CLIENT_CONNECTOR"


class MembershipStatus(enum.StrEnum):
    ACTIVE = "ACTIVE"
    LEFT = "LEFT"
    KICKED = "KICKED"
    PENDING = "PENDING"  # invited, recipient has no account yet


class ApplicationStatus(enum.StrEnum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class AccountRole(enum.StrEnum):
    CLIENT = "CLIENT"
    TRAINER = "TRAINER"
    ADMIN = "ADMIN"


class AccountStatus(enum.StrEnum):
    ACTIVE = "ACTIVE"
    SUSPENDED = "SUSPENDED"
    DELETED = "DELETED"


class AdminActionType(enum.StrEnum):
    """Categories of admin mutations recorded in admin_log."""
    MANUAL_ADJUSTMENT = "MANUAL_ADJUSTMENT"
    PENALTY = "PENALTY"
    CORRECTION = "CORRECTION"
    DELETE = "DELETE"
    SWEEP = "SWEEP"


PLATFORM_SCOPE = "platform"


# ---------------------------------------------------------------------------
# Accounts — owned by the account subsystem, read through AccountDirectory
# ---------------------------------------------------------------------------
class Account(Base):
    __tablename__ = "accounts"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    email: Mapped[str] = mapped_column(String(320), nullable=False, unique=True)
    role: Mapped[str] = mapped_column(
        String(20), nullable=False, default=AccountRole.CLIENT.value
    )
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=AccountStatus.ACTIVE.value
    )
    trainer_verified: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    def __repr__(self) -> str:
        return f"<Account id={self.id!r} role={self.role} status={self.status}>"


# ---------------------------------------------------------------------------
# ActivityEntry — owned by the workout log, read through ActivityFeed
# ---------------------------------------------------------------------------
class ActivityEntry(Base):
    __tablename__ = "activity_entries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    account_id: Mapped[str] = mapped_column(String(64), nullable=False)
    logged_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("ix_activity_entries_account_time", "account_id", "logged_at"),
    )

    def __repr__(self) -> str:
        return f"<ActivityEntry account={self.account_id!r} at={self.logged_at}>"


# ---------------------------------------------------------------------------
# Teams
# ---------------------------------------------------------------------------
class Team(Base):
    __tablename__ = "teams"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    owner_id: Mapped[str] = mapped_column(String(64), nullable=False)
    max_members: Mapped[int] = mapped_column(Integer, nullable=False)
    # Only ever moved by atomic UPDATE ... SET member_count = member_count ± 1
    member_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    memberships: Mapped[list[TeamMembership]] = relationship(
        back_populates="team", cascade="all, delete-orphan"
    )

    __table_args__ = (
        Index("ix_teams_owner", "owner_id"),
        CheckConstraint("member_count >= 0", name="ck_teams_member_count_nonneg"),
    )

    def __repr__(self) -> str:
        return (
            f"<Team id={self.id!r} name={self.name!r} "
            f"members={self.member_count}/{self.max_members}>"
        )


# ---------------------------------------------------------------------------
# Invitations
# ---------------------------------------------------------------------------
class Invitation(Base):
    """One platform or team invitation.

    ``scope`` is ``"platform"`` or ``"team:<team_id>"`` and is the second half
    of the ``(email, scope)`` pair that may hold at most one PENDING row.
    """
    __tablename__ = "invitations"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    code: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    email: Mapped[str] = mapped_column(String(320), nullable=False)
    role: Mapped[str] = mapped_column(String(20), nullable=False)
    scope: Mapped[str] = mapped_column(
        String(64), nullable=False, default=PLATFORM_SCOPE
    )
    team_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("teams.id", ondelete="CASCADE"), nullable=True
    )
    sender_id: Mapped[str] = mapped_column(String(64), nullable=False)
    receiver_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    message: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=InvitationStatus.PENDING.value
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    accepted_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    __table_args__ = (
        # At most one PENDING invitation per (email, scope)
        Index(
            "ix_invitations_pending_email_scope",
            "email",
            "scope",
            unique=True,
            postgresql_where=status == InvitationStatus.PENDING.value,
            sqlite_where=status == InvitationStatus.PENDING.value,
        ),
        Index("ix_invitations_sender_status", "sender_id", "status"),
        Index("ix_invitations_status_accepted", "status", "accepted_at"),
        Index("ix_invitations_receiver", "receiver_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<Invitation id={self.id!r} email={self.email!r} "
            f"role={self.role} status={self.status}>"
        )


# ---------------------------------------------------------------------------
# PointsLedgerEntry — append-only, balance = SUM(points)
# ---------------------------------------------------------------------------
class PointsLedgerEntry(Base):
    __tablename__ = "points_ledger"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    account_id: Mapped[str] = mapped_column(String(64), nullable=False)
    point_type: Mapped[str] = mapped_column(String(40), nullable=False)
    points: Mapped[int] = mapped_column(Integer, nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    source_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        # Idempotency for reward types keyed by source_id
        Index(
            "ix_points_ledger_idempotent",
            "account_id",
            "point_type",
            "source_id",
            unique=True,
            postgresql_where=point_type.in_(sorted(KEYED_POINT_TYPES)),
            sqlite_where=point_type.in_(sorted(KEYED_POINT_TYPES)),
        ),
        Index("ix_points_ledger_account_time", "account_id", "created_at"),
        Index("ix_points_ledger_type_source", "point_type", "source_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<PointsLedgerEntry id={self.id} account={self.account_id!r} "
            f"type={self.point_type} points={self.points}>"
        )


# ---------------------------------------------------------------------------
# Achievement — unlocked once per (account, type)
# ---------------------------------------------------------------------------
class Achievement(Base):
    __tablename__ = "achievements"

    account_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    achievement_type: Mapped[str] = mapped_column(String(40), primary_key=True)
    # Audit copy of the amount; the ledger stays canonical
    points_awarded: Mapped[int] = mapped_column(Integer, nullable=False)
    unlocked_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    def __repr__(self) -> str:
        return f"<Achievement account={self.account_id!r} type={self.achievement_type}>"


# ---------------------------------------------------------------------------
# TeamMembership
# ---------------------------------------------------------------------------
class TeamMembership(Base):
    __tablename__ = "team_memberships"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    team_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("teams.id", ondelete="CASCADE"), nullable=False
    )
    # NULL only while PENDING for an invitee without an account
    user_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    invitation_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=MembershipStatus.ACTIVE.value
    )
    invited_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    joined_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    left_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    team: Mapped[Team] = relationship(back_populates="memberships")

    __table_args__ = (
        Index(
            "ix_team_memberships_team_user",
            "team_id",
            "user_id",
            unique=True,
            postgresql_where=user_id.isnot(None),
            sqlite_where=user_id.isnot(None),
        ),
        Index(
            "ix_team_memberships_team_invitation",
            "team_id",
            "invitation_id",
            unique=True,
            postgresql_where=invitation_id.isnot(None),
            sqlite_where=invitation_id.isnot(None),
        ),
        Index("ix_team_memberships_team_status", "team_id", "status"),
    )

    def __repr__(self) -> str:
        return (
            f"<TeamMembership team={self.team_id!r} user={self.user_id!r} "
            f"status={self.status}>"
        )


# ---------------------------------------------------------------------------
# TeamApplication
# ---------------------------------------------------------------------------
class TeamApplication(Base):
    __tablename__ = "team_applications"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    team_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("teams.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=ApplicationStatus.PENDING.value
    )
    message: Mapped[str | None] = mapped_column(Text, nullable=True)
    applied_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    reviewed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    reviewed_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        Index(
            "ix_team_applications_pending",
            "team_id",
            "user_id",
            unique=True,
            postgresql_where=status == ApplicationStatus.PENDING.value,
            sqlite_where=status == ApplicationStatus.PENDING.value,
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<TeamApplication id={self.id!r} team={self.team_id!r} "
            f"user={self.user_id!r} status={self.status}>"
        )


# ---------------------------------------------------------------------------
# AdminLog — append-only audit trail
# ---------------------------------------------------------------------------
class AdminLog(Base):
    __tablename__ = "admin_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    actor_id: Mapped[str] = mapped_column(String(64), nullable=False)
    action_type: Mapped[str] = mapped_column(String(50), nullable=False)
    target_table: Mapped[str] = mapped_column(String(50), nullable=False)
    target_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    before_snapshot: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    after_snapshot: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        Index("ix_admin_log_actor_time", "actor_id", "timestamp"),
        Index("ix_admin_log_target", "target_table", "target_id", "timestamp"),
    )

    def __repr__(self) -> str:
        return f"<AdminLog id={self.id} actor={self.actor_id!r} action={self.action_type}>"

"""Create referral invitation, points ledger and team tables

Revision ID: 4c2e9a7b1f03
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from collections.abc import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "4c2e9a7b1f03"
down_revision: str | Sequence[str] | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

KEYED_POINT_TYPES = (
    "ACHIEVEMENT_UNLOCK",
    "BONUS_RETENTION",
    "BONUS_TRAINER_VERIFICATION",
    "CLIENT_ACCEPTED",
    "CORRECTION",
    "TRAINER_ACCEPTED",
)


def _now_column(name: str, nullable: bool = True) -> sa.Column:
    return sa.Column(
        name, sa.DateTime(timezone=True), nullable=nullable, server_default=sa.func.now(),
    )


def upgrade() -> None:
    """Create every table and the partial unique indexes behind the invariants."""
    # --- Collaborator-owned tables ---
    op.create_table(
        "accounts",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("email", sa.String(320), nullable=False, unique=True),
        sa.Column("role", sa.String(20), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("trainer_verified", sa.Boolean(), nullable=True),
        _now_column("created_at"),
    )
    op.create_table(
        "activity_entries",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("account_id", sa.String(64), nullable=False),
        sa.Column("logged_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(
        "ix_activity_entries_account_time", "activity_entries", ["account_id", "logged_at"],
    )

    # --- Teams ---
    op.create_table(
        "teams",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("owner_id", sa.String(64), nullable=False),
        sa.Column("max_members", sa.Integer(), nullable=False),
        sa.Column("member_count", sa.Integer(), nullable=False),
        _now_column("created_at"),
        sa.CheckConstraint("member_count >= 0", name="ck_teams_member_count_nonneg"),
    )
    op.create_index("ix_teams_owner", "teams", ["owner_id"])

    # --- Invitations ---
    op.create_table(
        "invitations",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("code", sa.String(64), nullable=False, unique=True),
        sa.Column("email", sa.String(320), nullable=False),
        sa.Column("role", sa.String(20), nullable=False),
        sa.Column("scope", sa.String(64), nullable=False),
        sa.Column(
            "team_id", sa.String(36),
            sa.ForeignKey("teams.id", ondelete="CASCADE"), nullable=True,
        ),
        sa.Column("sender_id", sa.String(64), nullable=False),
        sa.Column("receiver_id", sa.String(64), nullable=True),
        sa.Column("message", sa.Text(), nullable=True),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("accepted_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index(
        "ix_invitations_pending_email_scope",
        "invitations",
        ["email", "scope"],
        unique=True,
        postgresql_where=sa.text("status = 'PENDING'"),
        sqlite_where=sa.text("status = 'PENDING'"),
    )
    op.create_index("ix_invitations_sender_status", "invitations", ["sender_id", "status"])
    op.create_index("ix_invitations_status_accepted", "invitations", ["status", "accepted_at"])
    op.create_index("ix_invitations_receiver", "invitations", ["receiver_id"])

    # --- Points ledger ---
    keyed = ", ".join(f"'{t}'" for t in KEYED_POINT_TYPES)
    op.create_table(
        "points_ledger",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("account_id", sa.String(64), nullable=False),
        sa.Column("point_type", sa.String(40), nullable=False),
        sa.Column("points", sa.Integer(), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("source_id", sa.String(100), nullable=True),
        _now_column("created_at"),
    )
    op.create_index(
        "ix_points_ledger_idempotent",
        "points_ledger",
        ["account_id", "point_type", "source_id"],
        unique=True,
        postgresql_where=sa.text(f"point_type IN ({keyed})"),
        sqlite_where=sa.text(f"point_type IN ({keyed})"),
    )
    op.create_index("ix_points_ledger_account_time", "points_ledger", ["account_id", "created_at"])
    op.create_index("ix_points_ledger_type_source", "points_ledger", ["point_type", "source_id"])

    # --- Achievements ---
    op.create_table(
        "achievements",
        sa.Column("account_id", sa.String(64), primary_key=True),
        sa.Column("achievement_type", sa.String(40), primary_key=True),
        sa.Column("points_awarded", sa.Integer(), nullable=False),
        _now_column("unlocked_at"),
    )

    # --- Memberships & applications ---
    op.create_table(
        "team_memberships",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "team_id", sa.String(36),
            sa.ForeignKey("teams.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("user_id", sa.String(64), nullable=True),
        sa.Column("invitation_id", sa.String(36), nullable=True),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("invited_by", sa.String(64), nullable=True),
        sa.Column("joined_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("left_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index(
        "ix_team_memberships_team_user",
        "team_memberships",
        ["team_id", "user_id"],
        unique=True,
        postgresql_where=sa.text("user_id IS NOT NULL"),
        sqlite_where=sa.text("user_id IS NOT NULL"),
    )
    op.create_index(
        "ix_team_memberships_team_invitation",
        "team_memberships",
        ["team_id", "invitation_id"],
        unique=True,
        postgresql_where=sa.text("invitation_id IS NOT NULL"),
        sqlite_where=sa.text("invitation_id IS NOT NULL"),
    )
    op.create_index("ix_team_memberships_team_status", "team_memberships", ["team_id", "status"])

    op.create_table(
        "team_applications",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "team_id", sa.String(36),
            sa.ForeignKey("teams.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("message", sa.Text(), nullable=True),
        _now_column("applied_at"),
        sa.Column("reviewed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("reviewed_by", sa.String(64), nullable=True),
        sa.Column("rejection_reason", sa.Text(), nullable=True),
    )
    op.create_index(
        "ix_team_applications_pending",
        "team_applications",
        ["team_id", "user_id"],
        unique=True,
        postgresql_where=sa.text("status = 'PENDING'"),
        sqlite_where=sa.text("status = 'PENDING'"),
    )

    # --- Admin audit trail ---
    op.create_table(
        "admin_log",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("actor_id", sa.String(64), nullable=False),
        sa.Column("action_type", sa.String(50), nullable=False),
        sa.Column("target_table", sa.String(50), nullable=False),
        sa.Column("target_id", sa.String(100), nullable=True),
        sa.Column("before_snapshot", postgresql.JSONB(), nullable=True),
        sa.Column("after_snapshot", postgresql.JSONB(), nullable=True),
        sa.Column("reason", sa.Text(), nullable=True),
        _now_column("timestamp"),
    )
    op.create_index("ix_admin_log_actor_time", "admin_log", ["actor_id", "timestamp"])
    op.create_index("ix_admin_log_target", "admin_log", ["target_table", "target_id", "timestamp"])


def downgrade() -> None:
    """Drop every Tally table."""
    op.drop_index("ix_admin_log_target", table_name="admin_log")
    op.drop_index("ix_admin_log_actor_time", table_name="admin_log")
    op.drop_table("admin_log")

    op.drop_index("ix_team_applications_pending", table_name="team_applications")
    op.drop_table("team_applications")

    op.drop_index("ix_team_memberships_team_status", table_name="team_memberships")
    op.drop_index("ix_team_memberships_team_invitation", table_name="team_memberships")
    op.drop_index("ix_team_memberships_team_user", table_name="team_memberships")
    op.drop_table("team_memberships")

    op.drop_table("achievements")

    op.drop_index("ix_points_ledger_type_source", table_name="points_ledger")
    op.drop_index("ix_points_ledger_account_time", table_name="points_ledger")
    op.drop_index("ix_points_ledger_idempotent", table_name="points_ledger")
    op.drop_table("points_ledger")

    op.drop_index("ix_invitations_receiver", table_name="invitations")
    op.drop_index("ix_invitations_status_accepted", table_name="invitations")
    op.drop_index("ix_invitations_sender_status", table_name="invitations")
    op.drop_index("ix_invitations_pending_email_scope", table_name="invitations")
    op.drop_table("invitations")

    op.drop_index("ix_teams_owner", table_name="teams")
    op.drop_table("teams")

    op.drop_index("ix_activity_entries_account_time", table_name="activity_entries")
    op.drop_table("activity_entries")
    op.drop_table("accounts")

"""
tally.api.routes.invitations — Invitation endpoints (JWT-protected)
====================================================================
"""

from __future__ import annotations

import dataclasses

from fastapi import APIRouter, BackgroundTasks, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy import Engine

from tally.api.deps import Actor, get_collaborators, get_config, get_current_actor, get_engine
from tally.config import TallyConfig
from tally.constants import MAX_BULK_INVITATIONS, as_utc
from tally.database.models import Invitation
from tally.errors import PermissionDenied
from tally.services import invitation_service
from tally.services.collaborators import Collaborators
from tally.services.email_service import BackgroundEmailSender

router = APIRouter(prefix="/invitations", tags=["invitations"])


# ---------------------------------------------------------------------------
# Pydantic schemas
# ---------------------------------------------------------------------------
class InvitationCreate(BaseModel):
    emails: list[str] = Field(min_length=1, max_length=MAX_BULK_INVITATIONS)
    role: str = "CLIENT"
    message: str | None = Field(None, max_length=1000)
    ttl_days: int | None = Field(None, ge=1, le=365)
    team_id: str | None = None


class ExtendBody(BaseModel):
    days: int | None = Field(None, ge=1, le=365)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
def _iso(value):
    return as_utc(value).isoformat() if value else None


def invitation_dict(inv: Invitation) -> dict:
    return {
        "id": inv.id,
        "code": inv.code,
        "email": inv.email,
        "role": inv.role,
        "scope": inv.scope,
        "team_id": inv.team_id,
        "sender_id": inv.sender_id,
        "receiver_id": inv.receiver_id,
        "message": inv.message,
        "status": inv.status,
        "created_at": _iso(inv.created_at),
        "expires_at": _iso(inv.expires_at),
        "accepted_at": _iso(inv.accepted_at),
    }


def _accept_dict(result: invitation_service.AcceptResult) -> dict:
    return {
        "invitation": invitation_dict(result.invitation),
        "already_accepted": result.already_accepted,
        "reward_entry_id": result.reward_entry_id,
        "achievements_unlocked": [str(a) for a in result.achievements_unlocked],
        "memberships_activated": result.memberships_activated,
    }


def _queued_email(collab: Collaborators, background_tasks: BackgroundTasks) -> Collaborators:
    """Send invitation emails after the response instead of inside the request."""
    return dataclasses.replace(collab, email=BackgroundEmailSender(collab.email, background_tasks.add_task))


# ---------------------------------------------------------------------------
# Create & list
# ---------------------------------------------------------------------------
@router.post("", status_code=201)
def create_invitations(
    body: InvitationCreate,
    background_tasks: BackgroundTasks,
    actor: Actor = Depends(get_current_actor),
    engine: Engine = Depends(get_engine),
    collab: Collaborators = Depends(get_collaborators),
    cfg: TallyConfig = Depends(get_config),
):
    """Invite one or more emails; each email reports its own outcome."""
    if not (actor.is_trainer or actor.is_admin):
        raise PermissionDenied("Only trainers and admins can send invitations")
    result = invitation_service.create_invitations(
        engine, _queued_email(collab, background_tasks), cfg,
        sender_id=actor.id,
        emails=body.emails,
        role=body.role,
        message=body.message,
        ttl_days=body.ttl_days,
        team_id=body.team_id,
        is_admin=actor.is_admin,
    )
    return {
        "created": [invitation_dict(inv) for inv in result.created],
        "skipped_already_invited": result.skipped_already_invited,
        "skipped_already_registered": result.skipped_already_registered,
        "invalid": result.invalid,
        "summary": result.summary(),
    }


@router.get("")
def list_invitations(
    status: str | None = Query(None),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    actor: Actor = Depends(get_current_actor),
    engine: Engine = Depends(get_engine),
):
    rows = invitation_service.list_invitations(
        engine, sender_id=actor.id, status=status, limit=limit, offset=offset,
    )
    return {"invitations": [invitation_dict(inv) for inv in rows]}


@router.get("/stats")
def invitation_stats(
    actor: Actor = Depends(get_current_actor),
    engine: Engine = Depends(get_engine),
):
    return invitation_service.sender_stats(engine, actor.id)


# ---------------------------------------------------------------------------
# Accept
# ---------------------------------------------------------------------------
@router.post("/accept/{code}")
def accept_by_code(
    code: str,
    actor: Actor = Depends(get_current_actor),
    engine: Engine = Depends(get_engine),
    collab: Collaborators = Depends(get_collaborators),
    cfg: TallyConfig = Depends(get_config),
):
    result = invitation_service.accept_by_code(
        engine, collab, cfg, code=code, account_id=actor.id,
    )
    return _accept_dict(result)


@router.get("/{invitation_id}")
def get_invitation(
    invitation_id: str,
    actor: Actor = Depends(get_current_actor),
    engine: Engine = Depends(get_engine),
):
    inv = invitation_service.get_invitation(engine, invitation_id)
    if not actor.is_admin and actor.id not in (inv.sender_id, inv.receiver_id):
        raise PermissionDenied("Not your invitation")
    return invitation_dict(inv)


@router.post("/{invitation_id}/accept")
def accept_invitation(
    invitation_id: str,
    actor: Actor = Depends(get_current_actor),
    engine: Engine = Depends(get_engine),
    collab: Collaborators = Depends(get_collaborators),
    cfg: TallyConfig = Depends(get_config),
):
    result = invitation_service.accept_invitation(
        engine, collab, cfg, invitation_id=invitation_id, account_id=actor.id,
    )
    return _accept_dict(result)


# ---------------------------------------------------------------------------
# Sender actions
# ---------------------------------------------------------------------------
@router.post("/{invitation_id}/revoke")
def revoke_invitation(
    invitation_id: str,
    actor: Actor = Depends(get_current_actor),
    engine: Engine = Depends(get_engine),
):
    inv = invitation_service.revoke_invitation(
        engine, invitation_id=invitation_id, actor_id=actor.id, is_admin=actor.is_admin,
    )
    return invitation_dict(inv)


@router.post("/{invitation_id}/extend")
def extend_invitation(
    invitation_id: str,
    body: ExtendBody | None = None,
    actor: Actor = Depends(get_current_actor),
    engine: Engine = Depends(get_engine),
    cfg: TallyConfig = Depends(get_config),
):
    inv = invitation_service.extend_invitation(
        engine, cfg,
        invitation_id=invitation_id,
        actor_id=actor.id,
        days=body.days if body else None,
        is_admin=actor.is_admin,
    )
    return invitation_dict(inv)


@router.post("/{invitation_id}/resend")
def resend_invitation(
    invitation_id: str,
    background_tasks: BackgroundTasks,
    body: ExtendBody | None = None,
    actor: Actor = Depends(get_current_actor),
    engine: Engine = Depends(get_engine),
    collab: Collaborators = Depends(get_collaborators),
    cfg: TallyConfig = Depends(get_config),
):
    inv = invitation_service.resend_invitation(
        engine, _queued_email(collab, background_tasks), cfg,
        invitation_id=invitation_id,
        actor_id=actor.id,
        days=body.days if body else None,
        is_admin=actor.is_admin,
    )
    return invitation_dict(inv)

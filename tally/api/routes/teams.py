"""
tally.api.routes.teams — Team membership endpoints (JWT-protected)
===================================================================
"""

from __future__ import annotations

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy import Engine

from tally.api.deps import Actor, get_current_actor, get_engine
from tally.constants import as_utc
from tally.database.models import Team, TeamApplication, TeamMembership
from tally.errors import PermissionDenied
from tally.services import team_service

router = APIRouter(prefix="/teams", tags=["teams"])


# ---------------------------------------------------------------------------
# Pydantic schemas
# ---------------------------------------------------------------------------
class TeamCreate(BaseModel):
    name: str
    max_members: int


class TeamUpdate(BaseModel):
    max_members: int


class MemberAdd(BaseModel):
    user_id: str


class PendingAdd(BaseModel):
    invitation_id: str


class ApplicationCreate(BaseModel):
    message: str | None = Field(None, max_length=1000)


class ApplicationReject(BaseModel):
    reason: str | None = Field(None, max_length=1000)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
def _iso(value):
    return as_utc(value).isoformat() if value else None


def _team_dict(team: Team) -> dict:
    return {
        "id": team.id,
        "name": team.name,
        "owner_id": team.owner_id,
        "max_members": team.max_members,
        "member_count": team.member_count,
        "created_at": _iso(team.created_at),
    }


def _member_dict(m: TeamMembership) -> dict:
    return {
        "user_id": m.user_id,
        "invitation_id": m.invitation_id,
        "status": m.status,
        "invited_by": m.invited_by,
        "joined_at": _iso(m.joined_at),
        "left_at": _iso(m.left_at),
    }


def _application_dict(a: TeamApplication) -> dict:
    return {
        "id": a.id,
        "team_id": a.team_id,
        "user_id": a.user_id,
        "status": a.status,
        "message": a.message,
        "applied_at": _iso(a.applied_at),
        "reviewed_at": _iso(a.reviewed_at),
        "reviewed_by": a.reviewed_by,
        "rejection_reason": a.rejection_reason,
    }


# ---------------------------------------------------------------------------
# Teams
# ---------------------------------------------------------------------------
@router.post("", status_code=201)
def create_team(
    body: TeamCreate,
    actor: Actor = Depends(get_current_actor),
    engine: Engine = Depends(get_engine),
):
    if not (actor.is_trainer or actor.is_admin):
        raise PermissionDenied("Only trainers can create teams")
    team = team_service.create_team(
        engine, owner_id=actor.id, name=body.name, max_members=body.max_members,
    )
    return _team_dict(team)


@router.get("/{team_id}")
def get_team(
    team_id: str,
    actor: Actor = Depends(get_current_actor),
    engine: Engine = Depends(get_engine),
):
    team = team_service.get_team(engine, team_id)
    members = team_service.list_members(engine, team_id)
    return {**_team_dict(team), "members": [_member_dict(m) for m in members]}


@router.patch("/{team_id}")
def update_team(
    team_id: str,
    body: TeamUpdate,
    actor: Actor = Depends(get_current_actor),
    engine: Engine = Depends(get_engine),
):
    team = team_service.update_max_members(
        engine, team_id, actor.id, body.max_members, is_admin=actor.is_admin,
    )
    return _team_dict(team)


# ---------------------------------------------------------------------------
# Members
# ---------------------------------------------------------------------------
@router.post("/{team_id}/members", status_code=201)
def add_member(
    team_id: str,
    body: MemberAdd,
    actor: Actor = Depends(get_current_actor),
    engine: Engine = Depends(get_engine),
):
    team = team_service.get_team(engine, team_id)
    if not actor.is_admin and team.owner_id != actor.id:
        raise PermissionDenied("Only the team owner can add members")
    membership = team_service.add_member(engine, team_id, body.user_id, invited_by=actor.id)
    return _member_dict(membership)


@router.delete("/{team_id}/members/{user_id}")
def remove_member(
    team_id: str,
    user_id: str,
    actor: Actor = Depends(get_current_actor),
    engine: Engine = Depends(get_engine),
):
    team_service.remove_member(engine, team_id, user_id, actor.id, is_admin=actor.is_admin)
    return {"removed": user_id}


@router.post("/{team_id}/leave")
def leave_team(
    team_id: str,
    actor: Actor = Depends(get_current_actor),
    engine: Engine = Depends(get_engine),
):
    team_service.leave_team(engine, team_id, actor.id)
    return {"left": team_id}


@router.post("/{team_id}/pending", status_code=201)
def add_pending_member(
    team_id: str,
    body: PendingAdd,
    actor: Actor = Depends(get_current_actor),
    engine: Engine = Depends(get_engine),
):
    membership = team_service.add_pending_member(
        engine, team_id, body.invitation_id, actor.id, is_admin=actor.is_admin,
    )
    return _member_dict(membership)


# ---------------------------------------------------------------------------
# Applications
# ---------------------------------------------------------------------------
@router.post("/{team_id}/applications", status_code=201)
def apply_to_team(
    team_id: str,
    body: ApplicationCreate | None = None,
    actor: Actor = Depends(get_current_actor),
    engine: Engine = Depends(get_engine),
):
    application = team_service.apply_to_team(
        engine, team_id, actor.id, body.message if body else None,
    )
    return _application_dict(application)


@router.post("/applications/{application_id}/approve")
def approve_application(
    application_id: str,
    actor: Actor = Depends(get_current_actor),
    engine: Engine = Depends(get_engine),
):
    application = team_service.approve_application(
        engine, application_id, actor.id, is_admin=actor.is_admin,
    )
    return _application_dict(application)


@router.post("/applications/{application_id}/reject")
def reject_application(
    application_id: str,
    body: ApplicationReject | None = None,
    actor: Actor = Depends(get_current_actor),
    engine: Engine = Depends(get_engine),
):
    application = team_service.reject_application(
        engine, application_id, actor.id, body.reason if body else None,
        is_admin=actor.is_admin,
    )
    return _application_dict(application)

"""
tally.api.routes.points — Balance, ledger and achievement endpoints
====================================================================
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from sqlalchemy import Engine

from tally.api.deps import Actor, get_current_actor, get_engine
from tally.constants import as_utc
from tally.errors import PermissionDenied
from tally.services import achievement_service, ledger_service

router = APIRouter(tags=["points"])


def _target(actor: Actor, account_id: str | None) -> str:
    """Callers read their own ledger; admins may read anyone's."""
    if account_id is None or account_id == actor.id:
        return actor.id
    if not actor.is_admin:
        raise PermissionDenied("You can only view your own points")
    return account_id


@router.get("/points/balance")
def get_balance(
    account_id: str | None = Query(None),
    actor: Actor = Depends(get_current_actor),
    engine: Engine = Depends(get_engine),
):
    target = _target(actor, account_id)
    return {"account_id": target, "balance": ledger_service.balance_of(engine, target)}


@router.get("/points/entries")
def get_entries(
    account_id: str | None = Query(None),
    point_type: str | None = Query(None),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    actor: Actor = Depends(get_current_actor),
    engine: Engine = Depends(get_engine),
):
    target = _target(actor, account_id)
    rows = ledger_service.list_entries(
        engine, target, limit=limit, offset=offset, point_type=point_type,
    )
    return {
        "account_id": target,
        "entries": [
            {
                "id": e.id,
                "point_type": e.point_type,
                "points": e.points,
                "description": e.description,
                "source_id": e.source_id,
                "created_at": as_utc(e.created_at).isoformat() if e.created_at else None,
            }
            for e in rows
        ],
    }


@router.get("/achievements")
def get_achievements(
    account_id: str | None = Query(None),
    actor: Actor = Depends(get_current_actor),
    engine: Engine = Depends(get_engine),
):
    target = _target(actor, account_id)
    unlocked = achievement_service.list_achievements(engine, target)
    progress = achievement_service.get_progress(engine, target)
    return {
        "account_id": target,
        "unlocked": [
            {
                "achievement_type": a.achievement_type,
                "points_awarded": a.points_awarded,
                "unlocked_at": as_utc(a.unlocked_at).isoformat() if a.unlocked_at else None,
            }
            for a in unlocked
        ],
        "progress": [
            {
                "achievement_type": str(p.achievement_type),
                "title": p.title,
                "metric": str(p.metric),
                "current": p.current,
                "threshold": p.threshold,
                "points": p.points,
                "unlocked": p.unlocked,
            }
            for p in progress
        ],
    }

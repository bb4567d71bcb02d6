"""
tally.api.routes.admin — Admin endpoints (JWT-protected)
=========================================================
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy import Engine

from tally.api.deps import Actor, get_collaborators, get_config, get_current_admin, get_engine
from tally.config import TallyConfig
from tally.services import (
    admin_service,
    bonus_service,
    invitation_service,
    ledger_service,
    reconciliation_service,
)
from tally.services.collaborators import Collaborators

router = APIRouter(prefix="/admin", tags=["admin"])


# ---------------------------------------------------------------------------
# Pydantic schemas
# ---------------------------------------------------------------------------
class PointsAdjust(BaseModel):
    account_id: str
    points: int
    reason: str
    penalty: bool = False


class EntryCorrection(BaseModel):
    entry_id: int
    reason: str


# ---------------------------------------------------------------------------
# Points
# ---------------------------------------------------------------------------
@router.post("/points/adjust", status_code=201)
def adjust_points(
    body: PointsAdjust,
    admin: Actor = Depends(get_current_admin),
    engine: Engine = Depends(get_engine),
):
    entry_id = admin_service.adjust_points(
        engine,
        actor_id=admin.id,
        account_id=body.account_id,
        points=body.points,
        reason=body.reason,
        penalty=body.penalty,
    )
    return {
        "entry_id": entry_id,
        "balance": ledger_service.balance_of(engine, body.account_id),
    }


@router.post("/points/correct", status_code=201)
def correct_entry(
    body: EntryCorrection,
    admin: Actor = Depends(get_current_admin),
    engine: Engine = Depends(get_engine),
):
    correction_id = admin_service.correct_entry(
        engine, actor_id=admin.id, entry_id=body.entry_id, reason=body.reason,
    )
    return {"entry_id": correction_id}


@router.get("/leaderboard")
def leaderboard(
    limit: int = Query(20, ge=1, le=100),
    admin: Actor = Depends(get_current_admin),
    engine: Engine = Depends(get_engine),
):
    rows = ledger_service.balances_by_account(engine, limit=limit)
    return {
        "leaderboard": [
            {"rank": i, "account_id": account_id, "balance": balance}
            for i, (account_id, balance) in enumerate(rows, start=1)
        ],
    }


# ---------------------------------------------------------------------------
# Sweeps
# ---------------------------------------------------------------------------
@router.post("/sweeps/retention")
def run_retention_sweep(
    admin: Actor = Depends(get_current_admin),
    engine: Engine = Depends(get_engine),
    collab: Collaborators = Depends(get_collaborators),
    cfg: TallyConfig = Depends(get_config),
):
    summary = bonus_service.run_retention_sweep(engine, collab, cfg)
    admin_service.log_sweep(engine, actor_id=admin.id, sweep="retention", summary=summary)
    return summary


@router.post("/sweeps/expiry")
def run_expiry_sweep(
    admin: Actor = Depends(get_current_admin),
    engine: Engine = Depends(get_engine),
):
    summary = {"expired": invitation_service.expire_stale_invitations(engine)}
    admin_service.log_sweep(engine, actor_id=admin.id, sweep="expiry", summary=summary)
    return summary


@router.post("/sweeps/reconcile")
def run_reconciliation(
    admin: Actor = Depends(get_current_admin),
    engine: Engine = Depends(get_engine),
    collab: Collaborators = Depends(get_collaborators),
    cfg: TallyConfig = Depends(get_config),
):
    summary = reconciliation_service.reconcile(engine, collab, cfg)
    admin_service.log_sweep(engine, actor_id=admin.id, sweep="reconcile", summary=summary)
    return summary


@router.post("/verifications/{trainer_id}")
def trainer_verified(
    trainer_id: str,
    admin: Actor = Depends(get_current_admin),
    engine: Engine = Depends(get_engine),
    collab: Collaborators = Depends(get_collaborators),
    cfg: TallyConfig = Depends(get_config),
):
    """Signal that *trainer_id* was verified; pays the inviter's bonus once."""
    entry_id = bonus_service.award_trainer_verification_bonus(engine, collab, cfg, trainer_id)
    return {"trainer_id": trainer_id, "awarded": entry_id is not None, "entry_id": entry_id}


# ---------------------------------------------------------------------------
# Invitations
# ---------------------------------------------------------------------------
@router.delete("/invitations/{invitation_id}")
def delete_invitation(
    invitation_id: str,
    reason: str | None = Query(None),
    admin: Actor = Depends(get_current_admin),
    engine: Engine = Depends(get_engine),
):
    admin_service.delete_invitation(
        engine, actor_id=admin.id, invitation_id=invitation_id, reason=reason,
    )
    return {"deleted": invitation_id}


# ---------------------------------------------------------------------------
# Audit Log
# ---------------------------------------------------------------------------
@router.get("/audit")
def get_audit_log(
    page: int = Query(1, ge=1),
    page_size: int = Query(25, ge=1, le=100),
    actor_id: str | None = Query(None),
    admin: Actor = Depends(get_current_admin),
    engine: Engine = Depends(get_engine),
):
    """Paginated admin audit log."""
    total, entries = admin_service.list_audit_log(
        engine, page=page, page_size=page_size, actor_id=actor_id,
    )
    return {"total": total, "page": page, "page_size": page_size, "entries": entries}

"""
tally.services.ledger_service — Append-Only Points Ledger
==========================================================

Every point an account earns or loses is one immutable row in
``points_ledger``.  There is no balance column anywhere: a balance is
always ``SUM(points)`` over the account's rows, computed at read time.

Reward types keyed by ``source_id`` (acceptance rewards, achievement
unlocks, retention and verification bonuses) are protected by the partial
unique index ``ix_points_ledger_idempotent``.  Inserts for those types run
under a SAVEPOINT and treat ``IntegrityError`` as "already awarded": the
caller gets ``None`` back and the surrounding transaction stays usable.
That is what turns at-least-once triggers (API retries, overlapping sweeps,
racing acceptances) into exactly-once effects.
"""

from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import Engine, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from tally.database.engine import get_session
from tally.database.models import KEYED_POINT_TYPES, PointsLedgerEntry, PointType
from tally.errors import ValidationError

logger = logging.getLogger(__name__)


def _validate(point_type: str, points: int, description: str, source_id: str | None) -> None:
    try:
        PointType(point_type)
    except ValueError:
        raise ValidationError(f"Unknown point type: {point_type!r}") from None
    if not isinstance(points, int) or isinstance(points, bool) or points == 0:
        raise ValidationError("points must be a non-zero integer")
    if not description or not description.strip():
        raise ValidationError("description must not be empty")
    if point_type in KEYED_POINT_TYPES and not source_id:
        raise ValidationError(f"{point_type} entries require a source_id")


def append_entry(
    session: Session,
    *,
    account_id: str,
    point_type: str,
    points: int,
    description: str,
    source_id: str | None = None,
    created_at: datetime | None = None,
) -> int | None:
    """Append one entry inside the caller's transaction.

    Returns the new entry id, or ``None`` when a keyed entry for
    ``(account_id, point_type, source_id)`` already exists.
    """
    _validate(point_type, points, description, source_id)

    entry = PointsLedgerEntry(
        account_id=account_id,
        point_type=str(point_type),
        points=points,
        description=description.strip(),
        source_id=source_id,
    )
    if created_at is not None:
        entry.created_at = created_at

    if point_type in KEYED_POINT_TYPES:
        # SAVEPOINT + IntegrityError: the partial unique index decides.
        try:
            with session.begin_nested():
                session.add(entry)
                session.flush()
        except IntegrityError:
            logger.info(
                "Ledger: %s for %s (source=%s) already recorded — skipped",
                point_type, account_id, source_id,
            )
            return None
    else:
        session.add(entry)
        session.flush()

    logger.info(
        "Ledger: %+d %s → %s (source=%s, entry=%d)",
        points, point_type, account_id, source_id, entry.id,
    )
    return entry.id


def append(
    engine: Engine,
    account_id: str,
    point_type: str,
    points: int,
    description: str,
    source_id: str | None = None,
) -> int | None:
    """Append one entry in its own transaction.  See :func:`append_entry`."""
    with get_session(engine) as session:
        return append_entry(
            session,
            account_id=account_id,
            point_type=point_type,
            points=points,
            description=description,
            source_id=source_id,
        )


def has_entry(session: Session, account_id: str, point_type: str, source_id: str) -> bool:
    """True if the keyed entry already exists."""
    return session.scalar(
        select(PointsLedgerEntry.id).where(
            PointsLedgerEntry.account_id == account_id,
            PointsLedgerEntry.point_type == point_type,
            PointsLedgerEntry.source_id == source_id,
        ).limit(1)
    ) is not None


def sum_points(session: Session, account_id: str) -> int:
    return int(session.scalar(
        select(func.coalesce(func.sum(PointsLedgerEntry.points), 0)).where(
            PointsLedgerEntry.account_id == account_id
        )
    ) or 0)


def balance_of(engine: Engine, account_id: str) -> int:
    """Current balance: the aggregate sum over the account's entries."""
    with get_session(engine) as session:
        return sum_points(session, account_id)


def list_entries(
    engine: Engine,
    account_id: str,
    *,
    limit: int = 50,
    offset: int = 0,
    point_type: str | None = None,
) -> list[PointsLedgerEntry]:
    """Newest-first page of an account's entries (detached instances)."""
    with get_session(engine) as session:
        q = select(PointsLedgerEntry).where(PointsLedgerEntry.account_id == account_id)
        if point_type is not None:
            q = q.where(PointsLedgerEntry.point_type == point_type)
        q = q.order_by(PointsLedgerEntry.id.desc()).limit(limit).offset(offset)
        rows = list(session.scalars(q).all())
        for row in rows:
            session.expunge(row)
        return rows


def balances_by_account(engine: Engine, *, limit: int = 20) -> list[tuple[str, int]]:
    """Top balances, highest first — an aggregate, never a stored column."""
    total = func.sum(PointsLedgerEntry.points).label("balance")
    with get_session(engine) as session:
        rows = session.execute(
            select(PointsLedgerEntry.account_id, total)
            .group_by(PointsLedgerEntry.account_id)
            .order_by(total.desc(), PointsLedgerEntry.account_id)
            .limit(limit)
        ).all()
    return [(row.account_id, int(row.balance)) for row in rows]


def keyed_sources(session: Session, point_type: str) -> set[tuple[str, str]]:
    """All ``(account_id, source_id)`` pairs recorded for a keyed type."""
    rows = session.execute(
        select(PointsLedgerEntry.account_id, PointsLedgerEntry.source_id).where(
            PointsLedgerEntry.point_type == point_type
        )
    ).all()
    return {(row.account_id, row.source_id) for row in rows}

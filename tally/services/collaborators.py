"""
tally.services.collaborators — External Collaborator Interfaces
================================================================

The ledger does not own accounts or workout logs; it only asks questions
about them.  Each question is a small :class:`~typing.Protocol` so tests can
pass a ``MagicMock`` and deployments can point at whatever service owns the
data.  The default implementations read the collaborator-owned tables in
the same database.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Protocol

from sqlalchemy import Engine, select
from sqlalchemy.orm import Session

from tally.database.models import Account, AccountRole, AccountStatus, ActivityEntry
from tally.services.email_service import EmailSender, LoggingEmailSender


@dataclass(frozen=True, slots=True)
class AccountInfo:
    id: str
    email: str
    role: str
    status: str
    trainer_verified: bool = False

    @property
    def is_trainer(self) -> bool:
        return self.role == AccountRole.TRAINER

    @property
    def is_active(self) -> bool:
        return self.status == AccountStatus.ACTIVE


class AccountDirectory(Protocol):
    def get(self, account_id: str) -> AccountInfo | None: ...

    def find_by_email(self, email: str) -> AccountInfo | None: ...


class ActivityFeed(Protocol):
    def has_recent_activity(self, account_id: str, since: datetime) -> bool: ...


def _info(row: Account) -> AccountInfo:
    return AccountInfo(
        id=row.id,
        email=row.email,
        role=row.role,
        status=row.status,
        trainer_verified=bool(row.trainer_verified),
    )


# ---------------------------------------------------------------------------
# SQL-backed defaults
# ---------------------------------------------------------------------------
class SqlAccountDirectory:
    """Read-only lookups against the ``accounts`` table."""

    def __init__(self, engine: Engine) -> None:
        self._engine = engine

    def get(self, account_id: str) -> AccountInfo | None:
        with Session(self._engine) as session:
            row = session.get(Account, account_id)
            return _info(row) if row else None

    def find_by_email(self, email: str) -> AccountInfo | None:
        with Session(self._engine) as session:
            row = session.scalar(
                select(Account).where(Account.email == email.strip().lower())
            )
            return _info(row) if row else None


class SqlActivityFeed:
    """Activity means at least one workout entry logged at or after *since*."""

    def __init__(self, engine: Engine) -> None:
        self._engine = engine

    def has_recent_activity(self, account_id: str, since: datetime) -> bool:
        with Session(self._engine) as session:
            hit = session.scalar(
                select(ActivityEntry.id)
                .where(
                    ActivityEntry.account_id == account_id,
                    ActivityEntry.logged_at >= since,
                )
                .limit(1)
            )
            return hit is not None


# ---------------------------------------------------------------------------
# Bundle handed to services
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class Collaborators:
    accounts: AccountDirectory
    activity: ActivityFeed
    email: EmailSender = field(default_factory=LoggingEmailSender)

    @classmethod
    def from_engine(cls, engine: Engine, email: EmailSender | None = None) -> Collaborators:
        return cls(
            accounts=SqlAccountDirectory(engine),
            activity=SqlActivityFeed(engine),
            email=email or LoggingEmailSender(),
        )

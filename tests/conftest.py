"""
tests/conftest.py — Shared Test Fixtures
=========================================
"""

from __future__ import annotations

import os

# ---------------------------------------------------------------------------
# Ensure a valid JWT_SECRET is always set for test runs.
# This must happen before any import of tally.api.deps which validates
# the secret at module-load time.
# ---------------------------------------------------------------------------
_TEST_JWT_SECRET = "test-secret-for-pytest-only-" + "x" * 40  # > 32 chars
os.environ.setdefault("JWT_SECRET", _TEST_JWT_SECRET)

from collections.abc import Callable  # noqa: E402

import pytest  # noqa: E402
from sqlalchemy import Engine, create_engine, event  # noqa: E402

# ---------------------------------------------------------------------------
# Make JSONB columns work in SQLite for testing.
# SQLite doesn't support JSONB natively, but SQLAlchemy's JSON type works.
# We register a custom type compiler so SQLite renders JSONB as TEXT.
# ---------------------------------------------------------------------------
from sqlalchemy.dialects.postgresql import JSONB as PG_JSONB  # noqa: E402
from sqlalchemy.orm import Session  # noqa: E402

from tally.config import TallyConfig, default_config  # noqa: E402
from tally.database.models import Account, AccountRole, AccountStatus, Base  # noqa: E402
from tally.services.collaborators import Collaborators  # noqa: E402
from tally.services.email_service import LoggingEmailSender  # noqa: E402

_jsonb_sqlite_registered = False


def _register_jsonb_sqlite_compat():
    """Register SQLite compilation for PG JSONB type (idempotent)."""
    global _jsonb_sqlite_registered
    if _jsonb_sqlite_registered:
        return
    from sqlalchemy.ext.compiler import compiles

    @compiles(PG_JSONB, "sqlite")
    def _compile_jsonb_as_text(type_, compiler, **kw):
        return "TEXT"

    _jsonb_sqlite_registered = True


_register_jsonb_sqlite_compat()


@pytest.fixture
def db_engine() -> Engine:
    """Create an in-memory SQLite engine with all Tally tables.

    JSONB columns are transparently mapped to TEXT for SQLite compatibility.
    Uses StaticPool so all threads share the same in-memory database
    (required by ``asyncio.to_thread`` and FastAPI's threadpool).
    """
    from sqlalchemy.pool import StaticPool

    engine = create_engine(
        "sqlite://",
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    return engine


@pytest.fixture
def file_engine(tmp_path) -> Engine:
    """File-backed SQLite engine with a real connection pool.

    Each thread gets its own connection, so racing transactions contend on
    SQLite's write lock the way concurrent requests contend on PostgreSQL
    row locks.
    """
    engine = create_engine(
        f"sqlite:///{tmp_path / 'tally.db'}",
        echo=False,
        connect_args={"check_same_thread": False, "timeout": 30},
        pool_size=10,
        max_overflow=10,
    )

    @event.listens_for(engine, "connect")
    def _wal(dbapi_conn, _record):
        dbapi_conn.execute("PRAGMA journal_mode=WAL")

    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db_session(db_engine: Engine):
    """Provide a transactional session that rolls back after each test."""
    with Session(db_engine) as session:
        yield session
        session.rollback()


# ---------------------------------------------------------------------------
# Accounts & collaborators
# ---------------------------------------------------------------------------
def make_account(
    engine: Engine,
    account_id: str,
    role: str = AccountRole.CLIENT,
    *,
    email: str | None = None,
    status: str = AccountStatus.ACTIVE,
    trainer_verified: bool = False,
) -> str:
    """Insert an account row and return its id.  Usable as a plain helper."""
    with Session(engine) as session:
        session.add(Account(
            id=account_id,
            email=email or f"{account_id}@example.com",
            role=str(role),
            status=str(status),
            trainer_verified=trainer_verified,
        ))
        session.commit()
    return account_id


@pytest.fixture
def add_account(db_engine) -> Callable[..., str]:
    def _add(account_id: str, role: str = AccountRole.CLIENT, **kwargs) -> str:
        return make_account(db_engine, account_id, role, **kwargs)
    return _add


@pytest.fixture
def accounts(db_engine) -> dict[str, str]:
    """Two trainers, a client and an admin."""
    return {
        "trainer": make_account(db_engine, "trainer-1", AccountRole.TRAINER),
        "trainer2": make_account(db_engine, "trainer-2", AccountRole.TRAINER),
        "client": make_account(db_engine, "client-1", AccountRole.CLIENT),
        "admin": make_account(db_engine, "admin-1", AccountRole.ADMIN),
    }


@pytest.fixture
def cfg() -> TallyConfig:
    return default_config()


@pytest.fixture
def mailer() -> LoggingEmailSender:
    return LoggingEmailSender()


@pytest.fixture
def collab(db_engine, mailer) -> Collaborators:
    return Collaborators.from_engine(db_engine, email=mailer)


# ---------------------------------------------------------------------------
# Tokens
# ---------------------------------------------------------------------------
def make_token(sub: str, role: str = "CLIENT", is_admin: bool = False) -> str:
    """Create a bearer JWT.  Usable as both a fixture and a factory function."""
    import jwt

    from tally.api.deps import JWT_ALGORITHM, JWT_SECRET

    return jwt.encode(
        {"sub": sub, "role": role, "is_admin": is_admin},
        JWT_SECRET,
        algorithm=JWT_ALGORITHM,
    )


@pytest.fixture
def admin_token():
    return make_token("admin-1", "ADMIN", is_admin=True)

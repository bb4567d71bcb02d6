"""
tally.api.deps — FastAPI dependency injection
==============================================
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Annotated

import jwt
from fastapi import Depends, Header, HTTPException, status
from jwt.exceptions import InvalidTokenError
from sqlalchemy import Engine

from tally.config import TallyConfig, default_config, load_config
from tally.database.engine import create_db_engine
from tally.database.models import AccountRole
from tally.services.collaborators import Collaborators
from tally.services.email_service import EmailSender, build_sender

logger = logging.getLogger(__name__)

_WEAK_SECRETS = frozenset({
    "tally-dev-secret-change-me",
    "change-me",
    "secret",
    "dev",
    "",
})

_MIN_SECRET_LENGTH = 32

JWT_ALGORITHM = "HS256"


def _load_jwt_secret() -> str:
    """Load and validate JWT_SECRET from the environment.

    Raises RuntimeError at import time if the secret is missing, blank,
    too short (< 32 chars), or a known weak default.
    """
    secret = os.getenv("JWT_SECRET", "")
    if not secret:
        raise RuntimeError(
            "JWT_SECRET environment variable is not set. "
            "Generate one with: python -c \"import secrets; print(secrets.token_urlsafe(64))\""
        )
    if secret in _WEAK_SECRETS:
        raise RuntimeError(
            f"JWT_SECRET is set to a known weak default ('{secret}'). "
            "Please set a strong, unique secret."
        )
    if len(secret) < _MIN_SECRET_LENGTH:
        raise RuntimeError(
            f"JWT_SECRET is too short ({len(secret)} chars). "
            f"Minimum length is {_MIN_SECRET_LENGTH} characters."
        )
    return secret


JWT_SECRET: str = _load_jwt_secret()


@dataclass(frozen=True, slots=True)
class Actor:
    """The authenticated caller, decoded from the bearer token."""

    id: str
    role: str
    is_admin: bool = False

    @property
    def is_trainer(self) -> bool:
        return self.role == AccountRole.TRAINER


@lru_cache(maxsize=1)
def get_engine() -> Engine:
    return create_db_engine()


@lru_cache(maxsize=1)
def get_config() -> TallyConfig:
    path = os.getenv("TALLY_CONFIG", "config.yaml")
    try:
        return load_config(path)
    except FileNotFoundError:
        logger.warning("%s not found — using built-in defaults", path)
        return default_config()


@lru_cache(maxsize=1)
def get_email_sender() -> EmailSender:
    return build_sender(get_config())


def get_collaborators(
    engine: Annotated[Engine, Depends(get_engine)],
    email: Annotated[EmailSender, Depends(get_email_sender)],
) -> Collaborators:
    return Collaborators.from_engine(engine, email=email)


def _decode(authorization: str | None) -> dict:
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Missing token")
    token = authorization.split(" ", 1)[1]
    try:
        return jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except InvalidTokenError:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid token")


def get_current_actor(
    authorization: Annotated[str | None, Header()] = None,
) -> Actor:
    """Validate JWT and return the caller. Raises 401 if invalid."""
    payload = _decode(authorization)
    subject = payload.get("sub")
    if not subject:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid token")
    return Actor(
        id=str(subject),
        role=str(payload.get("role", AccountRole.CLIENT)).upper(),
        is_admin=bool(payload.get("is_admin")),
    )


def get_current_admin(actor: Annotated[Actor, Depends(get_current_actor)]) -> Actor:
    """Like :func:`get_current_actor` but 403 unless the token is an admin's."""
    if not actor.is_admin:
        raise HTTPException(status.HTTP_403_FORBIDDEN, "Not admin")
    return actor

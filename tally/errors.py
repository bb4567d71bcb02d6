"""
tally.errors — Domain Exception Hierarchy
==========================================

Every failure a primary lifecycle transition can surface to its caller.
Each class carries the HTTP status the API layer maps it to, so routes can
stay free of ``try/except`` ladders.

Reward side effects never raise these to end users — see
:mod:`tally.services.invitation_service` for the best-effort boundary.
"""

from __future__ import annotations


class TallyError(Exception):
    """Base class for all domain errors."""

    status_code: int = 400

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__


class ValidationError(TallyError):
    """Malformed input rejected before any write (bad email, ttl, description)."""

    status_code = 422


class NotFound(TallyError):
    """Unknown invitation, team, application or account id."""

    status_code = 404


class InvalidState(TallyError):
    """The entity is not in a state that allows the requested transition."""

    status_code = 409


class InvitationExpired(InvalidState):
    """``now > expires_at`` at acceptance time.  The row is already EXPIRED."""

    status_code = 410


class AlreadyMember(InvalidState):
    status_code = 409


class NotAMember(NotFound):
    status_code = 404


class CapacityExceeded(TallyError):
    """Team is at ``max_members``."""

    status_code = 409


TeamFull = CapacityExceeded


class PermissionDenied(TallyError):
    status_code = 403


class TransientStoreError(TallyError):
    """Connectivity loss or serialization conflict in the store.

    Raised by primary transitions so the caller (or the scheduler's next run)
    can retry.
    """

    status_code = 503

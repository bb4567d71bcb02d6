"""
tally.constants — Shared Constants & Helpers
=============================================

Single source of truth for the email pattern and UTC time handling.
Import from here instead of duplicating in services and routes.
"""

from __future__ import annotations

import re
from datetime import UTC, datetime

# ---------------------------------------------------------------------------
# Email syntax — deliberately permissive: one "@", a dotted domain, no spaces
# ---------------------------------------------------------------------------
EMAIL_REGEX = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

MAX_EMAIL_LENGTH = 320
MAX_BULK_INVITATIONS = 100


# ---------------------------------------------------------------------------
# Time helpers
# ---------------------------------------------------------------------------
def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(UTC)


def as_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes read back from the store.

    SQLite drops tzinfo on round-trip; every timestamp Tally writes is UTC,
    so naive values are UTC by construction.
    """
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


# ---------------------------------------------------------------------------
# Team limits
# ---------------------------------------------------------------------------
TEAM_NAME_REGEX = re.compile(r"^[A-Za-z0-9 _\-]{3,50}$")

MIN_TEAM_SIZE = 2   # owner plus at least one member
MAX_TEAM_SIZE = 50

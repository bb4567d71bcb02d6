"""
tally.config — YAML Configuration Loader
=========================================

Reads ``config.yaml`` for tuning values: reward amounts, invitation TTLs,
the retention window and sweep cadences.  Secrets (``DATABASE_URL``,
``JWT_SECRET``, ``EMAIL_API_KEY``) stay in the environment / ``.env``.

Usage::

    from tally.config import load_config

    cfg = load_config()               # reads ./config.yaml by default
    print(cfg.invitation_ttl_days)    # 7
    print(cfg.points_for("CLIENT_ACCEPTED"))  # 10
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

import yaml

# Reward amounts for the fixed-amount point types.  Achievement amounts live
# in the achievement table (tally.engine.achievements).
DEFAULT_REWARD_POINTS: dict[str, int] = {
    "CLIENT_ACCEPTED": 10,
    "TRAINER_ACCEPTED": 25,
    "BONUS_RETENTION": 50,
    "BONUS_TRAINER_VERIFICATION": 100,
}


# ---------------------------------------------------------------------------
# Typed settings object
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class TallyConfig:
    """Immutable configuration loaded from ``config.yaml``."""

    # Identity
    app_name: str = "Tally"
    base_url: str = "http://localhost:3000"
    email_from: str = "Tally <invites@tally.local>"

    # Invitations
    invitation_ttl_days: int = 7
    team_invitation_ttl_days: int = 7

    # Rewards
    reward_points: dict[str, int] = field(
        default_factory=lambda: dict(DEFAULT_REWARD_POINTS)
    )

    # Retention bonus eligibility
    retention_delay_days: int = 30
    retention_window_hours: int = 24
    activity_lookback_days: int = 7

    # Scheduler cadence (worker loop)
    retention_sweep_minutes: int = 60
    expiry_sweep_minutes: int = 60
    reconcile_hours: int = 168

    def points_for(self, point_type: str) -> int:
        """Configured amount for a fixed-amount reward type."""
        return self.reward_points.get(point_type, DEFAULT_REWARD_POINTS[point_type])

    def invitation_url(self, code: str) -> str:
        return f"{self.base_url.rstrip('/')}/invitations/{code}"


def default_config() -> TallyConfig:
    """Config with every value at its documented default."""
    return TallyConfig()


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def load_config(path: str | Path = "config.yaml") -> TallyConfig:
    """Read *path* and return a :class:`TallyConfig` instance.

    Keys missing from the file fall back to the dataclass defaults.

    Raises
    ------
    FileNotFoundError
        If the YAML file doesn't exist.
    ValueError
        If a reward amount is not a positive integer.
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(
            f"Configuration file not found: {config_path.resolve()}\n"
            "Hint: copy config.yaml.example → config.yaml and edit it."
        )

    with open(config_path, encoding="utf-8") as fh:
        raw: dict = yaml.safe_load(fh) or {}

    defaults = TallyConfig()

    reward_points = dict(DEFAULT_REWARD_POINTS)
    for key, value in (raw.get("reward_points") or {}).items():
        if key not in DEFAULT_REWARD_POINTS:
            raise ValueError(f"Unknown reward type in config: {key!r}")
        if int(value) <= 0:
            raise ValueError(f"Reward amount for {key} must be positive, got {value!r}")
        reward_points[key] = int(value)

    invitations = raw.get("invitations") or {}
    retention = raw.get("retention") or {}
    scheduler = raw.get("scheduler") or {}

    return TallyConfig(
        app_name=raw.get("app_name", defaults.app_name),
        base_url=raw.get("base_url", defaults.base_url),
        email_from=raw.get("email_from", defaults.email_from),
        invitation_ttl_days=int(
            invitations.get("ttl_days", defaults.invitation_ttl_days)
        ),
        team_invitation_ttl_days=int(
            invitations.get("team_ttl_days", defaults.team_invitation_ttl_days)
        ),
        reward_points=reward_points,
        retention_delay_days=int(
            retention.get("delay_days", defaults.retention_delay_days)
        ),
        retention_window_hours=int(
            retention.get("window_hours", defaults.retention_window_hours)
        ),
        activity_lookback_days=int(
            retention.get("activity_lookback_days", defaults.activity_lookback_days)
        ),
        retention_sweep_minutes=int(
            scheduler.get("retention_minutes", defaults.retention_sweep_minutes)
        ),
        expiry_sweep_minutes=int(
            scheduler.get("expiry_minutes", defaults.expiry_sweep_minutes)
        ),
        reconcile_hours=int(
            scheduler.get("reconcile_hours", defaults.reconcile_hours)
        ),
    )

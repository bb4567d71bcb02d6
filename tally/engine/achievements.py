"""
tally.engine.achievements — Referral Achievement Table
=======================================================

Fixed threshold table evaluated against an account's accepted-invitation
statistics.  Each metric maps to a pure handler that reads the relevant
count out of :class:`InviteStats`; every row is checked independently.

This module is pure calculation — no database I/O.  Unlocking (the unique
insert plus the ledger entry) lives in
:mod:`tally.services.achievement_service`.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from enum import StrEnum

from tally.database.models import AchievementType

logger = logging.getLogger(__name__)


class Metric(StrEnum):
    TOTAL_ACCEPTED = "totalAccepted"
    TRAINER_ACCEPTED = "trainerAccepted"
    CLIENT_ACCEPTED = "clientAccepted"


# ---------------------------------------------------------------------------
# Inputs
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class InviteStats:
    """Accepted invitations sent by one account, split by invited role."""

    trainer_accepted: int = 0
    client_accepted: int = 0

    @property
    def total_accepted(self) -> int:
        return self.trainer_accepted + self.client_accepted


@dataclass(frozen=True, slots=True)
class AchievementRule:
    achievement_type: AchievementType
    metric: Metric
    threshold: int
    points: int
    title: str


@dataclass(frozen=True, slots=True)
class AchievementProgress:
    achievement_type: AchievementType
    title: str
    metric: Metric
    current: int
    threshold: int
    points: int
    unlocked: bool


# ---------------------------------------------------------------------------
# The table
# ---------------------------------------------------------------------------
ACHIEVEMENT_TABLE: tuple[AchievementRule, ...] = (
    AchievementRule(AchievementType.ROOKIE_RECRUITER, Metric.TOTAL_ACCEPTED, 5, 50,
                    "Rookie Recruiter"),
    AchievementRule(AchievementType.TALENT_SCOUT, Metric.TOTAL_ACCEPTED, 15, 150,
                    "Talent Scout"),
    AchievementRule(AchievementType.COMMUNITY_BUILDER, Metric.TOTAL_ACCEPTED, 50, 500,
                    "Community Builder"),
    AchievementRule(AchievementType.GROWTH_CHAMPION, Metric.TOTAL_ACCEPTED, 100, 1000,
                    "Growth Champion"),
    AchievementRule(AchievementType.TRAINER_MAGNET, Metric.TRAINER_ACCEPTED, 10, 200,
                    "Trainer Magnet"),
    AchievementRule(AchievementType.CLIENT_CONNECTOR, Metric.CLIENT_ACCEPTED, 25, 300,
                    "Client Connector"),
)

RULES_BY_TYPE: dict[str, AchievementRule] = {
    rule.achievement_type: rule for rule in ACHIEVEMENT_TABLE
}


# ---------------------------------------------------------------------------
# Metric handlers — pure functions InviteStats → int
# ---------------------------------------------------------------------------
METRIC_HANDLERS: dict[Metric, Callable[[InviteStats], int]] = {
    Metric.TOTAL_ACCEPTED: lambda s: s.total_accepted,
    Metric.TRAINER_ACCEPTED: lambda s: s.trainer_accepted,
    Metric.CLIENT_ACCEPTED: lambda s: s.client_accepted,
}


def metric_value(metric: Metric, stats: InviteStats) -> int:
    return METRIC_HANDLERS[metric](stats)


# ---------------------------------------------------------------------------
# Main check function
# ---------------------------------------------------------------------------
def check_thresholds(
    stats: InviteStats,
    already_unlocked: Iterable[str],
) -> list[AchievementRule]:
    """Return the rules newly met by *stats*.

    Parameters
    ----------
    stats : Accepted-invitation counts for the account.
    already_unlocked : Achievement types the account already holds.

    Returns
    -------
    Rules whose metric meets or exceeds the threshold and that are not yet
    unlocked, in table order.
    """
    unlocked = set(already_unlocked)
    due: list[AchievementRule] = []

    for rule in ACHIEVEMENT_TABLE:
        if rule.achievement_type in unlocked:
            continue
        if metric_value(rule.metric, stats) >= rule.threshold:
            due.append(rule)
            logger.debug(
                "Threshold met: %s (%s=%d >= %d)",
                rule.achievement_type, rule.metric,
                metric_value(rule.metric, stats), rule.threshold,
            )

    return due


def progress(stats: InviteStats, already_unlocked: Iterable[str]) -> list[AchievementProgress]:
    """Per-rule progress snapshot for display."""
    unlocked = set(already_unlocked)
    return [
        AchievementProgress(
            achievement_type=rule.achievement_type,
            title=rule.title,
            metric=rule.metric,
            current=metric_value(rule.metric, stats),
            threshold=rule.threshold,
            points=rule.points,
            unlocked=rule.achievement_type in unlocked,
        )
        for rule in ACHIEVEMENT_TABLE
    ]

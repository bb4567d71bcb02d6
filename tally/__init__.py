"""
Tally — Referral Invitation & Rewards Ledger
=============================================
Trainers and clients invite people to the platform or to their teams;
accepted invitations earn points, points unlock achievements, and retained
or verified referrals earn bonuses.  Every point lives in an append-only
ledger and every reward is paid at most once.

Package layout::

    tally/
    ├── config.py          # YAML → typed Python config
    ├── constants.py       # Email pattern, team limits, UTC helpers
    ├── errors.py          # Domain exceptions with HTTP status codes
    ├── database/
    │   ├── engine.py      # SQLAlchemy engine, sessions + async helper
    │   └── models.py      # All ORM models
    ├── engine/
    │   ├── invitations.py # Invitation transition table + validation
    │   └── achievements.py # Achievement threshold table
    ├── services/
    │   ├── ledger_service.py         # Append-only points ledger
    │   ├── invitation_service.py     # Invitation lifecycle + acceptance rewards
    │   ├── achievement_service.py    # Achievement unlocking
    │   ├── bonus_service.py          # Retention + verification bonuses
    │   ├── team_service.py           # Membership + capacity guard
    │   ├── reconciliation_service.py # Repairs missed side effects
    │   ├── admin_service.py          # Audit-logged admin mutations
    │   ├── collaborators.py          # Account / activity / email interfaces
    │   └── email_service.py          # Outbound invitation email
    ├── worker/
    │   └── __main__.py    # Scheduled sweeps (python -m tally.worker)
    └── api/
        ├── main.py        # FastAPI app
        ├── deps.py        # Engine, config, JWT actor dependencies
        └── routes/        # Invitation, points, team and admin endpoints
"""

__version__ = "0.1.0"

"""
tally.worker.__main__ — Scheduled sweeps, ``python -m tally.worker``
=====================================================================

One-shot commands for an external scheduler (cron, Kubernetes CronJob)::

    python -m tally.worker retention        # pay retention bonuses
    python -m tally.worker expiry           # flip stale PENDING → EXPIRED
    python -m tally.worker reconcile        # repair missed side effects
    python -m tally.worker verify <id>      # trainer <id> was verified

or a long-running loop that schedules all three sweeps itself::

    python -m tally.worker run

Each job runs through ``run_db()`` so the event loop is never blocked, and
a failing run is logged and retried on the next tick.  One-shot commands
exit 0 on success and 1 on failure.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from collections.abc import Callable

from dotenv import load_dotenv

from tally.config import TallyConfig, default_config, load_config
from tally.database.engine import create_db_engine, init_db, run_db
from tally.services import bonus_service, invitation_service, reconciliation_service
from tally.services.collaborators import Collaborators
from tally.services.email_service import build_sender

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s │ %(levelname)-8s │ %(name)s │ %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger("tally")


# ---------------------------------------------------------------------------
# Jobs — each returns a summary dict
# ---------------------------------------------------------------------------
def _retention(engine, collab: Collaborators, cfg: TallyConfig) -> dict:
    return bonus_service.run_retention_sweep(engine, collab, cfg)


def _expiry(engine, collab: Collaborators, cfg: TallyConfig) -> dict:
    return {"expired": invitation_service.expire_stale_invitations(engine)}


def _reconcile(engine, collab: Collaborators, cfg: TallyConfig) -> dict:
    return reconciliation_service.reconcile(engine, collab, cfg)


JOBS: dict[str, Callable[..., dict]] = {
    "retention": _retention,
    "expiry": _expiry,
    "reconcile": _reconcile,
}


def _intervals(cfg: TallyConfig) -> dict[str, int]:
    """Seconds between runs for each job in ``run`` mode."""
    return {
        "retention": cfg.retention_sweep_minutes * 60,
        "expiry": cfg.expiry_sweep_minutes * 60,
        "reconcile": cfg.reconcile_hours * 3600,
    }


async def _loop(name: str, interval: int, engine, collab: Collaborators, cfg: TallyConfig) -> None:
    job = JOBS[name]
    while True:
        try:
            result = await run_db(job, engine, collab, cfg)
            logger.info("%s task complete: %s", name.capitalize(), result)
        except Exception:
            logger.exception("%s task failed", name.capitalize(), extra={"task": name})
        await asyncio.sleep(interval)


async def _run_forever(engine, collab: Collaborators, cfg: TallyConfig) -> None:
    intervals = _intervals(cfg)
    logger.info("Worker started — intervals (s): %s", intervals)
    await asyncio.gather(*(
        _loop(name, interval, engine, collab, cfg)
        for name, interval in intervals.items()
    ))


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------
def _parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="python -m tally.worker", description="Tally scheduled sweeps")
    parser.add_argument("--config", default="config.yaml", help="path to config.yaml")
    sub = parser.add_subparsers(dest="command", required=True)
    for name in JOBS:
        sub.add_parser(name, help=f"run the {name} sweep once")
    verify = sub.add_parser("verify", help="award the trainer verification bonus")
    verify.add_argument("trainer_id")
    sub.add_parser("run", help="run every sweep on its schedule until interrupted")
    return parser


def _load(path: str) -> TallyConfig:
    try:
        return load_config(path)
    except FileNotFoundError:
        logger.warning("%s not found — using built-in defaults", path)
        return default_config()


def main(argv: list[str] | None = None) -> int:
    args = _parser().parse_args(argv)

    load_dotenv()
    cfg = _load(args.config)
    engine = create_db_engine()
    init_db(engine)
    collab = Collaborators.from_engine(engine, email=build_sender(cfg))

    if args.command == "run":
        try:
            asyncio.run(_run_forever(engine, collab, cfg))
        except KeyboardInterrupt:
            logger.info("Shutting down gracefully…")
        return 0

    try:
        if args.command == "verify":
            entry_id = bonus_service.award_trainer_verification_bonus(
                engine, collab, cfg, args.trainer_id,
            )
            logger.info("Verification bonus for %s: %s", args.trainer_id,
                        f"awarded (entry {entry_id})" if entry_id else "not awarded")
        else:
            result = JOBS[args.command](engine, collab, cfg)
            logger.info("%s complete: %s", args.command.capitalize(), result)
    except Exception:
        logger.exception("%s failed", args.command)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())

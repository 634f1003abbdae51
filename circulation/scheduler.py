"""
Periodic notification sweep.

``build_scheduler`` returns an APScheduler background scheduler that runs
the sweep every ``SWEEP_INTERVAL_HOURS``; the FastAPI lifespan starts and
stops it. ``main`` runs a single pass for cron:

    circulation-sweep --job=overdue
"""

import argparse
import json
import logging
from typing import List, Optional

from apscheduler.schedulers.background import BackgroundScheduler

from .config import configure_logging, sweep_interval_hours
from .schemas import NotificationEvent
from .sweep import ALL_JOBS, EventSink
from .system import LibrarySystem

logger = logging.getLogger(__name__)

SWEEP_JOB_ID = "notification-sweep"


def run_sweep_job(system: LibrarySystem, sink: Optional[EventSink] = None) -> None:
    try:
        result = system.run_sweep(sink=sink)
    except Exception:
        logger.exception("scheduled sweep failed")
        return
    if result.delivery_failed:
        logger.error("scheduled sweep could not deliver %d event(s); they will be retried", len(result.events))
        return
    logger.info("scheduled sweep produced %d event(s)", len(result.events))


def build_scheduler(
    system: LibrarySystem,
    interval_hours: Optional[float] = None,
    sink: Optional[EventSink] = None,
) -> BackgroundScheduler:
    scheduler = BackgroundScheduler(timezone="UTC")
    scheduler.add_job(
        run_sweep_job,
        "interval",
        hours=interval_hours or sweep_interval_hours(),
        args=[system, sink],
        id=SWEEP_JOB_ID,
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )
    return scheduler


def print_events(events: List[NotificationEvent]) -> None:
    print(json.dumps([e.model_dump(mode="json") for e in events], indent=2))


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Run one notification sweep")
    parser.add_argument(
        "--job",
        choices=list(ALL_JOBS) + ["all"],
        default="all",
        help="sweep job to run (default: all)",
    )
    args = parser.parse_args(argv)

    configure_logging()
    system = LibrarySystem.from_env()
    jobs = None if args.job == "all" else [args.job]
    result = system.run_sweep(jobs=jobs, sink=print_events)
    if not result.events and not result.delivery_failed:
        print_events([])

    s = result.summary
    logger.info("Summary: processed %d, succeeded %d, failed %d", s.processed, s.succeeded, s.failed)
    return 1 if result.interrupted or result.delivery_failed else 0


if __name__ == "__main__":
    raise SystemExit(main())

"""Background scheduler integration."""

from __future__ import annotations

import atexit
import logging
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler

from .config import get_settings
from .db import init_db
from .errors import IngestError
from .jobs import ConflictPolicy, JobOrchestrator
from .pipeline import run_job


logger = logging.getLogger(__name__)

_scheduler: Optional[BackgroundScheduler] = None


def _scheduled_run(proc_type: str) -> None:
    try:
        run_job(proc_type, on_conflict=ConflictPolicy.SKIP)
    except IngestError:
        # Already recorded as a failed job; keep the schedule alive.
        logger.exception("Scheduled %s failed", proc_type)


def start_scheduler() -> BackgroundScheduler:
    global _scheduler
    if _scheduler and _scheduler.running:
        return _scheduler

    settings = get_settings()
    init_db()
    JobOrchestrator().recover_stale()

    scheduler = BackgroundScheduler()
    intervals = {
        "load_intraday": settings.intraday_interval_minutes,
        "load_open_close": settings.open_close_interval_minutes,
        "load_tops": settings.tops_interval_minutes,
        "load_news": settings.news_interval_minutes,
    }
    for proc_type, minutes in intervals.items():
        scheduler.add_job(
            _scheduled_run,
            "interval",
            args=[proc_type],
            minutes=minutes,
            id=proc_type,
            max_instances=1,
            replace_existing=True,
        )
    scheduler.start()

    atexit.register(lambda: scheduler.shutdown(wait=False))
    _scheduler = scheduler
    return scheduler


def stop_scheduler() -> None:
    global _scheduler
    if _scheduler and _scheduler.running:
        _scheduler.shutdown(wait=False)
    _scheduler = None


__all__ = ["start_scheduler", "stop_scheduler"]

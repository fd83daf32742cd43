"""Background reconcile sweep on APScheduler."""

from __future__ import annotations

import logging

from apscheduler.schedulers.background import BackgroundScheduler

from .config import settings
from .reconcile import run_reconcile_cycle

logger = logging.getLogger("uvicorn.error")

RECONCILE_JOB_ID = "reconcile-cycle"

_scheduler: BackgroundScheduler | None = None


def build_scheduler(interval_minutes: int | None = None) -> BackgroundScheduler:
    scheduler = BackgroundScheduler(timezone="UTC")
    scheduler.add_job(
        run_reconcile_cycle,
        "interval",
        minutes=interval_minutes or settings.reconcile_interval_minutes,
        id=RECONCILE_JOB_ID,
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )
    return scheduler


def start_scheduler() -> BackgroundScheduler:
    global _scheduler
    if _scheduler and _scheduler.running:
        return _scheduler
    _scheduler = build_scheduler()
    _scheduler.start()
    logger.info(
        "Reconcile sweep scheduled every %d minutes",
        settings.reconcile_interval_minutes,
    )
    return _scheduler


def stop_scheduler() -> None:
    global _scheduler
    if _scheduler and _scheduler.running:
        _scheduler.shutdown(wait=False)
    _scheduler = None

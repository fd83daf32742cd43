from __future__ import annotations

from datetime import timedelta

from openbroadcast import scheduler
from openbroadcast.reconcile import run_reconcile_cycle


def test_build_scheduler_registers_reconcile_job():
    background = scheduler.build_scheduler(interval_minutes=5)

    job = background.get_job(scheduler.RECONCILE_JOB_ID)
    assert job is not None
    assert job.func is run_reconcile_cycle
    assert job.trigger.interval == timedelta(minutes=5)
    assert background.running is False


def test_stop_scheduler_without_start_is_noop():
    scheduler.stop_scheduler()
    assert scheduler._scheduler is None

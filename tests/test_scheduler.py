"""
Scheduler wiring tests - the scheduler is configured but never started
"""

from unittest.mock import AsyncMock, MagicMock

from jobs.scheduler import DealScheduler


def make_scheduler(interval_seconds=30):
    reconciler = MagicMock()
    reconciler.run_tick = AsyncMock()
    return DealScheduler(reconciler, interval_seconds=interval_seconds), reconciler


def test_reconciliation_job_registered_once():
    scheduler, reconciler = make_scheduler()

    scheduler.setup_jobs()
    scheduler.setup_jobs()

    jobs = scheduler.scheduler.get_jobs()
    assert [job.id for job in jobs] == ["deal_reconciliation"]
    assert jobs[0].func is reconciler.run_tick
    assert jobs[0].max_instances == 1
    assert jobs[0].coalesce is True


def test_interval_comes_from_config_by_default(monkeypatch):
    from config import Config
    monkeypatch.setattr(Config, "RECONCILIATION_INTERVAL_SECONDS", 45)

    scheduler, _ = make_scheduler(interval_seconds=None)

    assert scheduler.interval_seconds == 45


def test_stop_without_start_is_safe():
    scheduler, _ = make_scheduler()
    scheduler.stop()
    assert not scheduler.scheduler.running

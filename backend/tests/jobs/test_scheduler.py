"""Scheduler registration."""

from unittest.mock import MagicMock

import pytest
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from jobs import scheduler as scheduler_module
from tradecal.config import settings


@pytest.fixture
def clean_scheduler():
    yield scheduler_module.scheduler
    scheduler_module.scheduler.remove_all_jobs()


def test_register_jobs(clean_scheduler):
    count = scheduler_module.register_jobs(holder=MagicMock(), valuation_source=MagicMock())

    jobs = {job.id: job for job in clean_scheduler.get_jobs()}
    assert count == 4
    assert set(jobs) == {"background_calibration", "weekly_recalibration", "weekly_drift", "model_metrics_rollup"}
    assert isinstance(jobs["background_calibration"].trigger, IntervalTrigger)
    assert isinstance(jobs["weekly_drift"].trigger, CronTrigger)
    assert isinstance(jobs["model_metrics_rollup"].trigger, CronTrigger)


def test_disabled_scheduler_does_not_start(clean_scheduler, monkeypatch):
    monkeypatch.setattr(settings, "scheduler_enabled", False)

    scheduler_module.start_scheduler(valuation_source=MagicMock())

    assert clean_scheduler.running is False
    assert clean_scheduler.get_jobs() == []

"""
Background scheduler for calibration jobs.

- background calibration (backfill -> full calibration -> drift) every
  calibration_interval_hours
- weekly recalibration and a drift check on the configured weekday/hour
- the daily model metrics rollup for yesterday at metrics_rollup_hour

Jobs run synchronously in a dedicated thread pool so the event loop hosting
the admin API is never blocked.
"""

import asyncio
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Dict, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from tradecal.calibration.cache import CalibrationStateHolder
from tradecal.config import settings
from tradecal.log_config import logger
from tradecal.monitoring.valuation_source import ValuationSource

from jobs.background_calibration import run_background_calibration
from jobs.drift_detection import run_drift_detection_job
from jobs.model_metrics_rollup import run_model_metrics_rollup_job
from jobs.weekly_recalibration import run_weekly_recalibration_job

scheduler = AsyncIOScheduler()

# Calibration jobs share one lease, so a single worker is enough
CALIBRATION_JOB_POOL = ThreadPoolExecutor(max_workers=1, thread_name_prefix="calibration-job-")

_pool_shutdown = False


async def _run_in_pool(label: str, fn: Callable[..., Dict[str, Any]], **kwargs) -> Optional[Dict[str, Any]]:
    loop = asyncio.get_running_loop()
    try:
        stats = await loop.run_in_executor(CALIBRATION_JOB_POOL, lambda: fn(**kwargs))
    except Exception as e:
        logger.exception(f"{label} job crashed: {e}")
        return None

    if stats.get("success"):
        logger.info(f"{label} completed (skipped={stats.get('skipped', False)})")
    else:
        logger.warning(f"{label} completed with errors: {stats.get('error') or stats.get('failed_stages')}")
    return stats


def register_jobs(
    holder: Optional[CalibrationStateHolder] = None,
    valuation_source: Optional[ValuationSource] = None,
) -> int:
    """Register calibration jobs on the scheduler. Returns the job count."""
    source = valuation_source or ValuationSource()

    async def background_calibration_job():
        await _run_in_pool(
            "Background calibration",
            run_background_calibration,
            holder=holder,
            valuation_source=source,
        )

    async def weekly_recalibration_job():
        await _run_in_pool("Weekly recalibration", run_weekly_recalibration_job, holder=holder)

    async def weekly_drift_job():
        await _run_in_pool("Weekly drift detection", run_drift_detection_job, holder=holder, valuation_source=source)

    async def model_metrics_rollup_job():
        await _run_in_pool("Model metrics rollup", run_model_metrics_rollup_job)

    scheduler.add_job(
        background_calibration_job,
        trigger=IntervalTrigger(hours=settings.calibration_interval_hours),
        id="background_calibration",
        name="Background Calibration Cycle",
        replace_existing=True,
    )
    logger.info(f"Added background calibration job (every {settings.calibration_interval_hours}h)")

    scheduler.add_job(
        weekly_recalibration_job,
        trigger=CronTrigger(day_of_week=settings.drift_cron_day_of_week, hour=settings.drift_cron_hour, minute=0),
        id="weekly_recalibration",
        name="Weekly Shadow/Segment Recalibration",
        replace_existing=True,
    )

    scheduler.add_job(
        weekly_drift_job,
        trigger=CronTrigger(day_of_week=settings.drift_cron_day_of_week, hour=settings.drift_cron_hour, minute=30),
        id="weekly_drift",
        name="Weekly Drift Detection",
        replace_existing=True,
    )
    logger.info(
        f"Added weekly recalibration and drift jobs "
        f"({settings.drift_cron_day_of_week} {settings.drift_cron_hour:02d}:00 UTC)"
    )

    scheduler.add_job(
        model_metrics_rollup_job,
        trigger=CronTrigger(hour=settings.metrics_rollup_hour, minute=15),
        id="model_metrics_rollup",
        name="Daily Model Metrics Rollup",
        replace_existing=True,
    )
    logger.info(f"Added daily model metrics rollup job ({settings.metrics_rollup_hour:02d}:15 UTC)")
    return len(scheduler.get_jobs())


def start_scheduler(
    holder: Optional[CalibrationStateHolder] = None,
    valuation_source: Optional[ValuationSource] = None,
) -> None:
    """Register jobs and start the scheduler on the running event loop."""
    if not settings.scheduler_enabled:
        logger.info("Scheduler disabled by configuration")
        return

    count = register_jobs(holder=holder, valuation_source=valuation_source)
    scheduler.start()
    logger.info(f"Scheduler started with {count} jobs")


def stop_scheduler() -> None:
    """Stop the scheduler and the job pool."""
    global _pool_shutdown

    if scheduler.running:
        scheduler.shutdown()
        logger.info("Scheduler stopped")

    if _pool_shutdown:
        logger.debug("Calibration job pool already shut down")
        return

    try:
        CALIBRATION_JOB_POOL.shutdown(wait=True, cancel_futures=True)
    except RuntimeError as e:
        logger.debug(f"Calibration job pool shutdown skipped: {e}")
    _pool_shutdown = True

"""
Background Calibration - backfill outcomes, calibrate, then check drift.

This job orchestrates one calibration cycle:
1. Backfills implicit ACCEPTED outcomes from analyzed historical trades
2. Runs intercept, feedback and isotonic calibration
3. Builds the drift report

Each stage is isolated: a failing stage is logged and recorded in the stats,
and the next stage still runs. The calibration lease is held for the whole
cycle.
"""

import sys
from datetime import datetime
from typing import Callable, Optional

from tradecal.calibration.cache import CalibrationStateHolder
from tradecal.calibration.lock import CALIBRATION_LEASE, job_lease
from tradecal.config import settings
from tradecal.log_config import job_logger, logger
from tradecal.monitoring.valuation_source import ValuationSource
from tradecal.utils.datetime import utcnow
from tradecal.utils.errors import LockUnavailableError

from jobs.backfill_trade_outcomes import run_backfill_job
from jobs.calibration import run_calibration_job
from jobs.drift_detection import run_drift_detection_job


def _extend(lease) -> None:
    """Refresh the cycle lease between stages; a lost lease ends the cycle."""
    if not lease.refresh():
        raise LockUnavailableError(f"Lease '{CALIBRATION_LEASE}' lost mid-cycle", details={"lease": lease.name})


def run_background_calibration(
    season: Optional[int] = None,
    holder: Optional[CalibrationStateHolder] = None,
    clock: Optional[Callable[[], datetime]] = None,
    valuation_source: Optional[ValuationSource] = None,
) -> dict:
    """
    Run backfill -> full calibration -> drift detection.

    Returns:
        Statistics dict with results from each stage
    """
    season = season if season is not None else settings.calibration_season
    pipeline_stats = {
        "started_at": utcnow().isoformat(),
        "season": season,
        "stages": {},
        "success": False,
        "skipped": False,
    }

    log = job_logger("background_calibration", season)
    log.info(f"Starting background calibration cycle for season {season}")

    try:
        with job_lease(CALIBRATION_LEASE, clock=clock) as lease:
            pipeline_stats["stages"]["backfill"] = run_backfill_job(season, clock=clock, use_lease=False)
            _extend(lease)
            pipeline_stats["stages"]["calibration"] = run_calibration_job(
                season, holder=holder, clock=clock, use_lease=False
            )
            _extend(lease)
            pipeline_stats["stages"]["drift"] = run_drift_detection_job(
                season, holder=holder, clock=clock, valuation_source=valuation_source, use_lease=False
            )
    except LockUnavailableError as e:
        log.info(f"Background calibration skipped: {e.message}")
        pipeline_stats["skipped"] = True
        pipeline_stats["success"] = True
        pipeline_stats["finished_at"] = utcnow().isoformat()
        return pipeline_stats

    failed = [name for name, stage in pipeline_stats["stages"].items() if not stage.get("success")]
    for name in failed:
        log.error(f"Background calibration stage '{name}' failed: {pipeline_stats['stages'][name].get('error')}")

    pipeline_stats["failed_stages"] = failed
    pipeline_stats["success"] = not failed
    pipeline_stats["finished_at"] = utcnow().isoformat()

    log.info(
        f"Background calibration cycle complete for season {season}: "
        f"{len(pipeline_stats['stages']) - len(failed)}/{len(pipeline_stats['stages'])} stages succeeded"
    )
    return pipeline_stats


def main():
    """Entry point for scheduled job."""
    stats = run_background_calibration(valuation_source=ValuationSource())

    if not stats["success"]:
        logger.error(f"Background calibration failed stages: {stats.get('failed_stages')}")
        sys.exit(1)
    else:
        logger.info("Background calibration completed successfully")
        sys.exit(0)


if __name__ == "__main__":
    main()

"""
Full calibration job - intercept, feedback weights and isotonic map.

Run after new outcomes have been logged. Holds the calibration lease so a
second invocation while one is in flight skips instead of racing.
"""

import argparse
import sys
from datetime import datetime
from typing import Callable, Optional

from tradecal.calibration.cache import CalibrationStateHolder
from tradecal.calibration.lock import CALIBRATION_LEASE, job_lease
from tradecal.calibration.service import CalibrationService
from tradecal.config import settings
from tradecal.db.session import get_db_transaction
from tradecal.log_config import logger
from tradecal.utils.datetime import utcnow
from tradecal.utils.errors import LockUnavailableError


def run_calibration_job(
    season: Optional[int] = None,
    holder: Optional[CalibrationStateHolder] = None,
    clock: Optional[Callable[[], datetime]] = None,
    use_lease: bool = True,
) -> dict:
    """
    Run one full calibration cycle.

    Args:
        season: Season to calibrate (defaults to settings.calibration_season)
        holder: State holder to invalidate; a private one is used when omitted
        clock: Injected clock for tests
        use_lease: False when the caller already holds the calibration lease

    Returns:
        Statistics dict with the result of each step
    """
    season = season if season is not None else settings.calibration_season
    stats = {
        "started_at": utcnow().isoformat(),
        "season": season,
        "success": False,
        "skipped": False,
    }

    def _run() -> None:
        with get_db_transaction() as db:
            result = CalibrationService(db, season, holder=holder, clock=clock).run_full_calibration()
        # readers on other sessions may have cached the pre-commit row
        if holder is not None:
            holder.invalidate(season)
        stats["intercept"] = result.intercept.model_dump(mode="json")
        stats["feedback"] = result.feedback.model_dump(mode="json")
        stats["isotonic"] = result.isotonic.model_dump(mode="json")

    try:
        if use_lease:
            with job_lease(CALIBRATION_LEASE, clock=clock):
                _run()
        else:
            _run()
        stats["success"] = True
    except LockUnavailableError as e:
        logger.info(f"Calibration skipped: {e.message}")
        stats["skipped"] = True
        stats["success"] = True
    except Exception as e:
        logger.exception(f"Calibration job failed: {e}")
        stats["error"] = str(e)

    stats["finished_at"] = utcnow().isoformat()
    return stats


def main():
    """Entry point for scheduled job."""
    parser = argparse.ArgumentParser(description="Run intercept, feedback and isotonic calibration")
    parser.add_argument("--season", type=int, default=None, help="Season to calibrate")
    args = parser.parse_args()

    stats = run_calibration_job(season=args.season)

    if not stats["success"]:
        logger.error("Calibration job failed")
        sys.exit(1)
    else:
        logger.info(
            f"Calibration job completed: intercept {stats.get('intercept', {}).get('new_intercept')}, "
            f"isotonic fitted={stats.get('isotonic', {}).get('fitted')}"
        )
        sys.exit(0)


if __name__ == "__main__":
    main()

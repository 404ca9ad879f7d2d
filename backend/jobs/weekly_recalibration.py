"""
Weekly recalibration job - shadow promotion, shadow computation, segment intercepts.

Gated internally: a run within 6.5 days of the previous one is a no-op.
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


def run_weekly_recalibration_job(
    season: Optional[int] = None,
    holder: Optional[CalibrationStateHolder] = None,
    clock: Optional[Callable[[], datetime]] = None,
    use_lease: bool = True,
) -> dict:
    season = season if season is not None else settings.calibration_season
    stats = {
        "started_at": utcnow().isoformat(),
        "season": season,
        "success": False,
        "skipped": False,
    }

    def _run() -> None:
        with get_db_transaction() as db:
            result = CalibrationService(db, season, holder=holder, clock=clock).run_weekly_recalibration()
        if holder is not None:
            holder.invalidate(season)
        stats["skipped"] = result.skipped
        stats["result"] = result.model_dump(mode="json")

    try:
        if use_lease:
            with job_lease(CALIBRATION_LEASE, clock=clock):
                _run()
        else:
            _run()
        stats["success"] = True
    except LockUnavailableError as e:
        logger.info(f"Weekly recalibration skipped: {e.message}")
        stats["skipped"] = True
        stats["success"] = True
    except Exception as e:
        logger.exception(f"Weekly recalibration job failed: {e}")
        stats["error"] = str(e)

    stats["finished_at"] = utcnow().isoformat()
    return stats


def main():
    """Entry point for scheduled job."""
    parser = argparse.ArgumentParser(description="Run weekly shadow/segment recalibration")
    parser.add_argument("--season", type=int, default=None, help="Season to recalibrate")
    args = parser.parse_args()

    stats = run_weekly_recalibration_job(season=args.season)

    if not stats["success"]:
        logger.error("Weekly recalibration failed")
        sys.exit(1)
    else:
        logger.info(f"Weekly recalibration completed (skipped={stats['skipped']})")
        sys.exit(0)


if __name__ == "__main__":
    main()

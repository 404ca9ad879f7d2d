"""
Drift detection job - builds and stores the season's drift report.

Input drift needs the valuation market source; pass --no-input to skip it
(every market configuration is then reported as skipped).
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
from tradecal.monitoring.valuation_source import ValuationSource
from tradecal.utils.datetime import utcnow
from tradecal.utils.errors import LockUnavailableError


def run_drift_detection_job(
    season: Optional[int] = None,
    holder: Optional[CalibrationStateHolder] = None,
    clock: Optional[Callable[[], datetime]] = None,
    valuation_source: Optional[ValuationSource] = None,
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
            service = CalibrationService(
                db, season, holder=holder, clock=clock, valuation_source=valuation_source
            )
            report = service.run_drift_detection()
        if holder is not None:
            holder.invalidate(season)
        stats["overall_severity"] = report.overall_severity.value
        stats["alert_count"] = len(report.alerts)
        stats["input_skipped"] = list(report.input.skipped)

    try:
        if use_lease:
            with job_lease(CALIBRATION_LEASE, clock=clock):
                _run()
        else:
            _run()
        stats["success"] = True
    except LockUnavailableError as e:
        logger.info(f"Drift detection skipped: {e.message}")
        stats["skipped"] = True
        stats["success"] = True
    except Exception as e:
        logger.exception(f"Drift detection job failed: {e}")
        stats["error"] = str(e)

    stats["finished_at"] = utcnow().isoformat()
    return stats


def main():
    """Entry point for scheduled job."""
    parser = argparse.ArgumentParser(description="Run calibration drift detection")
    parser.add_argument("--season", type=int, default=None, help="Season to check")
    parser.add_argument("--no-input", action="store_true", help="Skip valuation input drift")
    args = parser.parse_args()

    source = None if args.no_input else ValuationSource()
    stats = run_drift_detection_job(season=args.season, valuation_source=source)

    if not stats["success"]:
        logger.error("Drift detection failed")
        sys.exit(1)
    else:
        logger.info(
            f"Drift detection completed: severity={stats.get('overall_severity')}, "
            f"alerts={stats.get('alert_count', 0)}"
        )
        sys.exit(0)


if __name__ == "__main__":
    main()

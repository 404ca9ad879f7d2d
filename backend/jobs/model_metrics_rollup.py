"""
Model metrics rollup job - writes the daily per-segment health rows.

Rolls up one UTC day (yesterday by default) for every offer mode. Each mode
commits on its own, so one failing mode does not lose the others.
"""

import argparse
import sys
from datetime import date, datetime, timedelta
from typing import Callable, Optional, Sequence

from tradecal.db.session import get_db_transaction
from tradecal.events.logger import OFFER_MODES
from tradecal.log_config import job_logger, logger
from tradecal.monitoring.rollup import rollup_model_metrics_daily
from tradecal.utils.datetime import utcnow


def run_model_metrics_rollup_job(
    day: Optional[date] = None,
    modes: Sequence[str] = OFFER_MODES,
    clock: Optional[Callable[[], datetime]] = None,
) -> dict:
    now = (clock or utcnow)()
    day = day or (now - timedelta(days=1)).date()
    stats = {
        "started_at": now.isoformat(),
        "day": day.isoformat(),
        "modes": {},
        "success": False,
    }

    log = job_logger("model_metrics_rollup")
    failed = []
    for mode in modes:
        try:
            with get_db_transaction() as db:
                stats["modes"][mode] = rollup_model_metrics_daily(db, day, mode)
        except Exception as e:
            log.exception(f"Model metrics rollup failed for {mode} on {day}: {e}")
            stats["modes"][mode] = {"error": str(e)}
            failed.append(mode)

    stats["failed_modes"] = failed
    stats["success"] = not failed
    stats["finished_at"] = utcnow().isoformat()
    log.info(
        f"Model metrics rollup for {day}: "
        f"{sum(m.get('segments', 0) for m in stats['modes'].values())} segments, {len(failed)} failed modes"
    )
    return stats


def main():
    """Entry point for scheduled job."""
    parser = argparse.ArgumentParser(description="Roll up daily model metrics")
    parser.add_argument("--day", type=date.fromisoformat, default=None, help="UTC day (YYYY-MM-DD), default yesterday")
    parser.add_argument("--mode", choices=OFFER_MODES, default=None, help="Single offer mode")
    args = parser.parse_args()

    stats = run_model_metrics_rollup_job(day=args.day, modes=[args.mode] if args.mode else OFFER_MODES)

    if not stats["success"]:
        logger.error(f"Model metrics rollup failed modes: {stats['failed_modes']}")
        sys.exit(1)
    else:
        logger.info("Model metrics rollup completed successfully")
        sys.exit(0)


if __name__ == "__main__":
    main()

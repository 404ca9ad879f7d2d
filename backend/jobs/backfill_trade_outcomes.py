"""
Backfill Trade Outcomes - implicit ACCEPTED outcomes for completed league trades.

A historical trade that has been analyzed was, by definition, accepted. Each
one gets exactly one ACCEPTED outcome event; reruns log nothing new.
"""

import argparse
import sys
from datetime import datetime
from typing import Callable, Optional

from tradecal.calibration.lock import CALIBRATION_LEASE, job_lease
from tradecal.config import settings
from tradecal.db.session import get_db_transaction
from tradecal.events.logger import TradeEventLogger
from tradecal.log_config import logger
from tradecal.utils.datetime import utcnow
from tradecal.utils.errors import LockUnavailableError


def run_backfill_job(
    season: Optional[int] = None,
    clock: Optional[Callable[[], datetime]] = None,
    use_lease: bool = True,
) -> dict:
    season = season if season is not None else settings.calibration_season
    stats = {
        "started_at": utcnow().isoformat(),
        "season": season,
        "outcomes_created": 0,
        "success": False,
        "skipped": False,
    }

    def _run() -> None:
        with get_db_transaction() as db:
            stats["outcomes_created"] = TradeEventLogger(db).backfill_accepted_outcomes(season)

    try:
        if use_lease:
            with job_lease(CALIBRATION_LEASE, clock=clock):
                _run()
        else:
            _run()
        stats["success"] = True
    except LockUnavailableError as e:
        logger.info(f"Outcome backfill skipped: {e.message}")
        stats["skipped"] = True
        stats["success"] = True
    except Exception as e:
        logger.exception(f"Outcome backfill failed: {e}")
        stats["error"] = str(e)

    stats["finished_at"] = utcnow().isoformat()
    return stats


def main():
    """Entry point for the backfill job."""
    parser = argparse.ArgumentParser(description="Backfill ACCEPTED outcomes from historical trades")
    parser.add_argument("--season", type=int, default=None, help="Season to backfill")
    args = parser.parse_args()

    stats = run_backfill_job(season=args.season)

    if not stats["success"]:
        logger.error("Outcome backfill failed")
        sys.exit(1)
    else:
        logger.info(f"Outcome backfill completed: {stats['outcomes_created']} outcomes created")
        sys.exit(0)


if __name__ == "__main__":
    main()

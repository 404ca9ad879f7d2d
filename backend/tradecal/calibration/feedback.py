"""
Feedback-driven weight nudging.

A cheap online heuristic, not a gradient method: each rating that disagrees
with the AI grade moves w1/w3 by a fixed step in opposite directions, and
every low or high rating moves the confidence weight w6 by half a step.
Signals accumulate onto the stored deltas and each delta is clamped.
"""

from datetime import datetime
from typing import Callable, Iterable, Optional, Tuple

from sqlalchemy.orm import Session

from tradecal.calibration.features import clamp
from tradecal.calibration.schemas import (
    FeedbackAdjustments,
    FeedbackResult,
    dump_record,
    load_record,
)
from tradecal.config import settings
from tradecal.db.models import TradeFeedback
from tradecal.db.repositories import CalibrationStateRepository, FeedbackRepository
from tradecal.log_config import logger
from tradecal.utils.datetime import utcnow


MIN_FEEDBACK_SAMPLE = 10
LEARNING_RATE = 0.02
MAX_FEEDBACK_ADJ = 0.15

FAVORABLE_GRADE_WORDS = ("accept", "likely", "strong")
UNFAVORABLE_GRADE_WORDS = ("reject", "unlikely", "weak")


def grade_sentiment(ai_grade: Optional[str]) -> Tuple[bool, bool]:
    """(sounds favorable, sounds unfavorable) for an AI grade label."""
    grade = (ai_grade or "").lower()
    favorable = any(word in grade for word in FAVORABLE_GRADE_WORDS)
    unfavorable = any(word in grade for word in UNFAVORABLE_GRADE_WORDS)
    return favorable, unfavorable


def accumulate_signals(records: Iterable[TradeFeedback]) -> Tuple[float, float, float, int]:
    """Sum of (w1, w3, w6) nudges and the number of signals fired."""
    w1 = w3 = w6 = 0.0
    signals = 0
    for record in records:
        favorable, unfavorable = grade_sentiment(record.ai_grade)
        rating = record.rating

        # "unlikely" contains "likely"; the favorable branch is checked first
        if favorable and rating <= 2:
            w1 -= LEARNING_RATE
            w3 += LEARNING_RATE
            signals += 1
        elif unfavorable and rating >= 4:
            w1 += LEARNING_RATE
            w3 -= LEARNING_RATE
            signals += 1

        if rating <= 2:
            w6 -= LEARNING_RATE * 0.5
            signals += 1
        elif rating >= 4:
            w6 += LEARNING_RATE * 0.5
            signals += 1
    return w1, w3, w6, signals


def clamp_adjustment(value: float) -> float:
    return clamp(value, -MAX_FEEDBACK_ADJ, MAX_FEEDBACK_ADJ)


class FeedbackAdjuster:
    """Applies recent user feedback to the stored weight deltas."""

    def __init__(
        self,
        db: Session,
        season: Optional[int] = None,
        clock: Optional[Callable[[], datetime]] = None,
        lookback_days: Optional[int] = None,
    ):
        self.db = db
        self.season = season if season is not None else settings.calibration_season
        self.clock = clock or utcnow
        self.lookback_days = lookback_days or settings.feedback_lookback_days
        self.states = CalibrationStateRepository(db)

    def run(self) -> FeedbackResult:
        records = FeedbackRepository(self.db).get_recent(self.lookback_days, now=self.clock())

        if len(records) < MIN_FEEDBACK_SAMPLE:
            logger.warning(
                f"Feedback calibration skipped: only {len(records)} entries, need {MIN_FEEDBACK_SAMPLE}"
            )
            return FeedbackResult(
                adjusted=False,
                sample_size=len(records),
                reason=f"insufficient data: {len(records)} < {MIN_FEEDBACK_SAMPLE}",
            )

        state = self.states.get(self.season)
        current = None
        if state is not None:
            current = load_record(FeedbackAdjustments, state.feedback_adjustments, "feedback_adjustments")
        if current is None:
            current = FeedbackAdjustments(last_updated=self.clock())

        w1, w3, w6, signals = accumulate_signals(records)
        if signals == 0:
            logger.info(f"Feedback calibration: {len(records)} entries produced no signal")
            return FeedbackResult(
                adjusted=False,
                sample_size=len(records),
                adjustments=current,
                reason="no directional signal",
            )

        updated = FeedbackAdjustments(
            w1_adj=clamp_adjustment(current.w1_adj + w1),
            w2_adj=current.w2_adj,
            w3_adj=clamp_adjustment(current.w3_adj + w3),
            w6_adj=clamp_adjustment(current.w6_adj + w6),
            sample_size=current.sample_size + len(records),
            last_updated=self.clock(),
        )

        self.states.upsert(
            self.season,
            feedback_adjustments=dump_record(updated),
            feedback_calibrated_at=self.clock(),
        )

        logger.info(
            f"Feedback weight adjustments updated: w1={updated.w1_adj:.3f}, "
            f"w3={updated.w3_adj:.3f}, w6={updated.w6_adj:.3f} (signals={signals})"
        )

        return FeedbackResult(
            adjusted=True,
            sample_size=len(records),
            signal_count=signals,
            adjustments=updated,
        )

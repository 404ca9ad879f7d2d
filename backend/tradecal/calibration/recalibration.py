"""
Weekly auto-recalibration with a shadow-then-promote protocol.

A fresh intercept correction is never applied directly. It is stored in the
shadow slot and promoted on a later run only once it is at least
SHADOW_MATURITY_DAYS old and within MAX_SHADOW_DIVERGENCE of the active
intercept.
"""

from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.orm import Session

from tradecal.calibration.features import ProxyThresholds, apply_intercept_step
from tradecal.calibration.intercept import (
    MIN_CALIBRATION_SAMPLE,
    active_intercept,
    append_history,
    select_intercept_sample,
)
from tradecal.calibration.schemas import (
    CalibrationHistoryEntry,
    PromotionResult,
    RecalibrationResult,
    SegmentResult,
    ShadowMetrics,
    ShadowResult,
    dump_record,
    load_record,
)
from tradecal.calibration.segments import compute_segment_intercepts, segment_map_from_entries
from tradecal.config import settings
from tradecal.db.repositories import CalibrationStateRepository
from tradecal.log_config import logger
from tradecal.utils.datetime import days_between, utcnow


SHADOW_MATURITY_DAYS = 7
MAX_SHADOW_DIVERGENCE = 0.40
WEEKLY_GATE_DAYS = 6.5


def evaluate_promotion(
    shadow_intercept: Optional[float],
    computed_at: Optional[datetime],
    current_intercept: float,
    now: datetime,
) -> PromotionResult:
    """Decide whether a pending shadow intercept may go live. Does not write."""
    if shadow_intercept is None or computed_at is None:
        return PromotionResult(promoted=False, reason="No shadow intercept pending")

    age_days = days_between(computed_at, now)
    divergence = round(abs(shadow_intercept - current_intercept), 3)

    if age_days < SHADOW_MATURITY_DAYS:
        return PromotionResult(
            promoted=False,
            age_days=round(age_days, 2),
            divergence=divergence,
            reason=f"Shadow intercept only {age_days:.1f} days old, needs {SHADOW_MATURITY_DAYS} days",
        )

    if divergence > MAX_SHADOW_DIVERGENCE:
        return PromotionResult(
            promoted=False,
            age_days=round(age_days, 2),
            divergence=divergence,
            reason=f"Shadow intercept diverges {divergence:.3f} from active, exceeds max {MAX_SHADOW_DIVERGENCE}",
        )

    return PromotionResult(
        promoted=True,
        new_intercept=shadow_intercept,
        age_days=round(age_days, 2),
        divergence=divergence,
        reason="Promoted",
    )


class WeeklyRecalibrator:
    """Shadow computation, promotion and segment refresh for one season."""

    def __init__(
        self,
        db: Session,
        season: Optional[int] = None,
        clock: Optional[Callable[[], datetime]] = None,
        thresholds: Optional[ProxyThresholds] = None,
    ):
        self.db = db
        self.season = season if season is not None else settings.calibration_season
        self.clock = clock or utcnow
        self.thresholds = thresholds
        self.states = CalibrationStateRepository(db)

    def promote_shadow(self) -> PromotionResult:
        """Promote the pending shadow intercept if it is mature and close enough."""
        state = self.states.get(self.season)
        if state is None:
            return PromotionResult(promoted=False, reason="No calibration state found")

        current = active_intercept(state)
        now = self.clock()
        decision = evaluate_promotion(state.shadow_intercept, state.shadow_computed_at, current, now)
        if not decision.promoted:
            return decision

        metrics = load_record(ShadowMetrics, state.shadow_metrics, "shadow_metrics")
        entry = CalibrationHistoryEntry(
            timestamp=now,
            old_intercept=current,
            new_intercept=decision.new_intercept,
            sample_size=metrics.sample_size if metrics else (state.shadow_sample_size or 0),
            avg_predicted=metrics.predicted_mean if metrics else 0.0,
            observed_rate=metrics.observed_rate if metrics else 0.0,
            source="auto-recalibration",
        )

        self.states.upsert(
            self.season,
            intercept=decision.new_intercept,
            intercept_sample_size=entry.sample_size,
            intercept_calibrated_at=now,
            calibration_history=append_history(state.calibration_history, entry),
            shadow_intercept=None,
            shadow_sample_size=None,
            shadow_computed_at=None,
            shadow_metrics=None,
            last_recalibration_at=now,
        )

        logger.info(
            f"Shadow intercept PROMOTED: {current} -> {decision.new_intercept} "
            f"(age={decision.age_days:.1f}d, divergence={decision.divergence:.3f})"
        )
        return decision

    def compute_shadow(self) -> Optional[ShadowMetrics]:
        """Candidate intercept from the freshest sample. Does not write."""
        state = self.states.get(self.season)
        current = active_intercept(state)

        sample = select_intercept_sample(self.db, self.season, current, self.thresholds)
        if sample.size < MIN_CALIBRATION_SAMPLE:
            logger.warning(
                f"Shadow intercept skipped: only {sample.size} samples, need {MIN_CALIBRATION_SAMPLE}"
            )
            return None

        new_intercept, shift = apply_intercept_step(current, sample.observed_rate, sample.mean)
        metrics = ShadowMetrics(
            computed_intercept=new_intercept,
            active_intercept=current,
            observed_rate=round(sample.observed_rate, 3),
            predicted_mean=round(sample.mean, 3),
            log_odds_correction=round(shift, 3),
            sample_size=sample.size,
            sample_source=sample.source,
            computed_at=self.clock(),
            mature=False,
            divergence=round(abs(new_intercept - current), 3),
        )

        logger.info(
            f"Shadow intercept computed: {new_intercept} (active={current}, "
            f"obs={sample.observed_rate:.3f}, pred={sample.mean:.3f}, correction={shift:.3f}, "
            f"n={sample.size} [{sample.source}])"
        )
        return metrics

    def run(self) -> RecalibrationResult:
        now = self.clock()
        state = self.states.get(self.season)

        if state is not None and state.last_recalibration_at is not None:
            days_since = days_between(state.last_recalibration_at, now)
            if days_since < WEEKLY_GATE_DAYS:
                logger.info(
                    f"Only {days_since:.1f} days since last recalibration, skipping (weekly cadence)"
                )
                return RecalibrationResult(
                    skipped=True,
                    reason=f"last recalibration {days_since:.1f} days ago, needs {WEEKLY_GATE_DAYS}",
                )

        logger.info(f"Starting weekly recalibration for season {self.season}")

        shadow = ShadowResult()

        if state is not None and state.shadow_intercept is not None:
            promotion = self.promote_shadow()
            shadow.promoted = promotion.promoted
            shadow.promoted_intercept = promotion.new_intercept
            shadow.promotion_reason = promotion.reason
            if not promotion.promoted:
                logger.info(f"Shadow promotion skipped: {promotion.reason}")
        else:
            shadow.promotion_reason = "No shadow intercept pending"

        metrics = self.compute_shadow()
        if metrics is not None:
            self.states.upsert(
                self.season,
                shadow_intercept=metrics.computed_intercept,
                shadow_sample_size=metrics.sample_size,
                shadow_computed_at=now,
                shadow_metrics=dump_record(metrics),
                last_recalibration_at=now,
            )
            shadow.computed = True
            shadow.shadow_intercept = metrics.computed_intercept
            shadow.metrics = metrics

        global_intercept = active_intercept(self.states.get(self.season))
        entries = compute_segment_intercepts(self.db, self.season, global_intercept, now=now)
        if entries:
            self.states.upsert(
                self.season,
                segment_intercepts=dump_record(segment_map_from_entries(entries, now)),
                last_recalibration_at=now,
            )

        logger.info(
            f"Weekly recalibration complete: shadow={shadow.shadow_intercept}, "
            f"promoted={shadow.promoted}, segments={len(entries)}"
        )

        return RecalibrationResult(
            shadow=shadow,
            segments=SegmentResult(computed=bool(entries), segment_count=len(entries), entries=entries),
        )

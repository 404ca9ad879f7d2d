"""
Calibration service.

Read side: calibrate() and get_active_weights() for the advice-serving layer.
Neither raises; on any failure they degrade to the base model.

Write side: run_intercept(), run_feedback(), run_isotonic(),
run_full_calibration(), run_weekly_recalibration() and run_drift_detection().
Each writes its own slice of the season's calibration record and invalidates
the state holder.
"""

import math
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from sqlalchemy.orm import Session

from tradecal.calibration.cache import CalibrationStateHolder, build_snapshot
from tradecal.calibration.features import (
    DEFAULT_INTERCEPT,
    FEATURE_WEIGHTS,
    ProxyThresholds,
    clamp,
    rebase_probability,
)
from tradecal.calibration.feedback import FeedbackAdjuster
from tradecal.calibration.intercept import BINARY_OUTCOMES, InterceptCalibrator
from tradecal.calibration.isotonic import (
    MIN_ISOTONIC_POINTS,
    MIN_ISOTONIC_SAMPLE,
    OUTPUT_CEILING,
    OUTPUT_FLOOR,
    apply_isotonic_map,
    fit_isotonic_map,
)
from tradecal.calibration.recalibration import WeeklyRecalibrator
from tradecal.calibration.schemas import (
    ActiveWeights,
    CalibrationHistoryEntry,
    DriftReport,
    FeedbackAdjustments,
    FullCalibrationResult,
    IsotonicMap,
    IsotonicResult,
    RecalibrationResult,
    SegmentContext,
    SegmentInterceptMap,
    ShadowMetrics,
    dump_record,
    load_record,
    load_records,
)
from tradecal.calibration.segments import resolve_segment_intercept, segment_sample_sizes
from tradecal.config import settings
from tradecal.db.repositories import CalibrationStateRepository, TradeEventRepository
from tradecal.events.logger import TradeEventLogger
from tradecal.log_config import logger
from tradecal.monitoring.drift_monitor import DriftMonitor
from tradecal.monitoring.valuation_source import ValuationSource
from tradecal.utils.datetime import utcnow
from tradecal.utils.errors import RecordNotFoundError


class CalibrationService:
    """Entry point for applying and maintaining calibration for one season."""

    def __init__(
        self,
        db: Session,
        season: Optional[int] = None,
        holder: Optional[CalibrationStateHolder] = None,
        clock: Optional[Callable[[], datetime]] = None,
        thresholds: Optional[ProxyThresholds] = None,
        valuation_source: Optional[ValuationSource] = None,
    ):
        self.db = db
        self.season = season if season is not None else settings.calibration_season
        self.clock = clock or utcnow
        self.thresholds = thresholds
        self.valuation_source = valuation_source
        self.holder = holder or CalibrationStateHolder(
            loader=lambda s: build_snapshot(self.db, s),
            ttl_seconds=settings.calibration_cache_ttl_seconds,
            clock=self.clock,
        )

    # ========================================================================
    # Read side
    # ========================================================================

    def get_active_weights(self, segment: Optional[SegmentContext] = None) -> ActiveWeights:
        """Intercept and feature weights to score with, segment override applied."""
        try:
            snapshot = self.holder.get(self.season)
            intercept, segment_used = resolve_segment_intercept(snapshot.segment_map, snapshot.intercept, segment)
            return ActiveWeights(
                intercept=intercept,
                feature_weights=dict(snapshot.feature_weights),
                segment_used=segment_used,
            )
        except Exception as e:
            logger.warning(f"Active weights unavailable, using base model: {e}")
            return ActiveWeights(intercept=DEFAULT_INTERCEPT, feature_weights=dict(FEATURE_WEIGHTS))

    def calibrate_detailed(
        self,
        raw_probability: float,
        segment: Optional[SegmentContext] = None,
    ) -> Dict[str, Any]:
        """
        Calibrated probability plus what was applied.

        The raw probability is assumed to come from the scorer under the
        global intercept. A segment override shifts it in log-odds space, then
        the isotonic map is applied when it has enough points. The result is
        always within [0.02, 0.98].
        """
        if raw_probability is None or not math.isfinite(raw_probability):
            logger.warning(f"Non-finite probability passed to calibrate: {raw_probability}")
            return {
                "raw": raw_probability,
                "calibrated": 0.5,
                "isotonic_applied": False,
                "segment_used": None,
            }

        probability = clamp(raw_probability, 0.0, 1.0)
        result = {
            "raw": raw_probability,
            "calibrated": clamp(probability, OUTPUT_FLOOR, OUTPUT_CEILING),
            "isotonic_applied": False,
            "segment_used": None,
        }

        try:
            snapshot = self.holder.get(self.season)
            intercept, segment_used = resolve_segment_intercept(snapshot.segment_map, snapshot.intercept, segment)
            if segment_used is not None:
                probability = rebase_probability(probability, snapshot.intercept, intercept)
                result["segment_used"] = segment_used

            if len(snapshot.isotonic_points) >= MIN_ISOTONIC_POINTS:
                probability = apply_isotonic_map(probability, snapshot.isotonic_points)
                result["isotonic_applied"] = True

            result["calibrated"] = clamp(probability, OUTPUT_FLOOR, OUTPUT_CEILING)
        except Exception as e:
            logger.warning(f"Calibration unavailable, returning base probability: {e}")
        return result

    def calibrate(self, raw_probability: float, segment: Optional[SegmentContext] = None) -> float:
        """Calibrated acceptance probability in [0.02, 0.98]."""
        return self.calibrate_detailed(raw_probability, segment)["calibrated"]

    def describe_state(self) -> Dict[str, Any]:
        """Current calibration record, parsed, for admin views."""
        state = CalibrationStateRepository(self.db).get(self.season)
        if state is None:
            return {
                "season": self.season,
                "exists": False,
                "intercept": DEFAULT_INTERCEPT,
                "feature_weights": dict(FEATURE_WEIGHTS),
            }

        snapshot = build_snapshot(self.db, self.season)
        isotonic = load_record(IsotonicMap, state.isotonic_map, "isotonic_map")
        segments = load_record(SegmentInterceptMap, state.segment_intercepts, "segment_intercepts")
        return {
            "season": self.season,
            "exists": True,
            "schema_version": state.schema_version,
            "intercept": snapshot.intercept,
            "intercept_sample_size": state.intercept_sample_size,
            "intercept_calibrated_at": state.intercept_calibrated_at,
            "feature_weights": snapshot.feature_weights,
            "feedback_adjustments": dump_record(
                load_record(FeedbackAdjustments, state.feedback_adjustments, "feedback_adjustments")
            ),
            "segments": dump_record(segments),
            "segment_sample_sizes": segment_sample_sizes(segments),
            "isotonic": {
                "point_count": len(isotonic.points) if isotonic else 0,
                "sample_size": state.isotonic_sample_size,
                "ece": isotonic.ece if isotonic else None,
                "ece_calibrated_estimate": isotonic.ece_calibrated_estimate if isotonic else None,
                "computed_at": state.isotonic_computed_at,
            },
            "shadow": {
                "intercept": state.shadow_intercept,
                "computed_at": state.shadow_computed_at,
                "metrics": dump_record(load_record(ShadowMetrics, state.shadow_metrics, "shadow_metrics")),
            },
            "last_recalibration_at": state.last_recalibration_at,
            "calibration_history": [
                dump_record(entry)
                for entry in load_records(CalibrationHistoryEntry, state.calibration_history, "calibration_history")
            ],
            "drift_checked_at": state.drift_checked_at,
        }

    def get_drift_report(self) -> DriftReport:
        """
        Latest stored drift report.

        Raises:
            RecordNotFoundError: no calibration record or no report for the season
        """
        state = CalibrationStateRepository(self.db).get_or_404(self.season)
        report = load_record(DriftReport, state.drift_report, "drift_report")
        if report is None:
            raise RecordNotFoundError(f"No drift report for season {self.season}")
        return report

    # ========================================================================
    # Write side
    # ========================================================================

    def _invalidate(self) -> None:
        self.holder.invalidate(self.season)

    def run_intercept(self):
        result = InterceptCalibrator(self.db, self.season, clock=self.clock, thresholds=self.thresholds).run()
        if result.adjusted:
            self._invalidate()
        return result

    def run_feedback(self):
        result = FeedbackAdjuster(self.db, self.season, clock=self.clock).run()
        if result.adjusted:
            self._invalidate()
        return result

    def run_isotonic(self) -> IsotonicResult:
        """Fit the isotonic map on raw probabilities of ACCEPTED/REJECTED offers."""
        pairs = TradeEventRepository(self.db).get_linked_outcomes(self.season, BINARY_OUTCOMES)

        predictions = []
        outcomes = []
        for offer, outcome in pairs:
            if offer.accept_prob is None or offer.accept_prob <= 0:
                continue
            predictions.append(offer.accept_prob)
            outcomes.append(1 if outcome.outcome == "ACCEPTED" else 0)

        if len(predictions) < MIN_ISOTONIC_SAMPLE:
            logger.warning(
                f"Isotonic fit skipped: only {len(predictions)} outcomes, need {MIN_ISOTONIC_SAMPLE}"
            )
            return IsotonicResult(
                fitted=False,
                sample_size=len(predictions),
                reason=f"insufficient data: {len(predictions)} < {MIN_ISOTONIC_SAMPLE}",
            )

        isotonic_map = fit_isotonic_map(predictions, outcomes)
        if isotonic_map is None:
            logger.warning("Isotonic fit skipped: fewer than 3 populated probability bins")
            return IsotonicResult(
                fitted=False,
                sample_size=len(predictions),
                reason=f"fewer than {MIN_ISOTONIC_POINTS} populated bins",
            )

        now = self.clock()
        isotonic_map.computed_at = now
        CalibrationStateRepository(self.db).upsert(
            self.season,
            isotonic_map=dump_record(isotonic_map),
            isotonic_sample_size=isotonic_map.sample_size,
            isotonic_computed_at=now,
        )
        self._invalidate()

        logger.info(
            f"Isotonic map stored: {len(isotonic_map.points)} points, sample={isotonic_map.sample_size}, "
            f"ECE {isotonic_map.ece:.4f} -> {isotonic_map.ece_calibrated_estimate:.4f}"
        )
        return IsotonicResult(
            fitted=True,
            sample_size=isotonic_map.sample_size,
            point_count=len(isotonic_map.points),
            ece=isotonic_map.ece,
            ece_calibrated_estimate=isotonic_map.ece_calibrated_estimate,
        )

    def run_full_calibration(self) -> FullCalibrationResult:
        """Intercept, then feedback, then isotonic."""
        logger.info(f"Starting full calibration cycle for season {self.season}")
        intercept = self.run_intercept()
        feedback = self.run_feedback()
        isotonic = self.run_isotonic()
        self._invalidate()

        logger.info(
            f"Full calibration complete: intercept={intercept.new_intercept} "
            f"(adjusted={intercept.adjusted}), feedback_adjusted={feedback.adjusted}, "
            f"isotonic_fitted={isotonic.fitted}"
        )
        return FullCalibrationResult(intercept=intercept, feedback=feedback, isotonic=isotonic)

    def run_weekly_recalibration(self) -> RecalibrationResult:
        result = WeeklyRecalibrator(self.db, self.season, clock=self.clock, thresholds=self.thresholds).run()
        if not result.skipped:
            self._invalidate()
        return result

    def run_drift_detection(self) -> DriftReport:
        monitor = DriftMonitor(
            db=self.db,
            season=self.season,
            valuation_source=self.valuation_source,
            clock=self.clock,
        )
        report = monitor.run()
        self._invalidate()
        return report

    def run_backfill(self) -> int:
        """Log ACCEPTED outcomes for analyzed historical trades that have none."""
        return TradeEventLogger(self.db).backfill_accepted_outcomes(self.season)

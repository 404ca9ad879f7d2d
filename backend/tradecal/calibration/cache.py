"""
Calibration state holder.

Read-through TTL cache over the persisted calibration record. Constructed
once and passed to callers; every job that writes calibration state calls
invalidate() again once its transaction has committed.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from tradecal.calibration.features import DEFAULT_INTERCEPT, FEATURE_WEIGHTS
from tradecal.calibration.schemas import (
    FeedbackAdjustments,
    IsotonicMap,
    IsotonicPoint,
    SegmentInterceptMap,
    load_record,
)
from tradecal.db.repositories import CalibrationStateRepository
from tradecal.log_config import logger
from tradecal.utils.cache import Cache
from tradecal.utils.datetime import utcnow


DEFAULT_TTL_SECONDS = 3600


@dataclass
class CalibrationSnapshot:
    """Parameters read from one calibration record."""

    season: int
    intercept: float = DEFAULT_INTERCEPT
    feature_weights: Dict[str, float] = field(default_factory=lambda: dict(FEATURE_WEIGHTS))
    segment_map: Optional[SegmentInterceptMap] = None
    isotonic_points: List[IsotonicPoint] = field(default_factory=list)
    from_defaults: bool = True


def build_snapshot(db: Session, season: int) -> CalibrationSnapshot:
    """Read the calibration record of a season into a snapshot."""
    state = CalibrationStateRepository(db).get(season)
    if state is None:
        return CalibrationSnapshot(season=season)

    weights = dict(FEATURE_WEIGHTS)
    adjustments = load_record(FeedbackAdjustments, state.feedback_adjustments, "feedback_adjustments")
    if adjustments is not None:
        weights["w1"] += adjustments.w1_adj
        weights["w2"] += adjustments.w2_adj
        weights["w3"] += adjustments.w3_adj
        weights["w6"] += adjustments.w6_adj

    isotonic = load_record(IsotonicMap, state.isotonic_map, "isotonic_map")

    return CalibrationSnapshot(
        season=season,
        intercept=state.intercept if state.intercept is not None else DEFAULT_INTERCEPT,
        feature_weights=weights,
        segment_map=load_record(SegmentInterceptMap, state.segment_intercepts, "segment_intercepts"),
        isotonic_points=list(isotonic.points) if isotonic else [],
        from_defaults=False,
    )


class CalibrationStateHolder:
    """TTL-bound snapshot cache keyed by season."""

    def __init__(
        self,
        loader: Callable[[int], CalibrationSnapshot],
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._loader = loader
        self._cache = Cache(clock=clock or utcnow, default_ttl_seconds=ttl_seconds)

    @staticmethod
    def _key(season: int) -> str:
        return f"calibration:{season}"

    def get(self, season: int) -> CalibrationSnapshot:
        """
        Cached snapshot for a season.

        A failed read logs a warning and returns defaults without caching them,
        so the next call retries the store.
        """
        try:
            return self._cache.get_or_set(self._key(season), lambda: self._loader(season))
        except SQLAlchemyError as e:
            logger.warning(f"Failed to load calibration state for season {season}, using defaults: {e}")
            return CalibrationSnapshot(season=season)

    def invalidate(self, season: Optional[int] = None) -> None:
        """Drop one season, or everything when season is None."""
        if season is None:
            self._cache.clear()
        else:
            self._cache.delete(self._key(season))

"""
Global intercept calibration.

Moves the logistic intercept so the mean predicted acceptance probability
matches the observed acceptance rate, one bounded log-odds step at a time.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, List, Optional

from sqlalchemy.orm import Session

from tradecal.calibration.features import (
    DEFAULT_INTERCEPT,
    ProxyThresholds,
    apply_intercept_step,
    rebase_probability,
    reconstruct_accept_prob,
)
from tradecal.calibration.schemas import (
    CalibrationHistoryEntry,
    InterceptResult,
    dump_record,
    load_records,
)
from tradecal.config import settings
from tradecal.db.models import CalibrationState
from tradecal.db.repositories import (
    CalibrationStateRepository,
    HistoricalTradeRepository,
    TradeEventRepository,
)
from tradecal.log_config import logger
from tradecal.utils.datetime import utcnow


MIN_CALIBRATION_SAMPLE = 30
HISTORY_LENGTH = 10
BINARY_OUTCOMES = ("ACCEPTED", "REJECTED")


@dataclass
class InterceptSample:
    """Predictions expressed under the active intercept, and the rate they should match."""

    predictions: List[float] = field(default_factory=list)
    observed_rate: float = 0.0
    source: str = "historical"

    @property
    def size(self) -> int:
        return len(self.predictions)

    @property
    def mean(self) -> float:
        if not self.predictions:
            return 0.0
        return sum(self.predictions) / len(self.predictions)


def active_intercept(state: Optional[CalibrationState]) -> float:
    if state is None or state.intercept is None:
        return DEFAULT_INTERCEPT
    return float(state.intercept)


def select_intercept_sample(
    db: Session,
    season: int,
    intercept: float,
    thresholds: Optional[ProxyThresholds] = None,
    observed_fallback: Optional[float] = None,
) -> InterceptSample:
    """
    Pick the sample an intercept correction is computed from.

    Live offer/outcome pairs with a binary label are used when there are at
    least MIN_CALIBRATION_SAMPLE of them; each logged probability is re-based
    from the intercept it was scored under to `intercept`. Otherwise analyzed
    historical trades are reconstructed with the proxy and compared against
    the configured observed acceptance rate.
    """
    pairs = TradeEventRepository(db).get_linked_outcomes(season, BINARY_OUTCOMES)

    live_predictions = []
    accepted = 0
    for offer, outcome in pairs:
        if offer.accept_prob is None or offer.accept_prob <= 0:
            continue
        logged = offer.intercept_used if offer.intercept_used is not None else DEFAULT_INTERCEPT
        live_predictions.append(rebase_probability(offer.accept_prob, logged, intercept))
        if outcome.outcome == "ACCEPTED":
            accepted += 1

    if len(live_predictions) >= MIN_CALIBRATION_SAMPLE:
        return InterceptSample(
            predictions=live_predictions,
            observed_rate=accepted / len(live_predictions),
            source="outcome",
        )

    trades = HistoricalTradeRepository(db).get_analyzed(season)
    predictions = [
        reconstruct_accept_prob(
            trade.value_given,
            trade.value_received,
            intercept,
            analysis_result=trade.analysis_result,
            thresholds=thresholds,
        )
        for trade in trades
    ]
    if observed_fallback is None:
        observed_fallback = settings.observed_accept_rate
    return InterceptSample(predictions=predictions, observed_rate=observed_fallback, source="historical")


def append_history(raw_history, entry: CalibrationHistoryEntry) -> list:
    """Append to the stored calibration history, keeping the last HISTORY_LENGTH entries."""
    history = load_records(CalibrationHistoryEntry, raw_history, "calibration_history")
    history.append(entry)
    return [dump_record(item) for item in history[-HISTORY_LENGTH:]]


class InterceptCalibrator:
    """Computes and stores the global intercept for a season."""

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

    def run(self) -> InterceptResult:
        state = self.states.get(self.season)
        current = active_intercept(state)

        sample = select_intercept_sample(self.db, self.season, current, self.thresholds)

        if sample.size < MIN_CALIBRATION_SAMPLE:
            logger.warning(
                f"Intercept calibration skipped: only {sample.size} samples, "
                f"need {MIN_CALIBRATION_SAMPLE}"
            )
            return InterceptResult(
                adjusted=False,
                previous_intercept=current,
                new_intercept=current,
                sample_size=sample.size,
                sample_source=sample.source,
                reason=f"insufficient data: {sample.size} < {MIN_CALIBRATION_SAMPLE}",
            )

        avg_predicted = sample.mean
        new_intercept, shift = apply_intercept_step(current, sample.observed_rate, avg_predicted)

        entry = CalibrationHistoryEntry(
            timestamp=self.clock(),
            old_intercept=current,
            new_intercept=new_intercept,
            sample_size=sample.size,
            avg_predicted=round(avg_predicted, 3),
            observed_rate=round(sample.observed_rate, 3),
            source="outcome",
        )

        self.states.upsert(
            self.season,
            intercept=new_intercept,
            intercept_sample_size=sample.size,
            intercept_calibrated_at=self.clock(),
            calibration_history=append_history(state.calibration_history if state else None, entry),
        )

        logger.info(
            f"Intercept adjusted: {current} -> {new_intercept} (shift={shift:.3f}, "
            f"sample={sample.size} [{sample.source}], avg_pred={avg_predicted:.3f}, "
            f"obs={sample.observed_rate:.3f})"
        )

        return InterceptResult(
            adjusted=True,
            previous_intercept=current,
            new_intercept=new_intercept,
            sample_size=sample.size,
            avg_predicted=round(avg_predicted, 3),
            observed_rate=round(sample.observed_rate, 3),
            sample_source=sample.source,
        )

"""
Drift monitoring for the trade acceptance model.

Runs four independent detectors each cycle (calibration gap, rank order,
segment gaps, upstream input distribution shift) and stores a severity-graded
report with a rolling history on the season's calibration record.
"""

from collections import OrderedDict
from datetime import datetime
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np
from scipy.stats import spearmanr
from sqlalchemy.orm import Session

from tradecal.calibration.features import market_delta_pct, reconstruct_accept_prob
from tradecal.calibration.intercept import active_intercept
from tradecal.calibration.schemas import (
    CalibrationDriftMetrics,
    DriftAlert,
    DriftReport,
    DriftReportSummary,
    DriftSeverity,
    InputDriftMetrics,
    InputDriftShift,
    InputDriftSnapshot,
    RankOrderDriftMetrics,
    SegmentDriftMetrics,
    dump_record,
    load_record,
    severity_max,
)
from tradecal.config import settings
from tradecal.db.models import HistoricalTrade, TradeFeedback
from tradecal.db.repositories import (
    CalibrationStateRepository,
    FeedbackRepository,
    HistoricalTradeRepository,
)
from tradecal.log_config import logger
from tradecal.monitoring.valuation_source import DRIFT_MARKET_CONFIGS, MarketConfig, ValuationSource
from tradecal.utils.datetime import utcnow
from tradecal.utils.errors import ExternalServiceError


def spearman_rho(x: Sequence[float], y: Sequence[float]) -> float:
    """Spearman rank correlation. 0.0 below 3 points or when either side is constant."""
    if len(x) < 3 or len(x) != len(y):
        return 0.0

    a = np.asarray(x, dtype=float)
    b = np.asarray(y, dtype=float)
    if np.ptp(a) == 0 or np.ptp(b) == 0:
        return 0.0

    rho, _ = spearmanr(a, b)
    return 0.0 if np.isnan(rho) else float(rho)


def distribution_stats(values: Sequence[float]) -> Dict[str, float]:
    """Summary statistics of a value distribution (population std)."""
    if len(values) == 0:
        return {"mean": 0.0, "median": 0.0, "std_dev": 0.0, "p10": 0.0, "p90": 0.0, "top10_avg": 0.0}

    arr = np.sort(np.asarray(values, dtype=float))
    n = len(arr)
    top = arr[-max(1, int(n * 0.02)):]
    return {
        "mean": float(arr.mean()),
        "median": float(np.median(arr)),
        "std_dev": float(arr.std()),
        "p10": float(arr[min(int(n * 0.1), n - 1)]),
        "p90": float(arr[min(int(n * 0.9), n - 1)]),
        "top10_avg": float(top.mean()),
    }


class DriftMonitor:
    """Detects calibration, rank-order, segment and input drift.

    Predictions for historical trades are rebuilt with the proxy scorer
    under the active intercept and compared against the configured observed
    acceptance rate.
    """

    CALIBRATION_WARN = (0.15, 50)  # (gap, min sample)
    CALIBRATION_CRITICAL = (0.25, 100)
    CALIBRATION_INFO = (0.08, 30)
    RANK_WARN = (0.50, 50)  # (rho, min sample)
    RANK_CRITICAL = (0.30, 100)
    MIN_RANK_SAMPLE = 10
    MIN_CONCORDANCE_FEEDBACK = 10
    CONCORDANCE_WARN = (0.40, 20)
    SEGMENT_WARN = (0.20, 25)
    SEGMENT_CRITICAL = (0.35, 50)
    MIN_SEGMENT_BUCKET = 10
    INPUT_WARN_PCT = 15.0
    INPUT_CRITICAL_PCT = 25.0
    INPUT_RECORD_PCT = 5.0
    INPUT_MIN_BASELINE = 10.0
    HISTORY_LENGTH = 20

    HIGH_GRADE_WORDS = ("accept", "likely", "strong", "fair")
    LOW_GRADE_WORDS = ("reject", "unlikely", "overpay")

    def __init__(
        self,
        db: Optional[Session] = None,
        season: Optional[int] = None,
        valuation_source: Optional[ValuationSource] = None,
        clock: Optional[Callable[[], datetime]] = None,
        market_configs: Sequence[MarketConfig] = DRIFT_MARKET_CONFIGS,
        observed_rate: Optional[float] = None,
    ):
        self.db = db
        self.season = season if season is not None else settings.calibration_season
        self.valuation_source = valuation_source
        self.clock = clock or utcnow
        self.market_configs = market_configs
        self.observed_rate = observed_rate if observed_rate is not None else settings.observed_accept_rate

    def _alert(self, kind: str, severity: DriftSeverity, metric: str, value: float,
               threshold: float, message: str, sample_size: int) -> DriftAlert:
        return DriftAlert(
            type=kind,
            severity=severity,
            metric=metric,
            value=round(value, 4),
            threshold=threshold,
            message=message,
            sample_size=sample_size,
            timestamp=self.clock(),
        )

    def _predict(self, trades: Sequence[HistoricalTrade], intercept: float) -> List[float]:
        return [
            reconstruct_accept_prob(t.value_given, t.value_received, intercept)
            for t in trades
            if t.value_given is not None and t.value_received is not None
        ]

    # ------------------------------------------------------------------
    # Calibration gap
    # ------------------------------------------------------------------

    def compute_calibration_drift(
        self, predictions: Sequence[float]
    ) -> Tuple[CalibrationDriftMetrics, List[DriftAlert]]:
        n = len(predictions)
        if n == 0:
            return CalibrationDriftMetrics(observed_rate=self.observed_rate), []

        preds = np.asarray(predictions, dtype=float)
        avg = float(preds.mean())
        gap = abs(avg - self.observed_rate)
        brier = float(np.mean((preds - self.observed_rate) ** 2))

        alerts = []
        severity = DriftSeverity.OK
        detail = (
            f"avg predicted {avg * 100:.1f}% vs observed {self.observed_rate * 100:.1f}% "
            f"(gap {gap * 100:.1f}pp)"
        )
        if gap >= self.CALIBRATION_CRITICAL[0] and n >= self.CALIBRATION_CRITICAL[1]:
            severity = DriftSeverity.CRITICAL
            alerts.append(self._alert("calibration", severity, "absolute_gap", gap,
                                      self.CALIBRATION_CRITICAL[0], f"Calibration critically drifted: {detail}", n))
        elif gap >= self.CALIBRATION_WARN[0] and n >= self.CALIBRATION_WARN[1]:
            severity = DriftSeverity.WARN
            alerts.append(self._alert("calibration", severity, "absolute_gap", gap,
                                      self.CALIBRATION_WARN[0], f"Calibration drifting: {detail}", n))
        elif gap >= self.CALIBRATION_INFO[0] and n >= self.CALIBRATION_INFO[1]:
            severity = DriftSeverity.INFO

        metrics = CalibrationDriftMetrics(
            avg_predicted=round(avg, 3),
            observed_rate=self.observed_rate,
            absolute_gap=round(gap, 3),
            brier_proxy=round(brier, 4),
            sample_size=n,
            severity=severity,
        )
        return metrics, alerts

    # ------------------------------------------------------------------
    # Rank order
    # ------------------------------------------------------------------

    def feedback_concordance(self, feedback: Sequence[TradeFeedback]) -> Optional[float]:
        """Share of sentiment-bearing feedback where rating agrees with grade."""
        if len(feedback) < self.MIN_CONCORDANCE_FEEDBACK:
            return None

        concordant = discordant = 0
        for fb in feedback:
            grade = (fb.ai_grade or "").lower()
            high = any(word in grade for word in self.HIGH_GRADE_WORDS)
            low = any(word in grade for word in self.LOW_GRADE_WORDS)
            if high and fb.rating >= 4:
                concordant += 1
            elif low and fb.rating <= 2:
                concordant += 1
            elif high and fb.rating <= 2:
                discordant += 1
            elif low and fb.rating >= 4:
                discordant += 1

        total = concordant + discordant
        return concordant / total if total > 0 else None

    def compute_rank_order_drift(
        self,
        predictions: Sequence[float],
        market_deltas: Sequence[float],
        feedback: Sequence[TradeFeedback],
    ) -> Tuple[RankOrderDriftMetrics, List[DriftAlert]]:
        n = len(predictions)
        rho = spearman_rho(predictions, market_deltas) if n >= self.MIN_RANK_SAMPLE else 0.0
        concordance = self.feedback_concordance(feedback)

        alerts = []
        severity = DriftSeverity.OK
        if n >= self.RANK_CRITICAL[1] and rho < self.RANK_CRITICAL[0]:
            severity = DriftSeverity.CRITICAL
            alerts.append(self._alert(
                "rank_order", severity, "spearman_rho", rho, self.RANK_CRITICAL[0],
                f"Rank ordering critically broken: Spearman rho={rho:.3f}", n,
            ))
        elif n >= self.RANK_WARN[1] and rho < self.RANK_WARN[0]:
            severity = DriftSeverity.WARN
            alerts.append(self._alert(
                "rank_order", severity, "spearman_rho", rho, self.RANK_WARN[0],
                f"Rank ordering degrading: Spearman rho={rho:.3f}", n,
            ))

        if (
            concordance is not None
            and concordance < self.CONCORDANCE_WARN[0]
            and len(feedback) >= self.CONCORDANCE_WARN[1]
        ):
            severity = severity_max(severity, DriftSeverity.WARN)
            alerts.append(self._alert(
                "rank_order", DriftSeverity.WARN, "feedback_concordance", concordance,
                self.CONCORDANCE_WARN[0],
                f"User feedback disagrees with AI grades: concordance={concordance * 100:.1f}%",
                len(feedback),
            ))

        metrics = RankOrderDriftMetrics(
            spearman_rho=round(rho, 3),
            feedback_concordance=round(concordance, 3) if concordance is not None else None,
            sample_size=n,
            feedback_sample_size=len(feedback),
            severity=severity,
        )
        return metrics, alerts

    # ------------------------------------------------------------------
    # Segments
    # ------------------------------------------------------------------

    @staticmethod
    def segment_labels(trade: HistoricalTrade) -> List[str]:
        labels = []
        if trade.is_super_flex is True:
            labels.append("SuperFlex")
        elif trade.is_super_flex is False:
            labels.append("1QB")
        if trade.league_format:
            labels.append(trade.league_format[:1].upper() + trade.league_format[1:])
        if trade.scoring_type:
            labels.append(trade.scoring_type.upper())
        return labels

    def compute_segment_drift(
        self, trades: Sequence[HistoricalTrade], intercept: float
    ) -> Tuple[List[SegmentDriftMetrics], List[DriftAlert]]:
        buckets: "OrderedDict[str, List[float]]" = OrderedDict()
        for trade in trades:
            if trade.value_given is None or trade.value_received is None:
                continue
            pred = reconstruct_accept_prob(trade.value_given, trade.value_received, intercept)
            for label in self.segment_labels(trade):
                buckets.setdefault(label, []).append(pred)

        segments = []
        alerts = []
        for label, preds in buckets.items():
            n = len(preds)
            if n < self.MIN_SEGMENT_BUCKET:
                continue
            avg = float(np.mean(preds))
            gap = abs(avg - self.observed_rate)
            detail = f"avg predicted {avg * 100:.1f}% (gap {gap * 100:.1f}pp, n={n})"

            severity = DriftSeverity.OK
            if gap >= self.SEGMENT_CRITICAL[0] and n >= self.SEGMENT_CRITICAL[1]:
                severity = DriftSeverity.CRITICAL
                alerts.append(self._alert("segment", severity, f"segment_{label}_gap", gap,
                                          self.SEGMENT_CRITICAL[0],
                                          f'Segment "{label}" critically drifted: {detail}', n))
            elif gap >= self.SEGMENT_WARN[0] and n >= self.SEGMENT_WARN[1]:
                severity = DriftSeverity.WARN
                alerts.append(self._alert("segment", severity, f"segment_{label}_gap", gap,
                                          self.SEGMENT_WARN[0], f'Segment "{label}" drifting: {detail}', n))

            segments.append(SegmentDriftMetrics(
                segment_label=label,
                avg_predicted=round(avg, 3),
                absolute_gap=round(gap, 3),
                sample_size=n,
                severity=severity,
            ))

        segments.sort(key=lambda s: s.absolute_gap, reverse=True)
        return segments, alerts

    # ------------------------------------------------------------------
    # Input distribution
    # ------------------------------------------------------------------

    def snapshot_market(self, config: MarketConfig) -> InputDriftSnapshot:
        players = self.valuation_source.fetch_values(config)
        values = [p.value for p in players if p.value > 0]
        stats = distribution_stats(values)

        position_mix: Dict[str, int] = {}
        for player in players:
            position_mix[player.position] = position_mix.get(player.position, 0) + 1

        return InputDriftSnapshot(
            settings=config.label,
            total_players=len(players),
            mean_value=round(stats["mean"]),
            median_value=round(stats["median"]),
            std_dev=round(stats["std_dev"]),
            p10=round(stats["p10"]),
            p90=round(stats["p90"]),
            top10_avg=round(stats["top10_avg"]),
            position_mix=position_mix,
        )

    def compare_snapshots(
        self, current: InputDriftSnapshot, previous: InputDriftSnapshot
    ) -> Tuple[List[InputDriftShift], List[DriftAlert]]:
        shifts = []
        alerts = []
        for metric in ("mean_value", "median_value", "top10_avg", "std_dev"):
            prev = getattr(previous, metric)
            curr = getattr(current, metric)
            if prev == 0 or abs(prev) < self.INPUT_MIN_BASELINE:
                continue

            pct = abs((curr - prev) / prev * 100.0)
            detail = f"{current.settings} {metric} changed {pct:.1f}% ({prev:g} -> {curr:g})"
            severity = DriftSeverity.OK
            if pct >= self.INPUT_CRITICAL_PCT:
                severity = DriftSeverity.CRITICAL
                alerts.append(self._alert("input", severity, f"{current.settings}_{metric}", pct,
                                          self.INPUT_CRITICAL_PCT, f"Input distribution shift: {detail}",
                                          current.total_players))
            elif pct >= self.INPUT_WARN_PCT:
                severity = DriftSeverity.WARN
                alerts.append(self._alert("input", severity, f"{current.settings}_{metric}", pct,
                                          self.INPUT_WARN_PCT, f"Input distribution shifting: {detail}",
                                          current.total_players))

            if pct >= self.INPUT_RECORD_PCT:
                shifts.append(InputDriftShift(
                    settings=current.settings,
                    metric=metric,
                    previous_value=prev,
                    current_value=curr,
                    pct_change=round(pct, 1),
                    severity=severity,
                ))
        return shifts, alerts

    def compute_input_drift(
        self, previous_snapshots: Optional[Sequence[InputDriftSnapshot]]
    ) -> Tuple[InputDriftMetrics, List[DriftAlert]]:
        metrics = InputDriftMetrics()
        alerts: List[DriftAlert] = []

        if self.valuation_source is None:
            metrics.skipped = [config.label for config in self.market_configs]
            return metrics, alerts

        previous_by_label = {s.settings: s for s in (previous_snapshots or [])}

        for config in self.market_configs:
            try:
                snapshot = self.snapshot_market(config)
            except (ExternalServiceError, ValueError) as e:
                logger.warning(f"Input drift snapshot skipped for {config.label}: {e}")
                metrics.skipped.append(config.label)
                continue

            metrics.snapshots.append(snapshot)
            previous = previous_by_label.get(config.label)
            if previous is None or previous.mean_value <= 0:
                continue

            shifts, shift_alerts = self.compare_snapshots(snapshot, previous)
            metrics.shifts.extend(shifts)
            alerts.extend(shift_alerts)

        metrics.severity = severity_max(*[a.severity for a in alerts])
        return metrics, alerts

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    def run(self) -> DriftReport:
        """Run all detectors, store the report and return it."""
        states = CalibrationStateRepository(self.db)
        state = states.get(self.season)
        intercept = active_intercept(state)
        previous = load_record(DriftReport, state.drift_report, "drift_report") if state else None

        trades = HistoricalTradeRepository(self.db).get_analyzed(self.season)
        feedback = FeedbackRepository(self.db).get_recent(settings.feedback_lookback_days, now=self.clock())

        logger.info(
            f"Starting drift detection for season {self.season}: "
            f"{len(trades)} trades, {len(feedback)} feedback, intercept={intercept}"
        )

        predictions = self._predict(trades, intercept)
        deltas = [
            market_delta_pct(t.value_given, t.value_received)
            for t in trades
            if t.value_given is not None and t.value_received is not None
        ]

        calibration, calibration_alerts = self.compute_calibration_drift(predictions)
        rank_order, rank_alerts = self.compute_rank_order_drift(predictions, deltas, feedback)
        segments, segment_alerts = self.compute_segment_drift(trades, intercept)
        input_metrics, input_alerts = self.compute_input_drift(previous.input.snapshots if previous else None)

        alerts = calibration_alerts + rank_alerts + segment_alerts + input_alerts
        overall = severity_max(
            calibration.severity,
            rank_order.severity,
            input_metrics.severity,
            *[s.severity for s in segments],
            *[a.severity for a in alerts],
        )

        now = self.clock()
        summary = DriftReportSummary(
            timestamp=now,
            overall_severity=overall,
            alert_count=len(alerts),
            calibration_gap=calibration.absolute_gap,
            rank_rho=rank_order.spearman_rho,
        )
        history = list(previous.history) if previous else []
        history.append(summary)

        report = DriftReport(
            timestamp=now,
            season=self.season,
            overall_severity=overall,
            calibration=calibration,
            rank_order=rank_order,
            segments=segments,
            input=input_metrics,
            alerts=alerts,
            history=history[-self.HISTORY_LENGTH:],
        )

        states.upsert(self.season, drift_report=dump_record(report), drift_checked_at=now)

        logger.info(f"Drift detection complete: overall={overall.value.upper()}, {len(alerts)} alert(s)")
        for alert in alerts:
            logger.warning(f"[{alert.severity.value.upper()}] {alert.message}")

        return report


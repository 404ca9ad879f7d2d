"""
Tests for the drift monitor.

Detectors are exercised directly with synthetic inputs; the full cycle runs
against the test database with a stub valuation source.
"""

import pytest

from tradecal.calibration.schemas import DriftSeverity, InputDriftSnapshot, severity_max
from tradecal.db.models import HistoricalTrade, TradeFeedback
from tradecal.db.repositories import CalibrationStateRepository
from tradecal.monitoring.drift_monitor import DriftMonitor, spearman_rho
from tradecal.monitoring.valuation_source import MarketConfig, PlayerValue
from tradecal.utils.errors import ValuationSourceError

SEASON = 2025
SF = MarketConfig(label="dynasty_sf_12", is_dynasty=True, num_qbs=2)
ONE_QB = MarketConfig(label="dynasty_1qb_12", is_dynasty=True, num_qbs=1)


class StubValuationSource:
    """Returns canned values per configuration label; raises for unknown or failing labels."""

    def __init__(self, values_by_label, errors_by_label=None):
        self.values_by_label = values_by_label
        self.errors_by_label = errors_by_label or {}
        self.calls = []

    def fetch_values(self, config):
        self.calls.append(config.label)
        if config.label in self.errors_by_label:
            raise self.errors_by_label[config.label]
        if config.label not in self.values_by_label:
            raise ValuationSourceError(f"Valuation fetch failed for {config.label}")
        return [PlayerValue(value=v, position="WR") for v in self.values_by_label[config.label]]


def _snapshot(label, mean, median=None, top10=None, std=0.0):
    return InputDriftSnapshot(
        settings=label,
        total_players=100,
        mean_value=mean,
        median_value=median if median is not None else mean,
        top10_avg=top10 if top10 is not None else mean,
        std_dev=std,
    )


class TestRankStatistics:
    def test_tied_values_share_ranks(self):
        assert spearman_rho([1, 2, 2, 3], [1, 2, 3, 4]) == pytest.approx(0.9487, abs=1e-4)

    def test_perfect_correlation(self):
        assert spearman_rho([1, 2, 3, 4], [10, 20, 30, 40]) == pytest.approx(1.0)
        assert spearman_rho([1, 2, 3, 4], [40, 30, 20, 10]) == pytest.approx(-1.0)

    def test_small_or_constant_inputs(self):
        assert spearman_rho([1, 2], [1, 2]) == 0.0
        assert spearman_rho([1, 1, 1], [1, 2, 3]) == 0.0
        assert spearman_rho([1, 2, 3], [1, 2]) == 0.0

    def test_severity_max(self):
        assert severity_max() == DriftSeverity.OK
        assert severity_max(DriftSeverity.INFO, DriftSeverity.WARN, DriftSeverity.OK) == DriftSeverity.WARN
        assert severity_max("critical", DriftSeverity.WARN) == DriftSeverity.CRITICAL


class TestCalibrationDrift:
    """Gap thresholds need both the gap and the sample size."""

    @pytest.fixture
    def monitor(self, clock):
        return DriftMonitor(clock=clock, observed_rate=0.85)

    def test_critical(self, monitor):
        metrics, alerts = monitor.compute_calibration_drift([0.55] * 100)
        assert metrics.severity == DriftSeverity.CRITICAL
        assert metrics.absolute_gap == pytest.approx(0.30)
        assert len(alerts) == 1
        assert alerts[0].type == "calibration"

    def test_large_gap_small_sample_is_warn(self, monitor):
        metrics, alerts = monitor.compute_calibration_drift([0.55] * 60)
        assert metrics.severity == DriftSeverity.WARN
        assert alerts[0].severity == DriftSeverity.WARN

    def test_info_has_no_alert(self, monitor):
        metrics, alerts = monitor.compute_calibration_drift([0.75] * 40)
        assert metrics.severity == DriftSeverity.INFO
        assert alerts == []

    def test_empty(self, monitor):
        metrics, alerts = monitor.compute_calibration_drift([])
        assert metrics.sample_size == 0
        assert metrics.severity == DriftSeverity.OK
        assert alerts == []


class TestRankOrderDrift:
    def test_inverted_ranking_is_critical(self, clock):
        monitor = DriftMonitor(clock=clock, observed_rate=0.85)
        predictions = [i / 200 for i in range(100)]
        deltas = [-float(i) for i in range(100)]

        metrics, alerts = monitor.compute_rank_order_drift(predictions, deltas, [])

        assert metrics.spearman_rho == pytest.approx(-1.0)
        assert metrics.severity == DriftSeverity.CRITICAL
        assert alerts[0].metric == "spearman_rho"

    def test_below_min_sample_is_quiet(self, clock):
        monitor = DriftMonitor(clock=clock, observed_rate=0.85)
        metrics, alerts = monitor.compute_rank_order_drift([0.1, 0.2], [2.0, 1.0], [])
        assert metrics.spearman_rho == 0.0
        assert alerts == []

    def test_discordant_feedback_warns(self, clock):
        monitor = DriftMonitor(clock=clock, observed_rate=0.85)
        feedback = [TradeFeedback(rating=1, ai_grade="Likely Accept") for _ in range(20)]

        metrics, alerts = monitor.compute_rank_order_drift([], [], feedback)

        assert metrics.feedback_concordance == 0.0
        assert metrics.severity == DriftSeverity.WARN
        assert [(a.metric, a.severity) for a in alerts] == [("feedback_concordance", DriftSeverity.WARN)]
        assert alerts[0].sample_size == 20

    def test_concordance_alert_needs_twenty_ratings(self, clock):
        monitor = DriftMonitor(clock=clock, observed_rate=0.85)
        feedback = [TradeFeedback(rating=1, ai_grade="Likely Accept") for _ in range(19)]

        metrics, alerts = monitor.compute_rank_order_drift([], [], feedback)

        assert metrics.feedback_concordance == 0.0
        assert metrics.severity == DriftSeverity.OK
        assert alerts == []


def _trade(is_super_flex=True, league_format="dynasty", scoring_type="ppr"):
    # even trade: proxy prediction ~0.358 under the default intercept
    return HistoricalTrade(
        season=SEASON,
        analyzed=True,
        value_given=1000.0,
        value_received=1000.0,
        is_super_flex=is_super_flex,
        league_format=league_format,
        scoring_type=scoring_type,
    )


class TestSegmentDrift:
    """Segment gaps need both the gap and the bucket size."""

    def test_large_gap_and_sample_is_critical(self, clock):
        monitor = DriftMonitor(clock=clock, observed_rate=0.85)

        segments, alerts = monitor.compute_segment_drift([_trade() for _ in range(60)], -1.10)

        assert {s.segment_label for s in segments} == {"SuperFlex", "Dynasty", "PPR"}
        assert all(s.severity == DriftSeverity.CRITICAL for s in segments)
        assert segments[0].absolute_gap == pytest.approx(0.492, abs=1e-3)
        assert sorted(a.metric for a in alerts) == ["segment_Dynasty_gap", "segment_PPR_gap", "segment_SuperFlex_gap"]
        assert all(a.severity == DriftSeverity.CRITICAL for a in alerts)

    def test_large_gap_mid_sample_is_warn(self, clock):
        monitor = DriftMonitor(clock=clock, observed_rate=0.85)

        segments, alerts = monitor.compute_segment_drift([_trade() for _ in range(30)], -1.10)

        assert all(s.severity == DriftSeverity.WARN for s in segments)
        assert len(alerts) == 3
        assert all(a.threshold == DriftMonitor.SEGMENT_WARN[0] for a in alerts)

    def test_moderate_gap_is_warn(self, clock):
        monitor = DriftMonitor(clock=clock, observed_rate=0.60)

        segments, alerts = monitor.compute_segment_drift([_trade() for _ in range(60)], -1.10)

        assert segments[0].absolute_gap == pytest.approx(0.242, abs=1e-3)
        assert all(s.severity == DriftSeverity.WARN for s in segments)
        assert all(a.severity == DriftSeverity.WARN for a in alerts)

    def test_small_buckets_are_skipped(self, clock):
        monitor = DriftMonitor(clock=clock, observed_rate=0.85)
        trades = [_trade() for _ in range(12)]
        trades += [_trade(is_super_flex=False, league_format=None, scoring_type="half") for _ in range(9)]

        segments, alerts = monitor.compute_segment_drift(trades, -1.10)

        assert {s.segment_label for s in segments} == {"SuperFlex", "Dynasty", "PPR"}
        assert all(s.sample_size == 12 for s in segments)
        assert all(s.severity == DriftSeverity.OK for s in segments)
        assert alerts == []


class TestInputDrift:
    def test_critical_shift(self, clock):
        source = StubValuationSource({SF.label: [1300.0] * 50})
        monitor = DriftMonitor(valuation_source=source, clock=clock, market_configs=(SF,))

        metrics, alerts = monitor.compute_input_drift([_snapshot(SF.label, 1000.0)])

        assert metrics.severity == DriftSeverity.CRITICAL
        assert {shift.metric for shift in metrics.shifts} == {"mean_value", "median_value", "top10_avg"}
        assert all(alert.severity == DriftSeverity.CRITICAL for alert in alerts)
        assert metrics.shifts[0].pct_change == pytest.approx(30.0)

    def test_small_shift_recorded_without_alert(self, clock):
        source = StubValuationSource({SF.label: [1060.0] * 50})
        monitor = DriftMonitor(valuation_source=source, clock=clock, market_configs=(SF,))

        metrics, alerts = monitor.compute_input_drift([_snapshot(SF.label, 1000.0)])

        assert alerts == []
        assert metrics.severity == DriftSeverity.OK
        assert metrics.shifts[0].severity == DriftSeverity.OK

    def test_tiny_baseline_ignored(self, clock):
        monitor = DriftMonitor(clock=clock)
        shifts, alerts = monitor.compare_snapshots(_snapshot(SF.label, 9.0), _snapshot(SF.label, 5.0))
        assert shifts == []
        assert alerts == []

    def test_failed_fetch_skips_config(self, clock):
        source = StubValuationSource({SF.label: [1000.0] * 50})
        monitor = DriftMonitor(valuation_source=source, clock=clock, market_configs=(SF, ONE_QB))

        metrics, _ = monitor.compute_input_drift(None)

        assert [s.settings for s in metrics.snapshots] == [SF.label]
        assert metrics.skipped == [ONE_QB.label]

    def test_malformed_payload_skips_config(self, clock):
        source = StubValuationSource(
            {SF.label: [1000.0] * 50},
            errors_by_label={ONE_QB.label: ValueError("Expecting value: line 1 column 1 (char 0)")},
        )
        monitor = DriftMonitor(valuation_source=source, clock=clock, market_configs=(ONE_QB, SF))

        metrics, alerts = monitor.compute_input_drift(None)

        assert metrics.skipped == [ONE_QB.label]
        assert [s.settings for s in metrics.snapshots] == [SF.label]
        assert alerts == []

    def test_no_source_skips_everything(self, clock):
        metrics, alerts = DriftMonitor(clock=clock, market_configs=(SF, ONE_QB)).compute_input_drift(None)
        assert metrics.skipped == [SF.label, ONE_QB.label]
        assert alerts == []


class TestDriftCycle:
    def test_report_stored(self, db_session, make_trade, clock):
        for _ in range(12):
            make_trade(1000.0, 1000.0)

        report = DriftMonitor(db=db_session, season=SEASON, clock=clock, observed_rate=0.85).run()

        assert report.calibration.sample_size == 12
        assert report.input.skipped
        assert {s.segment_label for s in report.segments} == {"SuperFlex", "Dynasty", "PPR"}
        state = CalibrationStateRepository(db_session).get(SEASON)
        assert state.drift_checked_at == clock()
        assert state.drift_report["overall_severity"] == report.overall_severity.value

    def test_history_is_capped(self, db_session, clock):
        monitor = DriftMonitor(db=db_session, season=SEASON, clock=clock)
        for _ in range(DriftMonitor.HISTORY_LENGTH + 2):
            report = monitor.run()
            clock.advance(days=1)

        assert len(report.history) == DriftMonitor.HISTORY_LENGTH
        assert report.history[-1].timestamp == report.timestamp

    def test_previous_snapshots_feed_input_drift(self, db_session, clock):
        source = StubValuationSource({SF.label: [1000.0] * 50})
        monitor = DriftMonitor(db=db_session, season=SEASON, valuation_source=source, clock=clock,
                               market_configs=(SF,))
        monitor.run()

        source.values_by_label[SF.label] = [1200.0] * 50
        clock.advance(days=7)
        report = monitor.run()

        assert report.input.severity == DriftSeverity.WARN
        assert report.overall_severity in (DriftSeverity.WARN, DriftSeverity.CRITICAL)

    def test_warn_and_critical_alerts_make_the_report_critical(self, db_session, make_trade, make_feedback, clock):
        for _ in range(12):
            make_trade(1000.0, 1000.0)
        source = StubValuationSource({SF.label: [1000.0] * 50})
        monitor = DriftMonitor(db=db_session, season=SEASON, valuation_source=source, clock=clock,
                               market_configs=(SF,), observed_rate=0.85)
        monitor.run()

        for _ in range(20):
            make_feedback(1, "Likely Accept")
        source.values_by_label[SF.label] = [1300.0] * 50
        report = monitor.run()

        assert {a.severity for a in report.alerts} == {DriftSeverity.WARN, DriftSeverity.CRITICAL}
        assert {a.type for a in report.alerts} == {"rank_order", "input"}
        assert report.overall_severity == DriftSeverity.CRITICAL
        assert report.history[-1].overall_severity == DriftSeverity.CRITICAL
        state = CalibrationStateRepository(db_session).get(SEASON)
        assert state.drift_report["overall_severity"] == "critical"

"""Tests for the calibration service read and write paths."""

import math
from unittest.mock import MagicMock

import pytest

from tradecal.calibration.cache import CalibrationStateHolder, build_snapshot
from tradecal.calibration.features import DEFAULT_INTERCEPT, FEATURE_WEIGHTS
from tradecal.calibration.schemas import SegmentContext
from tradecal.calibration.service import CalibrationService
from tradecal.db.repositories import CalibrationStateRepository
from tradecal.utils.errors import RecordNotFoundError

SEASON = 2025

ISOTONIC_MAP = {
    "points": [
        {"x": 0.2, "y": 0.1, "count": 30},
        {"x": 0.5, "y": 0.4, "count": 30},
        {"x": 0.8, "y": 0.7, "count": 30},
    ],
    "sample_size": 90,
}

SF_SEGMENTS = {
    "segments": [
        {"segment": "SF", "intercept": -1.70, "sample_size": 80, "observed_rate": 0.4, "predicted_mean": 0.6},
    ],
}


@pytest.fixture
def service(db_session, clock):
    return CalibrationService(db_session, SEASON, clock=clock)


class TestCalibrate:
    """Tests for the read path."""

    def test_no_state_passes_through(self, service):
        assert service.calibrate(0.55) == pytest.approx(0.55)

    def test_output_bounds(self, service):
        assert service.calibrate(1.0) == 0.98
        assert service.calibrate(-3.0) == 0.02

    def test_non_finite_input(self, service):
        assert service.calibrate(math.nan) == 0.5
        assert service.calibrate(math.inf) == 0.5

    def test_isotonic_map_applied(self, db_session, service):
        CalibrationStateRepository(db_session).upsert(SEASON, isotonic_map=ISOTONIC_MAP)

        detail = service.calibrate_detailed(0.5)

        assert detail["isotonic_applied"] is True
        assert detail["calibrated"] == pytest.approx(0.4)
        assert service.calibrate(0.95) == pytest.approx(0.7)

    def test_segment_rebase(self, db_session, service):
        CalibrationStateRepository(db_session).upsert(
            SEASON, intercept=DEFAULT_INTERCEPT, segment_intercepts=SF_SEGMENTS,
        )

        detail = service.calibrate_detailed(0.5, SegmentContext(is_super_flex=True))

        assert detail["segment_used"] == "SF"
        assert detail["calibrated"] == pytest.approx(0.3543, abs=1e-4)

    def test_failing_holder_degrades(self, db_session):
        holder = MagicMock(spec=CalibrationStateHolder)
        holder.get.side_effect = RuntimeError("boom")
        service = CalibrationService(db_session, SEASON, holder=holder)

        assert service.calibrate(0.6) == pytest.approx(0.6)
        weights = service.get_active_weights()
        assert weights.intercept == DEFAULT_INTERCEPT
        assert weights.feature_weights == FEATURE_WEIGHTS

    def test_active_weights_with_segment(self, db_session, service):
        CalibrationStateRepository(db_session).upsert(SEASON, intercept=-1.2, segment_intercepts=SF_SEGMENTS)

        assert service.get_active_weights().intercept == -1.2
        weights = service.get_active_weights(SegmentContext(is_super_flex=True))
        assert weights.intercept == -1.70
        assert weights.segment_used == "SF"

    def test_describe_state(self, db_session, service):
        assert service.describe_state()["exists"] is False

        CalibrationStateRepository(db_session).upsert(SEASON, intercept=-1.2, isotonic_map=ISOTONIC_MAP)
        state = service.describe_state()

        assert state["exists"] is True
        assert state["intercept"] == -1.2
        assert state["isotonic"]["point_count"] == 3


class TestWritePath:
    """Tests for the calibration runs."""

    def test_isotonic_needs_fifty(self, service, make_linked_outcome):
        for i in range(49):
            make_linked_outcome(0.5, "ACCEPTED" if i % 2 else "REJECTED")

        result = service.run_isotonic()

        assert result.fitted is False
        assert result.sample_size == 49
        assert "insufficient data" in result.reason

    def test_isotonic_fitted_and_stored(self, db_session, service, make_linked_outcome):
        for p, accepted in ((0.2, 4), (0.5, 10), (0.8, 16)):
            for i in range(20):
                make_linked_outcome(p, "ACCEPTED" if i < accepted else "REJECTED")

        result = service.run_isotonic()

        assert result.fitted is True
        assert result.sample_size == 60
        assert result.point_count == 3
        state = CalibrationStateRepository(db_session).get(SEASON)
        assert state.isotonic_sample_size == 60
        assert len(state.isotonic_map["points"]) == 3

    def test_intercept_run_invalidates_holder(self, db_session, clock, make_linked_outcome):
        holder = CalibrationStateHolder(loader=lambda s: build_snapshot(db_session, s), clock=clock)
        service = CalibrationService(db_session, SEASON, holder=holder, clock=clock)
        assert service.get_active_weights().intercept == DEFAULT_INTERCEPT

        for i in range(40):
            make_linked_outcome(0.8, "ACCEPTED" if i < 20 else "REJECTED")
        service.run_intercept()

        assert service.get_active_weights().intercept == pytest.approx(-1.70)

    def test_full_calibration(self, service, make_linked_outcome, make_feedback):
        for i in range(60):
            make_linked_outcome(0.5, "ACCEPTED" if i % 2 else "REJECTED")
        for _ in range(10):
            make_feedback(5, "unlikely")

        result = service.run_full_calibration()

        assert result.intercept.sample_size == 60
        assert result.feedback.adjusted is True
        assert result.isotonic.sample_size == 60

    def test_drift_report_lookup(self, service):
        with pytest.raises(RecordNotFoundError):
            service.get_drift_report()

        service.run_drift_detection()

        assert service.get_drift_report().season == SEASON

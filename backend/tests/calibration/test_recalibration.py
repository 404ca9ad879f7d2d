"""Tests for the weekly shadow-then-promote recalibration."""

from datetime import datetime, timedelta

import pytest

from tradecal.calibration.features import DEFAULT_INTERCEPT
from tradecal.calibration.recalibration import (
    MAX_SHADOW_DIVERGENCE,
    SHADOW_MATURITY_DAYS,
    WeeklyRecalibrator,
    evaluate_promotion,
)
from tradecal.db.repositories import CalibrationStateRepository

SEASON = 2025
NOW = datetime(2025, 10, 1, 12, 0, 0)


class TestEvaluatePromotion:
    """Promotion gate boundaries."""

    def test_nothing_pending(self):
        decision = evaluate_promotion(None, None, DEFAULT_INTERCEPT, NOW)
        assert decision.promoted is False

    def test_too_young(self):
        decision = evaluate_promotion(-1.30, NOW - timedelta(days=6), DEFAULT_INTERCEPT, NOW)
        assert decision.promoted is False
        assert decision.age_days == pytest.approx(6.0)
        assert "days old" in decision.reason

    def test_too_divergent_even_when_old(self):
        decision = evaluate_promotion(-1.51, NOW - timedelta(days=30), DEFAULT_INTERCEPT, NOW)
        assert decision.promoted is False
        assert decision.divergence == pytest.approx(0.41)

    def test_mature_and_close(self):
        decision = evaluate_promotion(-1.49, NOW - timedelta(days=SHADOW_MATURITY_DAYS), DEFAULT_INTERCEPT, NOW)
        assert decision.promoted is True
        assert decision.new_intercept == -1.49

    def test_divergence_at_limit_is_promoted(self):
        # -1.50 - (-1.10) is 0.4000000000000001 before rounding
        decision = evaluate_promotion(-1.50, NOW - timedelta(days=7), DEFAULT_INTERCEPT, NOW)
        assert decision.divergence == MAX_SHADOW_DIVERGENCE
        assert decision.promoted is True


class TestWeeklyRecalibrator:
    """Full weekly cycle against the database."""

    @pytest.fixture
    def outcomes(self, make_linked_outcome):
        for i in range(40):
            make_linked_outcome(0.58, "ACCEPTED" if i < 20 else "REJECTED")

    def test_shadow_then_skip_then_promote(self, db_session, outcomes, clock):
        recalibrator = WeeklyRecalibrator(db_session, SEASON, clock=clock)
        states = CalibrationStateRepository(db_session)

        first = recalibrator.run()
        assert first.skipped is False
        assert first.shadow.computed is True
        assert first.shadow.shadow_intercept == pytest.approx(-1.423)
        assert first.shadow.promoted is False

        state = states.get(SEASON)
        assert state.shadow_intercept == pytest.approx(-1.423)
        assert state.shadow_computed_at == clock()
        assert state.intercept is None or state.intercept == pytest.approx(DEFAULT_INTERCEPT)

        clock.advance(days=1)
        second = recalibrator.run()
        assert second.skipped is True
        assert states.get(SEASON).shadow_intercept == pytest.approx(-1.423)

        clock.advance(days=6)
        third = recalibrator.run()
        assert third.skipped is False
        assert third.shadow.promoted is True
        assert third.shadow.promoted_intercept == pytest.approx(-1.423)

        state = states.get(SEASON)
        assert state.intercept == pytest.approx(-1.423)
        assert state.last_recalibration_at == clock()
        assert state.calibration_history[-1]["source"] == "auto-recalibration"
        assert state.calibration_history[-1]["old_intercept"] == pytest.approx(DEFAULT_INTERCEPT)

    def test_no_data_writes_nothing(self, db_session, clock):
        result = WeeklyRecalibrator(db_session, SEASON, clock=clock).run()

        assert result.skipped is False
        assert result.shadow.computed is False
        assert result.segments.computed is False
        assert CalibrationStateRepository(db_session).get(SEASON) is None

    def test_segments_refreshed(self, db_session, make_linked_outcome, clock):
        for i in range(50):
            make_linked_outcome(0.6, "ACCEPTED" if i % 2 else "REJECTED", is_super_flex=True)

        result = WeeklyRecalibrator(db_session, SEASON, clock=clock).run()

        assert result.segments.computed is True
        stored = CalibrationStateRepository(db_session).get(SEASON).segment_intercepts
        assert [entry["segment"] for entry in stored["segments"]] == ["SF"]

"""Tests for per-segment intercepts and their resolution at prediction time."""

import pytest

from tradecal.calibration.features import DEFAULT_INTERCEPT
from tradecal.calibration.schemas import SegmentContext, SegmentInterceptEntry, SegmentInterceptMap
from tradecal.calibration.segments import (
    MIN_SEGMENT_SAMPLE,
    compute_segment_intercepts,
    resolve_segment_intercept,
    segment_labels,
    segment_sample_sizes,
)

SEASON = 2025


def _map(**segments):
    return SegmentInterceptMap(segments=[
        SegmentInterceptEntry(
            segment=name, intercept=intercept, sample_size=n, observed_rate=0.5, predicted_mean=0.6,
        )
        for name, (intercept, n) in segments.items()
    ])


class TestResolve:
    """Tests for resolve_segment_intercept."""

    def test_no_context_uses_global(self):
        segment_map = _map(SF=(-1.3, 80))
        assert resolve_segment_intercept(segment_map, -1.1, None) == (-1.1, None)

    def test_no_map_uses_global(self):
        assert resolve_segment_intercept(None, -1.1, SegmentContext(is_super_flex=True)) == (-1.1, None)

    def test_superflex_segment_applies(self):
        segment_map = _map(SF=(-1.3, 80), **{"1QB": (-0.9, 80)})
        assert resolve_segment_intercept(segment_map, -1.1, SegmentContext(is_super_flex=True)) == (-1.3, "SF")
        assert resolve_segment_intercept(segment_map, -1.1, SegmentContext(is_super_flex=False)) == (-0.9, "1QB")

    def test_undersampled_segment_never_overrides(self):
        segment_map = _map(SF=(-1.6, MIN_SEGMENT_SAMPLE - 10))
        context = SegmentContext(is_super_flex=True)
        assert resolve_segment_intercept(segment_map, -1.1, context) == (-1.1, None)

    def test_larger_sample_wins(self):
        segment_map = _map(TEP=(-1.2, 60), SF=(-1.4, 90))
        context = SegmentContext(is_super_flex=True, scoring_type="tep")
        assert resolve_segment_intercept(segment_map, -1.1, context) == (-1.4, "SF")

    def test_tie_goes_to_te_premium(self):
        segment_map = _map(TEP=(-1.2, 60), SF=(-1.4, 60))
        context = SegmentContext(is_super_flex=True, scoring_type="TE_PREMIUM")
        assert resolve_segment_intercept(segment_map, -1.1, context) == (-1.2, "TEP")

    def test_undersampled_te_premium_falls_through(self):
        segment_map = _map(TEP=(-1.2, 40), SF=(-1.4, 60))
        context = SegmentContext(is_super_flex=True, scoring_type="TEP")
        assert resolve_segment_intercept(segment_map, -1.1, context) == (-1.4, "SF")


class TestCompute:
    """Tests for compute_segment_intercepts against the database."""

    def test_labels(self):
        assert segment_labels(True, "Dynasty", "tep") == ["SF", "dynasty", "TEP"]
        assert segment_labels(False, None, "ppr") == ["1QB"]
        assert segment_labels(None, None, None) == []

    def test_only_buckets_with_enough_samples(self, db_session, make_linked_outcome, clock):
        for i in range(60):
            outcome = "ACCEPTED" if i < 30 else ("REJECTED" if i < 50 else "EXPIRED")
            make_linked_outcome(0.8, outcome, is_super_flex=True, league_format="dynasty")
        for i in range(40):
            make_linked_outcome(0.8, "ACCEPTED" if i % 2 else "REJECTED", is_super_flex=False)

        entries = compute_segment_intercepts(db_session, SEASON, DEFAULT_INTERCEPT, now=clock())
        by_segment = {e.segment: e for e in entries}

        assert set(by_segment) == {"SF", "dynasty"}
        sf = by_segment["SF"]
        assert sf.sample_size == 60
        # EXPIRED counts as not accepted: 30/60
        assert sf.observed_rate == pytest.approx(0.5)
        assert sf.predicted_mean == pytest.approx(0.8)
        assert sf.intercept == pytest.approx(-1.70)
        assert sf.last_updated == clock()

    def test_sample_sizes(self):
        assert segment_sample_sizes(_map(SF=(-1.3, 80), TEP=(-1.2, 55))) == {"SF": 80, "TEP": 55}
        assert segment_sample_sizes(None) == {}

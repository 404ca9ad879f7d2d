"""Tests for the daily rollup building blocks."""

import pytest

from tradecal.db.models import TradeOfferEvent
from tradecal.monitoring.rollup import (
    banded_ece,
    drift_json,
    flat_scores,
    lift_at_top10,
    percentile,
    point_biserial,
    segment_key,
)


def _offer(features_json=None, **fields):
    return TradeOfferEvent(mode="INSTANT", features_json=features_json, **fields)


class TestSegmentKey:
    def test_from_segment_parts(self):
        offer = _offer(
            {"segment_parts": {"is_superflex": True, "is_te_premium": True, "league_size": 12,
                               "opponent_trade_sample_size": 4}},
            league_format="dynasty",
        )
        assert segment_key(offer) == "DYN_SF_TEP_SZ12_H3_9"

    def test_offer_columns_win(self):
        offer = _offer(
            {"segment_parts": {"is_superflex": True, "is_te_premium": True, "league_size": 16,
                               "opponent_trade_sample_size": 12}},
            league_format="best ball",
            is_super_flex=False,
            scoring_type="PPR",
        )
        assert segment_key(offer) == "SPC_1QB_NONTEP_SZ14P_H10P"

    def test_unknowns(self):
        assert segment_key(_offer()) == "UNK_1QB_NONTEP_SZUNK_H0_2"
        assert segment_key(_offer({"segment_parts": {"league_size": 8}}, league_format="Redraft")) == (
            "RED_1QB_NONTEP_SZ8_H0_2"
        )


class TestFlatScores:
    def test_missing_scores_default_to_half(self):
        scores = flat_scores(None)
        assert (scores.lineup_impact, scores.vorp, scores.market, scores.behavior) == (0.5, 0.5, 0.5, 0.5)
        assert scores.weights == (0.40, 0.25, 0.20, 0.15)
        assert scores.composite == pytest.approx(0.5)

    def test_clamped_and_weighted(self):
        scores = flat_scores({"lineupImpact": 1.7, "vorp": 0.0, "market": -0.4, "behavior": 0.0, "weights": [1, 2]})
        assert scores.lineup_impact == 1.0
        assert scores.market == 0.0
        assert scores.composite == pytest.approx(0.40)

    def test_custom_weights(self):
        scores = flat_scores({"lineup_impact": 0.0, "vorp": 1.0, "market": 0.0, "behavior": 0.0,
                              "weights": [0.1, 0.6, 0.2, 0.1]})
        assert scores.composite == pytest.approx(0.6)


class TestStatistics:
    def test_point_biserial_thresholds(self):
        assert point_biserial([0.5] * 29, [1] * 15 + [0] * 14) is None
        assert point_biserial([0.5] * 30, [1] * 5 + [0] * 25) is None
        assert point_biserial([0.5] * 30, [1] * 15 + [0] * 15) == 0.0

    def test_point_biserial_perfect(self):
        labels = [1] * 15 + [0] * 15
        assert point_biserial([float(y) for y in labels], labels) == pytest.approx(1.0)

    def test_drift_needs_enough_baseline(self):
        current = {"composite": [0.5] * 50}
        assert drift_json(current, {"composite": [0.5] * 199}) == {"psi": {}, "jsd": {}}

        result = drift_json(current, {"composite": [0.5] * 200})
        assert result["psi"]["composite"] == pytest.approx(0.0)
        assert result["jsd"]["composite"] == pytest.approx(0.0, abs=1e-9)

    def test_drift_detects_shift(self):
        result = drift_json({"market": [0.9] * 50}, {"market": [0.1] * 200})
        assert result["psi"]["market"] > 0.25
        assert result["jsd"]["market"] == pytest.approx(0.6931, abs=1e-3)

    def test_nearest_rank_percentile(self):
        values = list(range(10, 0, -1))
        assert percentile(values, 0.10) == 1
        assert percentile(values, 0.50) == 5
        assert percentile(values, 0.90) == 9
        assert percentile([], 0.5) == 0.0

    def test_lift_at_top10(self):
        rows = [(0.9, 1), (0.8, 1)] + [(0.2, 0)] * 18
        assert lift_at_top10(rows[:19]) is None
        assert lift_at_top10(rows) == pytest.approx(10.0)
        assert lift_at_top10([(0.5, 0)] * 20) is None

    def test_banded_ece(self):
        rows = [(0.5, 1)] * 4 + [(0.7, 0)] * 2
        bands = banded_ece(rows)
        assert bands["mid"] == pytest.approx(0.5)
        assert bands["hi"] == pytest.approx(0.7)
        assert bands["lo"] == 0.0

"""Tests for offer/outcome event logging and the historical backfill."""

import pytest

from tradecal.db.models import NarrativeValidationLog, TradeOfferEvent, TradeOutcomeEvent
from tradecal.events.logger import (
    Asset,
    Driver,
    OfferEventInput,
    OfferFeatures,
    SegmentParts,
    TradeEventLogger,
    compute_input_hash,
)
from tradecal.utils.errors import InvalidOutcomeError

SEASON = 2025


def _offer(**overrides):
    fields = dict(
        league_id="league-1",
        season=SEASON,
        assets_given=[Asset(name="Player A", value=4200), Asset(name="2026 1st")],
        assets_received=[Asset(name="Player B", value=4500)],
        accept_prob=0.42,
        mode="INSTANT",
    )
    fields.update(overrides)
    return OfferEventInput(**fields)


class TestInputHash:
    def test_asset_order_does_not_matter(self):
        a = compute_input_hash([Asset(name="X"), Asset(name="Y")], [Asset(name="Z")], "INSTANT", "l1")
        b = compute_input_hash([Asset(name="Y"), Asset(name="X")], [Asset(name="Z")], "INSTANT", "l1")
        assert a == b
        assert len(a) == 32

    def test_mode_and_league_matter(self):
        base = compute_input_hash([Asset(name="X")], [Asset(name="Z")], "INSTANT", "l1")
        assert base != compute_input_hash([Asset(name="X")], [Asset(name="Z")], "STRUCTURED", "l1")
        assert base != compute_input_hash([Asset(name="X")], [Asset(name="Z")], "INSTANT", "l2")
        assert base != compute_input_hash([Asset(name="Z")], [Asset(name="X")], "INSTANT", "l1")


class TestLogOffer:
    def test_logs_offer(self, db_session):
        offer = TradeEventLogger(db_session).log_offer(_offer(intercept_used=-1.2, verdict="FAIR"))

        assert offer.id is not None
        assert offer.accept_prob == 0.42
        assert offer.intercept_used == -1.2
        assert offer.assets_given[0] == {"name": "Player A", "value": 4200}

    def test_duplicate_is_noop(self, db_session):
        logger = TradeEventLogger(db_session)
        first = logger.log_offer(_offer())

        assert logger.log_offer(_offer(accept_prob=0.9)) is None

        # the session is still usable after the rejected insert
        second = logger.log_offer(_offer(league_id="league-2"))
        assert second is not None
        assert db_session.query(TradeOfferEvent).count() == 2
        assert db_session.get(TradeOfferEvent, first.id).accept_prob == 0.42

    def test_missing_verdict_and_probability(self, db_session):
        offer = TradeEventLogger(db_session).log_offer(_offer(accept_prob=None))
        assert offer.accept_prob == 0.0
        assert offer.verdict == "UNKNOWN"

    def test_features_json(self, db_session):
        event = _offer(
            features=OfferFeatures(lineup_impact=0.3, market=-0.1, caps_applied=["vorp_cap"]),
            segment_parts=SegmentParts(is_superflex=True, league_size=12),
            isotonic_applied=True,
            calibrated_accept_prob=0.38,
        )

        offer = TradeEventLogger(db_session).log_offer(event)

        assert offer.features_json["lineup_impact"] == 0.3
        assert offer.features_json["caps_applied"] == ["vorp_cap"]
        assert offer.features_json["segment_parts"]["is_superflex"] is True
        assert offer.features_json["isotonic_applied"] is True
        assert offer.features_json["raw_accept_prob"] == 0.42
        assert "vorp" not in offer.features_json

    def test_explanation_fields(self, db_session):
        event = _offer(
            confidence_label="MEDIUM",
            narrative_valid=False,
            driver_set_complete=True,
            drivers=[Driver(id="lineup_gain", direction="up", strength="strong", value=0.4), Driver(id="age_curve")],
        )

        offer = TradeEventLogger(db_session).log_offer(event)

        assert offer.confidence_label == "MEDIUM"
        assert offer.narrative_valid is False
        assert offer.driver_set_complete is True
        assert offer.drivers_json == [
            {"id": "lineup_gain", "direction": "up", "strength": "strong", "value": 0.4},
            {"id": "age_curve"},
        ]

    def test_drivers_default_to_null(self, db_session):
        offer = TradeEventLogger(db_session).log_offer(_offer())
        assert offer.drivers_json is None
        assert offer.narrative_valid is None


class TestLogOutcome:
    def test_label_uppercased(self, db_session):
        offer = TradeEventLogger(db_session).log_offer(_offer())
        outcome = TradeEventLogger(db_session).log_outcome("accepted", offer_event_id=offer.id, season=SEASON)
        assert outcome.outcome == "ACCEPTED"
        assert outcome.offer_event_id == offer.id

    def test_unlinked_outcome_allowed(self, db_session):
        outcome = TradeEventLogger(db_session).log_outcome("EXPIRED", league_id="league-1", season=SEASON)
        assert outcome.offer_event_id is None

    def test_invalid_outcome(self, db_session):
        with pytest.raises(InvalidOutcomeError):
            TradeEventLogger(db_session).log_outcome("MAYBE", season=SEASON)


class TestLogNarrativeValidation:
    def test_records_failure(self, db_session):
        logger = TradeEventLogger(db_session)
        offer = logger.log_offer(_offer())

        log = logger.log_narrative_validation(
            False, violations=["illegal_number:+12%"], offer_event_id=offer.id, mode="INSTANT"
        )

        stored = db_session.get(NarrativeValidationLog, log.id)
        assert stored.valid is False
        assert stored.violations == ["illegal_number:+12%"]
        assert stored.offer_event_id == offer.id

    def test_pass_without_offer(self, db_session):
        log = TradeEventLogger(db_session).log_narrative_validation(True)
        assert log.violations == []
        assert log.offer_event_id is None


class TestBackfill:
    def test_backfill_once_per_trade(self, db_session, make_trade):
        trades = [make_trade() for _ in range(3)]
        make_trade(analyzed=False)
        make_trade(season=2024)

        logger = TradeEventLogger(db_session)
        assert logger.backfill_accepted_outcomes(SEASON) == 3
        assert logger.backfill_accepted_outcomes(SEASON) == 0

        rows = db_session.query(TradeOutcomeEvent).all()
        assert sorted(r.league_trade_id for r in rows) == sorted(t.id for t in trades)
        assert all(r.outcome == "ACCEPTED" for r in rows)

"""
Trade offer and outcome event logging.

Offers are keyed by a content hash of (assets, mode, league) so retried logs
are silent no-ops. Outcomes are logged independently of whether a matching
offer exists; analyzed historical trades are backfilled as ACCEPTED outcomes
exactly once.
"""

import hashlib
import json
from typing import Any, Dict, List, Literal, Optional, get_args

from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from tradecal.config import settings
from tradecal.db.models import NarrativeValidationLog, TradeOfferEvent, TradeOutcomeEvent
from tradecal.db.repositories import (
    HistoricalTradeRepository,
    NarrativeValidationRepository,
    TradeEventRepository,
)
from tradecal.log_config import logger


MODEL_VERSION = "v2.1.0"
HASH_LENGTH = 32

OfferMode = Literal["INSTANT", "STRUCTURED", "TRADE_IDEAS", "PROPOSAL_GENERATOR"]
OFFER_MODES = get_args(OfferMode)


class Asset(BaseModel):
    name: str
    value: Optional[float] = None
    type: Optional[str] = None


class SegmentParts(BaseModel):
    is_superflex: bool = False
    is_te_premium: bool = False
    league_size: Optional[int] = None
    opponent_trade_sample_size: Optional[int] = None


class OfferFeatures(BaseModel):
    """Feature vector reported by the scorer."""

    lineup_impact: Optional[float] = None
    vorp: Optional[float] = None
    market: Optional[float] = None
    behavior: Optional[float] = None
    demand: Optional[float] = None
    weights: Optional[List[float]] = None
    caps_applied: List[str] = Field(default_factory=list)


class Driver(BaseModel):
    """One explanation driver shown with an offer."""

    id: str
    direction: Optional[str] = None
    strength: Optional[str] = None
    value: Optional[float] = None


class OfferEventInput(BaseModel):
    league_id: Optional[str] = None
    season: Optional[int] = None
    week: Optional[int] = None
    sender_user_id: Optional[str] = None
    opponent_user_id: Optional[str] = None
    assets_given: List[Asset]
    assets_received: List[Asset]
    features: Optional[OfferFeatures] = None
    segment_parts: Optional[SegmentParts] = None
    accept_prob: Optional[float] = None  # raw logistic output
    calibrated_accept_prob: Optional[float] = None
    isotonic_applied: Optional[bool] = None
    intercept_used: Optional[float] = None
    verdict: Optional[str] = None
    grade: Optional[str] = None
    confidence_score: Optional[float] = None
    confidence_label: Optional[str] = None
    narrative_valid: Optional[bool] = None
    driver_set_complete: Optional[bool] = None
    drivers: Optional[List[Driver]] = None
    mode: OfferMode
    is_super_flex: Optional[bool] = None
    league_format: Optional[str] = None
    scoring_type: Optional[str] = None


def compute_input_hash(
    assets_given: List[Asset],
    assets_received: List[Asset],
    mode: str,
    league_id: Optional[str],
) -> str:
    """sha256 over sorted asset names, mode and league, truncated to 32 hex chars."""
    payload = json.dumps(
        {
            "g": sorted(a.name for a in assets_given),
            "r": sorted(a.name for a in assets_received),
            "m": mode,
            "l": league_id,
        },
        separators=(",", ":"),
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()[:HASH_LENGTH]


def build_features_json(event: OfferEventInput) -> Dict[str, Any]:
    features: Dict[str, Any] = event.features.model_dump(exclude_none=True) if event.features else {}
    if event.segment_parts is not None:
        features["segment_parts"] = event.segment_parts.model_dump()
    if event.isotonic_applied is not None:
        features["isotonic_applied"] = event.isotonic_applied
        if event.accept_prob is not None:
            features["raw_accept_prob"] = event.accept_prob
    return features


class TradeEventLogger:
    """Writes offer and outcome events."""

    def __init__(self, db: Session):
        self.db = db
        self.events = TradeEventRepository(db)

    def log_offer(self, event: OfferEventInput) -> Optional[TradeOfferEvent]:
        """
        Record a shown offer.

        Returns the new row, or None when an offer with the same content hash
        was already logged.
        """
        input_hash = compute_input_hash(event.assets_given, event.assets_received, event.mode, event.league_id)
        offer = self.events.create_offer(
            league_id=event.league_id,
            season=event.season,
            week=event.week,
            sender_user_id=event.sender_user_id,
            opponent_user_id=event.opponent_user_id,
            assets_given=[a.model_dump(exclude_none=True) for a in event.assets_given],
            assets_received=[a.model_dump(exclude_none=True) for a in event.assets_received],
            features_json=build_features_json(event),
            accept_prob=event.accept_prob if event.accept_prob is not None else 0.0,
            calibrated_accept_prob=event.calibrated_accept_prob,
            intercept_used=event.intercept_used,
            verdict=event.verdict or "UNKNOWN",
            grade=event.grade,
            confidence_score=event.confidence_score,
            confidence_label=event.confidence_label,
            narrative_valid=event.narrative_valid,
            driver_set_complete=event.driver_set_complete,
            drivers_json=[d.model_dump(exclude_none=True) for d in event.drivers] if event.drivers is not None else None,
            mode=event.mode,
            is_super_flex=event.is_super_flex,
            league_format=event.league_format,
            scoring_type=event.scoring_type,
            input_hash=input_hash,
            model_version=MODEL_VERSION,
        )
        if offer is not None:
            logger.debug(f"Logged offer event {offer.id} (hash={input_hash})")
        return offer

    def log_outcome(
        self,
        outcome: str,
        offer_event_id: Optional[int] = None,
        league_id: Optional[str] = None,
        season: Optional[int] = None,
        week: Optional[int] = None,
        time_to_decision_min: Optional[int] = None,
        league_trade_id: Optional[int] = None,
    ) -> TradeOutcomeEvent:
        """
        Record how an offer resolved.

        Raises:
            InvalidOutcomeError: outcome is not ACCEPTED/REJECTED/EXPIRED/COUNTERED
        """
        return self.events.create_outcome(
            outcome,
            offer_event_id=offer_event_id,
            league_id=league_id,
            season=season,
            week=week,
            time_to_decision_min=time_to_decision_min,
            league_trade_id=league_trade_id,
        )

    def log_narrative_validation(
        self,
        valid: bool,
        violations: Optional[List[str]] = None,
        offer_event_id: Optional[int] = None,
        mode: Optional[str] = None,
    ) -> NarrativeValidationLog:
        """Record whether an offer explanation passed validation."""
        log = NarrativeValidationRepository(self.db).create(
            valid, violations=violations, offer_event_id=offer_event_id, mode=mode
        )
        if not valid:
            logger.debug(f"Narrative validation failed for offer {offer_event_id}: {violations}")
        return log

    def backfill_accepted_outcomes(self, season: Optional[int] = None) -> int:
        """Log an ACCEPTED outcome for every analyzed trade that has none yet."""
        season = season if season is not None else settings.calibration_season
        trades = HistoricalTradeRepository(self.db).get_analyzed(season)
        already = self.events.get_backfilled_trade_ids(t.id for t in trades)

        logged = 0
        for trade in trades:
            if trade.id in already:
                continue
            self.events.create_outcome(
                "ACCEPTED",
                league_id=trade.league_id,
                season=trade.season,
                week=trade.week,
                league_trade_id=trade.id,
            )
            logged += 1

        if logged:
            logger.info(f"Backfilled {logged} accepted outcomes from historical trades (season {season})")
        return logged

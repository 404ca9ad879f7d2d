"""
SQLAlchemy 2.0 database models for the trade acceptance calibration engine.

Offer and outcome events form an append-only log. CalibrationState holds one
row per season; each calibration job owns its own column group on that row.
"""

from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


OUTCOME_VALUES = ("ACCEPTED", "REJECTED", "EXPIRED", "COUNTERED")
OFFER_MODES = ("INSTANT", "STRUCTURED", "TRADE_IDEAS", "PROPOSAL_GENERATOR")


class TradeOfferEvent(Base):
    """One row per trade offer shown to a user, with the prediction that produced it."""

    __tablename__ = "trade_offer_events"
    __table_args__ = (
        UniqueConstraint("input_hash", name="uq_trade_offer_events_input_hash"),
        Index("ix_trade_offer_events_season", "season"),
        Index("ix_trade_offer_events_league_season", "league_id", "season"),
        Index("ix_trade_offer_events_mode_created", "mode", "created_at"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    league_id = Column(String, nullable=True)
    season = Column(Integer, nullable=True)
    week = Column(Integer, nullable=True)
    sender_user_id = Column(String, nullable=True)
    opponent_user_id = Column(String, nullable=True)
    assets_given = Column(JSON, nullable=False)  # [{"name": "...", "value": 4200, "type": "player"}]
    assets_received = Column(JSON, nullable=False)
    features_json = Column(JSON, nullable=True)  # feature vector, weights, caps_applied, segment_parts
    accept_prob = Column(Float, nullable=False, default=0.0)  # raw logistic output, pre-isotonic
    calibrated_accept_prob = Column(Float, nullable=True)
    intercept_used = Column(Float, nullable=True)
    verdict = Column(String, nullable=False, default="UNKNOWN")
    grade = Column(String, nullable=True)
    confidence_score = Column(Float, nullable=True)
    confidence_label = Column(String, nullable=True)  # HIGH / MEDIUM / LOW
    narrative_valid = Column(Boolean, nullable=True)
    driver_set_complete = Column(Boolean, nullable=True)
    drivers_json = Column(JSON, nullable=True)  # [{"id": "...", "direction": "...", "strength": "...", "value": 0.4}]
    mode = Column(String, nullable=False)
    is_super_flex = Column(Boolean, nullable=True)
    league_format = Column(String, nullable=True)
    scoring_type = Column(String, nullable=True)
    input_hash = Column(String(32), nullable=False)
    model_version = Column(String, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    outcomes = relationship("TradeOutcomeEvent", back_populates="offer_event")

    def __repr__(self) -> str:
        return f"<TradeOfferEvent(id={self.id}, league={self.league_id}, p={self.accept_prob})>"


class TradeOutcomeEvent(Base):
    """Resolution of an offer. offer_event_id is null for backfilled historical trades."""

    __tablename__ = "trade_outcome_events"
    __table_args__ = (
        CheckConstraint(
            "outcome IN ('ACCEPTED', 'REJECTED', 'EXPIRED', 'COUNTERED')",
            name="ck_trade_outcome_events_outcome",
        ),
        Index("ix_trade_outcome_events_season", "season"),
        Index("ix_trade_outcome_events_league_trade", "league_trade_id"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    offer_event_id = Column(Integer, ForeignKey("trade_offer_events.id"), nullable=True)
    league_id = Column(String, nullable=True)
    season = Column(Integer, nullable=True)
    week = Column(Integer, nullable=True)
    outcome = Column(String(16), nullable=False)
    time_to_decision_min = Column(Integer, nullable=True)
    league_trade_id = Column(Integer, ForeignKey("historical_trades.id"), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    offer_event = relationship("TradeOfferEvent", back_populates="outcomes")

    def __repr__(self) -> str:
        return f"<TradeOutcomeEvent(id={self.id}, offer={self.offer_event_id}, outcome={self.outcome})>"


class HistoricalTrade(Base):
    """Completed league trade used as calibration ground truth."""

    __tablename__ = "historical_trades"
    __table_args__ = (
        Index("ix_historical_trades_season_analyzed", "season", "analyzed"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    league_id = Column(String, nullable=True)
    season = Column(Integer, nullable=False)
    week = Column(Integer, nullable=True)
    analyzed = Column(Boolean, default=False, nullable=False)
    value_given = Column(Float, nullable=True)
    value_received = Column(Float, nullable=True)
    value_differential = Column(Float, nullable=True)
    analysis_result = Column(JSON, nullable=True)  # {"percent_diff": 12.5, "market_context": {...}}
    is_super_flex = Column(Boolean, nullable=True)
    league_format = Column(String, nullable=True)
    scoring_type = Column(String, nullable=True)
    trade_date = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    def __repr__(self) -> str:
        return f"<HistoricalTrade(id={self.id}, season={self.season}, given={self.value_given}, received={self.value_received})>"


class TradeFeedback(Base):
    """User rating of an AI trade grade."""

    __tablename__ = "trade_feedback"
    __table_args__ = (
        CheckConstraint("rating >= 1 AND rating <= 5", name="ck_trade_feedback_rating"),
        Index("ix_trade_feedback_created_at", "created_at"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String, nullable=True)
    rating = Column(Integer, nullable=False)
    ai_grade = Column(Text, nullable=True)
    you_give = Column(JSON, nullable=True)
    you_receive = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    def __repr__(self) -> str:
        return f"<TradeFeedback(id={self.id}, rating={self.rating}, grade={self.ai_grade})>"


class CalibrationState(Base):
    """Active calibration parameters for one season.

    JSON columns are written from and read through the versioned records in
    tradecal.calibration.schemas.
    """

    __tablename__ = "calibration_states"
    __table_args__ = (
        UniqueConstraint("season", name="uq_calibration_states_season"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    season = Column(Integer, nullable=False)
    schema_version = Column(Integer, nullable=False, default=1)

    # Global intercept (intercept job / shadow promotion)
    intercept = Column(Float, nullable=True)
    intercept_sample_size = Column(Integer, nullable=True)
    intercept_calibrated_at = Column(DateTime, nullable=True)
    calibration_history = Column(JSON, nullable=True)  # last 10 CalibrationHistoryEntry

    # Feedback job
    feedback_adjustments = Column(JSON, nullable=True)
    feedback_calibrated_at = Column(DateTime, nullable=True)

    # Segment intercepts (weekly recalibration)
    segment_intercepts = Column(JSON, nullable=True)

    # Isotonic job
    isotonic_map = Column(JSON, nullable=True)
    isotonic_sample_size = Column(Integer, nullable=True)
    isotonic_computed_at = Column(DateTime, nullable=True)

    # Shadow slot
    shadow_intercept = Column(Float, nullable=True)
    shadow_sample_size = Column(Integer, nullable=True)
    shadow_computed_at = Column(DateTime, nullable=True)
    shadow_metrics = Column(JSON, nullable=True)
    last_recalibration_at = Column(DateTime, nullable=True)

    # Drift job
    drift_report = Column(JSON, nullable=True)
    drift_checked_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def __repr__(self) -> str:
        return f"<CalibrationState(season={self.season}, intercept={self.intercept}, shadow={self.shadow_intercept})>"


class JobLease(Base):
    """Advisory single-flight lease for calibration jobs."""

    __tablename__ = "job_leases"
    __table_args__ = (
        UniqueConstraint("name", name="uq_job_leases_name"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String, nullable=False)
    holder = Column(String, nullable=False)
    acquired_at = Column(DateTime, nullable=False)
    expires_at = Column(DateTime, nullable=False)

    def __repr__(self) -> str:
        return f"<JobLease(name={self.name}, holder={self.holder}, expires_at={self.expires_at})>"


class NarrativeValidationLog(Base):
    """Result of validating the generated explanation of one offer."""

    __tablename__ = "narrative_validation_logs"
    __table_args__ = (
        Index("ix_narrative_validation_logs_created_at", "created_at"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    offer_event_id = Column(Integer, ForeignKey("trade_offer_events.id"), nullable=True)
    mode = Column(String, nullable=True)
    valid = Column(Boolean, nullable=False)
    violations = Column(JSON, nullable=True)  # ["INCOMPLETE_DRIVER_SET", "illegal_number:..."]
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    def __repr__(self) -> str:
        return f"<NarrativeValidationLog(id={self.id}, offer={self.offer_event_id}, valid={self.valid})>"


class ModelMetricsDaily(Base):
    """Daily model health rollup for one offer mode and segment key."""

    __tablename__ = "model_metrics_daily"
    __table_args__ = (
        UniqueConstraint("day", "mode", "segment_key", name="uq_model_metrics_daily_key"),
        Index("ix_model_metrics_daily_day", "day"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    day = Column(Date, nullable=False)
    mode = Column(String, nullable=False)
    segment_key = Column(String, nullable=False)  # DYN_SF_TEP_SZ12_H3_9
    n_offers = Column(Integer, nullable=False, default=0)
    n_labeled = Column(Integer, nullable=False, default=0)
    n_accepted = Column(Integer, nullable=False, default=0)
    mean_pred = Column(Float, nullable=False, default=0.0)
    mean_obs = Column(Float, nullable=False, default=0.0)
    ece = Column(Float, nullable=False, default=0.0)
    brier = Column(Float, nullable=False, default=0.0)
    auc = Column(Float, nullable=True)
    psi_json = Column(JSON, nullable=True)  # {"psi": {...}, "jsd": {...}}
    cap_rate_json = Column(JSON, nullable=True)
    bucket_stats_json = Column(JSON, nullable=True)
    narrative_fail_rate = Column(Float, nullable=False, default=0.0)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def __repr__(self) -> str:
        return f"<ModelMetricsDaily(day={self.day}, mode={self.mode}, segment={self.segment_key}, n={self.n_offers})>"

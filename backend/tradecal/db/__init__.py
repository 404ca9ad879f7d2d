"""Database models, sessions and repositories."""

from tradecal.db.models import (
    Base,
    CalibrationState,
    HistoricalTrade,
    JobLease,
    ModelMetricsDaily,
    NarrativeValidationLog,
    TradeFeedback,
    TradeOfferEvent,
    TradeOutcomeEvent,
)

__all__ = [
    "Base",
    "CalibrationState",
    "HistoricalTrade",
    "JobLease",
    "ModelMetricsDaily",
    "NarrativeValidationLog",
    "TradeFeedback",
    "TradeOfferEvent",
    "TradeOutcomeEvent",
]

"""
Repository pattern for data access.

Provides clean interfaces for database operations, abstracting SQLAlchemy details.
Each repository handles a single aggregate: the offer/outcome log, historical
trades, feedback, calibration state, narrative validations or the daily
metrics rollup.
"""

from datetime import date, datetime, timedelta
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from loguru import logger

from tradecal.db.models import (
    CalibrationState,
    HistoricalTrade,
    ModelMetricsDaily,
    NarrativeValidationLog,
    OUTCOME_VALUES,
    TradeFeedback,
    TradeOfferEvent,
    TradeOutcomeEvent,
)
from tradecal.utils.datetime import utcnow
from tradecal.utils.errors import InvalidOutcomeError, RecordNotFoundError


class TradeEventRepository:
    """Repository for the append-only offer and outcome event log."""

    def __init__(self, db: Session):
        self.db = db

    def create_offer(self, **fields) -> Optional[TradeOfferEvent]:
        """
        Insert an offer event.

        Returns None when the input hash already exists. The insert runs in a
        SAVEPOINT so a duplicate does not poison the caller's transaction.
        """
        offer = TradeOfferEvent(**fields)
        try:
            with self.db.begin_nested():
                self.db.add(offer)
                self.db.flush()
        except IntegrityError:
            logger.debug(f"Duplicate offer event ignored: hash={fields.get('input_hash')}")
            return None
        return offer

    def create_outcome(
        self,
        outcome: str,
        offer_event_id: Optional[int] = None,
        league_id: Optional[str] = None,
        season: Optional[int] = None,
        week: Optional[int] = None,
        time_to_decision_min: Optional[int] = None,
        league_trade_id: Optional[int] = None,
    ) -> TradeOutcomeEvent:
        """Insert an outcome event. Outcome labels are case-insensitive."""
        label = (outcome or "").upper()
        if label not in OUTCOME_VALUES:
            raise InvalidOutcomeError(outcome, allowed=OUTCOME_VALUES)

        event = TradeOutcomeEvent(
            offer_event_id=offer_event_id,
            league_id=league_id,
            season=season,
            week=week,
            outcome=label,
            time_to_decision_min=time_to_decision_min,
            league_trade_id=league_trade_id,
        )
        self.db.add(event)
        self.db.flush()
        return event

    def get_linked_outcomes(
        self,
        season: int,
        outcomes: Optional[Sequence[str]] = None,
    ) -> List[Tuple[TradeOfferEvent, TradeOutcomeEvent]]:
        """(offer, outcome) pairs for outcomes that reference a logged offer."""
        query = (
            select(TradeOfferEvent, TradeOutcomeEvent)
            .join(TradeOutcomeEvent, TradeOutcomeEvent.offer_event_id == TradeOfferEvent.id)
            .where(TradeOutcomeEvent.season == season)
            .order_by(TradeOutcomeEvent.id)
        )
        if outcomes:
            query = query.where(TradeOutcomeEvent.outcome.in_(list(outcomes)))
        return [(offer, outcome) for offer, outcome in self.db.execute(query).all()]

    def get_backfilled_trade_ids(self, trade_ids: Iterable[int]) -> set:
        """Historical trade IDs that already have an outcome event."""
        ids = list(trade_ids)
        if not ids:
            return set()
        rows = self.db.execute(
            select(TradeOutcomeEvent.league_trade_id)
            .where(TradeOutcomeEvent.league_trade_id.in_(ids))
        ).scalars().all()
        return set(rows)

    def get_paired_since(
        self,
        cutoff: datetime,
        outcomes: Sequence[str] = ("ACCEPTED", "REJECTED"),
    ) -> List[Tuple[TradeOfferEvent, TradeOutcomeEvent]]:
        """(offer, outcome) pairs whose outcome was logged at or after cutoff."""
        return [
            (offer, outcome)
            for offer, outcome in self.db.execute(
                select(TradeOfferEvent, TradeOutcomeEvent)
                .join(TradeOutcomeEvent, TradeOutcomeEvent.offer_event_id == TradeOfferEvent.id)
                .where(TradeOutcomeEvent.created_at >= cutoff)
                .where(TradeOutcomeEvent.outcome.in_(list(outcomes)))
                .order_by(TradeOfferEvent.created_at, TradeOfferEvent.id, TradeOutcomeEvent.id)
            ).all()
        ]

    def get_offers_between(
        self,
        start: datetime,
        end: Optional[datetime] = None,
        mode: Optional[str] = None,
    ) -> List[TradeOfferEvent]:
        """Offers created in [start, end), oldest first."""
        query = select(TradeOfferEvent).where(TradeOfferEvent.created_at >= start)
        if end is not None:
            query = query.where(TradeOfferEvent.created_at < end)
        if mode is not None:
            query = query.where(TradeOfferEvent.mode == mode)
        return list(self.db.execute(query.order_by(TradeOfferEvent.created_at, TradeOfferEvent.id)).scalars().all())

    def get_outcome_labels(self, offer_ids: Iterable[int]) -> Dict[int, str]:
        """Latest outcome label per offer ID."""
        ids = list(offer_ids)
        if not ids:
            return {}
        rows = self.db.execute(
            select(TradeOutcomeEvent.offer_event_id, TradeOutcomeEvent.outcome)
            .where(TradeOutcomeEvent.offer_event_id.in_(ids))
            .order_by(TradeOutcomeEvent.id)
        ).all()
        return {offer_id: outcome for offer_id, outcome in rows}


class HistoricalTradeRepository:
    """Repository for completed league trades."""

    def __init__(self, db: Session):
        self.db = db

    def get_analyzed(self, season: int) -> List[HistoricalTrade]:
        """Analyzed trades of a season with both sides valued."""
        return list(
            self.db.execute(
                select(HistoricalTrade)
                .where(HistoricalTrade.season == season)
                .where(HistoricalTrade.analyzed == True)  # noqa: E712
                .where(HistoricalTrade.value_given.isnot(None))
                .where(HistoricalTrade.value_received.isnot(None))
                .order_by(HistoricalTrade.id)
            ).scalars().all()
        )


class FeedbackRepository:
    """Repository for user ratings of AI trade grades."""

    def __init__(self, db: Session):
        self.db = db

    def get_recent(self, days: int, now: Optional[datetime] = None) -> List[TradeFeedback]:
        """Feedback created within the last `days` days."""
        cutoff = (now or utcnow()) - timedelta(days=days)
        return list(
            self.db.execute(
                select(TradeFeedback)
                .where(TradeFeedback.created_at >= cutoff)
                .order_by(TradeFeedback.created_at)
            ).scalars().all()
        )


class CalibrationStateRepository:
    """Repository for the per-season calibration record."""

    def __init__(self, db: Session):
        self.db = db

    def get(self, season: int) -> Optional[CalibrationState]:
        """Get calibration state for a season."""
        return self.db.execute(
            select(CalibrationState).where(CalibrationState.season == season)
        ).scalar_one_or_none()

    def get_or_404(self, season: int) -> CalibrationState:
        state = self.get(season)
        if not state:
            raise RecordNotFoundError(f"Calibration state for season {season} not found")
        return state

    def upsert(self, season: int, **fields) -> CalibrationState:
        """
        Write one job's slice of the calibration record.

        Creates the row on first write. All fields of the slice are assigned
        together and flushed once.
        """
        state = self.get(season)
        if state is None:
            state = CalibrationState(season=season)
            self.db.add(state)

        for key, value in fields.items():
            if not hasattr(CalibrationState, key):
                raise AttributeError(f"CalibrationState has no column '{key}'")
            setattr(state, key, value)

        state.updated_at = utcnow()
        self.db.flush()
        return state


class NarrativeValidationRepository:
    """Repository for explanation validation results."""

    def __init__(self, db: Session):
        self.db = db

    def create(
        self,
        valid: bool,
        violations: Optional[Sequence[str]] = None,
        offer_event_id: Optional[int] = None,
        mode: Optional[str] = None,
    ) -> NarrativeValidationLog:
        log = NarrativeValidationLog(
            valid=valid,
            violations=list(violations or []),
            offer_event_id=offer_event_id,
            mode=mode,
        )
        self.db.add(log)
        self.db.flush()
        return log

    def get_since(self, cutoff: datetime) -> List[NarrativeValidationLog]:
        return list(
            self.db.execute(
                select(NarrativeValidationLog)
                .where(NarrativeValidationLog.created_at >= cutoff)
                .order_by(NarrativeValidationLog.created_at)
            ).scalars().all()
        )


class ModelMetricsRepository:
    """Repository for the daily model health rollup."""

    def __init__(self, db: Session):
        self.db = db

    def get(self, day: date, mode: str, segment_key: str) -> Optional[ModelMetricsDaily]:
        return self.db.execute(
            select(ModelMetricsDaily)
            .where(ModelMetricsDaily.day == day)
            .where(ModelMetricsDaily.mode == mode)
            .where(ModelMetricsDaily.segment_key == segment_key)
        ).scalar_one_or_none()

    def get_range(self, start: date, end: date, mode: Optional[str] = None) -> List[ModelMetricsDaily]:
        """Rows with start <= day <= end, ordered by day, mode and segment."""
        query = (
            select(ModelMetricsDaily)
            .where(ModelMetricsDaily.day >= start)
            .where(ModelMetricsDaily.day <= end)
        )
        if mode is not None:
            query = query.where(ModelMetricsDaily.mode == mode)
        query = query.order_by(ModelMetricsDaily.day, ModelMetricsDaily.mode, ModelMetricsDaily.segment_key)
        return list(self.db.execute(query).scalars().all())

    def upsert(self, day: date, mode: str, segment_key: str, **fields) -> ModelMetricsDaily:
        """Create or overwrite the row for (day, mode, segment_key)."""
        row = self.get(day, mode, segment_key)
        if row is None:
            row = ModelMetricsDaily(day=day, mode=mode, segment_key=segment_key)
            self.db.add(row)

        for key, value in fields.items():
            if not hasattr(ModelMetricsDaily, key):
                raise AttributeError(f"ModelMetricsDaily has no column '{key}'")
            setattr(row, key, value)

        row.updated_at = utcnow()
        self.db.flush()
        return row

"""
Shared pytest fixtures for the calibration engine test suite.

Provides a fresh SQLite database per test, an injectable frozen clock and
small factories for offer/outcome, historical trade and feedback rows.
"""

import os
import tempfile
import uuid
from datetime import datetime, timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from tradecal.calibration.cache import CalibrationStateHolder, build_snapshot
from tradecal.calibration.features import DEFAULT_INTERCEPT
from tradecal.db.models import (
    Base,
    HistoricalTrade,
    TradeFeedback,
    TradeOfferEvent,
    TradeOutcomeEvent,
)
from tradecal.db.session import enable_sqlite_savepoints

SEASON = 2025


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FrozenClock(datetime(2025, 10, 1, 12, 0, 0))


@pytest.fixture(scope="function")
def db_session():
    """Create a temporary SQLite file database for each test."""
    temp_file = tempfile.NamedTemporaryFile(delete=False, suffix=".db")
    temp_file.close()
    db_path = temp_file.name

    engine = create_engine(f"sqlite:///{db_path}", echo=False)

    enable_sqlite_savepoints(engine)
    Base.metadata.create_all(engine)

    Session = sessionmaker(bind=engine, expire_on_commit=False)
    session = Session()

    yield session

    session.close()
    Base.metadata.drop_all(engine)
    engine.dispose()
    os.unlink(db_path)


@pytest.fixture
def make_linked_outcome(db_session):
    """Insert an offer event with an outcome that references it."""

    def _make(
        accept_prob: float,
        outcome: str,
        season: int = SEASON,
        intercept_used: float = DEFAULT_INTERCEPT,
        is_super_flex=None,
        league_format=None,
        scoring_type=None,
    ) -> TradeOutcomeEvent:
        offer = TradeOfferEvent(
            league_id="league-1",
            season=season,
            assets_given=[{"name": "Player A"}],
            assets_received=[{"name": "Player B"}],
            accept_prob=accept_prob,
            intercept_used=intercept_used,
            verdict="FAIR",
            mode="INSTANT",
            is_super_flex=is_super_flex,
            league_format=league_format,
            scoring_type=scoring_type,
            input_hash=uuid.uuid4().hex,
            model_version="test",
        )
        db_session.add(offer)
        db_session.flush()

        result = TradeOutcomeEvent(
            offer_event_id=offer.id,
            league_id="league-1",
            season=season,
            outcome=outcome,
        )
        db_session.add(result)
        db_session.flush()
        return result

    return _make


@pytest.fixture
def make_trade(db_session):
    """Insert an analyzed historical trade."""

    def _make(
        value_given: float = 1000.0,
        value_received: float = 1000.0,
        season: int = SEASON,
        analyzed: bool = True,
        analysis_result=None,
        is_super_flex=True,
        league_format="dynasty",
        scoring_type="ppr",
    ) -> HistoricalTrade:
        trade = HistoricalTrade(
            league_id="league-1",
            season=season,
            analyzed=analyzed,
            value_given=value_given,
            value_received=value_received,
            value_differential=value_received - value_given,
            analysis_result=analysis_result,
            is_super_flex=is_super_flex,
            league_format=league_format,
            scoring_type=scoring_type,
        )
        db_session.add(trade)
        db_session.flush()
        return trade

    return _make


@pytest.fixture
def make_feedback(db_session, clock):
    """Insert a feedback rating created at the frozen clock's time unless told otherwise."""

    def _make(rating: int, ai_grade: str, created_at: datetime = None) -> TradeFeedback:
        feedback = TradeFeedback(
            user_id="user-1",
            rating=rating,
            ai_grade=ai_grade,
            created_at=created_at or clock(),
        )
        db_session.add(feedback)
        db_session.flush()
        return feedback

    return _make


@pytest.fixture
def reader_holder(db_session):
    """State holder loading through its own session, as a request on another worker would."""
    Reader = sessionmaker(bind=db_session.get_bind(), expire_on_commit=False)

    def _load(season):
        with Reader() as session:
            return build_snapshot(session, season)

    return CalibrationStateHolder(loader=_load)


@pytest.fixture
def make_offer(db_session, clock):
    """Insert an offer event, optionally with an outcome, both stamped at created_at."""

    def _make(
        accept_prob: float = 0.5,
        outcome: str = None,
        created_at: datetime = None,
        mode: str = "INSTANT",
        features_json=None,
        **fields,
    ) -> TradeOfferEvent:
        created_at = created_at or clock()
        offer = TradeOfferEvent(
            league_id="league-1",
            season=SEASON,
            assets_given=[{"name": "Player A"}],
            assets_received=[{"name": "Player B"}],
            accept_prob=accept_prob,
            verdict="FAIR",
            mode=mode,
            features_json=features_json,
            input_hash=uuid.uuid4().hex,
            model_version="test",
            created_at=created_at,
            **fields,
        )
        db_session.add(offer)
        db_session.flush()

        if outcome is not None:
            db_session.add(TradeOutcomeEvent(
                offer_event_id=offer.id, season=SEASON, outcome=outcome, created_at=created_at,
            ))
            db_session.flush()
        return offer

    return _make

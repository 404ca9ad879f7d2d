"""Tests for the SQLite engine setup in tradecal.db.session."""

import os
import tempfile
from datetime import datetime

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session

from tradecal.db.models import Base, JobLease
from tradecal.db.session import enable_sqlite_savepoints


@pytest.fixture
def engine():
    temp_file = tempfile.NamedTemporaryFile(delete=False, suffix=".db")
    temp_file.close()

    engine = create_engine(f"sqlite:///{temp_file.name}")
    enable_sqlite_savepoints(engine)
    Base.metadata.create_all(engine)

    yield engine

    engine.dispose()
    os.unlink(temp_file.name)


def _lease(name):
    now = datetime(2025, 10, 1, 12, 0, 0)
    return JobLease(name=name, holder="a", acquired_at=now, expires_at=now)


def test_driver_transaction_handling_is_off(engine):
    with engine.connect() as conn:
        assert conn.connection.driver_connection.isolation_level is None


def test_nested_rollback_keeps_outer_work(engine):
    with Session(engine) as session:
        session.add(_lease("outer"))
        session.flush()

        nested = session.begin_nested()
        session.add(_lease("inner"))
        session.flush()
        nested.rollback()

        session.commit()

    with Session(engine) as session:
        names = session.execute(select(JobLease.name)).scalars().all()

    assert names == ["outer"]

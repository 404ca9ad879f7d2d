"""
Engine and sessions for the calibration store (SQLAlchemy 2.0).

Jobs run inside get_db_transaction(). Job leases commit on
get_independent_session() so they never share a job's unit of work.
"""

from contextlib import contextmanager
from typing import Any, Dict, Generator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker, scoped_session
from loguru import logger

from tradecal.config import settings
from tradecal.utils.errors import DatabaseError, TradeCalError


def _engine_kwargs(database_url: str) -> Dict[str, Any]:
    """Pool and connect arguments per backend."""
    if database_url.startswith("sqlite"):
        return {
            "echo": settings.debug,
            "connect_args": {"check_same_thread": False},
        }
    return {
        "pool_pre_ping": True,  # Verify connections before using
        "pool_size": 5,
        "max_overflow": 10,
        "pool_timeout": 30,
        "pool_recycle": 1800,
        "echo": settings.debug,
        "connect_args": {
            "connect_timeout": 10,
            "options": "-c statement_timeout=60000",  # 60 second query timeout
        },
    }


def enable_sqlite_savepoints(bind: Engine) -> None:
    """
    Make begin_nested() work on pysqlite.

    The driver opens transactions lazily and never before a SAVEPOINT, so its
    own handling is switched off and BEGIN is emitted on every begin.
    """

    @event.listens_for(bind, "connect")
    def _do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(bind, "begin")
    def _do_begin(conn):
        conn.exec_driver_sql("BEGIN")


engine = create_engine(settings.database_url, **_engine_kwargs(settings.database_url))
if settings.database_url.startswith("sqlite"):
    enable_sqlite_savepoints(engine)

SessionLocal = scoped_session(
    sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=engine,
        expire_on_commit=False,  # job results are read after commit
    )
)


def init_db() -> None:
    """Create any missing calibration tables. Existing tables are left alone."""
    from tradecal.db.models import Base

    Base.metadata.create_all(bind=engine, checkfirst=True)
    logger.info(f"Calibration schema ready ({len(Base.metadata.tables)} tables)")


def get_db() -> Session:
    """Thread-scoped session. Release it with close_db()."""
    return SessionLocal()


def close_db() -> None:
    """Drop the thread-scoped session."""
    SessionLocal.remove()


@contextmanager
def get_db_transaction() -> Generator[Session, None, None]:
    """
    One calibration job's unit of work.

        with get_db_transaction() as db:
            CalibrationService(db).run_intercept()

    Commits when the block exits cleanly. Engine errors roll back and surface
    as DatabaseError; TradeCalError subclasses roll back and pass through.
    """
    db = get_db()
    try:
        yield db
        db.commit()
        logger.debug("Calibration transaction committed")
    except TradeCalError:
        db.rollback()
        raise
    except Exception as e:
        db.rollback()
        logger.error(f"Calibration transaction rolled back: {e}")
        raise DatabaseError(f"Calibration write failed: {e}", details={"cause": type(e).__name__}) from e
    finally:
        close_db()


@contextmanager
def get_independent_session() -> Generator[Session, None, None]:
    """
    Session outside the thread-scoped registry.

    Its commits do not touch the caller's unit of work; job leases use it so
    a lease write never commits half a calibration run.
    """
    db = SessionLocal.session_factory()
    try:
        yield db
    finally:
        db.close()

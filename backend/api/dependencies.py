"""FastAPI dependencies"""
from typing import Callable, ContextManager, Generator, Optional

from fastapi import Header, HTTPException, Request
from sqlalchemy.orm import Session

from tradecal.calibration.cache import CalibrationStateHolder
from tradecal.calibration.lock import job_lease
from tradecal.config import settings
from tradecal.db.session import close_db, get_db as get_db_session
from tradecal.monitoring.valuation_source import ValuationSource


def get_db() -> Generator[Session, None, None]:
    """Thread-scoped session, released after the request"""
    db = get_db_session()
    try:
        yield db
    finally:
        close_db()


def get_state_holder(request: Request) -> CalibrationStateHolder:
    """Process-wide calibration state holder"""
    return request.app.state.calibration_holder


def get_valuation_source(request: Request) -> Optional[ValuationSource]:
    return getattr(request.app.state, "valuation_source", None)


def get_lease_factory() -> Callable[[str], ContextManager]:
    """Context manager factory guarding manual job runs"""
    return job_lease


def verify_admin_key(x_admin_key: str = Header(..., alias="X-Admin-Key")) -> bool:
    """Verify the admin key from request header."""
    if not settings.admin_key:
        raise HTTPException(status_code=500, detail="Admin key not configured")
    if x_admin_key != settings.admin_key:
        raise HTTPException(status_code=401, detail="Invalid admin key")
    return True

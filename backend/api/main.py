"""Main FastAPI application"""
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from tradecal import __version__
from tradecal.calibration.cache import CalibrationStateHolder, build_snapshot
from tradecal.config import settings
from tradecal.db.session import get_independent_session, init_db
from tradecal.log_config import logger
from tradecal.monitoring.valuation_source import ValuationSource
from tradecal.utils.errors import (
    LockUnavailableError,
    RecordNotFoundError,
    TradeCalError,
    ValidationError,
)

from api.routers import calibration
from jobs.scheduler import start_scheduler, stop_scheduler


def _load_snapshot(season: int):
    """Snapshot loader for the shared holder; reads on its own session."""
    with get_independent_session() as db:
        return build_snapshot(db, season)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown events"""
    logger.info("Starting calibration admin API...")

    init_db()

    app.state.valuation_source = ValuationSource()
    start_scheduler(holder=app.state.calibration_holder, valuation_source=app.state.valuation_source)

    yield

    logger.info("Shutting down calibration admin API...")
    stop_scheduler()


app = FastAPI(
    title="Trade Calibration Admin API",
    description="Calibration state, drift reports and manual calibration runs.",
    version=__version__,
    lifespan=lifespan,
    openapi_tags=[
        {"name": "calibration", "description": "Trade acceptance calibration and drift monitoring"},
    ],
)

app.state.calibration_holder = CalibrationStateHolder(
    loader=_load_snapshot,
    ttl_seconds=settings.calibration_cache_ttl_seconds,
)


_ERROR_STATUS = (
    (LockUnavailableError, status.HTTP_409_CONFLICT),
    (RecordNotFoundError, status.HTTP_404_NOT_FOUND),
    (ValidationError, status.HTTP_400_BAD_REQUEST),
)


@app.exception_handler(TradeCalError)
async def tradecal_exception_handler(request: Request, exc: TradeCalError):
    """Handle calibration engine exceptions with standard format"""
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    for exc_type, code in _ERROR_STATUS:
        if isinstance(exc, exc_type):
            status_code = code
            break
    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(status_code=status_code, content={**exc.to_dict(), "status_code": status_code})


app.include_router(calibration.router)


@app.get("/health")
async def health():
    return {"status": "ok", "version": __version__}

"""
Admin calibration endpoints.
Protected by the X-Admin-Key header for operator-only access.
"""
from datetime import date
from typing import Any, Callable, ContextManager, Dict, List, Literal, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from api.dependencies import (
    get_db,
    get_lease_factory,
    get_state_holder,
    get_valuation_source,
    verify_admin_key,
)
from tradecal.calibration.cache import CalibrationStateHolder
from tradecal.calibration.lock import CALIBRATION_LEASE
from tradecal.calibration.schemas import SegmentContext, dump_record
from tradecal.calibration.service import CalibrationService
from tradecal.config import settings
from tradecal.db.repositories import ModelMetricsRepository
from tradecal.events.logger import OFFER_MODES, OfferMode
from tradecal.log_config import logger
from tradecal.monitoring.metrics import CalibrationMetricsService, Dashboard, Drilldown, SummaryCard, summary_cards
from tradecal.monitoring.rollup import rollup_model_metrics_daily
from tradecal.monitoring.valuation_source import ValuationSource

router = APIRouter(prefix="/admin/calibration", tags=["calibration"])

CalibrationJob = Literal["intercept", "feedback", "full", "weekly", "drift", "isotonic", "backfill"]


class CalibrateRequest(BaseModel):
    probability: float
    segment: Optional[SegmentContext] = None
    season: Optional[int] = None


class CalibrateResponse(BaseModel):
    raw: Optional[float]
    calibrated: float
    isotonic_applied: bool
    segment_used: Optional[str] = None


class JobRunResponse(BaseModel):
    job: str
    season: int
    result: Dict[str, Any] = Field(default_factory=dict)


def _service(
    db: Session,
    holder: CalibrationStateHolder,
    season: Optional[int] = None,
    valuation_source: Optional[ValuationSource] = None,
) -> CalibrationService:
    return CalibrationService(db, season, holder=holder, valuation_source=valuation_source)


@router.get("/state")
def get_calibration_state(
    season: Optional[int] = None,
    db: Session = Depends(get_db),
    holder: CalibrationStateHolder = Depends(get_state_holder),
    _: bool = Depends(verify_admin_key),
):
    """Active calibration parameters for a season."""
    return _service(db, holder, season).describe_state()


@router.get("/drift")
def get_drift_report(
    season: Optional[int] = None,
    db: Session = Depends(get_db),
    holder: CalibrationStateHolder = Depends(get_state_holder),
    _: bool = Depends(verify_admin_key),
):
    """Latest stored drift report."""
    return dump_record(_service(db, holder, season).get_drift_report())


@router.post("/run/{job}", response_model=JobRunResponse)
def run_calibration_job(
    job: CalibrationJob,
    season: Optional[int] = None,
    db: Session = Depends(get_db),
    holder: CalibrationStateHolder = Depends(get_state_holder),
    valuation_source: Optional[ValuationSource] = Depends(get_valuation_source),
    lease_factory: Callable[[str], ContextManager] = Depends(get_lease_factory),
    _: bool = Depends(verify_admin_key),
):
    """
    Run one calibration job now.

    Returns 409 when another calibration run holds the lease.
    """
    service = _service(db, holder, season, valuation_source)
    runners = {
        "intercept": service.run_intercept,
        "feedback": service.run_feedback,
        "full": service.run_full_calibration,
        "weekly": service.run_weekly_recalibration,
        "drift": service.run_drift_detection,
        "isotonic": service.run_isotonic,
        "backfill": service.run_backfill,
    }

    logger.info(f"Manual calibration run requested: {job} (season {service.season})")
    with lease_factory(CALIBRATION_LEASE):
        try:
            result = runners[job]()
            db.commit()
        except Exception:
            db.rollback()
            raise
    holder.invalidate(service.season)

    if job == "backfill":
        payload = {"outcomes_created": result}
    else:
        payload = dump_record(result)
    return JobRunResponse(job=job, season=service.season, result=payload)


@router.post("/calibrate", response_model=CalibrateResponse)
def calibrate_probability(
    body: CalibrateRequest,
    db: Session = Depends(get_db),
    holder: CalibrationStateHolder = Depends(get_state_holder),
    _: bool = Depends(verify_admin_key),
):
    """Apply the active calibration to a raw probability (diagnostics)."""
    detail = _service(db, holder, body.season).calibrate_detailed(body.probability, body.segment)
    return CalibrateResponse(**detail)


class MetricsResponse(BaseModel):
    dashboard: Dashboard
    cards: List[SummaryCard]


@router.get("/metrics", response_model=MetricsResponse)
def get_calibration_metrics(
    days: Optional[int] = Query(default=None, ge=1, le=365),
    mode: Optional[str] = None,
    segment: Optional[str] = None,
    db: Session = Depends(get_db),
    _: bool = Depends(verify_admin_key),
):
    """Calibration metrics dashboard with summary cards. mode/segment narrow the calibration section."""
    dashboard = CalibrationMetricsService(db).dashboard(days or settings.metrics_days_back, mode=mode, segment=segment)
    return MetricsResponse(dashboard=dashboard, cards=summary_cards(dashboard))


@router.get("/metrics/drilldown", response_model=Drilldown)
def get_metrics_drilldown(
    segment_key: str,
    segment_value: str,
    days: Optional[int] = Query(default=None, ge=1, le=365),
    db: Session = Depends(get_db),
    _: bool = Depends(verify_admin_key),
):
    """Reliability, feature drift and recent offers for one heatmap cell."""
    return CalibrationMetricsService(db).drilldown(days or settings.metrics_days_back, segment_key, segment_value)


@router.get("/metrics/daily")
def get_daily_metrics(
    start: date,
    end: Optional[date] = None,
    mode: Optional[str] = None,
    db: Session = Depends(get_db),
    _: bool = Depends(verify_admin_key),
):
    """Stored daily rollup rows between start and end (inclusive)."""
    rows = ModelMetricsRepository(db).get_range(start, end or start, mode=mode)
    return [
        {
            "day": row.day.isoformat(),
            "mode": row.mode,
            "segment_key": row.segment_key,
            "n_offers": row.n_offers,
            "n_labeled": row.n_labeled,
            "n_accepted": row.n_accepted,
            "mean_pred": row.mean_pred,
            "mean_obs": row.mean_obs,
            "ece": row.ece,
            "brier": row.brier,
            "auc": row.auc,
            "psi": row.psi_json,
            "cap_rates": row.cap_rate_json,
            "bucket_stats": row.bucket_stats_json,
            "narrative_fail_rate": row.narrative_fail_rate,
        }
        for row in rows
    ]


@router.post("/metrics/rollup")
def run_metrics_rollup(
    day: date,
    mode: Optional[OfferMode] = None,
    db: Session = Depends(get_db),
    _: bool = Depends(verify_admin_key),
):
    """Roll up one day now, for one mode or all of them."""
    logger.info(f"Manual metrics rollup requested for {day} (mode={mode or 'all'})")
    try:
        results = [rollup_model_metrics_daily(db, day, m) for m in ([mode] if mode else OFFER_MODES)]
        db.commit()
    except Exception:
        db.rollback()
        raise
    return {"day": day.isoformat(), "modes": results}

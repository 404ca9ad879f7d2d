"""
Pydantic schemas for calibration state sub-records and job results.

Every JSON document stored on CalibrationState is written from and read
through one of these models. Each carries a schema_version and ignores
unknown keys so records written by older or newer code stay parseable.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Type, TypeVar

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from tradecal.utils.datetime import utcnow


SCHEMA_VERSION = 1

HistorySource = Literal["outcome", "feedback", "auto-recalibration"]


class VersionedRecord(BaseModel):
    """Base for stored sub-records."""

    model_config = ConfigDict(extra="ignore")

    schema_version: int = SCHEMA_VERSION


# ============================================================================
# Calibration state sub-records
# ============================================================================

class CalibrationHistoryEntry(VersionedRecord):
    """One change of the global intercept."""

    timestamp: datetime = Field(default_factory=utcnow)
    old_intercept: float
    new_intercept: float
    sample_size: int
    avg_predicted: float = 0.0
    observed_rate: float = 0.0
    source: HistorySource = "outcome"


class FeedbackAdjustments(VersionedRecord):
    """Bounded deltas applied on top of the base feature weights."""

    w1_adj: float = Field(default=0.0, ge=-0.15, le=0.15)
    w2_adj: float = Field(default=0.0, ge=-0.15, le=0.15)
    w3_adj: float = Field(default=0.0, ge=-0.15, le=0.15)
    w6_adj: float = Field(default=0.0, ge=-0.15, le=0.15)
    sample_size: int = 0
    last_updated: datetime = Field(default_factory=utcnow)


class SegmentInterceptEntry(VersionedRecord):
    segment: str
    intercept: float
    sample_size: int
    observed_rate: float
    predicted_mean: float
    last_updated: datetime = Field(default_factory=utcnow)


class SegmentInterceptMap(VersionedRecord):
    segments: List[SegmentInterceptEntry] = Field(default_factory=list)
    last_updated: datetime = Field(default_factory=utcnow)

    def get(self, segment: str) -> Optional[SegmentInterceptEntry]:
        for entry in self.segments:
            if entry.segment == segment:
                return entry
        return None


class IsotonicPoint(BaseModel):
    x: float
    y: float
    count: int


class IsotonicMap(VersionedRecord):
    """Sparse monotone correction curve fitted by isotonic regression over bin means."""

    points: List[IsotonicPoint] = Field(default_factory=list)
    sample_size: int = 0
    ece: float = 0.0  # before the map
    ece_calibrated_estimate: float = 0.0  # after the map, in-sample
    computed_at: datetime = Field(default_factory=utcnow)


class ShadowMetrics(VersionedRecord):
    """Candidate intercept held in quarantine until promotion."""

    computed_intercept: float
    active_intercept: float
    observed_rate: float
    predicted_mean: float
    log_odds_correction: float
    sample_size: int
    sample_source: Literal["outcome", "historical"] = "outcome"
    computed_at: datetime = Field(default_factory=utcnow)
    mature: bool = False
    divergence: float = 0.0


# ============================================================================
# Drift report
# ============================================================================

class DriftSeverity(str, Enum):
    OK = "ok"
    INFO = "info"
    WARN = "warn"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_ORDER.index(self)


_SEVERITY_ORDER = [DriftSeverity.OK, DriftSeverity.INFO, DriftSeverity.WARN, DriftSeverity.CRITICAL]


def severity_max(*levels: DriftSeverity) -> DriftSeverity:
    """Highest severity among levels; OK when none are given."""
    result = DriftSeverity.OK
    for level in levels:
        level = DriftSeverity(level)
        if level.rank > result.rank:
            result = level
    return result


class DriftAlert(BaseModel):
    type: Literal["calibration", "rank_order", "segment", "input"]
    severity: DriftSeverity
    metric: str
    value: float
    threshold: float
    message: str
    sample_size: int
    timestamp: datetime = Field(default_factory=utcnow)


class CalibrationDriftMetrics(BaseModel):
    avg_predicted: float = 0.0
    observed_rate: float = 0.0
    absolute_gap: float = 0.0
    brier_proxy: float = 0.0
    sample_size: int = 0
    severity: DriftSeverity = DriftSeverity.OK


class RankOrderDriftMetrics(BaseModel):
    spearman_rho: float = 0.0
    feedback_concordance: Optional[float] = None
    sample_size: int = 0
    feedback_sample_size: int = 0
    severity: DriftSeverity = DriftSeverity.OK


class SegmentDriftMetrics(BaseModel):
    segment_label: str
    avg_predicted: float
    absolute_gap: float
    sample_size: int
    severity: DriftSeverity = DriftSeverity.OK


class InputDriftSnapshot(BaseModel):
    model_config = ConfigDict(extra="ignore")

    settings: str
    total_players: int = 0
    mean_value: float = 0.0
    median_value: float = 0.0
    std_dev: float = 0.0
    p10: float = 0.0
    p90: float = 0.0
    top10_avg: float = 0.0
    position_mix: Dict[str, int] = Field(default_factory=dict)


class InputDriftShift(BaseModel):
    settings: str
    metric: str
    previous_value: float
    current_value: float
    pct_change: float
    severity: DriftSeverity = DriftSeverity.OK


class InputDriftMetrics(BaseModel):
    snapshots: List[InputDriftSnapshot] = Field(default_factory=list)
    shifts: List[InputDriftShift] = Field(default_factory=list)
    skipped: List[str] = Field(default_factory=list)
    severity: DriftSeverity = DriftSeverity.OK


class DriftReportSummary(BaseModel):
    model_config = ConfigDict(extra="ignore")

    timestamp: datetime
    overall_severity: DriftSeverity
    alert_count: int
    calibration_gap: float
    rank_rho: float


class DriftReport(VersionedRecord):
    timestamp: datetime = Field(default_factory=utcnow)
    season: int
    overall_severity: DriftSeverity = DriftSeverity.OK
    calibration: CalibrationDriftMetrics = Field(default_factory=CalibrationDriftMetrics)
    rank_order: RankOrderDriftMetrics = Field(default_factory=RankOrderDriftMetrics)
    segments: List[SegmentDriftMetrics] = Field(default_factory=list)
    input: InputDriftMetrics = Field(default_factory=InputDriftMetrics)
    alerts: List[DriftAlert] = Field(default_factory=list)
    history: List[DriftReportSummary] = Field(default_factory=list)


# ============================================================================
# Job results
# ============================================================================

class InterceptResult(BaseModel):
    adjusted: bool
    previous_intercept: float
    new_intercept: float
    sample_size: int
    avg_predicted: float = 0.0
    observed_rate: float = 0.0
    sample_source: Optional[str] = None
    reason: Optional[str] = None


class FeedbackResult(BaseModel):
    adjusted: bool
    sample_size: int = 0
    signal_count: int = 0
    adjustments: Optional[FeedbackAdjustments] = None
    reason: Optional[str] = None


class IsotonicResult(BaseModel):
    fitted: bool
    sample_size: int = 0
    point_count: int = 0
    ece: Optional[float] = None
    ece_calibrated_estimate: Optional[float] = None
    reason: Optional[str] = None


class PromotionResult(BaseModel):
    promoted: bool
    new_intercept: Optional[float] = None
    age_days: Optional[float] = None
    divergence: Optional[float] = None
    reason: str


class ShadowResult(BaseModel):
    computed: bool = False
    shadow_intercept: Optional[float] = None
    metrics: Optional[ShadowMetrics] = None
    promoted: bool = False
    promoted_intercept: Optional[float] = None
    promotion_reason: Optional[str] = None


class SegmentResult(BaseModel):
    computed: bool = False
    segment_count: int = 0
    entries: List[SegmentInterceptEntry] = Field(default_factory=list)


class RecalibrationResult(BaseModel):
    skipped: bool = False
    reason: Optional[str] = None
    shadow: ShadowResult = Field(default_factory=ShadowResult)
    segments: SegmentResult = Field(default_factory=SegmentResult)


class FullCalibrationResult(BaseModel):
    intercept: InterceptResult
    feedback: FeedbackResult
    isotonic: IsotonicResult


class ActiveWeights(BaseModel):
    """Parameters the advice-serving layer scores with."""

    intercept: float
    feature_weights: Dict[str, float]
    segment_used: Optional[str] = None


class SegmentContext(BaseModel):
    """Categorical league context used to pick a segment intercept."""

    is_super_flex: Optional[bool] = None
    league_format: Optional[str] = None
    scoring_type: Optional[str] = None


# ============================================================================
# Load/dump helpers
# ============================================================================

RecordT = TypeVar("RecordT", bound=BaseModel)


def load_record(model: Type[RecordT], raw: Any, field_name: str = "") -> Optional[RecordT]:
    """
    Parse a stored JSON document.

    Missing documents return None. Documents that fail validation are logged
    and also return None so readers fall back to defaults.
    """
    if raw is None:
        return None
    try:
        return model.model_validate(raw)
    except ValidationError as e:
        logger.warning(
            f"Stored {field_name or model.__name__} failed schema validation, treating as absent: "
            f"{e.error_count()} error(s)"
        )
        return None


def load_records(model: Type[RecordT], raw: Any, field_name: str = "") -> List[RecordT]:
    """Parse a stored JSON list, dropping entries that fail validation."""
    if not raw:
        return []
    if not isinstance(raw, list):
        logger.warning(f"Stored {field_name or model.__name__} is not a list, treating as empty")
        return []
    records = []
    for item in raw:
        record = load_record(model, item, field_name)
        if record is not None:
            records.append(record)
    return records


def dump_record(record: Optional[BaseModel]) -> Optional[Dict[str, Any]]:
    """JSON-safe dict for a JSON column."""
    if record is None:
        return None
    return record.model_dump(mode="json")

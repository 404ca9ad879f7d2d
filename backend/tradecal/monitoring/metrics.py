"""
Calibration metrics dashboard for the trade acceptance model.

Pairs logged offers with their ACCEPTED/REJECTED outcomes over a trailing
window and reports reliability, segment drift, feature drift, ranking
quality and explanation integrity, each with its own alerts. The pure
functions operate on PairedRecord lists so the daily rollup can reuse them.
"""

import math
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, Callable, Dict, List, Literal, Optional, Sequence

import numpy as np
from pydantic import BaseModel, Field
from sklearn.metrics import roc_auc_score
from sqlalchemy.orm import Session

from tradecal.db.models import TradeOfferEvent
from tradecal.db.repositories import NarrativeValidationRepository, TradeEventRepository
from tradecal.log_config import logger
from tradecal.utils.datetime import utcnow


AlertLevel = Literal["warning", "critical"]
CardStatus = Literal["good", "watch", "critical"]

N_BUCKETS = 10
PSI_EDGES = [-2.0, -1.5, -1.0, -0.5, 0.0, 0.5, 1.0, 1.5, 2.0]
PSI_FLOOR = 1e-6
FEATURE_NAMES = ("lineup_impact", "vorp", "market", "behavior")
SEGMENT_FILTERS = ("sf", "1qb", "dynasty", "redraft", "tep", "ppr")
DRILLDOWN_SAMPLE = 20
DRILLDOWN_DRIVERS = 5

ECE_WARN = 0.08
ECE_CRITICAL = 0.12
ECE_MIN_SAMPLE = 50
CONFIDENCE_BUCKET_SHARE = 0.30
SEGMENT_ECE_CRITICAL = (0.15, 200)  # (ece, min sample)
SEGMENT_ECE_WATCH = 0.10
FEATURE_PSI_DRIFT = 0.25
FEATURE_PSI_CRITICAL = 0.5
FEATURE_Z_DRIFT = 3.0
FEATURE_Z_CRITICAL = 5.0
AUC_CRITICAL = (0.62, 50)
AUC_MIN_CLASS = 30
NARRATIVE_WARN = 0.01
NARRATIVE_CRITICAL = 0.03


class MetricAlert(BaseModel):
    severity: AlertLevel
    message: str
    metric: str
    value: float
    threshold: float


class ReliabilityBucket(BaseModel):
    bucket_min: float
    bucket_max: float
    label: str
    predicted: float
    observed: float
    count: int


class DistributionBucket(BaseModel):
    bucket: str
    count: int


class CalibrationHealth(BaseModel):
    reliability_curve: List[ReliabilityBucket]
    ece: float
    brier_score: float
    prediction_distribution: List[DistributionBucket]
    total_paired: int
    alerts: List[MetricAlert] = Field(default_factory=list)


class SegmentCalibration(BaseModel):
    segment: str
    value: str
    ece: float
    brier_score: float
    count: int


class SegmentCalibrationReport(BaseModel):
    heatmap: List[SegmentCalibration]
    worst_segments: List[SegmentCalibration]
    alerts: List[MetricAlert] = Field(default_factory=list)


class FeatureStat(BaseModel):
    feature: str
    current_mean: float
    current_std: float
    previous_mean: float
    previous_std: float
    psi: float
    z_drift: float
    drifted: bool


class FeatureDriftReport(BaseModel):
    features: List[FeatureStat]
    alerts: List[MetricAlert] = Field(default_factory=list)


class TopKHitRate(BaseModel):
    k: int
    hit_rate: float
    count: int


class LiftDecile(BaseModel):
    decile: int
    lift: float
    base_rate: float
    decile_rate: float


class RankingQuality(BaseModel):
    auc: Optional[float]
    top_k_hit_rates: List[TopKHitRate]
    lift_chart: List[LiftDecile]
    total_paired: int
    alerts: List[MetricAlert] = Field(default_factory=list)


class DailyFailureRate(BaseModel):
    date: str
    rate: float
    count: int


class NarrativeIntegrity(BaseModel):
    total_validations: int
    failure_rate: float
    incomplete_driver_set_rate: float
    illegal_number_rate: float
    invalid_driver_rate: float
    banned_pattern_rate: float
    daily_failure_rates: List[DailyFailureRate]
    alerts: List[MetricAlert] = Field(default_factory=list)


class DateRange(BaseModel):
    start: date
    end: date


class Dashboard(BaseModel):
    calibration: CalibrationHealth
    segment_drift: SegmentCalibrationReport
    feature_drift: FeatureDriftReport
    ranking: RankingQuality
    narrative: NarrativeIntegrity
    date_range: DateRange
    generated_at: datetime


class SummaryCard(BaseModel):
    id: str
    label: str
    status: CardStatus
    detail: str


class DriverSummary(BaseModel):
    id: str = ""
    direction: str = ""
    strength: str = ""
    value: float = 0.0


class DrilldownOffer(BaseModel):
    id: int
    accept_prob: float
    accepted: bool
    mode: str
    is_super_flex: Optional[bool]
    league_format: Optional[str]
    scoring_type: Optional[str]
    drivers: List[DriverSummary]
    created_at: datetime


class Drilldown(BaseModel):
    segment_key: str
    segment_value: str
    reliability_curve: List[ReliabilityBucket]
    ece: float
    feature_drift: List[FeatureStat]
    sample_offers: List[DrilldownOffer]
    sample_size: int


@dataclass
class PairedRecord:
    """A logged offer joined with its resolved outcome."""

    accept_prob: float
    accepted: bool
    mode: str
    created_at: datetime
    features: Dict[str, Any] = field(default_factory=dict)
    is_super_flex: Optional[bool] = None
    league_format: Optional[str] = None
    scoring_type: Optional[str] = None


def _round(value: float, places: int = 4) -> float:
    return round(float(value), places)


def bucket_index(p: float, n_buckets: int = N_BUCKETS) -> int:
    if p >= 1:
        return n_buckets - 1
    if p <= 0:
        return 0
    return min(int(math.floor(p * n_buckets)), n_buckets - 1)


def _bucket_label(i: int, n_buckets: int = N_BUCKETS) -> str:
    step = 100 // n_buckets
    return f"{i * step}-{(i + 1) * step}%"


def reliability_curve(records: Sequence[PairedRecord]) -> List[ReliabilityBucket]:
    """Ten equal-width buckets; an empty bucket reports its midpoint as predicted."""
    counts = [0] * N_BUCKETS
    sum_p = [0.0] * N_BUCKETS
    sum_y = [0.0] * N_BUCKETS
    for r in records:
        b = bucket_index(r.accept_prob)
        counts[b] += 1
        sum_p[b] += r.accept_prob
        sum_y[b] += 1.0 if r.accepted else 0.0

    curve = []
    for i in range(N_BUCKETS):
        lo, hi = i / N_BUCKETS, (i + 1) / N_BUCKETS
        curve.append(ReliabilityBucket(
            bucket_min=lo,
            bucket_max=hi,
            label=_bucket_label(i),
            predicted=sum_p[i] / counts[i] if counts[i] else (lo + hi) / 2,
            observed=sum_y[i] / counts[i] if counts[i] else 0.0,
            count=counts[i],
        ))
    return curve


def ece_from_curve(curve: Sequence[ReliabilityBucket], total: int) -> float:
    """Count-weighted mean |observed - predicted| over non-empty buckets."""
    if total == 0:
        return 0.0
    return sum((b.count / total) * abs(b.observed - b.predicted) for b in curve if b.count)


def expected_calibration_error(records: Sequence[PairedRecord]) -> float:
    return _round(ece_from_curve(reliability_curve(records), len(records)))


def brier_score(records: Sequence[PairedRecord]) -> float:
    if not records:
        return 0.0
    p = np.array([r.accept_prob for r in records], dtype=float)
    y = np.array([1.0 if r.accepted else 0.0 for r in records])
    return float(np.mean((p - y) ** 2))


def prediction_distribution(probabilities: Sequence[float]) -> List[DistributionBucket]:
    """Counts per 10% bucket. The top bucket includes 1.0; values outside [0, 1] are dropped."""
    out = []
    for i in range(N_BUCKETS):
        lo, hi = i / N_BUCKETS, (i + 1) / N_BUCKETS
        last = i == N_BUCKETS - 1
        count = sum(1 for p in probabilities if p >= lo and (p <= hi if last else p < hi))
        out.append(DistributionBucket(bucket=_bucket_label(i), count=count))
    return out


def histogram_shares(values: Sequence[float], edges: Sequence[float]) -> np.ndarray:
    """Share of values per bin; values are clipped into the outer edges."""
    arr = np.clip(np.asarray(values, dtype=float), edges[0], edges[-1])
    counts, _ = np.histogram(arr, bins=np.asarray(edges, dtype=float))
    return counts / max(1, len(arr))


def population_stability_index(
    current: Sequence[float],
    previous: Sequence[float],
    edges: Sequence[float] = PSI_EDGES,
) -> float:
    """
    PSI of current against previous over fixed bin edges.

    Bin shares are floored at 1e-6. Returns 0.0 when either side is empty.
    """
    if len(current) == 0 or len(previous) == 0:
        return 0.0
    a = np.maximum(histogram_shares(current, edges), PSI_FLOOR)
    e = np.maximum(histogram_shares(previous, edges), PSI_FLOOR)
    return float(np.sum((a - e) * np.log(a / e)))


def area_under_curve(records: Sequence[PairedRecord]) -> Optional[float]:
    """ROC AUC; None unless both classes have at least 30 records."""
    positives = sum(1 for r in records if r.accepted)
    negatives = len(records) - positives
    if positives < AUC_MIN_CLASS or negatives < AUC_MIN_CLASS:
        return None
    y = [1 if r.accepted else 0 for r in records]
    return float(roc_auc_score(y, [r.accept_prob for r in records]))


def _by_confidence(records: Sequence[PairedRecord]) -> List[PairedRecord]:
    return sorted(records, key=lambda r: r.accept_prob, reverse=True)


def top_k_hit_rates(records: Sequence[PairedRecord], ks: Sequence[int] = (5, 10, 20)) -> List[TopKHitRate]:
    """Acceptance rate among the top k% most confident predictions."""
    if not records:
        return []
    ranked = _by_confidence(records)
    rates = []
    for k in ks:
        top = ranked[:max(1, len(records) * k // 100)]
        hits = sum(1 for r in top if r.accepted)
        rates.append(TopKHitRate(k=k, hit_rate=_round(hits / len(top)), count=len(top)))
    return rates


def lift_chart(records: Sequence[PairedRecord]) -> List[LiftDecile]:
    """Decile acceptance rate over base rate, most confident decile first."""
    n = len(records)
    if n < 10:
        return []
    ranked = _by_confidence(records)
    base_rate = sum(1 for r in records if r.accepted) / n

    chart = []
    for i in range(10):
        chunk = ranked[i * n // 10:(i + 1) * n // 10]
        rate = sum(1 for r in chunk if r.accepted) / len(chunk) if chunk else 0.0
        chart.append(LiftDecile(
            decile=i + 1,
            lift=round(rate / base_rate, 2) if base_rate > 0 else 0.0,
            base_rate=_round(base_rate),
            decile_rate=_round(rate),
        ))
    return chart


def _std(values: Sequence[float]) -> float:
    return float(np.std(values, ddof=1)) if len(values) >= 2 else 0.0


def feature_stat(name: str, current: Sequence[float], previous: Sequence[float]) -> FeatureStat:
    """Compare one feature across two windows by PSI and pooled-std mean shift."""
    current_mean = float(np.mean(current)) if len(current) else 0.0
    previous_mean = float(np.mean(previous)) if len(previous) else 0.0
    current_std = _std(current)
    previous_std = _std(previous)
    pooled = math.sqrt((current_std ** 2 + previous_std ** 2) / 2) or 1.0
    z_drift = abs(current_mean - previous_mean) / pooled
    psi = population_stability_index(current, previous)
    return FeatureStat(
        feature=name,
        current_mean=current_mean,
        current_std=current_std,
        previous_mean=previous_mean,
        previous_std=previous_std,
        psi=psi,
        z_drift=z_drift,
        drifted=psi > FEATURE_PSI_DRIFT or z_drift > FEATURE_Z_DRIFT,
    )


def feature_is_critical(stat: FeatureStat) -> bool:
    return stat.psi > FEATURE_PSI_CRITICAL or stat.z_drift > FEATURE_Z_CRITICAL


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.title() for part in rest)


def feature_value(features: Optional[Dict[str, Any]], name: str) -> Optional[float]:
    """Numeric feature by snake_case name, falling back to camelCase and *_score keys."""
    if not features:
        return None
    for key in (name, _camel(name), f"{name}_score", f"{_camel(name)}Score"):
        value = features.get(key)
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return float(value)
    return None


def feature_values(feature_dicts: Sequence[Optional[Dict[str, Any]]], name: str) -> List[float]:
    return [v for v in (feature_value(f, name) for f in feature_dicts) if v is not None]


def calibration_from_records(
    records: Sequence[PairedRecord],
    probabilities: Optional[Sequence[float]] = None,
) -> CalibrationHealth:
    """
    Reliability summary of paired records.

    The prediction distribution covers `probabilities` when given (every
    offer in the window), otherwise the paired predictions.
    """
    curve = reliability_curve(records)
    ece = _round(ece_from_curve(curve, len(records)))
    distribution = prediction_distribution(
        probabilities if probabilities is not None else [r.accept_prob for r in records]
    )

    alerts = []
    if len(records) >= ECE_MIN_SAMPLE:
        if ece >= ECE_CRITICAL:
            alerts.append(MetricAlert(severity="critical", message="ECE exceeds critical threshold",
                                      metric="ece", value=ece, threshold=ECE_CRITICAL))
        elif ece >= ECE_WARN:
            alerts.append(MetricAlert(severity="warning", message="ECE exceeds warning threshold",
                                      metric="ece", value=ece, threshold=ECE_WARN))

    total = sum(b.count for b in distribution)
    if total:
        high = distribution[-1].count / total
        low = distribution[0].count / total
        if high > CONFIDENCE_BUCKET_SHARE:
            alerts.append(MetricAlert(
                severity="warning",
                message="Over 30% of predictions in the 90-100% bucket, possible overconfidence",
                metric="high_bucket_pct", value=_round(high), threshold=CONFIDENCE_BUCKET_SHARE,
            ))
        if low > CONFIDENCE_BUCKET_SHARE:
            alerts.append(MetricAlert(
                severity="warning",
                message="Over 30% of predictions in the 0-10% bucket, possible underconfidence",
                metric="low_bucket_pct", value=_round(low), threshold=CONFIDENCE_BUCKET_SHARE,
            ))

    return CalibrationHealth(
        reliability_curve=curve,
        ece=ece,
        brier_score=_round(brier_score(records)),
        prediction_distribution=distribution,
        total_paired=len(records),
        alerts=alerts,
    )


SEGMENT_DIMENSIONS: Dict[str, Callable[[PairedRecord], str]] = {
    "format": lambda r: "SuperFlex" if r.is_super_flex else "1QB",
    "league_format": lambda r: r.league_format or "unknown",
    "scoring_type": lambda r: r.scoring_type or "unknown",
    "mode": lambda r: r.mode,
}


def segment_calibration(records: Sequence[PairedRecord]) -> SegmentCalibrationReport:
    heatmap = []
    alerts = []
    for dimension, value_of in SEGMENT_DIMENSIONS.items():
        groups: Dict[str, List[PairedRecord]] = {}
        for r in records:
            groups.setdefault(value_of(r), []).append(r)

        for value, members in groups.items():
            ece = expected_calibration_error(members)
            heatmap.append(SegmentCalibration(
                segment=dimension, value=value, ece=ece,
                brier_score=_round(brier_score(members)), count=len(members),
            ))
            threshold, min_sample = SEGMENT_ECE_CRITICAL
            if ece > threshold and len(members) >= min_sample:
                alerts.append(MetricAlert(
                    severity="critical",
                    message=f"Segment {dimension}={value} has ECE {ece:.3f} with {len(members)} samples",
                    metric=f"segment_ece_{dimension}_{value}",
                    value=ece,
                    threshold=threshold,
                ))

    worst = sorted(heatmap, key=lambda s: s.ece, reverse=True)[:10]
    return SegmentCalibrationReport(heatmap=heatmap, worst_segments=worst, alerts=alerts)


def feature_drift_report(
    current: Sequence[Optional[Dict[str, Any]]],
    previous: Sequence[Optional[Dict[str, Any]]],
) -> FeatureDriftReport:
    features = []
    alerts = []
    for name in FEATURE_NAMES:
        stat = feature_stat(name, feature_values(current, name), feature_values(previous, name))
        features.append(stat)
        if stat.drifted:
            alerts.append(MetricAlert(
                severity="critical" if feature_is_critical(stat) else "warning",
                message=f"Feature {name} shows drift: PSI={stat.psi:.3f}, z={stat.z_drift:.2f}",
                metric=f"feature_drift_{name}",
                value=stat.psi,
                threshold=FEATURE_PSI_DRIFT,
            ))
    return FeatureDriftReport(features=features, alerts=alerts)


def ranking_quality(records: Sequence[PairedRecord]) -> RankingQuality:
    auc = area_under_curve(records)
    alerts = []
    threshold, min_sample = AUC_CRITICAL
    if auc is not None and auc < threshold and len(records) >= min_sample:
        alerts.append(MetricAlert(severity="critical", message=f"AUC dropped to {auc:.3f}",
                                  metric="auc", value=auc, threshold=threshold))
    return RankingQuality(
        auc=auc,
        top_k_hit_rates=top_k_hit_rates(records),
        lift_chart=lift_chart(records),
        total_paired=len(records),
        alerts=alerts,
    )


def narrative_integrity(logs: Sequence[Any]) -> NarrativeIntegrity:
    """Failure rates of explanation validations, overall, per violation family and per day."""
    total = len(logs)
    failures = [log for log in logs if not log.valid]
    violations = [v for log in failures for v in (log.violations or [])]

    def rate(count: int) -> float:
        return _round(count / total) if total else 0.0

    daily: Dict[str, List[int]] = {}
    for log in logs:
        entry = daily.setdefault(log.created_at.date().isoformat(), [0, 0])
        entry[0] += 1
        if not log.valid:
            entry[1] += 1

    failure_rate = len(failures) / total if total else 0.0
    alerts = []
    if failure_rate > NARRATIVE_CRITICAL:
        alerts.append(MetricAlert(
            severity="critical",
            message=f"Narrative failure rate {failure_rate * 100:.1f}% exceeds 3%, consider falling back to templates",
            metric="failure_rate", value=_round(failure_rate), threshold=NARRATIVE_CRITICAL,
        ))
    elif failure_rate > NARRATIVE_WARN:
        alerts.append(MetricAlert(
            severity="warning",
            message=f"Narrative failure rate {failure_rate * 100:.1f}% exceeds 1%",
            metric="failure_rate", value=_round(failure_rate), threshold=NARRATIVE_WARN,
        ))

    return NarrativeIntegrity(
        total_validations=total,
        failure_rate=_round(failure_rate),
        incomplete_driver_set_rate=rate(sum(1 for v in violations if v == "INCOMPLETE_DRIVER_SET")),
        illegal_number_rate=rate(sum(1 for v in violations if "illegal_number" in v)),
        invalid_driver_rate=rate(sum(1 for v in violations if "invalid_driver" in v)),
        banned_pattern_rate=rate(sum(1 for v in violations if "banned_pattern" in v)),
        daily_failure_rates=[
            DailyFailureRate(date=day, rate=_round(failed / count), count=count)
            for day, (count, failed) in sorted(daily.items())
        ],
        alerts=alerts,
    )


def _is_tep(scoring_type: Optional[str]) -> bool:
    return (scoring_type or "").upper() in ("TEP", "TE_PREMIUM")


def filter_records(
    records: Sequence[PairedRecord],
    mode: Optional[str] = None,
    segment: Optional[str] = None,
) -> List[PairedRecord]:
    """Dashboard filter: exact mode, plus one of sf/1qb/dynasty/redraft/tep/ppr. Unknown segments match all."""
    out = [r for r in records if mode is None or r.mode == mode]
    if not segment:
        return out

    seg = segment.lower()
    checks: Dict[str, Callable[[PairedRecord], bool]] = {
        "sf": lambda r: r.is_super_flex is True,
        "1qb": lambda r: r.is_super_flex is False,
        "dynasty": lambda r: (r.league_format or "").lower() == "dynasty",
        "redraft": lambda r: (r.league_format or "").lower() == "redraft",
        "tep": lambda r: _is_tep(r.scoring_type),
        "ppr": lambda r: (r.scoring_type or "").upper() == "PPR",
    }
    check = checks.get(seg)
    return [r for r in out if check(r)] if check else out


def _normalize_dimension(key: str) -> str:
    return key.replace("_", "").lower()


def matches_segment(
    key: str,
    value: str,
    is_super_flex: Optional[bool],
    league_format: Optional[str],
    scoring_type: Optional[str],
    mode: str,
) -> bool:
    """Heatmap cell membership. An unknown dimension matches everything."""
    dimension = _normalize_dimension(key)
    if dimension == "format":
        return is_super_flex is (value == "SuperFlex")
    if dimension == "leagueformat":
        return (league_format or "").lower() == value.lower()
    if dimension == "scoringtype":
        return (scoring_type or "").lower() == value.lower()
    if dimension == "mode":
        return mode == value
    return True


def records_for_segment(records: Sequence[PairedRecord], key: str, value: str) -> List[PairedRecord]:
    return [
        r for r in records
        if matches_segment(key, value, r.is_super_flex, r.league_format, r.scoring_type, r.mode)
    ]


def summary_cards(dashboard: Dashboard) -> List[SummaryCard]:
    """Four traffic-light cards: calibration, worst segment, feature drift, narrative."""
    cards = []

    ece = dashboard.calibration.ece
    cards.append(SummaryCard(
        id="calibration",
        label="Calibration",
        status="critical" if ece >= ECE_CRITICAL else "watch" if ece >= ECE_WARN else "good",
        detail=f"ECE: {ece * 100:.1f}% | Brier: {dashboard.calibration.brier_score:.3f}",
    ))

    worst = dashboard.segment_drift.worst_segments[0] if dashboard.segment_drift.worst_segments else None
    if worst is None:
        worst_status, worst_detail = "good", "All segments healthy"
    else:
        worst_status = (
            "critical" if worst.ece >= SEGMENT_ECE_CRITICAL[0]
            else "watch" if worst.ece >= SEGMENT_ECE_WATCH else "good"
        )
        worst_detail = f"{worst.segment} {worst.value}: ECE {worst.ece * 100:.1f}% (n={worst.count})"
    cards.append(SummaryCard(id="worst_segment", label="Worst Segment", status=worst_status, detail=worst_detail))

    drifted = [f for f in dashboard.feature_drift.features if f.drifted]
    cards.append(SummaryCard(
        id="feature_drift",
        label="Feature Drift",
        status=("critical" if any(feature_is_critical(f) for f in drifted) else "watch") if drifted else "good",
        detail=f"Unstable: {', '.join(f.feature for f in drifted)}" if drifted else "All features stable",
    ))

    rate = dashboard.narrative.failure_rate
    narrative_status = "critical" if rate >= NARRATIVE_CRITICAL else "watch" if rate >= NARRATIVE_WARN else "good"
    cards.append(SummaryCard(
        id="narrative",
        label="Narrative Integrity",
        status=narrative_status,
        detail="OK" if narrative_status == "good" else f"Failure rate: {rate * 100:.1f}%",
    ))
    return cards


def _record(offer: TradeOfferEvent, accepted: bool) -> PairedRecord:
    return PairedRecord(
        accept_prob=offer.accept_prob,
        accepted=accepted,
        mode=offer.mode,
        created_at=offer.created_at,
        features=offer.features_json or {},
        is_super_flex=offer.is_super_flex,
        league_format=offer.league_format,
        scoring_type=offer.scoring_type,
    )


class CalibrationMetricsService:
    """Builds the calibration metrics dashboard over a trailing window."""

    def __init__(self, db: Session, clock: Optional[Callable[[], datetime]] = None):
        self.db = db
        self.clock = clock or utcnow
        self.events = TradeEventRepository(db)

    def _cutoff(self, days_back: int) -> datetime:
        return self.clock() - timedelta(days=days_back)

    def load_paired(self, days_back: int) -> List[PairedRecord]:
        """Offers with an ACCEPTED/REJECTED outcome logged in the window. The latest outcome wins."""
        by_offer: Dict[int, PairedRecord] = {}
        for offer, outcome in self.events.get_paired_since(self._cutoff(days_back)):
            if offer.accept_prob is None:
                continue
            by_offer[offer.id] = _record(offer, outcome.outcome == "ACCEPTED")
        return sorted(by_offer.values(), key=lambda r: r.created_at)

    def calibration_health(self, days_back: int) -> CalibrationHealth:
        offers = self.events.get_offers_between(self._cutoff(days_back))
        return calibration_from_records(
            self.load_paired(days_back),
            probabilities=[o.accept_prob for o in offers if o.accept_prob is not None],
        )

    def segment_calibration(self, days_back: int) -> SegmentCalibrationReport:
        return segment_calibration(self.load_paired(days_back))

    def feature_drift(self, days_back: int) -> FeatureDriftReport:
        """Recent half of the window against the older half."""
        now = self.clock()
        recent_start = now - timedelta(days=days_back // 2)
        recent = self.events.get_offers_between(recent_start)
        older = self.events.get_offers_between(now - timedelta(days=days_back), recent_start)
        return feature_drift_report(
            [o.features_json for o in recent if o.features_json is not None],
            [o.features_json for o in older if o.features_json is not None],
        )

    def ranking_quality(self, days_back: int) -> RankingQuality:
        return ranking_quality(self.load_paired(days_back))

    def narrative_integrity(self, days_back: int) -> NarrativeIntegrity:
        return narrative_integrity(NarrativeValidationRepository(self.db).get_since(self._cutoff(days_back)))

    def dashboard(
        self,
        days_back: int = 30,
        mode: Optional[str] = None,
        segment: Optional[str] = None,
    ) -> Dashboard:
        """
        Full dashboard. Filters narrow only the calibration section.

        Args:
            days_back: Trailing window in days
            mode: Offer mode filter
            segment: One of sf, 1qb, dynasty, redraft, tep, ppr
        """
        now = self.clock()
        if mode or segment:
            calibration = calibration_from_records(filter_records(self.load_paired(days_back), mode, segment))
        else:
            calibration = self.calibration_health(days_back)

        report = Dashboard(
            calibration=calibration,
            segment_drift=self.segment_calibration(days_back),
            feature_drift=self.feature_drift(days_back),
            ranking=self.ranking_quality(days_back),
            narrative=self.narrative_integrity(days_back),
            date_range=DateRange(start=(now - timedelta(days=days_back)).date(), end=now.date()),
            generated_at=now,
        )
        alert_count = sum(
            len(section.alerts)
            for section in (report.calibration, report.segment_drift, report.feature_drift,
                            report.ranking, report.narrative)
        )
        logger.info(
            f"Built calibration dashboard ({days_back}d, mode={mode}, segment={segment}): "
            f"{calibration.total_paired} paired, {alert_count} alerts"
        )
        return report

    def drilldown(self, days_back: int, segment_key: str, segment_value: str) -> Drilldown:
        """Reliability, feature drift and recent sample offers for one heatmap cell."""
        records = records_for_segment(self.load_paired(days_back), segment_key, segment_value)
        curve = reliability_curve(records)

        half = len(records) // 2
        older = [r.features for r in records[:half]]
        recent = [r.features for r in records[half:]]
        drift = [feature_stat(name, feature_values(recent, name), feature_values(older, name))
                 for name in FEATURE_NAMES]

        offers = [
            o for o in self.events.get_offers_between(self._cutoff(days_back))
            if matches_segment(segment_key, segment_value, o.is_super_flex, o.league_format, o.scoring_type, o.mode)
        ]
        offers = sorted(offers, key=lambda o: (o.created_at, o.id), reverse=True)[:DRILLDOWN_SAMPLE]
        labels = self.events.get_outcome_labels(o.id for o in offers)

        samples = [
            DrilldownOffer(
                id=o.id,
                accept_prob=o.accept_prob or 0.0,
                accepted=labels.get(o.id) == "ACCEPTED",
                mode=o.mode,
                is_super_flex=o.is_super_flex,
                league_format=o.league_format,
                scoring_type=o.scoring_type,
                drivers=[
                    DriverSummary(**{k: v for k, v in d.items() if k in DriverSummary.model_fields and v is not None})
                    for d in (o.drivers_json or [])[:DRILLDOWN_DRIVERS]
                    if isinstance(d, dict)
                ],
                created_at=o.created_at,
            )
            for o in offers
        ]

        return Drilldown(
            segment_key=segment_key,
            segment_value=segment_value,
            reliability_curve=curve,
            ece=ece_from_curve(curve, len(records)),
            feature_drift=drift,
            sample_offers=samples,
            sample_size=len(records),
        )

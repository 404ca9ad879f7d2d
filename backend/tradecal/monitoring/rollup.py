"""
Daily model health rollup.

For one UTC day and offer mode, groups the day's offers by segment key and
upserts one model_metrics_daily row per segment: calibration (ECE, Brier,
AUC), score drift against the previous 30 days (PSI, JSD), cap rates,
explanation failure rate and bucket statistics.
"""

import math
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np
from scipy.spatial.distance import jensenshannon
from scipy.stats import pointbiserialr
from sklearn.metrics import roc_auc_score
from sqlalchemy.orm import Session

from tradecal.db.models import TradeOfferEvent
from tradecal.db.repositories import ModelMetricsRepository, TradeEventRepository
from tradecal.log_config import logger
from tradecal.monitoring.metrics import bucket_index, histogram_shares, population_stability_index


EDGES_SCORE = [
    0.00, 0.05, 0.10, 0.15, 0.20, 0.25, 0.30, 0.35, 0.40, 0.45,
    0.48, 0.50, 0.52,
    0.55, 0.60, 0.65, 0.70, 0.75, 0.80, 0.85, 0.90, 0.95, 1.00,
]
DEFAULT_WEIGHTS = (0.40, 0.25, 0.20, 0.15)
SCORE_KEYS = ("lineup_impact", "vorp", "market", "behavior")
DRIFT_KEYS = SCORE_KEYS + ("composite",)
LABELS = {"ACCEPTED": 1, "REJECTED": 0, "EXPIRED": 0}
BASELINE_DAYS = 30
MIN_BASELINE = 200
MIN_CURRENT = 50
MIN_CORR_SAMPLE = 30
MIN_CORR_CLASS = 10
MIN_AUC_CLASS = 30
MIN_LIFT_SAMPLE = 20


@dataclass
class FlatScores:
    lineup_impact: float
    vorp: float
    market: float
    behavior: float
    weights: Tuple[float, float, float, float]
    composite: float

    def get(self, key: str) -> float:
        return getattr(self, key)


def clamp01(x: Any) -> float:
    try:
        value = float(x)
    except (TypeError, ValueError):
        return 0.0
    if not math.isfinite(value):
        return 0.0
    return max(0.0, min(1.0, value))


def _lookup(features: Dict[str, Any], key: str, *aliases: str) -> Any:
    for name in (key,) + aliases:
        if features.get(name) is not None:
            return features[name]
    return None


def _weights(features: Dict[str, Any]) -> Tuple[float, float, float, float]:
    w = features.get("weights")
    if isinstance(w, (list, tuple)) and len(w) == 4:
        try:
            values = tuple(float(x) for x in w)
        except (TypeError, ValueError):
            return DEFAULT_WEIGHTS
        if all(math.isfinite(v) for v in values):
            return values
    return DEFAULT_WEIGHTS


def _score(features: Dict[str, Any], key: str, *aliases: str) -> float:
    value = _lookup(features, key, *aliases)
    return clamp01(0.5 if value is None else value)


def flat_scores(features_json: Optional[Dict[str, Any]]) -> FlatScores:
    """Clamped component scores (0.5 when missing) and their weighted composite."""
    f = features_json or {}
    lineup = _score(f, "lineup_impact", "lineupImpact")
    vorp = _score(f, "vorp")
    market = _score(f, "market")
    behavior = _score(f, "behavior")
    weights = _weights(f)
    composite = clamp01(weights[0] * lineup + weights[1] * vorp + weights[2] * market + weights[3] * behavior)
    return FlatScores(lineup, vorp, market, behavior, weights, composite)


def league_class(league_format: Optional[str]) -> str:
    fmt = (league_format or "").lower()
    if not fmt:
        return "UNK"
    if "dyn" in fmt:
        return "DYN"
    if "red" in fmt:
        return "RED"
    return "SPC"


def _size_bucket(team_count: Optional[int]) -> str:
    size = team_count or 0
    if size >= 14:
        return "SZ14P"
    if size == 12:
        return "SZ12"
    if size == 10:
        return "SZ10"
    if size > 0:
        return f"SZ{size}"
    return "SZUNK"


def _history_bucket(sample_size: Optional[int]) -> str:
    n = sample_size or 0
    if n >= 10:
        return "H10P"
    if n >= 3:
        return "H3_9"
    return "H0_2"


def segment_key(offer: TradeOfferEvent) -> str:
    """
    Rollup segment, e.g. DYN_SF_TEP_SZ12_H3_9.

    Offer columns win over the scorer's segment_parts when both are present.
    """
    parts = (offer.features_json or {}).get("segment_parts") or {}
    is_sf = offer.is_super_flex if offer.is_super_flex is not None else _lookup(parts, "is_superflex", "isSuperflex", "isSF")
    if offer.scoring_type:
        is_tep = offer.scoring_type.upper() in ("TEP", "TE_PREMIUM")
    else:
        is_tep = _lookup(parts, "is_te_premium", "isTEPremium", "isTEP")
    team_count = _lookup(parts, "league_size", "leagueSize", "teamCount")
    history = _lookup(parts, "opponent_trade_sample_size", "opponentTradeSampleSize")

    return "_".join([
        league_class(offer.league_format),
        "SF" if is_sf else "1QB",
        "TEP" if is_tep else "NONTEP",
        _size_bucket(team_count),
        _history_bucket(history),
    ])


def bucket_stats(rows: Sequence[Tuple[float, int]], n_buckets: int = 10) -> List[Dict[str, float]]:
    stats = [{"bucket": i, "n": 0, "sum_p": 0.0, "sum_y": 0.0} for i in range(n_buckets)]
    for p, y in rows:
        b = stats[bucket_index(p, n_buckets)]
        b["n"] += 1
        b["sum_p"] += p
        b["sum_y"] += y
    return [
        {
            "bucket": b["bucket"],
            "n": b["n"],
            "mean_pred": b["sum_p"] / b["n"] if b["n"] else 0.0,
            "mean_obs": b["sum_y"] / b["n"] if b["n"] else 0.0,
        }
        for b in stats
    ]


def ece(rows: Sequence[Tuple[float, int]], n_buckets: int = 10) -> float:
    if not rows:
        return 0.0
    return sum(
        (b["n"] / len(rows)) * abs(b["mean_pred"] - b["mean_obs"])
        for b in bucket_stats(rows, n_buckets)
        if b["n"]
    )


def banded_ece(rows: Sequence[Tuple[float, int]]) -> Dict[str, float]:
    """ECE overall and over the 20-40%, 40-60% and 60-80% prediction bands."""
    def band(lo: float, hi: float) -> List[Tuple[float, int]]:
        return [(p, y) for p, y in rows if lo <= p < hi]

    return {
        "all": ece(rows, 10),
        "mid": ece(band(0.40, 0.60), 4),
        "hi": ece(band(0.60, 0.80), 4),
        "lo": ece(band(0.20, 0.40), 4),
    }


def brier(rows: Sequence[Tuple[float, int]]) -> float:
    if not rows:
        return 0.0
    p = np.array([r[0] for r in rows], dtype=float)
    y = np.array([r[1] for r in rows], dtype=float)
    return float(np.mean((p - y) ** 2))


def auc(rows: Sequence[Tuple[float, int]]) -> Optional[float]:
    positives = sum(y for _, y in rows)
    if positives < MIN_AUC_CLASS or len(rows) - positives < MIN_AUC_CLASS:
        return None
    return float(roc_auc_score([y for _, y in rows], [p for p, _ in rows]))


def point_biserial(values: Sequence[float], labels: Sequence[int]) -> Optional[float]:
    """Correlation of a score with acceptance; None below 30 rows or 10 per class."""
    n = min(len(values), len(labels))
    if n < MIN_CORR_SAMPLE:
        return None
    x = np.asarray(values[:n], dtype=float)
    y = np.asarray(labels[:n], dtype=int)
    ones = int(y.sum())
    if ones < MIN_CORR_CLASS or n - ones < MIN_CORR_CLASS:
        return None
    if np.ptp(x) == 0:
        return 0.0
    r, _ = pointbiserialr(y, x)
    return float(r)


def js_divergence(current: Sequence[float], baseline: Sequence[float], edges: Sequence[float]) -> float:
    p = histogram_shares(baseline, edges)
    q = histogram_shares(current, edges)
    return float(jensenshannon(p, q) ** 2)


def drift_json(
    current: Dict[str, List[float]],
    baseline: Dict[str, List[float]],
    edges: Sequence[float] = EDGES_SCORE,
) -> Dict[str, Dict[str, float]]:
    """PSI and JSD per score key with at least 200 baseline and 50 current values."""
    psi: Dict[str, float] = {}
    jsd: Dict[str, float] = {}
    for key in DRIFT_KEYS:
        cur, base = current.get(key, []), baseline.get(key, [])
        if len(base) < MIN_BASELINE or len(cur) < MIN_CURRENT:
            continue
        psi[key] = population_stability_index(cur, base, edges)
        jsd[key] = js_divergence(cur, base, edges)
    return {"psi": psi, "jsd": jsd}


def percentile(values: Sequence[float], q: float) -> float:
    """Nearest-rank percentile."""
    if not values:
        return 0.0
    xs = sorted(values)
    return xs[min(len(xs) - 1, max(0, math.ceil(q * len(xs)) - 1))]


def score_distribution(values: Sequence[float]) -> Dict[str, float]:
    return {
        "mean": float(np.mean(values)) if values else 0.0,
        "p10": percentile(values, 0.10),
        "p50": percentile(values, 0.50),
        "p90": percentile(values, 0.90),
    }


def weight_stats(weights: Sequence[Tuple[float, ...]]) -> Dict[str, Dict[str, float]]:
    out = {}
    for i in range(4):
        column = [w[i] for w in weights]
        out[f"w{i}"] = (
            {"mean": float(np.mean(column)), "min": min(column), "max": max(column)}
            if column else {"mean": 0.0, "min": 0.0, "max": 0.0}
        )
    return out


def lift_at_top10(rows: Sequence[Tuple[float, int]]) -> Optional[float]:
    if len(rows) < MIN_LIFT_SAMPLE:
        return None
    base_rate = sum(y for _, y in rows) / len(rows)
    if base_rate == 0:
        return None
    ranked = sorted(rows, key=lambda r: r[0], reverse=True)
    top = ranked[:max(1, math.ceil(len(rows) * 0.10))]
    return (sum(y for _, y in top) / len(top)) / base_rate


def confidence_coverage(scores: Sequence[float], labels: Sequence[str]) -> Dict[str, float]:
    total = len(labels) or 1
    return {
        "mean": float(np.mean(scores)) if scores else 0.0,
        "pct_high": sum(1 for l in labels if l == "HIGH") / total,
        "pct_medium": sum(1 for l in labels if l == "MEDIUM") / total,
        "pct_low": sum(1 for l in labels if l == "LOW") / total,
        "total": len(labels),
    }


@dataclass
class SegmentGroup:
    offers: List[TradeOfferEvent] = field(default_factory=list)
    labeled: List[Tuple[float, int]] = field(default_factory=list)
    labeled_scores: List[Tuple[FlatScores, int]] = field(default_factory=list)
    cap_counts: Dict[str, int] = field(default_factory=dict)


def _scores_by_key(offers: Sequence[TradeOfferEvent]) -> Tuple[Dict[str, List[float]], List[Tuple[float, ...]]]:
    by_key: Dict[str, List[float]] = {k: [] for k in DRIFT_KEYS}
    weights = []
    for offer in offers:
        scores = flat_scores(offer.features_json)
        for key in DRIFT_KEYS:
            by_key[key].append(scores.get(key))
        weights.append(scores.weights)
    return by_key, weights


def day_bounds(day: date) -> Tuple[datetime, datetime]:
    start = datetime.combine(day, time.min)
    return start, start + timedelta(days=1)


def rollup_model_metrics_daily(db: Session, day: date, mode: str) -> Dict[str, Any]:
    """
    Upsert the day's per-segment health rows for one mode.

    Returns counts of offers and segments written. A day without offers
    writes nothing.
    """
    events = TradeEventRepository(db)
    metrics = ModelMetricsRepository(db)
    day_start, day_end = day_bounds(day)

    offers = events.get_offers_between(day_start, day_end, mode=mode)
    if not offers:
        logger.debug(f"No {mode} offers on {day}, nothing to roll up")
        return {"day": day.isoformat(), "mode": mode, "offers": 0, "segments": 0}

    labels = events.get_outcome_labels(o.id for o in offers)
    groups: Dict[str, SegmentGroup] = {}
    for offer in offers:
        group = groups.setdefault(segment_key(offer), SegmentGroup())
        group.offers.append(offer)
        for cap in (offer.features_json or {}).get("caps_applied") or []:
            group.cap_counts[cap] = group.cap_counts.get(cap, 0) + 1

        y = LABELS.get(labels.get(offer.id))
        if y is not None:
            group.labeled.append((clamp01(offer.accept_prob), y))
            group.labeled_scores.append((flat_scores(offer.features_json), y))

    baseline_offers = events.get_offers_between(day_start - timedelta(days=BASELINE_DAYS), day_start, mode=mode)
    baseline_groups: Dict[str, List[TradeOfferEvent]] = {}
    for offer in baseline_offers:
        baseline_groups.setdefault(segment_key(offer), []).append(offer)

    for key, group in groups.items():
        n_offers = len(group.offers)
        n_labeled = len(group.labeled)
        n_accepted = sum(y for _, y in group.labeled)
        mean_pred = sum(p for p, _ in group.labeled) / n_labeled if n_labeled else 0.0
        mean_obs = n_accepted / n_labeled if n_labeled else 0.0

        current_scores, weights = _scores_by_key(group.offers)
        baseline_scores, _ = _scores_by_key(baseline_groups.get(key, []))
        ys = [y for _, y in group.labeled_scores]
        corr = {
            name: point_biserial([s.get(name) for s, _ in group.labeled_scores], ys)
            for name in SCORE_KEYS
        }

        metrics.upsert(
            day,
            mode,
            key,
            n_offers=n_offers,
            n_labeled=n_labeled,
            n_accepted=n_accepted,
            mean_pred=mean_pred,
            mean_obs=mean_obs,
            ece=ece(group.labeled),
            brier=brier(group.labeled),
            auc=auc(group.labeled),
            psi_json=drift_json(current_scores, baseline_scores),
            cap_rate_json={cap: count / n_offers for cap, count in group.cap_counts.items()},
            bucket_stats_json={
                "reliability": bucket_stats(group.labeled),
                "score_dist": score_distribution(current_scores["composite"]),
                "weights": weight_stats(weights),
                "ece": banded_ece(group.labeled),
                "corr": {name: value if value is not None else 0.0 for name, value in corr.items()},
                "intercept": {"mean_pred": mean_pred, "mean_obs": mean_obs, "delta": mean_obs - mean_pred},
                "confidence_coverage": confidence_coverage(
                    [o.confidence_score for o in group.offers if o.confidence_score is not None],
                    [o.confidence_label for o in group.offers if o.confidence_label],
                ),
                "lift_top10": lift_at_top10(group.labeled),
            },
            narrative_fail_rate=sum(
                1 for o in group.offers if o.narrative_valid is False or o.driver_set_complete is False
            ) / n_offers,
        )

    logger.info(f"Rolled up {len(offers)} {mode} offers on {day} into {len(groups)} segments")
    return {"day": day.isoformat(), "mode": mode, "offers": len(offers), "segments": len(groups)}

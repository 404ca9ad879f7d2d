"""
Per-segment intercepts.

Outcome-linked offers are bucketed by league context (superflex vs 1QB,
league format, TE premium). Each bucket with enough samples gets its own
intercept, one bounded log-odds step away from the global intercept.
"""

from collections import OrderedDict
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from tradecal.calibration.features import (
    DEFAULT_INTERCEPT,
    apply_intercept_step,
    rebase_probability,
)
from tradecal.calibration.schemas import (
    SegmentContext,
    SegmentInterceptEntry,
    SegmentInterceptMap,
)
from tradecal.db.models import TradeOfferEvent
from tradecal.db.repositories import TradeEventRepository
from tradecal.log_config import logger
from tradecal.utils.datetime import utcnow


MIN_SEGMENT_SAMPLE = 50
TEP_SCORING = ("TEP", "TE_PREMIUM")

SEGMENT_SUPERFLEX = "SF"
SEGMENT_ONE_QB = "1QB"
SEGMENT_TE_PREMIUM = "TEP"


def is_te_premium(scoring_type: Optional[str]) -> bool:
    return bool(scoring_type) and scoring_type.upper() in TEP_SCORING


def segment_labels(
    is_super_flex: Optional[bool],
    league_format: Optional[str],
    scoring_type: Optional[str],
) -> List[str]:
    """Every bucket an offer with this context contributes to."""
    labels = []
    if is_super_flex is True:
        labels.append(SEGMENT_SUPERFLEX)
    elif is_super_flex is False:
        labels.append(SEGMENT_ONE_QB)
    if league_format:
        labels.append(league_format.lower())
    if is_te_premium(scoring_type):
        labels.append(SEGMENT_TE_PREMIUM)
    return labels


def bucket_offers(
    pairs: List[Tuple[TradeOfferEvent, str]],
    global_intercept: float,
) -> "OrderedDict[str, Tuple[List[float], List[int]]]":
    """Group (prediction under the global intercept, accepted flag) by segment."""
    buckets: "OrderedDict[str, Tuple[List[float], List[int]]]" = OrderedDict()
    for offer, outcome in pairs:
        if offer.accept_prob is None or offer.accept_prob <= 0:
            continue
        logged = offer.intercept_used if offer.intercept_used is not None else DEFAULT_INTERCEPT
        prediction = rebase_probability(offer.accept_prob, logged, global_intercept)
        accepted = 1 if outcome == "ACCEPTED" else 0
        for label in segment_labels(offer.is_super_flex, offer.league_format, offer.scoring_type):
            preds, labels = buckets.setdefault(label, ([], []))
            preds.append(prediction)
            labels.append(accepted)
    return buckets


def compute_segment_intercepts(
    db: Session,
    season: int,
    global_intercept: float,
    now: Optional[datetime] = None,
) -> List[SegmentInterceptEntry]:
    """
    Intercept per eligible segment.

    EXPIRED and COUNTERED outcomes count as not accepted. Buckets below
    MIN_SEGMENT_SAMPLE are dropped.
    """
    now = now or utcnow()
    pairs = [
        (offer, outcome.outcome)
        for offer, outcome in TradeEventRepository(db).get_linked_outcomes(season)
    ]
    buckets = bucket_offers(pairs, global_intercept)

    entries = []
    for segment, (preds, accepted) in buckets.items():
        if len(preds) < MIN_SEGMENT_SAMPLE:
            logger.debug(f"Segment {segment}: {len(preds)} samples, below {MIN_SEGMENT_SAMPLE}")
            continue

        observed_rate = sum(accepted) / len(accepted)
        predicted_mean = sum(preds) / len(preds)
        segment_intercept, _ = apply_intercept_step(global_intercept, observed_rate, predicted_mean)

        entries.append(SegmentInterceptEntry(
            segment=segment,
            intercept=segment_intercept,
            sample_size=len(preds),
            observed_rate=round(observed_rate, 3),
            predicted_mean=round(predicted_mean, 3),
            last_updated=now,
        ))
        logger.info(
            f"Segment {segment}: intercept={segment_intercept} (obs={observed_rate:.3f}, "
            f"pred={predicted_mean:.3f}, n={len(preds)})"
        )
    return entries


def resolve_segment_intercept(
    segment_map: Optional[SegmentInterceptMap],
    global_intercept: float,
    context: Optional[SegmentContext],
) -> Tuple[float, Optional[str]]:
    """
    Intercept to score with for a league context.

    Candidates are the TE-premium segment, then the superflex or 1QB
    segment, each only when backed by MIN_SEGMENT_SAMPLE samples. The
    candidate with the larger sample wins; on a tie the earlier one wins.
    Falls back to the global intercept.
    """
    if segment_map is None or context is None:
        return global_intercept, None

    candidates: List[SegmentInterceptEntry] = []

    if is_te_premium(context.scoring_type):
        entry = segment_map.get(SEGMENT_TE_PREMIUM)
        if entry and entry.sample_size >= MIN_SEGMENT_SAMPLE:
            candidates.append(entry)

    if context.is_super_flex is True:
        entry = segment_map.get(SEGMENT_SUPERFLEX)
    elif context.is_super_flex is False:
        entry = segment_map.get(SEGMENT_ONE_QB)
    else:
        entry = None
    if entry and entry.sample_size >= MIN_SEGMENT_SAMPLE:
        candidates.append(entry)

    if not candidates:
        return global_intercept, None

    best = candidates[0]
    for candidate in candidates[1:]:
        if candidate.sample_size > best.sample_size:
            best = candidate
    return best.intercept, best.segment


def segment_map_from_entries(entries: List[SegmentInterceptEntry], now: Optional[datetime] = None) -> SegmentInterceptMap:
    return SegmentInterceptMap(segments=entries, last_updated=now or utcnow())


def segment_sample_sizes(segment_map: Optional[SegmentInterceptMap]) -> Dict[str, int]:
    if segment_map is None:
        return {}
    return {entry.segment: entry.sample_size for entry in segment_map.segments}

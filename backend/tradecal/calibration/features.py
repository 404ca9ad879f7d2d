"""
Logistic helpers shared by the calibration jobs, plus the historical proxy.

reconstruct_accept_prob() is an approximation of the live feature scorer for
trades logged before full feature vectors were stored. It is the only place
that guesses features; swap it for the stored vector once logging coverage
is complete. Its output is used to pick the direction and size of intercept
corrections and nothing else.
"""

import math
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from tradecal.config import settings


DEFAULT_INTERCEPT = -1.10
MAX_INTERCEPT_SHIFT = 0.60
INTERCEPT_FLOOR = DEFAULT_INTERCEPT - MAX_INTERCEPT_SHIFT
INTERCEPT_CEILING = DEFAULT_INTERCEPT + MAX_INTERCEPT_SHIFT

LOGIT_EPSILON = 0.01  # probabilities are clamped to [0.01, 0.99] before logit

FEATURE_WEIGHTS: Dict[str, float] = {
    "w1": 1.25,  # lineup impact
    "w2": 0.70,  # VORP / fairness
    "w3": 0.90,  # market delta
    "w4": 0.15,  # consolidation / behavior
    "w5": 0.25,  # demand
    "w6": 0.85,  # confidence
    "w7": 0.20,  # opponent tendency
}

PROXY_PROB_FLOOR = 0.02
PROXY_PROB_CEILING = 0.95


def clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def sigmoid(z: float) -> float:
    if z >= 0:
        return 1.0 / (1.0 + math.exp(-z))
    ez = math.exp(z)
    return ez / (1.0 + ez)


def logit(p: float) -> float:
    """Log-odds of p, with p clamped away from 0 and 1."""
    p = clamp(p, LOGIT_EPSILON, 1.0 - LOGIT_EPSILON)
    return math.log(p / (1.0 - p))


def log_odds_correction(observed: float, predicted: float) -> float:
    """Shift in log-odds that moves the predicted mean onto the observed rate."""
    return logit(observed) - logit(predicted)


def apply_intercept_step(current: float, observed: float, predicted: float) -> tuple:
    """
    One bounded intercept update.

    Returns (new_intercept, clamped_shift). The shift is limited to
    MAX_INTERCEPT_SHIFT and the result to the band around DEFAULT_INTERCEPT,
    rounded to 3 decimals.
    """
    shift = clamp(log_odds_correction(observed, predicted), -MAX_INTERCEPT_SHIFT, MAX_INTERCEPT_SHIFT)
    new_intercept = clamp(current + shift, INTERCEPT_FLOOR, INTERCEPT_CEILING)
    return round(new_intercept, 3), shift


def rebase_probability(probability: float, logged_intercept: float, active_intercept: float) -> float:
    """Probability the same features would have produced under another intercept."""
    return sigmoid(logit(probability) + (active_intercept - logged_intercept))


@dataclass(frozen=True)
class ProxyThresholds:
    """Percent-difference buckets used by the historical proxy."""

    close_pct: float = 15.0
    moderate_pct: float = 25.0
    fair_pct: float = 20.0
    delta_scale: float = 12.0

    @classmethod
    def from_settings(cls) -> "ProxyThresholds":
        return cls(
            close_pct=settings.proxy_close_pct,
            moderate_pct=settings.proxy_moderate_pct,
            fair_pct=settings.proxy_fair_pct,
            delta_scale=settings.proxy_delta_scale,
        )


def market_delta_pct(value_given: float, value_received: float) -> float:
    """Received minus given, as a percent of total value."""
    total = max(value_given + value_received, 1.0)
    return (value_received - value_given) / total * 100.0


def _lookup(mapping: Optional[Mapping[str, Any]], *keys: str) -> Any:
    if not isinstance(mapping, Mapping):
        return None
    for key in keys:
        if key in mapping and mapping[key] is not None:
            return mapping[key]
    return None


def reconstruct_accept_prob(
    value_given: float,
    value_received: float,
    intercept: float,
    analysis_result: Optional[Mapping[str, Any]] = None,
    thresholds: Optional[ProxyThresholds] = None,
) -> float:
    """
    Approximate acceptance probability of a historical trade.

    Only the market delta (x3) is measured. Lineup impact (x1) and fairness
    (x2) are proxied from the percent difference; consolidation (x4) comes from
    the stored market context. x5..x7 are neutral.

    Result is clamped to [0.02, 0.95].
    """
    t = thresholds or ProxyThresholds.from_settings()

    delta = market_delta_pct(value_given, value_received)
    x3 = clamp(delta / t.delta_scale, -2.0, 2.0)

    percent_diff = _lookup(analysis_result, "percent_diff", "percentDiff")
    percent_diff = abs(delta) if percent_diff is None else float(percent_diff)

    market_context = _lookup(analysis_result, "market_context", "marketContext")
    is_consolidation = bool(_lookup(market_context, "is_consolidation", "isConsolidation"))
    x4 = -0.3 if is_consolidation else 0.0

    if percent_diff < t.close_pct:
        x1 = 0.3
    elif percent_diff < t.moderate_pct:
        x1 = 0.1
    else:
        x1 = -0.2
    x2 = 0.2 if percent_diff < t.fair_pct else 0.0

    w = FEATURE_WEIGHTS
    z = intercept + w["w1"] * x1 + w["w2"] * x2 + w["w3"] * x3 + w["w4"] * x4
    return clamp(sigmoid(z), PROXY_PROB_FLOOR, PROXY_PROB_CEILING)

"""
Isotonic probability calibration.

Pairs are pooled into equal-width probability bins and the bin means are fitted
with scikit-learn's IsotonicRegression. The stored points are applied with
linear interpolation.
"""

from typing import List, Optional, Sequence, Tuple

import numpy as np
from sklearn.isotonic import IsotonicRegression

from tradecal.calibration.schemas import IsotonicMap, IsotonicPoint
from tradecal.utils.datetime import utcnow


MIN_ISOTONIC_SAMPLE = 50
MIN_ISOTONIC_POINTS = 3
DEFAULT_N_BINS = 20
ECE_N_BINS = 10
OUTPUT_FLOOR = 0.02
OUTPUT_CEILING = 0.98


def _bin_index(predictions: np.ndarray, n_bins: int) -> np.ndarray:
    idx = np.floor(predictions * n_bins).astype(int)
    return np.clip(idx, 0, n_bins - 1)


def bin_pairs(
    predictions: Sequence[float],
    outcomes: Sequence[float],
    n_bins: int = DEFAULT_N_BINS,
) -> Tuple[List[float], List[float], List[int]]:
    """
    Bucket pairs into equal-width bins over [0, 1].

    Returns (mean prediction, mean outcome, count) for each non-empty bin,
    ordered by bin.
    """
    p = np.asarray(predictions, dtype=float)
    y = np.asarray(outcomes, dtype=float)
    idx = _bin_index(p, n_bins)

    counts = np.bincount(idx, minlength=n_bins)
    sum_p = np.bincount(idx, weights=p, minlength=n_bins)
    sum_y = np.bincount(idx, weights=y, minlength=n_bins)

    xs, ys, ws = [], [], []
    for i in range(n_bins):
        if counts[i] == 0:
            continue
        xs.append(float(sum_p[i] / counts[i]))
        ys.append(float(sum_y[i] / counts[i]))
        ws.append(int(counts[i]))
    return xs, ys, ws


def fit_monotone(
    xs: Sequence[float],
    ys: Sequence[float],
    weights: Sequence[float],
) -> List[float]:
    """
    Weighted non-decreasing fit of ys over xs, bounded to [0, 1].

    Output has one value per input point.
    """
    x = np.asarray(xs, dtype=float)
    model = IsotonicRegression(y_min=0.0, y_max=1.0, increasing=True, out_of_bounds="clip")
    model.fit(x, np.asarray(ys, dtype=float), sample_weight=np.asarray(weights, dtype=float))
    return [float(v) for v in model.predict(x)]


def expected_calibration_error(
    predictions: Sequence[float],
    outcomes: Sequence[float],
    n_bins: int = ECE_N_BINS,
) -> float:
    """Count-weighted mean |mean prediction - mean outcome| over fixed bins."""
    n = len(predictions)
    if n == 0:
        return 0.0
    xs, ys, ws = bin_pairs(predictions, outcomes, n_bins)
    return float(sum(w / n * abs(x - y) for x, y, w in zip(xs, ys, ws)))


def fit_isotonic_map(
    predictions: Sequence[float],
    outcomes: Sequence[float],
    n_bins: int = DEFAULT_N_BINS,
) -> Optional[IsotonicMap]:
    """
    Fit the isotonic correction curve.

    Returns None below MIN_ISOTONIC_SAMPLE pairs or when fewer than
    MIN_ISOTONIC_POINTS bins are populated.
    """
    if len(predictions) != len(outcomes):
        raise ValueError("predictions and outcomes must have the same length")
    if len(predictions) < MIN_ISOTONIC_SAMPLE:
        return None

    xs, ys, ws = bin_pairs(predictions, outcomes, n_bins)
    if len(xs) < MIN_ISOTONIC_POINTS:
        return None

    fitted = fit_monotone(xs, ys, ws)
    points = [
        IsotonicPoint(x=round(x, 4), y=round(y, 4), count=w)
        for x, y, w in zip(xs, fitted, ws)
    ]

    ece_before = expected_calibration_error(predictions, outcomes)
    calibrated = [apply_isotonic_map(p, points) for p in predictions]
    ece_after = expected_calibration_error(calibrated, outcomes)

    return IsotonicMap(
        points=points,
        sample_size=len(predictions),
        ece=round(ece_before, 4),
        ece_calibrated_estimate=round(ece_after, 4),
        computed_at=utcnow(),
    )


def apply_isotonic_map(raw_probability: float, points: Optional[Sequence[IsotonicPoint]]) -> float:
    """
    Map a raw probability through the fitted curve.

    Passthrough when no points are loaded. Outside the fitted range the
    boundary point's y is used. Output is clamped to [0.02, 0.98].
    """
    if not points:
        return raw_probability

    p = min(1.0, max(0.0, raw_probability))
    value = float(np.interp(p, [pt.x for pt in points], [pt.y for pt in points]))
    return min(OUTPUT_CEILING, max(OUTPUT_FLOOR, round(value, 4)))

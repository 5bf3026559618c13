"""Statistical primitives shared by the pattern analyzers.

Only stdlib ``statistics`` and ``math``; every function is pure and works on
a plain list of floats.
"""

from __future__ import annotations

import math
import statistics
from dataclasses import dataclass

from repair_brain.constants import FLAT_BASELINE_JUMP_RATIO, MIN_REGRESSION_POINTS


@dataclass(frozen=True)
class Regression:
    """Ordinary least-squares fit of value against sample index."""

    slope: float
    intercept: float
    r2: float

    @classmethod
    def flat(cls, values: list[float]) -> Regression:
        """The "no trend" result used for short or singular input."""
        return cls(slope=0.0, intercept=mean(values), r2=0.0)


def mean(values: list[float]) -> float:
    return statistics.fmean(values) if values else 0.0


def sample_stddev(values: list[float]) -> float:
    """Sample (n-1) standard deviation; 0.0 for fewer than two values."""
    if len(values) < 2:
        return 0.0
    return statistics.stdev(values)


def relative_stddev(values: list[float]) -> float:
    """Coefficient of variation; 0.0 when the mean is zero."""
    m = mean(values)
    if m == 0:
        return 0.0
    return sample_stddev(values) / abs(m)


def linear_regression(values: list[float]) -> Regression:
    """Fit ``value = slope * index + intercept``.

    Needs at least three points.  Shorter input and a singular design
    degrade to a flat regression instead of failing.
    """
    n = len(values)
    if n < MIN_REGRESSION_POINTS:
        return Regression.flat(values)

    sum_x = sum_y = sum_xy = sum_x2 = 0.0
    for x, y in enumerate(values):
        sum_x += x
        sum_y += y
        sum_xy += x * y
        sum_x2 += x * x

    denominator = n * sum_x2 - sum_x * sum_x
    if abs(denominator) < 1e-10:
        return Regression.flat(values)

    slope = (n * sum_xy - sum_x * sum_y) / denominator
    intercept = (sum_y - slope * sum_x) / n

    mean_y = sum_y / n
    ss_tot = 0.0
    ss_res = 0.0
    for x, y in enumerate(values):
        ss_tot += (y - mean_y) ** 2
        ss_res += (y - (slope * x + intercept)) ** 2
    r2 = 1 - ss_res / ss_tot if ss_tot > 0 else 0.0

    return Regression(slope=slope, intercept=intercept, r2=max(0.0, min(1.0, r2)))


def direction_changes(values: list[float]) -> int:
    """Count sign flips in the first differences, ignoring flat steps."""
    changes = 0
    previous = 0
    for a, b in zip(values, values[1:], strict=False):
        step = b - a
        if step == 0:
            continue
        sign = 1 if step > 0 else -1
        if previous and sign != previous:
            changes += 1
        previous = sign
    return changes


def direction_change_ratio(values: list[float]) -> float:
    """Direction changes over the number of possible changes (``n - 2``)."""
    possible = len(values) - 2
    if possible <= 0:
        return 0.0
    return direction_changes(values) / possible


def drop_ratio(values: list[float]) -> float:
    """Share of first differences that are decreases."""
    steps = [b - a for a, b in zip(values, values[1:], strict=False)]
    if not steps:
        return 0.0
    return sum(1 for s in steps if s < 0) / len(steps)


def spike_zscore(values: list[float]) -> float | None:
    """z-score of the latest sample against all earlier samples.

    A zero-variance baseline yields ``math.inf`` if the latest value jumps
    clear of it and ``None`` otherwise; ``None`` also for a single sample.
    """
    if len(values) < 2:
        return None
    baseline = values[:-1]
    latest = values[-1]
    base_mean = mean(baseline)
    base_std = sample_stddev(baseline)

    if base_std == 0:
        if base_mean == 0:
            return math.inf if latest > 0 else None
        if latest - base_mean > FLAT_BASELINE_JUMP_RATIO * abs(base_mean):
            return math.inf
        return None

    z = (latest - base_mean) / base_std
    return z


def window_summary(values: list[float]) -> dict[str, float]:
    """Descriptive statistics attached to analysis details."""
    return {
        "samples": len(values),
        "latest": values[-1] if values else 0.0,
        "mean": round(mean(values), 6),
        "stddev": round(sample_stddev(values), 6),
        "min": min(values) if values else 0.0,
        "max": max(values) if values else 0.0,
    }

"""
Statistical helpers for latency distributions.

Pure Python so the comparator stays a pure function over recorded data.
"""

from __future__ import annotations

import math
from typing import Optional, Sequence


def percentile(sorted_values: Sequence[float], p: float) -> Optional[float]:
    """
    Calculate the p-th percentile using linear interpolation.

    Args:
        sorted_values: Pre-sorted sequence of numeric values (ascending order).
        p: Percentile to compute (0-100).

    Returns:
        The interpolated percentile value, or None if input is empty.

    Example:
        >>> percentile([1, 2, 3, 4, 5], 50)
        3.0
        >>> percentile([1, 2, 3, 4, 5], 25)
        2.0
    """
    if not sorted_values:
        return None

    n = len(sorted_values)
    if n == 1:
        return float(sorted_values[0])

    p = max(0.0, min(100.0, p))

    # Same as numpy's default "linear" method
    idx = (p / 100.0) * (n - 1)
    lower_idx = int(math.floor(idx))
    upper_idx = int(math.ceil(idx))

    if lower_idx == upper_idx:
        return float(sorted_values[lower_idx])

    fraction = idx - lower_idx
    lower_val = sorted_values[lower_idx]
    upper_val = sorted_values[upper_idx]

    return lower_val + fraction * (upper_val - lower_val)


def percent_change(baseline: float, post: float) -> Optional[float]:
    """``100 * (post - baseline) / baseline``; None when the baseline is zero."""
    if baseline == 0:
        return None
    return 100.0 * (post - baseline) / baseline


def mean(values: Sequence[float]) -> Optional[float]:
    if not values:
        return None
    return float(sum(values)) / len(values)

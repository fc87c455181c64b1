"""
stats.py
---------
Numeric helpers shared by every engine.

All helpers return 0.0 for empty input and never let NaN or Infinity escape.
Standard deviation is the population form (ddof=0).
"""

import math
from typing import Iterable

import numpy as np


def _as_array(values: Iterable[float]) -> np.ndarray:
    return np.asarray(list(values), dtype=float)


def calculate_mean(values: Iterable[float]) -> float:
    arr = _as_array(values)
    if arr.size == 0:
        return 0.0
    return float(np.mean(arr))


def calculate_std_dev(values: Iterable[float]) -> float:
    arr = _as_array(values)
    if arr.size == 0:
        return 0.0
    return float(np.std(arr))


def calculate_median(values: Iterable[float]) -> float:
    arr = _as_array(values)
    if arr.size == 0:
        return 0.0
    return float(np.median(arr))


def calculate_percentile(values: Iterable[float], fraction: float) -> float:
    """
    Nearest-rank percentile: the sorted value at index floor(n * fraction),
    clamped to the last element. `fraction` is in [0, 1].
    """
    arr = np.sort(_as_array(values))
    if arr.size == 0:
        return 0.0
    index = min(int(math.floor(arr.size * fraction)), arr.size - 1)
    return float(arr[max(index, 0)])


def safe_ratio(numerator: float, denominator: float) -> float:
    """numerator / denominator, or 0.0 when the denominator is zero or the
    result is not finite."""
    if denominator == 0:
        return 0.0
    result = numerator / denominator
    return result if math.isfinite(result) else 0.0

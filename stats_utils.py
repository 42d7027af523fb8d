"""
Sample statistics over plain return sequences.

All functions accept any 1-D sequence (list, numpy array, pandas Series) and
return Python floats. Empty inputs yield 0.0 rather than NaN so that callers
can apply their own zero-denominator rules.
"""

import math
import numpy as np
from typing import Sequence


def _as_array(values: Sequence[float]) -> np.ndarray:
    return np.asarray(values, dtype=float).ravel()


def mean(values: Sequence[float]) -> float:
    """Arithmetic mean; 0.0 for an empty sequence."""
    arr = _as_array(values)
    if arr.size == 0:
        return 0.0
    return float(arr.sum() / arr.size)


def variance(values: Sequence[float]) -> float:
    """Sample variance (divisor n - 1); 0.0 for fewer than two observations."""
    arr = _as_array(values)
    n = arr.size
    if n < 2:
        return 0.0
    m = mean(arr)
    return float(((arr - m) ** 2).sum() / (n - 1))


def std_dev(values: Sequence[float]) -> float:
    """Sample standard deviation."""
    return math.sqrt(variance(values))


def covariance(x: Sequence[float], y: Sequence[float]) -> float:
    """
    Sample covariance over the common prefix of two sequences.

    Args:
        x: First series.
        y: Second series.

    Returns:
        Covariance with divisor n - 1 where n = min(len(x), len(y)); 0.0 if n < 2.
    """
    xa = _as_array(x)
    ya = _as_array(y)
    n = min(xa.size, ya.size)
    if n < 2:
        return 0.0
    xa = xa[:n]
    ya = ya[:n]
    return float(((xa - mean(xa)) * (ya - mean(ya))).sum() / (n - 1))

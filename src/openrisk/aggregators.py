"""
Numeric aggregators used to reduce per-position formula values.

All reducers are total: they never raise on empty input.
mean/std of nothing is NaN, sum of nothing is 0.0.
"""

import math
from typing import Any, List, Sequence, Tuple

import numpy as np


def length(values: Sequence[float]) -> float:
    return float(len(values))


def total(values: Sequence[float]) -> float:
    if len(values) == 0:
        return 0.0
    return float(np.sum(np.asarray(values, dtype=float)))


def mean(values: Sequence[float]) -> float:
    if len(values) == 0:
        return math.nan
    return float(np.mean(np.asarray(values, dtype=float)))


def std(values: Sequence[float]) -> float:
    """Population standard deviation (divides by n, not n - 1)."""
    if len(values) == 0:
        return math.nan
    return float(np.std(np.asarray(values, dtype=float), ddof=0))


def top(pairs: Sequence[Tuple[Any, float]], n: int) -> List[Tuple[Any, float]]:
    """
    Rank (label, value) pairs.

    NaN values are always dropped.
    n > 0: the n largest, descending.
    n < 0: the |n| smallest, ascending.
    n == 0: every pair, input order.

    Equal values keep their evaluation order.
    """
    ranked = [(label, value) for label, value in pairs if not math.isnan(value)]
    if n > 0:
        ranked = sorted(ranked, key=lambda item: item[1], reverse=True)[:n]
    elif n < 0:
        ranked = sorted(ranked, key=lambda item: item[1])[:-n]
    return ranked

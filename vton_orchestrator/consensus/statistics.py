"""Outlier-robust averaging for detector outputs."""

from __future__ import annotations

from typing import Sequence

import numpy as np


def iqr_bounds(values: Sequence[float], multiplier: float = 1.5) -> tuple[float, float]:
    """Return the Tukey fence ``[Q1 - k*IQR, Q3 + k*IQR]``."""
    q1, q3 = np.percentile(np.asarray(values, dtype=np.float64), [25, 75])
    iqr = q3 - q1
    return float(q1 - multiplier * iqr), float(q3 + multiplier * iqr)


def robust_mean(values: Sequence[float], multiplier: float = 1.5) -> float:
    """Mean of ``values`` after discarding IQR outliers.

    Two or fewer samples carry no usable spread information, so they are
    averaged directly. If the fence rejects everything the full mean is used.
    """
    data = np.asarray(values, dtype=np.float64)
    if data.size == 0:
        raise ValueError("robust_mean() needs at least one value")
    if data.size <= 2:
        return float(data.mean())

    low, high = iqr_bounds(data, multiplier)
    kept = data[(data >= low) & (data <= high)]
    if kept.size == 0:
        return float(data.mean())
    return float(kept.mean())


def robust_box_mean(boxes: Sequence[Sequence[float]], multiplier: float = 1.5) -> list[float]:
    """Average each of the four coordinates independently."""
    columns = np.asarray(boxes, dtype=np.float64)
    if columns.ndim != 2 or columns.shape[1] != 4:
        raise ValueError(f"expected an (n, 4) array of boxes, got shape {columns.shape}")
    return [robust_mean(columns[:, i], multiplier) for i in range(4)]

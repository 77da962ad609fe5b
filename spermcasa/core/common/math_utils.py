#!/usr/bin/env python3
"""
Mathematical utilities shared by the tracking and kinematics modules.
"""

import numpy as np
from typing import Tuple


def calculate_distances(x: np.ndarray, y: np.ndarray) -> np.ndarray:
    """Calculate Euclidean distances between consecutive points."""
    dx = np.diff(x)
    dy = np.diff(y)
    return np.sqrt(dx**2 + dy**2)


def path_length(x: np.ndarray, y: np.ndarray) -> float:
    """Total length of the polyline through (x, y)."""
    if len(x) < 2:
        return 0.0
    return float(np.sum(calculate_distances(x, y)))


def safe_ratio(numerator: float, denominator: float) -> float:
    """numerator / denominator, or 0.0 when the denominator is zero."""
    if denominator == 0 or not np.isfinite(denominator):
        return 0.0
    return float(numerator / denominator)


def centered_moving_average(
    x: np.ndarray, y: np.ndarray, window: int
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Centered moving average of a 2-D path.

    Each output point is the mean of up to ``window`` input points centered on
    the same index. Near the ends the window shrinks to the points available;
    the path is never padded, so the output has the same length as the input.

    Args:
        x: X coordinates
        y: Y coordinates
        window: Number of points averaged (1 returns a copy of the path)

    Returns:
        Tuple of smoothed (x, y) arrays
    """
    n = len(x)
    if window <= 1 or n == 0:
        return np.array(x, dtype=float), np.array(y, dtype=float)

    before = (window - 1) // 2
    after = window // 2

    # Cumulative sums give every window mean in O(n)
    cx = np.concatenate(([0.0], np.cumsum(x, dtype=float)))
    cy = np.concatenate(([0.0], np.cumsum(y, dtype=float)))
    idx = np.arange(n)
    start = np.maximum(idx - before, 0)
    stop = np.minimum(idx + after, n - 1) + 1
    counts = stop - start

    return (cx[stop] - cx[start]) / counts, (cy[stop] - cy[start]) / counts


def signed_perpendicular_offsets(
    x: np.ndarray, y: np.ndarray, sx: np.ndarray, sy: np.ndarray
) -> np.ndarray:
    """
    Signed perpendicular distance from each raw point to the smoothed path.

    The tangent at index i runs through the smoothed neighbours i-1 and i+1
    (one-sided at the ends). The sign tells which side of the average path
    the raw point lies on. Where the tangent is degenerate the offset is 0.
    """
    n = len(x)
    if n < 2:
        return np.zeros(n)

    prev_idx = np.maximum(np.arange(n) - 1, 0)
    next_idx = np.minimum(np.arange(n) + 1, n - 1)
    tx = sx[next_idx] - sx[prev_idx]
    ty = sy[next_idx] - sy[prev_idx]
    norm = np.hypot(tx, ty)

    # 2-D cross product of the unit tangent with the raw offset
    cross = tx * (y - sy) - ty * (x - sx)
    offsets = np.zeros(n)
    valid = norm > 1e-12
    offsets[valid] = cross[valid] / norm[valid]
    # Rounding noise on straight paths must not register as crossings
    offsets[np.abs(offsets) < 1e-9] = 0.0
    return offsets


def count_sign_changes(values: np.ndarray) -> int:
    """Number of sign changes in a signal, ignoring exact zeros."""
    signs = np.sign(values)
    signs = signs[signs != 0]
    if len(signs) < 2:
        return 0
    return int(np.count_nonzero(signs[1:] != signs[:-1]))

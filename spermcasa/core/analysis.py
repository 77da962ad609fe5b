#!/usr/bin/env python3
"""
Sperm Kinematics (CASA parameters)
==================================

Converts a track from pixel/frame units into microns and seconds and computes
the standard CASA kinematic parameters:

    VCL  curvilinear velocity      raw path length / duration
    VSL  straight-line velocity    first-to-last distance / duration
    VAP  average-path velocity     smoothed path length / duration
    ALH  lateral head amplitude    2 x mean perpendicular offset (peak-to-peak)
    BCF  beat-cross frequency      raw/average path crossings / duration
    LIN  VSL / VCL,  STR  VSL / VAP,  WOB  VAP / VCL

Ratios are 0 whenever their denominator is 0. Every function here is pure.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import Iterable, List, Sequence

import numpy as np
import pandas as pd
from joblib import Parallel, delayed

from .common import (
    calculate_distances,
    centered_moving_average,
    count_sign_changes,
    path_length,
    safe_ratio,
    signed_perpendicular_offsets,
)
from .common.data_structures import CalibrationParameters, TrackPoint
from .tracker import Track

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TrackResult:
    track_id: int
    vcl: float
    vsl: float
    vap: float
    alh: float
    bcf: float
    lin: float
    str: float
    wob: float
    duration: float
    point_count: int
    quality_score: float


def calculate_vcl(x: np.ndarray, y: np.ndarray, duration: float) -> float:
    """Curvilinear velocity (VCL)"""
    if duration <= 0:
        return 0.0
    return path_length(x, y) / duration


def calculate_vsl(x: np.ndarray, y: np.ndarray, duration: float) -> float:
    """Straight-line velocity (VSL)"""
    if duration <= 0 or len(x) < 2:
        return 0.0
    return float(np.hypot(x[-1] - x[0], y[-1] - y[0])) / duration


def calculate_vap(sx: np.ndarray, sy: np.ndarray, duration: float) -> float:
    """Average-path velocity (VAP) from an already smoothed path."""
    if duration <= 0:
        return 0.0
    return path_length(sx, sy) / duration


def calculate_alh(offsets: np.ndarray) -> float:
    """
    Amplitude of lateral head displacement.

    Reported peak-to-peak: twice the mean absolute perpendicular offset of the
    raw path from the average path.
    """
    if len(offsets) == 0:
        return 0.0
    return 2.0 * float(np.mean(np.abs(offsets)))


def calculate_bcf(offsets: np.ndarray, duration: float) -> float:
    """Beat-cross frequency: sign changes of the lateral offset per second."""
    if duration <= 0:
        return 0.0
    return count_sign_changes(offsets) / duration


def calculate_quality_score(
    x: np.ndarray, y: np.ndarray, duration: float, fps: float
) -> float:
    """
    Confidence signal in [0, 1] combining point density and step regularity.

    Density is the fraction of spanned frames that carry a point; smoothness is
    1 / (1 + coefficient of variation of the step lengths).
    """
    n = len(x)
    if n == 0:
        return 0.0

    frames_spanned = int(round(duration * fps)) + 1
    density = min(1.0, n / frames_spanned) if frames_spanned > 0 else 1.0

    steps = calculate_distances(x, y)
    mean_step = float(np.mean(steps)) if len(steps) else 0.0
    cv = float(np.std(steps)) / mean_step if mean_step > 0 else 0.0
    smoothness = 1.0 / (1.0 + cv)

    return float(np.clip(density * smoothness, 0.0, 1.0))


def compute_track_kinematics(
    track: Track, calibration: CalibrationParameters, smoothing_window: int
) -> TrackResult:
    """
    Compute the kinematic parameters of one track.

    Args:
        track: Track with positions in pixels and timestamps in seconds
        calibration: Pixel size and frame rate for the run
        smoothing_window: Points averaged for the average path

    Returns:
        TrackResult in microns and seconds
    """
    points: Sequence[TrackPoint] = track.points
    scale = calibration.microns_per_pixel
    x = np.array([p.x for p in points], dtype=float) * scale
    y = np.array([p.y for p in points], dtype=float) * scale
    duration = float(points[-1].t - points[0].t) if points else 0.0

    sx, sy = centered_moving_average(x, y, smoothing_window)
    offsets = signed_perpendicular_offsets(x, y, sx, sy)

    vcl = calculate_vcl(x, y, duration)
    vsl = calculate_vsl(x, y, duration)
    vap = calculate_vap(sx, sy, duration)

    return TrackResult(
        track_id=track.id,
        vcl=vcl,
        vsl=vsl,
        vap=vap,
        alh=calculate_alh(offsets),
        bcf=calculate_bcf(offsets, duration),
        lin=safe_ratio(vsl, vcl),
        str=safe_ratio(vsl, vap),
        wob=safe_ratio(vap, vcl),
        duration=duration,
        point_count=len(points),
        quality_score=calculate_quality_score(
            x, y, duration, calibration.frames_per_second
        ),
    )


def analyze_tracks(
    tracks: Iterable[Track],
    calibration: CalibrationParameters,
    smoothing_window: int = 5,
    n_jobs: int = 1,
    backend: str = "loky",
) -> List[TrackResult]:
    """
    Compute kinematics for many tracks.

    Tracks are independent, so joblib spreads them over ``n_jobs`` workers
    (1 runs sequentially in-process, -1 uses all cores). Results keep the
    input order.
    """
    tracks = list(tracks)
    if not tracks:
        return []

    logger.info(
        "Computing kinematics for %d tracks (n_jobs=%d, window=%d)",
        len(tracks),
        n_jobs,
        smoothing_window,
    )
    return Parallel(n_jobs=n_jobs, backend=backend, verbose=0)(
        delayed(compute_track_kinematics)(trk, calibration, smoothing_window)
        for trk in tracks
    )


def results_to_dataframe(results: Iterable[TrackResult]) -> pd.DataFrame:
    """One row per track, rounded the way the motility CSV is written."""
    rows = [asdict(r) for r in results]
    columns = list(TrackResult.__dataclass_fields__.keys())
    df = pd.DataFrame(rows, columns=columns)
    return df.rename(
        columns={
            "vcl": "VCL_um_s",
            "vsl": "VSL_um_s",
            "vap": "VAP_um_s",
            "alh": "ALH_um",
            "bcf": "BCF_hz",
            "lin": "LIN",
            "str": "STR",
            "wob": "WOB",
            "duration": "duration_s",
        }
    ).round(4)

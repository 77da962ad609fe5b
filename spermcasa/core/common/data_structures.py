#!/usr/bin/env python3
"""
Data structures used across multiple modules in the sperm analysis package.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class Detection:
    """Blob centroid and area in pixel space, one per blob per frame."""

    x: float
    y: float
    area: float
    frame: Optional[int] = None


@dataclass(frozen=True)
class TrackPoint:
    """Position (pixels or microns) and timestamp (seconds) of a tracked cell."""

    x: float
    y: float
    t: float
    frame: Optional[int] = None


@dataclass(frozen=True)
class CalibrationParameters:
    """Spatial and temporal calibration, fixed for one analysis run."""

    microns_per_pixel: float
    frames_per_second: float

    def frame_time(self, frame_index: int) -> float:
        return frame_index / self.frames_per_second

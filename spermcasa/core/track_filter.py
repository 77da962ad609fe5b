#!/usr/bin/env python3
"""
Minimum duration / point count filter applied to terminated tracks.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from .config import AnalysisParameters
from .tracker import Track


@dataclass(frozen=True)
class TrackFilter:
    min_track_duration_sec: float = 0.0
    min_track_points: int = 1

    @classmethod
    def from_parameters(cls, params: AnalysisParameters) -> "TrackFilter":
        return cls(params.min_track_duration_sec, params.min_track_points)

    def accepts(self, track: Track) -> bool:
        if track.point_count < self.min_track_points:
            return False
        # A single point has zero duration and never passes a positive minimum
        duration = track.duration
        return duration > 0 and duration >= self.min_track_duration_sec

    def __call__(self, track: Track) -> Optional[Track]:
        return track if self.accepts(track) else None

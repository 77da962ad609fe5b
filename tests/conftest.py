import math

import pytest

from spermcasa.core.common import CalibrationParameters, Detection, TrackPoint
from spermcasa.core.config import AnalysisParameters
from spermcasa.core.tracker import Track


@pytest.fixture
def calibration():
    return CalibrationParameters(microns_per_pixel=1.0, frames_per_second=10.0)


@pytest.fixture
def params():
    return AnalysisParameters(
        min_blob_area=5.0,
        max_match_distance_px=5.0,
        max_missed_frames=3,
        min_track_duration_sec=0.0,
        min_track_points=2,
        smoothing_window=1,
    )


@pytest.fixture
def make_track():
    """Build a track from (x, y) positions sampled once per frame."""

    def _make(positions, fps=10.0, track_id=1, start_frame=0):
        points = [
            TrackPoint(x, y, (start_frame + i) / fps, start_frame + i)
            for i, (x, y) in enumerate(positions)
        ]
        track = Track(track_id, points[0])
        for p in points[1:]:
            track.append(p)
        return track

    return _make


@pytest.fixture
def straight_line():
    return [(2.0 * i, 1.0 * i) for i in range(10)]


@pytest.fixture
def closed_circle():
    n = 24
    ring = [
        (50 + 10 * math.cos(2 * math.pi * k / n), 50 + 10 * math.sin(2 * math.pi * k / n))
        for k in range(n)
    ]
    return ring + [ring[0]]


@pytest.fixture
def detection_frames():
    return _detection_frames


def _detection_frames(*cells, n_frames, area=10.0):
    """Per-frame detection lists for cells given as callables frame -> (x, y) or None."""
    frames = []
    for f in range(n_frames):
        dets = []
        for cell in cells:
            pos = cell(f)
            if pos is not None:
                dets.append(Detection(pos[0], pos[1], area, f))
        frames.append(dets)
    return frames

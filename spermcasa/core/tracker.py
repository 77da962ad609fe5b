#!/usr/bin/env python3
"""
Frame-to-frame association of blob detections into per-cell tracks.

Detections are linked to the most recent point of each active track by
nearest-neighbour distance. Candidate pairs are sorted by distance (ties by
lower track id, then lower detection index) and committed greedily, so the
matching is bounded and reproducible. ``assignment_mode="optimal"`` swaps in a
minimum-cost bipartite matching over the same candidate pairs.
"""

from __future__ import annotations

import logging
from typing import Iterable, Iterator, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from numba import njit
from scipy.optimize import linear_sum_assignment
from scipy.spatial import cKDTree

from .common.data_structures import CalibrationParameters, Detection, TrackPoint
from .config import AnalysisParameters

logger = logging.getLogger(__name__)

# Stand-in cost for pairs outside the match radius in the optimal solver
_FORBIDDEN_COST = 1e12


# Numba-optimized helper (defined at module level to avoid re-compilation)
@njit
def _greedy_numba(trk, det, n_trk, n_det):
    """
    Walk pre-sorted candidate pairs and keep the first pair for each
    unused track and detection.

    Args:
        trk: Array of track indices, sorted by cost
        det: Array of detection indices, same order
        n_trk: Total number of tracks
        n_det: Total number of detections

    Returns:
        Tuple of (track_indices, detection_indices) for committed assignments
    """
    used_trk = np.zeros(n_trk, np.bool_)
    used_det = np.zeros(n_det, np.bool_)
    ti = np.empty(min(n_trk, n_det), np.intp)
    dj = np.empty(min(n_trk, n_det), np.intp)
    k = 0
    for t, d in zip(trk, det):
        if not used_trk[t] and not used_det[d]:
            ti[k] = t
            dj[k] = d
            k += 1
            used_trk[t] = True
            used_det[d] = True
    return ti[:k], dj[:k]


class TrackState:
    ACTIVE = "active"
    TERMINATED = "terminated"


class Track:
    def __init__(self, track_id: int, point: TrackPoint):
        self.id = track_id
        self.points: List[TrackPoint] = [point]
        self.missed_frames: int = 0
        self.state: str = TrackState.ACTIVE
        self.termination_reason: Optional[str] = None

    def __repr__(self) -> str:
        return (
            f"Track(id={self.id}, points={len(self.points)}, "
            f"missed_frames={self.missed_frames}, state={self.state})"
        )

    @property
    def is_active(self) -> bool:
        return self.state == TrackState.ACTIVE

    @property
    def duration(self) -> float:
        return self.points[-1].t - self.points[0].t

    @property
    def point_count(self) -> int:
        return len(self.points)

    def last_position(self) -> np.ndarray:
        p = self.points[-1]
        return np.array([p.x, p.y])

    def append(self, point: TrackPoint):
        if point.t <= self.points[-1].t:
            raise ValueError(
                f"Track {self.id}: point time {point.t} does not follow {self.points[-1].t}"
            )
        self.points.append(point)
        self.missed_frames = 0

    def mark_missing(self):
        self.missed_frames += 1

    def terminate(self, reason: str):
        if self.state == TrackState.TERMINATED:
            raise RuntimeError(f"Track {self.id} is already terminated")
        self.state = TrackState.TERMINATED
        self.termination_reason = reason


class SpermTracker:
    """
    Single-threaded multi-object tracker.

    Feed frames in strictly increasing index order through ``update``; each call
    returns the tracks terminated by that frame. ``finish`` closes the stream
    and returns every track still active. Terminated tracks are handed over to
    the caller and no longer referenced by the tracker.
    """

    def __init__(
        self, params: AnalysisParameters, calibration: CalibrationParameters
    ):
        self.params = params
        self.calibration = calibration
        self.active: List[Track] = []
        self.next_id: int = 1
        self.last_frame: Optional[int] = None
        self.created_count: int = 0
        self.emitted_count: int = 0
        self.finished: bool = False

    def update(self, frame: int, detections: Sequence[Detection]) -> List[Track]:
        if self.finished:
            raise RuntimeError("Tracker already finished")
        if self.last_frame is not None and frame <= self.last_frame:
            raise ValueError(
                f"Frames must arrive in increasing order: got {frame} after {self.last_frame}"
            )

        terminated: List[Track] = []

        # Skipped frame indices count as detection-free frames; with no active
        # track left an empty frame changes nothing
        if self.last_frame is not None:
            for gap_frame in range(self.last_frame + 1, frame):
                if not self.active:
                    break
                terminated.extend(self._step(gap_frame, []))

        terminated.extend(self._step(frame, detections))
        self.last_frame = frame
        return terminated

    def finish(self) -> List[Track]:
        """Terminate all remaining active tracks at end of stream."""
        if self.finished:
            return []
        self.finished = True

        remaining = self.active
        self.active = []
        for trk in remaining:
            trk.terminate("end_of_stream")
        self.emitted_count += len(remaining)

        logger.info(
            "Tracking finished: %d tracks created, %d emitted",
            self.created_count,
            self.emitted_count,
        )
        return remaining

    def _step(self, frame: int, detections: Sequence[Detection]) -> List[Track]:
        t = self.calibration.frame_time(frame)

        trk_idx, det_idx = self._associate(detections)

        matched_trk = set()
        matched_det = set()
        for i, j in zip(trk_idx, det_idx):
            det = detections[j]
            self.active[i].append(TrackPoint(det.x, det.y, t, frame))
            matched_trk.add(int(i))
            matched_det.add(int(j))

        still_active: List[Track] = []
        terminated: List[Track] = []
        for i, trk in enumerate(self.active):
            if i not in matched_trk:
                trk.mark_missing()
                if trk.missed_frames > self.params.max_missed_frames:
                    trk.terminate("max_missed_frames_exceeded")
                    terminated.append(trk)
                    continue
            still_active.append(trk)
        self.active = still_active
        self.emitted_count += len(terminated)

        spawned = 0
        for j, det in enumerate(detections):
            if j in matched_det or det.area < self.params.min_blob_area:
                continue
            self._spawn(det, t, frame)
            spawned += 1

        logger.debug(
            "Frame %d: %d detections, %d matched, %d spawned, %d terminated, %d active",
            frame,
            len(detections),
            len(matched_det),
            spawned,
            len(terminated),
            len(self.active),
        )
        return terminated

    def _candidate_pairs(
        self, detections: Sequence[Detection]
    ) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        """Return (track_index, detection_index, distance) for pairs within range."""
        empty = (
            np.array([], dtype=np.intp),
            np.array([], dtype=np.intp),
            np.array([], dtype=float),
        )
        if not self.active or not detections:
            return empty

        detection_positions = np.array([[det.x, det.y] for det in detections])
        detection_tree = cKDTree(detection_positions)
        max_dist = self.params.max_match_distance_px

        trk_list, det_list, dist_list = [], [], []
        for i, trk in enumerate(self.active):
            p = trk.last_position()
            nearby = detection_tree.query_ball_point(p, max_dist)
            for j in nearby:
                dist = float(np.hypot(*(detection_positions[j] - p)))
                if dist <= max_dist:
                    trk_list.append(i)
                    det_list.append(j)
                    dist_list.append(dist)

        if not trk_list:
            return empty
        return (
            np.array(trk_list, dtype=np.intp),
            np.array(det_list, dtype=np.intp),
            np.array(dist_list, dtype=float),
        )

    def _associate(
        self, detections: Sequence[Detection]
    ) -> Tuple[np.ndarray, np.ndarray]:
        trk, det, dist = self._candidate_pairs(detections)
        if len(trk) == 0:
            return trk, det

        if self.params.assignment_mode == "optimal":
            return self._optimal_assignment(trk, det, dist, len(detections))
        return self._greedy_assignment(trk, det, dist, len(detections))

    def _greedy_assignment(
        self, trk: np.ndarray, det: np.ndarray, dist: np.ndarray, n_det: int
    ) -> Tuple[np.ndarray, np.ndarray]:
        track_ids = np.array([self.active[i].id for i in trk])
        # lexsort: last key is primary
        order = np.lexsort((det, track_ids, dist))
        return _greedy_numba(trk[order], det[order], len(self.active), n_det)

    def _optimal_assignment(
        self, trk: np.ndarray, det: np.ndarray, dist: np.ndarray, n_det: int
    ) -> Tuple[np.ndarray, np.ndarray]:
        C = np.full((len(self.active), n_det), _FORBIDDEN_COST)
        C[trk, det] = dist
        rows, cols = linear_sum_assignment(C)
        keep = C[rows, cols] < _FORBIDDEN_COST
        return rows[keep].astype(np.intp), cols[keep].astype(np.intp)

    def _spawn(self, det: Detection, t: float, frame: int):
        new_track = Track(self.next_id, TrackPoint(det.x, det.y, t, frame))
        self.active.append(new_track)
        self.next_id += 1
        self.created_count += 1


def run_tracking(
    frames: Iterable[Tuple[int, Sequence[Detection]]],
    params: AnalysisParameters,
    calibration: CalibrationParameters,
) -> Iterator[Track]:
    """Track an ordered (frame_index, detections) stream, yielding terminated tracks."""
    tracker = SpermTracker(params, calibration)
    for frame, detections in frames:
        yield from tracker.update(frame, detections)
    yield from tracker.finish()


def tracks_to_dataframe(tracks: Iterable[Track]) -> pd.DataFrame:
    """Flatten tracks into one row per point."""
    rows = []
    for trk in tracks:
        for i, p in enumerate(trk.points):
            rows.append(
                {
                    "track_id": trk.id,
                    "frame": p.frame,
                    "t": p.t,
                    "x": p.x,
                    "y": p.y,
                    "accumulated_length": i + 1,
                    "track_length": len(trk.points),
                }
            )
    columns = ["track_id", "frame", "t", "x", "y", "accumulated_length", "track_length"]
    return pd.DataFrame(rows, columns=columns)

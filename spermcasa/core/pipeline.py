#!/usr/bin/env python3
"""
End-to-end CASA analysis: detection feed -> tracker -> track filter ->
kinematics -> aggregation and WHO classification.

The tracker consumes frames on the calling thread, in strict index order.
Detection workers and kinematics workers run in parallel around it.
Cancellation is checked between frames and before aggregation; a cancelled
run raises AnalysisCancelled and never returns a partial result.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Optional, Tuple

from tqdm import tqdm

from .analysis import TrackResult, analyze_tracks
from .classification import (
    WHO_2021,
    CASAAggregateResult,
    SampleMeasurements,
    WHOReferenceLimits,
    aggregate_results,
)
from .common.data_structures import CalibrationParameters
from .common.errors import AnalysisCancelled
from .config import AnalysisParameters, ensure_valid
from .feed import as_detection_feed, iter_frames
from .track_filter import TrackFilter
from .tracker import SpermTracker, Track

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AnalysisOutput:
    aggregate: CASAAggregateResult
    track_results: Tuple[TrackResult, ...]
    tracks: Tuple[Track, ...]  # tracks that passed the filter
    frames_processed: int
    tracks_created: int
    tracks_rejected: int


def _check_cancelled(cancel_event: Optional[threading.Event], stage: str):
    if cancel_event is not None and cancel_event.is_set():
        logger.info("Analysis cancelled %s", stage)
        raise AnalysisCancelled(f"Analysis cancelled {stage}")


def run_analysis(
    detection_feed,
    calibration: CalibrationParameters,
    parameters: Optional[AnalysisParameters] = None,
    cancel_event: Optional[threading.Event] = None,
    measurements: Optional[SampleMeasurements] = None,
    limits: WHOReferenceLimits = WHO_2021,
    show_progress: bool = False,
) -> AnalysisOutput:
    """
    Run the complete analysis on one detection stream.

    Args:
        detection_feed: DetectionFeed, detections DataFrame or list of per-frame
            detection lists
        calibration: Pixel size and frame rate
        parameters: Analysis parameters (defaults if None)
        cancel_event: Set from another thread to cancel the run
        measurements: Concentration, morphology etc. measured elsewhere
        limits: WHO reference limits used for classification
        show_progress: Show a tqdm progress bar over frames

    Returns:
        AnalysisOutput with the aggregate and every per-track result

    Raises:
        ConfigurationError: Invalid parameters or calibration
        AnalysisCancelled: cancel_event was set before the run completed
    """
    parameters = parameters or AnalysisParameters()
    ensure_valid(parameters, calibration)
    feed = as_detection_feed(detection_feed)

    logger.info(
        "Starting analysis: %.3f um/px, %.1f fps, max distance %.1f px, max missed %d, %s assignment",
        calibration.microns_per_pixel,
        calibration.frames_per_second,
        parameters.max_match_distance_px,
        parameters.max_missed_frames,
        parameters.assignment_mode,
    )

    tracker = SpermTracker(parameters, calibration)
    track_filter = TrackFilter.from_parameters(parameters)
    kept = []
    rejected = 0
    frames_processed = 0

    def _collect(terminated):
        nonlocal rejected
        for trk in terminated:
            if track_filter(trk) is not None:
                kept.append(trk)
            else:
                rejected += 1

    frame_iter = iter_frames(
        feed, parameters.n_workers, parameters.buffer_size, cancel_event
    )
    frames = tqdm(frame_iter, desc="Tracking", unit="frame") if show_progress else frame_iter

    try:
        for frame, detections in frames:
            _collect(tracker.update(frame, detections))
            frames_processed += 1
            _check_cancelled(cancel_event, f"after frame {frame}")
    finally:
        # Stops detection workers
        frame_iter.close()

    _collect(tracker.finish())
    logger.info(
        "Tracking: %d frames, %d tracks created, %d kept, %d rejected by filter",
        frames_processed,
        tracker.created_count,
        len(kept),
        rejected,
    )

    _check_cancelled(cancel_event, "before kinematics")
    results = analyze_tracks(
        kept, calibration, parameters.smoothing_window, parameters.n_jobs
    )

    _check_cancelled(cancel_event, "before aggregation")
    aggregate = aggregate_results(results, parameters, measurements, limits)

    return AnalysisOutput(
        aggregate=aggregate,
        track_results=tuple(results),
        tracks=tuple(kept),
        frames_processed=frames_processed,
        tracks_created=tracker.created_count,
        tracks_rejected=rejected,
    )

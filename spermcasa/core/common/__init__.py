"""
Common package for the sperm analysis project - shared utilities across all modules.

Submodules:
    data_structures: Detection, TrackPoint and calibration records
    errors: Configuration and cancellation exceptions
    io: Detection table loading
    math_utils: Path geometry helpers
"""

from .data_structures import CalibrationParameters, Detection, TrackPoint
from .errors import AnalysisCancelled, ConfigurationError
from .io import load_detections
from .math_utils import (
    calculate_distances,
    centered_moving_average,
    count_sign_changes,
    path_length,
    safe_ratio,
    signed_perpendicular_offsets,
)

__all__ = [
    "CalibrationParameters",
    "Detection",
    "TrackPoint",
    "AnalysisCancelled",
    "ConfigurationError",
    "load_detections",
    "calculate_distances",
    "centered_moving_average",
    "count_sign_changes",
    "path_length",
    "safe_ratio",
    "signed_perpendicular_offsets",
]

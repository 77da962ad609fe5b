#!/usr/bin/env python3
"""
Run configuration for the CASA pipeline.

Parameters are grouped in a single immutable dataclass. A JSON params file may
override any subset of them through the sections ``tracking``, ``filter``,
``analysis`` and ``execution``; an optional ``calibration`` section carries
``microns_per_pixel`` and ``frames_per_second``.
"""

from __future__ import annotations

import json
import logging
import math
import numbers
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from .common.data_structures import CalibrationParameters
from .common.errors import ConfigurationError

logger = logging.getLogger(__name__)

ASSIGNMENT_MODES = ("greedy", "optimal")
CONFIG_SECTIONS = ("tracking", "filter", "analysis", "execution")


@dataclass(frozen=True)
class AnalysisParameters:
    """Tracking, filtering, kinematics and aggregation options for one run."""

    # Tracker
    min_blob_area: float = 8.0  # px^2 needed to spawn a new track
    max_match_distance_px: float = 40.0  # max centroid step between frames
    max_missed_frames: int = 6  # dropout tolerance before termination
    assignment_mode: str = "greedy"  # "greedy" or "optimal"

    # Track filter
    min_track_duration_sec: float = 0.2
    min_track_points: int = 5

    # Kinematics
    smoothing_window: int = 5  # points averaged for the average path

    # Aggregation (um/s and STR fraction)
    minimum_velocity_threshold: float = 5.0
    minimum_progressive_velocity_threshold: float = 25.0
    straightness_threshold: float = 0.8

    # Execution
    n_workers: int = 1  # detection feed workers
    buffer_size: int = 64  # frames held by the reorder buffer
    n_jobs: int = 1  # kinematics workers (joblib; -1 = all cores)


INTEGER_FIELDS = (
    "max_missed_frames",
    "min_track_points",
    "smoothing_window",
    "n_workers",
    "buffer_size",
    "n_jobs",
)
REAL_FIELDS = (
    "min_blob_area",
    "max_match_distance_px",
    "min_track_duration_sec",
    "minimum_velocity_threshold",
    "minimum_progressive_velocity_threshold",
    "straightness_threshold",
)


def _type_issue(name: str, value: Any, integer: bool) -> Optional[str]:
    # bool passes isinstance(..., Integral) but is never a count or a distance
    if isinstance(value, bool):
        return f"{name} must be a number, got {value!r}"
    if integer:
        if not isinstance(value, numbers.Integral):
            return f"{name} must be an integer, got {value!r}"
        return None
    if not isinstance(value, numbers.Real):
        return f"{name} must be a number, got {value!r}"
    if not math.isfinite(value):
        return f"{name} must be finite, got {value}"
    return None


def validate_parameters(
    params: AnalysisParameters,
    calibration: Optional[CalibrationParameters] = None,
) -> List[str]:
    """
    Validate analysis parameters and calibration.

    Type and finiteness are checked first; range checks only run on fields
    that passed them.

    Returns:
        List of validation issues (empty when everything is usable)
    """
    issues = []
    mistyped = set()

    for names, integer in ((INTEGER_FIELDS, True), (REAL_FIELDS, False)):
        for name in names:
            issue = _type_issue(name, getattr(params, name), integer)
            if issue:
                issues.append(issue)
                mistyped.add(name)

    def require(name: str, ok, requirement: str):
        value = getattr(params, name)
        if name not in mistyped and not ok(value):
            issues.append(f"{name} must be {requirement}, got {value}")

    require("max_missed_frames", lambda v: v >= 0, ">= 0")
    require("max_match_distance_px", lambda v: v > 0, "> 0")
    require("min_blob_area", lambda v: v >= 0, ">= 0")
    require("min_track_duration_sec", lambda v: v >= 0, ">= 0")
    require("min_track_points", lambda v: v >= 1, ">= 1")
    require("smoothing_window", lambda v: v >= 1, ">= 1")
    for name in (
        "minimum_velocity_threshold",
        "minimum_progressive_velocity_threshold",
        "straightness_threshold",
    ):
        require(name, lambda v: v >= 0, ">= 0")
    require("n_workers", lambda v: v >= 1, ">= 1")
    require("buffer_size", lambda v: v >= 1, ">= 1")
    require("n_jobs", lambda v: v != 0, "non-zero")

    if params.assignment_mode not in ASSIGNMENT_MODES:
        issues.append(
            f"assignment_mode must be one of {ASSIGNMENT_MODES}, got {params.assignment_mode!r}"
        )

    if calibration is not None:
        for name in ("frames_per_second", "microns_per_pixel"):
            value = getattr(calibration, name)
            issue = _type_issue(name, value, integer=False)
            if issue:
                issues.append(issue)
            elif value <= 0:
                issues.append(f"{name} must be > 0, got {value}")

    return issues


def ensure_valid(
    params: AnalysisParameters,
    calibration: Optional[CalibrationParameters] = None,
) -> None:
    """Raise ConfigurationError listing every problem found."""
    issues = validate_parameters(params, calibration)
    if issues:
        for issue in issues:
            logger.error("Invalid configuration: %s", issue)
        raise ConfigurationError(issues)


def _section(loaded: Dict[str, Any], name: str) -> Dict[str, Any]:
    section = loaded.get(name) or {}
    if not isinstance(section, dict):
        raise ConfigurationError([f"section {name!r} must be an object"])
    return section


def parameters_from_dict(
    loaded: Dict[str, Any], base: Optional[AnalysisParameters] = None
) -> AnalysisParameters:
    """Merge the known sections of a params mapping over ``base``."""
    base = base or AnalysisParameters()
    known = {f.name for f in fields(AnalysisParameters)}
    overrides: Dict[str, Any] = {}
    unknown = []

    for section in CONFIG_SECTIONS:
        for key, value in _section(loaded, section).items():
            if key in known:
                overrides[key] = value
            else:
                unknown.append(f"{section}.{key}")

    if unknown:
        raise ConfigurationError(
            [f"unknown parameter {name}" for name in sorted(unknown)]
        )
    params = replace(base, **overrides)
    ensure_valid(params)
    return params


def calibration_from_dict(loaded: Dict[str, Any]) -> Optional[CalibrationParameters]:
    section = _section(loaded, "calibration")
    if not section:
        return None
    try:
        calibration = CalibrationParameters(
            microns_per_pixel=float(section["microns_per_pixel"]),
            frames_per_second=float(section["frames_per_second"]),
        )
    except KeyError as e:
        raise ConfigurationError([f"calibration section is missing {e.args[0]}"]) from e
    except (TypeError, ValueError) as e:
        raise ConfigurationError([f"calibration values must be numbers: {e}"]) from e
    ensure_valid(AnalysisParameters(), calibration)
    return calibration


def load_parameters(
    path: Path,
) -> Tuple[AnalysisParameters, Optional[CalibrationParameters]]:
    """Load a JSON params file and merge it over the defaults."""
    with open(path, "r") as fh:
        try:
            loaded = json.load(fh)
        except json.JSONDecodeError as e:
            raise ConfigurationError([f"{path} is not valid JSON: {e}"]) from e
    if not isinstance(loaded, dict):
        raise ConfigurationError([f"{path} must contain a JSON object"])

    params = parameters_from_dict(loaded)
    calibration = calibration_from_dict(loaded)
    logger.info("Loaded parameters from %s", path)
    return params, calibration

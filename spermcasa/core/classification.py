#!/usr/bin/env python3
"""
Population statistics and WHO 2021 classification of a CASA run.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np

from .analysis import TrackResult
from .common.data_structures import CalibrationParameters
from .config import AnalysisParameters

logger = logging.getLogger(__name__)


class WHOClassification(str, Enum):
    NORMAL = "Normal"
    OLIGOZOOSPERMIA = "Oligozoospermia"
    ASTHENOZOOSPERMIA = "Asthenozoospermia"
    TERATOZOOSPERMIA = "Teratozoospermia"
    OTHER_ABNORMALITY = "OtherAbnormality"
    UNKNOWN = "Unknown"


@dataclass(frozen=True)
class WHOReferenceLimits:
    """Lower reference limits (5th centiles), WHO laboratory manual 2021."""

    concentration_m_per_ml: float = 16.0
    total_count_m: float = 39.0
    total_motility_pct: float = 42.0
    progressive_motility_pct: float = 30.0
    normal_morphology_pct: float = 4.0
    volume_ml: float = 1.4
    vitality_pct: float = 54.0


WHO_2021 = WHOReferenceLimits()


@dataclass(frozen=True)
class SampleMeasurements:
    """Values measured outside the video analysis. None means not measured."""

    concentration_m_per_ml: Optional[float] = None
    total_count_m: Optional[float] = None
    volume_ml: Optional[float] = None
    normal_morphology_pct: Optional[float] = None
    vitality_pct: Optional[float] = None


@dataclass(frozen=True)
class CASAAggregateResult:
    track_count: int
    total_motility_pct: float
    progressive_motility_pct: float
    avg_vcl: float
    avg_vsl: float
    avg_vap: float
    avg_alh: float
    avg_bcf: float
    avg_lin: float
    avg_str: float
    avg_wob: float
    classification: WHOClassification
    non_progressive_motility_pct: float = 0.0
    immotile_pct: float = 0.0
    motile_count: int = 0
    progressive_count: int = 0
    failed_criteria: Tuple[str, ...] = ()


def is_motile(result: TrackResult, params: AnalysisParameters) -> bool:
    return result.vap > params.minimum_velocity_threshold


def is_progressive(result: TrackResult, params: AnalysisParameters) -> bool:
    return (
        result.vap > params.minimum_progressive_velocity_threshold
        and result.str > params.straightness_threshold
    )


def _below(value: Optional[float], limit: float) -> bool:
    return value is not None and value < limit


def classify_sample(
    total_motility_pct: float,
    progressive_motility_pct: float,
    measurements: Optional[SampleMeasurements] = None,
    limits: WHOReferenceLimits = WHO_2021,
) -> Tuple[WHOClassification, List[str]]:
    """
    Compare a sample against the WHO limits.

    Categories are checked in priority order (count, motility, morphology,
    other); the first category with a failing criterion selects the tag.
    Measurements that were not supplied are skipped.

    Returns:
        Tuple of (classification, names of every failed criterion)
    """
    m = measurements or SampleMeasurements()

    checks = [
        (
            WHOClassification.OLIGOZOOSPERMIA,
            [
                ("concentration", _below(m.concentration_m_per_ml, limits.concentration_m_per_ml)),
                ("total_count", _below(m.total_count_m, limits.total_count_m)),
            ],
        ),
        (
            WHOClassification.ASTHENOZOOSPERMIA,
            [
                ("total_motility", total_motility_pct < limits.total_motility_pct),
                (
                    "progressive_motility",
                    progressive_motility_pct < limits.progressive_motility_pct,
                ),
            ],
        ),
        (
            WHOClassification.TERATOZOOSPERMIA,
            [("normal_morphology", _below(m.normal_morphology_pct, limits.normal_morphology_pct))],
        ),
        (
            WHOClassification.OTHER_ABNORMALITY,
            [
                ("volume", _below(m.volume_ml, limits.volume_ml)),
                ("vitality", _below(m.vitality_pct, limits.vitality_pct)),
            ],
        ),
    ]

    classification = WHOClassification.NORMAL
    failed: List[str] = []
    for tag, criteria in checks:
        category_failed = [name for name, failing in criteria if failing]
        if category_failed and classification == WHOClassification.NORMAL:
            classification = tag
        failed.extend(category_failed)

    return classification, failed


def _mean(values: Sequence[float]) -> float:
    return float(np.mean(values)) if len(values) else 0.0


def aggregate_results(
    results: Sequence[TrackResult],
    params: AnalysisParameters,
    measurements: Optional[SampleMeasurements] = None,
    limits: WHOReferenceLimits = WHO_2021,
) -> CASAAggregateResult:
    """
    Reduce per-track results into the population-level CASA result.

    An empty result set is a valid outcome: all averages and percentages are
    zero and the classification is UNKNOWN.
    """
    total = len(results)
    if total == 0:
        logger.info("No valid tracks: classification is %s", WHOClassification.UNKNOWN.value)
        return CASAAggregateResult(
            track_count=0,
            total_motility_pct=0.0,
            progressive_motility_pct=0.0,
            avg_vcl=0.0,
            avg_vsl=0.0,
            avg_vap=0.0,
            avg_alh=0.0,
            avg_bcf=0.0,
            avg_lin=0.0,
            avg_str=0.0,
            avg_wob=0.0,
            classification=WHOClassification.UNKNOWN,
        )

    motile = sum(1 for r in results if is_motile(r, params))
    progressive = sum(1 for r in results if is_progressive(r, params))
    total_motility = motile / total * 100
    progressive_motility = progressive / total * 100

    classification, failed = classify_sample(
        total_motility, progressive_motility, measurements, limits
    )

    aggregate = CASAAggregateResult(
        track_count=total,
        total_motility_pct=total_motility,
        progressive_motility_pct=progressive_motility,
        avg_vcl=_mean([r.vcl for r in results]),
        avg_vsl=_mean([r.vsl for r in results]),
        avg_vap=_mean([r.vap for r in results]),
        avg_alh=_mean([r.alh for r in results]),
        avg_bcf=_mean([r.bcf for r in results]),
        avg_lin=_mean([r.lin for r in results]),
        avg_str=_mean([r.str for r in results]),
        avg_wob=_mean([r.wob for r in results]),
        classification=classification,
        non_progressive_motility_pct=total_motility - progressive_motility,
        immotile_pct=100.0 - total_motility,
        motile_count=motile,
        progressive_count=progressive,
        failed_criteria=tuple(failed),
    )

    logger.info(
        "Aggregated %d tracks: motility %.1f%%, progressive %.1f%% -> %s",
        total,
        total_motility,
        progressive_motility,
        classification.value,
    )
    return aggregate


def aggregate_to_dict(aggregate: CASAAggregateResult) -> Dict[str, Any]:
    summary = asdict(aggregate)
    summary["classification"] = aggregate.classification.value
    summary["failed_criteria"] = list(aggregate.failed_criteria)
    return summary


def generate_report(
    aggregate: CASAAggregateResult,
    calibration: CalibrationParameters,
    params: AnalysisParameters,
) -> str:
    """Generate formatted analysis report."""
    if aggregate.track_count == 0:
        return "⚠️  No valid tracks found for analysis.\n"

    def pb(pct: float, width: int = 30) -> str:
        """Generate proportional progress bar."""
        filled = int(width * pct / 100)
        return "█" * filled + "░" * (width - filled)

    failed = ", ".join(aggregate.failed_criteria) or "none"

    return f"""
╔══════════════════════════════════════════════════════════════╗
║           SPERM MOTILITY ANALYSIS REPORT (CASA)              ║
║           WHO 2021 Reference Limits                          ║
╚══════════════════════════════════════════════════════════════╝

📊 ANALYSIS PARAMETERS
━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
  Pixel size:          {calibration.microns_per_pixel} μm/pixel
  Frame rate:          {calibration.frames_per_second} fps
  Smoothing window:    {params.smoothing_window} points
  Motile:              VAP > {params.minimum_velocity_threshold} μm/s
  Progressive:         VAP > {params.minimum_progressive_velocity_threshold} μm/s & STR > {params.straightness_threshold}

📈 MOTILITY CLASSIFICATION
━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
  Total tracks:             {aggregate.track_count}

  Motile:          {aggregate.total_motility_pct:>6.2f}% {pb(aggregate.total_motility_pct)} ({aggregate.motile_count} tracks)
  Progressive:     {aggregate.progressive_motility_pct:>6.2f}% {pb(aggregate.progressive_motility_pct)} ({aggregate.progressive_count} tracks)
  Non-progressive: {aggregate.non_progressive_motility_pct:>6.2f}%
  Immotile:        {aggregate.immotile_pct:>6.2f}%

⚡ KINEMATIC PARAMETERS (mean)
━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
  VCL (Curvilinear):      {aggregate.avg_vcl:>6.2f} μm/s
  VSL (Straight-line):    {aggregate.avg_vsl:>6.2f} μm/s
  VAP (Average path):     {aggregate.avg_vap:>6.2f} μm/s
  ALH:                    {aggregate.avg_alh:>6.2f} μm
  BCF:                    {aggregate.avg_bcf:>6.2f} Hz
  LIN / STR / WOB:        {aggregate.avg_lin:.2f} / {aggregate.avg_str:.2f} / {aggregate.avg_wob:.2f}

🩺 WHO 2021
━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
  Classification:         {aggregate.classification.value}
  Criteria below limit:   {failed}
"""

"""
Computer-assisted sperm analysis (CASA): tracking, kinematics and WHO 2021
classification from per-frame blob detections.
"""

from .core.classification import (
    CASAAggregateResult,
    SampleMeasurements,
    WHOClassification,
)
from .core.common import (
    AnalysisCancelled,
    CalibrationParameters,
    ConfigurationError,
    Detection,
)
from .core.config import AnalysisParameters
from .core.pipeline import AnalysisOutput, run_analysis

__version__ = "1.0.0"

__all__ = [
    "AnalysisCancelled",
    "AnalysisOutput",
    "AnalysisParameters",
    "CASAAggregateResult",
    "CalibrationParameters",
    "ConfigurationError",
    "Detection",
    "SampleMeasurements",
    "WHOClassification",
    "run_analysis",
]

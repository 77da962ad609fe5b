"""
Core package for the CASA sperm motility project.

Modules:
    tracker: Frame-to-frame association of detections into tracks
    track_filter: Minimum duration / point count filter
    analysis: Per-track kinematics (VCL, VSL, VAP, ALH, BCF, LIN, STR, WOB)
    classification: Population statistics and WHO 2021 classification
    feed: Detection feeds and the order-preserving frame buffer
    pipeline: End-to-end run_analysis
    config: Analysis parameters and validation
    common: Shared utilities and data structures
"""

__all__ = [
    "common",
    "config",
    "feed",
    "tracker",
    "track_filter",
    "analysis",
    "classification",
    "pipeline",
]

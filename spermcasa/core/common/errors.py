#!/usr/bin/env python3
"""
Exceptions raised by the analysis pipeline.
"""

from typing import Iterable


class ConfigurationError(ValueError):
    """Invalid analysis parameters or calibration; raised before any processing."""

    def __init__(self, issues: Iterable[str]):
        self.issues = list(issues)
        super().__init__("; ".join(self.issues))


class AnalysisCancelled(Exception):
    """The run was cancelled cooperatively and produced no result."""

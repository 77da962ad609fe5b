#!/usr/bin/env python3
"""
File input/output operations used across multiple modules.
"""

from pathlib import Path

import pandas as pd

REQUIRED_DETECTION_COLUMNS = ["frame", "x", "y", "area"]


def load_detections(path: Path) -> pd.DataFrame:
    """Load a detections table (CSV or pickle) with frame, x, y, area columns."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(path)
    df = pd.read_pickle(path) if path.suffix == ".pkl" else pd.read_csv(path)
    if missing := set(REQUIRED_DETECTION_COLUMNS) - set(df.columns):
        raise ValueError(f"Missing {sorted(missing)}")
    df = df.dropna(subset=REQUIRED_DETECTION_COLUMNS)
    df["frame"] = df["frame"].astype(int)
    return df.sort_values("frame", kind="stable").reset_index(drop=True)

#!/usr/bin/env python3
"""
Sperm Motility Analysis Pipeline - entry point for tracking and CASA analysis.

Reads per-frame blob detections (frame, x, y, area), tracks them, computes the
kinematic parameters of every valid track and classifies the sample against
the WHO 2021 reference limits.

Usage:
    python -m spermcasa.main detections.csv -o results/ --pixel-size 0.5 --fps 30
    python -m spermcasa.main detections/ -o results/ --params-file params.json
    python -m spermcasa.main detections.csv -o results/ --workers 4 --jobs -1
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
import time
from dataclasses import asdict, replace
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from spermcasa.core.analysis import results_to_dataframe
from spermcasa.core.classification import (
    SampleMeasurements,
    aggregate_to_dict,
    generate_report,
)
from spermcasa.core.common import (
    AnalysisCancelled,
    CalibrationParameters,
    ConfigurationError,
    load_detections,
)
from spermcasa.core.config import AnalysisParameters, load_parameters
from spermcasa.core.pipeline import AnalysisOutput, run_analysis
from spermcasa.core.tracker import tracks_to_dataframe

SUPPORTED_SUFFIXES = {".csv", ".pkl"}

# ---------------------- Utilities ----------------------


def setup_logging(output_dir: Path, level: int = logging.INFO) -> None:
    """Configure logging to file and stdout."""
    output_dir.mkdir(parents=True, exist_ok=True)
    log_file = output_dir / "pipeline.log"

    # Clear existing handlers
    logger = logging.getLogger()
    logger.setLevel(level)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)

    formatter = logging.Formatter("%(asctime)s - %(levelname)s - %(message)s")

    file_handler = logging.FileHandler(log_file)
    file_handler.setFormatter(formatter)

    stream_handler = logging.StreamHandler(sys.stdout)
    stream_handler.setFormatter(formatter)

    logger.addHandler(file_handler)
    logger.addHandler(stream_handler)


def validate_input_path(input_path: Path, recursive: bool = False) -> Tuple[bool, List[Path]]:
    """Return list of detection files to process (single file or directory)."""
    if not input_path.exists():
        logging.error("Input path does not exist: %s", input_path)
        return False, []

    if input_path.is_file():
        if input_path.suffix.lower() not in SUPPORTED_SUFFIXES:
            logging.error("Unsupported input extension: %s", input_path.suffix)
            return False, []
        return True, [input_path]

    files = []
    for ext in sorted(SUPPORTED_SUFFIXES):
        pattern = f"*{ext}"
        files.extend(input_path.rglob(pattern) if recursive else input_path.glob(pattern))
    return True, sorted(files)


def build_configuration(
    args: argparse.Namespace,
) -> Tuple[AnalysisParameters, CalibrationParameters]:
    """Defaults, then the optional JSON params file, then CLI overrides."""
    params = AnalysisParameters()
    calibration = None
    if args.params_file:
        params, calibration = load_parameters(args.params_file)

    param_mappings = {
        "min_area": "min_blob_area",
        "max_distance": "max_match_distance_px",
        "max_missed": "max_missed_frames",
        "assignment": "assignment_mode",
        "min_duration": "min_track_duration_sec",
        "min_points": "min_track_points",
        "window": "smoothing_window",
        "motile_vap": "minimum_velocity_threshold",
        "progressive_vap": "minimum_progressive_velocity_threshold",
        "progressive_str": "straightness_threshold",
        "workers": "n_workers",
        "buffer_size": "buffer_size",
        "jobs": "n_jobs",
    }
    overrides = {
        param_name: getattr(args, cli_arg)
        for cli_arg, param_name in param_mappings.items()
        if getattr(args, cli_arg, None) is not None
    }
    params = replace(params, **overrides)

    pixel_size = args.pixel_size
    fps = args.fps
    if calibration is not None:
        pixel_size = pixel_size if pixel_size is not None else calibration.microns_per_pixel
        fps = fps if fps is not None else calibration.frames_per_second
    if pixel_size is None or fps is None:
        raise ConfigurationError(
            ["--pixel-size and --fps are required unless the params file has a calibration section"]
        )
    return params, CalibrationParameters(float(pixel_size), float(fps))


def build_measurements(args: argparse.Namespace) -> SampleMeasurements:
    return SampleMeasurements(
        concentration_m_per_ml=args.concentration,
        total_count_m=args.total_count,
        volume_ml=args.volume,
        normal_morphology_pct=args.morphology,
        vitality_pct=args.vitality,
    )


# ---------------------- Outputs ----------------------


def save_outputs(
    output: AnalysisOutput,
    out_dir: Path,
    name: str,
    calibration: CalibrationParameters,
    params: AnalysisParameters,
    start_time: float,
) -> None:
    tracks_csv = out_dir / f"{name}_trk_tracks.csv"
    tracks_to_dataframe(output.tracks).to_csv(tracks_csv, index=False)

    analysis_csv = out_dir / f"{name}_ana_motility.csv"
    results_to_dataframe(output.track_results).to_csv(analysis_csv, index=False)

    report_file = out_dir / f"{name}_ana_report.txt"
    with open(report_file, "w", encoding="utf-8") as fh:
        fh.write(generate_report(output.aggregate, calibration, params))

    summary = {
        "input": name,
        "timestamp": datetime.now().isoformat(),
        "duration_seconds": time.time() - start_time,
        "frames_processed": output.frames_processed,
        "tracks_created": output.tracks_created,
        "tracks_rejected": output.tracks_rejected,
        "result": aggregate_to_dict(output.aggregate),
        "params": {
            "calibration": asdict(calibration),
            "analysis": asdict(params),
        },
    }
    with open(out_dir / f"{name}_pipeline_summary.json", "w") as fh:
        json.dump(summary, fh, indent=2)

    logging.info(
        "Saved %s, %s, %s", tracks_csv.name, analysis_csv.name, report_file.name
    )


def process_single_file(
    in_file: Path,
    args: argparse.Namespace,
    params: AnalysisParameters,
    calibration: CalibrationParameters,
    measurements: SampleMeasurements,
    log_level: int,
) -> bool:
    """Run the analysis for one detections file; returns True on success."""
    start_time = time.time()
    name = in_file.stem
    out_dir = args.output_dir / name
    setup_logging(out_dir, log_level)
    logging.info("Processing %s", in_file)

    try:
        detections_df = load_detections(in_file)
        logging.info(
            "Loaded %d detections over %d frames",
            len(detections_df),
            detections_df["frame"].nunique(),
        )
        output = run_analysis(
            detections_df,
            calibration,
            params,
            measurements=measurements,
            show_progress=not args.no_progress,
        )
        save_outputs(output, out_dir, name, calibration, params, start_time)
    except (FileNotFoundError, ValueError) as e:
        logging.error("Failed to process %s: %s", in_file, e)
        logging.debug("Error details:", exc_info=True)
        return False

    logging.info(
        "%s: %d tracks, motility %.1f%%, progressive %.1f%%, classification %s",
        name,
        output.aggregate.track_count,
        output.aggregate.total_motility_pct,
        output.aggregate.progressive_motility_pct,
        output.aggregate.classification.value,
    )
    return True


# ---------------------- Main pipeline ----------------------


def build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="Sperm Motility Analysis Pipeline (CASA)")
    p.add_argument("input_path", type=Path, help="Detections file or directory")
    p.add_argument(
        "-o", "--output-dir", required=True, type=Path, help="Base output directory"
    )
    p.add_argument("--params-file", type=Path, help="Optional JSON params file")
    p.add_argument("--recursive", action="store_true", help="Search directories recursively")
    p.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    p.add_argument("--no-progress", action="store_true", help="Hide the progress bar")

    calibration_group = p.add_argument_group("Calibration")
    calibration_group.add_argument("--pixel-size", type=float, help="Microns per pixel")
    calibration_group.add_argument("--fps", type=float, help="Frames per second")

    tracking_group = p.add_argument_group("Tracking Parameters")
    tracking_group.add_argument(
        "--min-area", type=float, help="Minimum blob area (px^2) to start a track"
    )
    tracking_group.add_argument(
        "--max-distance", type=float, help="Maximum centroid step between frames (px)"
    )
    tracking_group.add_argument(
        "--max-missed", type=int, help="Frames a track may go unmatched"
    )
    tracking_group.add_argument(
        "--assignment", choices=["greedy", "optimal"], help="Association strategy"
    )
    tracking_group.add_argument("--min-duration", type=float, help="Minimum track duration (s)")
    tracking_group.add_argument("--min-points", type=int, help="Minimum points per track")

    analysis_group = p.add_argument_group("Analysis Parameters")
    analysis_group.add_argument("--window", type=int, help="Smoothing window (points)")
    analysis_group.add_argument("--motile-vap", type=float, help="Motile if VAP above (um/s)")
    analysis_group.add_argument(
        "--progressive-vap", type=float, help="Progressive if VAP above (um/s)"
    )
    analysis_group.add_argument(
        "--progressive-str", type=float, help="Progressive if STR above (0-1)"
    )

    execution_group = p.add_argument_group("Execution")
    execution_group.add_argument("--workers", type=int, help="Detection feed workers")
    execution_group.add_argument("--buffer-size", type=int, help="Frame reorder buffer size")
    execution_group.add_argument("--jobs", type=int, help="Kinematics workers (-1 = all cores)")

    sample_group = p.add_argument_group("Sample Measurements")
    sample_group.add_argument("--concentration", type=float, help="Million/mL")
    sample_group.add_argument("--total-count", type=float, help="Million per ejaculate")
    sample_group.add_argument("--volume", type=float, help="mL")
    sample_group.add_argument("--morphology", type=float, help="Normal forms (%%)")
    sample_group.add_argument("--vitality", type=float, help="Live sperm (%%)")
    return p


def main(argv: Optional[List[str]] = None):
    """Main entry point for the sperm motility analysis pipeline."""
    parser = build_arg_parser()
    args = parser.parse_args(argv)
    log_level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(level=log_level, format="%(asctime)s - %(levelname)s - %(message)s")

    try:
        params, calibration = build_configuration(args)
    except (ConfigurationError, OSError) as e:
        logging.error("Invalid configuration: %s", e)
        sys.exit(1)
    measurements = build_measurements(args)

    is_valid, input_files = validate_input_path(args.input_path, args.recursive)
    if not is_valid or not input_files:
        print("No input files found or invalid path.")
        sys.exit(1)

    success_count = 0
    try:
        for in_file in input_files:
            if process_single_file(
                in_file, args, params, calibration, measurements, log_level
            ):
                success_count += 1
    except AnalysisCancelled:
        logging.warning("Pipeline cancelled")
        sys.exit(1)

    logging.info(
        "Pipeline completed: %d/%d files processed successfully",
        success_count,
        len(input_files),
    )
    if success_count < len(input_files):
        sys.exit(1)


if __name__ == "__main__":
    main()

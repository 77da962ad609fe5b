import json

import pandas as pd
import pytest

from spermcasa.core.common import load_detections
from spermcasa.main import main


@pytest.fixture
def detections_csv(tmp_path):
    rows = []
    for f in range(20):
        rows.append({"frame": f, "x": 10.0 + 3 * f, "y": 10.0, "area": 12.0})
        rows.append({"frame": f, "x": 200.0, "y": 30.0, "area": 12.0})
    path = tmp_path / "sample.csv"
    pd.DataFrame(rows).sample(frac=1.0, random_state=0).to_csv(path, index=False)
    return path


def test_load_detections_sorts_frames(detections_csv):
    df = load_detections(detections_csv)

    assert list(df.columns[:4]) == ["frame", "x", "y", "area"]
    assert df["frame"].is_monotonic_increasing
    assert len(df) == 40


def test_load_detections_requires_columns(tmp_path):
    path = tmp_path / "bad.csv"
    pd.DataFrame({"frame": [0], "x": [1.0]}).to_csv(path, index=False)

    with pytest.raises(ValueError, match="area"):
        load_detections(path)


def test_cli_writes_outputs(detections_csv, tmp_path):
    out_dir = tmp_path / "results"
    main(
        [
            str(detections_csv),
            "-o",
            str(out_dir),
            "--pixel-size",
            "1.0",
            "--fps",
            "10",
            "--min-points",
            "3",
            "--no-progress",
        ]
    )

    sample_dir = out_dir / "sample"
    assert (sample_dir / "sample_trk_tracks.csv").exists()
    assert (sample_dir / "sample_ana_motility.csv").exists()
    assert "WHO 2021" in (sample_dir / "sample_ana_report.txt").read_text(encoding="utf-8")

    summary = json.loads((sample_dir / "sample_pipeline_summary.json").read_text())
    assert summary["frames_processed"] == 20
    assert summary["result"]["track_count"] == 2
    assert summary["result"]["motile_count"] == 1
    assert summary["params"]["analysis"]["min_track_points"] == 3


def test_cli_reads_calibration_from_params_file(detections_csv, tmp_path):
    params_file = tmp_path / "params.json"
    params_file.write_text(
        json.dumps({"calibration": {"microns_per_pixel": 0.5, "frames_per_second": 10}})
    )
    out_dir = tmp_path / "results"
    main([str(detections_csv), "-o", str(out_dir), "--params-file", str(params_file), "--no-progress"])

    summary = json.loads((out_dir / "sample" / "sample_pipeline_summary.json").read_text())
    assert summary["params"]["calibration"]["microns_per_pixel"] == 0.5


def test_cli_requires_calibration(detections_csv, tmp_path):
    with pytest.raises(SystemExit) as exc_info:
        main([str(detections_csv), "-o", str(tmp_path / "results")])

    assert exc_info.value.code == 1


def test_cli_rejects_invalid_frame_rate(detections_csv, tmp_path):
    with pytest.raises(SystemExit) as exc_info:
        main(
            [
                str(detections_csv),
                "-o",
                str(tmp_path / "results"),
                "--pixel-size",
                "1.0",
                "--fps",
                "0",
                "--no-progress",
            ]
        )

    assert exc_info.value.code == 1


@pytest.mark.parametrize(
    "content",
    [
        "{not json",
        json.dumps({"calibration": {"microns_per_pixel": "abc", "frames_per_second": 10}}),
        json.dumps({"tracking": {"max_missed_frames": "3"}}),
    ],
)
def test_cli_rejects_bad_params_file(detections_csv, tmp_path, content):
    params_file = tmp_path / "params.json"
    params_file.write_text(content)

    with pytest.raises(SystemExit) as exc_info:
        main(
            [
                str(detections_csv),
                "-o",
                str(tmp_path / "results"),
                "--params-file",
                str(params_file),
                "--pixel-size",
                "1.0",
                "--fps",
                "10",
            ]
        )

    assert exc_info.value.code == 1

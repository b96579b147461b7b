import json
import sys
from pathlib import Path

import numpy as np

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / 'src'
assert SRC.exists(), f"Source path not found: {SRC}"
sys.path.insert(0, str(SRC))

from sweepcal.calibration import read_calibration  # type: ignore
from sweepcal.cli import SIM_LIGHTHOUSES, main  # type: ignore


def test_simulate_validate_replay(tmp_path, capsys) -> None:
    out_dir = tmp_path / "sim"

    assert main(["simulate", "--out-dir", str(out_dir), "--poses", "4", "--seed", "2"]) == 0
    log = out_dir / "pulses.jsonl"
    config = out_dir / "session.json"
    assert log.exists()
    assert config.exists()
    capsys.readouterr()

    assert main(["validate", str(log)]) == 0
    report = json.loads(capsys.readouterr().out)
    assert report["valid"]
    assert report["stats"]["trackers"] == ["LHR-08DE963B"]

    assert main(["replay", "--config", str(config), str(log)]) == 0
    assert "Solution found" in capsys.readouterr().out

    stored = read_calibration(str(out_dir / "calibration.json"))
    assert stored is not None
    assert np.allclose(
        stored.lighthouses[SIM_LIGHTHOUSES[1]],
        [1.5, 0.0, 0.2, 0.0, -0.5, 0.0],
        atol=1e-2,
    )


def test_bad_arguments(tmp_path) -> None:
    assert main([]) == 2
    assert main(["replay", "--config", str(tmp_path / "none.json"), "x.jsonl"]) == 2
    assert main(["simulate", "--out-dir", str(tmp_path), "--poses", "0"]) == 2


def test_replay_reports_ground_truth_error(tmp_path, capsys) -> None:
    out_dir = tmp_path / "sim"
    assert main(["simulate", "--out-dir", str(out_dir), "--poses", "4", "--seed", "2"]) == 0
    capsys.readouterr()

    calfile = out_dir / "broken.json"
    calfile.write_text("{not json")
    args = ["replay", "--config", str(out_dir / "session.json"), "--calfile", str(calfile)]
    assert main(args + [str(out_dir / "pulses.jsonl")]) == 0

    out = capsys.readouterr().out
    assert "Solution found" in out
    assert f"error {SIM_LIGHTHOUSES[1]}: translation" in out
    assert read_calibration(str(calfile)) is not None

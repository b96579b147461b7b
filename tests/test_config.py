import json
import sys
from pathlib import Path

import numpy as np
import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / 'src'
assert SRC.exists(), f"Source path not found: {SRC}"
sys.path.insert(0, str(SRC))

from sweepcal.config import ConfigError, SessionConfig, load_config  # type: ignore


def _document():
    return {
        "calfile": "out/cal.json",
        "thresholds": {"count": 4, "angle": 45.0, "duration": 2.0},
        "correct": True,
        "resolution": 0.05,
        "solver": {"max_time": 5.0, "max_iterations": 20, "threads": 2, "debug": False},
        "lighthouses": [
            {"name": "left", "serial": "3097796425", "transform": [1, 2, 3, 0, 0, 0, 1]},
            {"name": "right", "serial": 907388239},
        ],
        "trackers": [
            {
                "name": "tracker_test",
                "serial": "LHR-08DE963B",
                "sensors": [[0.0, 0.0, 0.0, 0, 0, 1], [0.1, 0.0, 0.0, 0, 0, 1]],
            }
        ],
    }


def test_defaults() -> None:
    config = SessionConfig.from_dict({})
    assert config.calfile == "sweepcal.json"
    assert config.frames.world == "world"
    assert config.thresholds.count == 1
    assert config.thresholds.angle_rad == pytest.approx(np.pi / 3)
    assert config.thresholds.duration_s == pytest.approx(1e-6)
    assert config.resolution == 0.1
    assert config.offline is False
    assert config.correct is False
    assert config.solver.max_iterations == 100
    assert config.lighthouses == []


def test_full_document() -> None:
    config = SessionConfig.from_dict(_document())

    assert config.thresholds.count == 4
    assert config.solver.to_options().threads == 2
    assert config.solver.to_options().max_time == 5.0
    assert [lh.serial for lh in config.lighthouses] == ["3097796425", "907388239"]
    assert np.allclose(config.lighthouses[0].transform, [1, 2, 3, 0, 0, 0])
    assert np.allclose(config.lighthouses[1].transform, np.zeros(6))
    assert config.trackers[0].sensors.shape == (2, 6)


def test_to_dict_is_reloadable() -> None:
    config = SessionConfig.from_dict(_document())
    again = SessionConfig.from_dict(json.loads(json.dumps(config.to_dict())))
    assert again.calfile == config.calfile
    assert again.thresholds == config.thresholds
    assert np.allclose(again.lighthouses[0].transform, config.lighthouses[0].transform)
    assert np.allclose(again.trackers[0].sensors, config.trackers[0].sensors)


@pytest.mark.parametrize(
    "patch",
    [
        {"resolution": 0},
        {"lighthouses": [{"name": "x"}]},
        {"lighthouses": [{"serial": "1"}, {"serial": "1"}]},
        {"lighthouses": [{"serial": "1", "transform": [0, 0, 0]}]},
        {"trackers": [{"serial": "T", "sensors": [[0.0, 1.0]]}]},
        {"thresholds": {"bogus": 1}},
        {"solver": {"threads": 0}},
    ],
)
def test_invalid_documents(patch) -> None:
    doc = _document()
    doc.update(patch)
    with pytest.raises(ConfigError):
        SessionConfig.from_dict(doc)


def test_load_config(tmp_path) -> None:
    path = tmp_path / "session.json"
    path.write_text(json.dumps(_document()))
    assert load_config(str(path)).resolution == 0.05

    with pytest.raises(ConfigError):
        load_config(str(tmp_path / "missing.json"))

    bad = tmp_path / "bad.json"
    bad.write_text("{not json")
    with pytest.raises(ConfigError):
        load_config(str(bad))

import sys
from pathlib import Path

import numpy as np
import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / 'src'
assert SRC.exists(), f"Source path not found: {SRC}"
sys.path.insert(0, str(SRC))

from sweepcal.pose import PoseEstimator, correct_angles  # type: ignore
from sweepcal.sim import default_sensors, project_angles  # type: ignore
from sweepcal.transforms import apply, identity  # type: ignore


def _bundle(lTt: np.ndarray, sensors: np.ndarray, t: float = 0.0, drop_axis_for=()):
    angles = project_angles(identity(), apply(lTt, sensors))
    cell = {}
    for s, (a0, a1) in enumerate(angles):
        axes = {0: [float(a0)], 1: [float(a1)]}
        if s in drop_axis_for:
            del axes[1]
        cell[s] = axes
    return {"T1": {"L1": {t: cell}}}


def test_camera_model() -> None:
    estimator = PoseEstimator()
    z = estimator.principal_distance
    assert z == pytest.approx(0.5 / np.tan(np.radians(60.0)), rel=1e-4)
    assert np.allclose(estimator.camera_matrix, np.diag([z, z, 1.0]))
    assert estimator.image_point((0.0, 0.0)) == (0.0, 0.0)
    u, v = estimator.image_point((np.pi / 4, -np.pi / 4))
    assert u == pytest.approx(z)
    assert v == pytest.approx(-z)


def test_noiseless_pose_is_recovered() -> None:
    sensors = default_sensors()
    lTt = np.array([0.3, -0.2, 2.0, 0.2, -0.1, 0.3])
    estimator = PoseEstimator()

    poses = estimator.estimate(_bundle(lTt, sensors), {"T1": sensors}, {"L1": None})

    pose = poses["T1"][0.0]["L1"]
    assert pose.shape == (6,)
    assert np.allclose(pose, lTt, atol=1e-6)
    assert estimator.solutions == 1


def test_sensor_table_with_normals_is_accepted() -> None:
    sensors = default_sensors()
    table = np.hstack([sensors, np.tile([0.0, 0.0, 1.0], (len(sensors), 1))])
    lTt = np.array([-0.4, 0.1, 3.0, 0.0, 0.3, 0.0])
    poses = PoseEstimator().estimate(_bundle(lTt, sensors), {"T1": table}, {"L1": None})
    assert np.allclose(poses["T1"][0.0]["L1"], lTt, atol=1e-5)


def test_too_few_correspondences_yield_no_pose() -> None:
    sensors = default_sensors()
    lTt = np.array([0.0, 0.0, 2.0, 0.0, 0.0, 0.0])
    # Only three sensors have both axes
    bundle = _bundle(lTt, sensors, drop_axis_for=range(3, len(sensors)))
    estimator = PoseEstimator()

    poses = estimator.estimate(bundle, {"T1": sensors}, {"L1": None})

    assert poses == {}
    assert estimator.solve(sensors[:3], np.zeros((3, 2))) is None


def test_sensors_outside_table_are_ignored() -> None:
    sensors = default_sensors()
    lTt = np.array([0.1, 0.0, 2.0, 0.0, 0.1, 0.0])
    bundle = _bundle(lTt, sensors)
    bundle["T1"]["L1"][0.0][40] = {0: [0.0], 1: [0.0]}
    poses = PoseEstimator().estimate(bundle, {"T1": sensors}, {"L1": None})
    assert np.allclose(poses["T1"][0.0]["L1"], lTt, atol=1e-5)


def test_unknown_tracker_or_lighthouse_is_skipped() -> None:
    sensors = default_sensors()
    bundle = _bundle(np.array([0.0, 0.0, 2.0, 0.0, 0.0, 0.0]), sensors)
    poses = PoseEstimator().estimate(bundle, {"T2": sensors}, {"L1": None, "L2": None})
    assert poses == {}


def test_correct_angles() -> None:
    zero = np.zeros((2, 5))
    assert np.allclose(correct_angles((0.1, -0.2), zero), (0.1, -0.2))

    params = zero.copy()
    params[0, 0] = 0.01
    params[1, 0] = -0.02
    assert np.allclose(correct_angles((0.1, -0.2), params), (0.09, -0.18))

    # Each axis is corrected from the uncorrected value of the other one
    params = zero.copy()
    params[:, 1] = 0.5
    assert np.allclose(correct_angles((0.2, 0.4), params), (0.2 - 0.5 * 0.4, 0.4 - 0.5 * 0.2))


def test_correction_applied_only_when_enabled() -> None:
    sensors = default_sensors()
    lTt = np.array([0.0, 0.0, 2.0, 0.0, 0.0, 0.0])
    params = np.zeros((2, 5))
    params[:, 0] = 0.05

    plain = PoseEstimator(correct=False).estimate(
        _bundle(lTt, sensors), {"T1": sensors}, {"L1": params}
    )
    corrected = PoseEstimator(correct=True).estimate(
        _bundle(lTt, sensors), {"T1": sensors}, {"L1": params}
    )
    assert np.allclose(plain["T1"][0.0]["L1"], lTt, atol=1e-5)
    assert not np.allclose(corrected["T1"][0.0]["L1"], lTt, atol=1e-3)


def test_four_correspondences_are_enough() -> None:
    sensors = default_sensors()[[0, 2, 4, 8]]
    lTt = np.array([0.2, 0.1, 2.0, 0.0, 0.1, 0.0])
    estimator = PoseEstimator()
    poses = estimator.estimate(_bundle(lTt, sensors), {"T1": sensors}, {"L1": None})
    assert poses["T1"][0.0]["L1"].shape == (6,)

"""
Per-epoch tracker pose estimation from sweep angles.

Each lighthouse is treated as a pinhole camera: the two sweep angles of a
sensor become a point on a synthetic image plane, and the tracker pose in
that lighthouse frame follows from a PnP solve against the known sensor
positions.
"""

import logging
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

import cv2 as cv
import numpy as np

from .constants import PNP_FOV_RAD, PNP_IMAGE_WIDTH, PNP_MIN_CORRESPONDENCES
from .measurements import Bundle, mean_angles

logger = logging.getLogger(__name__)

# tracker -> bin -> lighthouse -> [tx, ty, tz, rx, ry, rz]
Poses = Dict[str, Dict[float, Dict[str, np.ndarray]]]


def correct_angles(angles: Sequence[float], params: np.ndarray) -> np.ndarray:
    """
    Apply lighthouse sweep corrections to an (axis0, axis1) angle pair.

    Both axes are corrected from the raw cross-axis value.

    Args:
        angles: Raw angles in radians
        params: NUM_MOTORS x 5 array (phase, tilt, curve, gib_phase, gib_mag)

    Returns:
        Corrected angles
    """
    raw = np.asarray(angles, dtype=np.float64)
    corrected = raw.copy()
    for a in range(2):
        phase, tilt, curve, gib_phase, gib_mag = params[a]
        other = raw[1 - a]
        corrected[a] -= phase
        corrected[a] -= tilt * other
        corrected[a] -= curve * other * other
        corrected[a] -= gib_mag * np.cos(other + gib_phase)
    return corrected


class PoseEstimator:
    """
    Estimate tracker poses in every lighthouse frame using EPnP.

    Usage:
        estimator = PoseEstimator(correct=True)
        poses = estimator.estimate(bundle, trackers, lighthouse_params)
    """

    def __init__(
        self,
        fov: float = PNP_FOV_RAD,
        image_width: float = PNP_IMAGE_WIDTH,
        min_correspondences: int = PNP_MIN_CORRESPONDENCES,
        correct: bool = False,
    ):
        """
        Initialize pose estimator.

        Args:
            fov: Field of view of the synthetic camera (radians)
            image_width: Width of the synthetic image plane
            min_correspondences: Fewest sensors needed to attempt a solve
            correct: Whether to apply lighthouse calibration to raw angles
        """
        self.fov = fov
        self.image_width = image_width
        self.min_correspondences = max(min_correspondences, PNP_MIN_CORRESPONDENCES)
        self.correct = correct

        self.principal_distance = image_width / (2.0 * np.tan(fov / 2.0))
        self.camera_matrix = np.diag(
            [self.principal_distance, self.principal_distance, 1.0]
        )
        self.distortion_coeffs = np.zeros(5)

        # Statistics
        self.solutions = 0
        self.failures = 0

    def image_point(self, angles: Sequence[float]) -> Tuple[float, float]:
        """Project an (azimuth, elevation) pair onto the synthetic image plane."""
        z = self.principal_distance
        return z * np.tan(angles[0]), z * np.tan(angles[1])

    def solve(
        self,
        object_points: np.ndarray,
        image_points: np.ndarray,
    ) -> Optional[np.ndarray]:
        """
        Solve PnP for one epoch.

        Args:
            object_points: Nx3 sensor positions in the tracker frame
            image_points: Nx2 synthetic image points

        Returns:
            Pose [tx, ty, tz, rx, ry, rz] of the tracker in the lighthouse
            frame, or None if there are too few points or the solve failed
        """
        if len(object_points) < self.min_correspondences:
            return None

        object_points = np.asarray(object_points, dtype=np.float64).reshape(-1, 1, 3)
        image_points = np.asarray(image_points, dtype=np.float64).reshape(-1, 1, 2)

        try:
            success, rvec, tvec = cv.solvePnP(
                object_points,
                image_points,
                self.camera_matrix,
                self.distortion_coeffs,
                flags=cv.SOLVEPNP_EPNP,
            )
        except cv.error as e:
            logger.debug("PnP raised: %s", e)
            success = False

        if not success:
            self.failures += 1
            return None

        # Round trip through the matrix form normalises the rotation vector
        R, _ = cv.Rodrigues(rvec)
        rvec, _ = cv.Rodrigues(R)

        self.solutions += 1
        return np.concatenate([tvec.flatten(), rvec.flatten()])

    def estimate(
        self,
        bundle: Bundle,
        trackers: Mapping[str, np.ndarray],
        lighthouse_params: Mapping[str, Optional[np.ndarray]],
    ) -> Poses:
        """
        Estimate a pose for every (tracker, time bin, lighthouse) with enough data.

        Args:
            bundle: Time-binned measurements
            trackers: Tracker serial -> Nx3 (or Nx6 with normals) sensor table
            lighthouse_params: Lighthouse serial -> correction parameters
                (None when the lighthouse calibration is unknown)

        Returns:
            Nested mapping tracker -> bin -> lighthouse -> 6-vector pose
        """
        poses: Poses = {}
        count = 0
        for lighthouse, params in lighthouse_params.items():
            for tracker, sensors in trackers.items():
                logger.info("- Lighthouse %s and tracker %s", lighthouse, tracker)
                sensors = np.asarray(sensors, dtype=np.float64)
                epochs = bundle.get(tracker, {}).get(lighthouse, {})
                for t in sorted(epochs):
                    obj: List[np.ndarray] = []
                    img: List[Tuple[float, float]] = []
                    for s in sorted(epochs[t]):
                        if s >= len(sensors):
                            continue
                        angles = mean_angles(epochs[t][s])
                        if angles is None:
                            continue
                        if self.correct and params is not None:
                            angles = correct_angles(angles, params)
                        obj.append(sensors[s, :3])
                        img.append(self.image_point(angles))

                    pose = self.solve(np.array(obj), np.array(img))
                    if pose is None:
                        continue
                    poses.setdefault(tracker, {}).setdefault(t, {})[lighthouse] = pose
                    count += 1

        logger.info("Using %d PnP solutions", count)
        return poses

"""
Rigid transform helpers and the lighthouse registration solver.

Transforms are 6-vectors [tx, ty, tz, rx, ry, rz] with an angle-axis
rotation. aTb maps points from frame b into frame a.
"""

import logging
from collections import OrderedDict
from typing import Dict, Mapping, MutableMapping, Optional, Sequence

import numpy as np
from scipy.spatial.transform import Rotation

from .constants import HUBER_DELTA
from .pose import Poses
from .problem import FAILURE, Problem, SolverOptions, SolverSummary

logger = logging.getLogger(__name__)


def identity() -> np.ndarray:
    return np.zeros(6)


def compose(aTb: np.ndarray, bTc: np.ndarray) -> np.ndarray:
    """Return aTc = aTb * bTc."""
    R_ab = Rotation.from_rotvec(aTb[3:6])
    R_bc = Rotation.from_rotvec(bTc[3:6])
    t = R_ab.apply(bTc[:3]) + aTb[:3]
    return np.concatenate([t, (R_ab * R_bc).as_rotvec()])


def invert(aTb: np.ndarray) -> np.ndarray:
    """Return bTa."""
    R_inv = Rotation.from_rotvec(aTb[3:6]).inv()
    return np.concatenate([-R_inv.apply(aTb[:3]), R_inv.as_rotvec()])


def apply(aTb: np.ndarray, points: np.ndarray) -> np.ndarray:
    """Map points (Nx3 or 3) from frame b into frame a."""
    return Rotation.from_rotvec(aTb[3:6]).apply(points) + aTb[:3]


def to_pose7(aTb: np.ndarray) -> np.ndarray:
    """Convert to [x, y, z, qx, qy, qz, qw]."""
    return np.concatenate([aTb[:3], Rotation.from_rotvec(aTb[3:6]).as_quat()])


def from_pose7(pose: Sequence[float]) -> np.ndarray:
    """Convert [x, y, z, qx, qy, qz, qw] to a 6-vector."""
    pose = np.asarray(pose, dtype=np.float64)
    if pose.shape != (7,):
        raise ValueError(f"Expected 7 values [x, y, z, qx, qy, qz, qw], got {pose.shape}")
    return np.concatenate([pose[:3], Rotation.from_quat(pose[3:7]).as_rotvec()])


def transform_residual(mTs: np.ndarray, mTt: np.ndarray, sTt: np.ndarray) -> np.ndarray:
    """
    Disagreement between a tracker pose seen from the master and the slave.

    Args:
        mTs: Slave -> master lighthouse transform
        mTt: Tracker pose in the master frame
        sTt: Tracker pose in the slave frame

    Returns:
        6-vector [translation error, rotation error (angle-axis)]
    """
    R_ms = Rotation.from_rotvec(mTs[3:6])
    R_st = Rotation.from_rotvec(sTt[3:6])
    R_mt = Rotation.from_rotvec(mTt[3:6])
    rotation = (R_mt * (R_ms * R_st).inv()).as_rotvec()
    translation = mTt[:3] - (R_ms.apply(sTt[:3]) + mTs[:3])
    return np.concatenate([translation, rotation])


class TransformSolver:
    """
    Jointly estimate every slave lighthouse transform in the master frame.

    The first lighthouse (insertion order) is the master and is pinned to
    the identity. Tracker poses are held constant.

    Usage:
        solver = TransformSolver(SolverOptions(max_iterations=100))
        summary = solver.solve(lighthouse_transforms, poses)
    """

    def __init__(
        self,
        options: Optional[SolverOptions] = None,
        loss_scale: float = HUBER_DELTA,
    ):
        self.options = options or SolverOptions()
        self.loss_scale = loss_scale

    def build_problem(
        self,
        transforms: Mapping[str, np.ndarray],
        poses: Poses,
    ) -> Problem:
        """
        Build the registration problem over working copies of the transforms.

        Args:
            transforms: Lighthouse serial -> vive-frame transform, master first
            poses: Tracker -> bin -> lighthouse -> pose

        Returns:
            Problem with one residual block per (slave, tracker, bin)
        """
        problem = Problem()
        serials = list(transforms)
        if not serials:
            return problem
        master = serials[0]

        for slave in serials[1:]:
            problem.add_parameter_block(
                ("lighthouse", slave),
                np.array(transforms[slave], dtype=np.float64),
            )
            for tracker, epochs in poses.items():
                for t, per_lighthouse in epochs.items():
                    if master not in per_lighthouse or slave not in per_lighthouse:
                        continue
                    m_name = ("pose", tracker, t, master)
                    s_name = ("pose", tracker, t, slave)
                    problem.add_parameter_block(
                        m_name, np.array(per_lighthouse[master]), constant=True
                    )
                    problem.add_parameter_block(
                        s_name, np.array(per_lighthouse[slave]), constant=True
                    )
                    problem.add_residual_block(
                        transform_residual,
                        [("lighthouse", slave), m_name, s_name],
                        loss_scale=self.loss_scale,
                    )
        return problem

    def solve(
        self,
        transforms: MutableMapping[str, np.ndarray],
        poses: Poses,
    ) -> SolverSummary:
        """
        Solve for slave transforms and write them back if the result is usable.

        Args:
            transforms: Ordered lighthouse serial -> transform, updated in place
            poses: Tracker -> bin -> lighthouse -> pose

        Returns:
            SolverSummary
        """
        serials = list(transforms)
        if not serials:
            return SolverSummary(termination=FAILURE, message="No lighthouses")

        logger.info("Estimating master -> slave lighthouse transforms.")
        problem = self.build_problem(transforms, poses)

        if len(serials) > 1 and problem.num_residual_blocks == 0:
            logger.warning("No lighthouse pairs observed the same tracker pose")
            return SolverSummary(
                termination=FAILURE,
                message="No correspondences between master and slave lighthouses",
            )

        summary = problem.solve(self.options)
        if not summary.usable:
            logger.info("- Solution not found")
            return summary

        logger.info("- Solution found")
        transforms[serials[0]] = identity()
        for slave in serials[1:]:
            transforms[slave] = problem.parameter_block(("lighthouse", slave)).values.copy()
        for serial in serials:
            t = transforms[serial]
            logger.info(
                "%s: %.4f %.4f %.4f (%.4fm)",
                serial, t[0], t[1], t[2], float(np.linalg.norm(t[:3])),
            )
        return summary


def ordered_transforms(transforms: Mapping[str, Sequence[float]]) -> Dict[str, np.ndarray]:
    """Copy a lighthouse transform mapping, keeping insertion order."""
    return OrderedDict(
        (serial, np.array(t, dtype=np.float64)) for serial, t in transforms.items()
    )

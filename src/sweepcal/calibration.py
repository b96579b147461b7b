"""
Calibration file persistence and published frame transforms.

The calibration file is JSON:

    {
      "frames": {"world": "world", "vive": "vive", "body": "body"},
      "registration": [x, y, z, qx, qy, qz, qw],
      "lighthouses": {"<serial>": [x, y, z, qx, qy, qz, qw], ...},
      "trackers": {"<serial>": [x, y, z, qx, qy, qz, qw], ...}
    }
"""

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

import numpy as np

from .config import Frames
from .pose import Poses
from .transforms import apply, from_pose7, identity, to_pose7

logger = logging.getLogger(__name__)


class CalibrationFileError(Exception):
    """Raised when a calibration file exists but cannot be parsed."""


@dataclass
class CalibrationData:
    frames: Frames = field(default_factory=Frames)
    registration: np.ndarray = field(default_factory=identity)
    lighthouses: Dict[str, np.ndarray] = field(default_factory=dict)
    trackers: Dict[str, np.ndarray] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "frames": vars(self.frames).copy(),
            "registration": to_pose7(self.registration).tolist(),
            "lighthouses": {
                serial: to_pose7(t).tolist() for serial, t in self.lighthouses.items()
            },
            "trackers": {
                serial: to_pose7(t).tolist() for serial, t in self.trackers.items()
            },
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CalibrationData":
        return cls(
            frames=Frames(**data.get("frames", {})),
            registration=from_pose7(data.get("registration", [0, 0, 0, 0, 0, 0, 1])),
            lighthouses={
                str(serial): from_pose7(t)
                for serial, t in data.get("lighthouses", {}).items()
            },
            trackers={
                str(serial): from_pose7(t)
                for serial, t in data.get("trackers", {}).items()
            },
        )


def write_calibration(filepath: str, data: CalibrationData) -> None:
    """
    Write calibration atomically (temporary file, then rename).

    Args:
        filepath: Destination path
        data: Calibration to store
    """
    path = Path(filepath)
    if path.parent and not path.parent.exists():
        path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(path.name + ".tmp")
    with open(tmp, "w") as f:
        json.dump(data.to_dict(), f, indent=2)
    os.replace(tmp, path)
    logger.debug("Wrote calibration for %d lighthouses to %s", len(data.lighthouses), path)


def read_calibration(filepath: str) -> Optional[CalibrationData]:
    """
    Read a calibration file.

    Returns:
        CalibrationData, or None if the file does not exist

    Raises:
        CalibrationFileError: If the file exists but is malformed
    """
    path = Path(filepath)
    if not path.exists():
        return None
    try:
        with open(path, "r") as f:
            return CalibrationData.from_dict(json.load(f))
    except (OSError, ValueError, TypeError, AttributeError) as e:
        raise CalibrationFileError(f"Cannot read calibration {path}: {e}") from e


@dataclass
class FrameTransform:
    """A static transform to publish: child frame expressed in parent frame."""
    parent: str
    child: str
    transform: np.ndarray

    def to_dict(self) -> Dict[str, Any]:
        return {
            "parent": self.parent,
            "child": self.child,
            "transform": to_pose7(self.transform).tolist(),
        }


def frame_transforms(data: CalibrationData) -> List[FrameTransform]:
    """
    Static transforms implied by a calibration.

    world -> vive is the registration, vive -> <lighthouse serial> each
    lighthouse transform and body -> <tracker serial> each tracker's
    extrinsics.
    """
    frames = data.frames
    result = [FrameTransform(frames.world, frames.vive, data.registration)]
    for serial, transform in data.lighthouses.items():
        result.append(FrameTransform(frames.vive, serial, transform))
    for serial, transform in data.trackers.items():
        result.append(FrameTransform(frames.body, serial, transform))
    return result


def trajectory_paths(
    lighthouses: Mapping[str, np.ndarray],
    poses: Poses,
) -> Dict[str, Dict[str, List[Tuple[float, np.ndarray]]]]:
    """
    Map each tracker's PnP positions into the vive frame, per lighthouse.

    Args:
        lighthouses: Lighthouse serial -> vive-frame transform
        poses: Tracker -> bin -> lighthouse -> pose

    Returns:
        Lighthouse -> tracker -> time-ordered [(bin, position)]
    """
    paths: Dict[str, Dict[str, List[Tuple[float, np.ndarray]]]] = {}
    for serial, vTl in lighthouses.items():
        per_tracker = paths.setdefault(serial, {})
        for tracker, epochs in poses.items():
            path = per_tracker.setdefault(tracker, [])
            for t in sorted(epochs):
                pose = epochs[t].get(serial)
                if pose is None:
                    continue
                path.append((t, apply(vTl, pose[:3])))
    return paths

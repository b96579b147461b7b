"""
Session configuration.

Configuration is a JSON document:

    {
      "calfile": "sweepcal.json",
      "frames": {"world": "world", "vive": "vive", "body": "body"},
      "thresholds": {"count": 1, "angle": 60.0, "duration": 1.0},
      "correct": false,
      "resolution": 0.1,
      "offline": false,
      "idle_timeout": 1.0,
      "solver": {"max_time": 30.0, "max_iterations": 100, "threads": 4, "debug": true},
      "lighthouses": [
        {"name": "lighthouse_left", "serial": "3097796425",
         "transform": [0, 0, 0, 0, 0, 0, 1]}
      ],
      "trackers": [
        {"name": "tracker_test", "serial": "LHR-08DE963B",
         "extrinsics": [0, 0, 0, 0, 0, 0, 1],
         "sensors": [[x, y, z, nx, ny, nz], ...]}
      ]
    }

Transforms are given as [x, y, z, qx, qy, qz, qw]. Threshold angle is in
degrees and duration in microseconds.
"""

import json
import math
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List

import numpy as np

from .problem import SolverOptions
from .transforms import from_pose7, to_pose7

DEFAULT_CALFILE = "sweepcal.json"


class ConfigError(ValueError):
    """Raised when a configuration document is malformed."""


@dataclass
class Frames:
    world: str = "world"
    vive: str = "vive"
    body: str = "body"


@dataclass
class Thresholds:
    """Rejection thresholds for incoming measurements."""
    count: int = 1
    angle: float = 60.0  # degrees
    duration: float = 1.0  # microseconds

    @property
    def angle_rad(self) -> float:
        return math.radians(self.angle)

    @property
    def duration_s(self) -> float:
        return self.duration / 1e6


@dataclass
class SolverConfig:
    max_time: float = 30.0
    max_iterations: int = 100
    threads: int = 4
    debug: bool = True

    def to_options(self) -> SolverOptions:
        return SolverOptions(
            max_iterations=self.max_iterations,
            max_time=self.max_time,
            threads=self.threads,
            debug=self.debug,
        )


@dataclass
class LighthouseConfig:
    name: str
    serial: str
    transform: np.ndarray = field(default_factory=lambda: np.zeros(6))


@dataclass
class TrackerConfig:
    name: str
    serial: str
    extrinsics: np.ndarray = field(default_factory=lambda: np.zeros(6))
    sensors: np.ndarray = field(default_factory=lambda: np.zeros((0, 6)))


@dataclass
class SessionConfig:
    """Complete configuration of a calibration session."""
    calfile: str = DEFAULT_CALFILE
    frames: Frames = field(default_factory=Frames)
    thresholds: Thresholds = field(default_factory=Thresholds)
    correct: bool = False
    resolution: float = 0.1
    offline: bool = False
    idle_timeout: float = 1.0
    solver: SolverConfig = field(default_factory=SolverConfig)
    lighthouses: List[LighthouseConfig] = field(default_factory=list)
    trackers: List[TrackerConfig] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SessionConfig":
        """
        Build a configuration from a parsed JSON document.

        Raises:
            ConfigError: If a value is missing or has the wrong shape
        """
        if not isinstance(data, dict):
            raise ConfigError("Configuration must be a JSON object")
        try:
            frames = Frames(**data.get("frames", {}))
            thresholds = Thresholds(**data.get("thresholds", {}))
            solver = SolverConfig(**data.get("solver", {}))
        except TypeError as e:
            raise ConfigError(f"Unknown configuration key: {e}") from e

        config = cls(
            calfile=str(data.get("calfile", DEFAULT_CALFILE)),
            frames=frames,
            thresholds=thresholds,
            correct=bool(data.get("correct", False)),
            resolution=float(data.get("resolution", 0.1)),
            offline=bool(data.get("offline", False)),
            idle_timeout=float(data.get("idle_timeout", 1.0)),
            solver=solver,
            lighthouses=[
                _parse_lighthouse(i, entry)
                for i, entry in enumerate(data.get("lighthouses", []))
            ],
            trackers=[
                _parse_tracker(i, entry)
                for i, entry in enumerate(data.get("trackers", []))
            ],
        )
        config.validate()
        return config

    def validate(self) -> None:
        if self.resolution <= 0:
            raise ConfigError(f"resolution must be positive, got {self.resolution}")
        if self.thresholds.count < 0:
            raise ConfigError("thresholds.count must not be negative")
        if self.solver.max_iterations < 1:
            raise ConfigError("solver.max_iterations must be at least 1")
        if self.solver.threads < 1:
            raise ConfigError("solver.threads must be at least 1")
        serials = [lh.serial for lh in self.lighthouses]
        if len(set(serials)) != len(serials):
            raise ConfigError(f"Duplicate lighthouse serials: {serials}")
        serials = [t.serial for t in self.trackers]
        if len(set(serials)) != len(serials):
            raise ConfigError(f"Duplicate tracker serials: {serials}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "calfile": self.calfile,
            "frames": vars(self.frames).copy(),
            "thresholds": vars(self.thresholds).copy(),
            "correct": self.correct,
            "resolution": self.resolution,
            "offline": self.offline,
            "idle_timeout": self.idle_timeout,
            "solver": vars(self.solver).copy(),
            "lighthouses": [
                {
                    "name": lh.name,
                    "serial": lh.serial,
                    "transform": to_pose7(lh.transform).tolist(),
                }
                for lh in self.lighthouses
            ],
            "trackers": [
                {
                    "name": t.name,
                    "serial": t.serial,
                    "extrinsics": to_pose7(t.extrinsics).tolist(),
                    "sensors": np.asarray(t.sensors).tolist(),
                }
                for t in self.trackers
            ],
        }


def _parse_pose(value: Any, what: str) -> np.ndarray:
    try:
        return from_pose7(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Failed to parse {what}: {e}") from e


def _parse_lighthouse(index: int, entry: Dict[str, Any]) -> LighthouseConfig:
    if "serial" not in entry:
        raise ConfigError(f"Lighthouse #{index} has no serial")
    name = str(entry.get("name", f"lighthouse_{index}"))
    transform = entry.get("transform", [0, 0, 0, 0, 0, 0, 1])
    return LighthouseConfig(
        name=name,
        serial=str(entry["serial"]),
        transform=_parse_pose(transform, f"lighthouse {name} transform"),
    )


def _parse_tracker(index: int, entry: Dict[str, Any]) -> TrackerConfig:
    if "serial" not in entry:
        raise ConfigError(f"Tracker #{index} has no serial")
    name = str(entry.get("name", f"tracker_{index}"))
    extrinsics = entry.get("extrinsics", [0, 0, 0, 0, 0, 0, 1])
    sensors = np.asarray(entry.get("sensors", []), dtype=np.float64)
    if sensors.size == 0:
        sensors = np.zeros((0, 6))
    if sensors.ndim != 2 or sensors.shape[1] not in (3, 6):
        raise ConfigError(
            f"Tracker {name} sensors must be rows of [x, y, z] or [x, y, z, nx, ny, nz]"
        )
    return TrackerConfig(
        name=name,
        serial=str(entry["serial"]),
        extrinsics=_parse_pose(extrinsics, f"tracker {name} extrinsics"),
        sensors=sensors,
    )


def load_config(filepath: str) -> SessionConfig:
    """
    Load a session configuration from a JSON file.

    Args:
        filepath: Path to the configuration file

    Returns:
        Parsed SessionConfig
    """
    path = Path(filepath)
    try:
        with open(path, "r") as f:
            data = json.load(f)
    except OSError as e:
        raise ConfigError(f"Cannot read configuration {path}: {e}") from e
    except json.JSONDecodeError as e:
        raise ConfigError(f"Invalid JSON in {path}: {e}") from e
    return SessionConfig.from_dict(data)

"""
Measurement storage and time binning.

Provides functionality to:
- Hold Light messages received while a session is recording
- Atomically stop recording and hand the collected data to a solve
- Re-bundle measurements into discrete time bins and average per sensor/axis
"""

import threading
from collections import defaultdict
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Tuple

from .tracker import Light

# tracker -> lighthouse -> bin -> sensor -> axis -> angles
Bundle = Dict[str, Dict[str, Dict[float, Dict[int, Dict[int, List[float]]]]]]


@dataclass
class Measurement:
    """A Light message stamped with the session clock on arrival."""
    timestamp: float  # seconds
    light: Light


class MeasurementStore:
    """
    Thread-safe measurement store with a recording flag.

    Adding and draining share one lock, so no message can slip in between
    the end of recording and the hand-off to the solver.
    """

    def __init__(self):
        self._measurements: List[Measurement] = []
        self._recording = False
        self._lock = threading.Lock()

    @property
    def recording(self) -> bool:
        with self._lock:
            return self._recording

    def start(self) -> None:
        """Clear any stale data and start accepting measurements."""
        with self._lock:
            self._measurements.clear()
            self._recording = True

    def add(self, timestamp: float, light: Light) -> bool:
        """
        Store a measurement if recording.

        Returns:
            True if the measurement was stored
        """
        with self._lock:
            if not self._recording:
                return False
            self._measurements.append(Measurement(timestamp, light))
            return True

    def drain(self) -> List[Measurement]:
        """Stop recording and take ownership of every stored measurement."""
        with self._lock:
            self._recording = False
            drained = self._measurements
            self._measurements = []
        return drained

    def __len__(self) -> int:
        with self._lock:
            return len(self._measurements)


def time_bin(timestamp: float, resolution: float) -> float:
    """Snap a timestamp to the nearest multiple of the resolution."""
    return round(timestamp / resolution) * resolution


def bundle_measurements(
    measurements: Iterable[Measurement],
    resolution: float,
) -> Bundle:
    """
    Group measurement angles by tracker, lighthouse, time bin, sensor and axis.

    Args:
        measurements: Stored measurements
        resolution: Bin width in seconds

    Returns:
        Nested mapping ending in lists of raw angles (radians)
    """
    if resolution <= 0:
        raise ValueError(f"resolution must be positive, got {resolution}")

    bundle: Bundle = defaultdict(
        lambda: defaultdict(
            lambda: defaultdict(lambda: defaultdict(lambda: defaultdict(list)))
        )
    )
    for m in measurements:
        t = time_bin(m.timestamp, resolution)
        cell = bundle[m.light.tracker][m.light.lighthouse][t]
        for pulse in m.light.pulses:
            cell[pulse.sensor][m.light.axis].append(pulse.angle)
    return bundle


def mean_angles(axes: Dict[int, List[float]]) -> Optional[Tuple[float, float]]:
    """
    Average the angles of one sensor in one bin.

    Returns:
        (axis0, axis1) means, or None unless both axes have samples
    """
    a0 = axes.get(0)
    a1 = axes.get(1)
    if not a0 or not a1:
        return None
    return sum(a0) / len(a0), sum(a1) / len(a1)

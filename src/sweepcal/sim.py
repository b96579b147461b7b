"""Simulation utilities for synthetic lighthouse pulse trains.

This module produces raw (timecode, sensor, length) pulses for trackers
observed by one or more lighthouses, including the OOTX calibration stream
carried in the sync flashes, so the whole chain can be exercised
deterministically without hardware.
"""

from __future__ import annotations

import zlib
from dataclasses import dataclass, field
from typing import Iterable, Sequence

import numpy as np

from .constants import (
    ACODE_AXIS_BIT,
    ACODE_DATA_BIT,
    ACODE_SKIP_BIT,
    ACODE_STEP,
    OOTX_PREAMBLE_LENGTH,
    SYNC_PULSE_THRESHOLD,
    TICKS_PER_SECOND,
    TICKS_PER_SWEEP,
    TIMECODE_MASK,
    angle_to_ticks,
)
from .ootx import LighthouseCalibration, MotorCalibration
from .transforms import apply, invert

# Cycle layout in ticks
CYCLE_TICKS = TICKS_PER_SWEEP
SLOT_SPACING_TICKS = 19_200
SWEEP_PULSE_LENGTH = 200


@dataclass
class SimPulse:
    time: float  # seconds
    timecode: int
    sensor: int
    length: int


def encode_ootx_payload(record: LighthouseCalibration) -> bytes:
    """Encode a calibration record as an OOTX payload."""
    return record.to_payload()


def ootx_bits(payload: bytes) -> list[int]:
    """Frame a payload as the OOTX bit sequence carried one bit per sync flash.

    The frame is a zero preamble and a one, then 16-bit words (length,
    padded payload, CRC-32) each followed by a sync bit of one.
    """
    length = len(payload)
    body = bytes(payload) + bytes(length % 2)
    crc = zlib.crc32(bytes(payload)) & 0xFFFFFFFF
    data = length.to_bytes(2, "little") + body + crc.to_bytes(4, "little")

    bits = [0] * OOTX_PREAMBLE_LENGTH + [1]
    for i in range(0, len(data), 2):
        for byte in data[i:i + 2]:
            bits.extend((byte >> (7 - k)) & 1 for k in range(8))
        bits.append(1)
    return bits


def sync_length(acode: int) -> int:
    """Pulse length in the middle of the window that decodes to acode."""
    return SYNC_PULSE_THRESHOLD + ACODE_STEP * acode + ACODE_STEP // 2


def project_angles(vTl: np.ndarray, points_vive: np.ndarray) -> np.ndarray:
    """Sweep angles (axis 0, axis 1) of vive-frame points seen by a lighthouse.

    Args:
        vTl: Lighthouse pose in the vive frame
        points_vive: Nx3 points

    Returns:
        Nx2 array of angles in radians
    """
    p = apply(invert(vTl), np.atleast_2d(points_vive))
    return np.stack([np.arctan2(p[:, 0], p[:, 2]), np.arctan2(p[:, 1], p[:, 2])], axis=1)


def random_calibration(serial: str, rng: np.random.Generator | None = None) -> LighthouseCalibration:
    """Build a plausible calibration record with small correction terms."""
    rng = rng or np.random.default_rng(0)
    motors = tuple(
        MotorCalibration(
            phase=float(np.float16(rng.normal(0.0, 0.01))),
            tilt=float(np.float16(rng.normal(0.0, 0.01))),
            curve=float(np.float16(rng.normal(0.0, 0.001))),
            gibbous_phase=float(np.float16(rng.uniform(-np.pi, np.pi))),
            gibbous_magnitude=float(np.float16(rng.normal(0.0, 0.001))),
        )
        for _ in range(2)
    )
    return LighthouseCalibration(
        serial=serial,
        fw_version=0x0266,
        hw_version=9,
        motors=motors,
        accel=(0, 0, 127),
        sys_unlock_count=1,
        mode_current=0,
        sys_faults=0,
    )


@dataclass
class SyntheticLighthouse:
    """A lighthouse with a fixed vive-frame pose broadcasting its calibration."""
    record: LighthouseCalibration
    transform: np.ndarray = field(default_factory=lambda: np.zeros(6))
    bits: list[int] = field(default_factory=list)

    def __post_init__(self):
        self.transform = np.asarray(self.transform, dtype=np.float64)
        if not self.bits:
            self.bits = ootx_bits(encode_ootx_payload(self.record))

    @property
    def serial(self) -> str:
        return self.record.serial

    def bit(self, cycle: int) -> int:
        return self.bits[cycle % len(self.bits)]


class SyntheticTracker:
    """Generate the pulses one tracker sees from a set of lighthouses.

    Cycles follow a fixed schedule: every cycle each lighthouse flashes in
    slot order, and one of them sweeps. Lighthouse k sweeps axis 0 in cycle
    2k and axis 1 in cycle 2k+1 (modulo 2 * number of lighthouses); all
    other flashes carry the skip bit.
    """

    def __init__(
        self,
        serial: str,
        sensors: np.ndarray,
        lighthouses: Sequence[SyntheticLighthouse],
        start_timecode: int = 1_000_000,
        start_time: float = 0.0,
        sweep_length: int = SWEEP_PULSE_LENGTH,
    ):
        self.serial = serial
        self.sensors = np.asarray(sensors, dtype=np.float64)[:, :3]
        self.lighthouses = list(lighthouses)
        self.start_timecode = start_timecode
        self.start_time = start_time
        self.sweep_length = sweep_length
        self.cycle = 0

    @property
    def cycles_per_second(self) -> float:
        return TICKS_PER_SECOND / CYCLE_TICKS

    def cycle_pulses(self, vTt: np.ndarray, sweep: bool = True) -> list[SimPulse]:
        """Pulses of the next cycle with the tracker at pose vTt."""
        n = len(self.lighthouses)
        sweeper = (self.cycle // 2) % n
        axis = self.cycle % 2
        base = self.cycle * CYCLE_TICKS

        events: list[tuple[int, int, int]] = []
        starts = []
        for slot, lh in enumerate(self.lighthouses):
            acode = axis * ACODE_AXIS_BIT
            if lh.bit(self.cycle):
                acode |= ACODE_DATA_BIT
            if slot != sweeper or not sweep:
                acode |= ACODE_SKIP_BIT
            length = sync_length(acode)
            offset = base + slot * SLOT_SPACING_TICKS
            events.append((offset, 0, length))
            # Sweep timing reference used by the receiver for each slot
            starts.append(offset + length if slot == 0 else offset)

        if sweep:
            lh = self.lighthouses[sweeper]
            points = apply(np.asarray(vTt, dtype=np.float64), self.sensors)
            angles = project_angles(lh.transform, points)[:, axis]
            half = self.sweep_length // 2
            for sensor, angle in enumerate(angles):
                # Outside the 120 degree field of view
                if abs(angle) >= np.pi / 3:
                    continue
                ticks = int(round(angle_to_ticks(float(angle))))
                events.append((starts[sweeper] + ticks - half, sensor, self.sweep_length))

        events.sort(key=lambda e: e[0])
        self.cycle += 1
        return [
            SimPulse(
                time=self.start_time + ticks / TICKS_PER_SECOND,
                timecode=(self.start_timecode + ticks) & TIMECODE_MASK,
                sensor=sensor,
                length=length,
            )
            for ticks, sensor, length in events
        ]

    def run(self, vTt: np.ndarray, cycles: int, sweep: bool = True) -> list[SimPulse]:
        pulses: list[SimPulse] = []
        for _ in range(cycles):
            pulses.extend(self.cycle_pulses(vTt, sweep=sweep))
        return pulses

    def capture(self, vTt: np.ndarray) -> list[SimPulse]:
        """One full sweep of every lighthouse axis, then a flash-only cycle.

        The trailing cycle flushes the last sweep without starting a new one.
        """
        n = len(self.lighthouses)
        rem = self.cycle % (2 * n)
        if rem:
            self.idle(2 * n - rem)
        return self.run(vTt, 2 * n) + self.run(vTt, 1, sweep=False)

    def idle(self, cycles: int) -> None:
        """Advance the schedule without emitting pulses (tracker occluded)."""
        self.cycle += cycles

    def idle_until(self, time_s: float) -> None:
        target = int(np.ceil((time_s - self.start_time) * self.cycles_per_second - 1e-9))
        if target > self.cycle:
            self.cycle = target

    def warmup_cycles(self) -> int:
        """Cycles needed for every lighthouse to deliver one complete OOTX frame."""
        return 2 * max(len(lh.bits) for lh in self.lighthouses) + 2


def default_sensors() -> np.ndarray:
    """A non-coplanar constellation of 12 photodiodes (meters, tracker frame)."""
    return np.array([
        [0.050, 0.000, 0.000],
        [-0.050, 0.000, 0.000],
        [0.000, 0.050, 0.000],
        [0.000, -0.050, 0.000],
        [0.035, 0.035, 0.020],
        [-0.035, 0.035, 0.020],
        [0.035, -0.035, 0.020],
        [-0.035, -0.035, 0.020],
        [0.020, 0.000, 0.040],
        [-0.020, 0.000, 0.040],
        [0.000, 0.025, -0.030],
        [0.000, -0.025, -0.030],
    ])


def simulate_pulses(
    tracker: SyntheticTracker,
    poses: Iterable[np.ndarray],
    spacing: float = 1.0,
    warmup: bool = True,
) -> list[SimPulse]:
    """Warm up at the first pose, then capture each pose `spacing` seconds apart."""
    poses = [np.asarray(p, dtype=np.float64) for p in poses]
    pulses: list[SimPulse] = []
    if warmup and poses:
        pulses.extend(tracker.run(poses[0], tracker.warmup_cycles()))
        pulses.extend(tracker.run(poses[0], 1, sweep=False))
    t0 = tracker.start_time + np.ceil(tracker.cycle / tracker.cycles_per_second) + spacing
    for k, pose in enumerate(poses):
        tracker.idle_until(t0 + k * spacing)
        pulses.extend(tracker.capture(pose))
    return pulses

"""
Lightcap processing: turns raw photodiode pulses into sweep measurement bundles.

Provides functionality to:
- Classify pulses into sync flashes and laser sweeps
- Track per-lighthouse sync candidates and select the active lighthouse/axis
- Demodulate one OOTX data bit per sync flash
- Accumulate the longest sweep pulse per sensor and emit one bundle per cycle
"""

from dataclasses import dataclass, field
from typing import Callable, List, Optional, Sequence

from .constants import (
    ACODE_AXIS_BIT,
    ACODE_DATA_BIT,
    ACODE_OFFSET_DECAY,
    ACODE_SKIP_BIT,
    ACODE_STEP,
    ACODE_UNSET,
    MAX_NUM_LIGHTHOUSES,
    MAX_NUM_SENSORS,
    MAX_PULSE_LENGTH,
    RESET_GAP,
    SAME_CYCLE_GAP,
    SECOND_LIGHTHOUSE_GAP,
    SYNC_PULSE_THRESHOLD,
    TIMECODE_MASK,
    timecode_delta,
)
from .ootx import LighthouseCalibration, OOTXDecoder


def decode_acode(length: int) -> int:
    """Demodulate the acode symbol carried by a sync pulse length."""
    return (length - SYNC_PULSE_THRESHOLD) // ACODE_STEP


@dataclass
class SyncState:
    """Per-cycle sync bookkeeping for one tracker."""
    num_lighthouses: int = MAX_NUM_LIGHTHOUSES
    recent_sync_time: int = 0
    current_lh: int = 0
    active_lighthouse: int = -1
    active_sweep_start_time: int = 0
    active_acode: int = 0
    lh_start_time: List[int] = field(default_factory=list)
    lh_max_pulse_length: List[int] = field(default_factory=list)
    lh_acode: List[int] = field(default_factory=list)

    def __post_init__(self):
        if not self.lh_acode:
            self.reset()

    def reset(self) -> None:
        self.recent_sync_time = 0
        self.current_lh = 0
        self.active_lighthouse = -1
        self.active_sweep_start_time = 0
        self.active_acode = 0
        self.lh_start_time = [0] * self.num_lighthouses
        self.lh_max_pulse_length = [0] * self.num_lighthouses
        self.lh_acode = [ACODE_UNSET] * self.num_lighthouses


@dataclass
class SweepAccumulator:
    """Longest pulse per sensor seen during the current sweep."""
    num_sensors: int = MAX_NUM_SENSORS
    lengths: List[int] = field(default_factory=list)
    times: List[int] = field(default_factory=list)
    # Consecutive cycles each sensor was hit, per axis
    hit_counts: List[List[int]] = field(default_factory=list)

    def __post_init__(self):
        if not self.lengths:
            self.clear()
        if not self.hit_counts:
            self.hit_counts = [[0, 0] for _ in range(self.num_sensors)]

    def clear(self) -> None:
        self.lengths = [0] * self.num_sensors
        self.times = [0] * self.num_sensors

    def record(self, sensor: int, timecode: int, length: int) -> None:
        if self.lengths[sensor] < length:
            self.lengths[sensor] = length
            self.times[sensor] = timecode

    @property
    def empty(self) -> bool:
        return not any(self.lengths)


@dataclass
class TickBundle:
    """One sweep worth of measurements in timecode ticks."""
    lighthouse: LighthouseCalibration
    slot: int
    axis: int
    sync_time: int
    sensors: List[int]
    sweep_times: List[int]
    angles: List[int]  # ticks from sync start to pulse center
    lengths: List[int]


class Lightcap:
    """
    Lightcap state machine for a single tracker.

    Usage:
        decoders = [OOTXDecoder(on_record=...) for _ in range(2)]
        lightcap = Lightcap(decoders, on_bundle=handle_bundle)
        for timecode, sensor, length in pulses:
            lightcap.process_pulse(timecode, sensor, length)
    """

    def __init__(
        self,
        decoders: Sequence[OOTXDecoder],
        on_bundle: Optional[Callable[[TickBundle], None]] = None,
        num_sensors: int = MAX_NUM_SENSORS,
    ):
        """
        Initialize lightcap processing.

        Args:
            decoders: One OOTX decoder per lighthouse slot
            on_bundle: Called with each completed sweep bundle
            num_sensors: Number of photodiodes on the tracker
        """
        self.decoders = list(decoders)
        self.on_bundle = on_bundle
        self.num_sensors = num_sensors

        self.sync = SyncState(num_lighthouses=len(self.decoders))
        self.sweep = SweepAccumulator(num_sensors=num_sensors)

        # Smoothed acode timing offset (diagnostic only)
        self.acode_offset = 0.0

        # Statistics
        self.pulses_dropped = 0
        self.bundles_emitted = 0

    def process_pulse(self, timecode: int, sensor: int, length: int) -> None:
        """
        Classify and dispatch one pulse.

        Args:
            timecode: 32-bit timecode of the pulse rising edge
            sensor: Photodiode index
            length: Pulse duration in ticks
        """
        if sensor < 0 or sensor >= self.num_sensors or length > MAX_PULSE_LENGTH:
            self.pulses_dropped += 1
            return
        if length > SYNC_PULSE_THRESHOLD:
            self._handle_sync(timecode, length)
        else:
            self._handle_sweep(timecode, sensor, length)

    def _handle_acode(self, length: int) -> int:
        new_offset = ((length + 250) % 500) - 250
        self.acode_offset = (
            self.acode_offset * ACODE_OFFSET_DECAY
            + new_offset * (1.0 - ACODE_OFFSET_DECAY)
        )
        return decode_acode(length)

    def _handle_sync(self, timecode: int, length: int) -> None:
        sync = self.sync
        acode = self._handle_acode(length)

        # A sync flash closes the previous sweep
        self._handle_measurements()

        gap = timecode_delta(timecode, sync.recent_sync_time)
        if gap < SAME_CYCLE_GAP:
            sync.recent_sync_time = timecode
            lh = sync.current_lh
            if length > sync.lh_max_pulse_length[lh]:
                sync.lh_max_pulse_length[lh] = length
                sync.lh_start_time[lh] = (timecode + length) & TIMECODE_MASK
                sync.lh_acode[lh] = acode
        elif gap < SECOND_LIGHTHOUSE_GAP:
            sync.active_lighthouse = -1
            sync.recent_sync_time = timecode
            sync.current_lh = 1
            sync.lh_start_time[1] = timecode
            sync.lh_max_pulse_length[1] = length + length
            sync.lh_acode[1] = acode
        elif gap > RESET_GAP:
            sync.reset()
            sync.recent_sync_time = timecode
            sync.lh_start_time[0] = (timecode + length) & TIMECODE_MASK
            sync.lh_max_pulse_length[0] = length
            sync.lh_acode[0] = acode

        if sync.current_lh < len(self.decoders):
            bit = 1 if acode & ACODE_DATA_BIT else 0
            self.decoders[sync.current_lh].feed(bit, timecode)

    def _select_active_lighthouse(self) -> None:
        sync = self.sync
        sync.active_lighthouse = -1
        sync.active_sweep_start_time = 0
        sync.active_acode = 0
        # Later slots overwrite earlier ones, so the last qualifying slot wins
        for i, acode in enumerate(sync.lh_acode):
            if acode >= 0 and not (acode & ACODE_SKIP_BIT):
                sync.active_lighthouse = i
                sync.active_sweep_start_time = sync.lh_start_time[i]
                sync.active_acode = acode

    def _handle_sweep(self, timecode: int, sensor: int, length: int) -> None:
        self._select_active_lighthouse()
        if self.sync.active_lighthouse < 0:
            return
        self.sweep.record(sensor, timecode, length)

    def _handle_measurements(self) -> None:
        sync = self.sync
        sweep = self.sweep
        lh = sync.active_lighthouse
        axis = sync.active_acode & ACODE_AXIS_BIT
        start = sync.active_sweep_start_time

        sensors: List[int] = []
        sweep_times: List[int] = []
        angles: List[int] = []
        lengths: List[int] = []

        has_data = not sweep.empty
        for i in range(self.num_sensors):
            if lh > -1 and has_data:
                if sweep.lengths[i] == 0:
                    sweep.hit_counts[i][axis] = 0
                else:
                    sweep.hit_counts[i][axis] += 1
            if sweep.lengths[i] != 0:
                sensors.append(i)
                sweep_times.append(sweep.times[i])
                angles.append(
                    timecode_delta(sweep.times[i], start) + sweep.lengths[i] // 2
                )
                lengths.append(sweep.lengths[i])

        # Bundles are withheld until the lighthouse has identified itself
        if sensors and 0 <= lh < len(self.decoders):
            lighthouse = self.decoders[lh].lighthouse
            if lighthouse is not None:
                self.bundles_emitted += 1
                if self.on_bundle:
                    self.on_bundle(TickBundle(
                        lighthouse=lighthouse,
                        slot=lh,
                        axis=axis,
                        sync_time=start,
                        sensors=sensors,
                        sweep_times=sweep_times,
                        angles=angles,
                        lengths=lengths,
                    ))

        sweep.clear()

"""
Tracker device: per-tracker lightcap and OOTX state plus unit conversion.

Provides functionality to:
- Route raw pulses from one tracker through its lightcap state machine
- Register decoded lighthouse calibrations in the shared lighthouse table
- Convert tick-domain sweep bundles into Light messages (radians, seconds)
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from .constants import (
    MAX_NUM_LIGHTHOUSES,
    MAX_NUM_SENSORS,
    ticks_to_angle,
    ticks_to_seconds,
)
from .lightcap import Lightcap, TickBundle
from .ootx import LighthouseCalibration, LighthouseTable, OOTXDecoder

logger = logging.getLogger(__name__)


@dataclass
class Pulse:
    """One sensor hit within a sweep."""
    sensor: int
    angle: float  # radians
    duration: float  # seconds
    timestamp: int = 0  # timecode ticks of the hit

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sensor": self.sensor,
            "angle": self.angle,
            "duration": self.duration,
            "timestamp": self.timestamp,
        }


@dataclass
class Light:
    """All sensor hits of one tracker during one lighthouse sweep."""
    tracker: str
    lighthouse: str
    axis: int
    sync_time: int  # timecode ticks
    pulses: List[Pulse] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tracker": self.tracker,
            "lighthouse": self.lighthouse,
            "axis": self.axis,
            "sync_time": self.sync_time,
            "pulses": [p.to_dict() for p in self.pulses],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Light":
        return cls(
            tracker=str(data["tracker"]),
            lighthouse=str(data["lighthouse"]),
            axis=int(data["axis"]),
            sync_time=int(data.get("sync_time", 0)),
            pulses=[
                Pulse(
                    int(p["sensor"]),
                    float(p["angle"]),
                    float(p["duration"]),
                    int(p.get("timestamp", 0)),
                )
                for p in data.get("pulses", [])
            ],
        )


class TrackerDevice:
    """
    Owns the lightcap and OOTX state for a single tracker.

    Usage:
        table = LighthouseTable()
        device = TrackerDevice("LHR-0DFD0F05", table, on_light=handle_light)
        device.process_pulse(timecode, sensor, length)
    """

    def __init__(
        self,
        serial: str,
        table: LighthouseTable,
        on_light: Optional[Callable[[Light], None]] = None,
        on_lighthouse: Optional[Callable[[LighthouseCalibration], None]] = None,
        num_sensors: int = MAX_NUM_SENSORS,
        num_slots: int = MAX_NUM_LIGHTHOUSES,
    ):
        """
        Initialize tracker device.

        Args:
            serial: Tracker serial number
            table: Lighthouse table shared by all trackers
            on_light: Called with each converted measurement bundle
            on_lighthouse: Called with each stored lighthouse calibration
            num_sensors: Number of photodiodes on the tracker
            num_slots: Number of lighthouse slots tracked per cycle
        """
        self.serial = serial
        self.table = table
        self.on_light = on_light
        self.on_lighthouse = on_lighthouse

        self.decoders = [
            OOTXDecoder(on_record=self._make_record_handler(slot))
            for slot in range(num_slots)
        ]
        self.lightcap = Lightcap(
            self.decoders, on_bundle=self._on_bundle, num_sensors=num_sensors
        )

        # Statistics
        self.pulses_processed = 0
        self.lights_emitted = 0

    def process_pulse(self, timecode: int, sensor: int, length: int) -> None:
        self.pulses_processed += 1
        self.lightcap.process_pulse(timecode, sensor, length)

    def _make_record_handler(self, slot: int) -> Callable[[LighthouseCalibration], None]:
        def handler(record: LighthouseCalibration) -> None:
            self._on_record(slot, record)
        return handler

    def _on_record(self, slot: int, record: LighthouseCalibration) -> None:
        stored = self.table.update(record)
        if stored is None:
            return
        # Slot order differs between trackers, so each keeps its own mapping
        self.decoders[slot].lighthouse = stored
        logger.debug(
            "Tracker %s received calibration for lighthouse %s in slot %d",
            self.serial, stored.serial, slot,
        )
        if self.on_lighthouse:
            self.on_lighthouse(stored)

    def _on_bundle(self, bundle: TickBundle) -> None:
        light = Light(
            tracker=self.serial,
            lighthouse=bundle.lighthouse.serial,
            axis=bundle.axis,
            sync_time=bundle.sync_time,
            pulses=[
                Pulse(
                    sensor=sensor,
                    angle=ticks_to_angle(angle),
                    duration=ticks_to_seconds(length),
                    timestamp=sweep_time,
                )
                for sensor, angle, length, sweep_time in zip(
                    bundle.sensors, bundle.angles, bundle.lengths, bundle.sweep_times
                )
            ],
        )
        self.lights_emitted += 1
        if self.on_light:
            self.on_light(light)

    def get_stats(self) -> Dict[str, Any]:
        """Get processing statistics."""
        return {
            "serial": self.serial,
            "pulses_processed": self.pulses_processed,
            "pulses_dropped": self.lightcap.pulses_dropped,
            "lights_emitted": self.lights_emitted,
            "packets_decoded": sum(d.packets_decoded for d in self.decoders),
            "crc_failures": sum(d.crc_failures for d in self.decoders),
            "acode_offset": self.lightcap.acode_offset,
        }

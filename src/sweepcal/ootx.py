"""
OOTX decoder for lighthouse base station calibration broadcasts.

Provides functionality to:
- Reassemble OOTX frames from one data bit per sync flash
- Validate frames with CRC-32 and decode the fixed-offset calibration payload
- Assign decoded lighthouses to a fixed-capacity slot table by serial number

Frame layout on the wire (every 16 data bits are followed by a sync bit of 1):
    17 x "0" preamble, "1"
    payload length (uint16, little endian)
    payload bytes (padded to an even count)
    CRC-32 of the unpadded payload (uint32, little endian)
"""

import enum
import logging
import zlib
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Tuple

import numpy as np

from .constants import (
    MAX_NUM_LIGHTHOUSES,
    NUM_MOTORS,
    OOTX_MAX_PACKET_LEN,
    OOTX_PREAMBLE_LENGTH,
    OOTX_WORD_BITS,
)

logger = logging.getLogger(__name__)

# Minimum payload size covering every decoded field
PAYLOAD_MIN_LEN = 0x21


def half_to_float(data: bytes, offset: int) -> float:
    """Decode a little-endian IEEE 754 half-precision float to float32."""
    half = np.frombuffer(data, dtype="<f2", count=1, offset=offset)[0]
    return float(np.float32(half))


def float_to_half(value: float) -> bytes:
    """Encode a float as little-endian half-precision bytes."""
    return np.array([value], dtype="<f2").tobytes()


def _int8(data: bytes, offset: int) -> int:
    return int(np.frombuffer(data, dtype=np.int8, count=1, offset=offset)[0])


def swap16(value: int) -> int:
    return ((value << 8) & 0xFF00) | ((value >> 8) & 0x00FF)


def swap32(value: int) -> int:
    return int.from_bytes((value & 0xFFFFFFFF).to_bytes(4, "big"), "little")


@dataclass
class MotorCalibration:
    """Per-rotor sweep correction parameters."""
    phase: float = 0.0
    tilt: float = 0.0
    curve: float = 0.0
    gibbous_phase: float = 0.0
    gibbous_magnitude: float = 0.0


@dataclass
class LighthouseCalibration:
    """Calibration record broadcast by a lighthouse over OOTX."""
    serial: str
    fw_version: int = 0
    hw_version: int = 0
    motors: Tuple[MotorCalibration, MotorCalibration] = field(
        default_factory=lambda: (MotorCalibration(), MotorCalibration())
    )
    accel: Tuple[int, int, int] = (0, 0, 0)
    sys_unlock_count: int = 0
    mode_current: int = 0
    sys_faults: int = 0
    timestamp: int = 0

    @classmethod
    def from_payload(cls, data: bytes, timestamp: int = 0) -> "LighthouseCalibration":
        """
        Decode an OOTX payload.

        Args:
            data: Payload bytes (at least PAYLOAD_MIN_LEN long)
            timestamp: Timecode of the sync pulse that completed the frame

        Returns:
            Decoded LighthouseCalibration
        """
        if len(data) < PAYLOAD_MIN_LEN:
            raise ValueError(
                f"OOTX payload too short: {len(data)} < {PAYLOAD_MIN_LEN} bytes"
            )
        motors = (
            MotorCalibration(
                phase=half_to_float(data, 0x06),
                tilt=half_to_float(data, 0x0A),
                curve=half_to_float(data, 0x10),
                gibbous_phase=half_to_float(data, 0x17),
                gibbous_magnitude=half_to_float(data, 0x1B),
            ),
            MotorCalibration(
                phase=half_to_float(data, 0x08),
                tilt=half_to_float(data, 0x0C),
                curve=half_to_float(data, 0x12),
                gibbous_phase=half_to_float(data, 0x19),
                gibbous_magnitude=half_to_float(data, 0x1D),
            ),
        )
        return cls(
            serial=str(int.from_bytes(data[0x02:0x06], "little")),
            fw_version=int.from_bytes(data[0x00:0x02], "little"),
            hw_version=data[0x0F],
            motors=motors,
            accel=(_int8(data, 0x14), _int8(data, 0x15), _int8(data, 0x16)),
            sys_unlock_count=data[0x0E],
            mode_current=_int8(data, 0x1F),
            sys_faults=_int8(data, 0x20),
            timestamp=timestamp,
        )

    def to_payload(self) -> bytes:
        """Encode this record into the fixed-offset OOTX payload layout."""
        buf = bytearray(PAYLOAD_MIN_LEN)
        buf[0x00:0x02] = int(self.fw_version).to_bytes(2, "little")
        buf[0x02:0x06] = int(self.serial).to_bytes(4, "little")
        m0, m1 = self.motors
        for off, value in (
            (0x06, m0.phase), (0x08, m1.phase),
            (0x0A, m0.tilt), (0x0C, m1.tilt),
            (0x10, m0.curve), (0x12, m1.curve),
            (0x17, m0.gibbous_phase), (0x19, m1.gibbous_phase),
            (0x1B, m0.gibbous_magnitude), (0x1D, m1.gibbous_magnitude),
        ):
            buf[off:off + 2] = float_to_half(value)
        buf[0x0E] = self.sys_unlock_count & 0xFF
        buf[0x0F] = self.hw_version & 0xFF
        for i, value in enumerate(self.accel):
            buf[0x14 + i] = value & 0xFF
        buf[0x1F] = self.mode_current & 0xFF
        buf[0x20] = self.sys_faults & 0xFF
        return bytes(buf)

    def params(self) -> np.ndarray:
        """
        Correction parameters as a NUM_MOTORS x 5 array.

        Columns: phase, tilt, curve, gibbous_phase, gibbous_magnitude.
        """
        return np.array([
            [m.phase, m.tilt, m.curve, m.gibbous_phase, m.gibbous_magnitude]
            for m in self.motors[:NUM_MOTORS]
        ], dtype=np.float64)


class LighthouseTable:
    """
    Fixed-capacity table of known lighthouses, shared by all trackers.

    A decoded record goes to the slot already holding its serial, or else to
    the first free slot. When every slot holds another serial the record is
    dropped.
    """

    def __init__(self, capacity: int = MAX_NUM_LIGHTHOUSES):
        self.capacity = capacity
        self._slots: List[Optional[LighthouseCalibration]] = [None] * capacity

    def update(self, record: LighthouseCalibration) -> Optional[LighthouseCalibration]:
        """
        Store a decoded record.

        Args:
            record: Freshly decoded calibration

        Returns:
            The stored record, or None if the table is full
        """
        available = self.capacity
        idx = 0
        while idx < self.capacity:
            slot = self._slots[idx]
            if slot is None and available == self.capacity:
                available = idx
            if slot is not None and slot.serial == record.serial:
                break
            idx += 1

        if idx >= self.capacity:
            if available == self.capacity:
                logger.warning(
                    "Seen more than %d lighthouses, disregarding OOTX data from %s",
                    self.capacity, record.serial,
                )
                return None
            idx = available

        self._slots[idx] = record
        return record

    def get(self, serial: str) -> Optional[LighthouseCalibration]:
        for slot in self._slots:
            if slot is not None and slot.serial == serial:
                return slot
        return None

    def slot_of(self, serial: str) -> Optional[int]:
        for idx, slot in enumerate(self._slots):
            if slot is not None and slot.serial == serial:
                return idx
        return None

    @property
    def records(self) -> List[LighthouseCalibration]:
        return [slot for slot in self._slots if slot is not None]

    def __len__(self) -> int:
        return len(self.records)


class OOTXState(enum.Enum):
    PREAMBLE = "preamble"
    LENGTH = "length"
    PAYLOAD = "payload"
    CHECKSUM = "checksum"


class OOTXDecoder:
    """
    Bit-level OOTX frame decoder for one lighthouse slot of one tracker.

    Usage:
        decoder = OOTXDecoder(on_record=handle_calibration)
        for bit, timecode in bits:
            decoder.feed(bit, timecode)
    """

    def __init__(
        self,
        on_record: Optional[Callable[[LighthouseCalibration], None]] = None,
        max_packet_len: int = OOTX_MAX_PACKET_LEN,
        preamble_length: int = OOTX_PREAMBLE_LENGTH,
    ):
        """
        Initialize decoder.

        Args:
            on_record: Called with every record whose checksum matched
            max_packet_len: Largest accepted payload (bytes, including padding)
            preamble_length: Number of zero bits that precede a frame
        """
        self.on_record = on_record
        self.max_packet_len = max_packet_len
        self.preamble_length = preamble_length

        self.state = OOTXState.PREAMBLE
        self.preamble = 0
        self.length = 0
        self.pad = 0
        self.data = bytearray(max_packet_len)
        self.pos = 0
        self.syn = 0
        self.crc = 0

        # Last record this decoder resolved to (set by the owning tracker)
        self.lighthouse: Optional[LighthouseCalibration] = None

        # Statistics
        self.packets_decoded = 0
        self.crc_failures = 0
        self.oversized = 0

        self._handlers = {
            OOTXState.PREAMBLE: self._handle_preamble,
            OOTXState.LENGTH: self._handle_length,
            OOTXState.PAYLOAD: self._handle_payload,
            OOTXState.CHECKSUM: self._handle_checksum,
        }

    def reset(self) -> None:
        self.state = OOTXState.PREAMBLE
        self.preamble = 0
        self.length = 0
        self.pad = 0
        self.pos = 0
        self.syn = 0
        self.crc = 0

    def feed(self, bit: int, timecode: int = 0) -> Optional[LighthouseCalibration]:
        """
        Process a single OOTX data bit.

        Args:
            bit: Data bit demodulated from a sync pulse (0 or 1)
            timecode: Timecode of that sync pulse

        Returns:
            The decoded record if this bit completed a valid frame, else None
        """
        bit = 1 if bit else 0

        # A one after a long enough run of zeros always starts a new frame
        if bit:
            if self.preamble >= self.preamble_length:
                self.state = OOTXState.LENGTH
                self.length = 0
                self.pos = 0
                self.syn = 0
                self.preamble = 0
                return None
            self.preamble = 0
        else:
            self.preamble += 1

        return self._handlers[self.state](bit, timecode)

    def _handle_preamble(self, bit: int, timecode: int) -> None:
        return None

    def _handle_length(self, bit: int, timecode: int) -> None:
        if self.syn == OOTX_WORD_BITS:
            self.length = swap16(self.length)
            self.pad = self.length % 2
            self.state = OOTXState.PREAMBLE
            if 0 < self.length + self.pad <= self.max_packet_len:
                self.state = OOTXState.PAYLOAD
                self.syn = 0
                self.pos = 0
                self.data[:] = bytes(self.max_packet_len)
            else:
                self.oversized += 1
                logger.debug("Rejecting OOTX frame with length %d", self.length)
            return None
        self.length |= bit << (OOTX_WORD_BITS - 1 - self.syn)
        self.syn += 1
        return None

    def _handle_payload(self, bit: int, timecode: int) -> None:
        if self.syn == 8 or self.syn == OOTX_WORD_BITS:
            self.pos += 1
            if self.pos == self.length + self.pad:
                self.state = OOTXState.CHECKSUM
                self.syn = 0
                self.pos = 0
                self.crc = 0
                return None
        # Every 17th bit is a sync bit
        if self.syn == OOTX_WORD_BITS:
            self.syn = 0
            return None
        self.data[self.pos] |= bit << (7 - self.syn % 8)
        self.syn += 1
        return None

    def _handle_checksum(self, bit: int, timecode: int) -> Optional[LighthouseCalibration]:
        if self.syn == 8 or self.syn == OOTX_WORD_BITS:
            self.pos += 1
            if self.pos == 4:
                record = self._finish(timecode)
                self.state = OOTXState.PREAMBLE
                self.pos = 0
                self.syn = 0
                self.preamble = 0
                self.length = 0
                return record
        if self.syn == OOTX_WORD_BITS:
            self.syn = 0
            return None
        self.crc |= bit << (31 - (self.pos * 8 + self.syn % 8))
        self.syn += 1
        return None

    def _finish(self, timecode: int) -> Optional[LighthouseCalibration]:
        payload = bytes(self.data[:self.length])
        expected = zlib.crc32(payload) & 0xFFFFFFFF
        received = swap32(self.crc)
        if expected != received:
            self.crc_failures += 1
            logger.debug(
                "OOTX checksum mismatch: rx=%08x calc=%08x", received, expected
            )
            return None

        try:
            record = LighthouseCalibration.from_payload(payload, timecode)
        except ValueError as e:
            logger.debug("Discarding OOTX frame: %s", e)
            return None

        self.packets_decoded += 1
        if self.on_record:
            self.on_record(record)
        return record

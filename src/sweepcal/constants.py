"""
Hardware and protocol constants for lighthouse sweep tracking.

Timing values are in ticks of the tracker's 48 MHz timecode clock unless
stated otherwise.
"""

import math

# Timecode clock
TICKS_PER_SECOND = 48_000_000
TIMECODE_MASK = 0xFFFFFFFF  # 32-bit cyclic counter

# One sweep covers half a rotor revolution (rotor at 60 Hz)
TICKS_PER_SWEEP = 400_000
SWEEP_CENTER_TICKS = 200_000

# Pulse classification
MAX_PULSE_LENGTH = 6750
SYNC_PULSE_THRESHOLD = 2750
ACODE_STEP = 500

# Acode bits
ACODE_AXIS_BIT = 0b001
ACODE_DATA_BIT = 0b010
ACODE_SKIP_BIT = 0b100
ACODE_UNSET = -1

# Inter-sync gaps
SAME_CYCLE_GAP = 2400
SECOND_LIGHTHOUSE_GAP = 24000
RESET_GAP = 370000

# Diagnostic acode offset smoothing
ACODE_OFFSET_DECAY = 0.9

# Device capacities
MAX_NUM_LIGHTHOUSES = 2
MAX_NUM_SENSORS = 32
NUM_MOTORS = 2

# OOTX framing
OOTX_PREAMBLE_LENGTH = 17
OOTX_MAX_PACKET_LEN = 64
OOTX_WORD_BITS = 16

# Synthetic pinhole camera used to turn sweep angles into image points
PNP_FOV_RAD = 2.0944  # 120 deg
PNP_IMAGE_WIDTH = 1.0
PNP_MIN_CORRESPONDENCES = 4

# Robust loss scale used by the transform solver
HUBER_DELTA = 1.0


def ticks_to_angle(ticks: float) -> float:
    """Convert a tick offset from the sync start into a sweep angle in radians."""
    return (ticks - SWEEP_CENTER_TICKS) * math.pi / TICKS_PER_SWEEP


def angle_to_ticks(angle: float) -> float:
    """Inverse of ticks_to_angle."""
    return angle * TICKS_PER_SWEEP / math.pi + SWEEP_CENTER_TICKS


def ticks_to_seconds(ticks: float) -> float:
    return ticks / TICKS_PER_SECOND


def timecode_delta(later: int, earlier: int) -> int:
    """Wraparound-safe difference between two 32-bit timecodes."""
    return (later - earlier) & TIMECODE_MASK

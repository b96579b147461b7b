"""
Reading pulse logs back and driving a CalibrationSession from them.
"""

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple

from .logger import SCHEMA_VERSION
from .session import CalibrationSession


@dataclass
class LogHeader:
    schema_version: str
    capture_start: str
    log_format: str


@dataclass
class LogFooter:
    capture_end: str
    total_pulses: int


@dataclass
class PulseEntry:
    """One raw pulse with the time it was received."""
    time: float
    tracker: str
    timecode: int
    sensor: int
    length: int


@dataclass
class EventEntry:
    event_type: str
    time: float
    data: Dict[str, Any]


def _header(entry: Dict[str, Any]) -> LogHeader:
    return LogHeader(
        schema_version=entry.get("schema_version", "unknown"),
        capture_start=entry.get("capture_start", ""),
        log_format=entry.get("log_format", "jsonl"),
    )


def _footer(entry: Dict[str, Any]) -> LogFooter:
    return LogFooter(
        capture_end=entry.get("capture_end", ""),
        total_pulses=int(entry.get("total_pulses", 0)),
    )


def _pulse(entry: Dict[str, Any]) -> PulseEntry:
    return PulseEntry(
        time=float(entry.get("time", 0.0)),
        tracker=str(entry["tracker"]),
        timecode=int(entry["timecode"]),
        sensor=int(entry["sensor"]),
        length=int(entry["length"]),
    )


def _event(entry: Dict[str, Any]) -> EventEntry:
    return EventEntry(
        event_type=str(entry.get("event_type", "")),
        time=float(entry.get("time", 0.0)),
        data=entry.get("data", {}),
    )


class PulseReplay:
    """
    A pulse log loaded into memory.

    Usage:
        replay = PulseReplay("logs/capture.jsonl")
        for pulse in replay:
            session.process_pulse(pulse.tracker, pulse.timecode, pulse.sensor, pulse.length)
    """

    def __init__(self, log_file: str):
        """
        Raises:
            FileNotFoundError: If the log does not exist
            ValueError: If a line is not valid JSON
            KeyError: If a pulse line lacks a field
        """
        self.log_file = Path(log_file)
        if not self.log_file.exists():
            raise FileNotFoundError(f"Log file not found: {log_file}")

        self.header: Optional[LogHeader] = None
        self.footer: Optional[LogFooter] = None
        self.pulses: List[PulseEntry] = []
        self.events: List[EventEntry] = []

        with open(self.log_file, "r", encoding="utf-8") as f:
            for line in f:
                if line.strip():
                    self._add(json.loads(line))

    def _add(self, entry: Dict[str, Any]) -> None:
        kind = entry.get("_type")
        if kind == "pulse":
            self.pulses.append(_pulse(entry))
        elif kind == "event":
            self.events.append(_event(entry))
        elif kind == "header":
            self.header = _header(entry)
        elif kind == "footer":
            self.footer = _footer(entry)

    def __iter__(self) -> Iterator[PulseEntry]:
        return iter(self.pulses)

    def __len__(self) -> int:
        return len(self.pulses)

    def events_of(self, event_type: str) -> List[EventEntry]:
        return [e for e in self.events if e.event_type == event_type]

    def get_trackers(self) -> List[str]:
        """Tracker serials in order of first appearance."""
        return list(dict.fromkeys(p.tracker for p in self.pulses))

    def get_duration_seconds(self) -> float:
        if not self.pulses:
            return 0.0
        times = [p.time for p in self.pulses]
        return max(times) - min(times)


class ReplayClock:
    """Clock that reports the recorded time of the pulse being replayed."""

    def __init__(self, start: float = 0.0):
        self.now = start

    def __call__(self) -> float:
        return self.now


def replay_into(replay: PulseReplay, session: CalibrationSession) -> Tuple[bool, str]:
    """
    Feed a whole log through a session and solve.

    Recording is started if the session is not already recording (offline
    sessions start recording on their own). Measurement timestamps follow
    the recorded clock, and the final trigger stands in for the idle timeout.

    Returns:
        (success, message) from the final trigger
    """
    clock = ReplayClock()
    previous_clock = session.clock
    session.clock = clock
    try:
        if not session.recording:
            session.trigger()
        for pulse in replay:
            clock.now = pulse.time
            session.device(pulse.tracker).process_pulse(
                pulse.timecode, pulse.sensor, pulse.length
            )
        return session.trigger()
    finally:
        session.clock = previous_clock


def validate_log_integrity(log_file: str) -> Dict[str, Any]:
    """
    Check a pulse log for a header, a matching footer and parseable lines.

    Returns:
        {"valid": bool, "errors": [...], "warnings": [...], "stats": {...}}
    """
    errors: List[str] = []
    warnings: List[str] = []
    stats: Dict[str, Any] = {}

    try:
        replay = PulseReplay(log_file)
    except (OSError, ValueError, KeyError) as e:
        return {"valid": False, "errors": [str(e)], "warnings": warnings, "stats": stats}

    if replay.header is None:
        errors.append("Missing header")
    elif replay.header.schema_version != SCHEMA_VERSION:
        warnings.append(f"Unknown schema version: {replay.header.schema_version}")

    if replay.footer is None:
        warnings.append("Missing footer (log may be incomplete)")
    elif replay.footer.total_pulses != len(replay):
        warnings.append(
            f"Footer reports {replay.footer.total_pulses} pulses, found {len(replay)}"
        )

    stats = {
        "total_pulses": len(replay),
        "trackers": replay.get_trackers(),
        "duration_seconds": replay.get_duration_seconds(),
        "events": sorted({e.event_type for e in replay.events}),
    }
    return {"valid": not errors, "errors": errors, "warnings": warnings, "stats": stats}

"""
Pulse recorder.

Writes raw tracker pulses as JSON lines so a capture can be replayed
through a CalibrationSession later. Besides pulses a log carries session
events, e.g. trigger results, solver summaries or simulated ground truth.

Layout:
    {"_type": "header", "schema_version": "1.0", "capture_start": ...}
    {"_type": "pulse", "time": 0.5, "tracker": ..., "timecode": ..., "sensor": ..., "length": ...}
    {"_type": "event", "event_type": "trigger", "time": 0.9, "data": {...}}
    {"_type": "footer", "capture_end": ..., "total_pulses": N}
"""

import json
import threading
import time
from datetime import datetime
from pathlib import Path
from typing import IO, Any, Callable, Dict, Optional

SCHEMA_VERSION = "1.0"


class PulseLogger:
    """
    Thread-safe pulse recorder.

    Usage:
        recorder = PulseLogger(log_dir="./logs")
        with recorder.recording("capture"):
            recorder.log_pulse("LHR-08DE963B", timecode, sensor, length)
    """

    def __init__(self, log_dir: str = "./logs", clock: Callable[[], float] = time.time):
        """
        Args:
            log_dir: Directory receiving the log files
            clock: Source of the per-entry receive time in seconds
        """
        self.log_dir = Path(log_dir)
        self.log_dir.mkdir(parents=True, exist_ok=True)
        self.clock = clock

        self._lock = threading.Lock()
        self._out: Optional[IO[str]] = None
        self._path: Optional[Path] = None
        self._pulses = 0
        self._events = 0

    def start_recording(self, session_name: Optional[str] = None) -> str:
        """
        Open a new log file and write its header.

        Returns:
            Path of the log file

        Raises:
            RuntimeError: If a recording is already open
        """
        with self._lock:
            if self._out is not None:
                raise RuntimeError("Recording already in progress")
            name = session_name or datetime.now().strftime("%Y%m%d_%H%M%S")
            self._path = self.log_dir / f"{name}.jsonl"
            self._out = open(self._path, "w", encoding="utf-8")
            self._pulses = 0
            self._events = 0
            self._write({
                "_type": "header",
                "schema_version": SCHEMA_VERSION,
                "capture_start": datetime.now().isoformat(),
                "log_format": "jsonl",
            })
            return str(self._path)

    def stop_recording(self) -> Dict[str, Any]:
        """Write the footer and close the log. Returns what was recorded."""
        with self._lock:
            if self._out is None:
                return {"status": "not_recording"}
            self._write({
                "_type": "footer",
                "capture_end": datetime.now().isoformat(),
                "total_pulses": self._pulses,
            })
            self._out.close()
            summary = {
                "log_file": str(self._path),
                "total_pulses": self._pulses,
                "total_events": self._events,
            }
            self._out = None
            self._path = None
            return summary

    def recording(self, session_name: Optional[str] = None) -> "_Recording":
        return _Recording(self, session_name)

    def log_pulse(self, tracker: str, timecode: int, sensor: int, length: int) -> None:
        """
        Record one raw pulse.

        Raises:
            RuntimeError: If no recording is open
        """
        with self._lock:
            self._require_open()
            self._write({
                "_type": "pulse",
                "time": self.clock(),
                "tracker": tracker,
                "timecode": int(timecode),
                "sensor": int(sensor),
                "length": int(length),
            })
            self._pulses += 1

    def log_event(self, event_type: str, data: Dict[str, Any]) -> None:
        """
        Record a session event. `data` must be JSON serializable.

        Raises:
            RuntimeError: If no recording is open
        """
        with self._lock:
            self._require_open()
            self._write({
                "_type": "event",
                "event_type": event_type,
                "time": self.clock(),
                "data": data,
            })
            self._events += 1

    def _require_open(self) -> None:
        if self._out is None:
            raise RuntimeError("Not currently recording")

    def _write(self, entry: Dict[str, Any]) -> None:
        self._out.write(json.dumps(entry) + "\n")
        self._out.flush()

    @property
    def is_recording(self) -> bool:
        return self._out is not None

    @property
    def current_log_file(self) -> Optional[str]:
        return str(self._path) if self._path else None


class _Recording:
    def __init__(self, recorder: PulseLogger, session_name: Optional[str]):
        self.recorder = recorder
        self.session_name = session_name
        self.path: Optional[str] = None

    def __enter__(self) -> "_Recording":
        self.path = self.recorder.start_recording(self.session_name)
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.recorder.stop_recording()

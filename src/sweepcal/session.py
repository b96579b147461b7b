"""
Calibration session that ties the processing chain together.

Provides the complete chain:
- Raw pulses -> TrackerDevice -> Light messages -> gated MeasurementStore
- Trigger toggle (start recording / stop, solve, publish, persist)
- Idle stop once pulses stop arriving during a recording
"""

import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Protocol, Tuple

import numpy as np

from .calibration import (
    CalibrationData,
    CalibrationFileError,
    FrameTransform,
    frame_transforms,
    read_calibration,
    trajectory_paths,
    write_calibration,
)
from .config import SessionConfig
from .logger import PulseLogger
from .measurements import Measurement, MeasurementStore, bundle_measurements
from .ootx import LighthouseCalibration, LighthouseTable
from .pose import PoseEstimator, Poses
from .problem import SolverSummary
from .tracker import Light, TrackerDevice
from .transforms import TransformSolver, identity, ordered_transforms

logger = logging.getLogger(__name__)

MSG_STARTED = "Recording started."
MSG_SOLVED = "Recording stopped. Solution found."
MSG_NOT_SOLVED = "Recording stopped. Solution not found."
MSG_NO_DATA = "Recording stopped. Insufficient measurements received."
MSG_NOT_RECORDING = "Not recording."

# lighthouse -> tracker -> [(bin, position in vive frame)]
Paths = Dict[str, Dict[str, List[Tuple[float, np.ndarray]]]]


class Publisher(Protocol):
    """Receives results of a successful solve."""

    def publish_transforms(self, transforms: List[FrameTransform]) -> None:
        ...

    def publish_paths(self, paths: Paths) -> None:
        ...


class LoggingPublisher:
    """Publisher that writes results to the log."""

    def publish_transforms(self, transforms: List[FrameTransform]) -> None:
        for ft in transforms:
            t = ft.transform
            logger.info(
                "%s -> %s: [%.4f %.4f %.4f | %.4f %.4f %.4f]",
                ft.parent, ft.child, t[0], t[1], t[2], t[3], t[4], t[5],
            )

    def publish_paths(self, paths: Paths) -> None:
        for lighthouse, per_tracker in paths.items():
            for tracker, path in per_tracker.items():
                logger.info(
                    "Path of %s seen by %s: %d poses", tracker, lighthouse, len(path)
                )


@dataclass
class LighthouseState:
    name: str
    serial: str
    transform: np.ndarray
    calibration: Optional[LighthouseCalibration] = None
    ready: bool = False


@dataclass
class TrackerState:
    name: str
    serial: str
    extrinsics: np.ndarray
    sensors: np.ndarray = field(default_factory=lambda: np.zeros((0, 6)))
    ready: bool = False


class IdleTimer:
    """
    One-shot timer that fires once no kick() arrived for `timeout` seconds.

    Each kick pushes the deadline back. A single threading.Timer is kept
    alive at a time and re-arms itself for the remaining interval.
    """

    def __init__(self, timeout: float, callback: Callable[[], None]):
        self.timeout = timeout
        self.callback = callback
        self._deadline = 0.0
        self._timer: Optional[threading.Timer] = None
        self._lock = threading.Lock()

    def kick(self) -> None:
        with self._lock:
            self._deadline = time.monotonic() + self.timeout
            if self._timer is None:
                self._schedule(self.timeout)

    def cancel(self) -> None:
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None

    @property
    def armed(self) -> bool:
        with self._lock:
            return self._timer is not None

    def _schedule(self, delay: float) -> None:
        self._timer = threading.Timer(delay, self._expire)
        self._timer.daemon = True
        self._timer.start()

    def _expire(self) -> None:
        with self._lock:
            remaining = self._deadline - time.monotonic()
            if remaining > 0:
                self._schedule(remaining)
                return
            self._timer = None
        self.callback()


class CalibrationSession:
    """
    Lighthouse registration session.

    Usage:
        session = CalibrationSession(load_config("session.json"))
        session.trigger()                       # start recording
        for tracker, timecode, sensor, length in pulses:
            session.process_pulse(tracker, timecode, sensor, length)
        success, message = session.trigger()    # stop, solve, persist
    """

    def __init__(
        self,
        config: SessionConfig,
        publisher: Optional[Publisher] = None,
        clock: Callable[[], float] = time.monotonic,
        recorder: Optional[PulseLogger] = None,
    ):
        """
        Initialize session.

        Args:
            config: Session configuration
            publisher: Result sink (defaults to logging)
            clock: Source of measurement timestamps in seconds
            recorder: Open pulse log receiving raw pulses and session events
        """
        self.config = config
        self.publisher = publisher or LoggingPublisher()
        self.clock = clock
        self.recorder = recorder

        self.table = LighthouseTable()
        self.devices: Dict[str, TrackerDevice] = {}
        self.store = MeasurementStore()
        self.registration = identity()

        # Insertion order decides the master lighthouse
        self.lighthouses: Dict[str, LighthouseState] = OrderedDict()
        for lh in config.lighthouses:
            self.lighthouses[lh.serial] = LighthouseState(
                name=lh.name, serial=lh.serial, transform=lh.transform.copy()
            )
        self.trackers: Dict[str, TrackerState] = OrderedDict()
        for t in config.trackers:
            self.trackers[t.serial] = TrackerState(
                name=t.name,
                serial=t.serial,
                extrinsics=t.extrinsics.copy(),
                sensors=np.asarray(t.sensors, dtype=np.float64),
                ready=len(t.sensors) > 0,
            )

        self._lock = threading.Lock()
        self._idle_timer: Optional[IdleTimer] = None
        if config.idle_timeout > 0:
            self._idle_timer = IdleTimer(config.idle_timeout, self._on_idle)

        # Results of the most recent solve
        self.last_poses: Poses = {}
        self.last_summary: Optional[SolverSummary] = None

        # Statistics
        self.lights_received = 0
        self.lights_accepted = 0

        self._load_calibration()
        self.publisher.publish_transforms(frame_transforms(self.calibration_data()))

        if config.offline:
            logger.info("Offline mode: recording from the first measurement")
            self.store.start()

    def _load_calibration(self) -> None:
        try:
            data = read_calibration(self.config.calfile)
        except CalibrationFileError as e:
            logger.warning(
                "Ignoring calibration file %s, using configured transforms: %s",
                self.config.calfile, e,
            )
            return
        if data is None:
            logger.info("Could not read calibration file %s", self.config.calfile)
            return
        self.registration = data.registration
        for serial, transform in data.lighthouses.items():
            if serial in self.lighthouses:
                self.lighthouses[serial].transform = transform
                self.lighthouses[serial].ready = True
        for serial, extrinsics in data.trackers.items():
            if serial in self.trackers:
                self.trackers[serial].extrinsics = extrinsics
        logger.info("Read transforms from calibration %s", self.config.calfile)

    def calibration_data(self) -> CalibrationData:
        return CalibrationData(
            frames=self.config.frames,
            registration=self.registration,
            lighthouses={s: lh.transform for s, lh in self.lighthouses.items()},
            trackers={s: t.extrinsics for s, t in self.trackers.items()},
        )

    @property
    def recording(self) -> bool:
        return self.store.recording

    def device(self, tracker_serial: str) -> TrackerDevice:
        """Get or create the device state for a tracker."""
        device = self.devices.get(tracker_serial)
        if device is None:
            logger.info("Found tracker %s", tracker_serial)
            device = TrackerDevice(
                tracker_serial,
                self.table,
                on_light=self.on_light,
                on_lighthouse=self.on_lighthouse,
            )
            self.devices[tracker_serial] = device
        return device

    def process_pulse(self, tracker_serial: str, timecode: int, sensor: int, length: int) -> None:
        """Feed one raw pulse from a tracker."""
        if self._idle_timer is not None:
            self._idle_timer.kick()
        if self.recorder is not None and self.recorder.is_recording:
            self.recorder.log_pulse(tracker_serial, timecode, sensor, length)
        self.device(tracker_serial).process_pulse(timecode, sensor, length)

    def set_tracker_sensors(self, tracker_serial: str, sensors: np.ndarray) -> None:
        """Provide the sensor table of a configured tracker, marking it ready."""
        tracker = self.trackers.get(tracker_serial)
        if tracker is None:
            raise KeyError(f"Tracker {tracker_serial} is not configured")
        tracker.sensors = np.asarray(sensors, dtype=np.float64)
        tracker.ready = len(tracker.sensors) > 0

    def on_lighthouse(self, record: LighthouseCalibration) -> None:
        lighthouse = self.lighthouses.get(record.serial)
        if lighthouse is None:
            logger.debug("Ignoring unconfigured lighthouse %s", record.serial)
            return
        if lighthouse.calibration is None:
            logger.info("Found lighthouse %s", record.serial)
        lighthouse.calibration = record
        lighthouse.ready = True

    def on_light(self, light: Light) -> bool:
        """
        Gate and store one measurement bundle.

        Returns:
            True if the message was stored
        """
        self.lights_received += 1
        if not self.store.recording:
            return False

        tracker = self.trackers.get(light.tracker)
        lighthouse = self.lighthouses.get(light.lighthouse)
        if tracker is None or lighthouse is None:
            return False
        if not tracker.ready or not lighthouse.ready:
            return False

        thresholds = self.config.thresholds
        max_angle = thresholds.angle_rad
        min_duration = thresholds.duration_s
        pulses = [
            p for p in light.pulses
            if not (p.angle > max_angle or p.duration < min_duration)
        ]
        if len(pulses) < thresholds.count:
            return False

        filtered = Light(
            tracker=light.tracker,
            lighthouse=light.lighthouse,
            axis=light.axis,
            sync_time=light.sync_time,
            pulses=pulses,
        )
        stored = self.store.add(self.clock(), filtered)
        if stored:
            self.lights_accepted += 1
        return stored

    def trigger(self, stop_only: bool = False) -> Tuple[bool, str]:
        """
        Toggle recording.

        The first call starts recording. The next one stops it, solves using
        everything recorded in between and clears the data.

        Args:
            stop_only: Leave an idle session idle instead of starting to record

        Returns:
            (success, message)
        """
        with self._lock:
            if not self.store.recording:
                if stop_only:
                    return False, MSG_NOT_RECORDING
                self.store.start()
                success, message = True, MSG_STARTED
            else:
                measurements = self.store.drain()
                if not measurements:
                    success, message = False, MSG_NO_DATA
                else:
                    success = self.solve(measurements)
                    message = MSG_SOLVED if success else MSG_NOT_SOLVED
            logger.info(message)
            self._record_event("trigger", {"success": success, "message": message})
            return success, message

    def _on_idle(self) -> None:
        if not self.store.recording:
            return
        logger.info("No measurements for %.1fs, stopping", self.config.idle_timeout)
        self.trigger(stop_only=True)

    def _record_event(self, event_type: str, data: Dict[str, object]) -> None:
        if self.recorder is not None and self.recorder.is_recording:
            self.recorder.log_event(event_type, data)

    def solve(self, measurements: List[Measurement]) -> bool:
        """
        Estimate lighthouse transforms from recorded measurements.

        On success the transforms are updated, published and written to the
        calibration file. Otherwise the previous transforms are kept.

        Returns:
            True if a usable solution was found
        """
        if not measurements:
            logger.warning("Insufficient measurements received, so cannot solve problem.")
            return False

        first = min(m.timestamp for m in measurements)
        last = max(m.timestamp for m in measurements)
        logger.info(
            "Processing %d measurements running for %.3f seconds",
            len(measurements), last - first,
        )

        logger.info("Bundling measurements into larger discrete time units.")
        bundle = bundle_measurements(measurements, self.config.resolution)

        logger.info("Estimating pose sequence in every lighthouse frame.")
        estimator = PoseEstimator(correct=self.config.correct)
        trackers = {
            serial: t.sensors for serial, t in self.trackers.items() if t.ready
        }
        params = {
            serial: lh.calibration.params() if lh.calibration is not None else None
            for serial, lh in self.lighthouses.items()
        }
        poses = estimator.estimate(bundle, trackers, params)
        self.last_poses = poses

        transforms = ordered_transforms(
            {serial: lh.transform for serial, lh in self.lighthouses.items()}
        )
        solver = TransformSolver(self.config.solver.to_options())
        summary = solver.solve(transforms, poses)
        self.last_summary = summary
        self._record_event("solve", {
            "termination": summary.termination,
            "iterations": summary.iterations,
            "final_cost": float(summary.final_cost),
            "transforms": {s: np.asarray(t).tolist() for s, t in transforms.items()},
        })
        if not summary.usable:
            return False

        for serial, transform in transforms.items():
            self.lighthouses[serial].transform = transform

        data = self.calibration_data()
        self.publisher.publish_transforms(frame_transforms(data))
        try:
            write_calibration(self.config.calfile, data)
            logger.info("Calibration written to %s", self.config.calfile)
        except OSError as e:
            logger.warning("Could not write calibration to %s: %s", self.config.calfile, e)

        self.publisher.publish_paths(
            trajectory_paths({s: lh.transform for s, lh in self.lighthouses.items()}, poses)
        )
        return True

    def close(self) -> None:
        """Stop the idle timer."""
        if self._idle_timer is not None:
            self._idle_timer.cancel()

    def get_status(self) -> Dict[str, object]:
        """Get current session status."""
        return {
            "recording": self.store.recording,
            "measurements": len(self.store),
            "lights_received": self.lights_received,
            "lights_accepted": self.lights_accepted,
            "lighthouses": {s: lh.ready for s, lh in self.lighthouses.items()},
            "trackers": {s: t.ready for s, t in self.trackers.items()},
            "devices": {s: d.get_stats() for s, d in self.devices.items()},
        }

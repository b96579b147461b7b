import json
import sys
import threading
from pathlib import Path

import numpy as np
import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / 'src'
assert SRC.exists(), f"Source path not found: {SRC}"
sys.path.insert(0, str(SRC))

from sweepcal.calibration import CalibrationData, read_calibration, write_calibration  # type: ignore
from sweepcal.config import (  # type: ignore
    LighthouseConfig,
    SessionConfig,
    Thresholds,
    TrackerConfig,
)
from sweepcal.logger import PulseLogger  # type: ignore
from sweepcal.ootx import LighthouseCalibration  # type: ignore
from sweepcal.replay import PulseReplay, ReplayClock  # type: ignore
from sweepcal.session import (  # type: ignore
    MSG_NO_DATA,
    MSG_NOT_RECORDING,
    MSG_NOT_SOLVED,
    MSG_SOLVED,
    MSG_STARTED,
    CalibrationSession,
    IdleTimer,
)
from sweepcal.sim import (  # type: ignore
    SyntheticLighthouse,
    SyntheticTracker,
    default_sensors,
    random_calibration,
)
from sweepcal.tracker import Light, Pulse  # type: ignore

MASTER = "3097796425"
SLAVE = "907388239"
TRACKER = "LHR-08DE963B"
SLAVE_TRUTH = np.array([1.5, 0.0, 0.2, 0.0, -0.5, 0.0])


class RecordingPublisher:
    def __init__(self):
        self.transforms = []
        self.paths = []

    def publish_transforms(self, transforms) -> None:
        self.transforms.append(transforms)

    def publish_paths(self, paths) -> None:
        self.paths.append(paths)


def _config(tmp_path, **overrides) -> SessionConfig:
    sensors = default_sensors()
    config = SessionConfig(
        calfile=str(tmp_path / "cal.json"),
        idle_timeout=0.0,
        lighthouses=[
            LighthouseConfig(name="master", serial=MASTER),
            LighthouseConfig(name="slave", serial=SLAVE),
        ],
        trackers=[
            TrackerConfig(
                name="tracker_test",
                serial=TRACKER,
                sensors=np.hstack([sensors, np.zeros_like(sensors)]),
            )
        ],
    )
    for key, value in overrides.items():
        setattr(config, key, value)
    return config


def _scene():
    rng = np.random.default_rng(11)
    lighthouses = [
        SyntheticLighthouse(random_calibration(MASTER, rng), np.zeros(6)),
        SyntheticLighthouse(random_calibration(SLAVE, rng), SLAVE_TRUTH),
    ]
    tracker = SyntheticTracker(TRACKER, default_sensors(), lighthouses)
    poses = [
        np.array([0.7, 0.1, 2.5, 0.1, 0.0, 0.0]),
        np.array([0.5, -0.1, 2.2, 0.0, 0.2, 0.1]),
        np.array([0.9, 0.2, 2.8, -0.1, -0.1, 0.2]),
        np.array([0.6, 0.0, 2.4, 0.2, 0.1, -0.2]),
        np.array([0.8, -0.2, 2.6, 0.0, -0.2, 0.0]),
    ]
    return tracker, poses


def _feed(session: CalibrationSession, clock: ReplayClock, pulses) -> None:
    for pulse in pulses:
        clock.now = pulse.time
        session.process_pulse(TRACKER, pulse.timecode, pulse.sensor, pulse.length)


def _run_capture(session: CalibrationSession, clock: ReplayClock):
    tracker, poses = _scene()
    # Lighthouses identify themselves before recording starts
    warmup = tracker.run(poses[0], tracker.warmup_cycles())
    warmup += tracker.run(poses[0], 1, sweep=False)
    _feed(session, clock, warmup)

    assert session.trigger() == (True, MSG_STARTED)
    t0 = np.ceil(tracker.cycle / tracker.cycles_per_second) + 1.0
    for k, pose in enumerate(poses):
        tracker.idle_until(t0 + k)
        _feed(session, clock, tracker.capture(pose))
    return session.trigger()


def test_end_to_end_solve(tmp_path) -> None:
    clock = ReplayClock()
    publisher = RecordingPublisher()
    session = CalibrationSession(_config(tmp_path), publisher=publisher, clock=clock)
    assert len(publisher.transforms) == 1

    success, message = _run_capture(session, clock)

    assert (success, message) == (True, MSG_SOLVED)
    assert not session.recording
    assert all(lh.ready for lh in session.lighthouses.values())

    poses = session.last_poses[TRACKER]
    assert len(poses) == 5
    assert all(set(per_lh) == {MASTER, SLAVE} for per_lh in poses.values())

    assert np.allclose(session.lighthouses[MASTER].transform, np.zeros(6))
    assert np.allclose(session.lighthouses[SLAVE].transform, SLAVE_TRUTH, atol=1e-2)

    stored = read_calibration(session.config.calfile)
    assert stored is not None
    assert np.allclose(stored.lighthouses[SLAVE], SLAVE_TRUTH, atol=1e-2)
    assert len(publisher.transforms) == 2
    assert len(publisher.paths) == 1
    assert len(publisher.paths[0][SLAVE][TRACKER]) == 5


def test_trigger_without_measurements_fails(tmp_path) -> None:
    session = CalibrationSession(_config(tmp_path))
    assert session.trigger() == (True, MSG_STARTED)
    assert session.recording
    assert session.trigger() == (False, MSG_NO_DATA)
    assert not session.recording
    assert not Path(session.config.calfile).exists()
    # The toggle starts over
    assert session.trigger() == (True, MSG_STARTED)


def test_strict_gate_rejects_everything(tmp_path) -> None:
    clock = ReplayClock()
    config = _config(tmp_path, thresholds=Thresholds(count=100))
    session = CalibrationSession(config, clock=clock)

    success, message = _run_capture(session, clock)

    assert (success, message) == (False, MSG_NO_DATA)
    assert session.lights_received > 0
    assert session.lights_accepted == 0
    assert np.allclose(session.lighthouses[SLAVE].transform, np.zeros(6))


def test_gating_filters_pulses(tmp_path) -> None:
    clock = ReplayClock(3.0)
    session = CalibrationSession(_config(tmp_path), clock=clock)
    session.on_lighthouse(LighthouseCalibration(serial=MASTER))
    light = Light(
        tracker=TRACKER,
        lighthouse=MASTER,
        axis=0,
        sync_time=0,
        pulses=[
            Pulse(sensor=0, angle=0.1, duration=4e-6),
            Pulse(sensor=1, angle=1.2, duration=4e-6),
            Pulse(sensor=2, angle=-0.3, duration=5e-7),
            Pulse(sensor=3, angle=-1.2, duration=4e-6),
        ],
    )

    # Not recording yet
    assert session.on_light(light) is False

    session.trigger()
    assert session.on_light(light) is True
    stored = session.store.drain()
    assert [m.timestamp for m in stored] == [3.0]
    assert [p.sensor for p in stored[0].light.pulses] == [0, 3]


def test_unknown_or_unready_sources_are_ignored(tmp_path) -> None:
    session = CalibrationSession(_config(tmp_path))
    session.trigger()
    pulses = [Pulse(sensor=0, angle=0.0, duration=1e-5)]

    # Slave has not broadcast its calibration yet
    assert not session.on_light(Light(TRACKER, SLAVE, 0, 0, pulses))
    assert not session.on_light(Light("LHR-OTHER", MASTER, 0, 0, pulses))
    session.on_lighthouse(LighthouseCalibration(serial="12345"))
    assert "12345" not in session.lighthouses
    assert not session.on_light(Light(TRACKER, "12345", 0, 0, pulses))


def test_calibration_file_is_loaded_at_startup(tmp_path) -> None:
    config = _config(tmp_path)
    write_calibration(
        config.calfile,
        CalibrationData(lighthouses={SLAVE: SLAVE_TRUTH, "999": np.zeros(6)}),
    )

    session = CalibrationSession(config)

    assert np.allclose(session.lighthouses[SLAVE].transform, SLAVE_TRUTH)
    assert session.lighthouses[SLAVE].ready
    assert not session.lighthouses[MASTER].ready
    assert "999" not in session.lighthouses


def test_offline_session_records_immediately(tmp_path) -> None:
    session = CalibrationSession(_config(tmp_path, offline=True))
    assert session.recording
    assert session.get_status()["recording"] is True


def test_set_tracker_sensors(tmp_path) -> None:
    config = _config(tmp_path)
    config.trackers.append(TrackerConfig(name="bare", serial="LHR-BARE"))
    session = CalibrationSession(config)
    assert not session.trackers["LHR-BARE"].ready

    session.set_tracker_sensors("LHR-BARE", default_sensors())
    assert session.trackers["LHR-BARE"].ready
    with pytest.raises(KeyError):
        session.set_tracker_sensors("LHR-NONE", default_sensors())


def test_idle_timer_fires_once_after_quiet_period() -> None:
    fired = threading.Event()
    calls = []

    def callback():
        calls.append(1)
        fired.set()

    timer = IdleTimer(0.05, callback)
    for _ in range(5):
        timer.kick()
    assert timer.armed
    assert fired.wait(2.0)
    assert calls == [1]
    assert not timer.armed
    timer.cancel()


def test_idle_timeout_triggers_solve(tmp_path) -> None:
    session = CalibrationSession(_config(tmp_path, offline=True, idle_timeout=0.05))
    done = threading.Event()
    real_trigger = session.trigger

    def trigger(**kwargs):
        result = real_trigger(**kwargs)
        done.set()
        return result

    session.trigger = trigger
    session.process_pulse(TRACKER, 1_000_000, 0, 3000)

    assert done.wait(2.0)
    assert not session.recording
    session.close()


def test_status_reports_devices(tmp_path) -> None:
    session = CalibrationSession(_config(tmp_path))
    session.process_pulse(TRACKER, 1_000_000, 0, 3000)
    status = session.get_status()
    assert status["devices"][TRACKER]["pulses_processed"] == 1
    assert status["trackers"] == {TRACKER: True}
    assert json.dumps(status)


def test_unsolvable_measurements_report_no_solution(tmp_path) -> None:
    session = CalibrationSession(_config(tmp_path))
    session.on_lighthouse(LighthouseCalibration(serial=MASTER))
    session.trigger()
    # A single axis never yields a pose, so the slave stays unconstrained
    pulses = [Pulse(sensor=s, angle=0.1 * s, duration=4e-6) for s in range(4)]
    assert session.on_light(Light(TRACKER, MASTER, 0, 0, pulses))

    assert session.trigger() == (False, MSG_NOT_SOLVED)
    assert not session.last_summary.usable
    assert not Path(session.config.calfile).exists()


def test_idle_timeout_does_not_start_recording(tmp_path) -> None:
    session = CalibrationSession(_config(tmp_path, idle_timeout=0.05))
    fired = threading.Event()
    real_on_idle = session._on_idle

    def on_idle():
        real_on_idle()
        fired.set()

    session._idle_timer.callback = on_idle
    session.process_pulse(TRACKER, 1_000_000, 0, 3000)

    assert fired.wait(2.0)
    assert not session.recording
    assert session.trigger(stop_only=True) == (False, MSG_NOT_RECORDING)
    assert not session.recording
    session.close()


def test_malformed_calibration_file_falls_back_to_config(tmp_path) -> None:
    config = _config(tmp_path)
    config.lighthouses[1].transform = SLAVE_TRUTH.copy()
    Path(config.calfile).write_text("{not json")

    session = CalibrationSession(config)

    assert np.allclose(session.lighthouses[SLAVE].transform, SLAVE_TRUTH)
    assert not session.lighthouses[SLAVE].ready
    assert not session.lighthouses[MASTER].ready


def test_recorder_captures_pulses_and_session_events(tmp_path) -> None:
    clock = ReplayClock()
    recorder = PulseLogger(log_dir=str(tmp_path / "logs"), clock=clock)
    log_file = recorder.start_recording("capture")
    session = CalibrationSession(_config(tmp_path), clock=clock, recorder=recorder)

    success, message = _run_capture(session, clock)
    recorder.stop_recording()

    assert (success, message) == (True, MSG_SOLVED)
    replay = PulseReplay(log_file)
    assert replay.get_trackers() == [TRACKER]
    assert len(replay) == session.devices[TRACKER].pulses_processed
    assert [e.data["message"] for e in replay.events_of("trigger")] == [MSG_STARTED, MSG_SOLVED]
    solve = replay.events_of("solve")[0].data
    assert solve["termination"] in ("CONVERGENCE", "NO_CONVERGENCE")
    assert np.allclose(solve["transforms"][SLAVE], SLAVE_TRUTH, atol=1e-2)

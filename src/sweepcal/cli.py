"""Command-line entry point.

    sweepcal replay --config session.json pulses.jsonl
    sweepcal validate pulses.jsonl
    sweepcal simulate --out-dir ./sim --poses 8
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

import numpy as np

from .config import ConfigError, LighthouseConfig, SessionConfig, TrackerConfig, load_config
from .logger import PulseLogger
from .replay import PulseReplay, ReplayClock, replay_into, validate_log_integrity
from .session import CalibrationSession
from .sim import (
    SyntheticLighthouse,
    SyntheticTracker,
    default_sensors,
    random_calibration,
    simulate_pulses,
)

SIM_TRACKER = "LHR-08DE963B"
SIM_LIGHTHOUSES = ("3097796425", "907388239")


def _err(msg: str) -> int:
    print(f"error: {msg}", file=sys.stderr)
    return 2


def _cmd_replay(args: argparse.Namespace) -> int:
    try:
        config = load_config(args.config)
    except ConfigError as e:
        return _err(str(e))
    if args.calfile:
        config.calfile = args.calfile
    # The end of the log takes the place of the idle timeout
    config.idle_timeout = 0.0

    try:
        replay = PulseReplay(args.log)
    except (OSError, ValueError, KeyError) as e:
        return _err(f"cannot load log: {e}")

    session = CalibrationSession(config)
    try:
        success, message = replay_into(replay, session)
    finally:
        session.close()

    print(message)
    for serial, lh in session.lighthouses.items():
        t = lh.transform
        print(f"{serial}: {t[0]:.4f} {t[1]:.4f} {t[2]:.4f} | {t[3]:.4f} {t[4]:.4f} {t[5]:.4f}")

    # Simulated logs carry the transforms they were generated from
    for event in replay.events_of("ground_truth"):
        for serial, truth in event.data.items():
            if serial in session.lighthouses:
                error = session.lighthouses[serial].transform - np.asarray(truth)
                print(
                    f"error {serial}: translation {np.linalg.norm(error[:3]):.4f} m, "
                    f"rotation {np.linalg.norm(error[3:]):.4f} rad"
                )
    return 0 if success else 1


def _cmd_validate(args: argparse.Namespace) -> int:
    result = validate_log_integrity(args.log)
    print(json.dumps(result, indent=2))
    return 0 if result["valid"] else 1


def _cmd_simulate(args: argparse.Namespace) -> int:
    if args.poses < 1:
        return _err("--poses must be >= 1")
    rng = np.random.default_rng(args.seed)
    out_dir = Path(args.out_dir)
    out_dir.mkdir(parents=True, exist_ok=True)

    lighthouses = [
        SyntheticLighthouse(random_calibration(SIM_LIGHTHOUSES[0], rng), np.zeros(6)),
        SyntheticLighthouse(
            random_calibration(SIM_LIGHTHOUSES[1], rng),
            np.array([1.5, 0.0, 0.2, 0.0, -0.5, 0.0]),
        ),
    ]
    sensors = default_sensors()
    tracker = SyntheticTracker(SIM_TRACKER, sensors, lighthouses)
    poses = [
        np.concatenate([
            [0.7 + rng.uniform(-0.3, 0.3), rng.uniform(-0.2, 0.2), 2.5 + rng.uniform(-0.3, 0.3)],
            rng.normal(0.0, 0.2, size=3),
        ])
        for _ in range(args.poses)
    ]

    clock = ReplayClock()
    pulse_logger = PulseLogger(log_dir=str(out_dir), clock=clock)
    log_path = pulse_logger.start_recording(session_name="pulses")
    for pulse in simulate_pulses(tracker, poses):
        clock.now = pulse.time
        pulse_logger.log_pulse(tracker.serial, pulse.timecode, pulse.sensor, pulse.length)
    pulse_logger.log_event(
        "ground_truth",
        {lh.serial: lh.transform.tolist() for lh in lighthouses},
    )
    pulse_logger.stop_recording()

    config = SessionConfig(
        calfile=str(out_dir / "calibration.json"),
        offline=True,
        lighthouses=[
            LighthouseConfig(name=f"lighthouse_{i}", serial=lh.serial)
            for i, lh in enumerate(lighthouses)
        ],
        trackers=[
            TrackerConfig(
                name="tracker_sim",
                serial=SIM_TRACKER,
                sensors=np.hstack([sensors, np.zeros_like(sensors)]),
            )
        ],
    )
    config_path = out_dir / "session.json"
    with open(config_path, "w") as f:
        json.dump(config.to_dict(), f, indent=2)

    print(f"log: {log_path}")
    print(f"config: {config_path}")
    print(f"truth {SIM_LIGHTHOUSES[1]}: {lighthouses[1].transform.tolist()}")
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="sweepcal")
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose logging")
    sub = parser.add_subparsers(dest="command", required=True)

    p_replay = sub.add_parser("replay", help="Replay a pulse log through a session and solve")
    p_replay.add_argument("log", help="Pulse log (JSONL)")
    p_replay.add_argument("--config", required=True, help="Session configuration (JSON)")
    p_replay.add_argument("--calfile", default=None, help="Override calibration output path")
    p_replay.set_defaults(func=_cmd_replay)

    p_validate = sub.add_parser("validate", help="Check a pulse log for integrity")
    p_validate.add_argument("log", help="Pulse log (JSONL)")
    p_validate.set_defaults(func=_cmd_validate)

    p_sim = sub.add_parser("simulate", help="Write a synthetic pulse log and matching config")
    p_sim.add_argument("--out-dir", required=True, help="Output directory")
    p_sim.add_argument("--poses", type=int, default=8, help="Number of tracker poses")
    p_sim.add_argument("--seed", type=int, default=0, help="RNG seed")
    p_sim.set_defaults(func=_cmd_simulate)

    try:
        args = parser.parse_args(argv)
    except SystemExit as e:
        return int(e.code) if isinstance(e.code, int) else 2

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    return args.func(args)


if __name__ == "__main__":
    raise SystemExit(main())

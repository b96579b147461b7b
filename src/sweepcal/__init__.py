"""
Lighthouse calibration from tracker sweep pulses.

Modules:
- constants: Timing and protocol constants
- ootx: OOTX frame decoding and lighthouse calibration records
- lightcap: Sync/sweep classification and per-cycle measurement bundles
- tracker: Per-tracker device state and Light messages
- measurements: Recording store and time binning
- pose: Per-epoch PnP pose estimation
- problem: Robust least-squares problem and solver
- transforms: Rigid transform helpers and lighthouse registration
- config: Session configuration
- calibration: Calibration file persistence and published frames
- session: Trigger-driven calibration session
- logger: Pulse logging and recording
- replay: Log file playback
- sim: Synthetic pulse generation
"""

from .ootx import (
    LighthouseCalibration, LighthouseTable, MotorCalibration, OOTXDecoder
)
from .lightcap import Lightcap, TickBundle
from .tracker import Light, Pulse, TrackerDevice
from .measurements import Measurement, MeasurementStore, bundle_measurements
from .pose import PoseEstimator, correct_angles
from .problem import Problem, SolverOptions, SolverSummary
from .transforms import TransformSolver, transform_residual
from .config import ConfigError, SessionConfig, load_config
from .calibration import (
    CalibrationData, CalibrationFileError, read_calibration, write_calibration
)
from .session import CalibrationSession, LoggingPublisher
from .logger import PulseLogger
from .replay import PulseReplay, replay_into, validate_log_integrity

__all__ = [
    # OOTX
    "LighthouseCalibration",
    "LighthouseTable",
    "MotorCalibration",
    "OOTXDecoder",
    # Lightcap
    "Lightcap",
    "TickBundle",
    # Tracker
    "Light",
    "Pulse",
    "TrackerDevice",
    # Measurements
    "Measurement",
    "MeasurementStore",
    "bundle_measurements",
    # Pose
    "PoseEstimator",
    "correct_angles",
    # Solver
    "Problem",
    "SolverOptions",
    "SolverSummary",
    "TransformSolver",
    "transform_residual",
    # Config and calibration
    "ConfigError",
    "SessionConfig",
    "load_config",
    "CalibrationData",
    "CalibrationFileError",
    "read_calibration",
    "write_calibration",
    # Session
    "CalibrationSession",
    "LoggingPublisher",
    # Logger / replay
    "PulseLogger",
    "PulseReplay",
    "replay_into",
    "validate_log_integrity",
]

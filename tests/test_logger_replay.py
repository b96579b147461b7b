import json
import os
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / 'src'
assert SRC.exists(), f"Source path not found: {SRC}"
sys.path.insert(0, str(SRC))

from sweepcal.logger import PulseLogger  # type: ignore
from sweepcal.replay import PulseReplay, ReplayClock, validate_log_integrity  # type: ignore


@pytest.fixture()
def recorded_log_file(tmp_path) -> str:
    """Create a short pulse log for replay tests."""
    clock = ReplayClock()
    logger = PulseLogger(log_dir=str(tmp_path), clock=clock)
    log_file = logger.start_recording(session_name="test_session")

    for i in range(10):
        clock.now = 0.5 + i * 0.01
        tracker = "LHR-A" if i % 2 == 0 else "LHR-B"
        logger.log_pulse(tracker, 1_000_000 + i * 1000, i % 4, 3000 if i % 3 == 0 else 200)

    logger.log_event("trigger", {"message": "Recording started."})
    metadata = logger.stop_recording()

    assert metadata["total_pulses"] == 10
    assert metadata["total_events"] == 1
    assert os.path.exists(log_file)
    return log_file


def test_log_layout(recorded_log_file: str) -> None:
    with open(recorded_log_file, encoding="utf-8") as f:
        entries = [json.loads(line) for line in f]
    assert entries[0]["_type"] == "header"
    assert entries[-1]["_type"] == "footer"
    pulses = [e for e in entries if e["_type"] == "pulse"]
    assert pulses[0] == {
        "_type": "pulse",
        "time": 0.5,
        "tracker": "LHR-A",
        "timecode": 1_000_000,
        "sensor": 0,
        "length": 3000,
    }


def test_replay(recorded_log_file: str) -> None:
    validation = validate_log_integrity(recorded_log_file)
    assert validation["valid"], validation["errors"]
    assert validation["warnings"] == []
    assert validation["stats"]["total_pulses"] == 10

    replay = PulseReplay(recorded_log_file)
    assert replay.header.schema_version == "1.0"
    assert replay.footer.total_pulses == 10
    assert len(replay) == 10
    assert replay.get_trackers() == ["LHR-A", "LHR-B"]
    assert replay.get_duration_seconds() == pytest.approx(0.09)
    assert [e.event_type for e in replay.events] == ["trigger"]
    assert replay.events_of("trigger")[0].data == {"message": "Recording started."}
    assert replay.events_of("solve") == []
    assert validation["stats"]["events"] == ["trigger"]

    timecodes = [p.timecode for p in replay]
    assert timecodes == [1_000_000 + i * 1000 for i in range(10)]


def test_truncated_log_is_flagged(tmp_path, recorded_log_file: str) -> None:
    with open(recorded_log_file, encoding="utf-8") as f:
        lines = f.readlines()
    truncated = tmp_path / "truncated.jsonl"
    truncated.write_text("".join(lines[:-1]))

    validation = validate_log_integrity(str(truncated))
    assert validation["valid"]
    assert any("footer" in w for w in validation["warnings"])

    missing = validate_log_integrity(str(tmp_path / "nope.jsonl"))
    assert not missing["valid"]


def test_logger_misuse(tmp_path) -> None:
    logger = PulseLogger(log_dir=str(tmp_path))
    with pytest.raises(RuntimeError):
        logger.log_pulse("LHR-A", 0, 0, 200)
    with pytest.raises(RuntimeError):
        logger.log_event("trigger", {})
    assert logger.stop_recording() == {"status": "not_recording"}

    logger.start_recording(session_name="one")
    with pytest.raises(RuntimeError):
        logger.start_recording(session_name="two")
    logger.stop_recording()


def test_recording_context_closes_the_log(tmp_path) -> None:
    logger = PulseLogger(log_dir=str(tmp_path))
    with logger.recording("ctx") as rec:
        assert logger.is_recording
        assert logger.current_log_file == rec.path
        logger.log_pulse("LHR-A", 5, 1, 200)
    assert not logger.is_recording

    replay = PulseReplay(rec.path)
    assert replay.footer.total_pulses == 1
    assert validate_log_integrity(rec.path)["warnings"] == []

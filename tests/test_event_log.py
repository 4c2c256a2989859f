from pathlib import Path

import pytest

from stream_archiver.event_log import EventLog


def test_record_and_tail(tmp_path: Path):
    log = EventLog(tmp_path / "events.jsonl")
    log.record("capture", "started", "Recording alice-live started.", metadata={"source": "alice"})
    log.record("replay", "succeeded", "Replay processed.")
    log.record("replay", "quarantined", "Replay moved to quarantine.")

    entries = log.tail()
    assert [entry.event for entry in entries] == ["started", "succeeded", "quarantined"]
    assert [entry.event for entry in log.tail(1)] == ["quarantined"]
    assert [entry.event for entry in log.tail(category="capture")] == ["started"]
    assert entries[0].metadata == {"source": "alice"}


def test_none_metadata_values_are_dropped(tmp_path: Path):
    log = EventLog(tmp_path / "events.jsonl")
    entry = log.record("replay", "quarantined", "Replay failed.", metadata={"path": None, "reason": "x"})
    assert entry.metadata == {"reason": "x"}
    empty = log.record("system", "startup", "Starting.", metadata={"path": None})
    assert empty.metadata is None
    assert "metadata" not in empty.to_dict()


def test_unknown_category_rejected(tmp_path: Path):
    log = EventLog(tmp_path / "events.jsonl")
    with pytest.raises(ValueError):
        log.record("camera", "started", "nope")


def test_entries_survive_reload(tmp_path: Path):
    path = tmp_path / "events.jsonl"
    log = EventLog(path)
    log.record("archive", "deleted", "Archive abc deleted.", metadata={"username": "alice"})

    reloaded = EventLog(path)

    entries = reloaded.tail()
    assert len(entries) == 1
    assert entries[0].category == "archive"
    assert entries[0].metadata == {"username": "alice"}


def test_corrupt_lines_are_skipped(tmp_path: Path):
    path = tmp_path / "events.jsonl"
    path.write_text(
        'not json\n{"event": "startup", "message": "Starting.", "category": "bogus"}\n[1, 2]\n',
        encoding="utf-8",
    )
    entries = EventLog(path).tail()
    assert len(entries) == 1
    assert entries[0].category == "system"


def test_history_is_bounded(tmp_path: Path):
    log = EventLog(tmp_path / "events.jsonl", max_entries=2)
    for index in range(4):
        log.record("system", f"event-{index}", "message")
    assert [entry.event for entry in log.tail()] == ["event-2", "event-3"]


def test_memory_only_log(tmp_path: Path):
    log = EventLog(None)
    log.record("system", "startup", "Starting.")
    assert log.path is None
    assert len(log.tail()) == 1

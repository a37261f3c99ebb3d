import json
import re
import shutil
from datetime import datetime

import pytest

from billing_consumer import persistence
from billing_consumer.persistence import PersistenceSink, format_stamp


NAME_RE = re.compile(r"^Bill_B1_Per_2024-01_V3_\d{8}_\d{4}_\d{5}\.json$")


def test_constructor_creates_nested_output_directory(tmp_path):
    target = tmp_path / "a" / "b" / "input_messages"
    PersistenceSink(target)
    assert target.is_dir()


def test_constructor_fails_when_directory_cannot_be_created(tmp_path):
    blocker = tmp_path / "blocker"
    blocker.write_text("file, not a directory")
    with pytest.raises(OSError):
        PersistenceSink(blocker / "input_messages")


@pytest.mark.asyncio
async def test_save_message_writes_one_named_file(tmp_path, raw_event, log_sink):
    sink = PersistenceSink(tmp_path, log=log_sink)
    assert await sink.save_message(raw_event) is True

    files = list(tmp_path.iterdir())
    assert len(files) == 1
    assert NAME_RE.match(files[0].name)
    assert files[0].read_bytes() == raw_event.encode("utf-8")
    assert log_sink.contains("Saved: Bill_B1_Per_2024-01_V3_")


@pytest.mark.asyncio
async def test_save_message_keeps_exact_bytes_including_unknown_fields(tmp_path):
    raw = (
        '{ "billId":"B1",  "period":"2024-01","currentVersion":"3",'
        '"unknown":{"nested":[1,2.50]}, "note":"счёт №5" }\n'
    )
    sink = PersistenceSink(tmp_path)
    assert await sink.save_message(raw) is True
    (written,) = tmp_path.iterdir()
    assert written.read_bytes() == raw.encode("utf-8")


@pytest.mark.asyncio
async def test_save_message_accepts_raw_bytes(tmp_path, raw_event):
    body = raw_event.encode("utf-8")
    sink = PersistenceSink(tmp_path)
    assert await sink.save_message(body) is True
    (written,) = tmp_path.iterdir()
    assert written.read_bytes() == body


@pytest.mark.asyncio
async def test_same_bill_saved_twice_yields_two_files(tmp_path):
    raw = json.dumps({"billId": "B1", "period": "2024-01", "currentVersion": "3"})
    sink = PersistenceSink(tmp_path)
    assert await sink.save_message(raw) is True
    assert await sink.save_message(raw) is True

    names = sorted(p.name for p in tmp_path.iterdir())
    assert len(names) == 2
    assert names[0] != names[1]
    assert all(NAME_RE.match(n) for n in names)
    # Only the timestamp suffix differs
    assert names[0][: len("Bill_B1_Per_2024-01_V3_")] == names[1][: len("Bill_B1_Per_2024-01_V3_")]


@pytest.mark.asyncio
async def test_not_json_returns_false_without_raising(tmp_path, log_sink):
    sink = PersistenceSink(tmp_path, log=log_sink)
    assert await sink.save_message("not json") is False
    assert list(tmp_path.iterdir()) == []
    assert log_sink.contains("Rejected payload")


@pytest.mark.asyncio
async def test_missing_naming_field_returns_false(tmp_path):
    sink = PersistenceSink(tmp_path)
    assert await sink.save_message(json.dumps({"billId": "B1", "period": "2024-01"})) is False
    assert list(tmp_path.iterdir()) == []


@pytest.mark.asyncio
async def test_io_error_is_reported_as_false(tmp_path, raw_event, log_sink, monkeypatch):
    def boom(path, data):
        raise PermissionError(13, "Permission denied", str(path))

    monkeypatch.setattr(persistence, "_write_new_file", boom)
    sink = PersistenceSink(tmp_path, log=log_sink)
    assert await sink.save_message(raw_event) is False
    assert log_sink.contains("Failed to save")


@pytest.mark.asyncio
async def test_vanished_output_directory_is_reported_as_false(tmp_path, raw_event):
    target = tmp_path / "out"
    sink = PersistenceSink(target)
    shutil.rmtree(target)
    assert await sink.save_message(raw_event) is False


@pytest.mark.asyncio
async def test_path_characters_in_naming_fields_are_replaced(tmp_path):
    raw = json.dumps({"billId": "../A/B", "period": "2024:01", "currentVersion": "3"})
    sink = PersistenceSink(tmp_path)
    assert await sink.save_message(raw) is True
    (written,) = tmp_path.iterdir()
    assert written.parent == tmp_path
    assert written.name.startswith("Bill_.._A_B_Per_2024_01_V3_")


@pytest.mark.asyncio
async def test_failing_log_sink_does_not_change_outcome(tmp_path, raw_event):
    class BrokenSink:
        def record(self, text):
            raise OSError("log disk full")

    sink = PersistenceSink(tmp_path, log=BrokenSink())
    assert await sink.save_message(raw_event) is True
    assert await sink.save_message("not json") is False


def test_format_stamp_has_millisecond_precision():
    assert format_stamp(datetime(2024, 1, 2, 3, 4, 5, 678_900)) == "20240102_0304_05678"


def test_stamps_strictly_increase_within_a_millisecond(tmp_path):
    sink = PersistenceSink(tmp_path)
    sink._last_stamp = datetime(2999, 1, 1)
    assert sink._next_stamp() == datetime(2999, 1, 1, 0, 0, 0, 1000)
    assert sink._next_stamp() == datetime(2999, 1, 1, 0, 0, 0, 2000)


@pytest.mark.asyncio
async def test_name_collision_never_overwrites_existing_file(tmp_path, raw_event, log_sink, monkeypatch):
    moment = datetime(2024, 1, 2, 3, 4, 5, 678_000)
    sink = PersistenceSink(tmp_path, log=log_sink)
    monkeypatch.setattr(sink, "_next_stamp", lambda: moment)

    existing = tmp_path / f"Bill_B1_Per_2024-01_V3_{format_stamp(moment)}.json"
    existing.write_bytes(b"earlier payload")

    assert await sink.save_message(raw_event) is False
    assert existing.read_bytes() == b"earlier payload"
    assert list(tmp_path.iterdir()) == [existing]
    assert log_sink.contains("Failed to save")

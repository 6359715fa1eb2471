import asyncio
import time

import pytest

import vessel_feed.snapshot as snapshot
from vessel_feed.runlog import RunLog
from vessel_feed.snapshot import (
    PersistenceWriter,
    SnapshotReadError,
    format_number,
    format_record_fields,
    load_snapshot,
    parse_snapshot_text,
    render_snapshot,
)
from vessel_feed.state import UNKNOWN_DIRECTION, VesselRecord, VesselStateStore
from vessel_feed.ws_decode import _vessel_name


def _record(vessel_id, name="VESSEL", speed=10.0, direction=90):
    return VesselRecord(
        vessel_id=vessel_id,
        vessel_name=name,
        longitude=-123.25,
        latitude=48.5,
        direction=direction,
        speed=speed,
        timestamp="20230808082257",
    )


def _writer(tmp_path, store):
    runlog = RunLog(tmp_path / "runlog.ndjson")
    return PersistenceWriter(store, tmp_path / "ais_output.txt", runlog), runlog


def _lines(path):
    return path.read_text(encoding="utf-8").splitlines()


def test_format_number_matches_reference_rendering():
    assert format_number(12.0) == "12"
    assert format_number(0) == "0"
    assert format_number(-123.5) == "-123.5"
    assert format_number(UNKNOWN_DIRECTION) == "unknown"


def test_format_record_fields():
    assert (
        format_record_fields(_record(1, speed=0.0, direction=UNKNOWN_DIRECTION))
        == "VESSEL|-123.25|48.5|unknown|0|20230808082257"
    )


def test_parse_snapshot_text_skips_junk_and_keeps_rest_verbatim():
    text = "100|A|1|2|3|4|20230101000000\n\nnot-a-record\n200|B|x|y\n"
    assert parse_snapshot_text(text) == {
        "100": "A|1|2|3|4|20230101000000",
        "200": "B|x|y",
    }


def test_parse_snapshot_text_splits_on_newline_only():
    text = "1|A \x0cB\x1cC\u2028D|1  \r\n2|  padded  |x\n"
    assert parse_snapshot_text(text) == {
        "1": "A \x0cB\x1cC\u2028D|1  ",
        "2": "  padded  |x",
    }


def test_render_snapshot_orders_numeric_ids():
    text = render_snapshot({"30": "c", "4": "a", "abc": "z", "100": "b"})
    assert text == "4|a\n30|c\n100|b\nabc|z\n"


def test_load_snapshot_missing_file_is_empty(tmp_path):
    assert load_snapshot(tmp_path / "missing.txt") == {}


def test_load_snapshot_unreadable_raises(tmp_path):
    path = tmp_path / "ais_output.txt"
    path.write_bytes(b"\xff\xfe\xfa|bad\n")
    with pytest.raises(SnapshotReadError):
        load_snapshot(path)


@pytest.mark.asyncio
async def test_flush_into_empty_snapshot(tmp_path):
    store = VesselStateStore()
    store.upsert(_record(1, name="A"))
    store.upsert(_record(2, name="B"))
    writer, _runlog = _writer(tmp_path, store)
    result = await writer.flush()
    assert result.ok
    assert result.written == 2
    assert _lines(writer.path) == [
        "1|A|-123.25|48.5|90|10|20230808082257",
        "2|B|-123.25|48.5|90|10|20230808082257",
    ]


@pytest.mark.asyncio
async def test_flush_preserves_file_only_vessels(tmp_path):
    path = tmp_path / "ais_output.txt"
    path.write_text(
        "1|A|0|0|0|0|20220101000000\n3|C|1|1|1|1|20220101000000\n",
        encoding="utf-8",
    )
    store = VesselStateStore()
    store.upsert(_record(1, name="A2"))
    store.upsert(_record(2, name="B"))
    writer, _runlog = _writer(tmp_path, store)
    result = await writer.flush()
    assert result.ok
    assert result.loaded == 2
    assert result.in_memory == 2
    assert parse_snapshot_text(path.read_text(encoding="utf-8")) == {
        "1": "A2|-123.25|48.5|90|10|20230808082257",
        "2": "B|-123.25|48.5|90|10|20230808082257",
        "3": "C|1|1|1|1|20220101000000",
    }


@pytest.mark.asyncio
async def test_flush_read_failure_leaves_file_untouched(tmp_path):
    path = tmp_path / "ais_output.txt"
    original = b"\xff\xfe\xfa|bad\n"
    path.write_bytes(original)
    store = VesselStateStore()
    store.upsert(_record(1))
    writer, runlog = _writer(tmp_path, store)
    result = await writer.flush()
    assert not result.ok
    assert path.read_bytes() == original
    assert writer.failure_count == 1
    types = [record["record_type"] for record in runlog.read_records()]
    assert "snapshot_flush_error" in types


@pytest.mark.asyncio
async def test_flush_write_failure_keeps_prior_content(tmp_path, monkeypatch):
    path = tmp_path / "ais_output.txt"
    path.write_text("3|C|1|1|1|1|20220101000000\n", encoding="utf-8")
    store = VesselStateStore()
    store.upsert(_record(1))
    writer, _runlog = _writer(tmp_path, store)

    def failing_replace(src, dst):
        raise OSError("disk full")

    monkeypatch.setattr(snapshot.os, "replace", failing_replace)
    result = await writer.flush()
    assert not result.ok
    assert "disk full" in result.error
    assert _lines(path) == ["3|C|1|1|1|1|20220101000000"]
    assert [p.name for p in tmp_path.iterdir() if p.suffix == ".tmp"] == []

    monkeypatch.undo()
    result = await writer.flush()
    assert result.ok
    assert result.written == 2


@pytest.mark.asyncio
async def test_concurrent_flushes_do_not_interleave(tmp_path, monkeypatch):
    store = VesselStateStore()
    store.upsert(_record(1))
    writer, _runlog = _writer(tmp_path, store)
    active = {"now": 0, "max": 0}
    real_merge = writer._merge_and_write

    def slow_merge(in_memory):
        active["now"] += 1
        active["max"] = max(active["max"], active["now"])
        try:
            time.sleep(0.05)
            return real_merge(in_memory)
        finally:
            active["now"] -= 1

    monkeypatch.setattr(writer, "_merge_and_write", slow_merge)
    results = await asyncio.gather(writer.flush(), writer.flush(reason="shutdown"))
    assert all(result.ok for result in results)
    assert active["max"] == 1
    assert writer.flush_count == 2


@pytest.mark.asyncio
async def test_control_characters_in_names_survive_reload(tmp_path):
    store = VesselStateStore()
    store.upsert(_record(316000001, name=_vessel_name("FOO\x1c999|X", 316000001)))
    store.upsert(_record(316000002, name=_vessel_name("BAR BAZ\x85", 316000002)))
    writer, _runlog = _writer(tmp_path, store)
    assert (await writer.flush()).ok
    first = writer.path.read_bytes()

    reloaded, _runlog = _writer(tmp_path, VesselStateStore())
    assert (await reloaded.flush()).ok
    assert writer.path.read_bytes() == first
    entries = load_snapshot(writer.path)
    assert set(entries) == {"316000001", "316000002"}
    assert entries["316000001"].startswith("FOO 999 X|")
    assert entries["316000002"].startswith("BAR BAZ|")


@pytest.mark.asyncio
async def test_file_only_entries_are_kept_verbatim(tmp_path):
    path = tmp_path / "ais_output.txt"
    path.write_bytes(b"7|  PADDED  |1|1|1|1|x  \r\n")
    store = VesselStateStore()
    store.upsert(_record(1))
    writer, _runlog = _writer(tmp_path, store)
    assert (await writer.flush()).ok
    assert path.read_bytes().endswith(b"\n7|  PADDED  |1|1|1|1|x  \n")

from __future__ import annotations

import asyncio
import os
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Mapping

from .runlog import RunLog, _error_payload
from .state import VesselRecord, VesselStateStore

FIELD_SEPARATOR = "|"


class SnapshotReadError(OSError):
    pass


@dataclass(slots=True)
class FlushResult:
    ok: bool
    loaded: int = 0
    in_memory: int = 0
    written: int = 0
    error: str | None = None


def format_number(value: float | int | str) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def format_record_fields(record: VesselRecord) -> str:
    """Everything after the id: ``Name|Longitude|Latitude|Direction|Speed|Timestamp``."""
    return FIELD_SEPARATOR.join(
        [
            record.vessel_name,
            format_number(record.longitude),
            format_number(record.latitude),
            format_number(record.direction),
            format_number(record.speed),
            record.timestamp,
        ]
    )


def parse_snapshot_text(text: str) -> dict[str, str]:
    r"""Map id -> the rest of its line, kept exactly as written.

    Records are split on ``\n`` only (a trailing ``\r`` is dropped), so other
    Unicode line breaks inside a field never start a new record.
    """
    entries: dict[str, str] = {}
    for line in text.split("\n"):
        if line.endswith("\r"):
            line = line[:-1]
        if not line.strip() or FIELD_SEPARATOR not in line:
            continue
        vessel_key, rest = line.split(FIELD_SEPARATOR, 1)
        vessel_key = vessel_key.strip()
        if not vessel_key:
            continue
        entries[vessel_key] = rest
    return entries


def load_snapshot(path: str | Path) -> dict[str, str]:
    """Missing file reads as empty; any other read failure raises SnapshotReadError."""
    snapshot_path = Path(path)
    try:
        with snapshot_path.open("r", encoding="utf-8", newline="") as handle:
            text = handle.read()
    except FileNotFoundError:
        return {}
    except (OSError, UnicodeDecodeError) as exc:
        raise SnapshotReadError(f"cannot read snapshot {snapshot_path}: {exc}") from exc
    return parse_snapshot_text(text)


def merge_snapshot(
    loaded: Mapping[str, str],
    in_memory: Mapping[int, VesselRecord],
) -> dict[str, str]:
    merged = dict(loaded)
    for vessel_id, record in in_memory.items():
        merged[str(vessel_id)] = format_record_fields(record)
    return merged


def _ordered_keys(keys: Iterable[str]) -> list[str]:
    numeric: list[str] = []
    other: list[str] = []
    for key in keys:
        (numeric if key.isdigit() else other).append(key)
    numeric.sort(key=int)
    return numeric + other


def render_snapshot(entries: Mapping[str, str]) -> str:
    return "".join(
        f"{key}{FIELD_SEPARATOR}{entries[key]}\n" for key in _ordered_keys(entries)
    )


def write_snapshot_atomic(path: str | Path, text: str, *, fsync: bool = False) -> None:
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(
        prefix=f".{target.name}.", suffix=".tmp", dir=str(target.parent)
    )
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "w", encoding="utf-8", newline="\n") as handle:
            handle.write(text)
            if fsync:
                handle.flush()
                os.fsync(handle.fileno())
        os.replace(tmp_path, target)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise


class PersistenceWriter:
    """Merges the in-memory store into the durable snapshot file.

    Each flush reloads the file, overlays the current store (store wins on
    collision, file-only vessels are kept) and atomically replaces the file.
    File I/O runs on a worker thread; ``_lock`` keeps flushes from overlapping.
    """

    def __init__(
        self,
        store: VesselStateStore,
        path: str | Path,
        runlog: RunLog,
        *,
        fsync: bool = False,
    ) -> None:
        self.store = store
        self.path = Path(path)
        self.runlog = runlog
        self.fsync = fsync
        self.flush_count = 0
        self.failure_count = 0
        self._lock = asyncio.Lock()

    def _merge_and_write(self, in_memory: Mapping[int, VesselRecord]) -> FlushResult:
        loaded = load_snapshot(self.path)
        merged = merge_snapshot(loaded, in_memory)
        write_snapshot_atomic(self.path, render_snapshot(merged), fsync=self.fsync)
        return FlushResult(
            ok=True,
            loaded=len(loaded),
            in_memory=len(in_memory),
            written=len(merged),
        )

    async def flush(self, *, reason: str = "periodic") -> FlushResult:
        async with self._lock:
            in_memory = self.store.snapshot()
            started_ns = time.perf_counter_ns()
            try:
                result = await asyncio.to_thread(self._merge_and_write, in_memory)
            except Exception as exc:
                self.failure_count += 1
                self.runlog.alert(
                    {
                        "record_type": "snapshot_flush_error",
                        "reason": reason,
                        "path": self.path,
                        "in_memory": len(in_memory),
                        **_error_payload(exc),
                    },
                    f"snapshot flush failed: {type(exc).__name__}: {exc}",
                )
                return FlushResult(
                    ok=False,
                    in_memory=len(in_memory),
                    error=f"{type(exc).__name__}: {exc}",
                )
            self.flush_count += 1
            self.runlog.write(
                {
                    "record_type": "snapshot_flush",
                    "reason": reason,
                    "path": self.path,
                    "loaded": result.loaded,
                    "in_memory": result.in_memory,
                    "written": result.written,
                    "elapsed_ms": (time.perf_counter_ns() - started_ns) / 1_000_000.0,
                }
            )
            return result

from __future__ import annotations

import sys
import time
from collections import deque
from dataclasses import asdict, is_dataclass
from pathlib import Path
from typing import Any

import orjson

_ORJSON_NDJSON_OPTIONS = orjson.OPT_APPEND_NEWLINE


def _normalize_orjson(value: Any) -> Any:
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, bytes):
        return value.hex()
    if is_dataclass(value) and not isinstance(value, type):
        return _normalize_orjson(asdict(value))
    if isinstance(value, dict):
        return {str(key): _normalize_orjson(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set, frozenset, deque)):
        return [_normalize_orjson(item) for item in value]
    return str(value)


def _error_payload(error: BaseException) -> dict[str, str]:
    return {"error_type": type(error).__name__, "error_message": str(error)}


class RunLog:
    """Append-only NDJSON event log; one ``record_type`` per line."""

    def __init__(self, path: str | Path | None) -> None:
        self.path = None if path is None else Path(path)
        self.failed = False
        self.records_written = 0

    def write(self, record: dict[str, Any]) -> None:
        if self.path is None or self.failed:
            return
        normalized = _normalize_orjson(record)
        normalized.setdefault("ts_wall_ns_utc", time.time_ns())
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("ab") as handle:
                handle.write(orjson.dumps(normalized, option=_ORJSON_NDJSON_OPTIONS))
        except OSError as exc:
            self.failed = True
            print(f"runlog failure: {type(exc).__name__}: {exc}", file=sys.stderr)
            return
        self.records_written += 1

    def alert(self, record: dict[str, Any], message: str) -> None:
        """Write ``record`` and surface ``message`` to the operator on stderr."""
        print(message, file=sys.stderr)
        self.write(record)

    def read_records(self) -> list[dict[str, Any]]:
        if self.path is None or not self.path.exists():
            return []
        return [
            orjson.loads(line)
            for line in self.path.read_bytes().splitlines()
            if line.strip()
        ]

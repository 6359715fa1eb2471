from __future__ import annotations

from pathlib import Path
from typing import Sequence, TypeVar

import orjson

T = TypeVar("T")


def split_groups(items: Sequence[T], size: int) -> list[list[T]]:
    """Partition ``items`` into order-preserving chunks of at most ``size``."""
    if size <= 0:
        raise ValueError("group size must be >= 1")
    return [list(items[start : start + size]) for start in range(0, len(items), size)]


def _parse_mmsi(value: object) -> int:
    if isinstance(value, bool):
        raise ValueError(f"invalid MMSI: {value!r}")
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    raise ValueError(f"invalid MMSI: {value!r}")


def parse_mmsi_list(payload: object) -> list[int]:
    if not isinstance(payload, dict) or "MMSI" not in payload:
        raise ValueError("identifier document must be an object with an MMSI list")
    raw_ids = payload["MMSI"]
    if not isinstance(raw_ids, list):
        raise ValueError("MMSI must be a list")
    mmsi_ids: list[int] = []
    seen: set[int] = set()
    for value in raw_ids:
        mmsi = _parse_mmsi(value)
        if mmsi in seen:
            continue
        seen.add(mmsi)
        mmsi_ids.append(mmsi)
    return mmsi_ids


def load_mmsi_list(path: str | Path) -> list[int]:
    data = Path(path).read_bytes()
    try:
        payload = orjson.loads(data)
    except orjson.JSONDecodeError as exc:
        raise ValueError(f"identifier document is not valid JSON: {path}") from exc
    return parse_mmsi_list(payload)

from __future__ import annotations

from typing import Any, Sequence

import orjson

DEFAULT_WS_URL = "wss://stream.aisstream.io/v0/stream"
POSITION_REPORT = "PositionReport"
DEFAULT_BOUNDING_BOXES: list[list[list[float]]] = [
    [[54.031167, -133.890421], [48.016568, -122.457169]],
]


def parse_bounding_boxes(raw: str) -> list[list[list[float]]]:
    try:
        boxes = orjson.loads(raw)
    except orjson.JSONDecodeError as exc:
        raise ValueError(f"invalid bounding boxes: {raw}") from exc
    if not isinstance(boxes, list) or not boxes:
        raise ValueError("bounding boxes must be a non-empty list")
    parsed: list[list[list[float]]] = []
    for box in boxes:
        if not isinstance(box, list) or len(box) != 2:
            raise ValueError(f"bounding box must have two corners: {box!r}")
        corners: list[list[float]] = []
        for corner in box:
            if not isinstance(corner, list) or len(corner) != 2:
                raise ValueError(f"corner must be [lat, lon]: {corner!r}")
            corners.append([float(corner[0]), float(corner[1])])
        parsed.append(corners)
    return parsed


def build_subscribe_payload(
    api_key: str,
    bounding_boxes: Sequence[Sequence[Sequence[float]]],
    mmsi_ids: Sequence[int],
) -> dict[str, Any]:
    return {
        "APIKey": api_key,
        "BoundingBoxes": [[list(corner) for corner in box] for box in bounding_boxes],
        "FiltersShipMMSI": [str(mmsi) for mmsi in mmsi_ids],
        "FilterMessageTypes": [POSITION_REPORT],
    }

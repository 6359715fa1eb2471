from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any
from zoneinfo import ZoneInfo

import orjson

from .aisstream import POSITION_REPORT
from .state import UNKNOWN_DIRECTION, UNKNOWN_SPEED, VesselRecord, VesselStateStore

TIMESTAMP_FORMAT = "%Y%m%d%H%M%S"
_NON_DIGITS = re.compile(r"\D")
# Pipes, C0/C1 controls and Unicode line/paragraph separators.
_LINE_UNSAFE = re.compile(r"[|\x00-\x1f\x7f-\x9f\u2028\u2029]")


@dataclass
class WsDecodeResult:
    record: VesselRecord | None
    message_type: str | None
    json_error: bool = False
    malformed: bool = False


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def convert_timestamp(time_utc: str, tz: ZoneInfo) -> str | None:
    """Render a UTC report time as ``YYYYMMDDHHMMSS`` wall-clock time in ``tz``.

    Accepts the compact ``YYYYMMDDHHmmss`` form as well as
    ``2023-08-08 15:22:57.123456789 +0000 UTC``; only the first 14 digits count.
    """
    digits = _NON_DIGITS.sub("", time_utc)
    if len(digits) < 14:
        return None
    try:
        parsed = datetime.strptime(digits[:14], TIMESTAMP_FORMAT)
    except ValueError:
        return None
    zoned = parsed.replace(tzinfo=timezone.utc).astimezone(tz)
    return zoned.strftime(TIMESTAMP_FORMAT)


def _vessel_name(raw_name: Any, vessel_id: int) -> str:
    if isinstance(raw_name, str):
        name = _LINE_UNSAFE.sub(" ", raw_name).strip()
        if name:
            return name
    return str(vessel_id)


def _malformed(message_type: str | None) -> WsDecodeResult:
    return WsDecodeResult(record=None, message_type=message_type, malformed=True)


def decode_position_report(raw: Any, tz: ZoneInfo) -> WsDecodeResult:
    if isinstance(raw, (bytes, bytearray, memoryview)):
        raw_payload: bytes | str = bytes(raw)
    else:
        raw_payload = str(raw)
    try:
        payload = orjson.loads(raw_payload)
    except orjson.JSONDecodeError:
        return WsDecodeResult(record=None, message_type=None, json_error=True)
    if not isinstance(payload, dict):
        return _malformed(None)
    message_type = payload.get("MessageType")
    if not isinstance(message_type, str):
        return _malformed(None)
    if message_type != POSITION_REPORT:
        return WsDecodeResult(record=None, message_type=message_type)

    message = payload.get("Message")
    report = message.get(POSITION_REPORT) if isinstance(message, dict) else None
    if not isinstance(report, dict):
        return _malformed(message_type)
    meta = payload.get("MetaData")
    if not isinstance(meta, dict):
        return _malformed(message_type)

    vessel_id = report.get("UserID")
    if not isinstance(vessel_id, int) or isinstance(vessel_id, bool):
        return _malformed(message_type)
    longitude = report.get("Longitude")
    latitude = report.get("Latitude")
    if not (_is_number(longitude) and _is_number(latitude)):
        return _malformed(message_type)
    speed = report.get("Sog")
    heading = report.get("TrueHeading")
    direction: float | str = heading if _is_number(heading) else UNKNOWN_DIRECTION

    time_utc = meta.get("time_utc")
    if not isinstance(time_utc, str):
        return _malformed(message_type)
    timestamp = convert_timestamp(time_utc, tz)
    if timestamp is None:
        return _malformed(message_type)

    record = VesselRecord(
        vessel_id=vessel_id,
        vessel_name=_vessel_name(meta.get("ShipName"), vessel_id),
        longitude=longitude,
        latitude=latitude,
        direction=direction,
        speed=speed if _is_number(speed) else UNKNOWN_SPEED,
        timestamp=timestamp,
    )
    return WsDecodeResult(record=record, message_type=message_type)


def handle_frame(store: VesselStateStore, raw: Any, tz: ZoneInfo) -> WsDecodeResult:
    result = decode_position_report(raw, tz)
    if result.record is not None:
        store.upsert(result.record)
    return result

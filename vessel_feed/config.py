from __future__ import annotations

from dataclasses import dataclass, fields
import types
import typing
from typing import Any, Mapping, get_args, get_origin

ENV_PREFIX = "VESSEL_FEED_"
# Bare variable names honoured for deployments that predate the prefix.
ENV_ALIASES = {
    "WEBSOCKET_URL": "ws_url",
    "AIS_STREAM_API_KEY": "api_key",
}


def _parse_bool(value: str) -> bool:
    val = str(value).strip().lower()
    if val in {"1", "true", "yes", "y", "on"}:
        return True
    if val in {"0", "false", "no", "n", "off"}:
        return False
    raise ValueError(f"invalid bool: {value}")


def _parse_number(value: str, target_type: type) -> Any:
    if target_type is int:
        return int(value)
    if target_type is float:
        return float(value)
    return value


def _unwrap_optional(field_type: Any) -> tuple[Any, bool]:
    if isinstance(field_type, str):
        parts = [part.strip() for part in field_type.split("|")]
        if len(parts) == 2 and "None" in parts:
            base = parts[0] if parts[1] == "None" else parts[1]
            return base, True
        return field_type, False
    origin = get_origin(field_type)
    union_type = getattr(types, "UnionType", None)
    if origin not in (typing.Union, union_type):
        return field_type, False
    args = get_args(field_type)
    if args and type(None) in args and len(args) == 2:
        base = args[0] if args[1] is type(None) else args[1]
        return base, True
    return field_type, False


def _is_field_type(field_type: Any, expected: type, expected_name: str) -> bool:
    base_type, _is_optional = _unwrap_optional(field_type)
    if base_type is expected:
        return True
    if isinstance(base_type, str) and base_type == expected_name:
        return True
    return False


def _parse_optional(raw: str, target_type: Any) -> Any:
    text = str(raw).strip()
    if text == "":
        return None
    lower = text.lower()
    if lower in {"none", "null"}:
        return None
    if target_type in (bool, "bool"):
        return _parse_bool(text)
    if target_type == "int":
        target_type = int
    elif target_type == "float":
        target_type = float
    return _parse_number(text, target_type)


def _coerce_env(field_type: Any, raw: str) -> Any:
    base_type, is_optional = _unwrap_optional(field_type)
    if is_optional:
        return _parse_optional(raw, base_type)
    if _is_field_type(field_type, bool, "bool"):
        return _parse_bool(raw)
    if _is_field_type(field_type, int, "int"):
        return _parse_number(raw, int)
    if _is_field_type(field_type, float, "float"):
        return _parse_number(raw, float)
    return raw


@dataclass
class Config:
    ws_url: str = "wss://stream.aisstream.io/v0/stream"
    api_key: str = ""
    bounding_boxes_json: str = "[[[54.031167,-133.890421],[48.016568,-122.457169]]]"
    mmsi_config_path: str = "config.json"
    group_size: int = 20
    ws_reconnect_max: int = 3
    ws_reconnect_delay_seconds: float = 5.0
    ws_reconnect_reset_on_open: bool = False
    ws_connect_timeout_seconds: float | None = None
    ws_ping_interval_seconds: float = 20.0
    ws_ping_timeout_seconds: float = 20.0
    target_timezone: str = "America/Los_Angeles"
    snapshot_path: str = "ais_output.txt"
    snapshot_fsync: bool = False
    flush_interval_seconds: float = 30.0
    heartbeat_interval_seconds: float = 60.0
    runlog_path: str = "./data/runlog.ndjson"

    def apply_overrides(self, overrides: Mapping[str, Any]) -> "Config":
        for field in fields(self):
            name = field.name
            if name in overrides:
                value = overrides[name]
                if value is None:
                    _base_type, is_optional = _unwrap_optional(field.type)
                    if is_optional:
                        setattr(self, name, None)
                    continue
                setattr(self, name, value)
        return self

    @classmethod
    def from_env_and_cli(
        cls, cli_overrides: Mapping[str, Any], env: Mapping[str, str]
    ) -> "Config":
        cfg = cls()
        field_types = {field.name: field.type for field in fields(cfg)}
        for env_key, name in ENV_ALIASES.items():
            if env_key in env:
                setattr(cfg, name, _coerce_env(field_types[name], env[env_key]))
        for field in fields(cfg):
            env_key = ENV_PREFIX + field.name.upper()
            if env_key not in env:
                continue
            setattr(cfg, field.name, _coerce_env(field.type, env[env_key]))
        # CLI flags win over the environment.
        return cfg.apply_overrides(cli_overrides)

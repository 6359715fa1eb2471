from __future__ import annotations

from dataclasses import dataclass

from .config import Config


@dataclass(slots=True)
class SessionStats:
    frames: int = 0
    position_reports: int = 0
    discarded: int = 0
    decode_errors: int = 0
    connects: int = 0

    def as_dict(self) -> dict[str, int]:
        return {
            "frames": self.frames,
            "position_reports": self.position_reports,
            "discarded": self.discarded,
            "decode_errors": self.decode_errors,
            "connects": self.connects,
        }


@dataclass(slots=True)
class ReconnectPolicy:
    max_attempts: int
    delay_seconds: float
    reset_on_open: bool = False

    def can_reconnect(self, attempts: int) -> bool:
        if self.max_attempts <= 0:
            return False
        return attempts < self.max_attempts

    def delay(self) -> float:
        return max(0.0, self.delay_seconds)

    @classmethod
    def from_config(cls, config: Config) -> "ReconnectPolicy":
        return cls(
            max_attempts=config.ws_reconnect_max,
            delay_seconds=config.ws_reconnect_delay_seconds,
            reset_on_open=config.ws_reconnect_reset_on_open,
        )


def normalize_ws_keepalive(
    config: Config,
) -> tuple[float | None, float | None, float | None]:
    ping_interval: float | None = config.ws_ping_interval_seconds
    if ping_interval is not None and ping_interval <= 0:
        ping_interval = None
    ping_timeout: float | None = config.ws_ping_timeout_seconds
    if ping_timeout is not None and ping_timeout <= 0:
        ping_timeout = None
    connect_timeout = config.ws_connect_timeout_seconds
    if connect_timeout is not None and connect_timeout <= 0:
        connect_timeout = None
    return ping_interval, ping_timeout, connect_timeout

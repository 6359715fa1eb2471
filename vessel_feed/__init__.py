"""Live AIS position tracker with merge-on-write flat-file persistence."""

__all__ = [
    "cli",
    "config",
    "partition",
    "aisstream",
    "ws_primitives",
    "ws_decode",
    "state",
    "snapshot",
    "runlog",
    "session",
    "tracker",
]

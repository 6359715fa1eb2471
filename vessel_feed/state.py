from __future__ import annotations

from dataclasses import dataclass, field

UNKNOWN_DIRECTION = "unknown"
UNKNOWN_SPEED = "unknown"


@dataclass(frozen=True, slots=True)
class VesselRecord:
    vessel_id: int
    vessel_name: str
    longitude: float
    latitude: float
    direction: float | str
    speed: float | str
    timestamp: str


@dataclass(slots=True)
class VesselStateStore:
    """Latest known record per vessel; every session writes here, the writer reads.

    Records are immutable, so ``upsert`` is a single reference swap and a
    reader never sees a half-written record.
    """

    vessels: dict[int, VesselRecord] = field(default_factory=dict)
    upserts: int = 0

    def upsert(self, record: VesselRecord) -> None:
        # Arrival order is acceptance order: no timestamp comparison.
        self.vessels[record.vessel_id] = record
        self.upserts += 1

    def get(self, vessel_id: int) -> VesselRecord | None:
        return self.vessels.get(vessel_id)

    def snapshot(self) -> dict[int, VesselRecord]:
        return dict(self.vessels)

    def __len__(self) -> int:
        return len(self.vessels)

"""Per-request inputs handed to the sync service."""

from __future__ import annotations

from dataclasses import dataclass, field

from .store import EntityStore, validate_owner_id
from .versioning import Clock, wall_clock_ms


@dataclass(frozen=True)
class SyncContext:
    """Everything a single request needs besides its payload.

    The owner id partitions all storage; ``device_id`` is only recorded in
    the audit trail.
    """

    owner_id: str
    store: EntityStore
    clock: Clock = field(default=wall_clock_ms)
    device_id: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "owner_id", validate_owner_id(self.owner_id))
        if self.device_id is not None:
            device_id = self.device_id.strip()
            object.__setattr__(self, "device_id", device_id or None)

    def now(self) -> int:
        return int(self.clock())


__all__ = ["SyncContext"]

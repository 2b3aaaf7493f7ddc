"""Optimistic concurrency decisions and version stamping."""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, Literal

from .store import MetaRecord

Clock = Callable[[], int]

DecisionOutcome = Literal["accepted", "duplicate", "conflict"]


def wall_clock_ms() -> int:
    """Return the current wall-clock time in milliseconds."""

    return time.time_ns() // 1_000_000


@dataclass(frozen=True)
class WriteDecision:
    """Result of checking a write against the stored meta record.

    ``current_version`` is ``None`` only when no document exists yet.
    """

    outcome: DecisionOutcome
    current_version: int | None = None

    @property
    def accepted(self) -> bool:
        return self.outcome == "accepted"

    @property
    def duplicate(self) -> bool:
        return self.outcome == "duplicate"

    @property
    def conflict(self) -> bool:
        return self.outcome == "conflict"


class VersionController:
    """Decide whether a write may proceed and stamp the version it produces."""

    def __init__(self, *, clock: Clock | None = None) -> None:
        self._clock = clock or wall_clock_ms

    def decide(
        self,
        meta: MetaRecord | None,
        base_version: int | None,
        op_id: str | None,
    ) -> WriteDecision:
        """Apply the acceptance rules in order.

        A first write is always accepted. A retry carrying the token of the
        most recent write is a duplicate. Any other write must name the stored
        version as its base.
        """

        if meta is None:
            return WriteDecision("accepted")
        if op_id and meta.last_op_id == op_id:
            return WriteDecision("duplicate", meta.version)
        if base_version is None or base_version != meta.version:
            return WriteDecision("conflict", meta.version)
        return WriteDecision("accepted", meta.version)

    def next_version(self, previous: int | None) -> int:
        """Return a wall-clock stamp strictly greater than ``previous``."""

        now = int(self._clock())
        if previous is None:
            return now
        return max(now, previous + 1)


__all__ = [
    "Clock",
    "WriteDecision",
    "VersionController",
    "wall_clock_ms",
]

"""Percentage-based rollout gate for the sync feature."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, FrozenSet, Iterable

_FNV_OFFSET = 2166136261
_FNV_PRIME = 16777619
_UINT32 = 0xFFFFFFFF


def normalize_rollout_percent(value: Any) -> float:
    """Clamp ``value`` to ``[0, 100]``; unset or unparsable values mean 100."""

    if isinstance(value, bool):
        return 100.0
    if isinstance(value, (int, float)):
        parsed = float(value)
    elif isinstance(value, str) and value.strip():
        try:
            parsed = float(value.strip())
        except ValueError:
            return 100.0
    else:
        return 100.0
    if not math.isfinite(parsed):
        return 100.0
    return min(max(parsed, 0.0), 100.0)


def hash_to_bucket(owner_id: str, salt: str = "") -> int:
    """Map ``owner_id`` to a stable bucket in ``range(100)`` using FNV-1a.

    The hash runs over UTF-16 code units so buckets agree with clients that
    compute them in the browser.
    """

    source = f"{salt}:{owner_id}" if salt else owner_id
    encoded = source.encode("utf-16-le")
    value = _FNV_OFFSET
    for index in range(0, len(encoded), 2):
        value ^= encoded[index] | (encoded[index + 1] << 8)
        value = (value * _FNV_PRIME) & _UINT32
    return value % 100


def is_in_rollout(owner_id: str, percent: Any, salt: str = "") -> bool:
    normalized = normalize_rollout_percent(percent)
    if normalized >= 100:
        return True
    if normalized <= 0:
        return False
    return hash_to_bucket(owner_id, salt) < normalized


@dataclass(frozen=True)
class RolloutInfo:
    enabled: bool
    percent: float
    bucket: int
    allowlisted: bool


@dataclass(frozen=True)
class RolloutPolicy:
    """Decide whether sync is enabled for an owner."""

    percent: float = 100.0
    salt: str = ""
    allowlist: FrozenSet[str] = field(default_factory=frozenset)

    @classmethod
    def from_values(
        cls,
        percent: Any = None,
        salt: str | None = None,
        allowlist: Iterable[str] | str | None = None,
    ) -> "RolloutPolicy":
        if isinstance(allowlist, str):
            entries = allowlist.split(",")
        else:
            entries = list(allowlist or ())
        return cls(
            percent=normalize_rollout_percent(percent),
            salt=salt or "",
            allowlist=frozenset(entry.strip() for entry in entries if entry.strip()),
        )

    def info(self, owner_id: str) -> RolloutInfo:
        allowlisted = owner_id in self.allowlist
        return RolloutInfo(
            enabled=allowlisted or is_in_rollout(owner_id, self.percent, self.salt),
            percent=self.percent,
            bucket=hash_to_bucket(owner_id, self.salt),
            allowlisted=allowlisted,
        )


__all__ = [
    "RolloutInfo",
    "RolloutPolicy",
    "hash_to_bucket",
    "is_in_rollout",
    "normalize_rollout_percent",
]

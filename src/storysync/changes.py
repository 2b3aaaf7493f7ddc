"""Append-only log of top-level document patches for incremental pulls."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping

from .document import PROJECT_PATCH_KEYS
from .store import StoreSession

logger = logging.getLogger(__name__)

CHANGE_PAGE_SIZE = 50
DEFAULT_CHANGELOG_RETENTION = 200

_MISSING = object()


def _canonical(value: Any) -> str:
    return json.dumps(value, sort_keys=True, ensure_ascii=False)


def compute_patch(
    current: Mapping[str, Any], base: Mapping[str, Any] | None
) -> Dict[str, Any]:
    """Describe how ``current`` differs from ``base`` at the top level.

    Without a base every tracked key present in ``current`` is set.
    """

    patch: Dict[str, Any] = {"set": {}, "unset": []}
    for key in PROJECT_PATCH_KEYS:
        current_value = current.get(key, _MISSING)
        base_value = _MISSING if base is None else base.get(key, _MISSING)
        if current_value is _MISSING:
            if base_value is not _MISSING:
                patch["unset"].append(key)
            continue
        if base_value is _MISSING or _canonical(current_value) != _canonical(base_value):
            patch["set"][key] = current_value
    return patch


def is_empty_patch(patch: Mapping[str, Any]) -> bool:
    return not patch.get("set") and not patch.get("unset")


@dataclass(frozen=True)
class ChangeEntry:
    sequence: int
    document_version: int
    created_at: int
    patch: Dict[str, Any] | None

    def to_payload(self) -> Dict[str, Any]:
        return {
            "version": self.sequence,
            "documentVersion": self.document_version,
            "createdAt": self.created_at,
            "patch": self.patch,
        }


@dataclass(frozen=True)
class ChangePage:
    """One page of the change feed.

    ``has_more`` is set when the page is full; the client should ask again
    with the last entry's ``version`` as its checkpoint.
    """

    changes: List[ChangeEntry] = field(default_factory=list)
    latest_version: int = 0
    has_more: bool = False

    def to_payload(self) -> Dict[str, Any]:
        return {
            "changes": [entry.to_payload() for entry in self.changes],
            "latestVersion": self.latest_version,
            "hasMore": self.has_more,
        }


class ChangeFeed:
    """Record applied patches and page through them by sequence number."""

    def __init__(
        self,
        *,
        retention: int = DEFAULT_CHANGELOG_RETENTION,
        page_size: int = CHANGE_PAGE_SIZE,
    ) -> None:
        if retention < 1:
            raise ValueError("retention must be a positive integer")
        if page_size < 1:
            raise ValueError("page_size must be a positive integer")
        self.retention = retention
        self.page_size = page_size

    async def record(
        self,
        session: StoreSession,
        owner_id: str,
        *,
        document_version: int,
        patch: Mapping[str, Any],
        created_at: int,
    ) -> int:
        sequence = await session.append_change(
            owner_id,
            document_version=document_version,
            patch=json.dumps(patch, ensure_ascii=False),
            created_at=created_at,
        )
        await session.prune_changes(owner_id, keep=self.retention)
        return sequence

    async def changes_since(
        self, session: StoreSession, owner_id: str, since: int
    ) -> ChangePage:
        records = await session.list_changes(owner_id, since=since, limit=self.page_size)
        meta = await session.get_meta(owner_id)

        entries = []
        for record in records:
            try:
                patch = json.loads(record.patch)
            except json.JSONDecodeError:
                logger.warning(
                    "Discarding malformed patch %s for %s", record.sequence, owner_id
                )
                patch = None
            entries.append(
                ChangeEntry(
                    sequence=record.sequence,
                    document_version=record.document_version,
                    created_at=record.created_at,
                    patch=patch,
                )
            )

        return ChangePage(
            changes=entries,
            latest_version=meta.version if meta is not None else since,
            has_more=len(records) >= self.page_size,
        )


__all__ = [
    "CHANGE_PAGE_SIZE",
    "DEFAULT_CHANGELOG_RETENTION",
    "ChangeEntry",
    "ChangeFeed",
    "ChangePage",
    "compute_patch",
    "is_empty_patch",
]

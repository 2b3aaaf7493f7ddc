"""Point-in-time document archives used for rollback."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping

from .assembler import replace_document
from .document import validate_document
from .errors import InvalidPayloadError, NotFoundError
from .store import StoreSession

logger = logging.getLogger(__name__)

DEFAULT_SNAPSHOT_RETENTION = 10
SNAPSHOT_LIST_LIMIT = 20


@dataclass(frozen=True)
class SnapshotSummary:
    version: int
    created_at: int

    def to_payload(self) -> Dict[str, int]:
        return {"version": self.version, "createdAt": self.created_at}


@dataclass(frozen=True)
class StoredSnapshot:
    """A snapshot together with its decoded document."""

    version: int
    created_at: int
    document: Dict[str, Any]


class SnapshotManager:
    """Capture, list and restore archived documents for an owner.

    A snapshot is keyed by the version of the document it holds, so capturing
    the same version twice is a no-op. After each capture only the newest
    ``retention`` snapshots are kept.
    """

    def __init__(
        self,
        *,
        retention: int = DEFAULT_SNAPSHOT_RETENTION,
        list_limit: int = SNAPSHOT_LIST_LIMIT,
    ) -> None:
        if retention < 1:
            raise ValueError("retention must be a positive integer")
        if list_limit < 1:
            raise ValueError("list_limit must be a positive integer")
        self.retention = retention
        self.list_limit = list_limit

    async def capture(
        self,
        session: StoreSession,
        owner_id: str,
        *,
        version: int,
        document: Mapping[str, Any],
        created_at: int,
    ) -> bool:
        """Archive ``document`` as it stood at ``version``.

        Returns ``False`` when a snapshot for ``version`` already existed.
        """

        inserted = await session.insert_snapshot(
            owner_id,
            version=version,
            data=json.dumps(document, ensure_ascii=False),
            created_at=created_at,
        )
        if inserted:
            await session.prune_snapshots(owner_id, keep=self.retention)
            logger.debug("Captured snapshot %s for %s", version, owner_id)
        return inserted

    async def list_snapshots(
        self, session: StoreSession, owner_id: str
    ) -> List[SnapshotSummary]:
        records = await session.list_snapshots(owner_id, limit=self.list_limit)
        return [
            SnapshotSummary(version=record.version, created_at=record.created_at)
            for record in records
        ]

    async def get_snapshot(
        self, session: StoreSession, owner_id: str, version: int
    ) -> StoredSnapshot:
        """Return the archived document captured at ``version``.

        Raises:
            NotFoundError: If no snapshot exists for ``version``.
            InvalidPayloadError: If the stored data cannot be decoded.
        """

        record = await session.get_snapshot(owner_id, version)
        if record is None:
            raise NotFoundError(
                f"Snapshot {version} not found.", reason="snapshot_not_found"
            )
        try:
            document = json.loads(record.data)
        except json.JSONDecodeError as exc:
            raise InvalidPayloadError(
                f"Snapshot invalid: stored data is not valid JSON ({exc.msg})",
                path="snapshot",
                reason="snapshot_invalid",
            ) from exc
        return StoredSnapshot(
            version=record.version, created_at=record.created_at, document=document
        )

    async def load_for_restore(
        self, session: StoreSession, owner_id: str, version: int
    ) -> Dict[str, Any]:
        """Return the snapshot document validated like a full replacement."""

        snapshot = await self.get_snapshot(session, owner_id, version)
        try:
            return validate_document(snapshot.document).to_payload()
        except InvalidPayloadError as exc:
            raise InvalidPayloadError(
                f"Snapshot invalid: {exc}", path=exc.path, reason="snapshot_invalid"
            ) from exc

    async def restore(
        self,
        session: StoreSession,
        owner_id: str,
        document: Mapping[str, Any],
        *,
        current_document: Mapping[str, Any] | None,
        current_version: int | None,
        version: int,
        created_at: int,
    ) -> Dict[str, Any]:
        """Archive the live document, then replace it with ``document``.

        ``document`` must come from :meth:`load_for_restore`. Returns the meta
        data still to be written through the version compare-and-swap.
        """

        if current_document is not None and current_version is not None:
            await self.capture(
                session,
                owner_id,
                version=current_version,
                document=current_document,
                created_at=created_at,
            )
        return await replace_document(session, owner_id, document, version=version)


__all__ = [
    "DEFAULT_SNAPSHOT_RETENTION",
    "SNAPSHOT_LIST_LIMIT",
    "SnapshotManager",
    "SnapshotSummary",
    "StoredSnapshot",
]

"""Entity store interface and the in-process implementation."""

from __future__ import annotations

import copy
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Sequence, Tuple

EPISODES = "episodes"
SCENES = "scenes"
SHOTS = "shots"
CHARACTERS = "characters"
LOCATIONS = "locations"

COLLECTIONS: tuple[str, ...] = (EPISODES, SCENES, SHOTS, CHARACTERS, LOCATIONS)
CHILD_COLLECTIONS: tuple[str, ...] = (SCENES, SHOTS)

RowKey = Tuple[Any, ...]


@dataclass(frozen=True)
class MetaRecord:
    """Singleton project record; its version is the document version."""

    data: Dict[str, Any]
    version: int
    last_op_id: str | None = None


@dataclass(frozen=True)
class EntityRow:
    """One stored entity.

    ``key`` is ``(episode_id,)`` for episodes, ``(episode_id, child_id)`` for
    scenes and shots and ``(entity_id,)`` for characters and locations.
    """

    key: RowKey
    data: Dict[str, Any]
    updated_at: int

    @property
    def parent_id(self) -> Any:
        return self.key[0] if len(self.key) > 1 else None


@dataclass(frozen=True)
class SnapshotRecord:
    """Archived document; ``data`` is kept serialised exactly as stored."""

    version: int
    created_at: int
    data: str


@dataclass(frozen=True)
class ChangeRecord:
    sequence: int
    document_version: int
    created_at: int
    patch: str


@dataclass(frozen=True)
class AuditRecord:
    id: int
    action: str
    status: str
    detail: str
    created_at: int


class StoreSession(ABC):
    """Operations available while a request holds a store session."""

    @abstractmethod
    async def get_meta(self, owner_id: str) -> MetaRecord | None:
        """Return the meta record for ``owner_id`` if a document exists."""

    @abstractmethod
    async def put_meta(
        self,
        owner_id: str,
        data: Dict[str, Any],
        *,
        version: int,
        op_id: str | None,
        expected_version: int | None,
    ) -> bool:
        """Write the meta record if the stored version still matches.

        ``expected_version=None`` only succeeds when no record exists yet.
        Returns ``False`` when the compare-and-swap did not match.
        """

    @abstractmethod
    async def upsert_rows(
        self, collection: str, owner_id: str, rows: Sequence[EntityRow]
    ) -> None:
        """Insert or update ``rows`` by key."""

    @abstractmethod
    async def delete_rows(
        self, collection: str, owner_id: str, keys: Sequence[RowKey]
    ) -> None:
        """Delete the rows identified by ``keys``; unknown keys are ignored."""

    @abstractmethod
    async def delete_children(
        self, collection: str, owner_id: str, parent_ids: Sequence[Any]
    ) -> None:
        """Delete every row of ``collection`` whose parent is in ``parent_ids``."""

    @abstractmethod
    async def clear_collection(self, collection: str, owner_id: str) -> None:
        """Delete every row of ``collection`` owned by ``owner_id``."""

    @abstractmethod
    async def scan_rows(
        self, collection: str, owner_id: str, *, parent_id: Any | None = None
    ) -> List[EntityRow]:
        """Return rows ordered by key, optionally limited to one parent."""

    @abstractmethod
    async def insert_snapshot(
        self, owner_id: str, *, version: int, data: str, created_at: int
    ) -> bool:
        """Store a snapshot; returns ``False`` if one exists for ``version``."""

    @abstractmethod
    async def get_snapshot(self, owner_id: str, version: int) -> SnapshotRecord | None:
        """Return the snapshot captured at ``version``."""

    @abstractmethod
    async def list_snapshots(self, owner_id: str, *, limit: int) -> List[SnapshotRecord]:
        """Return up to ``limit`` snapshots, newest version first."""

    @abstractmethod
    async def prune_snapshots(self, owner_id: str, *, keep: int) -> None:
        """Delete all but the ``keep`` newest snapshots."""

    @abstractmethod
    async def append_change(
        self, owner_id: str, *, document_version: int, patch: str, created_at: int
    ) -> int:
        """Append a change-feed entry and return its sequence number."""

    @abstractmethod
    async def list_changes(
        self, owner_id: str, *, since: int, limit: int
    ) -> List[ChangeRecord]:
        """Return entries with a sequence greater than ``since``, ascending."""

    @abstractmethod
    async def prune_changes(self, owner_id: str, *, keep: int) -> None:
        """Delete all but the ``keep`` newest change-feed entries."""

    @abstractmethod
    async def append_audit(
        self, owner_id: str, *, action: str, status: str, detail: str, created_at: int
    ) -> None:
        """Record an audit entry."""

    @abstractmethod
    async def list_audit(self, owner_id: str, *, limit: int) -> List[AuditRecord]:
        """Return up to ``limit`` audit entries, newest first."""

    @abstractmethod
    async def prune_audit(self, owner_id: str, *, keep: int) -> None:
        """Delete all but the ``keep`` newest audit entries."""


class EntityStore(ABC):
    """Interface describing how project rows are persisted."""

    @abstractmethod
    async def ensure_schema(self) -> None:
        """Create every collection if it does not exist yet."""

    @abstractmethod
    def session(self, *, write: bool = True) -> Any:
        """Return an async context manager yielding a :class:`StoreSession`.

        ``write=False`` marks a read-only session so stores with real
        transactions can avoid taking the write lock.
        """


@dataclass
class _OwnerState:
    meta: MetaRecord | None = None
    rows: Dict[str, Dict[RowKey, EntityRow]] = field(
        default_factory=lambda: {name: {} for name in COLLECTIONS}
    )
    snapshots: Dict[int, SnapshotRecord] = field(default_factory=dict)
    changes: List[ChangeRecord] = field(default_factory=list)
    audit: List[AuditRecord] = field(default_factory=list)


class InMemoryEntityStore(EntityStore):
    """Keep project rows in local process memory.

    Every call is applied immediately; a session that fails midway leaves its
    earlier writes in place, mirroring a store without multi-row transactions.
    """

    def __init__(self) -> None:
        self._owners: Dict[str, _OwnerState] = {}
        self._audit_ids = 0

    async def ensure_schema(self) -> None:
        return None

    @asynccontextmanager
    async def session(
        self, *, write: bool = True
    ) -> AsyncIterator["InMemoryStoreSession"]:
        del write  # every in-memory call is applied immediately
        yield InMemoryStoreSession(self)

    def _state(self, owner_id: str, *, create: bool = True) -> _OwnerState:
        """Return the state of ``owner_id``.

        Unknown owners are only registered when ``create`` is set; otherwise a
        detached empty state is returned.
        """

        key = validate_owner_id(owner_id)
        state = self._owners.get(key)
        if state is None:
            state = _OwnerState()
            if create:
                self._owners[key] = state
        return state

    def _next_audit_id(self) -> int:
        self._audit_ids += 1
        return self._audit_ids


class InMemoryStoreSession(StoreSession):
    def __init__(self, store: InMemoryEntityStore) -> None:
        self._store = store

    async def get_meta(self, owner_id: str) -> MetaRecord | None:
        meta = self._store._state(owner_id, create=False).meta
        if meta is None:
            return None
        return MetaRecord(
            data=copy.deepcopy(meta.data),
            version=meta.version,
            last_op_id=meta.last_op_id,
        )

    async def put_meta(
        self,
        owner_id: str,
        data: Dict[str, Any],
        *,
        version: int,
        op_id: str | None,
        expected_version: int | None,
    ) -> bool:
        state = self._store._state(owner_id)
        current = state.meta
        if expected_version is None:
            if current is not None:
                return False
        elif current is None or current.version != expected_version:
            return False
        state.meta = MetaRecord(
            data=copy.deepcopy(data), version=version, last_op_id=op_id
        )
        return True

    async def upsert_rows(
        self, collection: str, owner_id: str, rows: Sequence[EntityRow]
    ) -> None:
        table = self._table(collection, owner_id)
        for row in rows:
            table[row.key] = EntityRow(
                key=row.key, data=copy.deepcopy(row.data), updated_at=row.updated_at
            )

    async def delete_rows(
        self, collection: str, owner_id: str, keys: Sequence[RowKey]
    ) -> None:
        table = self._table(collection, owner_id, create=False)
        for key in keys:
            table.pop(tuple(key), None)

    async def delete_children(
        self, collection: str, owner_id: str, parent_ids: Sequence[Any]
    ) -> None:
        table = self._table(collection, owner_id, create=False)
        doomed = set(parent_ids)
        for key in [key for key in table if key[0] in doomed]:
            del table[key]

    async def clear_collection(self, collection: str, owner_id: str) -> None:
        self._table(collection, owner_id, create=False).clear()

    async def scan_rows(
        self, collection: str, owner_id: str, *, parent_id: Any | None = None
    ) -> List[EntityRow]:
        table = self._table(collection, owner_id, create=False)
        rows = [
            EntityRow(key=row.key, data=copy.deepcopy(row.data), updated_at=row.updated_at)
            for row in table.values()
            if parent_id is None or row.key[0] == parent_id
        ]
        rows.sort(key=lambda row: row.key)
        return rows

    async def insert_snapshot(
        self, owner_id: str, *, version: int, data: str, created_at: int
    ) -> bool:
        snapshots = self._store._state(owner_id).snapshots
        if version in snapshots:
            return False
        snapshots[version] = SnapshotRecord(
            version=version, created_at=created_at, data=data
        )
        return True

    async def get_snapshot(self, owner_id: str, version: int) -> SnapshotRecord | None:
        return self._store._state(owner_id, create=False).snapshots.get(version)

    async def list_snapshots(self, owner_id: str, *, limit: int) -> List[SnapshotRecord]:
        snapshots = self._store._state(owner_id, create=False).snapshots
        ordered = sorted(
            snapshots.values(), key=lambda record: record.version, reverse=True
        )
        return ordered[:limit]

    async def prune_snapshots(self, owner_id: str, *, keep: int) -> None:
        snapshots = self._store._state(owner_id, create=False).snapshots
        for version in sorted(snapshots, reverse=True)[keep:]:
            del snapshots[version]

    async def append_change(
        self, owner_id: str, *, document_version: int, patch: str, created_at: int
    ) -> int:
        changes = self._store._state(owner_id).changes
        sequence = changes[-1].sequence + 1 if changes else 1
        changes.append(
            ChangeRecord(
                sequence=sequence,
                document_version=document_version,
                created_at=created_at,
                patch=patch,
            )
        )
        return sequence

    async def list_changes(
        self, owner_id: str, *, since: int, limit: int
    ) -> List[ChangeRecord]:
        changes = self._store._state(owner_id, create=False).changes
        return [record for record in changes if record.sequence > since][:limit]

    async def prune_changes(self, owner_id: str, *, keep: int) -> None:
        state = self._store._state(owner_id, create=False)
        if len(state.changes) > keep:
            state.changes = state.changes[-keep:] if keep > 0 else []

    async def append_audit(
        self, owner_id: str, *, action: str, status: str, detail: str, created_at: int
    ) -> None:
        self._store._state(owner_id).audit.append(
            AuditRecord(
                id=self._store._next_audit_id(),
                action=action,
                status=status,
                detail=detail,
                created_at=created_at,
            )
        )

    async def list_audit(self, owner_id: str, *, limit: int) -> List[AuditRecord]:
        audit = self._store._state(owner_id, create=False).audit
        return list(reversed(audit))[:limit]

    async def prune_audit(self, owner_id: str, *, keep: int) -> None:
        state = self._store._state(owner_id, create=False)
        if len(state.audit) > keep:
            state.audit = state.audit[-keep:] if keep > 0 else []

    def _table(
        self, collection: str, owner_id: str, *, create: bool = True
    ) -> Dict[RowKey, EntityRow]:
        if collection not in COLLECTIONS:
            raise ValueError(f"Unknown collection '{collection}'")
        return self._store._state(owner_id, create=create).rows[collection]


def validate_owner_id(owner_id: str) -> str:
    if not isinstance(owner_id, str):
        raise TypeError("owner_id must be a string")
    stripped = owner_id.strip()
    if not stripped:
        raise ValueError("owner_id must be a non-empty string")
    return stripped


__all__ = [
    "EPISODES",
    "SCENES",
    "SHOTS",
    "CHARACTERS",
    "LOCATIONS",
    "COLLECTIONS",
    "CHILD_COLLECTIONS",
    "RowKey",
    "MetaRecord",
    "EntityRow",
    "SnapshotRecord",
    "ChangeRecord",
    "AuditRecord",
    "StoreSession",
    "EntityStore",
    "InMemoryEntityStore",
    "InMemoryStoreSession",
    "validate_owner_id",
]

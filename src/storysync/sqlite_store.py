"""Durable entity store backed by SQLite through ``aiosqlite``."""

from __future__ import annotations

import json
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Sequence

import aiosqlite

from .store import (
    CHARACTERS,
    EPISODES,
    LOCATIONS,
    SCENES,
    SHOTS,
    AuditRecord,
    ChangeRecord,
    EntityRow,
    EntityStore,
    MetaRecord,
    RowKey,
    SnapshotRecord,
    StoreSession,
    validate_owner_id,
)

# collection -> (table, key columns)
_TABLES: Dict[str, tuple[str, tuple[str, ...]]] = {
    EPISODES: ("project_episodes", ("episode_id",)),
    SCENES: ("project_scenes", ("episode_id", "scene_id")),
    SHOTS: ("project_shots", ("episode_id", "shot_id")),
    CHARACTERS: ("project_characters", ("character_id",)),
    LOCATIONS: ("project_locations", ("location_id",)),
}

_SCHEMA = """
CREATE TABLE IF NOT EXISTS project_meta (
    owner_id TEXT PRIMARY KEY,
    data TEXT NOT NULL,
    version INTEGER NOT NULL,
    last_op_id TEXT
);

CREATE TABLE IF NOT EXISTS project_episodes (
    owner_id TEXT NOT NULL,
    episode_id INTEGER NOT NULL,
    data TEXT NOT NULL,
    updated_at INTEGER NOT NULL,
    PRIMARY KEY (owner_id, episode_id)
);

CREATE TABLE IF NOT EXISTS project_scenes (
    owner_id TEXT NOT NULL,
    episode_id INTEGER NOT NULL,
    scene_id TEXT NOT NULL,
    data TEXT NOT NULL,
    updated_at INTEGER NOT NULL,
    PRIMARY KEY (owner_id, episode_id, scene_id)
);

CREATE TABLE IF NOT EXISTS project_shots (
    owner_id TEXT NOT NULL,
    episode_id INTEGER NOT NULL,
    shot_id TEXT NOT NULL,
    data TEXT NOT NULL,
    updated_at INTEGER NOT NULL,
    PRIMARY KEY (owner_id, episode_id, shot_id)
);

CREATE TABLE IF NOT EXISTS project_characters (
    owner_id TEXT NOT NULL,
    character_id TEXT NOT NULL,
    data TEXT NOT NULL,
    updated_at INTEGER NOT NULL,
    PRIMARY KEY (owner_id, character_id)
);

CREATE TABLE IF NOT EXISTS project_locations (
    owner_id TEXT NOT NULL,
    location_id TEXT NOT NULL,
    data TEXT NOT NULL,
    updated_at INTEGER NOT NULL,
    PRIMARY KEY (owner_id, location_id)
);

CREATE TABLE IF NOT EXISTS project_snapshots (
    owner_id TEXT NOT NULL,
    version INTEGER NOT NULL,
    data TEXT NOT NULL,
    created_at INTEGER NOT NULL,
    PRIMARY KEY (owner_id, version)
);

CREATE TABLE IF NOT EXISTS project_changes (
    owner_id TEXT NOT NULL,
    sequence INTEGER NOT NULL,
    document_version INTEGER NOT NULL,
    patch TEXT NOT NULL,
    created_at INTEGER NOT NULL,
    PRIMARY KEY (owner_id, sequence)
);

CREATE TABLE IF NOT EXISTS sync_audit (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    owner_id TEXT NOT NULL,
    action TEXT NOT NULL,
    status TEXT NOT NULL,
    detail TEXT NOT NULL,
    created_at INTEGER NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_sync_audit_owner ON sync_audit(owner_id, id);
"""


class SQLiteEntityStore(EntityStore):
    """Persist project rows in a SQLite database file.

    Each session opens its own connection and runs inside one transaction:
    ``BEGIN IMMEDIATE`` for writers, a deferred ``BEGIN`` for readers. The
    transaction commits when the session block exits normally and rolls back
    on any exception, so a rejected compare-and-swap leaves no partial rows.
    """

    def __init__(self, path: str | Path, *, timeout: float = 5.0) -> None:
        self.path = str(path)
        self._timeout = timeout

    async def _connect(self) -> aiosqlite.Connection:
        db = await aiosqlite.connect(
            self.path, timeout=self._timeout, isolation_level=None
        )
        db.row_factory = aiosqlite.Row
        return db

    async def ensure_schema(self) -> None:
        db = await self._connect()
        try:
            await db.executescript(_SCHEMA)
        finally:
            await db.close()

    @asynccontextmanager
    async def session(self, *, write: bool = True) -> AsyncIterator["SQLiteStoreSession"]:
        db = await self._connect()
        try:
            await db.execute("BEGIN IMMEDIATE" if write else "BEGIN")
            try:
                yield SQLiteStoreSession(db)
            except BaseException:
                await db.execute("ROLLBACK")
                raise
            await db.execute("COMMIT")
        finally:
            await db.close()


class SQLiteStoreSession(StoreSession):
    def __init__(self, db: aiosqlite.Connection) -> None:
        self._db = db

    async def get_meta(self, owner_id: str) -> MetaRecord | None:
        cursor = await self._db.execute(
            "SELECT data, version, last_op_id FROM project_meta WHERE owner_id = ?",
            (validate_owner_id(owner_id),),
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        return MetaRecord(
            data=json.loads(row["data"]),
            version=int(row["version"]),
            last_op_id=row["last_op_id"],
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
        owner = validate_owner_id(owner_id)
        serialised = json.dumps(data, ensure_ascii=False)
        if expected_version is None:
            cursor = await self._db.execute(
                """INSERT INTO project_meta (owner_id, data, version, last_op_id)
                   VALUES (?, ?, ?, ?)
                   ON CONFLICT(owner_id) DO NOTHING""",
                (owner, serialised, version, op_id),
            )
        else:
            cursor = await self._db.execute(
                """UPDATE project_meta SET data = ?, version = ?, last_op_id = ?
                   WHERE owner_id = ? AND version = ?""",
                (serialised, version, op_id, owner, expected_version),
            )
        return cursor.rowcount == 1

    async def upsert_rows(
        self, collection: str, owner_id: str, rows: Sequence[EntityRow]
    ) -> None:
        if not rows:
            return
        table, key_columns = _table(collection)
        columns = ", ".join(("owner_id", *key_columns, "data", "updated_at"))
        placeholders = ", ".join("?" for _ in range(len(key_columns) + 3))
        conflict = ", ".join(("owner_id", *key_columns))
        owner = validate_owner_id(owner_id)
        await self._db.executemany(
            f"""INSERT INTO {table} ({columns}) VALUES ({placeholders})
                ON CONFLICT({conflict}) DO UPDATE SET
                    data = excluded.data, updated_at = excluded.updated_at""",
            [
                (
                    owner,
                    *row.key,
                    json.dumps(row.data, ensure_ascii=False),
                    row.updated_at,
                )
                for row in rows
            ],
        )

    async def delete_rows(
        self, collection: str, owner_id: str, keys: Sequence[RowKey]
    ) -> None:
        if not keys:
            return
        table, key_columns = _table(collection)
        clause = " AND ".join(f"{column} = ?" for column in key_columns)
        owner = validate_owner_id(owner_id)
        await self._db.executemany(
            f"DELETE FROM {table} WHERE owner_id = ? AND {clause}",
            [(owner, *key) for key in keys],
        )

    async def delete_children(
        self, collection: str, owner_id: str, parent_ids: Sequence[Any]
    ) -> None:
        if not parent_ids:
            return
        table, key_columns = _table(collection)
        owner = validate_owner_id(owner_id)
        await self._db.executemany(
            f"DELETE FROM {table} WHERE owner_id = ? AND {key_columns[0]} = ?",
            [(owner, parent_id) for parent_id in parent_ids],
        )

    async def clear_collection(self, collection: str, owner_id: str) -> None:
        table, _ = _table(collection)
        await self._db.execute(
            f"DELETE FROM {table} WHERE owner_id = ?", (validate_owner_id(owner_id),)
        )

    async def scan_rows(
        self, collection: str, owner_id: str, *, parent_id: Any | None = None
    ) -> List[EntityRow]:
        table, key_columns = _table(collection)
        keys = ", ".join(key_columns)
        params: list[Any] = [validate_owner_id(owner_id)]
        where = "owner_id = ?"
        if parent_id is not None:
            where += f" AND {key_columns[0]} = ?"
            params.append(parent_id)
        cursor = await self._db.execute(
            f"SELECT {keys}, data, updated_at FROM {table} WHERE {where} ORDER BY {keys}",
            params,
        )
        rows = await cursor.fetchall()
        return [
            EntityRow(
                key=tuple(row[column] for column in key_columns),
                data=json.loads(row["data"]),
                updated_at=int(row["updated_at"]),
            )
            for row in rows
        ]

    async def insert_snapshot(
        self, owner_id: str, *, version: int, data: str, created_at: int
    ) -> bool:
        cursor = await self._db.execute(
            """INSERT INTO project_snapshots (owner_id, version, data, created_at)
               VALUES (?, ?, ?, ?)
               ON CONFLICT(owner_id, version) DO NOTHING""",
            (validate_owner_id(owner_id), version, data, created_at),
        )
        return cursor.rowcount == 1

    async def get_snapshot(self, owner_id: str, version: int) -> SnapshotRecord | None:
        cursor = await self._db.execute(
            """SELECT version, data, created_at FROM project_snapshots
               WHERE owner_id = ? AND version = ?""",
            (validate_owner_id(owner_id), version),
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        return SnapshotRecord(
            version=int(row["version"]),
            created_at=int(row["created_at"]),
            data=row["data"],
        )

    async def list_snapshots(self, owner_id: str, *, limit: int) -> List[SnapshotRecord]:
        cursor = await self._db.execute(
            """SELECT version, data, created_at FROM project_snapshots
               WHERE owner_id = ? ORDER BY version DESC LIMIT ?""",
            (validate_owner_id(owner_id), limit),
        )
        rows = await cursor.fetchall()
        return [
            SnapshotRecord(
                version=int(row["version"]),
                created_at=int(row["created_at"]),
                data=row["data"],
            )
            for row in rows
        ]

    async def prune_snapshots(self, owner_id: str, *, keep: int) -> None:
        owner = validate_owner_id(owner_id)
        await self._db.execute(
            """DELETE FROM project_snapshots WHERE owner_id = ? AND version NOT IN (
                   SELECT version FROM project_snapshots WHERE owner_id = ?
                   ORDER BY version DESC LIMIT ?)""",
            (owner, owner, keep),
        )

    async def append_change(
        self, owner_id: str, *, document_version: int, patch: str, created_at: int
    ) -> int:
        owner = validate_owner_id(owner_id)
        cursor = await self._db.execute(
            "SELECT COALESCE(MAX(sequence), 0) + 1 AS next_sequence "
            "FROM project_changes WHERE owner_id = ?",
            (owner,),
        )
        row = await cursor.fetchone()
        sequence = int(row["next_sequence"]) if row else 1
        await self._db.execute(
            """INSERT INTO project_changes
               (owner_id, sequence, document_version, patch, created_at)
               VALUES (?, ?, ?, ?, ?)""",
            (owner, sequence, document_version, patch, created_at),
        )
        return sequence

    async def list_changes(
        self, owner_id: str, *, since: int, limit: int
    ) -> List[ChangeRecord]:
        cursor = await self._db.execute(
            """SELECT sequence, document_version, patch, created_at FROM project_changes
               WHERE owner_id = ? AND sequence > ? ORDER BY sequence ASC LIMIT ?""",
            (validate_owner_id(owner_id), since, limit),
        )
        rows = await cursor.fetchall()
        return [
            ChangeRecord(
                sequence=int(row["sequence"]),
                document_version=int(row["document_version"]),
                created_at=int(row["created_at"]),
                patch=row["patch"],
            )
            for row in rows
        ]

    async def prune_changes(self, owner_id: str, *, keep: int) -> None:
        owner = validate_owner_id(owner_id)
        await self._db.execute(
            """DELETE FROM project_changes WHERE owner_id = ? AND sequence NOT IN (
                   SELECT sequence FROM project_changes WHERE owner_id = ?
                   ORDER BY sequence DESC LIMIT ?)""",
            (owner, owner, keep),
        )

    async def append_audit(
        self, owner_id: str, *, action: str, status: str, detail: str, created_at: int
    ) -> None:
        await self._db.execute(
            """INSERT INTO sync_audit (owner_id, action, status, detail, created_at)
               VALUES (?, ?, ?, ?, ?)""",
            (validate_owner_id(owner_id), action, status, detail, created_at),
        )

    async def list_audit(self, owner_id: str, *, limit: int) -> List[AuditRecord]:
        cursor = await self._db.execute(
            """SELECT id, action, status, detail, created_at FROM sync_audit
               WHERE owner_id = ? ORDER BY id DESC LIMIT ?""",
            (validate_owner_id(owner_id), limit),
        )
        rows = await cursor.fetchall()
        return [
            AuditRecord(
                id=int(row["id"]),
                action=row["action"],
                status=row["status"],
                detail=row["detail"],
                created_at=int(row["created_at"]),
            )
            for row in rows
        ]

    async def prune_audit(self, owner_id: str, *, keep: int) -> None:
        owner = validate_owner_id(owner_id)
        await self._db.execute(
            """DELETE FROM sync_audit WHERE owner_id = ? AND id NOT IN (
                   SELECT id FROM sync_audit WHERE owner_id = ?
                   ORDER BY id DESC LIMIT ?)""",
            (owner, owner, keep),
        )


def _table(collection: str) -> tuple[str, tuple[str, ...]]:
    try:
        return _TABLES[collection]
    except KeyError as exc:
        raise ValueError(f"Unknown collection '{collection}'") from exc


__all__ = ["SQLiteEntityStore", "SQLiteStoreSession"]

from __future__ import annotations

from pathlib import Path

import pytest

from conftest import run
from storysync.sqlite_store import SQLiteEntityStore
from storysync.store import (
    EPISODES,
    SCENES,
    SHOTS,
    EntityRow,
    EntityStore,
    InMemoryEntityStore,
    validate_owner_id,
)


def test_put_meta_compare_and_swap(store: EntityStore) -> None:
    async def scenario() -> None:
        async with store.session() as session:
            assert await session.get_meta("owner") is None
            assert await session.put_meta(
                "owner", {"fileName": "a"}, version=10, op_id="op-1", expected_version=None
            )
            assert not await session.put_meta(
                "owner", {"fileName": "b"}, version=11, op_id=None, expected_version=None
            )
            assert not await session.put_meta(
                "owner", {"fileName": "b"}, version=11, op_id=None, expected_version=9
            )
            assert await session.put_meta(
                "owner", {"fileName": "c"}, version=12, op_id="op-2", expected_version=10
            )
            meta = await session.get_meta("owner")
            assert meta is not None
            assert meta.data == {"fileName": "c"}
            assert meta.version == 12
            assert meta.last_op_id == "op-2"

    run(scenario())


def test_rows_scan_in_key_order_and_delete_children(store: EntityStore) -> None:
    async def scenario() -> None:
        async with store.session() as session:
            await session.upsert_rows(
                SHOTS,
                "owner",
                [
                    EntityRow(key=(3, "b"), data={"id": "b"}, updated_at=1),
                    EntityRow(key=(1, "z"), data={"id": "z"}, updated_at=1),
                    EntityRow(key=(3, "a"), data={"id": "a"}, updated_at=1),
                ],
            )
            await session.upsert_rows(
                SHOTS, "other", [EntityRow(key=(3, "a"), data={"id": "a"}, updated_at=1)]
            )
            keys = [row.key for row in await session.scan_rows(SHOTS, "owner")]
            assert keys == [(1, "z"), (3, "a"), (3, "b")]

            children = await session.scan_rows(SHOTS, "owner", parent_id=3)
            assert [row.key for row in children] == [(3, "a"), (3, "b")]

            await session.delete_children(SHOTS, "owner", [3])
            keys = [row.key for row in await session.scan_rows(SHOTS, "owner")]
            assert keys == [(1, "z")]
            assert len(await session.scan_rows(SHOTS, "other")) == 1

    run(scenario())


def test_upsert_overwrites_and_delete_ignores_unknown_keys(store: EntityStore) -> None:
    async def scenario() -> None:
        async with store.session() as session:
            await session.upsert_rows(
                EPISODES, "owner", [EntityRow(key=(1,), data={"title": "a"}, updated_at=1)]
            )
            await session.upsert_rows(
                EPISODES, "owner", [EntityRow(key=(1,), data={"title": "b"}, updated_at=2)]
            )
            await session.delete_rows(EPISODES, "owner", [(99,)])
            rows = await session.scan_rows(EPISODES, "owner")
            assert [(row.key, row.data, row.updated_at) for row in rows] == [
                ((1,), {"title": "b"}, 2)
            ]

            await session.clear_collection(EPISODES, "owner")
            assert await session.scan_rows(EPISODES, "owner") == []

    run(scenario())


def test_snapshots_skip_duplicates_and_prune(store: EntityStore) -> None:
    async def scenario() -> None:
        async with store.session() as session:
            for version in range(1, 6):
                assert await session.insert_snapshot(
                    "owner", version=version, data=f'{{"v": {version}}}', created_at=version
                )
            assert not await session.insert_snapshot(
                "owner", version=3, data="{}", created_at=99
            )
            await session.prune_snapshots("owner", keep=3)
            listed = await session.list_snapshots("owner", limit=10)
            assert [record.version for record in listed] == [5, 4, 3]
            assert (await session.get_snapshot("owner", 3)).data == '{"v": 3}'
            assert await session.get_snapshot("owner", 1) is None

    run(scenario())


def test_change_log_sequences_are_per_owner(store: EntityStore) -> None:
    async def scenario() -> None:
        async with store.session() as session:
            first = await session.append_change(
                "owner", document_version=100, patch="{}", created_at=1
            )
            second = await session.append_change(
                "owner", document_version=101, patch="{}", created_at=2
            )
            other = await session.append_change(
                "other", document_version=5, patch="{}", created_at=3
            )
            assert (first, second, other) == (1, 2, 1)

            changes = await session.list_changes("owner", since=1, limit=10)
            assert [record.sequence for record in changes] == [2]

            await session.prune_changes("owner", keep=1)
            third = await session.append_change(
                "owner", document_version=102, patch="{}", created_at=4
            )
            assert third == 3
            changes = await session.list_changes("owner", since=0, limit=10)
            assert [record.sequence for record in changes] == [2, 3]

    run(scenario())


def test_audit_entries_newest_first(store: EntityStore) -> None:
    async def scenario() -> None:
        async with store.session() as session:
            for index in range(4):
                await session.append_audit(
                    "owner",
                    action="project.save",
                    status="ok",
                    detail=f'{{"n": {index}}}',
                    created_at=index,
                )
            await session.prune_audit("owner", keep=3)
            entries = await session.list_audit("owner", limit=2)
            assert [entry.detail for entry in entries] == ['{"n": 3}', '{"n": 2}']
            assert len(await session.list_audit("owner", limit=10)) == 3

    run(scenario())


def test_sqlite_session_rolls_back_on_error(tmp_path: Path) -> None:
    store = SQLiteEntityStore(tmp_path / "sync.sqlite3")

    async def scenario() -> None:
        await store.ensure_schema()
        with pytest.raises(RuntimeError):
            async with store.session() as session:
                await session.upsert_rows(
                    SCENES, "owner", [EntityRow(key=(1, "1-1"), data={}, updated_at=1)]
                )
                await session.put_meta(
                    "owner", {}, version=1, op_id=None, expected_version=None
                )
                raise RuntimeError("storage failure")

        async with store.session(write=False) as session:
            assert await session.get_meta("owner") is None
            assert await session.scan_rows(SCENES, "owner") == []

    run(scenario())


def test_sqlite_store_persists_across_instances(tmp_path: Path) -> None:
    path = tmp_path / "sync.sqlite3"

    async def scenario() -> None:
        first = SQLiteEntityStore(path)
        await first.ensure_schema()
        async with first.session() as session:
            await session.put_meta(
                "owner", {"fileName": "kept"}, version=7, op_id=None, expected_version=None
            )

        second = SQLiteEntityStore(path)
        async with second.session(write=False) as session:
            meta = await session.get_meta("owner")
        assert meta is not None
        assert meta.data == {"fileName": "kept"}

    run(scenario())


def test_in_memory_store_returns_copies() -> None:
    store = InMemoryEntityStore()

    async def scenario() -> None:
        async with store.session() as session:
            data = {"title": "original"}
            await session.upsert_rows(
                EPISODES, "owner", [EntityRow(key=(1,), data=data, updated_at=1)]
            )
            data["title"] = "mutated"
            rows = await session.scan_rows(EPISODES, "owner")
            rows[0].data["title"] = "also mutated"
            again = await session.scan_rows(EPISODES, "owner")
            assert again[0].data == {"title": "original"}

    run(scenario())


def test_in_memory_reads_do_not_register_unknown_owners() -> None:
    store = InMemoryEntityStore()

    async def scenario() -> None:
        async with store.session(write=False) as session:
            assert await session.get_meta("stranger") is None
            assert await session.scan_rows(SCENES, "stranger") == []
            assert await session.get_snapshot("stranger", 1) is None
            assert await session.list_snapshots("stranger", limit=5) == []
            assert await session.list_changes("stranger", since=0, limit=5) == []
            assert await session.list_audit("stranger", limit=5) == []
        async with store.session() as session:
            await session.delete_rows(SHOTS, "stranger", [(1, "1-1-1")])
            await session.prune_snapshots("stranger", keep=1)
        assert store._owners == {}

        async with store.session() as session:
            await session.put_meta(
                "stranger", {}, version=1, op_id=None, expected_version=None
            )
        assert list(store._owners) == ["stranger"]

    run(scenario())


def test_validate_owner_id() -> None:
    assert validate_owner_id("  user-1 ") == "user-1"
    with pytest.raises(ValueError):
        validate_owner_id("   ")
    with pytest.raises(TypeError):
        validate_owner_id(42)  # type: ignore[arg-type]

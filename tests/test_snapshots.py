from __future__ import annotations

from typing import Any, Callable

import pytest

from conftest import FakeClock, run
from storysync.context import SyncContext
from storysync.errors import InvalidPayloadError, NotFoundError
from storysync.service import ProjectSyncService
from storysync.snapshots import SnapshotManager
from storysync.store import EntityStore


def test_capture_skips_existing_version(store: EntityStore) -> None:
    manager = SnapshotManager(retention=3)

    async def scenario() -> None:
        async with store.session() as session:
            assert await manager.capture(
                session, "owner", version=1, document={"episodes": []}, created_at=5
            )
            assert not await manager.capture(
                session, "owner", version=1, document={"episodes": [1]}, created_at=6
            )
            snapshot = await manager.get_snapshot(session, "owner", 1)
        assert snapshot.document == {"episodes": []}
        assert snapshot.created_at == 5

    run(scenario())


def test_list_is_newest_first_and_capped(store: EntityStore) -> None:
    manager = SnapshotManager(retention=30, list_limit=20)

    async def scenario() -> None:
        async with store.session() as session:
            for version in range(1, 26):
                await manager.capture(
                    session, "owner", version=version, document={}, created_at=version
                )
            summaries = await manager.list_snapshots(session, "owner")
        assert len(summaries) == 20
        assert summaries[0].to_payload() == {"version": 25, "createdAt": 25}
        assert summaries[-1].version == 6

    run(scenario())


def test_missing_snapshot_is_not_found(store: EntityStore) -> None:
    async def scenario() -> None:
        async with store.session(write=False) as session:
            with pytest.raises(NotFoundError):
                await SnapshotManager().get_snapshot(session, "owner", 123)

    run(scenario())


def test_invalid_snapshot_cannot_be_restored(store: EntityStore) -> None:
    manager = SnapshotManager()

    async def scenario() -> None:
        async with store.session() as session:
            await session.insert_snapshot(
                "owner", version=1, data='{"episodes": "oops"}', created_at=1
            )
            await session.insert_snapshot("owner", version=2, data="{not json", created_at=2)
            with pytest.raises(InvalidPayloadError) as excinfo:
                await manager.load_for_restore(session, "owner", 1)
            assert str(excinfo.value).startswith("Snapshot invalid: ")
            assert excinfo.value.reason == "snapshot_invalid"
            assert excinfo.value.path == "episodes"

            with pytest.raises(InvalidPayloadError) as excinfo:
                await manager.load_for_restore(session, "owner", 2)
            assert str(excinfo.value).startswith("Snapshot invalid: ")

    run(scenario())


def test_restore_produces_newer_version_with_old_content(
    store: EntityStore,
    sample_document: dict[str, Any],
    clock: FakeClock,
    make_context: Callable[..., SyncContext],
) -> None:
    service = ProjectSyncService()
    ctx = make_context(store)

    async def scenario() -> None:
        v1 = (await service.save_project(ctx, document=sample_document)).version
        v2 = (
            await service.save_project(
                ctx, delta={"meta": {"fileName": "second.txt"}}, base_version=v1
            )
        ).version
        v3 = (
            await service.save_project(
                ctx, delta={"meta": {"fileName": "third.txt"}}, base_version=v2
            )
        ).version
        assert v1 < v2 < v3

        before = [summary.version for summary in await service.list_snapshots(ctx)]
        assert before == [v2, v1]

        restored = await service.restore_snapshot(ctx, v1)
        assert restored.version > v3
        assert restored.restored_from == v1

        state = await service.get_project(ctx)
        assert state.version == restored.version
        assert state.document["fileName"] == "heist.txt"

        after = [summary.version for summary in await service.list_snapshots(ctx)]
        assert after == [v3, v2, v1]

        page = await service.changes_since(ctx, 0)
        assert page.changes[-1].document_version == restored.version
        assert page.changes[-1].patch == {"set": {"fileName": "heist.txt"}, "unset": []}

    run(scenario())


def test_retention_keeps_ten_most_recent(
    store: EntityStore,
    sample_document: dict[str, Any],
    make_context: Callable[..., SyncContext],
) -> None:
    service = ProjectSyncService()
    ctx = make_context(store)

    async def scenario() -> None:
        versions = [(await service.save_project(ctx, document=sample_document)).version]
        for index in range(14):
            saved = await service.save_project(
                ctx,
                delta={"meta": {"fileName": f"draft-{index}.txt"}},
                base_version=versions[-1],
            )
            versions.append(saved.version)

        listed = [summary.version for summary in await service.list_snapshots(ctx)]
        # the newest write's own version has no snapshot yet
        assert listed == list(reversed(versions[:-1]))[:10]

    run(scenario())

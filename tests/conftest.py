"""Test configuration for the story project sync engine."""

from __future__ import annotations

import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

import asyncio
import copy
from typing import Any, Awaitable, Callable, TypeVar

import pytest

from storysync.context import SyncContext
from storysync.service import ProjectSyncService
from storysync.sqlite_store import SQLiteEntityStore
from storysync.store import EntityStore, InMemoryEntityStore

T = TypeVar("T")

BASE_TIME_MS = 1_700_000_000_000


class FakeClock:
    """Deterministic millisecond clock that only moves when told to."""

    def __init__(self, start: int = BASE_TIME_MS) -> None:
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, milliseconds: int = 1) -> int:
        self.now += milliseconds
        return self.now


def run(awaitable: Awaitable[T]) -> T:
    """Drive a coroutine to completion from a synchronous test."""

    async def _wrapper() -> T:
        return await awaitable

    return asyncio.run(_wrapper())


def make_shot(shot_id: str, **overrides: Any) -> dict[str, Any]:
    shot = {
        "id": shot_id,
        "duration": "3s",
        "shotType": "wide",
        "movement": "static",
        "description": f"Shot {shot_id}",
        "dialogue": "",
        "soraPrompt": f"prompt for {shot_id}",
    }
    shot.update(overrides)
    return shot


def make_form(form_id: str, name: str, **overrides: Any) -> dict[str, Any]:
    form = {
        "id": form_id,
        "formName": name,
        "episodeRange": "1-3",
        "description": f"{name} look",
        "visualTags": "",
    }
    form.update(overrides)
    return form


def make_zone(zone_id: str, name: str, **overrides: Any) -> dict[str, Any]:
    zone = {
        "id": zone_id,
        "name": name,
        "kind": "interior",
        "episodeRange": "1",
        "layoutNotes": "",
        "keyProps": "",
        "lightingWeather": "",
        "materialPalette": "",
    }
    zone.update(overrides)
    return zone


SAMPLE_DOCUMENT: dict[str, Any] = {
    "fileName": "heist.txt",
    "rawScript": "INT. VAULT - NIGHT",
    "shotGuide": "Keep it handheld.",
    "stats": {"shots": 4},
    "episodes": [
        {
            "id": 1,
            "title": "Pilot",
            "content": "The crew assembles.",
            "status": "completed",
            "scenes": [
                {"id": "1-1", "title": "Garage", "content": "Plans on the table."},
                {"id": "1-2", "title": "Street", "content": "Rain."},
            ],
            "shots": [make_shot("1-1-1"), make_shot("1-1-2", difficulty=3)],
        },
        {
            "id": 3,
            "title": "The Vault",
            "content": "Everything goes wrong.",
            "scenes": [{"id": "3-1", "title": "Vault", "content": "Alarms."}],
            "shots": [make_shot("3-1-1"), make_shot("3-1-2")],
        },
    ],
    "context": {
        "projectSummary": "A heist gone wrong.",
        "episodeSummaries": [{"episodeId": 1, "summary": "Setup"}],
        "characters": [
            {
                "id": "char-ada",
                "name": "Ada",
                "role": "lead",
                "isMain": True,
                "bio": "Safecracker.",
                "forms": [
                    make_form("form-a", "Casual"),
                    make_form("form-b", "Disguise"),
                ],
            },
            {
                "id": "char-bo",
                "name": "Bo",
                "role": "driver",
                "isMain": False,
                "bio": "",
                "forms": [],
            },
        ],
        "locations": [
            {
                "id": "loc-vault",
                "name": "Vault",
                "type": "core",
                "description": "Steel and concrete.",
                "visuals": "",
                "zones": [make_zone("zone-door", "Door")],
            }
        ],
    },
    "designAssets": [
        {
            "id": "asset-a",
            "category": "form",
            "refId": "char-ada|form-a",
            "label": "Ada · Casual",
        },
        {
            "id": "asset-b",
            "category": "form",
            "refId": "char-ada|form-b",
            "label": "Ada · Disguise",
        },
        {
            "id": "asset-door",
            "category": "zone",
            "refId": "loc-vault|zone-door",
            "label": "Vault · Door",
        },
    ],
}


@pytest.fixture()
def sample_document() -> dict[str, Any]:
    """Return a fresh copy of a small but complete project document."""

    return copy.deepcopy(SAMPLE_DOCUMENT)


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def memory_store() -> InMemoryEntityStore:
    return InMemoryEntityStore()


@pytest.fixture()
def sqlite_store(tmp_path: Path) -> SQLiteEntityStore:
    store = SQLiteEntityStore(tmp_path / "sync.sqlite3")
    run(store.ensure_schema())
    return store


@pytest.fixture(params=["memory", "sqlite"])
def store(request: pytest.FixtureRequest, tmp_path: Path) -> EntityStore:
    """Every store implementation, for tests that must hold for both."""

    if request.param == "memory":
        return InMemoryEntityStore()
    store = SQLiteEntityStore(tmp_path / "sync.sqlite3")
    run(store.ensure_schema())
    return store


@pytest.fixture()
def make_context(clock: FakeClock) -> Callable[..., SyncContext]:
    def _factory(
        store: EntityStore, owner_id: str = "owner-1", device_id: str | None = None
    ) -> SyncContext:
        return SyncContext(
            owner_id=owner_id, store=store, clock=clock, device_id=device_id
        )

    return _factory


@pytest.fixture()
def service() -> ProjectSyncService:
    return ProjectSyncService()

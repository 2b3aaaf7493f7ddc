"""Translate between the logical project document and its stored rows."""

from __future__ import annotations

import copy
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping

from .store import (
    CHARACTERS,
    COLLECTIONS,
    EPISODES,
    LOCATIONS,
    SCENES,
    SHOTS,
    EntityRow,
    MetaRecord,
    RowKey,
    StoreSession,
)


@dataclass
class DecomposedDocument:
    """Per-collection row payloads for one document.

    ``rows`` maps every collection name to ``(key, data)`` pairs; ``meta`` is
    what remains of the document once episodes, characters and locations have
    been lifted out.
    """

    meta: Dict[str, Any]
    rows: Dict[str, List[tuple[RowKey, Dict[str, Any]]]] = field(
        default_factory=lambda: {name: [] for name in COLLECTIONS}
    )

    def stamped(self, collection: str, version: int) -> List[EntityRow]:
        return [
            EntityRow(key=key, data=data, updated_at=version)
            for key, data in self.rows[collection]
        ]


def decompose(document: Mapping[str, Any]) -> DecomposedDocument:
    """Split ``document`` into meta data plus one row per stored entity."""

    meta = {
        key: copy.deepcopy(value)
        for key, value in document.items()
        if key != "episodes"
    }
    context = dict(meta.get("context") or {})
    characters = context.pop("characters", None) or []
    locations = context.pop("locations", None) or []
    if "context" in meta:
        meta["context"] = context

    decomposed = DecomposedDocument(meta=meta)
    for episode in document.get("episodes") or []:
        episode_id = episode["id"]
        episode_data = {
            key: copy.deepcopy(value)
            for key, value in episode.items()
            if key not in ("scenes", "shots")
        }
        decomposed.rows[EPISODES].append(((episode_id,), episode_data))
        for scene in episode.get("scenes") or []:
            decomposed.rows[SCENES].append(
                ((episode_id, scene["id"]), copy.deepcopy(dict(scene)))
            )
        for shot in episode.get("shots") or []:
            decomposed.rows[SHOTS].append(
                ((episode_id, shot["id"]), copy.deepcopy(dict(shot)))
            )

    for character in characters:
        decomposed.rows[CHARACTERS].append(
            ((character["id"],), copy.deepcopy(dict(character)))
        )
    for location in locations:
        decomposed.rows[LOCATIONS].append(
            ((location["id"],), copy.deepcopy(dict(location)))
        )
    return decomposed


async def assemble(session: StoreSession, owner_id: str) -> Dict[str, Any] | None:
    """Rebuild the full document for ``owner_id``; ``None`` without a meta row."""

    meta = await session.get_meta(owner_id)
    if meta is None:
        return None
    return await assemble_from_meta(session, owner_id, meta)


async def assemble_from_meta(
    session: StoreSession, owner_id: str, meta: MetaRecord
) -> Dict[str, Any]:
    """Rebuild the document around an already loaded meta record.

    Episodes, characters and locations come back in ascending id order and
    scenes/shots in ascending ``(episode id, child id)`` order, so identical
    stored state always assembles to identical output.
    """

    document = copy.deepcopy(meta.data)

    scenes_by_episode: Dict[Any, List[Dict[str, Any]]] = defaultdict(list)
    for row in await session.scan_rows(SCENES, owner_id):
        scenes_by_episode[row.key[0]].append(row.data)
    shots_by_episode: Dict[Any, List[Dict[str, Any]]] = defaultdict(list)
    for row in await session.scan_rows(SHOTS, owner_id):
        shots_by_episode[row.key[0]].append(row.data)

    episodes = []
    for row in await session.scan_rows(EPISODES, owner_id):
        episode = dict(row.data)
        episode["scenes"] = scenes_by_episode.get(row.key[0], [])
        episode["shots"] = shots_by_episode.get(row.key[0], [])
        episodes.append(episode)
    document["episodes"] = episodes

    context = dict(document.get("context") or {})
    characters = await session.scan_rows(CHARACTERS, owner_id)
    locations = await session.scan_rows(LOCATIONS, owner_id)
    context["characters"] = [row.data for row in characters]
    context["locations"] = [row.data for row in locations]
    document["context"] = context
    return document


async def replace_document(
    session: StoreSession,
    owner_id: str,
    document: Mapping[str, Any],
    *,
    version: int,
) -> Dict[str, Any]:
    """Destructively replace every stored row with ``document``'s entities.

    Returns the meta data; the caller writes it last through the version
    compare-and-swap so a torn replace never advances the version.
    """

    decomposed = decompose(document)
    for collection in COLLECTIONS:
        await session.clear_collection(collection, owner_id)
        await session.upsert_rows(
            collection, owner_id, decomposed.stamped(collection, version)
        )
    return decomposed.meta


__all__ = [
    "DecomposedDocument",
    "decompose",
    "assemble",
    "assemble_from_meta",
    "replace_document",
]

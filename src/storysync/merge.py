"""Apply partial change sets against the decomposed project rows."""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Mapping, Sequence

from pydantic import BaseModel, ValidationError

from .delta import CharacterUpsert, LocationUpsert, NestedMode, ProjectDelta
from .document import (
    LOCATION_TYPES,
    Character,
    Episode,
    Location,
    ProjectDocument,
    Scene,
    Shot,
    ensure_stable_id,
    invalid_payload_from_validation,
    new_character,
    new_episode,
    new_location,
    new_scene,
    new_shot,
    normalize_form,
    normalize_zone,
)
from .errors import InvalidPayloadError
from .store import (
    CHARACTERS,
    COLLECTIONS,
    EPISODES,
    LOCATIONS,
    SCENES,
    SHOTS,
    EntityRow,
    RowKey,
    StoreSession,
)

logger = logging.getLogger(__name__)

ASSET_LABEL_SEPARATOR = " · "


@dataclass
class MergeResult:
    """Outcome of a delta merge.

    ``meta`` is the merged meta record, still to be written by the caller.
    """

    meta: Dict[str, Any]
    upserted: Dict[str, int] = field(default_factory=dict)
    deleted: Dict[str, int] = field(default_factory=dict)


@dataclass
class _NestedCollection:
    """Describes one repeatable child list (``forms`` or ``zones``)."""

    list_key: str
    name_key: str
    id_prefix: str
    parent_prefix: str
    asset_category: str
    normalize: Callable[[Mapping[str, Any]], Dict[str, Any]]


FORMS = _NestedCollection("forms", "formName", "form", "char", "form", normalize_form)
ZONES = _NestedCollection("zones", "name", "zone", "loc", "zone", normalize_zone)


def merge_nested(
    existing: Sequence[Mapping[str, Any]],
    incoming: Sequence[Mapping[str, Any]] | None,
    mode: NestedMode,
    delete_ids: Iterable[str],
    nested: _NestedCollection,
) -> List[Dict[str, Any]]:
    """Merge or replace a nested child list.

    ``merge`` updates matching ids in place and appends new entries;
    ``replace`` rebuilds the list from ``incoming`` alone. Both modes drop the
    ids in ``delete_ids`` afterwards. ``incoming=None`` only applies deletions.
    """

    deleting = set(delete_ids)
    if incoming is None:
        return [dict(entry) for entry in existing if entry.get("id") not in deleting]

    prepared = [
        {**entry, "id": ensure_stable_id(entry.get("id"), nested.id_prefix)}
        for entry in incoming
    ]

    if mode == "replace":
        rebuilt = [nested.normalize(entry) for entry in prepared]
    else:
        rebuilt = [dict(entry) for entry in existing]
        index_by_id = {
            entry.get("id"): position for position, entry in enumerate(rebuilt)
        }
        for entry in prepared:
            position = index_by_id.get(entry["id"])
            if position is not None:
                rebuilt[position].update(entry)
                continue
            index_by_id[entry["id"]] = len(rebuilt)
            rebuilt.append(nested.normalize(entry))

    return [entry for entry in rebuilt if entry.get("id") not in deleting]


def refresh_design_assets(
    assets: Sequence[Mapping[str, Any]],
    *,
    nested: _NestedCollection,
    parent: Mapping[str, Any],
    removed_ids: Iterable[str],
) -> List[Dict[str, Any]]:
    """Keep design assets consistent with one character or location.

    Assets pointing at a removed nested entry are dropped; assets pointing at
    a surviving entry get ``"<parent name> · <entry name>"`` as their label.
    """

    prefix = f"{parent.get('id')}|"
    removed = set(removed_ids)
    names = {
        entry.get("id"): entry.get(nested.name_key)
        for entry in parent.get(nested.list_key) or []
    }

    refreshed: List[Dict[str, Any]] = []
    for asset in assets:
        ref_id = asset.get("refId")
        if (
            asset.get("category") != nested.asset_category
            or not isinstance(ref_id, str)
            or not ref_id.startswith(prefix)
        ):
            refreshed.append(dict(asset))
            continue
        nested_id = ref_id[len(prefix):]
        if nested_id in removed:
            continue
        name = names.get(nested_id)
        if name:
            label = f"{parent.get('name', '')}{ASSET_LABEL_SEPARATOR}{name}"
            refreshed.append({**asset, "label": label})
        else:
            refreshed.append(dict(asset))
    return refreshed


def prune_parent_assets(
    assets: Sequence[Mapping[str, Any]], *, nested: _NestedCollection, parent_id: str
) -> List[Dict[str, Any]]:
    """Drop every asset that references any child of a deleted parent."""

    prefix = f"{parent_id}|"
    return [
        dict(asset)
        for asset in assets
        if not (
            asset.get("category") == nested.asset_category
            and isinstance(asset.get("refId"), str)
            and asset["refId"].startswith(prefix)
        )
    ]


def reconcile_design_assets(
    previous: Mapping[str, Any] | None, incoming: Mapping[str, Any]
) -> Dict[str, Any]:
    """Drop assets whose character, location, form or zone ``incoming`` removes.

    ``previous`` is the live document being replaced; only entries it had and
    ``incoming`` lacks count as removed.
    """

    assets = incoming.get("designAssets")
    if previous is None or not isinstance(assets, list):
        return dict(incoming)

    previous_context = previous.get("context") or {}
    incoming_context = incoming.get("context") or {}
    for nested, key in ((FORMS, "characters"), (ZONES, "locations")):
        survivors = {
            parent.get("id"): parent for parent in incoming_context.get(key) or []
        }
        for parent in previous_context.get(key) or []:
            survivor = survivors.get(parent.get("id"))
            if survivor is None:
                assets = prune_parent_assets(
                    assets, nested=nested, parent_id=parent.get("id")
                )
                continue
            kept = {entry.get("id") for entry in survivor.get(nested.list_key) or []}
            removed = {
                entry.get("id") for entry in parent.get(nested.list_key) or []
            } - kept
            if removed:
                assets = refresh_design_assets(
                    assets, nested=nested, parent=survivor, removed_ids=removed
                )
    return {**incoming, "designAssets": assets}


def merge_meta(meta: Mapping[str, Any], patch: Mapping[str, Any]) -> Dict[str, Any]:
    """Shallow-merge ``patch`` into ``meta`` with one nested level for ``context``."""

    merged = copy.deepcopy(dict(meta))
    for key, value in patch.items():
        if key == "context" and isinstance(value, Mapping):
            context = dict(merged.get("context") or {})
            context.update(copy.deepcopy(dict(value)))
            merged["context"] = context
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def check_row(model: type[BaseModel], row: Mapping[str, Any], *, path: str) -> None:
    """Reject a merged row that the full document validator would refuse."""

    try:
        model.model_validate(row)
    except ValidationError as exc:
        raise invalid_payload_from_validation(exc, root=path, prefix=path) from exc


class DeltaMerger:
    """Plans a delta against the stored rows, then writes the plan.

    Planning reads rows and performs every check that can reject the delta, so
    nothing is written unless the whole delta is acceptable.
    """

    def __init__(self, session: StoreSession, owner_id: str) -> None:
        self._session = session
        self._owner_id = owner_id
        self._upserts: Dict[str, Dict[RowKey, Dict[str, Any]]] = {
            name: {} for name in COLLECTIONS
        }
        self._deletes: Dict[str, List[RowKey]] = {name: [] for name in COLLECTIONS}
        self._cascade: List[int] = []
        self._planned_meta: Dict[str, Any] | None = None

    async def plan(
        self, delta: ProjectDelta, *, meta: Mapping[str, Any] | None
    ) -> Dict[str, Any]:
        """Check ``delta`` against the stored rows and return the merged meta.

        Nothing is written; :meth:`write` applies the planned rows.
        """

        merged_meta = merge_meta(meta or {}, delta.meta or {})
        assets = merged_meta.get("designAssets")
        tracks_assets = isinstance(assets, list)
        asset_list: List[Dict[str, Any]] = list(assets) if tracks_assets else []

        await self._plan_episodes(delta)
        await self._plan_children(delta)
        asset_list = await self._plan_parents(
            CHARACTERS,
            FORMS,
            delta.characters or [],
            mode=delta.formsMode,
            deletions=delta.formsToDelete,
            assets=asset_list,
        )
        asset_list = await self._plan_parents(
            LOCATIONS,
            ZONES,
            delta.locations or [],
            mode=delta.zonesMode,
            deletions=delta.zonesToDelete,
            assets=asset_list,
        )
        asset_list = self._plan_deletions(delta, asset_list)

        if tracks_assets:
            merged_meta["designAssets"] = asset_list
        check_row(ProjectDocument, {**merged_meta, "episodes": []}, path="delta.meta")
        self._planned_meta = merged_meta
        return merged_meta

    async def write(self, version: int) -> MergeResult:
        """Write the planned rows stamped with ``version``."""

        if self._planned_meta is None:
            raise RuntimeError("plan() must be called before write()")
        result = MergeResult(meta=self._planned_meta)
        await self._write(version, result)
        logger.debug(
            "Merged delta for %s: upserted=%s deleted=%s",
            self._owner_id,
            result.upserted,
            result.deleted,
        )
        return result

    async def _rows(self, collection: str) -> Dict[RowKey, Dict[str, Any]]:
        rows = await self._session.scan_rows(collection, self._owner_id)
        return {row.key: row.data for row in rows}

    async def _plan_episodes(self, delta: ProjectDelta) -> None:
        if not delta.episodes:
            return
        existing = await self._rows(EPISODES)
        for index, upsert in enumerate(delta.episodes):
            key = (upsert.id,)
            current = self._upserts[EPISODES].get(key) or existing.get(key)
            base = dict(current) if current is not None else new_episode(upsert.id)
            base.update(upsert.fields(exclude=frozenset({"scenes", "shots"})))
            check_row(
                Episode,
                {**base, "scenes": [], "shots": []},
                path=f"delta.episodes[{index}]",
            )
            self._upserts[EPISODES][key] = base

    async def _plan_children(self, delta: ProjectDelta) -> None:
        if not delta.scenes and not delta.shots:
            return

        known_episodes = set(await self._rows(EPISODES)) | set(self._upserts[EPISODES])
        for collection, upserts, factory, model in (
            (SCENES, delta.scenes or [], new_scene, Scene),
            (SHOTS, delta.shots or [], new_shot, Shot),
        ):
            if not upserts:
                continue
            existing = await self._rows(collection)
            for index, upsert in enumerate(upserts):
                if (upsert.episodeId,) not in known_episodes:
                    path = f"delta.{collection}[{index}].episodeId"
                    raise InvalidPayloadError(
                        f"{path} references unknown episode {upsert.episodeId}",
                        path=path,
                    )
                key = (upsert.episodeId, upsert.id)
                current = self._upserts[collection].get(key) or existing.get(key)
                base = dict(current) if current is not None else factory(upsert.id)
                base.update(upsert.fields(exclude=frozenset({"episodeId"})))
                check_row(model, base, path=f"delta.{collection}[{index}]")
                self._upserts[collection][key] = base

    async def _plan_parents(
        self,
        collection: str,
        nested: _NestedCollection,
        upserts: Sequence[CharacterUpsert | LocationUpsert],
        *,
        mode: NestedMode,
        deletions: Mapping[str, Sequence[str]],
        assets: List[Dict[str, Any]],
    ) -> List[Dict[str, Any]]:
        if not upserts and not deletions:
            return assets

        existing = await self._rows(collection)
        planned = self._upserts[collection]
        mode_key = f"{nested.list_key}Mode"
        delete_key = f"{nested.list_key}ToDelete"
        control_keys = frozenset({"id", nested.list_key, mode_key, delete_key})
        handled: set[str] = set()

        for index, upsert in enumerate(upserts):
            visible = {**existing, **planned}
            current_key = self._match_parent(visible, upsert)
            if current_key is not None:
                parent_id = current_key[0]
                base = dict(visible[current_key])
            else:
                parent_id = upsert.id or ensure_stable_id(None, nested.parent_prefix)
                name = (upsert.name or "").strip()
                base = (
                    new_character(parent_id, name)
                    if collection == CHARACTERS
                    else new_location(parent_id, name)
                )

            base.update(upsert.fields(exclude=control_keys))
            if collection == LOCATIONS and base.get("type") not in LOCATION_TYPES:
                base["type"] = "secondary"

            incoming = getattr(upsert, nested.list_key)
            nested_mode = getattr(upsert, mode_key) or mode
            to_delete = list(getattr(upsert, delete_key) or ())
            to_delete.extend(deletions.get(parent_id, ()))
            assets = self._merge_parent_nested(
                base, nested, incoming, nested_mode, to_delete, assets
            )
            check_row(
                Character if collection == CHARACTERS else Location,
                base,
                path=f"delta.{collection}[{index}]",
            )
            planned[(parent_id,)] = base
            handled.add(parent_id)

        for parent_id, to_delete in deletions.items():
            if parent_id in handled or not to_delete:
                continue
            current = existing.get((parent_id,))
            if current is None:
                continue
            base = dict(current)
            assets = self._merge_parent_nested(
                base, nested, None, mode, to_delete, assets
            )
            planned[(parent_id,)] = base

        return assets

    def _match_parent(
        self,
        existing: Mapping[RowKey, Mapping[str, Any]],
        upsert: CharacterUpsert | LocationUpsert,
    ) -> RowKey | None:
        if upsert.id:
            key = (upsert.id,)
            return key if key in existing else None
        name = (upsert.name or "").strip()
        for key, data in existing.items():
            if data.get("name") == name:
                return key
        return None

    def _merge_parent_nested(
        self,
        parent: Dict[str, Any],
        nested: _NestedCollection,
        incoming: Sequence[Mapping[str, Any]] | None,
        mode: NestedMode,
        to_delete: Sequence[str],
        assets: List[Dict[str, Any]],
    ) -> List[Dict[str, Any]]:
        before = list(parent.get(nested.list_key) or [])
        if incoming is not None or to_delete:
            parent[nested.list_key] = merge_nested(
                before, incoming, mode, to_delete, nested
            )
        after_ids = {entry.get("id") for entry in parent.get(nested.list_key) or []}
        removed = {entry.get("id") for entry in before} - after_ids
        removed.update(entry_id for entry_id in to_delete if entry_id not in after_ids)
        return refresh_design_assets(
            assets, nested=nested, parent=parent, removed_ids=removed
        )

    def _plan_deletions(
        self, delta: ProjectDelta, assets: List[Dict[str, Any]]
    ) -> List[Dict[str, Any]]:
        deleted = delta.deleted
        if deleted is None:
            return assets

        for episode_id in deleted.episodes:
            self._deletes[EPISODES].append((episode_id,))
            self._cascade.append(episode_id)
        for scene in deleted.scenes:
            self._deletes[SCENES].append((scene.episodeId, scene.sceneId))
        for shot in deleted.shots:
            self._deletes[SHOTS].append((shot.episodeId, shot.shotId))
        for character_id in deleted.characters:
            self._deletes[CHARACTERS].append((character_id,))
            assets = prune_parent_assets(assets, nested=FORMS, parent_id=character_id)
        for location_id in deleted.locations:
            self._deletes[LOCATIONS].append((location_id,))
            assets = prune_parent_assets(assets, nested=ZONES, parent_id=location_id)

        # Deletions are authoritative over upserts in the same delta.
        for collection in COLLECTIONS:
            for key in self._deletes[collection]:
                self._upserts[collection].pop(key, None)
        cascaded = set(self._cascade)
        for collection in (SCENES, SHOTS):
            for key in [key for key in self._upserts[collection] if key[0] in cascaded]:
                del self._upserts[collection][key]
        return assets

    async def _write(self, version: int, result: MergeResult) -> None:
        session = self._session
        for collection in COLLECTIONS:
            rows = [
                EntityRow(key=key, data=data, updated_at=version)
                for key, data in self._upserts[collection].items()
            ]
            if rows:
                await session.upsert_rows(collection, self._owner_id, rows)
                result.upserted[collection] = len(rows)

        for collection in COLLECTIONS:
            keys = self._deletes[collection]
            if keys:
                await session.delete_rows(collection, self._owner_id, keys)
                result.deleted[collection] = len(keys)
        if self._cascade:
            await session.delete_children(SCENES, self._owner_id, self._cascade)
            await session.delete_children(SHOTS, self._owner_id, self._cascade)


async def apply_delta(
    session: StoreSession,
    owner_id: str,
    delta: ProjectDelta,
    *,
    meta: Mapping[str, Any] | None,
    version: int,
) -> MergeResult:
    """Apply ``delta`` to the rows of ``owner_id`` stamped with ``version``.

    The returned meta must be written last, through the version
    compare-and-swap, by the caller.
    """

    merger = DeltaMerger(session, owner_id)
    await merger.plan(delta, meta=meta)
    return await merger.write(version)


__all__ = [
    "MergeResult",
    "DeltaMerger",
    "apply_delta",
    "merge_nested",
    "merge_meta",
    "refresh_design_assets",
    "prune_parent_assets",
    "reconcile_design_assets",
    "check_row",
    "FORMS",
    "ZONES",
]

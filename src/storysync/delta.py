"""Schema for partial change sets submitted instead of a full document."""

from __future__ import annotations

from typing import Any, Literal, Mapping

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    StrictInt,
    StrictStr,
    ValidationError,
    model_validator,
)

from .document import PROJECT_PATCH_KEYS, invalid_payload_from_validation
from .errors import InvalidPayloadError

NestedMode = Literal["merge", "replace"]

META_PATCH_KEYS = frozenset(key for key in PROJECT_PATCH_KEYS if key != "episodes")

# Collections managed through upsert lists rather than the meta patch.
_CONTEXT_COLLECTION_KEYS = ("characters", "locations")


class _Upsert(BaseModel):
    """Upsert entries keep every extra field; unset fields mean "no change"."""

    model_config = ConfigDict(extra="allow")

    def fields(self, *, exclude: frozenset[str] = frozenset()) -> dict[str, Any]:
        """Return only the fields the client actually sent."""

        payload = self.model_dump(mode="json", exclude_unset=True)
        return {key: value for key, value in payload.items() if key not in exclude}


class EpisodeUpsert(_Upsert):
    id: StrictInt
    title: StrictStr | None = None
    content: StrictStr | None = None
    status: StrictStr | None = None


class SceneUpsert(_Upsert):
    episodeId: StrictInt
    id: StrictStr


class ShotUpsert(_Upsert):
    episodeId: StrictInt
    id: StrictStr


class CharacterUpsert(_Upsert):
    id: StrictStr | None = None
    name: StrictStr | None = None
    forms: list[dict[str, Any]] | None = None
    formsMode: NestedMode | None = None
    formsToDelete: list[StrictStr] | None = None

    @model_validator(mode="after")
    def _require_identity(self) -> "CharacterUpsert":
        if not self.id and not (self.name and self.name.strip()):
            raise ValueError("character upsert requires an id or a name")
        return self


class LocationUpsert(_Upsert):
    id: StrictStr | None = None
    name: StrictStr | None = None
    zones: list[dict[str, Any]] | None = None
    zonesMode: NestedMode | None = None
    zonesToDelete: list[StrictStr] | None = None

    @model_validator(mode="after")
    def _require_identity(self) -> "LocationUpsert":
        if not self.id and not (self.name and self.name.strip()):
            raise ValueError("location upsert requires an id or a name")
        return self


class SceneKey(BaseModel):
    model_config = ConfigDict(extra="forbid")

    episodeId: StrictInt
    sceneId: StrictStr


class ShotKey(BaseModel):
    model_config = ConfigDict(extra="forbid")

    episodeId: StrictInt
    shotId: StrictStr


class DeletionManifest(BaseModel):
    """Entities removed by a delta; the only delta path that deletes rows."""

    model_config = ConfigDict(extra="forbid")

    episodes: list[StrictInt] = Field(default_factory=list)
    scenes: list[SceneKey] = Field(default_factory=list)
    shots: list[ShotKey] = Field(default_factory=list)
    characters: list[StrictStr] = Field(default_factory=list)
    locations: list[StrictStr] = Field(default_factory=list)

    def is_empty(self) -> bool:
        return not (
            self.episodes
            or self.scenes
            or self.shots
            or self.characters
            or self.locations
        )


class ProjectDelta(BaseModel):
    """Partial change set applied against the decomposed project rows."""

    model_config = ConfigDict(extra="forbid")

    meta: dict[str, Any] | None = None
    episodes: list[EpisodeUpsert] | None = None
    scenes: list[SceneUpsert] | None = None
    shots: list[ShotUpsert] | None = None
    characters: list[CharacterUpsert] | None = None
    locations: list[LocationUpsert] | None = None
    deleted: DeletionManifest | None = None
    formsMode: NestedMode = "merge"
    zonesMode: NestedMode = "merge"
    formsToDelete: dict[str, list[StrictStr]] = Field(default_factory=dict)
    zonesToDelete: dict[str, list[StrictStr]] = Field(default_factory=dict)

    def is_empty(self) -> bool:
        """Return ``True`` when applying the delta cannot change anything."""

        if self.meta:
            return False
        for upserts in (
            self.episodes,
            self.scenes,
            self.shots,
            self.characters,
            self.locations,
        ):
            if upserts:
                return False
        if self.formsToDelete or self.zonesToDelete:
            return False
        return self.deleted is None or self.deleted.is_empty()


def parse_delta(payload: Any) -> ProjectDelta:
    """Validate ``payload`` as a :class:`ProjectDelta`.

    Raises:
        InvalidPayloadError: With a ``delta.``-prefixed field path.
    """

    if not isinstance(payload, Mapping):
        raise InvalidPayloadError("delta is not an object", path="delta")

    try:
        delta = ProjectDelta.model_validate(dict(payload))
    except ValidationError as exc:
        raise invalid_payload_from_validation(
            exc, root="delta", prefix="delta"
        ) from exc

    if delta.meta is not None:
        _validate_meta_patch(delta.meta)
    return delta


def _validate_meta_patch(meta: Mapping[str, Any]) -> None:
    for key in meta:
        if key not in META_PATCH_KEYS:
            raise InvalidPayloadError(
                f"delta.meta has invalid key: {key}", path=f"delta.meta.{key}"
            )

    context = meta.get("context")
    if context is None:
        return
    if not isinstance(context, Mapping):
        raise InvalidPayloadError(
            "delta.meta.context is not an object", path="delta.meta.context"
        )
    for key in _CONTEXT_COLLECTION_KEYS:
        if key in context:
            raise InvalidPayloadError(
                f"delta.meta.context.{key} must be sent as a {key} upsert list",
                path=f"delta.meta.context.{key}",
            )
    summary = context.get("projectSummary")
    if summary is not None and not isinstance(summary, str):
        raise InvalidPayloadError(
            "delta.meta.context.projectSummary is not a string",
            path="delta.meta.context.projectSummary",
        )
    summaries = context.get("episodeSummaries")
    if summaries is not None and not isinstance(summaries, list):
        raise InvalidPayloadError(
            "delta.meta.context.episodeSummaries is not an array",
            path="delta.meta.context.episodeSummaries",
        )


__all__ = [
    "META_PATCH_KEYS",
    "NestedMode",
    "ProjectDelta",
    "DeletionManifest",
    "EpisodeUpsert",
    "SceneUpsert",
    "ShotUpsert",
    "CharacterUpsert",
    "LocationUpsert",
    "SceneKey",
    "ShotKey",
    "parse_delta",
]

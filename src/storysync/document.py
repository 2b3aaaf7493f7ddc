"""Typed schema for the project document shared between devices."""

from __future__ import annotations

import uuid
from typing import Any, Iterable, Mapping, Sequence

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    StrictBool,
    StrictFloat,
    StrictInt,
    StrictStr,
    ValidationError,
    model_validator,
)

from .errors import InvalidPayloadError

DEFAULT_NESTED_NAME = "默认"

# Top-level document keys tracked by the change feed.
PROJECT_PATCH_KEYS: tuple[str, ...] = (
    "fileName",
    "rawScript",
    "episodes",
    "context",
    "contextUsage",
    "phase1Usage",
    "phase4Usage",
    "phase5Usage",
    "shotGuide",
    "soraGuide",
    "dramaGuide",
    "globalStyleGuide",
    "stats",
    "designAssets",
)

FORM_REQUIRED_FIELDS = ("formName", "episodeRange", "description", "visualTags")
ZONE_REQUIRED_FIELDS = (
    "name",
    "kind",
    "episodeRange",
    "layoutNotes",
    "keyProps",
    "lightingWeather",
    "materialPalette",
)
ZONE_KINDS = ("interior", "exterior", "transition", "unspecified")
LOCATION_TYPES = ("core", "secondary")
SHOT_REQUIRED_FIELDS = (
    "id",
    "duration",
    "shotType",
    "movement",
    "description",
    "dialogue",
    "soraPrompt",
)


class _DocumentModel(BaseModel):
    """Base model keeping unknown fields so documents round-trip untouched."""

    model_config = ConfigDict(extra="allow")


class Scene(_DocumentModel):
    id: StrictStr
    title: StrictStr = ""
    content: StrictStr = ""


class Shot(_DocumentModel):
    id: StrictStr
    duration: StrictStr
    shotType: StrictStr
    movement: StrictStr
    description: StrictStr
    dialogue: StrictStr
    soraPrompt: StrictStr
    difficulty: StrictInt | StrictFloat | None = None
    storyboardPrompt: StrictStr | None = None
    videoStatus: StrictStr | None = None


class Episode(_DocumentModel):
    id: StrictInt
    title: StrictStr
    content: StrictStr
    status: StrictStr | None = None
    scenes: list[Scene] = Field(default_factory=list)
    shots: list[Shot]


class CharacterForm(_DocumentModel):
    id: StrictStr | None = None


class Character(_DocumentModel):
    id: StrictStr | None = None
    name: StrictStr
    role: StrictStr
    isMain: StrictBool
    forms: list[CharacterForm] | None = None

    @model_validator(mode="before")
    @classmethod
    def _default_id_to_name(cls, data: Any) -> Any:
        if isinstance(data, dict) and not data.get("id") and isinstance(
            data.get("name"), str
        ):
            data = {**data, "id": data["name"]}
        return data


class LocationZone(_DocumentModel):
    id: StrictStr | None = None


class Location(_DocumentModel):
    id: StrictStr | None = None
    name: StrictStr
    zones: list[LocationZone] | None = None

    @model_validator(mode="before")
    @classmethod
    def _default_id_to_name(cls, data: Any) -> Any:
        if isinstance(data, dict) and not data.get("id") and isinstance(
            data.get("name"), str
        ):
            data = {**data, "id": data["name"]}
        return data


class ProjectContext(_DocumentModel):
    projectSummary: StrictStr | None = None
    characters: list[Character] | None = None
    locations: list[Location] | None = None


class DesignAsset(_DocumentModel):
    id: StrictStr | None = None
    category: StrictStr | None = None
    refId: StrictStr | None = None
    label: StrictStr | None = None


class ProjectDocument(_DocumentModel):
    """Validated project document.

    Only the fields that the sync engine relies on are typed; everything else
    is carried through as free-form JSON.
    """

    fileName: StrictStr | None = None
    rawScript: StrictStr | None = None
    episodes: list[Episode]
    context: ProjectContext | None = None
    designAssets: list[DesignAsset] | None = None

    def to_payload(self) -> dict[str, Any]:
        """Return the JSON representation, omitting fields the caller never set."""

        return self.model_dump(mode="json", exclude_unset=True)


_TYPE_NAMES = {
    "string_type": "a string",
    "int_type": "a number",
    "int_from_float": "a number",
    "float_type": "a number",
    "bool_type": "a boolean",
    "list_type": "an array",
    "dict_type": "an object",
    "model_type": "an object",
    "model_attributes_type": "an object",
}


def format_field_path(loc: Sequence[str | int], *, root: str = "projectData") -> str:
    """Render a pydantic error location as ``episodes[0].shots[1].id``."""

    path = ""
    for part in loc:
        if isinstance(part, int):
            path += f"[{part}]"
        elif path:
            path += f".{part}"
        else:
            path = str(part)
    return path or root


def invalid_payload_from_validation(
    exc: ValidationError, *, root: str = "projectData", prefix: str | None = None
) -> InvalidPayloadError:
    """Convert the first pydantic error into an :class:`InvalidPayloadError`.

    ``prefix`` is prepended to the error location, ``root`` names the payload
    when the error concerns the payload itself.
    """

    error = exc.errors()[0]
    loc = tuple(error.get("loc", ()))
    if prefix is not None:
        loc = (prefix, *loc)
    path = format_field_path(loc, root=root)
    error_type = error.get("type", "")
    if error_type == "missing":
        message = f"{path} is missing"
    elif error_type in _TYPE_NAMES:
        message = f"{path} is not {_TYPE_NAMES[error_type]}"
    elif error_type == "extra_forbidden":
        message = f"{path} is not an allowed key"
    else:
        message = f"{path}: {error.get('msg', 'invalid value')}"
    return InvalidPayloadError(message, path=path)


def validate_document(payload: Any) -> ProjectDocument:
    """Validate ``payload`` as a full project document.

    Missing form and zone identifiers are filled with generated stable ids so
    every nested entry can be addressed by later deltas.

    Raises:
        InvalidPayloadError: With the failing field path when the structure is
            wrong or an identifier is duplicated within its scope.
    """

    if not isinstance(payload, Mapping):
        raise InvalidPayloadError("projectData is not an object", path="projectData")

    try:
        document = ProjectDocument.model_validate(dict(payload))
    except ValidationError as exc:
        raise invalid_payload_from_validation(exc) from exc

    _check_unique(
        (episode.id for episode in document.episodes), path="episodes", label="id"
    )
    for index, episode in enumerate(document.episodes):
        _check_unique(
            (scene.id for scene in episode.scenes),
            path=f"episodes[{index}].scenes",
            label="id",
        )
        _check_unique(
            (shot.id for shot in episode.shots),
            path=f"episodes[{index}].shots",
            label="id",
        )

    context = document.context
    if context is not None:
        for index, character in enumerate(context.characters or ()):
            for form in character.forms or ():
                if not form.id:
                    form.id = ensure_stable_id(None, "form")
            _check_unique(
                (form.id for form in character.forms or ()),
                path=f"context.characters[{index}].forms",
                label="id",
            )
        for index, location in enumerate(context.locations or ()):
            for zone in location.zones or ():
                if not zone.id:
                    zone.id = ensure_stable_id(None, "zone")
            _check_unique(
                (zone.id for zone in location.zones or ()),
                path=f"context.locations[{index}].zones",
                label="id",
            )
        _check_unique(
            (character.id for character in context.characters or ()),
            path="context.characters",
            label="id",
        )
        _check_unique(
            (location.id for location in context.locations or ()),
            path="context.locations",
            label="id",
        )

    return document


def _check_unique(values: Iterable[Any], *, path: str, label: str) -> None:
    seen: set[Any] = set()
    for index, value in enumerate(values):
        if value in seen:
            field_path = f"{path}[{index}].{label}"
            raise InvalidPayloadError(
                f"{field_path} duplicates an existing id ({value!r})", path=field_path
            )
        seen.add(value)


def ensure_stable_id(value: Any, prefix: str) -> str:
    """Return ``value`` when it is a usable id, otherwise a generated one."""

    if isinstance(value, str) and value.strip():
        return value
    return f"{prefix}-{uuid.uuid4()}"


def normalize_form(form: Mapping[str, Any]) -> dict[str, Any]:
    """Build a complete character form, filling defaults for omitted fields."""

    normalized = {key: value for key, value in form.items() if value is not None}
    normalized["id"] = ensure_stable_id(form.get("id"), "form")
    normalized["formName"] = form.get("formName") or DEFAULT_NESTED_NAME
    for key in FORM_REQUIRED_FIELDS[1:]:
        normalized[key] = form.get(key) or ""
    return normalized


def normalize_zone(zone: Mapping[str, Any]) -> dict[str, Any]:
    """Build a complete location zone, filling defaults for omitted fields."""

    kind = zone.get("kind")
    normalized = {key: value for key, value in zone.items() if value is not None}
    normalized["id"] = ensure_stable_id(zone.get("id"), "zone")
    normalized["name"] = zone.get("name") or DEFAULT_NESTED_NAME
    normalized["kind"] = kind if kind in ZONE_KINDS else "unspecified"
    for key in ZONE_REQUIRED_FIELDS[2:]:
        normalized[key] = zone.get(key) or ""
    return normalized


def new_character(character_id: str, name: str) -> dict[str, Any]:
    return {
        "id": character_id,
        "name": name,
        "role": "",
        "isMain": False,
        "bio": "",
        "forms": [],
    }


def new_location(location_id: str, name: str) -> dict[str, Any]:
    return {
        "id": location_id,
        "name": name,
        "type": "secondary",
        "description": "",
        "visuals": "",
        "zones": [],
    }


def new_episode(episode_id: int) -> dict[str, Any]:
    return {"id": episode_id, "title": "", "content": "", "status": "pending"}


def new_scene(scene_id: str) -> dict[str, Any]:
    return {"id": scene_id, "title": "", "content": ""}


def new_shot(shot_id: str) -> dict[str, Any]:
    shot = {key: "" for key in SHOT_REQUIRED_FIELDS}
    shot["id"] = shot_id
    return shot


__all__ = [
    "PROJECT_PATCH_KEYS",
    "ProjectDocument",
    "Episode",
    "Scene",
    "Shot",
    "Character",
    "CharacterForm",
    "Location",
    "LocationZone",
    "ProjectContext",
    "DesignAsset",
    "validate_document",
    "format_field_path",
    "invalid_payload_from_validation",
    "ensure_stable_id",
    "normalize_form",
    "normalize_zone",
    "new_character",
    "new_location",
    "new_episode",
    "new_scene",
    "new_shot",
]

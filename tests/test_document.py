from __future__ import annotations

from typing import Any

import pytest

from storysync.document import (
    DEFAULT_NESTED_NAME,
    ensure_stable_id,
    format_field_path,
    new_shot,
    normalize_form,
    normalize_zone,
    validate_document,
)
from storysync.errors import InvalidPayloadError


def test_validate_document_accepts_sample_and_preserves_extras(
    sample_document: dict[str, Any],
) -> None:
    sample_document["episodes"][0]["shots"][0]["customNote"] = "keep me"
    sample_document["contextUsage"] = {"tokens": 12}

    payload = validate_document(sample_document).to_payload()

    assert payload == sample_document
    assert payload["episodes"][0]["shots"][0]["customNote"] == "keep me"


def test_validate_document_rejects_non_object() -> None:
    with pytest.raises(InvalidPayloadError) as excinfo:
        validate_document(["not", "a", "document"])

    assert excinfo.value.path == "projectData"


def test_validate_document_reports_missing_field_path(
    sample_document: dict[str, Any],
) -> None:
    del sample_document["episodes"][0]["shots"][1]["duration"]

    with pytest.raises(InvalidPayloadError) as excinfo:
        validate_document(sample_document)

    assert excinfo.value.path == "episodes[0].shots[1].duration"
    assert str(excinfo.value) == "episodes[0].shots[1].duration is missing"
    assert excinfo.value.reason == "invalid_payload"


def test_validate_document_reports_wrong_type(sample_document: dict[str, Any]) -> None:
    sample_document["episodes"][1]["id"] = "three"

    with pytest.raises(InvalidPayloadError) as excinfo:
        validate_document(sample_document)

    assert excinfo.value.path == "episodes[1].id"
    assert "is not a number" in str(excinfo.value)


def test_validate_document_requires_episode_list() -> None:
    with pytest.raises(InvalidPayloadError) as excinfo:
        validate_document({"fileName": "x"})

    assert excinfo.value.path == "episodes"


def test_validate_document_rejects_duplicate_shot_ids(
    sample_document: dict[str, Any],
) -> None:
    sample_document["episodes"][0]["shots"][1]["id"] = "1-1-1"

    with pytest.raises(InvalidPayloadError) as excinfo:
        validate_document(sample_document)

    assert excinfo.value.path == "episodes[0].shots[1].id"


def test_validate_document_fills_missing_nested_ids(
    sample_document: dict[str, Any],
) -> None:
    del sample_document["context"]["characters"][0]["forms"][0]["id"]
    del sample_document["context"]["locations"][0]["zones"][0]["id"]

    payload = validate_document(sample_document).to_payload()

    form_id = payload["context"]["characters"][0]["forms"][0]["id"]
    zone_id = payload["context"]["locations"][0]["zones"][0]["id"]
    assert form_id.startswith("form-")
    assert zone_id.startswith("zone-")


def test_character_without_id_uses_name(sample_document: dict[str, Any]) -> None:
    del sample_document["context"]["characters"][1]["id"]

    payload = validate_document(sample_document).to_payload()

    assert payload["context"]["characters"][1]["id"] == "Bo"


def test_format_field_path_renders_indices() -> None:
    assert format_field_path(("episodes", 0, "shots", 2, "id")) == "episodes[0].shots[2].id"
    assert format_field_path(()) == "projectData"
    assert format_field_path((), root="delta") == "delta"


def test_ensure_stable_id_keeps_usable_values() -> None:
    assert ensure_stable_id("form-1", "form") == "form-1"
    generated = ensure_stable_id("   ", "zone")
    assert generated.startswith("zone-")
    assert generated != ensure_stable_id(None, "zone")


def test_normalize_form_fills_defaults_and_keeps_extras() -> None:
    form = normalize_form({"description": "Armour", "hair": "short", "styleRef": None})

    assert form["formName"] == DEFAULT_NESTED_NAME
    assert form["id"].startswith("form-")
    assert form["description"] == "Armour"
    assert form["episodeRange"] == ""
    assert form["visualTags"] == ""
    assert form["hair"] == "short"
    assert "styleRef" not in form


def test_normalize_zone_coerces_unknown_kind() -> None:
    zone = normalize_zone({"id": "zone-1", "name": "Roof", "kind": "orbital"})

    assert zone["id"] == "zone-1"
    assert zone["kind"] == "unspecified"
    assert zone["layoutNotes"] == ""


def test_new_shot_has_every_required_field() -> None:
    shot = new_shot("9-1-1")

    assert shot["id"] == "9-1-1"
    assert shot["soraPrompt"] == ""
    assert set(shot) == {
        "id",
        "duration",
        "shotType",
        "movement",
        "description",
        "dialogue",
        "soraPrompt",
    }

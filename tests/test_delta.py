from __future__ import annotations

import pytest

from storysync.delta import ProjectDelta, parse_delta
from storysync.errors import InvalidPayloadError


def test_parse_delta_accepts_full_change_set() -> None:
    delta = parse_delta(
        {
            "meta": {"fileName": "renamed.txt", "context": {"projectSummary": "New"}},
            "episodes": [{"id": 2, "title": "Two"}],
            "scenes": [{"episodeId": 2, "id": "2-1", "title": "Opening"}],
            "shots": [{"episodeId": 2, "id": "2-1-1", "dialogue": "Go."}],
            "characters": [
                {
                    "id": "char-ada",
                    "forms": [{"id": "form-c", "formName": "Night"}],
                    "formsMode": "replace",
                    "formsToDelete": ["form-a"],
                }
            ],
            "locations": [{"name": "Harbour"}],
            "deleted": {
                "episodes": [5],
                "scenes": [{"episodeId": 1, "sceneId": "1-2"}],
                "shots": [{"episodeId": 1, "shotId": "1-1-2"}],
                "characters": ["char-bo"],
                "locations": [],
            },
            "zonesToDelete": {"loc-vault": ["zone-door"]},
        }
    )

    assert isinstance(delta, ProjectDelta)
    assert delta.episodes[0].fields() == {"id": 2, "title": "Two"}
    assert delta.shots[0].fields(exclude=frozenset({"episodeId"})) == {
        "id": "2-1-1",
        "dialogue": "Go.",
    }
    assert delta.characters[0].formsMode == "replace"
    assert delta.formsMode == "merge"
    assert delta.deleted.scenes[0].sceneId == "1-2"
    assert not delta.is_empty()


def test_empty_delta_is_empty() -> None:
    assert parse_delta({}).is_empty()
    assert parse_delta({"deleted": {}}).is_empty()
    assert not parse_delta({"zonesToDelete": {"loc-1": ["zone-1"]}}).is_empty()


def test_parse_delta_rejects_non_object() -> None:
    with pytest.raises(InvalidPayloadError) as excinfo:
        parse_delta("nope")

    assert excinfo.value.path == "delta"


def test_parse_delta_rejects_unknown_top_level_key() -> None:
    with pytest.raises(InvalidPayloadError) as excinfo:
        parse_delta({"chapters": []})

    assert excinfo.value.path == "delta.chapters"
    assert "not an allowed key" in str(excinfo.value)


def test_parse_delta_reports_nested_type_errors() -> None:
    with pytest.raises(InvalidPayloadError) as excinfo:
        parse_delta({"scenes": [{"episodeId": "1", "id": "1-1"}]})

    assert excinfo.value.path == "delta.scenes[0].episodeId"


def test_parse_delta_rejects_unknown_meta_key() -> None:
    with pytest.raises(InvalidPayloadError) as excinfo:
        parse_delta({"meta": {"episodes": []}})

    assert excinfo.value.path == "delta.meta.episodes"


def test_parse_delta_rejects_context_collections_in_meta() -> None:
    with pytest.raises(InvalidPayloadError) as excinfo:
        parse_delta({"meta": {"context": {"characters": []}}})

    assert excinfo.value.path == "delta.meta.context.characters"


def test_parse_delta_checks_context_summary_types() -> None:
    with pytest.raises(InvalidPayloadError) as excinfo:
        parse_delta({"meta": {"context": {"projectSummary": 3}}})

    assert excinfo.value.path == "delta.meta.context.projectSummary"


def test_character_upsert_needs_id_or_name() -> None:
    with pytest.raises(InvalidPayloadError) as excinfo:
        parse_delta({"characters": [{"role": "extra"}]})

    assert excinfo.value.path == "delta.characters[0]"


def test_invalid_nested_mode_is_rejected() -> None:
    with pytest.raises(InvalidPayloadError) as excinfo:
        parse_delta({"formsMode": "append"})

    assert excinfo.value.path == "delta.formsMode"

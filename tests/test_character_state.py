# tests/test_character_state.py
import pytest

from context.character_state import (
    apply_deltas,
    build_character_context,
    initialize_from_profiles,
    manual_update,
    normalize_field_path,
    parse_character_changes,
    validate_consistency,
)
from models.character_models import CharacterDelta
from models.project_models import CharacterProfile


def test_empty_deltas_return_equal_registry(registry):
    updated = apply_deltas(registry, [], 5)
    assert updated == registry
    assert updated is not registry


def test_apply_deltas_leaves_input_untouched(registry):
    before = registry.model_dump()
    deltas = [
        CharacterDelta(character_id="mara", field="physical.location", new_value="the north wall"),
        CharacterDelta(character_id="mara", field="physical.equipment", new_value="+signal horn"),
        CharacterDelta(character_id="tobin", field="psychological.mood", new_value="afraid"),
    ]
    updated = apply_deltas(registry, deltas, 12)

    assert registry.model_dump() == before
    mara = updated.snapshots["mara"]
    assert mara.physical.location == "the north wall"
    assert mara.physical.equipment == ["signal horn"]
    assert mara.as_of_chapter == 12
    assert updated.snapshots["tobin"].psychological.mood == "afraid"
    assert updated.last_updated_chapter == 12


def test_list_fields_add_and_remove(registry):
    first = apply_deltas(
        registry,
        [CharacterDelta(character_id="mara", field="social.activeAlliances", new_value="+Tobin")],
        2,
    )
    second = apply_deltas(
        first,
        [CharacterDelta(character_id="mara", field="social.activeAlliances", new_value="-Tobin")],
        3,
    )
    assert first.snapshots["mara"].social.active_alliances == ["Tobin"]
    assert second.snapshots["mara"].social.active_alliances == []


def test_unknown_field_and_invalid_value_are_skipped(registry):
    updated = apply_deltas(
        registry,
        [
            CharacterDelta(character_id="mara", field="physical.wingspan", new_value="wide"),
            CharacterDelta(character_id="mara", field="physical.condition", new_value="on fire"),
        ],
        4,
    )
    mara = updated.snapshots["mara"]
    assert mara.physical.condition == "healthy"
    assert mara.recent_changes == []


def test_unknown_character_gets_a_snapshot(registry):
    updated = apply_deltas(
        registry,
        [
            CharacterDelta(
                character_id="ember_king",
                character_name="Ember King",
                field="physical.location",
                new_value="the ash fields",
            )
        ],
        7,
    )
    assert updated.snapshots["ember_king"].character_name == "Ember King"
    assert "ember_king" not in registry.snapshots


def test_recent_changes_are_capped(registry):
    deltas = [
        CharacterDelta(character_id="mara", field="psychological.mood", new_value=f"mood {i}")
        for i in range(8)
    ]
    updated = apply_deltas(registry, deltas, 9, history_limit=5)
    changes = updated.snapshots["mara"].recent_changes
    assert len(changes) == 5
    assert changes[-1].new_value == "mood 7"


@pytest.mark.parametrize(
    "field, expected",
    [
        ("social.activeAlliances", ("social", "active_alliances")),
        ("physical.location", ("physical", "location")),
        ("mental.mood", None),
        ("location", None),
    ],
)
def test_normalize_field_path(field, expected):
    assert normalize_field_path(field) == expected


def test_initialize_tracks_only_main_roles():
    registry = initialize_from_profiles(
        [
            CharacterProfile(id="a", name="A", role="protagonist", abilities=["fire"]),
            CharacterProfile(id="b", name="B", role="supporting"),
        ]
    )
    assert list(registry.snapshots) == ["a"]
    assert registry.snapshots["a"].physical.abilities == ["fire"]


def test_parse_character_changes_filters_low_confidence():
    raw = """```json
    {"changes": [
      {"characterId": "mara", "field": "physical.location", "newValue": "the keep", "confidence": 0.9},
      {"characterId": "tobin", "field": "psychological.mood", "newValue": "calm", "confidence": 0.2},
      {"field": "broken"}
    ]}
    ```"""
    deltas = parse_character_changes(raw, min_confidence=0.6)
    assert [(d.character_id, d.new_value) for d in deltas] == [("mara", "the keep")]


def test_validate_consistency_flags_unconscious_with_motivation(registry):
    updated = manual_update(registry, "mara", "psychological.motivation", "find Tobin", 2)
    updated = manual_update(updated, "mara", "physical.condition", "unconscious", 3)
    report = validate_consistency(updated)
    assert not report.valid
    assert "Mara" in report.issues[0]


def test_character_context_lists_recently_changed_first(registry):
    updated = apply_deltas(
        registry,
        [CharacterDelta(character_id="tobin", field="physical.location", new_value="the well")],
        6,
    )
    context = build_character_context(updated, 7)
    assert context.index("Tobin") < context.index("Mara")
    assert "[Consistency rules]" in context

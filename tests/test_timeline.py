import json

import pytest
from config import settings

from context import timeline as tl
from models.analysis_models import ResolvedEvent, TimelineEventAnalysis
from models.timeline_models import TimelineEvent, TimelineState

NAMES = {"Mara": "mara", "Tobin": "tobin"}


def _completed_battle() -> TimelineState:
    return TimelineState(
        current_timepoint="Second night of the siege",
        events=[
            TimelineEvent(
                id="evt_battle_ch5_1",
                type="battle",
                summary="Mara defeats the ember knight",
                character_ids=["mara"],
                status="completed",
                started_chapter=5,
                completed_chapter=5,
                unique_key="battle:mara:defeats_the_ember_knight",
            )
        ],
    )


@pytest.mark.parametrize(
    "text, expected",
    [
        ("Mara holds the gate against the siege", "battle"),
        ("Tobin meets the envoy", "encounter"),
        ("A quiet afternoon", "custom"),
    ],
)
def test_infer_event_type(text, expected):
    assert tl.infer_event_type(text) == expected


def test_unique_key_is_order_independent():
    assert tl.unique_key("battle", ["tobin", "mara"], " Holds  the Gate ") == (
        "battle:mara_tobin:holds_the_gate"
    )


def test_apply_event_analysis_skips_repeats_and_keeps_input():
    timeline = TimelineState()
    event = ResolvedEvent(
        type="battle",
        summary="Mara holds the gate",
        character_ids=["mara"],
        unique_key="battle:mara:holds_the_gate",
    )
    analysis = TimelineEventAnalysis(
        new_events=[event, event.model_copy()], current_timepoint="Dawn"
    )

    updated = tl.apply_event_analysis(timeline, analysis, 12)

    assert timeline.events == []
    assert [e.id for e in updated.events] == ["evt_battle_ch12_1"]
    stored = updated.events[0]
    assert (stored.status, stored.started_chapter, stored.completed_chapter) == (
        "completed",
        12,
        12,
    )
    assert updated.current_timepoint == "Dawn"
    assert updated.last_updated_chapter == 12


def test_parse_event_analysis_maps_names_and_drops_bad_entries():
    raw = json.dumps(
        {
            "newEvents": [
                {
                    "type": "duel",
                    "summary": "Mara duels a stranger",
                    "characterNames": ["Mara", "Ghost"],
                    "coreAction": "duel at gate",
                },
                {"summary": ""},
            ],
            "currentTimepoint": "Night of the siege",
        }
    )
    analysis = tl.parse_event_analysis(raw, TimelineState(), NAMES)
    assert len(analysis.new_events) == 1
    event = analysis.new_events[0]
    assert event.type == "custom"
    assert event.character_ids == ["mara"]
    assert event.unique_key == "custom:mara:duel_at_gate"
    assert analysis.current_timepoint == "Night of the siege"


def test_parse_event_analysis_keeps_timepoint_on_garbage():
    analysis = tl.parse_event_analysis("no json", _completed_battle(), NAMES)
    assert analysis.new_events == []
    assert analysis.current_timepoint == "Second night of the siege"


def test_check_event_duplication():
    timeline = _completed_battle()
    report = tl.check_event_duplication(
        "Mara defeats the ember knight again, her blade bright.", timeline, NAMES
    )
    assert report.has_duplication
    assert "already completed in chapter 5" in report.warnings[0]

    clean = tl.check_event_duplication("Tobin sleeps by the fire.", timeline, NAMES)
    assert not clean.has_duplication


def test_build_timeline_context_lists_recent_events():
    text = tl.build_timeline_context(_completed_battle(), 7, NAMES)
    assert text.startswith("[Current story time]\nSecond night of the siege")
    assert "- [Chapter 5] Mara defeats the ember knight (involving: Mara)" in text
    assert "[Just happened]\n- Chapter 5: Mara defeats the ember knight" in text

    later = tl.build_timeline_context(_completed_battle(), 12, NAMES)
    assert "[Just happened]" not in later


def test_initialize_from_outline_and_stats(project):
    timeline = tl.initialize_from_outline(project.volumes, {"Mara": "mara"})
    stats = tl.timeline_stats(timeline)
    assert stats["total_events"] == 1
    assert stats["planned_events"] == 1
    assert stats["completed_events"] == 0


@pytest.mark.asyncio
async def test_analyze_chapter_uses_extraction_temperature(fake_client_factory):
    client = fake_client_factory(
        {"timeline": ['{"newEvents": [], "currentTimepoint": "Dawn"}']}
    )
    analysis = await tl.analyze_chapter(
        client, "Chapter 8: Dawn\n\nMara waited.", 8, _completed_battle(), NAMES
    )
    assert analysis.current_timepoint == "Dawn"
    call = client.calls_for("timeline")[0]
    assert call["temperature"] == settings.TEMPERATURE_EXTRACTION
    assert "1. Mara defeats the ember knight" in call["prompt"]

# tests/test_pacing_controller.py
import pytest

from models.narrative_models import NarrativeArc, PovConfig, VolumePacingCurve
from models.project_models import ChapterOutline, VolumeOutline
from narrative.pacing_controller import (
    MAX_PACING_DELTA,
    adjust_curve,
    build_narrative_guide,
    check_balance,
    format_guide_for_prompt,
    generate_narrative_arc,
    get_chapter_target,
    pacing_curve_data,
    pacing_type_for,
    plan_volume_curve,
    prohibitions_for,
    scene_requirements_for,
)


def _arc_with_value(chapter: int, value: float, total: int = 40) -> NarrativeArc:
    curve = [5.0] * total
    curve[chapter - 1] = value
    return NarrativeArc(
        total_chapters=total,
        volume_pacing=[
            VolumePacingCurve(volume_index=0, start_chapter=1, end_chapter=total, pacing_curve=curve)
        ],
    )


def test_smoothing_example_chapter_12():
    arc = _arc_with_value(12, 9.0)
    assert get_chapter_target(arc, 12, previous_pacing=6.0) == 8.5
    assert get_chapter_target(arc, 12) == 9.0


@pytest.mark.parametrize("previous", [1.0, 2.3, 4.0, 6.0, 7.7, 10.0])
@pytest.mark.parametrize("raw", [1.0, 3.3, 5.0, 9.0, 10.0])
def test_smoothing_bound(previous, raw):
    arc = _arc_with_value(5, raw)
    target = get_chapter_target(arc, 5, previous_pacing=previous)
    assert abs(target - previous) <= MAX_PACING_DELTA + 1e-9


@pytest.mark.parametrize("previous", [6.06, 3.94, 1.17, 9.83, 5.55])
@pytest.mark.parametrize("raw", [1.0, 5.0, 9.0, 10.0])
def test_smoothing_bound_with_unrounded_previous(previous, raw):
    arc = _arc_with_value(5, raw)
    target = get_chapter_target(arc, 5, previous_pacing=previous)
    assert abs(target - previous) <= MAX_PACING_DELTA + 1e-9
    assert target == round(target, 1)


def test_smoothing_steps_back_after_rounding():
    arc = _arc_with_value(12, 9.0)
    assert get_chapter_target(arc, 12, previous_pacing=6.06) == 8.5


def test_uncovered_chapter_is_smoothed_too():
    arc = _arc_with_value(1, 9.0, total=10)
    assert get_chapter_target(arc, 25, previous_pacing=9.0) == 6.5
    assert get_chapter_target(arc, 25, previous_pacing=6.0) == 5.0


def test_uncovered_chapter_defaults_to_five():
    arc = _arc_with_value(1, 9.0, total=10)
    assert get_chapter_target(arc, 25) == 5.0


def test_volume_curve_shape():
    curve = plan_volume_curve(0, 1, 20)
    values = curve.pacing_curve
    assert len(values) == 20
    assert values[0] == 2.0
    assert values[1] == 2.6
    assert values[15] == 8.0
    assert max(values) == values[curve.volume_climax_offset] == 9.5
    assert curve.volume_climax_offset == 18
    assert all(1 <= v <= 10 for v in values)


def test_volume_curve_rejects_empty_range():
    with pytest.raises(ValueError):
        plan_volume_curve(0, 5, 4)


def test_single_chapter_volume():
    curve = plan_volume_curve(0, 7, 7)
    assert curve.pacing_curve == [8.0]


def test_narrative_arc_climax_and_transitions():
    arc = generate_narrative_arc(
        [
            VolumeOutline(index=1, start_chapter=1, end_chapter=20),
            VolumeOutline(index=2, start_chapter=21, end_chapter=40),
        ],
        40,
    )
    assert arc.climax_chapters == [19, 39]
    assert arc.transition_chapters[:2] == [1, 2]
    data = pacing_curve_data(arc)
    assert data["chapters"] == list(range(1, 41))
    assert data["climax_points"] == [19, 39]


@pytest.mark.parametrize(
    "level, expected",
    [(9.5, "climax"), (7, "action"), (5.5, "tension"), (3, "revelation"), (2, "emotional"), (1.5, "transition")],
)
def test_pacing_type_thresholds(level, expected):
    assert pacing_type_for(level) == expected


def test_prohibitions_by_tension_and_finality():
    assert len(prohibitions_for(5, 40, 8.0)) == 7
    assert len(prohibitions_for(5, 40, 2.0)) == 7
    assert len(prohibitions_for(5, 40, 5.0)) == 4
    final = prohibitions_for(40, 40, 9.0)
    assert len(final) == 4
    assert not any("The End" in rule for rule in final)


def test_scene_requirements_follow_goal_keywords():
    battle = scene_requirements_for(ChapterOutline(index=3, goal="A duel on the wall"))
    assert [s.type for s in battle] == ["setup", "confrontation", "confrontation", "resolution"]
    default = scene_requirements_for(None)
    assert default[-1].purpose == "Leave a hook"


def test_guide_and_prompt_rendering():
    arc = _arc_with_value(12, 9.0)
    guide = build_narrative_guide(
        arc, 12, 40, ChapterOutline(index=12, goal="The truth about the gate"), previous_pacing=6.0
    )
    assert guide.pacing_target == 8.5
    assert guide.pacing_type == "action"
    assert guide.word_count_range == (2000, 2800)
    assert guide.scene_requirements[2].type == "revelation"

    text = format_guide_for_prompt(guide)
    assert text.startswith("[Narrative guide for this chapter]")
    assert "Pacing target: 8.5/10 (action)" in text
    assert "Length range: 2000-2800 words" in text
    assert "Forbidden in this chapter:" in text
    assert guide.pov_character is None
    assert "POV character" not in text


def test_guide_carries_pov_character_and_rules():
    arc = _arc_with_value(12, 9.0)
    pov = PovConfig(type="multiple", main_character="Mara", allowed_characters=["Mara", "Tobin"])
    outline = ChapterOutline(index=12, goal="POV: Tobin. Tobin reaches the river gate")
    guide = build_narrative_guide(arc, 12, 40, outline, pov=pov)
    assert guide.pov_character == "Tobin"
    assert "Show only Tobin's inner life." in guide.pov_rules

    text = format_guide_for_prompt(guide)
    assert "POV character: Tobin" in text
    assert "Viewpoint rules:\n  - Rotating viewpoints; this chapter follows Tobin." in text


def test_check_balance():
    assert check_balance(["action", "action"], "action").balanced
    same = check_balance(["tension", "tension", "tension"], "tension")
    assert not same.balanced and "Four chapters" in same.suggestion
    assert not check_balance(["action", "climax", "tension"], "action").balanced
    assert not check_balance(["emotional", "transition", "emotional"], "transition").balanced
    assert check_balance(["action", "emotional", "tension"], "revelation").balanced


def test_adjust_curve_returns_clamped_copy():
    arc = _arc_with_value(3, 4.0, total=10)
    adjusted = adjust_curve(arc, 3, 14.0)
    assert adjusted.volume_pacing[0].pacing_curve[2] == 10.0
    assert arc.volume_pacing[0].pacing_curve[2] == 4.0

# narrative/pacing_controller.py
"""Three-act tension curves and the per-chapter narrative guide derived from them."""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any

import numpy as np
import structlog

from models.narrative_models import (
    NarrativeArc,
    NarrativeGuide,
    PacingBalance,
    PacingType,
    PovConfig,
    SceneRequirement,
    VolumePacingCurve,
)
from models.project_models import ChapterOutline, VolumeOutline
from narrative.pov_controller import pov_rules_for, recommended_pov_character

logger = structlog.get_logger(__name__)

DEFAULT_PACING = 5.0
MAX_PACING_DELTA = 2.5
TRANSITION_THRESHOLD = 3.0

HIGH_TENSION_TYPES: frozenset[str] = frozenset({"action", "climax", "tension"})
LOW_TENSION_TYPES: frozenset[str] = frozenset({"emotional", "transition"})

PACING_PROFILES: dict[str, dict[str, Any]] = {
    "action": {
        "tension_level": 8,
        "information_density": 4,
        "dialogue_ratio": 0.3,
        "scene_switch_frequency": "high",
        "word_count_range": (2000, 2800),
    },
    "tension": {
        "tension_level": 7,
        "information_density": 6,
        "dialogue_ratio": 0.4,
        "scene_switch_frequency": "medium",
        "word_count_range": (2200, 3000),
    },
    "revelation": {
        "tension_level": 6,
        "information_density": 9,
        "dialogue_ratio": 0.5,
        "scene_switch_frequency": "low",
        "word_count_range": (2500, 3200),
    },
    "emotional": {
        "tension_level": 4,
        "information_density": 3,
        "dialogue_ratio": 0.6,
        "scene_switch_frequency": "low",
        "word_count_range": (2800, 3500),
    },
    "transition": {
        "tension_level": 3,
        "information_density": 5,
        "dialogue_ratio": 0.5,
        "scene_switch_frequency": "medium",
        "word_count_range": (2500, 3200),
    },
    "climax": {
        "tension_level": 10,
        "information_density": 7,
        "dialogue_ratio": 0.35,
        "scene_switch_frequency": "high",
        "word_count_range": (2500, 3500),
    },
}

_EMOTIONAL_TONES: list[tuple[float, str]] = [
    (2, "calm, everyday, warm"),
    (4, "steady, slightly tense, expectant"),
    (6, "tense, oppressive, a sense of crisis"),
    (8, "extremely tense, life-or-death, adrenaline"),
]
_PEAK_TONE = "peak climax, emotional eruption, a turn of fate"

_SCENE_TEMPLATES: list[tuple[tuple[str, ...], list[tuple[str, str]]]] = [
    (
        ("battle", "fight", "conflict", "duel", "clash"),
        [
            ("setup", "Build-up before the fight and the state of play"),
            ("confrontation", "Open conflict breaks out"),
            ("confrontation", "Conflict escalates or turns"),
            ("resolution", "Show the outcome and leave a hook"),
        ],
    ),
    (
        ("reveal", "discover", "truth", "secret"),
        [
            ("setup", "A clue or a doubt surfaces"),
            ("transition", "Investigation, memory or analysis"),
            ("revelation", "The truth comes out"),
            ("resolution", "Emotional reaction and groundwork for what follows"),
        ],
    ),
    (
        ("emotion", "relationship", "feeling", "psycholog"),
        [
            ("setup", "Establish the situation"),
            ("confrontation", "Emotional conflict or exchange"),
            ("resolution", "The relationship shifts or a decision is made"),
        ],
    ),
]
_DEFAULT_SCENES: list[tuple[str, str]] = [
    ("setup", "Establish the scene and background"),
    ("confrontation", "The main event unfolds"),
    ("transition", "Character interaction and reactions"),
    ("resolution", "Leave a hook"),
]

_GUIDANCE: dict[str, str] = {
    "action": (
        "This is an action/conflict chapter (tension {target}/10). Use short sentences, "
        "quick scene cuts and physical action. Keep dialogue brief and forceful, avoid "
        "long introspection. Every paragraph must push the conflict forward."
    ),
    "tension": (
        "This is a tension-building chapter (tension {target}/10). Create pressure and a "
        "sense of looming crisis through hints and foreshadowing. Dialogue may carry "
        "subtext and probing so the reader feels the storm coming."
    ),
    "revelation": (
        "This is a revelation chapter (tension {target}/10). Information density is high; "
        "release key facts with rhythm. Characters must react believably. Give the reader "
        "time to absorb the news while keeping some suspense."
    ),
    "emotional": (
        "This is an emotional chapter (tension {target}/10). Focus on inner life and "
        "relationships. Dialogue can be more nuanced and description more concrete. It is "
        "a breather for the reader but must keep a subtle tension."
    ),
    "transition": (
        "This is a transition chapter (tension {target}/10). Use it to reset the rhythm, "
        "fill in the setting and develop relationships. Tension is low, but plant seeds "
        "for later events; never write a plain diary of daily life."
    ),
    "climax": (
        "This is a climax chapter (tension {target}/10). Emotion and conflict must peak. "
        "Use sharp contrasts, unexpected turns and choices of fate. This is the most "
        "important chapter; make it impossible to put down."
    ),
}


def _round1(values: np.ndarray) -> np.ndarray:
    # Half-up rounding; np.round would round halves to even.
    return np.floor(values * 10 + 0.5) / 10


def plan_volume_curve(
    volume_index: int, start_chapter: int, end_chapter: int
) -> VolumePacingCurve:
    """Build a three-act tension curve for the chapters of one volume.

    Act 1 (first quarter) ramps 2 to 5. Act 2 (next half) rises 4 to 8 with a
    three-cycle wobble clamped to [4, 8]. Act 3 climbs to the peak over its
    first 70% and falls back to 6 over the rest.
    """
    count = end_chapter - start_chapter + 1
    if count < 1:
        raise ValueError(
            f"Volume {volume_index} has no chapters ({start_chapter}-{end_chapter})"
        )
    act1_end = int(np.floor(count * 0.25))
    act2_end = int(np.floor(count * 0.75))
    positions = np.arange(count, dtype=float)
    curve = np.empty(count, dtype=float)

    act1 = positions < act1_end
    if act1.any():
        curve[act1] = 2 + (positions[act1] / act1_end) * 3

    act2 = (positions >= act1_end) & (positions < act2_end)
    if act2.any():
        progress = (positions[act2] - act1_end) / (act2_end - act1_end)
        wave = np.sin(progress * np.pi * 3) * 1.5
        curve[act2] = np.clip(4 + progress * 4 + wave, 4, 8)

    act3 = positions >= act2_end
    if act3.any():
        progress = (positions[act3] - act2_end) / (count - act2_end)
        curve[act3] = np.where(
            progress < 0.7,
            8 + progress * 2.5,
            10 - ((progress - 0.7) / 0.3) * 4,
        )

    return VolumePacingCurve(
        volume_index=volume_index,
        start_chapter=start_chapter,
        end_chapter=end_chapter,
        pacing_curve=[float(v) for v in _round1(curve)],
        volume_climax_offset=int(np.argmax(curve)),
    )


def generate_narrative_arc(
    volumes: Sequence[VolumeOutline], total_chapters: int
) -> NarrativeArc:
    """Plan one curve per volume and derive the climax and transition chapters."""
    arc = NarrativeArc(total_chapters=total_chapters)
    for position, volume in enumerate(volumes):
        curve = plan_volume_curve(position, volume.start_chapter, volume.end_chapter)
        arc.volume_pacing.append(curve)
        arc.climax_chapters.append(curve.start_chapter + curve.volume_climax_offset)

    for curve in arc.volume_pacing:
        arc.transition_chapters.extend(
            curve.start_chapter + i
            for i, value in enumerate(curve.pacing_curve)
            if value <= TRANSITION_THRESHOLD
        )

    logger.info(
        "Generated narrative arc.",
        volumes=len(arc.volume_pacing),
        climaxes=arc.climax_chapters,
        transitions=len(arc.transition_chapters),
    )
    return arc


def _find_curve(arc: NarrativeArc, chapter_index: int) -> VolumePacingCurve | None:
    return next((v for v in arc.volume_pacing if v.covers(chapter_index)), None)


def raw_chapter_value(arc: NarrativeArc, chapter_index: int) -> float:
    curve = _find_curve(arc, chapter_index)
    if curve is None:
        return DEFAULT_PACING
    local = chapter_index - curve.start_chapter
    if local < len(curve.pacing_curve):
        return curve.pacing_curve[local]
    return DEFAULT_PACING


def get_chapter_target(
    arc: NarrativeArc, chapter_index: int, previous_pacing: float | None = None
) -> float:
    """Curve value for ``chapter_index``, kept within 2.5 of ``previous_pacing``."""
    target = raw_chapter_value(arc, chapter_index)
    if previous_pacing is None:
        return float(_round1(np.array(target)))
    direction = float(np.sign(target - previous_pacing))
    if abs(target - previous_pacing) > MAX_PACING_DELTA:
        target = previous_pacing + direction * MAX_PACING_DELTA
    rounded = float(_round1(np.array(target)))
    # Rounding an unrounded previous value can push past the bound; step back toward it.
    if abs(rounded - previous_pacing) > MAX_PACING_DELTA + 1e-9:
        rounded = round(rounded - direction * 0.1, 1)
    return rounded


def pacing_type_for(level: float) -> PacingType:
    if level >= 9:
        return "climax"
    if level >= 7:
        return "action"
    if level >= 5:
        return "tension"
    if level >= 3:
        return "revelation"
    if level >= 2:
        return "emotional"
    return "transition"


def emotional_tone_for(target: float) -> str:
    for ceiling, tone in _EMOTIONAL_TONES:
        if target <= ceiling:
            return tone
    return _PEAK_TONE


def scene_requirements_for(outline: ChapterOutline | None) -> list[SceneRequirement]:
    goal = (outline.goal if outline else "").lower()
    scenes = _DEFAULT_SCENES
    for keywords, template in _SCENE_TEMPLATES:
        if any(k in goal for k in keywords):
            scenes = template
            break
    return [
        SceneRequirement(order=i, type=scene_type, purpose=purpose)
        for i, (scene_type, purpose) in enumerate(scenes, start=1)
    ]


def prohibitions_for(chapter_index: int, total_chapters: int, target: float) -> list[str]:
    rules: list[str] = []
    if chapter_index < total_chapters:
        rules += [
            "No words like 'The End', 'finale', 'epilogue' or 'afterword'",
            "Do not resolve all foreshadowing at once",
            "No summarizing look back over a character's life",
        ]
    if target >= 7:
        rules += [
            "No long inner monologue (over 200 words)",
            "No irrelevant small talk",
            "No transitional passages that slow the pace",
            "No long stretches of scenery description",
        ]
    elif target <= 3:
        rules += [
            "No sudden life-or-death crisis",
            "No large-scale battle scenes",
            "No abrupt plot reversal",
            "No overly intense conflict",
        ]
    else:
        rules.append("Do not let the pace go flat; keep a moderate tension")
    return rules


def pacing_guidance_for(pacing_type: PacingType, target: float) -> str:
    return _GUIDANCE[pacing_type].format(target=target)


def build_narrative_guide(
    arc: NarrativeArc,
    chapter_index: int,
    total_chapters: int,
    outline: ChapterOutline | None = None,
    previous_pacing: float | None = None,
    pov: PovConfig | None = None,
) -> NarrativeGuide:
    """Project the arc onto one chapter. The guide is recomputed every time."""
    target = get_chapter_target(arc, chapter_index, previous_pacing)
    pacing_type = pacing_type_for(target)
    pov_character: str | None = None
    pov_rules: list[str] = []
    if pov is not None:
        hint = f"{outline.goal}\n{outline.hook}" if outline else ""
        pov_character = recommended_pov_character(pov, chapter_index, hint)
        pov_rules = pov_rules_for(pov, pov_character)
    return NarrativeGuide(
        chapter_index=chapter_index,
        pacing_target=target,
        pacing_type=pacing_type,
        emotional_tone=emotional_tone_for(target),
        scene_requirements=scene_requirements_for(outline),
        prohibitions=prohibitions_for(chapter_index, total_chapters, target),
        word_count_range=PACING_PROFILES[pacing_type]["word_count_range"],
        pacing_guidance=pacing_guidance_for(pacing_type, target),
        pov_character=pov_character,
        pov_rules=pov_rules,
    )


def check_balance(recent_types: Sequence[str], current_type: str) -> PacingBalance:
    """Advisory check against four same-feeling chapters in a row."""
    if len(recent_types) < 3:
        return PacingBalance(balanced=True)
    window = [*recent_types[-3:], current_type]
    if len(set(window)) == 1:
        return PacingBalance(
            balanced=False,
            suggestion=(
                f"Four chapters in a row are '{current_type}'; vary the pacing "
                "to avoid reader fatigue."
            ),
        )
    if all(t in HIGH_TENSION_TYPES for t in window):
        return PacingBalance(
            balanced=False,
            suggestion="Several high-tension chapters in a row; insert a transition or emotional chapter.",
        )
    if all(t in LOW_TENSION_TYPES for t in window):
        return PacingBalance(
            balanced=False,
            suggestion="Several low-tension chapters in a row; the story may drag, raise the tension.",
        )
    return PacingBalance(balanced=True)


def adjust_curve(arc: NarrativeArc, chapter_index: int, value: float) -> NarrativeArc:
    """Return a copy of ``arc`` with one chapter's curve value replaced."""
    updated = arc.model_copy(deep=True)
    curve = _find_curve(updated, chapter_index)
    if curve is None:
        logger.warning("No volume covers chapter; curve unchanged.", chapter=chapter_index)
        return updated
    local = chapter_index - curve.start_chapter
    if local < len(curve.pacing_curve):
        curve.pacing_curve[local] = float(np.clip(value, 1, 10))
    return updated


def format_guide_for_prompt(guide: NarrativeGuide) -> str:
    low, high = guide.word_count_range
    parts = [
        "[Narrative guide for this chapter]",
        f"Pacing target: {guide.pacing_target}/10 ({guide.pacing_type})",
        f"Emotional tone: {guide.emotional_tone}",
        f"Length range: {low}-{high} words",
    ]
    if guide.pov_character:
        parts.append(f"POV character: {guide.pov_character}")
    if guide.pov_rules:
        parts.append("Viewpoint rules:")
        parts.extend(f"  - {rule}" for rule in guide.pov_rules)
    if guide.scene_requirements:
        parts.append("Scene sequence:")
        parts.extend(
            f"  {scene.order}. [{scene.type}] {scene.purpose}"
            for scene in guide.scene_requirements
        )
    if guide.prohibitions:
        parts.append("Forbidden in this chapter:")
        parts.extend(f"  - {rule}" for rule in guide.prohibitions)
    parts.append("")
    parts.append(f"Pacing notes: {guide.pacing_guidance}")
    return "\n".join(parts)


def pacing_curve_data(arc: NarrativeArc) -> dict[str, list[float] | list[int]]:
    chapters: list[int] = []
    pacing: list[float] = []
    for curve in arc.volume_pacing:
        chapters.extend(range(curve.start_chapter, curve.start_chapter + len(curve.pacing_curve)))
        pacing.extend(curve.pacing_curve)
    return {
        "chapters": chapters,
        "pacing": pacing,
        "climax_points": list(arc.climax_chapters),
        "transition_points": list(arc.transition_chapters),
    }

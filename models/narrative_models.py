# models/narrative_models.py
"""Pacing curves and the per-chapter narrative guide."""

from __future__ import annotations

from typing import Literal

from pydantic import Field

from .character_models import StateModel

PacingType = Literal["action", "tension", "revelation", "emotional", "transition", "climax"]
SceneType = Literal[
    "setup", "confrontation", "resolution", "transition", "flashback", "revelation"
]
PovType = Literal["first_person", "third_limited", "third_omniscient", "multiple"]


class VolumePacingCurve(StateModel):
    volume_index: int
    start_chapter: int
    end_chapter: int
    pacing_curve: list[float] = Field(default_factory=list)
    volume_climax_offset: int = 0

    def covers(self, chapter_index: int) -> bool:
        return self.start_chapter <= chapter_index <= self.end_chapter


class NarrativeArc(StateModel):
    total_chapters: int = 0
    volume_pacing: list[VolumePacingCurve] = Field(default_factory=list)
    climax_chapters: list[int] = Field(default_factory=list)
    transition_chapters: list[int] = Field(default_factory=list)


class SceneRequirement(StateModel):
    order: int
    type: SceneType
    purpose: str


class NarrativeGuide(StateModel):
    """Ephemeral projection of the arc for one chapter; never persisted."""

    chapter_index: int
    pacing_target: float
    pacing_type: PacingType
    emotional_tone: str
    scene_requirements: list[SceneRequirement] = Field(default_factory=list)
    prohibitions: list[str] = Field(default_factory=list)
    word_count_range: tuple[int, int]
    pacing_guidance: str
    pov_character: str | None = None
    pov_rules: list[str] = Field(default_factory=list)


class PovConfig(StateModel):
    """Narrative viewpoint read from the story bible."""

    type: PovType = "third_limited"
    main_character: str = "the protagonist"
    allowed_characters: list[str] = Field(default_factory=list)
    allow_in_chapter_switch: bool = False
    separator: str = "* * *"


class PacingBalance(StateModel):
    balanced: bool
    suggestion: str | None = None

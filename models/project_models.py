# models/project_models.py
"""Project inputs (profiles, outline) and the persisted per-project state."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field

from .character_models import CharacterStateRegistry
from .narrative_models import NarrativeArc
from .plot_models import PlotGraph
from .timeline_models import TimelineState

CharacterRole = Literal["protagonist", "main", "supporting"]


class CharacterProfile(BaseModel):
    """Static description of a character from the project definition."""

    id: str
    name: str
    role: CharacterRole = "supporting"
    description: str = ""
    motivation: str = ""
    public_identity: str = ""
    abilities: list[str] = Field(default_factory=list)
    allies: list[str] = Field(default_factory=list)
    enemies: list[str] = Field(default_factory=list)
    traits: list[str] = Field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CharacterProfile:
        """Create a ``CharacterProfile`` from a raw dictionary.

        ``id`` defaults to a slug of the name; unknown keys are ignored.
        """
        known_fields = cls.model_fields.keys()
        profile_data = {k: v for k, v in data.items() if k in known_fields}
        name = str(profile_data.get("name", "")).strip()
        if not name:
            raise ValueError("Character profile requires a non-empty 'name'.")
        profile_data["name"] = name
        profile_data.setdefault("id", _slug(name))
        return cls(**profile_data)


def _slug(name: str) -> str:
    return "_".join(name.lower().split())


class ChapterOutline(BaseModel):
    index: int = Field(..., ge=1)
    title: str = ""
    goal: str = ""
    hook: str = ""


class VolumeOutline(BaseModel):
    index: int = Field(..., ge=1)
    title: str = ""
    start_chapter: int = Field(..., ge=1)
    end_chapter: int = Field(..., ge=1)
    goal: str = ""
    chapters: list[ChapterOutline] = Field(default_factory=list)


class ProjectDefinition(BaseModel):
    """Static, user-authored inputs for a project."""

    project_id: str
    title: str = ""
    bible: str = ""
    total_chapters: int = Field(..., ge=1)
    characters: list[CharacterProfile] = Field(default_factory=list)
    volumes: list[VolumeOutline] = Field(default_factory=list)

    def chapter_outline(self, chapter_index: int) -> ChapterOutline | None:
        for volume in self.volumes:
            for chapter in volume.chapters:
                if chapter.index == chapter_index:
                    return chapter
        return None


class ProjectState(BaseModel):
    """Everything the pipeline reads before and writes after one chapter."""

    project_id: str
    rolling_summary: str = ""
    open_loops: list[str] = Field(default_factory=list)
    summary_updated_chapter: int = 0
    character_states: CharacterStateRegistry = Field(
        default_factory=CharacterStateRegistry
    )
    plot_graph: PlotGraph = Field(default_factory=PlotGraph)
    narrative_arc: NarrativeArc = Field(default_factory=NarrativeArc)
    timeline: TimelineState = Field(default_factory=TimelineState)
    last_chapter_index: int = 0
    last_pacing_target: float | None = None
    recent_pacing_types: list[str] = Field(default_factory=list)

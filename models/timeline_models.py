# models/timeline_models.py
"""Story timeline used to stop the model re-staging finished events."""

from __future__ import annotations

from typing import Literal

from pydantic import Field

from .character_models import StateModel

TimelineEventType = Literal[
    "ceremony",
    "battle",
    "revelation",
    "encounter",
    "departure",
    "acquisition",
    "death",
    "decision",
    "conflict",
    "alliance",
    "betrayal",
    "custom",
]
TimelineEventStatus = Literal[
    "planned", "foreshadowed", "in_progress", "completed", "cancelled"
]


class TimelineEvent(StateModel):
    id: str
    type: TimelineEventType = "custom"
    summary: str
    description: str = ""
    character_ids: list[str] = Field(default_factory=list)
    status: TimelineEventStatus = "planned"
    planned_chapter: int | None = None
    started_chapter: int | None = None
    completed_chapter: int | None = None
    unique_key: str
    evidence: str | None = None


class TimelineState(StateModel):
    last_updated_chapter: int = 0
    current_timepoint: str = "The story begins"
    events: list[TimelineEvent] = Field(default_factory=list)


class DuplicationReport(StateModel):
    has_duplication: bool
    duplicated_events: list[TimelineEvent] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)

# models/character_models.py
"""Structured per-character state tracked across chapters."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

CharacterCondition = Literal[
    "healthy", "minor_injury", "major_injury", "weak", "unconscious", "unknown"
]

CHARACTER_CONDITIONS: tuple[str, ...] = (
    "healthy",
    "minor_injury",
    "major_injury",
    "weak",
    "unconscious",
    "unknown",
)


class StateModel(BaseModel):
    """Base for persisted state; unknown keys from older files are ignored."""

    model_config = ConfigDict(extra="ignore", validate_assignment=True)


class PhysicalState(StateModel):
    location: str = "unknown"
    condition: CharacterCondition = "healthy"
    # Set semantics, kept as ordered lists so prompts render deterministically.
    equipment: list[str] = Field(default_factory=list)
    abilities: list[str] = Field(default_factory=list)
    power_level: str | None = None


class PsychologicalState(StateModel):
    mood: str = "calm"
    motivation: str = "unknown"
    known_secrets: list[str] = Field(default_factory=list)
    beliefs: list[str] = Field(default_factory=list)
    inner_conflict: str | None = None


class SocialState(StateModel):
    public_identity: str = "unknown"
    hidden_identity: str | None = None
    reputation: str = "unknown"
    active_alliances: list[str] = Field(default_factory=list)
    active_enemies: list[str] = Field(default_factory=list)


class StateChange(StateModel):
    """One recorded field change, most recent last in ``recent_changes``."""

    chapter: int
    field: str
    old_value: str
    new_value: str
    change: str = ""


class CharacterStateSnapshot(StateModel):
    character_id: str
    character_name: str
    physical: PhysicalState = Field(default_factory=PhysicalState)
    psychological: PsychologicalState = Field(default_factory=PsychologicalState)
    social: SocialState = Field(default_factory=SocialState)
    recent_changes: list[StateChange] = Field(default_factory=list)
    as_of_chapter: int = 0

    def last_change_chapter(self) -> int:
        return self.recent_changes[-1].chapter if self.recent_changes else 0


class CharacterStateRegistry(StateModel):
    snapshots: dict[str, CharacterStateSnapshot] = Field(default_factory=dict)
    last_updated_chapter: int = 0


class CharacterDelta(StateModel):
    """A single extracted change, e.g. ``physical.location -> "the harbour"``."""

    character_id: str
    character_name: str = ""
    field: str
    new_value: str
    old_value: str | None = None
    evidence: str = ""
    confidence: float = 1.0


class ConsistencyReport(StateModel):
    valid: bool
    issues: list[str] = Field(default_factory=list)

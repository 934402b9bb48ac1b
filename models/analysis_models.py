# models/analysis_models.py
"""Schemas for the JSON payloads returned by analysis and review calls.

Model replies use camelCase keys; every schema accepts either spelling.
Lists are validated item by item via :func:`parsing.parse_model_list`, so a
single malformed entry never discards the rest of a payload.
"""

from __future__ import annotations

from typing import Annotated, Any, Literal

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from .plot_models import PlotEdgeRelation, PlotNodeStatus, PlotNodeType
from .timeline_models import TimelineEventType


class AgentBaseModel(BaseModel):
    """Base model supporting mapping style access."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )

    def __getitem__(self, item: str) -> Any:  # pragma: no cover - convenience
        return getattr(self, item)

    def get(
        self, item: str, default: Any = None
    ) -> Any:  # pragma: no cover - convenience
        return getattr(self, item, default)


def _coerce_str(value: Any) -> Any:
    if value is None:
        return ""
    if isinstance(value, int | float):
        return str(value)
    if isinstance(value, list):
        return ", ".join(str(v) for v in value)
    return value


CoercedStr = Annotated[str, BeforeValidator(_coerce_str)]


# Planning and review


class ScenePlanItem(AgentBaseModel):
    purpose: str
    conflict: str = ""
    new_info: str = ""


class ChapterPlan(AgentBaseModel):
    """Scene plan produced by the optional planning call."""

    scene_plan: list[ScenePlanItem] = Field(default_factory=list)
    continuity_checks: list[str] = Field(default_factory=list)
    avoid_repeats: list[str] = Field(default_factory=list)


class SelfReviewVerdict(AgentBaseModel):
    action: Literal["keep", "rewrite"] = "keep"
    issues: list[str] = Field(default_factory=list)
    guidance: str = ""

    @field_validator("action", mode="before")
    @classmethod
    def _normalize_action(cls, value: Any) -> Any:
        if isinstance(value, str):
            value = value.strip().lower()
            return "rewrite" if value == "rewrite" else "keep"
        return "keep"

    @field_validator("issues", mode="before")
    @classmethod
    def _limit_issues(cls, value: Any) -> Any:
        if not isinstance(value, list):
            return []
        return [str(v).strip() for v in value if str(v).strip()][:6]


# Character state extraction


class CharacterChangeItem(AgentBaseModel):
    character_id: str
    character_name: str = ""
    field: str
    old_value: CoercedStr = ""
    new_value: CoercedStr
    evidence: str = ""
    confidence: float = 0.0


# Plot graph extraction


class PlotNodeDraft(AgentBaseModel):
    type: PlotNodeType
    content: str = Field(..., min_length=1)
    characters: list[str] = Field(default_factory=list)
    importance: int = 5
    tags: list[str] = Field(default_factory=list)

    @field_validator("importance", mode="before")
    @classmethod
    def _clamp_importance(cls, value: Any) -> int:
        try:
            number = int(round(float(value)))
        except (TypeError, ValueError):
            return 5
        return max(1, min(10, number))


class PlotEdgeDraft(AgentBaseModel):
    from_content: str
    to_content: str
    relation: PlotEdgeRelation
    description: str = ""


class PlotStatusUpdate(AgentBaseModel):
    node_content: str
    new_status: PlotNodeStatus


class ForeshadowingResolution(AgentBaseModel):
    foreshadowing_content: str
    resolution: str = ""


class PlotAnalysis(AgentBaseModel):
    new_nodes: list[PlotNodeDraft] = Field(default_factory=list)
    new_edges: list[PlotEdgeDraft] = Field(default_factory=list)
    status_updates: list[PlotStatusUpdate] = Field(default_factory=list)
    foreshadowing_resolutions: list[ForeshadowingResolution] = Field(
        default_factory=list
    )


# Timeline extraction


class TimelineEventDraft(AgentBaseModel):
    type: TimelineEventType = "custom"
    summary: str = Field(..., min_length=1)
    description: str = ""
    character_names: list[str] = Field(default_factory=list)
    core_action: str = ""
    evidence: str = ""
    is_completed: bool = True

    @field_validator("type", mode="before")
    @classmethod
    def _unknown_type_is_custom(cls, value: Any) -> Any:
        allowed = TimelineEventType.__args__  # type: ignore[attr-defined]
        return value if value in allowed else "custom"

    @field_validator("summary")
    @classmethod
    def _trim_summary(cls, value: str) -> str:
        return value.strip()[:80]


class ResolvedEvent(AgentBaseModel):
    """An extracted event whose character names are already mapped to ids."""

    type: TimelineEventType
    summary: str
    description: str = ""
    character_ids: list[str] = Field(default_factory=list)
    unique_key: str
    evidence: str = ""


class TimelineEventAnalysis(AgentBaseModel):
    new_events: list[ResolvedEvent] = Field(default_factory=list)
    current_timepoint: str = ""


# Quality control


class IssueDraft(AgentBaseModel):
    severity: Literal["critical", "major", "minor"] = "minor"
    description: str = Field(..., min_length=1)
    location: str | None = None
    suggestion: str | None = None

    @field_validator("severity", mode="before")
    @classmethod
    def _normalize_severity(cls, value: Any) -> Any:
        if isinstance(value, str) and value.lower() in ("critical", "major", "minor"):
            return value.lower()
        return "minor"


class DimensionCheckPayload(AgentBaseModel):
    score: int = 100
    issues: list[IssueDraft] = Field(default_factory=list)
    actual_pacing: float | None = None
    achieved: bool | None = None

    @field_validator("score", mode="before")
    @classmethod
    def _clamp_score(cls, value: Any) -> int:
        try:
            number = int(round(float(value)))
        except (TypeError, ValueError):
            return 100
        return max(0, min(100, number))

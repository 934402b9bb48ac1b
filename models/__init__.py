"""Central package for ChapterForge data models."""

from .analysis_models import (
    AgentBaseModel,
    ChapterPlan,
    CharacterChangeItem,
    DimensionCheckPayload,
    PlotAnalysis,
    ScenePlanItem,
    SelfReviewVerdict,
    TimelineEventAnalysis,
)
from .character_models import (
    CharacterDelta,
    CharacterStateRegistry,
    CharacterStateSnapshot,
    ConsistencyReport,
    StateChange,
)
from .narrative_models import (
    NarrativeArc,
    NarrativeGuide,
    PacingBalance,
    PovConfig,
    SceneRequirement,
    VolumePacingCurve,
)
from .plot_models import PendingForeshadowing, PlotEdge, PlotGraph, PlotNode
from .project_models import (
    ChapterOutline,
    CharacterProfile,
    ProjectDefinition,
    ProjectState,
    VolumeOutline,
)
from .qc_models import QCIssue, QCResult, QuickFormatResult, RepairResult
from .timeline_models import DuplicationReport, TimelineEvent, TimelineState

__all__ = [
    "AgentBaseModel",
    "ChapterPlan",
    "CharacterChangeItem",
    "DimensionCheckPayload",
    "PlotAnalysis",
    "ScenePlanItem",
    "SelfReviewVerdict",
    "TimelineEventAnalysis",
    "CharacterDelta",
    "CharacterStateRegistry",
    "CharacterStateSnapshot",
    "ConsistencyReport",
    "StateChange",
    "NarrativeArc",
    "NarrativeGuide",
    "PacingBalance",
    "PovConfig",
    "SceneRequirement",
    "VolumePacingCurve",
    "PendingForeshadowing",
    "PlotEdge",
    "PlotGraph",
    "PlotNode",
    "ChapterOutline",
    "CharacterProfile",
    "ProjectDefinition",
    "ProjectState",
    "VolumeOutline",
    "QCIssue",
    "QCResult",
    "QuickFormatResult",
    "RepairResult",
    "DuplicationReport",
    "TimelineEvent",
    "TimelineState",
]

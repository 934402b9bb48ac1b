# models/plot_models.py
"""Causal plot graph: nodes, edges and the derived foreshadowing view."""

from __future__ import annotations

from typing import Literal

from pydantic import Field

from .character_models import StateModel

PlotNodeType = Literal[
    "event",
    "foreshadowing",
    "secret",
    "conflict",
    "resolution",
    "revelation",
    "turning_point",
]
PlotNodeStatus = Literal["active", "resolved", "abandoned", "transformed"]
PlotEdgeRelation = Literal[
    "causes", "enables", "blocks", "foreshadows", "resolves", "contradicts", "parallels"
]
ForeshadowingUrgency = Literal["low", "medium", "high", "critical"]

URGENCY_ORDER: dict[str, int] = {"critical": 0, "high": 1, "medium": 2, "low": 3}


class PlotNode(StateModel):
    id: str
    type: PlotNodeType
    content: str
    characters: list[str] = Field(default_factory=list)
    introduced_at: int
    resolved_at: int | None = None
    importance: int = Field(5, ge=1, le=10)
    status: PlotNodeStatus = "active"
    tags: list[str] = Field(default_factory=list)
    notes: str | None = None


class PlotEdge(StateModel):
    id: str
    from_node: str
    to_node: str
    relation: PlotEdgeRelation
    description: str = ""
    established_at: int


class PendingForeshadowing(StateModel):
    id: str
    urgency: ForeshadowingUrgency
    suggested_resolution_range: tuple[int, int]
    age_in_chapters: int
    summary: str
    overdue: bool = False


class PlotGraph(StateModel):
    last_updated_chapter: int = 0
    nodes: list[PlotNode] = Field(default_factory=list)
    edges: list[PlotEdge] = Field(default_factory=list)
    active_main_plots: list[str] = Field(default_factory=list)
    active_sub_plots: list[str] = Field(default_factory=list)
    pending_foreshadowing: list[PendingForeshadowing] = Field(default_factory=list)

    def node_by_id(self, node_id: str) -> PlotNode | None:
        return next((n for n in self.nodes if n.id == node_id), None)

# context/plot_graph.py
"""Causal plot graph maintenance and prompt rendering.

Updates are lenient: an edge, status update or resolution that references
content with no matching node is dropped on its own and never aborts the
rest of the chapter's analysis.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any

import structlog
from config import settings
from core.llm_interface import ModelClient, ModelProviderConfig
from parsing import extract_json_object, parse_model_list
from prompt_renderer import render_prompt_pair

from models.analysis_models import (
    ForeshadowingResolution,
    PlotAnalysis,
    PlotEdgeDraft,
    PlotNodeDraft,
    PlotStatusUpdate,
)
from models.plot_models import (
    URGENCY_ORDER,
    ForeshadowingUrgency,
    PendingForeshadowing,
    PlotEdge,
    PlotEdgeRelation,
    PlotGraph,
    PlotNode,
    PlotNodeStatus,
    PlotNodeType,
)

logger = structlog.get_logger(__name__)

MAIN_PLOT_IMPORTANCE = 7
RECENT_EVENT_WINDOW = 10
CAUSAL_REMINDER_WINDOW = 20
_CLOSED_STATUSES = ("resolved", "abandoned")


def generate_node_id(graph: PlotGraph, node_type: PlotNodeType, chapter: int) -> str:
    prefix = f"{node_type}_ch{chapter}_"
    ordinal = sum(1 for n in graph.nodes if n.id.startswith(prefix)) + 1
    candidate = f"{prefix}{ordinal}"
    existing = {n.id for n in graph.nodes}
    while candidate in existing:
        ordinal += 1
        candidate = f"{prefix}{ordinal}"
    return candidate


def generate_edge_id(from_id: str, to_id: str, relation: PlotEdgeRelation) -> str:
    return f"edge_{from_id}_{relation}_{to_id}"


def foreshadowing_urgency(node: PlotNode, current_chapter: int) -> ForeshadowingUrgency:
    age = current_chapter - node.introduced_at
    if node.importance >= 8:
        multiplier = 0.7
    elif node.importance >= 5:
        multiplier = 1.0
    else:
        multiplier = 1.3
    adjusted = age / multiplier
    if adjusted > 80:
        return "critical"
    if adjusted > 50:
        return "high"
    if adjusted > 20:
        return "medium"
    return "low"


def suggested_resolution_range(
    node: PlotNode, current_chapter: int, total_chapters: int
) -> tuple[int, int]:
    if node.importance >= 8:
        ideal_age = min(100, total_chapters * 0.8)
    elif node.importance >= 5:
        ideal_age = 50
    else:
        ideal_age = 30
    low = max(current_chapter + 1, int(node.introduced_at + ideal_age - 10))
    high = min(total_chapters, int(node.introduced_at + ideal_age + 20))
    return low, high


def compute_pending_foreshadowing(
    graph: PlotGraph,
    current_chapter: int,
    total_chapters: int,
    overdue_after: int = settings.FORESHADOWING_OVERDUE_CHAPTERS,
) -> list[PendingForeshadowing]:
    """Rebuild the pending view from every active foreshadowing node."""
    pending = []
    for node in graph.nodes:
        if node.type != "foreshadowing" or node.status != "active":
            continue
        age = current_chapter - node.introduced_at
        pending.append(
            PendingForeshadowing(
                id=node.id,
                urgency=foreshadowing_urgency(node, current_chapter),
                suggested_resolution_range=suggested_resolution_range(
                    node, current_chapter, total_chapters
                ),
                age_in_chapters=age,
                summary=node.content,
                overdue=age >= overdue_after,
            )
        )
    pending.sort(key=lambda p: (URGENCY_ORDER[p.urgency], -p.age_in_chapters))
    return pending


def update_node_status(
    graph: PlotGraph,
    node_id: str,
    new_status: PlotNodeStatus,
    chapter: int | None = None,
) -> bool:
    """Mutate ``graph`` in place; returns False when nothing changed.

    Only active nodes move, and nothing moves back to active.
    """
    node = graph.node_by_id(node_id)
    if node is None or node.status != "active" or new_status == "active":
        return False
    node.status = new_status
    if new_status == "resolved" and chapter is not None:
        node.resolved_at = chapter
    if new_status in _CLOSED_STATUSES:
        graph.active_main_plots = [i for i in graph.active_main_plots if i != node_id]
        graph.active_sub_plots = [i for i in graph.active_sub_plots if i != node_id]
    return True


def _add_node(graph: PlotGraph, draft: PlotNodeDraft, chapter: int) -> PlotNode:
    node = PlotNode(
        id=generate_node_id(graph, draft.type, chapter),
        type=draft.type,
        content=draft.content.strip(),
        characters=list(dict.fromkeys(draft.characters)),
        introduced_at=chapter,
        importance=draft.importance,
        tags=list(dict.fromkeys(draft.tags)),
    )
    graph.nodes.append(node)
    if node.importance >= MAIN_PLOT_IMPORTANCE:
        graph.active_main_plots.append(node.id)
    elif node.type != "foreshadowing":
        graph.active_sub_plots.append(node.id)
    return node


def apply_analysis(
    graph: PlotGraph,
    analysis: PlotAnalysis,
    chapter_index: int,
    total_chapters: int,
) -> PlotGraph:
    """Return a new graph with one chapter's analysis folded in."""
    updated = graph.model_copy(deep=True)
    existing_nodes = list(updated.nodes)

    content_to_id: dict[str, str] = {n.content: n.id for n in existing_nodes}
    for draft in analysis.new_nodes:
        node = _add_node(updated, draft, chapter_index)
        content_to_id[node.content] = node.id

    edge_ids = {e.id for e in updated.edges}
    for edge in analysis.new_edges:
        from_id = content_to_id.get(edge.from_content.strip())
        to_id = content_to_id.get(edge.to_content.strip())
        if from_id is None or to_id is None:
            logger.debug(
                "Dropping plot edge with unresolved endpoint.",
                from_content=edge.from_content,
                to_content=edge.to_content,
            )
            continue
        edge_id = generate_edge_id(from_id, to_id, edge.relation)
        if edge_id in edge_ids:
            continue
        updated.edges.append(
            PlotEdge(
                id=edge_id,
                from_node=from_id,
                to_node=to_id,
                relation=edge.relation,
                description=edge.description,
                established_at=chapter_index,
            )
        )
        edge_ids.add(edge_id)

    for status_update in analysis.status_updates:
        target = next(
            (n for n in existing_nodes if n.content == status_update.node_content.strip()),
            None,
        )
        if target is None:
            continue
        update_node_status(updated, target.id, status_update.new_status, chapter_index)

    for resolution in analysis.foreshadowing_resolutions:
        target = next(
            (
                n
                for n in existing_nodes
                if n.type == "foreshadowing"
                and n.content == resolution.foreshadowing_content.strip()
            ),
            None,
        )
        if target is None:
            continue
        update_node_status(updated, target.id, "resolved", chapter_index)

    updated.last_updated_chapter = max(graph.last_updated_chapter, chapter_index)
    updated.pending_foreshadowing = compute_pending_foreshadowing(
        updated, chapter_index, total_chapters
    )
    return updated


def add_foreshadowing(
    graph: PlotGraph,
    content: str,
    characters: list[str],
    importance: int,
    chapter: int,
    total_chapters: int,
) -> PlotGraph:
    """Manually plant a foreshadowing node."""
    updated = graph.model_copy(deep=True)
    draft = PlotNodeDraft(
        type="foreshadowing",
        content=content,
        characters=characters,
        importance=importance,
        tags=["manual"],
    )
    _add_node(updated, draft, chapter)
    updated.pending_foreshadowing = compute_pending_foreshadowing(
        updated, chapter, total_chapters
    )
    return updated


def resolve_foreshadowing(
    graph: PlotGraph, foreshadowing_id: str, chapter: int, total_chapters: int
) -> PlotGraph:
    updated = graph.model_copy(deep=True)
    if not update_node_status(updated, foreshadowing_id, "resolved", chapter):
        logger.warning(
            "Foreshadowing not resolved; unknown or already closed.",
            node_id=foreshadowing_id,
        )
    updated.pending_foreshadowing = compute_pending_foreshadowing(
        updated, chapter, total_chapters
    )
    return updated


def causal_chain(graph: PlotGraph, node_id: str, max_depth: int = 3) -> list[PlotNode]:
    """Nodes reachable through causes/enables edges, depth-first."""
    visited: set[str] = set()
    result: list[PlotNode] = []

    def traverse(current: str, depth: int) -> None:
        if depth > max_depth or current in visited:
            return
        visited.add(current)
        node = graph.node_by_id(current)
        if node is not None:
            result.append(node)
        for edge in graph.edges:
            if edge.from_node == current and edge.relation in ("causes", "enables"):
                traverse(edge.to_node, depth + 1)

    traverse(node_id, 0)
    return result


def graph_stats(graph: PlotGraph) -> dict[str, int]:
    return {
        "total_nodes": len(graph.nodes),
        "active_nodes": sum(1 for n in graph.nodes if n.status == "active"),
        "resolved_nodes": sum(1 for n in graph.nodes if n.status == "resolved"),
        "total_foreshadowing": sum(1 for n in graph.nodes if n.type == "foreshadowing"),
        "pending_foreshadowing": len(graph.pending_foreshadowing),
        "total_edges": len(graph.edges),
    }


def format_foreshadowing_reminder(
    pending: list[PendingForeshadowing], max_items: int = 5
) -> str:
    urgent = [p for p in pending if p.overdue or p.urgency == "critical"]
    soon = [p for p in pending if p not in urgent and p.urgency == "high"]
    if not urgent and not soon:
        return ""
    urgent.sort(key=lambda p: -p.age_in_chapters)

    parts = ["[Foreshadowing reminder]"]
    if urgent:
        parts.append("URGENT - these hints are overdue; pay them off soon:")
        for i, item in enumerate(urgent[:max_items], start=1):
            parts.append(f"  {i}. {item.summary} (planted {item.age_in_chapters} chapters ago)")
    remaining = max_items - min(len(urgent), max_items)
    if soon and remaining > 0:
        parts.append("Important - consider paying these off in the near term:")
        for i, item in enumerate(soon[:remaining], start=1):
            low, high = item.suggested_resolution_range
            parts.append(f"  {i}. {item.summary} (suggested chapters {low}-{high})")
    return "\n".join(parts)


def format_active_plot_lines(graph: PlotGraph) -> str:
    main = [n for n in map(graph.node_by_id, graph.active_main_plots) if n]
    sub = [n for n in map(graph.node_by_id, graph.active_sub_plots) if n]
    if not main and not sub:
        return ""
    parts = ["[Active plot lines]"]
    if main:
        parts.append("Main:")
        parts.extend(f"  {i}. [{n.type}] {n.content}" for i, n in enumerate(main[:3], 1))
    if sub:
        parts.append("Sub:")
        parts.extend(f"  {i}. [{n.type}] {n.content}" for i, n in enumerate(sub[:3], 1))
    return "\n".join(parts)


def _format_recent_events(graph: PlotGraph, chapter_index: int) -> str:
    recent = [
        n
        for n in graph.nodes
        if n.status == "active"
        and n.type != "foreshadowing"
        and chapter_index - n.introduced_at <= RECENT_EVENT_WINDOW
    ]
    recent.sort(key=lambda n: n.introduced_at, reverse=True)
    if not recent:
        return ""
    parts = ["[Recent key events]"]
    for i, node in enumerate(recent[:5], start=1):
        parts.append(f"  {i}. Chapter {node.introduced_at}: {node.content}")
    return "\n".join(parts)


def _format_causal_reminder(graph: PlotGraph, chapter_index: int) -> str:
    lines = []
    for edge in graph.edges:
        if edge.relation not in ("causes", "enables"):
            continue
        if chapter_index - edge.established_at > CAUSAL_REMINDER_WINDOW:
            continue
        source = graph.node_by_id(edge.from_node)
        target = graph.node_by_id(edge.to_node)
        if source is None or target is None or target.status != "active":
            continue
        verb = "will cause" if edge.relation == "causes" else "will enable"
        lines.append(f'  - "{source.content}" {verb} "{target.content}"')
        if len(lines) == 3:
            break
    if not lines:
        return ""
    return "\n".join(
        ["[Causal chain reminder]", "These consequences must play out in later chapters:", *lines]
    )


def build_plot_context(graph: PlotGraph, chapter_index: int, total_chapters: int) -> str:
    """Prompt fragment: reminder, plot lines, recent events, causal chain."""
    if not graph.nodes:
        return ""
    sections = [
        format_foreshadowing_reminder(graph.pending_foreshadowing),
        format_active_plot_lines(graph),
        _format_recent_events(graph, chapter_index),
        _format_causal_reminder(graph, chapter_index),
    ]
    return "\n\n".join(s for s in sections if s)


def parse_plot_analysis(raw: str) -> PlotAnalysis:
    payload: dict[str, Any] | None = extract_json_object(raw)
    if payload is None:
        logger.warning("Plot analysis payload was not a JSON object.")
        return PlotAnalysis()
    return PlotAnalysis(
        new_nodes=parse_model_list(payload.get("newNodes"), PlotNodeDraft, "plot node"),
        new_edges=parse_model_list(payload.get("newEdges"), PlotEdgeDraft, "plot edge"),
        status_updates=parse_model_list(
            payload.get("statusUpdates"), PlotStatusUpdate, "status update"
        ),
        foreshadowing_resolutions=parse_model_list(
            payload.get("foreshadowingResolutions"),
            ForeshadowingResolution,
            "foreshadowing resolution",
        ),
    )


async def analyze_chapter(
    client: ModelClient,
    chapter_text: str,
    chapter_index: int,
    graph: PlotGraph,
    providers: Sequence[ModelProviderConfig] | None = None,
) -> PlotAnalysis:
    active_nodes = [n for n in graph.nodes if n.status == "active"][-20:]
    system, prompt = render_prompt_pair(
        "plot_graph",
        {
            "chapter_index": chapter_index,
            "active_nodes": active_nodes,
            "pending": graph.pending_foreshadowing[:5],
            "chapter_text": chapter_text[: settings.EXTRACTION_SOURCE_MAX_CHARS],
        },
    )
    raw = await client.generate(
        system,
        prompt,
        temperature=settings.TEMPERATURE_PLOT_ANALYSIS,
        max_tokens=settings.QC_MAX_TOKENS * 2,
        providers=providers,
    )
    analysis = parse_plot_analysis(raw)
    logger.info(
        "Analyzed chapter plot.",
        chapter=chapter_index,
        new_nodes=len(analysis.new_nodes),
        new_edges=len(analysis.new_edges),
    )
    return analysis

# context/assembler.py
"""Merge narrative state into one bounded prompt context.

Each state-derived fragment is looked up in the :class:`ContextCache` under the
composite state version before it is recomputed.
"""

from __future__ import annotations

import re
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field

import structlog
from config import settings
from core.llm_interface import count_tokens

from context.character_state import build_character_context, character_name_map
from context.plot_graph import build_plot_context
from context.rolling_summary import compress_by_recency
from context.semantic_cache import CacheEntryType, ContextCache, compute_state_version
from context.timeline import build_timeline_context
from models.narrative_models import NarrativeGuide
from models.project_models import ProjectDefinition, ProjectState
from narrative.pacing_controller import format_guide_for_prompt

logger = structlog.get_logger(__name__)

DEFAULT_ALLOCATION: dict[str, float] = {
    "bible": 0.18,
    "character_state": 0.12,
    "plot": 0.10,
    "timeline": 0.10,
    "rolling_summary": 0.15,
    "last_chapters": 0.25,
    "narrative_guide": 0.10,
}

_PACING_MULTIPLIERS: dict[str, dict[str, float]] = {
    "action": {"bible": 0.7, "rolling_summary": 0.8, "last_chapters": 1.3},
    "climax": {"bible": 0.7, "rolling_summary": 0.8, "last_chapters": 1.3},
    "revelation": {"plot": 1.5, "character_state": 1.2},
    "emotional": {"character_state": 1.5, "bible": 0.8},
}

_BIBLE_PRIORITIES: list[tuple[int, re.Pattern[str]]] = [
    (10, re.compile(r"protagonist|power system|magic system|abilit|world|cheat", re.I)),
    (8, re.compile(r"supporting|villain|antagonist|relationship", re.I)),
    (9, re.compile(r"core|hook|goal|motivation|selling point", re.I)),
    (6, re.compile(r"background|history|setting", re.I)),
    (3, re.compile(r"example|reference|note", re.I)),
]
_DEFAULT_BIBLE_PRIORITY = 5

LAST_CHAPTER_SHARE = 0.7
PREVIOUS_CHAPTER_TAIL_CHARS = 500


def _chars_for(tokens: int) -> int:
    return int(tokens * settings.FALLBACK_CHARS_PER_TOKEN)


@dataclass
class ContextBudget:
    total_tokens: int = settings.CONTEXT_TOTAL_TOKENS
    allocation: dict[str, float] = field(default_factory=lambda: dict(DEFAULT_ALLOCATION))

    def tokens_for(self, section: str) -> int:
        return int(self.total_tokens * self.allocation.get(section, 0.0))


def adjust_budget_for_pacing(budget: ContextBudget, pacing_type: str) -> ContextBudget:
    """Re-weight sections for the pacing type, then renormalise to 1."""
    allocation = dict(budget.allocation)
    for section, factor in _PACING_MULTIPLIERS.get(pacing_type, {}).items():
        allocation[section] = allocation.get(section, 0.0) * factor
    total = sum(allocation.values())
    if total > 0:
        allocation = {k: v / total for k, v in allocation.items()}
    return ContextBudget(total_tokens=budget.total_tokens, allocation=allocation)


def _bible_priority(paragraph: str) -> int:
    for priority, pattern in _BIBLE_PRIORITIES:
        if pattern.search(paragraph):
            return priority
    return _DEFAULT_BIBLE_PRIORITY


def compress_bible(bible: str, max_tokens: int) -> str:
    """Keep the highest-priority paragraphs that fit, in their original order."""
    max_chars = _chars_for(max_tokens)
    if len(bible) <= max_chars:
        return bible
    paragraphs = [p for p in re.split(r"\n\n+", bible) if p.strip()]
    ranked = sorted(
        range(len(paragraphs)), key=lambda i: _bible_priority(paragraphs[i]), reverse=True
    )
    chosen: set[int] = set()
    used = 0
    for i in ranked:
        cost = len(paragraphs[i]) + 2
        if used + cost <= max_chars:
            chosen.add(i)
            used += cost
    return "\n\n".join(paragraphs[i] for i in sorted(chosen))


def optimize_last_chapters(chapters: Sequence[str], max_tokens: int) -> str:
    """Previous chapter in full (or its tail), plus the end of the one before it."""
    if not chapters:
        return ""
    max_chars = _chars_for(max_tokens)
    last_budget = int(max_chars * LAST_CHAPTER_SHARE)
    last = chapters[-1]
    if len(last) <= last_budget:
        parts = [f"[Previous chapter]\n{last}"]
        used = len(last) + 10
    else:
        excerpt = "..." + last[-(last_budget - 3) :]
        parts = [f"[Previous chapter (excerpt)]\n{excerpt}"]
        used = len(excerpt) + 15

    if len(chapters) >= 2 and used < max_chars * 0.9:
        remaining = max_chars - used - 20
        if remaining > 200:
            tail = min(remaining, PREVIOUS_CHAPTER_TAIL_CHARS)
            parts.append(f"[Ending of the chapter before]\n...{chapters[-2][-tail:]}")
    return "\n\n".join(parts)


@dataclass
class AssembledContext:
    """Named prompt sections plus which of them came from the cache."""

    sections: dict[str, str]
    state_version: int
    cached: list[str] = field(default_factory=list)

    @property
    def text(self) -> str:
        return "\n\n".join(s for s in self.sections.values() if s)

    def stats(self) -> dict[str, int]:
        text = self.text
        return {"chars": len(text), "estimated_tokens": count_tokens(text)}


class ContextAssembler:
    """Builds the chapter context, reusing cached fragments when state is unchanged."""

    def __init__(
        self, cache: ContextCache | None = None, budget: ContextBudget | None = None
    ) -> None:
        self.cache = cache if cache is not None else ContextCache()
        self.budget = budget or ContextBudget()

    @staticmethod
    def state_version(state: ProjectState) -> int:
        return compute_state_version(
            state.character_states.last_updated_chapter,
            max(state.plot_graph.last_updated_chapter, state.timeline.last_updated_chapter),
            state.summary_updated_chapter,
        )

    def _fragment(
        self,
        project_id: str,
        entry_type: CacheEntryType,
        chapter_index: int,
        version: int,
        budget_tokens: int,
        build: Callable[[], str],
        cached: list[str],
    ) -> str:
        entry = self.cache.get(project_id, entry_type, chapter_index, version)
        if entry is not None and entry.metadata.get("budget_tokens") == budget_tokens:
            cached.append(entry_type)
            return entry.content
        content = build()
        self.cache.set(
            project_id,
            entry_type,
            chapter_index,
            content,
            version,
            metadata={"budget_tokens": budget_tokens},
        )
        return content

    def assemble(
        self,
        project: ProjectDefinition,
        state: ProjectState,
        chapter_index: int,
        last_chapters: Sequence[str],
        guide: NarrativeGuide | None = None,
    ) -> AssembledContext:
        budget = (
            adjust_budget_for_pacing(self.budget, guide.pacing_type) if guide else self.budget
        )
        version = self.state_version(state)
        pid = project.project_id
        total = project.total_chapters
        cached: list[str] = []
        names = character_name_map(state.character_states)

        sections: dict[str, str] = {
            "chapter_info": (
                "[Chapter info]\n"
                f"- chapter_index: {chapter_index}\n"
                f"- total_chapters: {total}\n"
                f"- is_final_chapter: {str(chapter_index >= total).lower()}"
            ),
        }
        bible_tokens = budget.tokens_for("bible")
        sections["bible"] = "[Story bible]\n" + self._fragment(
            pid,
            "bible_compressed",
            chapter_index,
            version,
            bible_tokens,
            lambda: compress_bible(project.bible, bible_tokens),
            cached,
        )
        char_tokens = budget.tokens_for("character_state")
        sections["characters"] = self._fragment(
            pid,
            "character_context",
            chapter_index,
            version,
            char_tokens,
            lambda: build_character_context(state.character_states, chapter_index),
            cached,
        )
        plot_tokens = budget.tokens_for("plot")
        sections["plot"] = self._fragment(
            pid,
            "plot_context",
            chapter_index,
            version,
            plot_tokens,
            lambda: build_plot_context(state.plot_graph, chapter_index, total),
            cached,
        )
        timeline_tokens = budget.tokens_for("timeline")
        sections["timeline"] = self._fragment(
            pid,
            "timeline_context",
            chapter_index,
            version,
            timeline_tokens,
            lambda: build_timeline_context(state.timeline, chapter_index, names)
            if state.timeline.events
            else "",
            cached,
        )
        sections["guide"] = format_guide_for_prompt(guide) if guide else ""
        summary_tokens = budget.tokens_for("rolling_summary")
        summary = self._fragment(
            pid,
            "rolling_summary",
            chapter_index,
            version,
            summary_tokens,
            lambda: compress_by_recency(state.rolling_summary, summary_tokens),
            cached,
        )
        sections["summary"] = f"[Story so far]\n{summary}" if summary else ""
        sections["open_loops"] = (
            "[Open loops]\n"
            + "\n".join(f"{i}. {loop}" for i, loop in enumerate(state.open_loops, start=1))
            if state.open_loops
            else ""
        )
        sections["last_chapters"] = optimize_last_chapters(
            last_chapters, budget.tokens_for("last_chapters")
        )

        assembled = AssembledContext(sections=sections, state_version=version, cached=cached)
        logger.debug(
            "Assembled chapter context.",
            chapter=chapter_index,
            state_version=version,
            cached=cached,
            chars=len(assembled.text),
        )
        return assembled

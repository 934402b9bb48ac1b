# orchestration/batch_runner.py
"""Sequential multi-chapter generation with persistence after every chapter."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum, auto
from typing import TYPE_CHECKING

import structlog
from core.llm_interface import ModelCallError
from storage.project_store import ProjectStore

from context.character_state import character_name_map, initialize_from_profiles
from context.timeline import initialize_from_outline
from models.project_models import ProjectDefinition, ProjectState
from narrative.pacing_controller import generate_narrative_arc
from orchestration.chapter_engine import GenerationOrchestrator
from orchestration.models import (
    ChapterGenerationResult,
    ChapterQualityError,
    ChapterRequest,
)

if TYPE_CHECKING:  # pragma: no cover - type hints
    from ui.rich_display import RichDisplayManager

logger = structlog.get_logger(__name__)

LAST_CHAPTERS_KEPT = 2
RECENT_PACING_TYPES_KEPT = 5


class RunnerState(Enum):
    """States for the chapter batch runner."""

    INIT = auto()
    GENERATE_CHAPTER = auto()
    PERSIST = auto()
    HANDLE_ERROR = auto()
    FINISH = auto()


def initial_project_state(definition: ProjectDefinition) -> ProjectState:
    """Fresh state: character snapshots, pacing arc and planned timeline events."""
    characters = initialize_from_profiles(definition.characters)
    arc = (
        generate_narrative_arc(definition.volumes, definition.total_chapters)
        if definition.volumes
        else None
    )
    state = ProjectState(
        project_id=definition.project_id,
        character_states=characters,
        timeline=initialize_from_outline(definition.volumes, character_name_map(characters)),
    )
    if arc is not None:
        state.narrative_arc = arc
    return state


def apply_chapter_result(state: ProjectState, result: ChapterGenerationResult) -> ProjectState:
    """New project state after a successful chapter; ``state`` is left untouched."""
    recent = list(state.recent_pacing_types)
    if result.narrative_guide is not None:
        recent = [*recent, result.narrative_guide.pacing_type][-RECENT_PACING_TYPES_KEPT:]
    return state.model_copy(
        update={
            "rolling_summary": result.updated_summary,
            "open_loops": list(result.updated_open_loops),
            "summary_updated_chapter": (
                state.summary_updated_chapter
                if result.skipped_summary
                else result.chapter_index
            ),
            "character_states": result.updated_character_states,
            "plot_graph": result.updated_plot_graph,
            "timeline": result.updated_timeline,
            "last_chapter_index": max(state.last_chapter_index, result.chapter_index),
            "last_pacing_target": (
                result.narrative_guide.pacing_target
                if result.narrative_guide is not None
                else state.last_pacing_target
            ),
            "recent_pacing_types": recent,
        }
    )


@dataclass
class ChapterBatchRunner:
    """Generate ``count`` chapters in order, stopping at the first fatal error."""

    orchestrator: GenerationOrchestrator
    store: ProjectStore
    start_chapter: int | None = None
    count: int = 1
    display: RichDisplayManager | None = None
    state: RunnerState = RunnerState.INIT
    project_state: ProjectState | None = None
    current_chapter: int = 0
    end_chapter: int = 0
    last_chapters: list[str] = field(default_factory=list)
    pending: ChapterGenerationResult | None = None
    results: list[ChapterGenerationResult] = field(default_factory=list)
    error: Exception | None = None

    @property
    def project(self) -> ProjectDefinition:
        return self.orchestrator.project

    async def run(self) -> list[ChapterGenerationResult]:
        """Execute the batch loop and return the persisted chapter results."""
        while self.state != RunnerState.FINISH:
            if self.state == RunnerState.INIT:
                await self._init()
            elif self.state == RunnerState.GENERATE_CHAPTER:
                await self._generate_chapter()
            elif self.state == RunnerState.PERSIST:
                await self._persist()
            elif self.state == RunnerState.HANDLE_ERROR:
                await self._handle_error()
        return self.results

    def _update_display(self, **kwargs: object) -> None:
        if self.display is not None:
            self.display.update(**kwargs)

    async def _init(self) -> None:
        project_id = self.project.project_id
        self.project_state = await self.store.load_state(project_id)
        next_chapter = self.project_state.last_chapter_index + 1
        start = self.start_chapter or next_chapter
        if start != next_chapter:
            self.error = ValueError(
                f"Chapter {start} requested but the next chapter for '{project_id}' "
                f"is {next_chapter}; chapters must be generated in order."
            )
            self.state = RunnerState.HANDLE_ERROR
            return

        self.current_chapter = start
        self.end_chapter = min(start + max(self.count, 0) - 1, self.project.total_chapters)
        self.last_chapters = await self.store.recent_chapters(
            project_id, start, LAST_CHAPTERS_KEPT
        )
        logger.info(
            "Batch run starting.",
            project=project_id,
            start=start,
            end=self.end_chapter,
        )
        self._update_display(
            project_title=self.project.title or project_id,
            total_chapters=self.project.total_chapters,
        )
        self.state = RunnerState.GENERATE_CHAPTER

    async def _generate_chapter(self) -> None:
        if self.current_chapter > self.end_chapter or self.project_state is None:
            self.state = RunnerState.FINISH
            return

        chapter = self.current_chapter
        self._update_display(chapter_num=chapter, step="Generating")
        request = ChapterRequest(
            chapter_index=chapter,
            last_chapters=list(self.last_chapters),
            previous_pacing=self.project_state.last_pacing_target,
        )
        try:
            self.pending = await self.orchestrator.generate_chapter(
                self.project_state, request
            )
        except (ChapterQualityError, ModelCallError) as e:
            self.error = e
            self.state = RunnerState.HANDLE_ERROR
            return
        self.state = RunnerState.PERSIST

    async def _persist(self) -> None:
        result = self.pending
        if result is None or self.project_state is None:
            self.state = RunnerState.FINISH
            return
        self._update_display(step="Saving")
        new_state = apply_chapter_result(self.project_state, result)
        await self.store.save_chapter(
            self.project.project_id, result.chapter_index, result.chapter_text
        )
        await self.store.save_state(new_state)

        self.project_state = new_state
        self.results.append(result)
        self.last_chapters = [*self.last_chapters, result.chapter_text][-LAST_CHAPTERS_KEPT:]
        self.pending = None
        self._update_display(step="Saved", last_result=result)
        logger.info(
            "Chapter saved.",
            chapter=result.chapter_index,
            chars=len(result.chapter_text),
            rewrites=result.rewrite_count,
            skipped_summary=result.skipped_summary,
        )
        self.current_chapter += 1
        self.state = RunnerState.GENERATE_CHAPTER

    async def _handle_error(self) -> None:
        logger.critical(
            "Batch run halted.",
            chapter=self.current_chapter,
            error=str(self.error),
        )
        self._update_display(step=f"Halted at chapter {self.current_chapter}")
        self.state = RunnerState.FINISH

# orchestration/chapter_engine.py
"""Chapter generation pipeline.

Plan, draft, self-review, quick QC with rewrites, optional full QC and repair,
then post-chapter state extraction and the rolling summary update. Only the
draft/QC path may abort a chapter; every other stage degrades to its previous
value.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Sequence
from typing import TypeVar

import structlog
from config import ChapterForgeSettings, settings
from core.llm_interface import (
    ModelCallError,
    ModelClient,
    ModelErrorType,
    ModelProviderConfig,
    count_tokens,
    provider_chain_from_settings,
)
from parsing import extract_json_object, normalize_generated_chapter_text
from prompt_renderer import render_prompt_pair
from pydantic import ValidationError

from context import character_state, plot_graph, timeline
from context.assembler import AssembledContext, ContextAssembler
from context.rolling_summary import (
    build_chapter_digest,
    normalize_rolling_summary,
    parse_summary_update,
)
from models.analysis_models import ChapterPlan, SelfReviewVerdict
from models.character_models import CharacterStateRegistry
from models.narrative_models import NarrativeGuide
from models.plot_models import PlotGraph
from models.project_models import ChapterOutline, ProjectDefinition, ProjectState
from models.qc_models import QCResult
from models.timeline_models import TimelineState
from narrative.pacing_controller import build_narrative_guide, check_balance
from narrative.pov_controller import extract_pov_config, protagonist_name
from orchestration.models import (
    ChapterGenerationResult,
    ChapterQualityError,
    ChapterRequest,
    Diagnostics,
    StageResult,
)
from quality.engine import QualityControlEngine, run_quick_qc
from quality.repair import repair_chapter
from quality.rule_checks import (
    build_rewrite_instruction,
    quick_ending_heuristic,
    quick_format_check,
)

logger = structlog.get_logger(__name__)

T = TypeVar("T")

DEFAULT_CHAPTER_GOAL = (
    "Advance the main conflict, create a new obstacle, and end on a problem the "
    "next chapter must deal with."
)
BIBLE_SUMMARY_CHARS = 1200


def temperature_for_pacing(guide: NarrativeGuide | None) -> float:
    if guide is None:
        return settings.TEMPERATURE_DRAFTING
    if guide.pacing_target >= 8:
        return 0.9
    if guide.pacing_target >= 6:
        return 0.85
    if guide.pacing_target >= 4:
        return 0.8
    return 0.75


def recommended_max_chars(min_chars: int) -> int:
    return max(min_chars + 1000, round(min_chars * 1.5))


def format_chapter_plan(plan: ChapterPlan) -> str:
    lines = [
        f"Scene {i}: purpose={s.purpose} | conflict={s.conflict} | new info={s.new_info}"
        for i, s in enumerate(plan.scene_plan, start=1)
    ]

    def numbered(items: list[str]) -> str:
        return "\n".join(f"{i}. {x}" for i, x in enumerate(items, start=1)) or "(none)"

    lines.append(f"Continuity checks:\n{numbered(plan.continuity_checks)}")
    lines.append(f"Avoid repeating:\n{numbered(plan.avoid_repeats)}")
    return "\n".join(lines)


def build_goal_section(outline: ChapterOutline | None, goal_hint: str | None) -> str:
    if outline is not None:
        parts = [f"Title: {outline.title}" if outline.title else ""]
        parts.append(f"Goal: {outline.goal or DEFAULT_CHAPTER_GOAL}")
        if outline.hook:
            parts.append(f"Closing hook: {outline.hook}")
        return "\n".join(p for p in parts if p)
    return goal_hint or DEFAULT_CHAPTER_GOAL


def quick_gate_reasons(
    text: str, chapter_index: int, total_chapters: int, min_chars: int
) -> list[str]:
    """Format reasons, plus premature-ending reasons for non-final chapters."""
    reasons = list(quick_format_check(text, min_chars).reasons)
    if chapter_index < total_chapters:
        reasons.extend(quick_ending_heuristic(text).reasons)
    return reasons


class GenerationOrchestrator:
    """Generates one chapter at a time from explicit prior state.

    The caller owns ordering: chapter N+1 must not start before chapter N's
    state is persisted. The orchestrator itself never mutates the input state.
    """

    def __init__(
        self,
        client: ModelClient,
        project: ProjectDefinition,
        *,
        assembler: ContextAssembler | None = None,
        qc_engine: QualityControlEngine | None = None,
        cfg: ChapterForgeSettings = settings,
    ) -> None:
        self.client = client
        self.project = project
        self.cfg = cfg
        self.assembler = assembler or ContextAssembler()
        self.pov = extract_pov_config(project.bible, protagonist_name(project.characters))
        self.extraction_providers = provider_chain_from_settings(
            cfg, model=cfg.EXTRACTION_MODEL
        )
        self.qc_engine = qc_engine or QualityControlEngine(
            client, providers=provider_chain_from_settings(cfg, model=cfg.EVALUATION_MODEL)
        )

    @property
    def min_chars(self) -> int:
        return self.cfg.MIN_CHAPTER_CHARS

    async def _run_stage(
        self, stage: str, work: Awaitable[T], diagnostics: Diagnostics
    ) -> StageResult[T]:
        started = time.perf_counter()
        try:
            value = await work
        except Exception as exc:
            logger.warning(
                "Stage failed; keeping previous value.",
                stage=stage,
                error=str(exc),
                exc_info=True,
            )
            diagnostics.degraded_stages.append(stage)
            return StageResult(
                stage=stage,
                error=exc,
                duration_ms=int((time.perf_counter() - started) * 1000),
            )
        duration = int((time.perf_counter() - started) * 1000)
        diagnostics.add_duration(stage, duration)
        return StageResult(stage=stage, value=value, duration_ms=duration)

    async def _draft(
        self,
        system: str,
        prompt: str,
        chapter_index: int,
        temperature: float,
        diagnostics: Diagnostics,
    ) -> str:
        diagnostics.count_call("drafting")
        raw = await self.client.generate(
            system,
            prompt,
            temperature=temperature,
            max_tokens=self.cfg.DRAFT_MAX_TOKENS,
        )
        return normalize_generated_chapter_text(raw, chapter_index)

    async def _plan(self, context: AssembledContext, goal: str) -> str | None:
        system, prompt = render_prompt_pair(
            "planning", {"context": context.text, "goal": goal}
        )
        raw = await self.client.generate(
            system,
            prompt,
            temperature=self.cfg.TEMPERATURE_PLANNING,
            max_tokens=self.cfg.PLAN_MAX_TOKENS,
        )
        payload = extract_json_object(raw)
        if payload is None:
            logger.info("Chapter plan was not parseable; drafting without it.")
            return None
        try:
            plan = ChapterPlan.model_validate(payload)
        except ValidationError:
            logger.info("Chapter plan failed validation; drafting without it.")
            return None
        return format_chapter_plan(plan) if plan.scene_plan else None

    async def _self_review(
        self, context: AssembledContext, chapter_text: str, warnings: list[str]
    ) -> SelfReviewVerdict:
        system, prompt = render_prompt_pair(
            "self_review",
            {"context": context.text, "warnings": warnings, "chapter_text": chapter_text},
        )
        raw = await self.client.generate(
            system,
            prompt,
            temperature=self.cfg.TEMPERATURE_REVIEW,
            max_tokens=self.cfg.SELF_REVIEW_MAX_TOKENS,
        )
        payload = extract_json_object(raw)
        if payload is None:
            return SelfReviewVerdict()
        try:
            return SelfReviewVerdict.model_validate(payload)
        except ValidationError:
            return SelfReviewVerdict()

    def _duplication_warnings(self, text: str, state: ProjectState) -> list[str]:
        if not state.timeline.events:
            return []
        names = character_state.character_name_map(state.character_states)
        return timeline.check_event_duplication(text, state.timeline, names).warnings

    def summary_provider_candidates(self) -> list[Sequence[ModelProviderConfig] | None]:
        """Summary model first when it differs from the main model, then the main chain."""
        main_chain = provider_chain_from_settings(self.cfg)
        summary_model = self.cfg.SUMMARY_MODEL or self.cfg.MAIN_GENERATION_MODEL
        if summary_model == self.cfg.MAIN_GENERATION_MODEL:
            return [main_chain]
        return [provider_chain_from_settings(self.cfg, model=summary_model)[:1], main_chain]

    async def _update_summary(
        self, state: ProjectState, chapter_text: str, diagnostics: Diagnostics
    ) -> tuple[str, list[str]]:
        digest = build_chapter_digest(chapter_text, self.cfg.SUMMARY_SOURCE_MAX_CHARS)
        diagnostics.prompt_chars["summary_source"] = len(digest)
        system, prompt = render_prompt_pair(
            "summary_update",
            {
                "bible": self.project.bible[:BIBLE_SUMMARY_CHARS],
                "previous_summary": normalize_rolling_summary(state.rolling_summary),
                "open_loops": state.open_loops,
                "digest": digest,
            },
        )
        last_error: ModelCallError | None = None
        for providers in self.summary_provider_candidates():
            diagnostics.count_call("summary")
            try:
                raw = await self.client.generate(
                    system,
                    prompt,
                    temperature=self.cfg.TEMPERATURE_SUMMARY,
                    max_tokens=self.cfg.SUMMARY_UPDATE_MAX_TOKENS,
                    providers=providers,
                )
            except ModelCallError as exc:
                last_error = exc
                logger.warning(
                    "Summary candidate failed.",
                    provider=providers[0].name if providers else None,
                    error=str(exc),
                )
                continue
            return parse_summary_update(
                raw, state.rolling_summary, state.open_loops, self.cfg.MAX_OPEN_LOOPS
            )
        if last_error is None:
            raise ModelCallError("No summary provider candidates", ModelErrorType.UNKNOWN)
        raise last_error

    async def _extract_characters(
        self, text: str, chapter_index: int, registry: CharacterStateRegistry
    ) -> CharacterStateRegistry:
        deltas = await character_state.extract_character_changes(
            self.client, text, chapter_index, registry, providers=self.extraction_providers
        )
        return character_state.apply_deltas(registry, deltas, chapter_index)

    async def _extract_plot(
        self, text: str, chapter_index: int, graph: PlotGraph
    ) -> PlotGraph:
        analysis = await plot_graph.analyze_chapter(
            self.client, text, chapter_index, graph, providers=self.extraction_providers
        )
        if not (
            analysis.new_nodes
            or analysis.status_updates
            or analysis.foreshadowing_resolutions
            or analysis.new_edges
        ):
            return graph
        return plot_graph.apply_analysis(
            graph, analysis, chapter_index, self.project.total_chapters
        )

    async def _extract_timeline(
        self, text: str, chapter_index: int, state: ProjectState
    ) -> TimelineState:
        names = character_state.character_name_map(state.character_states)
        analysis = await timeline.analyze_chapter(
            self.client,
            text,
            chapter_index,
            state.timeline,
            names,
            providers=self.extraction_providers,
        )
        return timeline.apply_event_analysis(state.timeline, analysis, chapter_index)

    async def _full_qc_and_repair(
        self,
        text: str,
        chapter_index: int,
        state: ProjectState,
        guide: NarrativeGuide | None,
        outline: ChapterOutline | None,
        diagnostics: Diagnostics,
    ) -> tuple[str, QCResult | None, int]:
        total = self.project.total_chapters
        qc = await self.qc_engine.run_full_qc(
            text,
            chapter_index,
            total,
            min_chars=self.min_chars,
            character_states=state.character_states,
            guide=guide,
            outline=outline,
        )

        if qc.passed or not self.cfg.ENABLE_AUTO_REPAIR:
            return text, qc, 0

        repair = await repair_chapter(
            self.client,
            text,
            qc,
            chapter_index,
            total,
            max_attempts=self.cfg.REPAIR_MAX_ATTEMPTS,
            min_chars=self.min_chars,
        )
        diagnostics.count_call("drafting", repair.attempts)
        if not repair.success:
            return text, qc, repair.attempts
        if quick_gate_reasons(repair.repaired_text, chapter_index, total, self.min_chars):
            logger.warning(
                "Repaired chapter fails the quick gate; keeping the unrepaired text.",
                chapter=chapter_index,
            )
            return text, qc, repair.attempts
        repaired_qc = run_quick_qc(repair.repaired_text, chapter_index, total, self.min_chars)
        return repair.repaired_text, repaired_qc, repair.attempts

    async def generate_chapter(
        self, state: ProjectState, request: ChapterRequest
    ) -> ChapterGenerationResult:
        """Generate one chapter.

        Raises:
            ChapterQualityError: the draft still fails the quick gate after all rewrites.
            ModelCallError: drafting itself could not reach any provider.
        """
        started = time.perf_counter()
        cfg = self.cfg
        idx = request.chapter_index
        total = self.project.total_chapters
        is_final = idx >= total
        diagnostics = Diagnostics()
        outline = self.project.chapter_outline(idx)

        guide: NarrativeGuide | None = None
        if state.narrative_arc.volume_pacing:
            guide = build_narrative_guide(
                state.narrative_arc, idx, total, outline, request.previous_pacing, pov=self.pov
            )
            balance = check_balance(state.recent_pacing_types, guide.pacing_type)
            if not balance.balanced:
                logger.info("Pacing imbalance.", chapter=idx, suggestion=balance.suggestion)

        context = self.assembler.assemble(
            self.project, state, idx, request.last_chapters, guide
        )
        goal = build_goal_section(outline, request.goal_hint)

        plan_text: str | None = None
        if cfg.ENABLE_PLANNING:
            diagnostics.count_call("planning")
            plan_stage = await self._run_stage(
                "planning", self._plan(context, goal), diagnostics
            )
            plan_text = plan_stage.value

        system, user_prompt = render_prompt_pair(
            "drafting",
            {
                "chapter_index": idx,
                "total_chapters": total,
                "is_final": is_final,
                "min_chars": self.min_chars,
                "max_chars": recommended_max_chars(self.min_chars),
                "chapter_title": outline.title if outline else "",
                "guide": guide,
                "context": context.text,
                "plan": plan_text or "",
                "goal": goal,
            },
        )

        draft_started = time.perf_counter()
        text = await self._draft(
            system, user_prompt, idx, temperature_for_pacing(guide), diagnostics
        )
        rewrite_count = 0

        if cfg.ENABLE_SELF_REVIEW:
            for _ in range(cfg.MAX_SELF_REVIEW_ATTEMPTS):
                diagnostics.count_call("self_review")
                review_stage = await self._run_stage(
                    "self_review",
                    self._self_review(context, text, self._duplication_warnings(text, state)),
                    diagnostics,
                )
                verdict = review_stage.value_or(SelfReviewVerdict())
                if verdict.action == "keep":
                    break
                issues = (
                    "\n".join(f"{i}. {x}" for i, x in enumerate(verdict.issues, start=1))
                    or "(none listed)"
                )
                guidance = verdict.guidance or (
                    "Fix the problems above, avoid repeated events, keep the hook and the pace."
                )
                rewrite_prompt = (
                    f"{user_prompt}\n\n[Problems found in self-review]\n{issues}\n\n"
                    f"[Revision guidance]\n{guidance}\n\n"
                    "Rewrite the chapter, keeping the title line format unchanged:"
                )
                text = await self._draft(
                    system, rewrite_prompt, idx, cfg.TEMPERATURE_REWRITE, diagnostics
                )
                rewrite_count += 1

        qc_started = time.perf_counter()
        for _ in range(cfg.MAX_REWRITE_ATTEMPTS):
            diagnostics.qc_attempts += 1
            reasons = quick_gate_reasons(text, idx, total, self.min_chars)
            if not reasons:
                break
            logger.warning(
                "Quick QC failed; rewriting.", chapter=idx, reason=reasons[0]
            )
            instruction = build_rewrite_instruction(idx, total, reasons, self.min_chars)
            text = await self._draft(
                system,
                f"{user_prompt}\n\n{instruction}",
                idx,
                cfg.TEMPERATURE_REWRITE,
                diagnostics,
            )
            rewrite_count += 1

        final_reasons = quick_gate_reasons(text, idx, total, self.min_chars)
        if final_reasons:
            logger.error("Chapter failed quick QC.", chapter=idx, reasons=final_reasons)
            raise ChapterQualityError(idx, final_reasons[0], final_reasons)
        diagnostics.phase_durations_ms["quick_qc"] = int(
            (time.perf_counter() - qc_started) * 1000
        )
        diagnostics.phase_durations_ms["generation"] = int(
            (time.perf_counter() - draft_started) * 1000
        )

        qc_result: QCResult | None = None
        if cfg.ENABLE_FULL_QC:
            qc_stage = await self._run_stage(
                "full_qc",
                self._full_qc_and_repair(text, idx, state, guide, outline, diagnostics),
                diagnostics,
            )
            if qc_stage.ok and qc_stage.value is not None:
                text, qc_result, repair_attempts = qc_stage.value
                rewrite_count += repair_attempts

        duplication_warnings = self._duplication_warnings(text, state)
        if duplication_warnings:
            logger.warning(
                "Possible repeated events.", chapter=idx, warnings=duplication_warnings
            )

        characters = state.character_states
        graph = state.plot_graph
        events = state.timeline
        if not request.skip_state_update:
            char_stage, plot_stage, timeline_stage = await asyncio.gather(
                self._run_stage(
                    "character_state",
                    self._extract_characters(text, idx, state.character_states),
                    diagnostics,
                ),
                self._run_stage(
                    "plot_graph", self._extract_plot(text, idx, state.plot_graph), diagnostics
                ),
                self._run_stage(
                    "timeline", self._extract_timeline(text, idx, state), diagnostics
                ),
            )
            characters = char_stage.value_or(state.character_states)
            graph = plot_stage.value_or(state.plot_graph)
            events = timeline_stage.value_or(state.timeline)

        summary, loops = state.rolling_summary, list(state.open_loops)
        skipped_summary = True
        if not request.skip_summary_update:
            summary_stage = await self._run_stage(
                "summary", self._update_summary(state, text, diagnostics), diagnostics
            )
            if summary_stage.ok and summary_stage.value is not None:
                summary, loops = summary_stage.value
                skipped_summary = False

        diagnostics.prompt_chars.update(
            {
                "system": len(system),
                "user": len(user_prompt),
                "context": len(context.text),
                "plan": len(plan_text or ""),
            }
        )
        diagnostics.estimated_tokens = {
            "main_input": count_tokens(system) + count_tokens(user_prompt),
            "main_output": count_tokens(text),
        }
        diagnostics.phase_durations_ms["total"] = int((time.perf_counter() - started) * 1000)
        logger.info(
            "Chapter generated.",
            chapter=idx,
            chars=len(text),
            rewrites=rewrite_count,
            degraded=diagnostics.degraded_stages,
        )
        return ChapterGenerationResult(
            chapter_index=idx,
            chapter_text=text,
            updated_summary=summary,
            updated_open_loops=loops,
            updated_character_states=characters,
            updated_plot_graph=graph,
            updated_timeline=events,
            narrative_guide=guide,
            qc_result=qc_result,
            was_rewritten=rewrite_count > 0,
            rewrite_count=rewrite_count,
            skipped_summary=skipped_summary,
            duplication_warnings=duplication_warnings,
            diagnostics=diagnostics,
        )

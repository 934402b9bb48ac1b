# orchestration/models.py
"""Shared dataclasses for chapter orchestration."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Generic, TypeVar

from models.character_models import CharacterStateRegistry
from models.narrative_models import NarrativeGuide
from models.plot_models import PlotGraph
from models.qc_models import QCResult
from models.timeline_models import TimelineState

T = TypeVar("T")


class ChapterQualityError(Exception):
    """A draft still fails the quick quality gate after every rewrite."""

    def __init__(self, chapter_index: int, reason: str, reasons: list[str] | None = None):
        super().__init__(f"Chapter {chapter_index} QC failed: {reason}")
        self.chapter_index = chapter_index
        self.reason = reason
        self.reasons = reasons or [reason]


@dataclass
class StageResult(Generic[T]):
    """Outcome of a best-effort stage: a value, or the error that replaced it."""

    stage: str
    value: T | None = None
    error: Exception | None = None
    duration_ms: int = 0

    @property
    def ok(self) -> bool:
        return self.error is None

    def value_or(self, default: T) -> T:
        if self.error is not None or self.value is None:
            return default
        return self.value


@dataclass
class ChapterRequest:
    """Inputs for one chapter; ``last_chapters`` is oldest first."""

    chapter_index: int
    last_chapters: list[str] = field(default_factory=list)
    previous_pacing: float | None = None
    goal_hint: str | None = None
    skip_summary_update: bool = False
    skip_state_update: bool = False


@dataclass
class Diagnostics:
    prompt_chars: dict[str, int] = field(default_factory=dict)
    estimated_tokens: dict[str, int] = field(default_factory=dict)
    phase_durations_ms: dict[str, int] = field(default_factory=dict)
    logical_calls: dict[str, int] = field(
        default_factory=lambda: {"planning": 0, "drafting": 0, "self_review": 0, "summary": 0}
    )
    qc_attempts: int = 0
    degraded_stages: list[str] = field(default_factory=list)

    def count_call(self, phase: str, n: int = 1) -> None:
        self.logical_calls[phase] = self.logical_calls.get(phase, 0) + n

    def add_duration(self, phase: str, ms: int) -> None:
        self.phase_durations_ms[phase] = self.phase_durations_ms.get(phase, 0) + ms


@dataclass
class ChapterGenerationResult:
    chapter_index: int
    chapter_text: str
    updated_summary: str
    updated_open_loops: list[str]
    updated_character_states: CharacterStateRegistry
    updated_plot_graph: PlotGraph
    updated_timeline: TimelineState
    narrative_guide: NarrativeGuide | None = None
    qc_result: QCResult | None = None
    was_rewritten: bool = False
    rewrite_count: int = 0
    skipped_summary: bool = True
    duplication_warnings: list[str] = field(default_factory=list)
    diagnostics: Diagnostics = field(default_factory=Diagnostics)

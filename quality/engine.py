# quality/engine.py
"""Multi-dimensional quality gate combining rule-based and model-backed checks."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Sequence

import structlog
from config import settings
from core.llm_interface import ModelClient, ModelProviderConfig

from models.character_models import CharacterStateRegistry
from models.narrative_models import NarrativeGuide
from models.project_models import ChapterOutline
from models.qc_models import DIMENSION_WEIGHTS, DimensionCheck, QCIssue, QCResult
from quality.model_checks import (
    check_character_consistency,
    check_goal_achievement,
    check_pacing_alignment,
)
from quality.rule_checks import check_premature_ending, check_structure

logger = structlog.get_logger(__name__)

_SEVERITY_MARKS = {"critical": "[!!]", "major": "[!]", "minor": "[-]"}


def composite_score(dimension_scores: dict[str, int]) -> int:
    return round(
        sum(dimension_scores.get(dim, 100) * weight for dim, weight in DIMENSION_WEIGHTS.items())
    )


def generate_suggestions(issues: list[QCIssue]) -> list[str]:
    """Fix list for critical then major issues; minor issues are left out."""
    suggestions: list[str] = []
    for severity, heading in (
        ("critical", "[Must fix]"),
        ("major", "[Should fix]"),
    ):
        selected = [i for i in issues if i.severity == severity]
        if not selected:
            continue
        suggestions.append(heading)
        for n, issue in enumerate(selected, start=1):
            suggestions.append(f"  {n}. {issue.description}")
            if issue.suggestion:
                suggestions.append(f"     Suggestion: {issue.suggestion}")
    return suggestions


def run_quick_qc(
    text: str,
    chapter_index: int,
    total_chapters: int,
    min_chars: int = settings.MIN_CHAPTER_CHARS,
) -> QCResult:
    """Rule-only QC used inside retry loops."""
    ending = check_premature_ending(text, chapter_index, total_chapters)
    structure = check_structure(text, min_chars)
    issues = [*ending.issues, *structure.issues]
    return QCResult(
        score=round((ending.score + structure.score) / 2),
        issues=issues,
        suggestions=generate_suggestions(issues),
        dimension_scores={
            "ending": ending.score,
            "character": 100,
            "pacing": 100,
            "goal": 100,
            "structure": structure.score,
        },
    )


class QualityControlEngine:
    """Runs the full QC pass; the three model dimensions are best-effort."""

    def __init__(
        self,
        client: ModelClient,
        use_model_checks: bool = True,
        providers: Sequence[ModelProviderConfig] | None = None,
    ):
        self.client = client
        self.use_model_checks = use_model_checks
        # Provider chain for the model-backed dimensions; None uses the client's default.
        self.providers = providers

    def run_quick_qc(
        self,
        text: str,
        chapter_index: int,
        total_chapters: int,
        min_chars: int = settings.MIN_CHAPTER_CHARS,
    ) -> QCResult:
        return run_quick_qc(text, chapter_index, total_chapters, min_chars)

    async def _guarded(self, dimension: str, check: Awaitable[DimensionCheck]) -> DimensionCheck:
        try:
            return await check
        except Exception as exc:
            logger.warning(
                "QC dimension failed; skipping.",
                dimension=dimension,
                error=str(exc),
                exc_info=True,
            )
            return DimensionCheck(skipped=True)

    async def run_full_qc(
        self,
        text: str,
        chapter_index: int,
        total_chapters: int,
        *,
        min_chars: int = settings.MIN_CHAPTER_CHARS,
        character_states: CharacterStateRegistry | None = None,
        guide: NarrativeGuide | None = None,
        outline: ChapterOutline | None = None,
    ) -> QCResult:
        ending = check_premature_ending(text, chapter_index, total_chapters)
        structure = check_structure(text, min_chars)

        pending: dict[str, Awaitable[DimensionCheck]] = {}
        if self.use_model_checks:
            if character_states is not None and character_states.snapshots:
                pending["character"] = check_character_consistency(
                    self.client, text, character_states, self.providers
                )
            if guide is not None:
                pending["pacing"] = check_pacing_alignment(
                    self.client, text, guide, self.providers
                )
            if outline is not None:
                pending["goal"] = check_goal_achievement(
                    self.client, text, outline, self.providers
                )

        checks: dict[str, DimensionCheck] = {"ending": ending, "structure": structure}
        if pending:
            results = await asyncio.gather(
                *(self._guarded(dim, check) for dim, check in pending.items())
            )
            checks.update(zip(pending.keys(), results, strict=True))

        issues = [
            issue
            for dim in ("ending", "structure", "character", "pacing", "goal")
            if dim in checks
            for issue in checks[dim].issues
        ]
        dimension_scores = {
            dim: checks[dim].score if dim in checks else 100 for dim in DIMENSION_WEIGHTS
        }
        result = QCResult(
            score=composite_score(dimension_scores),
            issues=issues,
            suggestions=generate_suggestions(issues),
            dimension_scores=dimension_scores,
        )
        logger.info(
            "Full QC finished.",
            chapter=chapter_index,
            passed=result.passed,
            score=result.score,
            issues=len(issues),
            skipped=[dim for dim, check in checks.items() if check.skipped],
        )
        return result


def format_qc_result(result: QCResult) -> str:
    parts = [
        f"QC result: {'PASSED' if result.passed else 'FAILED'}",
        f"Score: {result.score}/100",
        "",
        "Dimension scores:",
    ]
    parts.extend(
        f"  - {dim}: {result.dimension_scores.get(dim, 100)}/100" for dim in DIMENSION_WEIGHTS
    )
    if result.issues:
        parts.append("")
        parts.append(f"{len(result.issues)} issue(s):")
        for n, issue in enumerate(result.issues, start=1):
            parts.append(
                f"  {n}. {_SEVERITY_MARKS[issue.severity]} [{issue.type}] {issue.description}"
            )
    if result.suggestions:
        parts.append("")
        parts.append("Suggestions:")
        parts.extend(result.suggestions)
    return "\n".join(parts)

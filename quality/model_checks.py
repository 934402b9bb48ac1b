# quality/model_checks.py
"""Model-backed QC dimensions: character consistency, pacing alignment, goal achievement.

Each check falls back to a fixed or rule-based result when the reply cannot be
parsed. Model call failures propagate; the engine decides what a failure means.
"""

from __future__ import annotations

import re
from collections.abc import Sequence

import structlog
from config import settings
from core.llm_interface import ModelClient, ModelProviderConfig
from parsing import extract_json_object
from prompt_renderer import render_prompt_pair
from pydantic import ValidationError

from context.character_state import format_snapshot_for_prompt
from models.analysis_models import DimensionCheckPayload
from models.character_models import CharacterStateRegistry
from models.narrative_models import NarrativeGuide
from models.project_models import ChapterOutline
from models.qc_models import DimensionCheck, QCIssue, QCIssueType

logger = structlog.get_logger(__name__)

QC_SOURCE_MAX_CHARS = 5000
MAX_CHARACTERS_CHECKED = 8
CHARACTER_FALLBACK_SCORE = 80
PACING_FALLBACK_SCORE = 80
GOAL_FALLBACK_SCORE = 70

_WORD_RE = re.compile(r"\b\w+\b")


def count_words(text: str) -> int:
    return len(_WORD_RE.findall(text))


def _parse_payload(raw: str, dimension: str) -> DimensionCheckPayload | None:
    payload = extract_json_object(raw)
    if payload is None:
        logger.warning("QC reply was not a JSON object.", dimension=dimension)
        return None
    try:
        return DimensionCheckPayload.model_validate(payload)
    except ValidationError as exc:
        logger.warning(
            "QC reply failed validation.", dimension=dimension, errors=exc.error_count()
        )
        return None


def _issues_from_payload(
    payload: DimensionCheckPayload, issue_type: QCIssueType
) -> list[QCIssue]:
    return [
        QCIssue(
            type=issue_type,
            severity=draft.severity,
            description=draft.description,
            location=draft.location,
            suggestion=draft.suggestion,
        )
        for draft in payload.issues
    ]


async def _ask(
    client: ModelClient,
    stage: str,
    context: dict,
    providers: Sequence[ModelProviderConfig] | None = None,
) -> str:
    system, prompt = render_prompt_pair(stage, context)
    return await client.generate(
        system,
        prompt,
        temperature=settings.TEMPERATURE_QC,
        max_tokens=settings.QC_MAX_TOKENS,
        providers=providers,
    )


async def check_character_consistency(
    client: ModelClient,
    text: str,
    registry: CharacterStateRegistry,
    providers: Sequence[ModelProviderConfig] | None = None,
) -> DimensionCheck:
    """Compare the chapter against known character states."""
    snapshots = list(registry.snapshots.values())[:MAX_CHARACTERS_CHECKED]
    if not snapshots:
        return DimensionCheck(skipped=True)
    raw = await _ask(
        client,
        "qc_character",
        {
            "states": [format_snapshot_for_prompt(s) for s in snapshots],
            "chapter_text": text[:QC_SOURCE_MAX_CHARS],
        },
        providers,
    )
    payload = _parse_payload(raw, "character")
    if payload is None:
        return DimensionCheck(score=CHARACTER_FALLBACK_SCORE)
    return DimensionCheck(
        score=payload.score, issues=_issues_from_payload(payload, "character")
    )


def rule_based_pacing_check(text: str, guide: NarrativeGuide) -> DimensionCheck:
    low, high = guide.word_count_range
    words = count_words(text)
    score = PACING_FALLBACK_SCORE
    issues = []
    if words < low:
        issues.append(
            QCIssue(
                type="pacing",
                severity="minor",
                description=f"Chapter is short for its pacing type ({words} words)",
                suggestion="Expand the chapter.",
            )
        )
        score -= 10
    elif words > high:
        issues.append(
            QCIssue(
                type="pacing",
                severity="minor",
                description=f"Chapter is long for its pacing type ({words} words)",
                suggestion="Trim redundant description.",
            )
        )
        score -= 5
    return DimensionCheck(score=max(0, score), issues=issues)


def _word_range_issue(words: int, low: int, high: int) -> QCIssue | None:
    if low <= words <= high:
        return None
    return QCIssue(
        type="pacing",
        severity="major" if words < low * 0.7 else "minor",
        description=f"{words} words is outside the target range {low}-{high}",
        suggestion="Expand the chapter." if words < low else "Trim redundant description.",
    )


async def check_pacing_alignment(
    client: ModelClient,
    text: str,
    guide: NarrativeGuide,
    providers: Sequence[ModelProviderConfig] | None = None,
) -> DimensionCheck:
    """Ask the model for the chapter's actual tension and compare it with the target."""
    low, high = guide.word_count_range
    words = count_words(text)
    raw = await _ask(
        client,
        "qc_pacing",
        {
            "guide": guide,
            "word_count": words,
            "chapter_text": text[:QC_SOURCE_MAX_CHARS],
        },
        providers,
    )
    payload = _parse_payload(raw, "pacing")
    if payload is None:
        return rule_based_pacing_check(text, guide)

    issues: list[QCIssue] = []
    if payload.actual_pacing is not None:
        delta = abs(payload.actual_pacing - guide.pacing_target)
        if delta > 3:
            issues.append(
                QCIssue(
                    type="pacing",
                    severity="major",
                    description=(
                        f"Pacing far off target: wanted {guide.pacing_target}, "
                        f"got {payload.actual_pacing}"
                    ),
                    suggestion=(
                        "Too intense; add calmer description or dialogue."
                        if payload.actual_pacing > guide.pacing_target
                        else "Too flat; add conflict or tension."
                    ),
                )
            )
        elif delta > 2:
            issues.append(
                QCIssue(
                    type="pacing",
                    severity="minor",
                    description=(
                        f"Pacing slightly off target: wanted {guide.pacing_target}, "
                        f"got {payload.actual_pacing}"
                    ),
                )
            )
    range_issue = _word_range_issue(words, low, high)
    if range_issue is not None:
        issues.append(range_issue)
    issues.extend(_issues_from_payload(payload, "pacing"))
    return DimensionCheck(score=payload.score, issues=issues)


async def check_goal_achievement(
    client: ModelClient,
    text: str,
    outline: ChapterOutline,
    providers: Sequence[ModelProviderConfig] | None = None,
) -> DimensionCheck:
    raw = await _ask(
        client,
        "qc_goal",
        {"outline": outline, "chapter_text": text[:QC_SOURCE_MAX_CHARS]},
        providers,
    )
    payload = _parse_payload(raw, "goal")
    if payload is None:
        return DimensionCheck(score=GOAL_FALLBACK_SCORE)

    issues: list[QCIssue] = []
    if payload.achieved is False:
        issues.append(
            QCIssue(
                type="structure",
                severity="critical",
                description=f"Primary goal not achieved: {outline.goal}",
                suggestion="Make sure the chapter delivers its primary goal.",
            )
        )
    issues.extend(_issues_from_payload(payload, "structure"))
    return DimensionCheck(score=payload.score, issues=issues)

# quality/repair.py
"""Feed QC findings back to the model and re-check the rewritten chapter."""

from __future__ import annotations

import structlog
from config import settings
from core.llm_interface import ModelCallError, ModelClient
from parsing import normalize_generated_chapter_text
from prompt_renderer import render_prompt_pair

from models.qc_models import QCIssue, QCResult, RepairResult
from quality.engine import run_quick_qc

logger = structlog.get_logger(__name__)

MAX_MAJOR_ISSUES_IN_REPAIR = 5


def build_repair_instruction(
    critical: list[QCIssue],
    major: list[QCIssue],
    chapter_index: int,
    total_chapters: int,
) -> str:
    parts = [
        f"[Repair request - chapter {chapter_index}/{total_chapters}]",
        "Fix the chapter according to the problems below.",
        "",
    ]
    if critical:
        parts.append("[Critical - must fix]")
        for n, issue in enumerate(critical, start=1):
            parts.append(f"{n}. {issue.description}")
            if issue.suggestion:
                parts.append(f"   Suggestion: {issue.suggestion}")
            if issue.location:
                parts.append(f'   Location: "{issue.location}"')
        parts.append("")
    if major:
        parts.append("[Major - fix where possible]")
        for n, issue in enumerate(major[:MAX_MAJOR_ISSUES_IN_REPAIR], start=1):
            parts.append(f"{n}. {issue.description}")
            if issue.suggestion:
                parts.append(f"   Suggestion: {issue.suggestion}")
        parts.append("")
    parts += [
        "[Repair rules]",
        "1. Keep the plot direction and the characters as they are.",
        "2. Keep the original voice and style.",
        "3. Change only the problem passages.",
        "4. The result must read naturally.",
    ]
    if chapter_index < total_chapters:
        parts.append("5. This is not the final chapter; never use The End, epilogue or finale wording.")
        parts.append("6. Keep the closing hook.")
    return "\n".join(parts)


async def repair_chapter(
    client: ModelClient,
    text: str,
    qc_result: QCResult,
    chapter_index: int,
    total_chapters: int,
    *,
    max_attempts: int = settings.REPAIR_MAX_ATTEMPTS,
    min_chars: int = settings.MIN_CHAPTER_CHARS,
) -> RepairResult:
    """Rewrite the chapter from its critical and major issues, re-running quick QC each time."""
    current = text
    last = qc_result
    attempts = 0

    while attempts < max_attempts and not last.passed:
        critical = last.issues_by_severity("critical")
        major = last.issues_by_severity("major")
        if not critical and not major:
            break
        attempts += 1
        system, prompt = render_prompt_pair(
            "repair",
            {
                "instruction": build_repair_instruction(
                    critical, major, chapter_index, total_chapters
                ),
                "chapter_text": current,
            },
        )
        try:
            raw = await client.generate(
                system,
                prompt,
                temperature=settings.TEMPERATURE_REPAIR,
                max_tokens=settings.DRAFT_MAX_TOKENS,
            )
        except ModelCallError as exc:
            logger.warning(
                "Repair call failed; keeping last version.",
                chapter=chapter_index,
                attempt=attempts,
                error=str(exc),
            )
            break
        current = normalize_generated_chapter_text(raw, chapter_index)
        last = run_quick_qc(current, chapter_index, total_chapters, min_chars)
        logger.info(
            "Repair attempt finished.",
            chapter=chapter_index,
            attempt=attempts,
            passed=last.passed,
            score=last.score,
        )

    success = last.passed or last.score >= settings.REPAIR_ACCEPT_SCORE
    return RepairResult(
        success=success,
        repaired_text=current,
        remaining_issues=last.issues,
        attempts=attempts,
    )

# quality/rule_checks.py
"""Rule-based chapter checks: premature ending, structure and prose heuristics.

These checks are pure and cheap, so they run inside the rewrite loop on every
draft. Model-backed checks live in :mod:`quality.model_checks`.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field

from config import settings
from parsing import looks_like_json_chapter_payload

from models.qc_models import DimensionCheck, QCIssue, QuickFormatResult

BLAND_PARAGRAPH_CHARS = 200
LONG_PARAGRAPH_CHARS = 500
DIDACTIC_TAIL_CHARS = 300

_ENDING_PATTERNS: list[re.Pattern[str]] = [
    # explicit completion words
    re.compile(r"^\W*the\s*end\W*$", re.I | re.M),
    re.compile(r"\b(epilogue|afterword|final chapter|grand finale)\b", re.I),
    re.compile(r"\bthank(s| you) (to all|for reading|everyone|readers)\b", re.I),
    re.compile(r"\((the )?end\)|\[(the )?end\]", re.I),
    # summing up a life
    re.compile(r"\blooking back (on|over) (it all|everything|all those years|the journey)\b", re.I),
    re.compile(r"\b(lived )?happily ever after\b", re.I),
    re.compile(r"\b(and so|thus) (the|our) (story|tale) (ends|ended|comes to an end)\b", re.I),
    re.compile(r"\bthe end of (the|our) (story|tale|journey)\b", re.I),
    # everything resolved at once
    re.compile(
        r"\ball (the|of the) (mysteries|secrets|loose ends)\b.{0,40}\b(solved|revealed|resolved|tied up)\b",
        re.I,
    ),
    re.compile(r"\beverything (had )?(finally |at last )?(settled|come to rest|fell into place)\b", re.I),
]

_TITLE_RE = re.compile(r"^Chapter\s+(\d+|[IVXLCDM]+)\b", re.I)
_DIALOGUE_MARK_RE = re.compile(r"[\"“”]")
_PARAGRAPH_SPLIT_RE = re.compile(r"\n\s*\n")
_SENSORY_RE = re.compile(
    r"\b(saw|see|glimpse|heard|hear|smell|scent|stench|touch|warm|cold|icy|burning|pain|"
    r"ache|roar|tremble|trembl\w*|soft|rough|bright|dim|glare|glow|blood|sweet|bitter|sour|"
    r"gaze|eyes|pupils|lips|brow|fist|fingertips|palm|breath|heartbeat|pulse|sweat|tears|wound)\b",
    re.I,
)
_SUMMARY_PATTERNS: list[re.Pattern[str]] = [
    re.compile(r"\b(over|in|for) the (next|following) (few|several) (days|weeks|months)\b", re.I),
    re.compile(r"\b(days|weeks|time) (passed|went by|slipped by|flew by)\b", re.I),
    re.compile(r"\bbefore (he|she|they|I) knew it\b", re.I),
    re.compile(
        r"\b(after|it took) (a few|several|many) (days|weeks|months)\b.{0,30}\b(finally|at last)\b",
        re.I,
    ),
]
_DIDACTIC_PATTERNS: list[re.Pattern[str]] = [
    re.compile(r"\b(he|she|they) (now )?(knew|understood|realized) (deep down|at last|that)\b", re.I),
    re.compile(r"\b(he|she|they) (silently |quietly )?(swore|vowed|told (himself|herself|themselves))\b", re.I),
    re.compile(r"\bthis (moment|day)\b.{0,40}\b(forever|for the rest of (his|her|their) li(fe|ves))\b", re.I),
    re.compile(r"\b(gazing|staring|looking) (at|into|toward) the (distance|sky|horizon)\b", re.I),
]
_DIALOGUE_LINE_RE = re.compile(r"^[\"“]|^.*?[\"“].*?[\"”]\s*$")


@dataclass
class EndingHeuristic:
    hit: bool
    reasons: list[str] = field(default_factory=list)


def quick_ending_heuristic(text: str) -> EndingHeuristic:
    """Match completion/finale phrasing; each match becomes a reason."""
    reasons = []
    for pattern in _ENDING_PATTERNS:
        match = pattern.search(text)
        if match:
            reasons.append(f'Matched ending signal: "{match.group(0)}"')
    return EndingHeuristic(hit=bool(reasons), reasons=reasons)


def check_premature_ending(text: str, chapter_index: int, total_chapters: int) -> DimensionCheck:
    if chapter_index >= total_chapters:
        return DimensionCheck()
    result = quick_ending_heuristic(text)
    if not result.hit:
        return DimensionCheck()
    return DimensionCheck(
        score=0,
        issues=[
            QCIssue(
                type="ending",
                severity="critical",
                description="Premature ending signals: " + "; ".join(result.reasons),
                suggestion="Rewrite without closing language; keep the tension and leave a hook.",
            )
        ],
    )


def split_title_and_body(text: str) -> tuple[str | None, str]:
    stripped = text.strip()
    first_line, _, rest = stripped.partition("\n")
    if _TITLE_RE.match(first_line.strip()):
        return first_line.strip(), rest.strip()
    return None, stripped


def _max_consecutive_dialogue(text: str) -> int:
    run = best = 0
    for line in text.split("\n"):
        stripped = line.strip()
        if not stripped:
            continue
        if _DIALOGUE_LINE_RE.match(stripped):
            run += 1
            best = max(best, run)
        else:
            run = 0
    return best


def check_structure(
    text: str,
    min_chars: int = settings.MIN_CHAPTER_CHARS,
    max_chars: int | None = None,
) -> DimensionCheck:
    """Length, title, dialogue and paragraph checks plus prose-quality heuristics."""
    if looks_like_json_chapter_payload(text):
        return DimensionCheck(
            score=0,
            issues=[
                QCIssue(
                    type="structure",
                    severity="critical",
                    description="Chapter is a JSON payload instead of prose",
                    suggestion="Output only the chapter text with its title; no JSON or code fences.",
                )
            ],
        )

    minimum = max(settings.MIN_CHAPTER_CHARS_FLOOR, min_chars)
    maximum = max(minimum, settings.MAX_CHAPTER_CHARS if max_chars is None else max_chars)
    issues: list[QCIssue] = []
    score = 100

    length = len(text)
    if length < minimum:
        issues.append(
            QCIssue(
                type="structure",
                severity="major",
                description=f"Chapter too short ({length} chars, minimum {minimum})",
                suggestion="Expand with scene detail or character interaction.",
            )
        )
        score -= 30
    elif length > maximum:
        issues.append(
            QCIssue(
                type="structure",
                severity="minor",
                description=f"Chapter very long ({length} chars); may drag the pace",
                suggestion="Consider splitting the chapter or trimming description.",
            )
        )
        score -= 10

    if not _TITLE_RE.match(text.strip()):
        issues.append(
            QCIssue(
                type="structure",
                severity="minor",
                description="Chapter has no title line",
                suggestion='Start with a "Chapter N: Title" line.',
            )
        )
        score -= 5

    if len(_DIALOGUE_MARK_RE.findall(text)) < 4:
        issues.append(
            QCIssue(
                type="structure",
                severity="minor",
                description="Very little dialogue; the chapter may read flat",
                suggestion="Add character dialogue to lift readability.",
            )
        )
        score -= 10

    if len(_PARAGRAPH_SPLIT_RE.split(text)) < 3:
        issues.append(
            QCIssue(
                type="structure",
                severity="minor",
                description="Too few paragraph breaks",
                suggestion="Break the text into paragraphs.",
            )
        )
        score -= 5

    paragraphs = [p for p in _PARAGRAPH_SPLIT_RE.split(text) if p.strip()]
    bland = sum(
        1
        for p in paragraphs
        if len(p) > BLAND_PARAGRAPH_CHARS
        and not _SENSORY_RE.search(p)
        and not _DIALOGUE_MARK_RE.search(p)
    )
    if bland >= 3:
        issues.append(
            QCIssue(
                type="style",
                severity="major",
                description=f"{bland} long paragraphs with no sensory detail or dialogue",
                suggestion="Add concrete sight, sound and touch details.",
            )
        )
        score -= 15

    summaries = [m.group(0) for m in (p.search(text) for p in _SUMMARY_PATTERNS) if m]
    if len(summaries) >= 2:
        issues.append(
            QCIssue(
                type="style",
                severity="major",
                description=f"Summary-style time skips ({'; '.join(summaries)}) instead of scenes",
                suggestion="Replace the time skip with one fully dramatized key scene.",
            )
        )
        score -= 15

    tail = text[-DIDACTIC_TAIL_CHARS:]
    if any(p.search(tail) for p in _DIDACTIC_PATTERNS):
        issues.append(
            QCIssue(
                type="style",
                severity="minor",
                description="Chapter ends on a reflective summary instead of a hook",
                suggestion="End on suspense, a reversal or a crisis.",
            )
        )
        score -= 10

    long_paragraphs = [p for p in paragraphs if len(p.strip()) > LONG_PARAGRAPH_CHARS]
    if len(long_paragraphs) >= 2:
        issues.append(
            QCIssue(
                type="structure",
                severity="minor",
                description=f"{len(long_paragraphs)} paragraphs over {LONG_PARAGRAPH_CHARS} chars",
                suggestion="Split long paragraphs and interleave dialogue or short beats.",
            )
        )
        score -= 5

    run = _max_consecutive_dialogue(text)
    if run >= 5:
        issues.append(
            QCIssue(
                type="style",
                severity="minor",
                description=f"{run} consecutive lines of bare dialogue",
                suggestion="Interleave action, expression or thought between lines of dialogue.",
            )
        )
        score -= 10

    return DimensionCheck(score=max(0, score), issues=issues)


def quick_format_check(
    text: str, min_body_chars: int = settings.MIN_CHAPTER_CHARS
) -> QuickFormatResult:
    """Reasons a draft must be regenerated before it can be accepted."""
    if looks_like_json_chapter_payload(text):
        return QuickFormatResult(reasons=["Output is a JSON payload, not chapter prose"])
    reasons = []
    title, body = split_title_and_body(text)
    if title is None:
        reasons.append('Missing "Chapter N: Title" heading on the first line')
    if len(body) < min_body_chars:
        reasons.append(f"Body is {len(body)} chars, under the {min_body_chars} minimum")
    return QuickFormatResult(reasons=reasons)


def build_rewrite_instruction(
    chapter_index: int,
    total_chapters: int,
    reasons: list[str],
    min_chars: int = settings.MIN_CHAPTER_CHARS,
) -> str:
    is_final = chapter_index >= total_chapters
    numbered = "\n".join(f"{i}. {r}" for i, r in enumerate(reasons, start=1))
    ending_rule = (
        "This is the final chapter; close the story, but do not pad it with thanks or afterwords."
        if is_final
        else "This is NOT the final chapter. Never use The End, epilogue, afterword, "
        "thanks to readers or a summary of a life."
    )
    return (
        "[Rewrite required]\n"
        f"Your draft of chapter {chapter_index}/{total_chapters} failed the quality check.\n\n"
        f"Problems found:\n{numbered}\n\n"
        "Rewrite the chapter and follow these rules strictly:\n"
        f"1. {ending_rule}\n"
        "2. Keep moving the plot: a clear conflict, one small step toward resolving it, "
        "then a bigger threat.\n"
        "3. End on a strong hook that makes the reader open the next chapter at once.\n"
        f'4. Output plain text: the first line is "Chapter {chapter_index}: Title", then a '
        f"blank line, then a body of at least {min_chars} characters."
    )

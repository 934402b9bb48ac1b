# context/rolling_summary.py
"""Layered rolling summary: long-term, mid-term and recent memory bands."""

from __future__ import annotations

import re
from dataclasses import dataclass

import structlog
from config import settings
from parsing import clean_string_list, extract_json_object

logger = structlog.get_logger(__name__)

_HEADINGS = {
    "Long-term memory": "long_term",
    "Mid-term memory": "mid_term",
    "Recent memory": "recent",
}
_HEADING_RE = re.compile(r"\[(Long-term memory|Mid-term memory|Recent memory)\]")
_SENTENCE_RE = re.compile(r"[^.!?;]+(?:[.!?;]+[\"')\]]*|$)")
_SIGNAL_WORDS = re.compile(
    r"\b(suddenly|finally|however|but|realized|discovered|decided|had to|"
    r"immediately|at once|meanwhile|never expected|instead)\b",
    re.IGNORECASE,
)

LEGACY_RECENT_CHARS = 500
LEGACY_MID_CHARS = 380
MIN_LAYER_CHARS = 8


@dataclass
class SummaryMemory:
    long_term: str = ""
    mid_term: str = ""
    recent: str = ""

    def is_empty(self) -> bool:
        return not (self.long_term or self.mid_term or self.recent)


def _normalize(text: str) -> str:
    return text.replace("\r\n", "\n").strip()


def _split_sentences(text: str) -> list[str]:
    sentences = [m.group(0).strip() for m in _SENTENCE_RE.finditer(text)]
    sentences = [s for s in sentences if s]
    return sentences or ([text.strip()] if text.strip() else [])


def truncate_by_sentences(text: str, max_chars: int, keep_tail: bool = False) -> str:
    """Keep whole sentences from the head (or tail) within ``max_chars``."""
    normalized = _normalize(text)
    if len(normalized) <= max_chars:
        return normalized
    sentences = _split_sentences(normalized)
    ordered = list(reversed(sentences)) if keep_tail else sentences
    selected: list[str] = []
    total = 0
    for sentence in ordered:
        added = len(sentence) + (1 if selected else 0)
        if total + added > max_chars:
            break
        selected.append(sentence)
        total += added
    if not selected:
        return normalized[-max_chars:] if keep_tail else normalized[:max_chars]
    if keep_tail:
        selected.reverse()
    return " ".join(selected)


def _split_legacy(summary: str) -> SummaryMemory:
    normalized = _normalize(summary)
    if not normalized:
        return SummaryMemory()
    recent = normalized[-LEGACY_RECENT_CHARS:]
    before_recent = normalized[: max(0, len(normalized) - LEGACY_RECENT_CHARS)]
    mid = before_recent[-LEGACY_MID_CHARS:] if before_recent else ""
    long = before_recent[: max(0, len(before_recent) - LEGACY_MID_CHARS)]
    return SummaryMemory(_normalize(long), _normalize(mid), _normalize(recent))


def parse_summary_memory(summary: str) -> SummaryMemory:
    """Split a rendered summary into bands; unheaded text is split by position."""
    normalized = _normalize(summary)
    if not normalized:
        return SummaryMemory()
    matches = list(_HEADING_RE.finditer(normalized))
    if not matches:
        return _split_legacy(normalized)

    memory = SummaryMemory()
    for i, match in enumerate(matches):
        end = matches[i + 1].start() if i + 1 < len(matches) else len(normalized)
        setattr(memory, _HEADINGS[match.group(1)], _normalize(normalized[match.end() : end]))
    if memory.is_empty():
        return _split_legacy(normalized)
    return memory


def format_summary_memory(memory: SummaryMemory) -> str:
    parts = []
    for heading, attr in _HEADINGS.items():
        value = _normalize(getattr(memory, attr))
        if value:
            parts.append(f"[{heading}]\n{value}")
    return "\n\n".join(parts).strip()


def normalize_rolling_summary(summary: str) -> str:
    return format_summary_memory(parse_summary_memory(summary))


def compress_by_recency(summary: str, max_tokens: int = 900) -> str:
    """Budget 20/30/50% across bands; older bands lose detail first."""
    if not summary:
        return ""
    max_chars = max(240, max_tokens * 2)
    memory = parse_summary_memory(summary)
    long_budget = int(max_chars * 0.2)
    mid_budget = int(max_chars * 0.3)
    recent_budget = max(80, max_chars - long_budget - mid_budget)
    return format_summary_memory(
        SummaryMemory(
            long_term=truncate_by_sentences(memory.long_term, long_budget, keep_tail=False),
            mid_term=truncate_by_sentences(memory.mid_term, mid_budget, keep_tail=True),
            recent=truncate_by_sentences(memory.recent, recent_budget, keep_tail=True),
        )
    )


def _layer(payload: dict, key: str) -> str:
    value = payload.get(key)
    if isinstance(value, str) and len(value.strip()) >= MIN_LAYER_CHARS:
        return _normalize(value)
    return ""


def parse_summary_update(
    raw: str,
    previous_summary: str,
    previous_loops: list[str],
    max_loops: int = settings.MAX_OPEN_LOOPS,
) -> tuple[str, list[str]]:
    """Return ``(summary, open_loops)``; falls back to the previous values."""
    payload = extract_json_object(raw)
    if payload is None:
        logger.warning("Summary update was not a JSON object; keeping previous summary.")
        return previous_summary, list(previous_loops)

    loops = clean_string_list(payload.get("openLoops"), limit=max_loops) or list(
        previous_loops
    )
    memory = SummaryMemory(
        long_term=_layer(payload, "longTermMemory"),
        mid_term=_layer(payload, "midTermMemory"),
        recent=_layer(payload, "recentMemory"),
    )
    if not memory.is_empty():
        return format_summary_memory(memory), loops

    legacy = _layer(payload, "rollingSummary")
    if legacy:
        return normalize_rolling_summary(legacy), loops

    logger.warning("Summary update had no usable summary fields.")
    return previous_summary, list(previous_loops)


def _normalize_text(text: str) -> str:
    text = re.sub(r"\r\n?", "\n", text)
    text = re.sub(r"[ \t]+\n", "\n", text)
    return re.sub(r"\n{3,}", "\n\n", text).strip()


def _clip(text: str, max_chars: int) -> str:
    if len(text) <= max_chars:
        return text
    if max_chars <= 3:
        return text[:max_chars]
    return text[: max_chars - 3].rstrip() + "..."


def _clip_segment(text: str, max_chars: int, mode: str) -> str:
    normalized = _normalize_text(text)
    if len(normalized) <= max_chars:
        return normalized
    if max_chars <= 6:
        return _clip(normalized, max_chars)
    if mode == "tail":
        return "..." + normalized[-(max_chars - 3) :].lstrip()
    if mode == "middle":
        window = max_chars - 6
        start = max(0, (len(normalized) - window) // 2)
        return "..." + normalized[start : start + window].strip() + "..."
    return _clip(normalized, max_chars)


def _score_paragraph(paragraph: str) -> int:
    score = min(len(paragraph), 240)
    if re.search(r"[\"“”]", paragraph):
        score += 40
    if re.search(r"[!?]", paragraph):
        score += 25
    if _SIGNAL_WORDS.search(paragraph):
        score += 35
    return score


def build_chapter_digest(
    chapter_text: str, max_chars: int = settings.SUMMARY_SOURCE_MAX_CHARS
) -> str:
    """Compact summary source: title, opening/middle/ending anchors, key paragraphs."""
    normalized = _normalize_text(chapter_text)
    if not normalized or len(normalized) <= max_chars:
        return normalized

    lines = normalized.split("\n")
    title = lines[0].strip()
    body = _normalize_text("\n".join(lines[1:])) or normalized
    paragraphs = [p.strip() for p in re.split(r"\n{2,}", body) if p.strip()]
    if len(paragraphs) <= 1:
        paragraphs = [p.strip() for p in body.split("\n") if p.strip()]
    if not paragraphs:
        return _clip(normalized, max_chars)

    def density(i: int) -> float:
        return _score_paragraph(paragraphs[i]) / max(len(paragraphs[i]), 1)

    trailing = range(max(0, len(paragraphs) - 3), len(paragraphs))
    end_index = max(trailing, key=lambda i: (density(i), _score_paragraph(paragraphs[i]), i))
    anchors = list(dict.fromkeys([0, (len(paragraphs) - 1) // 2, end_index]))

    sections = [f"[Chapter title]\n{title}"] if title else []
    labels = ("Opening", "Middle", "Ending")
    modes = ("head", "middle", "tail")
    for position, index in enumerate(anchors):
        label = labels[min(position, 2)]
        sections.append(f"[{label}]\n{_clip_segment(paragraphs[index], 260, modes[min(position, 2)])}")

    extras = sorted(
        (i for i in range(len(paragraphs)) if i not in anchors),
        key=lambda i: (-density(i), -_score_paragraph(paragraphs[i]), i),
    )[:3]
    for index in extras:
        sections.append(f"[Key passage]\n{_clip_segment(paragraphs[index], 220, 'head')}")

    return _clip("\n\n".join(sections), max_chars)

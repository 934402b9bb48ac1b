"""Common parsing utilities for ChapterForge."""

from __future__ import annotations

import json
import re
from collections.abc import Iterable
from typing import Any, TypeVar

import structlog
from pydantic import BaseModel, ValidationError

logger = structlog.get_logger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

_FENCE_RE = re.compile(r"```(?:json)?\s*", re.IGNORECASE)
_TRAILING_COMMA_RE = re.compile(r",\s*([}\]])")
_CHAPTER_HEADING_RE = re.compile(r"^Chapter\s+(\d+|[IVXLCDM]+)\b", re.IGNORECASE)
_TITLE_LABEL_RE = re.compile(r"^Title\s*:\s*", re.IGNORECASE)


class ParseError(Exception):
    """Custom exception for parsing errors."""


def strip_code_fence(text: str) -> str:
    """Remove markdown code fences the model wraps around payloads."""
    return _FENCE_RE.sub("", text or "").strip()


def _try_parse_json_candidate(candidate: str) -> Any | None:
    try:
        return json.loads(candidate)
    except json.JSONDecodeError:
        pass
    try:
        return json.loads(_TRAILING_COMMA_RE.sub(r"\1", candidate))
    except json.JSONDecodeError:
        return None


def extract_json_object(raw: str | None) -> dict[str, Any] | None:
    """Return the first JSON object found in ``raw`` or ``None``.

    The whole (fence-stripped) text is tried first, then the slice between the
    first ``{`` and the last ``}``. Trailing commas are tolerated.
    """
    if not raw:
        return None
    cleaned = strip_code_fence(raw)
    candidates = [cleaned]
    first_brace = cleaned.find("{")
    last_brace = cleaned.rfind("}")
    if first_brace >= 0 and last_brace > first_brace:
        candidates.append(cleaned[first_brace : last_brace + 1])

    for candidate in candidates:
        parsed = _try_parse_json_candidate(candidate)
        if isinstance(parsed, dict):
            return parsed
    return None


def require_json_object(raw: str | None, what: str = "payload") -> dict[str, Any]:
    """Strict variant of :func:`extract_json_object`."""
    parsed = extract_json_object(raw)
    if parsed is None:
        preview = (raw or "")[:200]
        raise ParseError(f"Could not parse {what} as a JSON object: {preview!r}")
    return parsed


def looks_like_json_chapter_payload(text: str) -> bool:
    """True when a 'chapter' is really an unrendered ``{title, content}`` object."""
    cleaned = strip_code_fence(text)
    if not cleaned.startswith(("{", "[")):
        return False
    return (
        re.search(r'"content"\s*:', cleaned) is not None
        and re.search(r'"title"\s*:', cleaned) is not None
    )


def normalize_chapter_title(title: str, chapter_index: int) -> str:
    cleaned = re.sub(r"^#+\s*", "", title or "").strip()
    if not cleaned:
        return f"Chapter {chapter_index}"
    if _CHAPTER_HEADING_RE.match(cleaned):
        return cleaned
    return f"Chapter {chapter_index}: {cleaned}"


def _extract_plain_title_and_body(
    raw: str, chapter_index: int
) -> tuple[str, str] | None:
    normalized = raw.replace("\r\n", "\n").strip()
    if not normalized:
        return None
    lines = normalized.split("\n")
    first = next((i for i, line in enumerate(lines) if line.strip()), None)
    if first is None:
        return None

    title_index = -1
    for i in range(first, min(len(lines), first + 4)):
        line = re.sub(r"^#+\s*", "", lines[i]).strip()
        if not line:
            continue
        if _CHAPTER_HEADING_RE.match(line) or _TITLE_LABEL_RE.match(line):
            title_index = i
            break
    if title_index < 0:
        return None

    raw_title = _TITLE_LABEL_RE.sub("", re.sub(r"^#+\s*", "", lines[title_index])).strip()
    body = "\n".join(lines[title_index + 1 :]).strip()
    return normalize_chapter_title(raw_title, chapter_index), body


def normalize_generated_chapter_text(raw_response: str, chapter_index: int) -> str:
    """Turn a drafting reply into ``"Chapter N: title\\n\\nbody"`` when possible."""
    parsed = extract_json_object(raw_response)
    if parsed is not None and isinstance(parsed.get("content"), str):
        title = parsed.get("title") if isinstance(parsed.get("title"), str) else ""
        final_title = normalize_chapter_title(title, chapter_index)
        return f"{final_title}\n\n{parsed['content'].strip()}"

    cleaned = strip_code_fence(raw_response)
    plain = _extract_plain_title_and_body(cleaned, chapter_index)
    if plain is not None:
        title, body = plain
        return f"{title}\n\n{body}".strip()
    return cleaned


def parse_model_list(
    items: Any, model_cls: type[ModelT], what: str = "item"
) -> list[ModelT]:
    """Validate each entry independently; malformed entries are dropped."""
    if not isinstance(items, list):
        return []
    parsed: list[ModelT] = []
    for item in items:
        if not isinstance(item, dict):
            logger.warning(f"Skipping non-object {what}.", value=str(item)[:100])
            continue
        try:
            parsed.append(model_cls.model_validate(item))
        except ValidationError as exc:
            logger.warning(
                f"Dropping malformed {what}.",
                errors=exc.error_count(),
                value=str(item)[:200],
            )
    return parsed


def clean_string_list(values: Any, limit: int | None = None) -> list[str]:
    """Keep non-empty strings, stripped, preserving order."""
    if not isinstance(values, Iterable) or isinstance(values, str | bytes):
        return []
    cleaned = [v.strip() for v in values if isinstance(v, str) and v.strip()]
    return cleaned[:limit] if limit is not None else cleaned

# context/timeline.py
"""Story timeline: which events already happened, so they are not re-staged."""

from __future__ import annotations

import re
from collections.abc import Iterable, Mapping, Sequence

import structlog
from config import settings
from core.llm_interface import ModelClient, ModelProviderConfig
from parsing import extract_json_object, parse_model_list
from prompt_renderer import render_prompt_pair

from models.analysis_models import (
    ResolvedEvent,
    TimelineEventAnalysis,
    TimelineEventDraft,
)
from models.project_models import VolumeOutline
from models.timeline_models import (
    DuplicationReport,
    TimelineEvent,
    TimelineEventType,
    TimelineState,
)

logger = structlog.get_logger(__name__)

_TYPE_PATTERNS: list[tuple[TimelineEventType, re.Pattern[str]]] = [
    ("ceremony", re.compile(r"ceremony|coronation|wedding|funeral|ritual|awakening|trial", re.I)),
    ("battle", re.compile(r"battle|fight|duel|kill|defeat|ambush|siege|clash", re.I)),
    ("revelation", re.compile(r"reveal|discover|truth|secret|identity|learns?", re.I)),
    ("encounter", re.compile(r"meets?|meeting|encounter|reunite|reunion|runs? into", re.I)),
    ("departure", re.compile(r"leaves?|departs?|farewell|sets? out|journey", re.I)),
    ("acquisition", re.compile(r"obtains?|acquires?|gains?|breakthrough|masters?", re.I)),
    ("death", re.compile(r"\bdies\b|death|sacrifice|killed|perish", re.I)),
    ("decision", re.compile(r"decides?|decision|chooses?|resolves? to", re.I)),
    ("conflict", re.compile(r"argue|argument|quarrel|confront|standoff|feud", re.I)),
    ("alliance", re.compile(r"alliance|allies|joins? forces|team up|pact", re.I)),
    ("betrayal", re.compile(r"betray|double-cross|sells? out|defects?", re.I)),
]

_TYPE_KEYWORDS: dict[str, tuple[str, ...]] = {
    "ceremony": ("ceremony", "ritual", "rite", "gathered", "began"),
    "battle": ("fight", "strike", "attack", "blade", "defend"),
    "revelation": ("discover", "learned", "revealed", "truth", "realized"),
    "encounter": ("met", "meet", "first time", "again", "face to face"),
    "departure": ("left", "farewell", "goodbye", "set out", "departed"),
    "acquisition": ("obtained", "gained", "breakthrough", "awakened", "mastered"),
    "death": ("died", "dead", "killed", "sacrifice", "fell"),
    "decision": ("decided", "chose", "resolved", "made up"),
    "conflict": ("argued", "clash", "confront", "shouted", "standoff"),
    "alliance": ("alliance", "together", "joined", "allies"),
    "betrayal": ("betray", "traitor", "sold out", "turned on"),
    "custom": (),
}


def infer_event_type(text: str) -> TimelineEventType:
    for event_type, pattern in _TYPE_PATTERNS:
        if pattern.search(text):
            return event_type
    return "custom"


def unique_key(
    event_type: str, character_ids: Iterable[str], core_action: str
) -> str:
    """``type:sorted_ids:normalised_action`` used to spot repeats."""
    ids = "_".join(sorted(character_ids))
    action = re.sub(r"\s+", "_", core_action.strip().lower())
    return f"{event_type}:{ids}:{action}"


def generate_event_id(timeline: TimelineState, event_type: str, chapter: int) -> str:
    prefix = f"evt_{event_type}_ch{chapter}_"
    ordinal = sum(1 for e in timeline.events if e.id.startswith(prefix)) + 1
    return f"{prefix}{ordinal}"


def find_characters_in_text(text: str, names: Mapping[str, str]) -> list[str]:
    return list(dict.fromkeys(cid for name, cid in names.items() if name and name in text))


def completed_events(timeline: TimelineState) -> list[TimelineEvent]:
    return [e for e in timeline.events if e.status == "completed"]


def in_progress_events(timeline: TimelineState) -> list[TimelineEvent]:
    return [e for e in timeline.events if e.status == "in_progress"]


def find_duplicate(timeline: TimelineState, key: str) -> TimelineEvent | None:
    return next(
        (
            e
            for e in timeline.events
            if e.unique_key == key and e.status in ("completed", "in_progress")
        ),
        None,
    )


def initialize_from_outline(
    volumes: Iterable[VolumeOutline], names: Mapping[str, str]
) -> TimelineState:
    """Seed planned events from chapter goals."""
    timeline = TimelineState()
    for volume in volumes:
        for chapter in volume.chapters:
            if not chapter.goal:
                continue
            character_ids = find_characters_in_text(chapter.goal, names)
            event_type = infer_event_type(chapter.goal)
            timeline.events.append(
                TimelineEvent(
                    id=generate_event_id(timeline, event_type, chapter.index),
                    type=event_type,
                    summary=chapter.goal[:80],
                    description=chapter.goal,
                    character_ids=character_ids,
                    status="planned",
                    planned_chapter=chapter.index,
                    unique_key=unique_key(event_type, character_ids, chapter.goal[:40]),
                )
            )
    return timeline


def apply_event_analysis(
    timeline: TimelineState, analysis: TimelineEventAnalysis, chapter_index: int
) -> TimelineState:
    """Append this chapter's events as completed, skipping repeats."""
    updated = timeline.model_copy(deep=True)
    for event in analysis.new_events:
        existing = find_duplicate(updated, event.unique_key)
        if existing is not None:
            logger.info(
                "Skipping duplicate timeline event.",
                summary=event.summary,
                duplicate_of=existing.summary,
            )
            continue
        updated.events.append(
            TimelineEvent(
                id=generate_event_id(updated, event.type, chapter_index),
                type=event.type,
                summary=event.summary,
                description=event.description,
                character_ids=event.character_ids,
                status="completed",
                started_chapter=chapter_index,
                completed_chapter=chapter_index,
                unique_key=event.unique_key,
                evidence=event.evidence or None,
            )
        )
    if analysis.current_timepoint:
        updated.current_timepoint = analysis.current_timepoint
    updated.last_updated_chapter = max(timeline.last_updated_chapter, chapter_index)
    return updated


def check_event_duplication(
    chapter_text: str, timeline: TimelineState, names: Mapping[str, str]
) -> DuplicationReport:
    """Heuristic: a completed event's character, wording and type cue all reappear."""
    id_to_name = {cid: name for name, cid in names.items()}
    lowered = chapter_text.lower()
    duplicated: list[TimelineEvent] = []
    warnings: list[str] = []
    for event in completed_events(timeline):
        event_names = [id_to_name[cid] for cid in event.character_ids if cid in id_to_name]
        if not any(name in chapter_text for name in event_names):
            continue
        parts = [p.strip().lower() for p in re.split(r"[,.;:]", event.summary)]
        if not any(len(p) > 2 and p in lowered for p in parts):
            continue
        if any(kw in lowered for kw in _TYPE_KEYWORDS.get(event.type, ())):
            duplicated.append(event)
            warnings.append(
                f'Possible repeat of "{event.summary}" (already completed in chapter {event.completed_chapter})'
            )
    return DuplicationReport(
        has_duplication=bool(duplicated),
        duplicated_events=duplicated,
        warnings=warnings,
    )


def build_timeline_context(
    timeline: TimelineState, chapter_index: int, names: Mapping[str, str]
) -> str:
    id_to_name = {cid: name for name, cid in names.items()}

    def who(event: TimelineEvent) -> str:
        return ", ".join(id_to_name.get(cid, cid) for cid in event.character_ids) or "n/a"

    parts = ["[Current story time]", timeline.current_timepoint, ""]
    done = completed_events(timeline)
    if done:
        parts.append("[Completed events - do NOT repeat]")
        for event in done[-10:]:
            parts.append(
                f"- [Chapter {event.completed_chapter}] {event.summary} (involving: {who(event)})"
            )
        parts.append("")
    ongoing = in_progress_events(timeline)
    if ongoing:
        parts.append("[Ongoing events]")
        for event in ongoing:
            parts.append(
                f"- {event.summary} (involving: {who(event)}, since chapter {event.started_chapter})"
            )
        parts.append("")
    recent = [
        e
        for e in done
        if e.completed_chapter is not None and chapter_index - e.completed_chapter <= 3
    ]
    if recent:
        parts.append("[Just happened]")
        parts.extend(f"- Chapter {e.completed_chapter}: {e.summary}" for e in recent)
    return "\n".join(parts).strip()


def timeline_stats(timeline: TimelineState) -> dict[str, object]:
    by_type: dict[str, int] = {}
    for event in timeline.events:
        by_type[event.type] = by_type.get(event.type, 0) + 1
    return {
        "total_events": len(timeline.events),
        "completed_events": len(completed_events(timeline)),
        "active_events": len(in_progress_events(timeline)),
        "planned_events": sum(1 for e in timeline.events if e.status == "planned"),
        "by_type": by_type,
    }


def parse_event_analysis(
    raw: str, timeline: TimelineState, names: Mapping[str, str]
) -> TimelineEventAnalysis:
    payload = extract_json_object(raw)
    if payload is None:
        logger.warning("Timeline analysis payload was not a JSON object.")
        return TimelineEventAnalysis(current_timepoint=timeline.current_timepoint)
    drafts = parse_model_list(payload.get("newEvents"), TimelineEventDraft, "timeline event")
    events = []
    for draft in drafts:
        character_ids = [names[n] for n in draft.character_names if n in names]
        events.append(
            ResolvedEvent(
                type=draft.type,
                summary=draft.summary,
                description=draft.description,
                character_ids=character_ids,
                unique_key=unique_key(
                    draft.type, character_ids, draft.core_action or draft.summary
                ),
                evidence=draft.evidence,
            )
        )
    timepoint = payload.get("currentTimepoint")
    return TimelineEventAnalysis(
        new_events=events,
        current_timepoint=timepoint.strip()
        if isinstance(timepoint, str) and timepoint.strip()
        else timeline.current_timepoint,
    )


async def analyze_chapter(
    client: ModelClient,
    chapter_text: str,
    chapter_index: int,
    timeline: TimelineState,
    names: Mapping[str, str],
    providers: Sequence[ModelProviderConfig] | None = None,
) -> TimelineEventAnalysis:
    system, prompt = render_prompt_pair(
        "timeline",
        {
            "chapter_index": chapter_index,
            "character_names": list(names),
            "completed": [e.summary for e in completed_events(timeline)[-10:]],
            "chapter_text": chapter_text[: settings.EXTRACTION_SOURCE_MAX_CHARS],
        },
    )
    raw = await client.generate(
        system,
        prompt,
        temperature=settings.TEMPERATURE_EXTRACTION,
        max_tokens=settings.QC_MAX_TOKENS * 2,
        providers=providers,
    )
    analysis = parse_event_analysis(raw, timeline, names)
    logger.info(
        "Analyzed chapter timeline.",
        chapter=chapter_index,
        new_events=len(analysis.new_events),
    )
    return analysis

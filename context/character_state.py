# context/character_state.py
"""Character state registry: seeding, delta application and prompt rendering.

Every mutating helper returns a new registry; inputs are never modified.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Sequence

import structlog
from config import settings
from core.llm_interface import ModelClient, ModelProviderConfig
from parsing import extract_json_object, parse_model_list
from prompt_renderer import render_prompt_pair
from pydantic import ValidationError

from models.analysis_models import CharacterChangeItem
from models.character_models import (
    CharacterDelta,
    CharacterStateRegistry,
    CharacterStateSnapshot,
    ConsistencyReport,
    PhysicalState,
    PsychologicalState,
    SocialState,
    StateChange,
)
from models.project_models import CharacterProfile

logger = structlog.get_logger(__name__)

_SECTIONS = ("physical", "psychological", "social")
_CONDITION_LABELS = {
    "healthy": "healthy",
    "minor_injury": "lightly injured",
    "major_injury": "badly injured",
    "weak": "weakened",
    "unconscious": "unconscious",
    "unknown": "unknown",
}
_CAMEL_BOUNDARY = re.compile(r"(?<!^)(?=[A-Z])")


def _snake(name: str) -> str:
    return _CAMEL_BOUNDARY.sub("_", name.strip()).lower()


def normalize_field_path(field: str) -> tuple[str, str] | None:
    """``"social.activeAlliances"`` -> ``("social", "active_alliances")``."""
    parts = [p for p in field.strip().split(".") if p]
    if len(parts) != 2:
        return None
    section, attr = parts[0].lower(), _snake(parts[1])
    if section not in _SECTIONS:
        return None
    model_cls = {
        "physical": PhysicalState,
        "psychological": PsychologicalState,
        "social": SocialState,
    }[section]
    if attr not in model_cls.model_fields:
        return None
    return section, attr


def _display(value: object) -> str:
    if value is None:
        return "none"
    if isinstance(value, list):
        return ", ".join(str(v) for v in value) or "none"
    return str(value)


def create_initial_snapshot(
    character_id: str, character_name: str, chapter_index: int = 0
) -> CharacterStateSnapshot:
    return CharacterStateSnapshot(
        character_id=character_id,
        character_name=character_name or character_id,
        as_of_chapter=chapter_index,
    )


def snapshot_from_profile(profile: CharacterProfile) -> CharacterStateSnapshot:
    return CharacterStateSnapshot(
        character_id=profile.id,
        character_name=profile.name,
        physical=PhysicalState(abilities=list(dict.fromkeys(profile.abilities))),
        psychological=PsychologicalState(motivation=profile.motivation or "unknown"),
        social=SocialState(
            public_identity=profile.public_identity or "unknown",
            active_alliances=list(dict.fromkeys(profile.allies)),
            active_enemies=list(dict.fromkeys(profile.enemies)),
        ),
    )


def initialize_from_profiles(
    profiles: Iterable[CharacterProfile],
) -> CharacterStateRegistry:
    """One snapshot per protagonist or main character."""
    registry = CharacterStateRegistry()
    for profile in profiles:
        if profile.role not in ("protagonist", "main"):
            continue
        registry.snapshots[profile.id] = snapshot_from_profile(profile)
    return registry


def _apply_list_change(current: list[str], new_value: str) -> list[str]:
    value = new_value.strip()
    if value.startswith("+"):
        item = value[1:].strip()
        return current if not item or item in current else [*current, item]
    if value.startswith("-"):
        item = value[1:].strip()
        return [v for v in current if v != item]
    return list(dict.fromkeys(p.strip() for p in value.split(",") if p.strip()))


def _apply_to_snapshot(
    snapshot: CharacterStateSnapshot,
    deltas: Sequence[CharacterDelta],
    chapter_index: int,
    history_limit: int,
) -> CharacterStateSnapshot:
    updated = snapshot.model_copy(deep=True)
    updated.as_of_chapter = max(snapshot.as_of_chapter, chapter_index)

    for delta in deltas:
        path = normalize_field_path(delta.field)
        if path is None:
            logger.debug(
                "Ignoring change to unknown character field.",
                character=delta.character_id,
                field=delta.field,
            )
            continue
        section_name, attr = path
        section = getattr(updated, section_name)
        old_value = getattr(section, attr)
        if isinstance(old_value, list):
            new_value: object = _apply_list_change(old_value, delta.new_value)
        else:
            new_value = delta.new_value.strip()
        try:
            setattr(section, attr, new_value)
        except ValidationError:
            logger.warning(
                "Rejected invalid character state value.",
                character=delta.character_id,
                field=delta.field,
                value=delta.new_value,
            )
            continue

        field_label = f"{section_name}.{attr}"
        updated.recent_changes.append(
            StateChange(
                chapter=chapter_index,
                field=field_label,
                old_value=_display(old_value),
                new_value=_display(new_value),
                change=f"{field_label}: {_display(old_value)} -> {_display(new_value)}",
            )
        )

    if len(updated.recent_changes) > history_limit:
        updated.recent_changes = updated.recent_changes[-history_limit:]
    return updated


def apply_deltas(
    registry: CharacterStateRegistry,
    deltas: Sequence[CharacterDelta],
    chapter_index: int,
    history_limit: int = settings.CHARACTER_RECENT_CHANGES_LIMIT,
) -> CharacterStateRegistry:
    """Return a new registry with ``deltas`` merged in chapter order.

    An empty delta list returns an equal registry.
    """
    updated = registry.model_copy(deep=True)
    if not deltas:
        return updated

    grouped: dict[str, list[CharacterDelta]] = {}
    for delta in deltas:
        grouped.setdefault(delta.character_id, []).append(delta)

    for character_id, character_deltas in grouped.items():
        snapshot = updated.snapshots.get(character_id)
        if snapshot is None:
            name = next(
                (d.character_name for d in character_deltas if d.character_name),
                character_id,
            )
            snapshot = create_initial_snapshot(character_id, name, chapter_index)
            logger.info(
                "Created state snapshot for new character.",
                character=character_id,
                chapter=chapter_index,
            )
        updated.snapshots[character_id] = _apply_to_snapshot(
            snapshot, character_deltas, chapter_index, history_limit
        )

    updated.last_updated_chapter = max(registry.last_updated_chapter, chapter_index)
    return updated


def manual_update(
    registry: CharacterStateRegistry,
    character_id: str,
    field: str,
    value: str,
    chapter_index: int,
) -> CharacterStateRegistry:
    """Apply an operator correction through the same path as extracted deltas."""
    if character_id not in registry.snapshots:
        logger.warning("Manual update for unknown character.", character=character_id)
        return registry.model_copy(deep=True)
    delta = CharacterDelta(
        character_id=character_id,
        character_name=registry.snapshots[character_id].character_name,
        field=field,
        new_value=value,
        evidence="manual",
    )
    return apply_deltas(registry, [delta], chapter_index)


def derive_active_snapshots(
    registry: CharacterStateRegistry,
    chapter_index: int,
    limit: int = settings.ACTIVE_CHARACTER_LIMIT,
) -> list[CharacterStateSnapshot]:
    """Most recently changed characters first; ties keep registry order."""
    candidates = [
        s for s in registry.snapshots.values() if s.as_of_chapter <= chapter_index
    ] or list(registry.snapshots.values())
    ranked = sorted(candidates, key=lambda s: s.last_change_chapter(), reverse=True)
    return ranked[:limit]


def validate_consistency(registry: CharacterStateRegistry) -> ConsistencyReport:
    """Advisory checks for contradictory or oscillating state."""
    issues: list[str] = []
    for snapshot in registry.snapshots.values():
        name = snapshot.character_name
        motivation = snapshot.psychological.motivation
        if snapshot.physical.condition == "unconscious" and motivation not in (
            "unconscious",
            "unknown",
        ):
            issues.append(
                f'{name} is unconscious but has motivation "{motivation}"; please correct.'
            )
        if not snapshot.physical.location.strip():
            issues.append(f"{name} has no location set.")

        changes = snapshot.recent_changes
        if len(changes) >= 2:
            previous, last = changes[-2], changes[-1]
            if previous.field == last.field and previous.new_value == last.old_value:
                issues.append(
                    f"{name}'s {last.field} changed back and forth recently; confirm this is intended."
                )
    return ConsistencyReport(valid=not issues, issues=issues)


def format_snapshot_for_prompt(snapshot: CharacterStateSnapshot) -> str:
    physical = snapshot.physical
    psych = snapshot.psychological
    social = snapshot.social
    lines = [f"## {snapshot.character_name} (ID: {snapshot.character_id})", "[Physical]"]
    lines.append(f"  - Location: {physical.location}")
    lines.append(f"  - Condition: {_CONDITION_LABELS.get(physical.condition, physical.condition)}")
    if physical.equipment:
        lines.append(f"  - Equipment: {', '.join(physical.equipment)}")
    if physical.abilities:
        lines.append(f"  - Abilities: {', '.join(physical.abilities)}")
    if physical.power_level:
        lines.append(f"  - Power level: {physical.power_level}")

    lines.append("[Psychological]")
    lines.append(f"  - Mood: {psych.mood}")
    lines.append(f"  - Motivation: {psych.motivation}")
    if psych.known_secrets:
        lines.append(f"  - Known secrets: {'; '.join(psych.known_secrets)}")
    if psych.beliefs:
        lines.append(f"  - Beliefs: {'; '.join(psych.beliefs)}")
    if psych.inner_conflict:
        lines.append(f"  - Inner conflict: {psych.inner_conflict}")

    lines.append("[Social]")
    lines.append(f"  - Public identity: {social.public_identity}")
    if social.hidden_identity:
        lines.append(f"  - Hidden identity: {social.hidden_identity}")
    lines.append(f"  - Reputation: {social.reputation}")
    if social.active_alliances:
        lines.append(f"  - Allies: {', '.join(social.active_alliances)}")
    if social.active_enemies:
        lines.append(f"  - Enemies: {', '.join(social.active_enemies)}")

    if snapshot.recent_changes:
        lines.append("[Recent changes]")
        for change in snapshot.recent_changes[-3:]:
            lines.append(f"  - Chapter {change.chapter}: {change.change}")
    return "\n".join(lines)


def build_character_context(
    registry: CharacterStateRegistry,
    chapter_index: int,
    max_characters: int = settings.ACTIVE_CHARACTER_LIMIT,
) -> str:
    if not registry.snapshots:
        return ""
    active = derive_active_snapshots(registry, chapter_index, max_characters)
    if not active:
        return ""
    parts = [
        "[Active character states]",
        "Keep these characters consistent with their current state:",
        "",
    ]
    for snapshot in active:
        parts.append(format_snapshot_for_prompt(snapshot))
        parts.append("")
    parts.extend(
        [
            "[Consistency rules]",
            "- Location changes must be plausible; no teleporting.",
            "- Abilities must match what has been established.",
            "- Emotions and actions must follow from the current psychological state.",
            "- Any major state change must be shown on the page.",
        ]
    )
    return "\n".join(parts)


def character_name_map(registry: CharacterStateRegistry) -> dict[str, str]:
    """Character name -> id."""
    return {s.character_name: s.character_id for s in registry.snapshots.values()}


def parse_character_changes(
    raw: str,
    min_confidence: float = settings.CHARACTER_CHANGE_MIN_CONFIDENCE,
) -> list[CharacterDelta]:
    payload = extract_json_object(raw)
    if payload is None:
        logger.warning("Character change payload was not a JSON object.")
        return []
    items = parse_model_list(payload.get("changes"), CharacterChangeItem, "character change")
    deltas: list[CharacterDelta] = []
    for item in items:
        if item.confidence < min_confidence:
            continue
        deltas.append(
            CharacterDelta(
                character_id=item.character_id,
                character_name=item.character_name,
                field=item.field,
                old_value=item.old_value or None,
                new_value=item.new_value,
                evidence=item.evidence,
                confidence=item.confidence,
            )
        )
    return deltas


async def extract_character_changes(
    client: ModelClient,
    chapter_text: str,
    chapter_index: int,
    registry: CharacterStateRegistry,
    providers: Sequence[ModelProviderConfig] | None = None,
) -> list[CharacterDelta]:
    """Ask the model which character fields changed in this chapter."""
    summaries = [
        f"{s.character_name}({s.character_id}): location={s.physical.location}, "
        f"condition={s.physical.condition}, mood={s.psychological.mood}"
        for s in list(registry.snapshots.values())[:10]
    ]
    system, prompt = render_prompt_pair(
        "character_state",
        {
            "chapter_index": chapter_index,
            "state_summaries": summaries,
            "chapter_text": chapter_text[: settings.EXTRACTION_SOURCE_MAX_CHARS],
            "min_confidence": settings.CHARACTER_CHANGE_MIN_CONFIDENCE,
        },
    )
    raw = await client.generate(
        system,
        prompt,
        temperature=settings.TEMPERATURE_EXTRACTION,
        max_tokens=settings.QC_MAX_TOKENS * 2,
        providers=providers,
    )
    deltas = parse_character_changes(raw)
    logger.info(
        "Extracted character state changes.", chapter=chapter_index, count=len(deltas)
    )
    return deltas

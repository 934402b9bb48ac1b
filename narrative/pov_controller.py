# narrative/pov_controller.py
"""Point-of-view settings read from the story bible and the rules handed to the drafter."""

from __future__ import annotations

import re
from collections.abc import Sequence

import structlog

from models.narrative_models import PovConfig
from models.project_models import CharacterProfile

logger = structlog.get_logger(__name__)

_FIRST_PERSON_RE = re.compile(r"\bfirst[- ]person\b", re.I)
_MULTIPLE_RE = re.compile(
    r"\b(?:multiple|rotating|alternating)\s+(?:povs?|points?\s+of\s+view|viewpoints?)\b"
    r"|\bensemble\s+cast\b",
    re.I,
)
_OMNISCIENT_RE = re.compile(r"\bomniscient\b", re.I)
_PROTAGONIST_RE = re.compile(r"^\s*(?:protagonist|main character)\s*:\s*([^\n,;]+)", re.I | re.M)
_POV_LIST_RE = re.compile(r"^\s*pov characters?\s*:\s*([^\n]+)", re.I | re.M)
_OUTLINE_POV_RE = re.compile(r"\bpov\s*:\s*([^\n,.;]+)", re.I)
_LIST_SPLIT_RE = re.compile(r"\s*(?:,|;|\band\b)\s*", re.I)

_COMMON_RULES = [
    "Never reveal what the viewpoint character cannot know, unless the narration is omniscient.",
    "Never switch viewpoint character without a transition.",
    "Never mix first-person and third-person narration.",
]


def protagonist_name(characters: Sequence[CharacterProfile]) -> str | None:
    return next((c.name for c in characters if c.role == "protagonist"), None)


def extract_pov_config(bible: str, protagonist: str | None = None) -> PovConfig:
    """Detect the narrative viewpoint from bible wording; third-person limited otherwise.

    Later markers win: omniscient over multiple over first person.
    """
    config = PovConfig()
    if _FIRST_PERSON_RE.search(bible):
        config.type = "first_person"
    if _MULTIPLE_RE.search(bible):
        config.type = "multiple"
    if _OMNISCIENT_RE.search(bible):
        config.type = "third_omniscient"

    if protagonist:
        config.main_character = protagonist
    else:
        match = _PROTAGONIST_RE.search(bible)
        if match:
            config.main_character = match.group(1).strip()

    match = _POV_LIST_RE.search(bible)
    if match:
        config.allowed_characters = [
            name for name in _LIST_SPLIT_RE.split(match.group(1).strip()) if name
        ]

    logger.debug(
        "Extracted POV config.",
        pov_type=config.type,
        main_character=config.main_character,
        allowed=config.allowed_characters,
    )
    return config


def recommended_pov_character(
    config: PovConfig, chapter_index: int, outline_hint: str = ""
) -> str:
    """Viewpoint character for one chapter.

    Only multi-POV books vary: an explicit ``POV: name`` in the outline wins,
    then the allowed list is rotated by chapter.
    """
    if config.type != "multiple":
        return config.main_character
    match = _OUTLINE_POV_RE.search(outline_hint)
    if match:
        return match.group(1).strip()
    if config.allowed_characters:
        return config.allowed_characters[(chapter_index - 1) % len(config.allowed_characters)]
    return config.main_character


def pov_rules_for(config: PovConfig, pov_character: str) -> list[str]:
    if config.type == "first_person":
        rules = [
            f'Narrate in the first person as {pov_character}; use "I" throughout.',
            f"Show only what {pov_character} sees, hears, thinks and feels.",
            "Other characters' thoughts come through dialogue, expression and action.",
            f"No events that happen while {pov_character} is absent.",
        ]
    elif config.type == "third_omniscient":
        rules = [
            "Omniscient third person: any character's inner life may be shown.",
            "Events in different places may be shown as they happen.",
            "Keep the narrative focus steady; avoid jumping around.",
            "Each paragraph centers on one character or scene.",
        ]
    elif config.type == "multiple":
        rules = [
            f"Rotating viewpoints; this chapter follows {pov_character}.",
            "Keep a single viewpoint for the whole chapter.",
            f"Show only {pov_character}'s inner life.",
            "Other characters come through dialogue and behavior.",
        ]
        if config.allow_in_chapter_switch:
            rules.append(f'Mark any viewpoint switch with the separator "{config.separator}".')
    else:
        rules = [
            f"Limited third person following {pov_character}.",
            f"Show only {pov_character}'s thoughts.",
            "Other characters' inner lives are implied through outward behavior.",
            f"Scene changes follow {pov_character}.",
        ]
    return [*rules, *_COMMON_RULES]

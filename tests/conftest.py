# tests/conftest.py
import os
import sys
from collections.abc import Sequence
from typing import Any

# Ensure repository root is on PYTHONPATH for tests
repo_root = os.path.abspath(os.path.join(os.path.dirname(__file__), os.pardir))
if repo_root not in sys.path:
    sys.path.insert(0, repo_root)

# Ensure placeholder secrets do not trigger validators during tests
os.environ.setdefault("OPENAI_API_KEY", "test-key")
os.environ.setdefault("ENABLE_RICH_PROGRESS", "false")
os.environ.setdefault("LOG_FILE", "")

import pytest
from core.llm_interface import ModelCallError, ModelErrorType

from models.character_models import CharacterStateRegistry, CharacterStateSnapshot
from models.project_models import (
    ChapterOutline,
    CharacterProfile,
    ProjectDefinition,
    ProjectState,
    VolumeOutline,
)

# Phrase unique to each stage's system prompt.
STAGE_MARKERS = {
    "planning": "story planning assistant",
    "drafting": "serial fiction writing assistant",
    "self_review": "Check the chapter for repeated plot beats",
    "summary_update": "Update the layered story summary",
    "character_state": "continuity analyst",
    "plot_graph": "plot analyst",
    "timeline": "story timeline keeper",
    "qc_character": "continuity checker",
    "qc_pacing": "pacing reviewer",
    "qc_goal": "achieves its planned goal",
    "repair": "repairing a chapter",
}

PARAGRAPH = (
    "Below, torches moved through the dark like a slow river of fire, and she heard the "
    'drums start again. "Hold the gate," Mara said, her breath ragged as the cold wind '
    "cut across the wall."
)


def make_chapter(index: int, paragraphs: int = 6, title: str = "The Long Watch") -> str:
    """A chapter that passes the quick format gate for small minimums."""
    return f"Chapter {index}: {title}\n\n" + "\n\n".join([PARAGRAPH] * paragraphs)


class FakeModelClient:
    """Replays scripted replies per stage; the last reply of a stage repeats.

    A scripted ``Exception`` is raised instead of returned. Stages without a
    script fail with a ``ModelCallError``.
    """

    def __init__(self, scripts: dict[str, Sequence[Any]] | None = None) -> None:
        self.scripts = {stage: list(replies) for stage, replies in (scripts or {}).items()}
        self.calls: list[dict[str, Any]] = []

    @staticmethod
    def stage_of(system: str) -> str:
        for stage, marker in STAGE_MARKERS.items():
            if marker in system:
                return stage
        return "unknown"

    def calls_for(self, stage: str) -> list[dict[str, Any]]:
        return [c for c in self.calls if c["stage"] == stage]

    async def generate(
        self,
        system: str,
        prompt: str,
        *,
        temperature: float = 0.8,
        max_tokens: int | None = None,
        providers: Any = None,
    ) -> str:
        stage = self.stage_of(system)
        self.calls.append(
            {
                "stage": stage,
                "system": system,
                "prompt": prompt,
                "temperature": temperature,
                "max_tokens": max_tokens,
                "providers": providers,
            }
        )
        replies = self.scripts.get(stage)
        if not replies:
            raise ModelCallError(f"No scripted reply for {stage}", ModelErrorType.UNKNOWN)
        reply = replies.pop(0) if len(replies) > 1 else replies[0]
        if isinstance(reply, Exception):
            raise reply
        return reply


@pytest.fixture
def fake_client_factory():
    return FakeModelClient


@pytest.fixture
def project() -> ProjectDefinition:
    return ProjectDefinition(
        project_id="ashfall",
        title="Ashfall",
        bible=(
            "Protagonist: Mara Venn, a gate warden with a forbidden fire ability.\n\n"
            "World: the walled city of Ashfall, besieged every winter.\n\n"
            "Villain: the Ember King, who wants the city's buried flame."
        ),
        total_chapters=40,
        characters=[
            CharacterProfile(id="mara", name="Mara", role="protagonist", motivation="protect the city"),
            CharacterProfile(id="tobin", name="Tobin", role="main"),
        ],
        volumes=[
            VolumeOutline(
                index=1,
                start_chapter=1,
                end_chapter=20,
                chapters=[
                    ChapterOutline(index=12, title="The Breach", goal="Mara holds the gate", hook="The wall cracks"),
                ],
            ),
            VolumeOutline(index=2, start_chapter=21, end_chapter=40),
        ],
    )


@pytest.fixture
def registry() -> CharacterStateRegistry:
    return CharacterStateRegistry(
        snapshots={
            "mara": CharacterStateSnapshot(character_id="mara", character_name="Mara"),
            "tobin": CharacterStateSnapshot(character_id="tobin", character_name="Tobin"),
        }
    )


@pytest.fixture
def project_state(registry: CharacterStateRegistry) -> ProjectState:
    return ProjectState(
        project_id="ashfall",
        rolling_summary="[Recent memory]\nMara found the gate unguarded and raised the alarm.",
        open_loops=["Who opened the gate?"],
        character_states=registry,
        last_chapter_index=11,
    )

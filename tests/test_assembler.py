# tests/test_assembler.py
from context.assembler import (
    DEFAULT_ALLOCATION,
    ContextAssembler,
    ContextBudget,
    adjust_budget_for_pacing,
    compress_bible,
    optimize_last_chapters,
)
from context.semantic_cache import ContextCache
from models.narrative_models import NarrativeGuide

FRAGMENTS = [
    "bible_compressed",
    "character_context",
    "plot_context",
    "timeline_context",
    "rolling_summary",
]


def test_unchanged_state_reuses_every_fragment(project, project_state):
    assembler = ContextAssembler()
    first = assembler.assemble(project, project_state, 12, [])
    second = assembler.assemble(project, project_state, 12, [])
    assert first.cached == []
    assert second.cached == FRAGMENTS
    assert first.text == second.text


def test_state_change_invalidates_cached_fragments(project, project_state):
    assembler = ContextAssembler()
    assembler.assemble(project, project_state, 12, [])
    registry = project_state.character_states.model_copy(update={"last_updated_chapter": 11})
    changed = project_state.model_copy(update={"character_states": registry})
    again = assembler.assemble(project, changed, 12, [])
    assert again.cached == []
    assert again.state_version != ContextAssembler.state_version(project_state)


def test_budget_change_misses_the_cache(project, project_state):
    cache = ContextCache()
    ContextAssembler(cache=cache).assemble(project, project_state, 12, [])
    smaller = ContextAssembler(cache=cache, budget=ContextBudget(total_tokens=1000))
    assert smaller.assemble(project, project_state, 12, []).cached == []


def test_sections_carry_chapter_info_and_open_loops(project, project_state):
    context = ContextAssembler().assemble(project, project_state, 12, ["Chapter 11: Ash\n\nMara ran."])
    text = context.text
    assert "[Chapter info]" in text
    assert "is_final_chapter: false" in text
    assert "[Open loops]\n1. Who opened the gate?" in text
    assert "[Previous chapter]\nChapter 11: Ash" in text
    assert "[Story bible]\nProtagonist: Mara Venn" in text


def test_guide_is_included_and_shifts_budget(project, project_state):
    guide = NarrativeGuide(
        chapter_index=12,
        pacing_target=8.5,
        pacing_type="action",
        emotional_tone="tense",
        word_count_range=(2000, 2800),
        pacing_guidance="Keep it moving.",
    )
    context = ContextAssembler().assemble(project, project_state, 12, [], guide)
    assert "[Narrative guide for this chapter]" in context.text


def test_adjust_budget_for_pacing_renormalises():
    base = ContextBudget()
    action = adjust_budget_for_pacing(base, "action")
    assert abs(sum(action.allocation.values()) - 1.0) < 1e-9
    assert action.allocation["last_chapters"] > DEFAULT_ALLOCATION["last_chapters"]
    assert action.allocation["bible"] < DEFAULT_ALLOCATION["bible"]
    assert base.allocation == DEFAULT_ALLOCATION


def test_compress_bible_keeps_priority_paragraphs_in_document_order():
    background = "Background: the city history."
    example = "Example note: " + "x" * 80
    protagonist = "Protagonist: Mara Venn, gate warden."
    bible = "\n\n".join([background, example, protagonist])

    compressed = compress_bible(bible, max_tokens=20)
    assert compressed == f"{background}\n\n{protagonist}"
    assert compress_bible(bible, max_tokens=1000) == bible


def test_optimize_last_chapters_truncates_and_adds_previous_tail():
    older = "Older chapter text. " * 100
    latest = "L" * 3000
    text = optimize_last_chapters([older, latest], max_tokens=500)
    assert text.startswith("[Previous chapter (excerpt)]\n...")
    assert "[Ending of the chapter before]" in text
    assert optimize_last_chapters([], 500) == ""

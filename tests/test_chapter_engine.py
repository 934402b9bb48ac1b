# tests/test_chapter_engine.py
import pytest
from conftest import make_chapter
from config import ChapterForgeSettings
from core.llm_interface import ModelCallError, ModelErrorType

from models.narrative_models import NarrativeGuide
from narrative.pacing_controller import generate_narrative_arc
from orchestration.chapter_engine import (
    GenerationOrchestrator,
    build_goal_section,
    quick_gate_reasons,
    recommended_max_chars,
    temperature_for_pacing,
)
from orchestration.models import ChapterQualityError, ChapterRequest

GOOD_CHAPTER = make_chapter(12, paragraphs=20, title="The Breach")

HAPPY_SCRIPTS = {
    "planning": [
        '{"scenePlan": [{"purpose": "Hold the gate", "conflict": "Fire on the wall",'
        ' "newInfo": "Tobin lied"}], "avoidRepeats": ["the first alarm"]}'
    ],
    "drafting": [GOOD_CHAPTER],
    "self_review": ['{"action": "keep"}'],
    "character_state": [
        '{"changes": [{"characterId": "mara", "field": "physical.location",'
        ' "newValue": "the north wall", "confidence": 0.9}]}'
    ],
    "plot_graph": ['{"newNodes": [{"type": "event", "content": "The breach opens", "importance": 8}]}'],
    "timeline": [
        '{"newEvents": [{"type": "battle", "summary": "Mara holds the breach",'
        ' "characterNames": ["Mara"]}], "currentTimepoint": "The first night of the siege"}'
    ],
    "summary_update": [
        '{"longTermMemory": "Ashfall is besieged every winter.",'
        ' "recentMemory": "Mara held the breach until dawn.",'
        ' "openLoops": ["Who opened the gate?", "Where did Tobin go?"]}'
    ],
}


def _cfg(**overrides) -> ChapterForgeSettings:
    values = {"MIN_CHAPTER_CHARS": 500, "ENABLE_FULL_QC": False, "SUMMARY_MODEL": None}
    values.update(overrides)
    return ChapterForgeSettings(**values)


def _scripts(**overrides):
    scripts = {stage: list(replies) for stage, replies in HAPPY_SCRIPTS.items()}
    scripts.update(overrides)
    return scripts


@pytest.mark.asyncio
async def test_happy_path_updates_every_state(fake_client_factory, project, project_state):
    client = fake_client_factory(_scripts())
    before = project_state.model_dump()
    orchestrator = GenerationOrchestrator(client, project, cfg=_cfg())

    result = await orchestrator.generate_chapter(project_state, ChapterRequest(chapter_index=12))

    assert result.chapter_text.startswith("Chapter 12: The Breach")
    assert not result.was_rewritten
    assert result.diagnostics.degraded_stages == []
    assert result.diagnostics.logical_calls["drafting"] == 1
    assert result.diagnostics.logical_calls["planning"] == 1
    assert result.updated_character_states.snapshots["mara"].physical.location == "the north wall"
    assert [n.id for n in result.updated_plot_graph.nodes] == ["event_ch12_1"]
    assert result.updated_timeline.events[0].status == "completed"
    assert result.updated_timeline.current_timepoint == "The first night of the siege"
    assert "[Recent memory]\nMara held the breach until dawn." in result.updated_summary
    assert result.updated_open_loops == ["Who opened the gate?", "Where did Tobin go?"]
    assert not result.skipped_summary
    assert project_state.model_dump() == before

    draft_prompt = client.calls_for("drafting")[0]["prompt"]
    assert "Goal: Mara holds the gate" in draft_prompt
    assert "Scene 1: purpose=Hold the gate" in draft_prompt
    assert "1. the first alarm" in draft_prompt


@pytest.mark.asyncio
async def test_draft_that_never_passes_raises_quality_error(
    fake_client_factory, project, project_state
):
    client = fake_client_factory({"drafting": ["Chapter 12: The Breach\n\nToo short."]})
    cfg = _cfg(ENABLE_PLANNING=False, ENABLE_SELF_REVIEW=False, MAX_REWRITE_ATTEMPTS=2)
    orchestrator = GenerationOrchestrator(client, project, cfg=cfg)

    with pytest.raises(ChapterQualityError) as excinfo:
        await orchestrator.generate_chapter(project_state, ChapterRequest(chapter_index=12))

    assert excinfo.value.chapter_index == 12
    assert "under the 500 minimum" in excinfo.value.reason
    assert len(client.calls_for("drafting")) == 3
    assert client.calls_for("character_state") == []
    assert client.calls_for("summary_update") == []


@pytest.mark.asyncio
async def test_premature_ending_is_rewritten(fake_client_factory, project, project_state):
    client = fake_client_factory(
        _scripts(drafting=[GOOD_CHAPTER + "\n\nThe End", GOOD_CHAPTER])
    )
    cfg = _cfg(ENABLE_SELF_REVIEW=False)
    result = await GenerationOrchestrator(client, project, cfg=cfg).generate_chapter(
        project_state, ChapterRequest(chapter_index=12)
    )
    drafts = client.calls_for("drafting")
    assert len(drafts) == 2
    assert "[Rewrite required]" in drafts[1]["prompt"]
    assert drafts[1]["temperature"] == cfg.TEMPERATURE_REWRITE
    assert result.was_rewritten
    assert result.rewrite_count == 1
    assert result.diagnostics.qc_attempts == 2
    assert "The End" not in result.chapter_text


@pytest.mark.asyncio
async def test_self_review_rewrite_carries_issues(fake_client_factory, project, project_state):
    client = fake_client_factory(
        _scripts(
            self_review=[
                '{"action": "rewrite", "issues": ["Repeats the gate scene"],'
                ' "guidance": "Move the fight to the tower."}'
            ]
        )
    )
    result = await GenerationOrchestrator(client, project, cfg=_cfg()).generate_chapter(
        project_state, ChapterRequest(chapter_index=12)
    )
    rewrite_prompt = client.calls_for("drafting")[1]["prompt"]
    assert "[Problems found in self-review]\n1. Repeats the gate scene" in rewrite_prompt
    assert "Move the fight to the tower." in rewrite_prompt
    assert result.rewrite_count == 1


@pytest.mark.asyncio
async def test_failed_stages_degrade_to_previous_values(
    fake_client_factory, project, project_state
):
    scripts = _scripts()
    for stage in ("planning", "character_state", "summary_update"):
        del scripts[stage]
    client = fake_client_factory(scripts)
    result = await GenerationOrchestrator(client, project, cfg=_cfg()).generate_chapter(
        project_state, ChapterRequest(chapter_index=12)
    )
    assert set(result.diagnostics.degraded_stages) == {"planning", "character_state", "summary"}
    assert result.updated_character_states == project_state.character_states
    assert result.updated_summary == project_state.rolling_summary
    assert result.updated_open_loops == project_state.open_loops
    assert result.skipped_summary
    assert len(result.updated_plot_graph.nodes) == 1


@pytest.mark.asyncio
async def test_summary_falls_back_to_main_chain(fake_client_factory, project, project_state):
    client = fake_client_factory(
        _scripts(
            summary_update=[
                ModelCallError("rate limited", ModelErrorType.RATE_LIMIT),
                HAPPY_SCRIPTS["summary_update"][0],
            ]
        )
    )
    cfg = _cfg(SUMMARY_MODEL="tiny-summarizer")
    result = await GenerationOrchestrator(client, project, cfg=cfg).generate_chapter(
        project_state, ChapterRequest(chapter_index=12)
    )
    calls = client.calls_for("summary_update")
    assert calls[0]["providers"][0].model == "tiny-summarizer"
    assert calls[1]["providers"][0].model == cfg.MAIN_GENERATION_MODEL
    assert result.diagnostics.logical_calls["summary"] == 2
    assert not result.skipped_summary


@pytest.mark.asyncio
async def test_skip_flags_leave_state_untouched(fake_client_factory, project, project_state):
    client = fake_client_factory(_scripts())
    result = await GenerationOrchestrator(client, project, cfg=_cfg()).generate_chapter(
        project_state,
        ChapterRequest(chapter_index=12, skip_summary_update=True, skip_state_update=True),
    )
    assert result.skipped_summary
    assert result.updated_plot_graph == project_state.plot_graph
    for stage in ("character_state", "plot_graph", "timeline", "summary_update"):
        assert client.calls_for(stage) == []


@pytest.mark.asyncio
async def test_narrative_arc_drives_guide_and_temperature(
    fake_client_factory, project, project_state
):
    arc = generate_narrative_arc(project.volumes, project.total_chapters)
    state = project_state.model_copy(update={"narrative_arc": arc})
    client = fake_client_factory(_scripts())
    result = await GenerationOrchestrator(client, project, cfg=_cfg()).generate_chapter(
        state, ChapterRequest(chapter_index=12)
    )
    guide = result.narrative_guide
    assert guide is not None and guide.pacing_type == "tension"
    assert client.calls_for("drafting")[0]["temperature"] == temperature_for_pacing(guide)
    assert "[Narrative guide for this chapter]" in client.calls_for("drafting")[0]["prompt"]
    assert guide.pov_character == "Mara"
    assert "POV character: Mara" in client.calls_for("drafting")[0]["prompt"]


@pytest.mark.asyncio
async def test_full_qc_result_is_attached(fake_client_factory, project, project_state):
    client = fake_client_factory(_scripts(qc_goal=['{"score": 88, "achieved": true}']))
    result = await GenerationOrchestrator(
        client, project, cfg=_cfg(ENABLE_FULL_QC=True)
    ).generate_chapter(project_state, ChapterRequest(chapter_index=12))
    assert result.qc_result is not None
    assert result.qc_result.passed
    assert result.qc_result.dimension_scores["goal"] == 88


@pytest.mark.parametrize(
    "target, expected", [(None, 0.85), (8.0, 0.9), (6.5, 0.85), (4.0, 0.8), (2.0, 0.75)]
)
def test_temperature_for_pacing(target, expected):
    guide = None
    if target is not None:
        guide = NarrativeGuide(
            chapter_index=1,
            pacing_target=target,
            pacing_type="tension",
            emotional_tone="",
            word_count_range=(2000, 3000),
            pacing_guidance="",
        )
    assert temperature_for_pacing(guide) == expected


def test_helpers(project):
    assert recommended_max_chars(2500) == 3750
    assert recommended_max_chars(500) == 1500
    goal = build_goal_section(project.chapter_outline(12), None)
    assert goal == "Title: The Breach\nGoal: Mara holds the gate\nClosing hook: The wall cracks"
    assert build_goal_section(None, "Find Tobin") == "Find Tobin"
    assert quick_gate_reasons(GOOD_CHAPTER + "\n\nThe End", 40, 40, 500) == []


@pytest.mark.asyncio
async def test_unexpected_extraction_error_degrades(fake_client_factory, project, project_state):
    client = fake_client_factory(
        _scripts(character_state=[AttributeError("'list' object has no attribute 'strip'")])
    )
    result = await GenerationOrchestrator(client, project, cfg=_cfg()).generate_chapter(
        project_state, ChapterRequest(chapter_index=12)
    )
    assert result.diagnostics.degraded_stages == ["character_state"]
    assert result.updated_character_states == project_state.character_states
    assert len(result.updated_plot_graph.nodes) == 1
    assert not result.skipped_summary


@pytest.mark.asyncio
async def test_extraction_and_qc_use_their_configured_models(
    fake_client_factory, project, project_state
):
    client = fake_client_factory(_scripts(qc_goal=['{"score": 88, "achieved": true}']))
    cfg = _cfg(ENABLE_FULL_QC=True, EXTRACTION_MODEL="extractor", EVALUATION_MODEL="judge")
    await GenerationOrchestrator(client, project, cfg=cfg).generate_chapter(
        project_state, ChapterRequest(chapter_index=12)
    )
    for stage in ("character_state", "plot_graph", "timeline"):
        assert client.calls_for(stage)[0]["providers"][0].model == "extractor"
    assert client.calls_for("qc_goal")[0]["providers"][0].model == "judge"
    assert client.calls_for("drafting")[0]["providers"] is None


REPAIRED_CHAPTER = make_chapter(12, paragraphs=20, title="The Breach Holds")


@pytest.mark.asyncio
async def test_repaired_chapter_replaces_failing_draft(
    fake_client_factory, project, project_state
):
    client = fake_client_factory(
        _scripts(qc_goal=['{"score": 20, "achieved": false}'], repair=[REPAIRED_CHAPTER])
    )
    cfg = _cfg(ENABLE_FULL_QC=True, ENABLE_AUTO_REPAIR=True)
    result = await GenerationOrchestrator(client, project, cfg=cfg).generate_chapter(
        project_state, ChapterRequest(chapter_index=12)
    )
    assert len(client.calls_for("repair")) == 1
    repair_prompt = client.calls_for("repair")[0]["prompt"]
    assert "Primary goal not achieved: Mara holds the gate" in repair_prompt
    assert result.chapter_text.startswith("Chapter 12: The Breach Holds")
    assert result.qc_result is not None and result.qc_result.passed
    assert result.rewrite_count == 1
    assert result.diagnostics.degraded_stages == []
    assert "The Breach Holds" in client.calls_for("character_state")[0]["prompt"]


@pytest.mark.asyncio
async def test_repair_failing_quick_gate_keeps_original_text(
    fake_client_factory, project, project_state
):
    client = fake_client_factory(
        _scripts(
            qc_goal=['{"score": 20, "achieved": false}'],
            repair=["Chapter 12: The Breach Holds\n\nToo short."],
        )
    )
    cfg = _cfg(ENABLE_FULL_QC=True, ENABLE_AUTO_REPAIR=True)
    result = await GenerationOrchestrator(client, project, cfg=cfg).generate_chapter(
        project_state, ChapterRequest(chapter_index=12)
    )
    assert len(client.calls_for("repair")) == 1
    assert result.chapter_text.startswith("Chapter 12: The Breach\n")
    assert result.qc_result is not None and not result.qc_result.passed
    assert result.rewrite_count == 1

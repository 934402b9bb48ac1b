from types import SimpleNamespace

from ui.rich_display import RichDisplayManager, describe_result

from models.character_models import CharacterStateRegistry
from models.plot_models import PlotGraph
from models.qc_models import QCResult
from models.timeline_models import TimelineState
from orchestration.models import ChapterGenerationResult


def _result(**overrides) -> ChapterGenerationResult:
    values = dict(
        chapter_index=12,
        chapter_text="x" * 3200,
        updated_summary="",
        updated_open_loops=[],
        updated_character_states=CharacterStateRegistry(),
        updated_plot_graph=PlotGraph(),
        updated_timeline=TimelineState(),
    )
    values.update(overrides)
    return ChapterGenerationResult(**values)


def test_describe_result():
    result = _result(qc_result=QCResult(score=92), rewrite_count=1)
    result.diagnostics.degraded_stages.append("summary")
    assert describe_result(result) == (
        "#12 | 3,200 chars | QC 92 (pass) | 1 rewrite(s) | degraded: summary"
    )
    assert describe_result(_result()) == "#12 | 3,200 chars"


def test_disabled_display_tracks_progress_without_live():
    service = SimpleNamespace(request_count=7, usage=SimpleNamespace(total_tokens=12345))
    display = RichDisplayManager(service, enabled=False)
    assert display.live is None

    display.update(project_title="Ashfall", total_chapters=40)
    display.update(chapter_num=12, step="Generating", last_result=_result())
    rows = dict(display.rows())
    assert rows["Project"] == "Ashfall"
    assert rows["Chapter"] == "12 / 40"
    assert rows["Stage"] == "Generating"
    assert rows["Last saved"] == "#12 | 3,200 chars"
    assert rows["Tokens"] == "12,345"
    assert rows["Model requests"].startswith("7 ")

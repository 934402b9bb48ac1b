# tests/test_cli_runner.py
import pytest
from storage.project_store import ProjectStore

import main
from orchestration import cli_runner

PROJECT_YAML = """\
title: Ashfall
total_chapters: 3
characters:
  - name: Mara
    role: protagonist
"""


@pytest.fixture
def project_file(tmp_path):
    path = tmp_path / "ashfall.yaml"
    path.write_text(PROJECT_YAML, encoding="utf-8")
    return str(path)


@pytest.mark.asyncio
async def test_init_project_writes_definition_and_state(tmp_path, project_file):
    store = ProjectStore(base_dir=str(tmp_path / "out"))
    assert await cli_runner.init_project(project_file, store) == cli_runner.EXIT_OK
    assert store.exists("ashfall")
    state = store.load_state_sync("ashfall")
    assert "mara" in state.character_states.snapshots
    assert len(state.narrative_arc.volume_pacing) == 1

    assert await cli_runner.init_project(project_file, store) == cli_runner.EXIT_USAGE
    assert await cli_runner.init_project(project_file, store, force=True) == cli_runner.EXIT_OK


@pytest.mark.asyncio
async def test_init_project_rejects_bad_file(tmp_path):
    store = ProjectStore(base_dir=str(tmp_path))
    missing = str(tmp_path / "missing.yaml")
    assert await cli_runner.init_project(missing, store) == cli_runner.EXIT_USAGE


@pytest.mark.asyncio
async def test_generate_unknown_project_is_usage_error(tmp_path):
    store = ProjectStore(base_dir=str(tmp_path))
    assert await cli_runner.generate_chapters("nowhere", None, 1, store) == cli_runner.EXIT_USAGE


def test_placeholder_key_is_rejected_before_generation(monkeypatch):
    monkeypatch.setenv("OPENAI_API_KEY", "nope")
    monkeypatch.setattr(cli_runner, "setup_logging", lambda: None)
    called = []
    monkeypatch.setattr(cli_runner, "generate_chapters", lambda *a: called.append(a))

    assert cli_runner.run_generate("ashfall", None, 1) == cli_runner.EXIT_USAGE
    assert called == []


def test_main_dispatches_subcommands(monkeypatch):
    calls = []
    monkeypatch.setattr(main, "run_init", lambda path, force: calls.append(("init", path, force)) or 0)
    monkeypatch.setattr(
        main,
        "run_generate",
        lambda pid, start, count, allow: calls.append(("generate", pid, start, count, allow)) or 1,
    )

    with pytest.raises(SystemExit) as excinfo:
        main.main(["init", "book.yaml", "--force"])
    assert excinfo.value.code == 0

    with pytest.raises(SystemExit) as excinfo:
        main.main(["generate", "ashfall", "--from", "4", "--count", "3"])
    assert excinfo.value.code == 1

    assert calls == [("init", "book.yaml", True), ("generate", "ashfall", 4, 3, False)]

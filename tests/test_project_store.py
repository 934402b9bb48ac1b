# tests/test_project_store.py
import os

import pytest
from storage.project_store import ProjectNotFoundError, ProjectStore


@pytest.fixture
def store(tmp_path) -> ProjectStore:
    return ProjectStore(base_dir=str(tmp_path))


def test_definition_round_trip(store, project):
    assert not store.exists("ashfall")
    store.save_definition_sync(project)
    assert store.exists("ashfall")
    assert store.load_definition_sync("ashfall") == project


def test_missing_definition_raises(store):
    with pytest.raises(ProjectNotFoundError):
        store.load_definition_sync("nowhere")


def test_missing_state_is_fresh(store):
    state = store.load_state_sync("ashfall")
    assert state.project_id == "ashfall"
    assert state.last_chapter_index == 0


def test_state_is_written_whole_and_atomically(store, project_state):
    store.save_state_sync(project_state)
    directory = store.project_dir("ashfall")
    assert sorted(os.listdir(directory)) == ["state.json"]
    assert store.load_state_sync("ashfall") == project_state


def test_recent_chapters_are_oldest_first(store):
    for index in (1, 2, 3):
        store.save_chapter_sync("ashfall", index, f"Chapter {index}")
    assert store.chapter_path("ashfall", 3).endswith(os.path.join("chapters", "chapter_0003.md"))
    assert store.recent_chapters_sync("ashfall", 4) == ["Chapter 2", "Chapter 3"]
    assert store.recent_chapters_sync("ashfall", 2) == ["Chapter 1"]
    assert store.recent_chapters_sync("ashfall", 1) == []
    assert store.load_chapter_sync("ashfall", 9) is None


@pytest.mark.asyncio
async def test_async_wrappers(store, project, project_state):
    await store.save_definition(project)
    await store.save_state(project_state)
    await store.save_chapter("ashfall", 11, "Chapter 11: Ash")
    assert (await store.load_definition("ashfall")).title == "Ashfall"
    assert (await store.load_state("ashfall")).last_chapter_index == 11
    assert await store.recent_chapters("ashfall", 12) == ["Chapter 11: Ash"]

# storage/project_store.py
"""JSON persistence for project definitions, state and chapter texts."""

from __future__ import annotations

import asyncio
import os
import tempfile

import structlog
from config import settings
from pydantic import ValidationError

from models.project_models import ProjectDefinition, ProjectState

logger = structlog.get_logger(__name__)

DEFINITION_FILE = "definition.json"
STATE_FILE = "state.json"
CHAPTERS_DIR = "chapters"


class ProjectNotFoundError(FileNotFoundError):
    """No definition has been stored for the requested project id."""


class ProjectStore:
    """Whole-document reads and writes under ``<base_dir>/<project_id>/``.

    State is always loaded before a chapter and stored after it; there are no
    partial updates.
    """

    def __init__(self, base_dir: str = settings.BASE_OUTPUT_DIR) -> None:
        self.base_dir = base_dir

    def project_dir(self, project_id: str) -> str:
        return os.path.join(self.base_dir, project_id)

    def chapter_path(self, project_id: str, chapter_index: int) -> str:
        return os.path.join(
            self.project_dir(project_id), CHAPTERS_DIR, f"chapter_{chapter_index:04d}.md"
        )

    def exists(self, project_id: str) -> bool:
        return os.path.isfile(os.path.join(self.project_dir(project_id), DEFINITION_FILE))

    def _write_atomic(self, path: str, content: str) -> None:
        directory = os.path.dirname(path)
        os.makedirs(directory, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=directory, suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(content)
            os.replace(tmp_path, path)
        except OSError:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise

    def _read(self, path: str) -> str:
        with open(path, encoding="utf-8") as f:
            return f.read()

    # Synchronous API

    def save_definition_sync(self, definition: ProjectDefinition) -> None:
        path = os.path.join(self.project_dir(definition.project_id), DEFINITION_FILE)
        self._write_atomic(path, definition.model_dump_json(indent=2))

    def load_definition_sync(self, project_id: str) -> ProjectDefinition:
        path = os.path.join(self.project_dir(project_id), DEFINITION_FILE)
        if not os.path.isfile(path):
            raise ProjectNotFoundError(f"Project '{project_id}' not found under {self.base_dir}")
        return ProjectDefinition.model_validate_json(self._read(path))

    def save_state_sync(self, state: ProjectState) -> None:
        path = os.path.join(self.project_dir(state.project_id), STATE_FILE)
        self._write_atomic(path, state.model_dump_json(indent=2))

    def load_state_sync(self, project_id: str) -> ProjectState:
        """Stored state, or a fresh one when none was written yet."""
        path = os.path.join(self.project_dir(project_id), STATE_FILE)
        if not os.path.isfile(path):
            return ProjectState(project_id=project_id)
        try:
            return ProjectState.model_validate_json(self._read(path))
        except ValidationError:
            logger.error("Stored project state is invalid.", project=project_id, path=path)
            raise

    def save_chapter_sync(self, project_id: str, chapter_index: int, text: str) -> None:
        self._write_atomic(self.chapter_path(project_id, chapter_index), text)

    def load_chapter_sync(self, project_id: str, chapter_index: int) -> str | None:
        path = self.chapter_path(project_id, chapter_index)
        if not os.path.isfile(path):
            return None
        return self._read(path)

    def recent_chapters_sync(
        self, project_id: str, before_chapter: int, count: int = 2
    ) -> list[str]:
        """Up to ``count`` stored chapters preceding ``before_chapter``, oldest first."""
        texts: list[str] = []
        for index in range(max(1, before_chapter - count), before_chapter):
            text = self.load_chapter_sync(project_id, index)
            if text is not None:
                texts.append(text)
        return texts

    # Async wrappers

    async def save_definition(self, definition: ProjectDefinition) -> None:
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self.save_definition_sync, definition)

    async def load_definition(self, project_id: str) -> ProjectDefinition:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self.load_definition_sync, project_id)

    async def save_state(self, state: ProjectState) -> None:
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self.save_state_sync, state)
        logger.debug(
            "Saved project state.",
            project=state.project_id,
            last_chapter=state.last_chapter_index,
        )

    async def load_state(self, project_id: str) -> ProjectState:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self.load_state_sync, project_id)

    async def save_chapter(self, project_id: str, chapter_index: int, text: str) -> None:
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(
            None, self.save_chapter_sync, project_id, chapter_index, text
        )

    async def recent_chapters(
        self, project_id: str, before_chapter: int, count: int = 2
    ) -> list[str]:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(
            None, self.recent_chapters_sync, project_id, before_chapter, count
        )

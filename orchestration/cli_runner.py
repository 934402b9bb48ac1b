# orchestration/cli_runner.py
"""Command-line runner for project setup and chapter generation."""

from __future__ import annotations

import asyncio

import structlog
from config import ChapterForgeSettings
from core.llm_interface import LLMService
from pydantic import ValidationError
from storage.project_store import ProjectNotFoundError, ProjectStore
from ui.rich_display import RichDisplayManager
from utils.logging import setup_logging
from yaml_parser import load_project_file

from orchestration.batch_runner import ChapterBatchRunner, initial_project_state
from orchestration.chapter_engine import GenerationOrchestrator

logger = structlog.get_logger(__name__)

EXIT_OK = 0
EXIT_GENERATION_FAILED = 1
EXIT_USAGE = 2


async def init_project(path: str, store: ProjectStore, force: bool = False) -> int:
    try:
        definition = load_project_file(path)
    except ValueError as e:
        logger.error("Project file rejected.", path=path, error=str(e))
        return EXIT_USAGE
    if store.exists(definition.project_id) and not force:
        logger.error(
            "Project already exists; pass --force to overwrite.",
            project=definition.project_id,
        )
        return EXIT_USAGE
    await store.save_definition(definition)
    await store.save_state(initial_project_state(definition))
    logger.info(
        "Project initialized.",
        project=definition.project_id,
        directory=store.project_dir(definition.project_id),
    )
    return EXIT_OK


async def generate_chapters(
    project_id: str,
    start: int | None,
    count: int,
    store: ProjectStore,
) -> int:
    try:
        definition = await store.load_definition(project_id)
    except ProjectNotFoundError as e:
        logger.error("Unknown project.", project=project_id, error=str(e))
        return EXIT_USAGE

    service = LLMService()
    display = RichDisplayManager(service)
    runner = ChapterBatchRunner(
        orchestrator=GenerationOrchestrator(service, definition),
        store=store,
        start_chapter=start,
        count=count,
        display=display,
    )
    display.start()
    try:
        results = await runner.run()
    finally:
        await display.stop()
        await service.aclose()

    logger.info(
        "Generation run finished.",
        project=project_id,
        chapters_written=len(results),
        prompt_tokens=service.usage.prompt_tokens,
        completion_tokens=service.usage.completion_tokens,
        requests=service.request_count,
    )
    return EXIT_OK if runner.error is None else EXIT_GENERATION_FAILED


def run_init(path: str, force: bool = False) -> int:
    setup_logging()
    return asyncio.run(init_project(path, ProjectStore(), force))


def run_generate(
    project_id: str, start: int | None, count: int, allow_placeholder_key: bool = False
) -> int:
    """Validate credentials, then generate ``count`` chapters."""
    setup_logging()
    if not allow_placeholder_key:
        try:
            ChapterForgeSettings(REQUIRE_API_KEY=True)
        except ValidationError as e:
            logger.error("Configuration rejected.", error=str(e))
            return EXIT_USAGE
    try:
        return asyncio.run(generate_chapters(project_id, start, count, ProjectStore()))
    except KeyboardInterrupt:
        logger.info("ChapterForge shutting down after KeyboardInterrupt.")
        return EXIT_GENERATION_FAILED

from __future__ import annotations

import asyncio
import time
from typing import TYPE_CHECKING, Optional

from config import settings
from rich.live import Live
from rich.panel import Panel
from rich.table import Table

if TYPE_CHECKING:
    from core.llm_interface import LLMService

    from orchestration.models import ChapterGenerationResult


def describe_result(result: ChapterGenerationResult) -> str:
    """One-line recap of a saved chapter for the progress panel."""
    parts = [f"#{result.chapter_index}", f"{len(result.chapter_text):,} chars"]
    if result.qc_result is not None:
        verdict = "pass" if result.qc_result.passed else "fail"
        parts.append(f"QC {result.qc_result.score} ({verdict})")
    if result.rewrite_count:
        parts.append(f"{result.rewrite_count} rewrite(s)")
    degraded = result.diagnostics.degraded_stages
    if degraded:
        parts.append("degraded: " + ", ".join(degraded))
    return " | ".join(parts)


class RichDisplayManager:
    """Live panel showing batch progress, model usage and the last saved chapter."""

    def __init__(
        self, llm_service: Optional[LLMService] = None, enabled: Optional[bool] = None
    ) -> None:
        self.llm_service = llm_service
        self.enabled = settings.ENABLE_RICH_PROGRESS if enabled is None else enabled
        self.project_title = "N/A"
        self.chapter_num: Optional[int] = None
        self.total_chapters: Optional[int] = None
        self.step = "Initializing..."
        self.last_chapter = "none yet"
        self.run_start_time: float = 0.0
        self.live: Optional[Live] = None
        self._stop_event: asyncio.Event = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

        if self.enabled:
            self.live = Live(
                self.render(),
                refresh_per_second=4,
                transient=False,
                redirect_stdout=False,
                redirect_stderr=False,
            )

    def rows(self) -> list[tuple[str, str]]:
        chapter = "N/A"
        if self.chapter_num is not None:
            chapter = str(self.chapter_num)
            if self.total_chapters:
                chapter += f" / {self.total_chapters}"

        requests = self.llm_service.request_count if self.llm_service else 0
        tokens = self.llm_service.usage.total_tokens if self.llm_service else 0
        elapsed = time.time() - self.run_start_time if self.run_start_time else 0.0
        per_minute = requests / (elapsed / 60) if elapsed > 0 else 0.0
        return [
            ("Project", self.project_title),
            ("Chapter", chapter),
            ("Stage", self.step),
            ("Last saved", self.last_chapter),
            ("Model requests", f"{requests} ({per_minute:.2f}/min)"),
            ("Tokens", f"{tokens:,}"),
            ("Elapsed", time.strftime("%H:%M:%S", time.gmtime(elapsed))),
        ]

    def render(self) -> Panel:
        table = Table.grid(padding=(0, 2))
        table.add_column(style="bold cyan", no_wrap=True)
        table.add_column()
        for label, value in self.rows():
            table.add_row(label, value)
        return Panel(table, title="ChapterForge Progress", border_style="blue", expand=True)

    def start(self) -> None:
        if self.live:
            self.run_start_time = time.time()
            self.live.start()
            self._stop_event.clear()
            self._task = asyncio.create_task(self._auto_refresh())

    async def stop(self) -> None:
        self._stop_event.set()
        if self._task:
            await self._task
            self._task = None
        if self.live and self.live.is_started:
            self.live.update(self.render())
            self.live.stop()

    async def _auto_refresh(self) -> None:
        while not self._stop_event.is_set():
            if self.live:
                self.live.update(self.render())
            await asyncio.sleep(1)

    def update(
        self,
        project_title: Optional[str] = None,
        chapter_num: Optional[int] = None,
        total_chapters: Optional[int] = None,
        step: Optional[str] = None,
        last_result: Optional[ChapterGenerationResult] = None,
    ) -> None:
        if project_title is not None:
            self.project_title = project_title
        if chapter_num is not None:
            self.chapter_num = chapter_num
        if total_chapters is not None:
            self.total_chapters = total_chapters
        if step is not None:
            self.step = step
        if last_result is not None:
            self.last_chapter = describe_result(last_result)
        if self.live:
            self.live.update(self.render())

# config.py
"""Configuration settings for the ChapterForge generation pipeline.
Uses Pydantic BaseSettings for automatic environment variable loading.
"""

from __future__ import annotations

from typing import Any

import structlog
from dotenv import load_dotenv
from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

load_dotenv()

logger = structlog.get_logger()

_PLACEHOLDER_API_KEYS = {"", "nope", "changeme"}


class ChapterForgeSettings(BaseSettings):
    """Full configuration for the chapter-generation pipeline."""

    # API and Model Configuration
    OPENAI_API_BASE: str = "http://127.0.0.1:8080/v1"
    OPENAI_API_KEY: str = "nope"
    REQUIRE_API_KEY: bool = False

    MAIN_GENERATION_MODEL: str = "Qwen3-14B"
    # Dynamic model assignments (set from the main model if not specified)
    SUMMARY_MODEL: str | None = None
    EXTRACTION_MODEL: str | None = None
    EVALUATION_MODEL: str | None = None

    # Extra providers tried in order after the primary one, e.g.
    # [{"name": "backup", "model": "Qwen3-8B", "api_base": "...", "api_key": "..."}]
    FALLBACK_PROVIDERS: list[dict[str, Any]] = Field(default_factory=list)

    # LLM Call Settings & Fallbacks
    HTTPX_TIMEOUT: float = 600.0
    LLM_CALL_TIMEOUT_SECONDS: float = 300.0
    MAX_CONCURRENT_LLM_CALLS: int = 4
    LLM_TOP_P: float = 0.9
    LLM_RETRY_ATTEMPTS_PER_PROVIDER: int = 2
    LLM_RETRY_DELAY_SECONDS: float = 2.0
    LLM_SERVER_ERROR_DELAY_SECONDS: float = 3.0
    LLM_RATE_LIMIT_DELAY_SECONDS: float = 10.0
    LLM_SWITCH_CONDITIONS: list[str] = Field(
        default_factory=lambda: ["rate_limit", "server_error", "timeout", "unknown"]
    )
    TIKTOKEN_DEFAULT_ENCODING: str = "cl100k_base"
    FALLBACK_CHARS_PER_TOKEN: float = 4.0
    TOKENIZER_CACHE_SIZE: int = 10

    # Temperature Settings
    TEMPERATURE_PLANNING: float = 0.4
    TEMPERATURE_DRAFTING: float = 0.85
    TEMPERATURE_REVIEW: float = 0.2
    TEMPERATURE_REWRITE: float = 0.8
    TEMPERATURE_SUMMARY: float = 0.2
    TEMPERATURE_EXTRACTION: float = 0.2
    TEMPERATURE_PLOT_ANALYSIS: float = 0.3
    TEMPERATURE_QC: float = 0.2
    TEMPERATURE_REPAIR: float = 0.7

    # Pipeline stages
    ENABLE_PLANNING: bool = True
    ENABLE_SELF_REVIEW: bool = True
    MAX_SELF_REVIEW_ATTEMPTS: int = 1
    MAX_REWRITE_ATTEMPTS: int = 2
    ENABLE_FULL_QC: bool = False
    ENABLE_AUTO_REPAIR: bool = False
    REPAIR_MAX_ATTEMPTS: int = Field(1, ge=0, le=1)
    REPAIR_ACCEPT_SCORE: int = 70

    # Chapter length
    MIN_CHAPTER_CHARS: int = 2500
    MIN_CHAPTER_CHARS_FLOOR: int = 500
    MIN_CHAPTER_CHARS_CEILING: int = 20000
    MAX_CHAPTER_CHARS: int = 5000

    # Token caps
    PLAN_MAX_TOKENS: int = 700
    DRAFT_MAX_TOKENS: int = 8192
    SELF_REVIEW_MAX_TOKENS: int = 500
    SUMMARY_UPDATE_MAX_TOKENS: int = 1200
    QC_MAX_TOKENS: int = 800
    SUMMARY_SOURCE_MAX_CHARS: int = 1800
    EXTRACTION_SOURCE_MAX_CHARS: int = 6000

    # Narrative state
    CONTEXT_CACHE_SIZE: int = 100
    CONTEXT_CACHE_TTL: float = 1800.0
    CONTEXT_TOTAL_TOKENS: int = 24000
    CHARACTER_RECENT_CHANGES_LIMIT: int = 5
    ACTIVE_CHARACTER_LIMIT: int = 5
    CHARACTER_CHANGE_MIN_CONFIDENCE: float = 0.6
    FORESHADOWING_OVERDUE_CHAPTERS: int = 25
    MAX_OPEN_LOOPS: int = 12

    # Output
    BASE_OUTPUT_DIR: str = "novel_output"

    # Logging & UI
    LOG_LEVEL_STR: str = Field("INFO", alias="CHAPTERFORGE_LOG_LEVEL")
    LOG_FORMAT: str = (
        "%(asctime)s - %(levelname)s - [%(name)s:%(funcName)s:%(lineno)d] - %(message)s"
    )
    LOG_DATE_FORMAT: str = "%Y-%m-%d %H:%M:%S"
    LOG_FILE: str | None = "chapterforge_run.log"
    ENABLE_RICH_PROGRESS: bool = True

    @model_validator(mode="after")
    def set_dynamic_model_defaults(self) -> ChapterForgeSettings:
        if self.SUMMARY_MODEL is None:
            self.SUMMARY_MODEL = self.MAIN_GENERATION_MODEL
        if self.EXTRACTION_MODEL is None:
            self.EXTRACTION_MODEL = self.MAIN_GENERATION_MODEL
        if self.EVALUATION_MODEL is None:
            self.EVALUATION_MODEL = self.MAIN_GENERATION_MODEL
        return self

    @model_validator(mode="after")
    def clamp_chapter_length(self) -> ChapterForgeSettings:
        clamped = max(
            self.MIN_CHAPTER_CHARS_FLOOR,
            min(self.MIN_CHAPTER_CHARS_CEILING, self.MIN_CHAPTER_CHARS),
        )
        if clamped != self.MIN_CHAPTER_CHARS:
            logger.warning(
                "MIN_CHAPTER_CHARS out of range; clamping.",
                requested=self.MIN_CHAPTER_CHARS,
                clamped=clamped,
            )
            self.MIN_CHAPTER_CHARS = clamped
        return self

    @model_validator(mode="after")
    def check_api_key(self) -> ChapterForgeSettings:
        if self.OPENAI_API_KEY.strip().lower() in _PLACEHOLDER_API_KEYS:
            if self.REQUIRE_API_KEY:
                raise ValueError(
                    "OPENAI_API_KEY is a placeholder; set a real key in the environment or .env"
                )
            logger.warning("OPENAI_API_KEY is a placeholder value.")
        return self

    model_config = SettingsConfigDict(
        env_prefix="", env_file=".env", populate_by_name=True, extra="ignore"
    )


settings = ChapterForgeSettings()

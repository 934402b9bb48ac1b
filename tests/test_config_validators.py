# tests/test_config_validators.py

import config
import pytest
from config import ChapterForgeSettings
from pydantic import ValidationError


def test_openai_key_placeholder_raises_when_required():
    with pytest.raises(ValueError):
        ChapterForgeSettings(OPENAI_API_KEY="nope", REQUIRE_API_KEY=True)


def test_openai_key_placeholder_warns(monkeypatch):
    warnings: list[str] = []

    def fake_warning(msg: str, **_kw: object) -> None:
        warnings.append(msg)

    monkeypatch.setattr(config.logger, "warning", fake_warning)
    ChapterForgeSettings(OPENAI_API_KEY="changeme")
    assert any("placeholder" in msg for msg in warnings)


@pytest.mark.parametrize("requested, expected", [(100, 500), (2500, 2500), (99999, 20000)])
def test_min_chapter_chars_is_clamped(requested, expected):
    assert ChapterForgeSettings(MIN_CHAPTER_CHARS=requested).MIN_CHAPTER_CHARS == expected


def test_dynamic_models_follow_main_model():
    cfg = ChapterForgeSettings(MAIN_GENERATION_MODEL="big-model", SUMMARY_MODEL=None)
    assert cfg.SUMMARY_MODEL == "big-model"
    assert cfg.EXTRACTION_MODEL == "big-model"

    custom = ChapterForgeSettings(MAIN_GENERATION_MODEL="big-model", SUMMARY_MODEL="small")
    assert custom.SUMMARY_MODEL == "small"


@pytest.mark.parametrize("attempts", [-1, 2])
def test_repair_attempts_are_bounded(attempts):
    with pytest.raises(ValidationError):
        ChapterForgeSettings(REPAIR_MAX_ATTEMPTS=attempts)
    assert ChapterForgeSettings(REPAIR_MAX_ATTEMPTS=0).REPAIR_MAX_ATTEMPTS == 0

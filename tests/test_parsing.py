import pytest
from parsing import (
    ParseError,
    clean_string_list,
    extract_json_object,
    looks_like_json_chapter_payload,
    normalize_chapter_title,
    normalize_generated_chapter_text,
    parse_model_list,
    require_json_object,
)
from pydantic import BaseModel


class Beat(BaseModel):
    name: str


def test_extract_json_object_from_fenced_reply_with_trailing_comma():
    raw = '```json\n{"a": 1, "b": [1, 2,],}\n```'
    assert extract_json_object(raw) == {"a": 1, "b": [1, 2]}


def test_extract_json_object_from_surrounding_prose():
    assert extract_json_object('Sure! {"x": [1, 2]} Hope that helps.') == {"x": [1, 2]}


@pytest.mark.parametrize("raw", [None, "", "[1, 2]", "no json here"])
def test_extract_json_object_returns_none(raw):
    assert extract_json_object(raw) is None


def test_require_json_object_raises():
    with pytest.raises(ParseError):
        require_json_object("definitely not json", "plan")


def test_looks_like_json_chapter_payload():
    assert looks_like_json_chapter_payload('{"title": "A", "content": "B"}')
    assert not looks_like_json_chapter_payload("Chapter 1: A\n\nBody")
    assert not looks_like_json_chapter_payload('{"content": "B"}')


@pytest.mark.parametrize(
    "title, expected",
    [
        ("## The Gate", "Chapter 3: The Gate"),
        ("Chapter 3: The Gate", "Chapter 3: The Gate"),
        ("", "Chapter 3"),
    ],
)
def test_normalize_chapter_title(title, expected):
    assert normalize_chapter_title(title, 3) == expected


def test_normalize_generated_chapter_text_variants():
    assert (
        normalize_generated_chapter_text('{"title": "The Gate", "content": " Body. "}', 3)
        == "Chapter 3: The Gate\n\nBody."
    )
    assert (
        normalize_generated_chapter_text("Title: The Gate\n\nMara ran.", 5)
        == "Chapter 5: The Gate\n\nMara ran."
    )
    assert normalize_generated_chapter_text("# Chapter 5: Ash\nBody", 5) == "Chapter 5: Ash\n\nBody"
    assert normalize_generated_chapter_text("Just prose.", 5) == "Just prose."


def test_parse_model_list_drops_malformed_entries():
    parsed = parse_model_list([{"name": "a"}, "x", {"bad": 1}], Beat, "beat")
    assert parsed == [Beat(name="a")]
    assert parse_model_list({"name": "a"}, Beat) == []


def test_clean_string_list():
    assert clean_string_list([" a ", "", 3, "b"]) == ["a", "b"]
    assert clean_string_list([" a ", "b"], limit=1) == ["a"]
    assert clean_string_list("abc") == []

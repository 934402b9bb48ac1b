import json

from conftest import make_chapter

from context.rolling_summary import (
    SummaryMemory,
    build_chapter_digest,
    compress_by_recency,
    format_summary_memory,
    parse_summary_memory,
    parse_summary_update,
    truncate_by_sentences,
)


def test_parse_and_format_headed_summary():
    text = "[Long-term memory]\nA long time ago.\n\n[Recent memory]\nMara ran."
    memory = parse_summary_memory(text)
    assert memory == SummaryMemory(long_term="A long time ago.", mid_term="", recent="Mara ran.")
    assert format_summary_memory(memory) == text


def test_unheaded_summary_is_split_by_position():
    memory = parse_summary_memory("x" * 1000)
    assert (len(memory.long_term), len(memory.mid_term), len(memory.recent)) == (120, 380, 500)


def test_truncate_by_sentences_head_and_tail():
    assert truncate_by_sentences("One. Two. Three.", 10) == "One. Two."
    assert truncate_by_sentences("One. Two. Three.", 10, keep_tail=True) == "Three."
    assert truncate_by_sentences("Short.", 10) == "Short."


def test_compress_by_recency_keeps_latest_events():
    recent = " ".join(f"Event {i} happened." for i in range(1, 40))
    compressed = compress_by_recency(f"[Recent memory]\n{recent}", max_tokens=120)
    assert compressed.startswith("[Recent memory]\n")
    assert compressed.endswith("Event 39 happened.")
    assert "Event 1 happened." not in compressed
    assert compress_by_recency("") == ""


def test_parse_summary_update_layers_and_loops():
    raw = json.dumps(
        {
            "longTermMemory": "Ashfall has been besieged for years.",
            "midTermMemory": "short",
            "recentMemory": "Mara held the gate through the night.",
            "openLoops": ["Who opened the gate?", " ", "Where is Tobin?", "Extra"],
        }
    )
    summary, loops = parse_summary_update(raw, "old", ["old loop"], max_loops=2)
    assert summary == (
        "[Long-term memory]\nAshfall has been besieged for years.\n\n"
        "[Recent memory]\nMara held the gate through the night."
    )
    assert loops == ["Who opened the gate?", "Where is Tobin?"]


def test_parse_summary_update_falls_back():
    assert parse_summary_update("not json", "old", ["loop"]) == ("old", ["loop"])
    assert parse_summary_update('{"openLoops": ["New"]}', "old", ["loop"]) == ("old", ["loop"])

    summary, loops = parse_summary_update(
        '{"rollingSummary": "Mara held the gate.", "openLoops": []}', "old", ["loop"]
    )
    assert summary == "[Recent memory]\nMara held the gate."
    assert loops == ["loop"]


def test_build_chapter_digest():
    short = make_chapter(3, 2)
    assert build_chapter_digest(short) == short

    digest = build_chapter_digest(make_chapter(3, 20), max_chars=1800)
    assert digest.startswith("[Chapter title]\nChapter 3: The Long Watch")
    for label in ("[Opening]", "[Middle]", "[Ending]", "[Key passage]"):
        assert label in digest
    assert len(digest) <= 1800

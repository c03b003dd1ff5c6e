import pytest

from bible_assistant.services.followups import (
    DEFAULT_FOLLOW_UPS,
    build_follow_up_prompt,
    clean_follow_up_line,
    generate_local_follow_ups,
    merge_follow_ups,
    parse_follow_ups_from_text,
)


@pytest.mark.parametrize("line,expected", [
    ("**1.** What is grace?", "What is grace?"),
    ("2. How does Paul use it?", "How does Paul use it?"),
    ("3) Why?", "Why?"),
    ("- Where else does it appear?", "Where else does it appear?"),
    ("• A bullet line", "A bullet line"),
    ("Q1: Who wrote Hebrews?", "Who wrote Hebrews?"),
    ("> Quoted question?", "Quoted question?"),
    ("What does *agape* mean?", "What does agape mean?"),
])
def test_clean_follow_up_line(line, expected):
    assert clean_follow_up_line(line) == expected


def test_parse_keeps_questions_and_long_statements():
    text = "\n".join([
        "Here are some ideas:",
        "1. Why?",
        "2. How does Romans 5:8 show God's love?",
        "",
        "3. Tell me more",
        "4. Explore the covenant with Abraham",
        "5. What about Isaac's story?",
    ])
    assert parse_follow_ups_from_text(text) == [
        "Here are some ideas:",
        "How does Romans 5:8 show God's love?",
        "Explore the covenant with Abraham",
    ]


def test_parse_empty_text():
    assert parse_follow_ups_from_text("") == []
    assert parse_follow_ups_from_text(None) == []


def test_prompt_truncates_answer():
    prompt = build_follow_up_prompt("What is grace?", "x" * 900, "devotional")
    assert "ORIGINAL QUESTION: What is grace?" in prompt
    assert "x" * 500 + "..." in prompt
    assert "x" * 501 not in prompt
    assert "- Invite personal reflection" in prompt


def test_study_follow_ups_with_verse(parser):
    answer = "Jesus said this to Nicodemus (John 3:16)."
    assert generate_local_follow_ups(answer, "study", parser) == [
        "How does John 3:16 connect to other Scripture?",
        "What does this passage reveal about Jesus' character and mission?",
        "What is the historical context of this passage?",
    ]


def test_study_defaults_without_keywords(parser):
    assert generate_local_follow_ups("Wisdom begins with humility.", "study", parser) == DEFAULT_FOLLOW_UPS["study"]


def test_devotional_always_offers_application(parser):
    follow_ups = generate_local_follow_ups("Trust Him with all your heart.", "devotional", parser)
    assert follow_ups[:2] == [
        "How can I apply this truth in my life this week?",
        "What area of my life do I need to trust God more?",
    ]
    assert len(follow_ups) == 3


def test_prayer_follow_ups(parser):
    follow_ups = generate_local_follow_ups("Praise Him (Psalm 23:1).", "prayer", parser)
    assert follow_ups == [
        "Can you help me pray through this passage?",
        "What specific things can I thank God for today?",
        "How can I pray Psalms 23:1 over my situation?",
    ]


def test_unknown_mode_uses_study(parser):
    assert generate_local_follow_ups("", "mystery", parser) == DEFAULT_FOLLOW_UPS["study"]


def test_merge_tops_up_without_duplicates(parser):
    primary = ["What is the historical context of this passage?"]
    merged = merge_follow_ups(primary, "No keywords here.", "study", parser)
    assert merged == DEFAULT_FOLLOW_UPS["study"]


def test_merge_keeps_full_primary(parser):
    primary = ["One question here?", "Two question here?", "Three question here?", "Four question here?"]
    assert merge_follow_ups(primary, "", "study", parser) == primary[:3]

# services/followups.py
"""
Follow-up question suggestions.

The orchestrator asks the model for three follow-ups in a small
non-streaming call and parses them out of plain text. When that call fails
or yields nothing usable, generate_local_follow_ups builds them from the
mode, keywords in the answer and the verses it cites.
"""

import re
from typing import List, Optional

from .references.reference_parser import ReferenceParser

MAX_FOLLOW_UPS = 3
MIN_QUESTION_LENGTH = 10
MIN_STATEMENT_LENGTH = 15
RESPONSE_EXCERPT_LENGTH = 500

_PREFIX_PATTERNS = [
    re.compile(r"^\*\*\d+\.\*\*\s*"),       # **1.**
    re.compile(r"^\d+[.):\-]?\s*"),          # 1. 1) 1: 1-
    re.compile(r"^[-•*]\s*"),                # - • *
    re.compile(r"^[Qq]\d*[.:)]?\s+"),        # Q: Q1. Q1)
    re.compile(r"^>\s*"),                    # blockquote
]

FOLLOW_UP_FOCUS = {
    "study": [
        "Probe deeper into Greek/Hebrew word meanings",
        "Explore theological concepts and doctrines",
        "Ask about historical context",
        "Connect to other Scripture passages",
    ],
    "devotional": [
        "Invite personal reflection",
        "Suggest practical life application",
        "Connect to everyday struggles",
        "Prompt prayer or meditation",
    ],
    "prayer": [
        "Offer specific prayer topics",
        "Suggest verses to pray through",
        "Guide intercession",
        "Explore prayer practices",
    ],
}

DEFAULT_FOLLOW_UPS = {
    "study": [
        "What is the historical context of this passage?",
        "What do the original Greek or Hebrew words reveal?",
        "How have different theologians interpreted this?",
    ],
    "devotional": [
        "What does this teach me about God's character?",
        "How can I meditate on this throughout my day?",
        "Are there similar promises elsewhere in Scripture?",
    ],
    "prayer": [
        "What Scripture can I pray over this situation?",
        "How can I praise God in the midst of this?",
        "What has God promised about this area of life?",
    ],
}

# (mode, keywords, question); {verse} is filled with the first cited verse
_KEYWORD_FOLLOW_UPS = [
    ("study", None, "How does {verse} connect to other Scripture?"),
    ("study", ("jesus", "christ"), "What does this passage reveal about Jesus' character and mission?"),
    ("study", ("paul",), "How does this connect to Paul's other letters?"),
    ("study", ("covenant", "promise"), "How does this relate to God's covenant promises throughout Scripture?"),
    ("study", ("greek", "hebrew"), "What do other key words in this passage mean?"),
    ("devotional", (), "How can I apply this truth in my life this week?"),
    ("devotional", ("love", "forgive"), "Who in my life needs me to show this kind of love?"),
    ("devotional", ("faith", "trust"), "What area of my life do I need to trust God more?"),
    ("devotional", None, "What prayer might help me internalize {verse}?"),
    ("prayer", (), "Can you help me pray through this passage?"),
    ("prayer", ("thank", "praise"), "What specific things can I thank God for today?"),
    ("prayer", None, "How can I pray {verse} over my situation?"),
    ("prayer", (), "How can I intercede for others using this Scripture?"),
]


def build_follow_up_prompt(question: str, answer: str, mode: str) -> str:
    focus = FOLLOW_UP_FOCUS.get(mode, FOLLOW_UP_FOCUS["study"])
    focus_text = "\n".join(f"- {line}" for line in focus)
    return f"""
Based on this Bible study conversation, generate exactly 3 specific follow-up questions.

ORIGINAL QUESTION: {question}

RESPONSE GIVEN:
{answer[:RESPONSE_EXCERPT_LENGTH]}...

Generate follow-ups that:
{focus_text}

RULES:
- Each question must be specific to THIS conversation
- Never use generic questions like "Tell me more" or "What else?"
- Questions should be 10-20 words each
- Include Scripture references where relevant

Output ONLY the 3 questions, one per line, numbered 1-3.
""".strip()


def clean_follow_up_line(line: str) -> str:
    cleaned = line.strip()
    for pattern in _PREFIX_PATTERNS:
        cleaned = pattern.sub("", cleaned, count=1).strip()
    return cleaned.replace("**", "").replace("*", "").strip()


def parse_follow_ups_from_text(text: str) -> List[str]:
    """
    Up to three follow-ups from model output. Numbering, bullets and
    markdown emphasis are stripped; a line is kept if it is a question of
    at least 10 characters or any statement of at least 15.
    """
    follow_ups = []
    for line in (text or "").splitlines():
        cleaned = clean_follow_up_line(line)
        if not cleaned:
            continue
        if len(cleaned) >= MIN_QUESTION_LENGTH and cleaned.endswith("?"):
            follow_ups.append(cleaned)
        elif len(cleaned) >= MIN_STATEMENT_LENGTH:
            follow_ups.append(cleaned)
        if len(follow_ups) >= MAX_FOLLOW_UPS:
            break
    return follow_ups


def generate_local_follow_ups(
    answer: str,
    mode: str,
    parser: Optional[ReferenceParser] = None,
) -> List[str]:
    """Deterministic follow-ups from mode, keywords and cited verses; always three."""
    parser = parser or ReferenceParser()
    lowered = (answer or "").lower()
    verses = [ref.canonical_reference for ref in parser.parse_all(answer or "")[:2]]
    mode = mode if mode in DEFAULT_FOLLOW_UPS else "study"

    follow_ups = []
    for rule_mode, keywords, question in _KEYWORD_FOLLOW_UPS:
        if rule_mode != mode:
            continue
        if keywords is None:
            if not verses:
                continue
            question = question.format(verse=verses[0])
        elif keywords and not any(k in lowered for k in keywords):
            continue
        follow_ups.append(question)

    for default in DEFAULT_FOLLOW_UPS[mode]:
        if len(follow_ups) >= MAX_FOLLOW_UPS:
            break
        if default not in follow_ups:
            follow_ups.append(default)

    return follow_ups[:MAX_FOLLOW_UPS]


def merge_follow_ups(primary: List[str], answer: str, mode: str, parser: Optional[ReferenceParser] = None) -> List[str]:
    """Model follow-ups topped up with local ones to reach three."""
    merged = list(primary[:MAX_FOLLOW_UPS])
    if len(merged) < MAX_FOLLOW_UPS:
        for item in generate_local_follow_ups(answer, mode, parser):
            if item not in merged:
                merged.append(item)
            if len(merged) >= MAX_FOLLOW_UPS:
                break
    return merged

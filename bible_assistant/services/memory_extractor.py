# services/memory_extractor.py
"""
Pattern-based extraction of memories from a conversation turn.

Looks for prayer requests, personal context (family, church, work), recurring
struggles, verses the user mentions, and signs that the previous answer was
helpful. Nothing here calls a model; embeddings are added by the MemoryStore
when the memories are saved.
"""

import logging
from typing import List, Optional, Tuple

from .memory_service import Memory, MemoryStore, MemoryType
from .references.reference_parser import ReferenceParser

logger = logging.getLogger(__name__)

PRAYER_PATTERNS = [
    "pray for", "please pray", "need prayer", "prayers for",
    "praying for", "prayer request", "in prayer",
    "struggling with", "going through", "dealing with",
    "asking god", "asking the lord", "lift up",
]

# Pattern -> tag
PERSONAL_CONTEXT_PATTERNS = {
    "my wife": "family_spouse",
    "my husband": "family_spouse",
    "my spouse": "family_spouse",
    "my children": "family_child",
    "my child": "family_child",
    "my son": "family_child",
    "my daughter": "family_child",
    "my mom": "family_parent",
    "my mother": "family_parent",
    "my dad": "family_parent",
    "my father": "family_parent",
    "my church": "church",
    "my pastor": "church",
    "my job": "work",
    "my work": "work",
    "my career": "work",
    "i work as": "occupation",
    "i'm a ": "occupation",
    "i am a ": "occupation",
}

STRUGGLE_PATTERNS = [
    "i've been struggling", "i struggle with", "i always have trouble",
    "it's hard for me", "i can't seem to", "i keep",
    "my weakness is", "i find it difficult", "i battle with",
    "ongoing issue", "constant challenge", "recurring problem",
]

INSIGHT_PATTERNS = [
    "that's helpful", "thank you", "this helps", "that makes sense",
    "i never thought of it that way", "great insight", "really appreciate",
    "that's exactly", "this is what i needed",
]

CONTEXT_BEFORE = 30
CONTEXT_AFTER = 100


def extract_context(text: str, pattern: str, max_length: int) -> str:
    """Snippet of `text` around the first occurrence of `pattern`, trimmed to a sentence start."""
    pos = text.lower().find(pattern)
    if pos < 0:
        return text[:max_length]

    start = max(0, pos - CONTEXT_BEFORE)
    end = min(len(text), pos + len(pattern) + CONTEXT_AFTER)
    snippet = text[start:end]

    period = snippet.find(".")
    if 0 < period < pos - start:
        snippet = snippet[period + 1:].strip()

    snippet = snippet.strip()
    if len(snippet) > max_length:
        snippet = snippet[:max_length] + "..."
    return snippet


class MemoryExtractor:
    def __init__(self, memory_store: MemoryStore, parser: Optional[ReferenceParser] = None):
        self.memory_store = memory_store
        self.parser = parser or ReferenceParser()

    def detect_prayer_request(self, text: str) -> Optional[str]:
        lowered = text.lower()
        for pattern in PRAYER_PATTERNS:
            if pattern in lowered:
                return extract_context(text, pattern, 150)
        return None

    def detect_personal_context(self, text: str) -> List[Tuple[str, str]]:
        """(tag, snippet) pairs, one per matched pattern."""
        lowered = text.lower()
        found = []
        seen_snippets = set()
        for pattern, tag in PERSONAL_CONTEXT_PATTERNS.items():
            if pattern in lowered:
                snippet = extract_context(text, pattern, 100)
                if snippet not in seen_snippets:
                    seen_snippets.add(snippet)
                    found.append((tag, snippet))
        return found

    def detect_struggle(self, text: str) -> Optional[str]:
        lowered = text.lower()
        for pattern in STRUGGLE_PATTERNS:
            if pattern in lowered:
                return extract_context(text, pattern, 150)
        return None

    def detect_helpful_insight(self, user_message: str, ai_response: str) -> Optional[str]:
        lowered = user_message.lower()
        if any(pattern in lowered for pattern in INSIGHT_PATTERNS):
            return f"User found helpful: {ai_response[:200]}..."
        return None

    def extract_verse_references(self, text: str) -> List[str]:
        """Canonical strings of the valid references mentioned in `text`."""
        return [
            ref.canonical_reference
            for ref in self.parser.parse_all(text)
            if self.parser.validate(ref).valid
        ]

    def extract_memories(
        self,
        user_message: str,
        ai_response: Optional[str] = None,
        message_id: Optional[str] = None,
        conversation_id: Optional[str] = None,
    ) -> List[Memory]:
        source = {"source_message_id": message_id, "source_conversation_id": conversation_id}
        memories = []

        prayer = self.detect_prayer_request(user_message)
        if prayer:
            memories.append(Memory(type=MemoryType.PRAYER_REQUEST, content=prayer, **source))

        for tag, snippet in self.detect_personal_context(user_message):
            memories.append(Memory(type=MemoryType.PERSONAL_CONTEXT, content=snippet, tags=[tag], **source))

        struggle = self.detect_struggle(user_message)
        if struggle:
            memories.append(Memory(type=MemoryType.RECURRING_STRUGGLE, content=struggle, **source))

        known_verses = {
            verse
            for m in self.memory_store.memories_of_type(MemoryType.FAVORITE_VERSE)
            for verse in m.related_verses
        }
        for verse in self.extract_verse_references(user_message):
            if verse not in known_verses:
                known_verses.add(verse)
                memories.append(Memory(
                    type=MemoryType.FAVORITE_VERSE,
                    content="User mentioned this verse",
                    related_verses=[verse],
                    **source,
                ))

        if ai_response:
            insight = self.detect_helpful_insight(user_message, ai_response)
            if insight:
                memories.append(Memory(type=MemoryType.HELPFUL_INSIGHT, content=insight, **source))

        return memories

    def is_duplicate(self, memory: Memory) -> bool:
        existing = self.memory_store.active_memories
        if any(m.content == memory.content and m.type is memory.type for m in existing):
            return True
        if memory.type is MemoryType.FAVORITE_VERSE:
            saved = {v for m in existing if m.type is MemoryType.FAVORITE_VERSE for v in m.related_verses}
            return any(v in saved for v in memory.related_verses)
        return False

    def process_conversation_turn(
        self,
        user_message: str,
        ai_response: str,
        message_id: Optional[str] = None,
        conversation_id: Optional[str] = None,
        auto_save: bool = True,
    ) -> List[Memory]:
        """Extract memories from a finished turn and save the new ones."""
        memories = self.extract_memories(user_message, ai_response, message_id, conversation_id)
        if not auto_save:
            return memories

        saved = []
        for memory in memories:
            if not self.is_duplicate(memory):
                saved.append(self.memory_store.add_memory(memory))

        if saved:
            logger.info(f"Auto-saved {len(saved)} memories from conversation {conversation_id}")
        return saved

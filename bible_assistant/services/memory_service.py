# services/memory_service.py
"""
Long-term memory for the assistant.

Memories are small user facts (prayer requests, favorite verses, ongoing
struggles, helpful insights, personal context) that get folded into the
system prompt when the user has memory enabled.

Retrieval is hybrid:
1. Semantic top-K over memories that have embeddings
2. Keyword match over content, tags and related verses
3. Importance-ranked memories to fill the remaining slots

Every memory returned by find_relevant() is marked accessed, which feeds back
into its importance score.
"""

import json
import logging
import re
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from ..utils.errors import AssistantError
from ..utils.store import Store, load_json, save_json
from .embedding_service import EmbeddingIndex

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

MEMORIES_KEY = "assistant_memories"

DEFAULT_SIMILARITY_THRESHOLD = 0.35
DEFAULT_RELEVANT_LIMIT = 5
CONTEXT_LIMIT = 10
EMBEDDING_BATCH_SIZE = 10

# Importance scoring (points)
RECENCY_MAX = 40.0
RECENCY_DECAY_PER_DAY = 0.5
FREQUENCY_MAX = 30.0
FREQUENCY_PER_ACCESS = 3.0
ACCESS_RECENCY_MAX = 20.0
ACCESS_DECAY_PER_DAY = 2.0

MIN_KEYWORD_LENGTH = 4
_WORD_RE = re.compile(r"[a-z0-9']+")


class MemoryType(Enum):
    PRAYER_REQUEST = "prayer_request"
    FAVORITE_VERSE = "favorite_verse"
    RECURRING_STRUGGLE = "recurring_struggle"
    HELPFUL_INSIGHT = "helpful_insight"
    PERSONAL_CONTEXT = "personal_context"

    @property
    def display_name(self) -> str:
        return self.value.replace("_", " ").title()

    @property
    def weight(self) -> float:
        return TYPE_WEIGHTS[self]


TYPE_WEIGHTS = {
    MemoryType.PRAYER_REQUEST: 10.0,
    MemoryType.RECURRING_STRUGGLE: 8.0,
    MemoryType.PERSONAL_CONTEXT: 7.0,
    MemoryType.FAVORITE_VERSE: 5.0,
    MemoryType.HELPFUL_INSIGHT: 4.0,
}


@dataclass
class Memory:
    type: MemoryType
    content: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    source_message_id: Optional[str] = None
    source_conversation_id: Optional[str] = None
    related_verses: List[str] = field(default_factory=list)
    tags: List[str] = field(default_factory=list)
    embedding: Optional[List[float]] = None
    is_active: bool = True
    access_count: int = 0
    date_created: datetime = field(default_factory=datetime.now)
    last_accessed: Optional[datetime] = None

    @property
    def has_embedding(self) -> bool:
        return bool(self.embedding)

    @property
    def importance_score(self) -> float:
        return importance_score(self)

    def mark_accessed(self, now: Optional[datetime] = None) -> None:
        self.access_count += 1
        self.last_accessed = now or datetime.now()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "content": self.content,
            "source_message_id": self.source_message_id,
            "source_conversation_id": self.source_conversation_id,
            "related_verses": list(self.related_verses),
            "tags": list(self.tags),
            "embedding": self.embedding,
            "is_active": self.is_active,
            "access_count": self.access_count,
            "date_created": self.date_created.isoformat(),
            "last_accessed": self.last_accessed.isoformat() if self.last_accessed else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Memory":
        last_accessed = data.get("last_accessed")
        return cls(
            id=data["id"],
            type=MemoryType(data["type"]),
            content=data["content"],
            source_message_id=data.get("source_message_id"),
            source_conversation_id=data.get("source_conversation_id"),
            related_verses=list(data.get("related_verses") or []),
            tags=list(data.get("tags") or []),
            embedding=data.get("embedding"),
            is_active=data.get("is_active", True),
            access_count=data.get("access_count", 0),
            date_created=datetime.fromisoformat(data["date_created"]),
            last_accessed=datetime.fromisoformat(last_accessed) if last_accessed else None,
        )


def importance_score(memory: Memory, now: Optional[datetime] = None) -> float:
    """
    Importance in points: creation recency (0-40) + access frequency (0-30)
    + last-access recency (0-20) + type weight (4-10).
    """
    now = now or datetime.now()

    days_since_creation = max(0, (now - memory.date_created).days)
    score = max(0.0, RECENCY_MAX - days_since_creation * RECENCY_DECAY_PER_DAY)
    score += min(FREQUENCY_MAX, memory.access_count * FREQUENCY_PER_ACCESS)

    if memory.last_accessed:
        days_since_access = max(0, (now - memory.last_accessed).days)
        score += max(0.0, ACCESS_RECENCY_MAX - days_since_access * ACCESS_DECAY_PER_DAY)

    return score + memory.type.weight


# ---------------------------------------------------------------------------
# Prompt context
# ---------------------------------------------------------------------------

@dataclass
class MemoryContext:
    prayer_requests: List[Memory] = field(default_factory=list)
    favorite_verses: List[Memory] = field(default_factory=list)
    struggles: List[Memory] = field(default_factory=list)
    insights: List[Memory] = field(default_factory=list)
    personal_context: List[Memory] = field(default_factory=list)

    @classmethod
    def from_memories(cls, memories: List[Memory]) -> "MemoryContext":
        def of(t):
            return [m for m in memories if m.type is t]
        return cls(
            prayer_requests=of(MemoryType.PRAYER_REQUEST),
            favorite_verses=of(MemoryType.FAVORITE_VERSE),
            struggles=of(MemoryType.RECURRING_STRUGGLE),
            insights=of(MemoryType.HELPFUL_INSIGHT),
            personal_context=of(MemoryType.PERSONAL_CONTEXT),
        )

    @property
    def is_empty(self) -> bool:
        return not (
            self.prayer_requests or self.favorite_verses or self.struggles
            or self.insights or self.personal_context
        )

    def format_for_prompt(self) -> str:
        if self.is_empty:
            return ""

        def bullets(memories: List[Memory], limit: int) -> str:
            return "\n".join(f"• {m.content}" for m in memories[:limit])

        parts = []
        if self.prayer_requests:
            parts.append(f"ONGOING PRAYER REQUESTS:\n{bullets(self.prayer_requests, 3)}")
        if self.favorite_verses:
            verses = [m.related_verses[0] for m in self.favorite_verses[:5] if m.related_verses]
            if verses:
                parts.append(f"MEANINGFUL VERSES: {', '.join(verses)}")
        if self.struggles:
            parts.append(f"ONGOING CHALLENGES:\n{bullets(self.struggles, 2)}")
        if self.insights:
            parts.append(f"PREVIOUS HELPFUL INSIGHTS:\n{bullets(self.insights, 2)}")
        if self.personal_context:
            parts.append(f"USER CONTEXT:\n{bullets(self.personal_context, 3)}")

        if not parts:
            return ""

        sections = "\n\n".join(parts)
        return (
            f"REMEMBERED ABOUT THIS USER:\n{sections}\n\n"
            "Use this knowledge to provide more personalized and relevant responses."
        )


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------

class MemoryStore:
    """
    CRUD and hybrid retrieval over Memory records persisted in a Store.

    Deactivation is a soft delete; delete()/delete_all() purge.
    """

    def __init__(
        self,
        store: Store,
        index: Optional[EmbeddingIndex] = None,
        similarity_threshold: float = DEFAULT_SIMILARITY_THRESHOLD,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.store = store
        self.index = index
        self.similarity_threshold = similarity_threshold
        self.clock = clock
        self._lock = threading.RLock()
        self._memories: List[Memory] = self._load()

    # ---- persistence ----

    def _load(self) -> List[Memory]:
        records = load_json(self.store, MEMORIES_KEY, default=[])
        memories = []
        for record in records:
            try:
                memories.append(Memory.from_dict(record))
            except (KeyError, ValueError) as e:
                logger.warning(f"Skipping unreadable memory record: {e}")
        return memories

    def _save(self) -> None:
        save_json(self.store, MEMORIES_KEY, [m.to_dict() for m in self._memories])

    # ---- CRUD ----

    def add_memory(self, memory: Memory, embed: bool = True) -> Memory:
        """Add a memory (newest first), embedding it when an index is available."""
        if embed and self.index is not None and memory.embedding is None:
            try:
                memory.embedding = self.index.embed(memory.content)
            except AssistantError as e:
                logger.warning(f"Could not embed memory {memory.id}, will retry later: {e}")

        with self._lock:
            self._memories.insert(0, memory)
            self._save()
        logger.info(f"Added {memory.type.value} memory {memory.id}")
        return memory

    def create_memory(self, memory_type: MemoryType, content: str, **kwargs) -> Memory:
        return self.add_memory(Memory(type=memory_type, content=content, **kwargs))

    def get_memory(self, memory_id: str) -> Optional[Memory]:
        with self._lock:
            for memory in self._memories:
                if memory.id == memory_id:
                    return memory
        return None

    def update_memory(self, memory: Memory) -> bool:
        with self._lock:
            for i, existing in enumerate(self._memories):
                if existing.id == memory.id:
                    self._memories[i] = memory
                    self._save()
                    return True
        return False

    @property
    def all_memories(self) -> List[Memory]:
        with self._lock:
            return list(self._memories)

    @property
    def active_memories(self) -> List[Memory]:
        with self._lock:
            return [m for m in self._memories if m.is_active]

    def memories_of_type(self, memory_type: MemoryType) -> List[Memory]:
        return [m for m in self.active_memories if m.type is memory_type]

    def memories_for_conversation(self, conversation_id: str) -> List[Memory]:
        return [m for m in self.active_memories if m.source_conversation_id == conversation_id]

    def _set_active(self, memory_id: str, active: bool) -> bool:
        with self._lock:
            memory = self.get_memory(memory_id)
            if memory is None:
                return False
            memory.is_active = active
            self._save()
            return True

    def deactivate(self, memory_id: str) -> bool:
        return self._set_active(memory_id, False)

    def reactivate(self, memory_id: str) -> bool:
        return self._set_active(memory_id, True)

    def delete(self, memory_id: str) -> bool:
        with self._lock:
            before = len(self._memories)
            self._memories = [m for m in self._memories if m.id != memory_id]
            if len(self._memories) == before:
                return False
            self._save()
        logger.info(f"Deleted memory {memory_id}")
        return True

    def delete_all(self) -> int:
        with self._lock:
            count = len(self._memories)
            self._memories = []
            self._save()
        logger.info(f"Deleted all {count} memories")
        return count

    def delete_of_type(self, memory_type: MemoryType) -> int:
        with self._lock:
            before = len(self._memories)
            self._memories = [m for m in self._memories if m.type is not memory_type]
            removed = before - len(self._memories)
            if removed:
                self._save()
        return removed

    def mark_accessed(self, memories: List[Memory]) -> None:
        if not memories:
            return
        now = self.clock()
        with self._lock:
            for memory in memories:
                memory.mark_accessed(now)
            self._save()

    # ---- retrieval ----

    def keyword_search(self, query: str) -> List[Memory]:
        """
        Substring match over content, tags and related verses.

        A memory containing the whole query ranks first; otherwise memories
        are ranked by how many significant query words they contain.
        """
        active = self.active_memories
        if not query or not query.strip():
            return active

        lowered = query.lower().strip()
        terms = {w for w in _WORD_RE.findall(lowered) if len(w) >= MIN_KEYWORD_LENGTH}

        scored = []
        for memory in active:
            haystack = " ".join([memory.content] + memory.tags + memory.related_verses).lower()
            if lowered in haystack:
                scored.append((len(terms) + 1, memory))
                continue
            hits = sum(1 for term in terms if term in haystack)
            if hits:
                scored.append((hits, memory))

        scored.sort(key=lambda pair: pair[0], reverse=True)
        return [memory for _, memory in scored]

    def top_by_importance(self, limit: int = CONTEXT_LIMIT) -> List[Memory]:
        now = self.clock()
        ranked = sorted(self.active_memories, key=lambda m: importance_score(m, now), reverse=True)
        return ranked[:limit]

    def _semantic(self, query: str, limit: int) -> List[Memory]:
        candidates = [m for m in self.active_memories if m.has_embedding]
        if not candidates:
            return self.top_by_importance(limit)
        if self.index is None or not query:
            return []

        try:
            results = self.index.find_similar(
                query,
                candidates,
                lambda m: m.embedding,
                k=limit,
                threshold=self.similarity_threshold,
            )
        except AssistantError as e:
            logger.warning(f"Semantic memory search unavailable, using keywords only: {e}")
            return []
        return [memory for memory, _ in results]

    def semantic_search(self, query: str, limit: int = DEFAULT_RELEVANT_LIMIT) -> List[Memory]:
        """
        Top-K memories by embedding similarity. Falls back to importance
        ranking when no memory has an embedding yet.
        """
        results = self._semantic(query, limit)
        self.mark_accessed(results)
        return results

    def find_relevant(self, query: str, limit: int = DEFAULT_RELEVANT_LIMIT) -> List[Memory]:
        """
        Hybrid retrieval: semantic first, then keyword, then importance.
        Never returns duplicates or more than `limit` memories.
        """
        if limit <= 0:
            return []

        included_ids = set()
        merged: List[Memory] = []

        def take(memories: List[Memory]) -> None:
            for memory in memories:
                if len(merged) >= limit:
                    return
                if memory.id not in included_ids:
                    included_ids.add(memory.id)
                    merged.append(memory)

        take(self._semantic(query, limit))
        take(self.keyword_search(query))
        if len(merged) < limit:
            take(self.top_by_importance(limit))

        self.mark_accessed(merged)
        return merged

    def build_context(self, query: str, limit: int = CONTEXT_LIMIT) -> MemoryContext:
        return MemoryContext.from_memories(self.find_relevant(query, limit))

    # ---- maintenance ----

    def generate_missing_embeddings(self, batch_size: int = EMBEDDING_BATCH_SIZE) -> int:
        """Embed active memories that have no vector yet. Returns how many were filled."""
        if self.index is None:
            return 0

        missing = [m for m in self.active_memories if not m.has_embedding]
        filled = 0
        for start in range(0, len(missing), batch_size):
            batch = missing[start:start + batch_size]
            try:
                vectors = self.index.embed_batch([m.content for m in batch])
            except AssistantError as e:
                logger.warning(f"Stopped generating embeddings after {filled}: {e}")
                break
            with self._lock:
                for memory, vector in zip(batch, vectors):
                    if vector:
                        memory.embedding = vector
                        filled += 1
                self._save()

        if filled:
            logger.info(f"Generated embeddings for {filled} memories")
        return filled

    def stats(self) -> Dict[str, Any]:
        memories = self.all_memories
        dates = [m.date_created for m in memories]
        return {
            "total": len(memories),
            "active": sum(1 for m in memories if m.is_active),
            "with_embeddings": sum(1 for m in memories if m.has_embedding),
            "by_type": {t.value: sum(1 for m in memories if m.type is t) for t in MemoryType},
            "oldest": min(dates).isoformat() if dates else None,
            "newest": max(dates).isoformat() if dates else None,
        }

    # ---- export ----

    def export_json(self) -> str:
        records = []
        for memory in self.all_memories:
            record = memory.to_dict()
            record.pop("embedding", None)
            records.append(record)
        return json.dumps(records, ensure_ascii=False, indent=2)

    def export_text(self) -> str:
        lines = ["# Assistant Memories", ""]
        for memory_type in MemoryType:
            memories = self.memories_of_type(memory_type)
            if not memories:
                continue
            lines.append(f"## {memory_type.display_name}")
            lines.append("")
            for memory in memories:
                lines.append(f"- {memory.content}")
                if memory.related_verses:
                    lines.append(f"  Verses: {', '.join(memory.related_verses)}")
                lines.append(f"  Added: {memory.date_created.strftime('%b %d, %Y')}")
                lines.append("")
        return "\n".join(lines)

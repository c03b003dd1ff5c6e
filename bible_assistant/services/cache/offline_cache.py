"""
Offline Response Cache

Keeps recent question -> answer pairs so the assistant can still answer
when the network is down. Lookup tries, in order:

1. Exact match on the normalized question
2. Semantic match on stored question embeddings (best above 0.85)
3. Fuzzy match by Jaccard similarity of word sets (best above 0.7)

The cache is size-bounded; pruning keeps the entries with the highest
relevance score (recency plus access frequency).
"""

import logging
import re
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Set

from ...utils.errors import AssistantError
from ...utils.store import Store, load_json, save_json
from ..embedding_service import EmbeddingIndex, cosine_similarity

logger = logging.getLogger(__name__)

CACHE_KEY = "offline_response_cache"

DEFAULT_MAX_SIZE = 50
DEFAULT_SEMANTIC_THRESHOLD = 0.85
DEFAULT_DUPLICATE_THRESHOLD = 0.95
DEFAULT_FUZZY_THRESHOLD = 0.7

_STRIP_RE = re.compile(r"[?.,]")


def normalize_question(question: str) -> str:
    return _STRIP_RE.sub("", (question or "").lower().strip())


def jaccard_similarity(a: str, b: str) -> float:
    """Jaccard similarity of the whitespace-separated word sets of two normalized strings."""
    words_a: Set[str] = set(a.split())
    words_b: Set[str] = set(b.split())
    union = words_a | words_b
    if not union:
        return 0.0
    return len(words_a & words_b) / len(union)


@dataclass
class CachedResponse:
    question: str
    answer: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    question_embedding: Optional[List[float]] = None
    mode: Optional[str] = None
    title: Optional[str] = None
    citations: List[str] = field(default_factory=list)
    follow_ups: List[str] = field(default_factory=list)
    date_created: datetime = field(default_factory=datetime.now)
    date_last_accessed: datetime = field(default_factory=datetime.now)
    access_count: int = 1

    def relevance_score(self, now: Optional[datetime] = None) -> float:
        """Recency (0-100, -2 per day) plus access frequency (0-50, +5 per access)."""
        now = now or datetime.now()
        days = max(0, (now - self.date_created).days)
        return max(0.0, 100 - days * 2.0) + min(50.0, self.access_count * 5.0)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "question": self.question,
            "question_embedding": self.question_embedding,
            "answer": self.answer,
            "mode": self.mode,
            "title": self.title,
            "citations": list(self.citations),
            "follow_ups": list(self.follow_ups),
            "date_created": self.date_created.isoformat(),
            "date_last_accessed": self.date_last_accessed.isoformat(),
            "access_count": self.access_count,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CachedResponse":
        return cls(
            id=data["id"],
            question=data["question"],
            question_embedding=data.get("question_embedding"),
            answer=data["answer"],
            mode=data.get("mode"),
            title=data.get("title"),
            citations=list(data.get("citations") or []),
            follow_ups=list(data.get("follow_ups") or []),
            date_created=datetime.fromisoformat(data["date_created"]),
            date_last_accessed=datetime.fromisoformat(data["date_last_accessed"]),
            access_count=data.get("access_count", 1),
        )


class OfflineCache:
    """Size-bounded question/answer cache with exact, semantic and fuzzy lookup."""

    def __init__(
        self,
        store: Store,
        index: Optional[EmbeddingIndex] = None,
        max_size: int = DEFAULT_MAX_SIZE,
        semantic_threshold: float = DEFAULT_SEMANTIC_THRESHOLD,
        duplicate_threshold: float = DEFAULT_DUPLICATE_THRESHOLD,
        fuzzy_threshold: float = DEFAULT_FUZZY_THRESHOLD,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.store = store
        self.index = index
        self.max_size = max_size
        self.semantic_threshold = semantic_threshold
        self.duplicate_threshold = duplicate_threshold
        self.fuzzy_threshold = fuzzy_threshold
        self.clock = clock
        self._lock = threading.RLock()
        self._entries: List[CachedResponse] = self._load()

    def _load(self) -> List[CachedResponse]:
        entries = []
        for record in load_json(self.store, CACHE_KEY, default=[]):
            try:
                entries.append(CachedResponse.from_dict(record))
            except (KeyError, ValueError) as e:
                logger.warning(f"Skipping unreadable cache entry: {e}")
        return entries

    def _save(self) -> None:
        save_json(self.store, CACHE_KEY, [e.to_dict() for e in self._entries])

    def _embed(self, text: str) -> Optional[List[float]]:
        if self.index is None:
            return None
        try:
            return self.index.embed(text) or None
        except AssistantError as e:
            logger.warning(f"Offline cache could not embed question: {e}")
            return None

    # ---- write ----

    def put(
        self,
        question: str,
        answer: str,
        mode: Optional[str] = None,
        title: Optional[str] = None,
        citations: Optional[List[str]] = None,
        follow_ups: Optional[List[str]] = None,
    ) -> CachedResponse:
        """
        Cache an answer. An exact or near-duplicate question already in the
        cache only has its access stats bumped. The question is embedded only
        when no exact match exists.
        """
        normalized = normalize_question(question)
        with self._lock:
            for entry in self._entries:
                if normalize_question(entry.question) == normalized:
                    self._touch(entry)
                    self._save()
                    return entry

        embedding = self._embed(question)

        with self._lock:
            existing = self._find_duplicate(question, embedding)
            if existing is not None:
                self._touch(existing)
                self._save()
                return existing

            entry = CachedResponse(
                question=question,
                answer=answer,
                question_embedding=embedding,
                mode=mode,
                title=title,
                citations=list(citations or []),
                follow_ups=list(follow_ups or []),
                date_created=self.clock(),
                date_last_accessed=self.clock(),
            )
            self._entries.insert(0, entry)
            self._prune()
            self._save()

        logger.info(f"Cached offline response for '{question[:60]}'")
        return entry

    def _find_duplicate(self, question: str, embedding: Optional[List[float]]) -> Optional[CachedResponse]:
        normalized = normalize_question(question)
        for entry in self._entries:
            if normalize_question(entry.question) == normalized:
                return entry

        if embedding:
            for entry in self._entries:
                if entry.question_embedding and \
                        cosine_similarity(embedding, entry.question_embedding) >= self.duplicate_threshold:
                    return entry
        return None

    def _prune(self) -> None:
        if len(self._entries) <= self.max_size:
            return
        now = self.clock()
        self._entries.sort(key=lambda e: e.relevance_score(now), reverse=True)
        dropped = len(self._entries) - self.max_size
        self._entries = self._entries[:self.max_size]
        logger.debug(f"Pruned {dropped} offline cache entries")

    def _touch(self, entry: CachedResponse) -> None:
        entry.access_count += 1
        entry.date_last_accessed = self.clock()

    # ---- read ----

    def get(self, question: str) -> Optional[CachedResponse]:
        """Best cached answer for `question`, or None."""
        entry = self.find_exact(question)
        tier = "exact"

        if entry is None:
            embedding = self._embed(question)
            if embedding:
                entry = self.find_semantic(embedding)
                tier = "semantic"

        if entry is None:
            entry = self.find_fuzzy(question)
            tier = "fuzzy"

        if entry is None:
            return None

        with self._lock:
            self._touch(entry)
            self._save()
        logger.debug(f"Offline cache {tier} hit for '{question[:60]}'")
        return entry

    def has_response(self, question: str) -> bool:
        """Cheap check without embedding: exact or fuzzy match only."""
        return self.find_exact(question) is not None or self.find_fuzzy(question) is not None

    def find_exact(self, question: str) -> Optional[CachedResponse]:
        normalized = normalize_question(question)
        with self._lock:
            for entry in self._entries:
                if normalize_question(entry.question) == normalized:
                    return entry
        return None

    def find_semantic(self, embedding: List[float]) -> Optional[CachedResponse]:
        best, best_score = None, self.semantic_threshold
        with self._lock:
            for entry in self._entries:
                if not entry.question_embedding:
                    continue
                score = cosine_similarity(embedding, entry.question_embedding)
                if score > best_score:
                    best, best_score = entry, score
        return best

    def find_fuzzy(self, question: str) -> Optional[CachedResponse]:
        normalized = normalize_question(question)
        best, best_score = None, self.fuzzy_threshold
        with self._lock:
            for entry in self._entries:
                score = jaccard_similarity(normalized, normalize_question(entry.question))
                if score > best_score:
                    best, best_score = entry, score
        return best

    # ---- management ----

    @property
    def entries(self) -> List[CachedResponse]:
        with self._lock:
            return list(self._entries)

    def remove(self, entry_id: str) -> bool:
        with self._lock:
            before = len(self._entries)
            self._entries = [e for e in self._entries if e.id != entry_id]
            if len(self._entries) == before:
                return False
            self._save()
        return True

    def clear(self) -> None:
        with self._lock:
            self._entries = []
            self._save()
        logger.info("Offline cache cleared")

    def stats(self) -> Dict[str, Any]:
        entries = self.entries
        dates = [e.date_created for e in entries]
        return {
            "count": len(entries),
            "max_size": self.max_size,
            "oldest": min(dates).isoformat() if dates else None,
            "newest": max(dates).isoformat() if dates else None,
        }

# services/embedding_service.py
"""
Embedding index: produce and cache text embeddings, compare them, and run
top-K similarity search over arbitrary items.

The provider is injected. RemoteEmbeddingProvider (llm_service) calls the
embeddings endpoint; LocalEmbeddingProvider runs a sentence-transformers
model in-process.
"""

import logging
import threading
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

DEFAULT_CACHE_SIZE = 500
CACHE_KEY_LENGTH = 200       # characters of text used for the cache key
EVICTION_FRACTION = 0.2      # share of the cache dropped when full
DEFAULT_TOP_K = 5
DEFAULT_THRESHOLD = 0.3

Vector = List[float]


def cosine_similarity(a: Optional[Sequence[float]], b: Optional[Sequence[float]]) -> float:
    """
    Cosine similarity in [-1, 1].

    Returns 0.0 for missing, empty, mismatched-length or zero-norm vectors.
    """
    if a is None or b is None:
        return 0.0
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    if va.ndim != 1 or va.size == 0 or va.shape != vb.shape:
        return 0.0

    denom = np.linalg.norm(va) * np.linalg.norm(vb)
    if denom == 0:
        return 0.0
    return float(np.clip(np.dot(va, vb) / denom, -1.0, 1.0))


class EmbeddingProvider(ABC):
    """Turns texts into vectors, preserving input order."""

    @abstractmethod
    def embed_texts(self, texts: List[str]) -> List[Vector]:
        pass

    def is_configured(self) -> bool:
        return True


class LocalEmbeddingProvider(EmbeddingProvider):
    """In-process sentence-transformers model, loaded on first use."""

    def __init__(self, model_name: str = "all-MiniLM-L6-v2"):
        self.model_name = model_name
        self._model = None
        self._lock = threading.Lock()

    def _get_model(self):
        if self._model is None:
            with self._lock:
                if self._model is None:
                    from sentence_transformers import SentenceTransformer
                    logger.info(f"Loading local embedding model {self.model_name}")
                    self._model = SentenceTransformer(self.model_name)
        return self._model

    def embed_texts(self, texts: List[str]) -> List[Vector]:
        if not texts:
            return []
        vecs = self._get_model().encode(texts)
        return [vec.astype(np.float32).tolist() for vec in vecs]


class EmbeddingIndex:
    """
    Cached embeddings plus similarity search.

    The cache is keyed by a normalized prefix of the text. When it fills up
    the oldest ~20% of keys are dropped; re-embedding is cheap and
    idempotent, so this is not strict LRU.
    """

    def __init__(
        self,
        provider: EmbeddingProvider,
        cache_size: int = DEFAULT_CACHE_SIZE,
        default_threshold: float = DEFAULT_THRESHOLD,
    ):
        self.provider = provider
        self.cache_size = max(1, cache_size)
        self.default_threshold = default_threshold
        self._cache: Dict[str, Vector] = {}
        self._lock = threading.RLock()
        self._hits = 0
        self._misses = 0

    @staticmethod
    def cache_key(text: str) -> str:
        return text[:CACHE_KEY_LENGTH].lower().strip()

    # ---- embedding ----

    def embed(self, text: str) -> Vector:
        """Embedding for one text, served from cache when possible."""
        key = self.cache_key(text or "")
        if not key:
            return []

        with self._lock:
            cached = self._cache.get(key)
            if cached is not None:
                self._hits += 1
                return cached
            self._misses += 1

        vector = self.provider.embed_texts([text])[0]
        self._store(key, vector)
        return vector

    def embed_batch(self, texts: List[str]) -> List[Vector]:
        """
        Embeddings for many texts. Cached entries are skipped; the rest go
        out in a single provider call and are merged back by original index.
        """
        results: List[Optional[Vector]] = [None] * len(texts)
        pending: Dict[str, List[int]] = {}

        with self._lock:
            for i, text in enumerate(texts):
                key = self.cache_key(text or "")
                if not key:
                    results[i] = []
                    continue
                cached = self._cache.get(key)
                if cached is not None:
                    self._hits += 1
                    results[i] = cached
                else:
                    pending.setdefault(key, []).append(i)

        if pending:
            keys = list(pending)
            self._misses += len(keys)
            vectors = self.provider.embed_texts([texts[pending[k][0]] for k in keys])
            for key, vector in zip(keys, vectors):
                self._store(key, vector)
                for i in pending[key]:
                    results[i] = vector
            logger.info(f"Embedded {len(keys)} new texts ({len(texts) - sum(len(v) for v in pending.values())} cached)")

        return results

    def _store(self, key: str, vector: Vector) -> None:
        with self._lock:
            if key not in self._cache and len(self._cache) >= self.cache_size:
                evict = max(1, int(self.cache_size * EVICTION_FRACTION))
                for old_key in list(self._cache)[:evict]:
                    del self._cache[old_key]
                logger.debug(f"Embedding cache full, evicted {evict} entries")
            self._cache[key] = vector

    # ---- similarity ----

    @staticmethod
    def similarity(a: Sequence[float], b: Sequence[float]) -> float:
        return cosine_similarity(a, b)

    def top_k(
        self,
        query_vector: Sequence[float],
        items: Sequence[Any],
        get_vector: Callable[[Any], Optional[Sequence[float]]],
        k: int = DEFAULT_TOP_K,
        threshold: Optional[float] = None,
    ) -> List[Tuple[Any, float]]:
        """
        Items most similar to `query_vector`, best first.

        Items whose vector is missing or scores below `threshold` are skipped.
        """
        threshold = self.default_threshold if threshold is None else threshold
        scored = []
        for item in items:
            vector = get_vector(item)
            if not vector:
                continue
            score = cosine_similarity(query_vector, vector)
            if score >= threshold:
                scored.append((item, score))

        scored.sort(key=lambda pair: pair[1], reverse=True)
        return scored[:k]

    def find_similar(
        self,
        query: str,
        items: Sequence[Any],
        get_vector: Callable[[Any], Optional[Sequence[float]]],
        k: int = DEFAULT_TOP_K,
        threshold: Optional[float] = None,
    ) -> List[Tuple[Any, float]]:
        """Embed `query` and run top_k over `items`."""
        return self.top_k(self.embed(query), items, get_vector, k=k, threshold=threshold)

    # ---- cache management ----

    def cache_stats(self) -> Dict[str, int]:
        with self._lock:
            return {
                "entries": len(self._cache),
                "capacity": self.cache_size,
                "hits": self._hits,
                "misses": self._misses,
            }

    def clear_cache(self) -> None:
        with self._lock:
            self._cache.clear()
        logger.info("Embedding cache cleared")

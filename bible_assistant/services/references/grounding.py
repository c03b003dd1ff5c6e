# services/references/grounding.py
"""
Verse grounding: resolve citations against the canonical text and build the
"Referenced verses" block that is injected into the system prompt.

Chapters are fetched through an injected ChapterSource and cached in memory
for `ttl_hours`, keyed by (translation, book, chapter). HttpChapterSource
talks to the public helloao Bible API.

Verification status policy:
    unparseable / out of bounds    -> failed  (dropped from context)
    verse text found               -> verified
    parses but no text / chapter   -> paraphrased
"""

import logging
import threading
import uuid
from collections import OrderedDict
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple

import requests

from ...core import config
from ...utils.errors import AssistantError
from .reference_parser import Reference, ReferenceParser, display_name

logger = logging.getLogger(__name__)

DEFAULT_TTL_HOURS = 24
DEFAULT_MAX_REFS = 5
DEFAULT_SEARCH_LIMIT = 10


class VerificationStatus(Enum):
    UNRESOLVED = "unresolved"
    VERIFIED = "verified"
    PARAPHRASED = "paraphrased"
    FAILED = "failed"

    @property
    def is_final(self) -> bool:
        return self in (VerificationStatus.VERIFIED, VerificationStatus.FAILED)


@dataclass
class Citation:
    """A reference as cited in an answer, plus its resolved text."""
    reference: str
    translation_id: str
    book_id: Optional[str] = None
    book_display_name: Optional[str] = None
    chapter: Optional[int] = None
    verse_start: Optional[int] = None
    verse_end: Optional[int] = None
    resolved_text: Optional[str] = None
    verification_status: VerificationStatus = VerificationStatus.UNRESOLVED
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    @classmethod
    def from_reference(cls, ref: Reference, translation_id: str) -> "Citation":
        return cls(
            reference=ref.canonical_reference,
            translation_id=translation_id,
            book_id=ref.book_id,
            book_display_name=ref.book_display_name,
            chapter=ref.chapter,
            verse_start=ref.verse_start,
            verse_end=ref.verse_end,
        )

    @property
    def is_resolved(self) -> bool:
        return self.verification_status in (VerificationStatus.VERIFIED, VerificationStatus.PARAPHRASED)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "reference": self.reference,
            "translation_id": self.translation_id,
            "book_id": self.book_id,
            "book_name": self.book_display_name,
            "chapter": self.chapter,
            "verse_start": self.verse_start,
            "verse_end": self.verse_end,
            "text": self.resolved_text,
            "verification_status": self.verification_status.value,
        }


@dataclass
class ResolvedVerse:
    reference: str
    translation_id: str
    book_id: str
    chapter: int
    verse: int
    text: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "reference": self.reference,
            "translation_id": self.translation_id,
            "book_id": self.book_id,
            "chapter": self.chapter,
            "verse": self.verse,
            "text": self.text,
        }


@dataclass
class GroundingContext:
    """Per-request grounding material; never persisted."""
    citations: List[Citation] = field(default_factory=list)
    search_results: List[ResolvedVerse] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.citations and not self.search_results

    def format_for_prompt(self) -> str:
        parts = []

        with_text = [c for c in self.citations if c.resolved_text]
        if with_text:
            parts.append("Referenced verses:")
            for citation in with_text:
                parts.append(f'- {citation.reference}: "{citation.resolved_text}"')

        if self.search_results:
            parts.append("Related verses:")
            for verse in self.search_results:
                parts.append(f'- {verse.reference}: "{verse.text}"')

        return "\n".join(parts)


# ---------------------------------------------------------------------------
# Chapter sources
# ---------------------------------------------------------------------------

class ChapterSource(Protocol):
    def fetch_chapter(self, translation: str, book_id: str, chapter: int) -> Dict[str, Any]:
        """Return {"verses": [{"verse": int, "text": str}, ...]}."""
        ...


class HttpChapterSource:
    """
    Chapter text from the helloao Bible API:
    GET {base_url}/{translation}/{book}/{chapter}.json
    """

    def __init__(self, base_url: Optional[str] = None, timeout: Optional[float] = None):
        self.base_url = (base_url or config.BIBLE_API_URL).rstrip("/")
        self.timeout = timeout or config.BIBLE_API_TIMEOUT

    def fetch_chapter(self, translation: str, book_id: str, chapter: int) -> Dict[str, Any]:
        url = f"{self.base_url}/{translation}/{book_id}/{chapter}.json"
        try:
            response = requests.get(url, timeout=self.timeout)
            response.raise_for_status()
            data = response.json()
        except requests.Timeout:
            raise AssistantError(f"Bible API request timed out after {self.timeout}s")
        except requests.HTTPError as e:
            raise AssistantError(f"Bible API error: {e}", status_code=e.response.status_code)
        except requests.RequestException as e:
            raise AssistantError(f"Bible API request failed: {e}")
        except ValueError:
            raise AssistantError(f"Malformed chapter JSON from {url}")

        return {"verses": self._extract_verses(data)}

    @staticmethod
    def _extract_verses(data: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Flatten the API's chapter content into plain verse texts."""
        verses = []
        for item in data.get("chapter", {}).get("content", []):
            if item.get("type") != "verse":
                continue
            pieces = []
            for part in item.get("content", []):
                if isinstance(part, str):
                    pieces.append(part)
                elif isinstance(part, dict) and part.get("text"):
                    pieces.append(part["text"])
            text = " ".join(p.strip() for p in pieces if p.strip())
            if text:
                verses.append({"verse": int(item["number"]), "text": text})
        return verses


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------

ChapterKey = Tuple[str, str, int]


@dataclass
class _CachedChapter:
    verses: Dict[int, str]
    fetched_at: datetime


class GroundingRepository:
    """Resolves citations to verse text with a TTL chapter cache."""

    def __init__(
        self,
        source: ChapterSource,
        parser: Optional[ReferenceParser] = None,
        ttl_hours: float = DEFAULT_TTL_HOURS,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.source = source
        self.parser = parser or ReferenceParser()
        self.ttl = timedelta(hours=ttl_hours)
        self.clock = clock
        self._chapters: "OrderedDict[ChapterKey, _CachedChapter]" = OrderedDict()
        self._lock = threading.RLock()
        self._hits = 0
        self._misses = 0

    # ---- chapter cache ----

    def get_chapter(self, translation: str, book_id: str, chapter: int) -> Dict[int, str]:
        """Verse number -> text for one chapter. Empty dict if it cannot be fetched."""
        key = (translation, book_id, chapter)
        now = self.clock()

        with self._lock:
            cached = self._chapters.get(key)
            if cached is not None and now - cached.fetched_at <= self.ttl:
                self._hits += 1
                logger.debug(f"Chapter cache hit {book_id} {chapter} ({translation})")
                return cached.verses
            if cached is not None:
                del self._chapters[key]
            self._misses += 1

        try:
            data = self.source.fetch_chapter(translation, book_id, chapter)
        except (AssistantError, requests.RequestException) as e:
            logger.warning(f"Could not fetch {book_id} {chapter} ({translation}): {e}")
            return {}

        verses = {int(v["verse"]): v["text"] for v in data.get("verses", []) if v.get("text")}
        with self._lock:
            self._chapters[key] = _CachedChapter(verses=verses, fetched_at=now)
        logger.info(f"Cached {len(verses)} verses for {book_id} {chapter} ({translation})")
        return verses

    def get_passage(
        self,
        translation: str,
        ref: Reference,
        verses: Optional[Dict[int, str]] = None,
    ) -> List[ResolvedVerse]:
        if ref.verse_start is None:
            return []
        if verses is None:
            verses = self.get_chapter(translation, ref.book_id, ref.chapter)
        end = ref.verse_end or ref.verse_start
        return [
            ResolvedVerse(
                reference=f"{ref.book_display_name} {ref.chapter}:{n}",
                translation_id=translation,
                book_id=ref.book_id,
                chapter=ref.chapter,
                verse=n,
                text=verses[n],
            )
            for n in range(ref.verse_start, end + 1)
            if n in verses
        ]

    # ---- resolution ----

    def resolve_citation(
        self,
        citation: Citation,
        translation: str,
        load_chapter: Optional[Callable[[Reference], Dict[int, str]]] = None,
    ) -> Citation:
        if citation.verification_status.is_final:
            return citation

        ref = self.parser.parse(citation.reference)
        if ref is None:
            logger.info(f"Citation '{citation.reference}' could not be parsed")
            return replace(citation, verification_status=VerificationStatus.FAILED)

        result = self.parser.validate(ref)
        if not result.valid:
            logger.info(f"Citation '{citation.reference}' failed validation: {result.reason}")
            return replace(citation, verification_status=VerificationStatus.FAILED)

        resolved = Citation.from_reference(ref, translation)
        resolved.id = citation.id

        if ref.is_chapter_only:
            resolved.verification_status = VerificationStatus.PARAPHRASED
            return resolved

        verses = load_chapter(ref) if load_chapter is not None else None
        text = " ".join(v.text for v in self.get_passage(translation, ref, verses))
        if text:
            resolved.resolved_text = text
            resolved.verification_status = VerificationStatus.VERIFIED
        else:
            resolved.verification_status = VerificationStatus.PARAPHRASED
        return resolved

    def resolve_batch(self, citations: List[Citation], translation: str) -> List[Citation]:
        """
        Resolve many citations, grouped by chapter so each chapter is
        fetched at most once, even when the fetch fails. Output preserves
        input order.
        """
        groups: "OrderedDict[ChapterKey, List[int]]" = OrderedDict()
        results: List[Optional[Citation]] = [None] * len(citations)
        chapters: Dict[ChapterKey, Dict[int, str]] = {}

        def load_chapter(ref: Reference) -> Dict[int, str]:
            key = (translation, ref.book_id, ref.chapter)
            if key not in chapters:
                chapters[key] = self.get_chapter(*key)
            return chapters[key]

        for i, citation in enumerate(citations):
            ref = self.parser.parse(citation.reference)
            if ref is None:
                results[i] = self.resolve_citation(citation, translation)
                continue
            groups.setdefault((translation, ref.book_id, ref.chapter), []).append(i)

        for indexes in groups.values():
            for i in indexes:
                results[i] = self.resolve_citation(citations[i], translation, load_chapter)

        return results

    def build_grounding_context(
        self,
        free_text: str,
        translation: str,
        max_refs: int = DEFAULT_MAX_REFS,
    ) -> GroundingContext:
        """Resolve up to `max_refs` references found in `free_text`; failed ones are dropped."""
        refs = self.parser.parse_all(free_text)[:max_refs]
        citations = self.resolve_batch([Citation.from_reference(r, translation) for r in refs], translation)
        return GroundingContext(
            citations=[c for c in citations if c.verification_status is not VerificationStatus.FAILED]
        )

    # ---- search / maintenance ----

    def search(self, keyword: str, translation: str, limit: int = DEFAULT_SEARCH_LIMIT) -> List[ResolvedVerse]:
        """Keyword search over chapters already in the cache."""
        needle = (keyword or "").lower().strip()
        if not needle:
            return []

        results = []
        now = self.clock()
        with self._lock:
            for (trans, book_id, chapter), cached in self._chapters.items():
                if trans != translation or now - cached.fetched_at > self.ttl:
                    continue
                for number, text in sorted(cached.verses.items()):
                    if needle in text.lower():
                        name = display_name(book_id) or book_id
                        results.append(ResolvedVerse(
                            reference=f"{name} {chapter}:{number}",
                            translation_id=trans,
                            book_id=book_id,
                            chapter=chapter,
                            verse=number,
                            text=text,
                        ))
                        if len(results) >= limit:
                            return results
        return results

    def cleanup_expired(self) -> int:
        now = self.clock()
        with self._lock:
            expired = [k for k, v in self._chapters.items() if now - v.fetched_at > self.ttl]
            for key in expired:
                del self._chapters[key]
        if expired:
            logger.info(f"Removed {len(expired)} expired chapters from cache")
        return len(expired)

    def clear_cache(self) -> None:
        with self._lock:
            self._chapters.clear()
        logger.info("Chapter cache cleared")

    def cache_stats(self) -> Dict[str, int]:
        with self._lock:
            return {
                "chapters": len(self._chapters),
                "verses": sum(len(c.verses) for c in self._chapters.values()),
                "hits": self._hits,
                "misses": self._misses,
            }

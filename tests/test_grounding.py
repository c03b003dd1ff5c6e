"""Tests for citation resolution and the chapter cache."""

from datetime import timedelta
from unittest.mock import MagicMock, patch

import pytest
import requests

from bible_assistant.services.references.grounding import (
    Citation,
    GroundingContext,
    GroundingRepository,
    HttpChapterSource,
    ResolvedVerse,
    VerificationStatus,
)
from bible_assistant.utils.errors import AssistantError

from .conftest import FakeChapterSource


@pytest.fixture
def repo(chapter_source, parser, clock):
    return GroundingRepository(chapter_source, parser, ttl_hours=24, clock=clock)


# -----------------------------------------------------------------------------
# Chapter cache
# -----------------------------------------------------------------------------

def test_chapter_fetched_once_within_ttl(repo, chapter_source):
    repo.get_chapter("BSB", "JHN", 3)
    repo.get_chapter("BSB", "JHN", 3)
    assert chapter_source.fetches == [("BSB", "JHN", 3)]
    assert repo.cache_stats() == {"chapters": 1, "verses": 2, "hits": 1, "misses": 1}


def test_chapter_refetched_after_ttl(repo, chapter_source, clock):
    repo.get_chapter("BSB", "JHN", 3)
    clock.now = clock.now + timedelta(hours=25)
    repo.get_chapter("BSB", "JHN", 3)
    assert len(chapter_source.fetches) == 2


def test_cache_is_per_translation(repo, chapter_source):
    repo.get_chapter("BSB", "JHN", 3)
    repo.get_chapter("KJV", "JHN", 3)
    assert len(chapter_source.fetches) == 2


def test_fetch_failure_returns_empty(parser, clock):
    repo = GroundingRepository(FakeChapterSource(fail_with=AssistantError("down")), parser, clock=clock)
    assert repo.get_chapter("BSB", "JHN", 3) == {}
    assert repo.cache_stats()["chapters"] == 0


def test_cleanup_expired(repo, clock):
    repo.get_chapter("BSB", "JHN", 3)
    clock.now = clock.now + timedelta(hours=12)
    repo.get_chapter("BSB", "ROM", 8)
    clock.now = clock.now + timedelta(hours=13)
    assert repo.cleanup_expired() == 1
    assert repo.cache_stats()["chapters"] == 1

    repo.clear_cache()
    assert repo.cache_stats()["chapters"] == 0


# -----------------------------------------------------------------------------
# Resolution
# -----------------------------------------------------------------------------

def test_resolve_verified(repo):
    citation = repo.resolve_citation(Citation(reference="Jn 3:16", translation_id="BSB"), "BSB")
    assert citation.verification_status is VerificationStatus.VERIFIED
    assert citation.reference == "John 3:16"
    assert citation.resolved_text.startswith("For God so loved the world")
    assert citation.book_id == "JHN"


def test_resolve_range_joins_verses(repo):
    citation = repo.resolve_citation(Citation(reference="Romans 8:28-30", translation_id="BSB"), "BSB")
    assert citation.verification_status is VerificationStatus.VERIFIED
    assert citation.resolved_text.startswith("And we know")
    assert citation.resolved_text.endswith("He also glorified.")


def test_resolve_keeps_id(repo):
    original = Citation(reference="John 3:16", translation_id="BSB")
    assert repo.resolve_citation(original, "BSB").id == original.id


@pytest.mark.parametrize("reference", ["Psalm 151:1", "not a reference", "John 3:181"])
def test_resolve_failed(repo, chapter_source, reference):
    citation = repo.resolve_citation(Citation(reference=reference, translation_id="BSB"), "BSB")
    assert citation.verification_status is VerificationStatus.FAILED
    assert citation.resolved_text is None
    assert chapter_source.fetches == []


def test_resolve_chapter_only_is_paraphrased(repo, chapter_source):
    citation = repo.resolve_citation(Citation(reference="Psalm 23", translation_id="BSB"), "BSB")
    assert citation.verification_status is VerificationStatus.PARAPHRASED
    assert chapter_source.fetches == []


def test_resolve_missing_text_is_paraphrased(repo):
    citation = repo.resolve_citation(Citation(reference="Genesis 1:1", translation_id="BSB"), "BSB")
    assert citation.verification_status is VerificationStatus.PARAPHRASED
    assert citation.is_resolved


def test_resolve_final_status_is_untouched(repo, chapter_source):
    done = Citation(reference="John 3:16", translation_id="BSB", verification_status=VerificationStatus.VERIFIED)
    assert repo.resolve_citation(done, "BSB") is done
    assert chapter_source.fetches == []


def test_resolve_batch_groups_by_chapter_and_keeps_order(repo, chapter_source):
    citations = [
        Citation(reference=ref, translation_id="BSB")
        for ref in ["John 3:16", "Romans 8:28", "bogus", "John 3:17"]
    ]
    results = repo.resolve_batch(citations, "BSB")

    assert [c.reference for c in results] == ["John 3:16", "Romans 8:28", "bogus", "John 3:17"]
    assert [c.verification_status for c in results] == [
        VerificationStatus.VERIFIED,
        VerificationStatus.VERIFIED,
        VerificationStatus.FAILED,
        VerificationStatus.VERIFIED,
    ]
    assert chapter_source.fetches == [("BSB", "JHN", 3), ("BSB", "ROM", 8)]


def test_resolve_batch_fetches_failing_chapter_once(parser, clock):
    source = FakeChapterSource(fail_with=AssistantError("down"))
    repo = GroundingRepository(source, parser, clock=clock)
    citations = [Citation(reference=ref, translation_id="BSB") for ref in ["John 3:16", "John 3:17", "John 3:18"]]

    results = repo.resolve_batch(citations, "BSB")

    assert [c.verification_status for c in results] == [VerificationStatus.PARAPHRASED] * 3
    assert source.fetches == [("BSB", "JHN", 3)]


def test_build_grounding_context_drops_failed(repo):
    context = repo.build_grounding_context("Compare John 3:16 with Psalm 151:1 and Psalm 23", "BSB")
    assert [c.reference for c in context.citations] == ["John 3:16", "Psalms 23"]

    prompt = context.format_for_prompt()
    assert prompt.startswith("Referenced verses:")
    assert '- John 3:16: "For God so loved' in prompt
    assert "Psalms 23" not in prompt


def test_build_grounding_context_respects_max_refs(repo):
    context = repo.build_grounding_context("John 3:16, John 3:17 and Romans 8:28", "BSB", max_refs=2)
    assert len(context.citations) == 2


def test_empty_context():
    context = GroundingContext()
    assert context.is_empty
    assert context.format_for_prompt() == ""


def test_citation_to_dict(repo):
    data = repo.resolve_citation(Citation(reference="John 3:16", translation_id="BSB"), "BSB").to_dict()
    assert data["verification_status"] == "verified"
    assert data["book_name"] == "John"
    assert data["text"].startswith("For God")


# -----------------------------------------------------------------------------
# Search
# -----------------------------------------------------------------------------

def test_search_over_cached_chapters(repo):
    repo.get_chapter("BSB", "JHN", 3)
    repo.get_chapter("BSB", "ROM", 8)

    results = repo.search("predestined", "BSB")
    assert [r.reference for r in results] == ["Romans 8:29", "Romans 8:30"]
    assert repo.search("predestined", "KJV") == []
    assert repo.search("", "BSB") == []


def test_search_limit(repo):
    repo.get_chapter("BSB", "JHN", 3)
    assert len(repo.search("world", "BSB", limit=1)) == 1


def test_related_verses_in_prompt():
    context = GroundingContext(search_results=[
        ResolvedVerse(reference="Romans 8:29", translation_id="BSB", book_id="ROM", chapter=8, verse=29, text="For those"),
    ])
    assert context.format_for_prompt() == 'Related verses:\n- Romans 8:29: "For those"'


# -----------------------------------------------------------------------------
# HttpChapterSource
# -----------------------------------------------------------------------------

CHAPTER_JSON = {
    "chapter": {
        "number": 3,
        "content": [
            {"type": "heading", "content": ["For God So Loved the World"]},
            {"type": "verse", "number": 16, "content": ["For God so loved the world", {"noteId": 1}, {"text": "that He gave"}]},
            {"type": "line_break"},
            {"type": "verse", "number": 17, "content": ["For God did not send His Son"]},
        ],
    }
}


@patch("bible_assistant.services.references.grounding.requests.get")
def test_http_source_flattens_verses(mock_get):
    response = MagicMock()
    response.json.return_value = CHAPTER_JSON
    mock_get.return_value = response

    source = HttpChapterSource(base_url="https://bible.example/api/", timeout=5)
    data = source.fetch_chapter("BSB", "JHN", 3)

    mock_get.assert_called_once_with("https://bible.example/api/BSB/JHN/3.json", timeout=5)
    assert data["verses"] == [
        {"verse": 16, "text": "For God so loved the world that He gave"},
        {"verse": 17, "text": "For God did not send His Son"},
    ]


@patch("bible_assistant.services.references.grounding.requests.get")
def test_http_source_wraps_transport_errors(mock_get):
    mock_get.side_effect = requests.ConnectionError("refused")
    with pytest.raises(AssistantError):
        HttpChapterSource(base_url="https://bible.example/api", timeout=5).fetch_chapter("BSB", "JHN", 3)

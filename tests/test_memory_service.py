"""Tests for memory storage, importance scoring, hybrid retrieval and extraction."""

import json
from datetime import timedelta

import pytest

from bible_assistant.services.embedding_service import EmbeddingIndex
from bible_assistant.services.memory_extractor import MemoryExtractor
from bible_assistant.services.memory_service import (
    MEMORIES_KEY,
    Memory,
    MemoryContext,
    MemoryStore,
    MemoryType,
    importance_score,
)
from bible_assistant.utils.errors import NetworkError
from bible_assistant.utils.store import InMemoryStore

from .conftest import FakeEmbeddingProvider


@pytest.fixture
def memory_store(store, index, clock):
    return MemoryStore(store, index, similarity_threshold=0.3, clock=clock)


def _fill(memory_store):
    memory_store.create_memory(MemoryType.PRAYER_REQUEST, "Pray for my anxiety about my job interview")
    memory_store.create_memory(MemoryType.RECURRING_STRUGGLE, "Anxiety keeps me up at night")
    memory_store.create_memory(MemoryType.PERSONAL_CONTEXT, "My mother is in the hospital")
    memory_store.create_memory(MemoryType.FAVORITE_VERSE, "User mentioned this verse", related_verses=["Philippians 4:6"])
    memory_store.create_memory(MemoryType.HELPFUL_INSIGHT, "Grace is unearned favor")
    memory_store.create_memory(MemoryType.PERSONAL_CONTEXT, "I work as a nurse and my job is stressful")


# -----------------------------------------------------------------------------
# Importance
# -----------------------------------------------------------------------------

def test_importance_new_memory(clock):
    memory = Memory(type=MemoryType.PRAYER_REQUEST, content="x", date_created=clock.now)
    assert importance_score(memory, clock.now) == pytest.approx(40.0 + 10.0)


def test_importance_combines_components(clock):
    memory = Memory(
        type=MemoryType.HELPFUL_INSIGHT,
        content="x",
        date_created=clock.now - timedelta(days=10),
        access_count=2,
        last_accessed=clock.now - timedelta(days=1),
    )
    # 35 recency + 6 frequency + 18 access recency + 4 type weight
    assert importance_score(memory, clock.now) == pytest.approx(63.0)


def test_importance_components_are_capped(clock):
    memory = Memory(
        type=MemoryType.FAVORITE_VERSE,
        content="x",
        date_created=clock.now - timedelta(days=365),
        access_count=100,
    )
    assert importance_score(memory, clock.now) == pytest.approx(0.0 + 30.0 + 5.0)


# -----------------------------------------------------------------------------
# CRUD and persistence
# -----------------------------------------------------------------------------

def test_add_embeds_and_persists(store, index, clock):
    memory_store = MemoryStore(store, index, clock=clock)
    memory = memory_store.create_memory(MemoryType.PRAYER_REQUEST, "prayer for peace")
    assert memory.has_embedding

    reloaded = MemoryStore(store, index, clock=clock)
    assert [m.id for m in reloaded.all_memories] == [memory.id]
    assert reloaded.all_memories[0].embedding == memory.embedding


def test_newest_first(memory_store):
    first = memory_store.create_memory(MemoryType.HELPFUL_INSIGHT, "one")
    second = memory_store.create_memory(MemoryType.HELPFUL_INSIGHT, "two")
    assert [m.id for m in memory_store.all_memories] == [second.id, first.id]


def test_embedding_failure_still_saves(store, clock):
    failing = FakeEmbeddingProvider(fail_with=NetworkError("offline"))
    memory_store = MemoryStore(store, EmbeddingIndex(failing), clock=clock)

    memory = memory_store.create_memory(MemoryType.PERSONAL_CONTEXT, "I live in Ohio")
    assert not memory.has_embedding
    assert memory_store.get_memory(memory.id) is memory


def test_deactivate_and_reactivate(memory_store):
    memory = memory_store.create_memory(MemoryType.PERSONAL_CONTEXT, "I teach Sunday school")
    assert memory_store.deactivate(memory.id)
    assert memory not in memory_store.active_memories
    assert memory in memory_store.all_memories
    assert memory_store.reactivate(memory.id)
    assert memory in memory_store.active_memories
    assert not memory_store.deactivate("missing")


def test_delete_and_delete_all(memory_store):
    _fill(memory_store)
    victim = memory_store.all_memories[0]
    assert memory_store.delete(victim.id)
    assert not memory_store.delete(victim.id)
    assert memory_store.delete_of_type(MemoryType.PERSONAL_CONTEXT) == 1
    assert memory_store.delete_all() == 4
    assert memory_store.all_memories == []


def test_unreadable_records_are_skipped(clock):
    store = InMemoryStore()
    good = Memory(type=MemoryType.HELPFUL_INSIGHT, content="ok").to_dict()
    store.set(MEMORIES_KEY, json.dumps([good, {"type": "bogus"}]).encode("utf-8"))
    memory_store = MemoryStore(store, clock=clock)
    assert [m.content for m in memory_store.all_memories] == ["ok"]


# -----------------------------------------------------------------------------
# Retrieval
# -----------------------------------------------------------------------------

def test_find_relevant_respects_limit_without_duplicates(memory_store):
    _fill(memory_store)
    results = memory_store.find_relevant("anxiety about my job", limit=3)
    ids = [m.id for m in results]
    assert len(ids) == 3
    assert len(set(ids)) == 3
    assert results[0].content == "Pray for my anxiety about my job interview"


def test_find_relevant_marks_accessed(memory_store, clock):
    _fill(memory_store)
    results = memory_store.find_relevant("anxiety", limit=2)
    for memory in results:
        assert memory.access_count == 1
        assert memory.last_accessed == clock.now


def test_find_relevant_zero_limit(memory_store):
    _fill(memory_store)
    assert memory_store.find_relevant("anxiety", limit=0) == []


def test_find_relevant_skips_inactive(memory_store):
    _fill(memory_store)
    for memory in memory_store.all_memories:
        if "mother" in memory.content:
            memory_store.deactivate(memory.id)
    results = memory_store.find_relevant("mother hospital", limit=10)
    assert all("mother" not in m.content for m in results)


def test_semantic_falls_back_to_importance_without_embeddings(store, clock):
    memory_store = MemoryStore(store, index=None, clock=clock)
    older = Memory(type=MemoryType.HELPFUL_INSIGHT, content="old", date_created=clock.now - timedelta(days=60))
    newer = Memory(type=MemoryType.PRAYER_REQUEST, content="new", date_created=clock.now)
    memory_store.add_memory(older)
    memory_store.add_memory(newer)

    assert [m.content for m in memory_store.semantic_search("anything", limit=2)] == ["new", "old"]


def test_keyword_search_ranks_full_phrase_first(memory_store):
    _fill(memory_store)
    results = memory_store.keyword_search("my job")
    assert results
    assert all("job" in m.content.lower() for m in results)


def test_keyword_search_matches_related_verses(memory_store):
    _fill(memory_store)
    results = memory_store.keyword_search("Philippians")
    assert [m.type for m in results] == [MemoryType.FAVORITE_VERSE]


def test_generate_missing_embeddings(store, index, clock):
    memory_store = MemoryStore(store, index, clock=clock)
    memory_store.add_memory(Memory(type=MemoryType.HELPFUL_INSIGHT, content="hope"), embed=False)
    memory_store.add_memory(Memory(type=MemoryType.HELPFUL_INSIGHT, content="love"), embed=False)
    assert memory_store.stats()["with_embeddings"] == 0

    assert memory_store.generate_missing_embeddings(batch_size=1) == 2
    assert memory_store.stats()["with_embeddings"] == 2


# -----------------------------------------------------------------------------
# Context and export
# -----------------------------------------------------------------------------

def test_memory_context_formatting():
    context = MemoryContext.from_memories([
        Memory(type=MemoryType.PRAYER_REQUEST, content="Pray for my sister"),
        Memory(type=MemoryType.FAVORITE_VERSE, content="verse", related_verses=["Psalm 23:1"]),
    ])
    text = context.format_for_prompt()
    assert text.startswith("REMEMBERED ABOUT THIS USER:")
    assert "ONGOING PRAYER REQUESTS:\n• Pray for my sister" in text
    assert "MEANINGFUL VERSES: Psalm 23:1" in text


def test_empty_context_formats_to_nothing():
    assert MemoryContext().format_for_prompt() == ""


def test_export(memory_store):
    _fill(memory_store)
    records = json.loads(memory_store.export_json())
    assert len(records) == 6
    assert all("embedding" not in r for r in records)

    text = memory_store.export_text()
    assert text.startswith("# Assistant Memories")
    assert "## Prayer Request" in text
    assert "  Verses: Philippians 4:6" in text


# -----------------------------------------------------------------------------
# Extraction
# -----------------------------------------------------------------------------

def test_extractor_finds_prayer_context_and_verses(memory_store, parser):
    extractor = MemoryExtractor(memory_store, parser)
    memories = extractor.extract_memories(
        "Please pray for my husband. Romans 8:28 keeps me going.",
        conversation_id="c1",
    )
    types = [m.type for m in memories]
    assert MemoryType.PRAYER_REQUEST in types
    assert MemoryType.PERSONAL_CONTEXT in types
    verse_memories = [m for m in memories if m.type is MemoryType.FAVORITE_VERSE]
    assert [m.related_verses for m in verse_memories] == [["Romans 8:28"]]
    assert all(m.source_conversation_id == "c1" for m in memories)


def test_extractor_ignores_invalid_verses(memory_store, parser):
    extractor = MemoryExtractor(memory_store, parser)
    assert extractor.extract_verse_references("Psalm 151:1 and John 3:16") == ["John 3:16"]


def test_process_turn_skips_duplicates(memory_store, parser):
    extractor = MemoryExtractor(memory_store, parser)
    first = extractor.process_conversation_turn("I love John 3:16", "It is a beautiful verse.")
    second = extractor.process_conversation_turn("I love John 3:16", "It is a beautiful verse.")
    assert [m.related_verses for m in first] == [["John 3:16"]]
    assert second == []


def test_helpful_insight_detected(memory_store, parser):
    extractor = MemoryExtractor(memory_store, parser)
    memories = extractor.extract_memories("Thank you, that makes sense", "Grace means unearned favor.")
    assert [m.type for m in memories] == [MemoryType.HELPFUL_INSIGHT]
    assert memories[0].content.startswith("User found helpful: Grace means")

"""Shared fakes for the test suite."""

import re
import threading
from datetime import datetime

import pytest

from bible_assistant.services.embedding_service import EmbeddingIndex, EmbeddingProvider
from bible_assistant.services.llm_service import ChatProvider
from bible_assistant.services.references.reference_parser import ReferenceParser
from bible_assistant.utils.store import InMemoryStore

# Each dimension counts one topic word, so texts that share words are similar
VOCABULARY = ["anxiety", "job", "prayer", "mother", "psalm", "hope", "grace", "love", "fear", "peace"]


class FakeEmbeddingProvider(EmbeddingProvider):
    def __init__(self, fail_with=None):
        self.calls = []
        self.fail_with = fail_with

    def embed_texts(self, texts):
        self.calls.append(list(texts))
        if self.fail_with is not None:
            raise self.fail_with
        return [self.vector(text) for text in texts]

    @staticmethod
    def vector(text):
        lowered = text.lower()
        return [float(lowered.count(word)) for word in VOCABULARY]


class FixedClock:
    def __init__(self, now=None):
        self.now = now or datetime(2024, 6, 1, 12, 0, 0)

    def __call__(self):
        return self.now


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def embedding_provider():
    return FakeEmbeddingProvider()


@pytest.fixture
def index(embedding_provider):
    return EmbeddingIndex(embedding_provider, cache_size=50, default_threshold=0.3)


@pytest.fixture(scope="session")
def parser():
    return ReferenceParser()


@pytest.fixture
def clock():
    return FixedClock()


CHAPTERS = {
    ("JHN", 3): {
        16: "For God so loved the world that He gave His one and only Son, that everyone who believes in Him shall not perish but have eternal life.",
        17: "For God did not send His Son into the world to condemn the world, but to save the world through Him.",
    },
    ("ROM", 8): {
        28: "And we know that God works all things together for the good of those who love Him, who are called according to His purpose.",
        29: "For those God foreknew, He also predestined to be conformed to the image of His Son.",
        30: "And those He predestined, He also called; those He called, He also justified; those He justified, He also glorified.",
    },
}


class FakeChapterSource:
    """Serves CHAPTERS; records every fetch."""

    def __init__(self, chapters=None, fail_with=None):
        self.chapters = CHAPTERS if chapters is None else chapters
        self.fail_with = fail_with
        self.fetches = []

    def fetch_chapter(self, translation, book_id, chapter):
        self.fetches.append((translation, book_id, chapter))
        if self.fail_with is not None:
            raise self.fail_with
        verses = self.chapters.get((book_id, chapter), {})
        return {"verses": [{"verse": n, "text": t} for n, t in verses.items()]}


@pytest.fixture
def chapter_source():
    return FakeChapterSource()


ANSWER = "God's love is the heart of the gospel (John 3:16). He gave His Son so that we might live."
FOLLOW_UP_TEXT = (
    "1. How does John 3:16 connect to Romans 5:8?\n"
    "2. **What** does 'eternal life' mean in John's Gospel?\n"
    "3. Why did God choose to send His Son?"
)


class FakeChat(ChatProvider):
    """Scripted chat provider: raises queued failures, then streams `reply` word by word."""

    def __init__(self, reply=ANSWER, failures=None, follow_up_text=FOLLOW_UP_TEXT, block=False):
        self.reply = reply
        self.failures = list(failures or [])
        self.follow_up_text = follow_up_text
        self.calls = []
        self.complete_calls = []
        self.started = threading.Event()
        self.release = threading.Event()
        if not block:
            self.release.set()

    def stream_completion(self, messages, max_tokens, on_token=None, cancel_token=None):
        self.calls.append({"messages": messages, "max_tokens": max_tokens})
        self.started.set()
        self.release.wait(5)
        if cancel_token is not None:
            cancel_token.raise_if_cancelled()
        if self.failures:
            raise self.failures.pop(0)
        for token in re.findall(r"\S+\s*", self.reply):
            if on_token:
                on_token(token)
        return self.reply

    def complete(self, messages, max_tokens):
        self.complete_calls.append({"messages": messages, "max_tokens": max_tokens})
        if isinstance(self.follow_up_text, Exception):
            raise self.follow_up_text
        return self.follow_up_text

    def system_prompt(self, call=0):
        return self.calls[call]["messages"][0]["content"]

    def user_message(self, call=0):
        return self.calls[call]["messages"][-1]["content"]



# services/llm_service.py
"""
Remote model providers.

    ChatCompletionProvider   streaming + non-streaming chat completions (requests, SSE)
    RemoteEmbeddingProvider  embeddings endpoint, batched
    ModerationProvider       moderation endpoint via the openai SDK

Each provider performs ONE attempt and raises typed AssistantError
subclasses; retries are driven by utils.http_retry so the orchestrator can
observe every attempt.

Usage:
    from bible_assistant.services.llm_service import get_chat_client

    chat = get_chat_client()
    if chat:
        text = chat.stream_completion(
            messages=[{"role": "user", "content": "What does John 3:16 mean?"}],
            max_tokens=1500,
            on_token=lambda t: print(t, end=""),
        )
"""

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

import requests

from ..core import config
from ..utils.errors import AssistantError, AuthError, InvalidResponseError, NetworkError, RateLimitedError
from ..utils.http_retry import CancelToken, RetryPolicy, post_with_retry, raise_for_provider_status
from .embedding_service import EmbeddingProvider, LocalEmbeddingProvider

logger = logging.getLogger(__name__)

SSE_PREFIX = "data: "
SSE_DONE = "[DONE]"

Message = Dict[str, str]
TokenSink = Callable[[str], None]


class ChatProvider(ABC):
    """Chat completion provider. One call = one attempt."""

    @abstractmethod
    def stream_completion(
        self,
        messages: List[Message],
        max_tokens: int,
        on_token: Optional[TokenSink] = None,
        cancel_token: Optional[CancelToken] = None,
    ) -> str:
        """
        Stream a completion, forwarding each content delta to `on_token`.

        Returns the full accumulated text.
        """
        pass

    @abstractmethod
    def complete(self, messages: List[Message], max_tokens: int) -> str:
        """Non-streaming completion; returns the message content."""
        pass

    def is_configured(self) -> bool:
        return True


class ChatCompletionProvider(ChatProvider):
    """OpenAI-compatible /chat/completions over raw HTTP."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        url: Optional[str] = None,
        model: Optional[str] = None,
        timeout: Optional[Tuple[float, float]] = None,
        policy: Optional[RetryPolicy] = None,
    ):
        self._api_key = api_key or config.OPENAI_API_KEY
        self.url = url or config.CHAT_API_URL
        self.model = model or config.CHAT_MODEL
        self.timeout = timeout or (config.CHAT_CONNECT_TIMEOUT, config.CHAT_READ_TIMEOUT)
        self.policy = policy or RetryPolicy()

    def is_configured(self) -> bool:
        return bool(self._api_key)

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
        }

    def _post(self, payload: Dict[str, Any], stream: bool) -> requests.Response:
        if not self.is_configured():
            raise AuthError("Chat API key not configured (OPENAI_API_KEY)")
        try:
            response = requests.post(
                self.url,
                json=payload,
                headers=self._headers(),
                timeout=self.timeout,
                stream=stream,
            )
        except requests.Timeout:
            raise NetworkError(f"Chat request timed out after {self.timeout}s")
        except requests.ConnectionError as e:
            raise NetworkError(f"Chat request failed: {e}")

        raise_for_provider_status(response, self.policy)
        return response

    def stream_completion(
        self,
        messages: List[Message],
        max_tokens: int,
        on_token: Optional[TokenSink] = None,
        cancel_token: Optional[CancelToken] = None,
    ) -> str:
        payload = {
            "model": self.model,
            "messages": messages,
            "max_completion_tokens": max_tokens,
            "stream": True,
        }
        response = self._post(payload, stream=True)

        buffer = []
        try:
            for line in response.iter_lines(decode_unicode=True):
                if cancel_token is not None:
                    cancel_token.raise_if_cancelled()
                if not line or not line.startswith(SSE_PREFIX):
                    continue

                data = line[len(SSE_PREFIX):].strip()
                if data == SSE_DONE:
                    break

                delta = parse_stream_frame(data)
                if delta:
                    buffer.append(delta)
                    if on_token:
                        on_token(delta)
        except requests.RequestException as e:
            raise NetworkError(f"Stream interrupted: {e}")
        finally:
            response.close()

        text = "".join(buffer)
        if not text:
            raise InvalidResponseError("Empty response from chat completion")
        return text

    def complete(self, messages: List[Message], max_tokens: int) -> str:
        payload = {
            "model": self.model,
            "messages": messages,
            "max_completion_tokens": max_tokens,
        }
        response = self._post(payload, stream=False)
        try:
            data = response.json()
        except ValueError:
            raise InvalidResponseError("Malformed JSON from chat completion")

        choices = data.get("choices") or []
        if not choices:
            raise InvalidResponseError("Chat completion returned no choices")
        content = (choices[0].get("message") or {}).get("content") or ""
        if not content:
            raise InvalidResponseError("Empty response from chat completion")
        return content


def parse_stream_frame(data: str) -> Optional[str]:
    """
    Content delta from one SSE frame payload, or None when the frame
    carries no content (role headers, finish frames).

    Raises InvalidResponseError on malformed JSON.
    """
    try:
        frame = json.loads(data)
    except ValueError:
        raise InvalidResponseError(f"Malformed stream frame: {data[:80]}")

    choices = frame.get("choices") if isinstance(frame, dict) else None
    if not choices:
        return None
    delta = choices[0].get("delta") or {}
    return delta.get("content") or None


# ---------------------------------------------------------------------------
# Embeddings
# ---------------------------------------------------------------------------

class RemoteEmbeddingProvider(EmbeddingProvider):
    """POST {model, input, dimensions} to the embeddings endpoint."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        url: Optional[str] = None,
        model: Optional[str] = None,
        dimensions: Optional[int] = None,
        timeout: Optional[float] = None,
        policy: Optional[RetryPolicy] = None,
        sleep: Optional[Callable[[float], None]] = None,
    ):
        self._api_key = api_key or config.OPENAI_API_KEY
        self.url = url or config.EMBEDDING_API_URL
        self.model = model or config.EMBEDDING_MODEL
        self.dimensions = dimensions or config.EMBEDDING_DIMENSIONS
        self.timeout = timeout or config.EMBEDDING_TIMEOUT
        self.policy = policy or RetryPolicy(max_attempts=3)
        self._sleep = sleep

    def is_configured(self) -> bool:
        return bool(self._api_key)

    def embed_texts(self, texts: List[str]) -> List[List[float]]:
        if not texts:
            return []
        if not self.is_configured():
            raise AuthError("Embedding API key not configured (OPENAI_API_KEY)")

        data = post_with_retry(
            self.url,
            json={"model": self.model, "input": texts, "dimensions": self.dimensions},
            headers={
                "Authorization": f"Bearer {self._api_key}",
                "Content-Type": "application/json",
            },
            timeout=self.timeout,
            policy=self.policy,
            sleep=self._sleep,
        )

        items = data.get("data") if isinstance(data, dict) else None
        if not items or len(items) != len(texts):
            raise InvalidResponseError(f"Expected {len(texts)} embeddings, got {len(items or [])}")

        items = sorted(items, key=lambda item: item.get("index", 0))
        return [item["embedding"] for item in items]


# ---------------------------------------------------------------------------
# Moderation
# ---------------------------------------------------------------------------

@dataclass
class ModerationResult:
    flagged: bool
    categories: Dict[str, bool] = field(default_factory=dict)
    category_scores: Dict[str, float] = field(default_factory=dict)

    @property
    def flagged_categories(self) -> List[str]:
        return sorted(name for name, hit in self.categories.items() if hit)


class ModerationProvider:
    """Moderation endpoint through the openai SDK, loaded on first use."""

    def __init__(self, api_key: Optional[str] = None, model: Optional[str] = None):
        self._api_key = api_key or config.OPENAI_API_KEY
        self.model = model or config.MODERATION_MODEL
        self._client = None

    def _get_client(self):
        if self._client is None:
            from openai import OpenAI
            self._client = OpenAI(api_key=self._api_key)
        return self._client

    def is_configured(self) -> bool:
        return bool(self._api_key)

    def moderate(self, text: str) -> ModerationResult:
        import openai

        try:
            response = self._get_client().moderations.create(model=self.model, input=text)
        except openai.AuthenticationError as e:
            raise AuthError(f"Moderation authentication failed: {e}")
        except openai.RateLimitError as e:
            raise RateLimitedError(f"Moderation rate limited: {e}")
        except openai.APIConnectionError as e:
            raise NetworkError(f"Moderation request failed: {e}")
        except openai.APIError as e:
            raise AssistantError(f"Moderation error: {e}")

        if not response.results:
            raise InvalidResponseError("Moderation returned no results")

        result = response.results[0]
        return ModerationResult(
            flagged=bool(result.flagged),
            categories=dict(result.categories.model_dump()),
            category_scores=dict(result.category_scores.model_dump()),
        )


# ---------------------------------------------------------------------------
# Singletons
# ---------------------------------------------------------------------------

_chat_instance: Optional[ChatCompletionProvider] = None
_embedding_instance: Optional[EmbeddingProvider] = None
_moderation_instance: Optional[ModerationProvider] = None


def get_chat_client() -> Optional[ChatCompletionProvider]:
    """Chat provider if an API key is configured, None otherwise."""
    global _chat_instance

    if _chat_instance is None:
        provider = ChatCompletionProvider()
        if provider.is_configured():
            _chat_instance = provider

    return _chat_instance


def get_embedding_provider() -> Optional[EmbeddingProvider]:
    """
    Embedding provider: a local sentence-transformers model when
    LOCAL_EMBEDDING_MODEL is set, the remote endpoint otherwise.
    """
    global _embedding_instance

    if _embedding_instance is None:
        if config.LOCAL_EMBEDDING_MODEL:
            _embedding_instance = LocalEmbeddingProvider(config.LOCAL_EMBEDDING_MODEL)
        else:
            provider = RemoteEmbeddingProvider()
            if provider.is_configured():
                _embedding_instance = provider

    return _embedding_instance


def get_moderation_client() -> Optional[ModerationProvider]:
    global _moderation_instance

    if _moderation_instance is None and config.MODERATION_ENABLED:
        provider = ModerationProvider()
        if provider.is_configured():
            _moderation_instance = provider

    return _moderation_instance


def llm_is_configured() -> bool:
    return get_chat_client() is not None

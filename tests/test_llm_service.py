"""Tests for the chat, embedding and moderation providers (HTTP mocked)."""

from unittest.mock import MagicMock, patch

import pytest
import requests

from bible_assistant.services.llm_service import (
    ChatCompletionProvider,
    ModerationProvider,
    RemoteEmbeddingProvider,
    parse_stream_frame,
)
from bible_assistant.utils.errors import (
    AuthError,
    CancelledError,
    InvalidResponseError,
    NetworkError,
    RetryExhaustedError,
)
from bible_assistant.utils.http_retry import CancelToken, RetryPolicy

POST = "bible_assistant.services.llm_service.requests.post"
HTTP_RETRY_POST = "bible_assistant.utils.http_retry.requests.post"


def _frame(content):
    return 'data: {"choices": [{"delta": {"content": "%s"}}]}' % content


def _stream_response(lines, status=200):
    response = MagicMock()
    response.status_code = status
    response.iter_lines.return_value = iter(lines)
    return response


def _json_response(body, status=200):
    response = MagicMock()
    response.status_code = status
    response.json.return_value = body
    response.headers = {}
    response.reason = "OK"
    return response


@pytest.fixture
def chat():
    return ChatCompletionProvider(api_key="sk-test", url="https://llm.example/v1/chat/completions", model="test-model")


# -----------------------------------------------------------------------------
# parse_stream_frame
# -----------------------------------------------------------------------------

def test_parse_stream_frame_content():
    assert parse_stream_frame('{"choices": [{"delta": {"content": "Grace"}}]}') == "Grace"


@pytest.mark.parametrize("data", [
    '{"choices": [{"delta": {"role": "assistant"}}]}',
    '{"choices": []}',
    '{"choices": [{"delta": {}, "finish_reason": "stop"}]}',
])
def test_parse_stream_frame_without_content(data):
    assert parse_stream_frame(data) is None


def test_parse_stream_frame_malformed():
    with pytest.raises(InvalidResponseError):
        parse_stream_frame("{not json")


# -----------------------------------------------------------------------------
# ChatCompletionProvider
# -----------------------------------------------------------------------------

@patch(POST)
def test_stream_completion_forwards_tokens(mock_post, chat):
    mock_post.return_value = _stream_response([
        'data: {"choices": [{"delta": {"role": "assistant"}}]}',
        "",
        _frame("For God "),
        ": keep-alive",
        _frame("so loved"),
        "data: [DONE]",
        _frame("ignored"),
    ])
    tokens = []

    text = chat.stream_completion([{"role": "user", "content": "John 3:16?"}], 500, on_token=tokens.append)

    assert text == "For God so loved"
    assert tokens == ["For God ", "so loved"]
    payload = mock_post.call_args.kwargs["json"]
    assert payload["stream"] is True
    assert payload["max_completion_tokens"] == 500
    assert payload["model"] == "test-model"
    assert mock_post.call_args.kwargs["headers"]["Authorization"] == "Bearer sk-test"
    mock_post.return_value.close.assert_called_once()


@patch(POST)
def test_stream_completion_empty_is_invalid(mock_post, chat):
    mock_post.return_value = _stream_response(["data: [DONE]"])
    with pytest.raises(InvalidResponseError):
        chat.stream_completion([], 100)


@patch(POST)
def test_stream_completion_cancelled(mock_post, chat):
    mock_post.return_value = _stream_response([_frame("a"), _frame("b")])
    token = CancelToken()
    received = []

    def on_token(delta):
        received.append(delta)
        token.cancel()

    with pytest.raises(CancelledError):
        chat.stream_completion([], 100, on_token=on_token, cancel_token=token)
    assert received == ["a"]


@patch(POST)
def test_stream_completion_timeout_is_network_error(mock_post, chat):
    mock_post.side_effect = requests.Timeout("slow")
    with pytest.raises(NetworkError):
        chat.stream_completion([], 100)


@patch(POST)
def test_stream_completion_interrupted(mock_post, chat):
    response = _stream_response([])
    response.iter_lines.side_effect = requests.ConnectionError("reset")
    mock_post.return_value = response
    with pytest.raises(NetworkError):
        chat.stream_completion([], 100)


@patch(POST)
def test_stream_completion_auth_failure(mock_post, chat):
    mock_post.return_value = _json_response({"error": {"message": "bad key"}}, status=401)
    with pytest.raises(AuthError):
        chat.stream_completion([], 100)


def test_unconfigured_provider_raises_auth_error():
    with patch("bible_assistant.core.config.OPENAI_API_KEY", None):
        chat = ChatCompletionProvider(api_key=None, url="https://llm.example", model="m")
        assert not chat.is_configured()
        with pytest.raises(AuthError):
            chat.complete([], 10)


@patch(POST)
def test_complete_returns_content(mock_post, chat):
    mock_post.return_value = _json_response({"choices": [{"message": {"content": "1. Why?"}}]})
    assert chat.complete([{"role": "user", "content": "x"}], 300) == "1. Why?"
    assert "stream" not in mock_post.call_args.kwargs["json"]


@patch(POST)
def test_complete_without_choices_is_invalid(mock_post, chat):
    mock_post.return_value = _json_response({"choices": []})
    with pytest.raises(InvalidResponseError):
        chat.complete([], 300)


# -----------------------------------------------------------------------------
# RemoteEmbeddingProvider
# -----------------------------------------------------------------------------

@patch(HTTP_RETRY_POST)
def test_embeddings_sorted_by_index(mock_post):
    mock_post.return_value = _json_response({
        "data": [
            {"index": 1, "embedding": [0.0, 1.0]},
            {"index": 0, "embedding": [1.0, 0.0]},
        ]
    })
    provider = RemoteEmbeddingProvider(api_key="sk-test", url="https://llm.example/v1/embeddings", model="emb", dimensions=2)

    assert provider.embed_texts(["first", "second"]) == [[1.0, 0.0], [0.0, 1.0]]
    assert mock_post.call_args.kwargs["json"] == {"model": "emb", "input": ["first", "second"], "dimensions": 2}


@patch(HTTP_RETRY_POST)
def test_embeddings_count_mismatch_is_invalid(mock_post):
    mock_post.return_value = _json_response({"data": [{"index": 0, "embedding": [1.0]}]})
    provider = RemoteEmbeddingProvider(api_key="sk-test", url="https://llm.example", model="emb", dimensions=1)
    with pytest.raises(InvalidResponseError):
        provider.embed_texts(["a", "b"])


@patch(HTTP_RETRY_POST)
def test_embeddings_retry_then_give_up(mock_post):
    mock_post.side_effect = requests.ConnectionError("down")
    provider = RemoteEmbeddingProvider(
        api_key="sk-test",
        url="https://llm.example",
        model="emb",
        dimensions=1,
        policy=RetryPolicy(max_attempts=3),
        sleep=lambda s: None,
    )
    with pytest.raises(RetryExhaustedError):
        provider.embed_texts(["a"])
    assert mock_post.call_count == 3


def test_embeddings_empty_input_skips_request():
    provider = RemoteEmbeddingProvider(api_key="sk-test", url="https://llm.example", model="emb", dimensions=1)
    assert provider.embed_texts([]) == []


# -----------------------------------------------------------------------------
# ModerationProvider
# -----------------------------------------------------------------------------

def test_moderation_maps_result():
    result = MagicMock()
    result.flagged = True
    result.categories.model_dump.return_value = {"violence": True, "harassment": False}
    result.category_scores.model_dump.return_value = {"violence": 0.91, "harassment": 0.02}

    provider = ModerationProvider(api_key="sk-test", model="omni-moderation-latest")
    provider._client = MagicMock()
    provider._client.moderations.create.return_value = MagicMock(results=[result])

    moderation = provider.moderate("some text")
    assert moderation.flagged
    assert moderation.flagged_categories == ["violence"]
    assert moderation.category_scores["violence"] == 0.91
    provider._client.moderations.create.assert_called_once_with(model="omni-moderation-latest", input="some text")


def test_moderation_without_results_is_invalid():
    provider = ModerationProvider(api_key="sk-test", model="m")
    provider._client = MagicMock()
    provider._client.moderations.create.return_value = MagicMock(results=[])
    with pytest.raises(InvalidResponseError):
        provider.moderate("text")

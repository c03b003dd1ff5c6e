# routes/chat_api.py
"""
Chat endpoints.

POST /api/chat streams Server-Sent Events:

    data: {"token": "..."}                         one per content delta
    data: {"retry": {"attempt": 1, "max": 5}}      before each backoff wait
    data: {...AssistantResult...}                  final result
    data: [DONE]

or, on failure, a final data: {"error": "...", "detail": "..."} frame
before [DONE]. Pass "stream": false for a single JSON response instead;
it still runs as the conversation's one in-flight generation, so
/api/chat/cancel and a newer request can stop it.

The generation runs on the orchestrator's worker pool, so a client that
disconnects mid-stream does not lose the answer: it is still persisted.
"""

import json
import logging
import queue

from flask import Blueprint, Response, jsonify, request, stream_with_context

from ..services.orchestrator import AssistantRequest, RequestType
from ..utils.errors import AssistantError, assistant_error_response, invalid_field, missing_field
from . import get_services

logger = logging.getLogger(__name__)

chat_bp = Blueprint("chat_api", __name__, url_prefix="/api/chat")

VALID_MODES = ("study", "devotional", "prayer")


def _sse(payload) -> str:
    if isinstance(payload, str):
        return f"data: {payload}\n\n"
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n"


def _request_from_json(data: dict) -> AssistantRequest:
    kwargs = {
        "message": data["message"].strip(),
        "mode": data.get("mode", "study"),
        "translation": data.get("translation"),
        "history": data.get("history"),
        "with_follow_ups": bool(data.get("follow_ups", True)),
    }
    if data.get("request_type"):
        kwargs["request_type"] = RequestType(data["request_type"])
    for key in ("conversation_id", "message_id", "request_id"):
        if data.get(key):
            kwargs[key] = data[key]
    return AssistantRequest(**kwargs)


@chat_bp.post("")
def chat():
    data = request.get_json(silent=True) or {}

    message = (data.get("message") or "").strip()
    if not message:
        return missing_field("message")
    if data.get("mode", "study") not in VALID_MODES:
        return invalid_field("mode", f"mode must be one of: {', '.join(VALID_MODES)}")
    try:
        assistant_request = _request_from_json(data)
    except ValueError as e:
        return invalid_field("request_type", str(e))

    orchestrator = get_services().orchestrator

    if data.get("stream") is False:
        try:
            result = orchestrator.start(assistant_request).result()
        except AssistantError as e:
            logger.error(f"Chat request failed: {e}")
            return assistant_error_response(e)
        return jsonify(result.to_dict())

    events: "queue.Queue" = queue.Queue()
    handle = orchestrator.start(
        assistant_request,
        token_sink=lambda token: events.put(("token", token)),
        on_retry=lambda attempt, max_attempts: events.put(("retry", {"attempt": attempt, "max": max_attempts})),
    )
    handle.future.add_done_callback(lambda _: events.put(("done", None)))

    def generate():
        while True:
            kind, payload = events.get()
            if kind == "done":
                break
            yield _sse({kind: payload})

        try:
            result = handle.result()
        except AssistantError as e:
            logger.error(f"Chat stream failed: {e}")
            yield _sse({"error": e.code, "detail": str(e)})
        else:
            yield _sse(result.to_dict())
        yield _sse("[DONE]")

    return Response(
        stream_with_context(generate()),
        mimetype="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@chat_bp.post("/cancel")
def cancel_chat():
    data = request.get_json(silent=True) or {}
    conversation_id = data.get("conversation_id")
    if not conversation_id:
        return missing_field("conversation_id")

    cancelled = get_services().orchestrator.cancel(conversation_id)
    return jsonify({"conversation_id": conversation_id, "cancelled": cancelled})


@chat_bp.post("/analyze")
def analyze_verse():
    """Study-mode analysis of a single verse (non-streaming)."""
    data = request.get_json(silent=True) or {}
    reference = (data.get("reference") or "").strip()
    if not reference:
        return missing_field("reference")

    try:
        result = get_services().orchestrator.analyze_verse(
            reference,
            analysis_type=data.get("analysis_type", "context_meaning"),
            translation=data.get("translation"),
        )
    except AssistantError as e:
        return assistant_error_response(e)
    return jsonify(result.to_dict())

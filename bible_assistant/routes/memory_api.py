# routes/memory_api.py
from flask import Blueprint, Response, jsonify, request

from ..services.memory_service import Memory, MemoryType
from ..utils.errors import error_response, invalid_field, missing_field, not_found
from . import get_services

memory_bp = Blueprint("memory_api", __name__, url_prefix="/api/memories")


def _memory_json(memory: Memory) -> dict:
    data = memory.to_dict()
    data.pop("embedding", None)
    data["has_embedding"] = memory.has_embedding
    return data


def _store():
    return get_services().memory_store


@memory_bp.before_request
def require_memory_store():
    if _store() is None:
        return error_response("memory_disabled", 503, "Memory store is not configured")


@memory_bp.get("")
def list_memories():
    memory_type = request.args.get("type")
    include_inactive = request.args.get("include_inactive", "false").lower() == "true"

    memories = _store().all_memories if include_inactive else _store().active_memories
    if memory_type:
        try:
            wanted = MemoryType(memory_type)
        except ValueError:
            return invalid_field("type", f"Unknown memory type: {memory_type}")
        memories = [m for m in memories if m.type is wanted]

    return jsonify({
        "memories": [_memory_json(m) for m in memories],
        "stats": _store().stats(),
    })


@memory_bp.post("")
def add_memory():
    data = request.get_json(silent=True) or {}
    content = (data.get("content") or "").strip()
    if not content:
        return missing_field("content")

    try:
        memory_type = MemoryType(data.get("type", MemoryType.PERSONAL_CONTEXT.value))
    except ValueError:
        return invalid_field("type", f"Unknown memory type: {data.get('type')}")

    memory = _store().create_memory(
        memory_type,
        content,
        related_verses=list(data.get("related_verses") or []),
        tags=list(data.get("tags") or []),
    )
    return jsonify(_memory_json(memory)), 201


@memory_bp.post("/<memory_id>/deactivate")
def deactivate_memory(memory_id: str):
    if not _store().deactivate(memory_id):
        return not_found("memory")
    return jsonify({"id": memory_id, "is_active": False})


@memory_bp.post("/<memory_id>/reactivate")
def reactivate_memory(memory_id: str):
    if not _store().reactivate(memory_id):
        return not_found("memory")
    return jsonify({"id": memory_id, "is_active": True})


@memory_bp.delete("/<memory_id>")
def delete_memory(memory_id: str):
    if not _store().delete(memory_id):
        return not_found("memory")
    return jsonify({"id": memory_id, "deleted": True})


@memory_bp.get("/search")
def search_memories():
    query = (request.args.get("q") or "").strip()
    if not query:
        return missing_field("q")
    try:
        limit = int(request.args.get("limit", 5))
    except ValueError:
        return invalid_field("limit", "limit must be an integer")

    results = _store().find_relevant(query, limit=limit)
    return jsonify({"query": query, "memories": [_memory_json(m) for m in results]})


@memory_bp.get("/export")
def export_memories():
    fmt = request.args.get("format", "json")
    if fmt == "text":
        return Response(_store().export_text(), mimetype="text/markdown")
    if fmt == "json":
        return Response(_store().export_json(), mimetype="application/json")
    return invalid_field("format", "format must be json or text")

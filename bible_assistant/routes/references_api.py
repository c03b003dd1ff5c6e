# routes/references_api.py
"""
Scripture reference endpoints.

GET  /api/references/parse?text=...   every reference found in text, with validation
POST /api/references/resolve          resolve citation strings to verse text
"""

from flask import Blueprint, jsonify, request

from ..core import config
from ..services.references.grounding import Citation
from ..utils.errors import error_response, invalid_field, missing_field
from . import get_services

references_bp = Blueprint("references_api", __name__, url_prefix="/api/references")

MAX_RESOLVE = 20


@references_bp.get("/parse")
def parse_references():
    text = request.args.get("text", "")
    if not text.strip():
        return missing_field("text")

    parser = get_services().parser
    results = []
    for ref in parser.parse_all(text):
        check = parser.validate(ref)
        results.append({
            "reference": ref.canonical_reference,
            "osis": ref.to_osis_format(),
            "book_id": ref.book_id,
            "chapter": ref.chapter,
            "verse_start": ref.verse_start,
            "verse_end": ref.verse_end,
            "valid": check.valid,
            "reason": check.reason,
        })

    return jsonify({"text": text, "references": results})


@references_bp.post("/resolve")
def resolve_references():
    """
    Body:
        {"references": ["John 3:16", "Rom 8:28"], "translation": "BSB"}

    Returns citations with resolved text and verification status.
    """
    data = request.get_json(silent=True) or {}
    references = data.get("references")
    if not references:
        return missing_field("references")
    if not isinstance(references, list) or not all(isinstance(r, str) for r in references):
        return invalid_field("references", "references must be a list of strings")
    if len(references) > MAX_RESOLVE:
        return invalid_field("references", f"At most {MAX_RESOLVE} references per request")

    grounding = get_services().grounding
    if grounding is None:
        return error_response("grounding_disabled", 503, "No chapter source configured")

    translation = data.get("translation") or config.DEFAULT_TRANSLATION
    citations = grounding.resolve_batch(
        [Citation(reference=r, translation_id=translation) for r in references],
        translation,
    )
    return jsonify({
        "translation": translation,
        "citations": [c.to_dict() for c in citations],
        "cache": grounding.cache_stats(),
    })

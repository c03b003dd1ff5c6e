"""
Scripture reference services.

This package provides:
- ReferenceParser: Parse and validate human-readable references
- Reference: Structured scripture reference
- GroundingRepository: Resolve citations to verse text with a chapter cache
- Citation: A reference found in an answer plus its verification status
"""

from .reference_parser import (
    Reference,
    ReferenceParser,
    ValidationResult,
    normalize_book_name,
    chapter_count,
    display_name,
)
from .grounding import (
    Citation,
    GroundingContext,
    GroundingRepository,
    HttpChapterSource,
    VerificationStatus,
)

__all__ = [
    # Parsing
    "Reference",
    "ReferenceParser",
    "ValidationResult",
    "normalize_book_name",
    "chapter_count",
    "display_name",
    # Grounding
    "Citation",
    "GroundingContext",
    "GroundingRepository",
    "HttpChapterSource",
    "VerificationStatus",
]

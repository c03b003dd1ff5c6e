"""
Safety Classification Service

Classifies user messages into risk categories before any generation happens.

Categories, in order of precedence:
- SELF_HARM, VIOLENCE, ABUSE, MEDICAL_EMERGENCY: intervention, generation is skipped
  and a canned resource response is returned
- GRIEF_LOSS: compassionate, the prompt is augmented but generation continues
- NONE

A figurative-language guard runs before keyword matching so that ordinary
hyperbole ("gonna kill it at my presentation lol") does not trigger a crisis
response. Grief terms have no figurative reading and are never suppressed.
"""

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Union

from .config_loader import load_rules

logger = logging.getLogger(__name__)


class SafetyCategory(Enum):
    NONE = "none"
    GRIEF_LOSS = "grief_loss"
    MEDICAL_EMERGENCY = "medical_emergency"
    ABUSE = "abuse"
    VIOLENCE = "violence"
    SELF_HARM = "self_harm"

    @property
    def severity(self) -> int:
        return _SEVERITY[self]

    @property
    def requires_intervention(self) -> bool:
        return self not in (SafetyCategory.NONE, SafetyCategory.GRIEF_LOSS)

    @property
    def requires_compassionate_response(self) -> bool:
        return self is SafetyCategory.GRIEF_LOSS


_SEVERITY = {
    SafetyCategory.NONE: 0,
    SafetyCategory.GRIEF_LOSS: 1,
    SafetyCategory.MEDICAL_EMERGENCY: 2,
    SafetyCategory.ABUSE: 3,
    SafetyCategory.VIOLENCE: 4,
    SafetyCategory.SELF_HARM: 5,
}

# Most severe first
CLASSIFICATION_ORDER = sorted(
    (c for c in SafetyCategory if c is not SafetyCategory.NONE),
    key=lambda c: c.severity,
    reverse=True,
)


@dataclass
class SafetyResource:
    name: str
    url: str


@dataclass
class SafetyResponse:
    """Canned response shown instead of (or alongside) a generated answer."""
    category: SafetyCategory
    message: str
    calming_verses: List[str] = field(default_factory=list)   # reference strings
    resources: List[SafetyResource] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "category": self.category.value,
            "message": self.message,
            "calming_verses": list(self.calming_verses),
            "resources": [{"name": r.name, "url": r.url} for r in self.resources],
        }


@dataclass
class SafetyCheckResult:
    category: SafetyCategory
    response: Optional[SafetyResponse] = None

    @property
    def is_triggered(self) -> bool:
        return self.category.requires_intervention

    @property
    def is_compassionate(self) -> bool:
        return self.category.requires_compassionate_response


def _phrase_regex(phrases: Iterable[str]) -> Optional[re.Pattern]:
    """One alternation matching any phrase at a word start."""
    phrases = sorted({p.lower() for p in phrases if p}, key=len, reverse=True)
    if not phrases:
        return None
    return re.compile(r"(?<!\w)(?:" + "|".join(re.escape(p) for p in phrases) + ")")


HistoryItem = Union[str, Dict[str, Any]]


class SafetyClassifier:
    """
    Keyword classifier with a figurative-language guard.

    Classification logic:
    1. Figurative guard: idiom + non-literal cue, or an explicitly safe phrase
       -> GRIEF_LOSS if grief terms are present, otherwise NONE
    2. Keyword sets in severity order
    3. Default NONE
    """

    HISTORY_WINDOW = 3

    def __init__(self, rules: Optional[Dict[str, Any]] = None):
        self.rules = rules or load_rules()
        self._compile_patterns()

    def _compile_patterns(self):
        keywords = self.rules.get("keywords", {})
        self._category_re = {
            category: _phrase_regex(keywords.get(category.value, []))
            for category in CLASSIFICATION_ORDER
        }
        self._metaphor_re = _phrase_regex(self.rules.get("metaphorical_patterns", []))
        self._non_literal_re = _phrase_regex(self.rules.get("non_literal_context", []))
        self._safe_re = _phrase_regex(self.rules.get("safe_patterns", []))
        self._casual_re = _phrase_regex(self.rules.get("casual_context", []))
        self._inappropriate_re = _phrase_regex(self.rules.get("inappropriate_patterns", []))

    @staticmethod
    def _normalize(text: str) -> str:
        return (text or "").lower().replace("’", "'")

    @staticmethod
    def _search(pattern: Optional[re.Pattern], text: str) -> bool:
        return bool(pattern and pattern.search(text))

    # ---- classification ----

    def classify(self, text: str) -> SafetyCategory:
        lowered = self._normalize(text)

        if self._is_metaphorical(lowered):
            if self._search(self._category_re[SafetyCategory.GRIEF_LOSS], lowered):
                return SafetyCategory.GRIEF_LOSS
            return SafetyCategory.NONE

        for category in CLASSIFICATION_ORDER:
            if self._search(self._category_re[category], lowered):
                if category.requires_intervention:
                    logger.info(f"Safety classifier matched category {category.value}")
                return category

        return SafetyCategory.NONE

    def classify_with_context(self, text: str, recent_history: Optional[List[HistoryItem]] = None) -> SafetyCategory:
        """
        Classify using the last few turns as context. A casual or positive
        recent conversation plus figurative phrasing is treated as NONE.
        """
        recent = (recent_history or [])[-self.HISTORY_WINDOW:]
        context = " ".join(self._normalize(self._content(item)) for item in recent)

        if self._search(self._casual_re, context) and self._is_metaphorical(self._normalize(text)):
            return SafetyCategory.NONE

        return self.classify(text)

    def is_likely_metaphorical(self, text: str) -> bool:
        return self._is_metaphorical(self._normalize(text))

    def _is_metaphorical(self, lowered: str) -> bool:
        if self._search(self._metaphor_re, lowered) and self._search(self._non_literal_re, lowered):
            return True
        return self._search(self._safe_re, lowered)

    @staticmethod
    def _content(item: HistoryItem) -> str:
        if isinstance(item, dict):
            return str(item.get("content", ""))
        return str(item)

    # ---- responses ----

    def check(self, text: str, recent_history: Optional[List[HistoryItem]] = None) -> SafetyCheckResult:
        """Classify and attach the canned response when one applies."""
        if recent_history:
            category = self.classify_with_context(text, recent_history)
        else:
            category = self.classify(text)

        if category is SafetyCategory.NONE:
            return SafetyCheckResult(category=category)
        return SafetyCheckResult(category=category, response=self.response_for(category))

    def response_for(self, category: SafetyCategory) -> SafetyResponse:
        config = self.rules.get("responses", {})
        entry = config.get(category.value) or config.get("none", {})
        return SafetyResponse(
            category=category,
            message=entry.get("message", "").strip(),
            calming_verses=list(entry.get("calming_verses", [])),
            resources=[SafetyResource(r["name"], r["url"]) for r in entry.get("resources", [])],
        )

    def grief_acknowledgment(self) -> str:
        return self.rules.get("grief_acknowledgment", "").strip()

    # ---- content moderation ----

    def is_inappropriate_request(self, text: str) -> bool:
        return self._search(self._inappropriate_re, self._normalize(text))

    @property
    def refusal_message(self) -> str:
        return self.rules.get("refusal_message", "").strip()

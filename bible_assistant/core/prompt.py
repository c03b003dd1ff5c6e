# core/prompt.py
import json
import logging
import os
from dataclasses import asdict, dataclass, fields
from typing import Any, Dict, List, Optional

from ..utils.store import Store, load_json, save_json
from .config import DEFAULT_TRANSLATION

logger = logging.getLogger(__name__)

MODES_FILE = os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "data", "modes.json")

with open(MODES_FILE, "r", encoding="utf-8") as f:
    prompt_config = json.load(f)

assistant = prompt_config.get("assistant", {})
modes = prompt_config.get("modes", {})
personas = prompt_config.get("personas", {})
analysis_types = prompt_config.get("analysis_types", {})

DEFAULT_MODE = "study"
PREFERENCES_KEY = "assistant_preferences"


def _bullets(items: List[str]) -> str:
    return "\n".join(f"- {item}" for item in items)


# ---------------------------------------------------------------------------
# Preferences
# ---------------------------------------------------------------------------

@dataclass
class AssistantPreferences:
    """User-tunable response settings, persisted through the Store."""
    translation: str = DEFAULT_TRANSLATION
    persona: str = "friend"
    tone: str = "balanced"
    reading_level: str = "standard"
    denomination: str = "neutral"
    response_length: str = "medium"
    avoid_controversial_topics: bool = False
    custom_instructions: str = ""
    memory_enabled: bool = True
    is_premium: bool = False

    @property
    def has_custom_instructions(self) -> bool:
        return bool(self.custom_instructions.strip())

    @property
    def preferred_token_limit(self) -> int:
        lengths = prompt_config["response_length"]
        return lengths.get(self.response_length, lengths["medium"])["tokens"]

    def build_preference_prompt(self) -> str:
        instructions = []

        persona = personas.get(self.persona, personas["friend"])
        instructions.append(f"PERSONA: {persona['description']}\n{_bullets(persona['traits'])}")

        tone = prompt_config["tone"]
        instructions.append(f"TONE: {tone.get(self.tone, tone['balanced'])}")

        levels = prompt_config["reading_level"]
        instructions.append(f"READING LEVEL: {levels.get(self.reading_level, levels['standard'])}")

        lenses = prompt_config["denomination"]
        instructions.append(f"THEOLOGICAL LENS: {lenses.get(self.denomination, lenses['neutral'])}")

        lengths = prompt_config["response_length"]
        instructions.append(f"LENGTH: {lengths.get(self.response_length, lengths['medium'])['instruction']}")

        if self.avoid_controversial_topics:
            instructions.append(f"CONTROVERSIAL TOPICS: {prompt_config['controversial_topics']}")

        if self.has_custom_instructions:
            instructions.append(
                f"\nUSER'S CUSTOM INSTRUCTIONS (follow these carefully):\n{self.custom_instructions.strip()}"
            )

        return "\nUSER PREFERENCES:\n" + "\n".join(instructions) + "\n"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AssistantPreferences":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in (data or {}).items() if k in known})


def load_preferences(store: Store) -> AssistantPreferences:
    return AssistantPreferences.from_dict(load_json(store, PREFERENCES_KEY, default={}))


def save_preferences(store: Store, preferences: AssistantPreferences) -> None:
    save_json(store, PREFERENCES_KEY, preferences.to_dict())
    logger.info("Saved assistant preferences")


# ---------------------------------------------------------------------------
# System prompt
# ---------------------------------------------------------------------------

def mode_instructions(mode: str) -> str:
    mode_data = modes.get(mode, modes[DEFAULT_MODE])
    label = mode_data.get("label", mode).upper()
    return (
        f"You are in {label} mode. Provide:\n"
        f"{_bullets(mode_data.get('instructions', []))}\n"
        f"{mode_data.get('closing', '')}"
    )


def build_system_prompt(
    mode: str,
    grounding_text: str = "",
    request_type: str = "normal",
    preferences: Optional[AssistantPreferences] = None,
    memory_context: str = "",
    grief_acknowledgment: str = "",
) -> str:
    """
    Assemble the system prompt for one request.

    Sections, in order: identity and core principles, mode instructions,
    user preferences, verified verses (when grounding found any), remembered
    user context (only when memory is enabled), grief acknowledgment,
    request-type instructions, response format.
    """
    preferences = preferences or AssistantPreferences()
    principles = "\n".join(f"{i}. {p}" for i, p in enumerate(assistant.get("principles", []), start=1))

    parts = [
        f"{assistant.get('identity', '')}\n\nCORE PRINCIPLES:\n{principles}",
        mode_instructions(mode),
        preferences.build_preference_prompt(),
    ]

    if grounding_text:
        parts.append(
            "VERIFIED VERSES FROM USER'S BIBLE:\n"
            f"{grounding_text}\n\n"
            "You may quote these directly. For other verses, only cite if certain they exist."
        )

    if preferences.memory_enabled and memory_context:
        parts.append(memory_context)

    if grief_acknowledgment:
        parts.append(f"GRIEF CONTEXT:\n{grief_acknowledgment}")

    request_config = prompt_config["request_types"].get(request_type)
    if request_config:
        parts.append(
            f"{request_config['heading']}:\n"
            f"{_bullets(request_config['instructions'])}\n\n"
            f"{request_config['closing']}"
        )

    parts.append(
        "RESPONSE FORMAT:\n"
        f"{_bullets(assistant.get('response_format', []))}\n\n"
        "Just respond naturally. Do NOT output JSON or any structured format."
    )

    return "\n\n".join(p.strip() for p in parts if p and p.strip())


def build_verse_analysis_prompt(reference: str, text: str, translation: str, analysis_type: str) -> str:
    analysis = analysis_types.get(analysis_type, analysis_types["context_meaning"])
    return (
        f"VERSE TO ANALYZE:\n{reference}\n\n\"{text}\"\n\nTranslation: {translation}\n\n"
        f"ANALYSIS TYPE: {analysis['label']}\n\n"
        f"{analysis['instructions']}\n\n"
        "Provide a thoughtful, well-organized analysis. "
        "Cite relevant Scripture references in parentheses like (Romans 8:28)."
    )

# routes/__init__.py
from dataclasses import dataclass
from typing import Optional

from flask import current_app

from ..services.memory_service import MemoryStore
from ..services.orchestrator import RequestOrchestrator
from ..services.references.grounding import GroundingRepository
from ..services.references.reference_parser import ReferenceParser

EXTENSION_KEY = "bible_assistant"


@dataclass
class AssistantServices:
    """Service instances shared by the blueprints, stored on app.extensions."""
    orchestrator: RequestOrchestrator
    parser: ReferenceParser
    memory_store: Optional[MemoryStore] = None
    grounding: Optional[GroundingRepository] = None


def get_services() -> AssistantServices:
    return current_app.extensions[EXTENSION_KEY]

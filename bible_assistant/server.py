# server.py
import logging
from typing import Optional

from flask import Flask
from flask_cors import CORS

from .core.config import Settings, load_settings
from .core.prompt import load_preferences
from .routes import EXTENSION_KEY, AssistantServices
from .routes.chat_api import chat_bp
from .routes.memory_api import memory_bp
from .routes.references_api import references_bp
from .services.cache.offline_cache import OfflineCache
from .services.embedding_service import EmbeddingIndex
from .services.llm_service import ChatCompletionProvider, get_embedding_provider, get_moderation_client
from .services.memory_service import MemoryStore
from .services.orchestrator import ConversationStore, RequestOrchestrator
from .services.references.grounding import GroundingRepository, HttpChapterSource
from .services.references.reference_parser import ReferenceParser
from .services.safety.classifier import SafetyClassifier
from .utils.http_retry import RetryPolicy
from .utils.store import SQLiteStore

logger = logging.getLogger(__name__)


def build_services(settings: Settings) -> AssistantServices:
    """Wire the default production components from settings."""
    store = SQLiteStore(settings.store_db)
    parser = ReferenceParser()

    provider = get_embedding_provider()
    index = EmbeddingIndex(
        provider,
        cache_size=settings.embedding_cache_size,
        default_threshold=settings.similarity_threshold,
    ) if provider else None
    if index is None:
        logger.warning("No embedding provider configured; memory and cache use keyword matching only")

    memory_store = MemoryStore(store, index, similarity_threshold=settings.memory_similarity_threshold)
    grounding = GroundingRepository(
        HttpChapterSource(settings.bible_api_url, settings.bible_api_timeout),
        parser,
        ttl_hours=settings.chapter_cache_ttl_hours,
    )
    offline_cache = OfflineCache(
        store,
        index,
        max_size=settings.offline_cache_max_size,
        semantic_threshold=settings.offline_semantic_threshold,
        duplicate_threshold=settings.offline_duplicate_threshold,
        fuzzy_threshold=settings.offline_fuzzy_threshold,
    )
    policy = RetryPolicy(
        max_attempts=settings.retry_max_attempts,
        base_delay=settings.retry_base_delay,
        max_delay=settings.retry_max_delay,
    )
    chat = ChatCompletionProvider(
        api_key=settings.openai_api_key,
        url=settings.chat_api_url,
        model=settings.chat_model,
        timeout=settings.chat_timeout,
        policy=policy,
    )
    if not chat.is_configured():
        logger.warning("OPENAI_API_KEY is not set; chat requests will fail")

    preferences = load_preferences(store)

    orchestrator = RequestOrchestrator(
        chat,
        parser=parser,
        classifier=SafetyClassifier(),
        grounding=grounding,
        memory_store=memory_store,
        offline_cache=offline_cache,
        conversations=ConversationStore(store),
        moderation=get_moderation_client() if settings.moderation_enabled else None,
        preferences=preferences,
        policy=policy,
    )
    return AssistantServices(
        orchestrator=orchestrator,
        parser=parser,
        memory_store=memory_store,
        grounding=grounding,
    )


def create_app(services: Optional[AssistantServices] = None, settings: Optional[Settings] = None) -> Flask:
    settings = settings or load_settings()

    app = Flask(__name__)
    app.config["SECRET_KEY"] = settings.secret_key
    CORS(app)

    app.extensions[EXTENSION_KEY] = services or build_services(settings)

    app.register_blueprint(chat_bp)
    app.register_blueprint(memory_bp)
    app.register_blueprint(references_bp)

    return app


def main() -> None:
    settings = load_settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    app = create_app(settings=settings)
    app.run(host=settings.host, port=settings.port, threaded=True)


if __name__ == "__main__":
    main()

# core/config.py
import os
from dataclasses import dataclass
from typing import Optional, Tuple

from dotenv import load_dotenv

# Load .env
load_dotenv()


def _env_float(key: str, default: float) -> float:
    value = os.getenv(key)
    return float(value) if value else default


def _env_int(key: str, default: int) -> int:
    value = os.getenv(key)
    return int(value) if value else default


# ---- PROVIDERS ----
OPENAI_API_KEY = os.getenv("OPENAI_API_KEY")
CHAT_API_URL = os.getenv("CHAT_API_URL", "https://api.openai.com/v1/chat/completions")
CHAT_MODEL = os.getenv("CHAT_MODEL", "gpt-5-mini-2025-08-07")
CHAT_CONNECT_TIMEOUT = _env_float("CHAT_CONNECT_TIMEOUT", 10.0)
CHAT_READ_TIMEOUT = _env_float("CHAT_READ_TIMEOUT", 60.0)

EMBEDDING_API_URL = os.getenv("EMBEDDING_API_URL", "https://api.openai.com/v1/embeddings")
EMBEDDING_MODEL = os.getenv("EMBEDDING_MODEL", "text-embedding-3-small")
EMBEDDING_DIMENSIONS = _env_int("EMBEDDING_DIMENSIONS", 512)
EMBEDDING_TIMEOUT = _env_float("EMBEDDING_TIMEOUT", 30.0)
# Set to a sentence-transformers model name to embed locally instead
LOCAL_EMBEDDING_MODEL = os.getenv("LOCAL_EMBEDDING_MODEL")

MODERATION_MODEL = os.getenv("MODERATION_MODEL", "omni-moderation-latest")
MODERATION_ENABLED = os.getenv("MODERATION_ENABLED", "false").lower() == "true"

# ---- SCRIPTURE SOURCE ----
BIBLE_API_URL = os.getenv("BIBLE_API_URL", "https://bible.helloao.org/api")
BIBLE_API_TIMEOUT = _env_float("BIBLE_API_TIMEOUT", 15.0)
DEFAULT_TRANSLATION = os.getenv("DEFAULT_TRANSLATION", "BSB")
CHAPTER_CACHE_TTL_HOURS = _env_float("CHAPTER_CACHE_TTL_HOURS", 24.0)

# ---- CACHES / THRESHOLDS ----
EMBEDDING_CACHE_SIZE = _env_int("EMBEDDING_CACHE_SIZE", 500)
OFFLINE_CACHE_MAX_SIZE = _env_int("OFFLINE_CACHE_MAX_SIZE", 50)
OFFLINE_SEMANTIC_THRESHOLD = _env_float("OFFLINE_SEMANTIC_THRESHOLD", 0.85)
OFFLINE_DUPLICATE_THRESHOLD = _env_float("OFFLINE_DUPLICATE_THRESHOLD", 0.95)
OFFLINE_FUZZY_THRESHOLD = _env_float("OFFLINE_FUZZY_THRESHOLD", 0.7)
SIMILARITY_THRESHOLD = _env_float("SIMILARITY_THRESHOLD", 0.3)
MEMORY_SIMILARITY_THRESHOLD = _env_float("MEMORY_SIMILARITY_THRESHOLD", 0.35)

# ---- RETRY ----
RETRY_MAX_ATTEMPTS = _env_int("RETRY_MAX_ATTEMPTS", 5)
RETRY_BASE_DELAY = _env_float("RETRY_BASE_DELAY", 1.0)
RETRY_MAX_DELAY = _env_float("RETRY_MAX_DELAY", 16.0)

# ---- STORAGE / SERVER ----
STORE_DB = os.getenv("STORE_DB", "bible_assistant.db")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
SECRET_KEY = os.getenv("SECRET_KEY", "change-me")
HOST = os.getenv("HOST", "127.0.0.1")
PORT = _env_int("PORT", 5055)


@dataclass
class Settings:
    """
    Snapshot of the environment settings, passed to components at
    construction time so tests can override any value.
    """
    openai_api_key: Optional[str] = OPENAI_API_KEY
    chat_api_url: str = CHAT_API_URL
    chat_model: str = CHAT_MODEL
    chat_timeout: Tuple[float, float] = (CHAT_CONNECT_TIMEOUT, CHAT_READ_TIMEOUT)

    embedding_api_url: str = EMBEDDING_API_URL
    embedding_model: str = EMBEDDING_MODEL
    embedding_dimensions: int = EMBEDDING_DIMENSIONS
    embedding_timeout: float = EMBEDDING_TIMEOUT
    local_embedding_model: Optional[str] = LOCAL_EMBEDDING_MODEL

    moderation_model: str = MODERATION_MODEL
    moderation_enabled: bool = MODERATION_ENABLED

    bible_api_url: str = BIBLE_API_URL
    bible_api_timeout: float = BIBLE_API_TIMEOUT
    default_translation: str = DEFAULT_TRANSLATION
    chapter_cache_ttl_hours: float = CHAPTER_CACHE_TTL_HOURS

    embedding_cache_size: int = EMBEDDING_CACHE_SIZE
    offline_cache_max_size: int = OFFLINE_CACHE_MAX_SIZE
    offline_semantic_threshold: float = OFFLINE_SEMANTIC_THRESHOLD
    offline_duplicate_threshold: float = OFFLINE_DUPLICATE_THRESHOLD
    offline_fuzzy_threshold: float = OFFLINE_FUZZY_THRESHOLD
    similarity_threshold: float = SIMILARITY_THRESHOLD
    memory_similarity_threshold: float = MEMORY_SIMILARITY_THRESHOLD

    retry_max_attempts: int = RETRY_MAX_ATTEMPTS
    retry_base_delay: float = RETRY_BASE_DELAY
    retry_max_delay: float = RETRY_MAX_DELAY

    store_db: str = STORE_DB
    log_level: str = LOG_LEVEL
    secret_key: str = SECRET_KEY
    host: str = HOST
    port: int = PORT


def load_settings(**overrides) -> Settings:
    """Settings from the environment, with keyword overrides applied."""
    return Settings(**overrides)

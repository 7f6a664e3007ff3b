"""Runtime configuration for DocChat.

Values come from environment variables with sensible defaults, following
the same pattern as the rest of the services: a single pydantic model that
is instantiated once and shared.
"""

import os
from typing import Optional

from pydantic import BaseModel, Field

from .errors import ConfigurationError


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


class Settings(BaseModel):
    # Credentials / endpoints
    api_key: str = Field(default_factory=lambda: os.getenv("DOCCHAT_API_KEY", os.getenv("OPENAI_API_KEY", "")))
    api_base_url: Optional[str] = Field(default_factory=lambda: os.getenv("DOCCHAT_API_BASE_URL") or None)

    # Embeddings
    embedding_model: str = Field(default_factory=lambda: os.getenv("EMBEDDING_MODEL", "BAAI/bge-large-en-v1.5"))
    embedding_batch_size: int = Field(default_factory=lambda: int(os.getenv("EMBEDDING_BATCH_SIZE", "100")), gt=0)
    embedding_max_retries: int = Field(default_factory=lambda: int(os.getenv("EMBEDDING_MAX_RETRIES", "3")), ge=0)
    embedding_timeout: float = Field(default_factory=lambda: float(os.getenv("EMBEDDING_TIMEOUT", "30")), gt=0)

    # Text generation
    llm_model: str = Field(default_factory=lambda: os.getenv("LLM_MODEL_NAME", "gemini-2.5-flash-lite"))
    llm_temperature: float = 0.1
    llm_top_p: float = 0.9
    llm_max_tokens: int = 500

    # Crawling
    max_pages: int = Field(default_factory=lambda: int(os.getenv("SCRAPER_MAX_PAGES", "100")), gt=0)
    crawl_concurrency: int = Field(default_factory=lambda: int(os.getenv("CRAWL_CONCURRENCY", "5")), gt=0)
    crawl_timeout: float = Field(default_factory=lambda: float(os.getenv("CRAWL_TIMEOUT", "5")), gt=0)
    crawl_delay: float = Field(default_factory=lambda: float(os.getenv("CRAWL_DELAY", "0")), ge=0)
    crawl_max_retries: int = Field(default_factory=lambda: int(os.getenv("CRAWL_MAX_RETRIES", "1")), ge=0)
    strip_navigation: bool = Field(default_factory=lambda: _env_bool("CRAWL_STRIP_NAVIGATION"))

    # Chunking
    max_chars_per_chunk: int = Field(default=600, gt=0)
    max_chunks_per_document: int = Field(default=1000, gt=0)
    min_chunk_chars: int = 10

    # Retrieval
    retrieval_top_k: int = Field(default_factory=lambda: int(os.getenv("RETRIEVAL_TOP_K", "5")), gt=0)
    retrieval_threshold: float = Field(default_factory=lambda: float(os.getenv("RETRIEVAL_THRESHOLD", "0.5")))
    max_embedding_failure_rate: float = 0.5

    # Conversation
    max_conversation_history: int = Field(default=10, ge=1)

    # API
    api_host: str = Field(default_factory=lambda: os.getenv("API_HOST", "0.0.0.0"))
    api_port: int = Field(default_factory=lambda: int(os.getenv("API_PORT", "3001")))

    # Logging
    log_level: str = Field(default_factory=lambda: os.getenv("LOG_LEVEL", "INFO"))
    log_json: bool = Field(default_factory=lambda: _env_bool("LOG_JSON"))

    def require_api_key(self) -> str:
        """Return the API key or fail fast when it is missing."""
        if not self.api_key:
            raise ConfigurationError()
        return self.api_key


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Return the process-wide settings, created on first use."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings

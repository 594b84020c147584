"""Configuration management using pydantic-settings."""

import warnings
from enum import Enum
from typing import List, Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(str, Enum):
    """Application environment."""

    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"


def _split_csv(value: Optional[str]) -> List[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


class DatabaseSettings(BaseSettings):
    """Relational store configuration (documents, chunks, embeddings, conversations)."""

    model_config = SettingsConfigDict(env_prefix="DATABASE_", case_sensitive=False)

    url: str = Field(
        default="sqlite:///./botkit_rag.db",
        description="SQLAlchemy database URL. Env var: DATABASE_URL",
    )
    echo: bool = Field(default=False, description="Echo SQL statements. Env var: DATABASE_ECHO")
    pool_pre_ping: bool = Field(
        default=True, description="Test connections before use. Env var: DATABASE_POOL_PRE_PING"
    )


class RedisSettings(BaseSettings):
    """Redis configuration for caching and conversation history."""

    model_config = SettingsConfigDict(env_prefix="REDIS_", case_sensitive=False)

    url: str = Field(default="redis://localhost:6379/0", description="Redis connection URL")
    password: Optional[str] = Field(default=None, description="Redis password")
    socket_timeout: float = Field(default=5.0, description="Socket timeout in seconds")
    socket_connect_timeout: float = Field(default=5.0, description="Connect timeout in seconds")
    key_prefix: str = Field(
        default="botkit", description="Namespace prepended to every cache key. Env var: REDIS_KEY_PREFIX"
    )


class EmbeddingSettings(BaseSettings):
    """Embedding generation configuration."""

    model_config = SettingsConfigDict(env_prefix="", case_sensitive=False)

    openai_api_key: Optional[str] = Field(
        default=None, description="OpenAI API key for embeddings. Env var: OPENAI_API_KEY"
    )
    openai_base_url: Optional[str] = Field(
        default=None, description="Optional OpenAI base URL (advanced). Env var: OPENAI_BASE_URL"
    )
    embedding_model: str = Field(
        default="text-embedding-3-small",
        description="Default embedding model. Env var: EMBEDDING_MODEL",
    )
    embedding_batch_size: int = Field(
        default=20,
        description="Chunks per embedding request (clamped to 1..100). Env var: EMBEDDING_BATCH_SIZE",
    )
    embedding_batch_pause: float = Field(
        default=1.0,
        description="Seconds to pause between batches for multi-batch calls. Env var: EMBEDDING_BATCH_PAUSE",
    )
    embedding_timeout: float = Field(
        default=30.0, description="Embedding request timeout in seconds. Env var: EMBEDDING_TIMEOUT"
    )
    embedding_max_retries: int = Field(
        default=3, description="Max retries for embedding requests. Env var: EMBEDDING_MAX_RETRIES"
    )

    @field_validator("embedding_batch_size")
    @classmethod
    def clamp_batch_size(cls, v: int) -> int:
        """Keep batch size within provider limits."""
        return max(1, min(100, v))

    @property
    def is_configured(self) -> bool:
        """Check if embeddings can be generated."""
        return bool(self.openai_api_key)


class LLMSettings(BaseSettings):
    """Chat completion provider configuration."""

    model_config = SettingsConfigDict(env_prefix="LLM_", case_sensitive=False)

    provider: str = Field(
        default="litellm", description="Provider backend: litellm or openai. Env var: LLM_PROVIDER"
    )
    default_model: str = Field(
        default="gpt-4o-mini", description="Default chat model. Env var: LLM_DEFAULT_MODEL"
    )
    fallback_model: Optional[str] = Field(
        default=None, description="Model tried when the default fails. Env var: LLM_FALLBACK_MODEL"
    )
    max_tokens: int = Field(default=1000, description="Max completion tokens. Env var: LLM_MAX_TOKENS")
    temperature: float = Field(default=0.7, description="Sampling temperature. Env var: LLM_TEMPERATURE")
    timeout: float = Field(default=60.0, description="Request timeout in seconds. Env var: LLM_TIMEOUT")
    max_retries: int = Field(default=3, description="Retries for transient failures. Env var: LLM_MAX_RETRIES")
    api_key: Optional[str] = Field(
        default=None, description="API key passed to the provider. Env var: LLM_API_KEY"
    )
    api_base: Optional[str] = Field(
        default=None, description="Optional API base URL. Env var: LLM_API_BASE"
    )

    @field_validator("provider")
    @classmethod
    def validate_provider(cls, v: str) -> str:
        """Validate provider name."""
        valid = ["litellm", "openai"]
        if v.lower() not in valid:
            raise ValueError(f"LLM provider must be one of {valid}")
        return v.lower()


class RemoteIndexSettings(BaseSettings):
    """Remote vector index (Qdrant) configuration."""

    model_config = SettingsConfigDict(env_prefix="REMOTE_INDEX_", case_sensitive=False)

    enabled: bool = Field(
        default=False, description="Use the remote index instead of local search. Env var: REMOTE_INDEX_ENABLED"
    )
    url: Optional[str] = Field(default=None, description="Qdrant URL. Env var: REMOTE_INDEX_URL")
    api_key: Optional[str] = Field(default=None, description="Qdrant API key. Env var: REMOTE_INDEX_API_KEY")
    collection: str = Field(
        default="knowledge_base", description="Collection name. Env var: REMOTE_INDEX_COLLECTION"
    )
    timeout: int = Field(default=30, description="Request timeout in seconds")

    @property
    def is_configured(self) -> bool:
        """Check if the remote index can be reached."""
        return bool(self.url)


class ChunkingSettings(BaseSettings):
    """Text chunking configuration (character based)."""

    model_config = SettingsConfigDict(env_prefix="CHUNK_", case_sensitive=False)

    size: int = Field(default=1000, description="Target chunk size in characters. Env var: CHUNK_SIZE")
    overlap: int = Field(default=200, description="Overlap in characters. Env var: CHUNK_OVERLAP")
    min_size: int = Field(
        default=700, description="Chunks shorter than this are merged. Env var: CHUNK_MIN_SIZE"
    )


class CacheSettings(BaseSettings):
    """Cache TTLs in seconds."""

    model_config = SettingsConfigDict(env_prefix="CACHE_", case_sensitive=False)

    embedding_ttl: int = Field(default=86400, description="Embedding cache TTL")
    similarity_ttl: int = Field(default=3600, description="Similarity search cache TTL")
    context_ttl: int = Field(default=3600, description="Retrieved context cache TTL")
    conversation_ttl: int = Field(default=3600, description="Conversation history window TTL")


class RetrievalSettings(BaseSettings):
    """Retriever defaults."""

    model_config = SettingsConfigDict(env_prefix="RETRIEVAL_", case_sensitive=False)

    max_results: int = Field(default=5, description="Default number of matches")
    min_similarity: float = Field(default=0.0, description="Default similarity floor")
    context_window: int = Field(default=3, description="Neighbouring chunks fetched on each side")
    deduplication_threshold: float = Field(default=0.95, description="Jaccard threshold for duplicates")
    reranking_enabled: bool = Field(default=True, description="Apply recency/content-type boosts")
    max_context_chunks: int = Field(default=5, description="Chunks retrieved per chat turn")
    min_chunk_relevance: float = Field(default=0.2, description="Similarity floor used for chat turns")


class RateLimitSettings(BaseSettings):
    """Per-identity usage caps over a trailing 24 hour window."""

    model_config = SettingsConfigDict(env_prefix="RATE_LIMIT_", case_sensitive=False)

    token_limit: int = Field(default=100000, description="Tokens per identity per day")
    message_limit: int = Field(default=60, description="User messages per identity per day")
    fail_open: bool = Field(
        default=True, description="Allow traffic when usage cannot be computed. Env var: RATE_LIMIT_FAIL_OPEN"
    )


class ChatSettings(BaseSettings):
    """Chat response behaviour."""

    model_config = SettingsConfigDict(env_prefix="CHAT_", case_sensitive=False)

    max_conversation_turns: int = Field(default=10, description="Turns kept in the history window")
    banned_keywords_str: Optional[str] = Field(
        default=None, description="Comma-separated banned words. Env var: CHAT_BANNED_KEYWORDS_STR"
    )
    site_name: str = Field(default="this website", description="Site identity used in the system prompt")
    greeting_words_str: str = Field(
        default="hi,hello,hey,hola,greetings", description="Greetings answered without retrieval"
    )
    greeting_reply: str = Field(default="Hello! How can I assist you today? 😊")
    fallback_message: str = Field(default="I could not find relevant information.")

    @property
    def banned_keywords(self) -> List[str]:
        """Banned keywords as a list."""
        return _split_csv(self.banned_keywords_str)

    @property
    def greeting_words(self) -> List[str]:
        """Greeting words as a lowercase list."""
        return [w.lower() for w in _split_csv(self.greeting_words_str)]


class LoaderSettings(BaseSettings):
    """Document loader configuration."""

    model_config = SettingsConfigDict(env_prefix="LOADER_", case_sensitive=False)

    allowed_dirs_str: str = Field(
        default="./uploads,./sample_data",
        description="Comma-separated directories files may be loaded from. Env var: LOADER_ALLOWED_DIRS_STR",
    )
    temp_dir: str = Field(default="./uploads/botkit/temp", description="Temporary upload directory")
    temp_max_age: int = Field(default=86400, description="Seconds before temp files are removed")
    url_timeout: float = Field(default=30.0, description="URL fetch timeout in seconds")
    verify_ssl: bool = Field(default=True, description="Verify TLS certificates on fetch")
    user_agent: str = Field(
        default=(
            "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
            "(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36"
        ),
        description="Browser user agent sent on URL fetches",
    )

    @property
    def allowed_dirs(self) -> List[str]:
        """Allow-listed directories as a list."""
        return _split_csv(self.allowed_dirs_str)


class MigrationSettings(BaseSettings):
    """Vector migration configuration."""

    model_config = SettingsConfigDict(env_prefix="MIGRATION_", case_sensitive=False)

    batch_size: int = Field(default=10, description="Vectors per migration batch")
    lock_stale_seconds: int = Field(default=300, description="Age at which a lock is considered abandoned")
    memory_high_water_mb: int = Field(default=512, description="Peak RSS above which gc is forced once per run")
    log_dir: str = Field(default="./logs/migrations", description="Directory for migration log files")
    time_budget_seconds: int = Field(default=300, description="Soft execution budget per run")


class Settings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    app_name: str = Field(default="botkit-rag", description="Application name. Env var: APP_NAME")
    environment: Environment = Field(
        default=Environment.DEVELOPMENT, description="Application environment. Env var: ENVIRONMENT"
    )
    debug: bool = Field(default=False, description="Enable debug mode. Env var: DEBUG")
    log_level: str = Field(default="INFO", description="Logging level. Env var: LOG_LEVEL")

    database: Optional[DatabaseSettings] = None
    redis: Optional[RedisSettings] = None
    embedding: Optional[EmbeddingSettings] = None
    llm: Optional[LLMSettings] = None
    remote_index: Optional[RemoteIndexSettings] = None
    chunking: Optional[ChunkingSettings] = None
    cache: Optional[CacheSettings] = None
    retrieval: Optional[RetrievalSettings] = None
    rate_limit: Optional[RateLimitSettings] = None
    chat: Optional[ChatSettings] = None
    loader: Optional[LoaderSettings] = None
    migration: Optional[MigrationSettings] = None

    @model_validator(mode="after")
    def initialize_nested_settings(self) -> "Settings":
        """Initialize nested settings to ensure they read from environment."""
        if self.database is None:
            self.database = DatabaseSettings()
        if self.redis is None:
            self.redis = RedisSettings()
        if self.embedding is None:
            self.embedding = EmbeddingSettings()
        if self.llm is None:
            self.llm = LLMSettings()
        if self.remote_index is None:
            self.remote_index = RemoteIndexSettings()
        if self.chunking is None:
            self.chunking = ChunkingSettings()
        if self.cache is None:
            self.cache = CacheSettings()
        if self.retrieval is None:
            self.retrieval = RetrievalSettings()
        if self.rate_limit is None:
            self.rate_limit = RateLimitSettings()
        if self.chat is None:
            self.chat = ChatSettings()
        if self.loader is None:
            self.loader = LoaderSettings()
        if self.migration is None:
            self.migration = MigrationSettings()
        return self

    @field_validator("environment", mode="before")
    @classmethod
    def parse_environment(cls, v):
        """Parse environment from string."""
        if isinstance(v, str):
            try:
                return Environment(v.lower())
            except ValueError:
                return Environment.DEVELOPMENT
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Log level must be one of {valid_levels}")
        return v.upper()

    @property
    def is_development(self) -> bool:
        """Check if running in development environment."""
        return self.environment == Environment.DEVELOPMENT

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment == Environment.PRODUCTION

    @property
    def remote_index_active(self) -> bool:
        """True when vector search is delegated to the remote index."""
        return self.remote_index.enabled and self.remote_index.is_configured

    def validate_configuration(self) -> None:
        """Warn about optional services that are not configured."""
        if not self.embedding.is_configured:
            warnings.warn(
                "Embeddings are not configured. Set OPENAI_API_KEY to enable embedding generation.",
                UserWarning,
            )

        if self.remote_index.enabled and not self.remote_index.is_configured:
            warnings.warn(
                "REMOTE_INDEX_ENABLED is set but REMOTE_INDEX_URL is missing; "
                "similarity search will use the local store.",
                UserWarning,
            )

    def validate_production_settings(self) -> None:
        """Validate that production settings are safe."""
        if self.is_production:
            if self.debug:
                raise ValueError("DEBUG must be False in production")

            if self.database.url.startswith("sqlite"):
                raise ValueError("A server database must be configured in production (DATABASE_URL)")


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get the global settings instance."""
    global _settings
    if _settings is None:
        _settings = Settings()
        _settings.validate_configuration()
        try:
            _settings.validate_production_settings()
        except ValueError as e:
            import logging

            logging.error(f"Configuration validation failed: {e}")
            if _settings.is_production:
                raise
    return _settings


def reset_settings() -> None:
    """Drop the cached settings instance (used by tests and reloads)."""
    global _settings
    _settings = None

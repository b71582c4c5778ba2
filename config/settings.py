"""
Configuration settings for the BotKit RAG core.

This module handles all configuration management using environment variables.
No hardcoded values - everything is configurable via .env file, and every
component accepts an explicit config object so nothing reads ambient globals.
"""

import logging
import os
import sys
from dataclasses import dataclass, field
from typing import Dict, List, Literal, Optional, Tuple
from pathlib import Path
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_list(name: str, default: str) -> List[str]:
    raw = os.getenv(name, default)
    return [item.strip() for item in raw.split(",") if item.strip()]


@dataclass
class DatabaseConfig:
    """Configuration for the relational store."""

    url: str = "sqlite:///./data/botkit.db"
    echo: bool = False


@dataclass
class EmbeddingConfig:
    """Configuration for embedding generation."""

    provider: str = "openai"
    model: str = "text-embedding-3-small"
    batch_size: int = 20
    max_retries: int = 3
    retry_base_delay: float = 1.0
    allow_fallback: bool = True
    cache_ttl: int = 86400

    # Embedding dimensions (depends on model)
    # text-embedding-3-small: 1536
    # text-embedding-004: 768
    # voyage-2: 1024
    @property
    def dimension(self) -> int:
        """Return embedding dimension based on selected model."""
        model_dimensions = {
            "text-embedding-3-small": 1536,
            "text-embedding-3-large": 3072,
            "text-embedding-ada-002": 1536,
            "text-embedding-004": 768,
            "voyage-2": 1024,
            "mistral-embed": 1024,
            "nomic-embed-text": 768,
        }
        return model_dimensions.get(self.model, 1536)


@dataclass
class LLMConfig:
    """Configuration for LLM providers."""

    provider: str = "openai"
    fallback_order: List[str] = field(
        default_factory=lambda: ["openai", "anthropic", "google", "together"]
    )
    max_retries: int = 1
    retry_base_delay: float = 1.0
    completion_cache_ttl: int = 3600

    # Generation defaults
    default_max_tokens: int = 1000
    default_temperature: float = 0.7

    # OpenAI settings
    openai_api_key: Optional[str] = None
    openai_model: str = "gpt-4o-mini"
    openai_embedding_model: str = "text-embedding-3-small"
    openai_timeout: float = 60.0

    # Anthropic settings (embeddings go through Voyage)
    anthropic_api_key: Optional[str] = None
    anthropic_model: str = "claude-3-5-haiku-latest"
    anthropic_timeout: float = 60.0
    voyage_api_key: Optional[str] = None
    voyage_embedding_model: str = "voyage-2"

    # Google settings
    google_api_key: Optional[str] = None
    google_model: str = "gemini-2.0-flash"
    google_embedding_model: str = "text-embedding-004"
    google_timeout: float = 60.0

    # Together settings
    together_api_key: Optional[str] = None
    together_model: str = "meta-llama/Llama-3.3-70B-Instruct-Turbo"
    together_embedding_model: str = "togethercomputer/m2-bert-80M-8k-retrieval"
    together_timeout: float = 30.0

    # Ollama settings (local)
    ollama_enabled: bool = False
    ollama_base_url: str = "http://localhost:11434"
    ollama_model: str = "llama3.2"
    ollama_embedding_model: str = "nomic-embed-text"
    ollama_timeout: float = 60.0

    # Mistral settings
    mistral_api_key: Optional[str] = None
    mistral_model: str = "mistral-small-latest"
    mistral_embedding_model: str = "mistral-embed"
    mistral_timeout: float = 60.0


@dataclass
class VectorStoreConfig:
    """Configuration for vector store."""

    backend: Literal["local", "pinecone"] = "local"

    # Pinecone settings
    pinecone_api_key: Optional[str] = None
    pinecone_host: Optional[str] = None
    pinecone_namespace: str = ""
    pinecone_timeout: float = 30.0
    pinecone_upsert_batch: int = 100

    # Cache for similarity searches (seconds)
    search_cache_ttl: int = 3600


@dataclass
class ChunkingConfig:
    """Configuration for document chunking."""

    chunk_size: int = 1000  # Characters per chunk
    chunk_overlap: int = 200  # Overlap between consecutive chunks


@dataclass
class RetrievalConfig:
    """Configuration for retrieval settings."""

    top_k: int = 5  # Number of chunks to retrieve
    min_relevance: float = 0.2  # Minimum cosine similarity
    context_window: int = 3  # Neighbouring chunks used by context expansion
    deduplication_threshold: float = 0.95
    reranking_enabled: bool = True
    overfetch_factor: int = 3
    cache_ttl: int = 3600


@dataclass
class ChatConfig:
    """Configuration for response generation."""

    site_name: str = "our website"
    personality: str = "a friendly and knowledgeable assistant"
    tone: str = "professional"
    max_messages: int = 10
    context_length: int = 4000  # Max characters of retrieved context
    fallback_message: str = "I could not find relevant information."
    greeting_message: str = "Hello! How can I assist you today? 😊"
    greetings: List[str] = field(
        default_factory=lambda: ["hi", "hello", "hey", "hola", "greetings"]
    )
    banned_keywords: List[str] = field(default_factory=list)
    guest_hash_salt: str = "botkit"


@dataclass
class RateLimitConfig:
    """Configuration for rate limiting and daily quotas."""

    max_requests_per_day: int = 60
    window_seconds: int = 86400
    token_limit_per_day: int = 100000
    # action -> (window_seconds, max_requests); chat_message derives from the above
    actions: Dict[str, Tuple[int, int]] = field(default_factory=dict)

    def quota_for(self, action: str) -> Tuple[int, int]:
        """Return (window, max_requests) for an action."""
        if action in self.actions:
            return self.actions[action]
        return self.window_seconds, self.max_requests_per_day


@dataclass
class QueueConfig:
    """Configuration for the document processing queue."""

    batch_size: int = 10
    interval_seconds: int = 300
    lock_ttl: int = 600
    stale_processing_seconds: int = 3600


@dataclass
class MigrationConfig:
    """Configuration for backend migrations."""

    batch_size: int = 20
    lock_ttl: int = 3600
    max_recorded_errors: int = 50


@dataclass
class CacheConfig:
    """Default TTLs (seconds) per cache group."""

    group_ttls: Dict[str, int] = field(default_factory=lambda: {
        "database": 300,
        "ajax": 120,
        "migration": 300,
        "admin_interface": 300,
        "content": 600,
        "performance": 900,
        "search": 300,
    })
    default_ttl: int = 300


@dataclass
class LoaderConfig:
    """Configuration for document loading."""

    allowed_dirs: List[str] = field(default_factory=lambda: ["./data/uploads"])
    fetch_timeout: float = 30.0
    user_agent: str = "BotKit/1.0"


@dataclass
class StateConfig:
    """Configuration for the persisted state repository."""

    backend: Literal["memory", "sql", "mongodb"] = "sql"
    mongodb_uri: Optional[str] = None
    mongodb_database: str = "botkit"
    mongodb_collection: str = "state"


@dataclass
class Settings:
    """
    Main settings class that aggregates all configurations.

    Usage:
        settings = get_settings()
        print(settings.llm.provider)
        print(settings.rate_limit.max_requests_per_day)
    """

    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    embedding: EmbeddingConfig = field(default_factory=EmbeddingConfig)
    llm: LLMConfig = field(default_factory=LLMConfig)
    vector_store: VectorStoreConfig = field(default_factory=VectorStoreConfig)
    chunking: ChunkingConfig = field(default_factory=ChunkingConfig)
    retrieval: RetrievalConfig = field(default_factory=RetrievalConfig)
    chat: ChatConfig = field(default_factory=ChatConfig)
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)
    migration: MigrationConfig = field(default_factory=MigrationConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    loader: LoaderConfig = field(default_factory=LoaderConfig)
    state: StateConfig = field(default_factory=StateConfig)

    # Paths
    project_root: Path = field(default_factory=lambda: Path(__file__).parent.parent)
    data_dir: Path = field(default_factory=lambda: Path(__file__).parent.parent / "data")

    # Logging
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        """
        Create Settings instance from environment variables.

        This is the primary way to instantiate Settings.
        """
        database = DatabaseConfig(
            url=os.getenv("DATABASE_URL", "sqlite:///./data/botkit.db"),
            echo=_env_bool("DATABASE_ECHO", False),
        )

        embedding = EmbeddingConfig(
            provider=os.getenv("EMBEDDING_PROVIDER", "openai"),
            model=os.getenv("EMBEDDING_MODEL", "text-embedding-3-small"),
            batch_size=int(os.getenv("EMBEDDING_BATCH_SIZE", "20")),
            max_retries=int(os.getenv("EMBEDDING_MAX_RETRIES", "3")),
            retry_base_delay=float(os.getenv("EMBEDDING_RETRY_DELAY", "1.0")),
            allow_fallback=_env_bool("EMBEDDING_FALLBACK", True),
        )

        llm = LLMConfig(
            provider=os.getenv("LLM_PROVIDER", "openai"),
            fallback_order=_env_list("LLM_FALLBACK_ORDER", "openai,anthropic,google,together"),
            max_retries=int(os.getenv("LLM_MAX_RETRIES", "1")),
            default_max_tokens=int(os.getenv("LLM_MAX_TOKENS", "1000")),
            default_temperature=float(os.getenv("LLM_TEMPERATURE", "0.7")),
            openai_api_key=os.getenv("OPENAI_API_KEY"),
            openai_model=os.getenv("OPENAI_LLM_MODEL", "gpt-4o-mini"),
            openai_embedding_model=os.getenv("OPENAI_EMBEDDING_MODEL", "text-embedding-3-small"),
            anthropic_api_key=os.getenv("ANTHROPIC_API_KEY"),
            anthropic_model=os.getenv("ANTHROPIC_MODEL", "claude-3-5-haiku-latest"),
            voyage_api_key=os.getenv("VOYAGE_API_KEY"),
            google_api_key=os.getenv("GOOGLE_API_KEY") or os.getenv("GEMINI_API_KEY"),
            google_model=os.getenv("GOOGLE_MODEL", "gemini-2.0-flash"),
            together_api_key=os.getenv("TOGETHER_API_KEY"),
            together_model=os.getenv("TOGETHER_MODEL", "meta-llama/Llama-3.3-70B-Instruct-Turbo"),
            ollama_enabled=_env_bool("OLLAMA_ENABLED", False),
            ollama_base_url=os.getenv("OLLAMA_BASE_URL", "http://localhost:11434"),
            ollama_model=os.getenv("OLLAMA_MODEL", "llama3.2"),
            mistral_api_key=os.getenv("MISTRAL_API_KEY"),
            mistral_model=os.getenv("MISTRAL_MODEL", "mistral-small-latest"),
        )

        vector_store = VectorStoreConfig(
            backend=os.getenv("VECTOR_STORE_BACKEND", "local"),  # type: ignore
            pinecone_api_key=os.getenv("PINECONE_API_KEY"),
            pinecone_host=os.getenv("PINECONE_HOST"),
            pinecone_namespace=os.getenv("PINECONE_NAMESPACE", ""),
            pinecone_timeout=float(os.getenv("PINECONE_TIMEOUT", "30")),
        )

        chunking = ChunkingConfig(
            chunk_size=int(os.getenv("CHUNK_SIZE", "1000")),
            chunk_overlap=int(os.getenv("CHUNK_OVERLAP", "200")),
        )

        retrieval = RetrievalConfig(
            top_k=int(os.getenv("TOP_K_RESULTS", "5")),
            min_relevance=float(os.getenv("MIN_RELEVANCE", "0.2")),
            context_window=int(os.getenv("CONTEXT_WINDOW", "3")),
            reranking_enabled=_env_bool("RERANKING_ENABLED", True),
        )

        chat = ChatConfig(
            site_name=os.getenv("SITE_NAME", "our website"),
            personality=os.getenv("CHATBOT_PERSONALITY", "a friendly and knowledgeable assistant"),
            tone=os.getenv("CHAT_TONE", "professional"),
            max_messages=int(os.getenv("MAX_MESSAGES", "10")),
            context_length=int(os.getenv("MAX_CONTEXT_LENGTH", "4000")),
            fallback_message=os.getenv("FALLBACK_MESSAGE", "I could not find relevant information."),
            banned_keywords=_env_list("BANNED_KEYWORDS", ""),
            guest_hash_salt=os.getenv("GUEST_HASH_SALT", "botkit"),
        )

        rate_limit = RateLimitConfig(
            max_requests_per_day=int(os.getenv("MAX_REQUESTS_PER_DAY", "60")),
            window_seconds=int(os.getenv("RATE_LIMIT_WINDOW", "86400")),
            token_limit_per_day=int(os.getenv("TOKEN_LIMIT_PER_DAY", "100000")),
        )

        queue = QueueConfig(
            batch_size=int(os.getenv("QUEUE_BATCH_SIZE", "10")),
            interval_seconds=int(os.getenv("QUEUE_INTERVAL_SECONDS", "300")),
        )

        migration = MigrationConfig(
            batch_size=int(os.getenv("MIGRATION_BATCH_SIZE", "20")),
        )

        loader = LoaderConfig(
            allowed_dirs=_env_list("UPLOAD_DIRS", "./data/uploads"),
            fetch_timeout=float(os.getenv("FETCH_TIMEOUT", "30")),
        )

        state = StateConfig(
            backend=os.getenv("STATE_BACKEND", "sql"),  # type: ignore
            mongodb_uri=os.getenv("MONGODB_URI"),
            mongodb_database=os.getenv("MONGODB_DATABASE", "botkit"),
            mongodb_collection=os.getenv("MONGODB_COLLECTION", "state"),
        )

        return cls(
            database=database,
            embedding=embedding,
            llm=llm,
            vector_store=vector_store,
            chunking=chunking,
            retrieval=retrieval,
            chat=chat,
            rate_limit=rate_limit,
            queue=queue,
            migration=migration,
            loader=loader,
            state=state,
            log_level=os.getenv("LOG_LEVEL", "INFO"),
        )


def configure_logging(level: Optional[str] = None) -> None:
    """Apply the project-wide log format and level."""
    logging.basicConfig(
        level=getattr(logging, (level or get_settings().log_level).upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )


# Singleton pattern for settings
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """
    Get the singleton Settings instance.

    Returns:
        Settings: The application settings loaded from environment.
    """
    global _settings
    if _settings is None:
        _settings = Settings.from_env()
    return _settings


def reload_settings() -> Settings:
    """
    Reload settings from environment (useful for testing).

    Returns:
        Settings: Fresh settings instance.
    """
    global _settings
    load_dotenv(override=True)
    _settings = Settings.from_env()
    return _settings

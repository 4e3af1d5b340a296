"""Configuration management for MindSieve."""

import os
from dataclasses import dataclass, field
from typing import Optional, List
from functools import lru_cache


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class GCPConfig:
    """Google Cloud project configuration."""
    project_id: str = "mindsieve-research-assistant"
    region: str = "europe-west1"


@dataclass
class ElasticsearchConfig:
    """Elasticsearch connection configuration.

    The URL and API key are never configured directly; they are read from
    Secret Manager using the secret names below.
    """
    url_secret_name: str = "ELASTICSEARCH_URL"
    api_key_secret_name: str = "ELASTICSEARCH_API_KEY"
    index: str = "arxiv_cs_articles"
    vector_field: str = "abstract_vector"
    request_timeout: float = 30.0


@dataclass
class EmbeddingConfig:
    """Embedding endpoint configuration."""
    model_name: str = "text-embedding-005"
    max_chars: int = 5000
    fallback_regions: List[str] = field(default_factory=lambda: ["europe-west4"])
    timeout: float = 20.0


@dataclass
class GenerationConfig:
    """LLM generation configuration."""
    provider: str = "gemini"  # gemini, openai, anthropic
    model: str = "gemini-2.5-flash"
    max_tokens: int = 1600
    temperature: float = 0.2
    top_p: float = 0.9
    stream_char_cap: int = 9000
    use_search_grounding: bool = True

    # API keys for the non-Vertex providers
    openai_api_key: Optional[str] = None
    anthropic_api_key: Optional[str] = None


@dataclass
class EnhancerConfig:
    """Query enhancer configuration."""
    timeout_seconds: float = 4.0
    cache_ttl: int = 300
    max_query_chars: int = 240
    max_punct_ratio: float = 0.15
    max_hypothetical_chars: int = 700
    max_keywords: int = 10


@dataclass
class RetrievalConfig:
    """Hybrid retrieval configuration."""
    top_k: int = 10
    num_candidates: int = 80
    rank_window_size: int = 128
    rank_constant: int = 20
    min_filtered_hits: int = 3


@dataclass
class PromptConfig:
    """Grounding prompt limits."""
    max_snippets: int = 8
    max_chars_per_snippet: int = 800


@dataclass
class CardConfig:
    """Study card generation configuration."""
    model: str = "gemini-2.5-flash-lite"
    temperature: float = 0.2
    use_search_grounding: bool = False


@dataclass
class TasksConfig:
    """Cloud Tasks configuration."""
    enabled: bool = False  # Cloud Run sets K_SERVICE
    force_sync: bool = False
    location: str = "europe-west1"
    queue: str = "study-cards"
    handler_url: Optional[str] = None
    service_account_email: Optional[str] = None


@dataclass
class RedisConfig:
    """Redis configuration."""
    url: str = "redis://redis:6379"


@dataclass
class CacheConfig:
    """Enhancer cache configuration."""
    backend: str = "memory"  # memory, redis
    redis: RedisConfig = field(default_factory=RedisConfig)


@dataclass
class FirestoreConfig:
    """Firestore configuration."""
    backend: str = "firestore"  # firestore, memory
    database: Optional[str] = None


@dataclass
class SessionConfig:
    """Session cookie configuration."""
    cookie_anon_id: str = "ms_anon_id"
    cookie_session_id: str = "ms_session_id"
    cookie_session_key: str = "ms_session_key"
    max_age: int = 60 * 60 * 24 * 90  # 90 days


@dataclass
class Settings:
    """Main application settings."""
    app_name: str = "MindSieve"
    debug: bool = False
    api_prefix: str = "/api"

    # Sub-configurations
    gcp: GCPConfig = field(default_factory=GCPConfig)
    elasticsearch: ElasticsearchConfig = field(default_factory=ElasticsearchConfig)
    embedding: EmbeddingConfig = field(default_factory=EmbeddingConfig)
    generation: GenerationConfig = field(default_factory=GenerationConfig)
    enhancer: EnhancerConfig = field(default_factory=EnhancerConfig)
    retrieval: RetrievalConfig = field(default_factory=RetrievalConfig)
    prompt: PromptConfig = field(default_factory=PromptConfig)
    cards: CardConfig = field(default_factory=CardConfig)
    tasks: TasksConfig = field(default_factory=TasksConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    firestore: FirestoreConfig = field(default_factory=FirestoreConfig)
    session: SessionConfig = field(default_factory=SessionConfig)

    @property
    def embedding_regions(self) -> List[str]:
        """Regions tried by the embedding resolver, primary region first."""
        regions = [self.gcp.region]
        for region in self.embedding.fallback_regions:
            if region not in regions:
                regions.append(region)
        return regions


@lru_cache()
def get_settings() -> Settings:
    """Get application settings from environment."""
    region = os.getenv("GCP_REGION", GCPConfig.region)
    return Settings(
        debug=_env_bool("DEBUG"),
        gcp=GCPConfig(
            project_id=os.getenv("GCP_PROJECT_ID", GCPConfig.project_id),
            region=region,
        ),
        elasticsearch=ElasticsearchConfig(
            url_secret_name=os.getenv("ES_URL_SECRET_NAME", ElasticsearchConfig.url_secret_name),
            api_key_secret_name=os.getenv("ES_API_KEY_SECRET_NAME", ElasticsearchConfig.api_key_secret_name),
            index=os.getenv("ES_INDEX", ElasticsearchConfig.index),
        ),
        embedding=EmbeddingConfig(
            model_name=os.getenv("EMBEDDING_MODEL_NAME", EmbeddingConfig.model_name),
        ),
        generation=GenerationConfig(
            provider=os.getenv("LLM_PROVIDER", GenerationConfig.provider),
            model=os.getenv("GENERATIVE_MODEL_NAME", GenerationConfig.model),
            max_tokens=min(1600, int(os.getenv("CHAT_MAX_TOKENS", "1600"))),
            stream_char_cap=int(os.getenv("CHAT_CHAR_CAP", str(GenerationConfig.stream_char_cap))),
            use_search_grounding=_env_bool("CHAT_USE_SEARCH_GROUNDING", True),
            openai_api_key=os.getenv("OPENAI_API_KEY"),
            anthropic_api_key=os.getenv("ANTHROPIC_API_KEY"),
        ),
        cards=CardConfig(
            model=os.getenv("CARD_MODEL_NAME", CardConfig.model),
            use_search_grounding=_env_bool("CARD_USE_SEARCH_GROUNDING"),
        ),
        tasks=TasksConfig(
            enabled=bool(os.getenv("K_SERVICE")) or _env_bool("TASKS_ENABLED"),
            force_sync=_env_bool("FORCE_SYNC"),
            location=os.getenv("TASKS_LOCATION", region),
            queue=os.getenv("TASKS_QUEUE", TasksConfig.queue),
            handler_url=os.getenv("TASKS_HANDLER_URL"),
            service_account_email=os.getenv("TASKS_SA_EMAIL"),
        ),
        cache=CacheConfig(
            backend=os.getenv("CACHE_BACKEND", CacheConfig.backend),
            redis=RedisConfig(url=os.getenv("REDIS_URL", RedisConfig.url)),
        ),
        firestore=FirestoreConfig(
            backend=os.getenv("DOCUMENT_STORE", FirestoreConfig.backend),
            database=os.getenv("FIRESTORE_DATABASE"),
        ),
    )

"""Runtime configuration helpers.

Classes:
    Settings: Pydantic settings model capturing environment-driven defaults.

Functions:
    get_settings(): Return a cached Settings instance shared by the composition root.
"""

from functools import lru_cache
from typing import Literal

from pydantic import SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    app_name: str = "Workshop RAG Core"
    database_url: str = "sqlite+aiosqlite:///./data/workshop_rag.db"
    log_level: str = "INFO"

    openai_api_key: SecretStr | None = None
    openai_base_url: str | None = None
    default_embedding_model: str = "text-embedding-3-small"
    embedding_preproc_version: str = "norm-nfkc-v1"

    embedding_cache_max_entries: int = 10000
    embedding_cache_ttl_seconds: float | None = None
    embedding_cache_policy: Literal["fifo", "lru"] = "fifo"
    persistent_embedding_cache: bool = False

    embedding_batch_size: int = 100
    embedding_max_retries: int = 3
    embedding_retry_delay: float = 1.0
    embedding_timeout: float = 30.0
    inter_batch_delay: float = 0.1
    retry_jitter: float = 0.0
    retry_max_delay: float = 30.0

    vector_batch_size: int = 100
    vector_max_retries: int = 3
    vector_retry_delay: float = 1.0
    default_similarity_metric: Literal["cosine", "l2", "inner_product"] = "cosine"
    default_similarity_threshold: float = 0.7
    exact_search_max_rows: int = 1000
    hnsw_min_rows: int = 100000
    ann_candidate_multiplier: int = 4

    rag_max_tokens: int = 4000
    rag_max_documents: int = 10
    rag_min_chunk_size: int = 100
    rag_max_chunk_size: int | None = None
    rag_truncation_strategy: Literal["head", "tail", "middle", "smart"] = "smart"
    recency_decay_days: float = 30.0

    search_default_limit: int = 20
    search_candidate_pool: int = 200
    search_similarity_threshold: float = 0.5
    multilingual_language_boost: float = 0.05

    metrics_history_size: int = 10000
    alert_embedding_time_ms: float = 5000.0
    alert_embedding_success_rate: float = 0.9
    alert_search_time_ms: float = 1000.0
    alert_min_average_results: float = 1.0
    index_drift_threshold: float = 0.3


@lru_cache()
def get_settings() -> Settings:
    return Settings()

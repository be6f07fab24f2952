"""Runtime configuration helpers.

Classes:
    Settings: Pydantic settings model capturing environment-driven defaults.

Functions:
    get_settings(): Return a cached Settings instance for dependency injection.
"""

from functools import lru_cache

from pydantic import SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    app_name: str = "Opinion Map API"
    app_url: str = "http://localhost:8000"
    database_url: str = "sqlite+aiosqlite:///./data/opinion_map.db"
    log_level: str = "INFO"

    openai_api_key: SecretStr | None = None
    openai_base_url: str | None = None
    openai_embedding_model: str = "text-embedding-3-small"
    openai_labeling_model: str = "gpt-4.1-mini"
    openai_timeout_seconds: float = 60.0
    embedding_dim: int = 1536
    embedding_batch_size: int = 100
    embedding_lookup_batch_size: int = 500
    embedding_fetch_batch_size: int = 200
    embedding_max_chars: int = 8000

    # Empirically tuned; see DESIGN.md before changing.
    min_vectorization_ratio: float = 0.5
    pca_components: int = 20

    umap_n_neighbors: int = 15
    umap_min_dist: float = 0.1
    umap_spread: float = 1.0
    display_range_min: float = 0.0
    display_range_max: float = 100.0

    kmeans_min_k: int = 5
    kmeans_max_k: int = 12
    kmeans_max_iter: int = 100
    outlier_confidence_threshold: float = 0.5

    labeling_concurrency: int = 5
    labeling_max_posts: int = 50
    labeling_temperature: float = 0.5
    labeling_max_tokens: int = 500
    labeling_timeout_seconds: float = 45.0
    default_zone_language: str = "en"

    projection_batch_size: int = 1000
    default_sample_size: int = 2500
    max_sample_size: int = 10000

    qstash_url: str = "https://qstash.upstash.io"
    qstash_token: SecretStr | None = None
    qstash_current_signing_key: SecretStr | None = None
    qstash_next_signing_key: SecretStr | None = None
    qstash_retries: int = 3
    worker_api_key: SecretStr | None = None
    dispatch_mode: str = "background"


@lru_cache()
def get_settings() -> Settings:
    return Settings()

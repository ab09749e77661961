from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from qroute.constants import (
    CACHE_KEY_PREFIX,
    CACHE_MAX_ENTRIES,
    DEFAULT_MAX_ROWS,
    DEFAULT_STEP_TIMEOUT_MS,
    EMBEDDING_MODELS,
    HNSW_EF_MAX,
    MAX_TABLES,
    RRF_K_FIELD,
    RRF_K_MODALITY,
    TTL_CLASSIFICATION,
    TTL_EMBEDDING,
    TTL_FIELD_SELECTION,
    TTL_SQL_TEXT,
)
from qroute.embedder import EmbeddingConfig
from qroute.models import Normalization
from qroute.vector.types import TuningPolicy, TuningPreset

QROUTE_DIR = Path.home() / ".qroute"

CACHE_BACKENDS = ("memory", "redis", "sqlite")
VECTOR_BACKENDS = ("qdrant", "memory")


class Config(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="QROUTE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        validate_assignment=True,
        populate_by_name=True,
    )

    # API keys, read from standard env vars via aliases
    openai_api_key: str | None = Field(default=None, alias="OPENAI_API_KEY")
    anthropic_api_key: str | None = Field(default=None, alias="ANTHROPIC_API_KEY")

    # Models (any litellm model id)
    llm_model: str = "gpt-4o-mini"
    embedding_model: str = "text-embedding-3-small"

    # Relational store the generated SQL runs against
    database_path: Path = QROUTE_DIR / "data.db"
    id_field: str = "id"

    # Vector index
    vector_backend: str = "qdrant"
    qdrant_url: str = "http://localhost:6333"
    qdrant_api_key: str | None = Field(default=None, alias="QDRANT_API_KEY")
    collection_prefix: str = ""
    id_payload_key: str | None = None
    search_preset: TuningPreset = TuningPreset.BALANCED
    adaptive_breadth: bool = True
    max_hnsw_ef: int = HNSW_EF_MAX
    exact_search: bool = False

    # Fusion
    rrf_k_field: int = RRF_K_FIELD
    rrf_k_modality: int = RRF_K_MODALITY
    normalization: Normalization = Normalization.NONE

    # Cache
    cache_enabled: bool = True
    cache_backend: str = "memory"
    redis_url: str = "redis://localhost:6379/0"
    cache_db_path: Path = QROUTE_DIR / "cache.db"
    cache_prefix: str = CACHE_KEY_PREFIX
    cache_max_entries: int = CACHE_MAX_ENTRIES
    ttl_embedding: int = TTL_EMBEDDING
    ttl_classification: int = TTL_CLASSIFICATION
    ttl_field_selection: int = TTL_FIELD_SELECTION
    ttl_sql_text: int = TTL_SQL_TEXT

    # Workflow defaults
    max_rows: int = DEFAULT_MAX_ROWS
    timeout_ms: int = DEFAULT_STEP_TIMEOUT_MS
    max_tables: int = MAX_TABLES
    error_correction: bool = True

    # Server
    host: str = "127.0.0.1"
    port: int = 8000
    log_level: str = "INFO"

    @field_validator("cache_backend")
    @classmethod
    def _validate_cache_backend(cls, v: str) -> str:
        if v not in CACHE_BACKENDS:
            raise ValueError(f"Unsupported cache backend: {v}. Must be one of: {', '.join(CACHE_BACKENDS)}")
        return v

    @field_validator("vector_backend")
    @classmethod
    def _validate_vector_backend(cls, v: str) -> str:
        if v not in VECTOR_BACKENDS:
            raise ValueError(f"Unsupported vector backend: {v}. Must be one of: {', '.join(VECTOR_BACKENDS)}")
        return v

    @field_validator("embedding_model")
    @classmethod
    def _validate_embedding_model(cls, v: str) -> str:
        if v not in EMBEDDING_MODELS:
            raise ValueError(f"Unsupported embedding model: {v}. Must be one of: {', '.join(EMBEDDING_MODELS)}")
        return v

    @field_validator("rrf_k_field", "rrf_k_modality", "max_hnsw_ef", "max_rows", "timeout_ms", "max_tables")
    @classmethod
    def _validate_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError(f"must be positive, got {v}")
        return v

    @field_validator("ttl_embedding", "ttl_classification", "ttl_field_selection", "ttl_sql_text")
    @classmethod
    def _validate_ttl(cls, v: int) -> int:
        if v < 1:
            raise ValueError(f"TTL must be at least one second, got {v}")
        return v

    @property
    def embedding(self) -> EmbeddingConfig:
        return EmbeddingConfig(model=self.embedding_model, dim=EMBEDDING_MODELS[self.embedding_model])

    @property
    def cache_ttls(self) -> dict[str, int]:
        return {
            "embedding": self.ttl_embedding,
            "classification": self.ttl_classification,
            "field_selection": self.ttl_field_selection,
            "sql_text": self.ttl_sql_text,
        }

    @property
    def tuning_policy(self) -> TuningPolicy:
        return TuningPolicy(
            preset=self.search_preset,
            adaptive_breadth=self.adaptive_breadth,
            max_hnsw_ef=self.max_hnsw_ef,
            exact=self.exact_search,
        )


def get_config() -> Config:
    return Config()

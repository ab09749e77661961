from typing import Any

import litellm.llms.custom_httpx.async_client_cleanup as litellm_cleanup

from qroute.cache import CacheBackend, MemoryCacheBackend, RedisCacheBackend, ResultCache, SqliteCacheBackend
from qroute.config import Config, get_config
from qroute.database import Database
from qroute.embedder import CachedEmbedder, Embedder
from qroute.fusion import FusionEngine
from qroute.llm.agents import LLMClassifier, LLMErrorCorrector, LLMFieldSelector, LLMSqlGenerator, StructuredLLM
from qroute.logging import get_logger
from qroute.models import FusedHit, WorkflowInput, WorkflowResult
from qroute.orchestrator import WorkflowOrchestrator
from qroute.search import HybridQuery, HybridRetriever
from qroute.sql import SqliteExecutor
from qroute.vector import MemoryVectorIndex, QdrantVectorIndex, VectorIndex, VectorIndexClient

_logger = get_logger(__name__)


def create_cache_backend(config: Config) -> CacheBackend:
    if config.cache_backend == "redis":
        return RedisCacheBackend(config.redis_url)
    if config.cache_backend == "sqlite":
        config.cache_db_path.parent.mkdir(parents=True, exist_ok=True)
        return SqliteCacheBackend(config.cache_db_path)
    return MemoryCacheBackend(max_entries=config.cache_max_entries)


def create_vector_index(config: Config) -> VectorIndex:
    if config.vector_backend == "memory":
        return MemoryVectorIndex()
    return QdrantVectorIndex(url=config.qdrant_url, api_key=config.qdrant_api_key)


class Runtime:
    """Builds every handle once from Config and owns their lifecycle."""

    def __init__(self, config: Config | None = None):
        self.config = config or get_config()

        self.cache = ResultCache(
            create_cache_backend(self.config),
            ttls=self.config.cache_ttls,
            prefix=self.config.cache_prefix,
            enabled=self.config.cache_enabled,
        )
        self.embedder = CachedEmbedder(Embedder(self.config.embedding), self.cache)
        self.vector_index = create_vector_index(self.config)
        self.vector_client = VectorIndexClient(
            self.vector_index,
            self.embedder,
            policy=self.config.tuning_policy,
            id_payload_key=self.config.id_payload_key,
            collection_prefix=self.config.collection_prefix,
        )
        self.fusion = FusionEngine(
            k_field=self.config.rrf_k_field,
            k_modality=self.config.rrf_k_modality,
            normalization=self.config.normalization,
        )
        self.retriever = HybridRetriever(self.vector_client, self.fusion)
        self.database = Database(self.config.database_path, read_only=True)

        llm = StructuredLLM(self.config.llm_model)
        self.orchestrator = WorkflowOrchestrator(
            classifier=LLMClassifier(llm),
            field_selector=LLMFieldSelector(llm),
            sql_generator=LLMSqlGenerator(llm),
            sql_executor=SqliteExecutor(self.database),
            cache=self.cache,
            fusion=self.fusion,
            vector_client=self.vector_client,
            error_corrector=LLMErrorCorrector(llm) if self.config.error_correction else None,
            tuning_policy=self.config.tuning_policy,
            normalization=self.config.normalization,
            max_tables=self.config.max_tables,
            id_field=self.config.id_field,
        )
        self._connected = False

    async def connect(self) -> None:
        if self._connected:
            return
        await self.cache.backend.connect()
        await self.vector_index.connect()
        await self.database.connect()
        self._connected = True
        _logger.info(
            "Runtime connected",
            cache=self.cache.backend.name,
            vector_index=self.vector_index.name,
            database=str(self.config.database_path),
        )

    async def close(self) -> None:
        await self.database.close()
        await self.vector_index.close()
        await self.cache.close()
        await litellm_cleanup.close_litellm_async_clients()
        self._connected = False

    @property
    def connected(self) -> bool:
        return self._connected

    async def query(self, payload: WorkflowInput | dict[str, Any]) -> WorkflowResult:
        return await self.orchestrator.run(payload)

    async def search(self, query: HybridQuery) -> list[FusedHit]:
        return await self.retriever.search(query)

    async def status(self) -> dict[str, Any]:
        return {
            "connected": self._connected,
            "llm_model": self.config.llm_model,
            "embedding_model": self.config.embedding_model,
            "database": str(self.config.database_path),
            "vector_index": self.vector_index.name,
            "cache": await self.cache.stats(),
        }

import asyncio
from dataclasses import dataclass

import litellm
import numpy as np

from qroute.cache import CacheNamespace, ResultCache
from qroute.collaborators import EmbeddingProvider
from qroute.constants import EMBEDDING_TEXT_LIMIT
from qroute.database import deserialize_embedding, serialize_embedding
from qroute.llm.retry import upstream_errors, with_retry


@dataclass
class EmbeddingConfig:
    model: str
    dim: int


class Embedder:
    def __init__(self, config: EmbeddingConfig):
        self.config = config

    @property
    def model(self) -> str:
        return self.config.model

    def _normalize(self, embeddings: np.ndarray) -> np.ndarray:
        norms = np.linalg.norm(embeddings, axis=1, keepdims=True)
        return embeddings / np.where(norms == 0, 1, norms)

    def _parse_response(self, response) -> np.ndarray:
        sorted_data = sorted(response.data, key=lambda x: x["index"])
        embeddings = np.array([item["embedding"] for item in sorted_data])
        return self._normalize(embeddings)

    async def embed(self, texts: list[str]) -> np.ndarray:
        if not texts:
            return np.array([])
        truncated = [t[:EMBEDDING_TEXT_LIMIT] for t in texts]
        with upstream_errors("embedding provider"):
            response = await with_retry(litellm.aembedding, model=self.config.model, input=truncated)
        return self._parse_response(response)

    async def embed_one(self, text: str) -> np.ndarray:
        return (await self.embed([text]))[0]


@dataclass(frozen=True)
class EmbeddingBatch:
    vectors: list[np.ndarray]
    cache_hits: int

    @property
    def all_cached(self) -> bool:
        return bool(self.vectors) and self.cache_hits == len(self.vectors)


class CachedEmbedder:
    """Embedder memoized through the result cache.

    Embeddings of a given text are immutable for a fixed model, so the model
    name is part of the key.
    """

    def __init__(self, embedder: EmbeddingProvider, cache: ResultCache):
        self.embedder = embedder
        self.cache = cache

    @property
    def model(self) -> str:
        return self.embedder.model

    def _key(self, text: str) -> str:
        return self.cache.key(CacheNamespace.EMBEDDING, {"model": self.model, "text": text})

    async def embed_batch(self, texts: list[str]) -> EmbeddingBatch:
        unique = list(dict.fromkeys(texts))
        lookups = await asyncio.gather(*(self.cache.get(CacheNamespace.EMBEDDING, self._key(t)) for t in unique))
        vectors = {text: deserialize_embedding(value) for text, (value, found) in zip(unique, lookups) if found}

        missing = [text for text in unique if text not in vectors]
        if missing:
            fresh = await self.embedder.embed(missing)
            vectors.update(zip(missing, fresh))
            await asyncio.gather(
                *(
                    self.cache.set(CacheNamespace.EMBEDDING, self._key(text), serialize_embedding(embedding))
                    for text, embedding in zip(missing, fresh)
                )
            )

        hits = sum(1 for text in texts if text not in missing)
        return EmbeddingBatch(vectors=[vectors[text] for text in texts], cache_hits=hits)

    async def embed(self, texts: list[str]) -> np.ndarray:
        return np.array((await self.embed_batch(texts)).vectors)

    async def embed_one(self, text: str) -> np.ndarray:
        return (await self.embed_batch([text])).vectors[0]

import asyncio
from collections.abc import Sequence
from dataclasses import dataclass

import numpy as np

from qroute.embedder import CachedEmbedder
from qroute.errors import UpstreamTimeout
from qroute.logging import get_logger
from qroute.models import RankedHit, SourceKind, VectorQuerySpec
from qroute.vector.base import VectorIndex
from qroute.vector.types import PayloadFilter, ScoredPoint, SearchRequest, SearchTuning, TuningPolicy

_logger = get_logger(__name__)


@dataclass(frozen=True)
class VectorSearchOutcome:
    """Per (query, named vector) ranked lists, in query order then field order."""

    lists: list[list[RankedHit]]
    embedding_cache_hits: int
    embedding_count: int

    @property
    def all_cached(self) -> bool:
        return self.embedding_count > 0 and self.embedding_cache_hits == self.embedding_count

    @property
    def hit_count(self) -> int:
        return sum(len(hits) for hits in self.lists)


class VectorIndexClient:
    def __init__(
        self,
        index: VectorIndex,
        embedder: CachedEmbedder,
        policy: TuningPolicy | None = None,
        id_payload_key: str | None = None,
        collection_prefix: str = "",
    ):
        self.index = index
        self.embedder = embedder
        self.policy = policy or TuningPolicy()
        self.id_payload_key = id_payload_key
        self.collection_prefix = collection_prefix

    def resolve_collection(self, collection: str) -> str:
        if not self.collection_prefix or collection.startswith(f"{self.collection_prefix}-"):
            return collection
        return f"{self.collection_prefix}-{collection}"

    def source_tag(self, collection: str, vector_name: str) -> str:
        return f"{collection}.{vector_name}"

    async def exists(self, collection: str) -> bool:
        return await self.index.collection_exists(self.resolve_collection(collection))

    async def vector_names(self, collection: str) -> set[str]:
        return await self.index.vector_names(self.resolve_collection(collection)) or set()

    def to_hits(self, points: list[ScoredPoint], tag: str, kind: SourceKind = SourceKind.VECTOR) -> list[RankedHit]:
        hits: list[RankedHit] = []
        seen: set = set()
        for point in points:
            candidate_id = point.id
            if self.id_payload_key and point.payload.get(self.id_payload_key) is not None:
                candidate_id = point.payload[self.id_payload_key]
            if candidate_id in seen:
                continue
            seen.add(candidate_id)
            hits.append(
                RankedHit(
                    candidate_id=candidate_id,
                    source_rank=len(hits),
                    source_kind=kind,
                    source_tag=tag,
                    payload=point.payload,
                    raw_score=point.score,
                )
            )
        return hits

    async def search(
        self,
        collection: str,
        vector_name: str,
        query_vector: np.ndarray,
        limit: int,
        filter: PayloadFilter | None = None,
        tuning: SearchTuning | None = None,
        timeout: float | None = None,
    ) -> list[RankedHit]:
        resolved = self.resolve_collection(collection)
        request = SearchRequest(
            vector_name=vector_name,
            vector=query_vector,
            limit=limit,
            filter=filter,
            tuning=tuning or self.policy.tuning_for(limit, filter),
        )
        try:
            async with asyncio.timeout(timeout):
                names = await self.index.vector_names(resolved)
                if names is None or vector_name not in names:
                    _logger.debug("Nothing to search", collection=resolved, vector=vector_name)
                    return []
                points = await self.index.search(resolved, request)
        except TimeoutError as e:
            raise UpstreamTimeout(f"Vector search on {resolved}.{vector_name} timed out") from e
        return self.to_hits(points, self.source_tag(collection, vector_name))

    async def _search_collection(
        self,
        collection: str,
        specs: Sequence[VectorQuerySpec],
        vectors: Sequence[np.ndarray],
        policy: TuningPolicy,
        filter: PayloadFilter | None,
    ) -> list[list[RankedHit]]:
        resolved = self.resolve_collection(collection)
        slots = [(spec, field, vector) for spec, vector in zip(specs, vectors) for field in spec.named_vector_fields]

        names = await self.index.vector_names(resolved)
        if names is None:
            _logger.info("Collection not vectorized, skipping", collection=resolved)
            return [[] for _ in slots]

        requests: list[SearchRequest] = []
        positions: list[int] = []
        for i, (spec, field, vector) in enumerate(slots):
            if field not in names:
                _logger.info("Named vector missing, skipping", collection=resolved, vector=field)
                continue
            requests.append(
                SearchRequest(
                    vector_name=field,
                    vector=vector,
                    limit=spec.result_limit,
                    filter=filter,
                    tuning=policy.tuning_for(spec.result_limit, filter),
                )
            )
            positions.append(i)

        results: list[list[RankedHit]] = [[] for _ in slots]
        if not requests:
            return results

        batches = await self.index.search_batch(resolved, requests)
        for position, request, points in zip(positions, requests, batches):
            results[position] = self.to_hits(points, self.source_tag(collection, request.vector_name))
        return results

    async def batch_search(
        self,
        collection: str,
        specs: Sequence[VectorQuerySpec],
        policy: TuningPolicy | None = None,
        filter: PayloadFilter | None = None,
        timeout: float | None = None,
    ) -> list[list[RankedHit]]:
        if not specs:
            return []
        try:
            async with asyncio.timeout(timeout):
                batch = await self.embedder.embed_batch([s.search_text for s in specs])
                return await self._search_collection(collection, specs, batch.vectors, policy or self.policy, filter)
        except TimeoutError as e:
            raise UpstreamTimeout(f"Batch vector search on {collection} timed out") from e

    async def search_specs(
        self,
        specs: Sequence[VectorQuerySpec],
        policy: TuningPolicy | None = None,
        timeout: float | None = None,
    ) -> VectorSearchOutcome:
        """Embed every search text once, then fan out one batch per collection."""
        if not specs:
            return VectorSearchOutcome(lists=[], embedding_cache_hits=0, embedding_count=0)

        policy = policy or self.policy
        by_collection: dict[str, list[int]] = {}
        for i, spec in enumerate(specs):
            by_collection.setdefault(spec.collection, []).append(i)

        try:
            async with asyncio.timeout(timeout):
                batch = await self.embedder.embed_batch([s.search_text for s in specs])
                async with asyncio.TaskGroup() as tg:
                    tasks = {
                        collection: tg.create_task(
                            self._search_collection(
                                collection,
                                [specs[i] for i in indexes],
                                [batch.vectors[i] for i in indexes],
                                policy,
                                None,
                            )
                        )
                        for collection, indexes in by_collection.items()
                    }
        except TimeoutError as e:
            raise UpstreamTimeout("Vector search timed out") from e
        except ExceptionGroup as eg:
            raise eg.exceptions[0] from None

        per_spec: dict[int, list[list[RankedHit]]] = {}
        for collection, indexes in by_collection.items():
            lists = iter(tasks[collection].result())
            for i in indexes:
                per_spec[i] = [next(lists) for _ in specs[i].named_vector_fields]

        ordered = [hits for i in range(len(specs)) for hits in per_spec[i]]
        _logger.debug(
            "Vector search complete",
            searches=len(ordered),
            hits=sum(len(h) for h in ordered),
            embedding_cache_hits=batch.cache_hits,
        )
        return VectorSearchOutcome(lists=ordered, embedding_cache_hits=batch.cache_hits, embedding_count=len(specs))

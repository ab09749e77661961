from collections.abc import Iterator
from contextlib import contextmanager

import httpx
from qdrant_client import AsyncQdrantClient, models
from qdrant_client.http.exceptions import ResponseHandlingException, UnexpectedResponse

from qroute.errors import UpstreamUnavailable
from qroute.logging import get_logger
from qroute.models import Scalar
from qroute.vector.base import VectorIndex
from qroute.vector.types import PayloadFilter, ScoredPoint, SearchRequest, SearchTuning

_logger = get_logger(__name__)


def _condition(key: str, value: Scalar) -> models.Condition:
    if value is None:
        return models.IsNullCondition(is_null=models.PayloadField(key=key))
    if isinstance(value, float):
        return models.FieldCondition(key=key, range=models.Range(gte=value, lte=value))
    return models.FieldCondition(key=key, match=models.MatchValue(value=value))


def to_qdrant_filter(filter: PayloadFilter | None) -> models.Filter | None:
    if filter is None or filter.is_empty():
        return None
    must = [_condition(k, v) for k, v in filter.must.items()]
    must += [models.FieldCondition(key=k, match=models.MatchText(text=t)) for k, t in filter.text.items()]
    should = [_condition(k, v) for k, v in filter.should.items()]
    return models.Filter(must=must or None, should=should or None)


def to_search_params(tuning: SearchTuning) -> models.SearchParams:
    quantization = None
    if tuning.rescore is not None or tuning.oversampling is not None:
        quantization = models.QuantizationSearchParams(rescore=tuning.rescore, oversampling=tuning.oversampling)
    return models.SearchParams(hnsw_ef=tuning.hnsw_ef, exact=tuning.exact, quantization=quantization)


@contextmanager
def _qdrant_errors(action: str) -> Iterator[None]:
    try:
        yield
    except UnexpectedResponse as e:
        raise UpstreamUnavailable(f"Qdrant {action} failed ({e.status_code}): {e.content!r}") from e
    except (ResponseHandlingException, httpx.TransportError) as e:
        raise UpstreamUnavailable(f"Qdrant {action} failed: {e}") from e


class QdrantVectorIndex(VectorIndex):
    name = "qdrant"

    def __init__(self, url: str, api_key: str | None = None, timeout: int = 30):
        self.url = url
        self.api_key = api_key
        self.timeout = timeout
        self._client: AsyncQdrantClient | None = None

    async def connect(self) -> None:
        self._client = AsyncQdrantClient(url=self.url, api_key=self.api_key, timeout=self.timeout)
        _logger.info("Qdrant client configured", url=self.url)

    @property
    def client(self) -> AsyncQdrantClient:
        if self._client is None:
            raise RuntimeError("QdrantVectorIndex not connected")
        return self._client

    async def close(self) -> None:
        if self._client:
            await self._client.close()
            self._client = None

    async def collection_exists(self, collection: str) -> bool:
        with _qdrant_errors("collection lookup"):
            return await self.client.collection_exists(collection)

    async def vector_names(self, collection: str) -> set[str] | None:
        try:
            info = await self.client.get_collection(collection)
        except UnexpectedResponse as e:
            if e.status_code == 404:
                return None
            raise UpstreamUnavailable(f"Qdrant collection lookup failed ({e.status_code})") from e
        except (ResponseHandlingException, httpx.TransportError) as e:
            raise UpstreamUnavailable(f"Qdrant collection lookup failed: {e}") from e

        vectors = info.config.params.vectors
        # a single unnamed vector space has no addressable names
        return set(vectors) if isinstance(vectors, dict) else set()

    async def search_batch(self, collection: str, requests: list[SearchRequest]) -> list[list[ScoredPoint]]:
        if not requests:
            return []
        query_requests = [
            models.QueryRequest(
                query=[float(x) for x in r.vector],
                using=r.vector_name,
                limit=r.limit,
                filter=to_qdrant_filter(r.filter),
                params=to_search_params(r.tuning),
                with_payload=True,
            )
            for r in requests
        ]
        try:
            responses = await self.client.query_batch_points(collection_name=collection, requests=query_requests)
        except UnexpectedResponse as e:
            if e.status_code == 404:
                _logger.warning("Collection disappeared during search", collection=collection)
                return [[] for _ in requests]
            raise UpstreamUnavailable(f"Qdrant batch search failed ({e.status_code}): {e.content!r}") from e
        except (ResponseHandlingException, httpx.TransportError) as e:
            raise UpstreamUnavailable(f"Qdrant batch search failed: {e}") from e

        return [
            [ScoredPoint(id=p.id, score=p.score, payload=dict(p.payload or {})) for p in response.points]
            for response in responses
        ]

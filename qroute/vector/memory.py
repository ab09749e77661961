from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field

import numpy as np

from qroute.models import Payload
from qroute.vector.base import VectorIndex
from qroute.vector.types import ScoredPoint, SearchRequest


@dataclass
class MemoryPoint:
    id: int | str
    vectors: dict[str, np.ndarray]
    payload: Payload = field(default_factory=dict)


def _unit(vector: Sequence[float] | np.ndarray) -> np.ndarray:
    arr = np.asarray(vector, dtype=np.float32)
    norm = np.linalg.norm(arr)
    return arr / norm if norm > 0 else arr


class MemoryVectorIndex(VectorIndex):
    """Exact cosine search over in-process points."""

    name = "memory"

    def __init__(self):
        self._collections: dict[str, dict[int | str, MemoryPoint]] = {}
        self._vector_names: dict[str, set[str]] = {}

    def create_collection(self, collection: str, vector_names: Sequence[str]) -> None:
        self._collections.setdefault(collection, {})
        self._vector_names[collection] = set(vector_names)

    def upsert(
        self,
        collection: str,
        point_id: int | str,
        vectors: Mapping[str, Sequence[float] | np.ndarray],
        payload: Payload | None = None,
    ) -> None:
        if collection not in self._collections:
            raise KeyError(f"Collection {collection!r} does not exist")
        unknown = set(vectors) - self._vector_names[collection]
        if unknown:
            raise KeyError(f"Unknown vector names for {collection!r}: {sorted(unknown)}")
        self._collections[collection][point_id] = MemoryPoint(
            id=point_id,
            vectors={name: _unit(v) for name, v in vectors.items()},
            payload=dict(payload or {}),
        )

    async def collection_exists(self, collection: str) -> bool:
        return collection in self._collections

    async def vector_names(self, collection: str) -> set[str] | None:
        names = self._vector_names.get(collection)
        return set(names) if names is not None else None

    def _search(self, collection: str, request: SearchRequest) -> list[ScoredPoint]:
        points = self._collections.get(collection, {})
        query = _unit(request.vector)
        scored = [
            ScoredPoint(id=p.id, score=float(np.dot(p.vectors[request.vector_name], query)), payload=p.payload)
            for p in points.values()
            if request.vector_name in p.vectors and (request.filter is None or request.filter.matches(p.payload))
        ]
        scored.sort(key=lambda p: (-p.score, str(p.id)))
        return scored[: request.limit]

    async def search_batch(self, collection: str, requests: list[SearchRequest]) -> list[list[ScoredPoint]]:
        return [self._search(collection, r) for r in requests]

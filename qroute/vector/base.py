from abc import ABC, abstractmethod

from qroute.vector.types import ScoredPoint, SearchRequest


class VectorIndex(ABC):
    """Nearest-neighbor store organized as collections of named vector spaces."""

    name: str = "index"

    async def connect(self) -> None:
        return None

    async def close(self) -> None:
        return None

    @abstractmethod
    async def collection_exists(self, collection: str) -> bool: ...

    @abstractmethod
    async def vector_names(self, collection: str) -> set[str] | None:
        """Named vectors of a collection, or None when the collection is absent."""

    @abstractmethod
    async def search_batch(self, collection: str, requests: list[SearchRequest]) -> list[list[ScoredPoint]]:
        """Run every request in one round trip; one result list per request."""

    async def search(self, collection: str, request: SearchRequest) -> list[ScoredPoint]:
        return (await self.search_batch(collection, [request]))[0]

from dataclasses import dataclass, field

from qroute.constants import HYBRID_CANDIDATE_MULTIPLIER
from qroute.fusion import FusionEngine
from qroute.logging import get_logger
from qroute.models import FusedHit, Normalization, RankedHit, Scalar, SourceKind
from qroute.vector import PayloadFilter, SearchRequest, TuningPolicy, VectorIndexClient

_logger = get_logger(__name__)


@dataclass(frozen=True)
class HybridQuery:
    collection: str
    text: str
    vector_fields: list[str]
    keyword_fields: list[str] = field(default_factory=list)
    must: dict[str, Scalar] = field(default_factory=dict)
    should: dict[str, Scalar] = field(default_factory=dict)
    limit: int = 10


class HybridRetriever:
    """Keyword + vector search inside one collection, fused per field."""

    def __init__(
        self,
        client: VectorIndexClient,
        fusion: FusionEngine,
        policy: TuningPolicy | None = None,
        candidate_multiplier: int = HYBRID_CANDIDATE_MULTIPLIER,
        normalization: Normalization = Normalization.PERCENTAGE,
    ):
        self.client = client
        self.fusion = fusion
        self.policy = policy or client.policy
        self.candidate_multiplier = candidate_multiplier
        self.normalization = normalization

    def _requests(self, query: HybridQuery, vector, names: set[str]) -> list[tuple[SearchRequest, SourceKind, str]]:
        fetch = query.limit * self.candidate_multiplier
        base = PayloadFilter(must=dict(query.must), should=dict(query.should))
        vector_fields = [f for f in query.vector_fields if f in names]

        planned: list[tuple[SearchRequest, SourceKind, str]] = []
        for name in vector_fields:
            request = SearchRequest(
                vector_name=name,
                vector=vector,
                limit=fetch,
                filter=None if base.is_empty() else base,
                tuning=self.policy.tuning_for(fetch, base),
            )
            planned.append((request, SourceKind.VECTOR, self.client.source_tag(query.collection, name)))

        if not vector_fields:
            return planned

        # keyword lists reuse the first named vector to rank within the text match
        for keyword_field in query.keyword_fields:
            keyword_filter = PayloadFilter(must=base.must, should=base.should, text={keyword_field: query.text})
            request = SearchRequest(
                vector_name=vector_fields[0],
                vector=vector,
                limit=fetch,
                filter=keyword_filter,
                tuning=self.policy.tuning_for(fetch, keyword_filter),
            )
            tag = f"{self.client.source_tag(query.collection, keyword_field)}:keyword"
            planned.append((request, SourceKind.KEYWORD, tag))
        return planned

    async def search(self, query: HybridQuery) -> list[FusedHit]:
        collection = self.client.resolve_collection(query.collection)
        names = await self.client.index.vector_names(collection)
        if not names:
            _logger.info("Hybrid search skipped, collection not vectorized", collection=collection)
            return []

        batch = await self.client.embedder.embed_batch([query.text])
        planned = self._requests(query, batch.vectors[0], names)
        if not planned:
            return []

        results = await self.client.index.search_batch(collection, [request for request, _, _ in planned])
        lists: list[list[RankedHit]] = [
            self.client.to_hits(points, tag, kind) for (_, kind, tag), points in zip(planned, results)
        ]

        fused = self.fusion.fuse_fields(lists)
        _logger.debug(
            "Hybrid search",
            collection=collection,
            lists=len(lists),
            candidates=len(fused),
            keyword_hits=sum(len(hits) for hits, (_, kind, _) in zip(lists, planned) if kind == SourceKind.KEYWORD),
        )
        return self.fusion.normalize(fused[: query.limit], self.normalization)

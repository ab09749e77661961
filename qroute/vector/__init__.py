from qroute.vector.base import VectorIndex
from qroute.vector.client import VectorIndexClient, VectorSearchOutcome
from qroute.vector.memory import MemoryVectorIndex
from qroute.vector.qdrant import QdrantVectorIndex
from qroute.vector.types import PRESETS, PayloadFilter, ScoredPoint, SearchRequest, SearchTuning, TuningPolicy, TuningPreset

__all__ = [
    "PRESETS",
    "MemoryVectorIndex",
    "PayloadFilter",
    "QdrantVectorIndex",
    "ScoredPoint",
    "SearchRequest",
    "SearchTuning",
    "TuningPolicy",
    "TuningPreset",
    "VectorIndex",
    "VectorIndexClient",
    "VectorSearchOutcome",
]

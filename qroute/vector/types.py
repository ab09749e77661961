from dataclasses import dataclass, field, replace
from enum import StrEnum

import numpy as np

from qroute.constants import (
    ACCURATE_OVERSAMPLING,
    EF_PER_FILTER_CLAUSE,
    EF_PER_RESULT,
    HNSW_EF_ACCURATE,
    HNSW_EF_BALANCED,
    HNSW_EF_FAST,
    HNSW_EF_MAX,
)
from qroute.models import Payload, Scalar


@dataclass(frozen=True)
class PayloadFilter:
    """Payload conditions: every `must` and `text` clause, plus any `should` clause."""

    must: dict[str, Scalar] = field(default_factory=dict)
    should: dict[str, Scalar] = field(default_factory=dict)
    text: dict[str, str] = field(default_factory=dict)

    @property
    def clause_count(self) -> int:
        return len(self.must) + len(self.should) + len(self.text)

    def is_empty(self) -> bool:
        return self.clause_count == 0

    def matches(self, payload: Payload) -> bool:
        if any(payload.get(key) != value for key, value in self.must.items()):
            return False
        for key, needle in self.text.items():
            if needle.lower() not in str(payload.get(key) or "").lower():
                return False
        if self.should and not any(payload.get(key) == value for key, value in self.should.items()):
            return False
        return True


@dataclass(frozen=True)
class SearchTuning:
    hnsw_ef: int = HNSW_EF_BALANCED
    exact: bool = False
    rescore: bool | None = None
    oversampling: float | None = None


class TuningPreset(StrEnum):
    FAST = "fast"
    BALANCED = "balanced"
    ACCURATE = "accurate"


PRESETS: dict[TuningPreset, SearchTuning] = {
    TuningPreset.FAST: SearchTuning(hnsw_ef=HNSW_EF_FAST, rescore=False),
    TuningPreset.BALANCED: SearchTuning(hnsw_ef=HNSW_EF_BALANCED),
    TuningPreset.ACCURATE: SearchTuning(hnsw_ef=HNSW_EF_ACCURATE, rescore=True, oversampling=ACCURATE_OVERSAMPLING),
}


@dataclass(frozen=True)
class TuningPolicy:
    preset: TuningPreset = TuningPreset.BALANCED
    adaptive_breadth: bool = True
    max_hnsw_ef: int = HNSW_EF_MAX
    exact: bool = False

    def tuning_for(self, limit: int, filter: PayloadFilter | None = None) -> SearchTuning:
        tuning = PRESETS[self.preset]
        if self.exact:
            tuning = replace(tuning, exact=True)
        if not self.adaptive_breadth:
            return tuning

        clauses = filter.clause_count if filter else 0
        ef = int(tuning.hnsw_ef * (1 + EF_PER_FILTER_CLAUSE * clauses))
        ef = max(ef, limit * EF_PER_RESULT)
        return replace(tuning, hnsw_ef=min(ef, self.max_hnsw_ef))


@dataclass(frozen=True)
class SearchRequest:
    vector_name: str
    vector: np.ndarray
    limit: int
    filter: PayloadFilter | None = None
    tuning: SearchTuning = field(default_factory=SearchTuning)


@dataclass(frozen=True)
class ScoredPoint:
    id: int | str
    score: float
    payload: Payload = field(default_factory=dict)

import json
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from qroute.constants import DEFAULT_MAX_ROWS, DEFAULT_RESULT_LIMIT, DEFAULT_SQL_WEIGHT, DEFAULT_STEP_TIMEOUT_MS, DEFAULT_VECTOR_WEIGHT
from qroute.errors import ErrorKind

Scalar = str | int | float | bool | None
Payload = dict[str, Scalar]

type CandidateId = int | str


class Strategy(StrEnum):
    SQL_ONLY = "sql_only"
    VECTOR_ONLY = "vector_only"
    HYBRID = "hybrid"
    REJECTED = "rejected"


class SourceKind(StrEnum):
    VECTOR = "vector"
    KEYWORD = "keyword"
    SQL = "sql"


class StepStatus(StrEnum):
    SUCCESS = "success"
    SKIPPED = "skipped"
    FAILED = "failed"


class WorkflowStatus(StrEnum):
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"


class FusionMethod(StrEnum):
    RRF = "rrf"
    WEIGHTED = "weighted"


class Normalization(StrEnum):
    NONE = "none"
    PERCENTAGE = "percentage"
    EXPONENTIAL = "exponential"


class FrozenModel(BaseModel):
    model_config = ConfigDict(frozen=True)


# --- Query intent ---


class VectorQuerySpec(FrozenModel):
    collection: str
    named_vector_fields: list[str]
    search_text: str
    result_limit: int = Field(default=DEFAULT_RESULT_LIMIT, ge=1)


class SqlPlan(FrozenModel):
    tables: list[str]
    allows_fuzzy_match: bool = False
    fuzzy_patterns: list[str] = []
    estimated_complexity: str = "simple"


class VectorPlan(FrozenModel):
    queries: list[VectorQuerySpec]
    requires_rerank: bool = False


class HybridWeights(FrozenModel):
    fusion_method: FusionMethod = FusionMethod.RRF
    vector_weight: float = Field(default=DEFAULT_VECTOR_WEIGHT, ge=0)
    sql_weight: float = Field(default=DEFAULT_SQL_WEIGHT, ge=0)


class MissingField(FrozenModel):
    field: str
    description: str


class QueryIntent(FrozenModel):
    strategy: Strategy
    confidence: float = Field(ge=0, le=1)
    sql_plan: SqlPlan | None = None
    vector_plan: VectorPlan | None = None
    hybrid_weights: HybridWeights | None = None
    reason: str | None = None
    suggestions: list[str] = []
    needs_clarification: bool = False
    missing_fields: list[MissingField] = []

    @model_validator(mode="after")
    def _check_plans(self) -> "QueryIntent":
        has_sql = self.sql_plan is not None
        has_vector = self.vector_plan is not None
        expected = {
            Strategy.SQL_ONLY: (True, False),
            Strategy.VECTOR_ONLY: (False, True),
            Strategy.HYBRID: (True, True),
            Strategy.REJECTED: (False, False),
        }[self.strategy]
        if (has_sql, has_vector) != expected:
            raise ValueError(
                f"strategy {self.strategy} requires sql_plan={expected[0]}, vector_plan={expected[1]}; "
                f"got sql_plan={has_sql}, vector_plan={has_vector}"
            )
        if self.strategy == Strategy.REJECTED and not self.reason:
            raise ValueError("rejected intent must carry a reason")
        return self


# --- Search hits ---


@dataclass(frozen=True)
class RankedHit:
    """One candidate from a single ranked list, before fusion.

    source_rank is the 0-based position inside its list, never a score.
    """

    candidate_id: CandidateId
    source_rank: int
    source_kind: SourceKind
    source_tag: str
    payload: Payload = field(default_factory=dict)
    raw_score: float | None = None


@dataclass(frozen=True)
class FusedHit:
    candidate_id: CandidateId
    fused_score: float
    contributing_sources: frozenset[SourceKind]
    payload: Payload
    best_rank: int
    display_score: float | None = None

    @property
    def score(self) -> float:
        return self.fused_score if self.display_score is None else self.display_score

    def to_row(self) -> dict[str, Any]:
        return {
            **self.payload,
            "_id": self.candidate_id,
            "_score": self.score,
            "_sources": sorted(self.contributing_sources),
        }


# --- Workflow ---


class WorkflowOptions(FrozenModel):
    max_rows: int = Field(default=DEFAULT_MAX_ROWS, ge=1)
    timeout_ms: int = Field(default=DEFAULT_STEP_TIMEOUT_MS, ge=1)
    vector_timeout_ms: int | None = Field(default=None, ge=1)
    enable_cache: bool = True
    time_context: str | None = None


class WorkflowInput(FrozenModel):
    query: str
    database_schema: dict[str, Any]
    vectorized_fields: dict[str, list[str]] = {}
    options: WorkflowOptions = WorkflowOptions()

    @field_validator("query")
    @classmethod
    def _strip_query(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("query must not be empty")
        return v

    @field_validator("database_schema", mode="before")
    @classmethod
    def _parse_schema(cls, v: Any) -> Any:
        if isinstance(v, str):
            return json.loads(v)
        return v


class StepRecord(FrozenModel):
    name: str
    status: StepStatus
    duration_ms: int
    error: str | None = None
    cache_hit: bool = False
    attempt: int = 1


class WorkflowResult(FrozenModel):
    query_id: str
    status: WorkflowStatus
    strategy: Strategy
    rows: list[dict[str, Any]] = []
    row_count: int = 0
    steps: list[StepRecord] = []
    error: str | None = None
    error_kind: ErrorKind | None = None
    suggestions: list[str] | None = None
    sql_text: str | None = None
    vector_result_count: int | None = None
    fusion_method: str | None = None
    truncated: bool = False
    total_ms: int = 0

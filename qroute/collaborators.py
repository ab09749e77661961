"""Typed boundary of every external collaborator the orchestrator calls.

Each collaborator is a Protocol with one async method; request and response
types are pydantic models so they can be cached and logged as JSON.
"""

from enum import StrEnum
from typing import Any, Protocol

import numpy as np
from pydantic import Field

from qroute.constants import DEFAULT_MAX_ROWS, DEFAULT_STEP_TIMEOUT_MS
from qroute.models import FrozenModel, QueryIntent, SqlPlan


# --- Classification ---


class ClassificationRequest(FrozenModel):
    query_text: str
    schema_summary: str
    vectorized_field_map: dict[str, list[str]] = {}


class Classifier(Protocol):
    async def classify(self, request: ClassificationRequest) -> QueryIntent: ...


# --- Field selection ---


class VectorMatch(FrozenModel):
    collection: str
    candidate_id: int | str
    score: float
    payload: dict[str, Any] = {}


class VectorContext(FrozenModel):
    top_matches: list[VectorMatch] = []
    candidate_ids: list[int | str] = []


class SelectedTable(FrozenModel):
    table: str
    fields: list[str]
    is_join_table: bool = False


class SqlHints(FrozenModel):
    fuzzy_patterns: list[str] = []
    join_conditions: list[str] = []
    vector_ids: list[int | str] = []


class FieldSelectionRequest(FrozenModel):
    query_text: str
    sql_plan: SqlPlan
    filtered_schema: dict[str, Any]
    vector_context: VectorContext | None = None


class FieldSelection(FrozenModel):
    selected_tables: list[SelectedTable]
    slim_schema: dict[str, Any]
    sql_hints: SqlHints = SqlHints()


class FieldSelector(Protocol):
    async def select(self, request: FieldSelectionRequest) -> FieldSelection: ...


# --- SQL generation ---


class QueryKind(StrEnum):
    SELECT = "select"
    AGGREGATE = "aggregate"
    COMPLEX = "complex"


class SqlGenerationRequest(FrozenModel):
    query_text: str
    slim_schema: dict[str, Any]
    selected_tables: list[SelectedTable]
    sql_hints: SqlHints = SqlHints()
    time_context: str | None = None


class GeneratedSql(FrozenModel):
    sql_text: str
    query_kind: QueryKind = QueryKind.SELECT
    warnings: list[str] = []


class SqlGenerator(Protocol):
    async def generate(self, request: SqlGenerationRequest) -> GeneratedSql: ...


# --- SQL execution ---


class SqlExecutionRequest(FrozenModel):
    sql_text: str
    read_only: bool = True
    row_limit: int = Field(default=DEFAULT_MAX_ROWS, ge=1)
    timeout_ms: int = Field(default=DEFAULT_STEP_TIMEOUT_MS, ge=1)


class SqlExecutionResult(FrozenModel):
    rows: list[dict[str, Any]]
    row_count: int
    truncated: bool = False
    columns: list[str] = []


class SqlValidation(FrozenModel):
    valid: bool
    error: str | None = None


class SqlExecutor(Protocol):
    async def execute(self, request: SqlExecutionRequest) -> SqlExecutionResult: ...

    async def validate(self, sql_text: str) -> SqlValidation: ...


# --- Error correction ---


class CorrectionRequest(FrozenModel):
    failed_sql: str
    error_message: str
    query_text: str
    selected_schema: dict[str, Any]


class CorrectedSql(FrozenModel):
    corrected_sql: str
    error_kind: str = "unknown"
    root_cause: str = ""


class ErrorCorrector(Protocol):
    async def correct(self, request: CorrectionRequest) -> CorrectedSql: ...


# --- Embeddings ---


class EmbeddingProvider(Protocol):
    model: str

    async def embed(self, texts: list[str]) -> np.ndarray: ...

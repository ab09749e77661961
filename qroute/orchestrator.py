import asyncio
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel, ValidationError

from qroute.cache import CacheNamespace, ResultCache
from qroute.collaborators import (
    ClassificationRequest,
    Classifier,
    CorrectionRequest,
    ErrorCorrector,
    FieldSelection,
    FieldSelectionRequest,
    FieldSelector,
    GeneratedSql,
    SqlExecutionRequest,
    SqlExecutor,
    SqlGenerationRequest,
    SqlGenerator,
)
from qroute.constants import MAX_TABLES
from qroute.errors import (
    UPSTREAM_ERRORS,
    ClarificationNeeded,
    ErrorKind,
    ExecutionError,
    Infeasible,
    InputValidationError,
    QrouteError,
    TooComplex,
    UpstreamUnavailable,
)
from qroute.fusion import FusionEngine, count_keyless, rows_to_hits
from qroute.logging import bind_query, get_logger
from qroute.models import (
    FusedHit,
    Normalization,
    QueryIntent,
    SqlPlan,
    Strategy,
    VectorPlan,
    WorkflowInput,
    WorkflowResult,
    WorkflowStatus,
)
from qroute.schema import filter_schema, summarize_schema
from qroute.utils import ms_now, new_query_id
from qroute.vector import TuningPolicy, VectorIndexClient
from qroute.workflow import StepHandle, StepLog, StepName, describe_workflow

_logger = get_logger(__name__)

__all__ = ["WorkflowOrchestrator", "describe_workflow", "parse_input"]


def parse_input(payload: WorkflowInput | Mapping[str, Any]) -> WorkflowInput:
    if isinstance(payload, WorkflowInput):
        return payload
    try:
        return WorkflowInput.model_validate(payload)
    except ValidationError as e:
        raise InputValidationError(f"Invalid input: {e.errors(include_url=False)[0]['msg']}") from e


@dataclass
class _Run:
    query_id: str
    input: WorkflowInput
    steps: StepLog = field(default_factory=StepLog)
    strategy: Strategy = Strategy.REJECTED
    degraded: bool = False

    @property
    def options(self):
        return self.input.options


@dataclass
class _SqlOutcome:
    rows: list[dict[str, Any]]
    truncated: bool
    sql_text: str


class WorkflowOrchestrator:
    """Routes a query to SQL, vector or hybrid retrieval and runs it.

    Every run returns a WorkflowResult; no exception escapes `run`.
    """

    def __init__(
        self,
        classifier: Classifier,
        field_selector: FieldSelector,
        sql_generator: SqlGenerator,
        sql_executor: SqlExecutor,
        cache: ResultCache,
        fusion: FusionEngine | None = None,
        vector_client: VectorIndexClient | None = None,
        error_corrector: ErrorCorrector | None = None,
        tuning_policy: TuningPolicy | None = None,
        normalization: Normalization = Normalization.NONE,
        max_tables: int = MAX_TABLES,
        id_field: str = "id",
    ):
        self.classifier = classifier
        self.field_selector = field_selector
        self.sql_generator = sql_generator
        self.sql_executor = sql_executor
        self.cache = cache
        self.fusion = fusion or FusionEngine()
        self.vector_client = vector_client
        self.error_corrector = error_corrector
        self.tuning_policy = tuning_policy
        self.normalization = normalization
        self.max_tables = max_tables
        self.id_field = id_field

    async def run(self, payload: WorkflowInput | Mapping[str, Any]) -> WorkflowResult:
        query_id = new_query_id()
        with bind_query(query_id):
            return await self._run(query_id, payload)

    async def _run(self, query_id: str, payload: WorkflowInput | Mapping[str, Any]) -> WorkflowResult:
        start = ms_now()

        try:
            workflow_input = parse_input(payload)
        except InputValidationError as e:
            _logger.info("Rejected malformed workflow input", error=e.message)
            return WorkflowResult(
                query_id=query_id,
                status=WorkflowStatus.FAILED,
                strategy=Strategy.REJECTED,
                error=e.message,
                error_kind=e.kind,
                total_ms=ms_now() - start,
            )

        run = _Run(query_id=query_id, input=workflow_input)
        try:
            result = await self._execute(run)
        except QrouteError as e:
            if e.user_facing:
                _logger.info("Query rejected", kind=str(e.kind), reason=e.message)
                run.strategy = Strategy.REJECTED
            else:
                _logger.warning("Workflow failed", kind=str(e.kind), error=e.message)
            result = self._failed(run, e.message, e.kind, e.suggestions or None)
        except Exception as e:
            _logger.error("Workflow failed unexpectedly", exc_info=True)
            result = self._failed(run, f"{type(e).__name__}: {e}", None, None)

        result = result.model_copy(update={"total_ms": ms_now() - start})
        _logger.info(
            "Workflow finished",
            strategy=str(result.strategy),
            status=str(result.status),
            rows=result.row_count,
            steps=len(result.steps),
            total_ms=result.total_ms,
        )
        return result

    def _failed(self, run: _Run, error: str, kind: ErrorKind | None, suggestions: list[str] | None) -> WorkflowResult:
        return WorkflowResult(
            query_id=run.query_id,
            status=WorkflowStatus.FAILED,
            strategy=run.strategy,
            steps=run.steps.records,
            error=error,
            error_kind=kind,
            suggestions=suggestions,
        )

    async def _execute(self, run: _Run) -> WorkflowResult:
        intent = await self._classify(run)
        run.strategy = intent.strategy
        self._check_intent(intent)

        if intent.strategy == Strategy.SQL_ONLY:
            return await self._sql_only(run, intent.sql_plan)
        if intent.strategy == Strategy.VECTOR_ONLY:
            return await self._vector_only(run, intent.vector_plan)
        return await self._hybrid(run, intent)

    def _check_intent(self, intent: QueryIntent) -> None:
        suggestions = list(intent.suggestions)
        if intent.needs_clarification:
            suggestions += [f"{m.field}: {m.description}" for m in intent.missing_fields]
            raise ClarificationNeeded(intent.reason or "The query needs clarification", suggestions)
        if intent.strategy == Strategy.REJECTED:
            raise Infeasible(intent.reason or "The query cannot be answered", suggestions)
        if intent.sql_plan and len(intent.sql_plan.tables) > self.max_tables:
            raise TooComplex(
                f"The query touches {len(intent.sql_plan.tables)} tables, more than the limit of {self.max_tables}",
                suggestions or ["Split the question into smaller questions about fewer tables"],
            )

    # --- memoization ---

    async def _memoized[M: BaseModel](
        self,
        run: _Run,
        step: StepHandle,
        namespace: CacheNamespace,
        key_input: Any,
        model_cls: type[M],
        compute: Callable[[], Awaitable[M]],
    ) -> M:
        if not run.options.enable_cache:
            return await compute()
        key = self.cache.key(namespace, key_input)
        cached = await self.cache.get_model(namespace, key, model_cls)
        if cached is not None:
            step.cache_hit = True
            return cached
        value = await compute()
        await self.cache.set_model(namespace, key, value)
        return value

    # --- steps ---

    async def _classify(self, run: _Run) -> QueryIntent:
        request = ClassificationRequest(
            query_text=run.input.query,
            schema_summary=summarize_schema(run.input.database_schema),
            vectorized_field_map=run.input.vectorized_fields,
        )
        async with run.steps.step(StepName.CLASSIFICATION, run.options.timeout_ms) as step:
            return await self._memoized(
                run,
                step,
                CacheNamespace.CLASSIFICATION,
                {"request": request, "schema": run.input.database_schema},
                QueryIntent,
                lambda: self.classifier.classify(request),
            )

    async def _select_fields(self, run: _Run, plan: SqlPlan) -> FieldSelection:
        filtered = filter_schema(run.input.database_schema, plan.tables)
        if not filtered:
            raise Infeasible(
                f"None of the planned tables exist: {', '.join(plan.tables)}",
                [f"Available tables: {', '.join(sorted(run.input.database_schema))}"],
            )
        request = FieldSelectionRequest(query_text=run.input.query, sql_plan=plan, filtered_schema=filtered)
        async with run.steps.step(StepName.FIELD_SELECTION, run.options.timeout_ms) as step:
            return await self._memoized(
                run,
                step,
                CacheNamespace.FIELD_SELECTION,
                request,
                FieldSelection,
                lambda: self.field_selector.select(request),
            )

    async def _generate_sql(self, run: _Run, selection: FieldSelection, vector_ids: list | None = None) -> GeneratedSql:
        hints = selection.sql_hints
        if vector_ids:
            hints = hints.model_copy(update={"vector_ids": vector_ids})
        request = SqlGenerationRequest(
            query_text=run.input.query,
            slim_schema=selection.slim_schema,
            selected_tables=selection.selected_tables,
            sql_hints=hints,
            time_context=run.options.time_context,
        )
        async with run.steps.step(StepName.SQL_GENERATION, run.options.timeout_ms) as step:
            generated = await self._memoized(
                run,
                step,
                CacheNamespace.SQL_TEXT,
                request,
                GeneratedSql,
                lambda: self.sql_generator.generate(request),
            )
        if generated.warnings:
            _logger.info("SQL generated with warnings", warnings=generated.warnings)
        return generated

    async def _execute_sql(self, run: _Run, sql_text: str, attempt: int) -> _SqlOutcome:
        request = SqlExecutionRequest(
            sql_text=sql_text,
            read_only=True,
            row_limit=run.options.max_rows,
            timeout_ms=run.options.timeout_ms,
        )
        async with run.steps.step(StepName.SQL_EXECUTION, run.options.timeout_ms, attempt=attempt):
            result = await self.sql_executor.execute(request)
        return _SqlOutcome(rows=result.rows, truncated=result.truncated, sql_text=sql_text)

    async def _run_sql(self, run: _Run, selection: FieldSelection, vector_ids: list | None = None) -> _SqlOutcome:
        generated = await self._generate_sql(run, selection, vector_ids)
        try:
            return await self._execute_sql(run, generated.sql_text, attempt=1)
        except ExecutionError as first:
            if self.error_corrector is None:
                raise
            _logger.info("SQL failed, attempting correction", error=first.message)
            corrected_sql = await self._correct(run, selection, generated.sql_text, first)

        # second failure is terminal
        return await self._execute_sql(run, corrected_sql, attempt=2)

    async def _correct(self, run: _Run, selection: FieldSelection, failed_sql: str, error: ExecutionError) -> str:
        request = CorrectionRequest(
            failed_sql=failed_sql,
            error_message=error.message,
            query_text=run.input.query,
            selected_schema=selection.slim_schema,
        )
        try:
            async with run.steps.step(StepName.ERROR_CORRECTION, run.options.timeout_ms):
                corrected = await self.error_corrector.correct(request)
        except Exception as e:
            raise ExecutionError(f"{error.message} (correction failed: {e})", sql_text=failed_sql) from e
        _logger.info(
            "SQL corrected",
            error_kind=corrected.error_kind,
            root_cause=corrected.root_cause,
        )
        return corrected.corrected_sql

    async def _search_vectors(self, run: _Run, plan: VectorPlan) -> list[FusedHit]:
        if self.vector_client is None:
            raise UpstreamUnavailable("No vector index configured")
        timeout_ms = run.options.vector_timeout_ms or run.options.timeout_ms
        async with run.steps.step(StepName.VECTOR_SEARCH, timeout_ms) as step:
            outcome = await self.vector_client.search_specs(plan.queries, self.tuning_policy)
            step.cache_hit = outcome.all_cached
            return self.fusion.fuse_fields(outcome.lists)

    # --- strategies ---

    async def _sql_only(self, run: _Run, plan: SqlPlan) -> WorkflowResult:
        selection = await self._select_fields(run, plan)
        outcome = await self._run_sql(run, selection)
        return WorkflowResult(
            query_id=run.query_id,
            status=WorkflowStatus.SUCCESS,
            strategy=run.strategy,
            rows=outcome.rows,
            row_count=len(outcome.rows),
            steps=run.steps.records,
            sql_text=outcome.sql_text,
            truncated=outcome.truncated,
        )

    async def _vector_only(self, run: _Run, plan: VectorPlan) -> WorkflowResult:
        fused = await self._search_vectors(run, plan)
        limit = run.options.max_rows
        rows = [h.to_row() for h in self.fusion.normalize(fused[:limit], self.normalization)]
        return WorkflowResult(
            query_id=run.query_id,
            status=WorkflowStatus.SUCCESS,
            strategy=run.strategy,
            rows=rows,
            row_count=len(rows),
            steps=run.steps.records,
            vector_result_count=len(fused),
            fusion_method="rrf",
            truncated=len(fused) > limit,
        )

    async def _hybrid(self, run: _Run, intent: QueryIntent) -> WorkflowResult:
        async def vector_branch() -> list[FusedHit]:
            try:
                return await self._search_vectors(run, intent.vector_plan)
            except UPSTREAM_ERRORS as e:
                _logger.warning("Vector path degraded", kind=str(e.kind), error=e.message)
                run.degraded = True
                return []

        try:
            async with asyncio.TaskGroup() as tg:
                vector_task = tg.create_task(vector_branch())
                selection_task = tg.create_task(self._select_fields(run, intent.sql_plan))
        except ExceptionGroup as eg:
            raise eg.exceptions[0] from None

        vector_hits = vector_task.result()
        selection = selection_task.result()
        vector_ids = [h.candidate_id for h in vector_hits]
        outcome = await self._run_sql(run, selection, vector_ids)

        weights = intent.hybrid_weights
        limit = run.options.max_rows
        result = WorkflowResult(
            query_id=run.query_id,
            status=WorkflowStatus.PARTIAL if run.degraded else WorkflowStatus.SUCCESS,
            strategy=run.strategy,
            sql_text=outcome.sql_text,
            vector_result_count=len(vector_hits),
        )

        keyless = count_keyless(outcome.rows, self.id_field)
        if keyless:
            # aggregates and keyless projections have nothing to match vector candidates on
            _logger.warning("SQL rows carry no id, returning them unfused", id_field=self.id_field, keyless=keyless)
            rows = outcome.rows[:limit]
            return result.model_copy(
                update={
                    "status": WorkflowStatus.PARTIAL,
                    "rows": rows,
                    "row_count": len(rows),
                    "steps": run.steps.records,
                    "error": f"{keyless} of {len(outcome.rows)} SQL rows have no {self.id_field!r} column; "
                    "results were not fused with vector search",
                    "truncated": outcome.truncated or len(outcome.rows) > limit,
                }
            )

        # a degraded vector path fuses an empty list, which leaves the SQL ranking
        async with run.steps.step(StepName.FUSION, run.options.timeout_ms):
            sql_hits = rows_to_hits(outcome.rows, self.id_field)
            fused = self.fusion.fuse_modalities(vector_hits, sql_hits, weights)
            rows = [h.to_row() for h in self.fusion.normalize(fused[:limit], self.normalization)]

        return result.model_copy(
            update={
                "rows": rows,
                "row_count": len(rows),
                "steps": run.steps.records,
                "fusion_method": str(weights.fusion_method) if weights else "rrf",
                "truncated": outcome.truncated or len(fused) > limit,
            }
        )

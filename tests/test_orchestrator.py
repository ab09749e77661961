import json
import time

import pytest
import structlog

from qroute.cache import ResultCache
from qroute.embedder import CachedEmbedder
from qroute.errors import ErrorKind, InputValidationError, UpstreamUnavailable
from qroute.models import (
    HybridWeights,
    MissingField,
    QueryIntent,
    SourceKind,
    SqlPlan,
    StepStatus,
    Strategy,
    VectorPlan,
    VectorQuerySpec,
    WorkflowOptions,
    WorkflowStatus,
)
from qroute.orchestrator import WorkflowOrchestrator, describe_workflow, parse_input
from qroute.vector import VectorIndexClient
from tests.conftest import (
    SCHEMA,
    VECTORIZED_FIELDS,
    FakeEmbedder,
    FixedVectorIndex,
    StubClassifier,
    StubCorrector,
    StubFieldSelector,
    StubSqlExecutor,
    StubSqlGenerator,
)

GOOD_SQL = "SELECT id, name FROM products"
BAD_SQL = "SELECT id, nme FROM products"

PRODUCT_ROWS = [{"id": 10, "name": "Trail tent"}, {"id": 99, "name": "Lantern"}]

SQL_PLAN = SqlPlan(tables=["products"])
VECTOR_PLAN = VectorPlan(
    queries=[VectorQuerySpec(collection="products", named_vector_fields=["name", "description"], search_text="warm tent")]
)

SQL_INTENT = QueryIntent(strategy=Strategy.SQL_ONLY, confidence=0.9, sql_plan=SQL_PLAN)
VECTOR_INTENT = QueryIntent(strategy=Strategy.VECTOR_ONLY, confidence=0.9, vector_plan=VECTOR_PLAN)
HYBRID_INTENT = QueryIntent(
    strategy=Strategy.HYBRID,
    confidence=0.8,
    sql_plan=SQL_PLAN,
    vector_plan=VECTOR_PLAN,
    hybrid_weights=HybridWeights(),
)

FIELD_RESULTS = {("products", "name"): [10, 20, 30], ("products", "description"): [20, 40]}


def payload(query: str = "tents under 200", **options) -> dict:
    return {
        "query": query,
        "database_schema": SCHEMA,
        "vectorized_fields": VECTORIZED_FIELDS,
        "options": WorkflowOptions(**options),
    }


def make_orchestrator(
    cache: ResultCache,
    classifier: StubClassifier,
    field_selector: StubFieldSelector | None = None,
    generator: StubSqlGenerator | None = None,
    executor: StubSqlExecutor | None = None,
    corrector: StubCorrector | None = None,
    index: FixedVectorIndex | None = None,
) -> WorkflowOrchestrator:
    vector_client = None
    if index is not None:
        vector_client = VectorIndexClient(index, CachedEmbedder(FakeEmbedder(), cache))
    return WorkflowOrchestrator(
        classifier=classifier,
        field_selector=field_selector or StubFieldSelector(),
        sql_generator=generator or StubSqlGenerator(GOOD_SQL),
        sql_executor=executor or StubSqlExecutor(rows={GOOD_SQL: PRODUCT_ROWS}),
        cache=cache,
        vector_client=vector_client,
        error_corrector=corrector,
    )


def step_names(result) -> list[str]:
    return [s.name for s in result.steps]


class TestTotality:
    @pytest.mark.asyncio
    async def test_invalid_input(self, cache: ResultCache):
        orchestrator = make_orchestrator(cache, StubClassifier(SQL_INTENT))
        result = await orchestrator.run({"query": "   ", "database_schema": SCHEMA})
        assert result.status == WorkflowStatus.FAILED
        assert result.error_kind == ErrorKind.VALIDATION_ERROR
        assert result.strategy == Strategy.REJECTED
        assert result.steps == []

        missing_schema = await orchestrator.run({"query": "tents"})
        assert missing_schema.error_kind == ErrorKind.VALIDATION_ERROR
        assert missing_schema.error.startswith("Invalid input: ")

    def test_parse_input(self):
        with pytest.raises(InputValidationError, match="query must not be empty") as info:
            parse_input({"query": "  ", "database_schema": SCHEMA})
        assert info.value.kind == ErrorKind.VALIDATION_ERROR

        parsed = parse_input({"query": " tents ", "database_schema": json.dumps(SCHEMA)})
        assert parsed.query == "tents"
        assert parse_input(parsed) is parsed

    @pytest.mark.asyncio
    async def test_schema_as_json_string(self, cache: ResultCache):
        orchestrator = make_orchestrator(cache, StubClassifier(SQL_INTENT))
        result = await orchestrator.run({"query": "tents", "database_schema": json.dumps(SCHEMA)})
        assert result.status == WorkflowStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_upstream_failure(self, cache: ResultCache):
        orchestrator = make_orchestrator(cache, StubClassifier(error=UpstreamUnavailable("llm down")))
        result = await orchestrator.run(payload())
        assert result.status == WorkflowStatus.FAILED
        assert result.error_kind == ErrorKind.UPSTREAM_UNAVAILABLE
        assert result.steps[0].name == "Classification"
        assert result.steps[0].status == StepStatus.FAILED

    @pytest.mark.asyncio
    async def test_step_timeout(self, cache: ResultCache):
        orchestrator = make_orchestrator(cache, StubClassifier(SQL_INTENT, delay=0.2))
        result = await orchestrator.run(payload(timeout_ms=50))
        assert result.error_kind == ErrorKind.UPSTREAM_TIMEOUT
        assert "Classification exceeded 50ms" in result.error

    @pytest.mark.asyncio
    async def test_unexpected_exception(self, cache: ResultCache):
        orchestrator = make_orchestrator(cache, StubClassifier(error=RuntimeError("boom")))
        result = await orchestrator.run(payload())
        assert result.status == WorkflowStatus.FAILED
        assert result.error == "RuntimeError: boom"
        assert result.error_kind is None
        assert result.query_id.startswith("wf_")


class TestRejections:
    @pytest.mark.asyncio
    async def test_infeasible(self, cache: ResultCache):
        intent = QueryIntent(
            strategy=Strategy.REJECTED,
            confidence=0.95,
            reason="The data has no weather information",
            suggestions=["Ask about products or orders"],
        )
        result = await make_orchestrator(cache, StubClassifier(intent)).run(payload("weather tomorrow?"))
        assert result.status == WorkflowStatus.FAILED
        assert result.strategy == Strategy.REJECTED
        assert result.error_kind == ErrorKind.INFEASIBLE
        assert result.suggestions == ["Ask about products or orders"]
        assert step_names(result) == ["Classification"]

    @pytest.mark.asyncio
    async def test_clarification(self, cache: ResultCache):
        intent = QueryIntent(
            strategy=Strategy.SQL_ONLY,
            confidence=0.4,
            sql_plan=SQL_PLAN,
            reason="Which period?",
            needs_clarification=True,
            missing_fields=[MissingField(field="date_range", description="Period to report on")],
        )
        result = await make_orchestrator(cache, StubClassifier(intent)).run(payload("best sellers"))
        assert result.error_kind == ErrorKind.CLARIFICATION_NEEDED
        assert result.strategy == Strategy.REJECTED
        assert result.suggestions == ["date_range: Period to report on"]

    @pytest.mark.asyncio
    async def test_too_many_tables(self, cache: ResultCache):
        intent = QueryIntent(strategy=Strategy.SQL_ONLY, confidence=0.9, sql_plan=SqlPlan(tables=list("abcdef")))
        result = await make_orchestrator(cache, StubClassifier(intent)).run(payload())
        assert result.error_kind == ErrorKind.TOO_COMPLEX
        assert result.suggestions

    @pytest.mark.asyncio
    async def test_unknown_tables(self, cache: ResultCache):
        intent = QueryIntent(strategy=Strategy.SQL_ONLY, confidence=0.9, sql_plan=SqlPlan(tables=["weather"]))
        result = await make_orchestrator(cache, StubClassifier(intent)).run(payload())
        assert result.error_kind == ErrorKind.INFEASIBLE
        assert "weather" in result.error


class TestSqlOnly:
    @pytest.mark.asyncio
    async def test_success(self, cache: ResultCache):
        generator = StubSqlGenerator(GOOD_SQL)
        result = await make_orchestrator(cache, StubClassifier(SQL_INTENT), generator=generator).run(
            payload(time_context="2026-10-19")
        )
        assert result.status == WorkflowStatus.SUCCESS
        assert result.strategy == Strategy.SQL_ONLY
        assert result.rows == PRODUCT_ROWS
        assert result.sql_text == GOOD_SQL
        assert step_names(result) == ["Classification", "FieldSelection", "SqlGeneration", "SqlExecution"]
        assert generator.requests[0].time_context == "2026-10-19"
        assert set(generator.requests[0].slim_schema) == {"products", "categories"}

    @pytest.mark.asyncio
    async def test_row_limit(self, cache: ResultCache):
        result = await make_orchestrator(cache, StubClassifier(SQL_INTENT)).run(payload(max_rows=1))
        assert result.row_count == 1
        assert result.truncated is True

    @pytest.mark.asyncio
    async def test_second_run_hits_cache(self, cache: ResultCache):
        classifier = StubClassifier(SQL_INTENT)
        generator = StubSqlGenerator(GOOD_SQL)
        executor = StubSqlExecutor(rows={GOOD_SQL: PRODUCT_ROWS})
        orchestrator = make_orchestrator(cache, classifier, generator=generator, executor=executor)

        first = await orchestrator.run(payload())
        second = await orchestrator.run(payload())

        assert [s.cache_hit for s in first.steps] == [False, False, False, False]
        assert [s.cache_hit for s in second.steps] == [True, True, True, False]
        assert len(classifier.requests) == 1
        assert len(generator.requests) == 1
        assert len(executor.requests) == 2
        assert second.rows == first.rows

    @pytest.mark.asyncio
    async def test_cache_disabled_per_request(self, cache: ResultCache):
        classifier = StubClassifier(SQL_INTENT)
        orchestrator = make_orchestrator(cache, classifier)
        await orchestrator.run(payload(enable_cache=False))
        await orchestrator.run(payload(enable_cache=False))
        assert len(classifier.requests) == 2


class TestErrorCorrection:
    @pytest.mark.asyncio
    async def test_corrected_on_second_attempt(self, cache: ResultCache):
        executor = StubSqlExecutor(rows={GOOD_SQL: PRODUCT_ROWS}, failing={BAD_SQL})
        corrector = StubCorrector(GOOD_SQL)
        orchestrator = make_orchestrator(
            cache, StubClassifier(SQL_INTENT), generator=StubSqlGenerator(BAD_SQL), executor=executor, corrector=corrector
        )
        result = await orchestrator.run(payload())

        assert result.status == WorkflowStatus.SUCCESS
        assert result.sql_text == GOOD_SQL
        assert step_names(result) == [
            "Classification",
            "FieldSelection",
            "SqlGeneration",
            "SqlExecution",
            "ErrorCorrection",
            "SqlExecution",
        ]
        executions = [s for s in result.steps if s.name == "SqlExecution"]
        assert [(s.attempt, s.status) for s in executions] == [(1, StepStatus.FAILED), (2, StepStatus.SUCCESS)]
        assert corrector.requests[0].failed_sql == BAD_SQL
        assert "nme" in corrector.requests[0].error_message

    @pytest.mark.asyncio
    async def test_second_failure_is_terminal(self, cache: ResultCache):
        executor = StubSqlExecutor(failing={BAD_SQL, "SELECT still broken"})
        orchestrator = make_orchestrator(
            cache,
            StubClassifier(SQL_INTENT),
            generator=StubSqlGenerator(BAD_SQL),
            executor=executor,
            corrector=StubCorrector("SELECT still broken"),
        )
        result = await orchestrator.run(payload())

        assert result.status == WorkflowStatus.FAILED
        assert result.error_kind == ErrorKind.EXECUTION_ERROR
        assert len(executor.requests) == 2
        assert step_names(result).count("ErrorCorrection") == 1
        executions = [s for s in result.steps if s.name == "SqlExecution"]
        assert [(s.attempt, s.status) for s in executions] == [(1, StepStatus.FAILED), (2, StepStatus.FAILED)]

    @pytest.mark.asyncio
    async def test_without_corrector_fails_once(self, cache: ResultCache):
        executor = StubSqlExecutor(failing={BAD_SQL})
        orchestrator = make_orchestrator(cache, StubClassifier(SQL_INTENT), generator=StubSqlGenerator(BAD_SQL), executor=executor)
        result = await orchestrator.run(payload())
        assert result.error_kind == ErrorKind.EXECUTION_ERROR
        assert len(executor.requests) == 1

    @pytest.mark.asyncio
    async def test_corrector_failure(self, cache: ResultCache):
        orchestrator = make_orchestrator(
            cache,
            StubClassifier(SQL_INTENT),
            generator=StubSqlGenerator(BAD_SQL),
            executor=StubSqlExecutor(failing={BAD_SQL}),
            corrector=StubCorrector(error=UpstreamUnavailable("llm down")),
        )
        result = await orchestrator.run(payload())
        assert result.error_kind == ErrorKind.EXECUTION_ERROR
        assert "correction failed" in result.error


class TestVectorOnly:
    @pytest.mark.asyncio
    async def test_fuses_fields(self, cache: ResultCache):
        index = FixedVectorIndex({("products", "name"): [1, 2, 3], ("products", "description"): [3, 1]})
        result = await make_orchestrator(cache, StubClassifier(VECTOR_INTENT), index=index).run(payload(max_rows=2))

        assert result.status == WorkflowStatus.SUCCESS
        assert step_names(result) == ["Classification", "VectorSearch"]
        assert [r["_id"] for r in result.rows] == [1, 3]
        assert result.rows[0]["title"] == "item 1"
        assert result.rows[0]["_sources"] == [SourceKind.VECTOR]
        assert result.vector_result_count == 3
        assert result.truncated is True
        assert result.fusion_method == "rrf"

    @pytest.mark.asyncio
    async def test_embeddings_cached_between_runs(self, cache: ResultCache):
        index = FixedVectorIndex({("products", "name"): [1]})
        orchestrator = make_orchestrator(cache, StubClassifier(VECTOR_INTENT), index=index)
        await orchestrator.run(payload())
        second = await orchestrator.run(payload())
        assert second.steps[1].cache_hit is True

    @pytest.mark.asyncio
    async def test_index_failure_fails_vector_only(self, cache: ResultCache):
        index = FixedVectorIndex({("products", "name"): [1]}, error=UpstreamUnavailable("qdrant down"))
        result = await make_orchestrator(cache, StubClassifier(VECTOR_INTENT), index=index).run(payload())
        assert result.status == WorkflowStatus.FAILED
        assert result.error_kind == ErrorKind.UPSTREAM_UNAVAILABLE


class TestHybrid:
    @pytest.mark.asyncio
    async def test_query_id_bound_in_branches(self, cache: ResultCache):
        seen: dict = {}

        class RecordingSelector(StubFieldSelector):
            async def select(self, request):
                seen.update(structlog.contextvars.get_contextvars())
                return await super().select(request)

        orchestrator = make_orchestrator(
            cache, StubClassifier(HYBRID_INTENT), field_selector=RecordingSelector(), index=FixedVectorIndex(FIELD_RESULTS)
        )
        result = await orchestrator.run(payload())

        assert seen == {"query_id": result.query_id}
        assert "query_id" not in structlog.contextvars.get_contextvars()

    @pytest.mark.asyncio
    async def test_two_stage_fusion(self, cache: ResultCache):
        generator = StubSqlGenerator(GOOD_SQL)
        orchestrator = make_orchestrator(
            cache, StubClassifier(HYBRID_INTENT), generator=generator, index=FixedVectorIndex(FIELD_RESULTS)
        )
        result = await orchestrator.run(payload())

        assert result.status == WorkflowStatus.SUCCESS
        assert result.strategy == Strategy.HYBRID
        assert [r["_id"] for r in result.rows] == [10, 20, 99, 40, 30]
        assert result.rows[0]["name"] == "Trail tent"
        assert result.rows[0]["_sources"] == [SourceKind.SQL, SourceKind.VECTOR]
        assert result.vector_result_count == 4
        assert step_names(result) == [
            "Classification",
            "VectorSearch",
            "FieldSelection",
            "SqlGeneration",
            "SqlExecution",
            "Fusion",
        ]
        assert generator.requests[0].sql_hints.vector_ids == [20, 10, 40, 30]

    @pytest.mark.asyncio
    async def test_branches_run_concurrently(self, cache: ResultCache):
        orchestrator = make_orchestrator(
            cache,
            StubClassifier(HYBRID_INTENT),
            field_selector=StubFieldSelector(delay=0.12),
            index=FixedVectorIndex(FIELD_RESULTS, delay=0.2),
        )
        start = time.perf_counter()
        result = await orchestrator.run(payload())
        elapsed = time.perf_counter() - start

        assert result.status == WorkflowStatus.SUCCESS
        assert elapsed < 0.29
        assert step_names(result)[1:3] == ["VectorSearch", "FieldSelection"]

    @pytest.mark.asyncio
    async def test_vector_failure_degrades_to_partial(self, cache: ResultCache):
        index = FixedVectorIndex(FIELD_RESULTS, error=UpstreamUnavailable("qdrant down"))
        result = await make_orchestrator(cache, StubClassifier(HYBRID_INTENT), index=index).run(payload())

        assert result.status == WorkflowStatus.PARTIAL
        assert [r["_id"] for r in result.rows] == [10, 99]
        assert all(r["_sources"] == [SourceKind.SQL] for r in result.rows)
        assert result.rows[0]["name"] == "Trail tent"
        assert result.vector_result_count == 0
        assert result.fusion_method == "rrf"
        assert [(s.name, s.status) for s in result.steps] == [
            ("Classification", StepStatus.SUCCESS),
            ("VectorSearch", StepStatus.FAILED),
            ("FieldSelection", StepStatus.SUCCESS),
            ("SqlGeneration", StepStatus.SUCCESS),
            ("SqlExecution", StepStatus.SUCCESS),
            ("Fusion", StepStatus.SUCCESS),
        ]

    @pytest.mark.asyncio
    async def test_rows_without_ids_are_returned_unfused(self, cache: ResultCache):
        aggregate_rows = [{"category_id": 1, "n": 7}, {"category_id": 2, "n": 3}]
        orchestrator = make_orchestrator(
            cache,
            StubClassifier(HYBRID_INTENT),
            executor=StubSqlExecutor(rows={GOOD_SQL: aggregate_rows}),
            index=FixedVectorIndex(FIELD_RESULTS),
        )
        result = await orchestrator.run(payload())

        assert result.status == WorkflowStatus.PARTIAL
        assert result.rows == aggregate_rows
        assert result.row_count == 2
        assert "2 of 2 SQL rows have no 'id' column" in result.error
        assert result.error_kind is None
        assert result.vector_result_count == 4
        assert "Fusion" not in step_names(result)
        assert StepStatus.SKIPPED not in {s.status for s in result.steps}

    @pytest.mark.asyncio
    async def test_vector_timeout_degrades_to_partial(self, cache: ResultCache):
        index = FixedVectorIndex(FIELD_RESULTS, delay=0.2)
        result = await make_orchestrator(cache, StubClassifier(HYBRID_INTENT), index=index).run(
            payload(vector_timeout_ms=50)
        )
        assert result.status == WorkflowStatus.PARTIAL
        assert "exceeded 50ms" in result.steps[1].error

    @pytest.mark.asyncio
    async def test_field_selection_failure_fails_run(self, cache: ResultCache):
        orchestrator = make_orchestrator(
            cache,
            StubClassifier(HYBRID_INTENT),
            field_selector=StubFieldSelector(error=UpstreamUnavailable("llm down")),
            index=FixedVectorIndex(FIELD_RESULTS, delay=0.1),
        )
        result = await orchestrator.run(payload())
        assert result.status == WorkflowStatus.FAILED
        assert result.error_kind == ErrorKind.UPSTREAM_UNAVAILABLE


class TestWorkflowDefinition:
    def test_describe(self):
        definition = describe_workflow()
        names = [s["name"] for s in definition["steps"]]
        assert "VectorSearch" in names and "Fusion" in names
        assert definition["flows"]["hybrid"][-1] == "Fusion"
        assert definition["parallel"] == [["VectorSearch", "FieldSelection"]]
        assert definition["retry"]["max_attempts"] == 2

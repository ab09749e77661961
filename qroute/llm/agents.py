import json

import litellm
from pydantic import BaseModel, ValidationError

from qroute.collaborators import (
    ClassificationRequest,
    CorrectedSql,
    CorrectionRequest,
    FieldSelection,
    FieldSelectionRequest,
    GeneratedSql,
    SelectedTable,
    SqlGenerationRequest,
    SqlHints,
)
from qroute.constants import LLM_TEMPERATURE, VECTOR_CONTEXT_TOP_MATCHES
from qroute.errors import UpstreamUnavailable
from qroute.llm.prompts import (
    CLASSIFY_PROMPT,
    CORRECTION_PROMPT,
    FIELD_SELECTION_PROMPT,
    SQL_GENERATION_PROMPT,
    VECTOR_CONTEXT_BLOCK,
)
from qroute.llm.retry import upstream_errors, with_retry
from qroute.logging import get_logger
from qroute.models import QueryIntent
from qroute.schema import slim_schema

_logger = get_logger(__name__)


def strip_code_fence(content: str) -> str:
    content = content.strip()
    if content.startswith("```"):
        content = content.split("\n", 1)[1].rsplit("```", 1)[0].strip()
    return content


class StructuredLLM:
    """One structured completion per call, parsed into a pydantic model."""

    def __init__(self, model: str, temperature: float = LLM_TEMPERATURE):
        self.model = model
        self.temperature = temperature

    async def complete[M: BaseModel](self, prompt: str, schema: type[M], service: str) -> M:
        with upstream_errors(service):
            response = await with_retry(
                litellm.acompletion,
                model=self.model,
                messages=[{"role": "user", "content": prompt}],
                response_format=schema,
                temperature=self.temperature,
            )

        if not (content := response.choices[0].message.content):
            raise UpstreamUnavailable(f"{service} returned an empty response")
        try:
            return schema.model_validate_json(strip_code_fence(content))
        except ValidationError as e:
            _logger.warning("Malformed LLM output", service=service, errors=e.error_count())
            raise UpstreamUnavailable(f"{service} returned malformed output") from e


class LLMClassifier:
    def __init__(self, llm: StructuredLLM):
        self.llm = llm

    async def classify(self, request: ClassificationRequest) -> QueryIntent:
        prompt = CLASSIFY_PROMPT.format(
            schema_summary=request.schema_summary,
            vectorized_fields=json.dumps(request.vectorized_field_map, sort_keys=True),
            query=request.query_text,
        )
        return await self.llm.complete(prompt, QueryIntent, "classifier")


class _FieldSelectionSchema(BaseModel):
    selected_tables: list[SelectedTable]
    fuzzy_patterns: list[str] = []
    join_conditions: list[str] = []


class LLMFieldSelector:
    def __init__(self, llm: StructuredLLM):
        self.llm = llm

    async def select(self, request: FieldSelectionRequest) -> FieldSelection:
        context = ""
        if request.vector_context and request.vector_context.top_matches:
            matches = "\n".join(
                f"- {m.collection} id={m.candidate_id} score={m.score:.3f}"
                for m in request.vector_context.top_matches[:VECTOR_CONTEXT_TOP_MATCHES]
            )
            context = VECTOR_CONTEXT_BLOCK.format(matches=matches)

        prompt = FIELD_SELECTION_PROMPT.format(
            schema=json.dumps(request.filtered_schema, sort_keys=True),
            tables=", ".join(request.sql_plan.tables),
            allows_fuzzy=request.sql_plan.allows_fuzzy_match,
            vector_context=context,
            query=request.query_text,
        )
        parsed = await self.llm.complete(prompt, _FieldSelectionSchema, "field selector")

        tables = [t for t in parsed.selected_tables if t.table in request.filtered_schema]
        fuzzy = parsed.fuzzy_patterns if request.sql_plan.allows_fuzzy_match else []
        return FieldSelection(
            selected_tables=tables,
            slim_schema=slim_schema(request.filtered_schema, {t.table: t.fields for t in tables}),
            sql_hints=SqlHints(
                fuzzy_patterns=fuzzy or list(request.sql_plan.fuzzy_patterns),
                join_conditions=parsed.join_conditions,
                vector_ids=request.vector_context.candidate_ids if request.vector_context else [],
            ),
        )


class LLMSqlGenerator:
    def __init__(self, llm: StructuredLLM):
        self.llm = llm

    async def generate(self, request: SqlGenerationRequest) -> GeneratedSql:
        hints = request.sql_hints
        prompt = SQL_GENERATION_PROMPT.format(
            schema=json.dumps(request.slim_schema, sort_keys=True),
            fuzzy_patterns=", ".join(hints.fuzzy_patterns) or "none",
            join_conditions="; ".join(hints.join_conditions) or "none",
            vector_ids=", ".join(str(i) for i in hints.vector_ids) or "none",
            time_context=f"Current time context: {request.time_context}\n" if request.time_context else "",
            query=request.query_text,
        )
        generated = await self.llm.complete(prompt, GeneratedSql, "sql generator")
        return generated.model_copy(update={"sql_text": strip_code_fence(generated.sql_text)})


class LLMErrorCorrector:
    def __init__(self, llm: StructuredLLM):
        self.llm = llm

    async def correct(self, request: CorrectionRequest) -> CorrectedSql:
        prompt = CORRECTION_PROMPT.format(
            query=request.query_text,
            schema=json.dumps(request.selected_schema, sort_keys=True),
            sql=request.failed_sql,
            error=request.error_message,
        )
        corrected = await self.llm.complete(prompt, CorrectedSql, "error corrector")
        return corrected.model_copy(update={"corrected_sql": strip_code_fence(corrected.corrected_sql)})

CLASSIFY_PROMPT = """You are a query analyst. Decide how the user's question should be answered against this database.

Database schema:
{schema_summary}

Vectorized fields (collection -> named vectors): {vectorized_fields}

Routing rules:
1. Prefer SQL. If exact filters, comparisons, aggregates or LIKE patterns can answer the question, choose "sql_only".
2. Choose "vector_only" only when the question needs semantic understanding (synonyms, similar concepts, vague descriptions) over vectorized fields.
3. Choose "hybrid" when the question combines exact conditions with a semantic part.
4. Choose "rejected" when the question cannot be answered from this schema or is too unclear. Give a reason and suggestions.

Plans:
- sql_only needs sql_plan only; vector_only needs vector_plan only; hybrid needs both; rejected needs neither.
- A vector query may only name collections and named vectors listed above.
- Set needs_clarification and list missing_fields when a required detail is missing.

Question: {query}"""

FIELD_SELECTION_PROMPT = """Select the tables and columns needed to write SQL for the question.

Schema:
{schema}

Planned tables: {tables}
Fuzzy matching allowed: {allows_fuzzy}
{vector_context}
Return every table the query touches, including join tables, with only the columns it needs.
Add LIKE patterns for fuzzy text conditions and the join conditions between the selected tables.

Question: {query}"""

VECTOR_CONTEXT_BLOCK = """Semantic search already found these candidates (ids may be used as filters):
{matches}
"""

SQL_GENERATION_PROMPT = """Write one read-only SQLite query that answers the question.

Schema (only these tables and columns exist):
{schema}

Hints:
- LIKE patterns: {fuzzy_patterns}
- Join conditions: {join_conditions}
- Candidate ids from semantic search: {vector_ids}
{time_context}
Rules: a single SELECT (or WITH ... SELECT) statement, no modifications, always select the primary key of the main table as "id".

Question: {query}"""

CORRECTION_PROMPT = """This SQLite query failed. Fix it.

Question: {query}

Schema:
{schema}

Failed SQL:
{sql}

Error:
{error}

Return the corrected query, the kind of error (syntax, unknown_column, unknown_table, type_mismatch, other) and its root cause in one sentence."""

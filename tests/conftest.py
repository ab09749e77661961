import asyncio
import hashlib
from collections.abc import AsyncGenerator, Sequence
from pathlib import Path

import numpy as np
import pytest
import pytest_asyncio

from qroute.cache import MemoryCacheBackend, ResultCache
from qroute.collaborators import (
    ClassificationRequest,
    CorrectedSql,
    CorrectionRequest,
    FieldSelection,
    FieldSelectionRequest,
    GeneratedSql,
    SelectedTable,
    SqlExecutionRequest,
    SqlExecutionResult,
    SqlGenerationRequest,
    SqlValidation,
)
from qroute.embedder import CachedEmbedder, Embedder, EmbeddingConfig
from qroute.errors import ExecutionError
from qroute.models import QueryIntent
from qroute.vector import MemoryVectorIndex, VectorIndex, VectorIndexClient
from qroute.vector.types import ScoredPoint, SearchRequest

TEST_EMBEDDING_DIM = 32

SCHEMA = {
    "products": {
        "description": "Catalog items",
        "columns": [
            {"name": "id", "type": "INTEGER", "is_primary": True},
            {"name": "name", "type": "TEXT"},
            {"name": "description", "type": "TEXT"},
            {"name": "price", "type": "REAL"},
            {"name": "category_id", "type": "INTEGER", "references": {"table": "categories", "column": "id"}},
        ],
    },
    "categories": {
        "columns": [
            {"name": "id", "type": "INTEGER", "is_primary": True},
            {"name": "title", "type": "TEXT"},
        ],
    },
    "orders": {"id": "INTEGER", "product_id": "INTEGER", "quantity": "INTEGER"},
}

VECTORIZED_FIELDS = {"products": ["name", "description"]}


def mock_embedding(text: str) -> np.ndarray:
    h = hashlib.md5(text.encode()).hexdigest()
    # MD5 is 32 chars, repeat to get TEST_EMBEDDING_DIM
    arr = np.array([int(c, 16) / 15.0 for c in h] * (TEST_EMBEDDING_DIM // 32))
    norm = np.linalg.norm(arr)
    return arr / norm if norm > 0 else arr


class FakeEmbedder(Embedder):
    """Deterministic embeddings; `fixed` pins specific texts to known vectors."""

    def __init__(self, fixed: dict[str, Sequence[float]] | None = None):
        super().__init__(EmbeddingConfig(model="test-embedding", dim=TEST_EMBEDDING_DIM))
        self.fixed = {k: np.asarray(v, dtype=np.float32) for k, v in (fixed or {}).items()}
        self.calls: list[list[str]] = []

    async def embed(self, texts: list[str]) -> np.ndarray:
        self.calls.append(list(texts))
        return np.array([self.fixed.get(t, mock_embedding(t)) for t in texts])


class FixedVectorIndex(VectorIndex):
    """Returns scripted id orders per (collection, named vector)."""

    name = "fixed"

    def __init__(self, results: dict[tuple[str, str], list[int | str]], delay: float = 0.0, error: Exception | None = None):
        self.results = results
        self.delay = delay
        self.error = error
        self.requests: list[tuple[str, SearchRequest]] = []

    async def collection_exists(self, collection: str) -> bool:
        return any(c == collection for c, _ in self.results)

    async def vector_names(self, collection: str) -> set[str] | None:
        names = {name for c, name in self.results if c == collection}
        return names or None

    async def search_batch(self, collection: str, requests: list[SearchRequest]) -> list[list[ScoredPoint]]:
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        out = []
        for request in requests:
            self.requests.append((collection, request))
            ids = self.results.get((collection, request.vector_name), [])[: request.limit]
            out.append(
                [ScoredPoint(id=i, score=1.0 - rank * 0.01, payload={"title": f"item {i}"}) for rank, i in enumerate(ids)]
            )
        return out


# --- Stub collaborators ---


class StubClassifier:
    def __init__(self, intent: QueryIntent | None = None, error: Exception | None = None, delay: float = 0.0):
        self.intent = intent
        self.error = error
        self.delay = delay
        self.requests: list[ClassificationRequest] = []

    async def classify(self, request: ClassificationRequest) -> QueryIntent:
        self.requests.append(request)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        return self.intent


class StubFieldSelector:
    def __init__(self, error: Exception | None = None, delay: float = 0.0):
        self.error = error
        self.delay = delay
        self.requests: list[FieldSelectionRequest] = []

    async def select(self, request: FieldSelectionRequest) -> FieldSelection:
        self.requests.append(request)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        tables = [SelectedTable(table=t, fields=["id", "name"]) for t in request.filtered_schema]
        return FieldSelection(selected_tables=tables, slim_schema=request.filtered_schema)


class StubSqlGenerator:
    def __init__(self, sql_text: str = "SELECT id, name FROM products", error: Exception | None = None):
        self.sql_text = sql_text
        self.error = error
        self.requests: list[SqlGenerationRequest] = []

    async def generate(self, request: SqlGenerationRequest) -> GeneratedSql:
        self.requests.append(request)
        if self.error:
            raise self.error
        return GeneratedSql(sql_text=self.sql_text)


class StubSqlExecutor:
    """Maps SQL text to rows; anything listed in `failing` raises an execution error."""

    def __init__(
        self,
        rows: dict[str, list[dict]] | None = None,
        failing: set[str] | None = None,
        error: Exception | None = None,
        delay: float = 0.0,
    ):
        self.rows = rows or {}
        self.failing = failing or set()
        self.error = error
        self.delay = delay
        self.requests: list[SqlExecutionRequest] = []

    async def execute(self, request: SqlExecutionRequest) -> SqlExecutionResult:
        self.requests.append(request)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        if request.sql_text in self.failing:
            raise ExecutionError("no such column: nme", sql_text=request.sql_text)
        rows = self.rows.get(request.sql_text, [])
        limited = rows[: request.row_limit]
        return SqlExecutionResult(rows=limited, row_count=len(limited), truncated=len(rows) > request.row_limit)

    async def validate(self, sql_text: str) -> SqlValidation:
        return SqlValidation(valid=sql_text not in self.failing)


class StubCorrector:
    def __init__(self, corrected_sql: str = "SELECT id, name FROM products", error: Exception | None = None):
        self.corrected_sql = corrected_sql
        self.error = error
        self.requests: list[CorrectionRequest] = []

    async def correct(self, request: CorrectionRequest) -> CorrectedSql:
        self.requests.append(request)
        if self.error:
            raise self.error
        return CorrectedSql(corrected_sql=self.corrected_sql, error_kind="unknown_column", root_cause="typo")


# --- Fixtures ---


@pytest.fixture
def cache() -> ResultCache:
    return ResultCache(MemoryCacheBackend())


@pytest.fixture
def fake_embedder() -> FakeEmbedder:
    return FakeEmbedder()


@pytest.fixture
def embedder(fake_embedder: FakeEmbedder, cache: ResultCache) -> CachedEmbedder:
    return CachedEmbedder(fake_embedder, cache)


@pytest.fixture
def memory_index() -> MemoryVectorIndex:
    index = MemoryVectorIndex()
    index.create_collection("products", ["name", "description"])
    return index


@pytest.fixture
def vector_client(memory_index: MemoryVectorIndex, embedder: CachedEmbedder) -> VectorIndexClient:
    return VectorIndexClient(memory_index, embedder)


@pytest_asyncio.fixture
async def sqlite_path(tmp_path: Path) -> AsyncGenerator[Path]:
    import aiosqlite

    path = tmp_path / "shop.db"
    async with aiosqlite.connect(path) as conn:
        await conn.executescript("""
            CREATE TABLE categories (id INTEGER PRIMARY KEY, title TEXT);
            CREATE TABLE products (
                id INTEGER PRIMARY KEY,
                name TEXT,
                description TEXT,
                price REAL,
                category_id INTEGER REFERENCES categories(id),
                image BLOB
            );
            INSERT INTO categories VALUES (1, 'outdoor'), (2, 'kitchen');
            INSERT INTO products VALUES
                (10, 'Trail tent', 'Two person tent', 199.0, 1, x'0102'),
                (20, 'Camp stove', 'Compact gas stove', 49.5, 1, NULL),
                (30, 'Chef knife', 'Forged steel knife', 89.0, 2, NULL),
                (40, 'Sleeping bag', 'Down bag for cold nights', 150.0, 1, NULL);
        """)
        await conn.commit()
    yield path

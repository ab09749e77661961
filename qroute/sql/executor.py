import asyncio
import sqlite3
from typing import Any

from qroute.collaborators import SqlExecutionRequest, SqlExecutionResult, SqlValidation
from qroute.database import Database
from qroute.errors import ExecutionError, UpstreamTimeout
from qroute.logging import get_logger
from qroute.utils import ms_now, timeout_seconds, truncate

_logger = get_logger(__name__)

READ_ONLY_KEYWORDS = frozenset({"SELECT", "WITH", "EXPLAIN"})


def split_statements(sql: str) -> list[str]:
    """Split on semicolons outside quoted strings and identifiers.

    Comments outside quotes are dropped; a `--` or `/*` inside a literal is kept.
    """
    statements: list[str] = []
    current: list[str] = []
    quote: str | None = None
    i = 0
    while i < len(sql):
        ch = sql[i]
        if quote:
            if ch == quote:
                quote = None
        elif ch in "'\"`":
            quote = ch
        elif sql.startswith("--", i):
            end = sql.find("\n", i)
            i = len(sql) if end == -1 else end
            current.append(" ")
            continue
        elif sql.startswith("/*", i):
            end = sql.find("*/", i + 2)
            i = len(sql) if end == -1 else end + 2
            current.append(" ")
            continue
        elif ch == ";":
            statements.append("".join(current))
            current = []
            i += 1
            continue
        current.append(ch)
        i += 1
    statements.append("".join(current))
    return [s.strip() for s in statements if s.strip()]


def check_read_only(sql: str) -> str:
    statements = split_statements(sql)
    if not statements:
        raise ExecutionError("Empty SQL statement", sql_text=sql)
    if len(statements) > 1:
        raise ExecutionError(f"Expected a single statement, got {len(statements)}", sql_text=sql)
    statement = statements[0]
    keyword = statement.split(None, 1)[0].upper()
    if keyword not in READ_ONLY_KEYWORDS:
        raise ExecutionError(f"Only read-only statements are allowed, got {keyword}", sql_text=sql)
    return statement


def _cell(value: Any) -> Any:
    if value is None or isinstance(value, str | int | float | bool):
        return value
    if isinstance(value, bytes):
        return value.hex()
    return str(value)


class SqliteExecutor:
    """Executes generated SQL against a SQLite database."""

    def __init__(self, db: Database):
        self.db = db

    async def _fetch(self, sql: str, limit: int) -> tuple[list[str], list[tuple]]:
        async with self.db.conn.execute(sql) as cursor:
            columns = [d[0] for d in cursor.description or []]
            rows = await cursor.fetchmany(limit)
        return columns, [tuple(r) for r in rows]

    async def execute(self, request: SqlExecutionRequest) -> SqlExecutionResult:
        sql = check_read_only(request.sql_text) if request.read_only else request.sql_text.strip()
        start = ms_now()
        try:
            async with asyncio.timeout(timeout_seconds(request.timeout_ms)):
                # one extra row tells us whether the limit cut the result
                columns, raw = await self._fetch(sql, request.row_limit + 1)
        except TimeoutError as e:
            await self.db.conn.interrupt()
            raise UpstreamTimeout(f"SQL execution exceeded {request.timeout_ms}ms") from e
        except sqlite3.Error as e:
            _logger.info("SQL execution failed", error=str(e), sql=truncate(sql, 200))
            raise ExecutionError(str(e), sql_text=sql) from e

        truncated = len(raw) > request.row_limit
        rows = [{col: _cell(v) for col, v in zip(columns, r)} for r in raw[: request.row_limit]]
        _logger.debug("SQL executed", rows=len(rows), truncated=truncated, duration_ms=ms_now() - start)
        return SqlExecutionResult(rows=rows, row_count=len(rows), truncated=truncated, columns=columns)

    async def validate(self, sql_text: str) -> SqlValidation:
        try:
            statement = check_read_only(sql_text)
            async with self.db.conn.execute(f"EXPLAIN QUERY PLAN {statement}") as cursor:
                await cursor.fetchall()
        except ExecutionError as e:
            return SqlValidation(valid=False, error=e.message)
        except sqlite3.Error as e:
            return SqlValidation(valid=False, error=str(e))
        return SqlValidation(valid=True)

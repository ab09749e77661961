from pathlib import Path

import pytest
import pytest_asyncio

from qroute.collaborators import SqlExecutionRequest
from qroute.database import Database
from qroute.errors import ExecutionError
from qroute.sql import SqliteExecutor, check_read_only, split_statements


@pytest_asyncio.fixture
async def executor(sqlite_path: Path):
    db = Database(sqlite_path, read_only=True)
    await db.connect()
    yield SqliteExecutor(db)
    await db.close()


class TestReadOnlyCheck:
    def test_accepts_select_and_with(self):
        assert check_read_only("SELECT 1;") == "SELECT 1"
        assert check_read_only("  with t as (select 1) select * from t").startswith("with")

    def test_comments_are_ignored(self):
        assert check_read_only("-- pick one\nSELECT 1 /* inline */") == "SELECT 1"

    def test_semicolon_inside_string(self):
        assert split_statements("SELECT ';' AS x; ") == ["SELECT ';' AS x"]

    def test_comment_markers_inside_literals_are_kept(self):
        assert check_read_only("SELECT '--x' AS a, '/* y */' AS b") == "SELECT '--x' AS a, '/* y */' AS b"
        assert split_statements("SELECT 'it''s -- fine' AS v -- trailing\n") == ["SELECT 'it''s -- fine' AS v"]

    def test_commented_out_semicolon_is_not_a_split(self):
        assert check_read_only("SELECT 1 -- ; DROP TABLE products\n") == "SELECT 1"
        assert split_statements("SELECT 1 /* ; */ AS x") == ["SELECT 1   AS x"]

    def test_rejects_multiple_statements(self):
        with pytest.raises(ExecutionError, match="single statement"):
            check_read_only("SELECT 1; DROP TABLE products")

    def test_rejects_writes(self):
        with pytest.raises(ExecutionError, match="read-only"):
            check_read_only("DELETE FROM products")

    def test_rejects_empty(self):
        with pytest.raises(ExecutionError):
            check_read_only("  -- nothing here\n")


class TestSqliteExecutor:
    @pytest.mark.asyncio
    async def test_rows_and_columns(self, executor: SqliteExecutor):
        result = await executor.execute(SqlExecutionRequest(sql_text="SELECT id, name FROM products ORDER BY id"))
        assert result.columns == ["id", "name"]
        assert [r["id"] for r in result.rows] == [10, 20, 30, 40]
        assert result.row_count == 4
        assert result.truncated is False

    @pytest.mark.asyncio
    async def test_row_limit_truncates(self, executor: SqliteExecutor):
        result = await executor.execute(SqlExecutionRequest(sql_text="SELECT id FROM products ORDER BY id", row_limit=2))
        assert [r["id"] for r in result.rows] == [10, 20]
        assert result.truncated is True

    @pytest.mark.asyncio
    async def test_exact_limit_is_not_truncated(self, executor: SqliteExecutor):
        result = await executor.execute(SqlExecutionRequest(sql_text="SELECT id FROM products", row_limit=4))
        assert result.truncated is False

    @pytest.mark.asyncio
    async def test_literal_with_comment_marker(self, executor: SqliteExecutor):
        result = await executor.execute(SqlExecutionRequest(sql_text="SELECT '--not a comment' AS v"))
        assert result.rows == [{"v": "--not a comment"}]

    @pytest.mark.asyncio
    async def test_blob_becomes_hex(self, executor: SqliteExecutor):
        result = await executor.execute(SqlExecutionRequest(sql_text="SELECT image FROM products WHERE id = 10"))
        assert result.rows == [{"image": "0102"}]

    @pytest.mark.asyncio
    async def test_join(self, executor: SqliteExecutor):
        sql = "SELECT p.name, c.title FROM products p JOIN categories c ON c.id = p.category_id WHERE c.title = 'kitchen'"
        result = await executor.execute(SqlExecutionRequest(sql_text=sql))
        assert result.rows == [{"name": "Chef knife", "title": "kitchen"}]

    @pytest.mark.asyncio
    async def test_sqlite_error_is_execution_error(self, executor: SqliteExecutor):
        with pytest.raises(ExecutionError, match="no such column") as exc_info:
            await executor.execute(SqlExecutionRequest(sql_text="SELECT nme FROM products"))
        assert exc_info.value.sql_text == "SELECT nme FROM products"

    @pytest.mark.asyncio
    async def test_write_rejected_before_execution(self, executor: SqliteExecutor):
        with pytest.raises(ExecutionError):
            await executor.execute(SqlExecutionRequest(sql_text="DELETE FROM products"))

    @pytest.mark.asyncio
    async def test_read_only_connection_blocks_writes(self, executor: SqliteExecutor):
        request = SqlExecutionRequest(sql_text="DELETE FROM products", read_only=False)
        with pytest.raises(ExecutionError, match="readonly"):
            await executor.execute(request)

    @pytest.mark.asyncio
    async def test_validate(self, executor: SqliteExecutor):
        assert (await executor.validate("SELECT id FROM products")).valid is True

        bad_column = await executor.validate("SELECT nme FROM products")
        assert bad_column.valid is False
        assert "nme" in bad_column.error

        write = await executor.validate("UPDATE products SET price = 0")
        assert write.valid is False

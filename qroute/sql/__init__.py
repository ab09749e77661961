from qroute.sql.executor import SqliteExecutor, check_read_only, split_statements

__all__ = ["SqliteExecutor", "check_read_only", "split_statements"]

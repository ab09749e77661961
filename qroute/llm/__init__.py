from qroute.llm.retry import upstream_errors, with_retry

__all__ = ["upstream_errors", "with_retry"]

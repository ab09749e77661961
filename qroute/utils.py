import time
from uuid import uuid4


def truncate(value: str, max_len: int) -> str:
    if len(value) <= max_len:
        return value
    return value[: max_len - 3] + "..."


def ms_now() -> int:
    return time.monotonic_ns() // 1_000_000


def new_query_id() -> str:
    return f"wf_{uuid4().hex[:12]}"


def timeout_seconds(timeout_ms: int | None) -> float | None:
    if timeout_ms is None:
        return None
    return timeout_ms / 1000

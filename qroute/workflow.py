import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from qroute.cache import CacheNamespace
from qroute.constants import ERROR_PREVIEW_LIMIT
from qroute.errors import UpstreamTimeout
from qroute.models import StepRecord, StepStatus, Strategy
from qroute.utils import ms_now, timeout_seconds, truncate


class StepName(StrEnum):
    CLASSIFICATION = "Classification"
    FIELD_SELECTION = "FieldSelection"
    SQL_GENERATION = "SqlGeneration"
    SQL_EXECUTION = "SqlExecution"
    VECTOR_SEARCH = "VectorSearch"
    ERROR_CORRECTION = "ErrorCorrection"
    FUSION = "Fusion"


@dataclass(frozen=True)
class StepDefinition:
    name: StepName
    description: str
    cache_namespace: CacheNamespace | None = None


STEP_DEFINITIONS: list[StepDefinition] = [
    StepDefinition(StepName.CLASSIFICATION, "Route the query to a retrieval strategy", CacheNamespace.CLASSIFICATION),
    StepDefinition(StepName.FIELD_SELECTION, "Pick tables and columns for SQL", CacheNamespace.FIELD_SELECTION),
    StepDefinition(StepName.SQL_GENERATION, "Synthesize read-only SQL", CacheNamespace.SQL_TEXT),
    StepDefinition(StepName.SQL_EXECUTION, "Run SQL against the relational store"),
    StepDefinition(StepName.VECTOR_SEARCH, "Search named vectors and fuse per field", CacheNamespace.EMBEDDING),
    StepDefinition(StepName.ERROR_CORRECTION, "Repair failed SQL once"),
    StepDefinition(StepName.FUSION, "Fuse vector and SQL rankings"),
]

FLOWS: dict[Strategy, list[StepName]] = {
    Strategy.SQL_ONLY: [
        StepName.CLASSIFICATION,
        StepName.FIELD_SELECTION,
        StepName.SQL_GENERATION,
        StepName.SQL_EXECUTION,
    ],
    Strategy.VECTOR_ONLY: [StepName.CLASSIFICATION, StepName.VECTOR_SEARCH],
    Strategy.HYBRID: [
        StepName.CLASSIFICATION,
        StepName.VECTOR_SEARCH,
        StepName.FIELD_SELECTION,
        StepName.SQL_GENERATION,
        StepName.SQL_EXECUTION,
        StepName.FUSION,
    ],
    Strategy.REJECTED: [StepName.CLASSIFICATION],
}

PARALLEL_GROUPS: list[list[StepName]] = [[StepName.VECTOR_SEARCH, StepName.FIELD_SELECTION]]


def describe_workflow() -> dict[str, Any]:
    """Static definition of the orchestrated workflow."""
    return {
        "name": "retrieval-orchestrator",
        "steps": [
            {"name": d.name, "description": d.description, "cache_namespace": d.cache_namespace}
            for d in STEP_DEFINITIONS
        ],
        "flows": {strategy: [str(s) for s in steps] for strategy, steps in FLOWS.items()},
        "parallel": [[str(s) for s in group] for group in PARALLEL_GROUPS],
        "retry": {
            "step": StepName.SQL_EXECUTION,
            "corrector": StepName.ERROR_CORRECTION,
            "max_attempts": 2,
        },
    }


class StepHandle:
    def __init__(self, name: StepName, attempt: int):
        self.name = name
        self.attempt = attempt
        self.cache_hit = False


class StepLog:
    """Step records kept in start order.

    A slot is reserved when a step starts, so concurrent steps keep their start
    order no matter which finishes first.
    """

    def __init__(self):
        self._records: list[StepRecord | None] = []

    @property
    def records(self) -> list[StepRecord]:
        return [r for r in self._records if r is not None]

    def _finish(self, slot: int, handle: StepHandle, start: int, status: StepStatus, error: str | None) -> None:
        self._records[slot] = StepRecord(
            name=handle.name,
            status=status,
            duration_ms=ms_now() - start,
            error=truncate(error, ERROR_PREVIEW_LIMIT) if error else None,
            cache_hit=handle.cache_hit,
            attempt=handle.attempt,
        )

    @asynccontextmanager
    async def step(self, name: StepName, timeout_ms: int | None = None, attempt: int = 1) -> AsyncIterator[StepHandle]:
        handle = StepHandle(name, attempt)
        slot = len(self._records)
        self._records.append(None)
        start = ms_now()
        try:
            async with asyncio.timeout(timeout_seconds(timeout_ms)):
                yield handle
        except TimeoutError as e:
            message = f"{name} exceeded {timeout_ms}ms"
            self._finish(slot, handle, start, StepStatus.FAILED, message)
            raise UpstreamTimeout(message) from e
        except asyncio.CancelledError:
            self._finish(slot, handle, start, StepStatus.FAILED, "cancelled")
            raise
        except Exception as e:
            self._finish(slot, handle, start, StepStatus.FAILED, str(e) or type(e).__name__)
            raise
        self._finish(slot, handle, start, StepStatus.SUCCESS, None)

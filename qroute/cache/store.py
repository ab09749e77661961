import hashlib
import json
from collections.abc import Mapping
from dataclasses import asdict, dataclass, is_dataclass
from enum import Enum, StrEnum
from typing import Any

from pydantic import BaseModel, ValidationError

from qroute.cache.backends import CacheBackend
from qroute.constants import CACHE_KEY_PREFIX, TTL_CLASSIFICATION, TTL_EMBEDDING, TTL_FIELD_SELECTION, TTL_SQL_TEXT
from qroute.logging import get_logger

_logger = get_logger(__name__)


class CacheNamespace(StrEnum):
    EMBEDDING = "embedding"
    CLASSIFICATION = "classification"
    FIELD_SELECTION = "field_selection"
    SQL_TEXT = "sql_text"


DEFAULT_TTLS: dict[str, int] = {
    CacheNamespace.EMBEDDING: TTL_EMBEDDING,
    CacheNamespace.CLASSIFICATION: TTL_CLASSIFICATION,
    CacheNamespace.FIELD_SELECTION: TTL_FIELD_SELECTION,
    CacheNamespace.SQL_TEXT: TTL_SQL_TEXT,
}


def canonicalize(value: Any) -> Any:
    """Reduce a structured value to plain JSON types with a stable shape.

    Mapping order never matters; sets are sorted; models and dataclasses are
    dumped to their field dicts first.
    """
    if isinstance(value, BaseModel):
        return canonicalize(value.model_dump(mode="json"))
    if is_dataclass(value) and not isinstance(value, type):
        return canonicalize(asdict(value))
    if isinstance(value, Enum):
        return canonicalize(value.value)
    if isinstance(value, Mapping):
        return {str(k): canonicalize(v) for k, v in value.items()}
    if isinstance(value, set | frozenset):
        items = [canonicalize(v) for v in value]
        return sorted(items, key=lambda v: json.dumps(v, sort_keys=True))
    if isinstance(value, list | tuple):
        return [canonicalize(v) for v in value]
    if value is None or isinstance(value, str | int | float | bool):
        return value
    return str(value)


def canonical_json(value: Any) -> str:
    return json.dumps(canonicalize(value), sort_keys=True, separators=(",", ":"), ensure_ascii=False)


@dataclass
class NamespaceStats:
    hits: int = 0
    misses: int = 0
    writes: int = 0
    errors: int = 0


class ResultCache:
    def __init__(
        self,
        backend: CacheBackend,
        ttls: Mapping[str, int] | None = None,
        prefix: str = CACHE_KEY_PREFIX,
        enabled: bool = True,
    ):
        self.backend = backend
        self.ttls = {**DEFAULT_TTLS, **(ttls or {})}
        self.prefix = prefix
        self.enabled = enabled
        self._stats: dict[str, NamespaceStats] = {}

    def _ns_prefix(self, namespace: str) -> str:
        return f"{self.prefix}:{namespace}:"

    def _stats_for(self, namespace: str) -> NamespaceStats:
        return self._stats.setdefault(str(namespace), NamespaceStats())

    def key(self, namespace: str, structured_input: Any) -> str:
        digest = hashlib.sha256(canonical_json(structured_input).encode()).hexdigest()
        return f"{self._ns_prefix(namespace)}{digest}"

    async def get(self, namespace: str, key: str) -> tuple[bytes | None, bool]:
        if not self.enabled:
            return None, False
        stats = self._stats_for(namespace)
        try:
            value = await self.backend.get(key)
        except Exception as e:
            stats.errors += 1
            _logger.warning("Cache read failed, treating as miss", namespace=str(namespace), error=str(e))
            return None, False
        if value is None:
            stats.misses += 1
            return None, False
        stats.hits += 1
        return value, True

    async def set(self, namespace: str, key: str, value: bytes, ttl: int | None = None) -> None:
        if not self.enabled:
            return
        ttl = ttl if ttl is not None else self.ttls.get(namespace)
        if ttl is None:
            raise ValueError(f"No TTL configured for cache namespace {namespace!r}")
        stats = self._stats_for(namespace)
        try:
            await self.backend.set(key, value, ttl)
            stats.writes += 1
        except Exception as e:
            stats.errors += 1
            _logger.warning("Cache write failed", namespace=str(namespace), error=str(e))

    async def get_model[M: BaseModel](self, namespace: str, key: str, model_cls: type[M]) -> M | None:
        value, found = await self.get(namespace, key)
        if not found:
            return None
        try:
            return model_cls.model_validate_json(value)
        except ValidationError:
            _logger.warning("Discarding undecodable cache entry", namespace=str(namespace), key=key)
            return None

    async def set_model(self, namespace: str, key: str, model: BaseModel, ttl: int | None = None) -> None:
        await self.set(namespace, key, model.model_dump_json().encode(), ttl)

    async def invalidate_namespace(self, namespace: str) -> int:
        try:
            removed = await self.backend.delete_prefix(self._ns_prefix(namespace))
        except Exception as e:
            self._stats_for(namespace).errors += 1
            _logger.warning("Cache invalidation failed", namespace=str(namespace), error=str(e))
            return 0
        _logger.info("Cache namespace invalidated", namespace=str(namespace), removed=removed)
        return removed

    async def invalidate_all(self) -> int:
        removed = 0
        for namespace in self.ttls:
            removed += await self.invalidate_namespace(namespace)
        return removed

    async def stats(self) -> dict[str, Any]:
        namespaces: dict[str, Any] = {}
        for namespace, ttl in self.ttls.items():
            counters = self._stats_for(namespace)
            try:
                size = await self.backend.count_prefix(self._ns_prefix(namespace))
            except Exception as e:
                _logger.warning("Cache size lookup failed", namespace=str(namespace), error=str(e))
                size = None
            namespaces[str(namespace)] = {**asdict(counters), "ttl": ttl, "size": size}
        return {"enabled": self.enabled, "backend": self.backend.name, "namespaces": namespaces}

    async def close(self) -> None:
        await self.backend.close()

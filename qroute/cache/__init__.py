from qroute.cache.backends import CacheBackend, CacheEntry, MemoryCacheBackend, RedisCacheBackend, SqliteCacheBackend
from qroute.cache.store import CacheNamespace, ResultCache, canonical_json

__all__ = [
    "CacheBackend",
    "CacheEntry",
    "CacheNamespace",
    "MemoryCacheBackend",
    "RedisCacheBackend",
    "ResultCache",
    "SqliteCacheBackend",
    "canonical_json",
]

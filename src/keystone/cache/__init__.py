"""Multi-level result cache for KEYSTONE.

L1 is an in-process LRU; L2 is a shared backend (in-memory or Parquet files).
Entries carry a TTL and dependency tags; concurrent misses for the same key
collapse into one computation (single-flight).
"""

from keystone.cache.backends import CacheBackend, MemoryBackend, ParquetBackend
from keystone.cache.entry import CacheEntry
from keystone.cache.keys import cache_key, derive_tags
from keystone.cache.store import CacheStore

__all__ = [
    "CacheBackend",
    "CacheEntry",
    "CacheStore",
    "MemoryBackend",
    "ParquetBackend",
    "cache_key",
    "derive_tags",
]

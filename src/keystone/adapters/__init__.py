"""Source adapter layer for KEYSTONE.

Adapters execute one plan entry against one backend:
- SQL: read-only SQLite (sqlite3 in a worker thread)
- API: external metrics API (httpx)
- Stream: bounded snapshots of a streaming feed
"""

from keystone.adapters.api import ApiSourceAdapter
from keystone.adapters.base import SourceAdapter
from keystone.adapters.http import APIProviderError, BaseAsyncClient, RateLimiter
from keystone.adapters.sql import SqlSourceAdapter
from keystone.adapters.stream import StreamFeed, StreamSourceAdapter, StreamSubscription

__all__ = [
    "APIProviderError",
    "ApiSourceAdapter",
    "BaseAsyncClient",
    "RateLimiter",
    "SourceAdapter",
    "SqlSourceAdapter",
    "StreamFeed",
    "StreamSourceAdapter",
    "StreamSubscription",
]

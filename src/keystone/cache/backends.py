"""L2 cache backends.

Two implementations of the same async contract:
    - MemoryBackend: process-local dict, for tests and single-node deployments
    - ParquetBackend: files on a shared volume, one Parquet file per entry

Parquet storage structure:
    {base}/entries/{key}.parquet          records as columns, metadata in schema
    {base}/tags/{sha1(tag)}/{key}         empty marker files (tag index)

Tag invalidation walks one tag directory only, never the whole cache.
All file I/O runs in asyncio.to_thread for non-blocking execution.
"""

import asyncio
import hashlib
import json
import logging
import re
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Mapping

import pyarrow as pa
import pyarrow.parquet as pq

from keystone.cache.entry import CacheEntry
from keystone.errors import CacheError

logger = logging.getLogger(__name__)

_KEY_PATTERN = re.compile(r"^[A-Za-z0-9_-]{1,128}$")
_META_KEY = b"keystone"


class CacheBackend(ABC):
    """Shared (L2) cache contract.

    Implementations raise CacheError for any storage failure.
    """

    @abstractmethod
    async def get(self, key: str) -> CacheEntry | None:
        """Return the stored entry or None."""

    @abstractmethod
    async def set(self, entry: CacheEntry) -> None:
        """Store (or replace) an entry and index its tags."""

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Remove an entry if present."""

    @abstractmethod
    async def invalidate_tag(self, tag: str) -> int:
        """Remove every entry carrying tag. Returns the number removed."""

    async def close(self) -> None:
        """Release backend resources."""


class MemoryBackend(CacheBackend):
    """In-process L2 with a tag index."""

    def __init__(self) -> None:
        self._entries: dict[str, CacheEntry] = {}
        self._tags: dict[str, set[str]] = {}

    def __len__(self) -> int:
        return len(self._entries)

    async def get(self, key: str) -> CacheEntry | None:
        return self._entries.get(key)

    async def set(self, entry: CacheEntry) -> None:
        self._unindex(entry.key)
        self._entries[entry.key] = entry
        for tag in entry.dependency_tags:
            self._tags.setdefault(tag, set()).add(entry.key)

    async def delete(self, key: str) -> None:
        self._unindex(key)
        self._entries.pop(key, None)

    async def invalidate_tag(self, tag: str) -> int:
        keys = self._tags.pop(tag, set())
        for key in keys:
            await self.delete(key)
        return len(keys)

    def _unindex(self, key: str) -> None:
        old = self._entries.get(key)
        if old is None:
            return
        for tag in old.dependency_tags:
            keys = self._tags.get(tag)
            if keys is not None:
                keys.discard(key)
                if not keys:
                    del self._tags[tag]


class ParquetBackend(CacheBackend):
    """File-backed L2 shared by every engine process on the same volume.

    Record lists are stored as Parquet columns; the rest of the cache value and
    the entry metadata travel as JSON in the Parquet schema metadata.

    Args:
        base_path: Root directory for cache files. Defaults to 'data/cache'.
    """

    def __init__(self, base_path: str | Path = "data/cache") -> None:
        self.base_path = Path(base_path)
        self._entries_dir = self.base_path / "entries"
        self._tags_dir = self.base_path / "tags"
        self._entries_dir.mkdir(parents=True, exist_ok=True)
        self._tags_dir.mkdir(parents=True, exist_ok=True)

    def _entry_path(self, key: str) -> Path:
        if not _KEY_PATTERN.match(key):
            raise CacheError(f"Invalid cache key for file storage: {key!r}")
        return self._entries_dir / f"{key}.parquet"

    def _tag_dir(self, tag: str) -> Path:
        digest = hashlib.sha1(tag.encode("utf-8")).hexdigest()
        return self._tags_dir / digest

    async def get(self, key: str) -> CacheEntry | None:
        file_path = self._entry_path(key)

        def _read() -> CacheEntry | None:
            if not file_path.exists():
                return None
            try:
                table = pq.read_table(file_path)
                return _entry_from_table(table)
            except Exception as e:
                logger.warning(
                    "Failed to read cache file %s: %s. "
                    "File may be corrupted — treating as miss.",
                    file_path, e,
                )
                return None

        return await asyncio.to_thread(_read)

    async def set(self, entry: CacheEntry) -> None:
        file_path = self._entry_path(entry.key)
        table = _entry_to_table(entry)

        def _write() -> None:
            tmp_path = file_path.with_suffix(".parquet.tmp")
            pq.write_table(table, tmp_path, compression="snappy")
            tmp_path.replace(file_path)
            for tag in entry.dependency_tags:
                tag_dir = self._tag_dir(tag)
                tag_dir.mkdir(parents=True, exist_ok=True)
                (tag_dir / entry.key).touch()

        try:
            await asyncio.to_thread(_write)
        except OSError as e:
            raise CacheError(f"Failed to write cache entry {entry.key}: {e}") from e

    async def delete(self, key: str) -> None:
        file_path = self._entry_path(key)
        try:
            await asyncio.to_thread(file_path.unlink, True)
        except OSError as e:
            raise CacheError(f"Failed to delete cache entry {key}: {e}") from e

    async def invalidate_tag(self, tag: str) -> int:
        tag_dir = self._tag_dir(tag)

        def _invalidate() -> int:
            if not tag_dir.exists():
                return 0
            removed = 0
            for marker in tag_dir.iterdir():
                entry_path = self._entries_dir / f"{marker.name}.parquet"
                if entry_path.exists():
                    entry_path.unlink(missing_ok=True)
                    removed += 1
                marker.unlink(missing_ok=True)
            return removed

        try:
            return await asyncio.to_thread(_invalidate)
        except OSError as e:
            raise CacheError(f"Failed to invalidate tag {tag!r}: {e}") from e


def _entry_to_table(entry: CacheEntry) -> pa.Table:
    value = entry.value
    records: list[dict[str, Any]] = []
    rest: Any = value
    if isinstance(value, Mapping) and isinstance(value.get("records"), list):
        records = value["records"]
        rest = {k: v for k, v in value.items() if k != "records"}

    try:
        if records:
            table = pa.Table.from_pylist(records)
        else:
            # Parquet files need at least one column
            table = pa.table({"_empty": pa.array([], type=pa.null())})
    except (pa.ArrowInvalid, pa.ArrowTypeError) as e:
        raise CacheError(f"Cannot store records for {entry.key} as Parquet: {e}") from e

    meta = {
        "key": entry.key,
        "created_at": entry.created_at,
        "ttl_seconds": entry.ttl_seconds,
        "stale_if_error_seconds": entry.stale_if_error_seconds,
        "dependency_tags": sorted(entry.dependency_tags),
        "has_records": rest is not value,
        "value": rest,
    }
    try:
        encoded = json.dumps(meta, default=str).encode("utf-8")
    except (TypeError, ValueError) as e:
        raise CacheError(f"Cache value for {entry.key} is not JSON-serializable: {e}") from e
    return table.replace_schema_metadata({_META_KEY: encoded})


def _entry_from_table(table: pa.Table) -> CacheEntry:
    raw = (table.schema.metadata or {}).get(_META_KEY)
    if raw is None:
        raise ValueError("missing keystone metadata")
    meta = json.loads(raw)
    value = meta["value"]
    if meta.get("has_records"):
        value = dict(value)
        value["records"] = table.to_pylist()
    return CacheEntry(
        key=meta["key"],
        value=value,
        created_at=float(meta["created_at"]),
        ttl_seconds=float(meta["ttl_seconds"]),
        dependency_tags=frozenset(meta.get("dependency_tags", [])),
        stale_if_error_seconds=float(meta.get("stale_if_error_seconds", 0.0)),
    )

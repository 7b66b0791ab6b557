"""
Local cache implementations and the local record snapshot.

FileLocalCache stores one file per key, written atomically, so a crash
mid-write never leaves a truncated value behind. MemoryLocalCache keeps
everything in process and can enforce a quota.

LocalSnapshot is the offline copy of the record tree, mirrored to a
LocalCache one top-level collection per key.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import tempfile
from collections.abc import Iterable
from pathlib import Path
from typing import Any
from urllib.parse import quote, unquote

import aiofiles
import aiofiles.os

from .. import tree
from ..exceptions import LocalCacheError
from ..paths import contains_reference, replace_references, split_path
from .base import LocalCache

logger = logging.getLogger(__name__)

# Keys under this prefix hold sync bookkeeping, never records.
# Record paths cannot contain "." so the two namespaces never collide.
RESERVED_PREFIX = ".sync/"

_VALUE_SUFFIX = ".val"
_TEMP_PREFIX = ".tmp_"


class FileLocalCache(LocalCache):
    """File-backed local cache.

    Directory structure:
    {base_path}/
      students.val
      questions.val
      .sync%2Fpending.val
    """

    def __init__(self, base_path: Path | str) -> None:
        self.base_path = Path(base_path)

    def _file_for(self, key: str) -> Path:
        return self.base_path / (quote(key, safe="") + _VALUE_SUFFIX)

    async def _ensure_directory(self) -> None:
        try:
            await aiofiles.os.makedirs(self.base_path, exist_ok=True)
        except OSError as e:
            raise LocalCacheError("create_directory", str(self.base_path), e) from e

    async def get(self, key: str) -> str | None:
        path = self._file_for(key)
        try:
            if not await aiofiles.os.path.exists(path):
                return None
            async with aiofiles.open(path, encoding="utf-8") as f:
                return await f.read()
        except (OSError, UnicodeDecodeError) as e:
            raise LocalCacheError("get", key, e) from e

    async def set(self, key: str, value: str) -> None:
        """Write a value atomically using temp file + rename."""
        await self._ensure_directory()
        target = self._file_for(key)

        fd, temp_path = tempfile.mkstemp(dir=self.base_path, prefix=_TEMP_PREFIX)
        try:
            os.close(fd)
            async with aiofiles.open(temp_path, "w", encoding="utf-8") as f:
                await f.write(value)
                await f.flush()
                os.fsync(f.fileno())

            await aiofiles.os.rename(temp_path, target)
        except Exception as e:
            try:
                await aiofiles.os.remove(temp_path)
            except OSError:
                pass
            raise LocalCacheError("set", key, e) from e

    async def remove(self, key: str) -> None:
        path = self._file_for(key)
        try:
            if await aiofiles.os.path.exists(path):
                await aiofiles.os.remove(path)
        except OSError as e:
            raise LocalCacheError("remove", key, e) from e

    async def keys(self) -> list[str]:
        try:
            if not await aiofiles.os.path.exists(self.base_path):
                return []
            names = await aiofiles.os.listdir(self.base_path)
        except OSError as e:
            raise LocalCacheError("keys", str(self.base_path), e) from e

        return sorted(
            unquote(name[: -len(_VALUE_SUFFIX)])
            for name in names
            if name.endswith(_VALUE_SUFFIX) and not name.startswith(_TEMP_PREFIX)
        )


class MemoryLocalCache(LocalCache):
    """In-process local cache with an optional quota.

    The quota counts key and value characters, the same way browser
    storage quotas are usually measured.
    """

    def __init__(self, quota_bytes: int | None = None) -> None:
        self.quota_bytes = quota_bytes
        self._data: dict[str, str] = {}

    async def get(self, key: str) -> str | None:
        return self._data.get(key)

    async def set(self, key: str, value: str) -> None:
        if self.quota_bytes is not None:
            current = sum(len(k) + len(v) for k, v in self._data.items() if k != key)
            needed = current + len(key) + len(value)
            if needed > self.quota_bytes:
                raise LocalCacheError(
                    "set",
                    key,
                    OverflowError(f"quota exceeded: {needed} > {self.quota_bytes}"),
                )
        self._data[key] = value

    async def remove(self, key: str) -> None:
        self._data.pop(key, None)

    async def keys(self) -> list[str]:
        return sorted(self._data)


class LocalSnapshot:
    """Offline copy of the record tree.

    The tree is held in memory and mirrored to the cache one top-level
    collection per key. Collections are loaded lazily; call
    ``ensure_loaded`` before touching a path. Mutations are synchronous so
    they can be combined with queue updates without an intervening
    suspension; ``flush`` persists the collections they report as dirty.
    """

    def __init__(self, cache: LocalCache) -> None:
        self._cache = cache
        self._root: dict[str, Any] = {}
        self._loaded: set[str] = set()
        self._flush_lock = asyncio.Lock()

    async def ensure_loaded(self, path: str) -> None:
        """Load the collection containing ``path`` from the cache."""
        collection = split_path(path)[0]
        if collection in self._loaded:
            return

        raw = await self._cache.get(collection)
        if collection in self._loaded:
            # Loaded by another task while we were reading
            return

        if raw is not None:
            try:
                self._root[collection] = json.loads(raw)
            except json.JSONDecodeError as e:
                raise LocalCacheError("decode", collection, e) from e
        self._loaded.add(collection)

    async def load_all(self) -> None:
        """Load every record collection present in the cache."""
        for key in await self._cache.keys():
            if not key.startswith(RESERVED_PREFIX):
                await self.ensure_loaded(key)

    def is_loaded(self, path: str) -> bool:
        return split_path(path)[0] in self._loaded

    def get(self, path: str) -> Any:
        """Value at ``path`` or None if absent."""
        return tree.get_in(self._root, split_path(path))

    def put(self, path: str, value: Any) -> str:
        """Store ``value`` at ``path``. Returns the dirty collection."""
        segments = split_path(path)
        tree.set_in(self._root, segments, value)
        return segments[0]

    def delete(self, path: str) -> str:
        """Remove the value at ``path``. Returns the dirty collection."""
        segments = split_path(path)
        tree.remove_in(self._root, segments)
        return segments[0]

    def rewrite(self, old: str, new: str) -> set[str]:
        """Replace every reference to ``old`` with ``new`` in loaded collections.

        Returns the collections that changed.
        """
        dirty: set[str] = set()
        for collection in list(self._root):
            value = self._root[collection]
            if contains_reference(value, old):
                self._root[collection] = replace_references(value, old, new)
                dirty.add(collection)
        return dirty

    def invalidate(self, collections: Iterable[str]) -> None:
        """Drop in-memory collections so the next access reloads them from the cache."""
        for collection in collections:
            self._root.pop(collection, None)
            self._loaded.discard(collection)

    def collections(self) -> list[str]:
        return sorted(self._root)

    async def flush(self, collections: Iterable[str]) -> None:
        """Persist collections to the cache.

        Values are serialized inside the lock, so the last flush to finish
        always writes the newest state.
        """
        async with self._flush_lock:
            for collection in sorted(set(collections)):
                if collection in self._root:
                    try:
                        raw = json.dumps(self._root[collection])
                    except (TypeError, ValueError) as e:
                        raise LocalCacheError("encode", collection, e) from e
                    await self._cache.set(collection, raw)
                else:
                    await self._cache.remove(collection)
        logger.debug(f"Flushed local snapshot collections: {sorted(set(collections))}")

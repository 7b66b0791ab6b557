"""Tests for local caches and the local snapshot."""

from __future__ import annotations

import json
import tempfile
from collections.abc import AsyncIterator
from pathlib import Path

import pytest

from exam_sync_storage.exceptions import LocalCacheError
from exam_sync_storage.storage import FileLocalCache, LocalSnapshot, MemoryLocalCache


class TestFileLocalCache:
    """Tests for FileLocalCache."""

    @pytest.fixture
    async def temp_dir(self) -> AsyncIterator[Path]:
        """Create a temporary directory for tests."""
        with tempfile.TemporaryDirectory() as tmpdir:
            yield Path(tmpdir)

    @pytest.fixture
    def cache(self, temp_dir: Path) -> FileLocalCache:
        return FileLocalCache(temp_dir / "cache")

    async def test_missing_key_returns_none(self, cache: FileLocalCache) -> None:
        """Test reading a key that was never written."""
        assert await cache.get("students") is None
        assert await cache.keys() == []

    async def test_set_get_remove(self, cache: FileLocalCache) -> None:
        """Test basic round trip of a value."""
        await cache.set("students", '{"1": {"name": "Ali"}}')

        assert await cache.get("students") == '{"1": {"name": "Ali"}}'

        await cache.remove("students")
        assert await cache.get("students") is None

    async def test_reserved_keys_are_listed(self, cache: FileLocalCache) -> None:
        """Test keys with separators are stored and listed unchanged."""
        await cache.set(".sync/pending", "[]")
        await cache.set("students", "{}")

        assert await cache.keys() == [".sync/pending", "students"]

    async def test_overwrite_leaves_no_temp_files(
        self, cache: FileLocalCache, temp_dir: Path
    ) -> None:
        """Test atomic writes clean up after themselves."""
        await cache.set("students", "{}")
        await cache.set("students", '{"1": {}}')

        files = sorted(p.name for p in (temp_dir / "cache").iterdir())
        assert files == ["students.val"]

    async def test_unicode_values(self, cache: FileLocalCache) -> None:
        """Test non-ASCII values survive the round trip."""
        await cache.set("students", json.dumps({"1": {"name": "علي"}}, ensure_ascii=False))

        assert json.loads(await cache.get("students") or "")["1"]["name"] == "علي"

    async def test_size_bytes(self, cache: FileLocalCache) -> None:
        """Test size accounting covers keys and values."""
        await cache.set("ab", "cde")
        assert await cache.size_bytes() == 5


class TestMemoryLocalCache:
    """Tests for MemoryLocalCache."""

    async def test_quota_exceeded_raises(self) -> None:
        """Test writes beyond the quota fail with LocalCacheError."""
        cache = MemoryLocalCache(quota_bytes=10)
        await cache.set("a", "12345")

        with pytest.raises(LocalCacheError):
            await cache.set("b", "1234567890")

        assert await cache.get("b") is None

    async def test_replacing_a_value_counts_once(self) -> None:
        """Test the old value of a key does not count against its replacement."""
        cache = MemoryLocalCache(quota_bytes=10)
        await cache.set("a", "123456789")
        await cache.set("a", "987654321")

        assert await cache.get("a") == "987654321"


class TestLocalSnapshot:
    """Tests for LocalSnapshot."""

    async def test_lazy_load_and_flush(self) -> None:
        """Test collections load on demand and flush back to the cache."""
        cache = MemoryLocalCache()
        await cache.set("students", json.dumps({"1": {"name": "Ali"}}))
        snapshot = LocalSnapshot(cache)

        await snapshot.ensure_loaded("students/1")
        assert snapshot.get("students/1") == {"name": "Ali"}

        dirty = snapshot.put("students/2", {"name": "Sara"})
        await snapshot.flush([dirty])

        assert json.loads(await cache.get("students") or "") == {
            "1": {"name": "Ali"},
            "2": {"name": "Sara"},
        }

    async def test_get_returns_copies(self) -> None:
        """Test callers cannot mutate the snapshot through returned values."""
        snapshot = LocalSnapshot(MemoryLocalCache())
        await snapshot.ensure_loaded("students")
        snapshot.put("students/1", {"name": "Ali"})

        value = snapshot.get("students/1")
        value["name"] = "changed"

        assert snapshot.get("students/1") == {"name": "Ali"}

    async def test_corrupt_collection_raises(self) -> None:
        """Test undecodable data surfaces as LocalCacheError."""
        cache = MemoryLocalCache()
        await cache.set("students", "{broken")
        snapshot = LocalSnapshot(cache)

        with pytest.raises(LocalCacheError):
            await snapshot.ensure_loaded("students")

    async def test_removed_collection_is_deleted_from_cache(self) -> None:
        """Test flushing a removed collection removes its key."""
        cache = MemoryLocalCache()
        await cache.set("students", json.dumps({"1": {}}))
        snapshot = LocalSnapshot(cache)
        await snapshot.ensure_loaded("students")

        dirty = snapshot.delete("students")
        await snapshot.flush([dirty])

        assert await cache.get("students") is None

    async def test_load_all_skips_reserved_keys(self) -> None:
        """Test sync bookkeeping keys are not loaded as records."""
        cache = MemoryLocalCache()
        await cache.set("students", "{}")
        await cache.set(".sync/pending", "[]")
        snapshot = LocalSnapshot(cache)

        await snapshot.load_all()

        assert snapshot.collections() == ["students"]

    async def test_rewrite_references(self) -> None:
        """Test a provisional ID is replaced across loaded collections."""
        snapshot = LocalSnapshot(MemoryLocalCache())
        await snapshot.ensure_loaded("exams")
        await snapshot.ensure_loaded("questions")
        snapshot.put("exams/e1", {"questions": ["local:1-a"]})
        snapshot.put("questions/q1", {"text": "2+2?"})

        dirty = snapshot.rewrite("local:1-a", "srv1")

        assert dirty == {"exams"}
        assert snapshot.get("exams/e1") == {"questions": ["srv1"]}

    async def test_invalidate_reloads_durable_state(self) -> None:
        """Test invalidation discards unflushed changes."""
        cache = MemoryLocalCache()
        snapshot = LocalSnapshot(cache)
        await snapshot.ensure_loaded("students")
        snapshot.put("students/1", {"name": "Ali"})

        snapshot.invalidate(["students"])
        await snapshot.ensure_loaded("students")

        assert snapshot.get("students/1") is None

"""
Persistent queue of operations waiting to be replayed.

Operations are kept in memory in enqueue order and written to the local
cache as a JSON list, so queued work survives a restart. Operations that
exhausted their replay budget are kept in a separate dead-letter list.

While a drain is replaying, the queue tracks three groups:
- replaying: taken for this pass and not finished yet
- operations: enqueued after the pass started
- deferred: failed or blocked in this pass, re-appended when it ends

All three are persisted, so a crash mid-drain loses nothing.
"""

from __future__ import annotations

import asyncio
import json
import logging

from ..exceptions import LocalCacheError
from ..paths import is_ancestor, paths_overlap, replace_in_path, replace_references
from ..storage.base import LocalCache
from .types import PendingOperation

logger = logging.getLogger(__name__)

PENDING_KEY = ".sync/pending"
FAILED_KEY = ".sync/failed"


def _overlaps_any(operation: PendingOperation, paths: list[str]) -> bool:
    return any(paths_overlap(t, p) for t in operation.target_paths() for p in paths)


class PendingQueue:
    """FIFO of PendingOperation persisted to a LocalCache.

    All mutators are synchronous; call ``persist`` afterwards to make the
    change durable.
    """

    def __init__(self, cache: LocalCache) -> None:
        self._cache = cache
        self._operations: list[PendingOperation] = []
        self._replaying: list[PendingOperation] = []
        self._deferred: list[PendingOperation] = []
        self._failed: list[PendingOperation] = []
        self._persist_lock = asyncio.Lock()

    async def _load_list(self, key: str) -> list[PendingOperation]:
        raw = await self._cache.get(key)
        if not raw:
            return []
        try:
            return [PendingOperation.from_dict(item) for item in json.loads(raw)]
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            raise LocalCacheError("decode", key, e) from e

    async def load(self) -> None:
        """Load queued and dead-letter operations from the cache."""
        self._operations = await self._load_list(PENDING_KEY)
        self._failed = await self._load_list(FAILED_KEY)
        if self._operations:
            logger.info(f"Loaded {len(self._operations)} pending operations from local cache")

    def _pending(self) -> list[PendingOperation]:
        return self._replaying + self._operations + self._deferred

    def __len__(self) -> int:
        return len(self._replaying) + len(self._operations) + len(self._deferred)

    def operations(self) -> list[PendingOperation]:
        """Every operation not yet acknowledged, in replay order."""
        return self._pending()

    def failed(self) -> list[PendingOperation]:
        return list(self._failed)

    def append(self, operation: PendingOperation) -> None:
        self._operations.append(operation)
        logger.debug(f"Queued {operation.kind.value} {operation.path} ({operation.op_id})")

    def discard(self, operation: PendingOperation) -> None:
        """Forget an operation that was never made durable."""
        for group in (self._operations, self._replaying, self._deferred):
            if operation in group:
                group.remove(operation)
                return

    # Replay window

    def begin_replay(self) -> list[PendingOperation]:
        """Take every queued operation for a replay pass."""
        self._replaying = self._operations
        self._operations = []
        return list(self._replaying)

    def is_replaying(self, operation: PendingOperation) -> bool:
        return operation in self._replaying

    def _release(self, operation: PendingOperation) -> bool:
        if operation not in self._replaying:
            return False
        self._replaying.remove(operation)
        return True

    def complete(self, operation: PendingOperation) -> None:
        """Drop an operation the remote acknowledged."""
        self._release(operation)

    def defer(self, operation: PendingOperation) -> None:
        """Hold an operation back until the current pass ends."""
        if self._release(operation):
            self._deferred.append(operation)

    def dead_letter(self, operation: PendingOperation) -> None:
        """Move an operation that exhausted its attempts to the failed list."""
        if self._release(operation):
            self._failed.append(operation)

    def end_replay(self) -> None:
        """Close the replay window.

        Operations the pass never reached go back to the front. Deferred
        operations go after the ones enqueued during the pass. Operations on
        the same path never change their relative order: an unreached or
        newly enqueued operation that overlaps a deferred one stays behind it.
        """
        deferred = list(self._deferred)
        blocked = [t for op in deferred for t in op.target_paths()]

        unreached: list[PendingOperation] = []
        for op in self._replaying:
            if _overlaps_any(op, blocked):
                deferred.append(op)
                blocked.extend(op.target_paths())
            else:
                unreached.append(op)

        independent: list[PendingOperation] = []
        dependent: list[PendingOperation] = []
        for op in self._operations:
            if _overlaps_any(op, blocked):
                dependent.append(op)
                blocked.extend(op.target_paths())
            else:
                independent.append(op)

        self._operations = unreached + independent + deferred + dependent
        self._replaying = []
        self._deferred = []

    # Dead letters

    def requeue_failed(self) -> int:
        """Move dead-letter operations back to the queue with a fresh budget."""
        count = len(self._failed)
        for operation in self._failed:
            operation.attempts = 0
            operation.last_error = None
        self._operations.extend(self._failed)
        self._failed = []
        return count

    # Queries and rewrites

    def touches(self, path: str) -> bool:
        """True if any pending operation overlaps ``path``."""
        return any(
            paths_overlap(target, path) for op in self._pending() for target in op.target_paths()
        )

    def covers(self, path: str) -> bool:
        """True if a pending operation targets ``path`` or one of its ancestors."""
        return any(
            target == path or is_ancestor(target, path)
            for op in self._pending()
            for target in op.target_paths()
        )

    def rewrite_references(self, old: str, new: str) -> int:
        """Replace a provisional ID in the paths and payloads of pending operations.

        Returns:
            Number of operations that changed
        """
        changed = 0
        for op in self._pending() + self._failed:
            path = replace_in_path(op.path, old, new)
            payload = replace_references(op.payload, old, new)
            if path != op.path or payload != op.payload:
                op.path = path
                op.payload = payload
                changed += 1
        return changed

    async def persist(self) -> None:
        """Write the queue and dead-letter list to the cache.

        Serialization happens inside the lock, so the last persist to finish
        always writes the newest state.
        """
        async with self._persist_lock:
            try:
                pending = json.dumps([op.to_dict() for op in self._pending()])
                failed = json.dumps([op.to_dict() for op in self._failed])
            except (TypeError, ValueError) as e:
                raise LocalCacheError("encode", PENDING_KEY, e) from e
            await self._cache.set(PENDING_KEY, pending)
            await self._cache.set(FAILED_KEY, failed)

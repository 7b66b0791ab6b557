"""
Offline-tolerant record store.

SyncStore fronts a RemoteStore with a local snapshot and a persistent
queue of pending operations:
- Every mutation lands in the local snapshot first
- Online mutations go straight to the remote store
- Offline (or failed) mutations are queued and replayed in order when
  connectivity returns
- Records created offline get a provisional ID that is remapped to the
  server-assigned ID once the queued add has been replayed
"""

from __future__ import annotations

import asyncio
import json
from collections import Counter
from collections.abc import Callable, Iterable
from datetime import UTC, datetime
from typing import Any

from ..exceptions import (
    LocalCacheError,
    RemoteUnavailableError,
    ReplayFailureError,
    ValidationError,
)
from ..logging_utils import StorageLoggerAdapter, get_storage_logger
from ..paths import (
    generate_provisional_id,
    is_provisional_id,
    join_path,
    normalize_path,
    paths_overlap,
    split_path,
)
from ..storage.base import LocalCache, RemoteStore, StoreConfig, Subscription
from ..storage.local import FileLocalCache, LocalSnapshot
from .connectivity import ConnectivitySource, ConnectivityState, ProbeConnectivity
from .queue import PendingQueue
from .types import (
    Ack,
    OperationKind,
    OperationStatus,
    PendingOperation,
    StorageStats,
    Unsubscribe,
)

logger = get_storage_logger("sync")

REMAPS_KEY = ".sync/remaps"
LAST_SYNC_KEY = ".sync/last_sync"


async def _noop_unsubscribe() -> None:
    return None


class _SubscriptionHandle:
    """Idempotent unsubscribe handle around a remote Subscription."""

    def __init__(self, store: SyncStore, path: str, subscription: Subscription) -> None:
        self._store = store
        self._path = path
        self._subscription: Subscription | None = subscription

    async def unsubscribe(self) -> None:
        subscription, self._subscription = self._subscription, None
        if subscription is None:
            return
        self._store._handles.discard(self)
        try:
            await subscription.cancel()
        except RemoteUnavailableError as e:
            self._store._log.debug(f"Ignoring error while unsubscribing from {self._path}: {e}")


class SyncStore:
    """Record store that keeps working while the remote is unreachable.

    Records live in a tree addressed by slash-separated paths. Writing a
    path replaces its whole subtree; ``None`` means absent.

    Example:
        >>> store = SyncStore(InMemoryRemoteStore(), MemoryLocalCache(), ManualConnectivity())
        >>> await store.start()
        >>> ack = await store.append("students", {"name": "Ali"})
        >>> ack.status
        <OperationStatus.QUEUED: 'queued'>
        >>> store.connectivity.set_online()   # replays the queued add
    """

    def __init__(
        self,
        remote: RemoteStore,
        cache: LocalCache,
        connectivity: ConnectivitySource,
        *,
        max_replay_attempts: int = 5,
        device_id: str = "default",
        clock: Callable[[], datetime] | None = None,
        on_replay_failure: Callable[[ReplayFailureError], None] | None = None,
        on_id_remapped: Callable[[str, str], None] | None = None,
    ) -> None:
        """Initialize the store.

        Args:
            remote: Durable remote store
            cache: Local cache for the snapshot and the pending queue
            connectivity: Source of Online/Offline transitions
            max_replay_attempts: Failed replays before an operation is
                moved to the failed list
            device_id: Identifier attached to every log record
            clock: Returns the current time (UTC); used for timestamps
            on_replay_failure: Called when an operation fails permanently
            on_id_remapped: Called with (provisional_id, server_id)
        """
        if max_replay_attempts < 1:
            raise ValidationError(
                "max_replay_attempts", "must be at least 1", str(max_replay_attempts)
            )

        self.remote = remote
        self.cache = cache
        self.connectivity = connectivity
        self.max_replay_attempts = max_replay_attempts
        self.device_id = device_id
        self.on_replay_failure = on_replay_failure
        self.on_id_remapped = on_id_remapped
        self._clock = clock or (lambda: datetime.now(UTC))

        self._snapshot = LocalSnapshot(cache)
        self._queue = PendingQueue(cache)
        self._remaps: dict[str, str] = {}
        self._last_sync: datetime | None = None

        self._online = False
        self._started = False
        self._draining = False
        self._drain_requested = False
        self._inflight: Counter[str] = Counter()
        self._tasks: set[asyncio.Task[Any]] = set()
        self._handles: set[_SubscriptionHandle] = set()

        self._log = StorageLoggerAdapter(logger, device_id)

    @classmethod
    def from_config(
        cls,
        config: StoreConfig,
        remote: RemoteStore | None = None,
        cache: LocalCache | None = None,
        connectivity: ConnectivitySource | None = None,
        **kwargs: Any,
    ) -> SyncStore:
        """Build a store from configuration.

        Collaborators that are not given are created from the config:
        Cosmos DB for the remote, files under ``config.cache_path`` for the
        cache, and a TCP probe for connectivity.
        """
        if remote is None:
            from ..storage.cosmos import CosmosRemoteStore

            remote = CosmosRemoteStore(config)
        if cache is None:
            cache = FileLocalCache(config.cache_path)
        if connectivity is None:
            connectivity = ProbeConnectivity(
                config.connectivity_host,
                port=config.connectivity_port,
                interval=config.connectivity_interval,
                timeout=config.connectivity_timeout,
            )
        return cls(
            remote,
            cache,
            connectivity,
            max_replay_attempts=config.max_replay_attempts,
            device_id=config.device_id,
            **kwargs,
        )

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        """Load local sync state and start listening for connectivity changes."""
        if self._started:
            return

        await self._queue.load()
        await self._load_remaps()
        await self._load_last_sync()

        self._started = True
        self.connectivity.add_listener(self._on_connectivity_change)
        self._online = self.connectivity.is_online
        if self._online and len(self._queue):
            self._spawn(self.drain_pending())
        await self.connectivity.start()

        self._log.info(
            f"Sync store started ({'online' if self._online else 'offline'}, "
            f"{len(self._queue)} pending operations)"
        )

    async def close(self) -> None:
        """Stop background work and close the collaborators.

        A drain interrupted here keeps its unfinished operations queued.
        """
        if self._started:
            self.connectivity.remove_listener(self._on_connectivity_change)
            await self.connectivity.stop()
            self._started = False

        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        for handle in list(self._handles):
            await handle.unsubscribe()

        try:
            await self._queue.persist()
        except LocalCacheError as e:
            self._log.error(f"Failed to persist pending operations on close: {e}")

        await self.remote.close()
        await self.cache.close()

    async def __aenter__(self) -> SyncStore:
        await self.start()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    @property
    def is_online(self) -> bool:
        return self._online

    def _on_connectivity_change(self, state: ConnectivityState) -> None:
        if state == ConnectivityState.ONLINE:
            self._online = True
            self._log.info(f"Back online, replaying {len(self._queue)} pending operations")
            self._spawn(self.drain_pending())
        else:
            self._online = False
            self._log.info("Offline, mutations will be queued")

    async def wait_idle(self) -> None:
        """Wait until background replays and snapshot flushes have finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _spawn(self, coro: Any) -> asyncio.Task[Any]:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    # =========================================================================
    # Helpers
    # =========================================================================

    def _now_ms(self) -> int:
        return int(self._clock().timestamp() * 1000)

    def resolve_id(self, record_id: str) -> str:
        """Server ID for a remapped provisional ID; any other ID unchanged."""
        return self._remaps.get(record_id, record_id)

    def resolve_path(self, path: str) -> str:
        """Normalize ``path`` and resolve remapped provisional segments."""
        return "/".join(self.resolve_id(segment) for segment in split_path(path))

    def _has_local_changes(self, path: str) -> bool:
        if self._queue.touches(path):
            return True
        return any(paths_overlap(p, path) for p in self._inflight)

    def _stamped_write(self, record: Any) -> Any:
        if not isinstance(record, dict):
            return record
        return {
            **record,
            "timestamp": self._now_ms(),
            "lastModified": self._clock().isoformat(),
        }

    def _stamped_create(self, record: dict[str, Any], record_id: str) -> dict[str, Any]:
        return {
            **record,
            "id": record_id,
            "timestamp": self._now_ms(),
            "createdAt": self._clock().isoformat(),
        }

    async def _persist_local(self, collections: Iterable[str]) -> None:
        await self._snapshot.flush(collections)
        await self._queue.persist()

    async def _enqueue(
        self,
        operation: PendingOperation,
        collections: list[str],
        ack: Ack,
        replay_now: bool = True,
    ) -> Ack:
        """Queue an operation whose local effect is already applied.

        When online, the operation is queued behind older work on the same
        path and is replayed right away unless the remote just failed.
        """
        self._queue.append(operation)
        try:
            await self._persist_local(collections)
        except LocalCacheError as e:
            # Fall back to the last durable state
            self._queue.discard(operation)
            self._snapshot.invalidate(collections)
            self._log.error(f"Could not store {operation.kind.value} {ack.path} locally: {e}")
            return Ack(OperationStatus.FAILED, ack.path, ack.id, error=e)
        if replay_now and self._online:
            self._spawn(self.drain_pending())
        return ack

    async def _flush_after_remote(self, collection: str, path: str) -> None:
        try:
            await self._snapshot.flush([collection])
        except LocalCacheError as e:
            # The remote holds the value, so the operation still succeeded
            self._log.warning(f"Local snapshot not updated for {path}: {e}")

    # =========================================================================
    # Public Operations
    # =========================================================================

    async def write(self, path: str, record: Any) -> Ack:
        """Write ``record`` at ``path``, replacing the subtree there.

        Remapped provisional IDs in ``path`` are followed, so a caller
        still holding one updates the synced record.

        Returns:
            SUCCESS if the remote acknowledged the write, QUEUED if it will
            be replayed later, FAILED if it could not be stored locally
        """
        path = self.resolve_path(path)
        try:
            await self._snapshot.ensure_loaded(path)
        except LocalCacheError as e:
            self._log.error(f"Write to {path} failed: {e}")
            return Ack(OperationStatus.FAILED, path, error=e)

        if self._online and not self._queue.touches(path):
            stamped = self._stamped_write(record)
            collection = self._snapshot.put(path, stamped)
            self._inflight[path] += 1
            try:
                await self.remote.set(path, stamped)
            except RemoteUnavailableError as e:
                self._log.warning(f"Remote write to {path} failed, queueing: {e}")
            else:
                await self._flush_after_remote(collection, path)
                return Ack(OperationStatus.SUCCESS, path)
            finally:
                self._inflight[path] -= 1
                if not self._inflight[path]:
                    del self._inflight[path]

            # Queued after the remote failed; the snapshot already holds the value
            return await self._enqueue(
                PendingOperation(OperationKind.SAVE, path, record),
                [collection],
                Ack(OperationStatus.QUEUED, path),
                replay_now=False,
            )

        collection = self._snapshot.put(path, record)
        return await self._enqueue(
            PendingOperation(OperationKind.SAVE, path, record),
            [collection],
            Ack(OperationStatus.QUEUED, path),
        )

    async def append(self, path: str, record: dict[str, Any]) -> Ack:
        """Create a record with a new unique key under the collection ``path``.

        ``ack.id`` carries the key: the server ID when online, a
        provisional ``local:`` ID when the add was queued.
        """
        if not isinstance(record, dict):
            raise ValidationError("record", "appended records must be mappings")

        parent = self.resolve_path(path)
        try:
            await self._snapshot.ensure_loaded(parent)
        except LocalCacheError as e:
            self._log.error(f"Append to {parent} failed: {e}")
            return Ack(OperationStatus.FAILED, parent, error=e)

        replay_now = True
        if self._online and not self._queue.covers(parent):
            try:
                server_id = await self.remote.generate_id(parent)
            except RemoteUnavailableError as e:
                self._log.warning(f"Could not get a key for {parent}, adding offline: {e}")
                replay_now = False
            else:
                return await self._append_online(parent, record, server_id)

        provisional_id = generate_provisional_id(self._now_ms())
        local_record = {**record, "id": provisional_id, "timestamp": self._now_ms()}
        record_path = join_path(parent, provisional_id)
        collection = self._snapshot.put(record_path, local_record)
        return await self._enqueue(
            PendingOperation(
                OperationKind.ADD,
                parent,
                local_record,
                provisional_id=provisional_id,
            ),
            [collection],
            Ack(OperationStatus.QUEUED, record_path, provisional_id),
            replay_now=replay_now,
        )

    async def _append_online(self, parent: str, record: dict[str, Any], server_id: str) -> Ack:
        record_path = join_path(parent, server_id)
        stamped = self._stamped_create(record, server_id)
        collection = self._snapshot.put(record_path, stamped)
        self._inflight[record_path] += 1
        try:
            await self.remote.set(record_path, stamped)
        except RemoteUnavailableError as e:
            self._log.warning(f"Remote write to {record_path} failed, queueing: {e}")
        else:
            await self._flush_after_remote(collection, record_path)
            return Ack(OperationStatus.SUCCESS, record_path, server_id)
        finally:
            self._inflight[record_path] -= 1
            if not self._inflight[record_path]:
                del self._inflight[record_path]

        # The key is already assigned, so replay it as a plain save
        return await self._enqueue(
            PendingOperation(OperationKind.SAVE, record_path, stamped),
            [collection],
            Ack(OperationStatus.QUEUED, record_path, server_id),
            replay_now=False,
        )

    async def read(self, path: str) -> Any:
        """Current value at ``path``, or None if absent.

        Reads the remote store when online and nothing local is waiting to
        be synced for the path; otherwise (or when the remote fails or has
        nothing) the local snapshot answers. Storage failures are logged,
        never raised.

        Paths are read as given: once a provisional ID has been remapped
        nothing lives under it any more. Use ``resolve_path`` to follow
        an ID that may have been remapped.
        """
        path = normalize_path(path)

        if self._online and not self._has_local_changes(path):
            try:
                value = await self.remote.get(path)
            except RemoteUnavailableError as e:
                self._log.warning(f"Remote read of {path} failed, using local snapshot: {e}")
            else:
                if value is not None:
                    await self._refresh_snapshot(path, value)
                    return value

        try:
            await self._snapshot.ensure_loaded(path)
        except LocalCacheError as e:
            self._log.error(f"Local snapshot unreadable for {path}: {e}")
            return None
        return self._snapshot.get(path)

    async def _refresh_snapshot(self, path: str, value: Any) -> None:
        try:
            await self._snapshot.ensure_loaded(path)
        except LocalCacheError as e:
            self._log.warning(f"Local snapshot not refreshed for {path}: {e}")
            return
        if self._has_local_changes(path):
            return
        collection = self._apply_remote_value(path, value)
        await self._flush_after_remote(collection, path)

    def _apply_remote_value(self, path: str, value: Any) -> str:
        if value is None:
            return self._snapshot.delete(path)
        return self._snapshot.put(path, value)

    async def remove(self, path: str) -> Ack:
        """Remove the value at ``path`` and everything below it."""
        path = self.resolve_path(path)
        try:
            await self._snapshot.ensure_loaded(path)
        except LocalCacheError as e:
            self._log.error(f"Remove of {path} failed: {e}")
            return Ack(OperationStatus.FAILED, path, error=e)

        collection = self._snapshot.delete(path)

        replay_now = True
        if self._online and not self._queue.touches(path):
            self._inflight[path] += 1
            try:
                await self.remote.remove(path)
            except RemoteUnavailableError as e:
                self._log.warning(f"Remote remove of {path} failed, queueing: {e}")
                replay_now = False
            else:
                await self._flush_after_remote(collection, path)
                return Ack(OperationStatus.SUCCESS, path)
            finally:
                self._inflight[path] -= 1
                if not self._inflight[path]:
                    del self._inflight[path]

        return await self._enqueue(
            PendingOperation(OperationKind.DELETE, path),
            [collection],
            Ack(OperationStatus.QUEUED, path),
            replay_now=replay_now,
        )

    async def subscribe(self, path: str, on_change: Callable[[Any], None]) -> Unsubscribe:
        """Deliver the value at ``path`` now and after every remote change.

        Only available online; offline (or if registration fails) the
        returned handle does nothing. Handles can be called any number of
        times and never raise. Like ``read``, the path is taken as given.
        """
        path = normalize_path(path)
        if not self._online:
            self._log.debug(f"Offline, not subscribing to {path}")
            return _noop_unsubscribe

        try:
            await self._snapshot.ensure_loaded(path)
        except LocalCacheError as e:
            self._log.warning(f"Subscription to {path} will not refresh the local snapshot: {e}")

        def deliver(value: Any) -> None:
            if self._snapshot.is_loaded(path) and not self._has_local_changes(path):
                collection = self._apply_remote_value(path, value)
                self._spawn(self._flush_after_remote(collection, path))
            on_change(value)

        try:
            subscription = await self.remote.subscribe(path, deliver)
        except RemoteUnavailableError as e:
            self._log.warning(f"Could not subscribe to {path}: {e}")
            return _noop_unsubscribe

        handle = _SubscriptionHandle(self, path, subscription)
        self._handles.add(handle)
        return handle.unsubscribe

    # =========================================================================
    # Replay
    # =========================================================================

    async def drain_pending(self) -> None:
        """Replay queued operations against the remote store.

        Only one drain runs at a time. A call made while a drain is running
        is coalesced into a single follow-up pass.
        """
        if self._draining:
            self._drain_requested = True
            return

        self._draining = True
        try:
            while True:
                self._drain_requested = False
                await self._drain_once()
                if not (self._drain_requested and self._online):
                    break
        finally:
            self._draining = False

    async def _drain_once(self) -> None:
        if not self._online or not len(self._queue):
            return

        try:
            # Remapping rewrites references in every collection
            await self._snapshot.load_all()
        except LocalCacheError as e:
            self._log.error(f"Cannot replay pending operations, local snapshot unreadable: {e}")
            return

        operations = self._queue.begin_replay()
        self._log.info(f"Replaying {len(operations)} pending operations")
        blocked: list[str] = []
        replayed = 0

        try:
            for op in operations:
                if not self._queue.is_replaying(op):
                    continue
                if not self._online:
                    self._log.info("Went offline during replay, keeping the rest queued")
                    break

                if any(paths_overlap(t, b) for t in op.target_paths() for b in blocked):
                    blocked.extend(op.target_paths())
                    self._queue.defer(op)
                    continue

                try:
                    await self._replay(op)
                except RemoteUnavailableError as e:
                    if not self._online:
                        # Lost connectivity mid-call; not counted as an attempt
                        self._log.info(f"Went offline while replaying {op.affected_path}")
                        break
                    blocked.extend(op.target_paths())
                    self._record_failure(op, e)
                else:
                    self._queue.complete(op)
                    replayed += 1

                await self._persist_queue()
        finally:
            self._queue.end_replay()

        await self._persist_queue()

        if replayed:
            self._last_sync = self._clock()
            try:
                await self.cache.set(LAST_SYNC_KEY, self._last_sync.isoformat())
            except LocalCacheError as e:
                self._log.warning(f"Could not record last sync time: {e}")

        self._log.info(
            f"Replay finished: {replayed} replayed, {len(self._queue)} pending, "
            f"{len(self._queue.failed())} failed"
        )

    def _record_failure(self, op: PendingOperation, error: RemoteUnavailableError) -> None:
        op.attempts += 1
        op.last_error = str(error)
        log = self._log.for_operation(op.op_id, op.affected_path)

        if op.attempts < self.max_replay_attempts:
            log.warning(
                f"Replay of {op.kind.value} {op.affected_path} failed "
                f"(attempt {op.attempts}/{self.max_replay_attempts}): {error}"
            )
            self._queue.defer(op)
            return

        self._queue.dead_letter(op)
        failure = ReplayFailureError(
            op.op_id, op.kind.value, op.affected_path, op.attempts, str(error)
        )
        log.error(str(failure))
        if self.on_replay_failure is not None:
            try:
                self.on_replay_failure(failure)
            except Exception as e:
                self._log.error(f"Replay failure callback raised: {e}")

    async def _persist_queue(self) -> None:
        try:
            await self._queue.persist()
        except LocalCacheError as e:
            self._log.error(f"Could not persist pending operations: {e}")

    async def _replay(self, op: PendingOperation) -> None:
        if op.kind == OperationKind.SAVE:
            await self.remote.set(op.path, self._stamped_write(op.payload))
        elif op.kind == OperationKind.DELETE:
            await self.remote.remove(op.path)
        else:
            await self._replay_add(op)

    async def _replay_add(self, op: PendingOperation) -> None:
        if op.server_id is None:
            op.server_id = await self.remote.generate_id(op.path)
            # Persist the key before writing so a retry reuses it
            await self._persist_queue()

        record_path = join_path(op.path, op.server_id)
        payload = op.payload if isinstance(op.payload, dict) else {}
        record = self._stamped_create(payload, op.server_id)
        await self.remote.set(record_path, record)

        if op.provisional_id:
            await self._remap(op.provisional_id, op.server_id, op.path, record)

    async def _remap(
        self, provisional_id: str, server_id: str, parent: str, record: dict[str, Any]
    ) -> None:
        # Snapshot, queue and mapping change together, before any suspension.
        # The snapshot keeps local edits made after the add; a record removed
        # locally stays removed.
        record_path = join_path(parent, server_id)
        dirty = self._snapshot.rewrite(provisional_id, server_id)
        current = self._snapshot.get(record_path)
        if isinstance(current, dict) and current.get("id") == server_id:
            stamps = {key: record[key] for key in ("id", "timestamp", "createdAt")}
            dirty.add(self._snapshot.put(record_path, {**current, **stamps}))
        rewritten = self._queue.rewrite_references(provisional_id, server_id)
        self._remaps[provisional_id] = server_id

        self._log.info(
            f"Remapped {provisional_id} -> {server_id} "
            f"({len(dirty)} collections, {rewritten} queued operations)"
        )

        try:
            await self._snapshot.flush(dirty)
            await self.cache.set(REMAPS_KEY, json.dumps(self._remaps))
        except LocalCacheError as e:
            self._log.error(f"Could not persist remap of {provisional_id}: {e}")

        if self.on_id_remapped is not None:
            try:
                self.on_id_remapped(provisional_id, server_id)
            except Exception as e:
                self._log.error(f"ID remap callback raised: {e}")

    async def _load_remaps(self) -> None:
        raw = await self.cache.get(REMAPS_KEY)
        if not raw:
            return
        try:
            remaps = json.loads(raw)
        except json.JSONDecodeError as e:
            raise LocalCacheError("decode", REMAPS_KEY, e) from e
        self._remaps = {k: v for k, v in remaps.items() if is_provisional_id(k)}

    async def _load_last_sync(self) -> None:
        raw = await self.cache.get(LAST_SYNC_KEY)
        if not raw:
            return
        try:
            self._last_sync = datetime.fromisoformat(raw)
        except ValueError:
            self._log.warning(f"Ignoring unreadable last sync time: {raw!r}")

    # =========================================================================
    # Status
    # =========================================================================

    def pending_operations(self) -> list[PendingOperation]:
        """Operations waiting to be replayed, in replay order."""
        return self._queue.operations()

    def failed_operations(self) -> list[PendingOperation]:
        """Operations that exhausted their replay attempts."""
        return self._queue.failed()

    async def retry_failed(self) -> int:
        """Give failed operations a fresh replay budget.

        Returns:
            Number of operations moved back to the queue
        """
        count = self._queue.requeue_failed()
        if count:
            await self._persist_queue()
            if self._online:
                self._spawn(self.drain_pending())
        return count

    @property
    def last_sync(self) -> datetime | None:
        return self._last_sync

    async def stats(self) -> StorageStats:
        try:
            local_bytes = await self.cache.size_bytes()
        except LocalCacheError as e:
            self._log.warning(f"Could not measure local cache: {e}")
            local_bytes = 0

        return StorageStats(
            is_online=self._online,
            pending_operations=len(self._queue),
            failed_operations=len(self._queue.failed()),
            local_bytes=local_bytes,
            last_sync=self._last_sync,
        )

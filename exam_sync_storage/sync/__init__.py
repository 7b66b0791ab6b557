"""
Offline-tolerant sync layer.

SyncStore keeps an application working while the remote store is
unreachable: mutations are applied to a local snapshot, queued, and
replayed in order once connectivity returns.

Example:
    >>> from exam_sync_storage.sync import SyncStore, ManualConnectivity
    >>> from exam_sync_storage.storage import InMemoryRemoteStore, MemoryLocalCache
    >>> connectivity = ManualConnectivity()
    >>> async with SyncStore(InMemoryRemoteStore(), MemoryLocalCache(), connectivity) as store:
    ...     ack = await store.write("students/s1", {"name": "Ali"})
    ...     ack.queued
    True
"""

from .connectivity import (
    ConnectivityListener,
    ConnectivitySource,
    ConnectivityState,
    ManualConnectivity,
    ProbeConnectivity,
)
from .queue import FAILED_KEY, PENDING_KEY, PendingQueue
from .store import LAST_SYNC_KEY, REMAPS_KEY, SyncStore
from .types import (
    Ack,
    OperationKind,
    OperationStatus,
    PendingOperation,
    StorageStats,
    Unsubscribe,
)

__all__ = [
    # Store
    "SyncStore",
    # Outcomes
    "Ack",
    "OperationStatus",
    "StorageStats",
    "Unsubscribe",
    # Queue
    "PendingQueue",
    "PendingOperation",
    "OperationKind",
    "PENDING_KEY",
    "FAILED_KEY",
    "REMAPS_KEY",
    "LAST_SYNC_KEY",
    # Connectivity
    "ConnectivitySource",
    "ConnectivityState",
    "ConnectivityListener",
    "ManualConnectivity",
    "ProbeConnectivity",
]

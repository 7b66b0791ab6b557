"""
Exam Sync Storage

Offline-tolerant record storage for the exam management app.

Provides:
- SyncStore: write/append/read/remove/subscribe that keep working offline
- A persistent queue of pending operations, replayed in order on reconnect
- Provisional IDs for records created offline, remapped after sync
- Remote stores: Cosmos DB, in-memory
- Local caches: files (atomic writes), in-memory with quota
- The exam workflow (roster, question bank, exams, results) on top

Usage:

    >>> from exam_sync_storage import SyncStore, StoreConfig
    >>> config = StoreConfig.from_environment()
    >>> async with SyncStore.from_config(config) as store:
    ...     ack = await store.append("students", {"name": "Ali", "studentId": "2024001"})
    ...     if ack.queued:
    ...         print(f"Saved offline as {ack.id}, will sync later")

Development without Azure:

    >>> from exam_sync_storage import InMemoryRemoteStore, MemoryLocalCache, ManualConnectivity
    >>> store = SyncStore(InMemoryRemoteStore(), MemoryLocalCache(), ManualConnectivity())
"""

from .exceptions import (
    AuthenticationError,
    ExamUnavailableError,
    InvalidPathError,
    LocalCacheError,
    RemoteUnavailableError,
    ReplayFailureError,
    SyncStorageError,
    ValidationError,
)
from .exam import (
    Exam,
    ExamManager,
    ExamResult,
    ExamSession,
    ExamStatus,
    Question,
    Student,
    sample_questions,
)
from .logging_utils import StorageLoggerAdapter, get_storage_logger
from .paths import generate_provisional_id, generate_push_id, is_provisional_id
from .storage import (
    CosmosAuthMethod,
    FileLocalCache,
    InMemoryRemoteStore,
    LocalCache,
    MemoryLocalCache,
    RemoteStore,
    StoreConfig,
    Subscription,
)
from .sync import (
    Ack,
    ConnectivitySource,
    ConnectivityState,
    ManualConnectivity,
    OperationKind,
    OperationStatus,
    PendingOperation,
    ProbeConnectivity,
    StorageStats,
    SyncStore,
    Unsubscribe,
)

__version__ = "0.1.0"

__all__ = [
    # Core
    "SyncStore",
    "StoreConfig",
    "Ack",
    "OperationStatus",
    "OperationKind",
    "PendingOperation",
    "StorageStats",
    "Unsubscribe",
    # Connectivity
    "ConnectivitySource",
    "ConnectivityState",
    "ManualConnectivity",
    "ProbeConnectivity",
    # Storage
    "RemoteStore",
    "LocalCache",
    "Subscription",
    "CosmosAuthMethod",
    "InMemoryRemoteStore",
    "FileLocalCache",
    "MemoryLocalCache",
    # IDs
    "generate_push_id",
    "generate_provisional_id",
    "is_provisional_id",
    # Exam workflow
    "ExamManager",
    "ExamSession",
    "Student",
    "Question",
    "Exam",
    "ExamResult",
    "ExamStatus",
    "sample_questions",
    # Exceptions
    "SyncStorageError",
    "RemoteUnavailableError",
    "AuthenticationError",
    "LocalCacheError",
    "ReplayFailureError",
    "InvalidPathError",
    "ValidationError",
    "ExamUnavailableError",
    # Logging
    "get_storage_logger",
    "StorageLoggerAdapter",
]

# Cosmos DB remote store (optional, requires azure-cosmos)
try:
    from .storage.cosmos import CosmosRemoteStore  # noqa: F401

    __all__.append("CosmosRemoteStore")
except ImportError:
    pass

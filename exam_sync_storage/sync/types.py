"""
Types shared by the sync layer: queued operations and operation outcomes.
"""

from __future__ import annotations

import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from ..paths import join_path


class OperationKind(Enum):
    """Kind of mutating call captured while the remote was unreachable."""

    SAVE = "save"
    ADD = "add"
    DELETE = "delete"


class OperationStatus(Enum):
    """Outcome of a SyncStore operation.

    SUCCESS: The remote store acknowledged the change
    QUEUED: Stored locally, will be replayed when connectivity returns
    FAILED: Could not be stored durably (local cache failure)
    """

    SUCCESS = "success"
    QUEUED = "queued"
    FAILED = "failed"


@dataclass(eq=False)
class PendingOperation:
    """A mutating call waiting to be replayed against the remote store.

    Attributes:
        kind: Save, Add or Delete
        path: Target path (the parent collection for Add)
        payload: Record to write (Save/Add)
        op_id: Unique identifier, also the idempotency key of the operation
        provisional_id: Local placeholder key of an Add
        server_id: Key assigned by the remote for an Add. Set once, before
            the first remote write, so a retried Add reuses it.
        attempts: Failed replay attempts so far
        last_error: Error of the last failed attempt
        enqueued_at: When the operation was queued
    """

    kind: OperationKind
    path: str
    payload: Any = None
    op_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    provisional_id: str | None = None
    server_id: str | None = None
    attempts: int = 0
    last_error: str | None = None
    enqueued_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def affected_path(self) -> str:
        """Path of the record this operation mutates."""
        if self.kind == OperationKind.ADD:
            return join_path(self.path, self.server_id or self.provisional_id or "")
        return self.path

    def target_paths(self) -> list[str]:
        """Every path this operation may write.

        An add that already has a server ID but has not been remapped yet
        still owns its provisional path.
        """
        paths = [self.affected_path]
        if self.kind == OperationKind.ADD and self.server_id and self.provisional_id:
            paths.append(join_path(self.path, self.provisional_id))
        return paths

    def to_dict(self) -> dict[str, Any]:
        return {
            "op_id": self.op_id,
            "kind": self.kind.value,
            "path": self.path,
            "payload": self.payload,
            "provisional_id": self.provisional_id,
            "server_id": self.server_id,
            "attempts": self.attempts,
            "last_error": self.last_error,
            "enqueued_at": self.enqueued_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PendingOperation:
        enqueued_at = data.get("enqueued_at")
        if isinstance(enqueued_at, str):
            enqueued_at = datetime.fromisoformat(enqueued_at)
        elif enqueued_at is None:
            enqueued_at = datetime.now(UTC)

        return cls(
            kind=OperationKind(data["kind"]),
            path=data["path"],
            payload=data.get("payload"),
            op_id=data["op_id"],
            provisional_id=data.get("provisional_id"),
            server_id=data.get("server_id"),
            attempts=data.get("attempts", 0),
            last_error=data.get("last_error"),
            enqueued_at=enqueued_at,
        )


@dataclass
class Ack:
    """Tagged result of write/append/remove.

    Lets callers distinguish "done" from "will sync later" from "lost".
    """

    status: OperationStatus
    path: str
    id: str | None = None
    error: Exception | None = None

    @property
    def ok(self) -> bool:
        return self.status == OperationStatus.SUCCESS

    @property
    def queued(self) -> bool:
        return self.status == OperationStatus.QUEUED

    @property
    def failed(self) -> bool:
        return self.status == OperationStatus.FAILED


@dataclass
class StorageStats:
    """Snapshot of sync health for status displays."""

    is_online: bool
    pending_operations: int
    failed_operations: int
    local_bytes: int
    last_sync: datetime | None = None


# Handle returned by SyncStore.subscribe
Unsubscribe = Callable[[], Awaitable[None]]

"""
In-process remote store.

Behaves like a hosted real-time database: a nested record tree, push IDs
generated by the store, and live subscriptions that deliver the current
value on subscribe and again after every change. Outages can be
simulated, which makes it the backend of choice for development and
for exercising offline behaviour deterministically.
"""

from __future__ import annotations

import asyncio
import copy
import logging
from typing import Any

from .. import tree
from ..exceptions import RemoteUnavailableError
from ..paths import PushIdGenerator, paths_overlap, split_path
from .base import ChangeCallback, RemoteStore, Subscription

logger = logging.getLogger(__name__)

_UNSET = object()


class MemorySubscription(Subscription):
    """Live feed registered on an InMemoryRemoteStore."""

    def __init__(self, store: InMemoryRemoteStore, path: str, callback: ChangeCallback) -> None:
        self.store = store
        self.path = path
        self.callback = callback
        self.active = True
        self._last: Any = _UNSET

    def deliver(self, value: Any) -> None:
        if not self.active:
            return
        if self._last is not _UNSET and self._last == value:
            return
        self._last = copy.deepcopy(value)
        try:
            self.callback(value)
        except Exception as e:
            logger.error(f"Subscriber callback for {self.path} raised: {e}")

    async def cancel(self) -> None:
        if not self.active:
            return
        self.active = False
        self.store._detach(self)


class InMemoryRemoteStore(RemoteStore):
    """Remote store kept in process memory.

    Attributes:
        available: When False every call raises RemoteUnavailableError
        latency: Seconds each call takes; calls always yield to the loop
        operations: Log of (operation, path) for every call that succeeded
    """

    def __init__(self, latency: float = 0.0) -> None:
        self.latency = latency
        self.available = True
        self.operations: list[tuple[str, str]] = []
        self._root: dict[str, Any] = {}
        self._subscriptions: list[MemorySubscription] = []
        self._ids = PushIdGenerator()
        self._failures_pending = 0

    def fail_next(self, count: int = 1) -> None:
        """Make the next ``count`` calls fail with RemoteUnavailableError."""
        self._failures_pending += count

    def dump(self) -> dict[str, Any]:
        """Deep copy of the whole record tree."""
        return copy.deepcopy(self._root)

    @property
    def subscription_count(self) -> int:
        return len(self._subscriptions)

    async def _call(self, operation: str, path: str) -> list[str]:
        await asyncio.sleep(self.latency)
        segments = split_path(path)
        if not self.available:
            raise RemoteUnavailableError(operation, path, ConnectionError("remote store offline"))
        if self._failures_pending:
            self._failures_pending -= 1
            raise RemoteUnavailableError(operation, path, ConnectionError("injected failure"))
        return segments

    async def set(self, path: str, value: Any) -> None:
        segments = await self._call("set", path)
        if value is None:
            tree.remove_in(self._root, segments)
        else:
            tree.set_in(self._root, segments, value)
        self.operations.append(("set", "/".join(segments)))
        self._notify("/".join(segments))

    async def get(self, path: str) -> Any:
        segments = await self._call("get", path)
        return tree.get_in(self._root, segments)

    async def generate_id(self, parent_path: str) -> str:
        await self._call("generate_id", parent_path)
        return self._ids.generate()

    async def remove(self, path: str) -> None:
        segments = await self._call("remove", path)
        tree.remove_in(self._root, segments)
        self.operations.append(("remove", "/".join(segments)))
        self._notify("/".join(segments))

    async def subscribe(self, path: str, callback: ChangeCallback) -> MemorySubscription:
        segments = await self._call("subscribe", path)
        subscription = MemorySubscription(self, "/".join(segments), callback)
        self._subscriptions.append(subscription)
        subscription.deliver(tree.get_in(self._root, segments))
        return subscription

    def _detach(self, subscription: MemorySubscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    def _notify(self, changed_path: str) -> None:
        for subscription in list(self._subscriptions):
            if paths_overlap(subscription.path, changed_path):
                subscription.deliver(tree.get_in(self._root, split_path(subscription.path)))

    async def close(self) -> None:
        for subscription in list(self._subscriptions):
            await subscription.cancel()

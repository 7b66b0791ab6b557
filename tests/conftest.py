"""
Shared test configuration and fixtures.

Provides in-memory collaborators for the sync layer so tests can drive
connectivity and remote outages deterministically.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Awaitable, Callable
from datetime import UTC, datetime

import pytest

from exam_sync_storage.storage import InMemoryRemoteStore, MemoryLocalCache
from exam_sync_storage.sync import ManualConnectivity, SyncStore


FIXED_NOW = datetime(2024, 5, 1, 9, 30, tzinfo=UTC)


@pytest.fixture
def remote() -> InMemoryRemoteStore:
    """Remote store kept in memory; toggle ``available`` to simulate outages."""
    return InMemoryRemoteStore()


@pytest.fixture
def cache() -> MemoryLocalCache:
    return MemoryLocalCache()


@pytest.fixture
def connectivity() -> ManualConnectivity:
    """Connectivity that starts offline."""
    return ManualConnectivity()


@pytest.fixture
async def store(
    remote: InMemoryRemoteStore,
    cache: MemoryLocalCache,
    connectivity: ManualConnectivity,
) -> AsyncIterator[SyncStore]:
    """A started SyncStore over the in-memory collaborators."""
    sync_store = SyncStore(remote, cache, connectivity, clock=lambda: FIXED_NOW)
    await sync_store.start()
    yield sync_store
    await sync_store.close()


@pytest.fixture
def go_online() -> Callable[[SyncStore], Awaitable[None]]:
    """Flip a store online and wait for the replay it triggers to finish."""

    async def _go_online(sync_store: SyncStore) -> None:
        sync_store.connectivity.set_online()  # type: ignore[attr-defined]
        await sync_store.wait_idle()

    return _go_online

"""
Connectivity sources.

The SyncStore never inspects the network itself; it listens to a
ConnectivitySource that reports edge-triggered Online/Offline transitions.
ManualConnectivity is driven by the host application (or a test),
ProbeConnectivity checks reachability of an endpoint periodically.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import Callable
from enum import Enum

logger = logging.getLogger(__name__)


class ConnectivityState(Enum):
    """Reachability of the remote store."""

    ONLINE = "online"
    OFFLINE = "offline"


ConnectivityListener = Callable[[ConnectivityState], None]


class ConnectivitySource(ABC):
    """Base class for connectivity signals.

    Listeners are called synchronously, once per transition, never for a
    repeated report of the current state.
    """

    def __init__(self, initial: ConnectivityState = ConnectivityState.OFFLINE) -> None:
        self._state = initial
        self._listeners: list[ConnectivityListener] = []

    @property
    def state(self) -> ConnectivityState:
        return self._state

    @property
    def is_online(self) -> bool:
        return self._state == ConnectivityState.ONLINE

    def add_listener(self, listener: ConnectivityListener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def remove_listener(self, listener: ConnectivityListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _transition(self, state: ConnectivityState) -> None:
        if state == self._state:
            return
        self._state = state
        logger.info(f"Connectivity changed: {state.value}")
        for listener in list(self._listeners):
            try:
                listener(state)
            except Exception as e:
                logger.error(f"Connectivity listener raised: {e}")

    @abstractmethod
    async def start(self) -> None:
        ...

    @abstractmethod
    async def stop(self) -> None:
        ...


class ManualConnectivity(ConnectivitySource):
    """Connectivity driven explicitly by the host application.

    Example:
        >>> connectivity = ManualConnectivity()
        >>> connectivity.set_online()   # fires listeners once
        >>> connectivity.set_online()   # no-op, already online
    """

    def set_online(self) -> None:
        self._transition(ConnectivityState.ONLINE)

    def set_offline(self) -> None:
        self._transition(ConnectivityState.OFFLINE)

    async def start(self) -> None:
        return None

    async def stop(self) -> None:
        return None


class ProbeConnectivity(ConnectivitySource):
    """Connectivity detected by opening a TCP connection periodically."""

    def __init__(
        self,
        host: str,
        port: int = 443,
        interval: float = 30.0,
        timeout: float = 5.0,
    ) -> None:
        super().__init__(ConnectivityState.OFFLINE)
        self.host = host
        self.port = port
        self.interval = interval
        self.timeout = timeout
        self._task: asyncio.Task[None] | None = None

    async def check(self) -> bool:
        """Probe the endpoint once and report the resulting state.

        Returns:
            True if the endpoint accepted a connection
        """
        try:
            _, writer = await asyncio.wait_for(
                asyncio.open_connection(self.host, self.port), timeout=self.timeout
            )
        except (OSError, asyncio.TimeoutError):
            self._transition(ConnectivityState.OFFLINE)
            return False

        writer.close()
        try:
            await writer.wait_closed()
        except OSError:
            pass
        self._transition(ConnectivityState.ONLINE)
        return True

    async def start(self) -> None:
        if self._task is not None:
            return
        await self.check()
        self._task = asyncio.create_task(self._probe_loop())

    async def _probe_loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            await self.check()

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

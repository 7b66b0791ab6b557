"""Tests for connectivity sources."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator

import pytest

from exam_sync_storage.sync import ConnectivityState, ManualConnectivity, ProbeConnectivity


class TestManualConnectivity:
    """Tests for ManualConnectivity."""

    def test_starts_offline(self) -> None:
        connectivity = ManualConnectivity()
        assert connectivity.state == ConnectivityState.OFFLINE
        assert not connectivity.is_online

    def test_listeners_fire_once_per_transition(self) -> None:
        """Test repeated reports of the same state are not delivered."""
        connectivity = ManualConnectivity()
        seen: list[ConnectivityState] = []
        connectivity.add_listener(seen.append)

        connectivity.set_online()
        connectivity.set_online()
        connectivity.set_offline()
        connectivity.set_offline()
        connectivity.set_online()

        assert seen == [
            ConnectivityState.ONLINE,
            ConnectivityState.OFFLINE,
            ConnectivityState.ONLINE,
        ]

    def test_failing_listener_does_not_stop_others(self) -> None:
        """Test an exception in one listener is logged and contained."""
        connectivity = ManualConnectivity()
        seen: list[ConnectivityState] = []

        def broken(state: ConnectivityState) -> None:
            raise RuntimeError("listener bug")

        connectivity.add_listener(broken)
        connectivity.add_listener(seen.append)

        connectivity.set_online()

        assert seen == [ConnectivityState.ONLINE]

    def test_remove_listener(self) -> None:
        connectivity = ManualConnectivity()
        seen: list[ConnectivityState] = []
        connectivity.add_listener(seen.append)
        connectivity.remove_listener(seen.append)

        connectivity.set_online()

        assert seen == []


class TestProbeConnectivity:
    """Tests for ProbeConnectivity."""

    @pytest.fixture
    async def server_port(self) -> AsyncIterator[int]:
        """A local TCP server that accepts and immediately closes connections."""

        async def handle(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
            writer.close()

        server = await asyncio.start_server(handle, "127.0.0.1", 0)
        port = server.sockets[0].getsockname()[1]
        try:
            yield port
        finally:
            server.close()
            await server.wait_closed()

    async def test_reachable_endpoint_goes_online(self, server_port: int) -> None:
        """Test a successful probe reports Online."""
        connectivity = ProbeConnectivity("127.0.0.1", server_port, timeout=2.0)
        seen: list[ConnectivityState] = []
        connectivity.add_listener(seen.append)

        assert await connectivity.check() is True

        assert connectivity.is_online
        assert seen == [ConnectivityState.ONLINE]

    async def test_unreachable_endpoint_goes_offline(
        self, server_port: int, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Test a failed probe after a good one reports Offline."""
        connectivity = ProbeConnectivity("127.0.0.1", server_port, timeout=2.0)
        await connectivity.check()

        async def refuse(*args: object, **kwargs: object) -> None:
            raise ConnectionRefusedError("refused")

        monkeypatch.setattr(asyncio, "open_connection", refuse)

        assert await connectivity.check() is False
        assert connectivity.state == ConnectivityState.OFFLINE

    async def test_start_and_stop(self, server_port: int) -> None:
        """Test start probes immediately and stop cancels the loop."""
        connectivity = ProbeConnectivity("127.0.0.1", server_port, interval=60.0, timeout=2.0)

        await connectivity.start()
        assert connectivity.is_online

        await connectivity.stop()
        await connectivity.stop()

from __future__ import annotations

import asyncio

from nuslink.core.events import PeripheralConnected, PeripheralConnectFailed
from nuslink.transports import ble_gatt
from nuslink.transports.ble_gatt import BleakCentralAdapter

PEER = "AA:BB:CC:DD:EE:01"


class BackendFailingClient:
    def __init__(self, handle, *, disconnected_callback=None, timeout=10.0) -> None:
        self.handle = handle

    async def connect(self) -> None:
        raise OSError("adapter went away")


class ConnectingClient(BackendFailingClient):
    is_connected = True

    async def connect(self) -> None:
        return None


def _connect_events(client_cls, monkeypatch) -> list:
    monkeypatch.setattr(ble_gatt, "BleakClient", client_cls)
    events = []

    async def _run() -> None:
        adapter = BleakCentralAdapter()
        adapter.bind(events.append)
        adapter.connect(PEER)
        await adapter.drain()
        await asyncio.sleep(0)

    asyncio.run(_run())
    return events


def test_backend_connect_error_reports_failure(monkeypatch) -> None:
    events = _connect_events(BackendFailingClient, monkeypatch)
    assert PeripheralConnectFailed(PEER, "adapter went away") in events


def test_successful_connect_reports_connected(monkeypatch) -> None:
    events = _connect_events(ConnectingClient, monkeypatch)
    assert PeripheralConnected(PEER) in events

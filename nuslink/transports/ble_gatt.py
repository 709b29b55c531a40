"""BLE GATT central adapter backed by bleak."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Coroutine, Sequence
from typing import Any

from bleak import BleakClient, BleakScanner
from bleak.backends.device import BLEDevice
from bleak.backends.scanner import AdvertisementData
from bleak.exc import BleakError

from nuslink.core.errors import TransportConnectError
from nuslink.core.events import (
    CentralEvent,
    CharacteristicsDiscovered,
    PeripheralConnected,
    PeripheralConnectFailed,
    PeripheralDisconnected,
    PeripheralDiscovered,
    PowerStateChanged,
    ServicesDiscovered,
    ValueUpdated,
    WriteAcknowledged,
)
from nuslink.core.model import CharacteristicInfo, PowerState, RetrievedPeripheral, normalize_uuid

LOGGER = logging.getLogger(__name__)


class BleakCentralAdapter:
    """Turns bleak's coroutine API into requests plus events.

    Every request schedules a task on the running loop. Results are delivered
    to the bound sink with ``loop.call_soon`` so the session only ever sees
    them between other callbacks.
    """

    def __init__(self, *, connect_timeout_s: float = 10.0) -> None:
        self.connect_timeout_s = connect_timeout_s
        self._sink: Callable[[CentralEvent], None] | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._scanner: BleakScanner | None = None
        self._seen: dict[str, BLEDevice] = {}
        self._clients: dict[str, BleakClient] = {}
        self._closing: set[str] = set()
        self._tasks: set[asyncio.Task[Any]] = set()

    def bind(self, sink: Callable[[CentralEvent], None]) -> None:
        self._sink = sink
        self._loop = asyncio.get_running_loop()
        # bleak has no adapter power callback; a failing scan reports the radio instead.
        self._emit(PowerStateChanged(PowerState.POWERED_ON))

    async def drain(self) -> None:
        """Wait until every request issued so far has completed."""
        pending = [task for task in self._tasks if not task.done()]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    async def close(self) -> None:
        await self.drain()
        if self._scanner is not None:
            await self._stop_scanner()
        for client in list(self._clients.values()):
            if not client.is_connected:
                continue
            try:
                await client.disconnect()
            except BleakError as exc:
                LOGGER.debug("Disconnect during close failed: %s", exc)
        self._clients.clear()

    # Scanning

    def start_scan(self, *, allow_duplicates: bool = True) -> None:
        if self._scanner is not None:
            return
        self._scanner = BleakScanner(detection_callback=self._on_detection)
        self._spawn(self._start_scanner())

    def stop_scan(self) -> None:
        if self._scanner is None:
            return
        self._spawn(self._stop_scanner())

    async def _start_scanner(self) -> None:
        scanner = self._scanner
        if scanner is None:
            return
        try:
            await scanner.start()
            LOGGER.debug("Scanner started")
        except BleakError as exc:
            LOGGER.warning("Scanner failed to start: %s", exc)
            self._scanner = None
            self._emit(PowerStateChanged(PowerState.POWERED_OFF))

    async def _stop_scanner(self) -> None:
        scanner, self._scanner = self._scanner, None
        if scanner is None:
            return
        try:
            await scanner.stop()
            LOGGER.debug("Scanner stopped")
        except BleakError as exc:
            LOGGER.debug("Scanner stop failed: %s", exc)

    def _on_detection(self, device: BLEDevice, advertisement: AdvertisementData) -> None:
        self._seen[device.address] = device
        manufacturer = b"".join(bytes(value) for value in advertisement.manufacturer_data.values())
        self._emit(
            PeripheralDiscovered(
                identifier=device.address,
                rssi=advertisement.rssi,
                local_name=advertisement.local_name,
                platform_name=device.name,
                manufacturer_data=manufacturer,
                service_uuids=tuple(advertisement.service_uuids),
                handle=device,
            )
        )

    # Connection

    def retrieve_peripheral(self, identifier: str) -> RetrievedPeripheral | None:
        device = self._seen.get(identifier)
        if device is None:
            return None
        return RetrievedPeripheral(identifier=device.address, handle=device, name=device.name)

    def connect(self, handle: Any) -> None:
        self._spawn(self._connect(handle))

    def cancel_connection(self, handle: Any) -> None:
        identifier = _address(handle)
        client = self._clients.get(identifier)
        if client is None:
            return
        self._closing.add(identifier)
        self._spawn(self._disconnect(identifier, client))

    async def _connect(self, handle: Any) -> None:
        identifier = _address(handle)

        def _on_disconnect(_: BleakClient) -> None:
            self._clients.pop(identifier, None)
            reason = None if identifier in self._closing else "Connection lost"
            self._closing.discard(identifier)
            self._emit(PeripheralDisconnected(identifier, reason))

        client = BleakClient(handle, disconnected_callback=_on_disconnect, timeout=self.connect_timeout_s)
        try:
            await client.connect()
        except Exception as exc:  # backends raise OSError and platform errors besides BleakError
            LOGGER.warning("Connect to %s failed: %s", identifier, exc)
            self._emit(PeripheralConnectFailed(identifier, str(exc) or type(exc).__name__))
            return
        self._clients[identifier] = client
        LOGGER.info("Connected to %s", identifier)
        self._emit(PeripheralConnected(identifier))

    async def _disconnect(self, identifier: str, client: BleakClient) -> None:
        try:
            await client.disconnect()
        except BleakError as exc:
            LOGGER.warning("Disconnect from %s failed: %s", identifier, exc)

    # GATT

    def discover_services(self, handle: Any, service_uuids: Sequence[str] | None) -> None:
        identifier = _address(handle)
        try:
            client = self._client(identifier)
        except TransportConnectError as exc:
            self._emit(ServicesDiscovered(identifier, None, str(exc)))
            return
        wanted = {normalize_uuid(uuid) for uuid in service_uuids} if service_uuids else None
        found = tuple(
            normalize_uuid(service.uuid)
            for service in client.services
            if wanted is None or normalize_uuid(service.uuid) in wanted
        )
        self._emit(ServicesDiscovered(identifier, found))

    def discover_characteristics(
        self,
        handle: Any,
        service_uuid: str,
        characteristic_uuids: Sequence[str] | None,
    ) -> None:
        identifier = _address(handle)
        try:
            client = self._client(identifier)
        except TransportConnectError as exc:
            self._emit(CharacteristicsDiscovered(identifier, service_uuid, (), str(exc)))
            return
        service = client.services.get_service(service_uuid)
        if service is None:
            self._emit(CharacteristicsDiscovered(identifier, service_uuid, (), "Service not found"))
            return
        wanted = {normalize_uuid(uuid) for uuid in characteristic_uuids} if characteristic_uuids else None
        found = tuple(
            CharacteristicInfo(uuid=normalize_uuid(char.uuid), properties=frozenset(char.properties))
            for char in service.characteristics
            if wanted is None or normalize_uuid(char.uuid) in wanted
        )
        self._emit(CharacteristicsDiscovered(identifier, normalize_uuid(service_uuid), found))

    def set_notify(self, handle: Any, characteristic_uuid: str, enabled: bool) -> None:
        identifier = _address(handle)
        client = self._clients.get(identifier)
        if client is None:
            LOGGER.debug("Ignoring notify change for %s, not connected", identifier)
            return
        self._spawn(self._set_notify(identifier, client, characteristic_uuid, enabled))

    async def _set_notify(self, identifier: str, client: BleakClient, characteristic_uuid: str, enabled: bool) -> None:
        def _on_notify(_: Any, data: bytearray) -> None:
            self._emit(ValueUpdated(identifier, characteristic_uuid, bytes(data)))

        try:
            if enabled:
                await client.start_notify(characteristic_uuid, _on_notify)
            else:
                await client.stop_notify(characteristic_uuid)
        except BleakError as exc:
            LOGGER.warning("Changing notify state on %s failed: %s", characteristic_uuid, exc)
            if enabled:
                self._emit(ValueUpdated(identifier, characteristic_uuid, None, str(exc)))

    def write(
        self,
        handle: Any,
        characteristic_uuid: str,
        data: bytes,
        *,
        with_response: bool,
    ) -> None:
        identifier = _address(handle)
        try:
            client = self._client(identifier)
        except TransportConnectError as exc:
            self._emit(WriteAcknowledged(identifier, characteristic_uuid, str(exc)))
            return
        self._spawn(self._write(identifier, client, characteristic_uuid, data, with_response))

    async def _write(
        self,
        identifier: str,
        client: BleakClient,
        characteristic_uuid: str,
        data: bytes,
        with_response: bool,
    ) -> None:
        try:
            await client.write_gatt_char(characteristic_uuid, data, response=with_response)
        except BleakError as exc:
            self._emit(WriteAcknowledged(identifier, characteristic_uuid, str(exc)))
            return
        if with_response:
            self._emit(WriteAcknowledged(identifier, characteristic_uuid))

    # Plumbing

    def _client(self, identifier: str) -> BleakClient:
        client = self._clients.get(identifier)
        if client is None or not client.is_connected:
            raise TransportConnectError(f"Not connected to {identifier}")
        return client

    def _emit(self, event: CentralEvent) -> None:
        if self._sink is None or self._loop is None:
            LOGGER.debug("Dropping %r, adapter not bound", event)
            return
        self._loop.call_soon(self._sink, event)

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        loop = self._loop or asyncio.get_running_loop()
        task = loop.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)


def _address(handle: Any) -> str:
    if isinstance(handle, BLEDevice):
        return handle.address
    return str(handle)

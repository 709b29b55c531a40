"""BLE GATT peripheral adapter backed by bless."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Coroutine
from typing import Any

from bless import BlessServer, GATTAttributePermissions, GATTCharacteristicProperties

from nuslink.core.events import (
    AdvertisingStarted,
    CentralSubscribed,
    CentralUnsubscribed,
    PeripheralEvent,
    PowerStateChanged,
    ReadyToUpdateSubscribers,
    ServiceAdded,
    WriteRequestsReceived,
)
from nuslink.core.model import AttResult, GattLayout, PowerState, WriteRequest, normalize_uuid

REMOTE_CENTRAL_ID = "central"
RETRY_UPDATE_AFTER_S = 0.05
CONNECTION_POLL_S = 1.0
LOGGER = logging.getLogger(__name__)


class BlessPeripheralAdapter:
    """Hosts the GATT service with bless.

    bless does not report subscriptions. The first write from a central is
    treated as its subscription, and a poll of ``is_connected`` reports the
    matching unsubscribe.
    """

    def __init__(self, *, connection_poll_s: float = CONNECTION_POLL_S) -> None:
        self.connection_poll_s = connection_poll_s
        self._sink: Callable[[PeripheralEvent], None] | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._server: BlessServer | None = None
        self._layout: GattLayout | None = None
        self._local_name: str | None = None
        self._advertising = False
        self._subscribed = False
        self._monitor: asyncio.Task[None] | None = None
        self._tasks: set[asyncio.Task[Any]] = set()

    @property
    def is_advertising(self) -> bool:
        return self._advertising

    def bind(self, sink: Callable[[PeripheralEvent], None]) -> None:
        self._sink = sink
        self._loop = asyncio.get_running_loop()
        self._emit(PowerStateChanged(PowerState.POWERED_ON))

    async def close(self) -> None:
        await self._shutdown()
        for task in list(self._tasks):
            task.cancel()

    def add_service(self, layout: GattLayout) -> None:
        self._layout = layout
        self._spawn(self._add_service(layout))

    def remove_all_services(self) -> None:
        self._layout = None
        self._spawn(self._shutdown())

    def start_advertising(self, service_uuid: str, local_name: str) -> None:
        self._spawn(self._start_advertising(local_name))

    def stop_advertising(self) -> None:
        self._advertising = False
        self._spawn(self._stop_server())

    def respond(self, request: WriteRequest, result: AttResult) -> None:
        # bless answers write requests itself once the callback returns.
        if result != AttResult.SUCCESS:
            LOGGER.warning("Rejected write to %s from %s", request.characteristic_uuid, request.central_id)

    def update_value(self, characteristic_uuid: str, data: bytes) -> bool:
        server, layout = self._server, self._layout
        if server is None or layout is None or not self._subscribed:
            return False
        characteristic = server.get_characteristic(characteristic_uuid)
        if characteristic is None:
            return False
        characteristic.value = bytearray(data)
        if server.update_value(layout.service_uuid, characteristic_uuid):
            return True
        if self._loop is None:
            return False
        self._loop.call_later(RETRY_UPDATE_AFTER_S, self._emit, ReadyToUpdateSubscribers())
        return False

    # Server lifecycle

    async def _add_service(self, layout: GattLayout) -> None:
        try:
            await self._build_server(layout, self._local_name or "nuslink")
        except Exception as exc:  # bless surfaces backend errors untyped
            LOGGER.warning("Registering %s failed: %s", layout.service_uuid, exc)
            self._server = None
            self._emit(ServiceAdded(layout.service_uuid, str(exc)))
            return
        self._emit(ServiceAdded(layout.service_uuid))

    async def _build_server(self, layout: GattLayout, local_name: str) -> BlessServer:
        server = BlessServer(name=local_name, loop=self._loop)
        await server.add_new_service(layout.service_uuid)
        await server.add_new_characteristic(
            layout.service_uuid,
            layout.write_char_uuid,
            GATTCharacteristicProperties.write | GATTCharacteristicProperties.write_without_response,
            None,
            GATTAttributePermissions.writeable,
        )
        await server.add_new_characteristic(
            layout.service_uuid,
            layout.notify_char_uuid,
            GATTCharacteristicProperties.read | GATTCharacteristicProperties.notify,
            None,
            GATTAttributePermissions.readable,
        )
        server.read_request_func = self._on_read
        server.write_request_func = self._on_write
        self._server = server
        self._local_name = local_name
        return server

    async def _start_advertising(self, local_name: str) -> None:
        layout = self._layout
        if layout is None:
            self._emit(AdvertisingStarted("No service registered"))
            return
        try:
            server = self._server
            if server is None or local_name != self._local_name:
                # The advertised name is fixed when the server is created.
                await self._stop_server()
                server = await self._build_server(layout, local_name)
            await server.start()
        except Exception as exc:  # bless surfaces backend errors untyped
            LOGGER.warning("Advertising failed: %s", exc)
            self._advertising = False
            self._emit(AdvertisingStarted(str(exc)))
            return
        self._advertising = True
        LOGGER.info("Advertising as %s", local_name)
        if self._monitor is None or self._monitor.done():
            self._monitor = self._spawn(self._watch_connection())
        self._emit(AdvertisingStarted())

    async def _stop_server(self) -> None:
        server = self._server
        if server is None:
            return
        try:
            await server.stop()
        except Exception as exc:  # bless surfaces backend errors untyped
            LOGGER.debug("Stopping GATT server failed: %s", exc)

    async def _shutdown(self) -> None:
        self._advertising = False
        if self._monitor is not None:
            self._monitor.cancel()
            self._monitor = None
        await self._stop_server()
        self._server = None
        self._mark_unsubscribed()

    async def _watch_connection(self) -> None:
        while self._server is not None:
            await asyncio.sleep(self.connection_poll_s)
            server = self._server
            if server is None or not self._subscribed:
                continue
            if not await server.is_connected():
                self._mark_unsubscribed()

    # bless callbacks, possibly on a backend thread

    def _on_read(self, characteristic: Any, **kwargs: Any) -> bytearray:
        return characteristic.value or bytearray()

    def _on_write(self, characteristic: Any, value: Any, **kwargs: Any) -> None:
        layout = self._layout
        if layout is None or self._loop is None:
            return
        request = WriteRequest(
            central_id=REMOTE_CENTRAL_ID,
            characteristic_uuid=normalize_uuid(str(characteristic.uuid)),
            value=bytes(value) if value is not None else None,
        )
        self._loop.call_soon_threadsafe(self._deliver_write, request)

    def _deliver_write(self, request: WriteRequest) -> None:
        layout = self._layout
        if layout is not None and not self._subscribed:
            self._subscribed = True
            self._emit(CentralSubscribed(request.central_id, layout.notify_char_uuid))
        self._emit(WriteRequestsReceived((request,)))

    def _mark_unsubscribed(self) -> None:
        if not self._subscribed:
            return
        self._subscribed = False
        notify_uuid = self._layout.notify_char_uuid if self._layout else ""
        self._emit(CentralUnsubscribed(REMOTE_CENTRAL_ID, notify_uuid))

    def _emit(self, event: PeripheralEvent) -> None:
        if self._sink is None or self._loop is None:
            LOGGER.debug("Dropping %r, adapter not bound", event)
            return
        self._loop.call_soon(self._sink, event)

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> asyncio.Task[None]:
        loop = self._loop or asyncio.get_running_loop()
        task = loop.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

"""Central (initiator) connection and discovery state machine.

States: Idle -> Connecting -> Connected -> Failed | Disconnected, and back to
Connecting on the next ``connect``. Platform callbacks arrive as events from
``nuslink.core.events`` and are handled strictly in delivery order on the
session's execution context.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any

from nuslink.core.channel import EventChannel, StateChannel
from nuslink.core.codec import CMD_GET_IMAGE, CMD_OFF, CMD_ON, LineCodec
from nuslink.core.events import (
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
from nuslink.core.model import (
    CharacteristicInfo,
    ConnectionState,
    Device,
    GattLayout,
    PowerState,
    Profile,
    ProtocolEvent,
    SessionDetail,
    normalize_uuid,
)
from nuslink.core.registry import DeviceRegistry, RegistryEntry
from nuslink.core.scheduler import Cancellable, Scheduler
from nuslink.core.text import decode_payload
from nuslink.transports.base import CentralAdapter

CONNECT_RETRY_DELAY_S = 0.6
LOGGER = logging.getLogger(__name__)


def central_greeting() -> str:
    now = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
    return f"HELLO from Central @ {now}"


class CentralSession:
    def __init__(
        self,
        adapter: CentralAdapter,
        scheduler: Scheduler,
        *,
        layout: GattLayout | None = None,
        registry: DeviceRegistry | None = None,
        retry_delay_s: float = CONNECT_RETRY_DELAY_S,
        greeting: Callable[[], str] = central_greeting,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        layout = layout or GattLayout()
        self.layout = GattLayout(
            service_uuid=normalize_uuid(layout.service_uuid),
            write_char_uuid=normalize_uuid(layout.write_char_uuid),
            notify_char_uuid=normalize_uuid(layout.notify_char_uuid),
        )
        self.adapter = adapter
        self.scheduler = scheduler
        self.registry = registry or DeviceRegistry(
            well_known_service_uuid=self.layout.service_uuid,
            clock=clock,
        )
        self.retry_delay_s = retry_delay_s
        self._greeting = greeting

        self.power_state: StateChannel[PowerState] = StateChannel("power_state", PowerState.UNKNOWN)
        self.devices: StateChannel[tuple[Device, ...]] = StateChannel("devices", ())
        # Every transition is pushed, including Connecting -> Connecting on retry.
        self.connection_state: StateChannel[ConnectionState] = StateChannel(
            "connection_state",
            ConnectionState.idle(),
            distinct=False,
        )
        self.session_detail: StateChannel[SessionDetail | None] = StateChannel("session_detail", None)
        self.is_scanning: StateChannel[bool] = StateChannel("is_scanning", False)
        self.inbound_text: EventChannel[str] = EventChannel("inbound_text")
        self.protocol_events: EventChannel[ProtocolEvent] = EventChannel("protocol_events")
        self.codec = LineCodec(on_event=self.protocol_events.publish)

        self._should_scan = False
        self._scanning = False
        self._peripheral_id: str | None = None
        self._handle: Any = None
        self._is_connected = False
        self._services: tuple[str, ...] = ()
        self._services_filtered = False
        self._notify_char: CharacteristicInfo | None = None
        self._write_char: CharacteristicInfo | None = None
        self._handshake_sent = False
        self._did_retry = False
        self._retry_timer: Cancellable | None = None
        self._auto_connect_target: str | None = None
        self._closing_id: str | None = None

        self._handlers: dict[type, Callable[[Any], None]] = {
            PowerStateChanged: self._on_power_state,
            PeripheralDiscovered: self._on_discovered,
            PeripheralConnected: self._on_connected,
            PeripheralConnectFailed: self._on_connect_failed,
            PeripheralDisconnected: self._on_disconnected,
            ServicesDiscovered: self._on_services_discovered,
            CharacteristicsDiscovered: self._on_characteristics_discovered,
            ValueUpdated: self._on_value_updated,
            WriteAcknowledged: self._on_write_acknowledged,
        }
        adapter.bind(self.handle)

    @classmethod
    def from_profile(cls, profile: Profile, adapter: CentralAdapter, scheduler: Scheduler) -> CentralSession:
        registry = DeviceRegistry(
            well_known_service_uuid=profile.layout.service_uuid,
            stale_after_s=profile.stale_after_s,
        )
        return cls(
            adapter,
            scheduler,
            layout=profile.layout,
            registry=registry,
            retry_delay_s=profile.connect_retry_delay_s,
        )

    @property
    def connected_id(self) -> str | None:
        return self._peripheral_id

    @property
    def pending_target(self) -> str | None:
        return self._auto_connect_target

    @property
    def can_send(self) -> bool:
        return self._write_char is not None and self._handle is not None

    def handle(self, event: Any) -> None:
        handler = self._handlers.get(type(event))
        if handler is None:
            LOGGER.warning("Ignoring unsupported central event %r", event)
            return
        handler(event)

    # Scanning

    def set_scanning_enabled(self, enabled: bool) -> None:
        if enabled:
            self._start_scanning()
        else:
            self._stop_scanning()

    def refresh_devices(self) -> None:
        """Re-emit the device list so entries that went stale drop out."""
        self._emit_devices()

    # Connection

    def connect(self, target: Device | str) -> None:
        identifier = target.id if isinstance(target, Device) else target
        if identifier == self._peripheral_id and self._is_connected:
            self.connection_state.publish(ConnectionState.connected())
            return
        if self._peripheral_id is not None and identifier != self._peripheral_id:
            self.disconnect()

        # No scanning while a connection is pending.
        self._stop_scanning()
        self._cancel_retry()

        entry = self.registry.get(identifier)
        if entry is None:
            retrieved = self.adapter.retrieve_peripheral(identifier)
            if retrieved is not None:
                entry = self.registry.insert_retrieved(identifier, retrieved.handle, retrieved.name)

        if entry is None:
            LOGGER.info("%s not known yet, scanning until it advertises", identifier)
            self._auto_connect_target = identifier
            self._start_scanning()
            self.connection_state.publish(ConnectionState.connecting())
            return

        self._prepare_and_connect(entry)

    def disconnect(self) -> None:
        self._cancel_retry()
        if self._peripheral_id is None:
            if self._auto_connect_target is not None:
                LOGGER.info("Dropping pending connection to %s", self._auto_connect_target)
                self._auto_connect_target = None
                self._stop_scanning()
                self.connection_state.publish(ConnectionState.disconnected())
            return

        identifier = self._peripheral_id
        handle = self._handle
        was_connected = self._is_connected
        if self._notify_char is not None and was_connected:
            self.adapter.set_notify(handle, self._notify_char.uuid, False)
        LOGGER.info("Disconnecting from %s", identifier)
        self.adapter.cancel_connection(handle)
        self._did_retry = False
        self._clean_state()
        if was_connected:
            self._closing_id = identifier
        else:
            self.connection_state.publish(ConnectionState.disconnected())

    def clear_connection_intent(self) -> None:
        self._auto_connect_target = None
        self._did_retry = False
        self._handshake_sent = False

    # Outbound

    def send_text(self, text: str) -> bool:
        if self._write_char is None or self._handle is None:
            LOGGER.debug("No write characteristic yet, dropping %r", text)
            return False
        self.adapter.write(
            self._handle,
            self._write_char.uuid,
            text.encode("utf-8"),
            with_response=not self._write_char.prefers_write_without_response,
        )
        return True

    def send_toggle(self, on: bool) -> bool:
        return self.send_text(CMD_ON if on else CMD_OFF)

    def request_image(self) -> bool:
        return self.send_text(CMD_GET_IMAGE)

    # Platform events

    def _on_power_state(self, event: PowerStateChanged) -> None:
        self.power_state.publish(event.state)
        if event.state == PowerState.POWERED_ON:
            if self._should_scan and not self._scanning:
                self._start_scanning()
        elif event.state == PowerState.POWERED_OFF:
            if self._scanning:
                self._scanning = False
                self.is_scanning.publish(False)
            self.registry.clear()
            self._emit_devices()

    def _on_discovered(self, event: PeripheralDiscovered) -> None:
        self.registry.upsert(event)
        self._emit_devices()
        if self._auto_connect_target == event.identifier:
            LOGGER.info("Pending target %s discovered", event.identifier)
            self._auto_connect_target = None
            self.connect(event.identifier)

    def _on_connected(self, event: PeripheralConnected) -> None:
        if event.identifier != self._peripheral_id:
            LOGGER.debug("Ignoring connect of untracked peripheral %s", event.identifier)
            return
        LOGGER.info("Connected to %s", event.identifier)
        self._is_connected = True
        self._handshake_sent = False
        self.connection_state.publish(ConnectionState.connected())
        self._services_filtered = True
        self.adapter.discover_services(self._handle, [self.layout.service_uuid])

    def _on_connect_failed(self, event: PeripheralConnectFailed) -> None:
        if event.identifier != self._peripheral_id:
            LOGGER.debug("Ignoring connect failure of untracked peripheral %s", event.identifier)
            return
        if not self._did_retry:
            # Absorbs brief advertising restarts on the host, e.g. after a rename.
            self._did_retry = True
            LOGGER.warning(
                "Connecting to %s failed (%s), retrying in %.1fs",
                event.identifier,
                event.reason,
                self.retry_delay_s,
            )
            self.connection_state.publish(ConnectionState.connecting())
            self._retry_timer = self.scheduler.call_later(self.retry_delay_s, self._retry_connect)
            return

        LOGGER.warning("Connecting to %s failed again: %s", event.identifier, event.reason)
        self._did_retry = False
        self._clean_state()
        self.connection_state.publish(ConnectionState.failed(event.reason or "Failed to connect"))

    def _on_disconnected(self, event: PeripheralDisconnected) -> None:
        if self._peripheral_id is None:
            if event.identifier != self._closing_id:
                LOGGER.debug("Ignoring disconnect of untracked peripheral %s", event.identifier)
                return
        elif event.identifier != self._peripheral_id:
            LOGGER.debug("Ignoring disconnect of untracked peripheral %s", event.identifier)
            return

        LOGGER.info("Disconnected from %s (%s)", event.identifier, event.reason or "requested")
        self._closing_id = None
        self._did_retry = False
        self._clean_state()
        self.connection_state.publish(ConnectionState.disconnected(event.reason))

    def _on_services_discovered(self, event: ServicesDiscovered) -> None:
        if event.identifier != self._peripheral_id or not self._is_connected:
            return
        if event.error:
            LOGGER.warning("Service discovery on %s reported: %s", event.identifier, event.error)
        if event.services is not None:
            self._services = tuple(normalize_uuid(uuid) for uuid in event.services)
        self._publish_detail()

        if not event.services:
            if self._services_filtered:
                LOGGER.debug("Preferred service absent on %s, discovering all services", event.identifier)
                self._services_filtered = False
                self.adapter.discover_services(self._handle, None)
            else:
                LOGGER.warning("%s exposes no services", event.identifier)
            return

        if self.layout.service_uuid in self._services:
            self.adapter.discover_characteristics(
                self._handle,
                self.layout.service_uuid,
                [self.layout.notify_char_uuid, self.layout.write_char_uuid],
            )
            return
        for service_uuid in self._services:
            self.adapter.discover_characteristics(self._handle, service_uuid, None)

    def _on_characteristics_discovered(self, event: CharacteristicsDiscovered) -> None:
        if event.identifier != self._peripheral_id or not self._is_connected:
            return
        if event.error:
            LOGGER.warning("Characteristic discovery on %s reported: %s", event.identifier, event.error)

        characteristics = tuple(
            CharacteristicInfo(normalize_uuid(c.uuid), c.properties) for c in event.characteristics
        )
        if normalize_uuid(event.service_uuid) == self.layout.service_uuid:
            if self._notify_char is None:
                tx = _first(characteristics, lambda c: c.uuid == self.layout.notify_char_uuid)
                if tx is not None:
                    self._subscribe(tx)
            if self._write_char is None:
                self._write_char = _first(characteristics, lambda c: c.uuid == self.layout.write_char_uuid)

        if self._notify_char is None:
            notify = _first(characteristics, lambda c: c.can_notify)
            if notify is not None:
                self._subscribe(notify)
        if self._write_char is None:
            self._write_char = _first(characteristics, lambda c: c.can_write)

        if self._write_char is not None and not self._handshake_sent:
            self._handshake_sent = True
            self.send_text(self._greeting())

        self._publish_detail()

    def _on_value_updated(self, event: ValueUpdated) -> None:
        if event.identifier != self._peripheral_id:
            return
        if event.error:
            LOGGER.warning("Notification error on %s: %s", event.characteristic_uuid, event.error)
            return
        if event.value is None:
            return
        text = decode_payload(event.value)
        self.inbound_text.publish(text)
        for line in text.splitlines():
            self.codec.feed(line)

    def _on_write_acknowledged(self, event: WriteAcknowledged) -> None:
        if event.error:
            LOGGER.warning("Write to %s failed: %s", event.characteristic_uuid, event.error)
        else:
            LOGGER.debug("Write to %s acknowledged", event.characteristic_uuid)

    # Helpers

    def _prepare_and_connect(self, entry: RegistryEntry) -> None:
        self._cancel_retry()
        self._auto_connect_target = None
        self._closing_id = None
        self._peripheral_id = entry.identifier
        self._handle = entry.handle
        self._is_connected = False
        self._services = ()
        self._notify_char = None
        self._write_char = None
        self._handshake_sent = False
        self._did_retry = False
        self.codec.reset()

        LOGGER.info("Connecting to %s (%s)", entry.display_name, entry.identifier)
        self.session_detail.publish(SessionDetail(device=entry.to_device()))
        self.connection_state.publish(ConnectionState.connecting())
        self.adapter.connect(entry.handle)

    def _retry_connect(self) -> None:
        self._retry_timer = None
        if self._handle is None:
            return
        LOGGER.debug("Retrying connection to %s", self._peripheral_id)
        self.adapter.connect(self._handle)

    def _cancel_retry(self) -> None:
        if self._retry_timer is not None:
            self._retry_timer.cancel()
            self._retry_timer = None

    def _subscribe(self, characteristic: CharacteristicInfo) -> None:
        self._notify_char = characteristic
        self.adapter.set_notify(self._handle, characteristic.uuid, True)

    def _clean_state(self) -> None:
        """Drop handles and session detail without touching the connection state."""
        self._cancel_retry()
        self._peripheral_id = None
        self._handle = None
        self._is_connected = False
        self._services = ()
        self._services_filtered = False
        self._notify_char = None
        self._write_char = None
        self._handshake_sent = False
        self.codec.reset()
        self.session_detail.publish(None)

    def _publish_detail(self) -> None:
        if self._peripheral_id is None:
            return
        device = self.registry.device(self._peripheral_id)
        if device is None:
            current = self.session_detail.value
            if current is None:
                return
            device = current.device
        self.session_detail.publish(
            SessionDetail(
                device=device,
                services=self._services,
                notify_char_uuid=self._notify_char.uuid if self._notify_char else None,
                write_char_uuid=self._write_char.uuid if self._write_char else None,
            )
        )

    def _emit_devices(self) -> None:
        self.devices.publish(tuple(self.registry.snapshot(connected_id=self._peripheral_id)))

    def _start_scanning(self) -> None:
        self._should_scan = True
        if self.power_state.value != PowerState.POWERED_ON or self._scanning:
            return
        self._scanning = True
        self.is_scanning.publish(True)
        self.adapter.start_scan(allow_duplicates=True)

    def _stop_scanning(self) -> None:
        self._should_scan = False
        if not self._scanning:
            return
        self._scanning = False
        self.is_scanning.publish(False)
        self.adapter.stop_scan()


def _first(
    characteristics: tuple[CharacteristicInfo, ...],
    predicate: Callable[[CharacteristicInfo], bool],
) -> CharacteristicInfo | None:
    return next((c for c in characteristics if predicate(c)), None)

"""Peripheral (responder) advertising and GATT-server state machine.

States: Idle -> Ready -> Advertising -> Connected(subscriber) -> Advertising
once the last subscriber leaves, or Idle when the radio goes off.

Outbound notifications go through ``NotifyQueue``: the platform accepts one
notification at a time and reports a full buffer by rejecting the update.
"""

from __future__ import annotations

import logging
from collections import deque
from collections.abc import Callable, Iterator
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from nuslink.core.channel import EventChannel, StateChannel
from nuslink.core.codec import (
    CMD_GET,
    CMD_GET_IMAGE,
    CMD_OFF,
    CMD_ON,
    REASON_NO_FILE_SELECTED,
    REASON_READ_FAILED,
    LineCodec,
    encode_image_lines,
    error_line,
)
from nuslink.core.events import (
    AdvertisingStarted,
    CentralSubscribed,
    CentralUnsubscribed,
    PowerStateChanged,
    ReadyToUpdateSubscribers,
    ServiceAdded,
    WriteRequestsReceived,
)
from nuslink.core.model import (
    AttResult,
    GattLayout,
    PeripheralKind,
    PeripheralState,
    PowerState,
    Profile,
    ProtocolEvent,
    RegularMessage,
    normalize_uuid,
)
from nuslink.core.scheduler import Cancellable, Scheduler
from nuslink.core.text import hex_dump, truncate
from nuslink.transports.base import PeripheralAdapter

NOTIFY_QUEUE_LIMIT = 100
DEFAULT_LOCAL_NAME = "QDevice1"
LOGGER = logging.getLogger(__name__)


def host_greeting() -> str:
    now = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
    return f"HELLO from Host @ {now}"


class NotifyQueue:
    """Bounded FIFO of payloads the platform could not take yet.

    On overflow the oldest payloads are dropped so the most recent state
    survives.
    """

    def __init__(self, limit: int = NOTIFY_QUEUE_LIMIT) -> None:
        self._pending: deque[bytes] = deque(maxlen=limit)
        self.dropped = 0

    def __len__(self) -> int:
        return len(self._pending)

    def __iter__(self) -> Iterator[bytes]:
        return iter(tuple(self._pending))

    @property
    def limit(self) -> int:
        return self._pending.maxlen or 0

    def offer(self, payload: bytes, deliver: Callable[[bytes], bool]) -> bool:
        """Deliver payload now or queue it; True when it went out immediately.

        While older payloads are waiting, new ones queue behind them so
        delivery order never changes.
        """
        if not self._pending and deliver(payload):
            return True
        self._append(payload)
        return False

    def flush(self, deliver: Callable[[bytes], bool]) -> int:
        """Deliver queued payloads in order until the platform rejects one."""
        delivered = 0
        while self._pending:
            if not deliver(self._pending[0]):
                break
            self._pending.popleft()
            delivered += 1
        return delivered

    def clear(self) -> None:
        self._pending.clear()

    def _append(self, payload: bytes) -> None:
        if len(self._pending) == self._pending.maxlen:
            self.dropped += 1
            LOGGER.warning("Notify queue full, dropping oldest payload")
        self._pending.append(payload)


class PeripheralHost:
    def __init__(
        self,
        adapter: PeripheralAdapter,
        scheduler: Scheduler,
        *,
        layout: GattLayout | None = None,
        local_name: str = DEFAULT_LOCAL_NAME,
        greeting: Callable[[], str] = host_greeting,
        greeting_delay_s: float = 0.0,
        queue_limit: int = NOTIFY_QUEUE_LIMIT,
    ) -> None:
        layout = layout or GattLayout()
        self.layout = GattLayout(
            service_uuid=normalize_uuid(layout.service_uuid),
            write_char_uuid=normalize_uuid(layout.write_char_uuid),
            notify_char_uuid=normalize_uuid(layout.notify_char_uuid),
        )
        self.adapter = adapter
        self.scheduler = scheduler
        self.local_name = local_name
        self.greeting_delay_s = greeting_delay_s
        self._greeting = greeting
        self.queue = NotifyQueue(queue_limit)

        self.state: StateChannel[PeripheralState] = StateChannel(
            "host_state",
            PeripheralState.idle(),
            key=lambda s: (s.kind, s.subscriber_id, s.reason),
        )
        self.power_state: StateChannel[PowerState] = StateChannel("host_power_state", PowerState.UNKNOWN)
        self.remote_toggle: StateChannel[bool] = StateChannel("remote_toggle", False)
        self.subscribers: StateChannel[tuple[str, ...]] = StateChannel("subscribers", ())
        self.inbound_messages: EventChannel[str] = EventChannel("inbound_messages")
        self.protocol_events: EventChannel[ProtocolEvent] = EventChannel("host_protocol_events")
        self.codec = LineCodec()

        self._selected_image: Path | None = None
        self._desired_advertise = False
        self._gatt_registered = False
        self._service_added = False
        self._greeting_timer: Cancellable | None = None

        self._handlers: dict[type, Callable[[Any], None]] = {
            PowerStateChanged: self._on_power_state,
            ServiceAdded: self._on_service_added,
            AdvertisingStarted: self._on_advertising_started,
            CentralSubscribed: self._on_subscribed,
            CentralUnsubscribed: self._on_unsubscribed,
            WriteRequestsReceived: self._on_write_requests,
            ReadyToUpdateSubscribers: self._on_ready_to_update,
        }
        adapter.bind(self.handle)

    @classmethod
    def from_profile(
        cls,
        profile: Profile,
        adapter: PeripheralAdapter,
        scheduler: Scheduler,
        *,
        local_name: str | None = None,
    ) -> PeripheralHost:
        return cls(
            adapter,
            scheduler,
            layout=profile.layout,
            local_name=local_name or profile.local_name,
            greeting_delay_s=profile.greeting_delay_s,
        )

    @property
    def selected_image(self) -> Path | None:
        return self._selected_image

    def handle(self, event: Any) -> None:
        handler = self._handlers.get(type(event))
        if handler is None:
            LOGGER.warning("Ignoring unsupported peripheral event %r", event)
            return
        handler(event)

    # Public API

    def start_hosting(self) -> None:
        self._desired_advertise = True
        if self.power_state.value != PowerState.POWERED_ON:
            LOGGER.info("Radio not ready, hosting starts once it powers on")
            return
        self._setup_gatt_if_needed()
        self._start_advertising()

    def stop_hosting(self) -> None:
        self._desired_advertise = False
        self._cancel_greeting()
        self.queue.clear()
        if self.adapter.is_advertising:
            self.adapter.stop_advertising()
        if self._gatt_registered:
            self.adapter.remove_all_services()
        self._gatt_registered = False
        self._service_added = False
        self.subscribers.publish(())
        self.codec.reset()
        if self.power_state.value == PowerState.POWERED_ON:
            self.state.publish(PeripheralState.ready())
        else:
            self.state.publish(PeripheralState.idle())

    def update_config(self, *, local_name: str) -> None:
        self.local_name = local_name
        if self.state.value == PeripheralState.advertising():
            self._restart_advertising()

    def select_image(self, path: Path | None) -> None:
        self._selected_image = path

    def send_text(self, text: str) -> bool:
        """Notify subscribers with text; False if the service is not registered."""
        if not self._gatt_registered:
            LOGGER.debug("Service not registered, dropping %r", text)
            return False
        self.queue.offer(text.encode("utf-8"), self._deliver)
        return True

    # Platform events

    def _on_power_state(self, event: PowerStateChanged) -> None:
        self.power_state.publish(event.state)
        if event.state == PowerState.POWERED_ON:
            if self.state.value.kind in (PeripheralKind.IDLE, PeripheralKind.FAILED):
                self.state.publish(PeripheralState.ready())
            self._setup_gatt_if_needed()
            if self._desired_advertise:
                self._start_advertising()
            return

        # The platform drops registered services with the radio.
        self._gatt_registered = False
        self._service_added = False
        self._cancel_greeting()
        self.queue.clear()
        self.subscribers.publish(())
        if event.state == PowerState.UNSUPPORTED:
            self.state.publish(PeripheralState.failed("Unsupported"))
        elif event.state == PowerState.UNAUTHORIZED:
            self.state.publish(PeripheralState.failed("Unauthorized"))
        else:
            self.state.publish(PeripheralState.idle())

    def _on_service_added(self, event: ServiceAdded) -> None:
        if event.error:
            LOGGER.warning("Adding service %s failed: %s", event.service_uuid, event.error)
            self._service_added = False
            self.state.publish(PeripheralState.failed(f"Add service failed: {event.error}"))
            return
        self._service_added = True
        if self._desired_advertise and not self.adapter.is_advertising:
            self._start_advertising()

    def _on_advertising_started(self, event: AdvertisingStarted) -> None:
        if event.error:
            LOGGER.warning("Advertising failed: %s", event.error)
            self.state.publish(PeripheralState.failed(f"Advertising failed: {event.error}"))
            return
        if not self.subscribers.value:
            self.state.publish(PeripheralState.advertising())

    def _on_subscribed(self, event: CentralSubscribed) -> None:
        if event.max_update_length is not None:
            LOGGER.info("Central %s subscribed, max update %d bytes", event.central_id, event.max_update_length)
        else:
            LOGGER.info("Central %s subscribed", event.central_id)
        current = self.subscribers.value
        if event.central_id not in current:
            self.subscribers.publish(current + (event.central_id,))
        self.state.publish(PeripheralState.connected(event.central_id))
        self._cancel_greeting()
        self._greeting_timer = self.scheduler.call_later(self.greeting_delay_s, self._send_greeting)
        self.queue.flush(self._deliver)

    def _on_unsubscribed(self, event: CentralUnsubscribed) -> None:
        if event.central_id not in self.subscribers.value:
            LOGGER.debug("Ignoring unsubscribe from unknown central %s", event.central_id)
            return
        LOGGER.info("Central %s unsubscribed", event.central_id)
        remaining = tuple(c for c in self.subscribers.value if c != event.central_id)
        self.subscribers.publish(remaining)
        if remaining:
            self.state.publish(PeripheralState.connected(remaining[0]))
            return
        # Service stays registered and advertising continues.
        self._cancel_greeting()
        self.queue.clear()
        self.codec.reset()
        self.remote_toggle.publish(False)
        self.state.publish(PeripheralState.advertising())

    def _on_write_requests(self, event: WriteRequestsReceived) -> None:
        for request in event.requests:
            if normalize_uuid(request.characteristic_uuid) != self.layout.write_char_uuid or request.value is None:
                self.adapter.respond(request, AttResult.REQUEST_NOT_SUPPORTED)
                continue
            # Acknowledge before interpreting.
            self.adapter.respond(request, AttResult.SUCCESS)
            self._interpret(request.value)

    def _on_ready_to_update(self, event: ReadyToUpdateSubscribers) -> None:
        self.queue.flush(self._deliver)

    # Helpers

    def _interpret(self, value: bytes) -> None:
        try:
            text = value.decode("utf-8")
        except UnicodeDecodeError:
            self.inbound_messages.publish(hex_dump(value))
            return

        lines = text.splitlines() or [text]
        for line in lines:
            for event in self.codec.feed(line):
                if isinstance(event, RegularMessage):
                    self._handle_line(event.line)
                else:
                    self.protocol_events.publish(event)

    def _handle_line(self, line: str) -> None:
        command = line.upper()
        if command == CMD_ON:
            self.remote_toggle.publish(True)
        elif command == CMD_OFF:
            self.remote_toggle.publish(False)
        elif command in (CMD_GET, CMD_GET_IMAGE):
            self._send_selected_image()
        else:
            self.inbound_messages.publish(truncate(line))

    def _send_selected_image(self) -> None:
        path = self._selected_image
        if path is None:
            self.send_text(error_line(REASON_NO_FILE_SELECTED))
            return
        try:
            data = path.read_bytes()
        except OSError as exc:
            LOGGER.warning("Could not read %s: %s", path, exc)
            self.send_text(error_line(REASON_READ_FAILED))
            return
        lines = encode_image_lines(path.name, data)
        LOGGER.info("Sending %s (%d bytes) in %d lines", path.name, len(data), len(lines))
        for line in lines:
            self.send_text(line)

    def _send_greeting(self) -> None:
        self._greeting_timer = None
        if self.subscribers.value:
            self.send_text(self._greeting())

    def _cancel_greeting(self) -> None:
        if self._greeting_timer is not None:
            self._greeting_timer.cancel()
            self._greeting_timer = None

    def _deliver(self, payload: bytes) -> bool:
        return self.adapter.update_value(self.layout.notify_char_uuid, payload)

    def _setup_gatt_if_needed(self) -> None:
        if self._gatt_registered:
            return
        LOGGER.debug("Registering service %s", self.layout.service_uuid)
        self._gatt_registered = True
        self._service_added = False
        self.adapter.add_service(self.layout)

    def _start_advertising(self) -> None:
        self._desired_advertise = True
        if self.power_state.value != PowerState.POWERED_ON:
            return
        if not self._gatt_registered or not self._service_added or self.adapter.is_advertising:
            return
        LOGGER.info("Advertising %s as %s", self.layout.service_uuid, self.local_name)
        self.adapter.start_advertising(self.layout.service_uuid, self.local_name)
        if not self.subscribers.value:
            self.state.publish(PeripheralState.advertising())

    def _restart_advertising(self) -> None:
        if self.adapter.is_advertising:
            self.adapter.stop_advertising()
        self._start_advertising()

"""Platform adapter interfaces consumed by the state machines.

Adapters only issue requests. Results are reported later as events from
``nuslink.core.events`` passed to the sink given to ``bind``.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from typing import Any, Protocol

from nuslink.core.events import CentralEvent, PeripheralEvent
from nuslink.core.model import AttResult, GattLayout, RetrievedPeripheral, WriteRequest


class CentralAdapter(Protocol):
    def bind(self, sink: Callable[[CentralEvent], None]) -> None:
        """Register the receiver of platform events."""

    def start_scan(self, *, allow_duplicates: bool = True) -> None:
        """Start discovering advertising peripherals."""

    def stop_scan(self) -> None:
        """Stop discovery."""

    def retrieve_peripheral(self, identifier: str) -> RetrievedPeripheral | None:
        """Return a platform-cached peripheral for identifier, if any."""

    def connect(self, handle: Any) -> None:
        """Request a connection to the peripheral behind handle."""

    def cancel_connection(self, handle: Any) -> None:
        """Request disconnection, or abort a pending connection."""

    def discover_services(self, handle: Any, service_uuids: Sequence[str] | None) -> None:
        """Discover services, optionally filtered to service_uuids."""

    def discover_characteristics(
        self,
        handle: Any,
        service_uuid: str,
        characteristic_uuids: Sequence[str] | None,
    ) -> None:
        """Discover characteristics of one service, optionally filtered."""

    def set_notify(self, handle: Any, characteristic_uuid: str, enabled: bool) -> None:
        """Subscribe to or unsubscribe from value notifications."""

    def write(
        self,
        handle: Any,
        characteristic_uuid: str,
        data: bytes,
        *,
        with_response: bool,
    ) -> None:
        """Write a value to a characteristic."""


class PeripheralAdapter(Protocol):
    @property
    def is_advertising(self) -> bool:
        """Whether the platform is currently advertising."""

    def bind(self, sink: Callable[[PeripheralEvent], None]) -> None:
        """Register the receiver of platform events."""

    def add_service(self, layout: GattLayout) -> None:
        """Register the service with its write and notify characteristics."""

    def remove_all_services(self) -> None:
        """Unregister every service added by this adapter."""

    def start_advertising(self, service_uuid: str, local_name: str) -> None:
        """Advertise service_uuid under local_name."""

    def stop_advertising(self) -> None:
        """Stop advertising."""

    def respond(self, request: WriteRequest, result: AttResult) -> None:
        """Acknowledge a write request."""

    def update_value(self, characteristic_uuid: str, data: bytes) -> bool:
        """Notify subscribers; False when the outbound buffer is full."""

"""Platform events delivered by BLE adapters to the state machines.

Each adapter callback is represented by one frozen dataclass. The owning
state machine consumes them one at a time through its ``handle`` method and
maps each type to exactly one transition.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from nuslink.core.model import CharacteristicInfo, PowerState, WriteRequest


@dataclass(frozen=True)
class PowerStateChanged:
    state: PowerState


# Central role


@dataclass(frozen=True)
class PeripheralDiscovered:
    identifier: str
    rssi: int
    local_name: str | None = None
    platform_name: str | None = None
    manufacturer_data: bytes = b""
    service_uuids: tuple[str, ...] = ()
    is_connectable: bool | None = None
    handle: Any = field(default=None, compare=False)


@dataclass(frozen=True)
class PeripheralConnected:
    identifier: str


@dataclass(frozen=True)
class PeripheralConnectFailed:
    identifier: str
    reason: str | None = None


@dataclass(frozen=True)
class PeripheralDisconnected:
    identifier: str
    reason: str | None = None


@dataclass(frozen=True)
class ServicesDiscovered:
    identifier: str
    # None means the platform returned no service list at all.
    services: tuple[str, ...] | None
    error: str | None = None


@dataclass(frozen=True)
class CharacteristicsDiscovered:
    identifier: str
    service_uuid: str
    characteristics: tuple[CharacteristicInfo, ...]
    error: str | None = None


@dataclass(frozen=True)
class ValueUpdated:
    identifier: str
    characteristic_uuid: str
    value: bytes | None
    error: str | None = None


@dataclass(frozen=True)
class WriteAcknowledged:
    identifier: str
    characteristic_uuid: str
    error: str | None = None


CentralEvent = (
    PowerStateChanged
    | PeripheralDiscovered
    | PeripheralConnected
    | PeripheralConnectFailed
    | PeripheralDisconnected
    | ServicesDiscovered
    | CharacteristicsDiscovered
    | ValueUpdated
    | WriteAcknowledged
)


# Peripheral role


@dataclass(frozen=True)
class ServiceAdded:
    service_uuid: str
    error: str | None = None


@dataclass(frozen=True)
class AdvertisingStarted:
    error: str | None = None


@dataclass(frozen=True)
class CentralSubscribed:
    central_id: str
    characteristic_uuid: str
    max_update_length: int | None = None


@dataclass(frozen=True)
class CentralUnsubscribed:
    central_id: str
    characteristic_uuid: str


@dataclass(frozen=True)
class WriteRequestsReceived:
    requests: tuple[WriteRequest, ...]


@dataclass(frozen=True)
class ReadyToUpdateSubscribers:
    pass


PeripheralEvent = (
    PowerStateChanged
    | ServiceAdded
    | AdvertisingStarted
    | CentralSubscribed
    | CentralUnsubscribed
    | WriteRequestsReceived
    | ReadyToUpdateSubscribers
)

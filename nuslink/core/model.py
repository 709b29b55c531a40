"""Core data models shared by the codec, registry, state machines and CLI."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

_BASE_UUID_SUFFIX = "-0000-1000-8000-00805f9b34fb"

NUS_SERVICE_UUID = "6e400001-b5a3-f393-e0a9-e50e24dcca9e"
# RX: the central writes, the peripheral receives.
NUS_RX_CHAR_UUID = "6e400002-b5a3-f393-e0a9-e50e24dcca9e"
# TX: the peripheral notifies, the central subscribes.
NUS_TX_CHAR_UUID = "6e400003-b5a3-f393-e0a9-e50e24dcca9e"

UNKNOWN_DEVICE_NAME = "Unknown"


def normalize_uuid(value: str) -> str:
    """Return the lower-case 128-bit form of a 16, 32 or 128-bit UUID string."""
    normalized = value.strip().lower()
    if len(normalized) == 4:
        return f"0000{normalized}{_BASE_UUID_SUFFIX}"
    if len(normalized) == 8:
        return f"{normalized}{_BASE_UUID_SUFFIX}"
    return normalized


@dataclass(frozen=True)
class GattLayout:
    service_uuid: str = NUS_SERVICE_UUID
    write_char_uuid: str = NUS_RX_CHAR_UUID
    notify_char_uuid: str = NUS_TX_CHAR_UUID


@dataclass(frozen=True)
class Profile:
    id: str
    name: str
    layout: GattLayout
    local_name: str = "QDevice1"
    connect_retry_delay_s: float = 0.6
    stale_after_s: float = 6.0
    greeting_delay_s: float = 0.0


class PowerState(str, Enum):
    UNKNOWN = "unknown"
    RESETTING = "resetting"
    UNSUPPORTED = "unsupported"
    UNAUTHORIZED = "unauthorized"
    POWERED_OFF = "powered_off"
    POWERED_ON = "powered_on"


@dataclass(frozen=True)
class Device:
    id: str
    name: str
    rssi: int | None = None
    is_connectable: bool | None = None
    preferred_service_uuid: str | None = None


@dataclass(frozen=True)
class SessionDetail:
    device: Device
    services: tuple[str, ...] = ()
    notify_char_uuid: str | None = None
    write_char_uuid: str | None = None


class ConnectionKind(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    FAILED = "failed"
    DISCONNECTED = "disconnected"


@dataclass(frozen=True)
class ConnectionState:
    """Central connection state.

    Two states are equal when their variants are equal; failure and
    disconnect reasons are carried for display only.
    """

    kind: ConnectionKind
    reason: str | None = field(default=None, compare=False)

    @classmethod
    def idle(cls) -> ConnectionState:
        return cls(ConnectionKind.IDLE)

    @classmethod
    def connecting(cls) -> ConnectionState:
        return cls(ConnectionKind.CONNECTING)

    @classmethod
    def connected(cls) -> ConnectionState:
        return cls(ConnectionKind.CONNECTED)

    @classmethod
    def failed(cls, reason: str) -> ConnectionState:
        return cls(ConnectionKind.FAILED, reason)

    @classmethod
    def disconnected(cls, reason: str | None = None) -> ConnectionState:
        return cls(ConnectionKind.DISCONNECTED, reason)

    def __str__(self) -> str:
        if self.reason:
            return f"{self.kind.value} ({self.reason})"
        return self.kind.value


class PeripheralKind(str, Enum):
    IDLE = "idle"
    READY = "ready"
    ADVERTISING = "advertising"
    CONNECTED = "connected"
    FAILED = "failed"


@dataclass(frozen=True)
class PeripheralState:
    kind: PeripheralKind
    subscriber_id: str | None = None
    reason: str | None = field(default=None, compare=False)

    @classmethod
    def idle(cls) -> PeripheralState:
        return cls(PeripheralKind.IDLE)

    @classmethod
    def ready(cls) -> PeripheralState:
        return cls(PeripheralKind.READY)

    @classmethod
    def advertising(cls) -> PeripheralState:
        return cls(PeripheralKind.ADVERTISING)

    @classmethod
    def connected(cls, subscriber_id: str | None) -> PeripheralState:
        return cls(PeripheralKind.CONNECTED, subscriber_id=subscriber_id)

    @classmethod
    def failed(cls, reason: str) -> PeripheralState:
        return cls(PeripheralKind.FAILED, reason=reason)

    def __str__(self) -> str:
        if self.subscriber_id:
            return f"{self.kind.value} ({self.subscriber_id})"
        if self.reason:
            return f"{self.kind.value} ({self.reason})"
        return self.kind.value


@dataclass(frozen=True)
class CharacteristicInfo:
    uuid: str
    properties: frozenset[str] = frozenset()

    @property
    def can_notify(self) -> bool:
        return "notify" in self.properties or "indicate" in self.properties

    @property
    def can_write(self) -> bool:
        return "write" in self.properties or "write-without-response" in self.properties

    @property
    def prefers_write_without_response(self) -> bool:
        return "write-without-response" in self.properties


@dataclass(frozen=True)
class RetrievedPeripheral:
    identifier: str
    handle: Any
    name: str | None = None


class AttResult(str, Enum):
    SUCCESS = "success"
    REQUEST_NOT_SUPPORTED = "request_not_supported"


@dataclass(frozen=True)
class WriteRequest:
    central_id: str
    characteristic_uuid: str
    value: bytes | None
    token: Any = None


@dataclass(frozen=True)
class RegularMessage:
    line: str


@dataclass(frozen=True)
class ImageStarted:
    filename: str
    expected_bytes: int


@dataclass(frozen=True)
class ImageProgress:
    bytes_estimated: int
    expected_bytes: int

    @property
    def fraction(self) -> float:
        if self.expected_bytes <= 0:
            return 0.0
        return min(0.99, max(0.0, self.bytes_estimated / self.expected_bytes))


@dataclass(frozen=True)
class ImageCompleted:
    data: bytes
    filename: str


@dataclass(frozen=True)
class ImageFailed:
    reason: str


ProtocolEvent = RegularMessage | ImageStarted | ImageProgress | ImageCompleted | ImageFailed


@dataclass(frozen=True)
class SendResult:
    device: Device
    lines: tuple[str, ...]


@dataclass(frozen=True)
class FetchedImage:
    device: Device
    filename: str
    path: Path
    size_bytes: int

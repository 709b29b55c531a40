"""Registry of discovered peripherals.

Advertisements arrive lossy and at high frequency. The registry keeps the
freshest values per identifier and derives the pruned, sorted device list
that observers see.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from nuslink.core.events import PeripheralDiscovered
from nuslink.core.model import NUS_SERVICE_UUID, UNKNOWN_DEVICE_NAME, Device, normalize_uuid

STALE_AFTER_S = 6.0
LOGGER = logging.getLogger(__name__)


@dataclass
class RegistryEntry:
    identifier: str
    handle: Any
    last_seen: float
    rssi: int | None = None
    is_connectable: bool | None = None
    local_name: str | None = None
    platform_name: str | None = None
    preferred_service_uuid: str | None = None

    @property
    def display_name(self) -> str:
        local = (self.local_name or "").strip()
        if local:
            return local
        if self.platform_name:
            return self.platform_name
        return UNKNOWN_DEVICE_NAME

    def to_device(self) -> Device:
        return Device(
            id=self.identifier,
            name=self.display_name,
            rssi=self.rssi,
            is_connectable=self.is_connectable,
            preferred_service_uuid=self.preferred_service_uuid,
        )


class DeviceRegistry:
    def __init__(
        self,
        *,
        well_known_service_uuid: str = NUS_SERVICE_UUID,
        stale_after_s: float = STALE_AFTER_S,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.well_known_service_uuid = normalize_uuid(well_known_service_uuid)
        self.stale_after_s = stale_after_s
        self._clock = clock
        self._entries: dict[str, RegistryEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, identifier: object) -> bool:
        return identifier in self._entries

    def get(self, identifier: str) -> RegistryEntry | None:
        return self._entries.get(identifier)

    def device(self, identifier: str) -> Device | None:
        entry = self._entries.get(identifier)
        return entry.to_device() if entry else None

    def upsert(self, event: PeripheralDiscovered) -> RegistryEntry:
        now = self._clock()
        entry = self._entries.get(event.identifier)
        if entry is None:
            entry = RegistryEntry(identifier=event.identifier, handle=event.handle, last_seen=now)
            self._entries[event.identifier] = entry
            LOGGER.debug("Discovered %s", event.identifier)

        if event.handle is not None:
            entry.handle = event.handle
        entry.rssi = event.rssi
        entry.is_connectable = event.is_connectable
        name = (event.local_name or "").strip()
        if name:
            entry.local_name = name
        if event.platform_name:
            entry.platform_name = event.platform_name
        preferred = self._preferred_service(event.service_uuids)
        if preferred is not None:
            entry.preferred_service_uuid = preferred
        entry.last_seen = now
        return entry

    def insert_retrieved(self, identifier: str, handle: Any, name: str | None = None) -> RegistryEntry:
        """Record a peripheral the platform resolved by identifier, without advertisement data."""
        entry = RegistryEntry(
            identifier=identifier,
            handle=handle,
            last_seen=self._clock(),
            platform_name=name,
        )
        self._entries[identifier] = entry
        return entry

    def snapshot(self, connected_id: str | None = None) -> list[Device]:
        cutoff = self._clock() - self.stale_after_s
        devices = [
            entry.to_device()
            for entry in self._entries.values()
            if entry.rssi is not None
            and entry.rssi < 0
            and (entry.identifier == connected_id or entry.last_seen > cutoff)
        ]
        devices.sort(key=lambda d: (-(d.rssi or 0), d.name))
        return devices

    def clear(self) -> None:
        if self._entries:
            LOGGER.debug("Clearing %d registry entries", len(self._entries))
        self._entries.clear()

    def _preferred_service(self, service_uuids: tuple[str, ...]) -> str | None:
        if not service_uuids:
            return None
        normalized = [normalize_uuid(uuid) for uuid in service_uuids]
        if self.well_known_service_uuid in normalized:
            return self.well_known_service_uuid
        return normalized[0]

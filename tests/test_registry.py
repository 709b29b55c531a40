from __future__ import annotations

from nuslink.core.events import PeripheralDiscovered
from nuslink.core.model import NUS_SERVICE_UUID
from nuslink.core.registry import DeviceRegistry


def _seen(identifier: str, rssi: int, name: str | None = None, **kwargs) -> PeripheralDiscovered:
    return PeripheralDiscovered(identifier=identifier, rssi=rssi, local_name=name, **kwargs)


def test_upsert_keeps_latest_values(clock) -> None:
    registry = DeviceRegistry(clock=clock)
    registry.upsert(_seen("A", -80, "First", is_connectable=False))
    clock.advance(1)
    registry.upsert(_seen("A", -40, "Second", is_connectable=True))

    [device] = registry.snapshot()
    assert device.name == "Second"
    assert device.rssi == -40
    assert device.is_connectable is True
    assert len(registry) == 1


def test_blank_name_does_not_overwrite_stored_name(clock) -> None:
    registry = DeviceRegistry(clock=clock)
    registry.upsert(_seen("A", -50, "Sensor"))
    registry.upsert(_seen("A", -55, "   "))
    registry.upsert(_seen("A", -60, None))
    assert registry.device("A").name == "Sensor"


def test_name_falls_back_to_platform_name_then_unknown(clock) -> None:
    registry = DeviceRegistry(clock=clock)
    registry.upsert(_seen("A", -50, platform_name="Platform"))
    registry.upsert(_seen("B", -50))
    assert registry.device("A").name == "Platform"
    assert registry.device("B").name == "Unknown"


def test_stale_entries_are_pruned_unless_connected(clock) -> None:
    registry = DeviceRegistry(clock=clock)
    registry.upsert(_seen("old", -40, "Old"))
    registry.upsert(_seen("linked", -45, "Linked"))
    clock.advance(6.5)
    registry.upsert(_seen("fresh", -70, "Fresh"))

    assert [d.id for d in registry.snapshot()] == ["fresh"]
    assert [d.id for d in registry.snapshot(connected_id="linked")] == ["linked", "fresh"]


def test_entry_within_window_is_kept(clock) -> None:
    registry = DeviceRegistry(clock=clock)
    registry.upsert(_seen("A", -40))
    clock.advance(5.9)
    assert [d.id for d in registry.snapshot()] == ["A"]


def test_snapshot_sorted_by_signal_then_name(clock) -> None:
    registry = DeviceRegistry(clock=clock)
    registry.upsert(_seen("1", -70, "Zeta"))
    registry.upsert(_seen("2", -30, "Beta"))
    registry.upsert(_seen("3", -70, "Alpha"))
    registry.upsert(_seen("4", -50, "Gamma"))

    assert [d.name for d in registry.snapshot()] == ["Beta", "Gamma", "Alpha", "Zeta"]


def test_non_negative_signal_is_never_listed(clock) -> None:
    registry = DeviceRegistry(clock=clock)
    registry.upsert(_seen("zero", 0, "Zero"))
    registry.upsert(_seen("bogus", 127, "Bogus"))
    registry.upsert(_seen("ok", -60, "Ok"))

    assert [d.id for d in registry.snapshot()] == ["ok"]
    assert [d.id for d in registry.snapshot(connected_id="zero")] == ["ok"]


def test_retrieved_entry_has_no_signal_until_advertised(clock) -> None:
    registry = DeviceRegistry(clock=clock)
    registry.insert_retrieved("A", handle=object(), name="Cached")
    assert registry.snapshot() == []
    registry.upsert(_seen("A", -42))
    [device] = registry.snapshot()
    assert device.name == "Cached"


def test_preferred_service_favours_well_known_uuid(clock) -> None:
    registry = DeviceRegistry(clock=clock)
    registry.upsert(_seen("A", -40, service_uuids=("180F", NUS_SERVICE_UUID.upper())))
    registry.upsert(_seen("B", -40, service_uuids=("180F",)))

    assert registry.device("A").preferred_service_uuid == NUS_SERVICE_UUID
    assert registry.device("B").preferred_service_uuid == "0000180f-0000-1000-8000-00805f9b34fb"


def test_clear_empties_registry(clock) -> None:
    registry = DeviceRegistry(clock=clock)
    registry.upsert(_seen("A", -40))
    registry.clear()
    assert len(registry) == 0
    assert registry.snapshot() == []

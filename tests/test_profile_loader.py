from __future__ import annotations

from pathlib import Path

import pytest

from nuslink.core.errors import ProfileResolutionError, ProfileValidationError
from nuslink.core.model import NUS_RX_CHAR_UUID, NUS_SERVICE_UUID, NUS_TX_CHAR_UUID
from nuslink.core.profile_loader import load_profiles


def _write_profile(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")


@pytest.fixture
def user_dirs(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Path:
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "cfg"))
    monkeypatch.setenv("XDG_DATA_HOME", str(tmp_path / "data"))
    return tmp_path


def test_load_packaged_profile(user_dirs: Path) -> None:
    loaded = load_profiles()
    profile = loaded.get()
    assert profile.id == "nus"
    assert profile.layout.service_uuid == NUS_SERVICE_UUID
    assert profile.layout.write_char_uuid == NUS_RX_CHAR_UUID
    assert profile.layout.notify_char_uuid == NUS_TX_CHAR_UUID
    assert profile.local_name == "QDevice1"
    assert profile.connect_retry_delay_s == 0.6
    assert profile.stale_after_s == 6.0
    assert loaded.warnings == ()


def test_unknown_profile_id_rejected(user_dirs: Path) -> None:
    with pytest.raises(ProfileResolutionError):
        load_profiles().get("does_not_exist")


def test_user_profile_override_packaged(user_dirs: Path) -> None:
    _write_profile(
        user_dirs / "cfg" / "nuslink" / "profiles" / "override.yaml",
        """
id: nus
name: Bench Override
gatt:
  service_uuid: "6E400001-B5A3-F393-E0A9-E50E24DCCA9E"
  write_char_uuid: "6e400002-b5a3-f393-e0a9-e50e24dcca9e"
  notify_char_uuid: "6e400003-b5a3-f393-e0a9-e50e24dcca9e"
host:
  local_name: Bench
""",
    )

    loaded = load_profiles()
    assert loaded.profiles["nus"].name == "Bench Override"
    assert loaded.profiles["nus"].local_name == "Bench"
    assert loaded.profiles["nus"].layout.service_uuid == NUS_SERVICE_UUID
    assert any("overrides" in warning for warning in loaded.warnings)


def test_short_uuids_and_data_dir_profile_load(user_dirs: Path) -> None:
    _write_profile(
        user_dirs / "data" / "nuslink" / "profiles" / "ffe0.yml",
        """
id: hm10
name: HM-10 style module
gatt:
  service_uuid: "FFE0"
  write_char_uuid: "ffe1"
  notify_char_uuid: "0000ffe2"
central:
  connect_retry_delay_s: 1.5
  stale_after_s: 10
host:
  greeting_delay_s: 0.25
""",
    )

    profile = load_profiles().get("hm10")
    assert profile.layout.service_uuid == "0000ffe0-0000-1000-8000-00805f9b34fb"
    assert profile.layout.write_char_uuid == "0000ffe1-0000-1000-8000-00805f9b34fb"
    assert profile.layout.notify_char_uuid == "0000ffe2-0000-1000-8000-00805f9b34fb"
    assert profile.connect_retry_delay_s == 1.5
    assert profile.stale_after_s == 10.0
    assert profile.greeting_delay_s == 0.25


def test_yaml_booleans_stay_strings(user_dirs: Path) -> None:
    _write_profile(
        user_dirs / "cfg" / "nuslink" / "profiles" / "yes.yaml",
        """
id: yes_name
name: Yes Name
gatt:
  service_uuid: "ffe0"
  write_char_uuid: "ffe1"
  notify_char_uuid: "ffe2"
host:
  local_name: yes
""",
    )

    assert load_profiles().get("yes_name").local_name == "yes"


def test_missing_gatt_rejected(user_dirs: Path) -> None:
    _write_profile(
        user_dirs / "cfg" / "nuslink" / "profiles" / "missing.yaml",
        """
id: missing
name: Missing
""",
    )

    with pytest.raises(ProfileValidationError):
        load_profiles()


def test_invalid_uuid_rejected(user_dirs: Path) -> None:
    _write_profile(
        user_dirs / "cfg" / "nuslink" / "profiles" / "bad.yaml",
        """
id: bad_uuid
name: Bad UUID
gatt:
  service_uuid: "not-a-uuid"
  write_char_uuid: "ffe1"
  notify_char_uuid: "ffe2"
""",
    )

    with pytest.raises(ProfileValidationError):
        load_profiles()


def test_same_write_and_notify_characteristic_rejected(user_dirs: Path) -> None:
    _write_profile(
        user_dirs / "cfg" / "nuslink" / "profiles" / "same.yaml",
        """
id: same
name: Same Characteristic
gatt:
  service_uuid: "ffe0"
  write_char_uuid: "ffe1"
  notify_char_uuid: "FFE1"
""",
    )

    with pytest.raises(ProfileValidationError):
        load_profiles()


def test_unknown_keys_rejected(user_dirs: Path) -> None:
    _write_profile(
        user_dirs / "cfg" / "nuslink" / "profiles" / "extra.yaml",
        """
id: extra
name: Extra
gatt:
  service_uuid: "ffe0"
  write_char_uuid: "ffe1"
  notify_char_uuid: "ffe2"
  mtu: 247
""",
    )

    with pytest.raises(ProfileValidationError):
        load_profiles()


def test_duplicate_yaml_keys_rejected(user_dirs: Path) -> None:
    _write_profile(
        user_dirs / "cfg" / "nuslink" / "profiles" / "dup.yaml",
        """
id: dup
name: Duplicate
gatt:
  service_uuid: "ffe0"
  write_char_uuid: "ffe1"
  write_char_uuid: "ffe3"
  notify_char_uuid: "ffe2"
""",
    )

    with pytest.raises(ProfileValidationError):
        load_profiles()

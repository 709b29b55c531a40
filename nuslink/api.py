"""Stable public API for building tooling on top of nuslink.

This module is the supported integration surface for third-party callers.
The state machines and codec are exported for callers that drive their own
event loop; ``Client`` wraps the blocking one-shot operations.
"""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path

from nuslink.core.central import CentralSession
from nuslink.core.codec import LineCodec, encode_image_lines
from nuslink.core.errors import (
    DeviceSelectionError,
    NuslinkError,
    ProfileLoadError,
    ProfileResolutionError,
    ProfileValidationError,
    TransportConnectError,
    TransportError,
    TransportSendError,
    TransportTimeoutError,
)
from nuslink.core.model import (
    ConnectionState,
    Device,
    FetchedImage,
    GattLayout,
    ImageCompleted,
    ImageFailed,
    ImageProgress,
    ImageStarted,
    PeripheralState,
    PowerState,
    Profile,
    RegularMessage,
    SendResult,
    SessionDetail,
)
from nuslink.core.peripheral import NotifyQueue, PeripheralHost
from nuslink.core.registry import DeviceRegistry
from nuslink.core.service import LinkService
from nuslink.transports.base import CentralAdapter, PeripheralAdapter

__all__ = [
    "NuslinkError",
    "DeviceSelectionError",
    "ProfileLoadError",
    "ProfileResolutionError",
    "ProfileValidationError",
    "TransportError",
    "TransportConnectError",
    "TransportSendError",
    "TransportTimeoutError",
    "ConnectionState",
    "Device",
    "FetchedImage",
    "GattLayout",
    "ImageCompleted",
    "ImageFailed",
    "ImageProgress",
    "ImageStarted",
    "PeripheralState",
    "PowerState",
    "Profile",
    "RegularMessage",
    "SendResult",
    "SessionDetail",
    "CentralAdapter",
    "PeripheralAdapter",
    "CentralSession",
    "PeripheralHost",
    "NotifyQueue",
    "DeviceRegistry",
    "LineCodec",
    "encode_image_lines",
    "Client",
]


class Client:
    """Public client for interacting with nuslink core capabilities.

    A `Client` instance wraps profile loading, device resolution, and the
    central and peripheral roles behind blocking calls intended for scripts
    and third-party tools.
    """

    def __init__(
        self,
        *,
        central_adapter_factory: Callable[[], CentralAdapter] | None = None,
        peripheral_adapter_factory: Callable[[], PeripheralAdapter] | None = None,
    ) -> None:
        self._service = LinkService(
            central_adapter_factory=central_adapter_factory,
            peripheral_adapter_factory=peripheral_adapter_factory,
        )

    @property
    def load_warnings(self) -> tuple[str, ...]:
        return self._service.load_warnings

    def list_profiles(self) -> list[Profile]:
        return self._service.list_profiles()

    def get_profile(self, profile_id: str | None = None) -> Profile:
        return self._service.profile(profile_id)

    def scan(self, *, seconds: float = 5.0, profile_id: str | None = None) -> list[Device]:
        return self._service.scan(seconds, profile_id=profile_id)

    def send_text(
        self,
        device_hint: str,
        text: str,
        *,
        profile_id: str | None = None,
        timeout_s: float = 15.0,
    ) -> SendResult:
        return self._service.send_text(device_hint, text, profile_id=profile_id, timeout_s=timeout_s)

    def set_toggle(
        self,
        device_hint: str,
        on: bool,
        *,
        profile_id: str | None = None,
        timeout_s: float = 15.0,
    ) -> SendResult:
        return self._service.toggle(device_hint, on, profile_id=profile_id, timeout_s=timeout_s)

    def fetch_image(
        self,
        device_hint: str,
        out_dir: Path,
        *,
        profile_id: str | None = None,
        timeout_s: float = 60.0,
        on_progress: Callable[[ImageProgress], None] | None = None,
    ) -> FetchedImage:
        return self._service.fetch_image(
            device_hint,
            out_dir,
            profile_id=profile_id,
            timeout_s=timeout_s,
            on_progress=on_progress,
        )

    def host(
        self,
        *,
        image: Path | None = None,
        local_name: str | None = None,
        profile_id: str | None = None,
        duration_s: float | None = None,
        on_message: Callable[[str], None] | None = None,
        on_toggle: Callable[[bool], None] | None = None,
        on_state: Callable[[PeripheralState], None] | None = None,
    ) -> None:
        self._service.host(
            image=image,
            local_name=local_name,
            profile_id=profile_id,
            duration_s=duration_s,
            on_message=on_message,
            on_toggle=on_toggle,
            on_state=on_state,
        )

"""Service layer used by CLI and API callers.

Each operation runs one asyncio loop that owns a state machine and its
platform adapter for the duration of the call.
"""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Callable, Sequence
from pathlib import Path
from typing import Any, TypeVar

from nuslink.core.central import CentralSession
from nuslink.core.channel import EventChannel
from nuslink.core.codec import IMG_ERROR
from nuslink.core.errors import (
    DeviceSelectionError,
    TransportConnectError,
    TransportSendError,
    TransportTimeoutError,
)
from nuslink.core.model import (
    ConnectionKind,
    ConnectionState,
    Device,
    FetchedImage,
    ImageCompleted,
    ImageFailed,
    ImageProgress,
    PeripheralState,
    Profile,
    ProtocolEvent,
    RegularMessage,
    SendResult,
    SessionDetail,
)
from nuslink.core.peripheral import PeripheralHost
from nuslink.core.profile_loader import load_profiles
from nuslink.core.scheduler import AsyncioScheduler
from nuslink.transports.base import CentralAdapter, PeripheralAdapter
from nuslink.transports.ble_gatt import BleakCentralAdapter
from nuslink.transports.bless_gatt import BlessPeripheralAdapter

_IDENTIFIER_RE = re.compile(
    r"^(?:[0-9a-f]{2}(?::[0-9a-f]{2}){5}|[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12})$",
    re.IGNORECASE,
)
T = TypeVar("T")
LOGGER = logging.getLogger(__name__)


class LinkService:
    def __init__(
        self,
        *,
        central_adapter_factory: Callable[[], CentralAdapter] | None = None,
        peripheral_adapter_factory: Callable[[], PeripheralAdapter] | None = None,
    ) -> None:
        loaded = load_profiles()
        self.profiles = loaded.profiles
        self.load_warnings = loaded.warnings
        self._loaded = loaded
        self._central_adapter_factory = central_adapter_factory or BleakCentralAdapter
        self._peripheral_adapter_factory = peripheral_adapter_factory or BlessPeripheralAdapter

    def list_profiles(self) -> list[Profile]:
        return sorted(self.profiles.values(), key=lambda p: p.id)

    def profile(self, profile_id: str | None = None) -> Profile:
        return self._loaded.get(profile_id)

    def scan(self, seconds: float = 5.0, profile_id: str | None = None) -> list[Device]:
        profile = self.profile(profile_id)
        return asyncio.run(self._scan(profile, seconds))

    def send_text(
        self,
        device_hint: str,
        text: str,
        *,
        profile_id: str | None = None,
        timeout_s: float = 15.0,
    ) -> SendResult:
        profile = self.profile(profile_id)
        lines = tuple(line for line in text.splitlines() if line.strip()) or (text,)
        return asyncio.run(self._send(profile, device_hint, lines, timeout_s))

    def toggle(
        self,
        device_hint: str,
        on: bool,
        *,
        profile_id: str | None = None,
        timeout_s: float = 15.0,
    ) -> SendResult:
        profile = self.profile(profile_id)
        return asyncio.run(self._send(profile, device_hint, ("ON" if on else "OFF",), timeout_s))

    def fetch_image(
        self,
        device_hint: str,
        out_dir: Path,
        *,
        profile_id: str | None = None,
        timeout_s: float = 60.0,
        on_progress: Callable[[ImageProgress], None] | None = None,
    ) -> FetchedImage:
        profile = self.profile(profile_id)
        return asyncio.run(self._fetch_image(profile, device_hint, out_dir, timeout_s, on_progress))

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
        """Advertise and serve the profile until duration_s elapses or the caller interrupts."""
        profile = self.profile(profile_id)
        asyncio.run(
            self._host(
                profile,
                image=image,
                local_name=local_name,
                duration_s=duration_s,
                on_message=on_message,
                on_toggle=on_toggle,
                on_state=on_state,
            )
        )

    # Central operations

    def _open_session(self, profile: Profile) -> tuple[CentralSession, CentralAdapter]:
        adapter = self._central_adapter_factory()
        session = CentralSession.from_profile(profile, adapter, AsyncioScheduler())
        return session, adapter

    async def _scan(self, profile: Profile, seconds: float) -> list[Device]:
        session, adapter = self._open_session(profile)
        try:
            session.set_scanning_enabled(True)
            await asyncio.sleep(seconds)
            session.refresh_devices()
            return list(session.devices.value)
        finally:
            session.set_scanning_enabled(False)
            await _close(adapter)

    async def _send(
        self,
        profile: Profile,
        device_hint: str,
        lines: Sequence[str],
        timeout_s: float,
    ) -> SendResult:
        session, adapter = self._open_session(profile)
        try:
            device = await _connect(session, device_hint, timeout_s)
            for line in lines:
                if not session.send_text(line):
                    raise TransportSendError(f"Could not write to {device.id}")
            await _drain(adapter)
            return SendResult(device=device, lines=tuple(lines))
        finally:
            session.disconnect()
            await _close(adapter)

    async def _fetch_image(
        self,
        profile: Profile,
        device_hint: str,
        out_dir: Path,
        timeout_s: float,
        on_progress: Callable[[ImageProgress], None] | None,
    ) -> FetchedImage:
        session, adapter = self._open_session(profile)
        try:
            device = await _connect(session, device_hint, timeout_s)
            transfer = _await_image(session.protocol_events, on_progress)
            if not session.request_image():
                raise TransportSendError(f"Could not write to {device.id}")
            completed = await _with_timeout(transfer, timeout_s, "image transfer")
        finally:
            session.disconnect()
            await _close(adapter)

        out_dir.mkdir(parents=True, exist_ok=True)
        # Remote names are untrusted, keep only the final component.
        filename = Path(completed.filename).name or "image.png"
        path = out_dir / filename
        path.write_bytes(completed.data)
        LOGGER.info("Saved %s (%d bytes)", path, len(completed.data))
        return FetchedImage(device=device, filename=filename, path=path, size_bytes=len(completed.data))

    # Peripheral operation

    async def _host(
        self,
        profile: Profile,
        *,
        image: Path | None,
        local_name: str | None,
        duration_s: float | None,
        on_message: Callable[[str], None] | None,
        on_toggle: Callable[[bool], None] | None,
        on_state: Callable[[PeripheralState], None] | None,
    ) -> None:
        adapter = self._peripheral_adapter_factory()
        host = PeripheralHost.from_profile(profile, adapter, AsyncioScheduler(), local_name=local_name)
        host.select_image(image)
        if on_message is not None:
            host.inbound_messages.subscribe(on_message)
        if on_toggle is not None:
            host.remote_toggle.subscribe(on_toggle)
        if on_state is not None:
            host.state.subscribe(on_state)

        host.start_hosting()
        try:
            if duration_s is None:
                await asyncio.Event().wait()
            else:
                await asyncio.sleep(duration_s)
        finally:
            host.stop_hosting()
            await _close(adapter)


def match_devices(devices: Sequence[Device], hint: str) -> list[Device]:
    lowered = hint.lower()
    exact = [d for d in devices if d.id.lower() == lowered or d.name.lower() == lowered]
    if exact:
        return exact
    return [d for d in devices if lowered in d.name.lower() or lowered in d.id.lower()]


async def _connect(session: CentralSession, device_hint: str, timeout_s: float) -> Device:
    if _IDENTIFIER_RE.match(device_hint):
        target: Device | str = device_hint.upper()
    else:
        session.set_scanning_enabled(True)
        await _wait_for(
            session.devices,
            lambda found: bool(match_devices(found, device_hint)),
            timeout_s,
            f"a device matching '{device_hint}'",
        )
        candidates = match_devices(session.devices.value, device_hint)
        if len(candidates) > 1:
            candidate_desc = ", ".join(f"{d.id} ({d.name})" for d in candidates)
            raise DeviceSelectionError(
                f"Multiple candidate devices found: {candidate_desc}. Use the identifier to choose one."
            )
        target = candidates[0]

    loop = asyncio.get_running_loop()
    ready: asyncio.Future[Device] = loop.create_future()

    def _on_state(state: ConnectionState) -> None:
        if ready.done():
            return
        if state.kind == ConnectionKind.FAILED:
            ready.set_exception(TransportConnectError(state.reason or "Failed to connect"))
        elif state.kind == ConnectionKind.DISCONNECTED:
            ready.set_exception(TransportConnectError(state.reason or "Disconnected before the link was ready"))

    def _on_detail(detail: SessionDetail | None) -> None:
        if not ready.done() and detail is not None and detail.write_char_uuid:
            ready.set_result(detail.device)

    unsubscribers = [session.connection_state.subscribe(_on_state), session.session_detail.subscribe(_on_detail)]
    try:
        session.connect(target)
        device = await _with_timeout(ready, timeout_s, "the connection")
    finally:
        for unsubscribe in unsubscribers:
            unsubscribe()
    LOGGER.info("Link to %s (%s) ready", device.name, device.id)
    return device


def _await_image(
    events: EventChannel[ProtocolEvent],
    on_progress: Callable[[ImageProgress], None] | None,
) -> asyncio.Future[ImageCompleted]:
    future: asyncio.Future[ImageCompleted] = asyncio.get_running_loop().create_future()

    def _on_event(event: ProtocolEvent) -> None:
        if future.done():
            return
        if isinstance(event, ImageProgress) and on_progress is not None:
            on_progress(event)
        elif isinstance(event, ImageCompleted):
            future.set_result(event)
        elif isinstance(event, ImageFailed):
            future.set_exception(TransportSendError(f"Image transfer failed: {event.reason}"))
        elif isinstance(event, RegularMessage) and event.line.startswith(IMG_ERROR):
            reason = event.line[len(IMG_ERROR):].strip() or "unknown"
            future.set_exception(TransportSendError(f"Peer reported an image error: {reason}"))

    unsubscribe = events.subscribe(_on_event)
    future.add_done_callback(lambda _: unsubscribe())
    return future


async def _wait_for(channel: Any, predicate: Callable[[T], bool], timeout_s: float, what: str) -> T:
    future: asyncio.Future[T] = asyncio.get_running_loop().create_future()

    def _on_value(value: T) -> None:
        if not future.done() and predicate(value):
            future.set_result(value)

    unsubscribe = channel.subscribe(_on_value)
    try:
        return await _with_timeout(future, timeout_s, what)
    finally:
        unsubscribe()


async def _with_timeout(future: asyncio.Future[T], timeout_s: float, what: str) -> T:
    try:
        return await asyncio.wait_for(future, timeout_s)
    except asyncio.TimeoutError as exc:
        raise TransportTimeoutError(f"Timed out after {timeout_s:g}s waiting for {what}") from exc


async def _drain(adapter: Any) -> None:
    drain = getattr(adapter, "drain", None)
    if drain is not None:
        await drain()


async def _close(adapter: Any) -> None:
    close = getattr(adapter, "close", None)
    if close is not None:
        await close()

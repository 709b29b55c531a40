"""Typer CLI entrypoint."""

from __future__ import annotations

import logging
from pathlib import Path

import typer

from nuslink.core.errors import NuslinkError
from nuslink.core.model import ImageProgress, PeripheralState
from nuslink.core.service import LinkService

app = typer.Typer(help="Text and image exchange over the Nordic UART BLE service")


def _build_service() -> LinkService:
    service = LinkService()
    for warning in getattr(service, "load_warnings", ()):
        typer.echo(f"Warning: {warning}", err=True)
    return service


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """Talk to NUS peripherals or host one."""
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )


@app.command("profiles")
def list_profiles() -> None:
    """List available profiles and their GATT layout."""
    try:
        service = _build_service()
        profiles = service.list_profiles()
        if not profiles:
            typer.echo("No profiles loaded")
            raise typer.Exit(code=1)

        for profile in profiles:
            typer.echo(f"{profile.id}: {profile.name}")
            typer.echo(f"  service: {profile.layout.service_uuid}")
            typer.echo(f"  write:   {profile.layout.write_char_uuid}")
            typer.echo(f"  notify:  {profile.layout.notify_char_uuid}")
            typer.echo(f"  host name: {profile.local_name}")
    except NuslinkError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None


@app.command("scan")
def scan(
    seconds: float = typer.Option(5.0, "--seconds", min=0.5, help="Scan duration"),
    profile: str | None = typer.Option(None, "--profile", help="Profile ID"),
) -> None:
    """Scan for advertising peripherals, strongest first."""
    try:
        service = _build_service()
        devices = service.scan(seconds, profile_id=profile)
        if not devices:
            typer.echo("No peripherals found")
            return

        service_uuid = service.profile(profile).layout.service_uuid
        for device in devices:
            marker = " *" if device.preferred_service_uuid == service_uuid else ""
            typer.echo(f"{device.id} {device.rssi:>4} dBm {device.name}{marker}")
    except NuslinkError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None


@app.command("send")
def send(
    device: str = typer.Argument(..., help="Identifier or partial name"),
    text: str = typer.Argument(..., help="Text to send, one write per line"),
    profile: str | None = typer.Option(None, "--profile", help="Profile ID"),
    timeout: float = typer.Option(15.0, "--timeout", help="Seconds to wait for the link"),
) -> None:
    """Connect to DEVICE and send TEXT."""
    try:
        service = _build_service()
        result = service.send_text(device, text, profile_id=profile, timeout_s=timeout)
        typer.echo(f"Sent {len(result.lines)} line(s) to {result.device.id} ({result.device.name})")
    except NuslinkError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None


@app.command("toggle")
def toggle(
    device: str = typer.Argument(..., help="Identifier or partial name"),
    state: str = typer.Argument(..., help="on or off"),
    profile: str | None = typer.Option(None, "--profile", help="Profile ID"),
    timeout: float = typer.Option(15.0, "--timeout", help="Seconds to wait for the link"),
) -> None:
    """Switch the remote toggle of DEVICE on or off."""
    normalized = state.strip().lower()
    if normalized not in {"on", "off"}:
        typer.echo(f"Error: toggle state must be 'on' or 'off', got '{state}'", err=True)
        raise typer.Exit(code=1)
    try:
        service = _build_service()
        result = service.toggle(device, normalized == "on", profile_id=profile, timeout_s=timeout)
        typer.echo(f"Sent {result.lines[0]} to {result.device.id} ({result.device.name})")
    except NuslinkError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None


@app.command("get-image")
def get_image(
    device: str = typer.Argument(..., help="Identifier or partial name"),
    out: Path = typer.Option(Path("."), "--out", help="Directory for the received file"),
    profile: str | None = typer.Option(None, "--profile", help="Profile ID"),
    timeout: float = typer.Option(60.0, "--timeout", help="Seconds to wait for the transfer"),
) -> None:
    """Request the image DEVICE is sharing and save it."""

    def _progress(event: ImageProgress) -> None:
        typer.echo(f"\r{event.fraction:6.1%}", nl=False, err=True)

    try:
        service = _build_service()
        fetched = service.fetch_image(device, out, profile_id=profile, timeout_s=timeout, on_progress=_progress)
        typer.echo("", err=True)
        typer.echo(f"Saved {fetched.path} ({fetched.size_bytes} bytes) from {fetched.device.id}")
    except NuslinkError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None


@app.command("host")
def host(
    image: Path | None = typer.Option(None, "--image", exists=True, dir_okay=False, help="PNG served on GET"),
    name: str | None = typer.Option(None, "--name", help="Advertised local name"),
    profile: str | None = typer.Option(None, "--profile", help="Profile ID"),
    duration: float | None = typer.Option(None, "--duration", help="Stop after this many seconds"),
) -> None:
    """Advertise the service and print what centrals send until interrupted."""

    def _on_state(state: PeripheralState) -> None:
        typer.echo(f"[state] {state}")

    def _on_toggle(on: bool) -> None:
        typer.echo(f"[toggle] {'on' if on else 'off'}")

    try:
        service = _build_service()
        service.host(
            image=image,
            local_name=name,
            profile_id=profile,
            duration_s=duration,
            on_message=typer.echo,
            on_toggle=_on_toggle,
            on_state=_on_state,
        )
    except KeyboardInterrupt:
        typer.echo("Stopped hosting")
    except NuslinkError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None


def run() -> None:
    app()


if __name__ == "__main__":
    run()

"""Typer CLI entrypoint."""

from __future__ import annotations

import logging
from typing import Any

import typer

from picoforge.core.constraints import coerce_setting
from picoforge.core.errors import CommitError, LockFailedError, PicoforgeError, ValidationError
from picoforge.core.model import CommitReport, ConfigSnapshot, LockKind, LockState, SecureBootStatus
from picoforge.core.phy import SETTING_TAGS
from picoforge.core.service import CommissioningService, DeviceHandle

app = typer.Typer(help="Commission Pico FIDO security keys over PC/SC")

_READER_HELP = "Reader id or partial name"
_FORCE_HELP = "Take over a reader another session holds"


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log protocol traffic to stderr"),
) -> None:
    if verbose:
        logging.basicConfig(level=logging.DEBUG, format="%(levelname)s %(name)s: %(message)s")


def _build_service() -> CommissioningService:
    service = CommissioningService()
    for warning in getattr(service, "load_warnings", ()):
        typer.echo(f"Warning: {warning}", err=True)
    return service


def _open(service: CommissioningService, reader: str | None, force: bool) -> DeviceHandle:
    handle = service.open_device(reader, force=force)
    if handle.unknown_variant is not None:
        typer.echo(f"Warning: {handle.unknown_variant}; using read-only generic profile", err=True)
    return handle


def _format_value(name: str, value: Any) -> str:
    if value is None:
        return "<unset>"
    if name in {"vid", "pid"}:
        return f"{value:04X}"
    if isinstance(value, bool):
        return "on" if value else "off"
    return str(value)


def _format_secure(status: SecureBootStatus) -> str:
    if not status.supported:
        return "not supported"
    enabled = "enabled" if status.enabled else "disabled"
    locked = "locked" if status.locked else "unlocked"
    return f"{enabled}, firmware {locked}"


def _echo_report(report: CommitReport, *, err: bool = False) -> None:
    for label, names in (
        ("applied", report.applied),
        ("skipped (unchanged)", report.skipped),
        ("rolled back", report.rolled_back),
        ("rollback failed", report.rollback_failures),
        ("in doubt", report.in_doubt),
    ):
        if names:
            typer.echo(f"  {label}: {', '.join(names)}", err=err)


def _echo_config(snapshot: ConfigSnapshot) -> None:
    for name in SETTING_TAGS:
        typer.echo(f"  {name}: {_format_value(name, snapshot.value(name))}")
    typer.echo(f"  secure_boot: {_format_secure(snapshot.secure_boot)}")


@app.command("profiles")
def list_profiles() -> None:
    """List available variant profiles and the settings they allow."""
    try:
        service = _build_service()
        profiles = service.list_profiles()
        if not profiles:
            typer.echo("No profiles loaded")
            raise typer.Exit(code=1)

        for profile in profiles:
            typer.echo(f"{profile.id}: {profile.name}")
            typer.echo(f"  commands: {', '.join(sorted(profile.commands))}")
            for name, spec in sorted(profile.settings.items()):
                if spec.choices:
                    allowed = ", ".join(str(c) for c in spec.choices)
                elif spec.type == "int":
                    allowed = f"{spec.minimum}..{spec.maximum}"
                elif spec.type == "str":
                    allowed = f"up to {spec.max_length} bytes"
                else:
                    allowed = "on, off"
                typer.echo(f"  {name}: {allowed}")
    except PicoforgeError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None


@app.command("readers")
def list_readers() -> None:
    """List smart-card reader slots currently visible."""
    try:
        service = _build_service()
        slots = service.list_slots()
        if not slots:
            typer.echo("No smart-card readers found")
            return

        for slot in slots:
            busy = " [in use]" if slot.in_use else ""
            typer.echo(f"{slot.id}{busy}")
    except PicoforgeError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None


@app.command("info")
def show_info(
    reader: str | None = typer.Option(None, "--reader", help=_READER_HELP),
    force: bool = typer.Option(False, "--force", help=_FORCE_HELP),
) -> None:
    """Show identity, firmware and flash usage of the attached device."""
    try:
        service = _build_service()
        with _open(service, reader, force) as handle:
            info = handle.read_device_info()
            typer.echo(f"Reader: {handle.slot.name}")
            typer.echo(f"Profile: {handle.profile.id} ({handle.profile.name})")
            typer.echo(f"Serial: {info.serial}")
            typer.echo(f"Firmware: {info.firmware_version}")
            typer.echo(f"Variant: {info.variant_id}")
            typer.echo(f"USB ID: {_format_value('vid', info.vid)}:{_format_value('pid', info.pid)}")
            if info.flash_total_kb is not None:
                typer.echo(f"Flash: {info.flash_used_kb} / {info.flash_total_kb} KiB used")
    except PicoforgeError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None


@app.command("config")
def show_config(
    reader: str | None = typer.Option(None, "--reader", help=_READER_HELP),
    force: bool = typer.Option(False, "--force", help=_FORCE_HELP),
) -> None:
    """Print the device's current configuration."""
    try:
        service = _build_service()
        with _open(service, reader, force) as handle:
            snapshot = handle.read_config()
            typer.echo(f"Configuration of {handle.slot.name} ({handle.profile.id}):")
            _echo_config(snapshot)
    except PicoforgeError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None


@app.command("set")
def set_settings(
    assignments: list[str] = typer.Argument(..., help="One or more FIELD=VALUE pairs"),
    reader: str | None = typer.Option(None, "--reader", help=_READER_HELP),
    force: bool = typer.Option(False, "--force", help=_FORCE_HELP),
) -> None:
    """Stage FIELD=VALUE changes and commit them in one transaction.

    VID and PID are hexadecimal; booleans accept on/off, true/false, yes/no.
    """
    try:
        pairs: list[tuple[str, str]] = []
        for item in assignments:
            name, sep, text = item.partition("=")
            if not sep or not name.strip():
                raise ValidationError(f"Expected FIELD=VALUE, got '{item}'")
            pairs.append((name.strip(), text))

        service = _build_service()
        with _open(service, reader, force) as handle:
            transaction = handle.begin_transaction()
            for name, text in pairs:
                transaction.stage(name, coerce_setting(handle.profile, name, text))
            report = transaction.commit()
            typer.echo(f"Committed to {handle.slot.name}")
            _echo_report(report)
            if not report.applied:
                typer.echo("  device already had the requested values")
    except CommitError as exc:
        typer.echo(f"Error: {exc}", err=True)
        _echo_report(exc.report, err=True)
        if not exc.report.consistent:
            typer.echo("Device state may differ from before the commit; run 'picoforge config'.", err=True)
        raise typer.Exit(code=1) from None
    except PicoforgeError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None


@app.command("lock")
def lock(
    kind: LockKind = typer.Argument(..., help="What to lock"),
    reader: str | None = typer.Option(None, "--reader", help=_READER_HELP),
    force: bool = typer.Option(False, "--force", help=_FORCE_HELP),
    yes: bool = typer.Option(False, "--yes", help="Skip the typed confirmation"),
) -> None:
    """Irreversibly enable secure boot or lock the firmware.

    This can never be undone. The command shows the current state and asks
    you to type the lock name before anything is sent.
    """
    try:
        service = _build_service()
        with _open(service, reader, force) as handle:
            state = handle.lock_state(kind)
            typer.echo(f"{kind.value} lock on {handle.slot.name}: {state.value}")
            if state is LockState.LOCKED:
                return

            token = handle.request_irreversible_lock(kind)
            typer.echo(f"WARNING: {kind.value} lock is permanent and cannot be reverted.")
            if not yes:
                typed = typer.prompt(f"Type '{kind.value}' to confirm", default="", show_default=False)
                if typed.strip() != kind.value:
                    typer.echo("Aborted; nothing was sent.")
                    raise typer.Exit(code=1)

            outcome = handle.confirm_irreversible_lock(token)
            typer.echo(f"{kind.value} lock: {outcome.state.value} ({_format_secure(outcome.status)})")
    except LockFailedError as exc:
        typer.echo(f"Error: {exc}", err=True)
        observed = "unknown" if exc.observed is None else _format_secure(exc.observed)
        typer.echo(f"Device reports: {observed}", err=True)
        raise typer.Exit(code=1) from None
    except PicoforgeError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None


def run() -> None:
    app()


if __name__ == "__main__":
    run()

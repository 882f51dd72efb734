from __future__ import annotations

import threading
from dataclasses import replace

import pytest

from picoforge.core import codec
from picoforge.core.driver import CommandDriver
from picoforge.core.errors import LockFailedError, LockTokenError, TransportBusyError, ValidationError
from picoforge.core.manager import ConfigurationManager
from picoforge.core.model import EventKind, LockKind, LockState


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def test_secure_boot_lock_round_trip(manager, device, diagnostics) -> None:
    events = diagnostics.subscribe()
    assert manager.lock_state(LockKind.SECURE_BOOT) is LockState.UNLOCKED

    token = manager.request_irreversible_lock(LockKind.SECURE_BOOT)
    assert manager.lock_state(LockKind.SECURE_BOOT) is LockState.PENDING_CONFIRMATION
    assert device.secure_commands == []

    outcome = manager.confirm_irreversible_lock(token)
    assert outcome.state is LockState.LOCKED
    assert outcome.status.enabled
    assert device.secure_commands == [bytes.fromhex("801D000000")]
    assert manager.lock_state(LockKind.SECURE_BOOT) is LockState.LOCKED

    transitions = [e.data.get("state") for e in events.drain() if e.kind is EventKind.STATE_TRANSITION]
    assert transitions == ["pending-confirmation", "locked"]


def test_firmware_lock_sets_lock_flag(manager, device) -> None:
    token = manager.request_irreversible_lock(LockKind.FIRMWARE)
    outcome = manager.confirm_irreversible_lock(token)
    assert outcome.status.locked
    assert device.secure_commands == [bytes.fromhex("801D000100")]


def test_stale_token_after_config_change_sends_no_lock(manager, device) -> None:
    token = manager.request_irreversible_lock(LockKind.SECURE_BOOT)
    device.phy[0x05] = bytes([1])

    with pytest.raises(LockTokenError):
        manager.confirm_irreversible_lock(token)
    assert device.secure_commands == []
    assert not device.secure_enabled


def test_confirm_keeps_other_writers_out_until_locked(manager, device, monkeypatch) -> None:
    token = manager.request_irreversible_lock(LockKind.SECURE_BOOT)
    driver = manager.driver
    real_read, real_write = driver.read_config, driver.write_tags
    refused: list[TransportBusyError] = []

    def intruder() -> None:
        try:
            real_write({0x05: b"\x07"})
        except TransportBusyError as exc:
            refused.append(exc)

    def read_then_intrude():
        snapshot = real_read()
        worker = threading.Thread(target=intruder)
        worker.start()
        worker.join()
        return snapshot

    monkeypatch.setattr(driver, "read_config", read_then_intrude)
    outcome = manager.confirm_irreversible_lock(token)

    assert outcome.state is LockState.LOCKED
    assert len(refused) == 1
    assert device.writes == []
    assert device.phy[0x05] == bytes([15])


def test_confirm_on_busy_session_keeps_token(manager, device, session) -> None:
    token = manager.request_irreversible_lock(LockKind.FIRMWARE)
    refused: list[TransportBusyError] = []

    def confirm_elsewhere() -> None:
        try:
            manager.confirm_irreversible_lock(token)
        except TransportBusyError as exc:
            refused.append(exc)

    with session.reserve():
        worker = threading.Thread(target=confirm_elsewhere)
        worker.start()
        worker.join()

    assert len(refused) == 1
    assert device.secure_commands == []
    assert manager.confirm_irreversible_lock(token).status.locked



def test_expired_token_sends_no_lock(driver, device) -> None:
    clock = FakeClock()
    manager = ConfigurationManager(driver, lock_token_ttl_s=60.0, clock=clock)
    token = manager.request_irreversible_lock(LockKind.SECURE_BOOT)

    clock.now += 61.0
    assert manager.lock_state(LockKind.SECURE_BOOT) is LockState.UNLOCKED
    with pytest.raises(LockTokenError, match="expired"):
        manager.confirm_irreversible_lock(token)
    assert device.secure_commands == []


def test_token_is_single_use(manager, device) -> None:
    device.ignore_lock = True
    token = manager.request_irreversible_lock(LockKind.SECURE_BOOT)
    with pytest.raises(LockFailedError):
        manager.confirm_irreversible_lock(token)

    with pytest.raises(LockTokenError):
        manager.confirm_irreversible_lock(token)
    assert len(device.secure_commands) == 1


def test_forged_token_rejected(manager, device) -> None:
    token = manager.request_irreversible_lock(LockKind.SECURE_BOOT)
    with pytest.raises(LockTokenError):
        manager.confirm_irreversible_lock(replace(token, nonce="00" * 16))
    assert device.secure_commands == []


def test_token_without_request_rejected(manager, device) -> None:
    token = manager.request_irreversible_lock(LockKind.SECURE_BOOT)
    other = replace(token, kind=LockKind.FIRMWARE)
    with pytest.raises(LockTokenError):
        manager.confirm_irreversible_lock(other)
    assert device.secure_commands == []


def test_unsupported_variant_cannot_request_lock(session, profiles) -> None:
    manager = ConfigurationManager(CommandDriver(session, profiles["pico_fido_rp2040"]))
    with pytest.raises(ValidationError):
        manager.request_irreversible_lock(LockKind.SECURE_BOOT)


def test_already_locked_cannot_request_again(manager, device) -> None:
    device.secure_enabled = True
    assert manager.lock_state(LockKind.SECURE_BOOT) is LockState.LOCKED
    with pytest.raises(ValidationError):
        manager.request_irreversible_lock(LockKind.SECURE_BOOT)


def test_lock_not_reflected_by_device_fails(manager, device) -> None:
    device.ignore_lock = True
    token = manager.request_irreversible_lock(LockKind.SECURE_BOOT)
    with pytest.raises(LockFailedError) as excinfo:
        manager.confirm_irreversible_lock(token)
    assert excinfo.value.observed is not None
    assert not excinfo.value.observed.enabled


def test_lock_rejected_by_device_reports_observed_state(manager, device) -> None:
    device.status_overrides[codec.INS_SECURE] = 0x6985
    token = manager.request_irreversible_lock(LockKind.FIRMWARE)
    with pytest.raises(LockFailedError) as excinfo:
        manager.confirm_irreversible_lock(token)
    assert excinfo.value.observed.locked is False

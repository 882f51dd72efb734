from __future__ import annotations

import threading
from dataclasses import fields

import pytest

from picoforge.core import codec
from picoforge.core.driver import CommandDriver
from picoforge.core.errors import (
    CommitCancelledError,
    CommitError,
    DeviceError,
    TransactionStateError,
    TransportBusyError,
    ValidationError,
)
from picoforge.core.manager import ConfigurationManager
from picoforge.core.transaction import TransactionState


def _writes(device) -> list[bytes]:
    return [apdu for apdu in device.apdus if apdu[1] == codec.INS_WRITE]


def test_single_field_commit_changes_only_that_field(manager, device) -> None:
    before = manager.read_config()
    transaction = manager.begin()
    transaction.stage("led_brightness", 200)
    report = transaction.commit()

    assert report.applied == ("led_brightness",)
    assert transaction.state is TransactionState.COMMITTED
    assert device.writes == [{0x05: bytes([200])}]

    after = manager.read_config()
    assert after.led_brightness == 200
    for item in fields(before):
        if item.name not in {"led_brightness", "raw_tags"}:
            assert getattr(after, item.name) == getattr(before, item.name), item.name


def test_usb_identity_commit_reads_back(manager) -> None:
    transaction = manager.begin()
    transaction.stage("vid", 0x1234)
    transaction.stage("pid", 0xABCD)
    transaction.stage("product_name", "Key")
    transaction.commit()

    assert manager.snapshot is None
    snapshot = manager.read_config()
    assert snapshot.vid == 0x1234
    assert snapshot.pid == 0xABCD
    assert snapshot.product_name == "Key"


def test_cross_field_failure_sends_no_writes(manager, device) -> None:
    transaction = manager.begin()
    transaction.stage("vid", 0xFFFF)
    transaction.stage("pid", 0xFFFF)
    transaction.stage("led_brightness", 1)

    with pytest.raises(ValidationError):
        transaction.commit()
    assert transaction.state is TransactionState.FAILED
    assert _writes(device) == []


def test_rejected_stage_keeps_building(manager) -> None:
    transaction = manager.begin()
    with pytest.raises(ValidationError):
        transaction.stage("led_gpio", 200)
    assert transaction.state is TransactionState.BUILDING
    assert dict(transaction.changes) == {}

    transaction.stage("led_gpio", 3)
    transaction.unstage("led_gpio")
    assert dict(transaction.changes) == {}


def test_unchanged_values_are_skipped(manager, device) -> None:
    transaction = manager.begin()
    transaction.stage("led_gpio", 25)
    report = transaction.commit()

    assert report.skipped == ("led_gpio",)
    assert report.applied == ()
    assert _writes(device) == []


def test_failed_write_rolls_back_applied_steps(manager, device) -> None:
    original = dict(device.phy)
    device.fail_on_tags[0x05] = 0x6A80
    transaction = manager.begin()
    transaction.stage("pid", 0xABCD)
    transaction.stage("led_brightness", 99)

    with pytest.raises(CommitError) as excinfo:
        transaction.commit()

    report = excinfo.value.report
    assert report.state == "failed"
    assert report.applied == ("usb_ids",)
    assert report.rolled_back == ("usb_ids",)
    assert report.consistent
    assert device.phy == original
    assert transaction.state is TransactionState.FAILED


def test_disconnect_during_commit_is_reported_in_doubt(manager, device) -> None:
    manager.read_config()
    transaction = manager.begin()
    transaction.stage("product_name", "Changed")
    transaction.stage("led_brightness", 99)
    device.disconnect_after = len(device.apdus) + 1

    with pytest.raises(CommitError) as excinfo:
        transaction.commit()

    report = excinfo.value.report
    assert report.applied == ("product_name",)
    assert report.in_doubt == ("led_brightness",)
    assert report.rollback_failures == ("product_name",)
    assert not report.consistent


def test_cancelled_commit_sends_nothing(manager, device) -> None:
    cancel = threading.Event()
    cancel.set()
    transaction = manager.begin()
    transaction.stage("led_brightness", 42)

    with pytest.raises(CommitCancelledError) as excinfo:
        transaction.commit(cancel)
    assert excinfo.value.report.state == "discarded"
    assert transaction.state is TransactionState.DISCARDED
    assert _writes(device) == []


def test_cancel_after_first_write_rolls_back_and_discards(manager, device, monkeypatch) -> None:
    original = dict(device.phy)
    cancel = threading.Event()
    real_write = manager.driver.write_tags

    def write_then_cancel(params) -> None:
        real_write(params)
        cancel.set()

    monkeypatch.setattr(manager.driver, "write_tags", write_then_cancel)
    transaction = manager.begin()
    transaction.stage("product_name", "Changed")
    transaction.stage("led_brightness", 99)

    with pytest.raises(CommitCancelledError) as excinfo:
        transaction.commit(cancel)

    report = excinfo.value.report
    assert report.state == "discarded"
    assert report.applied == ("product_name",)
    assert report.rolled_back == ("product_name",)
    assert report.consistent
    assert transaction.state is TransactionState.DISCARDED
    assert device.writes[-1] == {0x09: original[0x09]}
    assert device.phy == original


def test_cancel_with_failed_rollback_ends_failed(manager, device, monkeypatch) -> None:
    cancel = threading.Event()
    real_write = manager.driver.write_tags
    calls: list[dict[int, bytes]] = []

    def write_then_cancel(params) -> None:
        calls.append(dict(params))
        if len(calls) > 1:
            raise DeviceError("write config failed", status=0x6581, operation="write config")
        real_write(params)
        cancel.set()

    monkeypatch.setattr(manager.driver, "write_tags", write_then_cancel)
    transaction = manager.begin()
    transaction.stage("product_name", "Changed")
    transaction.stage("led_brightness", 99)

    with pytest.raises(CommitCancelledError) as excinfo:
        transaction.commit(cancel)

    report = excinfo.value.report
    assert report.state == "failed"
    assert report.rolled_back == ()
    assert report.rollback_failures == ("product_name",)
    assert not report.consistent
    assert transaction.state is TransactionState.FAILED
    assert len(calls) == 2


def test_commit_keeps_other_threads_off_the_session(manager, device, monkeypatch) -> None:
    real_write = manager.driver.write_tags
    refused: list[TransportBusyError] = []

    def intruder() -> None:
        try:
            real_write({0x04: bytes([3])})
        except TransportBusyError as exc:
            refused.append(exc)

    def write_then_intrude(params) -> None:
        real_write(params)
        worker = threading.Thread(target=intruder)
        worker.start()
        worker.join()

    monkeypatch.setattr(manager.driver, "write_tags", write_then_intrude)
    transaction = manager.begin()
    transaction.stage("product_name", "Changed")
    transaction.stage("led_brightness", 99)
    report = transaction.commit()

    assert report.applied == ("product_name", "led_brightness")
    assert len(refused) == 2
    assert all(0x04 not in written for written in device.writes)


def test_driver_writes_outside_a_transaction_refresh_the_snapshot(manager, device) -> None:
    manager.read_config()
    manager.driver.set_usb_identity(0x1234, 0xABCD)
    assert manager.snapshot is None

    transaction = manager.begin()
    transaction.stage("vid", 0x2E8A)
    transaction.stage("pid", 0x10FE)
    report = transaction.commit()

    assert report.applied == ("usb_ids",)
    snapshot = manager.read_config()
    assert (snapshot.vid, snapshot.pid) == (0x2E8A, 0x10FE)


def test_commit_on_busy_session_leaves_transaction_building(manager, session) -> None:
    transaction = manager.begin()
    transaction.stage("led_brightness", 42)
    worker_error: list[BaseException] = []

    def commit_elsewhere() -> None:
        try:
            transaction.commit()
        except TransportBusyError as exc:
            worker_error.append(exc)

    with session.reserve():
        worker = threading.Thread(target=commit_elsewhere)
        worker.start()
        worker.join()

    assert len(worker_error) == 1
    assert transaction.state is TransactionState.BUILDING



def test_finished_transaction_rejects_further_use(manager) -> None:
    transaction = manager.begin()
    transaction.stage("led_brightness", 5)
    transaction.commit()

    with pytest.raises(TransactionStateError):
        transaction.stage("led_brightness", 6)
    with pytest.raises(TransactionStateError):
        transaction.commit()


def test_discard_is_idempotent(manager, device) -> None:
    transaction = manager.begin()
    transaction.stage("led_brightness", 5)
    transaction.discard()
    transaction.discard()
    assert transaction.state is TransactionState.DISCARDED
    assert _writes(device) == []


def test_read_only_profile_cannot_stage(session, profiles) -> None:
    manager = ConfigurationManager(CommandDriver(session, profiles["generic"]))
    transaction = manager.begin()
    with pytest.raises(ValidationError):
        transaction.stage("led_brightness", 5)

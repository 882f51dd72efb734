from __future__ import annotations

from conftest import READER, FakePicoDevice, FakeSmartCardService
from picoforge import api
from picoforge.api import Client, EngineConfig, LockKind


def _client(smartcard: FakeSmartCardService) -> Client:
    return Client(smartcard=smartcard, config=EngineConfig())


def test_public_client_list_profiles(smartcard) -> None:
    profiles = _client(smartcard).list_profiles()
    assert profiles
    assert any(p.id == "pico_fido_esp32s3" for p in profiles)


def test_public_client_slots_and_changes(smartcard) -> None:
    client = _client(smartcard)
    before = client.list_slots()
    assert [slot.id for slot in before] == [READER]

    smartcard.devices["Second Reader 01 00"] = FakePicoDevice(mcu=0x03)
    changes = client.slot_changes(before)
    assert [slot.id for slot in changes.added] == ["Second Reader 01 00"]
    assert client.resolve_slot(reader_hint="second").name == "Second Reader"


def test_public_client_set_usb_identity(smartcard) -> None:
    client = _client(smartcard)
    events = client.subscribe()
    with client.open_device(reader_hint="pico") as handle:
        transaction = handle.begin_transaction()
        transaction.stage("vid", 0x1234)
        transaction.stage("pid", 0xABCD)
        transaction.stage("product_name", "Key")
        report = transaction.commit()
        assert report.applied == ("usb_ids", "product_name")

        snapshot = handle.read_config()
        assert snapshot.vid == 0x1234 and snapshot.pid == 0xABCD
        assert handle.lock_state(LockKind.FIRMWARE) is api.LockState.UNLOCKED
    assert events.drain()


def test_public_api_exports_error_hierarchy() -> None:
    assert issubclass(api.TransportBusyError, api.TransportError)
    assert issubclass(api.LockTokenError, api.ValidationError)
    assert issubclass(api.CommitCancelledError, api.CommitError)
    assert all(hasattr(api, name) for name in api.__all__)

from __future__ import annotations

import struct
import time
from pathlib import Path

import pytest

from picoforge.core.codec import (
    CLA_CHAINING,
    INS_GET_RESPONSE,
    INS_READ,
    INS_SECURE,
    INS_SELECT,
    INS_WRITE,
    RESCUE_AID,
    decode_tlv,
    encode_tlv,
)
from picoforge.core.diagnostics import DiagnosticStream
from picoforge.core.driver import CommandDriver
from picoforge.core.errors import DisconnectedError, NoDeviceError
from picoforge.core.manager import ConfigurationManager
from picoforge.core.model import ReaderSlot
from picoforge.core.profile_loader import load_profiles
from picoforge.transports.session import DeviceSession, SlotRegistry

READER = "Pico Key [CCID Interface] 00 00"
SLOT = ReaderSlot(id=READER, name="Pico Key [CCID Interface]")

DEFAULT_PHY = {
    0x00: bytes.fromhex("2E8A10FE"),
    0x04: bytes([25]),
    0x05: bytes([15]),
    0x06: bytes.fromhex("0002"),
    0x08: bytes([15]),
    0x09: b"Pico Key\x00",
    0x0A: bytes.fromhex("00000000"),
    0x0C: bytes([1]),
}


class FakePicoDevice:
    """In-memory Pico FIDO rescue applet reachable as a card connection."""

    def __init__(
        self,
        *,
        mcu: int = 0x02,
        product: int = 0x02,
        version: tuple[int, int] = (6, 4),
        serial: bytes = bytes.fromhex("E6614104033B2A21"),
        phy: dict[int, bytes] | None = None,
        chunk_size: int | None = None,
    ) -> None:
        self.mcu = mcu
        self.product = product
        self.version = version
        self.serial = serial
        self.phy = dict(DEFAULT_PHY if phy is None else phy)
        self.flash = (1_536_000, 512_000, 2_048_000, 12, 4096)
        self.secure_enabled = False
        self.secure_locked = False
        self.chunk_size = chunk_size
        self.fail_on_tags: dict[int, int] = {}
        self.status_overrides: dict[int, int] = {}
        self.ignore_lock = False
        self.disconnect_after: int | None = None
        self.delay_s = 0.0
        self.apdus: list[bytes] = []
        self.writes: list[dict[int, bytes]] = []
        self.disconnects = 0
        self._pending = b""
        self._chain = b""

    @property
    def secure_commands(self) -> list[bytes]:
        return [apdu for apdu in self.apdus if apdu[1] == INS_SECURE]

    def transmit(self, apdu: bytes) -> bytes:
        if self.disconnect_after is not None and len(self.apdus) >= self.disconnect_after:
            raise DisconnectedError("Device was removed")
        if self.delay_s:
            time.sleep(self.delay_s)
        self.apdus.append(apdu)
        cla, ins, p1, p2 = apdu[:4]

        if ins in self.status_overrides:
            return struct.pack(">H", self.status_overrides[ins])
        if ins == INS_GET_RESPONSE:
            pending, self._pending = self._pending, b""
            return self._respond(pending)
        if ins in (INS_READ, INS_SECURE):
            body = b""
        else:
            body = apdu[5 : 5 + apdu[4]] if len(apdu) > 4 else b""
        if cla & CLA_CHAINING:
            self._chain += body
            return bytes.fromhex("9000")
        body, self._chain = self._chain + body, b""

        if ins == INS_SELECT:
            if body != RESCUE_AID:
                return bytes.fromhex("6A82")
            ident = bytes([self.mcu, self.product, *self.version]) + self.serial
            return self._respond(ident)
        if ins == INS_READ:
            if p1 == 0x01:
                return self._respond(encode_tlv(self.phy))
            if p1 == 0x02:
                return self._respond(struct.pack(">5I", *self.flash))
            if p1 == 0x03:
                return self._respond(bytes([int(self.secure_enabled), int(self.secure_locked)]))
            return bytes.fromhex("6A86")
        if ins == INS_WRITE:
            params = decode_tlv(body)
            for tag in params:
                if tag in self.fail_on_tags:
                    return struct.pack(">H", self.fail_on_tags[tag])
            self.writes.append(params)
            self.phy.update(params)
            return bytes.fromhex("9000")
        if ins == INS_SECURE:
            if not self.ignore_lock:
                if p2 == 0x00:
                    self.secure_enabled = True
                else:
                    self.secure_enabled = True
                    self.secure_locked = True
            return bytes.fromhex("9000")
        return bytes.fromhex("6D00")

    def _respond(self, data: bytes) -> bytes:
        if self.chunk_size is not None and len(data) > self.chunk_size:
            head, self._pending = data[: self.chunk_size], data[self.chunk_size :]
            return head + bytes([0x61, min(len(self._pending), 0xFF)])
        return data + bytes.fromhex("9000")

    def disconnect(self) -> None:
        self.disconnects += 1


class FakeSmartCardService:
    def __init__(self, devices: dict[str, FakePicoDevice] | None = None) -> None:
        self.devices = devices if devices is not None else {}
        self.connects: list[str] = []

    def list_readers(self) -> list[str]:
        return list(self.devices)

    def connect(self, reader: str) -> FakePicoDevice:
        device = self.devices.get(reader)
        if device is None:
            raise NoDeviceError(f"No device attached to '{reader}'")
        self.connects.append(reader)
        return device


@pytest.fixture(autouse=True)
def isolated_user_dirs(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "cfg"))
    monkeypatch.setenv("XDG_DATA_HOME", str(tmp_path / "data"))


@pytest.fixture
def device() -> FakePicoDevice:
    return FakePicoDevice()


@pytest.fixture
def smartcard(device: FakePicoDevice) -> FakeSmartCardService:
    return FakeSmartCardService({READER: device})


@pytest.fixture
def registry() -> SlotRegistry:
    return SlotRegistry()


@pytest.fixture
def diagnostics() -> DiagnosticStream:
    return DiagnosticStream(buffer_size=512)


@pytest.fixture
def profiles():
    return load_profiles().profiles


@pytest.fixture
def session(smartcard, registry, diagnostics):
    opened = DeviceSession.open(SLOT, smartcard, registry, timeout_s=1.0, diagnostics=diagnostics)
    yield opened
    opened.close()


@pytest.fixture
def driver(session, profiles, diagnostics) -> CommandDriver:
    return CommandDriver(session, profiles["pico_fido_rp2350"], diagnostics=diagnostics)


@pytest.fixture
def manager(driver, diagnostics) -> ConfigurationManager:
    return ConfigurationManager(driver, diagnostics=diagnostics)

"""Command catalog: high-level rescue-applet operations for any variant.

A single driver serves every hardware variant; what it may send and which
values it accepts come from the session's ``VariantProfile``.
"""

from __future__ import annotations

import logging
import struct
from collections.abc import Callable, Mapping
from typing import Any

from picoforge.core import codec
from picoforge.core.constraints import validate_combination, validate_setting
from picoforge.core.diagnostics import DiagnosticStream
from picoforge.core.errors import DeviceError, MalformedFrameError, ValidationError
from picoforge.core.model import (
    ConfigSnapshot,
    DeviceIdentity,
    DeviceInfo,
    EventKind,
    FlashInfo,
    SecureBootStatus,
    VariantProfile,
)
from picoforge.core.phy import decode_config, encode_settings
from picoforge.transports.session import DeviceSession

LOGGER = logging.getLogger(__name__)

READ_PHY = (0x01, 0x01)
READ_FLASH = (0x02, 0x00)
READ_SECURE = (0x03, 0x00)
SECURE_BOOT_KEY_INDEX = 0x00


def parse_identity(data: bytes) -> DeviceIdentity:
    # [MCU, PRODUCT, VER_MAJ, VER_MIN, SERIAL(8), ...]
    if len(data) < 12:
        raise MalformedFrameError(f"Selection response of {len(data)} byte(s) is too short")
    return DeviceIdentity(
        mcu=data[0],
        product=data[1],
        firmware_major=data[2],
        firmware_minor=data[3],
        serial=data[4:12].hex().upper(),
    )


def _check(
    response: codec.ResponseFrame,
    operation: str,
    diagnostics: DiagnosticStream | None,
) -> codec.ResponseFrame:
    description = codec.describe_status(response.status)
    if diagnostics is not None:
        diagnostics.publish(
            EventKind.STATUS_DECODED,
            f"{operation}: {response.status:04X} ({description})",
            operation=operation,
            status=response.status,
            chunks=response.chunks,
        )
    if not response.ok:
        raise DeviceError(
            f"{operation} failed: {description} (SW={response.status:04X})",
            status=response.status,
            operation=operation,
        )
    return response


def query_identity(
    session: DeviceSession,
    *,
    diagnostics: DiagnosticStream | None = None,
    max_continuations: int = codec.DEFAULT_MAX_CONTINUATIONS,
) -> DeviceIdentity:
    """Re-select the rescue applet and parse the variant it reports."""
    with session.reserve():
        response = codec.transceive(
            session.exchange, codec.select_frame(), max_continuations=max_continuations
        )
    return parse_identity(_check(response, "select", diagnostics).data)


class CommandDriver:
    def __init__(
        self,
        session: DeviceSession,
        profile: VariantProfile,
        *,
        diagnostics: DiagnosticStream | None = None,
        max_continuations: int = codec.DEFAULT_MAX_CONTINUATIONS,
    ) -> None:
        self.session = session
        self.profile = profile
        self.diagnostics = diagnostics
        self.max_continuations = max_continuations
        self._write_listeners: list[Callable[[], None]] = []

    def add_write_listener(self, listener: Callable[[], None]) -> None:
        """Call ``listener`` after every frame that may have changed device state."""
        self._write_listeners.append(listener)

    def _device_written(self) -> None:
        for listener in self._write_listeners:
            listener()

    def _require(self, command: str) -> None:
        if not self.profile.supports(command):
            raise ValidationError(f"Profile '{self.profile.id}' does not support '{command}'")

    def _send(self, operation: str, frame: codec.CommandFrame) -> codec.ResponseFrame:
        with self.session.reserve():
            response = codec.transceive(
                self.session.exchange,
                frame,
                max_payload=self.profile.max_apdu_payload,
                max_continuations=self.max_continuations,
            )
        return _check(response, operation, self.diagnostics)

    def query_identity(self) -> DeviceIdentity:
        self._require("read_info")
        return query_identity(
            self.session, diagnostics=self.diagnostics, max_continuations=self.max_continuations
        )

    def read_flash_info(self) -> FlashInfo:
        self._require("read_flash")
        data = self._send("read flash info", codec.read_frame(*READ_FLASH)).data
        if len(data) < 12:
            raise MalformedFrameError(f"Flash info of {len(data)} byte(s) is too short")
        padded = data[:20].ljust(20, b"\x00")
        free, used, total, files, size = struct.unpack(">5I", padded)
        return FlashInfo(free=free, used=used, total=total, files=files, size=size)

    def read_secure_status(self) -> SecureBootStatus:
        if not self.profile.supports("read_secure_status"):
            return SecureBootStatus(supported=False)
        data = self._send("read secure boot status", codec.read_frame(*READ_SECURE)).data
        if len(data) < 2:
            raise MalformedFrameError(f"Secure boot status of {len(data)} byte(s) is too short")
        return SecureBootStatus(
            supported=self.profile.supports("lock_secure_boot"),
            enabled=data[0] != 0,
            locked=data[1] != 0,
        )

    def _read_phy(self) -> bytes:
        self._require("read_config")
        return self._send("read config", codec.read_frame(*READ_PHY)).data

    def read_config(self) -> ConfigSnapshot:
        data = self._read_phy()
        return decode_config(data, self.read_secure_status())

    def read_device_info(self) -> DeviceInfo:
        identity = self.query_identity()
        flash = self.read_flash_info() if self.profile.supports("read_flash") else None
        phy = decode_config(self._read_phy(), SecureBootStatus(supported=False))
        return DeviceInfo(
            serial=identity.serial,
            firmware_version=identity.firmware_version,
            variant_id=identity.variant_id,
            vid=phy.vid,
            pid=phy.pid,
            flash_used_kb=flash.used // 1024 if flash else None,
            flash_total_kb=flash.total // 1024 if flash else None,
        )

    def write_tags(self, params: Mapping[int, bytes]) -> None:
        self._require("write_config")
        if not params:
            return
        try:
            self._send("write config", codec.write_frame(params))
        finally:
            self._device_written()
        LOGGER.info(
            "Wrote PHY tag(s) %s on %s",
            ", ".join(f"0x{tag:02X}" for tag in sorted(params)),
            self.session.slot.name,
        )

    def write_settings(self, values: Mapping[str, Any], baseline: ConfigSnapshot | None = None) -> None:
        self._require("write_config")
        checked = {name: validate_setting(self.profile, name, value) for name, value in values.items()}
        validate_combination(self.profile, checked, baseline)
        self.write_tags(encode_settings(checked, baseline))

    def set_usb_identity(self, vid: int, pid: int, product_name: str | None = None) -> None:
        values: dict[str, Any] = {"vid": vid, "pid": pid}
        if product_name is not None:
            values["product_name"] = product_name
        self.write_settings(values)

    def set_led(self, gpio_pin: int, brightness: int, driver_mode: int | None = None) -> None:
        values: dict[str, Any] = {"led_gpio": gpio_pin, "led_brightness": brightness}
        if driver_mode is not None:
            values["led_driver"] = driver_mode
        self.write_settings(values)

    def lock_secure_boot(self) -> None:
        self._require("lock_secure_boot")
        try:
            self._send("enable secure boot", codec.secure_frame(SECURE_BOOT_KEY_INDEX, lock=False))
        finally:
            self._device_written()

    def lock_firmware(self) -> None:
        self._require("lock_firmware")
        try:
            self._send("lock firmware", codec.secure_frame(SECURE_BOOT_KEY_INDEX, lock=True))
        finally:
            self._device_written()

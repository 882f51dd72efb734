"""PHY configuration record: setting names, TLV tags and value encodings."""

from __future__ import annotations

import struct
from collections.abc import Mapping
from typing import Any

from picoforge.core.codec import decode_tlv
from picoforge.core.errors import MalformedFrameError, ValidationError
from picoforge.core.model import ConfigSnapshot, SecureBootStatus

TAG_VIDPID = 0x00
TAG_LED_GPIO = 0x04
TAG_LED_BRIGHTNESS = 0x05
TAG_OPTS = 0x06
TAG_UP_BTN = 0x08
TAG_USB_PRODUCT = 0x09
TAG_CURVES = 0x0A
TAG_LED_DRIVER = 0x0C

OPT_LED_DIMMABLE = 0x02
OPT_DISABLE_POWER_RESET = 0x04
OPT_LED_STEADY = 0x08

CURVE_SECP256K1 = 0x08

MAX_PRODUCT_BYTES = 32

SETTING_TAGS = {
    "vid": TAG_VIDPID,
    "pid": TAG_VIDPID,
    "product_name": TAG_USB_PRODUCT,
    "led_driver": TAG_LED_DRIVER,
    "led_gpio": TAG_LED_GPIO,
    "led_brightness": TAG_LED_BRIGHTNESS,
    "led_dimmable": TAG_OPTS,
    "led_steady": TAG_OPTS,
    "power_cycle_on_reset": TAG_OPTS,
    "touch_timeout": TAG_UP_BTN,
    "enable_secp256k1": TAG_CURVES,
}

# Order in which staged writes are applied.
WRITE_ORDER = (
    TAG_VIDPID,
    TAG_USB_PRODUCT,
    TAG_LED_DRIVER,
    TAG_LED_GPIO,
    TAG_LED_BRIGHTNESS,
    TAG_OPTS,
    TAG_UP_BTN,
    TAG_CURVES,
)

TAG_NAMES = {
    TAG_VIDPID: "usb_ids",
    TAG_USB_PRODUCT: "product_name",
    TAG_LED_DRIVER: "led_driver",
    TAG_LED_GPIO: "led_gpio",
    TAG_LED_BRIGHTNESS: "led_brightness",
    TAG_OPTS: "options",
    TAG_UP_BTN: "touch_timeout",
    TAG_CURVES: "curves",
}

_U8_TAGS = {
    TAG_LED_GPIO: "led_gpio",
    TAG_LED_BRIGHTNESS: "led_brightness",
    TAG_UP_BTN: "touch_timeout",
    TAG_LED_DRIVER: "led_driver",
}


def _merged(setting: str, values: Mapping[str, Any], baseline: ConfigSnapshot | None) -> Any:
    if setting in values:
        return values[setting]
    return baseline.value(setting) if baseline is not None else None


def _apply_flag(bits: int, mask: int, enabled: bool | None) -> int:
    if enabled is None:
        return bits
    return bits | mask if enabled else bits & ~mask


def encode_group(tag: int, values: Mapping[str, Any], baseline: ConfigSnapshot | None = None) -> bytes:
    """Encode the TLV value for ``tag`` from ``values``, filling gaps from ``baseline``."""
    if tag == TAG_VIDPID:
        vid = _merged("vid", values, baseline)
        pid = _merged("pid", values, baseline)
        if vid is None or pid is None:
            raise ValidationError("VID and PID must be written together", field="vid" if vid is None else "pid")
        return struct.pack(">HH", vid, pid)
    if tag == TAG_USB_PRODUCT:
        encoded = str(values["product_name"]).encode("utf-8") + b"\x00"
        if len(encoded) > MAX_PRODUCT_BYTES:
            raise ValidationError("Product name too long", field="product_name")
        return encoded
    if tag in _U8_TAGS:
        return bytes([int(values[_U8_TAGS[tag]])])
    if tag == TAG_OPTS:
        bits = baseline.options if baseline is not None and baseline.options is not None else 0
        bits = _apply_flag(bits, OPT_LED_DIMMABLE, values.get("led_dimmable"))
        bits = _apply_flag(bits, OPT_LED_STEADY, values.get("led_steady"))
        power_cycle = values.get("power_cycle_on_reset")
        bits = _apply_flag(bits, OPT_DISABLE_POWER_RESET, None if power_cycle is None else not power_cycle)
        return struct.pack(">H", bits)
    if tag == TAG_CURVES:
        bits = baseline.curves if baseline is not None and baseline.curves is not None else 0
        bits = _apply_flag(bits, CURVE_SECP256K1, values.get("enable_secp256k1"))
        return struct.pack(">I", bits)
    raise ValueError(f"Unknown PHY tag 0x{tag:02X}")


def group_by_tag(settings: Mapping[str, Any]) -> dict[int, dict[str, Any]]:
    groups: dict[int, dict[str, Any]] = {}
    for name, value in settings.items():
        groups.setdefault(SETTING_TAGS[name], {})[name] = value
    return {tag: groups[tag] for tag in WRITE_ORDER if tag in groups}


def encode_settings(settings: Mapping[str, Any], baseline: ConfigSnapshot | None = None) -> dict[int, bytes]:
    return {tag: encode_group(tag, values, baseline) for tag, values in group_by_tag(settings).items()}


def _expect_length(tag: int, value: bytes, length: int) -> None:
    if len(value) != length:
        raise MalformedFrameError(
            f"PHY tag 0x{tag:02X} carries {len(value)} byte(s), expected {length}"
        )


def decode_config(data: bytes, secure_boot: SecureBootStatus) -> ConfigSnapshot:
    params = decode_tlv(data)
    fields: dict[str, Any] = {}

    for tag, value in params.items():
        if tag == TAG_VIDPID:
            _expect_length(tag, value, 4)
            fields["vid"], fields["pid"] = struct.unpack(">HH", value)
        elif tag in _U8_TAGS:
            _expect_length(tag, value, 1)
            fields[_U8_TAGS[tag]] = value[0]
        elif tag == TAG_USB_PRODUCT:
            fields["product_name"] = value.split(b"\x00", 1)[0].decode("utf-8", errors="replace")
        elif tag == TAG_OPTS:
            _expect_length(tag, value, 2)
            (opts,) = struct.unpack(">H", value)
            fields["options"] = opts
            fields["led_dimmable"] = bool(opts & OPT_LED_DIMMABLE)
            fields["power_cycle_on_reset"] = not opts & OPT_DISABLE_POWER_RESET
            fields["led_steady"] = bool(opts & OPT_LED_STEADY)
        elif tag == TAG_CURVES:
            _expect_length(tag, value, 4)
            (curves,) = struct.unpack(">I", value)
            fields["curves"] = curves
            fields["enable_secp256k1"] = bool(curves & CURVE_SECP256K1)
        # Unknown tags are kept in raw_tags only.

    return ConfigSnapshot(
        **fields,
        secure_boot=secure_boot,
        raw_tags=tuple(sorted(params.items())),
    )

"""Local validation of setting values against a variant profile."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from picoforge.core.errors import ValidationError
from picoforge.core.model import ConfigSnapshot, SettingSpec, VariantProfile
from picoforge.core.phy import MAX_PRODUCT_BYTES

_TRUE_WORDS = {"true", "on", "yes", "1"}
_FALSE_WORDS = {"false", "off", "no", "0"}


def setting_spec(profile: VariantProfile, name: str) -> SettingSpec:
    spec = profile.settings.get(name)
    if spec is None:
        available = ", ".join(sorted(profile.settings)) or "none"
        raise ValidationError(
            f"Profile '{profile.id}' does not expose setting '{name}'. Available: {available}",
            field=name,
        )
    return spec


def _validate_int(name: str, spec: SettingSpec, value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{name} must be an integer", field=name)
    if spec.choices and value not in spec.choices:
        allowed = ", ".join(str(c) for c in spec.choices)
        raise ValidationError(f"{name} must be one of: {allowed}", field=name)
    if spec.minimum is not None and value < spec.minimum:
        raise ValidationError(f"{name} must be >= {spec.minimum}", field=name)
    if spec.maximum is not None and value > spec.maximum:
        raise ValidationError(f"{name} must be <= {spec.maximum}", field=name)
    return value


def _validate_str(name: str, spec: SettingSpec, value: Any) -> str:
    if not isinstance(value, str):
        raise ValidationError(f"{name} must be a string", field=name)
    if not value:
        raise ValidationError(f"{name} must not be empty", field=name)
    if "\x00" in value or not value.isprintable():
        raise ValidationError(f"{name} must contain printable characters only", field=name)
    limit = min(spec.max_length or MAX_PRODUCT_BYTES - 1, MAX_PRODUCT_BYTES - 1)
    if len(value.encode("utf-8")) > limit:
        raise ValidationError(f"{name} must be at most {limit} bytes of UTF-8", field=name)
    return value


def validate_setting(profile: VariantProfile, name: str, value: Any) -> Any:
    """Return ``value`` if it is acceptable for ``name`` on ``profile``."""
    spec = setting_spec(profile, name)
    if spec.type == "int":
        return _validate_int(name, spec, value)
    if spec.type == "bool":
        if not isinstance(value, bool):
            raise ValidationError(f"{name} must be true or false", field=name)
        return value
    return _validate_str(name, spec, value)


def validate_combination(
    profile: VariantProfile,
    staged: Mapping[str, Any],
    baseline: ConfigSnapshot | None,
) -> None:
    """Check rules that span several settings, after each passed on its own."""
    if "vid" in staged or "pid" in staged:
        vid = staged.get("vid", baseline.vid if baseline is not None else None)
        pid = staged.get("pid", baseline.pid if baseline is not None else None)
        if vid is None or pid is None:
            missing = "pid" if pid is None else "vid"
            raise ValidationError(
                f"{missing} is unknown on the device; stage VID and PID together", field=missing
            )
        if (vid, pid) in profile.reserved_usb_ids:
            raise ValidationError(f"USB ID {vid:04X}:{pid:04X} is reserved and cannot be used", field="vid")


def coerce_setting(profile: VariantProfile, name: str, text: str) -> Any:
    """Turn command-line text into a typed value for ``name``, then validate it."""
    spec = setting_spec(profile, name)
    raw = text.strip()
    if spec.type == "int":
        try:
            value: Any = int(raw, 16) if name in {"vid", "pid"} else int(raw, 0)
        except ValueError as exc:
            raise ValidationError(f"{name} expects an integer, got '{text}'", field=name) from exc
    elif spec.type == "bool":
        lowered = raw.lower()
        if lowered in _TRUE_WORDS:
            value = True
        elif lowered in _FALSE_WORDS:
            value = False
        else:
            raise ValidationError(f"{name} expects true/false, got '{text}'", field=name)
    else:
        value = text
    return validate_setting(profile, name, value)

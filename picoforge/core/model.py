"""Core data models used across codec, driver, transactions, service, and CLI."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


@dataclass(frozen=True)
class ReaderSlot:
    id: str
    name: str
    in_use: bool = False


@dataclass(frozen=True)
class SlotChanges:
    added: tuple[ReaderSlot, ...]
    removed: tuple[ReaderSlot, ...]
    current: tuple[ReaderSlot, ...]


@dataclass(frozen=True)
class MatchRules:
    mcu: tuple[int, ...]
    product: tuple[int, ...]


@dataclass(frozen=True)
class SettingSpec:
    type: str
    minimum: int | None = None
    maximum: int | None = None
    max_length: int | None = None
    choices: tuple[int, ...] = ()


@dataclass(frozen=True)
class VariantProfile:
    id: str
    name: str
    schema_version: int
    match: MatchRules
    commands: frozenset[str]
    settings: dict[str, SettingSpec]
    reserved_usb_ids: tuple[tuple[int, int], ...] = ()
    max_apdu_payload: int = 255

    def supports(self, command: str) -> bool:
        return command in self.commands


@dataclass(frozen=True)
class DeviceIdentity:
    mcu: int
    product: int
    firmware_major: int
    firmware_minor: int
    serial: str

    @property
    def variant_id(self) -> str:
        return f"{self.mcu:02x}:{self.product:02x}"

    @property
    def firmware_version(self) -> str:
        return f"{self.firmware_major}.{self.firmware_minor}"


@dataclass(frozen=True)
class FlashInfo:
    free: int
    used: int
    total: int
    files: int
    size: int


@dataclass(frozen=True)
class DeviceInfo:
    serial: str
    firmware_version: str
    variant_id: str
    vid: int | None
    pid: int | None
    flash_used_kb: int | None
    flash_total_kb: int | None


@dataclass(frozen=True)
class SecureBootStatus:
    supported: bool
    enabled: bool = False
    locked: bool = False


@dataclass(frozen=True)
class ConfigSnapshot:
    """Point-in-time readback of every mutable setting on the device."""

    vid: int | None = None
    pid: int | None = None
    product_name: str | None = None
    led_gpio: int | None = None
    led_brightness: int | None = None
    led_driver: int | None = None
    touch_timeout: int | None = None
    led_dimmable: bool | None = None
    led_steady: bool | None = None
    power_cycle_on_reset: bool | None = None
    enable_secp256k1: bool | None = None
    options: int | None = None
    curves: int | None = None
    secure_boot: SecureBootStatus = field(default_factory=lambda: SecureBootStatus(supported=False))
    raw_tags: tuple[tuple[int, bytes], ...] = ()

    def raw(self, tag: int) -> bytes | None:
        for raw_tag, value in self.raw_tags:
            if raw_tag == tag:
                return value
        return None

    def value(self, setting: str) -> Any:
        return getattr(self, setting)

    def fingerprint(self) -> str:
        digest = hashlib.sha256()
        for tag, value in sorted(self.raw_tags):
            digest.update(bytes([tag, len(value)]))
            digest.update(value)
        digest.update(
            bytes(
                [
                    int(self.secure_boot.supported),
                    int(self.secure_boot.enabled),
                    int(self.secure_boot.locked),
                ]
            )
        )
        return digest.hexdigest()


class LockKind(str, Enum):
    SECURE_BOOT = "secure-boot"
    FIRMWARE = "firmware"


class LockState(str, Enum):
    UNLOCKED = "unlocked"
    PENDING_CONFIRMATION = "pending-confirmation"
    LOCKED = "locked"


@dataclass(frozen=True)
class LockToken:
    kind: LockKind
    nonce: str
    fingerprint: str
    expires_at: float


@dataclass(frozen=True)
class LockOutcome:
    kind: LockKind
    state: LockState
    status: SecureBootStatus


@dataclass(frozen=True)
class CommitReport:
    state: str
    applied: tuple[str, ...] = ()
    skipped: tuple[str, ...] = ()
    rolled_back: tuple[str, ...] = ()
    rollback_failures: tuple[str, ...] = ()
    # Steps whose write frame was sent but never acknowledged.
    in_doubt: tuple[str, ...] = ()

    @property
    def consistent(self) -> bool:
        return not self.rollback_failures and not self.in_doubt


class EventKind(str, Enum):
    FRAME_SENT = "frame_sent"
    FRAME_RECEIVED = "frame_received"
    STATUS_DECODED = "status_decoded"
    ERROR = "error"
    STATE_TRANSITION = "state_transition"


@dataclass(frozen=True)
class DiagnosticEvent:
    timestamp: float
    kind: EventKind
    message: str
    data: dict[str, Any] = field(default_factory=dict)

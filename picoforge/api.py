"""Stable public API for building tooling on top of picoforge.

This module is the supported integration surface for third-party callers.
Avoid importing from private/internal modules unless intentionally depending on
non-stable internals.
"""

from __future__ import annotations

from picoforge.core.config import EngineConfig
from picoforge.core.diagnostics import DiagnosticStream, Subscription
from picoforge.core.errors import (
    CommitCancelledError,
    CommitError,
    ConfigError,
    ContinuationOverrunError,
    DeviceError,
    DeviceSelectionError,
    DisconnectedError,
    LockFailedError,
    LockTokenError,
    MalformedFrameError,
    NoDeviceError,
    PicoforgeError,
    ProfileLoadError,
    ProfileValidationError,
    ProtocolError,
    ResetFailedError,
    TransactionStateError,
    TransportBusyError,
    TransportError,
    TransportTimeoutError,
    UnknownVariantError,
    ValidationError,
)
from picoforge.core.model import (
    CommitReport,
    ConfigSnapshot,
    DeviceIdentity,
    DeviceInfo,
    DiagnosticEvent,
    EventKind,
    LockKind,
    LockOutcome,
    LockState,
    LockToken,
    ReaderSlot,
    SecureBootStatus,
    SlotChanges,
    VariantProfile,
)
from picoforge.core.service import CommissioningService, DeviceHandle
from picoforge.core.transaction import ConfigTransaction, TransactionState
from picoforge.transports.base import SmartCardService

__all__ = [
    "PicoforgeError",
    "ConfigError",
    "DeviceSelectionError",
    "ProfileLoadError",
    "ProfileValidationError",
    "TransportError",
    "TransportBusyError",
    "NoDeviceError",
    "TransportTimeoutError",
    "DisconnectedError",
    "ResetFailedError",
    "ProtocolError",
    "MalformedFrameError",
    "ContinuationOverrunError",
    "UnknownVariantError",
    "DeviceError",
    "ValidationError",
    "LockTokenError",
    "TransactionStateError",
    "CommitError",
    "CommitCancelledError",
    "LockFailedError",
    "CommitReport",
    "ConfigSnapshot",
    "ConfigTransaction",
    "DeviceHandle",
    "DeviceIdentity",
    "DeviceInfo",
    "DiagnosticEvent",
    "EngineConfig",
    "EventKind",
    "LockKind",
    "LockOutcome",
    "LockState",
    "LockToken",
    "ReaderSlot",
    "SecureBootStatus",
    "SlotChanges",
    "SmartCardService",
    "Subscription",
    "TransactionState",
    "VariantProfile",
    "Client",
]


class Client:
    """Public client for commissioning Pico FIDO devices.

    A `Client` instance wraps profile loading, reader discovery and device
    sessions behind a stable API intended for third-party tools
    (GUI/TUI/services/scripts). Per-device work goes through the
    `DeviceHandle` returned by `open_device`.
    """

    def __init__(
        self,
        *,
        smartcard: SmartCardService | None = None,
        config: EngineConfig | None = None,
        diagnostics: DiagnosticStream | None = None,
    ) -> None:
        self._service = CommissioningService(
            smartcard=smartcard,
            config=config,
            diagnostics=diagnostics,
        )

    @property
    def load_warnings(self) -> tuple[str, ...]:
        return self._service.load_warnings

    @property
    def config(self) -> EngineConfig:
        return self._service.config

    def list_profiles(self) -> list[VariantProfile]:
        return self._service.list_profiles()

    def list_slots(self) -> tuple[ReaderSlot, ...]:
        return self._service.list_slots()

    def slot_changes(self, previous: tuple[ReaderSlot, ...]) -> SlotChanges:
        return self._service.slot_changes(previous)

    def resolve_slot(self, *, reader_hint: str | None = None) -> ReaderSlot:
        return self._service.resolve_slot(reader_hint)

    def open_device(self, *, reader_hint: str | None = None, force: bool = False) -> DeviceHandle:
        return self._service.open_device(reader_hint, force=force)

    def subscribe(self, buffer_size: int | None = None) -> Subscription:
        """Diagnostics for every device opened through this client."""
        return self._service.diagnostics.subscribe(buffer_size=buffer_size)

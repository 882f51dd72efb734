"""Service layer used by CLI and future UI frontends."""

from __future__ import annotations

import logging
from typing import Any

from picoforge.core.config import EngineConfig, load_config
from picoforge.core.diagnostics import DiagnosticStream, Subscription
from picoforge.core.discovery import Discovery
from picoforge.core.driver import CommandDriver
from picoforge.core.errors import DeviceSelectionError, PicoforgeError, UnknownVariantError
from picoforge.core.manager import ConfigurationManager
from picoforge.core.model import (
    ConfigSnapshot,
    DeviceIdentity,
    DeviceInfo,
    LockKind,
    LockOutcome,
    LockState,
    LockToken,
    ReaderSlot,
    SlotChanges,
    VariantProfile,
)
from picoforge.core.profile_loader import load_profiles
from picoforge.core.transaction import ConfigTransaction
from picoforge.transports.base import SmartCardService
from picoforge.transports.pcsc import PCSCService
from picoforge.transports.session import DeviceSession, SlotRegistry

LOGGER = logging.getLogger(__name__)


class DeviceHandle:
    """Everything a frontend may do with one opened device.

    The handle owns the session; closing it releases the slot for other
    callers. ``unknown_variant`` is set when the device did not match any
    profile and the generic, read-only profile is in use.
    """

    def __init__(
        self,
        session: DeviceSession,
        profile: VariantProfile,
        *,
        diagnostics: DiagnosticStream,
        config: EngineConfig,
        unknown_variant: UnknownVariantError | None = None,
    ) -> None:
        self.session = session
        self.profile = profile
        self.unknown_variant = unknown_variant
        self._diagnostics = diagnostics
        self.driver = CommandDriver(
            session,
            profile,
            diagnostics=diagnostics,
            max_continuations=config.max_continuations,
        )
        self.manager = ConfigurationManager(
            self.driver,
            diagnostics=diagnostics,
            lock_token_ttl_s=config.lock_token_ttl_s,
        )

    @property
    def slot(self) -> ReaderSlot:
        return self.session.slot

    @property
    def is_open(self) -> bool:
        return self.session.is_open

    def identity(self) -> DeviceIdentity:
        return self.driver.query_identity()

    def read_device_info(self) -> DeviceInfo:
        return self.driver.read_device_info()

    def read_config(self) -> ConfigSnapshot:
        return self.manager.read_config()

    def begin_transaction(self) -> ConfigTransaction:
        return self.manager.begin()

    def lock_state(self, kind: LockKind) -> LockState:
        return self.manager.lock_state(kind)

    def request_irreversible_lock(self, kind: LockKind) -> LockToken:
        return self.manager.request_irreversible_lock(kind)

    def confirm_irreversible_lock(self, token: LockToken) -> LockOutcome:
        return self.manager.confirm_irreversible_lock(token)

    def subscribe(self, buffer_size: int | None = None) -> Subscription:
        return self._diagnostics.subscribe(buffer_size=buffer_size)

    def close(self) -> None:
        self.session.close()

    def __enter__(self) -> DeviceHandle:
        return self

    def __exit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        self.close()


class CommissioningService:
    def __init__(
        self,
        *,
        smartcard: SmartCardService | None = None,
        config: EngineConfig | None = None,
        registry: SlotRegistry | None = None,
        diagnostics: DiagnosticStream | None = None,
    ) -> None:
        loaded = load_profiles()
        self.profiles = loaded.profiles
        self.load_warnings = loaded.warnings
        self.config = config or load_config()
        self.smartcard = smartcard or PCSCService()
        self.registry = registry or SlotRegistry()
        self.diagnostics = diagnostics or DiagnosticStream(buffer_size=self.config.diagnostics_buffer)
        self.discovery = Discovery(
            self.smartcard,
            self.registry,
            self.profiles,
            diagnostics=self.diagnostics,
            timeout_s=self.config.exchange_timeout_s,
            max_continuations=self.config.max_continuations,
        )

    def list_profiles(self) -> list[VariantProfile]:
        return sorted(self.profiles.values(), key=lambda p: p.id)

    def list_slots(self) -> tuple[ReaderSlot, ...]:
        return self.discovery.list_slots()

    def slot_changes(self, previous: tuple[ReaderSlot, ...]) -> SlotChanges:
        return self.discovery.changes(previous)

    def resolve_slot(self, reader_hint: str | None) -> ReaderSlot:
        slots = self.list_slots()

        if not slots:
            raise DeviceSelectionError("No smart-card readers found. Ensure your device is plugged in.")

        candidates = list(slots)
        if reader_hint:
            hint = reader_hint.lower()
            exact = [s for s in candidates if s.id.lower() == hint or s.name.lower() == hint]
            hinted = exact or [s for s in candidates if hint in s.id.lower() or hint in s.name.lower()]
            if not hinted:
                raise DeviceSelectionError(f"No reader found matching '{reader_hint}'")
            candidates = hinted

        if len(candidates) > 1:
            candidate_desc = ", ".join(f"'{s.id}'" for s in candidates)
            raise DeviceSelectionError(
                f"Multiple readers found: {candidate_desc}. Use --reader to choose one."
            )

        return candidates[0]

    def open_device(self, reader_hint: str | None = None, *, force: bool = False) -> DeviceHandle:
        slot = self.resolve_slot(reader_hint)
        session = self.discovery.open(slot, force=force)
        unknown: UnknownVariantError | None = None
        try:
            try:
                profile = self.discovery.identify(session)
            except UnknownVariantError as exc:
                LOGGER.warning("%s; continuing with the read-only generic profile", exc)
                profile, unknown = exc.fallback, exc
        except PicoforgeError:
            session.close()
            raise
        return DeviceHandle(
            session,
            profile,
            diagnostics=self.diagnostics,
            config=self.config,
            unknown_variant=unknown,
        )

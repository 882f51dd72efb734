"""Reader enumeration, hot-plug diffing and variant identification."""

from __future__ import annotations

import logging
import re
from collections.abc import Sequence

from picoforge.core.codec import DEFAULT_MAX_CONTINUATIONS
from picoforge.core.diagnostics import DiagnosticStream
from picoforge.core.driver import query_identity
from picoforge.core.errors import UnknownVariantError
from picoforge.core.model import ReaderSlot, SlotChanges, VariantProfile
from picoforge.core.profile_loader import GENERIC_PROFILE_ID
from picoforge.core.variant_match import best_profile_for_identity
from picoforge.transports.base import SmartCardService
from picoforge.transports.session import DEFAULT_TIMEOUT_S, DeviceSession, SlotRegistry

LOGGER = logging.getLogger(__name__)

# PC/SC appends "<reader index> <slot index>" to reader names.
_READER_SUFFIX_RE = re.compile(r"\s+\d{2}\s+\d{2}$")


def _label(reader: str) -> str:
    return _READER_SUFFIX_RE.sub("", reader).strip() or reader


class Discovery:
    def __init__(
        self,
        service: SmartCardService,
        registry: SlotRegistry,
        profiles: dict[str, VariantProfile],
        *,
        diagnostics: DiagnosticStream | None = None,
        timeout_s: float = DEFAULT_TIMEOUT_S,
        max_continuations: int = DEFAULT_MAX_CONTINUATIONS,
    ) -> None:
        self.service = service
        self.registry = registry
        self.profiles = profiles
        self.diagnostics = diagnostics
        self.timeout_s = timeout_s
        self.max_continuations = max_continuations

    def list_slots(self) -> tuple[ReaderSlot, ...]:
        """Snapshot of the readers visible right now; call again to refresh."""
        slots: list[ReaderSlot] = []
        seen: set[str] = set()
        for reader in self.service.list_readers():
            if reader in seen:
                continue
            seen.add(reader)
            slots.append(ReaderSlot(id=reader, name=_label(reader), in_use=self.registry.is_open(reader)))
        LOGGER.debug("Found %d reader slot(s)", len(slots))
        return tuple(slots)

    def changes(self, previous: Sequence[ReaderSlot]) -> SlotChanges:
        current = self.list_slots()
        before = {slot.id for slot in previous}
        after = {slot.id for slot in current}
        return SlotChanges(
            added=tuple(slot for slot in current if slot.id not in before),
            removed=tuple(slot for slot in previous if slot.id not in after),
            current=current,
        )

    def open(self, slot: ReaderSlot, *, force: bool = False) -> DeviceSession:
        return DeviceSession.open(
            slot,
            self.service,
            self.registry,
            timeout_s=self.timeout_s,
            diagnostics=self.diagnostics,
            force=force,
        )

    def identify(self, session: DeviceSession) -> VariantProfile:
        identity = query_identity(
            session, diagnostics=self.diagnostics, max_continuations=self.max_continuations
        )
        profile = best_profile_for_identity(identity, self.profiles)
        if profile is None:
            raise UnknownVariantError(
                f"Device in {session.slot.name} reports unknown variant {identity.variant_id} "
                f"(firmware {identity.firmware_version})",
                identity=identity,
                fallback=self.profiles[GENERIC_PROFILE_ID],
            )
        LOGGER.info("Identified %s as %s", session.slot.name, profile.name)
        return profile


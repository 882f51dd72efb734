"""Per-device configuration manager and the irreversible-lock gate.

Locking secure boot or the firmware can never be undone, so it is kept out of
ordinary transactions. ``request_irreversible_lock`` hands out a single-use
token bound to the configuration fingerprint the caller has seen;
``confirm_irreversible_lock`` re-reads the device and only sends the lock
command if that token is still the outstanding one, has not expired and the
fingerprint is unchanged.
"""

from __future__ import annotations

import logging
import secrets
import time
from collections.abc import Callable

from picoforge.core.diagnostics import DiagnosticStream
from picoforge.core.driver import CommandDriver
from picoforge.core.errors import LockFailedError, LockTokenError, PicoforgeError, ValidationError
from picoforge.core.model import (
    ConfigSnapshot,
    EventKind,
    LockKind,
    LockOutcome,
    LockState,
    LockToken,
    SecureBootStatus,
)
from picoforge.core.transaction import ConfigTransaction

LOGGER = logging.getLogger(__name__)

DEFAULT_LOCK_TOKEN_TTL_S = 60.0

_LOCK_COMMANDS = {
    LockKind.SECURE_BOOT: "lock_secure_boot",
    LockKind.FIRMWARE: "lock_firmware",
}


def _is_locked(kind: LockKind, status: SecureBootStatus) -> bool:
    if kind is LockKind.SECURE_BOOT:
        return status.enabled
    return status.locked


class ConfigurationManager:
    def __init__(
        self,
        driver: CommandDriver,
        *,
        diagnostics: DiagnosticStream | None = None,
        lock_token_ttl_s: float = DEFAULT_LOCK_TOKEN_TTL_S,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.driver = driver
        self.lock_token_ttl_s = lock_token_ttl_s
        self._diagnostics = diagnostics
        self._clock = clock
        self._snapshot: ConfigSnapshot | None = None
        self._tokens: dict[LockKind, LockToken] = {}
        driver.add_write_listener(self._invalidate_snapshot)

    @property
    def snapshot(self) -> ConfigSnapshot | None:
        """Last readback, or None once a write made it stale."""
        return self._snapshot

    def read_config(self) -> ConfigSnapshot:
        self._snapshot = self.driver.read_config()
        return self._snapshot

    def _current_snapshot(self) -> ConfigSnapshot:
        return self._snapshot if self._snapshot is not None else self.read_config()

    def _invalidate_snapshot(self) -> None:
        self._snapshot = None

    def begin(self) -> ConfigTransaction:
        return ConfigTransaction(
            self.driver,
            self._current_snapshot(),
            diagnostics=self._diagnostics,
        )

    def lock_state(self, kind: LockKind) -> LockState:
        snapshot = self._current_snapshot()
        if _is_locked(kind, snapshot.secure_boot):
            return LockState.LOCKED
        token = self._tokens.get(kind)
        if token is not None and self._clock() <= token.expires_at:
            return LockState.PENDING_CONFIRMATION
        return LockState.UNLOCKED

    def _emit(self, kind: LockKind, previous: LockState, state: LockState) -> None:
        if self._diagnostics is not None:
            self._diagnostics.publish(
                EventKind.STATE_TRANSITION,
                f"{kind.value} lock {previous.value} -> {state.value}",
                lock=kind.value,
                previous=previous.value,
                state=state.value,
            )

    def request_irreversible_lock(self, kind: LockKind) -> LockToken:
        command = _LOCK_COMMANDS[kind]
        if not self.driver.profile.supports(command):
            raise ValidationError(f"Profile '{self.driver.profile.id}' does not support {kind.value} locking")
        snapshot = self._current_snapshot()
        if _is_locked(kind, snapshot.secure_boot):
            raise ValidationError(f"{kind.value} is already locked on this device")

        token = LockToken(
            kind=kind,
            nonce=secrets.token_hex(16),
            fingerprint=snapshot.fingerprint(),
            expires_at=self._clock() + self.lock_token_ttl_s,
        )
        self._tokens[kind] = token
        self._emit(kind, LockState.UNLOCKED, LockState.PENDING_CONFIRMATION)
        LOGGER.warning("Irreversible %s lock requested; awaiting confirmation", kind.value)
        return token

    def _take_token(self, token: LockToken) -> None:
        outstanding = self._tokens.get(token.kind)
        if outstanding is None:
            raise LockTokenError(f"No {token.kind.value} lock request is pending")
        if not secrets.compare_digest(outstanding.nonce, token.nonce) or outstanding != token:
            raise LockTokenError(f"Token does not match the pending {token.kind.value} lock request")
        # Single use from here on, whatever the outcome.
        del self._tokens[token.kind]
        if self._clock() > token.expires_at:
            self._emit(token.kind, LockState.PENDING_CONFIRMATION, LockState.UNLOCKED)
            raise LockTokenError(f"{token.kind.value} lock token expired; request the lock again")

    def _reread_status(self) -> SecureBootStatus | None:
        try:
            return self.driver.read_secure_status()
        except PicoforgeError as exc:
            LOGGER.error("Could not re-read secure boot status: %s", exc)
            return None

    def confirm_irreversible_lock(self, token: LockToken) -> LockOutcome:
        # Other callers get TransportBusyError until the lock is verified.
        with self.driver.session.reserve():
            self._take_token(token)
            return self._send_lock(token)

    def _send_lock(self, token: LockToken) -> LockOutcome:
        current = self.read_config()
        if current.fingerprint() != token.fingerprint:
            self._emit(token.kind, LockState.PENDING_CONFIRMATION, LockState.UNLOCKED)
            raise LockTokenError(
                "Device configuration changed since the lock was requested; review it and request again"
            )

        LOGGER.warning("Sending irreversible %s lock to %s", token.kind.value, self.driver.session.slot.name)
        try:
            if token.kind is LockKind.SECURE_BOOT:
                self.driver.lock_secure_boot()
            else:
                self.driver.lock_firmware()
        except PicoforgeError as exc:
            observed = self._reread_status()
            raise LockFailedError(
                f"{token.kind.value} lock failed: {exc}",
                observed=observed,
            ) from exc

        observed = self._reread_status()
        if observed is None:
            raise LockFailedError(
                f"{token.kind.value} lock was sent but the resulting state could not be read back",
                observed=None,
            )
        if not _is_locked(token.kind, observed):
            raise LockFailedError(
                f"{token.kind.value} lock was acknowledged but the device does not report it locked",
                observed=observed,
            )

        self._emit(token.kind, LockState.PENDING_CONFIRMATION, LockState.LOCKED)
        return LockOutcome(kind=token.kind, state=LockState.LOCKED, status=observed)

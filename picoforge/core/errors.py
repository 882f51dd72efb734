"""Domain-specific errors for picoforge."""

from __future__ import annotations

from typing import Any


class PicoforgeError(Exception):
    """Base error for picoforge."""


class ProfileValidationError(PicoforgeError):
    """Raised when a variant profile does not conform to schema or semantics."""


class ProfileLoadError(PicoforgeError):
    """Raised when loading profile sources fails."""


class ConfigError(PicoforgeError):
    """Raised when the engine configuration file is unreadable or invalid."""


class DeviceSelectionError(PicoforgeError):
    """Raised when reader matching cannot resolve a single slot."""


class TransportError(PicoforgeError):
    """Base transport error."""


class TransportBusyError(TransportError):
    """Raised when a slot or session is already held by another caller."""


class NoDeviceError(TransportError):
    """Raised when nothing is attached to the requested slot."""


class TransportTimeoutError(TransportError):
    """Raised when an exchange does not complete within the session timeout."""


class DisconnectedError(TransportError):
    """Raised when the device went away or the session is no longer usable."""


class ResetFailedError(TransportError):
    """Raised when the device does not answer the initial applet selection."""


class ProtocolError(PicoforgeError):
    """Base error for frame-level protocol violations."""


class MalformedFrameError(ProtocolError):
    """Raised on truncated frames, unknown status words or bad TLV lengths."""


class ContinuationOverrunError(ProtocolError):
    """Raised when a response keeps signalling more data past the ceiling."""


class UnknownVariantError(ProtocolError):
    """Raised when the device reports a variant no profile matches.

    Non-fatal: ``fallback`` holds the generic profile callers may continue
    with for raw reads.
    """

    def __init__(self, message: str, *, identity: Any = None, fallback: Any = None) -> None:
        super().__init__(message)
        self.identity = identity
        self.fallback = fallback


class DeviceError(PicoforgeError):
    """Raised when the device answers with a non-success status word."""

    def __init__(self, message: str, *, status: int, operation: str) -> None:
        super().__init__(message)
        self.status = status
        self.operation = operation


class ValidationError(PicoforgeError):
    """Raised on local constraint violations, before any device round trip."""

    def __init__(self, message: str, *, field: str | None = None) -> None:
        super().__init__(message)
        self.field = field


class LockTokenError(ValidationError):
    """Raised when an irreversible-lock token is stale, expired or unknown."""


class TransactionStateError(PicoforgeError):
    """Raised when a transaction operation is not allowed in its current state."""


class CommitError(PicoforgeError):
    """Raised when a commit fails after writes started.

    ``report`` describes what was applied, what was rolled back and whether the
    device is believed to be consistent with its pre-commit snapshot.
    """

    def __init__(self, message: str, *, report: Any) -> None:
        super().__init__(message)
        self.report = report


class CommitCancelledError(CommitError):
    """Raised when a commit was cancelled between frame exchanges."""


class LockFailedError(PicoforgeError):
    """Raised when an irreversible lock command did not succeed.

    ``observed`` is the secure-boot status re-read from the device afterwards,
    or None if it could not be read.
    """

    def __init__(self, message: str, *, observed: Any = None) -> None:
        super().__init__(message)
        self.observed = observed

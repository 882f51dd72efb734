"""Transport interfaces."""

from __future__ import annotations

from typing import Protocol


class CardConnection(Protocol):
    def transmit(self, apdu: bytes) -> bytes:
        """Send one APDU and return the response data followed by SW1 SW2."""

    def disconnect(self) -> None:
        """Release the underlying reader connection."""


class SmartCardService(Protocol):
    def list_readers(self) -> list[str]:
        """Return the names of the readers currently visible."""

    def connect(self, reader: str) -> CardConnection:
        """Open an exclusive connection to the device in ``reader``."""

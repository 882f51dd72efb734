"""PC/SC transport implementation using pyscard."""

from __future__ import annotations

import logging

from picoforge.core.errors import (
    DisconnectedError,
    NoDeviceError,
    TransportBusyError,
    TransportError,
)

LOGGER = logging.getLogger(__name__)


def _pyscard():
    try:
        from smartcard import Exceptions, System, scard  # type: ignore
    except ImportError as exc:  # pragma: no cover - import failure path
        raise TransportError(
            "PC/SC transport requires 'pyscard'. Install dependency and retry."
        ) from exc
    return System, Exceptions, scard


class PCSCConnection:
    def __init__(self, reader: str, connection) -> None:
        self.reader = reader
        self._connection = connection

    def transmit(self, apdu: bytes) -> bytes:
        _, exceptions, _ = _pyscard()
        try:
            data, sw1, sw2 = self._connection.transmit(list(apdu))
        except exceptions.CardConnectionException as exc:
            raise DisconnectedError(f"Lost connection to {self.reader}: {exc}") from exc
        return bytes(data) + bytes([sw1, sw2])

    def disconnect(self) -> None:
        _, exceptions, _ = _pyscard()
        try:
            self._connection.disconnect()
        except exceptions.CardConnectionException as exc:
            LOGGER.debug("Ignoring disconnect failure on %s: %s", self.reader, exc)


class PCSCService:
    """Smart-card service backed by the platform PC/SC daemon."""

    def list_readers(self) -> list[str]:
        system, exceptions, _ = _pyscard()
        try:
            return [str(reader) for reader in system.readers()]
        except exceptions.ListReadersException as exc:
            raise TransportError(f"Could not list PC/SC readers: {exc}") from exc

    def connect(self, reader: str) -> PCSCConnection:
        system, exceptions, scard = _pyscard()
        try:
            target = next((r for r in system.readers() if str(r) == reader), None)
        except exceptions.ListReadersException as exc:
            raise TransportError(f"Could not list PC/SC readers: {exc}") from exc
        if target is None:
            raise NoDeviceError(f"Reader '{reader}' is not present")

        connection = target.createConnection()
        try:
            connection.connect(mode=scard.SCARD_SHARE_EXCLUSIVE)
        except exceptions.NoCardException as exc:
            raise NoDeviceError(f"No device attached to '{reader}'") from exc
        except exceptions.CardConnectionException as exc:
            if getattr(exc, "hresult", None) == scard.SCARD_E_SHARING_VIOLATION:
                raise TransportBusyError(f"Reader '{reader}' is in use by another application") from exc
            raise TransportError(f"PC/SC connect failed for '{reader}': {exc}") from exc
        LOGGER.debug("Connected to %s (exclusive)", reader)
        return PCSCConnection(reader, connection)

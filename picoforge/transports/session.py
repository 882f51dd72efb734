"""Exclusive device sessions on top of a smart-card service."""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterator
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from contextlib import contextmanager

from picoforge.core import codec
from picoforge.core.diagnostics import DiagnosticStream
from picoforge.core.errors import (
    DisconnectedError,
    MalformedFrameError,
    PicoforgeError,
    ResetFailedError,
    TransportBusyError,
    TransportError,
    TransportTimeoutError,
)
from picoforge.core.model import EventKind, ReaderSlot
from picoforge.transports.base import CardConnection, SmartCardService

LOGGER = logging.getLogger(__name__)

DEFAULT_TIMEOUT_S = 5.0


class SlotRegistry:
    """Tracks which reader slots currently have a live session."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._holders: dict[str, DeviceSession] = {}

    def acquire(self, slot_id: str, session: DeviceSession, *, force: bool = False) -> None:
        with self._lock:
            holder = self._holders.get(slot_id)
            if holder is not None and holder.is_open:
                if not force:
                    raise TransportBusyError(f"Slot '{slot_id}' already has an open session")
                holder._invalidate("superseded by a newer session on the same slot")
            self._holders[slot_id] = session

    def release(self, slot_id: str, session: DeviceSession) -> None:
        with self._lock:
            if self._holders.get(slot_id) is session:
                del self._holders[slot_id]

    def holder(self, slot_id: str) -> DeviceSession | None:
        with self._lock:
            holder = self._holders.get(slot_id)
            return holder if holder is not None and holder.is_open else None

    def is_open(self, slot_id: str) -> bool:
        return self.holder(slot_id) is not None


class DeviceSession:
    """One exclusive, strictly serialized connection to a device in a slot.

    Sessions never reconnect. Once invalidated (disconnect, timeout, takeover
    or ``close``) every further call fails with ``DisconnectedError`` before
    touching the transport.
    """

    def __init__(
        self,
        slot: ReaderSlot,
        registry: SlotRegistry,
        *,
        timeout_s: float = DEFAULT_TIMEOUT_S,
        diagnostics: DiagnosticStream | None = None,
    ) -> None:
        self.slot = slot
        self.timeout_s = timeout_s
        self.select_response = b""
        self._registry = registry
        self._diagnostics = diagnostics
        self._connection: CardConnection | None = None
        self._lock = threading.RLock()
        self._executor: ThreadPoolExecutor | None = None
        self._open = True
        self._invalid_reason: str | None = None

    @classmethod
    def open(
        cls,
        slot: ReaderSlot,
        service: SmartCardService,
        registry: SlotRegistry,
        *,
        timeout_s: float = DEFAULT_TIMEOUT_S,
        diagnostics: DiagnosticStream | None = None,
        force: bool = False,
    ) -> DeviceSession:
        session = cls(slot, registry, timeout_s=timeout_s, diagnostics=diagnostics)
        registry.acquire(slot.id, session, force=force)
        try:
            session._connection = service.connect(slot.id)
            session._executor = ThreadPoolExecutor(
                max_workers=1, thread_name_prefix=f"picoforge-{slot.id}"
            )
            session._select()
        except BaseException:
            session._invalidate("open failed")
            registry.release(slot.id, session)
            raise
        session._emit(EventKind.STATE_TRANSITION, f"Session opened on {slot.name}", slot=slot.id)
        LOGGER.info("Opened session on %s", slot.name)
        return session

    @property
    def is_open(self) -> bool:
        return self._open

    def _select(self) -> None:
        try:
            response = codec.transceive(self.exchange, codec.select_frame())
        except (TransportTimeoutError, DisconnectedError, MalformedFrameError) as exc:
            raise ResetFailedError(f"Device in {self.slot.name} did not answer selection: {exc}") from exc
        if not response.ok:
            raise ResetFailedError(
                f"Rescue applet not found on device in {self.slot.name} "
                f"(SW={response.status:04X}). Is it running Pico FIDO firmware?"
            )
        self.select_response = response.data

    @contextmanager
    def reserve(self) -> Iterator[DeviceSession]:
        """Hold the session for the calling thread across several exchanges."""
        if not self._lock.acquire(blocking=False):
            raise TransportBusyError(f"Session on {self.slot.name} is busy with another exchange")
        try:
            self._ensure_open()
            yield self
        finally:
            self._lock.release()

    def exchange(self, raw: bytes) -> bytes:
        with self.reserve():
            connection, executor = self._connection, self._executor
            if connection is None or executor is None:
                raise DisconnectedError(f"Session on {self.slot.name} has no connection")
            self._emit(EventKind.FRAME_SENT, f"> {raw.hex().upper()}", apdu=raw.hex())
            future = executor.submit(connection.transmit, raw)
            try:
                response = future.result(timeout=self.timeout_s)
            except FutureTimeoutError as exc:
                self._fail(f"no response within {self.timeout_s:.1f}s")
                raise TransportTimeoutError(
                    f"Device in {self.slot.name} did not respond within {self.timeout_s:.1f}s"
                ) from exc
            except DisconnectedError as exc:
                self._fail(str(exc))
                raise
            except TransportError as exc:
                self._emit(EventKind.ERROR, str(exc))
                raise
            self._emit(EventKind.FRAME_RECEIVED, f"< {response.hex().upper()}", apdu=response.hex())
            return response

    def close(self) -> None:
        with self._lock:
            was_open = self._open
            self._open = False
            if self._invalid_reason is None:
                self._invalid_reason = "session is closed"
            self._teardown()
        self._registry.release(self.slot.id, self)
        if was_open:
            self._emit(EventKind.STATE_TRANSITION, f"Session closed on {self.slot.name}", slot=self.slot.id)
            LOGGER.info("Closed session on %s", self.slot.name)

    def _ensure_open(self) -> None:
        if not self._open:
            raise DisconnectedError(f"Session on {self.slot.name} is no longer usable: {self._invalid_reason}")

    def _fail(self, reason: str) -> None:
        self._emit(EventKind.ERROR, f"Session on {self.slot.name} invalidated: {reason}", slot=self.slot.id)
        LOGGER.warning("Session on %s invalidated: %s", self.slot.name, reason)
        self._invalidate(reason)
        self._registry.release(self.slot.id, self)

    def _invalidate(self, reason: str) -> None:
        self._open = False
        self._invalid_reason = reason
        self._teardown()

    def _teardown(self) -> None:
        connection, self._connection = self._connection, None
        executor, self._executor = self._executor, None
        if connection is not None:
            try:
                connection.disconnect()
            except PicoforgeError as exc:
                LOGGER.debug("Ignoring disconnect failure on %s: %s", self.slot.name, exc)
        if executor is not None:
            executor.shutdown(wait=False)

    def _emit(self, kind: EventKind, message: str, **data) -> None:
        if self._diagnostics is not None:
            self._diagnostics.publish(kind, message, **data)

    def __enter__(self) -> DeviceSession:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

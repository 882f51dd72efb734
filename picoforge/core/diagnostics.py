"""Diagnostics stream shared between the engine and its presentation layer.

One producer side (``publish``) fans events out to any number of
subscribers. Each subscriber owns a bounded queue; when it is full the event
is dropped for that subscriber only and its ``dropped`` counter goes up, so a
slow reader never stalls a frame exchange.
"""

from __future__ import annotations

import logging
import queue
import threading
import time
from collections.abc import Callable, Iterator
from typing import Any

from picoforge.core.model import DiagnosticEvent, EventKind

LOGGER = logging.getLogger(__name__)

DEFAULT_BUFFER_SIZE = 256


class Subscription:
    def __init__(self, stream: DiagnosticStream, buffer_size: int) -> None:
        self._stream = stream
        self._queue: queue.Queue[DiagnosticEvent] = queue.Queue(maxsize=buffer_size)
        self._dropped = 0
        self._closed = False

    @property
    def dropped(self) -> int:
        return self._dropped

    @property
    def closed(self) -> bool:
        return self._closed

    def _offer(self, event: DiagnosticEvent) -> None:
        try:
            self._queue.put_nowait(event)
        except queue.Full:
            self._dropped += 1

    def poll(self, timeout: float | None = None) -> DiagnosticEvent | None:
        try:
            return self._queue.get(timeout=timeout) if timeout else self._queue.get_nowait()
        except queue.Empty:
            return None

    def drain(self) -> list[DiagnosticEvent]:
        events: list[DiagnosticEvent] = []
        while True:
            try:
                events.append(self._queue.get_nowait())
            except queue.Empty:
                return events

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._stream._unsubscribe(self)

    def __iter__(self) -> Iterator[DiagnosticEvent]:
        return self

    def __next__(self) -> DiagnosticEvent:
        # Blocks until the next event; the stream itself never ends.
        while not self._closed:
            event = self.poll(timeout=0.25)
            if event is not None:
                return event
        raise StopIteration

    def __enter__(self) -> Subscription:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


class DiagnosticStream:
    def __init__(
        self,
        *,
        buffer_size: int = DEFAULT_BUFFER_SIZE,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if buffer_size < 1:
            raise ValueError("buffer_size must be positive")
        self.buffer_size = buffer_size
        self._clock = clock
        self._subscribers: tuple[Subscription, ...] = ()
        self._registration_lock = threading.Lock()

    def subscribe(self, *, buffer_size: int | None = None) -> Subscription:
        subscription = Subscription(self, buffer_size or self.buffer_size)
        with self._registration_lock:
            self._subscribers = self._subscribers + (subscription,)
        return subscription

    def _unsubscribe(self, subscription: Subscription) -> None:
        with self._registration_lock:
            self._subscribers = tuple(s for s in self._subscribers if s is not subscription)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def publish(self, kind: EventKind, message: str, **data: Any) -> DiagnosticEvent:
        event = DiagnosticEvent(timestamp=self._clock(), kind=kind, message=message, data=data)
        LOGGER.debug("%s: %s", kind.value, message)
        for subscription in self._subscribers:
            subscription._offer(event)
        return event

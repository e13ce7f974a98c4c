"""Lifecycle event stream.

The driver publishes typed events; any number of consumers (stdio front-end,
log sink, tests) subscribe independently. Correctness never depends on a
consumer reading them:
- Subscriber callbacks run under `suppress(Exception)`.
- History is a bounded deque, so a long session cannot grow it unboundedly.
- `stream()` queues drop the oldest event when a slow reader falls behind.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from collections.abc import AsyncIterator, Callable
from contextlib import suppress
from dataclasses import asdict, dataclass, field
from typing import Any, ClassVar

logger = logging.getLogger("driver.browser.events")


@dataclass(frozen=True)
class Event:
    name: ClassVar[str] = "Event"
    ts_ms: int = field(default_factory=lambda: int(time.time() * 1000), kw_only=True)

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.name, "data": asdict(self)}


@dataclass(frozen=True)
class EngineDownloading(Event):
    name: ClassVar[str] = "EngineDownloading"
    url: str
    dest: str


@dataclass(frozen=True)
class EngineDownloadProgress(Event):
    name: ClassVar[str] = "EngineDownloadProgress"
    downloaded: int
    total: int | None = None


@dataclass(frozen=True)
class EngineDownloaded(Event):
    name: ClassVar[str] = "EngineDownloaded"
    path: str


@dataclass(frozen=True)
class EngineLaunched(Event):
    name: ClassVar[str] = "EngineLaunched"
    mode: str
    endpoint: str
    binary: str | None = None


@dataclass(frozen=True)
class PageNavigating(Event):
    name: ClassVar[str] = "PageNavigating"
    url: str


@dataclass(frozen=True)
class PageLoaded(Event):
    name: ClassVar[str] = "PageLoaded"
    url: str
    duration_ms: int
    title: str | None = None


@dataclass(frozen=True)
class CaptureSucceeded(Event):
    name: ClassVar[str] = "CaptureSucceeded"
    kind: str
    size_bytes: int
    path: str | None = None


@dataclass(frozen=True)
class ScriptProgress(Event):
    name: ClassVar[str] = "ScriptProgress"
    script_name: str
    step: int
    total: int
    method: str
    status: str


@dataclass(frozen=True)
class TimeoutsRepeated(Event):
    name: ClassVar[str] = "TimeoutsRepeated"
    operation: str
    consecutive: int
    policy: str


@dataclass(frozen=True)
class SessionOpened(Event):
    name: ClassVar[str] = "SessionOpened"
    session_id: str
    profile: str


@dataclass(frozen=True)
class SessionClosed(Event):
    name: ClassVar[str] = "SessionClosed"
    session_id: str


@dataclass(frozen=True)
class ErrorOccurred(Event):
    name: ClassVar[str] = "Error"
    code: str
    message: str


Subscriber = Callable[[Event], None]


class EventBus:
    """In-process publish/subscribe channel with a bounded history."""

    def __init__(self, *, history: int = 500) -> None:
        self._subscribers: list[Subscriber] = []
        self._history: deque[Event] = deque(maxlen=max(1, int(history)))

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register a callback; returns an unsubscribe function."""
        self._subscribers.append(callback)

        def _unsubscribe() -> None:
            with suppress(ValueError):
                self._subscribers.remove(callback)

        return _unsubscribe

    def publish(self, event: Event) -> None:
        self._history.append(event)
        logger.debug("event %s %s", event.name, event)
        for callback in list(self._subscribers):
            with suppress(Exception):
                callback(event)

    def recent(self, limit: int | None = None, *, name: str | None = None) -> list[Event]:
        items = [ev for ev in self._history if name is None or ev.name == name]
        if limit is not None:
            items = items[-max(0, int(limit)) :]
        return items

    async def stream(self, *, maxsize: int = 256) -> AsyncIterator[Event]:
        """Yield events published after the call, until the consumer stops iterating."""
        queue: asyncio.Queue[Event] = asyncio.Queue(maxsize=max(1, int(maxsize)))

        def _enqueue(event: Event) -> None:
            if queue.full():
                with suppress(asyncio.QueueEmpty):
                    queue.get_nowait()
            queue.put_nowait(event)

        unsubscribe = self.subscribe(_enqueue)
        try:
            while True:
                yield await queue.get()
        finally:
            unsubscribe()


__all__ = [
    "CaptureSucceeded",
    "EngineDownloadProgress",
    "EngineDownloaded",
    "EngineDownloading",
    "EngineLaunched",
    "ErrorOccurred",
    "Event",
    "EventBus",
    "PageLoaded",
    "PageNavigating",
    "ScriptProgress",
    "SessionClosed",
    "SessionOpened",
    "TimeoutsRepeated",
]

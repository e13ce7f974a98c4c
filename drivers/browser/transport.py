"""CDP WebSocket transport (asyncio).

One transport carries the browser-level connection and every flattened
target session attached over it. Commands are correlated by id; events are
routed to registered waiters first, then kept in a bounded backlog.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections import deque
from collections.abc import Callable
from contextlib import suppress
from dataclasses import dataclass
from typing import Any

import websockets
from websockets.exceptions import ConnectionClosed as WsConnectionClosed

from .errors import CdpProtocolError, ConnectionClosed, LaunchError

logger = logging.getLogger("driver.browser.transport")

EventPredicate = Callable[[dict[str, Any]], bool]
EventListener = Callable[[dict[str, Any]], None]


@dataclass
class _EventWaiter:
    method: str
    session_id: str | None
    predicate: EventPredicate | None
    future: asyncio.Future

    def matches(self, event: dict[str, Any]) -> bool:
        if event.get("method") != self.method:
            return False
        if self.session_id is not None and event.get("sessionId") != self.session_id:
            return False
        if self.predicate is not None:
            params = event.get("params")
            with suppress(Exception):
                return bool(self.predicate(params if isinstance(params, dict) else {}))
            return False
        return True


class CdpTransport:
    """Low-level CDP WebSocket connection."""

    def __init__(self, ws: Any, ws_url: str, *, max_events: int = 2000) -> None:
        self._ws = ws
        self.ws_url = ws_url
        self._next_id = 1
        self._pending: dict[int, tuple[str, asyncio.Future]] = {}
        self._waiters: list[_EventWaiter] = []
        # CDP is event-heavy; keep a bounded backlog so late waiters can still find recent events.
        self._events: deque[dict[str, Any]] = deque(maxlen=max(1, int(max_events)))
        self._listeners: list[EventListener] = []
        self._closed = False
        self._reader: asyncio.Task | None = None

    @classmethod
    async def connect(cls, ws_url: str, *, open_timeout: float = 10.0) -> CdpTransport:
        try:
            ws = await websockets.connect(
                ws_url,
                max_size=None,
                ping_interval=None,
                open_timeout=open_timeout,
            )
        except (OSError, asyncio.TimeoutError, websockets.exceptions.WebSocketException) as exc:
            raise LaunchError(f"Could not open CDP WebSocket {ws_url}: {exc}") from exc
        transport = cls(ws, ws_url)
        transport.start()
        logger.info("CDP transport connected: %s", ws_url)
        return transport

    def start(self) -> None:
        if self._reader is None:
            self._reader = asyncio.create_task(self._read_loop(), name="cdp-reader")

    @property
    def closed(self) -> bool:
        return self._closed

    def add_listener(self, listener: EventListener) -> Callable[[], None]:
        """Attach a best-effort listener called for every received CDP event."""
        self._listeners.append(listener)

        def _remove() -> None:
            with suppress(ValueError):
                self._listeners.remove(listener)

        return _remove

    async def send(
        self,
        method: str,
        params: dict[str, Any] | None = None,
        *,
        session_id: str | None = None,
    ) -> dict[str, Any]:
        """Send a CDP command and wait for its response."""
        if self._closed:
            raise ConnectionClosed()
        msg_id = self._next_id
        self._next_id += 1

        msg: dict[str, Any] = {"id": msg_id, "method": method}
        if params:
            msg["params"] = params
        if session_id:
            msg["sessionId"] = session_id

        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending[msg_id] = (method, future)
        try:
            await self._ws.send(json.dumps(msg))
        except WsConnectionClosed as exc:
            self._pending.pop(msg_id, None)
            raise ConnectionClosed(f"CDP connection closed while sending {method}") from exc
        try:
            return await future
        finally:
            self._pending.pop(msg_id, None)

    def expect_event(
        self,
        method: str,
        *,
        session_id: str | None = None,
        predicate: EventPredicate | None = None,
    ) -> asyncio.Future:
        """Register interest in an event before triggering it; returns a future of its params."""
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        if self._closed:
            future.set_exception(ConnectionClosed())
            return future
        self._waiters.append(_EventWaiter(method, session_id, predicate, future))
        return future

    def pop_event(self, method: str, *, session_id: str | None = None) -> dict[str, Any] | None:
        """Pop the oldest buffered event params for the given event name."""
        for event in self._events:
            if event.get("method") != method:
                continue
            if session_id is not None and event.get("sessionId") != session_id:
                continue
            self._events.remove(event)
            params = event.get("params")
            return params if isinstance(params, dict) else {}
        return None

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        with suppress(Exception):
            await self._ws.close()
        reader = self._reader
        if reader is not None and not reader.done():
            reader.cancel()
            with suppress(asyncio.CancelledError, Exception):
                await reader
        self._fail_all(ConnectionClosed())
        logger.info("CDP transport closed: %s", self.ws_url)

    async def _read_loop(self) -> None:
        try:
            async for raw in self._ws:
                try:
                    data = json.loads(raw)
                except (TypeError, ValueError):
                    continue
                if not isinstance(data, dict):
                    continue
                if "id" in data:
                    self._resolve(data)
                elif isinstance(data.get("method"), str):
                    self._dispatch_event(data)
        except WsConnectionClosed as exc:
            logger.info("CDP socket closed: %s", exc)
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001
            logger.warning("CDP reader stopped: %s", exc)
        finally:
            self._closed = True
            self._fail_all(ConnectionClosed("CDP connection closed by peer"))

    def _resolve(self, data: dict[str, Any]) -> None:
        entry = self._pending.get(data.get("id"))  # type: ignore[arg-type]
        if entry is None:
            return
        method, future = entry
        if future.done():
            return
        if "error" in data:
            future.set_exception(CdpProtocolError(method, data["error"]))
        else:
            result = data.get("result")
            future.set_result(result if isinstance(result, dict) else {})

    def _dispatch_event(self, event: dict[str, Any]) -> None:
        for listener in list(self._listeners):
            with suppress(Exception):
                listener(event)

        self._waiters = [w for w in self._waiters if not w.future.done()]
        for waiter in self._waiters:
            if waiter.matches(event):
                params = event.get("params")
                waiter.future.set_result(params if isinstance(params, dict) else {})
                self._waiters.remove(waiter)
                return
        self._events.append(event)

    def _fail_all(self, exc: Exception) -> None:
        pending = list(self._pending.values())
        self._pending.clear()
        waiters = list(self._waiters)
        self._waiters.clear()
        for _method, future in pending:
            if not future.done():
                future.set_exception(exc)
        for waiter in waiters:
            if not waiter.future.done():
                waiter.future.set_exception(exc)
                # Nobody may be awaiting an abandoned waiter; mark the exception as seen.
                waiter.future.exception()


__all__ = ["CdpTransport"]

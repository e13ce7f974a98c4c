"""PageHandle: one attached page target over the shared transport.

Every operation takes the page lock, then awaits its work through the
TimeoutGuard. A deadline therefore releases the lock even though the
abandoned protocol exchange may still be in flight.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any

from .errors import (
    CdpProtocolError,
    CommandTimeout,
    ConnectionClosed,
    ElementNotFound,
    NavigationError,
    NavigationTimeout,
    OperationTimeout,
    ScriptEvaluationError,
)
from .events import EventBus, PageLoaded, PageNavigating
from .timeouts import TimeoutDefaults, TimeoutGuard

if TYPE_CHECKING:
    from .transport import CdpTransport

logger = logging.getLogger("driver.browser.page")

# (target_id, session_id) of a freshly attached target opened at the given URL.
Reattach = Callable[[str], Awaitable[tuple[str, str]]]
StateHook = Callable[[bool], None]


_ELEMENT_TEXT_JS = (
    "(() => { const el = document.querySelector(%s); "
    "return el ? {found: true, text: el.innerText ?? el.textContent ?? ''} : {found: false}; })()"
)


def normalize_remote_object(value: Any) -> Any:
    """Unwrap a Runtime.RemoteObject into a plain Python value."""
    if not isinstance(value, dict):
        return value
    # CDP returns undefined as {"type":"undefined"} (no "value" field); normalize undefined/null to None.
    if value.get("type") == "undefined":
        return None
    if value.get("type") == "object" and value.get("subtype") == "null":
        return None
    if "value" in value:
        return value["value"]
    if "unserializableValue" in value:
        return value["unserializableValue"]
    return value


def _exception_text(details: dict[str, Any]) -> str:
    exc = details.get("exception")
    if isinstance(exc, dict):
        desc = exc.get("description") or exc.get("value")
        if desc:
            return str(desc).splitlines()[0]
    return str(details.get("text") or "Uncaught exception")


class PageHandle:
    def __init__(
        self,
        transport: CdpTransport,
        *,
        target_id: str,
        session_id: str,
        guard: TimeoutGuard,
        timeouts: TimeoutDefaults | None = None,
        events: EventBus | None = None,
        reattach: Reattach | None = None,
        on_navigating: StateHook | None = None,
    ) -> None:
        self.transport = transport
        self.target_id = target_id
        self.session_id = session_id
        self.guard = guard
        self.timeouts = timeouts or TimeoutDefaults()
        self.events = events or EventBus()
        self._reattach = reattach
        self._on_navigating = on_navigating
        self._lock = asyncio.Lock()
        self._closed = False
        self.needs_recycle = False
        self.last_loaded_url: str | None = None

    @property
    def closed(self) -> bool:
        return self._closed or self.transport.closed

    def mark_closed(self) -> None:
        self._closed = True

    def _ensure_open(self) -> None:
        if self.closed:
            raise ConnectionClosed()

    def _send(self, method: str, params: dict[str, Any] | None = None) -> Awaitable[dict[str, Any]]:
        return self.transport.send(method, params, session_id=self.session_id)

    async def _enter(self) -> None:
        self._ensure_open()
        if self.needs_recycle:
            await self._recycle()

    async def _recycle(self) -> None:
        if self._reattach is None:
            self.needs_recycle = False
            return
        url = self.last_loaded_url or "about:blank"
        old_target = self.target_id
        logger.warning("recycling page target %s (reopening %s)", old_target, url)
        target_id, session_id = await self.guard.run(
            self._reattach(url),
            timeout=self.timeouts.navigation_s,
            operation="reattach page",
            error_cls=CommandTimeout,
        )
        self.target_id, self.session_id = target_id, session_id
        self.needs_recycle = False
        close_old = asyncio.ensure_future(self.transport.send("Target.closeTarget", {"targetId": old_target}))
        close_old.add_done_callback(lambda t: t.cancelled() or t.exception())

    async def enable(self) -> None:
        async with self._lock:
            self._ensure_open()
            for method in ("Page.enable", "Runtime.enable"):
                await self.guard.run(
                    self._send(method),
                    timeout=self.timeouts.command_s,
                    operation=method,
                    error_cls=CommandTimeout,
                )

    async def call(
        self,
        method: str,
        params: dict[str, Any] | None = None,
        *,
        timeout: float | None = None,
        operation: str | None = None,
        error_cls: type[OperationTimeout] = CommandTimeout,
    ) -> dict[str, Any]:
        """Send one raw CDP command to this page under the page lock and a deadline."""
        async with self._lock:
            await self._enter()
            return await self.guard.run(
                self._send(method, params),
                timeout=self.timeouts.command_s if timeout is None else timeout,
                operation=operation or method,
                error_cls=error_cls,
            )

    async def navigate(
        self, url: str, *, timeout: float | None = None, extra_params: dict[str, Any] | None = None
    ) -> dict[str, Any]:
        """Navigate and wait for `Page.loadEventFired`.

        `extra_params` (referrer, transitionType, ...) are sent along with the url.
        """
        deadline = self.timeouts.navigation_s if timeout is None else timeout
        async with self._lock:
            await self._enter()
            self.events.publish(PageNavigating(url=url))
            if self._on_navigating is not None:
                self._on_navigating(True)
            loaded = self.transport.expect_event("Page.loadEventFired", session_id=self.session_id)
            started = time.perf_counter()
            try:
                result = await self.guard.run(
                    self._navigate(url, loaded, extra_params),
                    timeout=deadline,
                    operation=f"navigate {url}",
                    error_cls=NavigationTimeout,
                )
            finally:
                if not loaded.done():
                    loaded.cancel()
                if self._on_navigating is not None:
                    self._on_navigating(False)
            self.last_loaded_url = url
            duration_ms = int((time.perf_counter() - started) * 1000)
            logger.info("navigated to %s in %dms", url, duration_ms)
            self.events.publish(PageLoaded(url=url, duration_ms=duration_ms))
            return result

    async def _navigate(
        self, url: str, loaded: asyncio.Future, extra_params: dict[str, Any] | None = None
    ) -> dict[str, Any]:
        try:
            result = await self._send("Page.navigate", {**(extra_params or {}), "url": url})
        except CdpProtocolError as exc:
            raise NavigationError(f"Navigation to {url} rejected: {exc.cdp_message}", details={"url": url}) from exc
        error_text = result.get("errorText")
        if error_text:
            raise NavigationError(f"Navigation to {url} failed: {error_text}", details={"url": url})
        if not result.get("loaderId"):
            # Same-document navigation: no load event follows.
            return result
        await loaded
        return result

    async def reload(
        self,
        *,
        ignore_cache: bool = False,
        timeout: float | None = None,
        extra_params: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        deadline = self.timeouts.navigation_s if timeout is None else timeout
        async with self._lock:
            await self._enter()
            loaded = self.transport.expect_event("Page.loadEventFired", session_id=self.session_id)

            async def _reload() -> dict[str, Any]:
                result = await self._send("Page.reload", {**(extra_params or {}), "ignoreCache": ignore_cache})
                await loaded
                return result

            try:
                return await self.guard.run(
                    _reload(), timeout=deadline, operation="reload", error_cls=NavigationTimeout
                )
            finally:
                if not loaded.done():
                    loaded.cancel()

    async def evaluate(
        self,
        expression: str,
        *,
        await_promise: bool = True,
        return_by_value: bool = True,
        timeout: float | None = None,
        error_cls: type[OperationTimeout] = CommandTimeout,
        extra_params: dict[str, Any] | None = None,
    ) -> Any:
        """Evaluate an expression in page context and return its value."""
        try:
            result = await self.call(
                "Runtime.evaluate",
                {
                    **(extra_params or {}),
                    "expression": expression,
                    "returnByValue": return_by_value,
                    "awaitPromise": await_promise,
                },
                timeout=timeout,
                error_cls=error_cls,
            )
        except CdpProtocolError as exc:
            raise ScriptEvaluationError(f"Runtime.evaluate rejected: {exc.cdp_message}") from exc
        details = result.get("exceptionDetails")
        if isinstance(details, dict):
            raise ScriptEvaluationError(_exception_text(details), details={"expression": expression[:200]})
        return normalize_remote_object(result.get("result"))

    async def current_url(self) -> str:
        return await self.evaluate("window.location.href") or ""

    async def title(self) -> str:
        return await self.evaluate("document.title") or ""

    async def content(
        self, *, timeout: float | None = None, error_cls: type[OperationTimeout] = CommandTimeout
    ) -> str:
        """Full serialized DOM (outerHTML of the document element)."""
        html = await self.evaluate(
            "document.documentElement ? document.documentElement.outerHTML : ''",
            timeout=timeout,
            error_cls=error_cls,
        )
        return html or ""

    async def text(self, *, timeout: float | None = None, error_cls: type[OperationTimeout] = CommandTimeout) -> str:
        text = await self.evaluate(
            "document.body ? document.body.innerText : ''", timeout=timeout, error_cls=error_cls
        )
        return text or ""

    async def element_text(
        self,
        selector: str,
        *,
        timeout: float | None = None,
        error_cls: type[OperationTimeout] = CommandTimeout,
    ) -> str:
        """Rendered text of the first element matching `selector`.

        Raises `ElementNotFound` when nothing matches.
        """
        found = await self.evaluate(
            _ELEMENT_TEXT_JS % json.dumps(selector), timeout=timeout, error_cls=error_cls
        )
        if not isinstance(found, dict) or not found.get("found"):
            raise ElementNotFound(selector)
        return str(found.get("text") or "")


__all__ = ["PageHandle", "normalize_remote_object"]

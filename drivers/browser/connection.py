"""BrowserConnection: owns exactly one CDP transport to one engine.

Two construction modes:
- Sandboxed (`launch`): resolve a binary, spawn it with a private profile,
  connect to its browser-level WebSocket.
- Attached (`attach`): connect to an engine that is already listening on a
  debug address; the process is never touched.

`CLOSED` is terminal. Nothing here reconnects on its own.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import os
import shutil
import tempfile
from contextlib import suppress
from pathlib import Path
from typing import Any

from .config import MODE_ATTACHED, MODE_SANDBOXED, TIMEOUT_POLICY_RECYCLE, DriverConfig, expand_path
from .errors import CommandTimeout, ConnectionClosed, LaunchError, NoActivePage
from .events import (
    EngineDownloaded,
    EngineDownloading,
    EngineDownloadProgress,
    EngineLaunched,
    ErrorOccurred,
    EventBus,
)
from .fetcher import ChromeFetcher
from .launcher import BrowserLauncher, cdp_version, http_endpoint
from .page import PageHandle
from .timeouts import TimeoutDefaults, TimeoutGuard
from .transport import CdpTransport

logger = logging.getLogger("driver.browser.connection")


class ConnectionState(str, enum.Enum):
    UNINITIALIZED = "uninitialized"
    LAUNCHING = "launching"
    READY = "ready"
    NAVIGATING = "navigating"
    CLOSED = "closed"


def parse_debug_address(address: str) -> tuple[str | None, str | None]:
    """Split an attach address into (http base url, ws url); exactly one is set."""
    raw = (address or "").strip()
    if not raw:
        raise LaunchError("Empty debug address")
    if raw.startswith(("ws://", "wss://")):
        return None, raw
    if raw.startswith(("http://", "https://")):
        return raw.rstrip("/"), None
    if raw.isdigit():
        return http_endpoint("127.0.0.1", int(raw)), None
    host, sep, port = raw.rpartition(":")
    if not sep or not port.isdigit():
        raise LaunchError(f"Unrecognized debug address: {address!r} (expected host:port, http://… or ws://…)")
    return http_endpoint(host or "127.0.0.1", int(port)), None


async def resolve_binary(config: DriverConfig, events: EventBus | None = None) -> str:
    """Explicit path, then system candidates, then the fetcher cache (downloading if allowed)."""
    if config.binary_path:
        path = expand_path(config.binary_path)
        if not Path(path).is_file():
            raise LaunchError(f"Browser binary not found: {path}")
        return path

    detected = DriverConfig.detect_binary()
    if detected:
        return detected

    fetcher = ChromeFetcher(config.cache_dir)
    cached = fetcher.cached()
    if cached is not None:
        return str(cached)
    if not config.auto_download:
        raise LaunchError(
            "No Chromium/Chrome binary found. Install one, set DRIVER_BROWSER_BINARY, "
            "or enable DRIVER_AUTO_DOWNLOAD."
        )

    loop = asyncio.get_running_loop()

    def _publish(event: Any) -> None:
        if events is not None:
            loop.call_soon_threadsafe(events.publish, event)

    path = await asyncio.to_thread(
        fetcher.ensure,
        on_start=lambda url, dest: _publish(EngineDownloading(url=url, dest=dest)),
        on_progress=lambda done, total: _publish(EngineDownloadProgress(downloaded=done, total=total)),
    )
    if events is not None:
        events.publish(EngineDownloaded(path=str(path)))
    return str(path)


class BrowserConnection:
    def __init__(self, config: DriverConfig | None = None, *, events: EventBus | None = None) -> None:
        self.config = config or DriverConfig()
        self.events = events or EventBus()
        self.timeouts = TimeoutDefaults.from_config(self.config)
        self.guard = TimeoutGuard(
            policy=self.config.timeout_policy,
            threshold=self.config.timeout_threshold,
            events=self.events,
            on_threshold=self._on_repeated_timeouts,
        )
        self.state = ConnectionState.UNINITIALIZED
        self.mode = self.config.mode
        self.transport: CdpTransport | None = None
        self.launcher: BrowserLauncher | None = None
        self.binary_path: str | None = None
        self.endpoint: str | None = None
        self._owned_profile_dir: str | None = None
        self._page: PageHandle | None = None
        self._remove_listener = None

    # ─────────────────────────────────────────────────────────────────────────
    # Construction
    # ─────────────────────────────────────────────────────────────────────────

    @classmethod
    async def launch(
        cls,
        config: DriverConfig | None = None,
        *,
        user_data_dir: str | None = None,
        events: EventBus | None = None,
    ) -> BrowserConnection:
        conn = cls(config, events=events)
        conn.mode = MODE_SANDBOXED
        try:
            await conn._start_sandboxed(user_data_dir)
        except BaseException:
            await conn.close()
            raise
        return conn

    @classmethod
    async def attach(
        cls,
        address: str,
        *,
        config: DriverConfig | None = None,
        events: EventBus | None = None,
    ) -> BrowserConnection:
        conn = cls(config, events=events)
        conn.mode = MODE_ATTACHED
        try:
            await conn._start_attached(address)
        except BaseException:
            await conn.close()
            raise
        return conn

    async def _start_sandboxed(self, user_data_dir: str | None) -> None:
        self._set_state(ConnectionState.LAUNCHING)
        if user_data_dir is None:
            user_data_dir = tempfile.mkdtemp(prefix="browser-driver-")
            self._owned_profile_dir = user_data_dir

        self.binary_path = await resolve_binary(self.config, self.events)
        self.launcher = BrowserLauncher(self.config, binary_path=self.binary_path, user_data_dir=user_data_dir)
        result = await asyncio.to_thread(self.launcher.ensure_running)
        if not result.started:
            detail = f"\n{result.log_tail}" if result.log_tail else ""
            self.events.publish(ErrorOccurred(code=LaunchError.code, message=result.message))
            raise LaunchError(f"{result.message} ({self.binary_path}){detail}", details={"command": result.command})

        version = await asyncio.to_thread(cdp_version, self.launcher.base_url)
        await self._open_transport(str(version.get("webSocketDebuggerUrl") or ""))
        self.endpoint = self.launcher.base_url
        self._set_state(ConnectionState.READY)
        logger.info("sandboxed engine ready: %s (%s)", self.endpoint, version.get("Browser", "?"))
        self.events.publish(EngineLaunched(mode=MODE_SANDBOXED, endpoint=self.endpoint, binary=self.binary_path))

    async def _start_attached(self, address: str) -> None:
        self._set_state(ConnectionState.LAUNCHING)
        base_url, ws_url = parse_debug_address(address)
        if ws_url is None:
            version = await asyncio.to_thread(cdp_version, base_url or "")
            ws_url = str(version.get("webSocketDebuggerUrl") or "")
        await self._open_transport(ws_url)
        self.endpoint = base_url or ws_url
        self._set_state(ConnectionState.READY)
        logger.info("attached to engine at %s", self.endpoint)
        self.events.publish(EngineLaunched(mode=MODE_ATTACHED, endpoint=self.endpoint))

    async def _open_transport(self, ws_url: str) -> None:
        if not ws_url:
            raise LaunchError("Engine did not report a webSocketDebuggerUrl")
        self.transport = await CdpTransport.connect(ws_url, open_timeout=self.config.launch_timeout)
        self._remove_listener = self.transport.add_listener(self._on_cdp_event)

    # ─────────────────────────────────────────────────────────────────────────
    # State
    # ─────────────────────────────────────────────────────────────────────────

    def _set_state(self, state: ConnectionState) -> None:
        if self.state is ConnectionState.CLOSED:
            return
        logger.debug("connection state %s -> %s", self.state.value, state.value)
        self.state = state

    def _on_navigating(self, active: bool) -> None:
        self._set_state(ConnectionState.NAVIGATING if active else ConnectionState.READY)

    def _on_repeated_timeouts(self, policy: str) -> None:
        if policy == TIMEOUT_POLICY_RECYCLE and self._page is not None:
            self._page.needs_recycle = True

    def _on_cdp_event(self, event: dict[str, Any]) -> None:
        if event.get("method") != "Target.detachedFromTarget":
            return
        page = self._page
        params = event.get("params") or {}
        if page is not None and params.get("sessionId") == page.session_id:
            logger.warning("page target %s detached; will reattach on next use", page.target_id)
            page.needs_recycle = True

    @property
    def closed(self) -> bool:
        return self.state is ConnectionState.CLOSED or (self.transport is not None and self.transport.closed)

    def _ensure_open(self) -> CdpTransport:
        if self.closed or self.transport is None:
            raise ConnectionClosed()
        return self.transport

    # ─────────────────────────────────────────────────────────────────────────
    # Targets
    # ─────────────────────────────────────────────────────────────────────────

    async def _browser_call(self, method: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        transport = self._ensure_open()
        return await self.guard.run(
            transport.send(method, params),
            timeout=self.timeouts.command_s,
            operation=method,
            error_cls=CommandTimeout,
        )

    async def targets(self) -> list[dict[str, Any]]:
        result = await self._browser_call("Target.getTargets")
        infos = result.get("targetInfos")
        return [t for t in infos if isinstance(t, dict)] if isinstance(infos, list) else []

    async def _attach_target(self, target_id: str) -> str:
        result = await self._browser_call("Target.attachToTarget", {"targetId": target_id, "flatten": True})
        session_id = result.get("sessionId")
        if not session_id:
            raise LaunchError(f"Target.attachToTarget returned no sessionId for {target_id}")
        transport = self._ensure_open()
        for method in ("Page.enable", "Runtime.enable"):
            await self.guard.run(
                transport.send(method, session_id=session_id),
                timeout=self.timeouts.command_s,
                operation=method,
                error_cls=CommandTimeout,
            )
        return str(session_id)

    async def _open_target(self, url: str) -> tuple[str, str]:
        created = await self._browser_call("Target.createTarget", {"url": url})
        target_id = str(created.get("targetId") or "")
        if not target_id:
            raise LaunchError("Target.createTarget returned no targetId")
        return target_id, await self._attach_target(target_id)

    async def page(self) -> PageHandle:
        """Return the active page, attaching to (or creating) one on first use."""
        self._ensure_open()
        if self._page is not None and not self._page.closed:
            return self._page

        pages = [t for t in await self.targets() if t.get("type") == "page"]
        if pages:
            target_id = str(pages[0].get("targetId"))
            session_id = await self._attach_target(target_id)
        else:
            target_id, session_id = await self._open_target("about:blank")

        self._page = PageHandle(
            self._ensure_open(),
            target_id=target_id,
            session_id=session_id,
            guard=self.guard,
            timeouts=self.timeouts,
            events=self.events,
            reattach=self._open_target,
            on_navigating=self._on_navigating,
        )
        logger.info("attached page target %s", target_id)
        return self._page

    async def new_page(self, url: str = "about:blank") -> PageHandle:
        """Open a fresh page target and make it the active page."""
        target_id, session_id = await self._open_target(url)
        if self._page is not None:
            self._page.mark_closed()
        self._page = PageHandle(
            self._ensure_open(),
            target_id=target_id,
            session_id=session_id,
            guard=self.guard,
            timeouts=self.timeouts,
            events=self.events,
            reattach=self._open_target,
            on_navigating=self._on_navigating,
        )
        return self._page

    def _active_page(self) -> PageHandle:
        self._ensure_open()
        if self._page is None:
            raise NoActivePage()
        return self._page

    async def navigate(self, url: str, *, timeout: float | None = None) -> dict[str, Any]:
        page = await self.page()
        return await page.navigate(url, timeout=timeout)

    async def current_url(self) -> str:
        return await self._active_page().current_url()

    async def title(self) -> str:
        return await self._active_page().title()

    async def version(self) -> dict[str, Any]:
        return await self._browser_call("Browser.getVersion")

    # ─────────────────────────────────────────────────────────────────────────
    # Teardown
    # ─────────────────────────────────────────────────────────────────────────

    async def close(self) -> None:
        """Close the transport, stop an owned engine, and drop an owned profile. Idempotent."""
        if self.state is ConnectionState.CLOSED:
            return
        self.state = ConnectionState.CLOSED
        if self._page is not None:
            self._page.mark_closed()
        if self._remove_listener is not None:
            self._remove_listener()
            self._remove_listener = None
        if self.transport is not None:
            with suppress(Exception):
                await self.transport.close()
        if self.launcher is not None:
            await asyncio.to_thread(self.launcher.stop)
        if self._owned_profile_dir and os.path.isdir(self._owned_profile_dir):
            await asyncio.to_thread(shutil.rmtree, self._owned_profile_dir, True)
        logger.info("connection closed (%s)", self.endpoint or self.mode)


__all__ = ["BrowserConnection", "ConnectionState", "parse_debug_address", "resolve_binary"]

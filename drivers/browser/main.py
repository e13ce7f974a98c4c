"""
JSON-lines stdio front-end for the browser driver.

One JSON-RPC 2.0 message per line on stdin, one per line on stdout. Logs go
to stderr. Driver events are forwarded as `notifications/event`.
"""

from __future__ import annotations

import asyncio
import base64
import json
import logging
import os
import sys
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any

from .config import DriverConfig
from .errors import DriverError
from .events import Event
from .recorder import RecordingOptions
from .registry import SessionRegistry
from .script import CdpScript, load_script, parse_script, script_from_dict, validate_script
from .session import LaunchConfig

logger = logging.getLogger("driver.browser")

SERVER_NAME = "browser-driver"
SERVER_VERSION = "0.1.0"

PARSE_ERROR = -32700
INVALID_REQUEST = -32600
INVALID_PARAMS = -32602
METHOD_NOT_FOUND = -32601
INTERNAL_ERROR = -32603
DRIVER_ERROR = -32000

__all__ = ["DriverServer", "main"]


def _write_message(payload: dict[str, Any]) -> None:
    """Write one JSON-RPC message to stdout."""
    data = json.dumps(payload, ensure_ascii=False, default=str)
    line = (data + "\n").encode()
    if dump_path := os.environ.get("DRIVER_DUMP_FRAMES"):
        if dump_dir := os.path.dirname(dump_path):
            os.makedirs(dump_dir, exist_ok=True)
        with open(dump_path, "ab") as fp:
            fp.write(b"--out--\n")
            fp.write(line)
    sys.stdout.buffer.write(line)
    sys.stdout.buffer.flush()


def _read_message() -> dict[str, Any] | str | None:
    """Read one message from stdin.

    Returns None at EOF, "" for a blank line, and the raw text when the line
    is not valid JSON so the caller can answer with a parse error.
    """
    line = sys.stdin.buffer.readline()
    if not line:
        return None
    line = line.strip()
    if not line:
        return ""
    try:
        msg = json.loads(line.decode())
    except (json.JSONDecodeError, UnicodeDecodeError):
        return line.decode(errors="replace")
    if os.environ.get("DRIVER_TRACE"):
        logger.info("recv %s", msg)
    return msg


def _script_param(params: dict[str, Any]) -> CdpScript:
    """Accept `script` as a JSON string or object, or `path` to a script file."""
    source = params.get("script")
    if source is None and params.get("path"):
        return load_script(str(params["path"]))
    if isinstance(source, dict):
        return script_from_dict(source)
    if isinstance(source, str):
        return parse_script(source)
    raise ValueError("'script' (string or object) or 'path' is required")


def _recording_options(raw: Any) -> RecordingOptions:
    if not isinstance(raw, dict):
        return RecordingOptions()
    defaults = RecordingOptions()
    return RecordingOptions(
        screenshot_format=str(raw.get("screenshot_format") or defaults.screenshot_format),
        save_html=bool(raw.get("save_html", defaults.save_html)),
        compute_hashes=bool(raw.get("compute_hashes", defaults.compute_hashes)),
        extract_interactive_elements=bool(
            raw.get("extract_interactive_elements", defaults.extract_interactive_elements)
        ),
        settle_seconds=float(raw.get("settle_seconds", defaults.settle_seconds)),
    )


Handler = Callable[[dict[str, Any]], Awaitable[Any]]


class DriverServer:
    """JSON-RPC dispatch over a SessionRegistry."""

    def __init__(
        self,
        registry: SessionRegistry | None = None,
        *,
        emit: Callable[[dict[str, Any]], None] = _write_message,
    ) -> None:
        self.registry = registry or SessionRegistry(DriverConfig.from_env())
        self.events = self.registry.events
        self._emit = emit
        self._unsubscribe = self.events.subscribe(self._forward_event)
        self._tasks: set[asyncio.Task] = set()
        self._handlers: dict[str, Handler] = {
            "initialize": self.handle_initialize,
            "ping": self.handle_ping,
            "session/launch": self.handle_session_launch,
            "session/status": self.handle_session_status,
            "session/close": self.handle_session_close,
            "session/close_all": self.handle_session_close_all,
            "script/validate": self.handle_script_validate,
            "script/execute": self.handle_script_execute,
            "script/record": self.handle_script_record,
            "page/navigate": self.handle_page_navigate,
            "page/screenshot": self.handle_page_screenshot,
            "events/recent": self.handle_events_recent,
        }

    def _forward_event(self, event: Event) -> None:
        self._emit({"jsonrpc": "2.0", "method": "notifications/event", "params": event.to_dict()})

    # ─────────────────────────────────────────────────────────────────────────
    # Handlers
    # ─────────────────────────────────────────────────────────────────────────

    async def handle_initialize(self, params: dict[str, Any]) -> dict[str, Any]:
        return {
            "serverInfo": {"name": SERVER_NAME, "version": SERVER_VERSION},
            "capabilities": {"methods": sorted(self._handlers), "events": True},
        }

    async def handle_ping(self, params: dict[str, Any]) -> dict[str, Any]:
        return {"pong": True}

    async def handle_session_launch(self, params: dict[str, Any]) -> dict[str, Any]:
        session = await self.registry.launch(LaunchConfig.from_dict(params))
        return self.registry.get(session.id).info().to_dict()

    async def handle_session_status(self, params: dict[str, Any]) -> dict[str, Any]:
        return self.registry.status().to_dict()

    async def handle_session_close(self, params: dict[str, Any]) -> dict[str, Any]:
        session_id = params.get("session_id")
        if not session_id:
            raise ValueError("'session_id' is required")
        return {"closed": await self.registry.close(str(session_id))}

    async def handle_session_close_all(self, params: dict[str, Any]) -> dict[str, Any]:
        return {"closed": await self.registry.close_all()}

    async def handle_script_validate(self, params: dict[str, Any]) -> dict[str, Any]:
        source = params.get("script")
        if source is None:
            raise ValueError("'script' is required")
        return validate_script(source, strict=bool(params.get("strict", True))).to_dict()

    async def handle_script_execute(self, params: dict[str, Any]) -> dict[str, Any]:
        script = _script_param(params)
        active = self.registry.resolve(params.get("session_id"))
        async with active.run_lock:
            executor = await active.executor(on_error=params.get("on_error"), output_dir=params.get("output_dir"))
            report = await executor.execute(script)
        return report.to_dict()

    async def handle_script_record(self, params: dict[str, Any]) -> dict[str, Any]:
        script = _script_param(params)
        session_dir = params.get("session_dir")
        if not session_dir:
            raise ValueError("'session_dir' is required")
        active = self.registry.resolve(params.get("session_id"))
        async with active.run_lock:
            recorder = await active.recorder(
                str(session_dir),
                options=_recording_options(params.get("options")),
                on_error=params.get("on_error"),
            )
            recorded = await recorder.record(script)
        return recorded.to_dict()

    async def handle_page_navigate(self, params: dict[str, Any]) -> dict[str, Any]:
        url = params.get("url")
        if not isinstance(url, str) or not url:
            raise ValueError("'url' is required")
        timeout = params.get("timeout")
        active = self.registry.resolve(params.get("session_id"))
        page = await active.page()
        return await page.navigate(url, timeout=float(timeout) if timeout is not None else None)

    async def handle_page_screenshot(self, params: dict[str, Any]) -> dict[str, Any]:
        active = self.registry.resolve(params.get("session_id"))
        capture = await active.capture()
        fmt = str(params.get("format") or "png")
        quality = params.get("quality")
        full_page = bool(params.get("full_page", False))
        if params.get("path"):
            info = await capture.capture_to_file(Path(str(params["path"])), format=fmt, quality=quality, full_page=full_page)
            return info.to_dict()
        data = await capture.screenshot(format=fmt, quality=quality, full_page=full_page)
        return {"format": fmt, "size_bytes": len(data), "data": base64.b64encode(data).decode("ascii")}

    async def handle_events_recent(self, params: dict[str, Any]) -> dict[str, Any]:
        limit = params.get("limit")
        events = self.events.recent(int(limit) if limit is not None else None, name=params.get("name"))
        return {"events": [ev.to_dict() for ev in events]}

    # ─────────────────────────────────────────────────────────────────────────
    # Dispatch
    # ─────────────────────────────────────────────────────────────────────────

    async def handle(self, message: dict[str, Any]) -> dict[str, Any] | None:
        """Run one request and build its response. Notifications get no response."""
        method = message.get("method")
        request_id = message.get("id")
        params = message.get("params") or {}
        if isinstance(method, str) and method.startswith("notifications/"):
            return None

        handler = self._handlers.get(method or "")
        if handler is None:
            return _error(request_id, METHOD_NOT_FOUND, f"Method {method} not found")
        if not isinstance(params, dict):
            return _error(request_id, INVALID_PARAMS, "params must be an object")

        try:
            result = await handler(params)
        except DriverError as exc:
            logger.info("driver_error method=%s code=%s message=%s", method, exc.code, exc.message)
            return _error(request_id, DRIVER_ERROR, exc.message, exc.to_dict())
        except (ValueError, TypeError, KeyError) as exc:
            logger.info("invalid_params method=%s error=%s", method, exc)
            return _error(request_id, INVALID_PARAMS, str(exc))
        except Exception as exc:
            logger.exception("request_failed method=%s", method)
            return _error(request_id, INTERNAL_ERROR, str(exc))
        return {"jsonrpc": "2.0", "id": request_id, "result": result}

    async def dispatch(self, message: dict[str, Any]) -> None:
        response = await self.handle(message)
        if response is not None:
            self._emit(response)

    def submit(self, message: dict[str, Any]) -> asyncio.Task:
        """Dispatch in the background so a long script run does not block `ping`."""
        task = asyncio.get_running_loop().create_task(self.dispatch(message))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def shutdown(self) -> None:
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        closed = await self.registry.close_all()
        if closed:
            logger.info("closed %d session(s) on shutdown", closed)
        self._unsubscribe()

    async def serve(self) -> None:
        try:
            while True:
                message = await asyncio.to_thread(_read_message)
                if message is None:
                    break
                if message == "":
                    continue
                if isinstance(message, str):
                    self._emit(_error(None, PARSE_ERROR, "Parse error"))
                    continue
                if not isinstance(message, dict):
                    self._emit(_error(None, INVALID_REQUEST, "Invalid Request"))
                    continue
                self.submit(message)
        finally:
            await self.shutdown()


def _error(request_id: Any, code: int, message: str, data: Any = None) -> dict[str, Any]:
    error: dict[str, Any] = {"code": code, "message": message}
    if data is not None:
        error["data"] = data
    return {"jsonrpc": "2.0", "id": request_id, "error": error}


def main() -> None:
    """Entry point for the `browser-driver` console script."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(message)s",
        stream=sys.stderr,
    )
    server = DriverServer()
    try:
        asyncio.run(server.serve())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()

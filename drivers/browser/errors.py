"""Typed error taxonomy for the driver.

Every failure the driver can produce resolves to a `DriverError` subclass.
Request-level errors (`ScriptParseError`, `SessionLimitReached`,
`ConnectionClosed`) are raised to the caller; per-command failures are folded
into `CommandResult.error` by the executor.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any


class DriverError(Exception):
    """Base class for all driver errors."""

    code = "driver_error"

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = dict(details or {})

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"error": True, "code": self.code, "message": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class LaunchError(DriverError):
    code = "launch_failed"


class ConnectionClosed(DriverError):
    code = "connection_closed"

    def __init__(self, message: str = "Connection is closed") -> None:
        super().__init__(message)


class SessionLimitReached(DriverError):
    code = "session_limit_reached"

    def __init__(self, limit: int) -> None:
        super().__init__(f"Maximum active sessions limit reached: {limit}", details={"limit": limit})
        self.limit = limit


class SessionNotFound(DriverError):
    code = "session_not_found"

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session not found: {session_id}", details={"session_id": session_id})
        self.session_id = session_id


class NoActivePage(DriverError):
    code = "no_active_page"

    def __init__(self, message: str = "No page is open yet") -> None:
        super().__init__(message)


class ElementNotFound(DriverError):
    code = "element_not_found"

    def __init__(self, selector: str) -> None:
        super().__init__(f"No element matches selector: {selector}", details={"selector": selector})
        self.selector = selector


class NavigationError(DriverError):
    code = "navigation_failed"


class ScriptEvaluationError(DriverError):
    code = "script_evaluation_failed"


class OperationTimeout(DriverError):
    """An awaited operation did not resolve before its deadline."""

    code = "timeout"

    def __init__(self, operation: str, timeout: float | None) -> None:
        super().__init__(
            f"{operation} timed out after {timeout:.2f}s" if timeout is not None else f"{operation} timed out",
            details={"operation": operation, "timeout_s": timeout},
        )
        self.operation = operation
        self.timeout = timeout


class CaptureTimeout(OperationTimeout):
    code = "capture_timeout"


class CommandTimeout(OperationTimeout):
    code = "command_timeout"


class NavigationTimeout(OperationTimeout, NavigationError):
    code = "navigation_timeout"


class CaptureIntegrityError(DriverError):
    code = "capture_integrity"


class CdpProtocolError(DriverError):
    """The engine rejected a specific command."""

    code = "cdp_protocol_error"

    def __init__(self, method: str, error: Any) -> None:
        if isinstance(error, dict):
            cdp_code = error.get("code")
            text = str(error.get("message") or error)
            data = error.get("data")
        else:
            cdp_code, text, data = None, str(error), None
        message = f"{method}: {text}" if method else text
        if data:
            message = f"{message} ({data})"
        super().__init__(message, details={"method": method, "cdp_code": cdp_code})
        self.method = method
        self.cdp_code = cdp_code
        self.cdp_message = text


@dataclass(frozen=True)
class ErrorLocation:
    """Where in a script document a parse or validation error was found."""

    line: int | None = None
    column: int | None = None
    command_index: int | None = None
    field: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {k: v for k, v in self.__dict__.items() if v is not None}

    def __str__(self) -> str:
        parts: list[str] = []
        if self.line is not None:
            parts.append(f"line {self.line}")
        if self.column is not None:
            parts.append(f"column {self.column}")
        if self.command_index is not None:
            parts.append(f"cdp_commands[{self.command_index}]")
        if self.field:
            parts.append(f"field '{self.field}'")
        return ", ".join(parts)


class ScriptParseError(DriverError):
    """A command document is malformed; nothing from it was executed."""

    code = "script_parse_error"

    def __init__(self, message: str, location: ErrorLocation | None = None) -> None:
        where = str(location) if location is not None else ""
        super().__init__(
            f"{message} ({where})" if where else message,
            details={"location": location.to_dict()} if location is not None else None,
        )
        self.reason = message
        self.location = location


__all__ = [
    "CaptureIntegrityError",
    "CaptureTimeout",
    "CdpProtocolError",
    "CommandTimeout",
    "ConnectionClosed",
    "DriverError",
    "ElementNotFound",
    "ErrorLocation",
    "LaunchError",
    "NavigationError",
    "NavigationTimeout",
    "NoActivePage",
    "OperationTimeout",
    "ScriptEvaluationError",
    "ScriptParseError",
    "SessionLimitReached",
    "SessionNotFound",
]

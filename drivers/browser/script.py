"""Command scripts: typed command variants, parsing and static validation.

High-frequency CDP methods parse into typed variants; everything else
becomes `Raw(method, params)`. Params a typed variant does not model ride
along in its `extra_params` and are sent with the typed fields, so the
command keeps its navigation or capture semantics and no parameter is
dropped on the way to the engine.

Parsing is all-or-nothing: any structural problem raises `ScriptParseError`
with an `ErrorLocation`, and no command from that document runs.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, ClassVar, Union

from .errors import ErrorLocation, ScriptParseError

KNOWN_DOMAINS: frozenset[str] = frozenset(
    {
        "Accessibility", "Animation", "Audits", "Autofill", "BackgroundService", "Browser",
        "CSS", "CacheStorage", "Cast", "Console", "DOM", "DOMDebugger", "DOMSnapshot",
        "DOMStorage", "Database", "Debugger", "DeviceOrientation", "Emulation",
        "EventBreakpoints", "Extensions", "FedCm", "Fetch", "FileSystem",
        "HeadlessExperimental", "HeapProfiler", "IO", "IndexedDB", "Input", "Inspector",
        "LayerTree", "Log", "Media", "Memory", "Network", "Overlay", "PWA", "Page",
        "Performance", "PerformanceTimeline", "Preload", "Profiler", "Runtime", "Schema",
        "Security", "ServiceWorker", "Storage", "SystemInfo", "Target", "Tethering",
        "Tracing", "WebAudio", "WebAuthn",
    }
)  # fmt: skip


def method_domain(method: str) -> str | None:
    domain, sep, name = (method or "").partition(".")
    if not sep or not domain or not name:
        return None
    return domain


def is_supported_method(method: str) -> bool:
    return method_domain(method) in KNOWN_DOMAINS


@dataclass(frozen=True)
class _CommandBase:
    method: ClassVar[str] = ""
    description: str | None = field(default=None, kw_only=True)
    save_as: str | None = field(default=None, kw_only=True)

    def params(self) -> dict[str, Any]:
        return {}

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"method": self.method, "params": self.params()}
        if self.description is not None:
            out["description"] = self.description
        if self.save_as is not None:
            out["save_as"] = self.save_as
        return out


@dataclass(frozen=True)
class Navigate(_CommandBase):
    method: ClassVar[str] = "Page.navigate"
    url: str = ""
    extra_params: dict[str, Any] = field(default_factory=dict)

    def params(self) -> dict[str, Any]:
        return {**self.extra_params, "url": self.url}


@dataclass(frozen=True)
class Reload(_CommandBase):
    method: ClassVar[str] = "Page.reload"
    ignore_cache: bool = False
    extra_params: dict[str, Any] = field(default_factory=dict)

    def params(self) -> dict[str, Any]:
        return {**self.extra_params, "ignoreCache": self.ignore_cache}


@dataclass(frozen=True)
class Evaluate(_CommandBase):
    method: ClassVar[str] = "Runtime.evaluate"
    expression: str = ""
    return_by_value: bool = True
    await_promise: bool = True
    extra_params: dict[str, Any] = field(default_factory=dict)

    def params(self) -> dict[str, Any]:
        return {
            **self.extra_params,
            "expression": self.expression,
            "returnByValue": self.return_by_value,
            "awaitPromise": self.await_promise,
        }


@dataclass(frozen=True)
class CaptureScreenshot(_CommandBase):
    method: ClassVar[str] = "Page.captureScreenshot"
    format: str = "png"
    quality: int | None = None
    capture_beyond_viewport: bool = False
    extra_params: dict[str, Any] = field(default_factory=dict)

    def params(self) -> dict[str, Any]:
        out: dict[str, Any] = {**self.extra_params, "format": self.format}
        if self.quality is not None:
            out["quality"] = self.quality
        if self.capture_beyond_viewport:
            out["captureBeyondViewport"] = True
        return out


@dataclass(frozen=True)
class InsertText(_CommandBase):
    method: ClassVar[str] = "Input.insertText"
    text: str = ""
    extra_params: dict[str, Any] = field(default_factory=dict)

    def params(self) -> dict[str, Any]:
        return {**self.extra_params, "text": self.text}


@dataclass(frozen=True)
class DispatchMouseEvent(_CommandBase):
    method: ClassVar[str] = "Input.dispatchMouseEvent"
    event: dict[str, Any] = field(default_factory=dict)

    def params(self) -> dict[str, Any]:
        return dict(self.event)


@dataclass(frozen=True)
class DispatchKeyEvent(_CommandBase):
    method: ClassVar[str] = "Input.dispatchKeyEvent"
    event: dict[str, Any] = field(default_factory=dict)

    def params(self) -> dict[str, Any]:
        return dict(self.event)


@dataclass(frozen=True)
class Raw(_CommandBase):
    """Long-tail fallback: any CDP method with an untyped params object."""

    raw_method: str = ""
    raw_params: dict[str, Any] = field(default_factory=dict)

    @property
    def method(self) -> str:  # type: ignore[override]
        return self.raw_method

    def params(self) -> dict[str, Any]:
        return dict(self.raw_params)


Command = Union[Navigate, Reload, Evaluate, CaptureScreenshot, InsertText, DispatchMouseEvent, DispatchKeyEvent, Raw]


@dataclass(frozen=True)
class CdpScript:
    name: str
    description: str = ""
    commands: tuple[Command, ...] = ()
    created: str | None = None
    author: str | None = None
    tags: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "name": self.name,
            "description": self.description,
            "cdp_commands": [cmd.to_dict() for cmd in self.commands],
        }
        if self.created is not None:
            out["created"] = self.created
        if self.author is not None:
            out["author"] = self.author
        if self.tags:
            out["tags"] = list(self.tags)
        return out

    def to_json(self, *, indent: int | None = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent, ensure_ascii=False)


# ─────────────────────────────────────────────────────────────────────────────
# Parsing
# ─────────────────────────────────────────────────────────────────────────────


def _fail(message: str, *, index: int | None = None, field_name: str | None = None) -> ScriptParseError:
    return ScriptParseError(message, ErrorLocation(command_index=index, field=field_name))


def _opt_str(obj: dict[str, Any], key: str, *, index: int | None = None) -> str | None:
    value = obj.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise _fail(f"'{key}' must be a string", index=index, field_name=key)
    return value


def _require(params: dict[str, Any], key: str, kind: type | tuple[type, ...], index: int) -> Any:
    value = params.get(key)
    if not isinstance(value, kind) or (isinstance(value, bool) and kind is not bool):
        raise _fail(f"params.{key} is required for this method", index=index, field_name=f"params.{key}")
    return value


def _typed_bool(params: dict[str, Any], key: str, default: bool, index: int) -> bool:
    value = params.get(key, default)
    if not isinstance(value, bool):
        raise _fail(f"params.{key} must be a boolean", index=index, field_name=f"params.{key}")
    return value


_MODELLED_KEYS: dict[str, frozenset[str]] = {
    "Page.navigate": frozenset({"url"}),
    "Page.reload": frozenset({"ignoreCache"}),
    "Runtime.evaluate": frozenset({"expression", "returnByValue", "awaitPromise"}),
    "Page.captureScreenshot": frozenset({"format", "quality", "captureBeyondViewport"}),
    "Input.insertText": frozenset({"text"}),
}


def parse_command(obj: Any, index: int = 0) -> Command:
    if not isinstance(obj, dict):
        raise _fail("command must be an object", index=index)
    method = obj.get("method")
    if not isinstance(method, str) or not method.strip():
        raise _fail("'method' must be a non-empty string", index=index, field_name="method")
    method = method.strip()
    params = obj.get("params", {})
    if params is None:
        params = {}
    if not isinstance(params, dict):
        raise _fail("'params' must be an object", index=index, field_name="params")
    meta: dict[str, Any] = {
        "description": _opt_str(obj, "description", index=index),
        "save_as": _opt_str(obj, "save_as", index=index),
    }

    modelled = _MODELLED_KEYS.get(method)
    if modelled is not None:
        meta["extra_params"] = {k: v for k, v in params.items() if k not in modelled}

    if method == "Page.navigate":
        return Navigate(url=_require(params, "url", str, index), **meta)
    if method == "Page.reload":
        return Reload(ignore_cache=_typed_bool(params, "ignoreCache", False, index), **meta)
    if method == "Runtime.evaluate":
        return Evaluate(
            expression=_require(params, "expression", str, index),
            return_by_value=_typed_bool(params, "returnByValue", True, index),
            await_promise=_typed_bool(params, "awaitPromise", True, index),
            **meta,
        )
    if method == "Page.captureScreenshot":
        fmt = params.get("format", "png")
        if fmt not in {"png", "jpeg", "webp"}:
            raise _fail("params.format must be png, jpeg or webp", index=index, field_name="params.format")
        quality = params.get("quality")
        if quality is not None and (isinstance(quality, bool) or not isinstance(quality, int)):
            raise _fail("params.quality must be an integer", index=index, field_name="params.quality")
        return CaptureScreenshot(
            format=fmt,
            quality=quality,
            capture_beyond_viewport=_typed_bool(params, "captureBeyondViewport", False, index),
            **meta,
        )
    if method == "Input.insertText":
        return InsertText(text=_require(params, "text", str, index), **meta)
    if method == "Input.dispatchMouseEvent":
        _require(params, "type", str, index)
        _require(params, "x", (int, float), index)
        _require(params, "y", (int, float), index)
        return DispatchMouseEvent(event=dict(params), **meta)
    if method == "Input.dispatchKeyEvent":
        _require(params, "type", str, index)
        return DispatchKeyEvent(event=dict(params), **meta)
    return Raw(raw_method=method, raw_params=dict(params), **meta)


_TYPED_METHODS = frozenset(_MODELLED_KEYS) | {"Input.dispatchMouseEvent", "Input.dispatchKeyEvent"}


def promote_raw(command: Command, index: int = 0) -> Command:
    """Turn a `Raw` naming a typed method into that typed variant.

    Raises `ScriptParseError` when the params do not satisfy the variant.
    """
    if isinstance(command, Raw) and command.method in _TYPED_METHODS:
        return parse_command(command.to_dict(), index)
    return command


def script_from_dict(data: Any) -> CdpScript:
    if not isinstance(data, dict):
        raise ScriptParseError("script document must be a JSON object")
    name = data.get("name")
    if not isinstance(name, str):
        raise _fail("'name' must be a string", field_name="name")
    description = data.get("description", "")
    if description is None:
        description = ""
    if not isinstance(description, str):
        raise _fail("'description' must be a string", field_name="description")
    raw_commands = data.get("cdp_commands")
    if not isinstance(raw_commands, list):
        raise _fail("'cdp_commands' must be an array", field_name="cdp_commands")
    tags = data.get("tags") or []
    if not isinstance(tags, list) or not all(isinstance(t, str) for t in tags):
        raise _fail("'tags' must be an array of strings", field_name="tags")

    commands = tuple(parse_command(obj, i) for i, obj in enumerate(raw_commands))
    return CdpScript(
        name=name,
        description=description,
        commands=commands,
        created=_opt_str(data, "created"),
        author=_opt_str(data, "author"),
        tags=tuple(tags),
    )


def parse_script(text: str | bytes) -> CdpScript:
    """Parse a JSON script document."""
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ScriptParseError(
            f"invalid JSON: {exc.msg}", ErrorLocation(line=exc.lineno, column=exc.colno)
        ) from exc
    except (TypeError, UnicodeDecodeError) as exc:
        raise ScriptParseError(f"invalid JSON: {exc}") from exc
    return script_from_dict(data)


def load_script(path: str | Path) -> CdpScript:
    try:
        text = Path(path).read_text(encoding="utf-8")
    except OSError as exc:
        raise ScriptParseError(f"cannot read script {path}: {exc}") from exc
    return parse_script(text)


# ─────────────────────────────────────────────────────────────────────────────
# Static validation
# ─────────────────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class ValidationIssue:
    message: str
    location: ErrorLocation | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"message": self.message}
        if self.location is not None:
            out["location"] = self.location.to_dict()
        return out


@dataclass(frozen=True)
class ValidationResult:
    errors: tuple[ValidationIssue, ...] = ()
    warnings: tuple[ValidationIssue, ...] = ()
    script: CdpScript | None = None

    @property
    def is_valid(self) -> bool:
        return not self.errors

    def to_dict(self) -> dict[str, Any]:
        return {
            "valid": self.is_valid,
            "errors": [e.to_dict() for e in self.errors],
            "warnings": [w.to_dict() for w in self.warnings],
            "commands": len(self.script.commands) if self.script is not None else 0,
        }


def validate_script(source: str | bytes | dict[str, Any] | CdpScript, *, strict: bool = True) -> ValidationResult:
    """Check a script without executing it.

    Structural problems are reported as a single error. Unknown CDP domains are
    errors in strict mode and warnings otherwise.
    """
    try:
        if isinstance(source, CdpScript):
            script = source
        elif isinstance(source, dict):
            script = script_from_dict(source)
        else:
            script = parse_script(source)
    except ScriptParseError as exc:
        return ValidationResult(errors=(ValidationIssue(exc.reason, exc.location),))

    errors: list[ValidationIssue] = []
    warnings: list[ValidationIssue] = []
    if not script.name.strip():
        errors.append(ValidationIssue("script name is empty", ErrorLocation(field="name")))
    if not script.commands:
        errors.append(ValidationIssue("script has no commands", ErrorLocation(field="cdp_commands")))
    for i, cmd in enumerate(script.commands):
        where = ErrorLocation(command_index=i, field="method")
        if method_domain(cmd.method) is None:
            errors.append(ValidationIssue(f"'{cmd.method}' is not a Domain.method name", where))
        elif not is_supported_method(cmd.method):
            issue = ValidationIssue(f"Unsupported CDP method: {cmd.method}", where)
            (errors if strict else warnings).append(issue)
        if cmd.save_as is not None and not cmd.save_as.strip():
            warnings.append(ValidationIssue("save_as is empty", ErrorLocation(command_index=i, field="save_as")))
    return ValidationResult(errors=tuple(errors), warnings=tuple(warnings), script=script)


__all__ = [
    "CaptureScreenshot",
    "CdpScript",
    "Command",
    "DispatchKeyEvent",
    "DispatchMouseEvent",
    "Evaluate",
    "InsertText",
    "KNOWN_DOMAINS",
    "Navigate",
    "Raw",
    "Reload",
    "ValidationIssue",
    "ValidationResult",
    "is_supported_method",
    "load_script",
    "method_domain",
    "parse_command",
    "parse_script",
    "promote_raw",
    "script_from_dict",
    "validate_script",
]

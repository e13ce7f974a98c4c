"""CdpCommandExecutor: a sequential interpreter over a command list.

Command k+1 is never dispatched before command k has resolved (success,
failure or timeout). Per-command failures are folded into the report;
`ConnectionClosed` is the one failure that aborts the whole request.
"""

from __future__ import annotations

import asyncio
import enum
import json
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .capture import CaptureSubsystem
from .errors import ConnectionClosed, DriverError
from .events import EventBus, ScriptProgress
from .page import PageHandle
from .script import (
    CaptureScreenshot,
    CdpScript,
    Command,
    DispatchKeyEvent,
    DispatchMouseEvent,
    Evaluate,
    InsertText,
    Navigate,
    Raw,
    Reload,
    is_supported_method,
    promote_raw,
)

logger = logging.getLogger("driver.browser.executor")


class OnError(str, enum.Enum):
    ABORT = "abort"
    CONTINUE = "continue"

    @classmethod
    def parse(cls, raw: str | OnError | None) -> OnError:
        if isinstance(raw, OnError):
            return raw
        value = (raw or "").strip().lower()
        if value in {"abort", "stop", "fail_fast", "fail-fast"}:
            return cls.ABORT
        return cls.CONTINUE


class CommandStatus(str, enum.Enum):
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


def duration_to_dict(seconds: float) -> dict[str, int]:
    total_ns = max(0, int(round(seconds * 1_000_000_000)))
    return {"secs": total_ns // 1_000_000_000, "nanos": total_ns % 1_000_000_000}


def duration_from_dict(value: dict[str, Any]) -> float:
    return int(value.get("secs", 0)) + int(value.get("nanos", 0)) / 1_000_000_000


@dataclass(frozen=True)
class CommandResult:
    step: int
    method: str
    status: CommandStatus
    duration: float
    response: Any = None
    error: str | None = None
    saved_artifact: str | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "step": self.step,
            "method": self.method,
            "status": self.status.value,
            "duration": duration_to_dict(self.duration),
        }
        if self.error is not None:
            out["error"] = self.error
        if self.response is not None:
            out["response"] = self.response
        if self.saved_artifact is not None:
            out["saved_file"] = self.saved_artifact
        return out

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CommandResult:
        return cls(
            step=int(data["step"]),
            method=str(data["method"]),
            status=CommandStatus(data["status"]),
            duration=duration_from_dict(data.get("duration") or {}),
            response=data.get("response"),
            error=data.get("error"),
            saved_artifact=data.get("saved_file"),
        )


@dataclass(frozen=True)
class ExecutionReport:
    script_name: str
    total_commands: int
    successful: int
    failed: int
    skipped: int
    total_duration: float
    results: tuple[CommandResult, ...] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        if self.successful + self.failed + self.skipped != self.total_commands:
            raise ValueError(
                f"report arithmetic violated: {self.successful}+{self.failed}+{self.skipped} "
                f"!= {self.total_commands}"
            )
        if len(self.results) != self.total_commands:
            raise ValueError(f"expected {self.total_commands} results, got {len(self.results)}")

    @classmethod
    def from_results(cls, script_name: str, results: list[CommandResult], total_duration: float) -> ExecutionReport:
        counts = {status: 0 for status in CommandStatus}
        for result in results:
            counts[result.status] += 1
        return cls(
            script_name=script_name,
            total_commands=len(results),
            successful=counts[CommandStatus.SUCCESS],
            failed=counts[CommandStatus.FAILED],
            skipped=counts[CommandStatus.SKIPPED],
            total_duration=total_duration,
            results=tuple(results),
        )

    def success_rate(self) -> float:
        """Percentage of commands that succeeded (0.0 for an empty script)."""
        if self.total_commands == 0:
            return 0.0
        return self.successful / self.total_commands * 100.0

    def is_success(self) -> bool:
        return self.failed == 0 and self.skipped == 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "script_name": self.script_name,
            "total_commands": self.total_commands,
            "successful": self.successful,
            "failed": self.failed,
            "skipped": self.skipped,
            "total_duration": duration_to_dict(self.total_duration),
            "results": [r.to_dict() for r in self.results],
        }

    def to_json(self, *, indent: int | None = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent, ensure_ascii=False, default=str)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ExecutionReport:
        return cls(
            script_name=str(data["script_name"]),
            total_commands=int(data["total_commands"]),
            successful=int(data["successful"]),
            failed=int(data["failed"]),
            skipped=int(data["skipped"]),
            total_duration=duration_from_dict(data.get("total_duration") or {}),
            results=tuple(CommandResult.from_dict(r) for r in data.get("results") or []),
        )


# (response, saved_artifact)
Outcome = tuple[Any, "str | None"]
Handler = Callable[[Any], Awaitable[Outcome]]
AfterStep = Callable[[Command, CommandResult], Awaitable[None]]


class CdpCommandExecutor:
    def __init__(
        self,
        page: PageHandle,
        *,
        on_error: OnError | str = OnError.CONTINUE,
        output_dir: str | Path = ".",
        capture: CaptureSubsystem | None = None,
        events: EventBus | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> None:
        self.page = page
        self.on_error = OnError.parse(on_error)
        self.output_dir = Path(output_dir)
        self.capture = capture or CaptureSubsystem(page)
        self.events = events or page.events
        self.cancel_event = cancel_event or asyncio.Event()
        self._handlers: dict[type, Handler] = {
            Navigate: self._run_navigate,
            Reload: self._run_reload,
            Evaluate: self._run_evaluate,
            CaptureScreenshot: self._run_screenshot,
            InsertText: self._run_input,
            DispatchMouseEvent: self._run_input,
            DispatchKeyEvent: self._run_input,
            Raw: self._run_raw,
        }

    def cancel(self) -> None:
        """Request cooperative cancellation; honoured between commands."""
        self.cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    async def execute(self, script: CdpScript, *, after_step: AfterStep | None = None) -> ExecutionReport:
        """Run every command in order and return the full report.

        `after_step` is awaited after each command that actually ran, before
        the next one is dispatched (the recorder captures frames there).
        """
        total = len(script.commands)
        logger.info("executing script %r (%d commands, on_error=%s)", script.name, total, self.on_error.value)
        started = time.perf_counter()
        results: list[CommandResult] = []
        stop_reason: str | None = None

        for index, command in enumerate(script.commands):
            step = index + 1
            if stop_reason is None and self.cancelled:
                stop_reason = "cancelled"
            if stop_reason is not None:
                result = CommandResult(step=step, method=command.method, status=CommandStatus.SKIPPED, duration=0.0)
                self._progress(script.name, result, total)
            else:
                result = await self.execute_step(command, step, script_name=script.name, total=total)
                if after_step is not None:
                    await after_step(command, result)
                if result.status is CommandStatus.FAILED and self.on_error is OnError.ABORT:
                    stop_reason = f"step {step} failed"
            results.append(result)

        if stop_reason is not None:
            logger.info("script %r stopped early: %s", script.name, stop_reason)
        report = ExecutionReport.from_results(script.name, results, time.perf_counter() - started)
        logger.info(
            "script %r done: %d ok, %d failed, %d skipped in %.3fs",
            script.name,
            report.successful,
            report.failed,
            report.skipped,
            report.total_duration,
        )
        return report

    async def execute_step(
        self,
        command: Command,
        step: int,
        *,
        script_name: str = "",
        total: int = 1,
    ) -> CommandResult:
        """Run one command and classify its outcome. Raises only `ConnectionClosed`."""
        method = command.method
        started = time.perf_counter()
        response: Any = None
        saved: str | None = None
        error: str | None = None

        if not is_supported_method(method):
            error = f"Unsupported CDP method: {method}"
        else:
            try:
                command = promote_raw(command, step - 1)
                response, saved = await self._handlers[type(command)](command)
            except ConnectionClosed:
                raise
            except DriverError as exc:
                error = exc.message
            except OSError as exc:
                error = f"could not write artifact: {exc}"

        duration = time.perf_counter() - started
        if error is None:
            result = CommandResult(
                step=step,
                method=method,
                status=CommandStatus.SUCCESS,
                duration=duration,
                response=response,
                saved_artifact=saved,
            )
        else:
            logger.warning("step %d %s failed: %s", step, method, error)
            result = CommandResult(step=step, method=method, status=CommandStatus.FAILED, duration=duration, error=error)
        self._progress(script_name, result, total)
        return result

    def _progress(self, script_name: str, result: CommandResult, total: int) -> None:
        self.events.publish(
            ScriptProgress(
                script_name=script_name,
                step=result.step,
                total=total,
                method=result.method,
                status=result.status.value,
            )
        )

    # ─────────────────────────────────────────────────────────────────────────
    # Artifacts
    # ─────────────────────────────────────────────────────────────────────────

    def resolve_output(self, save_as: str) -> Path:
        path = Path(save_as).expanduser()
        return path if path.is_absolute() else self.output_dir / path

    async def _save_json(self, save_as: str | None, value: Any) -> str | None:
        if not save_as:
            return None
        path = self.resolve_output(save_as)
        text = json.dumps(value, indent=2, ensure_ascii=False, default=str)
        await asyncio.to_thread(_write_text, path, text)
        return str(path.resolve())

    # ─────────────────────────────────────────────────────────────────────────
    # Handlers
    # ─────────────────────────────────────────────────────────────────────────

    async def _run_navigate(self, command: Navigate) -> Outcome:
        result = await self.page.navigate(command.url, extra_params=command.extra_params)
        return result, await self._save_json(command.save_as, result)

    async def _run_reload(self, command: Reload) -> Outcome:
        result = await self.page.reload(ignore_cache=command.ignore_cache, extra_params=command.extra_params)
        return result, await self._save_json(command.save_as, result)

    async def _run_evaluate(self, command: Evaluate) -> Outcome:
        value = await self.page.evaluate(
            command.expression,
            await_promise=command.await_promise,
            return_by_value=command.return_by_value,
            extra_params=command.extra_params,
        )
        return value, await self._save_json(command.save_as, value)

    async def _run_screenshot(self, command: CaptureScreenshot) -> Outcome:
        if command.save_as:
            info = await self.capture.capture_to_file(
                self.resolve_output(command.save_as),
                format=command.format,
                quality=command.quality,
                full_page=command.capture_beyond_viewport,
                extra_params=command.extra_params,
            )
            return info.to_dict(), info.path
        data = await self.capture.screenshot(
            format=command.format,
            quality=command.quality,
            full_page=command.capture_beyond_viewport,
            extra_params=command.extra_params,
        )
        return {"format": command.format, "size_bytes": len(data)}, None

    async def _run_input(self, command: InsertText | DispatchMouseEvent | DispatchKeyEvent) -> Outcome:
        result = await self.page.call(command.method, command.params())
        return result, await self._save_json(command.save_as, result)

    async def _run_raw(self, command: Raw) -> Outcome:
        result = await self.page.call(command.method, command.params() or None)
        return result, await self._save_json(command.save_as, result)


def _write_text(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")


__all__ = [
    "CdpCommandExecutor",
    "CommandResult",
    "CommandStatus",
    "ExecutionReport",
    "OnError",
    "duration_from_dict",
    "duration_to_dict",
]

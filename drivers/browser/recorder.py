"""StepFrameRecorder: one persisted frame per executed action.

Session directory layout:

    <session_dir>/
      session.json            manifest (script, timing, frame count)
      frames.jsonl            one StepFrame per line, append-only
      screenshots/frame_0000.png
      dom/frame_0000.html
      report.json             the ExecutionReport of the recorded run

Paths stored inside frames are relative to the session directory so a
recording can be moved or archived as a unit.

A recorder opened on a directory that already holds frames continues their
numbering and timeline instead of starting again at frame 0.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

from .capture import CaptureSubsystem, ScreenshotInfo, sha256_hex
from .errors import ConnectionClosed, DriverError
from .executor import CdpCommandExecutor, CommandResult, CommandStatus, ExecutionReport
from .script import CdpScript, Command, Navigate

logger = logging.getLogger("driver.browser.recorder")

FRAMES_FILE = "frames.jsonl"
MANIFEST_FILE = "session.json"
REPORT_FILE = "report.json"


def _now_iso() -> str:
    now = time.time()
    return time.strftime("%Y-%m-%dT%H:%M:%S", time.gmtime(now)) + f".{int(now * 1000) % 1000:03d}Z"


@dataclass(frozen=True)
class DomInfo:
    url: str
    title: str
    html_path: str | None = None
    html_hash: str | None = None
    interactive_elements: list[dict[str, Any]] | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"url": self.url, "title": self.title}
        if self.html_path is not None:
            out["html_path"] = self.html_path
        if self.html_hash is not None:
            out["html_hash"] = self.html_hash
        if self.interactive_elements is not None:
            out["interactive_elements"] = self.interactive_elements
        return out

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DomInfo:
        return cls(
            url=str(data.get("url") or ""),
            title=str(data.get("title") or ""),
            html_path=data.get("html_path"),
            html_hash=data.get("html_hash"),
            interactive_elements=data.get("interactive_elements"),
        )


@dataclass(frozen=True)
class ActionInfo:
    description: str
    action_type: str | None = None
    target: str | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"description": self.description}
        if self.action_type is not None:
            out["action_type"] = self.action_type
        if self.target is not None:
            out["target"] = self.target
        return out

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ActionInfo:
        return cls(
            description=str(data.get("description") or ""),
            action_type=data.get("action_type"),
            target=data.get("target"),
        )

    @classmethod
    def for_command(cls, command: Command) -> ActionInfo:
        target = command.url if isinstance(command, Navigate) else None
        return cls(description=command.description or command.method, action_type=command.method, target=target)


@dataclass(frozen=True)
class TranscriptInfo:
    action_description: str
    reasoning: str | None = None
    expected_outcome: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {k: v for k, v in self.__dict__.items() if v is not None}


@dataclass(frozen=True)
class StepFrame:
    frame_id: int
    timestamp: str
    elapsed_ms: int
    screenshot: ScreenshotInfo
    dom: DomInfo
    action: ActionInfo
    transcript: TranscriptInfo | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "frame_id": self.frame_id,
            "timestamp": self.timestamp,
            "elapsed_ms": self.elapsed_ms,
            "screenshot": self.screenshot.to_dict(),
            "dom": self.dom.to_dict(),
            "action": self.action.to_dict(),
        }
        if self.transcript is not None:
            out["transcript"] = self.transcript.to_dict()
        return out

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StepFrame:
        transcript = data.get("transcript")
        return cls(
            frame_id=int(data["frame_id"]),
            timestamp=str(data["timestamp"]),
            elapsed_ms=int(data["elapsed_ms"]),
            screenshot=ScreenshotInfo.from_dict(data["screenshot"]),
            dom=DomInfo.from_dict(data.get("dom") or {}),
            action=ActionInfo.from_dict(data.get("action") or {}),
            transcript=TranscriptInfo(**transcript) if isinstance(transcript, dict) else None,
        )


@dataclass(frozen=True)
class RecordingOptions:
    screenshot_format: str = "png"
    save_html: bool = True
    compute_hashes: bool = True
    extract_interactive_elements: bool = False
    settle_seconds: float = 0.25


@dataclass(frozen=True)
class CaptureFailure:
    step: int | None
    action: str
    error: str

    def to_dict(self) -> dict[str, Any]:
        return {"step": self.step, "action": self.action, "error": self.error}


@dataclass(frozen=True)
class RecordedSession:
    session_dir: Path
    report: ExecutionReport
    frames: tuple[StepFrame, ...] = ()
    capture_errors: tuple[CaptureFailure, ...] = field(default_factory=tuple)

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_dir": str(self.session_dir),
            "report": self.report.to_dict(),
            "frames": [f.to_dict() for f in self.frames],
            "capture_errors": [e.to_dict() for e in self.capture_errors],
        }


class StepFrameRecorder:
    def __init__(
        self,
        executor: CdpCommandExecutor,
        session_dir: str | Path,
        *,
        options: RecordingOptions | None = None,
        capture: CaptureSubsystem | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.executor = executor
        self.page = executor.page
        self.capture = capture or executor.capture
        self.session_dir = Path(session_dir)
        self.options = options or RecordingOptions()
        self._clock = clock
        self._started_at: float | None = None
        self._started_iso: str | None = None
        self._frames: list[StepFrame] = []
        self._capture_errors: list[CaptureFailure] = []
        self._next_frame_id = 0
        self._elapsed_base = 0
        self._last_elapsed: int | None = None

    @property
    def frames(self) -> tuple[StepFrame, ...]:
        return tuple(self._frames)

    @property
    def capture_errors(self) -> tuple[CaptureFailure, ...]:
        return tuple(self._capture_errors)

    def start(self, script_name: str | None = None) -> None:
        if self._started_at is not None:
            return
        self._started_at = self._clock()
        self._started_iso = _now_iso()
        self.session_dir.mkdir(parents=True, exist_ok=True)
        existing = load_frames(self.session_dir)
        if existing:
            # Resume after the frames already on disk; frames.jsonl is never rewritten.
            last = existing[-1]
            self._next_frame_id = last.frame_id + 1
            self._elapsed_base = last.elapsed_ms + 1
            self._last_elapsed = last.elapsed_ms
            logger.info("resuming session in %s after frame %d", self.session_dir, last.frame_id)
        self._write_manifest(script_name, finished=False)
        logger.info("recording session in %s", self.session_dir)

    def _elapsed_ms(self) -> int:
        if self._started_at is None:
            self.start()
        elapsed = self._elapsed_base + int((self._clock() - (self._started_at or 0.0)) * 1000)
        if self._last_elapsed is not None:
            # Frames are strictly ordered even when two captures land in the same millisecond.
            elapsed = max(elapsed, self._last_elapsed + 1)
        return max(0, elapsed)

    async def capture_frame(
        self,
        action: ActionInfo | str,
        *,
        transcript: TranscriptInfo | None = None,
    ) -> StepFrame:
        """Capture screenshot + DOM now and append a frame. Raises on capture failure."""
        self.start()
        if isinstance(action, str):
            action = ActionInfo(description=action)
        frame_id = self._next_frame_id
        fmt = "jpeg" if self.options.screenshot_format.lower() in {"jpg", "jpeg"} else "png"
        ext = "jpg" if fmt == "jpeg" else "png"

        shot_rel = f"screenshots/frame_{frame_id:04d}.{ext}"
        shot = await self.capture.capture_to_file(self.session_dir / shot_rel, format=fmt)
        shot = replace(shot, path=shot_rel, hash=shot.hash if self.options.compute_hashes else None)

        url = await self.page.current_url()
        title = await self.page.title()
        html = await self.capture.extract_dom()
        html_path: str | None = None
        if self.options.save_html:
            html_path = f"dom/frame_{frame_id:04d}.html"
            await asyncio.to_thread(_write_text, self.session_dir / html_path, html)
        elements = None
        if self.options.extract_interactive_elements:
            elements = await self.capture.interactive_elements()

        frame = StepFrame(
            frame_id=frame_id,
            timestamp=_now_iso(),
            elapsed_ms=self._elapsed_ms(),
            screenshot=shot,
            dom=DomInfo(
                url=url,
                title=title,
                html_path=html_path,
                html_hash=sha256_hex(html) if self.options.compute_hashes else None,
                interactive_elements=elements,
            ),
            action=action,
            transcript=transcript,
        )
        await asyncio.to_thread(_append_line, self.session_dir / FRAMES_FILE, json.dumps(frame.to_dict()))
        self._frames.append(frame)
        self._next_frame_id = frame_id + 1
        self._last_elapsed = frame.elapsed_ms
        logger.info("frame %d captured (%s, %dms): %s", frame_id, url, frame.elapsed_ms, action.description)
        return frame

    async def _after_step(self, command: Command, result: CommandResult) -> None:
        if result.status is CommandStatus.SKIPPED:
            return
        if self.options.settle_seconds > 0:
            await asyncio.sleep(self.options.settle_seconds)
        action = ActionInfo.for_command(command)
        transcript = TranscriptInfo(action_description=command.description) if command.description else None
        try:
            await self.capture_frame(action, transcript=transcript)
        except ConnectionClosed:
            raise
        except (DriverError, OSError) as exc:
            logger.warning("frame capture after step %d failed: %s", result.step, exc)
            self._capture_errors.append(CaptureFailure(step=result.step, action=action.description, error=str(exc)))

    async def record(self, script: CdpScript) -> RecordedSession:
        """Execute `script`, capturing one frame after each command that ran."""
        self.start(script.name)
        report = await self.executor.execute(script, after_step=self._after_step)
        await asyncio.to_thread(_write_text, self.session_dir / REPORT_FILE, report.to_json())
        self._write_manifest(script.name, finished=True)
        return RecordedSession(
            session_dir=self.session_dir,
            report=report,
            frames=self.frames,
            capture_errors=self.capture_errors,
        )

    def _write_manifest(self, script_name: str | None, *, finished: bool) -> None:
        manifest = {
            "script_name": script_name,
            "started_at": self._started_iso,
            "finished_at": _now_iso() if finished else None,
            "frame_count": self._next_frame_id,
            "capture_errors": [e.to_dict() for e in self._capture_errors],
            "options": {
                "screenshot_format": self.options.screenshot_format,
                "save_html": self.options.save_html,
                "compute_hashes": self.options.compute_hashes,
                "extract_interactive_elements": self.options.extract_interactive_elements,
            },
        }
        _write_text(self.session_dir / MANIFEST_FILE, json.dumps(manifest, ensure_ascii=False, indent=2))


def load_frames(session_dir: str | Path) -> list[StepFrame]:
    path = Path(session_dir) / FRAMES_FILE
    if not path.exists():
        return []
    frames: list[StepFrame] = []
    for line in path.read_text(encoding="utf-8").splitlines():
        if line.strip():
            frames.append(StepFrame.from_dict(json.loads(line)))
    return frames


def _write_text(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")


def _append_line(path: Path, line: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("a", encoding="utf-8") as fh:
        fh.write(line + "\n")


__all__ = [
    "ActionInfo",
    "CaptureFailure",
    "DomInfo",
    "RecordedSession",
    "RecordingOptions",
    "StepFrame",
    "StepFrameRecorder",
    "TranscriptInfo",
    "load_frames",
]

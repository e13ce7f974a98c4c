"""Session value objects and the live-session wrapper the registry hands out."""

from __future__ import annotations

import asyncio
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any, Union

from .capture import CaptureSubsystem
from .executor import CdpCommandExecutor, OnError
from .recorder import RecordingOptions, StepFrameRecorder

if TYPE_CHECKING:
    from .config import DriverConfig
    from .connection import BrowserConnection
    from .page import PageHandle

_SLUG_RE = re.compile(r"[^a-zA-Z0-9_-]+")


@dataclass(frozen=True)
class Ephemeral:
    """No persisted state; the profile directory is destroyed on close."""

    kind: str = field(default="ephemeral", init=False)

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind}


@dataclass(frozen=True)
class Named:
    """Persisted under a stable identifier derived from `label`."""

    label: str
    kind: str = field(default="named", init=False)

    def __post_init__(self) -> None:
        if not profile_slug(self.label):
            raise ValueError(f"invalid profile label: {self.label!r}")

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "label": self.label}


ProfileKind = Union[Ephemeral, Named]


def profile_slug(label: str) -> str:
    return _SLUG_RE.sub("_", (label or "").strip()).strip("_")[:64]


def profile_from_dict(raw: Any) -> ProfileKind:
    """Accept `None`, `"ephemeral"`, `"named:<label>"` or `{"kind": ..., "label": ...}`."""
    if raw is None:
        return Ephemeral()
    if isinstance(raw, str):
        kind, _, label = raw.partition(":")
        raw = {"kind": kind, "label": label}
    if not isinstance(raw, dict):
        raise ValueError("profile must be a string or an object")
    kind = str(raw.get("kind") or "ephemeral").strip().lower()
    if kind == "ephemeral":
        return Ephemeral()
    if kind == "named":
        return Named(str(raw.get("label") or ""))
    raise ValueError(f"unknown profile kind: {kind}")


@dataclass(frozen=True)
class LaunchConfig:
    """Per-launch overrides on top of the registry's DriverConfig."""

    profile: ProfileKind = field(default_factory=Ephemeral)
    headless: bool | None = None
    mode: str | None = None
    debug_address: str | None = None
    binary_path: str | None = None
    no_sandbox: bool | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> LaunchConfig:
        data = data or {}
        headless = data.get("headless")
        no_sandbox = data.get("no_sandbox")
        return cls(
            profile=profile_from_dict(data.get("profile")),
            headless=bool(headless) if headless is not None else None,
            mode=data.get("mode"),
            debug_address=data.get("debug_address"),
            binary_path=data.get("binary_path"),
            no_sandbox=bool(no_sandbox) if no_sandbox is not None else None,
        )


@dataclass(frozen=True)
class Session:
    id: str
    profile: ProfileKind
    headless: bool
    created_at: datetime

    @classmethod
    def create(cls, profile: ProfileKind, *, headless: bool) -> Session:
        return cls(id=str(uuid.uuid4()), profile=profile, headless=headless, created_at=datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "profile": self.profile.to_dict(),
            "headless": self.headless,
            "created_at": self.created_at.isoformat(),
        }


@dataclass(frozen=True)
class SessionInfo:
    session: Session
    mode: str
    endpoint: str | None
    state: str
    profile_dir: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            **self.session.to_dict(),
            "mode": self.mode,
            "endpoint": self.endpoint,
            "state": self.state,
            "profile_dir": self.profile_dir,
        }


class ActiveSession:
    """A registered session plus the connection it exclusively owns."""

    def __init__(
        self,
        session: Session,
        connection: BrowserConnection,
        config: DriverConfig,
        *,
        profile_dir: str | None = None,
        owns_profile_dir: bool = False,
    ) -> None:
        self.session = session
        self.connection = connection
        self.config = config
        self.profile_dir = profile_dir
        self.owns_profile_dir = owns_profile_dir
        # Whole-script runs on one session never interleave.
        self.run_lock = asyncio.Lock()

    @property
    def id(self) -> str:
        return self.session.id

    def info(self) -> SessionInfo:
        return SessionInfo(
            session=self.session,
            mode=self.connection.mode,
            endpoint=self.connection.endpoint,
            state=self.connection.state.value,
            profile_dir=self.profile_dir,
        )

    async def page(self) -> PageHandle:
        return await self.connection.page()

    async def capture(self) -> CaptureSubsystem:
        return CaptureSubsystem(await self.page(), min_bytes=self.config.min_screenshot_bytes)

    async def executor(
        self,
        *,
        on_error: OnError | str | None = None,
        output_dir: str | Path | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> CdpCommandExecutor:
        page = await self.page()
        return CdpCommandExecutor(
            page,
            on_error=on_error if on_error is not None else self.config.on_error,
            output_dir=output_dir if output_dir is not None else self.config.output_dir,
            capture=CaptureSubsystem(page, min_bytes=self.config.min_screenshot_bytes),
            events=self.connection.events,
            cancel_event=cancel_event,
        )

    async def recorder(
        self,
        session_dir: str | Path,
        *,
        options: RecordingOptions | None = None,
        on_error: OnError | str | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> StepFrameRecorder:
        executor = await self.executor(on_error=on_error, output_dir=session_dir, cancel_event=cancel_event)
        return StepFrameRecorder(executor, session_dir, options=options)


__all__ = [
    "ActiveSession",
    "Ephemeral",
    "LaunchConfig",
    "Named",
    "ProfileKind",
    "Session",
    "SessionInfo",
    "profile_from_dict",
    "profile_slug",
]

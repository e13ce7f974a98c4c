"""SessionRegistry: the concurrency cap and lifecycle queries.

The registry is a constructed object passed to whoever needs it. All launch
and close requests run behind one `asyncio.Lock`, so at most `max_sessions`
connections exist at any moment.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import shutil
import tempfile
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from .config import MODE_ATTACHED, DriverConfig, expand_path
from .connection import BrowserConnection
from .errors import SessionLimitReached, SessionNotFound
from .events import EventBus, SessionClosed, SessionOpened
from .session import ActiveSession, Ephemeral, LaunchConfig, Named, Session, SessionInfo, profile_slug

logger = logging.getLogger("driver.browser.registry")

Connector = Callable[[DriverConfig, "str | None", EventBus], Awaitable[BrowserConnection]]


async def default_connector(config: DriverConfig, user_data_dir: str | None, events: EventBus) -> BrowserConnection:
    if config.mode == MODE_ATTACHED:
        return await BrowserConnection.attach(config.debug_address, config=config, events=events)
    return await BrowserConnection.launch(config, user_data_dir=user_data_dir, events=events)


@dataclass(frozen=True)
class RegistryStatus:
    running: bool
    session_count: int
    max_sessions: int
    sessions: tuple[SessionInfo, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "running": self.running,
            "session_count": self.session_count,
            "max_sessions": self.max_sessions,
            "sessions": [s.to_dict() for s in self.sessions],
        }


class SessionRegistry:
    def __init__(
        self,
        config: DriverConfig | None = None,
        *,
        events: EventBus | None = None,
        connector: Connector | None = None,
    ) -> None:
        self.config = config or DriverConfig.from_env()
        self.events = events or EventBus()
        self._connector = connector or default_connector
        self._sessions: dict[str, ActiveSession] = {}
        self._lock = asyncio.Lock()

    @property
    def max_sessions(self) -> int:
        return max(1, int(self.config.max_sessions))

    def _effective_config(self, launch: LaunchConfig) -> DriverConfig:
        overrides: dict[str, Any] = {}
        if launch.headless is not None:
            overrides["headless"] = launch.headless
        if launch.no_sandbox is not None:
            overrides["no_sandbox"] = launch.no_sandbox
        if launch.binary_path:
            overrides["binary_path"] = expand_path(launch.binary_path)
        if launch.mode:
            overrides["mode"] = DriverConfig.normalize_mode(launch.mode)
        if launch.debug_address:
            overrides["debug_address"] = launch.debug_address
            overrides.setdefault("mode", MODE_ATTACHED)
        return dataclasses.replace(self.config, **overrides) if overrides else self.config

    def _profile_dir(self, launch: LaunchConfig, config: DriverConfig) -> tuple[str | None, bool]:
        """Return (profile dir, owned-by-registry)."""
        if config.mode == MODE_ATTACHED:
            return None, False
        profile = launch.profile
        if isinstance(profile, Named):
            path = Path(expand_path(config.profiles_dir)) / profile_slug(profile.label)
            path.mkdir(parents=True, exist_ok=True)
            return str(path), False
        return tempfile.mkdtemp(prefix="browser-driver-"), True

    async def launch(self, launch: LaunchConfig | None = None) -> Session:
        """Start a session; raises `SessionLimitReached` at the cap."""
        launch = launch or LaunchConfig()
        async with self._lock:
            if len(self._sessions) >= self.max_sessions:
                raise SessionLimitReached(self.max_sessions)

            config = self._effective_config(launch)
            profile_dir, owned = await asyncio.to_thread(self._profile_dir, launch, config)
            try:
                connection = await self._connector(config, profile_dir, self.events)
            except BaseException:
                if owned and profile_dir:
                    await asyncio.to_thread(shutil.rmtree, profile_dir, True)
                raise

            session = Session.create(launch.profile, headless=config.headless)
            self._sessions[session.id] = ActiveSession(
                session,
                connection,
                config,
                profile_dir=profile_dir,
                owns_profile_dir=owned,
            )
        kind = "ephemeral" if isinstance(launch.profile, Ephemeral) else f"named:{launch.profile.label}"
        logger.info("session %s launched (%s, %s)", session.id, config.mode, kind)
        self.events.publish(SessionOpened(session_id=session.id, profile=kind))
        return session

    def get(self, session_id: str) -> ActiveSession:
        active = self._sessions.get(session_id)
        if active is None:
            raise SessionNotFound(session_id)
        return active

    def resolve(self, session_id: str | None = None) -> ActiveSession:
        """Look up `session_id`, or the only live session when omitted."""
        if session_id:
            return self.get(session_id)
        if len(self._sessions) == 1:
            return next(iter(self._sessions.values()))
        raise SessionNotFound(session_id or "<none>")

    def status(self) -> RegistryStatus:
        infos = tuple(active.info() for active in self._sessions.values())
        return RegistryStatus(
            running=bool(infos),
            session_count=len(infos),
            max_sessions=self.max_sessions,
            sessions=infos,
        )

    async def close(self, session_id: str) -> bool:
        """Tear down a session. Returns False if it was already gone."""
        async with self._lock:
            active = self._sessions.pop(session_id, None)
            if active is None:
                return False
            await self._teardown(active)
        self.events.publish(SessionClosed(session_id=session_id))
        return True

    async def close_all(self) -> int:
        async with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
            for active in sessions:
                await self._teardown(active)
        for active in sessions:
            self.events.publish(SessionClosed(session_id=active.id))
        return len(sessions)

    async def _teardown(self, active: ActiveSession) -> None:
        try:
            await active.connection.close()
        finally:
            if active.owns_profile_dir and active.profile_dir:
                await asyncio.to_thread(shutil.rmtree, active.profile_dir, True)
        logger.info("session %s closed", active.id)

    async def __aenter__(self) -> SessionRegistry:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close_all()


__all__ = ["Connector", "RegistryStatus", "SessionRegistry", "default_connector"]

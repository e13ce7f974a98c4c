"""Chrome-for-Testing fetcher.

Downloads a pinned-channel build once into the cache directory and drops a
`.downloaded` marker so later launches skip the network entirely.
"""

from __future__ import annotations

import json
import logging
import os
import platform
import shutil
import stat
import sys
import zipfile
from collections.abc import Callable
from pathlib import Path
from urllib.error import URLError
from urllib.request import Request, urlopen

from .config import expand_path
from .errors import LaunchError

logger = logging.getLogger("driver.browser.fetcher")

VERSIONS_URL = (
    "https://googlechromelabs.github.io/chrome-for-testing/last-known-good-versions-with-downloads.json"
)
MARKER_NAME = ".downloaded"
CHUNK_SIZE = 256 * 1024

# Relative executable locations inside an unpacked cache, newest layouts first.
_CACHE_EXECUTABLES: tuple[str, ...] = (
    "chrome-linux64/chrome",
    "chrome-mac-arm64/Google Chrome for Testing.app/Contents/MacOS/Google Chrome for Testing",
    "chrome-mac-x64/Google Chrome for Testing.app/Contents/MacOS/Google Chrome for Testing",
    "chrome-win64/chrome.exe",
    "chrome-win32/chrome.exe",
    "chrome-linux/chrome",
    "chrome-mac/Chromium.app/Contents/MacOS/Chromium",
    "chrome-win/chrome.exe",
    "chrome",
    "chrome.exe",
)

ProgressCallback = Callable[[int, "int | None"], None]


def platform_key(system: str | None = None, machine: str | None = None) -> str:
    """Map the host to a Chrome-for-Testing platform name."""
    system = (system or sys.platform).lower()
    machine = (machine or platform.machine()).lower()
    if system.startswith("linux"):
        return "linux64"
    if system == "darwin":
        return "mac-arm64" if machine in {"arm64", "aarch64"} else "mac-x64"
    if system in {"win32", "cygwin", "windows"}:
        return "win64" if machine.endswith("64") else "win32"
    raise LaunchError(f"No Chrome-for-Testing build for platform {system}/{machine}")


def find_cached_executable(cache_dir: str | Path) -> Path | None:
    root = Path(expand_path(str(cache_dir)))
    for rel in _CACHE_EXECUTABLES:
        candidate = root / rel
        if candidate.is_file():
            return candidate
    return None


class ChromeFetcher:
    def __init__(
        self,
        cache_dir: str,
        *,
        channel: str = "Stable",
        versions_url: str = VERSIONS_URL,
        timeout: float = 30.0,
    ) -> None:
        self.cache_dir = Path(expand_path(cache_dir))
        self.channel = channel
        self.versions_url = versions_url
        self.timeout = timeout

    @property
    def marker(self) -> Path:
        return self.cache_dir / MARKER_NAME

    def cached(self) -> Path | None:
        if not self.marker.exists():
            return None
        return find_cached_executable(self.cache_dir)

    def resolve_download(self, platform_name: str | None = None) -> tuple[str, str]:
        """Return (version, zip url) for the configured channel."""
        key = platform_name or platform_key()
        try:
            req = Request(self.versions_url, headers={"User-Agent": "browser-driver"})
            with urlopen(req, timeout=self.timeout) as resp:
                payload = json.loads(resp.read().decode())
        except (URLError, OSError, ValueError) as exc:
            raise LaunchError(f"Could not resolve Chrome-for-Testing versions: {exc}") from exc

        channel = (payload.get("channels") or {}).get(self.channel) or {}
        version = str(channel.get("version") or "")
        for entry in (channel.get("downloads") or {}).get("chrome") or []:
            if entry.get("platform") == key and entry.get("url"):
                return version, str(entry["url"])
        raise LaunchError(f"No {self.channel} Chrome-for-Testing download for {key}")

    def ensure(
        self,
        *,
        on_start: Callable[[str, str], None] | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> Path:
        """Return a cached executable, downloading it first when missing."""
        cached = self.cached()
        if cached is not None:
            logger.info("using cached engine: %s", cached)
            return cached

        self.cache_dir.mkdir(parents=True, exist_ok=True)
        version, url = self.resolve_download()
        archive = self.cache_dir / "chrome.zip.part"
        if on_start is not None:
            on_start(url, str(self.cache_dir))
        logger.info("downloading Chrome-for-Testing %s from %s", version or "?", url)
        self._download(url, archive, on_progress)
        try:
            self._extract(archive)
        finally:
            archive.unlink(missing_ok=True)

        executable = find_cached_executable(self.cache_dir)
        if executable is None:
            raise LaunchError(f"Downloaded archive did not contain a browser executable ({self.cache_dir})")
        self.marker.write_text(json.dumps({"version": version, "url": url}), encoding="utf-8")
        return executable

    def _download(self, url: str, dest: Path, on_progress: ProgressCallback | None) -> None:
        try:
            req = Request(url, headers={"User-Agent": "browser-driver"})
            with urlopen(req, timeout=self.timeout) as resp, dest.open("wb") as out:
                length = resp.headers.get("Content-Length")
                total = int(length) if length and length.isdigit() else None
                downloaded = 0
                while True:
                    chunk = resp.read(CHUNK_SIZE)
                    if not chunk:
                        break
                    out.write(chunk)
                    downloaded += len(chunk)
                    if on_progress is not None:
                        on_progress(downloaded, total)
        except (URLError, OSError) as exc:
            dest.unlink(missing_ok=True)
            raise LaunchError(f"Chrome download failed: {exc}") from exc

    def _extract(self, archive: Path) -> None:
        try:
            with zipfile.ZipFile(archive) as zf:
                for info in zf.infolist():
                    target = (self.cache_dir / info.filename).resolve()
                    if not str(target).startswith(str(self.cache_dir.resolve())):
                        raise LaunchError(f"Refusing to extract outside cache dir: {info.filename}")
                    zf.extract(info, self.cache_dir)
                    # zipfile drops unix permission bits; restore exec bits from external_attr.
                    mode = (info.external_attr >> 16) & 0o777
                    if mode and not info.is_dir():
                        os.chmod(target, mode | stat.S_IRUSR)
        except zipfile.BadZipFile as exc:
            raise LaunchError(f"Chrome download is not a valid zip archive: {exc}") from exc

    def clear(self) -> None:
        shutil.rmtree(self.cache_dir, ignore_errors=True)


__all__ = ["ChromeFetcher", "MARKER_NAME", "VERSIONS_URL", "find_cached_executable", "platform_key"]

from __future__ import annotations

import contextlib
import json
import logging
import socket
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from urllib.error import URLError
from urllib.request import Request, urlopen

from .config import DriverConfig, expand_path
from .errors import LaunchError

logger = logging.getLogger("driver.browser.launcher")


@dataclass
class LaunchResult:
    command: list[str]
    started: bool
    message: str
    port: int = 0
    log_path: str | None = None
    log_tail: str | None = None


def _tail_text(path: str | None, max_chars: int = 4000) -> str | None:
    if not path:
        return None
    try:
        raw = Path(path).read_text(encoding="utf-8", errors="replace")
    except OSError:
        return None
    return raw if len(raw) <= max_chars else raw[-max_chars:]


def http_endpoint(host: str, port: int) -> str:
    return f"http://{host}:{int(port)}"


def fetch_json(url: str, *, timeout: float = 0.8) -> object:
    req = Request(url, headers={"User-Agent": "browser-driver"})
    with urlopen(req, timeout=timeout) as resp:
        return json.loads(resp.read().decode())


def cdp_version(base_url: str, *, timeout: float = 0.8) -> dict:
    """Return the `/json/version` payload of a debug endpoint."""
    try:
        payload = fetch_json(f"{base_url.rstrip('/')}/json/version", timeout=timeout)
    except (URLError, OSError, ValueError) as exc:
        raise LaunchError(f"CDP not reachable at {base_url}: {exc}") from exc
    if not isinstance(payload, dict):
        raise LaunchError(f"Unexpected /json/version payload from {base_url}")
    return payload


def list_targets(base_url: str, *, timeout: float = 0.5) -> list[dict]:
    try:
        payload = fetch_json(f"{base_url.rstrip('/')}/json/list", timeout=timeout)
    except (URLError, OSError, ValueError):
        return []
    return payload if isinstance(payload, list) else []


class BrowserLauncher:
    """Spawn and supervise one local engine process with a debug port."""

    def __init__(self, config: DriverConfig, *, binary_path: str, user_data_dir: str) -> None:
        self.config = config
        self.binary_path = binary_path
        self.user_data_dir = user_data_dir
        self.port = int(config.cdp_port) or self.find_free_port()
        self.process: subprocess.Popen | None = None
        self.log_path: str | None = None

    @property
    def base_url(self) -> str:
        return http_endpoint("127.0.0.1", self.port)

    def _build_common_flags(self) -> list[str]:
        flags = [
            f"--remote-debugging-port={self.port}",
            f"--user-data-dir={expand_path(self.user_data_dir)}",
            "--remote-allow-origins=*",
            "--no-first-run",
            "--no-default-browser-check",
            "--disable-background-networking",
            "--disable-dev-shm-usage",
        ]
        if self.config.no_sandbox:
            flags.append("--no-sandbox")
        if self.config.headless:
            flags.append("--headless=new")
        flags.append(f"--window-size={self.config.window_size}")
        return flags

    def build_launch_command(self, extra: list[str] | None = None) -> list[str]:
        flags = self._build_common_flags() + list(self.config.extra_flags)
        if extra:
            flags.extend(extra)
        return [self.binary_path, *flags, "about:blank"]

    def _port_available(self, timeout: float = 0.2) -> bool:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.settimeout(timeout)
            try:
                return sock.connect_ex(("127.0.0.1", self.port)) != 0
            except OSError:
                return False

    def cdp_ready(self, timeout: float = 0.4) -> bool:
        """Return True if the CDP HTTP endpoint responds."""
        endpoint = f"{self.base_url}/json/version"
        try:
            with urlopen(endpoint, timeout=timeout) as resp:
                return resp.status == 200
        except (OSError, TimeoutError, URLError):
            return False

    def _make_log_path(self) -> str:
        log_dir = Path(expand_path(self.user_data_dir)).parent / "logs"
        log_dir.mkdir(parents=True, exist_ok=True)
        return str(log_dir / f"engine_{self.port}_{int(time.time() * 1000)}.log")

    def ensure_running(self, timeout: float | None = None) -> LaunchResult:
        """Launch the engine and block until `/json/version` answers.

        Runs on a worker thread (`asyncio.to_thread`) from the async side.
        """
        deadline_s = float(timeout if timeout is not None else self.config.launch_timeout)
        if self.process is not None and self.process.poll() is None and self.cdp_ready():
            return LaunchResult([], False, "Engine already running", port=self.port, log_path=self.log_path)
        if not self._port_available():
            return LaunchResult([], False, f"Port {self.port} already in use", port=self.port)

        Path(expand_path(self.user_data_dir)).mkdir(parents=True, exist_ok=True)
        cmd = self.build_launch_command()
        log_fh = None
        try:
            self.log_path = self._make_log_path()
            log_fh = open(self.log_path, "ab", buffering=0)  # noqa: SIM115
            self.process = subprocess.Popen(
                cmd,
                stdout=log_fh,
                stderr=log_fh,
                stdin=subprocess.DEVNULL,
                start_new_session=True,
            )
        except OSError as exc:
            return LaunchResult(cmd, False, str(exc), port=self.port, log_path=self.log_path)
        finally:
            if log_fh is not None:
                log_fh.close()

        logger.info("launched engine pid=%s port=%s", self.process.pid, self.port)
        deadline = time.time() + deadline_s
        while time.time() < deadline:
            if self.process.poll() is not None:
                return LaunchResult(
                    cmd,
                    False,
                    f"Engine exited early with code {self.process.returncode}",
                    port=self.port,
                    log_path=self.log_path,
                    log_tail=_tail_text(self.log_path),
                )
            if self.cdp_ready():
                return LaunchResult(cmd, True, "Engine launched", port=self.port, log_path=self.log_path)
            time.sleep(0.1)
        return LaunchResult(
            cmd,
            False,
            "Engine launch timed out",
            port=self.port,
            log_path=self.log_path,
            log_tail=_tail_text(self.log_path),
        )

    def stop(self, *, timeout: float = 2.0) -> bool:
        """Best-effort stop of the launcher-owned engine process."""
        proc = self.process
        if proc is None:
            return False
        if proc.poll() is not None:
            return True

        with contextlib.suppress(OSError):
            proc.terminate()

        deadline = time.time() + max(0.1, float(timeout))
        while time.time() < deadline:
            if proc.poll() is not None:
                return True
            time.sleep(0.05)

        # Escalate to kill.
        with contextlib.suppress(OSError):
            proc.kill()
        with contextlib.suppress(subprocess.TimeoutExpired):
            proc.wait(timeout=1.0)
        return True

    @staticmethod
    def find_free_port() -> int:
        with contextlib.closing(socket.socket(socket.AF_INET, socket.SOCK_STREAM)) as s:
            s.bind(("127.0.0.1", 0))
            return s.getsockname()[1]


__all__ = ["BrowserLauncher", "LaunchResult", "cdp_version", "fetch_json", "http_endpoint", "list_targets"]

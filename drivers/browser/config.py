from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_BINARY_CANDIDATES: list[str] = [
    # Prefer Chromium for better compatibility.
    # IMPORTANT: Avoid snap versions - they ignore --user-data-dir!
    "/usr/bin/chromium",
    "/usr/bin/chromium-browser",
    "/usr/local/bin/chromium",
    "/opt/chromium/chromium",
    "/Applications/Chromium.app/Contents/MacOS/Chromium",
    "C:\\Program Files\\Chromium\\Application\\chrome.exe",
    "C:\\Program Files (x86)\\Chromium\\Application\\chrome.exe",
    "/Applications/Google Chrome.app/Contents/MacOS/Google Chrome",
    "/usr/bin/google-chrome",
    "/usr/bin/google-chrome-stable",
    "/usr/bin/google-chrome-beta",
    "/opt/google/chrome/chrome",
    "C:\\Program Files\\Google\\Chrome\\Application\\chrome.exe",
    "C:\\Program Files (x86)\\Google\\Chrome\\Application\\chrome.exe",
    # Snap versions last resort (SingletonLock issues, profile conflicts)
    "/snap/bin/chromium",
]

CI_ENV_MARKERS: tuple[str, ...] = ("CI", "GITHUB_ACTIONS", "GITLAB_CI", "JENKINS_HOME", "CIRCLECI")

MODE_SANDBOXED = "sandboxed"
MODE_ATTACHED = "attached"

TIMEOUT_POLICY_ERROR = "error"
TIMEOUT_POLICY_RECYCLE = "recycle"


def expand_path(raw: str) -> str:
    return str(Path(raw).expanduser())


def _default_cache_root() -> Path:
    xdg = os.environ.get("XDG_CACHE_HOME")
    if xdg:
        return Path(xdg).expanduser() / "browser-driver"
    return Path.home() / ".cache" / "browser-driver"


def is_ci(env: dict[str, str] | None = None) -> bool:
    env_map = os.environ if env is None else env
    return any(env_map.get(marker) for marker in CI_ENV_MARKERS)


def _env_bool(raw: str | None, fallback: bool) -> bool:
    if raw is None:
        return fallback
    value = raw.strip().lower()
    if value in {"1", "true", "yes", "on"}:
        return True
    if value in {"0", "false", "no", "off"}:
        return False
    return fallback


@dataclass
class DriverConfig:
    mode: str = MODE_SANDBOXED
    binary_path: str | None = None
    debug_address: str = "http://127.0.0.1:9222"
    cdp_port: int = 0
    headless: bool = True
    no_sandbox: bool = False
    window_size: str = "1280,900"
    extra_flags: list[str] = field(default_factory=list)
    cache_dir: str = field(default_factory=lambda: str(_default_cache_root() / "chrome"))
    profiles_dir: str = field(default_factory=lambda: str(_default_cache_root() / "profiles"))
    output_dir: str = "."
    auto_download: bool = True
    launch_timeout: float = 20.0
    navigation_timeout: float = 30.0
    capture_timeout: float = 10.0
    command_timeout: float = 30.0
    min_screenshot_bytes: int = 1000
    max_sessions: int = 1
    on_error: str = "continue"
    timeout_policy: str = TIMEOUT_POLICY_ERROR
    timeout_threshold: int = 3

    @staticmethod
    def normalize_mode(raw: str | None) -> str:
        mode = (raw or "").strip().lower()
        if mode in {"attach", "attached", "connect", "external", "debug", "debug-port"}:
            return MODE_ATTACHED
        return MODE_SANDBOXED

    @staticmethod
    def normalize_timeout_policy(raw: str | None) -> str:
        policy = (raw or "").strip().lower()
        if policy in {"recycle", "reattach", "restart"}:
            return TIMEOUT_POLICY_RECYCLE
        return TIMEOUT_POLICY_ERROR

    @classmethod
    def detect_binary(cls) -> str | None:
        env_path = os.environ.get("DRIVER_BROWSER_BINARY")
        if env_path:
            return expand_path(env_path)
        for candidate in DEFAULT_BINARY_CANDIDATES:
            path = Path(candidate)
            if path.exists() and os.access(str(path), os.X_OK):
                return str(path)
        return None

    @classmethod
    def from_env(cls) -> DriverConfig:
        env = os.environ
        ci = is_ci()
        flags_raw = env.get("DRIVER_BROWSER_FLAGS", "")
        extra_flags = [flag.strip() for flag in flags_raw.split(",") if flag.strip()]
        defaults = cls()
        return cls(
            mode=cls.normalize_mode(env.get("DRIVER_BROWSER_MODE")),
            binary_path=expand_path(env["DRIVER_BROWSER_BINARY"]) if env.get("DRIVER_BROWSER_BINARY") else None,
            debug_address=env.get("DRIVER_DEBUG_ADDRESS", defaults.debug_address),
            cdp_port=int(env.get("DRIVER_CDP_PORT", "0")),
            headless=_env_bool(env.get("DRIVER_HEADLESS"), True if ci else defaults.headless),
            no_sandbox=_env_bool(env.get("DRIVER_NO_SANDBOX"), ci),
            window_size=env.get("DRIVER_WINDOW_SIZE", defaults.window_size),
            extra_flags=extra_flags,
            cache_dir=expand_path(env.get("DRIVER_CACHE_DIR", defaults.cache_dir)),
            profiles_dir=expand_path(env.get("DRIVER_PROFILES_DIR", defaults.profiles_dir)),
            output_dir=expand_path(env.get("DRIVER_OUTPUT_DIR", defaults.output_dir)),
            auto_download=_env_bool(env.get("DRIVER_AUTO_DOWNLOAD"), defaults.auto_download),
            launch_timeout=float(env.get("DRIVER_LAUNCH_TIMEOUT", "20")),
            navigation_timeout=float(env.get("DRIVER_NAVIGATION_TIMEOUT", "30")),
            capture_timeout=float(env.get("DRIVER_CAPTURE_TIMEOUT", "10")),
            command_timeout=float(env.get("DRIVER_COMMAND_TIMEOUT", "30")),
            min_screenshot_bytes=int(env.get("DRIVER_MIN_SCREENSHOT_BYTES", "1000")),
            max_sessions=max(1, int(env.get("DRIVER_MAX_SESSIONS", "1"))),
            on_error=(env.get("DRIVER_ON_ERROR") or defaults.on_error).strip().lower(),
            timeout_policy=cls.normalize_timeout_policy(env.get("DRIVER_TIMEOUT_POLICY")),
            timeout_threshold=max(1, int(env.get("DRIVER_TIMEOUT_THRESHOLD", "3"))),
        )

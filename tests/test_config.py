from __future__ import annotations

from pathlib import Path

import pytest

from drivers.browser.config import (
    CI_ENV_MARKERS,
    MODE_ATTACHED,
    MODE_SANDBOXED,
    TIMEOUT_POLICY_ERROR,
    TIMEOUT_POLICY_RECYCLE,
    DriverConfig,
    is_ci,
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for marker in CI_ENV_MARKERS:
        monkeypatch.delenv(marker, raising=False)
    for key in (
        "DRIVER_BROWSER_MODE",
        "DRIVER_BROWSER_BINARY",
        "DRIVER_HEADLESS",
        "DRIVER_NO_SANDBOX",
        "DRIVER_BROWSER_FLAGS",
        "DRIVER_CAPTURE_TIMEOUT",
        "DRIVER_MAX_SESSIONS",
        "DRIVER_TIMEOUT_POLICY",
    ):
        monkeypatch.delenv(key, raising=False)


def test_defaults_are_sandboxed_and_headless() -> None:
    cfg = DriverConfig()
    assert cfg.mode == MODE_SANDBOXED
    assert cfg.headless is True
    assert cfg.capture_timeout == 10.0
    assert cfg.min_screenshot_bytes == 1000
    assert cfg.max_sessions == 1
    assert cfg.timeout_policy == TIMEOUT_POLICY_ERROR


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("attach", MODE_ATTACHED),
        ("Attached", MODE_ATTACHED),
        ("debug-port", MODE_ATTACHED),
        ("sandboxed", MODE_SANDBOXED),
        ("", MODE_SANDBOXED),
        (None, MODE_SANDBOXED),
    ],
)
def test_normalize_mode(raw: str | None, expected: str) -> None:
    assert DriverConfig.normalize_mode(raw) == expected


def test_normalize_timeout_policy_aliases() -> None:
    assert DriverConfig.normalize_timeout_policy("reattach") == TIMEOUT_POLICY_RECYCLE
    assert DriverConfig.normalize_timeout_policy("RECYCLE") == TIMEOUT_POLICY_RECYCLE
    assert DriverConfig.normalize_timeout_policy("whatever") == TIMEOUT_POLICY_ERROR


def test_from_env_reads_driver_variables(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("DRIVER_BROWSER_MODE", "attach")
    monkeypatch.setenv("DRIVER_HEADLESS", "0")
    monkeypatch.setenv("DRIVER_BROWSER_FLAGS", "--lang=en, --mute-audio ,")
    monkeypatch.setenv("DRIVER_CAPTURE_TIMEOUT", "2.5")
    monkeypatch.setenv("DRIVER_MAX_SESSIONS", "0")
    monkeypatch.setenv("DRIVER_TIMEOUT_POLICY", "recycle")
    monkeypatch.setenv("DRIVER_CACHE_DIR", str(tmp_path / "cache"))
    cfg = DriverConfig.from_env()
    assert cfg.mode == MODE_ATTACHED
    assert cfg.headless is False
    assert cfg.extra_flags == ["--lang=en", "--mute-audio"]
    assert cfg.capture_timeout == 2.5
    assert cfg.max_sessions == 1
    assert cfg.timeout_policy == TIMEOUT_POLICY_RECYCLE
    assert cfg.cache_dir == str(tmp_path / "cache")


def test_ci_forces_headless_and_no_sandbox(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("GITHUB_ACTIONS", "true")
    assert is_ci()
    cfg = DriverConfig.from_env()
    assert cfg.headless is True
    assert cfg.no_sandbox is True


def test_is_ci_accepts_explicit_env() -> None:
    assert is_ci({"CI": "1"})
    assert not is_ci({})


def test_detect_binary_prefers_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    binary = tmp_path / "chrome"
    binary.write_text("#!/bin/sh\n")
    monkeypatch.setenv("DRIVER_BROWSER_BINARY", str(binary))
    assert DriverConfig.detect_binary() == str(binary)


def test_detect_binary_none_without_candidates(monkeypatch: pytest.MonkeyPatch) -> None:
    from drivers.browser import config as config_module

    monkeypatch.setattr(config_module, "DEFAULT_BINARY_CANDIDATES", ["/nonexistent/chrome"])
    assert DriverConfig.detect_binary() is None

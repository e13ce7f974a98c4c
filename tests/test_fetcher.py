from __future__ import annotations

import json
import stat
import zipfile
from pathlib import Path

import pytest

from drivers.browser.errors import LaunchError
from drivers.browser.fetcher import MARKER_NAME, ChromeFetcher, find_cached_executable, platform_key


@pytest.mark.parametrize(
    ("system", "machine", "expected"),
    [
        ("linux", "x86_64", "linux64"),
        ("darwin", "arm64", "mac-arm64"),
        ("darwin", "x86_64", "mac-x64"),
        ("win32", "AMD64", "win64"),
        ("win32", "x86", "win32"),
    ],
)
def test_platform_key(system: str, machine: str, expected: str) -> None:
    assert platform_key(system, machine) == expected


def test_platform_key_rejects_unknown() -> None:
    with pytest.raises(LaunchError):
        platform_key("sunos5", "sparc")


def _make_release(tmp_path: Path, *, member: str = "chrome-linux64/chrome") -> str:
    archive = tmp_path / "chrome-linux64.zip"
    with zipfile.ZipFile(archive, "w") as zf:
        info = zipfile.ZipInfo(member)
        info.external_attr = (stat.S_IFREG | 0o755) << 16
        zf.writestr(info, "#!/bin/sh\necho fake chrome\n")
    versions = {
        "channels": {
            "Stable": {
                "version": "120.0.6099.109",
                "downloads": {
                    "chrome": [
                        {"platform": "mac-x64", "url": "file:///nonexistent.zip"},
                        {"platform": "linux64", "url": archive.as_uri()},
                    ]
                },
            }
        }
    }
    versions_path = tmp_path / "versions.json"
    versions_path.write_text(json.dumps(versions), encoding="utf-8")
    return versions_path.as_uri()


def test_resolve_download_picks_platform_entry(tmp_path: Path) -> None:
    fetcher = ChromeFetcher(str(tmp_path / "cache"), versions_url=_make_release(tmp_path))
    version, url = fetcher.resolve_download("linux64")
    assert version == "120.0.6099.109"
    assert url.endswith("chrome-linux64.zip")
    with pytest.raises(LaunchError):
        fetcher.resolve_download("win64")


def test_ensure_downloads_extracts_and_marks(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    from drivers.browser import fetcher as fetcher_module

    monkeypatch.setattr(fetcher_module, "platform_key", lambda: "linux64")
    cache = tmp_path / "cache"
    fetcher = ChromeFetcher(str(cache), versions_url=_make_release(tmp_path))
    started: list[str] = []
    progress: list[int] = []

    exe = fetcher.ensure(on_start=lambda url, dest: started.append(url), on_progress=lambda d, t: progress.append(d))

    assert exe == cache / "chrome-linux64" / "chrome"
    assert exe.stat().st_mode & stat.S_IXUSR
    assert (cache / MARKER_NAME).exists()
    assert json.loads((cache / MARKER_NAME).read_text())["version"] == "120.0.6099.109"
    assert started and progress and progress[-1] > 0
    assert not (cache / "chrome.zip.part").exists()
    assert fetcher.cached() == exe
    assert find_cached_executable(cache) == exe


def test_ensure_uses_cache_without_network(tmp_path: Path) -> None:
    cache = tmp_path / "cache"
    exe = cache / "chrome-linux64" / "chrome"
    exe.parent.mkdir(parents=True)
    exe.write_text("bin")
    (cache / MARKER_NAME).write_text("{}")
    fetcher = ChromeFetcher(str(cache), versions_url="http://127.0.0.1:1/unreachable.json")
    assert fetcher.ensure() == exe


def test_cached_requires_marker(tmp_path: Path) -> None:
    cache = tmp_path / "cache"
    exe = cache / "chrome-linux64" / "chrome"
    exe.parent.mkdir(parents=True)
    exe.write_text("bin")
    assert ChromeFetcher(str(cache)).cached() is None


def test_extract_refuses_path_traversal(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    from drivers.browser import fetcher as fetcher_module

    monkeypatch.setattr(fetcher_module, "platform_key", lambda: "linux64")
    fetcher = ChromeFetcher(str(tmp_path / "cache"), versions_url=_make_release(tmp_path, member="../escape"))
    with pytest.raises(LaunchError):
        fetcher.ensure()
    assert not (tmp_path / "escape").exists()
    assert not (tmp_path / "cache" / MARKER_NAME).exists()


def test_bad_versions_document_raises(tmp_path: Path) -> None:
    bad = tmp_path / "versions.json"
    bad.write_text("not json", encoding="utf-8")
    with pytest.raises(LaunchError):
        ChromeFetcher(str(tmp_path / "cache"), versions_url=bad.as_uri()).resolve_download("linux64")

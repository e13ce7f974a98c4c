"""
Step-frame recording: one frame per executed action, persisted to a session directory.
"""

from __future__ import annotations

import asyncio
import json
from pathlib import Path

from fake_engine import FakeEngine, attach

from drivers.browser.capture import PNG_SIGNATURE
from drivers.browser.executor import CdpCommandExecutor, OnError
from drivers.browser.recorder import (
    FRAMES_FILE,
    MANIFEST_FILE,
    REPORT_FILE,
    RecordedSession,
    RecordingOptions,
    StepFrameRecorder,
    load_frames,
)
from drivers.browser.script import script_from_dict

FAST = RecordingOptions(settle_seconds=0)

SCRIPT = {
    "name": "recorded",
    "cdp_commands": [
        {"method": "Page.navigate", "params": {"url": "https://example.com/"}, "description": "Open example"},
        {"method": "Runtime.evaluate", "params": {"expression": "1+1"}},
        {"method": "Input.insertText", "params": {"text": "hello"}},
    ],
}


async def _record(engine: FakeEngine, session_dir: Path, script: dict, **kwargs: object) -> RecordedSession:
    conn = await attach(engine)
    executor = CdpCommandExecutor(await conn.page(), on_error=kwargs.pop("on_error", OnError.CONTINUE))
    recorder = StepFrameRecorder(executor, session_dir, options=kwargs.pop("options", FAST), **kwargs)  # type: ignore[arg-type]
    try:
        return await recorder.record(script_from_dict(script))
    finally:
        await conn.close()


# ═══════════════════════════════════════════════════════════════════════════════
# RECORDING
# ═══════════════════════════════════════════════════════════════════════════════


def test_one_frame_per_executed_command(tmp_path: Path) -> None:
    async def _main() -> RecordedSession:
        async with FakeEngine() as engine:
            return await _record(engine, tmp_path, SCRIPT)

    recorded = asyncio.run(_main())
    assert recorded.report.is_success()
    assert [f.frame_id for f in recorded.frames] == [0, 1, 2]
    assert recorded.capture_errors == ()

    first = recorded.frames[0]
    assert first.screenshot.path == "screenshots/frame_0000.png"
    assert (tmp_path / first.screenshot.path).read_bytes()[:8] == PNG_SIGNATURE
    assert first.screenshot.hash and len(first.screenshot.hash) == 64
    assert first.dom.url == "https://example.com/"
    assert first.dom.title == "Fake Page"
    assert first.dom.html_path == "dom/frame_0000.html"
    assert "<title>Fake Page</title>" in (tmp_path / "dom" / "frame_0000.html").read_text()
    assert first.action.description == "Open example"
    assert first.action.action_type == "Page.navigate"
    assert first.action.target == "https://example.com/"
    assert first.transcript is not None and first.transcript.action_description == "Open example"
    assert recorded.frames[1].action.description == "Runtime.evaluate"
    assert recorded.frames[1].transcript is None


def test_session_directory_layout(tmp_path: Path) -> None:
    async def _main() -> RecordedSession:
        async with FakeEngine() as engine:
            return await _record(engine, tmp_path, SCRIPT)

    recorded = asyncio.run(_main())
    lines = (tmp_path / FRAMES_FILE).read_text().splitlines()
    assert [json.loads(line)["frame_id"] for line in lines] == [0, 1, 2]

    manifest = json.loads((tmp_path / MANIFEST_FILE).read_text())
    assert manifest["script_name"] == "recorded"
    assert manifest["frame_count"] == 3
    assert manifest["finished_at"] is not None

    report = json.loads((tmp_path / REPORT_FILE).read_text())
    assert report["total_commands"] == 3
    assert report["successful"] == 3

    assert load_frames(tmp_path) == list(recorded.frames)
    assert load_frames(tmp_path / "missing") == []


def test_elapsed_strictly_increases_with_frozen_clock(tmp_path: Path) -> None:
    async def _main() -> RecordedSession:
        async with FakeEngine() as engine:
            return await _record(engine, tmp_path, SCRIPT, clock=lambda: 100.0)

    recorded = asyncio.run(_main())
    assert [f.elapsed_ms for f in recorded.frames] == [0, 1, 2]


def test_failed_steps_get_frames_skipped_steps_do_not(tmp_path: Path) -> None:
    script = {
        "name": "aborting",
        "cdp_commands": [
            {"method": "Runtime.evaluate", "params": {"expression": "1+1"}},
            {"method": "Bogus.method"},
            {"method": "Runtime.evaluate", "params": {"expression": "1+1"}},
        ],
    }

    async def _main() -> RecordedSession:
        async with FakeEngine() as engine:
            return await _record(engine, tmp_path, script, on_error=OnError.ABORT)

    recorded = asyncio.run(_main())
    assert (recorded.report.successful, recorded.report.failed, recorded.report.skipped) == (1, 1, 1)
    assert len(recorded.frames) == 2
    assert recorded.frames[1].action.action_type == "Bogus.method"


def test_capture_failure_is_recorded_without_consuming_a_frame_id(tmp_path: Path) -> None:
    async def _main() -> RecordedSession:
        async with FakeEngine() as engine:
            engine.fail_next("Page.captureScreenshot", message="Unable to capture screenshot")
            return await _record(engine, tmp_path, SCRIPT)

    recorded = asyncio.run(_main())
    assert recorded.report.is_success()
    assert [f.frame_id for f in recorded.frames] == [0, 1]
    assert len(recorded.capture_errors) == 1
    failure = recorded.capture_errors[0]
    assert failure.step == 1
    assert failure.action == "Open example"
    assert "Unable to capture screenshot" in failure.error
    # The frame after the failure reuses id 0.
    assert recorded.frames[0].action.action_type == "Runtime.evaluate"
    assert json.loads((tmp_path / MANIFEST_FILE).read_text())["capture_errors"][0]["step"] == 1


def test_jpeg_frames_without_html_or_hashes(tmp_path: Path) -> None:
    options = RecordingOptions(
        screenshot_format="jpg",
        save_html=False,
        compute_hashes=False,
        extract_interactive_elements=True,
        settle_seconds=0,
    )

    async def _main() -> RecordedSession:
        async with FakeEngine() as engine:
            return await _record(engine, tmp_path, SCRIPT, options=options)

    recorded = asyncio.run(_main())
    frame = recorded.frames[0]
    assert frame.screenshot.path == "screenshots/frame_0000.jpg"
    assert frame.screenshot.format == "jpeg"
    assert frame.screenshot.hash is None
    assert frame.dom.html_path is None
    assert frame.dom.html_hash is None
    assert [el["selector"] for el in frame.dom.interactive_elements or []] == ["#go", "button"]
    assert not (tmp_path / "dom").exists()


def test_manual_frame_capture(tmp_path: Path) -> None:
    async def _main() -> tuple[int, int]:
        async with FakeEngine() as engine:
            conn = await attach(engine)
            recorder = StepFrameRecorder(CdpCommandExecutor(await conn.page()), tmp_path, options=FAST)
            first = await recorder.capture_frame("initial state")
            second = await recorder.capture_frame("after nothing")
            await conn.close()
            return first.frame_id, second.frame_id

    assert asyncio.run(_main()) == (0, 1)
    frames = load_frames(tmp_path)
    assert [f.action.description for f in frames] == ["initial state", "after nothing"]
    assert (tmp_path / MANIFEST_FILE).exists()


def test_reopened_session_continues_numbering(tmp_path: Path) -> None:
    async def _main() -> RecordedSession:
        async with FakeEngine() as engine:
            await _record(engine, tmp_path, SCRIPT, clock=lambda: 100.0)
            return await _record(engine, tmp_path, SCRIPT, clock=lambda: 100.0)

    second = asyncio.run(_main())
    assert [f.frame_id for f in second.frames] == [3, 4, 5]
    assert second.frames[0].screenshot.path == "screenshots/frame_0003.png"

    frames = load_frames(tmp_path)
    assert [f.frame_id for f in frames] == [0, 1, 2, 3, 4, 5]
    assert [f.elapsed_ms for f in frames] == [0, 1, 2, 3, 4, 5]
    shots = sorted(p.name for p in (tmp_path / "screenshots").iterdir())
    assert shots == [f"frame_{i:04d}.png" for i in range(6)]
    manifest = json.loads((tmp_path / MANIFEST_FILE).read_text())
    assert manifest["frame_count"] == 6

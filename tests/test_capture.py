from __future__ import annotations

import asyncio
import io
from pathlib import Path

import pytest
from fake_engine import FakeEngine, attach, render_image
from PIL import Image

from drivers.browser.capture import (
    MIN_SCREENSHOT_BYTES,
    PNG_SIGNATURE,
    CaptureSubsystem,
    ScreenshotInfo,
    has_signature,
    sha256_hex,
    verify_image,
)
from drivers.browser.errors import CaptureIntegrityError, CaptureTimeout, ElementNotFound
from drivers.browser.events import EventBus


def _tiny_png() -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", (1, 1), (255, 255, 255)).save(buf, format="PNG")
    return buf.getvalue()


# ═══════════════════════════════════════════════════════════════════════════════
# IMAGE CHECKS
# ═══════════════════════════════════════════════════════════════════════════════


def test_verify_image_accepts_real_png() -> None:
    data = render_image((160, 120), "png")
    assert has_signature(data, "png")
    assert verify_image(data, "png") == (160, 120)


def test_verify_image_rejects_small_and_corrupt_data() -> None:
    with pytest.raises(CaptureIntegrityError):
        verify_image(_tiny_png(), "png")
    with pytest.raises(CaptureIntegrityError):
        verify_image(b"\x00" * 4096, "png")
    truncated = PNG_SIGNATURE + b"\x00" * 2048
    with pytest.raises(CaptureIntegrityError):
        verify_image(truncated, "png")


def test_verify_image_min_bytes_is_configurable() -> None:
    assert verify_image(_tiny_png(), "png", min_bytes=10) == (1, 1)


def test_jpeg_signature() -> None:
    data = render_image((160, 120), "jpeg")
    assert has_signature(data, "jpeg")
    assert not has_signature(data, "png")


def test_screenshot_info_dict_shape() -> None:
    info = ScreenshotInfo(path="screenshots/frame_0000.png", format="png", size_bytes=2048, dimensions=(10, 20), hash="ab")
    payload = info.to_dict()
    assert payload["dimensions"] == {"width": 10, "height": 20}
    assert ScreenshotInfo.from_dict(payload) == info


# ═══════════════════════════════════════════════════════════════════════════════
# CAPTURE AGAINST THE ENGINE
# ═══════════════════════════════════════════════════════════════════════════════


def test_png_capture_of_blank_page() -> None:
    async def _main() -> bytes:
        async with FakeEngine() as engine:
            conn = await attach(engine)
            capture = CaptureSubsystem(await conn.page())
            data = await capture.screenshot()
            await conn.close()
            return data

    data = asyncio.run(_main())
    assert data[:8] == PNG_SIGNATURE
    assert len(data) > MIN_SCREENSHOT_BYTES


def test_screenshot_to_file_writes_verified_bytes(tmp_path: Path) -> None:
    async def _main() -> tuple[Path, ScreenshotInfo]:
        async with FakeEngine() as engine:
            conn = await attach(engine)
            capture = CaptureSubsystem(await conn.page())
            path = await capture.screenshot_to_file(tmp_path / "shots" / "a.png")
            info = await capture.capture_to_file(tmp_path / "b.jpg", format="jpg", quality=80)
            await conn.close()
            return path, info

    path, info = asyncio.run(_main())
    assert path.is_file()
    assert path.read_bytes()[:8] == PNG_SIGNATURE
    assert info.format == "jpeg"
    assert info.dimensions == (160, 120)
    assert info.hash == sha256_hex(Path(info.path).read_bytes())
    assert info.size_bytes == Path(info.path).stat().st_size


def test_file_capture_matches_in_memory_capture(tmp_path: Path) -> None:
    fixed = render_image((200, 150))

    async def _main() -> tuple[bytes, Path]:
        async with FakeEngine() as engine:
            engine.screenshot_override = fixed
            conn = await attach(engine)
            capture = CaptureSubsystem(await conn.page())
            data = await capture.screenshot()
            path = await capture.screenshot_to_file(tmp_path / "a.png")
            await conn.close()
            return data, path

    data, path = asyncio.run(_main())
    assert data == fixed
    assert path.read_bytes() == data


def test_five_back_to_back_screenshots() -> None:
    async def _main() -> list[bytes]:
        async with FakeEngine() as engine:
            conn = await attach(engine)
            capture = CaptureSubsystem(await conn.page())
            shots = [await capture.screenshot() for _ in range(5)]
            await conn.close()
            return shots

    shots = asyncio.run(_main())
    assert len(shots) == 5
    assert all(s[:8] == PNG_SIGNATURE and len(s) > MIN_SCREENSHOT_BYTES for s in shots)


def test_concurrent_captures_are_serialized_on_one_page() -> None:
    async def _main() -> int:
        async with FakeEngine() as engine:
            conn = await attach(engine)
            capture = CaptureSubsystem(await conn.page())
            shots = await asyncio.gather(*(capture.screenshot() for _ in range(4)))
            await conn.close()
            return len([s for s in shots if s[:8] == PNG_SIGNATURE])

    assert asyncio.run(_main()) == 4


def test_capture_hang_times_out_then_navigation_succeeds() -> None:
    async def _main() -> None:
        bus = EventBus()
        async with FakeEngine() as engine:
            conn = await attach(engine, events=bus)
            page = await conn.page()
            capture = CaptureSubsystem(page, timeout=0.3)
            engine.hang_next("Page.captureScreenshot")
            with pytest.raises(CaptureTimeout):
                await capture.screenshot()
            result = await page.navigate("https://example.com/")
            assert result["loaderId"]
            assert len(await capture.screenshot()) > MIN_SCREENSHOT_BYTES
            await conn.close()

    asyncio.run(_main())


def test_undersized_screenshot_is_an_integrity_error() -> None:
    async def _main() -> None:
        async with FakeEngine() as engine:
            engine.screenshot_override = _tiny_png()
            conn = await attach(engine)
            capture = CaptureSubsystem(await conn.page())
            with pytest.raises(CaptureIntegrityError):
                await capture.screenshot()
            await conn.close()

    asyncio.run(_main())


def test_refused_screenshot_is_an_integrity_error() -> None:
    async def _main() -> None:
        async with FakeEngine() as engine:
            engine.fail_next("Page.captureScreenshot", message="Unable to capture screenshot")
            conn = await attach(engine)
            capture = CaptureSubsystem(await conn.page())
            with pytest.raises(CaptureIntegrityError) as info:
                await capture.screenshot()
            assert "Unable to capture screenshot" in info.value.message
            await conn.close()

    asyncio.run(_main())


def test_unsupported_format_is_rejected() -> None:
    async def _main() -> None:
        async with FakeEngine() as engine:
            conn = await attach(engine)
            capture = CaptureSubsystem(await conn.page())
            with pytest.raises(CaptureIntegrityError):
                await capture.screenshot(format="bmp")
            assert engine.count("Page.captureScreenshot") == 0
            await conn.close()

    asyncio.run(_main())


def test_text_dom_and_interactive_elements() -> None:
    async def _main() -> None:
        bus = EventBus()
        async with FakeEngine(title="Shop") as engine:
            conn = await attach(engine, events=bus)
            capture = CaptureSubsystem(await conn.page())
            assert "Shop" in await capture.extract_text()
            html = await capture.extract_dom()
            assert html.startswith("<html>") and "<title>Shop</title>" in html
            elements = await capture.interactive_elements()
            assert [e["selector"] for e in elements] == ["#go", "button"]
            await conn.close()
        kinds = [ev.kind for ev in bus.recent(name="CaptureSucceeded")]
        assert kinds == ["text", "dom"]

    asyncio.run(_main())


def test_element_text_reads_one_element() -> None:
    async def _main() -> None:
        bus = EventBus()
        async with FakeEngine() as engine:
            conn = await attach(engine, events=bus)
            capture = CaptureSubsystem(await conn.page())
            assert await capture.element_text("#go") == "Next"
            with pytest.raises(ElementNotFound) as exc_info:
                await capture.element_text("#missing")
            assert exc_info.value.code == "element_not_found"
            assert exc_info.value.details == {"selector": "#missing"}
            await conn.close()
        kinds = [ev.kind for ev in bus.recent(name="CaptureSucceeded")]
        assert kinds == ["element_text"]

    asyncio.run(_main())


def test_capture_params_follow_request() -> None:
    async def _main() -> None:
        async with FakeEngine() as engine:
            conn = await attach(engine)
            capture = CaptureSubsystem(await conn.page())
            await capture.screenshot(format="jpeg", quality=55, full_page=True)
            await capture.screenshot(format="png", quality=55)
            calls = [c for c in engine.calls if c["method"] == "Page.captureScreenshot"]
            assert calls[0]["params"] == {"format": "jpeg", "quality": 55, "captureBeyondViewport": True}
            assert calls[1]["params"] == {"format": "png"}
            await conn.close()

    asyncio.run(_main())

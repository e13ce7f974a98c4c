"""CaptureSubsystem: verified screenshots, DOM and text from the active page.

A capture that succeeds at the protocol level but yields degenerate output
(wrong magic bytes, too small, undecodable) is a failure, not a result.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import hashlib
import io
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from PIL import Image, UnidentifiedImageError

from .errors import CaptureIntegrityError, CaptureTimeout, CdpProtocolError
from .events import CaptureSucceeded
from .page import PageHandle

logger = logging.getLogger("driver.browser.capture")

PNG_SIGNATURE = b"\x89PNG\r\n\x1a\n"
JPEG_SIGNATURE = b"\xff\xd8\xff"
MIN_SCREENSHOT_BYTES = 1000

SUPPORTED_FORMATS = ("png", "jpeg", "webp")

INTERACTIVE_ELEMENTS_JS = r"""
(() => {
  const out = [];
  for (const tag of ['button', 'a', 'input', 'select', 'textarea']) {
    document.querySelectorAll(tag).forEach((el, idx) => {
      if (idx >= 50) return;
      const rect = el.getBoundingClientRect();
      out.push({
        selector: `${tag}:nth-of-type(${idx + 1})`,
        tag,
        text: (el.textContent || '').trim().substring(0, 100),
        is_visible: rect.width > 0 && rect.height > 0,
        is_enabled: !el.disabled,
      });
    });
  }
  return out;
})()
"""


def has_signature(data: bytes, fmt: str) -> bool:
    if fmt == "png":
        return data.startswith(PNG_SIGNATURE)
    if fmt == "jpeg":
        return data.startswith(JPEG_SIGNATURE)
    if fmt == "webp":
        return len(data) >= 12 and data[:4] == b"RIFF" and data[8:12] == b"WEBP"
    return False


def verify_image(data: bytes, fmt: str, *, min_bytes: int = MIN_SCREENSHOT_BYTES) -> tuple[int, int]:
    """Check signature, size and decodability; return (width, height)."""
    if not has_signature(data, fmt):
        raise CaptureIntegrityError(
            f"Screenshot does not start with the {fmt} signature",
            details={"format": fmt, "head": data[:12].hex()},
        )
    if len(data) < min_bytes:
        raise CaptureIntegrityError(
            f"Screenshot too small: {len(data)} bytes (minimum {min_bytes})",
            details={"format": fmt, "size_bytes": len(data)},
        )
    try:
        with Image.open(io.BytesIO(data)) as img:
            img.verify()
            return int(img.width), int(img.height)
    except (UnidentifiedImageError, OSError, SyntaxError) as exc:
        raise CaptureIntegrityError(f"Screenshot is not a decodable {fmt} image: {exc}") from exc


def sha256_hex(data: bytes | str) -> str:
    raw = data.encode("utf-8") if isinstance(data, str) else data
    return hashlib.sha256(raw).hexdigest()


@dataclass(frozen=True)
class ScreenshotInfo:
    path: str
    format: str
    size_bytes: int
    dimensions: tuple[int, int] | None = None
    hash: str | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"path": self.path, "format": self.format, "size_bytes": self.size_bytes}
        if self.dimensions is not None:
            out["dimensions"] = {"width": self.dimensions[0], "height": self.dimensions[1]}
        if self.hash is not None:
            out["hash"] = self.hash
        return out

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ScreenshotInfo:
        dims = data.get("dimensions")
        return cls(
            path=str(data["path"]),
            format=str(data["format"]),
            size_bytes=int(data["size_bytes"]),
            dimensions=(int(dims["width"]), int(dims["height"])) if isinstance(dims, dict) else None,
            hash=data.get("hash"),
        )


class CaptureSubsystem:
    def __init__(
        self,
        page: PageHandle,
        *,
        timeout: float | None = None,
        min_bytes: int = MIN_SCREENSHOT_BYTES,
    ) -> None:
        self.page = page
        self.timeout = page.timeouts.capture_s if timeout is None else timeout
        self.min_bytes = min_bytes

    async def _raw_screenshot(
        self, fmt: str, quality: int | None, full_page: bool, extra_params: dict[str, Any] | None = None
    ) -> bytes:
        params: dict[str, Any] = {**(extra_params or {}), "format": fmt}
        if quality is not None and fmt != "png":
            params["quality"] = int(quality)
        if full_page:
            params["captureBeyondViewport"] = True
        try:
            result = await self.page.call(
                "Page.captureScreenshot",
                params,
                timeout=self.timeout,
                operation="Page.captureScreenshot",
                error_cls=CaptureTimeout,
            )
        except CdpProtocolError as exc:
            raise CaptureIntegrityError(f"Engine refused screenshot: {exc.cdp_message}") from exc
        data = result.get("data")
        if not isinstance(data, str) or not data:
            raise CaptureIntegrityError("Screenshot response carried no image data")
        try:
            return base64.b64decode(data, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise CaptureIntegrityError(f"Screenshot data is not valid base64: {exc}") from exc

    async def _verified(
        self, fmt: str, quality: int | None, full_page: bool, extra_params: dict[str, Any] | None = None
    ) -> tuple[bytes, tuple[int, int]]:
        fmt = (fmt or "png").lower()
        if fmt == "jpg":
            fmt = "jpeg"
        if fmt not in SUPPORTED_FORMATS:
            raise CaptureIntegrityError(f"Unsupported screenshot format: {fmt}")
        data = await self._raw_screenshot(fmt, quality, full_page, extra_params)
        dims = verify_image(data, fmt, min_bytes=self.min_bytes)
        return data, dims

    async def screenshot(
        self,
        format: str = "png",
        quality: int | None = None,
        full_page: bool = False,
        extra_params: dict[str, Any] | None = None,
    ) -> bytes:
        data, _dims = await self._verified(format, quality, full_page, extra_params)
        self.page.events.publish(CaptureSucceeded(kind="screenshot", size_bytes=len(data)))
        return data

    async def screenshot_to_file(
        self,
        path: str | Path,
        format: str = "png",
        quality: int | None = None,
        full_page: bool = False,
    ) -> Path:
        info = await self.capture_to_file(path, format=format, quality=quality, full_page=full_page)
        return Path(info.path)

    async def capture_to_file(
        self,
        path: str | Path,
        *,
        format: str = "png",
        quality: int | None = None,
        full_page: bool = False,
        extra_params: dict[str, Any] | None = None,
    ) -> ScreenshotInfo:
        """Capture, verify, write; return the verified ScreenshotInfo."""
        data, dims = await self._verified(format, quality, full_page, extra_params)
        target = Path(path)
        await asyncio.to_thread(write_bytes, target, data)
        resolved = target.resolve()
        logger.debug("screenshot written: %s (%d bytes, %dx%d)", resolved, len(data), dims[0], dims[1])
        fmt = "jpeg" if format.lower() == "jpg" else format.lower()
        info = ScreenshotInfo(
            path=str(resolved),
            format=fmt,
            size_bytes=len(data),
            dimensions=dims,
            hash=sha256_hex(data),
        )
        self.page.events.publish(CaptureSucceeded(kind="screenshot", size_bytes=len(data), path=str(resolved)))
        return info

    async def extract_text(self) -> str:
        text = await self.page.text(timeout=self.timeout, error_cls=CaptureTimeout)
        self.page.events.publish(CaptureSucceeded(kind="text", size_bytes=len(text.encode("utf-8"))))
        return text

    async def extract_dom(self) -> str:
        html = await self.page.content(timeout=self.timeout, error_cls=CaptureTimeout)
        self.page.events.publish(CaptureSucceeded(kind="dom", size_bytes=len(html.encode("utf-8"))))
        return html

    async def element_text(self, selector: str) -> str:
        text = await self.page.element_text(selector, timeout=self.timeout, error_cls=CaptureTimeout)
        self.page.events.publish(CaptureSucceeded(kind="element_text", size_bytes=len(text.encode("utf-8"))))
        return text

    async def interactive_elements(self) -> list[dict[str, Any]]:
        items = await self.page.evaluate(INTERACTIVE_ELEMENTS_JS, timeout=self.timeout, error_cls=CaptureTimeout)
        return [item for item in items if isinstance(item, dict)] if isinstance(items, list) else []


def write_bytes(path: Path, data: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)


__all__ = [
    "CaptureSubsystem",
    "JPEG_SIGNATURE",
    "MIN_SCREENSHOT_BYTES",
    "PNG_SIGNATURE",
    "ScreenshotInfo",
    "has_signature",
    "sha256_hex",
    "verify_image",
    "write_bytes",
]

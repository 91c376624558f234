"""Screenshot capture of market and wallet profile pages.

Architecture:
- One headless Chromium (Playwright) launched lazily and shared across captures
- An asyncio.Lock serialises captures on the shared browser
- Viewport 1280x800, wait for `load`, then a settle delay for client-side rendering
- PNGs written to SCREENSHOT_DIR as {prefix}_{identifier}_{YYYYmmdd_HHMMSS}.png
- Failures raise CaptureError; the pipeline treats them as non-fatal
"""
from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Optional

from playwright.async_api import async_playwright

from actionbot.config import Config
from actionbot.errors import CaptureError
from actionbot.store.schemas import Action

logger = logging.getLogger(__name__)

VIEWPORT = {"width": 1280, "height": 800}

CHROMIUM_ARGS = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--disable-gpu",
]


def address_for_filename(address: str) -> str:
    if len(address) <= 12:
        return address
    return f"{address[:6]}_{address[-4:]}"


class ScreenshotCapturer:
    """Capture market/profile pages to PNG files."""

    def __init__(
        self,
        directory: str | Path = Config.SCREENSHOT_DIR,
        *,
        base_url: str = Config.MARKET_BASE_URL,
        settle_seconds: float = Config.SCREENSHOT_SETTLE_SEC,
        timeout_seconds: float = Config.SCREENSHOT_TIMEOUT_SEC,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.directory = Path(directory)
        self.base_url = base_url.rstrip("/")
        self.settle_seconds = settle_seconds
        self.timeout_seconds = timeout_seconds
        self._clock = clock or (lambda: datetime.now(timezone.utc))

        self._lock = asyncio.Lock()
        self._playwright: Any = None
        self._browser: Any = None
        self._closed = False

    async def _ensure_browser(self) -> Any:
        if self._closed:
            raise CaptureError("screenshot capturer is closed")
        if self._browser is not None:
            return self._browser

        logger.info("Launching headless browser for screenshots")
        try:
            self._playwright = await async_playwright().start()
            self._browser = await self._playwright.chromium.launch(headless=True, args=CHROMIUM_ARGS)
        except Exception as e:
            await self._shutdown_browser()
            raise CaptureError(f"failed to launch browser: {e}") from e
        return self._browser

    async def _screenshot_page(self, url: str) -> bytes:
        """Navigate a fresh page to url and return a viewport PNG."""
        browser = await self._ensure_browser()
        page = await browser.new_page()
        try:
            await page.set_viewport_size(VIEWPORT)
            await page.goto(url, wait_until="load", timeout=int(self.timeout_seconds * 1000))
            await asyncio.sleep(self.settle_seconds)
            return await page.screenshot(type="png", full_page=False)
        finally:
            await page.close()

    async def _capture(self, url: str, prefix: str, identifier: str) -> str:
        async with self._lock:
            if self._closed:
                raise CaptureError("screenshot capturer is closed")

            logger.info(f"Capturing {prefix}: {url}")
            try:
                png_bytes = await asyncio.wait_for(
                    self._screenshot_page(url),
                    timeout=self.timeout_seconds + self.settle_seconds,
                )
            except CaptureError:
                raise
            except asyncio.TimeoutError as e:
                raise CaptureError(f"capture timed out: {url}") from e
            except Exception as e:
                raise CaptureError(f"capture failed for {url}: {e}") from e

            timestamp = self._clock().strftime("%Y%m%d_%H%M%S")
            path = self.directory / f"{prefix}_{identifier}_{timestamp}.png"
            try:
                self.directory.mkdir(parents=True, exist_ok=True)
                path.write_bytes(png_bytes)
            except OSError as e:
                raise CaptureError(f"failed to save screenshot: {e}") from e

            logger.info(f"Screenshot saved: {path}")
            return str(path)

    async def capture_market(self, market_slug: str) -> str:
        if not market_slug:
            raise CaptureError("market slug is required")
        return await self._capture(f"{self.base_url}/event/{market_slug}", "market", market_slug)

    async def capture_profile(self, wallet_address: str) -> str:
        if not wallet_address:
            raise CaptureError("wallet address is required")
        return await self._capture(
            f"{self.base_url}/profile/{wallet_address}",
            "profile",
            address_for_filename(wallet_address),
        )

    async def capture(self, mode: str, action: Action) -> str | None:
        if mode == "none":
            return None
        if mode == "market":
            return await self.capture_market(action.market_slug)
        if mode == "profile":
            return await self.capture_profile(action.wallet_address)
        raise CaptureError(f"unknown screenshot mode: {mode}")

    def cleanup_old_screenshots(self, max_age_seconds: float) -> int:
        """Delete files older than max_age_seconds; returns how many were removed."""
        if not self.directory.is_dir():
            return 0

        cutoff = time.time() - max_age_seconds
        removed = 0
        for entry in self.directory.iterdir():
            if not entry.is_file():
                continue
            try:
                if entry.stat().st_mtime < cutoff:
                    entry.unlink()
                    removed += 1
                    logger.debug(f"Removed old screenshot: {entry.name}")
            except OSError as e:
                logger.warning(f"Failed to remove old screenshot {entry.name}: {e}")
        if removed:
            logger.info(f"Removed {removed} old screenshot(s)")
        return removed

    async def _shutdown_browser(self) -> None:
        browser, pw = self._browser, self._playwright
        self._browser = None
        self._playwright = None
        if browser is not None:
            try:
                await browser.close()
            except Exception as e:
                logger.warning(f"Error closing browser: {e}")
        if pw is not None:
            try:
                await pw.stop()
            except Exception as e:
                logger.warning(f"Error stopping playwright: {e}")

    async def close(self) -> None:
        async with self._lock:
            self._closed = True
            await self._shutdown_browser()

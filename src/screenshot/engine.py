"""Playwright screenshot engine."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from playwright.async_api import Browser, BrowserContext, Page, Playwright, async_playwright

from src.models.config import SelectorWait, StabilityConfig, ViewportConfig, VisualTestConfig
from src.utils.browser_context import create_capture_context, launch_browser

from .page_pool import PagePool
from .stability_handler import StabilityHandler

logger = logging.getLogger(__name__)

MAX_CAPTURE_ATTEMPTS = 3
NAVIGATION_TIMEOUT_MS = 30_000

RETRYABLE_PATTERNS = (
    "timeout",
    "net::err_",
    "navigation",
    "connection",
    "protocol error",
    "waiting for selector",
)


def is_retryable_error(error: BaseException) -> bool:
    message = str(error).lower()
    return any(pattern in message for pattern in RETRYABLE_PATTERNS)


@dataclass
class CaptureOptions:
    url: str
    output_path: str
    selector: Optional[str] = None
    wait_for: Optional[str] = None
    viewport: Optional[ViewportConfig] = None
    browser: Optional[str] = None
    theme: Optional[str] = None
    full_page: Optional[bool] = None


class PlaywrightScreenshotEngine:
    """Owns the browsers, one capture context per browser type and a page pool each."""

    def __init__(self, config: VisualTestConfig, retry_delay: float = 1.0):
        self.config = config
        self.retry_delay = retry_delay
        self._playwright: Optional[Playwright] = None
        self._browsers: dict[str, Browser] = {}
        self._contexts: dict[str, BrowserContext] = {}
        self._pools: dict[str, PagePool] = {}
        self._close_task: Optional[asyncio.Task] = None

    async def initialize(self) -> None:
        self._close_task = None
        browser_configs = self.config.screenshot.browsers
        logger.info("Launching %d browser(s)...", len(browser_configs))

        if self._playwright is None:
            self._playwright = await async_playwright().start()

        viewport = self.config.screenshot.viewport
        concurrent = self.config.performance.concurrent
        for browser_config in browser_configs:
            browser_type = browser_config.type
            if browser_type in self._browsers:
                continue

            browser = await launch_browser(self._playwright, browser_config)
            context = await create_capture_context(browser, viewport)
            pool = PagePool(concurrent.pool_size, concurrent.acquire_timeout_seconds)
            pool.set_context(context)

            self._browsers[browser_type] = browser
            self._contexts[browser_type] = context
            self._pools[browser_type] = pool
            logger.info(
                "Browser %s initialized (viewport: %dx%d)",
                browser_type, viewport.width, viewport.height,
            )

    async def capture(self, options: CaptureOptions) -> str:
        """Capture a screenshot, retrying transient browser failures."""
        for attempt in range(MAX_CAPTURE_ATTEMPTS):
            try:
                return await self._capture_once(options)
            except Exception as e:
                retryable = is_retryable_error(e)
                logger.warning(
                    "Screenshot attempt %d/%d failed for %s (retryable=%s): %s",
                    attempt + 1, MAX_CAPTURE_ATTEMPTS, options.url, retryable, e,
                )
                if not retryable or attempt == MAX_CAPTURE_ATTEMPTS - 1:
                    raise
                await asyncio.sleep(self.retry_delay * (attempt + 1))
        raise RuntimeError("Screenshot failed after retries")

    async def close(self) -> None:
        """Release every browser resource; safe to call repeatedly or concurrently."""
        if self._close_task is None:
            self._close_task = asyncio.ensure_future(self._do_close())
        await asyncio.shield(self._close_task)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _capture_once(self, options: CaptureOptions) -> str:
        browser_type = options.browser or "chromium"
        pool = self._pools.get(browser_type)
        if pool is None:
            raise RuntimeError(f"Browser {browser_type} not initialized; call initialize() first")

        page = await pool.acquire()
        try:
            if options.theme:
                await page.emulate_media(color_scheme=options.theme)
                logger.debug("Theme set to %s", options.theme)
            if options.viewport:
                await page.set_viewport_size(
                    {"width": options.viewport.width, "height": options.viewport.height}
                )

            Path(options.output_path).parent.mkdir(parents=True, exist_ok=True)
            await self._navigate(page, options.url)

            stability = self._stability_for(options)
            handler = StabilityHandler(stability)
            await handler.stabilize_page(page)

            full_page = (
                options.full_page if options.full_page is not None
                else self.config.screenshot.full_page
            )
            await handler.capture_with_retry(
                page,
                options.output_path,
                selector=options.selector,
                full_page=full_page,
                retry=stability.retry,
            )
            logger.info("Screenshot captured: %s", options.output_path)
            return options.output_path
        finally:
            await self._restore_page(page, options)
            pool.release(page)

    async def _navigate(self, page: Page, url: str) -> None:
        wait_until = (
            "networkidle" if self.config.screenshot.stability.wait_for_network_idle
            else "load"
        )
        await page.goto(url, wait_until=wait_until, timeout=NAVIGATION_TIMEOUT_MS)
        logger.debug("Navigated to %s (wait_until=%s)", url, wait_until)

    def _stability_for(self, options: CaptureOptions) -> StabilityConfig:
        base = self.config.screenshot.stability
        if not options.wait_for:
            return base
        strategies = [SelectorWait(selector=options.wait_for), *base.wait_strategies]
        return base.model_copy(update={"wait_strategies": strategies})

    async def _restore_page(self, page: Page, options: CaptureOptions) -> None:
        # Pages are reused, so per-capture emulation must not leak
        try:
            if options.theme:
                await page.emulate_media(color_scheme="null")
            if options.viewport:
                default = self.config.screenshot.viewport
                await page.set_viewport_size({"width": default.width, "height": default.height})
        except Exception as e:
            logger.debug("Failed to restore page emulation: %s", e)

    async def _do_close(self) -> None:
        for browser_type, pool in self._pools.items():
            try:
                await pool.drain()
                logger.debug("Page pool for %s drained", browser_type)
            except Exception as e:
                logger.warning("Failed to drain page pool for %s: %s", browser_type, e)

        for browser_type, context in self._contexts.items():
            try:
                await context.close()
                logger.debug("Context for %s closed", browser_type)
            except Exception as e:
                logger.warning("Failed to close context for %s: %s", browser_type, e)

        for browser_type, browser in self._browsers.items():
            try:
                await browser.close()
                logger.info("Browser %s closed", browser_type)
            except Exception as e:
                logger.warning("Failed to close browser %s: %s", browser_type, e)

        self._pools.clear()
        self._contexts.clear()
        self._browsers.clear()

        if self._playwright is not None:
            try:
                await self._playwright.stop()
            except Exception as e:
                logger.warning("Failed to stop Playwright: %s", e)
            self._playwright = None

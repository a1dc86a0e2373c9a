"""Browser launch and context helpers tuned for repeatable screenshots."""

from __future__ import annotations

from playwright.async_api import Browser, BrowserContext, Playwright

from src.models.config import BrowserConfig, ViewportConfig

DEFAULT_LOCALE = "en-US"
DEFAULT_TIMEZONE = "UTC"


async def launch_browser(playwright: Playwright, config: BrowserConfig) -> Browser:
    """Launch the configured browser engine."""
    launch_kwargs: dict = {"headless": config.headless}
    if config.channel:
        launch_kwargs["channel"] = config.channel
    return await getattr(playwright, config.type).launch(**launch_kwargs)


async def create_capture_context(
    browser: Browser,
    viewport: ViewportConfig,
    locale: str = DEFAULT_LOCALE,
    timezone_id: str = DEFAULT_TIMEZONE,
) -> BrowserContext:
    """Create a context whose rendering does not drift between runs.

    Fixed locale, timezone and device scale factor keep dates, number
    formatting and pixel density stable; reduced motion stops most
    script-driven animation before the stability handler even runs.
    """
    return await browser.new_context(
        viewport={"width": viewport.width, "height": viewport.height},
        device_scale_factor=1,
        locale=locale,
        timezone_id=timezone_id,
        reduced_motion="reduce",
    )

"""Tests for the Playwright screenshot engine."""

import asyncio
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from src.models.config import BrowserConfig, ScreenshotConfig, ViewportConfig, VisualTestConfig
from src.screenshot.engine import CaptureOptions, PlaywrightScreenshotEngine, is_retryable_error


@pytest.fixture
def engine_config(quiet_stability) -> VisualTestConfig:
    return VisualTestConfig(screenshot=ScreenshotConfig(stability=quiet_stability))


@pytest.fixture
def playwright_stack(mock_page):
    """Patch async_playwright with a stack whose only page is mock_page."""
    context = MagicMock()
    context.new_page = AsyncMock(return_value=mock_page)
    context.close = AsyncMock()
    browser = MagicMock()
    browser.new_context = AsyncMock(return_value=context)
    browser.close = AsyncMock()
    playwright = MagicMock()
    playwright.chromium.launch = AsyncMock(return_value=browser)
    playwright.firefox.launch = AsyncMock(return_value=browser)
    playwright.stop = AsyncMock()

    manager = MagicMock()
    manager.start = AsyncMock(return_value=playwright)
    with patch("src.screenshot.engine.async_playwright", return_value=manager):
        yield {"playwright": playwright, "browser": browser, "context": context}


class TestIsRetryableError:
    """Tests for transient error classification."""

    @pytest.mark.parametrize("message", [
        "Timeout 30000ms exceeded",
        "net::ERR_CONNECTION_REFUSED at http://localhost",
        "Navigation failed because page crashed",
        "Protocol error (Page.navigate)",
    ])
    def test_retryable(self, message):
        assert is_retryable_error(RuntimeError(message)) is True

    def test_not_retryable(self):
        assert is_retryable_error(ValueError("Element not found: #btn")) is False


class TestPlaywrightScreenshotEngine:
    """Tests for PlaywrightScreenshotEngine."""

    @pytest.mark.asyncio
    async def test_initialize_launches_configured_browsers(self, engine_config, playwright_stack):
        engine = PlaywrightScreenshotEngine(engine_config)
        await engine.initialize()
        playwright_stack["playwright"].chromium.launch.assert_awaited_once_with(headless=True)
        kwargs = playwright_stack["browser"].new_context.await_args.kwargs
        assert kwargs["viewport"] == {"width": 1280, "height": 720}
        assert kwargs["device_scale_factor"] == 1
        await engine.close()

    @pytest.mark.asyncio
    async def test_capture_requires_initialize(self, engine_config):
        engine = PlaywrightScreenshotEngine(engine_config, retry_delay=0)
        with pytest.raises(RuntimeError, match="not initialized"):
            await engine.capture(CaptureOptions(url="http://x", output_path="out.png"))

    @pytest.mark.asyncio
    async def test_capture_navigates_and_screenshots(
        self, engine_config, playwright_stack, mock_page, tmp_path: Path
    ):
        engine = PlaywrightScreenshotEngine(engine_config)
        await engine.initialize()
        out = tmp_path / "actuals" / "btn.png"

        path = await engine.capture(CaptureOptions(url="http://localhost/btn", output_path=str(out)))

        assert path == str(out)
        assert out.parent.exists()
        mock_page.goto.assert_any_await("http://localhost/btn", wait_until="load", timeout=30_000)
        mock_page.screenshot.assert_awaited_once_with(path=str(out), full_page=False)
        await engine.close()

    @pytest.mark.asyncio
    async def test_theme_and_viewport_restored(
        self, engine_config, playwright_stack, mock_page, tmp_path: Path
    ):
        """Test per-capture emulation is undone before the page is reused."""
        engine = PlaywrightScreenshotEngine(engine_config)
        await engine.initialize()
        await engine.capture(CaptureOptions(
            url="http://x",
            output_path=str(tmp_path / "a.png"),
            theme="dark",
            viewport=ViewportConfig(width=375, height=667),
        ))

        media_calls = [c.kwargs for c in mock_page.emulate_media.await_args_list]
        assert media_calls == [{"color_scheme": "dark"}, {"color_scheme": "null"}]
        sizes = [c.args[0] for c in mock_page.set_viewport_size.await_args_list]
        assert sizes == [{"width": 375, "height": 667}, {"width": 1280, "height": 720}]
        await engine.close()

    @pytest.mark.asyncio
    async def test_retries_transient_failure(
        self, engine_config, playwright_stack, mock_page, tmp_path: Path
    ):
        engine = PlaywrightScreenshotEngine(engine_config, retry_delay=0)
        await engine.initialize()
        mock_page.screenshot.side_effect = [RuntimeError("Timeout 30000ms exceeded"), None]

        await engine.capture(CaptureOptions(url="http://x", output_path=str(tmp_path / "a.png")))
        assert mock_page.screenshot.await_count == 2
        await engine.close()

    @pytest.mark.asyncio
    async def test_non_retryable_failure_raises_immediately(
        self, engine_config, playwright_stack, mock_page, tmp_path: Path
    ):
        engine = PlaywrightScreenshotEngine(engine_config, retry_delay=0)
        await engine.initialize()
        mock_page.query_selector.return_value = None

        with pytest.raises(LookupError):
            await engine.capture(CaptureOptions(
                url="http://x", output_path=str(tmp_path / "a.png"), selector="#missing"
            ))
        assert mock_page.query_selector.await_count == 1
        await engine.close()

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self, engine_config, playwright_stack):
        """Test repeated and concurrent close calls release resources once."""
        engine = PlaywrightScreenshotEngine(engine_config)
        await engine.initialize()

        await asyncio.gather(engine.close(), engine.close())
        await engine.close()

        playwright_stack["browser"].close.assert_awaited_once()
        playwright_stack["context"].close.assert_awaited_once()
        playwright_stack["playwright"].stop.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_close_continues_after_failures(self, engine_config, playwright_stack):
        engine = PlaywrightScreenshotEngine(engine_config)
        await engine.initialize()
        playwright_stack["context"].close.side_effect = RuntimeError("boom")

        await engine.close()
        playwright_stack["browser"].close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_multiple_browsers(self, quiet_stability, playwright_stack):
        config = VisualTestConfig(screenshot=ScreenshotConfig(
            stability=quiet_stability,
            browsers=[BrowserConfig(type="chromium"), BrowserConfig(type="firefox")],
        ))
        engine = PlaywrightScreenshotEngine(config)
        await engine.initialize()
        playwright_stack["playwright"].firefox.launch.assert_awaited_once()
        await engine.close()
        assert playwright_stack["browser"].close.await_count == 2
